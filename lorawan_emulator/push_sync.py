"""
Push Synchronizer

Builds the sync bundle from local state, sends it to the platform and
classifies the result as Success, Partial or Failed.

The sync_run_id is the platform's idempotency key. SyncRunTracker owns its
lifecycle:

    Idle --begin--> Attempting(id) --success--> Succeeded
                         |
                         +--failure/partial/exception--> Failed(id)
    Failed(id) --begin--> Attempting(id)        (retry reuses the id)
    any --invalidate--> Idle                     (input changed)
"""
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Optional, List, Any, Dict

import structlog
from pydantic import BaseModel, Field

from .envelope import ErrorDetails, RequestDiagnostics, hint_for
from .exceptions import EmulatorException
from .metrics import track_push
from .models import (
    Device, Gateway, OrganizationContext,
    SyncBundle, SyncContext, SyncEntities, SyncDeviceEntity, SyncGatewayEntity
)
from .platform_client import PlatformClient
from .sync_validation import BundleValidation, validate_sync_bundle
from .utils import normalize_dev_eui, normalize_gateway_eui, utcnow

logger = structlog.get_logger(__name__)

SYNC_ENDPOINT = "sync"
DISPLAY_ERROR_LIMIT = 2

# ============================================================
# Retry id state machine
# ============================================================

class SyncRunPhase(str, Enum):
    IDLE = "idle"
    ATTEMPTING = "attempting"
    FAILED = "failed"
    SUCCEEDED = "succeeded"


@dataclass
class SyncRunTracker:
    """Retry-id lifecycle for push attempts"""
    phase: SyncRunPhase = SyncRunPhase.IDLE
    run_id: Optional[str] = None

    def begin(self) -> str:
        """Start an attempt, reusing the id of a failed or in-flight attempt"""
        if self.phase in (SyncRunPhase.FAILED, SyncRunPhase.ATTEMPTING) and self.run_id:
            logger.info("sync_run_retry", sync_run_id=self.run_id)
        else:
            self.run_id = str(uuid.uuid4())
            logger.info("sync_run_new", sync_run_id=self.run_id)
        self.phase = SyncRunPhase.ATTEMPTING
        return self.run_id

    def fail(self) -> None:
        self.phase = SyncRunPhase.FAILED

    def succeed(self) -> None:
        self.phase = SyncRunPhase.SUCCEEDED
        self.run_id = None

    def invalidate(self) -> None:
        """Inputs changed; the next attempt must mint a fresh id"""
        if self.run_id:
            logger.debug("sync_run_invalidated", sync_run_id=self.run_id)
        self.phase = SyncRunPhase.IDLE
        self.run_id = None

# ============================================================
# Response normalization
# ============================================================

class EntityResult(BaseModel):
    succeeded: int = 0
    failed: int = 0
    errors: List[str] = Field(default_factory=list)


class NormalizedSyncResponse(BaseModel):
    """Single internal form of both platform response shapes"""
    ok: bool
    gateways: EntityResult = Field(default_factory=EntityResult)
    devices: EntityResult = Field(default_factory=EntityResult)
    summary: Optional[str] = None
    method: Optional[str] = None
    error: Optional[str] = None

    @property
    def total_succeeded(self) -> int:
        return self.gateways.succeeded + self.devices.succeeded

    @property
    def total_failed(self) -> int:
        return self.gateways.failed + self.devices.failed

    @property
    def all_errors(self) -> List[str]:
        return self.gateways.errors + self.devices.errors


def _error_text(error: Any) -> str:
    if isinstance(error, dict):
        where = error.get("path") or error.get("id") or error.get("entity_id")
        message = error.get("message") or error.get("error") or str(error)
        return f"{where}: {message}" if where else str(message)
    return str(error)


def _entity_result(raw: Any) -> EntityResult:
    if not isinstance(raw, dict):
        return EntityResult()
    if raw.get("synced") is not None:
        succeeded = int(raw.get("synced") or 0)
    else:
        succeeded = int(raw.get("created") or 0) + int(raw.get("updated") or 0)
    return EntityResult(
        succeeded=succeeded,
        failed=int(raw.get("failed") or 0),
        errors=[_error_text(e) for e in raw.get("errors") or []],
    )


def normalize_sync_response(body: Dict[str, Any]) -> NormalizedSyncResponse:
    """
    Accept {ok, results{..{created, updated, failed, errors}}} and the legacy
    {success, results{..{synced, failed, errors}}}
    """
    results = body.get("results") or {}
    return NormalizedSyncResponse(
        ok=bool(body.get("ok") or body.get("success")),
        gateways=_entity_result(results.get("gateways")),
        devices=_entity_result(results.get("devices")),
        summary=body.get("summary"),
        method=body.get("method"),
        error=body.get("error"),
    )

# ============================================================
# Outcome
# ============================================================

class SyncOutcomeKind(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


class SyncOutcome(BaseModel):
    kind: SyncOutcomeKind
    summary: Optional[str] = None
    errors: List[str] = Field(default_factory=list)
    sync_run_id: Optional[str] = None
    response: Optional[NormalizedSyncResponse] = None
    validation: Optional[BundleValidation] = None
    error: Optional[ErrorDetails] = None

    @property
    def ok(self) -> bool:
        return self.kind == SyncOutcomeKind.SUCCESS

    def display_errors(self, limit: int = DISPLAY_ERROR_LIMIT) -> str:
        """First errors joined, with an explicit marker for the rest"""
        shown = "; ".join(self.errors[:limit])
        hidden = len(self.errors) - limit
        if hidden > 0:
            return f"{shown} (and {hidden} more)"
        return shown


def classify(response: NormalizedSyncResponse) -> SyncOutcomeKind:
    if response.total_failed > 0 and response.total_succeeded > 0:
        return SyncOutcomeKind.PARTIAL
    if response.total_failed > 0:
        return SyncOutcomeKind.FAILED
    if response.ok:
        return SyncOutcomeKind.SUCCESS
    return SyncOutcomeKind.FAILED

# ============================================================
# Bundle construction
# ============================================================

def build_sync_context(context: OrganizationContext) -> SyncContext:
    return SyncContext(
        org_id=context.org_id,
        site_id=context.site_id,
        selected_user_id=context.selected_user_id,
    )


def build_sync_entities(gateways: List[Gateway], devices: List[Device]) -> SyncEntities:
    return SyncEntities(
        gateways=[
            SyncGatewayEntity(
                id=gw.id,
                name=gw.name,
                eui=normalize_gateway_eui(gw.eui) or gw.eui,
                is_online=gw.is_online,
            )
            for gw in gateways
        ],
        devices=[
            SyncDeviceEntity(
                id=dev.id,
                name=dev.name,
                dev_eui=normalize_dev_eui(dev.dev_eui) or dev.dev_eui,
                join_eui=dev.join_eui,
                app_key=dev.app_key,
                type=dev.type,
                gateway_id=dev.gateway_id,
            )
            for dev in devices
        ],
    )


def build_sync_bundle(run_id: str, context: SyncContext, entities: SyncEntities) -> SyncBundle:
    return SyncBundle(
        sync_run_id=run_id,
        initiated_at=utcnow(),
        context=context,
        entities=entities,
    )

# ============================================================
# Synchronizer
# ============================================================

class PushSynchronizer:
    """Sends sync bundles and interprets the platform's answer"""

    def __init__(self, client: Optional[PlatformClient] = None):
        self.client = client or PlatformClient()

    async def push(
        self,
        tracker: SyncRunTracker,
        context: OrganizationContext,
        gateways: List[Gateway],
        devices: List[Device],
    ) -> SyncOutcome:
        """
        Validate, pick the run id, send, and advance the tracker

        A validation failure leaves the tracker untouched since nothing was
        attempted.
        """
        sync_context = build_sync_context(context)
        entities = build_sync_entities(gateways, devices)

        validation = validate_sync_bundle(sync_context, entities)
        if not validation.is_valid:
            return self._invalid(validation)

        run_id = tracker.begin()
        outcome = await self.sync(build_sync_bundle(run_id, sync_context, entities))

        if outcome.kind == SyncOutcomeKind.SUCCESS:
            tracker.succeed()
        else:
            tracker.fail()
        return outcome

    async def sync(self, bundle: SyncBundle) -> SyncOutcome:
        log = logger.bind(sync_run_id=bundle.sync_run_id, org_id=bundle.context.org_id)

        validation = validate_sync_bundle(bundle.context, bundle.entities)
        if not validation.is_valid:
            return self._invalid(validation)

        start = time.monotonic()
        try:
            response = await self.client.post(SYNC_ENDPOINT, endpoint=SYNC_ENDPOINT, payload=bundle.to_payload())
        except EmulatorException as e:
            duration_ms = int((time.monotonic() - start) * 1000)
            log.warning("push_sync_exception", error_code=e.error_code, error=e.message, duration_ms=duration_ms)
            track_push("failed")
            return SyncOutcome(
                kind=SyncOutcomeKind.FAILED,
                errors=[e.message],
                sync_run_id=bundle.sync_run_id,
                error=ErrorDetails.from_exception(
                    e, RequestDiagnostics.from_exception(SYNC_ENDPOINT, e, duration_ms)
                ),
            )

        body = response.json()

        if not response.is_success or not isinstance(body, dict):
            errors = self._http_errors(body, response.text, response.status_code)
            log.warning("push_sync_http_error", status_code=response.status_code, errors=len(errors))
            track_push("failed")
            error_code = body.get("error_code") if isinstance(body, dict) else None
            return SyncOutcome(
                kind=SyncOutcomeKind.FAILED,
                errors=errors,
                sync_run_id=bundle.sync_run_id,
                error=ErrorDetails(
                    message=errors[0],
                    error_code=error_code or "UPSTREAM_FAILURE",
                    status_code=response.status_code,
                    request_id=body.get("request_id") if isinstance(body, dict) else None,
                    hint=hint_for(response.status_code, error_code or "UPSTREAM_FAILURE"),
                    diagnostics=response.diagnostics(),
                ),
            )

        try:
            normalized = normalize_sync_response(body)
        except (ValueError, TypeError, AttributeError) as e:
            log.warning("push_sync_unparseable_response", status_code=response.status_code, error=str(e))
            track_push("failed")
            return SyncOutcome(
                kind=SyncOutcomeKind.FAILED,
                errors=[str(e)],
                sync_run_id=bundle.sync_run_id,
                error=ErrorDetails(
                    message=f"Sync response could not be parsed: {e}",
                    error_code="UPSTREAM_FAILURE",
                    status_code=response.status_code,
                    request_id=body.get("request_id") if isinstance(body.get("request_id"), str) else None,
                    hint=hint_for(None, "UPSTREAM_FAILURE"),
                    diagnostics=response.diagnostics(),
                ),
            )

        kind = classify(normalized)
        errors = normalized.all_errors
        if kind == SyncOutcomeKind.FAILED and not errors:
            errors = [normalized.error or "Platform reported failure without details"]

        summary = normalized.summary or (
            f"{normalized.total_succeeded} synced, {normalized.total_failed} failed"
        )

        log.info(
            "push_sync_complete",
            outcome=kind.value,
            succeeded=normalized.total_succeeded,
            failed=normalized.total_failed,
            method=normalized.method,
            errors=errors,
        )
        track_push(kind.value)

        return SyncOutcome(
            kind=kind,
            summary=summary,
            errors=errors,
            sync_run_id=bundle.sync_run_id,
            response=normalized,
        )

    @staticmethod
    def _invalid(validation: BundleValidation) -> SyncOutcome:
        track_push("invalid")
        logger.info("push_sync_blocked", blocking_errors=len(validation.blocking_errors))
        return SyncOutcome(
            kind=SyncOutcomeKind.FAILED,
            errors=[str(issue) for issue in validation.blocking_errors],
            validation=validation,
        )

    @staticmethod
    def _http_errors(body: Any, text: str, status_code: int) -> List[str]:
        if isinstance(body, dict):
            if isinstance(body.get("errors"), list) and body["errors"]:
                return [_error_text(e) for e in body["errors"]]
            if body.get("error"):
                return [str(body["error"])]
        return [text[:500] if text else f"HTTP {status_code}"]
