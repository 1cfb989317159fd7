"""
Org-State Puller

Fetches the authoritative organization snapshot from the platform and
computes a purely informational entity diff against local state.

pull() never raises: every failure is converted to ErrorDetails with a
status/code keyed hint and request diagnostics.
"""
import asyncio
import time
from typing import Optional, List, Iterable, Any, Dict

import structlog
from pydantic import BaseModel, Field, ValidationError as PydanticValidationError

from .envelope import ErrorDetails, RequestDiagnostics, hint_for
from .exceptions import EmulatorException, NetworkError, ValidationError
from .metrics import track_pull
from .models import OrgSnapshot, TTNConfig
from .platform_client import PlatformClient, PlatformResponse
from .utils import is_valid_uuid, truncate

logger = structlog.get_logger(__name__)

ORG_STATE_ENDPOINT = "org-state"
MAX_ERROR_SNIPPET = 2048


class PullResult(BaseModel):
    ok: bool
    snapshot: Optional[OrgSnapshot] = None
    error: Optional[ErrorDetails] = None


class EntityDiff(BaseModel):
    """Added/removed ids between two pulls"""
    added: int = 0
    removed: int = 0
    added_ids: List[str] = Field(default_factory=list)
    removed_ids: List[str] = Field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return bool(self.added or self.removed)

    def summary(self, label: str) -> str:
        if not self.has_changes:
            return f"{label}: no changes"
        return f"{label}: +{self.added} / -{self.removed}"


def diff_entities(previous_ids: Iterable[str], new_ids: Iterable[str]) -> EntityDiff:
    """
    Compare id sets for user-facing summary text

    Order of the returned id lists follows the input order.
    """
    previous = list(dict.fromkeys(previous_ids))
    new = list(dict.fromkeys(new_ids))
    previous_set = set(previous)
    new_set = set(new)

    added_ids = [i for i in new if i not in previous_set]
    removed_ids = [i for i in previous if i not in new_set]
    return EntityDiff(
        added=len(added_ids),
        removed=len(removed_ids),
        added_ids=added_ids,
        removed_ids=removed_ids,
    )


def should_update_state(current_version: Optional[int], new_version: Optional[int]) -> bool:
    """Freshness marker check: newer sync_version or no local version yet"""
    if current_version is None:
        return True
    if new_version is None:
        return False
    return new_version > current_version


def _snapshot_from_body(org_id: str, body: Dict[str, Any]) -> OrgSnapshot:
    organization = body.get("organization") or {}
    if not isinstance(organization, dict):
        raise TypeError(f"organization must be an object, got {type(organization).__name__}")
    ttn = body.get("ttn")
    return OrgSnapshot(
        org_id=organization.get("id") or org_id,
        org_name=organization.get("name"),
        sync_version=body.get("sync_version") or 0,
        request_id=body.get("request_id"),
        sites=body.get("sites") or [],
        sensors=body.get("sensors") or [],
        gateways=body.get("gateways") or [],
        units=body.get("units") or [],
        ttn=TTNConfig(**ttn) if isinstance(ttn, dict) else None,
    )


class OrgStatePuller:
    """
    Pulls org state through a PlatformClient

    5xx answers and network failures are retried with exponential backoff
    (backoff_seconds, then double each time) up to max_retries attempts.
    Auth, validation and body-level failures are returned at once.
    """

    def __init__(
        self,
        client: Optional[PlatformClient] = None,
        max_retries: Optional[int] = None,
        backoff_seconds: Optional[float] = None,
    ):
        self.client = client or PlatformClient()
        settings = self.client.settings
        self.max_retries = max_retries if max_retries is not None else settings.pull_max_retries
        self.backoff_seconds = backoff_seconds if backoff_seconds is not None else settings.pull_backoff_seconds

    async def pull(self, org_id: Optional[str]) -> PullResult:
        log = logger.bind(org_id=org_id)
        start = time.monotonic()

        try:
            self._validate_org_id(org_id)
        except EmulatorException as e:
            return self._rejected(log, e, start)

        result = None
        for attempt in range(self.max_retries):
            try:
                response = await self.client.get(
                    ORG_STATE_ENDPOINT,
                    endpoint=ORG_STATE_ENDPOINT,
                    params={"org_id": org_id},
                )
            except NetworkError as e:
                result = PullResult(ok=False, error=ErrorDetails.from_exception(
                    e, RequestDiagnostics.from_exception(ORG_STATE_ENDPOINT, e, _elapsed_ms(start))
                ))
                retryable = True
            except EmulatorException as e:
                return self._rejected(log, e, start)
            else:
                result = self._interpret(org_id, response)
                retryable = not result.ok and response.status_code >= 500

            if not retryable:
                break

            if attempt < self.max_retries - 1:
                wait_time = self.backoff_seconds * (2 ** attempt)
                log.warning(
                    "pull_org_state_retrying",
                    attempt=attempt + 1,
                    max_attempts=self.max_retries,
                    wait_seconds=wait_time,
                    error_code=result.error.error_code,
                    status_code=result.error.status_code,
                )
                await asyncio.sleep(wait_time)
        else:
            result = self._exhausted(result)

        duration_ms = _elapsed_ms(start)
        track_pull("success" if result.ok else "error", duration_ms)

        if result.ok:
            snapshot = result.snapshot
            log.info(
                "pull_org_state_success",
                sync_version=snapshot.sync_version,
                sites=len(snapshot.sites),
                sensors=len(snapshot.sensors),
                gateways=len(snapshot.gateways),
                duration_ms=duration_ms,
            )
        else:
            log.warning(
                "pull_org_state_failed",
                status_code=result.error.status_code,
                error_code=result.error.error_code,
                request_id=result.error.request_id,
                duration_ms=duration_ms,
            )
        return result

    @staticmethod
    def _rejected(log, exc: EmulatorException, start: float) -> PullResult:
        duration_ms = _elapsed_ms(start)
        log.warning("pull_org_state_rejected", error_code=exc.error_code, error=exc.message)
        track_pull("error", duration_ms)
        return PullResult(ok=False, error=ErrorDetails.from_exception(
            exc, RequestDiagnostics.from_exception(ORG_STATE_ENDPOINT, exc, duration_ms)
        ))

    def _exhausted(self, last: PullResult) -> PullResult:
        error = last.error
        details = dict(error.details or {})
        details.update({"attempts": self.max_retries, "last_error_code": error.error_code})
        return PullResult(ok=False, error=error.model_copy(update={
            "message": f"Failed after {self.max_retries} attempts: {error.message}",
            "error_code": "RETRY_EXHAUSTED",
            "hint": hint_for(None, "RETRY_EXHAUSTED"),
            "details": details,
        }))

    @staticmethod
    def _validate_org_id(org_id: Optional[str]) -> None:
        if not org_id:
            raise ValidationError("org_id", "No organization ID provided", error_code="MISSING_ORG_ID")
        if not is_valid_uuid(org_id):
            raise ValidationError("org_id", f"Invalid organization ID format: {org_id}", error_code="INVALID_ORG_ID")

    def _interpret(self, org_id: str, response: PlatformResponse) -> PullResult:
        body = response.json()
        diagnostics = response.diagnostics()

        if not response.is_success:
            if isinstance(body, dict):
                message = body.get("error") or body.get("message") or f"HTTP {response.status_code}"
                error_code = body.get("error_code")
                request_id = body.get("request_id")
                hint = body.get("hint")
            else:
                message = truncate(response.text, MAX_ERROR_SNIPPET) or f"HTTP {response.status_code}"
                error_code = None
                request_id = None
                hint = None
            return PullResult(ok=False, error=ErrorDetails(
                message=str(message),
                error_code=error_code,
                status_code=response.status_code,
                request_id=request_id,
                hint=hint or hint_for(response.status_code, error_code, str(message)),
                diagnostics=diagnostics,
            ))

        if not isinstance(body, dict):
            return PullResult(ok=False, error=ErrorDetails(
                message="Platform returned an empty or non-JSON response",
                error_code="UPSTREAM_FAILURE",
                status_code=response.status_code,
                hint=hint_for(None, "UPSTREAM_FAILURE"),
                diagnostics=diagnostics,
            ))

        if body.get("ok") is False:
            error_code = body.get("error_code") or "UPSTREAM_FAILURE"
            message = body.get("error") or "Platform reported a failure without details"
            return PullResult(ok=False, error=ErrorDetails(
                message=message,
                error_code=error_code,
                status_code=response.status_code,
                request_id=body.get("request_id"),
                hint=body.get("hint") or hint_for(None, error_code, message),
                details=body.get("details") if isinstance(body.get("details"), dict) else None,
                diagnostics=diagnostics,
            ))

        try:
            snapshot = _snapshot_from_body(org_id, body)
        except PydanticValidationError as e:
            message = f"Org state response failed validation: {e.error_count()} error(s)"
        except (AttributeError, TypeError, ValueError) as e:
            message = f"Org state response has an unexpected shape: {e}"
        else:
            return PullResult(ok=True, snapshot=snapshot)

        return PullResult(ok=False, error=ErrorDetails(
            message=message,
            error_code="UPSTREAM_FAILURE",
            status_code=response.status_code,
            request_id=body.get("request_id") if isinstance(body.get("request_id"), str) else None,
            hint=hint_for(None, "UPSTREAM_FAILURE"),
            diagnostics=diagnostics,
        ))


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)
