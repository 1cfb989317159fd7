"""
TTN Provisioning Orchestrator

Drives registration across the TTN server roles. The chain is strict
IS -> NS -> AS; the Join Server step is advisory. The Application Server
visibility check is authoritative: a device the AS cannot see is not
provisioned, whatever the earlier steps said.

Flows:
- provision_otaa: register an OTAA device, repairing AS visibility if needed
- convert_to_abp: delete everywhere, recreate as ABP, install a session
- set_abp: install an ABP session on a device that already exists
- delete_device: remove a device from every role
- preflight: check the application and per-device registration

Every per-device result carries the full step trace.
"""
from enum import Enum
from typing import Optional, List

import httpx
import structlog
from pydantic import BaseModel, Field

from .config import Settings, get_settings, VALID_CLUSTERS
from .envelope import CODE_HINTS
from .exceptions import ConfigMissingError, ValidationError
from .metrics import track_ttn_device
from .models import ProvisionDevice, ProvisionRequest, PreflightRequest, DeleteDeviceRequest
from .secrets import last4
from .settings_resolver import SettingsResolver, ResolvedSettings
from .ttn_client import TTNClient, StepResult, abp_dev_addr, cluster_host, parse_cluster_from_url
from .utils import device_registry_id, generate_request_id, normalize_hex_key

logger = structlog.get_logger(__name__)

INVALID_EUI_MESSAGE = "Invalid DevEUI format. Must be 16 hex characters."
NS_RIGHTS_HINT = (
    "The API key needs full application rights including 'Write Network Server' "
    "to install ABP sessions."
)


class ProvisionStatus(str, Enum):
    CREATED = "created"
    ALREADY_EXISTS = "already_exists"
    DELETED = "deleted"
    FAILED = "failed"


class DeviceProvisionResult(BaseModel):
    """Per-device outcome with the full step trace"""
    dev_eui: str
    ttn_device_id: Optional[str] = None
    status: ProvisionStatus
    error: Optional[str] = None
    error_code: Optional[str] = None
    hint: Optional[str] = None
    dev_addr: Optional[str] = None
    steps: List[StepResult] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status != ProvisionStatus.FAILED


class BatchSummary(BaseModel):
    created: int = 0
    already_exists: int = 0
    deleted: int = 0
    failed: int = 0
    total: int = 0


class BatchProvisionResult(BaseModel):
    ok: bool
    request_id: str
    application_id: str
    cluster: str
    settings_source: str
    results: List[DeviceProvisionResult] = Field(default_factory=list)
    summary: BatchSummary = Field(default_factory=BatchSummary)


class ProvisioningTarget(BaseModel):
    """Credentials and location for one provisioning run"""
    api_key: str
    application_id: str
    cluster: str
    source: str  # user | org | env

    def __repr__(self) -> str:
        return (
            f"ProvisioningTarget(application_id={self.application_id!r}, "
            f"cluster={self.cluster!r}, source={self.source!r}, api_key=...{last4(self.api_key)})"
        )


# ============================================================
# Preflight models
# ============================================================

class ApplicationCheck(BaseModel):
    id: str
    exists: bool = False
    error: Optional[str] = None


class DeviceCheck(BaseModel):
    dev_eui: str
    ttn_device_id: Optional[str] = None
    registered: bool = False
    error: Optional[str] = None
    hint: Optional[str] = None


class ClusterMismatch(BaseModel):
    detected_cluster: str
    configured_cluster: str
    hint: str


class PreflightResult(BaseModel):
    ok: bool
    request_id: str
    cluster: str
    host: str
    settings_source: str
    application: ApplicationCheck
    devices: List[DeviceCheck] = Field(default_factory=list)
    all_registered: bool = True
    unregistered_count: int = 0
    cluster_mismatch: Optional[ClusterMismatch] = None


# ============================================================
# Failure helpers
# ============================================================

def _failure_message(step: StepResult, application_id: str, action: str) -> str:
    if step.transport_error:
        return f"{action} failed: {step.body_snippet}"
    if step.http_status == 403:
        return f"{action} failed: API key lacks permission ({step.name})"
    if step.http_status == 401:
        return f"{action} failed: invalid or expired API key ({step.name})"
    if step.http_status == 404 and step.name.startswith("is_"):
        return f'Application "{application_id}" not found'
    return f"{action} failed at {step.name} ({step.http_status}): {step.body_snippet[:200]}"


def _failure_code(step: StepResult) -> str:
    if step.transport_error:
        return "NETWORK_ERROR"
    if step.forbidden:
        return "PERMISSION_DENIED"
    return "TTN_API_ERROR"


class TTNProvisioner:
    """
    Orchestrates TTN registration flows

    Usage:
        provisioner = TTNProvisioner(resolver)
        result = await provisioner.provision_batch(request)
    """

    def __init__(
        self,
        resolver: Optional[SettingsResolver] = None,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.resolver = resolver
        self.settings = settings or get_settings()
        self.transport = transport

    # ============================================================
    # Setup
    # ============================================================

    async def resolve_target(
        self,
        selected_user_id: Optional[str] = None,
        org_id: Optional[str] = None,
        application_id: Optional[str] = None,
        cluster: Optional[str] = None,
    ) -> ProvisioningTarget:
        """
        Pick the key, application and cluster for a run

        Stored settings first, then TTN_PROVISION_API_KEY. Values passed
        explicitly override stored ones.
        """
        resolved = ResolvedSettings()
        if self.resolver is not None and (selected_user_id or org_id):
            resolved = await self.resolver.resolve(selected_user_id, org_id)

        stored = resolved.settings
        api_key = resolved.api_key
        source = resolved.source
        if not api_key:
            api_key = self.settings.ttn_provision_api_key
            source = "env"
        if not api_key:
            raise ConfigMissingError("TTN_PROVISION_API_KEY")

        application_id = application_id or (stored.application_id if stored else None)
        if not application_id:
            raise ValidationError(
                "application_id",
                "TTN application ID not configured",
                error_code="MISSING_APPLICATION_ID"
            )

        cluster = (cluster or (stored.cluster if stored else None) or self.settings.ttn_default_cluster).lower()
        if cluster not in VALID_CLUSTERS:
            raise ValidationError(
                "cluster",
                f"Unknown TTN cluster '{cluster}'. Use one of: {', '.join(VALID_CLUSTERS)}",
                error_code="INVALID_CLUSTER"
            )

        return ProvisioningTarget(api_key=api_key, application_id=application_id, cluster=cluster, source=source)

    def client(self, target: ProvisioningTarget) -> TTNClient:
        return TTNClient(
            api_key=target.api_key,
            cluster=target.cluster,
            application_id=target.application_id,
            identity_host=self.settings.ttn_identity_server_host,
            timeout=self.settings.request_timeout_seconds,
            transport=self.transport,
        )

    # ============================================================
    # OTAA
    # ============================================================

    async def provision_otaa(self, ttn: TTNClient, device: ProvisionDevice) -> DeviceProvisionResult:
        """IS create -> NS register -> JS register (advisory) -> AS verify/repair"""
        dev_eui = device.normalized_eui
        if dev_eui is None:
            return self._invalid(device)

        device_id = device_registry_id(dev_eui)
        join_eui = normalize_hex_key(device.join_eui, 16)
        app_key = normalize_hex_key(device.app_key, 32)
        result = DeviceProvisionResult(dev_eui=dev_eui, ttn_device_id=device_id, status=ProvisionStatus.CREATED)
        log = logger.bind(device_id=device_id, application_id=ttn.application_id, cluster=ttn.cluster)

        if not join_eui or not app_key:
            return self._fail(
                result,
                "JoinEUI and AppKey are required for OTAA registration",
                "VALIDATION_ERROR",
            )

        step = await ttn.is_create(device_id, dev_eui, device.name, join_eui, app_key, supports_join=True)
        result.steps.append(step)
        if step.conflict:
            result.status = ProvisionStatus.ALREADY_EXISTS
        elif not step.ok:
            hint = None
            if step.http_status == 403:
                hint = "API key lacks permission to register devices. It needs 'Write to Application' rights."
            return self._fail(result, _failure_message(step, ttn.application_id, "Registration"),
                              _failure_code(step), hint)

        step = await ttn.ns_register_otaa(device_id, dev_eui, join_eui)
        result.steps.append(step)
        if not step.ok:
            return self._fail(result, _failure_message(step, ttn.application_id, "Network Server registration"),
                              _failure_code(step))

        step = await ttn.js_register(device_id, dev_eui, join_eui, app_key)
        result.steps.append(step)
        if not step.ok:
            log.warning("js_register_failed", http_status=step.http_status)

        if not await self._verify_on_as(ttn, result, device_id, dev_eui, join_eui):
            return result

        log.info("ttn_otaa_provisioned", status=result.status.value)
        return result

    async def _verify_on_as(
        self,
        ttn: TTNClient,
        result: DeviceProvisionResult,
        device_id: str,
        dev_eui: str,
        join_eui: Optional[str] = None,
        repair: bool = True,
    ) -> bool:
        step = await ttn.as_get(device_id)
        result.steps.append(step)
        if step.ok:
            return True

        if step.not_found and repair:
            logger.info("as_visibility_repair", device_id=device_id)
            repair_step = await ttn.as_register(device_id, dev_eui, join_eui)
            result.steps.append(repair_step)
            if repair_step.ok:
                step = await ttn.as_get(device_id, step_name="as_reverify")
                result.steps.append(step)
                if step.ok:
                    return True

        if step.not_found:
            self._fail(
                result,
                f'Device "{device_id}" is not visible on the Application Server',
                "NOT_VISIBLE_ON_AS",
            )
        else:
            self._fail(result, _failure_message(step, ttn.application_id, "Application Server check"),
                       _failure_code(step))
        return False

    # ============================================================
    # ABP
    # ============================================================

    async def convert_to_abp(self, ttn: TTNClient, device: ProvisionDevice) -> DeviceProvisionResult:
        """
        Replace a device with an ABP registration

        Deletes NS, AS and IS records (404 is fine), recreates the identity
        with supports_join=false, installs NS and AS sessions and verifies the
        AS can see the device.
        """
        dev_eui = device.normalized_eui
        if dev_eui is None:
            return self._invalid(device)

        device_id = device_registry_id(dev_eui)
        dev_addr = abp_dev_addr(dev_eui)
        result = DeviceProvisionResult(
            dev_eui=dev_eui, ttn_device_id=device_id, status=ProvisionStatus.CREATED, dev_addr=dev_addr
        )

        for delete in (ttn.ns_delete, ttn.as_delete, ttn.is_delete):
            step = await delete(device_id)
            result.steps.append(step)
            if not step.ok and not step.not_found:
                return self._fail(result, _failure_message(step, ttn.application_id, "Cleanup"),
                                  _failure_code(step))

        step = await ttn.is_create(device_id, dev_eui, device.name, supports_join=False, step_name="is_recreate")
        result.steps.append(step)
        if not step.ok and not step.conflict:
            return self._fail(result, _failure_message(step, ttn.application_id, "Identity Server recreate"),
                              _failure_code(step))

        if not await self._install_abp_session(ttn, result, device_id, dev_eui, dev_addr):
            return result

        logger.info("ttn_abp_converted", device_id=device_id, dev_addr=dev_addr)
        return result

    async def set_abp(self, ttn: TTNClient, device: ProvisionDevice) -> DeviceProvisionResult:
        """Install an ABP session on a device that must already exist on the IS"""
        dev_eui = device.normalized_eui
        if dev_eui is None:
            return self._invalid(device)

        device_id = device_registry_id(dev_eui)
        dev_addr = abp_dev_addr(dev_eui)
        result = DeviceProvisionResult(
            dev_eui=dev_eui, ttn_device_id=device_id, status=ProvisionStatus.ALREADY_EXISTS, dev_addr=dev_addr
        )

        step = await ttn.is_get(device_id, step_name="is_precheck")
        result.steps.append(step)
        if step.not_found:
            return self._fail(
                result,
                f'Device "{device_id}" does not exist on the TTN Identity Server. '
                "It may have been deleted by a previous provisioning attempt.",
                "DEVICE_NOT_FOUND",
                "Re-provision the device on the platform first, then retry ABP session setup.",
            )
        if step.http_status == 403:
            return self._fail(
                result,
                _failure_message(step, ttn.application_id, "Identity Server check"),
                "PERMISSION_DENIED",
                "API key lacks permission to read devices on the Identity Server.",
            )
        if not step.ok:
            return self._fail(result, _failure_message(step, ttn.application_id, "Identity Server check"),
                              _failure_code(step))

        if not await self._install_abp_session(ttn, result, device_id, dev_eui, dev_addr):
            return result

        logger.info("ttn_abp_session_set", device_id=device_id, dev_addr=dev_addr)
        return result

    async def _install_abp_session(
        self,
        ttn: TTNClient,
        result: DeviceProvisionResult,
        device_id: str,
        dev_eui: str,
        dev_addr: str,
    ) -> bool:
        step = await ttn.ns_set_abp_session(device_id, dev_eui, dev_addr)
        result.steps.append(step)
        if not step.ok:
            self._fail(
                result,
                _failure_message(step, ttn.application_id, "Network Server session"),
                _failure_code(step),
                NS_RIGHTS_HINT if step.forbidden else None,
            )
            return False

        step = await ttn.as_set_abp_session(device_id, dev_eui, dev_addr)
        result.steps.append(step)
        if not step.ok:
            self._fail(result, _failure_message(step, ttn.application_id, "Application Server session"),
                       _failure_code(step))
            return False

        return await self._verify_on_as(ttn, result, device_id, dev_eui, repair=False)

    # ============================================================
    # Delete
    # ============================================================

    async def delete_device(self, ttn: TTNClient, device: ProvisionDevice) -> DeviceProvisionResult:
        """Remove from AS, NS, JS and finally IS; 404 means already absent"""
        dev_eui = device.normalized_eui
        if dev_eui is None:
            return self._invalid(device)

        device_id = device_registry_id(dev_eui)
        result = DeviceProvisionResult(dev_eui=dev_eui, ttn_device_id=device_id, status=ProvisionStatus.DELETED)

        for delete in (ttn.as_delete, ttn.ns_delete, ttn.js_delete, ttn.is_delete):
            step = await delete(device_id)
            result.steps.append(step)
            if not step.ok and not step.not_found:
                return self._fail(result, _failure_message(step, ttn.application_id, "Delete"),
                                  _failure_code(step))

        if all(step.not_found for step in result.steps):
            logger.info("ttn_device_already_deleted", device_id=device_id)
        else:
            logger.info("ttn_device_deleted", device_id=device_id)
        return result

    # ============================================================
    # Batch
    # ============================================================

    async def provision_batch(self, request: ProvisionRequest, mode: str = "otaa") -> BatchProvisionResult:
        """
        Run one flow for every device, strictly one after another

        mode: otaa | abp | set_abp | delete
        """
        flows = {
            "otaa": self.provision_otaa,
            "abp": self.convert_to_abp,
            "set_abp": self.set_abp,
            "delete": self.delete_device,
        }
        if mode not in flows:
            raise ValidationError("mode", f"Unknown provisioning mode '{mode}'")
        flow = flows[mode]

        target = await self.resolve_target(
            request.selected_user_id, request.org_id, request.application_id, request.cluster
        )
        request_id = generate_request_id("ttn")
        log = logger.bind(request_id=request_id, mode=mode, application_id=target.application_id,
                          cluster=target.cluster, source=target.source)
        log.info("ttn_batch_started", devices=len(request.devices))

        results = []
        async with self.client(target) as ttn:
            for device in request.devices:
                result = await flow(ttn, device)
                track_ttn_device(mode, result.status.value)
                results.append(result)

        summary = BatchSummary(total=len(results))
        for result in results:
            setattr(summary, result.status.value, getattr(summary, result.status.value) + 1)

        log.info("ttn_batch_complete", **summary.model_dump())
        return BatchProvisionResult(
            ok=summary.failed == 0,
            request_id=request_id,
            application_id=target.application_id,
            cluster=target.cluster,
            settings_source=target.source,
            results=results,
            summary=summary,
        )

    async def delete(self, request: DeleteDeviceRequest) -> DeviceProvisionResult:
        if not request.dev_eui:
            raise ValidationError("dev_eui", "dev_eui is required", error_code="MISSING_DEV_EUI")
        device = ProvisionDevice(dev_eui=request.dev_eui)
        if device.normalized_eui is None:
            raise ValidationError("dev_eui", INVALID_EUI_MESSAGE, error_code="INVALID_DEV_EUI")

        target = await self.resolve_target(
            request.selected_user_id, request.org_id, request.application_id, request.cluster
        )
        async with self.client(target) as ttn:
            result = await self.delete_device(ttn, device)
        track_ttn_device("delete", result.status.value)
        return result

    # ============================================================
    # Preflight
    # ============================================================

    async def preflight(self, request: PreflightRequest) -> PreflightResult:
        target = await self.resolve_target(
            request.selected_user_id, request.org_id, request.application_id, request.cluster
        )
        request_id = generate_request_id("preflight")
        log = logger.bind(request_id=request_id, application_id=target.application_id, cluster=target.cluster)

        mismatch = None
        detected = parse_cluster_from_url(request.detect_cluster_from_url)
        if detected and detected != target.cluster:
            mismatch = ClusterMismatch(
                detected_cluster=detected,
                configured_cluster=target.cluster,
                hint=(
                    f"The console URL points at {detected} but settings use {target.cluster}. "
                    f"Change the cluster setting to {detected}."
                ),
            )

        application = ApplicationCheck(id=target.application_id)
        checks: List[DeviceCheck] = []

        async with self.client(target) as ttn:
            step = await ttn.get_application()
            application.exists = step.ok
            if not step.ok:
                application.error = self._application_error(step, target)

            if application.exists:
                for device in request.devices:
                    checks.append(await self._check_device(ttn, device))

        unregistered = sum(1 for c in checks if not c.registered)
        result = PreflightResult(
            ok=application.exists and unregistered == 0 and mismatch is None,
            request_id=request_id,
            cluster=target.cluster,
            host=cluster_host(target.cluster),
            settings_source=target.source,
            application=application,
            devices=checks,
            all_registered=unregistered == 0,
            unregistered_count=unregistered,
            cluster_mismatch=mismatch,
        )
        log.info(
            "ttn_preflight_complete",
            ok=result.ok,
            application_exists=application.exists,
            unregistered=unregistered,
            cluster_mismatch=mismatch is not None,
        )
        return result

    @staticmethod
    def _application_error(step: StepResult, target: ProvisioningTarget) -> str:
        if step.transport_error:
            return f"Network error: {step.body_snippet}"
        if step.http_status == 404:
            return f'Application "{target.application_id}" not found on cluster {target.cluster}'
        if step.http_status == 401:
            return "Invalid or expired API key"
        if step.http_status == 403:
            return f'API key does not have permission to access application "{target.application_id}"'
        return f"TTN returned {step.http_status}: {step.body_snippet[:200]}"

    @staticmethod
    async def _check_device(ttn: TTNClient, device: ProvisionDevice) -> DeviceCheck:
        dev_eui = device.normalized_eui
        if dev_eui is None:
            return DeviceCheck(dev_eui=device.dev_eui, error=INVALID_EUI_MESSAGE)

        device_id = device_registry_id(dev_eui)
        check = DeviceCheck(dev_eui=dev_eui, ttn_device_id=device_id)
        step = await ttn.is_get(device_id, step_name="device_check")

        # Unknown visibility counts as registered; the provisioning run will tell
        if step.ok or step.http_status == 403 or step.transport_error:
            check.registered = True
        elif step.not_found:
            check.hint = f"Register this device in TTN with device_id: {device_id}"
        else:
            check.error = f"TTN returned {step.http_status}"
            check.hint = f"Register this device in TTN with device_id: {device_id}"
        return check

    # ============================================================
    # Result helpers
    # ============================================================

    @staticmethod
    def _invalid(device: ProvisionDevice) -> DeviceProvisionResult:
        return DeviceProvisionResult(
            dev_eui=device.dev_eui,
            ttn_device_id="invalid",
            status=ProvisionStatus.FAILED,
            error=INVALID_EUI_MESSAGE,
            error_code="INVALID_DEV_EUI",
        )

    @staticmethod
    def _fail(
        result: DeviceProvisionResult,
        message: str,
        error_code: str,
        hint: Optional[str] = None,
    ) -> DeviceProvisionResult:
        result.status = ProvisionStatus.FAILED
        result.error = message
        result.error_code = error_code
        result.hint = hint or CODE_HINTS.get(error_code)
        logger.warning(
            "ttn_device_failed",
            device_id=result.ttn_device_id,
            error_code=error_code,
            error=message,
            last_step=result.steps[-1].name if result.steps else None,
        )
        return result

