"""
Emulator application controller

Owns AppState and the push retry tracker. Every change to local state goes
through a transition here:

- select_organization / apply_pull_result: full replacement from a pull
- apply_backfill_result: wholesale merge of backfilled credentials
- push / apply_push_result: send local state, record the outcome
- restore_session: reload the persisted snapshot
- local edits: update_context, add/update/remove device, add/remove gateway

Any edit to what a push would send invalidates the retry id.
"""
import asyncio
import re
from typing import Optional, List, Callable, Dict

import structlog
from pydantic import BaseModel

from .credential_backfill import CredentialBackfillAgent, devices_needing_backfill
from .exceptions import ValidationError, NotFoundError
from .local_state import AppState, LocalStateReplacer
from .models import (
    Device, Gateway, DeviceType, CredentialSource, OrganizationContext, BackfillResult
)
from .org_sync import OrgStatePuller, PullResult
from .push_sync import PushSynchronizer, SyncRunTracker, SyncRunPhase, SyncOutcome
from .session_store import SessionStore
from .utils import normalize_dev_eui, normalize_hex_key

logger = structlog.get_logger(__name__)

CREDENTIAL_FIELDS = ("join_eui", "app_key")
CREDENTIAL_LENGTHS = {"join_eui": 16, "app_key": 32}


def _normalized_credentials(values: dict) -> dict:
    """Uppercase hex form of any credential present; raises on malformed keys"""
    normalized = {}
    for field, length in CREDENTIAL_LENGTHS.items():
        if values.get(field):
            key = normalize_hex_key(values[field], length)
            if key is None:
                raise ValidationError(field, f"must be {length} hex characters")
            normalized[field] = key
    return normalized


class DeviceEdit(BaseModel):
    """Partial device update; credential fields on locked devices need manual_override"""
    name: Optional[str] = None
    dev_eui: Optional[str] = None
    join_eui: Optional[str] = None
    app_key: Optional[str] = None
    type: Optional[DeviceType] = None
    gateway_id: Optional[str] = None
    site_id: Optional[str] = None
    unit_id: Optional[str] = None
    manual_override: bool = False


class EmulatorController:
    """
    Single owner of emulator state

    Usage:
        controller = EmulatorController(store=SessionStore.from_url(url))
        await controller.restore_session()
        await controller.select_organization(org_id, selected_user_id=user_id)
        outcome = await controller.push()
    """

    def __init__(
        self,
        puller: Optional[OrgStatePuller] = None,
        synchronizer: Optional[PushSynchronizer] = None,
        backfill_agent: Optional[CredentialBackfillAgent] = None,
        store: Optional[SessionStore] = None,
    ):
        self.puller = puller or OrgStatePuller()
        self.synchronizer = synchronizer or PushSynchronizer()
        self.backfill_agent = backfill_agent
        self.store = store
        self.replacer = LocalStateReplacer(store)

        self.state = AppState()
        self.tracker = SyncRunTracker()
        self.last_pull: Optional[PullResult] = None
        self.last_push: Optional[SyncOutcome] = None
        self._backfill_task: Optional[asyncio.Task] = None

    # ============================================================
    # Pull
    # ============================================================

    async def select_organization(
        self,
        org_id: str,
        selected_user_id: Optional[str] = None,
        user_default_site_id: Optional[str] = None,
    ) -> PullResult:
        result = await self.puller.pull(org_id)
        await self.apply_pull_result(result, selected_user_id, user_default_site_id)
        return result

    async def apply_pull_result(
        self,
        result: PullResult,
        selected_user_id: Optional[str] = None,
        user_default_site_id: Optional[str] = None,
    ) -> bool:
        """
        Replace local state from a successful pull

        A failed pull leaves the current state exactly as it was.
        """
        self.last_pull = result
        if not result.ok:
            logger.info("pull_not_applied", error_code=result.error.error_code if result.error else None)
            return False

        self.state = await self.replacer.apply(
            self.state, result.snapshot, selected_user_id, user_default_site_id
        )
        self.tracker.invalidate()
        self.schedule_backfill()
        return True

    # ============================================================
    # Backfill
    # ============================================================

    def schedule_backfill(self) -> Optional[asyncio.Task]:
        """Start credential backfill in the background for devices missing keys"""
        if self.backfill_agent is None or self.state.context is None:
            return None

        pending = devices_needing_backfill(self.state.devices)
        if not pending:
            return None

        org_id = self.state.context.org_id
        self._backfill_task = asyncio.create_task(self._run_backfill(org_id, pending))
        return self._backfill_task

    async def _run_backfill(self, org_id: str, devices: List[Device]) -> int:
        results = await self.backfill_agent.backfill(org_id, devices)
        return await self.apply_backfill_result(org_id, results)

    async def wait_for_backfill(self) -> None:
        if self._backfill_task is not None:
            await self._backfill_task
            self._backfill_task = None

    async def apply_backfill_result(self, org_id: str, results: List[BackfillResult]) -> int:
        """
        Merge backfilled credentials into the device list

        Results for an org that is no longer selected are dropped. Devices
        that gained credentials in the meantime keep them.
        """
        context = self.state.context
        if context is None or context.org_id != org_id:
            logger.info("backfill_result_discarded", org_id=org_id)
            return 0

        by_id = {r.id: r for r in results if r.ok and r.join_eui and r.app_key}
        updated = 0
        devices = []
        for device in self.state.devices:
            result = by_id.get(device.id)
            if result is not None and not device.has_otaa_credentials:
                device = device.model_copy(update={
                    "join_eui": result.join_eui,
                    "app_key": result.app_key,
                    "credential_source": CredentialSource.PLATFORM_GENERATED,
                    "credentials_locked": True,
                })
                updated += 1
            devices.append(device)

        if updated:
            self.state = self.state.model_copy(update={"devices": devices})
            self.tracker.invalidate()
            await self._persist()
        logger.info("backfill_result_applied", org_id=org_id, updated=updated)
        return updated

    # ============================================================
    # Push
    # ============================================================

    async def push(self) -> SyncOutcome:
        context = self.state.context or OrganizationContext(org_id="")
        outcome = await self.synchronizer.push(self.tracker, context, self.state.gateways, self.state.devices)
        await self.apply_push_result(outcome)
        return outcome

    async def apply_push_result(self, outcome: SyncOutcome) -> None:
        """Record the run id to reuse (None after success) and the summary"""
        self.last_push = outcome
        if outcome.validation is not None or self.state.context is None:
            return

        summary = outcome.summary if outcome.ok else (outcome.summary or outcome.display_errors())
        self.state = self.state.model_copy(update={
            "context": self.state.context.model_copy(update={
                "last_sync_run_id": self.tracker.run_id,
                "last_sync_summary": summary,
            })
        })
        await self._persist()

    # ============================================================
    # Session
    # ============================================================

    async def restore_session(self) -> bool:
        """
        Restore the persisted session if it is fresh

        A persisted run id means the last push did not succeed; the tracker
        resumes in Failed so the next push retries with the same id.
        """
        if self.store is None:
            return False
        snapshot = await self.store.load_snapshot()
        if snapshot is None:
            return False

        state = AppState.from_snapshot(snapshot)
        offline = await self.store.load_offline_cache()
        if offline is not None:
            state = state.model_copy(update={"devices": offline.devices, "gateways": offline.gateways})

        self.state = state
        if snapshot.last_sync_run_id:
            self.tracker = SyncRunTracker(phase=SyncRunPhase.FAILED, run_id=snapshot.last_sync_run_id)
        else:
            self.tracker = SyncRunTracker()

        logger.info(
            "session_restored",
            org_id=snapshot.org_id,
            devices=len(state.devices),
            gateways=len(state.gateways),
            pending_run=bool(snapshot.last_sync_run_id),
        )
        return True

    async def _persist(self) -> None:
        if self.store is not None and self.state.context is not None:
            await self.store.save_snapshot(self.state.to_snapshot())

    async def _local_edit(self) -> None:
        self.tracker.invalidate()
        if self.state.context is not None:
            self.state = self.state.model_copy(update={
                "context": self.state.context.model_copy(update={"last_sync_run_id": None})
            })
        if self.store is not None:
            await self.store.save_offline_cache(self.state.devices, self.state.gateways)
        await self._persist()

    # ============================================================
    # Local edits
    # ============================================================

    async def update_context(self, site_id: Optional[str] = None, selected_user_id: Optional[str] = None) -> None:
        if self.state.context is None:
            raise ValidationError("org_id", "Select an organization first", error_code="MISSING_ORG_ID")
        updates = {}
        if site_id is not None:
            updates["site_id"] = site_id
        if selected_user_id is not None:
            updates["selected_user_id"] = selected_user_id
        self.state = self.state.model_copy(update={"context": self.state.context.model_copy(update=updates)})
        await self._local_edit()

    async def add_device(self, device: Device) -> Device:
        if normalize_dev_eui(device.dev_eui) is None:
            raise ValidationError("dev_eui", "DevEUI must be 16 hex characters", error_code="INVALID_DEV_EUI")
        if any(d.id == device.id for d in self.state.devices):
            raise ValidationError("id", f"Device {device.id} already exists")
        credentials = _normalized_credentials(device.model_dump(include=set(CREDENTIAL_FIELDS)))
        device = device.model_copy(update=credentials)
        if device.has_otaa_credentials and device.credential_source is None:
            device = device.model_copy(update={"credential_source": CredentialSource.LOCAL_GENERATED})

        self.state = self.state.model_copy(update={"devices": self.state.devices + [device]})
        await self._local_edit()
        return device

    async def update_device(self, device_id: str, edit: DeviceEdit) -> Device:
        index = self._device_index(device_id)
        device = self.state.devices[index]
        changes = edit.model_dump(exclude_unset=True, exclude={"manual_override"})
        changes.update(_normalized_credentials(changes))

        touches_credentials = any(
            field in changes and changes[field] != getattr(device, field) for field in CREDENTIAL_FIELDS
        )
        if touches_credentials:
            if device.credentials_locked and not edit.manual_override:
                raise ValidationError(
                    "app_key",
                    "Credentials come from the platform and are locked. Use manual override to change them.",
                    error_code="CREDENTIALS_LOCKED",
                )
            changes["credential_source"] = (
                CredentialSource.MANUAL_OVERRIDE if edit.manual_override else CredentialSource.LOCAL_GENERATED
            )
            changes["credentials_locked"] = False
            logger.info("device_credentials_overridden", device_id=device_id, manual=edit.manual_override)

        if "dev_eui" in changes and normalize_dev_eui(changes["dev_eui"]) is None:
            raise ValidationError("dev_eui", "DevEUI must be 16 hex characters", error_code="INVALID_DEV_EUI")

        updated = device.model_copy(update=changes)
        devices = list(self.state.devices)
        devices[index] = updated
        self.state = self.state.model_copy(update={"devices": devices})
        await self._local_edit()
        return updated

    async def remove_device(self, device_id: str) -> None:
        index = self._device_index(device_id)
        devices = list(self.state.devices)
        del devices[index]
        self.state = self.state.model_copy(update={"devices": devices})
        await self._local_edit()

    async def add_gateway(self, gateway: Gateway) -> Gateway:
        if gateway.normalized_eui is None:
            raise ValidationError("eui", "Gateway EUI must be 16 hex characters")
        if any(g.id == gateway.id for g in self.state.gateways):
            raise ValidationError("id", f"Gateway {gateway.id} already exists")
        self.state = self.state.model_copy(update={"gateways": self.state.gateways + [gateway]})
        await self._local_edit()
        return gateway

    async def remove_gateway(self, gateway_id: str) -> None:
        gateways = [g for g in self.state.gateways if g.id != gateway_id]
        if len(gateways) == len(self.state.gateways):
            raise NotFoundError("gateway", gateway_id)
        self.state = self.state.model_copy(update={"gateways": gateways})
        await self._local_edit()

    def _device_index(self, device_id: str) -> int:
        for i, device in enumerate(self.state.devices):
            if device.id == device_id:
                return i
        raise NotFoundError("device", device_id)


class ControllerRegistry:
    """
    One EmulatorController per operator session key

    Controllers are built on first use and restore their persisted session
    before serving the first request.
    """

    SESSION_KEY_PATTERN = re.compile(r"^[A-Za-z0-9_.-]{1,64}$")

    def __init__(self, factory: Callable[[str], EmulatorController]):
        self._factory = factory
        self._controllers: Dict[str, EmulatorController] = {}
        self._restored: Dict[str, asyncio.Task] = {}

    async def get(self, session_key: str) -> EmulatorController:
        if not self.SESSION_KEY_PATTERN.match(session_key or ""):
            raise ValidationError("session_key", "must be 1-64 letters, digits, '.', '_' or '-'")

        controller = self._controllers.get(session_key)
        if controller is None:
            controller = self._factory(session_key)
            self._controllers[session_key] = controller
            self._restored[session_key] = asyncio.create_task(controller.restore_session())
            logger.info("session_controller_created", session_key=session_key)

        await self._restored[session_key]
        return controller

    def __len__(self) -> int:
        return len(self._controllers)

    async def close(self) -> None:
        """Let in-flight backfills finish merging before shutdown"""
        for controller in self._controllers.values():
            await controller.wait_for_backfill()
        self._controllers.clear()
        self._restored.clear()
