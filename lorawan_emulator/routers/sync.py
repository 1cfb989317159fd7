"""
Org sync endpoints

Drive one operator session's EmulatorController: pull org state, push local
edits, restore the persisted session and edit devices/gateways. The session
is picked by the X-Emulator-Session header ("default" when absent).

Expected failures (failed pull, blocked or failed push, locked credentials)
come back as HTTP 200 with ok=false, like the TTN endpoints.
"""
from fastapi import APIRouter, Depends, Header, Request

from ..controller import ControllerRegistry, DeviceEdit, EmulatorController
from ..envelope import success_envelope, error_envelope, envelope_from_error
from ..models import Device, Gateway, SyncPullRequest, SyncContextUpdate
from ..push_sync import SyncOutcome, SyncOutcomeKind

router = APIRouter(prefix="/api/v1/sync", tags=["Sync"])


async def get_controller(
    request: Request,
    x_emulator_session: str = Header(default="default"),
) -> EmulatorController:
    registry: ControllerRegistry = request.app.state.controllers
    return await registry.get(x_emulator_session)


def _state_body(controller: EmulatorController) -> dict:
    state = controller.state
    return {
        "context": state.context.model_dump(mode="json") if state.context else None,
        "devices": [d.model_dump(mode="json") for d in state.devices],
        "gateways": [g.model_dump(mode="json") for g in state.gateways],
        "sites": [s.model_dump(mode="json") for s in state.sites],
        "last_pull_summary": state.last_pull_summary,
        "sync_run_phase": controller.tracker.phase.value,
    }


def _push_body(outcome: SyncOutcome) -> dict:
    extra = {
        "outcome": outcome.kind.value,
        "summary": outcome.summary,
        "errors": outcome.errors,
        "sync_run_id": outcome.sync_run_id,
    }
    if outcome.ok:
        return success_envelope(outcome.response.model_dump(mode="json") if outcome.response else None, **extra)

    if outcome.validation is not None:
        return error_envelope(
            outcome.display_errors(),
            error_code=outcome.validation.blocking_errors[0].code,
            hint="Fix the listed fields and try again.",
            validation=outcome.validation.model_dump(mode="json"),
            **extra
        )
    if outcome.error is not None:
        return envelope_from_error(outcome.error, **extra)
    return error_envelope(
        outcome.display_errors(),
        error_code="SYNC_PARTIAL" if outcome.kind == SyncOutcomeKind.PARTIAL else "UPSTREAM_FAILURE",
        hint="Some entities were not synced. Fix the listed errors and push again; the retry reuses the same sync_run_id.",
        **extra
    )


@router.get("/state")
async def get_state(controller: EmulatorController = Depends(get_controller)):
    return success_envelope(_state_body(controller))


@router.post("/pull")
async def pull(payload: SyncPullRequest, controller: EmulatorController = Depends(get_controller)):
    """
    Pull org state and replace local devices/gateways

    A failed pull leaves local state untouched. Credential backfill for
    devices without keys runs in the background afterwards.
    """
    result = await controller.select_organization(
        payload.org_id,
        selected_user_id=payload.selected_user_id,
        user_default_site_id=payload.user_default_site_id,
    )
    if not result.ok:
        return envelope_from_error(result.error)
    return success_envelope(_state_body(controller), request_id=result.snapshot.request_id)


@router.post("/push")
async def push(controller: EmulatorController = Depends(get_controller)):
    """Send local state to the platform; a failed push keeps its sync_run_id for the retry"""
    outcome = await controller.push()
    return _push_body(outcome)


@router.post("/restore")
async def restore(controller: EmulatorController = Depends(get_controller)):
    restored = await controller.restore_session()
    return success_envelope(_state_body(controller), restored=restored)


@router.patch("/context")
async def update_context(payload: SyncContextUpdate, controller: EmulatorController = Depends(get_controller)):
    await controller.update_context(site_id=payload.site_id, selected_user_id=payload.selected_user_id)
    return success_envelope(_state_body(controller))

# ============================================================
# Local edits
# ============================================================

@router.post("/devices")
async def add_device(payload: Device, controller: EmulatorController = Depends(get_controller)):
    device = await controller.add_device(payload)
    return success_envelope(device.model_dump(mode="json"))


@router.patch("/devices/{device_id}")
async def update_device(device_id: str, payload: DeviceEdit, controller: EmulatorController = Depends(get_controller)):
    """Credential changes on locked devices need manual_override"""
    device = await controller.update_device(device_id, payload)
    return success_envelope(device.model_dump(mode="json"))


@router.delete("/devices/{device_id}")
async def remove_device(device_id: str, controller: EmulatorController = Depends(get_controller)):
    await controller.remove_device(device_id)
    return success_envelope({"id": device_id})


@router.post("/gateways")
async def add_gateway(payload: Gateway, controller: EmulatorController = Depends(get_controller)):
    gateway = await controller.add_gateway(payload)
    return success_envelope(gateway.model_dump(mode="json"))


@router.delete("/gateways/{gateway_id}")
async def remove_gateway(gateway_id: str, controller: EmulatorController = Depends(get_controller)):
    await controller.remove_gateway(gateway_id)
    return success_envelope({"id": gateway_id})
