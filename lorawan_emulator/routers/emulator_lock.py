"""
Emulator lock endpoint

Single POST with an action field, matching how the emulator UI drives the
lock: acquire on start, heartbeat every few seconds, release on exit.
"""
from fastapi import APIRouter, Depends, Request

from ..emulator_lock import EmulatorLock
from ..models import EmulatorLockRequest

router = APIRouter(prefix="/api/v1", tags=["Emulator"])


def get_emulator_lock(request: Request) -> EmulatorLock:
    return request.app.state.emulator_lock


@router.post("/emulator-lock")
async def emulator_lock(payload: EmulatorLockRequest, lock: EmulatorLock = Depends(get_emulator_lock)):
    result = await lock.handle(
        payload.action,
        payload.org_id,
        user_id=payload.user_id,
        session_id=payload.session_id,
        device_info=payload.device_info,
        force=payload.force,
    )
    return result.model_dump(mode="json", exclude_none=True)
