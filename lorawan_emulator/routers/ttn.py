"""
TTN provisioning endpoints

Expected failures (bad input, missing settings, per-device TTN errors) come
back as HTTP 200 with ok=false so clients parse one body shape.
"""
from fastapi import APIRouter, Depends, Request

from ..envelope import success_envelope, error_envelope, hint_for
from ..models import ProvisionRequest, PreflightRequest, DeleteDeviceRequest
from ..ttn_provisioning import TTNProvisioner, BatchProvisionResult, ProvisionStatus

router = APIRouter(prefix="/api/v1/ttn", tags=["TTN"])


def get_provisioner(request: Request) -> TTNProvisioner:
    return request.app.state.provisioner


def _batch_body(result: BatchProvisionResult) -> dict:
    body = result.model_dump(mode="json")
    if not result.ok:
        first = next(r for r in result.results if r.status == ProvisionStatus.FAILED)
        body["error"] = f"{result.summary.failed} of {result.summary.total} devices failed: {first.error}"
        body["error_code"] = first.error_code
        body["hint"] = first.hint or hint_for(error_code=first.error_code)
    return body


@router.post("/provision")
async def provision_otaa(payload: ProvisionRequest, provisioner: TTNProvisioner = Depends(get_provisioner)):
    """
    Register OTAA devices (IS -> NS -> JS -> AS verify/repair)

    Devices are processed one after another; each result carries its step
    trace.
    """
    result = await provisioner.provision_batch(payload, mode="otaa")
    return _batch_body(result)


@router.post("/provision-abp")
async def provision_abp(payload: ProvisionRequest, provisioner: TTNProvisioner = Depends(get_provisioner)):
    """Delete and recreate devices as ABP with an installed session"""
    result = await provisioner.provision_batch(payload, mode="abp")
    return _batch_body(result)


@router.post("/set-abp")
async def set_abp(payload: ProvisionRequest, provisioner: TTNProvisioner = Depends(get_provisioner)):
    """Install ABP sessions on devices the Identity Server already knows"""
    result = await provisioner.provision_batch(payload, mode="set_abp")
    return _batch_body(result)


@router.post("/preflight")
async def preflight(payload: PreflightRequest, provisioner: TTNProvisioner = Depends(get_provisioner)):
    result = await provisioner.preflight(payload)
    return result.model_dump(mode="json")


@router.post("/delete")
async def delete_device(payload: DeleteDeviceRequest, provisioner: TTNProvisioner = Depends(get_provisioner)):
    result = await provisioner.delete(payload)
    data = result.model_dump(mode="json")
    if not result.ok:
        return error_envelope(
            result.error,
            error_code=result.error_code,
            hint=result.hint,
            data=data,
        )

    already_deleted = all(step.not_found for step in result.steps)
    return success_envelope(
        data,
        message="Device was already deleted" if already_deleted else "Device deleted from TTN",
        already_deleted=already_deleted,
    )
