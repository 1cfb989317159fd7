"""
Credential Backfill Agent

Requests OTAA credentials for pulled devices that arrived without a JoinEUI
or AppKey. Best effort: failures are logged, never raised, and devices
without credentials stay usable for non-join testing.
"""
from typing import List, Any, Optional, Iterable

import structlog

from .exceptions import EmulatorException
from .metrics import track_backfill
from .models import Device, BackfillResult
from .platform_client import PlatformClient
from .utils import first_present, normalize_hex_key

logger = structlog.get_logger(__name__)

BACKFILL_ENDPOINT = "backfill-credentials"


def needs_backfill(device: Device) -> bool:
    return not device.join_eui or not device.app_key


def devices_needing_backfill(devices: Iterable[Device]) -> List[Device]:
    return [d for d in devices if needs_backfill(d)]


def _result_items(body: Any) -> List[dict]:
    if isinstance(body, list):
        return [item for item in body if isinstance(item, dict)]
    if isinstance(body, dict):
        for key in ("results", "devices", "data"):
            if isinstance(body.get(key), list):
                return [item for item in body[key] if isinstance(item, dict)]
    return []


class CredentialBackfillAgent:
    def __init__(self, client: Optional[PlatformClient] = None):
        self.client = client or PlatformClient()

    async def backfill(self, org_id: str, devices: List[Device]) -> List[BackfillResult]:
        """
        Ask the platform to generate or return credentials for devices

        Returns only devices that came back with a well-formed JoinEUI and
        AppKey.
        """
        if not devices:
            return []

        log = logger.bind(org_id=org_id, requested=len(devices))
        log.info("backfill_started", dev_eui_last4=[d.dev_eui[-4:] for d in devices])

        payload = {
            "org_id": org_id,
            "devices": [{"id": d.id, "devEui": d.dev_eui} for d in devices],
        }

        try:
            response = await self.client.post(BACKFILL_ENDPOINT, endpoint=BACKFILL_ENDPOINT, payload=payload)
        except EmulatorException as e:
            log.warning("backfill_failed", error_code=e.error_code, error=e.message)
            track_backfill("failed", len(devices))
            return []

        if not response.is_success:
            log.warning(
                "backfill_http_error",
                status_code=response.status_code,
                body_snippet=response.text[:200]
            )
            track_backfill("failed", len(devices))
            return []

        requested = {d.id: d for d in devices}
        results = []
        for item in _result_items(response.json()):
            device_id = item.get("id") or item.get("sensor_id")
            if device_id not in requested:
                continue
            join_eui = normalize_hex_key(first_present(item, "join_eui", "joinEui"), 16)
            app_key = normalize_hex_key(first_present(item, "app_key", "appKey"), 32)
            if not join_eui or not app_key:
                log.warning("backfill_device_incomplete", device_id=device_id)
                continue
            results.append(BackfillResult(
                id=device_id,
                dev_eui=requested[device_id].dev_eui,
                join_eui=join_eui,
                app_key=app_key,
            ))

        track_backfill("resolved", len(results))
        if len(devices) > len(results):
            track_backfill("failed", len(devices) - len(results))

        log.info(
            "backfill_complete",
            resolved=len(results),
            failed=len(devices) - len(results)
        )
        return results
