"""
Webhook Ingestion Normalizer

Accepts TTN uplinks in the canonical v3 shape and the flattened shape the
emulator posts directly, resolves the owning org/unit and fans the reading
out to history, current-state and legacy tables.

Write order:
1. sensor_uplinks (raw history, always)
2. unit_telemetry (current state, when a unit is known)
3. sensor_readings / door_events (legacy compatibility)

Each write is independent and best effort. An uplink nobody claims is
still recorded and answered with 202 "unassigned".
"""
from datetime import datetime
from typing import Optional, Dict, Any, List, Mapping

import asyncpg
import structlog
from pydantic import BaseModel, Field

from .exceptions import AuthError, DatabaseError
from .metrics import MetricsTimer, track_uplink, track_uplink_write_failure, uplink_processing_duration_seconds
from .models import DoorState
from .utils import first_present, generate_request_id, parse_timestamp, utcnow
from .webhook_auth import WEBHOOK_SECRET_HEADER, verify_webhook_secret

logger = structlog.get_logger(__name__)

TEMPERATURE_PORT = 1
DOOR_PORT = 2

BATTERY_KEYS = ("battery_level", "battery", "batt", "vbat")
DOOR_KEYS = ("door_status", "door", "open")

DOOR_OPEN_VALUES = {"open", "true", "1"}
DOOR_CLOSED_VALUES = {"closed", "false", "0"}

DB_ERRORS = (asyncpg.PostgresError, DatabaseError, OSError)


# ============================================================
# Normalization
# ============================================================

class NormalizedUplink(BaseModel):
    """One internal form for every accepted payload shape"""
    dev_eui: Optional[str] = None
    device_id: Optional[str] = None
    application_id: Optional[str] = None
    f_port: int = 0
    decoded: Dict[str, Any] = Field(default_factory=dict)
    rssi_dbm: Optional[float] = None
    snr_db: Optional[float] = None
    battery_pct: Optional[float] = None
    received_at: datetime
    org_id: Optional[str] = None
    site_id: Optional[str] = None
    unit_id: Optional[str] = None


def normalize_door_state(value: Any) -> DoorState:
    """
    Map boolean and string door encodings onto open/closed/unknown

    Examples:
        True, "open", "OPEN", "true", "1" -> DoorState.OPEN
        False, "closed", "false", "0" -> DoorState.CLOSED
        "ajar", None, 7 -> DoorState.UNKNOWN
    """
    if isinstance(value, bool):
        return DoorState.OPEN if value else DoorState.CLOSED
    if isinstance(value, (str, int)):
        text = str(value).strip().lower()
        if text in DOOR_OPEN_VALUES:
            return DoorState.OPEN
        if text in DOOR_CLOSED_VALUES:
            return DoorState.CLOSED
    return DoorState.UNKNOWN


def celsius_to_fahrenheit(celsius: float) -> float:
    return celsius * 9 / 5 + 32


def _as_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _as_int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def normalize_uplink(payload: Dict[str, Any]) -> NormalizedUplink:
    """
    Collapse canonical and flattened payloads into NormalizedUplink

    Canonical names are tried first, then snake_case/camelCase aliases.
    """
    ids = first_present(payload, "end_device_ids", "endDeviceIds") or {}
    app_ids = first_present(ids, "application_ids", "applicationIds") or {}
    uplink = first_present(payload, "uplink_message", "uplinkMessage") or {}

    decoded = (
        first_present(uplink, "decoded_payload", "decodedPayload")
        or first_present(payload, "decoded_payload", "decodedPayload", "payload", "data")
        or {}
    )
    if not isinstance(decoded, dict):
        decoded = {}

    rx_metadata = first_present(uplink, "rx_metadata", "rxMetadata")
    if not isinstance(rx_metadata, list):
        rx_metadata = []
    first_rx = rx_metadata[0] if rx_metadata and isinstance(rx_metadata[0], dict) else {}

    dev_eui = first_present(ids, "dev_eui", "devEui") or first_present(payload, "dev_eui", "devEui", "deviceEui")

    rssi = first_present(first_rx, "rssi") if first_rx else first_present(payload, "rssi")
    if rssi is None:
        rssi = decoded.get("signal_strength")
    snr = first_present(first_rx, "snr") if first_rx else first_present(payload, "snr")

    return NormalizedUplink(
        dev_eui=str(dev_eui).upper() if dev_eui else None,
        device_id=first_present(ids, "device_id", "deviceId") or first_present(payload, "device_id", "deviceId"),
        application_id=(
            first_present(app_ids, "application_id", "applicationId")
            or first_present(payload, "application_id", "applicationId")
        ),
        f_port=_as_int(first_present(uplink, "f_port", "fPort") or first_present(payload, "f_port", "fPort", "port")),
        decoded=decoded,
        rssi_dbm=_as_float(rssi),
        snr_db=_as_float(snr),
        battery_pct=_as_float(first_present(decoded, *BATTERY_KEYS)),
        received_at=parse_timestamp(first_present(payload, "received_at", "receivedAt")) or utcnow(),
        org_id=first_present(decoded, "org_id", "orgId") or first_present(payload, "org_id", "orgId"),
        site_id=first_present(decoded, "site_id", "siteId") or first_present(payload, "site_id", "siteId"),
        unit_id=first_present(decoded, "unit_id", "unitId") or first_present(payload, "unit_id", "unitId"),
    )


# ============================================================
# Ingestion
# ============================================================

class IngestResult(BaseModel):
    """HTTP status and body for the webhook response"""
    status_code: int
    body: Dict[str, Any]


class Resolution(BaseModel):
    org_id: Optional[str] = None
    site_id: Optional[str] = None
    unit_id: Optional[str] = None
    sensor_registered: bool = False
    resolved_by: Optional[str] = None  # sensor | application | payload


class WebhookIngestor:
    """
    Turns uplinks into database writes

    The repository provides get_webhook_secret, find_active_sensor,
    find_org_for_application, insert_uplink, upsert_unit_telemetry,
    insert_sensor_reading and insert_door_event.
    """

    def __init__(self, repository, require_secret: bool = False):
        self.repository = repository
        self.require_secret = require_secret

    async def ingest(self, payload: Dict[str, Any], headers: Mapping[str, str]) -> IngestResult:
        with MetricsTimer(uplink_processing_duration_seconds):
            result = await self._ingest(payload, headers)
        track_uplink(str(result.status_code))
        return result

    async def _ingest(self, payload: Dict[str, Any], headers: Mapping[str, str]) -> IngestResult:
        request_id = generate_request_id("uplink")
        uplink = normalize_uplink(payload if isinstance(payload, dict) else {})
        log = logger.bind(
            request_id=request_id,
            dev_eui=uplink.dev_eui,
            f_port=uplink.f_port,
            application_id=uplink.application_id,
        )
        log.info("uplink_received", device_id=uplink.device_id)

        try:
            await verify_webhook_secret(
                headers.get(WEBHOOK_SECRET_HEADER),
                uplink.application_id,
                self.repository,
                require_secret=self.require_secret,
            )
        except AuthError as e:
            return IngestResult(
                status_code=401,
                body={"ok": False, "error": e.message, "error_code": e.error_code, "request_id": request_id},
            )

        if not uplink.dev_eui:
            log.warning("uplink_missing_dev_eui")
            return IngestResult(
                status_code=400,
                body={
                    "ok": False,
                    "error": "Missing device EUI",
                    "error_code": "MISSING_DEV_EUI",
                    "request_id": request_id,
                },
            )

        resolution = await self._resolve(uplink, log)
        failed_writes: List[str] = []

        await self._write("sensor_uplinks", failed_writes, log, self.repository.insert_uplink({
            "org_id": resolution.org_id,
            "unit_id": resolution.unit_id,
            "dev_eui": uplink.dev_eui,
            "f_port": uplink.f_port,
            "payload_json": uplink.decoded,
            "rssi_dbm": uplink.rssi_dbm,
            "snr_db": uplink.snr_db,
            "battery_pct": uplink.battery_pct,
            "received_at": uplink.received_at,
        }))

        if not resolution.org_id:
            log.warning("uplink_unassigned")
            return IngestResult(
                status_code=202,
                body={
                    "ok": True,
                    "status": "unassigned",
                    "message": "DevEUI not registered - uplink logged for later assignment",
                    "request_id": request_id,
                },
            )

        if resolution.unit_id:
            await self._write(
                "unit_telemetry", failed_writes, log,
                self.repository.upsert_unit_telemetry(resolution.unit_id, telemetry_fields(uplink, resolution.org_id)),
            )

        if uplink.f_port == TEMPERATURE_PORT:
            await self._write("sensor_readings", failed_writes, log, self.repository.insert_sensor_reading({
                "device_serial": uplink.dev_eui,
                "temperature": _as_float(uplink.decoded.get("temperature")),
                "humidity": _as_float(uplink.decoded.get("humidity")),
                "battery_level": uplink.battery_pct,
                "signal_strength": uplink.rssi_dbm,
                "unit_id": resolution.unit_id,
                "reading_type": uplink.decoded.get("reading_type") or "scheduled",
            }))
        elif uplink.f_port == DOOR_PORT:
            await self._write("door_events", failed_writes, log, self.repository.insert_door_event({
                "device_serial": uplink.dev_eui,
                "door_status": normalize_door_state(first_present(uplink.decoded, *DOOR_KEYS)).value,
                "battery_level": uplink.battery_pct,
                "signal_strength": uplink.rssi_dbm,
                "unit_id": resolution.unit_id,
            }))

        log.info(
            "uplink_processed",
            org_id=resolution.org_id,
            unit_id=resolution.unit_id,
            resolved_by=resolution.resolved_by,
            failed_writes=failed_writes,
        )
        body = {
            "ok": True,
            "org_id": resolution.org_id,
            "unit_id": resolution.unit_id,
            "f_port": uplink.f_port,
            "sensor_registered": resolution.sensor_registered,
            "request_id": request_id,
        }
        if failed_writes:
            body["status"] = "partial"
            body["failed_writes"] = failed_writes
        return IngestResult(status_code=200, body=body)

    async def _resolve(self, uplink: NormalizedUplink, log) -> Resolution:
        """Registered sensor, then application mapping, then payload hints"""
        try:
            sensor = await self.repository.find_active_sensor(uplink.dev_eui)
        except DB_ERRORS as e:
            log.error("sensor_lookup_failed", error=str(e))
            sensor = None

        if sensor and sensor.get("org_id"):
            return Resolution(
                org_id=str(sensor["org_id"]),
                site_id=_str_or_none(sensor.get("site_id")),
                unit_id=_str_or_none(sensor.get("unit_id")),
                sensor_registered=True,
                resolved_by="sensor",
            )

        if uplink.application_id:
            try:
                org_id = await self.repository.find_org_for_application(uplink.application_id)
            except DB_ERRORS as e:
                log.error("application_lookup_failed", error=str(e))
                org_id = None
            if org_id:
                return Resolution(
                    org_id=org_id,
                    site_id=uplink.site_id,
                    unit_id=uplink.unit_id,
                    sensor_registered=bool(sensor),
                    resolved_by="application",
                )

        if uplink.org_id:
            return Resolution(
                org_id=uplink.org_id,
                site_id=uplink.site_id,
                unit_id=uplink.unit_id,
                sensor_registered=bool(sensor),
                resolved_by="payload",
            )

        return Resolution(sensor_registered=bool(sensor))

    @staticmethod
    async def _write(table: str, failed: List[str], log, operation) -> None:
        try:
            await operation
        except DB_ERRORS as e:
            log.warning("uplink_write_failed", table=table, error=str(e))
            track_uplink_write_failure(table)
            failed.append(table)


def telemetry_fields(uplink: NormalizedUplink, org_id: str) -> Dict[str, Any]:
    """
    Current-state columns for unit_telemetry

    Shared fields always; port 1 adds temperature/humidity, port 2 adds door
    state. Other ports carry shared fields only.
    """
    now = utcnow()
    fields: Dict[str, Any] = {
        "org_id": org_id,
        "battery_pct": uplink.battery_pct,
        "rssi_dbm": uplink.rssi_dbm,
        "snr_db": uplink.snr_db,
        "last_uplink_at": now,
        "updated_at": now,
    }

    if uplink.f_port == TEMPERATURE_PORT:
        temp_f = _as_float(uplink.decoded.get("temp_f"))
        if temp_f is None:
            temp_c = _as_float(uplink.decoded.get("temperature"))
            temp_f = celsius_to_fahrenheit(temp_c) if temp_c is not None else None
        humidity = _as_float(uplink.decoded.get("humidity"))
        if temp_f is not None:
            fields["last_temp_f"] = temp_f
        if humidity is not None:
            fields["last_humidity"] = humidity

    elif uplink.f_port == DOOR_PORT:
        raw = first_present(uplink.decoded, *DOOR_KEYS)
        if raw is not None:
            fields["door_state"] = normalize_door_state(raw).value
            fields["last_door_event_at"] = now

    return fields


def _str_or_none(value: Any) -> Optional[str]:
    return str(value) if value is not None else None
