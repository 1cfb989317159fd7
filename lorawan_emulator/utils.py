"""
Utility functions used across the application
Keep these pure functions without side effects
"""
import re
import uuid
from datetime import datetime, timezone
from typing import Optional, Any, Dict
import logging

logger = logging.getLogger(__name__)

EUI_SEPARATORS = re.compile(r"[:\s-]")
EUI_PATTERN = re.compile(r"^[a-f0-9]{16}$")
UUID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$",
    re.IGNORECASE
)

DEVICE_ID_PREFIX = "sensor-"
LEGACY_DEVICE_ID_PREFIX = "eui-"

# ============================================================
# ID Generation
# ============================================================

def generate_request_id(prefix: str = "req") -> str:
    """Generate unique request ID for tracing"""
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def is_valid_uuid(value: Any) -> bool:
    """True for canonical 8-4-4-4-12 UUID strings"""
    return isinstance(value, str) and bool(UUID_PATTERN.match(value.strip()))

# ============================================================
# EUI Normalization
# ============================================================

def normalize_dev_eui(raw: Optional[str]) -> Optional[str]:
    """
    Normalize DevEUI to lowercase hex without separators

    Returns None for anything that is not exactly 16 hex characters once
    colons, dashes and whitespace are removed. Never raises.

    Examples:
        "00:11:22:33:44:55:66:77" -> "0011223344556677"
        "00-11-22-33-44-55-66-77" -> "0011223344556677"
        "E8E1E1000103C3F8" -> "e8e1e1000103c3f8"
        "1234" -> None
    """
    if not raw or not isinstance(raw, str):
        return None

    cleaned = EUI_SEPARATORS.sub("", raw).lower()
    if not EUI_PATTERN.match(cleaned):
        return None
    return cleaned


def normalize_gateway_eui(raw: Optional[str]) -> Optional[str]:
    """
    Normalize Gateway EUI to UPPERCASE hex without separators

    Examples:
        "7076ff0064030456" -> "7076FF0064030456"
        "70:76:ff:00:64:03:04:56" -> "7076FF0064030456"
    """
    normalized = normalize_dev_eui(raw)
    return normalized.upper() if normalized else None


def normalize_hex_key(raw: Optional[str], length: int) -> Optional[str]:
    """Normalize a hex key (JoinEUI=16, AppKey=32) to uppercase, None if malformed"""
    if not raw or not isinstance(raw, str):
        return None
    cleaned = EUI_SEPARATORS.sub("", raw)
    if not re.fullmatch(r"[0-9a-fA-F]{%d}" % length, cleaned):
        return None
    return cleaned.upper()

# ============================================================
# Registry IDs
# ============================================================

def device_registry_id(eui: Optional[str]) -> Optional[str]:
    """
    Canonical TTN device id for an EUI: sensor-{normalized eui}

    Only defined when the EUI normalizes; otherwise None.
    """
    normalized = normalize_dev_eui(eui)
    if normalized is None:
        return None
    return f"{DEVICE_ID_PREFIX}{normalized}"


def upgrade_legacy_device_id(device_id: Optional[str]) -> Optional[str]:
    """
    Rewrite the legacy eui-{eui} scheme to sensor-{eui}

    Ids in any other scheme are returned unchanged. A legacy id whose EUI
    part does not normalize yields None.

    Examples:
        "eui-0011223344556677" -> "sensor-0011223344556677"
        "sensor-0011223344556677" -> "sensor-0011223344556677"
        "eui-xyz" -> None
    """
    if not device_id:
        return device_id
    if device_id.startswith(LEGACY_DEVICE_ID_PREFIX):
        return device_registry_id(device_id[len(LEGACY_DEVICE_ID_PREFIX):])
    return device_id


def is_valid_device_registry_id(device_id: Optional[str]) -> bool:
    """True only for sensor-{16 lowercase hex}"""
    if not device_id or not device_id.startswith(DEVICE_ID_PREFIX):
        return False
    return bool(EUI_PATTERN.match(device_id[len(DEVICE_ID_PREFIX):]))

# ============================================================
# Time
# ============================================================

def utcnow() -> datetime:
    """Timezone-aware UTC now"""
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp (with optional trailing Z) to aware datetime"""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        logger.warning(f"Unparseable timestamp: {value!r}")
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)

# ============================================================
# Payload helpers
# ============================================================

def first_present(data: Optional[Dict[str, Any]], *keys: str) -> Any:
    """
    Return the first non-None value among keys

    Used for payloads that arrive with canonical, snake_case or camelCase
    field names.
    """
    if not isinstance(data, dict):
        return None
    for key in keys:
        value = data.get(key)
        if value is not None:
            return value
    return None


def truncate(text: Optional[str], limit: int) -> str:
    """Bound a body snippet to limit characters"""
    if not text:
        return ""
    return text if len(text) <= limit else text[:limit]
