"""
Pydantic models for emulator state, remote payloads and API requests
All models in one place for simplicity
"""
from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, List, Dict, Any
from datetime import datetime
from enum import Enum

from .utils import normalize_dev_eui, normalize_gateway_eui

# ============================================================
# Enums
# ============================================================

class DeviceType(str, Enum):
    """Simulated sensor types"""
    TEMPERATURE = "temperature"
    DOOR = "door"


class CredentialSource(str, Enum):
    """Where a device's OTAA credentials came from"""
    PLATFORM_PULL = "platform_pull"
    PLATFORM_GENERATED = "platform_generated"
    LOCAL_GENERATED = "local_generated"
    MANUAL_OVERRIDE = "manual_override"


class DoorState(str, Enum):
    OPEN = "open"
    CLOSED = "closed"
    UNKNOWN = "unknown"


class ActivationMode(str, Enum):
    OTAA = "otaa"
    ABP = "abp"

# ============================================================
# Local entities
# ============================================================

class Device(BaseModel):
    """One simulated LoRaWAN end device"""
    id: str
    name: str = ""
    dev_eui: str
    join_eui: Optional[str] = None
    app_key: Optional[str] = None
    type: DeviceType = DeviceType.TEMPERATURE
    gateway_id: Optional[str] = None
    site_id: Optional[str] = None
    unit_id: Optional[str] = None
    credential_source: Optional[CredentialSource] = None
    credentials_locked: bool = False

    @property
    def normalized_eui(self) -> Optional[str]:
        return normalize_dev_eui(self.dev_eui)

    @property
    def has_otaa_credentials(self) -> bool:
        return bool(self.join_eui) and bool(self.app_key)


class Gateway(BaseModel):
    id: str
    name: str = ""
    eui: str
    is_online: bool = True

    @property
    def normalized_eui(self) -> Optional[str]:
        return normalize_gateway_eui(self.eui)


class Site(BaseModel):
    id: str
    name: str = ""
    is_default: bool = False


class Unit(BaseModel):
    id: str
    name: str = ""
    site_id: Optional[str] = None


class TTNConfig(BaseModel):
    """Integration config as returned by the platform (keys masked)"""
    enabled: bool = False
    application_id: Optional[str] = None
    cluster: Optional[str] = None
    api_key_last4: Optional[str] = None
    webhook_secret_last4: Optional[str] = None


class OrganizationContext(BaseModel):
    """Currently selected tenant"""
    org_id: str
    org_name: Optional[str] = None
    site_id: Optional[str] = None
    selected_user_id: Optional[str] = None
    ttn_config: Optional[TTNConfig] = None
    context_set_at: Optional[datetime] = None
    last_sync_run_id: Optional[str] = None
    last_sync_summary: Optional[str] = None
    last_sync_version: Optional[int] = None

# ============================================================
# Org-state pull
# ============================================================

class OrgStateSensor(BaseModel):
    """Sensor as delivered by the org-state endpoint"""
    model_config = ConfigDict(extra="ignore")

    id: str
    name: str = ""
    dev_eui: str
    join_eui: Optional[str] = None
    app_key: Optional[str] = None
    type: Optional[str] = None
    gateway_id: Optional[str] = None
    site_id: Optional[str] = None
    unit_id: Optional[str] = None

    @property
    def device_type(self) -> DeviceType:
        return DeviceType.DOOR if (self.type or "").lower() == "door" else DeviceType.TEMPERATURE


class OrgStateGateway(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    name: str = ""
    gateway_eui: str
    is_online: bool = False
    site_id: Optional[str] = None


class OrgSnapshot(BaseModel):
    """Authoritative organization state"""
    model_config = ConfigDict(extra="ignore")

    org_id: str
    org_name: Optional[str] = None
    sync_version: int = 0
    request_id: Optional[str] = None
    sites: List[Site] = Field(default_factory=list)
    sensors: List[OrgStateSensor] = Field(default_factory=list)
    gateways: List[OrgStateGateway] = Field(default_factory=list)
    units: List[Unit] = Field(default_factory=list)
    ttn: Optional[TTNConfig] = None

# ============================================================
# Push sync
# ============================================================

class SyncContext(BaseModel):
    org_id: str
    site_id: Optional[str] = None
    selected_user_id: Optional[str] = None


class SyncGatewayEntity(BaseModel):
    id: str
    name: str
    eui: str
    is_online: bool


class SyncDeviceEntity(BaseModel):
    id: str
    name: str
    dev_eui: str
    join_eui: Optional[str] = None
    app_key: Optional[str] = None
    type: DeviceType
    gateway_id: Optional[str] = None


class SyncEntities(BaseModel):
    gateways: List[SyncGatewayEntity] = Field(default_factory=list)
    devices: List[SyncDeviceEntity] = Field(default_factory=list)


class SyncBundle(BaseModel):
    """Immutable push payload; sync_run_id is the idempotency key"""
    model_config = ConfigDict(frozen=True)

    sync_run_id: str
    initiated_at: datetime
    context: SyncContext
    entities: SyncEntities

    def to_payload(self) -> Dict[str, Any]:
        """Wire form: run id and timestamp travel under metadata"""
        return {
            "metadata": {
                "sync_run_id": self.sync_run_id,
                "initiated_at": self.initiated_at.isoformat(),
                "source_project": "lorawan-emulator",
            },
            "context": self.context.model_dump(),
            "entities": self.entities.model_dump(mode="json"),
        }

# ============================================================
# Credential backfill
# ============================================================

class BackfillResult(BaseModel):
    id: str
    dev_eui: Optional[str] = None
    join_eui: Optional[str] = None
    app_key: Optional[str] = None
    ok: bool = True
    error: Optional[str] = None

# ============================================================
# API requests
# ============================================================

class ProvisionDevice(BaseModel):
    """
    Device reference accepted by the provisioning endpoints

    dev_eui is validated per device during the batch so that one bad entry
    fails alone instead of rejecting the whole request.
    """
    dev_eui: str
    name: Optional[str] = None
    join_eui: Optional[str] = None
    app_key: Optional[str] = None

    @property
    def normalized_eui(self) -> Optional[str]:
        return normalize_dev_eui(self.dev_eui)


class ProvisionRequest(BaseModel):
    org_id: Optional[str] = None
    selected_user_id: Optional[str] = None
    application_id: Optional[str] = None
    cluster: Optional[str] = None
    devices: List[ProvisionDevice] = Field(..., min_length=1)


class PreflightRequest(BaseModel):
    org_id: Optional[str] = None
    selected_user_id: Optional[str] = None
    application_id: Optional[str] = None
    cluster: Optional[str] = None
    detect_cluster_from_url: Optional[str] = None
    devices: List[ProvisionDevice] = Field(default_factory=list)


class DeleteDeviceRequest(BaseModel):
    dev_eui: Optional[str] = None
    org_id: Optional[str] = None
    selected_user_id: Optional[str] = None
    application_id: Optional[str] = None
    cluster: Optional[str] = None


class EmulatorLockRequest(BaseModel):
    action: str = Field(..., pattern="^(acquire|release|heartbeat|check)$")
    org_id: str
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    device_info: Optional[str] = None
    force: bool = False


class SyncPullRequest(BaseModel):
    org_id: Optional[str] = None
    selected_user_id: Optional[str] = None
    user_default_site_id: Optional[str] = None


class SyncContextUpdate(BaseModel):
    site_id: Optional[str] = None
    selected_user_id: Optional[str] = None
