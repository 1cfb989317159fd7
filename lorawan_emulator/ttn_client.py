"""
HTTP client for The Things Network v3 device registry

TTN splits an end device across four server roles:
- Identity Server (IS): device identity, always on the eu1 host for TTN Cloud
- Network Server (NS), Application Server (AS), Join Server (JS): on the
  regional cluster host

Every call returns a StepResult. Transport failures become http_status=0;
nothing here raises past a step.
"""
import base64
import re
from datetime import datetime, timezone
from typing import Optional, Any, Dict, List
from urllib.parse import urlsplit

import httpx
import structlog
from pydantic import BaseModel

from .metrics import track_ttn_step

logger = structlog.get_logger(__name__)

STEP_BODY_LIMIT = 500

LORAWAN_VERSION = "MAC_V1_0_3"
LORAWAN_PHY_VERSION = "PHY_V1_0_3_REV_A"

FREQUENCY_PLANS = {
    "nam1": "US_902_928_FSB_2",
    "eu1": "EU_863_870_TTN",
    "au1": "AU_915_928_FSB_2",
}

# ABP sessions do not negotiate keys; any well-formed 16-byte key works
DUMMY_SESSION_KEY = base64.b64encode(bytes([1] * 16)).decode()
ABP_DEV_ADDR_PREFIX = "260C"

MAC_DEFAULTS = {
    "adr_ack_delay_exponent": {"value": "ADR_ACK_DELAY_32"},
    "adr_ack_limit_exponent": {"value": "ADR_ACK_LIMIT_64"},
    "rx1_delay": {"value": "RX_DELAY_1"},
}

CLUSTER_HOST_PATTERN = re.compile(r"^(?:console\.)?(nam1|eu1|au1)\.cloud\.thethings\.network$")


def frequency_plan_for(cluster: str) -> str:
    """Fixed plan per cluster region; unknown clusters get the EU plan"""
    return FREQUENCY_PLANS.get(cluster, FREQUENCY_PLANS["eu1"])


def cluster_host(cluster: str) -> str:
    return f"{cluster}.cloud.thethings.network"


def parse_cluster_from_url(url: Optional[str]) -> Optional[str]:
    """
    Extract the cluster from a TTN host or console URL

    Examples:
        "https://nam1.cloud.thethings.network/api/v3" -> "nam1"
        "https://console.eu1.cloud.thethings.network/console/" -> "eu1"
        "https://example.com" -> None
    """
    if not url:
        return None
    host = urlsplit(url if "//" in url else f"//{url}").hostname or ""
    match = CLUSTER_HOST_PATTERN.match(host)
    return match.group(1) if match else None


def abp_dev_addr(dev_eui: str) -> str:
    """Deterministic DevAddr: 260C + last 4 hex digits of the EUI"""
    return ABP_DEV_ADDR_PREFIX + dev_eui.upper()[-4:]


class StepResult(BaseModel):
    """Outcome of one TTN call, kept in the per-device trace"""
    name: str
    http_status: int
    ok: bool
    body_snippet: str = ""

    @property
    def not_found(self) -> bool:
        return self.http_status == 404

    @property
    def conflict(self) -> bool:
        return self.http_status == 409

    @property
    def forbidden(self) -> bool:
        return self.http_status in (401, 403)

    @property
    def transport_error(self) -> bool:
        return self.http_status == 0


class TTNClient:
    """
    One method per server role and verb

    Usage:
        async with TTNClient(api_key, "nam1", "my-app") as ttn:
            step = await ttn.as_get("sensor-0011223344556677")
    """

    def __init__(
        self,
        api_key: str,
        cluster: str,
        application_id: str,
        identity_host: str = "eu1.cloud.thethings.network",
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.cluster = cluster
        self.application_id = application_id
        self.identity_host = identity_host
        self.timeout = timeout
        self.transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self) -> "TTNClient":
        self._client = httpx.AsyncClient(
            timeout=self.timeout,
            transport=self.transport,
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    # ============================================================
    # URLs
    # ============================================================

    @property
    def identity_base(self) -> str:
        return f"https://{self.identity_host}/api/v3"

    @property
    def cluster_base(self) -> str:
        return f"https://{cluster_host(self.cluster)}/api/v3"

    def application_url(self) -> str:
        return f"{self.identity_base}/applications/{self.application_id}"

    def is_devices_url(self) -> str:
        return f"{self.application_url()}/devices"

    def is_device_url(self, device_id: str) -> str:
        return f"{self.is_devices_url()}/{device_id}"

    def role_device_url(self, role: str, device_id: str) -> str:
        return f"{self.cluster_base}/{role}/applications/{self.application_id}/devices/{device_id}"

    # ============================================================
    # Transport
    # ============================================================

    async def _call(self, name: str, method: str, url: str, payload: Optional[Dict[str, Any]] = None) -> StepResult:
        if self._client is None:
            raise RuntimeError("TTNClient must be used as an async context manager")

        try:
            response = await self._client.request(method, url, json=payload)
        except httpx.HTTPError as e:
            logger.warning("ttn_step_transport_error", step=name, method=method, error=str(e))
            track_ttn_step(name, False)
            return StepResult(
                name=name,
                http_status=0,
                ok=False,
                body_snippet=f"Fetch error: {e}"[:STEP_BODY_LIMIT],
            )

        ok = response.is_success
        step = StepResult(
            name=name,
            http_status=response.status_code,
            ok=ok,
            body_snippet=response.text[:STEP_BODY_LIMIT],
        )
        logger.info(
            "ttn_step",
            step=name,
            method=method,
            http_status=response.status_code,
            ok=ok,
            cluster=self.cluster,
            application_id=self.application_id,
        )
        track_ttn_step(name, ok)
        return step

    # ============================================================
    # Payloads
    # ============================================================

    def _ids(self, device_id: str, dev_eui: str, join_eui: Optional[str] = None) -> Dict[str, Any]:
        ids = {
            "device_id": device_id,
            "dev_eui": dev_eui.upper(),
            "application_ids": {"application_id": self.application_id},
        }
        if join_eui:
            ids["join_eui"] = join_eui.upper()
        return ids

    def identity_payload(
        self,
        device_id: str,
        dev_eui: str,
        name: Optional[str] = None,
        join_eui: Optional[str] = None,
        app_key: Optional[str] = None,
        supports_join: bool = True,
    ) -> Dict[str, Any]:
        host = cluster_host(self.cluster)
        end_device = {
            "ids": self._ids(device_id, dev_eui, join_eui if supports_join else None),
            "name": name or device_id,
            "description": f"Registered by lorawan-emulator at {datetime.now(timezone.utc).isoformat()}",
            "lorawan_version": LORAWAN_VERSION,
            "lorawan_phy_version": LORAWAN_PHY_VERSION,
            "frequency_plan_id": frequency_plan_for(self.cluster),
            "supports_join": supports_join,
            "network_server_address": host,
            "application_server_address": host,
        }
        paths = [
            "ids.device_id",
            "ids.dev_eui",
            "name",
            "description",
            "lorawan_version",
            "lorawan_phy_version",
            "frequency_plan_id",
            "supports_join",
            "network_server_address",
            "application_server_address",
        ]
        if supports_join:
            end_device["join_server_address"] = host
            end_device["root_keys"] = {"app_key": {"key": (app_key or "").upper()}}
            paths += ["ids.join_eui", "join_server_address", "root_keys.app_key.key"]
        return {"end_device": end_device, "field_mask": {"paths": paths}}

    # ============================================================
    # Identity Server
    # ============================================================

    async def get_application(self) -> StepResult:
        return await self._call("application_check", "GET", self.application_url())

    async def is_create(self, device_id: str, dev_eui: str, name: Optional[str] = None,
                        join_eui: Optional[str] = None, app_key: Optional[str] = None,
                        supports_join: bool = True, step_name: str = "is_create") -> StepResult:
        payload = self.identity_payload(device_id, dev_eui, name, join_eui, app_key, supports_join)
        return await self._call(step_name, "POST", self.is_devices_url(), payload)

    async def is_get(self, device_id: str, step_name: str = "is_get") -> StepResult:
        return await self._call(step_name, "GET", self.is_device_url(device_id))

    async def is_delete(self, device_id: str) -> StepResult:
        return await self._call("is_delete", "DELETE", self.is_device_url(device_id))

    # ============================================================
    # Network Server
    # ============================================================

    async def ns_register_otaa(self, device_id: str, dev_eui: str, join_eui: str) -> StepResult:
        payload = {
            "end_device": {
                "ids": self._ids(device_id, dev_eui, join_eui),
                "supports_join": True,
                "lorawan_version": LORAWAN_VERSION,
                "lorawan_phy_version": LORAWAN_PHY_VERSION,
                "frequency_plan_id": frequency_plan_for(self.cluster),
            },
            "field_mask": {
                "paths": [
                    "supports_join",
                    "lorawan_version",
                    "lorawan_phy_version",
                    "frequency_plan_id",
                ],
            },
        }
        return await self._call("ns_register", "PUT", self.role_device_url("ns", device_id), payload)

    async def ns_set_abp_session(self, device_id: str, dev_eui: str, dev_addr: str) -> StepResult:
        payload = {
            "end_device": {
                "ids": self._ids(device_id, dev_eui),
                "supports_join": False,
                "multicast": False,
                "lorawan_version": LORAWAN_VERSION,
                "lorawan_phy_version": LORAWAN_PHY_VERSION,
                "frequency_plan_id": frequency_plan_for(self.cluster),
                "session": {
                    "dev_addr": dev_addr,
                    "keys": {"f_nwk_s_int_key": {"key": DUMMY_SESSION_KEY}},
                },
                "mac_state": {
                    "lorawan_version": LORAWAN_VERSION,
                    "current_parameters": dict(MAC_DEFAULTS),
                    "desired_parameters": dict(MAC_DEFAULTS),
                },
            },
            "field_mask": {
                "paths": [
                    "supports_join",
                    "multicast",
                    "lorawan_version",
                    "lorawan_phy_version",
                    "frequency_plan_id",
                    "session",
                    "mac_state",
                ],
            },
        }
        return await self._call("ns_session", "PUT", self.role_device_url("ns", device_id), payload)

    async def ns_delete(self, device_id: str) -> StepResult:
        return await self._call("ns_delete", "DELETE", self.role_device_url("ns", device_id))

    # ============================================================
    # Join Server
    # ============================================================

    async def js_register(self, device_id: str, dev_eui: str, join_eui: str, app_key: str) -> StepResult:
        host = cluster_host(self.cluster)
        payload = {
            "end_device": {
                "ids": self._ids(device_id, dev_eui, join_eui),
                "network_server_address": host,
                "application_server_address": host,
                "root_keys": {"app_key": {"key": app_key.upper()}},
            },
            "field_mask": {
                "paths": [
                    "network_server_address",
                    "application_server_address",
                    "root_keys.app_key.key",
                ],
            },
        }
        return await self._call("js_register", "PUT", self.role_device_url("js", device_id), payload)

    async def js_delete(self, device_id: str) -> StepResult:
        return await self._call("js_delete", "DELETE", self.role_device_url("js", device_id))

    # ============================================================
    # Application Server
    # ============================================================

    async def as_get(self, device_id: str, step_name: str = "as_verify") -> StepResult:
        return await self._call(step_name, "GET", self.role_device_url("as", device_id))

    async def as_register(self, device_id: str, dev_eui: str, join_eui: Optional[str] = None) -> StepResult:
        paths: List[str] = ["ids.device_id", "ids.dev_eui"]
        if join_eui:
            paths.append("ids.join_eui")
        payload = {
            "end_device": {"ids": self._ids(device_id, dev_eui, join_eui)},
            "field_mask": {"paths": paths},
        }
        return await self._call("as_repair", "PUT", self.role_device_url("as", device_id), payload)

    async def as_set_abp_session(self, device_id: str, dev_eui: str, dev_addr: str) -> StepResult:
        payload = {
            "end_device": {
                "ids": self._ids(device_id, dev_eui),
                "session": {
                    "dev_addr": dev_addr,
                    "keys": {"app_s_key": {"key": DUMMY_SESSION_KEY}},
                },
            },
            "field_mask": {"paths": ["session"]},
        }
        return await self._call("as_session", "PUT", self.role_device_url("as", device_id), payload)

    async def as_delete(self, device_id: str) -> StepResult:
        return await self._call("as_delete", "DELETE", self.role_device_url("as", device_id))
