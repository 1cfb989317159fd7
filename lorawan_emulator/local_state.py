"""
Local State Replacer

After a successful pull the local device and gateway lists are discarded
and rebuilt from the snapshot. Nothing from the previous lists survives.
"""
from typing import Optional, List

import structlog
from pydantic import BaseModel, Field

from .models import (
    Device, Gateway, Site, Unit,
    OrgSnapshot, OrganizationContext, CredentialSource
)
from .org_sync import diff_entities
from .session_store import SessionStore, SessionSnapshot
from .utils import normalize_dev_eui, normalize_gateway_eui, utcnow

logger = structlog.get_logger(__name__)


class AppState(BaseModel):
    """Everything the emulator holds for the selected organization"""
    context: Optional[OrganizationContext] = None
    devices: List[Device] = Field(default_factory=list)
    gateways: List[Gateway] = Field(default_factory=list)
    sites: List[Site] = Field(default_factory=list)
    units: List[Unit] = Field(default_factory=list)
    last_pull_summary: Optional[str] = None

    def to_snapshot(self) -> SessionSnapshot:
        ctx = self.context
        return SessionSnapshot(
            selected_user_id=ctx.selected_user_id,
            org_id=ctx.org_id,
            org_name=ctx.org_name,
            site_id=ctx.site_id,
            ttn_config=ctx.ttn_config,
            devices=self.devices,
            gateways=self.gateways,
            sites=self.sites,
            units=self.units,
            last_sync_version=ctx.last_sync_version,
            last_sync_run_id=ctx.last_sync_run_id,
            last_sync_summary=ctx.last_sync_summary,
            saved_at=utcnow(),
        )

    @classmethod
    def from_snapshot(cls, snapshot: SessionSnapshot) -> "AppState":
        return cls(
            context=OrganizationContext(
                org_id=snapshot.org_id,
                org_name=snapshot.org_name,
                site_id=snapshot.site_id,
                selected_user_id=snapshot.selected_user_id,
                ttn_config=snapshot.ttn_config,
                context_set_at=snapshot.saved_at,
                last_sync_run_id=snapshot.last_sync_run_id,
                last_sync_summary=snapshot.last_sync_summary,
                last_sync_version=snapshot.last_sync_version,
            ),
            devices=snapshot.devices,
            gateways=snapshot.gateways,
            sites=snapshot.sites,
            units=snapshot.units,
        )


def select_site(sites: List[Site], user_default_site_id: Optional[str] = None) -> Optional[str]:
    """
    Pick the working site

    Platform default flag, then the first site in returned order, then the
    user's profile hint, else None (org-level operation).
    """
    for site in sites:
        if site.is_default:
            return site.id
    if sites:
        return sites[0].id
    return user_default_site_id or None


def devices_from_snapshot(snapshot: OrgSnapshot) -> List[Device]:
    devices = []
    for sensor in snapshot.sensors:
        has_credentials = bool(sensor.join_eui) and bool(sensor.app_key)
        devices.append(Device(
            id=sensor.id,
            name=sensor.name,
            dev_eui=normalize_dev_eui(sensor.dev_eui) or sensor.dev_eui,
            join_eui=sensor.join_eui or None,
            app_key=sensor.app_key or None,
            type=sensor.device_type,
            gateway_id=sensor.gateway_id,
            site_id=sensor.site_id,
            unit_id=sensor.unit_id,
            credential_source=CredentialSource.PLATFORM_PULL if has_credentials else None,
            credentials_locked=has_credentials,
        ))
    return devices


def gateways_from_snapshot(snapshot: OrgSnapshot) -> List[Gateway]:
    return [
        Gateway(
            id=gw.id,
            name=gw.name,
            eui=normalize_gateway_eui(gw.gateway_eui) or gw.gateway_eui,
            is_online=gw.is_online,
        )
        for gw in snapshot.gateways
    ]


class LocalStateReplacer:
    """Applies a pulled snapshot to AppState and persists it"""

    def __init__(self, store: Optional[SessionStore] = None):
        self.store = store

    async def apply(
        self,
        state: AppState,
        snapshot: OrgSnapshot,
        selected_user_id: Optional[str] = None,
        user_default_site_id: Optional[str] = None,
    ) -> AppState:
        """
        Full replacement of local entities from snapshot

        Returns the new state; the input state is not mutated.
        """
        devices = devices_from_snapshot(snapshot)
        gateways = gateways_from_snapshot(snapshot)

        device_diff = diff_entities((d.id for d in state.devices), (d.id for d in devices))
        gateway_diff = diff_entities((g.id for g in state.gateways), (g.id for g in gateways))
        summary = f"{device_diff.summary('Devices')}, {gateway_diff.summary('Gateways')}"

        previous = state.context
        context = OrganizationContext(
            org_id=snapshot.org_id,
            org_name=snapshot.org_name,
            site_id=select_site(snapshot.sites, user_default_site_id),
            selected_user_id=selected_user_id or (previous.selected_user_id if previous else None),
            ttn_config=snapshot.ttn,
            context_set_at=utcnow(),
            last_sync_run_id=previous.last_sync_run_id if previous and previous.org_id == snapshot.org_id else None,
            last_sync_summary=previous.last_sync_summary if previous and previous.org_id == snapshot.org_id else None,
            last_sync_version=snapshot.sync_version,
        )

        new_state = AppState(
            context=context,
            devices=devices,
            gateways=gateways,
            sites=list(snapshot.sites),
            units=list(snapshot.units),
            last_pull_summary=summary,
        )

        logger.info(
            "local_state_replaced",
            org_id=snapshot.org_id,
            site_id=context.site_id,
            devices=len(devices),
            gateways=len(gateways),
            devices_added=device_diff.added,
            devices_removed=device_diff.removed,
            gateways_added=gateway_diff.added,
            gateways_removed=gateway_diff.removed,
        )

        if self.store is not None:
            await self.store.invalidate_offline_cache()
            await self.store.save_snapshot(new_state.to_snapshot())

        return new_state
