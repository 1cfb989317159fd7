"""
TTN credential resolution

User settings first, org settings as fallback. When the org key is used,
the user's non-credential fields (application id, cluster) still win over
the org defaults. The returned source tells callers why a credential was
picked.
"""
from typing import Optional, Dict, Any
import logging

import asyncpg
from pydantic import BaseModel

from .exceptions import DatabaseError

logger = logging.getLogger(__name__)

DEFAULT_USER_CLUSTER = "nam1"


class TTNSettings(BaseModel):
    api_key: Optional[str] = None
    application_id: Optional[str] = None
    cluster: Optional[str] = None
    enabled: bool = False
    webhook_secret: Optional[str] = None


class ResolvedSettings(BaseModel):
    settings: Optional[TTNSettings] = None
    source: str = "none"  # user | org | none

    @property
    def api_key(self) -> Optional[str]:
        return self.settings.api_key if self.settings else None


class SettingsResolver:
    """
    Resolve which TTN settings apply to an operation

    The repository needs get_user_ttn(user_id) and get_org_ttn(org_id), each
    returning a dict or None.
    """

    def __init__(self, repository):
        self.repository = repository

    async def load_user_settings(self, user_id: Optional[str]) -> Optional[TTNSettings]:
        if not user_id:
            return None
        try:
            ttn = await self.repository.get_user_ttn(user_id)
        except (asyncpg.PostgresError, DatabaseError, OSError) as e:
            logger.error(f"Error loading user TTN settings for {user_id}: {e}")
            return None

        if not ttn:
            logger.debug(f"No TTN settings found for user {user_id}")
            return None
        if not ttn.get("enabled"):
            logger.debug(f"TTN not enabled for user {user_id}")
            return None

        return TTNSettings(
            api_key=ttn.get("api_key") or None,
            application_id=ttn.get("application_id") or None,
            cluster=ttn.get("cluster") or DEFAULT_USER_CLUSTER,
            enabled=True,
            webhook_secret=ttn.get("webhook_secret") or None,
        )

    async def load_org_settings(self, org_id: Optional[str]) -> Optional[TTNSettings]:
        if not org_id:
            return None
        try:
            row = await self.repository.get_org_ttn(org_id)
        except (asyncpg.PostgresError, DatabaseError, OSError) as e:
            logger.error(f"Error loading org TTN settings for {org_id}: {e}")
            return None

        if not row or not row.get("enabled"):
            logger.debug(f"No enabled TTN settings for org {org_id}")
            return None

        return TTNSettings(**_known_fields(row))

    async def resolve(self, selected_user_id: Optional[str], org_id: Optional[str] = None) -> ResolvedSettings:
        user_settings = await self.load_user_settings(selected_user_id)

        if user_settings and user_settings.api_key:
            return ResolvedSettings(settings=user_settings, source="user")

        if org_id:
            org_settings = await self.load_org_settings(org_id)
            if org_settings and org_settings.api_key:
                if user_settings:
                    org_settings = org_settings.model_copy(update={
                        "application_id": user_settings.application_id or org_settings.application_id,
                        "cluster": user_settings.cluster or org_settings.cluster,
                    })
                logger.info(f"Using org TTN settings for org {org_id}")
                return ResolvedSettings(settings=org_settings, source="org")

        # Partial record so callers can say "needs configuration"
        if user_settings:
            return ResolvedSettings(settings=user_settings, source="user")

        return ResolvedSettings(settings=None, source="none")


def _known_fields(row: Dict[str, Any]) -> Dict[str, Any]:
    return {k: row.get(k) for k in TTNSettings.model_fields if k in row}
