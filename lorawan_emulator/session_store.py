"""
Redis-backed session persistence

Holds two keys per emulator session:
- the restorable session snapshot (versioned schema, freshness window)
- the offline cache of locally edited devices/gateways

A successful pull replaces the snapshot and deletes the offline cache so a
reload cannot resurrect pre-pull data.
"""
import json
from datetime import datetime, timedelta
from typing import Optional, List, Callable

import redis.asyncio as redis
from redis.exceptions import RedisError
import structlog
from pydantic import BaseModel, Field, ValidationError as PydanticValidationError

from .models import Device, Gateway, Site, Unit, TTNConfig
from .utils import utcnow

logger = structlog.get_logger()

SNAPSHOT_SCHEMA_VERSION = 2
DEFAULT_FRESHNESS_SECONDS = 3600


class SessionSnapshot(BaseModel):
    """Serialized form of the session; schema_version gates restore"""
    schema_version: int = SNAPSHOT_SCHEMA_VERSION
    selected_user_id: Optional[str] = None
    org_id: str
    org_name: Optional[str] = None
    site_id: Optional[str] = None
    ttn_config: Optional[TTNConfig] = None
    devices: List[Device] = Field(default_factory=list)
    gateways: List[Gateway] = Field(default_factory=list)
    sites: List[Site] = Field(default_factory=list)
    units: List[Unit] = Field(default_factory=list)
    last_sync_version: Optional[int] = None
    last_sync_run_id: Optional[str] = None
    last_sync_summary: Optional[str] = None
    saved_at: datetime


class OfflineCache(BaseModel):
    devices: List[Device] = Field(default_factory=list)
    gateways: List[Gateway] = Field(default_factory=list)
    saved_at: datetime


def is_fresh(saved_at: datetime, now: datetime, freshness_seconds: int = DEFAULT_FRESHNESS_SECONDS) -> bool:
    """Strictly younger than the window; exactly at the boundary is expired"""
    return (now - saved_at) < timedelta(seconds=freshness_seconds)


class SessionStore:
    """Snapshot and offline-cache persistence for one emulator session"""

    def __init__(
        self,
        redis_client,
        session_key: str = "default",
        freshness_seconds: int = DEFAULT_FRESHNESS_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Args:
            redis_client: redis.asyncio client (decode_responses=True)
            session_key: Identifies the operator session
            freshness_seconds: Maximum snapshot age for restore
            clock: Returns aware UTC now
        """
        self.redis = redis_client
        self.session_key = session_key
        self.freshness_seconds = freshness_seconds
        self.clock = clock

    @classmethod
    def from_url(cls, redis_url: str, **kwargs) -> "SessionStore":
        return cls(redis.from_url(redis_url, decode_responses=True), **kwargs)

    @property
    def snapshot_key(self) -> str:
        return f"emulator:session:{self.session_key}"

    @property
    def offline_key(self) -> str:
        return f"emulator:offline:{self.session_key}"

    # ============================================================
    # Session snapshot
    # ============================================================

    async def save_snapshot(self, snapshot: SessionSnapshot) -> None:
        try:
            await self.redis.set(self.snapshot_key, snapshot.model_dump_json())
            logger.debug(
                "session_snapshot_saved",
                session_key=self.session_key,
                org_id=snapshot.org_id,
                devices=len(snapshot.devices),
                gateways=len(snapshot.gateways)
            )
        except RedisError as e:
            logger.error("session_snapshot_save_error", session_key=self.session_key, error=str(e))

    async def load_snapshot(self) -> Optional[SessionSnapshot]:
        """
        Restore the snapshot if it is intact, current-schema and fresh

        Anything else is deleted and None is returned.
        """
        try:
            raw = await self.redis.get(self.snapshot_key)
        except RedisError as e:
            logger.error("session_snapshot_load_error", session_key=self.session_key, error=str(e))
            return None

        if not raw:
            return None

        try:
            data = json.loads(raw)
        except ValueError:
            logger.warning("session_snapshot_corrupt", session_key=self.session_key)
            await self.clear_snapshot()
            return None

        if not isinstance(data, dict) or data.get("schema_version") != SNAPSHOT_SCHEMA_VERSION:
            logger.info(
                "session_snapshot_schema_mismatch",
                session_key=self.session_key,
                found=data.get("schema_version") if isinstance(data, dict) else None,
                expected=SNAPSHOT_SCHEMA_VERSION
            )
            await self.clear_snapshot()
            return None

        try:
            snapshot = SessionSnapshot.model_validate(data)
        except PydanticValidationError:
            logger.warning("session_snapshot_invalid", session_key=self.session_key)
            await self.clear_snapshot()
            return None

        if not is_fresh(snapshot.saved_at, self.clock(), self.freshness_seconds):
            logger.info(
                "session_snapshot_expired",
                session_key=self.session_key,
                saved_at=snapshot.saved_at.isoformat()
            )
            await self.clear_snapshot()
            return None

        return snapshot

    async def clear_snapshot(self) -> None:
        try:
            await self.redis.delete(self.snapshot_key)
        except RedisError as e:
            logger.error("session_snapshot_clear_error", session_key=self.session_key, error=str(e))

    # ============================================================
    # Offline cache
    # ============================================================

    async def save_offline_cache(self, devices: List[Device], gateways: List[Gateway]) -> None:
        cache = OfflineCache(devices=devices, gateways=gateways, saved_at=self.clock())
        try:
            await self.redis.set(self.offline_key, cache.model_dump_json())
        except RedisError as e:
            logger.error("offline_cache_save_error", session_key=self.session_key, error=str(e))

    async def load_offline_cache(self) -> Optional[OfflineCache]:
        try:
            raw = await self.redis.get(self.offline_key)
        except RedisError as e:
            logger.error("offline_cache_load_error", session_key=self.session_key, error=str(e))
            return None
        if not raw:
            return None
        try:
            return OfflineCache.model_validate_json(raw)
        except PydanticValidationError:
            logger.warning("offline_cache_corrupt", session_key=self.session_key)
            await self.invalidate_offline_cache()
            return None

    async def invalidate_offline_cache(self) -> None:
        try:
            deleted = await self.redis.delete(self.offline_key)
            logger.debug("offline_cache_invalidated", session_key=self.session_key, deleted=deleted)
        except RedisError as e:
            logger.error("offline_cache_invalidate_error", session_key=self.session_key, error=str(e))
