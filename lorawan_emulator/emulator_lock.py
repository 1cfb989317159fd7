"""
Advisory emulator lock

One emulator session per organization at a time. The lock lives in Redis
as JSON under emulator:lock:{org_id}; holders keep it alive with
heartbeats and a lock whose last heartbeat is older than the timeout is
stale and may be taken over. Nothing else enforces it.
"""
import json
from datetime import datetime, timedelta
from typing import Optional, Callable

import structlog
from pydantic import BaseModel, ValidationError as PydanticValidationError
from redis.exceptions import RedisError

from .exceptions import EmulatorException, ValidationError
from .metrics import track_lock_action
from .utils import utcnow

logger = structlog.get_logger(__name__)

DEFAULT_HEARTBEAT_TIMEOUT_SECONDS = 30
# Abandoned locks disappear eventually even without a takeover
LOCK_KEY_TTL_SECONDS = 3600


class LockInfo(BaseModel):
    user_id: str
    session_id: str
    device_info: str = "Unknown"
    started_at: datetime
    last_heartbeat_at: datetime


class LockResult(BaseModel):
    ok: bool
    message: Optional[str] = None
    error: Optional[str] = None
    locked: Optional[bool] = None
    stale: Optional[bool] = None
    lock_info: Optional[LockInfo] = None


class LockStoreError(EmulatorException):
    def __init__(self, message: str):
        super().__init__(message=message, error_code="LOCK_STORE_ERROR", status_code=503)


class EmulatorLock:
    """
    Per-org advisory lock

    Usage:
        lock = EmulatorLock(redis_client)
        result = await lock.acquire(org_id, user_id, session_id)
        ...
        await lock.heartbeat(org_id, session_id)
    """

    def __init__(
        self,
        redis_client,
        timeout_seconds: int = DEFAULT_HEARTBEAT_TIMEOUT_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.redis = redis_client
        self.timeout = timedelta(seconds=timeout_seconds)
        self.clock = clock

    @staticmethod
    def key(org_id: str) -> str:
        return f"emulator:lock:{org_id}"

    def is_stale(self, lock: LockInfo) -> bool:
        return (self.clock() - lock.last_heartbeat_at) > self.timeout

    async def _load(self, org_id: str) -> Optional[LockInfo]:
        try:
            raw = await self.redis.get(self.key(org_id))
        except RedisError as e:
            logger.error("emulator_lock_read_error", org_id=org_id, error=str(e))
            raise LockStoreError(f"Lock store unavailable: {e}")
        if not raw:
            return None
        try:
            return LockInfo.model_validate(json.loads(raw))
        except (ValueError, PydanticValidationError):
            logger.warning("emulator_lock_corrupt", org_id=org_id)
            await self._delete(org_id)
            return None

    async def _store(self, org_id: str, lock: LockInfo, only_if_absent: bool = False) -> bool:
        try:
            stored = await self.redis.set(
                self.key(org_id),
                lock.model_dump_json(),
                nx=only_if_absent,
                ex=LOCK_KEY_TTL_SECONDS,
            )
        except RedisError as e:
            logger.error("emulator_lock_write_error", org_id=org_id, error=str(e))
            raise LockStoreError(f"Lock store unavailable: {e}")
        return bool(stored)

    async def _delete(self, org_id: str) -> None:
        try:
            await self.redis.delete(self.key(org_id))
        except RedisError as e:
            logger.error("emulator_lock_delete_error", org_id=org_id, error=str(e))
            raise LockStoreError(f"Lock store unavailable: {e}")

    # ============================================================
    # Actions
    # ============================================================

    async def acquire(
        self,
        org_id: str,
        user_id: Optional[str],
        session_id: Optional[str],
        device_info: Optional[str] = None,
        force: bool = False,
    ) -> LockResult:
        if not user_id or not session_id:
            raise ValidationError("session_id", "user_id and session_id required for acquire")

        log = logger.bind(org_id=org_id, session_id=session_id[:8])
        existing = await self._load(org_id)
        now = self.clock()

        if existing is not None:
            if existing.session_id == session_id:
                await self._store(org_id, existing.model_copy(update={"last_heartbeat_at": now}))
                track_lock_action("acquire", "refreshed")
                return LockResult(ok=True, message="Lock refreshed")

            if self.is_stale(existing) or force:
                log.info("emulator_lock_takeover", stale=self.is_stale(existing), force=force,
                         previous_session=existing.session_id[:8])
                await self._delete(org_id)
            else:
                track_lock_action("acquire", "held")
                return LockResult(ok=False, error="Lock held by another session", lock_info=existing)

        lock = LockInfo(
            user_id=user_id,
            session_id=session_id,
            device_info=device_info or "Unknown",
            started_at=now,
            last_heartbeat_at=now,
        )
        if not await self._store(org_id, lock, only_if_absent=True):
            track_lock_action("acquire", "race_lost")
            return LockResult(ok=False, error="Lock acquired by another session")

        log.info("emulator_lock_acquired")
        track_lock_action("acquire", "acquired")
        return LockResult(ok=True, message="Lock acquired")

    async def release(self, org_id: str, session_id: Optional[str]) -> LockResult:
        if not session_id:
            raise ValidationError("session_id", "session_id required for release")

        existing = await self._load(org_id)
        if existing is not None and existing.session_id == session_id:
            await self._delete(org_id)
            logger.info("emulator_lock_released", org_id=org_id, session_id=session_id[:8])
        track_lock_action("release", "released")
        return LockResult(ok=True, message="Lock released")

    async def heartbeat(self, org_id: str, session_id: Optional[str]) -> LockResult:
        if not session_id:
            raise ValidationError("session_id", "session_id required for heartbeat")

        existing = await self._load(org_id)
        if existing is None or existing.session_id != session_id:
            track_lock_action("heartbeat", "lost")
            return LockResult(ok=False, error="Lock not found or taken over")

        await self._store(org_id, existing.model_copy(update={"last_heartbeat_at": self.clock()}))
        track_lock_action("heartbeat", "ok")
        return LockResult(ok=True, message="Heartbeat received")

    async def check(self, org_id: str) -> LockResult:
        existing = await self._load(org_id)
        track_lock_action("check", "locked" if existing else "free")
        if existing is None:
            return LockResult(ok=True, locked=False)

        stale = self.is_stale(existing)
        return LockResult(ok=True, locked=not stale, stale=stale, lock_info=existing)

    async def handle(
        self,
        action: str,
        org_id: str,
        user_id: Optional[str] = None,
        session_id: Optional[str] = None,
        device_info: Optional[str] = None,
        force: bool = False,
    ) -> LockResult:
        """Dispatch a request-style action"""
        if action == "acquire":
            return await self.acquire(org_id, user_id, session_id, device_info, force)
        if action == "release":
            return await self.release(org_id, session_id)
        if action == "heartbeat":
            return await self.heartbeat(org_id, session_id)
        if action == "check":
            return await self.check(org_id)
        raise ValidationError("action", f"Unknown action: {action}")
