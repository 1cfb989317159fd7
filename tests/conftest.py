"""
Shared fixtures and in-memory test doubles

- FakeRedis: the subset of redis.asyncio used by the session store and lock
- MockSettingsRepository / MockWebhookRepository: asyncpg-backed repositories
- make_transport: httpx.MockTransport routing by (method, path)
"""
import json
from datetime import datetime, timezone
from typing import Callable, Dict, Optional, Tuple

import httpx
import pytest

from lorawan_emulator.config import Settings
from lorawan_emulator.platform_client import PlatformClient

ORG_ID = "6f1c2d3e-4b5a-4c7d-8e9f-0a1b2c3d4e5f"
OTHER_ORG_ID = "0b9f8e7d-6c5b-4a39-8271-605f4e3d2c1b"
USER_ID = "user-42"


class FakeRedis:
    """In-memory stand-in for redis.asyncio.Redis (decode_responses=True)"""

    def __init__(self):
        self.data: Dict[str, str] = {}
        self.expiry: Dict[str, int] = {}

    async def get(self, key):
        return self.data.get(key)

    async def set(self, key, value, nx=False, ex=None):
        if nx and key in self.data:
            return None
        self.data[key] = value
        if ex is not None:
            self.expiry[key] = ex
        return True

    async def delete(self, *keys):
        deleted = 0
        for key in keys:
            if self.data.pop(key, None) is not None:
                deleted += 1
        return deleted

    async def ping(self):
        return True

    async def aclose(self):
        pass


class MockSettingsRepository:
    """Mock TTN settings lookups"""

    def __init__(self, user_ttn: Optional[dict] = None, org_ttn: Optional[dict] = None):
        self.user_ttn = user_ttn
        self.org_ttn = org_ttn
        self.calls = []

    async def get_user_ttn(self, user_id):
        self.calls.append(("user", user_id))
        return self.user_ttn

    async def get_org_ttn(self, org_id):
        self.calls.append(("org", org_id))
        return self.org_ttn


class MockWebhookRepository:
    """Mock ingestion tables; failing lists table names whose writes raise"""

    def __init__(
        self,
        secret: Optional[str] = None,
        sensor: Optional[dict] = None,
        app_org: Optional[str] = None,
        failing: Tuple[str, ...] = (),
    ):
        self.secret = secret
        self.sensor = sensor
        self.app_org = app_org
        self.failing = failing
        self.uplinks = []
        self.telemetry = []
        self.readings = []
        self.door_events = []

    def _maybe_fail(self, table):
        if table in self.failing:
            raise OSError(f"{table} unavailable")

    async def get_webhook_secret(self, application_id):
        return self.secret

    async def find_active_sensor(self, dev_eui):
        return self.sensor

    async def find_org_for_application(self, application_id):
        return self.app_org

    async def insert_uplink(self, record):
        self._maybe_fail("sensor_uplinks")
        self.uplinks.append(record)

    async def upsert_unit_telemetry(self, unit_id, fields):
        self._maybe_fail("unit_telemetry")
        self.telemetry.append((unit_id, fields))

    async def insert_sensor_reading(self, record):
        self._maybe_fail("sensor_readings")
        self.readings.append(record)

    async def insert_door_event(self, record):
        self._maybe_fail("door_events")
        self.door_events.append(record)


def json_response(status_code: int, body=None, text: Optional[str] = None) -> httpx.Response:
    if text is not None:
        return httpx.Response(status_code, text=text)
    return httpx.Response(status_code, json=body if body is not None else {})


def make_transport(routes: Dict[Tuple[str, str], object], calls: Optional[list] = None) -> httpx.MockTransport:
    """
    Route requests by (METHOD, path)

    A route value is an httpx.Response, a callable taking the request, or a
    list of responses consumed in order. Unknown routes answer 404.
    """
    def handler(request: httpx.Request) -> httpx.Response:
        key = (request.method, request.url.path)
        if calls is not None:
            calls.append(request)
        route = routes.get(key)
        if route is None:
            return httpx.Response(404, json={"message": "not found"})
        if isinstance(route, list):
            route = route.pop(0)
        elif callable(route):
            return route(request)
        # fresh copy so one canned response can answer repeated calls
        return httpx.Response(route.status_code, headers=route.headers, content=route.content)

    return httpx.MockTransport(handler)


def request_json(request: httpx.Request) -> dict:
    return json.loads(request.content) if request.content else {}


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        platform_base_url="https://platform.test/functions/v1",
        sync_api_key="sync-key-abcd1234",
        ttn_provision_api_key="NNSXS.ENVKEY.9999",
        ttn_default_cluster="eu1",
        pull_backoff_seconds=0,
    )


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def fixed_now():
    return datetime(2026, 3, 14, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def platform_client_factory(settings) -> Callable[..., PlatformClient]:
    def factory(routes, calls=None):
        return PlatformClient(settings=settings, transport=make_transport(routes, calls))
    return factory
