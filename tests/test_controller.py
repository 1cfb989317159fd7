"""
Tests for the emulator controller

Coverage:
- Pull applies full replacement; failed pull leaves state untouched
- Background credential backfill merge
- Push outcome recording and retry id persistence across restore
- Local edits invalidate the retry id
- Credential lock and manual override
"""
import pytest

from lorawan_emulator.controller import DeviceEdit, EmulatorController
from lorawan_emulator.credential_backfill import CredentialBackfillAgent
from lorawan_emulator.exceptions import NotFoundError, ValidationError
from lorawan_emulator.models import BackfillResult, CredentialSource, Device, Gateway
from lorawan_emulator.org_sync import OrgStatePuller
from lorawan_emulator.push_sync import PushSynchronizer, SyncOutcomeKind, SyncRunPhase
from lorawan_emulator.session_store import SessionStore

from conftest import ORG_ID, OTHER_ORG_ID, USER_ID, json_response, request_json

ORG_STATE = ("GET", "/functions/v1/org-state")
SYNC = ("POST", "/functions/v1/sync")
BACKFILL = ("POST", "/functions/v1/backfill-credentials")


def org_state(sensors):
    return {
        "ok": True,
        "sync_version": 1,
        "organization": {"id": ORG_ID, "name": "Cold Chain Co"},
        "sites": [{"id": "site-1", "name": "Main", "is_default": True}],
        "sensors": sensors,
        "gateways": [{"id": "g1", "name": "Dock", "gateway_eui": "7076ff0064030456", "is_online": True}],
    }


LOCKED_SENSOR = {
    "id": "d1", "name": "Freezer", "dev_eui": "0011223344556677",
    "join_eui": "70B3D57ED0000001", "app_key": "AB" * 16,
}
BARE_SENSOR = {"id": "d2", "name": "Door", "dev_eui": "0011223344556678", "type": "door"}

SYNC_OK = {"ok": True, "results": {"gateways": {"created": 1}, "devices": {"created": 2}}}


def build_controller(platform_client_factory, routes, calls=None, store=None, backfill=False):
    client = platform_client_factory(routes, calls)
    return EmulatorController(
        puller=OrgStatePuller(client),
        synchronizer=PushSynchronizer(client),
        backfill_agent=CredentialBackfillAgent(client) if backfill else None,
        store=store,
    )


class TestPull:

    @pytest.mark.asyncio
    async def test_select_organization_replaces_state(self, platform_client_factory):
        controller = build_controller(platform_client_factory, {
            ORG_STATE: json_response(200, org_state([LOCKED_SENSOR, BARE_SENSOR])),
        })

        result = await controller.select_organization(ORG_ID, selected_user_id=USER_ID)

        assert result.ok
        assert [d.id for d in controller.state.devices] == ["d1", "d2"]
        assert controller.state.context.site_id == "site-1"
        assert controller.state.context.selected_user_id == USER_ID

    @pytest.mark.asyncio
    async def test_failed_pull_keeps_state(self, platform_client_factory):
        controller = build_controller(platform_client_factory, {
            ORG_STATE: [json_response(200, org_state([LOCKED_SENSOR]))] + [
                json_response(500, {"error": "boom"}) for _ in range(3)
            ],
        })
        await controller.select_organization(ORG_ID)
        before = controller.state

        result = await controller.select_organization(ORG_ID)

        assert not result.ok
        assert result.error.error_code == "RETRY_EXHAUSTED"
        assert controller.state == before

    @pytest.mark.asyncio
    async def test_backfill_merges_in_background(self, platform_client_factory):
        calls = []
        controller = build_controller(platform_client_factory, {
            ORG_STATE: json_response(200, org_state([LOCKED_SENSOR, BARE_SENSOR])),
            BACKFILL: json_response(200, {"results": [
                {"id": "d2", "join_eui": "70B3D57ED0000002", "app_key": "CD" * 16},
            ]}),
        }, calls, backfill=True)

        await controller.select_organization(ORG_ID)
        await controller.wait_for_backfill()

        backfill_request = next(c for c in calls if c.url.path.endswith("backfill-credentials"))
        assert [d["id"] for d in request_json(backfill_request)["devices"]] == ["d2"]
        d2 = controller.state.devices[1]
        assert d2.join_eui == "70B3D57ED0000002"
        assert d2.credential_source == CredentialSource.PLATFORM_GENERATED
        assert d2.credentials_locked

    @pytest.mark.asyncio
    async def test_backfill_for_other_org_discarded(self, platform_client_factory):
        controller = build_controller(platform_client_factory, {
            ORG_STATE: json_response(200, org_state([BARE_SENSOR])),
        })
        await controller.select_organization(ORG_ID)

        updated = await controller.apply_backfill_result(OTHER_ORG_ID, [
            BackfillResult(id="d2", join_eui="70B3D57ED0000002", app_key="CD" * 16),
        ])

        assert updated == 0
        assert controller.state.devices[0].join_eui is None


class TestPush:

    @pytest.mark.asyncio
    async def test_failed_push_persists_run_id_and_restore_reuses_it(self, platform_client_factory, fake_redis):
        calls = []
        routes = {
            ORG_STATE: json_response(200, org_state([LOCKED_SENSOR])),
            SYNC: [json_response(503, {"error": "unavailable"}), json_response(200, SYNC_OK)],
        }
        controller = build_controller(platform_client_factory, routes, calls, store=SessionStore(fake_redis))
        await controller.select_organization(ORG_ID)

        failed = await controller.push()
        assert failed.kind == SyncOutcomeKind.FAILED
        assert controller.state.context.last_sync_run_id == failed.sync_run_id

        # simulated reload
        reloaded = build_controller(platform_client_factory, routes, calls, store=SessionStore(fake_redis))
        assert await reloaded.restore_session()
        assert reloaded.tracker.phase == SyncRunPhase.FAILED

        retried = await reloaded.push()

        assert retried.ok
        assert retried.sync_run_id == failed.sync_run_id
        assert reloaded.state.context.last_sync_run_id is None

    @pytest.mark.asyncio
    async def test_push_without_organization_blocked(self, platform_client_factory):
        calls = []
        controller = build_controller(platform_client_factory, {}, calls)

        outcome = await controller.push()

        assert outcome.validation.blocking_errors[0].code == "ORG_ID_MISSING"
        assert calls == []


class TestLocalEdits:

    async def pulled(self, platform_client_factory, fake_redis=None):
        controller = build_controller(
            platform_client_factory,
            {ORG_STATE: json_response(200, org_state([LOCKED_SENSOR, BARE_SENSOR])),
             SYNC: json_response(500, {"error": "boom"})},
            store=SessionStore(fake_redis) if fake_redis is not None else None,
        )
        await controller.select_organization(ORG_ID)
        return controller

    @pytest.mark.asyncio
    async def test_edit_invalidates_retry_id(self, platform_client_factory, fake_redis):
        controller = await self.pulled(platform_client_factory, fake_redis)
        failed = await controller.push()
        assert controller.tracker.run_id == failed.sync_run_id

        await controller.add_gateway(Gateway(id="g2", name="Back", eui="1111111111111111"))

        assert controller.tracker.phase == SyncRunPhase.IDLE
        assert controller.state.context.last_sync_run_id is None
        retry = await controller.push()
        assert retry.sync_run_id != failed.sync_run_id

    @pytest.mark.asyncio
    async def test_locked_credentials_need_override(self, platform_client_factory):
        controller = await self.pulled(platform_client_factory)

        with pytest.raises(ValidationError) as exc_info:
            await controller.update_device("d1", DeviceEdit(app_key="CD" * 16))
        assert exc_info.value.error_code == "CREDENTIALS_LOCKED"

        updated = await controller.update_device("d1", DeviceEdit(app_key="CD" * 16, manual_override=True))
        assert updated.app_key == "CD" * 16
        assert updated.credential_source == CredentialSource.MANUAL_OVERRIDE
        assert not updated.credentials_locked

    @pytest.mark.asyncio
    async def test_manual_credentials_stored_normalized(self, platform_client_factory):
        controller = await self.pulled(platform_client_factory)

        updated = await controller.update_device("d2", DeviceEdit(
            join_eui="70:b3:d5:7e:d0:00:00:09", app_key="cd" * 16
        ))

        assert updated.join_eui == "70B3D57ED0000009"
        assert updated.app_key == "CD" * 16

    @pytest.mark.asyncio
    async def test_same_key_in_other_case_is_not_a_change(self, platform_client_factory):
        controller = await self.pulled(platform_client_factory)

        updated = await controller.update_device("d1", DeviceEdit(app_key="ab" * 16))

        assert updated.app_key == "AB" * 16
        assert updated.credentials_locked
        assert updated.credential_source == CredentialSource.PLATFORM_PULL

    @pytest.mark.asyncio
    async def test_malformed_manual_key_rejected(self, platform_client_factory):
        controller = await self.pulled(platform_client_factory)
        with pytest.raises(ValidationError):
            await controller.update_device("d2", DeviceEdit(app_key="xyz"))

    @pytest.mark.asyncio
    async def test_rename_locked_device_allowed(self, platform_client_factory):
        controller = await self.pulled(platform_client_factory)
        updated = await controller.update_device("d1", DeviceEdit(name="Freezer A"))
        assert updated.name == "Freezer A"
        assert updated.credentials_locked

    @pytest.mark.asyncio
    async def test_add_and_remove_device(self, platform_client_factory, fake_redis):
        controller = await self.pulled(platform_client_factory, fake_redis)

        added = await controller.add_device(Device(
            id="d3", name="Walk-in", dev_eui="0011223344556679", join_eui="70b3d57ed0000003", app_key="ef" * 16
        ))
        assert added.credential_source == CredentialSource.LOCAL_GENERATED
        assert added.join_eui == "70B3D57ED0000003"
        assert added.app_key == "EF" * 16

        cache = await controller.store.load_offline_cache()
        assert [d.id for d in cache.devices] == ["d1", "d2", "d3"]

        await controller.remove_device("d2")
        assert [d.id for d in controller.state.devices] == ["d1", "d3"]

        with pytest.raises(NotFoundError):
            await controller.remove_device("missing")

    @pytest.mark.asyncio
    async def test_add_device_rejects_bad_eui(self, platform_client_factory):
        controller = await self.pulled(platform_client_factory)
        with pytest.raises(ValidationError):
            await controller.add_device(Device(id="d9", name="Bad", dev_eui="123"))
