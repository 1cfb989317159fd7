"""
Tests for push sync

Coverage:
- Retry id lifecycle (reuse on retry, new id after success or input change)
- Preflight validation blocks before any request
- Response normalization (current and legacy shapes), unparseable bodies
- Transport failures keep the run id and carry diagnostics
- Success / Partial / Failed classification and error display
"""
import httpx
import pytest
from hypothesis import given, strategies as st

from lorawan_emulator.models import Device, Gateway, OrganizationContext, SyncContext, SyncEntities
from lorawan_emulator.platform_client import PlatformClient
from lorawan_emulator.push_sync import (
    PushSynchronizer,
    SyncOutcome,
    SyncOutcomeKind,
    SyncRunPhase,
    SyncRunTracker,
    classify,
    normalize_sync_response,
)
from lorawan_emulator.sync_validation import validate_sync_bundle

from conftest import ORG_ID, json_response, request_json

SYNC_PATH = "/functions/v1/sync"


def context():
    return OrganizationContext(org_id=ORG_ID, site_id="site-1", selected_user_id="user-42")


def devices():
    return [
        Device(id="d1", name="Freezer", dev_eui="0011223344556677", join_eui="70B3D57ED0000001", app_key="AB" * 16),
        Device(id="d2", name="Door", dev_eui="0011223344556678"),
    ]


def gateways():
    return [Gateway(id="g1", name="Dock", eui="7076ff0064030456")]


def current_shape(gw_created=1, dev_created=2, dev_failed=0, errors=None):
    return {
        "ok": True,
        "results": {
            "gateways": {"created": gw_created, "updated": 0, "failed": 0, "errors": []},
            "devices": {"created": dev_created, "updated": 0, "failed": dev_failed, "errors": errors or []},
        },
    }


class TestSyncRunTracker:

    def test_new_id_from_idle(self):
        tracker = SyncRunTracker()
        run_id = tracker.begin()
        assert run_id
        assert tracker.phase == SyncRunPhase.ATTEMPTING

    def test_retry_after_failure_reuses_id(self):
        tracker = SyncRunTracker()
        first = tracker.begin()
        tracker.fail()
        assert tracker.begin() == first

    def test_success_clears_id(self):
        tracker = SyncRunTracker()
        first = tracker.begin()
        tracker.succeed()
        assert tracker.run_id is None
        assert tracker.begin() != first

    def test_invalidate_forces_new_id(self):
        tracker = SyncRunTracker()
        first = tracker.begin()
        tracker.fail()
        tracker.invalidate()
        assert tracker.phase == SyncRunPhase.IDLE
        assert tracker.begin() != first


class TestPushSynchronizer:

    @pytest.mark.asyncio
    async def test_success_sends_metadata_run_id(self, platform_client_factory):
        calls = []
        client = platform_client_factory({("POST", SYNC_PATH): json_response(200, current_shape())}, calls)
        tracker = SyncRunTracker()

        outcome = await PushSynchronizer(client).push(tracker, context(), gateways(), devices())

        assert outcome.kind == SyncOutcomeKind.SUCCESS
        sent = request_json(calls[0])
        assert sent["metadata"]["sync_run_id"] == outcome.sync_run_id
        assert sent["context"]["org_id"] == ORG_ID
        assert sent["entities"]["gateways"][0]["eui"] == "7076FF0064030456"
        assert tracker.phase == SyncRunPhase.SUCCEEDED
        assert tracker.run_id is None

    @pytest.mark.asyncio
    async def test_retry_after_network_failure_uses_same_id(self, platform_client_factory):
        calls = []
        client = platform_client_factory({
            ("POST", SYNC_PATH): [
                json_response(503, {"error": "unavailable"}),
                json_response(200, current_shape()),
            ],
        }, calls)
        synchronizer = PushSynchronizer(client)
        tracker = SyncRunTracker()

        first = await synchronizer.push(tracker, context(), gateways(), devices())
        second = await synchronizer.push(tracker, context(), gateways(), devices())

        assert first.kind == SyncOutcomeKind.FAILED
        assert second.kind == SyncOutcomeKind.SUCCESS
        first_id = request_json(calls[0])["metadata"]["sync_run_id"]
        second_id = request_json(calls[1])["metadata"]["sync_run_id"]
        assert first_id == second_id

    @pytest.mark.asyncio
    async def test_transport_failure_keeps_id_with_diagnostics(self, settings):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = PlatformClient(settings=settings, transport=httpx.MockTransport(refuse))
        tracker = SyncRunTracker()

        outcome = await PushSynchronizer(client).push(tracker, context(), gateways(), devices())

        assert outcome.kind == SyncOutcomeKind.FAILED
        assert outcome.error.error_code == "NETWORK_ERROR"
        assert outcome.error.diagnostics.endpoint == "sync"
        assert outcome.error.diagnostics.duration_ms is not None
        assert outcome.error.diagnostics.target_url_redacted == "https://platform.test/functions/v1/sync"
        assert tracker.phase == SyncRunPhase.FAILED
        assert tracker.run_id == outcome.sync_run_id

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [
        {"ok": True, "results": {"devices": {"synced": "n/a"}}},
        {"ok": True, "results": {"gateways": {"created": "one"}}},
        {"ok": True, "results": ["gateways", "devices"]},
        {"ok": True, "results": {}, "summary": {"text": "done"}},
    ])
    async def test_unparseable_response_is_failed(self, platform_client_factory, body):
        client = platform_client_factory({("POST", SYNC_PATH): json_response(200, body)})
        tracker = SyncRunTracker()

        outcome = await PushSynchronizer(client).push(tracker, context(), gateways(), devices())

        assert outcome.kind == SyncOutcomeKind.FAILED
        assert outcome.errors
        assert outcome.error.error_code == "UPSTREAM_FAILURE"
        assert outcome.error.diagnostics.response_status == 200
        assert tracker.phase == SyncRunPhase.FAILED
        assert tracker.run_id == outcome.sync_run_id

    @pytest.mark.asyncio
    async def test_unparseable_count_keeps_raw_message(self, platform_client_factory):
        body = {"ok": True, "results": {"devices": {"synced": "n/a"}}}
        client = platform_client_factory({("POST", SYNC_PATH): json_response(200, body)})

        outcome = await PushSynchronizer(client).push(SyncRunTracker(), context(), gateways(), devices())

        assert "n/a" in outcome.errors[0]

    @pytest.mark.asyncio
    async def test_mutation_between_attempts_changes_id(self, platform_client_factory):
        calls = []
        client = platform_client_factory({
            ("POST", SYNC_PATH): [json_response(500, {"error": "boom"}), json_response(200, current_shape())],
        }, calls)
        synchronizer = PushSynchronizer(client)
        tracker = SyncRunTracker()

        await synchronizer.push(tracker, context(), gateways(), devices())
        tracker.invalidate()
        await synchronizer.push(tracker, context(), gateways(), devices()[:1])

        assert request_json(calls[0])["metadata"]["sync_run_id"] != request_json(calls[1])["metadata"]["sync_run_id"]

    @pytest.mark.asyncio
    async def test_partial_success(self, platform_client_factory):
        body = current_shape(gw_created=1, dev_created=1, dev_failed=1,
                             errors=[{"path": "devices[1]", "message": "duplicate dev_eui"}])
        client = platform_client_factory({("POST", SYNC_PATH): json_response(200, body)})
        tracker = SyncRunTracker()

        outcome = await PushSynchronizer(client).push(tracker, context(), gateways(), devices())

        assert outcome.kind == SyncOutcomeKind.PARTIAL
        assert outcome.errors == ["devices[1]: duplicate dev_eui"]
        assert tracker.phase == SyncRunPhase.FAILED
        assert tracker.run_id == outcome.sync_run_id

    @pytest.mark.asyncio
    async def test_all_failed(self, platform_client_factory):
        body = {
            "ok": False,
            "results": {"devices": {"created": 0, "updated": 0, "failed": 2, "errors": ["a", "b"]}},
        }
        client = platform_client_factory({("POST", SYNC_PATH): json_response(200, body)})

        outcome = await PushSynchronizer(client).push(SyncRunTracker(), context(), [], devices())

        assert outcome.kind == SyncOutcomeKind.FAILED
        assert outcome.errors == ["a", "b"]

    @pytest.mark.asyncio
    async def test_validation_blocks_request_and_keeps_tracker(self, platform_client_factory):
        calls = []
        client = platform_client_factory({}, calls)
        tracker = SyncRunTracker(phase=SyncRunPhase.FAILED, run_id="run-keep")
        bad = [Device(id="d1", name="", dev_eui="123")]

        outcome = await PushSynchronizer(client).push(tracker, context(), [], bad)

        assert outcome.kind == SyncOutcomeKind.FAILED
        assert outcome.validation is not None
        assert {i.code for i in outcome.validation.blocking_errors} == {"DEVICE_NAME_MISSING", "DEVICE_DEV_EUI_INVALID"}
        assert calls == []
        assert tracker.run_id == "run-keep"
        assert tracker.phase == SyncRunPhase.FAILED


class TestNormalization:

    def test_legacy_shape(self):
        body = {
            "success": True,
            "results": {"gateways": {"synced": 1, "failed": 0, "errors": []},
                        "devices": {"synced": 2, "failed": 1, "errors": ["bad key"]}},
        }
        normalized = normalize_sync_response(body)
        assert normalized.ok
        assert normalized.total_succeeded == 3
        assert normalized.total_failed == 1
        assert classify(normalized) == SyncOutcomeKind.PARTIAL

    def test_two_of_three_is_partial_with_one_error(self):
        normalized = normalize_sync_response(current_shape(gw_created=0, dev_created=2, dev_failed=1,
                                                           errors=["d3: invalid"]))
        assert classify(normalized) == SyncOutcomeKind.PARTIAL
        assert normalized.all_errors == ["d3: invalid"]

    def test_zero_of_three_is_failed(self):
        normalized = normalize_sync_response(current_shape(gw_created=0, dev_created=0, dev_failed=3))
        assert classify(normalized) == SyncOutcomeKind.FAILED

    def test_ok_false_without_counts_is_failed(self):
        assert classify(normalize_sync_response({"ok": False, "error": "nope"})) == SyncOutcomeKind.FAILED


class TestErrorDisplay:

    def test_truncation_marker(self):
        outcome = SyncOutcome(kind=SyncOutcomeKind.FAILED, errors=["e1", "e2", "e3", "e4"])
        assert outcome.display_errors() == "e1; e2 (and 2 more)"
        assert len(outcome.errors) == 4

    def test_no_marker_when_all_shown(self):
        outcome = SyncOutcome(kind=SyncOutcomeKind.FAILED, errors=["e1", "e2"])
        assert outcome.display_errors() == "e1; e2"


class TestBundleValidation:

    def test_missing_site_is_warning_only(self):
        result = validate_sync_bundle(SyncContext(org_id=ORG_ID), SyncEntities())
        assert result.is_valid
        assert [w.code for w in result.warnings] == ["SITE_ID_MISSING"]

    def test_missing_org_blocks(self):
        result = validate_sync_bundle(SyncContext(org_id=""), SyncEntities())
        assert [e.code for e in result.blocking_errors] == ["ORG_ID_MISSING"]

    def test_non_uuid_org_blocks(self):
        result = validate_sync_bundle(SyncContext(org_id="org-1", site_id="s"), SyncEntities())
        assert [e.code for e in result.blocking_errors] == ["ORG_ID_INVALID"]


@pytest.mark.property
@given(succeeded=st.integers(min_value=0, max_value=50), failed=st.integers(min_value=0, max_value=50))
def test_classification_matches_counts(succeeded, failed):
    """
    Property: Partial iff some succeeded and some failed; Failed iff
    something failed and nothing succeeded
    """
    normalized = normalize_sync_response(current_shape(gw_created=0, dev_created=succeeded, dev_failed=failed))
    kind = classify(normalized)
    if succeeded and failed:
        assert kind == SyncOutcomeKind.PARTIAL
    elif failed:
        assert kind == SyncOutcomeKind.FAILED
    else:
        assert kind == SyncOutcomeKind.SUCCESS
