"""
Tests for TTN provisioning

Coverage:
- OTAA chain IS -> NS -> JS -> AS verify, with AS repair
- AS visibility is authoritative (NOT_VISIBLE_ON_AS)
- ABP conversion step trace and DevAddr
- set-ABP on a missing device
- Delete ordering and already-deleted devices
- Batch summary and invalid EUIs
- Preflight and credential resolution
"""
import httpx
import pytest

from lorawan_emulator.exceptions import ConfigMissingError, ValidationError
from lorawan_emulator.models import DeleteDeviceRequest, PreflightRequest, ProvisionRequest
from lorawan_emulator.settings_resolver import SettingsResolver
from lorawan_emulator.ttn_client import abp_dev_addr, parse_cluster_from_url, frequency_plan_for
from lorawan_emulator.ttn_provisioning import ProvisionStatus, TTNProvisioner

from conftest import MockSettingsRepository, ORG_ID, USER_ID, json_response, make_transport, request_json

APP = "cold-chain"
EUI = "0011223344556677"
DEVICE_ID = f"sensor-{EUI}"
JOIN_EUI = "70B3D57ED0000001"
APP_KEY = "AB" * 16

IS_DEVICES = f"/api/v3/applications/{APP}/devices"
IS_DEVICE = f"{IS_DEVICES}/{DEVICE_ID}"
APPLICATION = f"/api/v3/applications/{APP}"


def role(name, device_id=DEVICE_ID):
    return f"/api/v3/{name}/applications/{APP}/devices/{device_id}"


def otaa_device(eui=EUI):
    return {"dev_eui": eui, "name": "Freezer", "join_eui": JOIN_EUI, "app_key": APP_KEY}


def provision_request(*devices):
    return ProvisionRequest(application_id=APP, cluster="nam1", devices=list(devices) or [otaa_device()])


def provisioner(settings, routes, calls=None, resolver=None):
    return TTNProvisioner(resolver, settings=settings, transport=make_transport(routes, calls))


def step_names(result):
    return [s.name for s in result.steps]


class TestOTAA:

    @pytest.mark.asyncio
    async def test_happy_path(self, settings):
        calls = []
        routes = {
            ("POST", IS_DEVICES): json_response(201, {}),
            ("PUT", role("ns")): json_response(200, {}),
            ("PUT", role("js")): json_response(200, {}),
            ("GET", role("as")): json_response(200, {}),
        }
        batch = await provisioner(settings, routes, calls).provision_batch(provision_request())

        assert batch.ok
        result = batch.results[0]
        assert result.status == ProvisionStatus.CREATED
        assert step_names(result) == ["is_create", "ns_register", "js_register", "as_verify"]

        created = request_json(calls[0])["end_device"]
        assert calls[0].url.host == "eu1.cloud.thethings.network"
        assert created["ids"]["device_id"] == DEVICE_ID
        assert created["ids"]["dev_eui"] == EUI.upper()
        assert created["supports_join"] is True
        assert created["frequency_plan_id"] == "US_902_928_FSB_2"
        assert created["network_server_address"] == "nam1.cloud.thethings.network"
        assert created["root_keys"]["app_key"]["key"] == APP_KEY
        assert calls[1].url.host == "nam1.cloud.thethings.network"

    @pytest.mark.asyncio
    async def test_existing_device_and_js_failure_are_not_fatal(self, settings):
        routes = {
            ("POST", IS_DEVICES): json_response(409, {"message": "already exists"}),
            ("PUT", role("ns")): json_response(200, {}),
            ("PUT", role("js")): json_response(403, {"message": "no js rights"}),
            ("GET", role("as")): json_response(200, {}),
        }
        batch = await provisioner(settings, routes).provision_batch(provision_request())

        assert batch.ok
        assert batch.results[0].status == ProvisionStatus.ALREADY_EXISTS
        assert batch.summary.already_exists == 1

    @pytest.mark.asyncio
    async def test_as_repair_then_success(self, settings):
        routes = {
            ("POST", IS_DEVICES): json_response(201, {}),
            ("PUT", role("ns")): json_response(200, {}),
            ("PUT", role("js")): json_response(200, {}),
            ("GET", role("as")): [json_response(404, {}), json_response(200, {})],
            ("PUT", role("as")): json_response(200, {}),
        }
        batch = await provisioner(settings, routes).provision_batch(provision_request())

        result = batch.results[0]
        assert result.ok
        assert step_names(result)[-3:] == ["as_verify", "as_repair", "as_reverify"]

    @pytest.mark.asyncio
    async def test_not_visible_on_as_is_failure(self, settings):
        routes = {
            ("POST", IS_DEVICES): json_response(201, {}),
            ("PUT", role("ns")): json_response(200, {}),
            ("PUT", role("js")): json_response(200, {}),
            ("GET", role("as")): json_response(404, {}),
            ("PUT", role("as")): json_response(200, {}),
        }
        batch = await provisioner(settings, routes).provision_batch(provision_request())

        result = batch.results[0]
        assert not batch.ok
        assert result.status == ProvisionStatus.FAILED
        assert result.error_code == "NOT_VISIBLE_ON_AS"
        assert "Application Server" in result.hint
        assert batch.summary.failed == 1

    @pytest.mark.asyncio
    async def test_ns_failure_stops_chain(self, settings):
        routes = {
            ("POST", IS_DEVICES): json_response(201, {}),
            ("PUT", role("ns")): json_response(403, {"message": "forbidden"}),
        }
        batch = await provisioner(settings, routes).provision_batch(provision_request())

        result = batch.results[0]
        assert step_names(result) == ["is_create", "ns_register"]
        assert result.error_code == "PERMISSION_DENIED"

    @pytest.mark.asyncio
    async def test_missing_keys_rejected_without_calls(self, settings):
        calls = []
        batch = await provisioner(settings, {}, calls).provision_batch(
            provision_request({"dev_eui": EUI, "name": "No keys"})
        )
        assert batch.results[0].error_code == "VALIDATION_ERROR"
        assert calls == []

    @pytest.mark.asyncio
    async def test_invalid_eui_fails_alone(self, settings):
        routes = {
            ("POST", IS_DEVICES): json_response(201, {}),
            ("PUT", role("ns")): json_response(200, {}),
            ("PUT", role("js")): json_response(200, {}),
            ("GET", role("as")): json_response(200, {}),
        }
        batch = await provisioner(settings, routes).provision_batch(
            provision_request(otaa_device("xyz"), otaa_device())
        )

        invalid, valid = batch.results
        assert invalid.ttn_device_id == "invalid"
        assert invalid.error_code == "INVALID_DEV_EUI"
        assert invalid.error == "Invalid DevEUI format. Must be 16 hex characters."
        assert valid.status == ProvisionStatus.CREATED
        assert batch.summary.total == 2
        assert batch.summary.failed == 1
        assert batch.summary.created == 1

    @pytest.mark.asyncio
    async def test_transport_error_recorded_as_status_zero(self, settings):
        def handler(request):
            raise httpx.ConnectError("unreachable", request=request)

        prov = TTNProvisioner(settings=settings, transport=httpx.MockTransport(handler))
        batch = await prov.provision_batch(provision_request())

        step = batch.results[0].steps[0]
        assert step.http_status == 0
        assert step.body_snippet.startswith("Fetch error:")
        assert batch.results[0].error_code == "NETWORK_ERROR"


class TestABP:

    @pytest.mark.asyncio
    async def test_convert_step_trace(self, settings):
        calls = []
        routes = {
            ("DELETE", role("ns")): json_response(404, {}),
            ("DELETE", role("as")): json_response(200, {}),
            ("DELETE", IS_DEVICE): json_response(200, {}),
            ("POST", IS_DEVICES): json_response(201, {}),
            ("PUT", role("ns")): json_response(200, {}),
            ("PUT", role("as")): json_response(200, {}),
            ("GET", role("as")): json_response(200, {}),
        }
        batch = await provisioner(settings, routes, calls).provision_batch(
            provision_request({"dev_eui": EUI}), mode="abp"
        )

        result = batch.results[0]
        assert result.ok
        assert result.dev_addr == "260C6677"
        assert step_names(result) == [
            "ns_delete", "as_delete", "is_delete", "is_recreate", "ns_session", "as_session", "as_verify"
        ]
        recreated = request_json(calls[3])["end_device"]
        assert recreated["supports_join"] is False
        assert "join_eui" not in recreated["ids"]
        session = request_json(calls[4])["end_device"]["session"]
        assert session["dev_addr"] == "260C6677"

    @pytest.mark.asyncio
    async def test_ns_forbidden_gets_rights_hint(self, settings):
        routes = {
            ("DELETE", role("ns")): json_response(404, {}),
            ("DELETE", role("as")): json_response(404, {}),
            ("DELETE", IS_DEVICE): json_response(404, {}),
            ("POST", IS_DEVICES): json_response(201, {}),
            ("PUT", role("ns")): json_response(403, {}),
        }
        batch = await provisioner(settings, routes).provision_batch(provision_request({"dev_eui": EUI}), mode="abp")

        result = batch.results[0]
        assert result.error_code == "PERMISSION_DENIED"
        assert "Write Network Server" in result.hint

    @pytest.mark.asyncio
    async def test_set_abp_on_missing_device(self, settings):
        routes = {("GET", IS_DEVICE): json_response(404, {})}
        batch = await provisioner(settings, routes).provision_batch(
            provision_request({"dev_eui": EUI}), mode="set_abp"
        )

        result = batch.results[0]
        assert result.error_code == "DEVICE_NOT_FOUND"
        assert result.hint == "Re-provision the device on the platform first, then retry ABP session setup."
        assert step_names(result) == ["is_precheck"]

    @pytest.mark.asyncio
    async def test_set_abp_on_existing_device(self, settings):
        routes = {
            ("GET", IS_DEVICE): json_response(200, {}),
            ("PUT", role("ns")): json_response(200, {}),
            ("PUT", role("as")): json_response(200, {}),
            ("GET", role("as")): json_response(200, {}),
        }
        batch = await provisioner(settings, routes).provision_batch(provision_request({"dev_eui": EUI}), mode="set_abp")

        assert batch.ok
        assert batch.results[0].status == ProvisionStatus.ALREADY_EXISTS

    def test_dev_addr_derivation(self):
        assert abp_dev_addr("e8e1e1000103c3f8") == "260CC3F8"


class TestDelete:

    @pytest.mark.asyncio
    async def test_delete_order(self, settings):
        calls = []
        routes = {
            ("DELETE", role("as")): json_response(200, {}),
            ("DELETE", role("ns")): json_response(200, {}),
            ("DELETE", role("js")): json_response(200, {}),
            ("DELETE", IS_DEVICE): json_response(200, {}),
        }
        result = await provisioner(settings, routes, calls).delete(
            DeleteDeviceRequest(dev_eui=EUI, application_id=APP, cluster="eu1")
        )

        assert result.status == ProvisionStatus.DELETED
        assert step_names(result) == ["as_delete", "ns_delete", "js_delete", "is_delete"]

    @pytest.mark.asyncio
    async def test_already_deleted_is_success(self, settings):
        result = await provisioner(settings, {}).delete(
            DeleteDeviceRequest(dev_eui=EUI, application_id=APP)
        )
        assert result.ok
        assert all(step.not_found for step in result.steps)

    @pytest.mark.asyncio
    async def test_missing_eui(self, settings):
        with pytest.raises(ValidationError) as exc_info:
            await provisioner(settings, {}).delete(DeleteDeviceRequest(application_id=APP))
        assert exc_info.value.error_code == "MISSING_DEV_EUI"

    @pytest.mark.asyncio
    async def test_invalid_eui(self, settings):
        with pytest.raises(ValidationError) as exc_info:
            await provisioner(settings, {}).delete(DeleteDeviceRequest(dev_eui="nope", application_id=APP))
        assert exc_info.value.error_code == "INVALID_DEV_EUI"


class TestTargetResolution:

    @pytest.mark.asyncio
    async def test_env_key_fallback(self, settings):
        target = await TTNProvisioner(settings=settings).resolve_target(application_id=APP)
        assert target.source == "env"
        assert target.cluster == "eu1"
        assert "ENVKEY" not in repr(target)

    @pytest.mark.asyncio
    async def test_resolver_key_and_application(self, settings):
        repo = MockSettingsRepository(org_ttn={
            "enabled": True, "api_key": "NNSXS.ORG.2222", "application_id": "org-app", "cluster": "au1"
        })
        target = await TTNProvisioner(SettingsResolver(repo), settings=settings).resolve_target(USER_ID, ORG_ID)
        assert target.source == "org"
        assert target.application_id == "org-app"
        assert target.cluster == "au1"

    @pytest.mark.asyncio
    async def test_missing_key(self, settings):
        bare = settings.model_copy(update={"ttn_provision_api_key": None})
        with pytest.raises(ConfigMissingError) as exc_info:
            await TTNProvisioner(settings=bare).resolve_target(application_id=APP)
        assert exc_info.value.setting_name == "TTN_PROVISION_API_KEY"

    @pytest.mark.asyncio
    async def test_missing_application(self, settings):
        with pytest.raises(ValidationError) as exc_info:
            await TTNProvisioner(settings=settings).resolve_target()
        assert exc_info.value.error_code == "MISSING_APPLICATION_ID"

    @pytest.mark.asyncio
    async def test_bad_cluster(self, settings):
        with pytest.raises(ValidationError) as exc_info:
            await TTNProvisioner(settings=settings).resolve_target(application_id=APP, cluster="mars1")
        assert exc_info.value.error_code == "INVALID_CLUSTER"


class TestPreflight:

    @pytest.mark.asyncio
    async def test_counts_unregistered_devices(self, settings):
        other = "0011223344556678"
        routes = {
            ("GET", APPLICATION): json_response(200, {"ids": {"application_id": APP}}),
            ("GET", IS_DEVICE): json_response(200, {}),
            ("GET", f"{IS_DEVICES}/sensor-{other}"): json_response(404, {}),
        }
        result = await provisioner(settings, routes).preflight(PreflightRequest(
            application_id=APP, devices=[{"dev_eui": EUI}, {"dev_eui": other}]
        ))

        assert result.application.exists
        assert not result.ok
        assert not result.all_registered
        assert result.unregistered_count == 1
        assert result.devices[1].hint == f"Register this device in TTN with device_id: sensor-{other}"

    @pytest.mark.asyncio
    async def test_forbidden_device_check_counts_as_registered(self, settings):
        routes = {
            ("GET", APPLICATION): json_response(200, {}),
            ("GET", IS_DEVICE): json_response(403, {}),
        }
        result = await provisioner(settings, routes).preflight(PreflightRequest(
            application_id=APP, devices=[{"dev_eui": EUI}]
        ))
        assert result.ok
        assert result.devices[0].registered

    @pytest.mark.asyncio
    async def test_missing_application(self, settings):
        result = await provisioner(settings, {}).preflight(PreflightRequest(application_id=APP, cluster="nam1"))
        assert not result.ok
        assert result.application.error == f'Application "{APP}" not found on cluster nam1'
        assert result.devices == []

    @pytest.mark.asyncio
    async def test_cluster_mismatch(self, settings):
        routes = {("GET", APPLICATION): json_response(200, {})}
        result = await provisioner(settings, routes).preflight(PreflightRequest(
            application_id=APP,
            cluster="eu1",
            detect_cluster_from_url="https://console.nam1.cloud.thethings.network/console/applications",
        ))
        assert not result.ok
        assert result.cluster_mismatch.detected_cluster == "nam1"
        assert result.cluster_mismatch.configured_cluster == "eu1"


class TestClusterHelpers:

    @pytest.mark.parametrize("url,expected", [
        ("https://nam1.cloud.thethings.network/api/v3", "nam1"),
        ("https://console.eu1.cloud.thethings.network/console/", "eu1"),
        ("au1.cloud.thethings.network", "au1"),
        ("https://example.com", None),
        (None, None),
    ])
    def test_parse_cluster(self, url, expected):
        assert parse_cluster_from_url(url) == expected

    def test_frequency_plans(self):
        assert frequency_plan_for("eu1") == "EU_863_870_TTN"
        assert frequency_plan_for("au1") == "AU_915_928_FSB_2"
