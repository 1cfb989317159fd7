"""
Sync bundle preflight validation

Blocking errors stop the push before any network call. Warnings are
reported but do not block.
"""
from typing import List

from pydantic import BaseModel, Field

from .models import SyncContext, SyncEntities
from .utils import is_valid_uuid, normalize_dev_eui, normalize_gateway_eui, normalize_hex_key


class ValidationIssue(BaseModel):
    code: str
    field_path: str
    message: str
    section: str  # context | gateways | devices

    def __str__(self) -> str:
        return f"{self.field_path}: {self.message}"


class BundleValidation(BaseModel):
    blocking_errors: List[ValidationIssue] = Field(default_factory=list)
    warnings: List[ValidationIssue] = Field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.blocking_errors


def validate_sync_bundle(context: SyncContext, entities: SyncEntities) -> BundleValidation:
    result = BundleValidation()
    errors = result.blocking_errors
    warnings = result.warnings

    org_id = (context.org_id or "").strip()
    if not org_id:
        errors.append(ValidationIssue(
            code="ORG_ID_MISSING",
            field_path="context.org_id",
            message="Organization ID is required. Select an organization first.",
            section="context",
        ))
    elif not is_valid_uuid(org_id):
        errors.append(ValidationIssue(
            code="ORG_ID_INVALID",
            field_path="context.org_id",
            message="Organization ID must be a valid UUID.",
            section="context",
        ))

    if not (context.site_id or "").strip():
        warnings.append(ValidationIssue(
            code="SITE_ID_MISSING",
            field_path="context.site_id",
            message="Site ID not set. Sync will use org-level context only.",
            section="context",
        ))

    for i, gw in enumerate(entities.gateways):
        if not gw.name.strip():
            errors.append(ValidationIssue(
                code="GATEWAY_NAME_MISSING",
                field_path=f"gateways[{i}].name",
                message="Gateway name is required.",
                section="gateways",
            ))
        if normalize_gateway_eui(gw.eui) is None:
            errors.append(ValidationIssue(
                code="GATEWAY_EUI_INVALID",
                field_path=f"gateways[{i}].eui",
                message=f"Gateway EUI must be 16 hex characters. Got: {len(gw.eui or '')}",
                section="gateways",
            ))

    for i, dev in enumerate(entities.devices):
        if not dev.name.strip():
            errors.append(ValidationIssue(
                code="DEVICE_NAME_MISSING",
                field_path=f"devices[{i}].name",
                message="Device name is required.",
                section="devices",
            ))
        if normalize_dev_eui(dev.dev_eui) is None:
            errors.append(ValidationIssue(
                code="DEVICE_DEV_EUI_INVALID",
                field_path=f"devices[{i}].dev_eui",
                message="DevEUI must be 16 hex characters.",
                section="devices",
            ))

        if not dev.join_eui or not dev.app_key:
            warnings.append(ValidationIssue(
                code="DEVICE_OTAA_KEYS_MISSING",
                field_path=f"devices[{i}]",
                message="JoinEUI/AppKey missing. Device will sync without OTAA credentials.",
                section="devices",
            ))
        if dev.join_eui and normalize_hex_key(dev.join_eui, 16) is None:
            errors.append(ValidationIssue(
                code="DEVICE_JOIN_EUI_INVALID",
                field_path=f"devices[{i}].join_eui",
                message="JoinEUI must be 16 hex characters.",
                section="devices",
            ))
        if dev.app_key and normalize_hex_key(dev.app_key, 32) is None:
            errors.append(ValidationIssue(
                code="DEVICE_APP_KEY_INVALID",
                field_path=f"devices[{i}].app_key",
                message="AppKey must be 32 hex characters.",
                section="devices",
            ))

    return result
