from __future__ import annotations

from typing import Any, Dict

from jsonschema import Draft202012Validator

AUDIT_DETAIL_SCHEMA_VERSION = 1
ORG_SETTINGS_SCHEMA_VERSION = 1

_DRAFT = "https://json-schema.org/draft/2020-12/schema"

_NULLABLE_STRING = {"type": ["string", "null"]}

_CHANGES = {"type": "object"}

_ACCESS_RESULT = {
    "type": "object",
    "properties": {
        "customer_org_id": {"type": "string"},
        "customer_name": _NULLABLE_STRING,
        "status": {"enum": ["transferred", "skipped"]},
        "new_access_id": {"type": "string"},
        "reason": {"type": "string"},
    },
    "required": ["customer_org_id", "status"],
}

_AUDIT_DETAIL_SCHEMAS: dict[str, Dict[str, Any]] = {
    "login_success": {
        "$schema": _DRAFT,
        "type": "object",
        "properties": {
            "method": {"enum": ["password", "password+totp", "password+backup_code"]},
            "mfa_enrollment_required": {"type": "boolean"},
        },
        "required": ["method"],
    },
    "login_failed": {
        "$schema": _DRAFT,
        "type": "object",
        "properties": {
            "reason": {"type": "string"},
            "email_digest": {"type": "string"},
        },
        "required": ["reason"],
    },
    "logout": {
        "$schema": _DRAFT,
        "type": "object",
        "properties": {"reason": {"type": "string"}},
    },
    "organization": {
        "$schema": _DRAFT,
        "type": "object",
        "properties": {
            "organization_name": {"type": "string"},
            "organization_type": {"type": "string"},
            "changes": _CHANGES,
        },
        "required": ["organization_name"],
    },
    "user": {
        "$schema": _DRAFT,
        "type": "object",
        "properties": {
            "email": {"type": "string"},
            "role": {"type": "string"},
            "changes": _CHANGES,
        },
    },
    "technician_access_grant": {
        "$schema": _DRAFT,
        "type": "object",
        "properties": {
            "technician_id": {"type": "string"},
            "customer_org_id": {"type": "string"},
            "access_level": {"enum": ["read_only", "full_access", "emergency"]},
            "allowed_services": {"type": "array", "items": {"type": "string"}},
            "expires_at": _NULLABLE_STRING,
            "notes": _NULLABLE_STRING,
        },
        "required": ["technician_id", "customer_org_id", "access_level"],
    },
    "technician_access_update": {
        "$schema": _DRAFT,
        "type": "object",
        "properties": {
            "technician_id": {"type": "string"},
            "customer_org_id": {"type": "string"},
            "changes": _CHANGES,
        },
        "required": ["technician_id", "customer_org_id", "changes"],
    },
    "technician_access_revoke": {
        "$schema": _DRAFT,
        "type": "object",
        "properties": {
            "technician_id": {"type": "string"},
            "customer_org_id": {"type": "string"},
            "reason": {"type": "string"},
        },
        "required": ["technician_id", "customer_org_id", "reason"],
    },
    "technician_access_handoff": {
        "$schema": _DRAFT,
        "type": "object",
        "properties": {
            "from_technician_id": {"type": "string"},
            "to_technician_id": {"type": "string"},
            "reason": _NULLABLE_STRING,
            "maintain_original_access": {"type": "boolean"},
            "transferred_count": {"type": "integer", "minimum": 0},
            "skipped_count": {"type": "integer", "minimum": 0},
            "results": {"type": "array", "items": _ACCESS_RESULT},
        },
        "required": [
            "from_technician_id",
            "to_technician_id",
            "transferred_count",
            "skipped_count",
            "results",
        ],
    },
    "mfa": {
        "$schema": _DRAFT,
        "type": "object",
        "properties": {
            "method": {"enum": ["totp", "backup_code"]},
            "remaining_backup_codes": {"type": "integer", "minimum": 0},
        },
    },
    "password": {
        "$schema": _DRAFT,
        "type": "object",
        "properties": {
            "sessions_revoked": {"type": "integer", "minimum": 0},
        },
    },
    "data": {
        "$schema": _DRAFT,
        "type": "object",
    },
    "security_event": {
        "$schema": _DRAFT,
        "type": "object",
        "properties": {
            "event_type": {"type": "string"},
        },
        "required": ["event_type"],
    },
}

# action type prefixes that share one detail schema
_PREFIX_SCHEMAS = (
    ("organization_", "organization"),
    ("user_", "user"),
    ("mfa_", "mfa"),
    ("password_", "password"),
    ("data_", "data"),
    ("security_event_", "security_event"),
)

ORG_SETTINGS_SCHEMA: Dict[str, Any] = {
    "$schema": _DRAFT,
    "type": "object",
    "properties": {
        "timezone": {"type": "string", "minLength": 1},
        "session_timeout_minutes": {"type": "integer", "minimum": 5, "maximum": 1440},
        "require_mfa": {"type": "boolean"},
        "allowed_ip_ranges": {"type": "array", "items": {"type": "string"}},
        "notification_email": {"type": "string", "minLength": 3},
        "data_retention_days": {"type": "integer", "minimum": 1},
        "branding": {
            "type": "object",
            "properties": {
                "logo_url": {"type": "string"},
                "primary_color": {"type": "string"},
            },
            "additionalProperties": False,
        },
    },
    "additionalProperties": False,
}


class RecordValidationError(Exception):
    def __init__(self, message: str, errors: list[str]):
        super().__init__(message)
        self.errors = errors


def _detail_schema(action_type: str) -> Dict[str, Any] | None:
    schema = _AUDIT_DETAIL_SCHEMAS.get(action_type)
    if schema is not None:
        return schema
    for prefix, key in _PREFIX_SCHEMAS:
        if action_type.startswith(prefix):
            return _AUDIT_DETAIL_SCHEMAS[key]
    return None


def _collect_errors(schema: Dict[str, Any], payload: Any) -> list[str]:
    validator = Draft202012Validator(schema)
    errors = sorted(validator.iter_errors(payload), key=lambda e: list(e.path))
    return [
        f"{'.'.join(str(p) for p in e.path)}: {e.message}" if e.path else e.message
        for e in errors
    ]


def validate_audit_detail(action_type: str, detail: Dict[str, Any]) -> int:
    """Validate structured audit detail; returns the schema version applied.

    Action types without a registered schema accept any JSON object.
    """
    if not isinstance(detail, dict):
        raise RecordValidationError("audit detail must be an object", [action_type])
    schema = _detail_schema(action_type)
    if schema is None:
        return AUDIT_DETAIL_SCHEMA_VERSION
    messages = _collect_errors(schema, detail)
    if messages:
        raise RecordValidationError("audit detail validation failed", messages)
    return AUDIT_DETAIL_SCHEMA_VERSION


def validate_org_settings(settings: Dict[str, Any]) -> Dict[str, Any]:
    messages = _collect_errors(ORG_SETTINGS_SCHEMA, settings)
    if messages:
        raise RecordValidationError("organization settings validation failed", messages)
    return settings
