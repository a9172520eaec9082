import os
import time
import uuid
import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Set
from urllib.parse import parse_qs, urlparse

import requests
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from adapters import (
    BaseAdapter,
    Capability,
    CapabilityNotSupportedError,
    EntityNotFoundError,
    TenantNotFoundError,
    compute_totals,
    create_adapter,
)
from auth import require_mcp_auth
from connections import (
    DEFAULT_SCOPES,
    STATE_TTL_SECONDS,
    ConnectionStore,
    OAuthError,
    OAuthStateStore,
    XeroOAuthClient,
    build_authorization_url,
)
from introspection import EnumIntrospector
from mcp_response import VerbosityLevel, build_response
from models import PAYLOAD_SCHEMAS, EntityType, LineItem, NextToolCall, RecoveryAction, Severity, ValidationResult
from recovery import RecoveryAdvisor, simulation_recovery, tenant_not_found_recovery
from simulation import (
    LIFECYCLES,
    NETWORK_CONDITIONS,
    SEED_ENTITIES,
    SEED_SCENARIOS,
    NetworkSimulator,
    SeedGenerator,
    find_transition_path,
)
from stores import IDEMPOTENCY_TTL_HOURS, AuditLog, IdempotencyStore, create_idempotency_store
from utils import (
    MCP_PROTOCOL_VERSION,
    SERVER_NAME,
    SERVER_VERSION,
    _as_float,
    _rpc_error,
    _rpc_result,
    logger,
    safe_dumps,
    safe_exception_message,
)
from validation import SnapshotUnavailableError, ValidationEngine

MAX_DRY_RUN_PAYLOADS = 50
MAX_SEED_COUNT = 50
MAX_REPLAY_COUNT = 10
MAX_PAGE_SIZE = 100


def _initialize_payload():
    """Standard MCP initialize response."""
    return {
        "protocolVersion": MCP_PROTOCOL_VERSION,
        "capabilities": {
            "tools": {"listChanged": False},
            "resources": {"listChanged": False, "subscribe": False},
            "prompts": {"listChanged": False},
            "logging": {},
        },
        "serverInfo": {"name": SERVER_NAME, "version": SERVER_VERSION},
    }

# ---- Argument helpers ----
class ToolArgumentError(ValueError):
    pass


def _get_arg(args: Dict[str, Any], *names, default=None):
    for name in names:
        if name in args:
            return args[name]
        # also try snake/camel variants
        alt = name.replace("_", "")
        for k in args.keys():
            if k.replace("_", "").lower() == alt.lower():
                return args[k]
    return default


def _require_arg(args: Dict[str, Any], name: str):
    value = _get_arg(args, name)
    if value is None or value == "":
        raise ToolArgumentError(f"'{name}' is required")
    return value


def _int_arg(args: Dict[str, Any], name: str, default: int, minimum: int, maximum: Optional[int] = None) -> int:
    raw = _get_arg(args, name, default=default)
    if isinstance(raw, bool):
        raise ToolArgumentError(f"'{name}' must be an integer")
    try:
        value = int(raw)
    except (TypeError, ValueError):
        raise ToolArgumentError(f"'{name}' must be an integer")
    if value < minimum or (maximum is not None and value > maximum):
        bounds = f"between {minimum} and {maximum}" if maximum is not None else f">= {minimum}"
        raise ToolArgumentError(f"'{name}' must be {bounds}")
    return value


def _bool_arg(args: Dict[str, Any], name: str, default: Optional[bool] = None) -> Optional[bool]:
    raw = _get_arg(args, name, default=default)
    if raw is None or isinstance(raw, bool):
        return raw
    if isinstance(raw, str):
        return raw.strip().lower() in ("1", "true", "yes")
    return bool(raw)


_CONTROL_ARGS = {"tenant_id", "verbosity", "idempotency_key"}

# Flat id arguments accepted in place of the nested reference objects.
_FLAT_REFS = {
    "contact_id": ("contact", "contact_id"),
    "invoice_id": ("invoice", "invoice_id"),
    "credit_note_id": ("credit_note", "credit_note_id"),
    "account_id": ("account", "account_id"),
    "bank_account_id": ("bank_account", "account_id"),
}


def _normalize_payload(args: Dict[str, Any]) -> Dict[str, Any]:
    payload = {k: v for k, v in args.items() if k not in _CONTROL_ARGS}
    for flat, (nested, key) in _FLAT_REFS.items():
        if flat in payload and nested not in payload:
            payload[nested] = {key: payload.pop(flat)}
    return payload


_COMPACT_BY_DEFAULT = {"introspect_enums", "get_invoice", "get_contact", "list_invoices", "list_contacts"}


def _default_verbosity(name: str) -> VerbosityLevel:
    if name in _COMPACT_BY_DEFAULT:
        return VerbosityLevel.COMPACT
    return VerbosityLevel.DIAGNOSTIC


def _iso_from_epoch(value: Any) -> Optional[str]:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc).isoformat().replace("+00:00", "Z")

# ---- Tool catalog ----
_READ_SCOPES = [{"type": "oauth2", "scopes": ["mcp:read:xerodev"]}]
_WRITE_SCOPES = [{"type": "oauth2", "scopes": ["mcp:write:xerodev"]}]

_VERBOSITY = {
    "type": "string",
    "enum": ["silent", "compact", "diagnostic", "debug"],
    "description": "Response detail level",
}
_TENANT = {"type": "string", "description": "Target tenant ID (defaults to the tenant chosen with switch_tenant_context)"}
_IDEMPOTENCY_KEY = {"type": "string", "description": "Replaying the same key returns the original result instead of creating a duplicate"}
_CONTACT_REF = {
    "type": "object",
    "properties": {"contact_id": {"type": "string"}},
    "required": ["contact_id"],
}
_LINE_ITEMS = {
    "type": "array",
    "minItems": 1,
    "items": {
        "type": "object",
        "properties": {
            "description": {"type": "string"},
            "quantity": {"type": "number", "exclusiveMinimum": 0},
            "unit_amount": {"type": "number"},
            "account_code": {"type": "string"},
            "tax_type": {"type": "string"},
        },
        "required": ["description", "quantity", "unit_amount", "account_code"],
    },
}
_LINE_AMOUNT_TYPES = {"type": "string", "enum": ["Exclusive", "Inclusive", "NoTax"]}


def _list_tools_payload():
    return {
        "tools": [
            {
                "name": "get_mcp_capabilities",
                "description": "Describe the server: mode, available tenants, the recommended agent workflow and rate limits. Call this first.",
                "inputSchema": {
                    "type": "object",
                    "properties": {
                        "include_tenants": {"type": "boolean", "default": True},
                        "verbosity": _VERBOSITY,
                    },
                },
                "securitySchemes": _READ_SCOPES,
            },
            {
                "name": "switch_tenant_context",
                "description": "Select the tenant used by later calls and summarise its chart of accounts, tax rates and contacts.",
                "inputSchema": {
                    "type": "object",
                    "properties": {"tenant_id": _TENANT, "verbosity": _VERBOSITY},
                    "required": ["tenant_id"],
                },
                "securitySchemes": _READ_SCOPES,
            },
            {
                "name": "get_audit_log",
                "description": "Recent tool invocations with optional filters and aggregate statistics.",
                "inputSchema": {
                    "type": "object",
                    "properties": {
                        "tenant_id": {"type": "string"},
                        "tool_name": {"type": "string"},
                        "success": {"type": "boolean"},
                        "include_stats": {"type": "boolean", "default": True},
                        "limit": {"type": "integer", "minimum": 1, "maximum": 100, "default": 20},
                        "offset": {"type": "integer", "minimum": 0, "default": 0},
                        "verbosity": _VERBOSITY,
                    },
                },
                "securitySchemes": _READ_SCOPES,
            },
            {
                "name": "validate_schema_match",
                "description": "Validate a payload against the tenant's accounts, tax rates and contacts without writing anything. "
                               "Failures carry a diff per field and recovery.next_tool_call.",
                "inputSchema": {
                    "type": "object",
                    "properties": {
                        "tenant_id": _TENANT,
                        "entity_type": {"type": "string", "enum": [e.value for e in PAYLOAD_SCHEMAS]},
                        "payload": {"type": "object"},
                        "verbosity": _VERBOSITY,
                    },
                    "required": ["tenant_id", "entity_type", "payload"],
                },
                "securitySchemes": _READ_SCOPES,
            },
            {
                "name": "introspect_enums",
                "description": "List valid account codes, tax types or contacts for a tenant. Returned values can be copied into payloads as-is.",
                "inputSchema": {
                    "type": "object",
                    "properties": {
                        "tenant_id": _TENANT,
                        "entity_type": {"type": "string", "enum": ["Account", "TaxRate", "Contact"]},
                        "filter": {
                            "type": "object",
                            "properties": {
                                "type": {"type": "string"},
                                "status": {"type": "string"},
                                "is_customer": {"type": "boolean"},
                                "is_supplier": {"type": "boolean"},
                            },
                        },
                        "verbosity": _VERBOSITY,
                    },
                    "required": ["tenant_id", "entity_type"],
                },
                "securitySchemes": _READ_SCOPES,
            },
            {
                "name": "dry_run_sync",
                "description": "Validate a batch of up to 50 payloads and report which would succeed, without creating anything.",
                "inputSchema": {
                    "type": "object",
                    "properties": {
                        "tenant_id": _TENANT,
                        "operation": {"type": "string", "enum": ["create_invoices", "create_contacts"]},
                        "payloads": {"type": "array", "items": {"type": "object"}, "minItems": 1, "maxItems": MAX_DRY_RUN_PAYLOADS},
                        "verbosity": _VERBOSITY,
                    },
                    "required": ["tenant_id", "operation", "payloads"],
                },
                "securitySchemes": _READ_SCOPES,
            },
            {
                "name": "seed_sandbox_data",
                "description": "Generate sample contacts or invoices from a scenario template. Generated data is returned, not stored.",
                "inputSchema": {
                    "type": "object",
                    "properties": {
                        "tenant_id": _TENANT,
                        "entity": {"type": "string", "enum": list(SEED_ENTITIES)},
                        "count": {"type": "integer", "minimum": 1, "maximum": MAX_SEED_COUNT, "default": 10},
                        "scenario": {"type": "string", "enum": list(SEED_SCENARIOS), "default": "DEFAULT"},
                        "verbosity": _VERBOSITY,
                    },
                    "required": ["tenant_id", "entity"],
                },
                "securitySchemes": _READ_SCOPES,
            },
            {
                "name": "drive_lifecycle",
                "description": "Move an invoice, quote or credit note through its status lifecycle to a target state. "
                               "Reaching PAID records a payment; a quote reaching INVOICED creates an invoice.",
                "inputSchema": {
                    "type": "object",
                    "properties": {
                        "tenant_id": _TENANT,
                        "entity_type": {"type": "string", "enum": ["Invoice", "Quote", "CreditNote"]},
                        "entity_id": {"type": "string"},
                        "target_state": {"type": "string"},
                        "payment_amount": {"type": "number", "description": "Required when the path passes through PAID"},
                        "payment_account_id": {"type": "string", "description": "BANK account_id, required when the path passes through PAID"},
                        "verbosity": _VERBOSITY,
                    },
                    "required": ["tenant_id", "entity_type", "entity_id", "target_state"],
                },
                "securitySchemes": _WRITE_SCOPES,
            },
            {
                "name": "simulate_network_conditions",
                "description": "Inject network faults (rate limits, timeouts, server errors, expired tokens, intermittent failures) "
                               "into write calls for a tenant. duration_seconds=0 clears the simulation.",
                "inputSchema": {
                    "type": "object",
                    "properties": {
                        "tenant_id": _TENANT,
                        "condition": {"type": "string", "enum": list(NETWORK_CONDITIONS)},
                        "duration_seconds": {"type": "integer", "minimum": 0, "maximum": 300, "default": 60},
                        "failure_rate": {"type": "number", "minimum": 0, "maximum": 1, "default": 0.5},
                        "verbosity": _VERBOSITY,
                    },
                    "required": ["tenant_id"],
                },
                "securitySchemes": _READ_SCOPES,
            },
            {
                "name": "replay_idempotency",
                "description": "Send the same create request several times with one idempotency key and check that a single result comes back.",
                "inputSchema": {
                    "type": "object",
                    "properties": {
                        "tenant_id": _TENANT,
                        "operation": {"type": "string", "enum": ["create_invoice", "create_contact", "create_payment"]},
                        "idempotency_key": {"type": "string"},
                        "replay_count": {"type": "integer", "minimum": 1, "maximum": MAX_REPLAY_COUNT, "default": 3},
                        "verbosity": _VERBOSITY,
                    },
                    "required": ["tenant_id", "operation"],
                },
                "securitySchemes": _READ_SCOPES,
            },
            {
                "name": "create_contact",
                "description": "Create a contact after validating it against the tenant.",
                "inputSchema": {
                    "type": "object",
                    "properties": {
                        "tenant_id": _TENANT,
                        "name": {"type": "string"},
                        "first_name": {"type": "string"},
                        "last_name": {"type": "string"},
                        "email": {"type": "string"},
                        "is_customer": {"type": "boolean"},
                        "is_supplier": {"type": "boolean"},
                        "idempotency_key": _IDEMPOTENCY_KEY,
                        "verbosity": _VERBOSITY,
                    },
                    "required": ["tenant_id", "name"],
                },
                "securitySchemes": _WRITE_SCOPES,
            },
            {
                "name": "create_invoice",
                "description": "Create a sales invoice (ACCREC) or bill (ACCPAY) after validating it against the tenant.",
                "inputSchema": {
                    "type": "object",
                    "properties": {
                        "tenant_id": _TENANT,
                        "type": {"type": "string", "enum": ["ACCREC", "ACCPAY"], "default": "ACCREC"},
                        "contact": _CONTACT_REF,
                        "contact_id": {"type": "string", "description": "Shorthand for contact.contact_id"},
                        "date": {"type": "string", "description": "YYYY-MM-DD"},
                        "due_date": {"type": "string", "description": "YYYY-MM-DD"},
                        "reference": {"type": "string"},
                        "status": {"type": "string", "enum": ["DRAFT", "SUBMITTED", "AUTHORISED"]},
                        "line_amount_types": _LINE_AMOUNT_TYPES,
                        "line_items": _LINE_ITEMS,
                        "currency_code": {"type": "string"},
                        "idempotency_key": _IDEMPOTENCY_KEY,
                        "verbosity": _VERBOSITY,
                    },
                    "required": ["tenant_id", "line_items"],
                },
                "securitySchemes": _WRITE_SCOPES,
            },
            {
                "name": "create_quote",
                "description": "Create a quote after validating it against the tenant.",
                "inputSchema": {
                    "type": "object",
                    "properties": {
                        "tenant_id": _TENANT,
                        "contact": _CONTACT_REF,
                        "contact_id": {"type": "string"},
                        "date": {"type": "string"},
                        "expiry_date": {"type": "string"},
                        "title": {"type": "string"},
                        "summary": {"type": "string"},
                        "terms": {"type": "string"},
                        "reference": {"type": "string"},
                        "line_amount_types": _LINE_AMOUNT_TYPES,
                        "line_items": _LINE_ITEMS,
                        "currency_code": {"type": "string"},
                        "idempotency_key": _IDEMPOTENCY_KEY,
                        "verbosity": _VERBOSITY,
                    },
                    "required": ["tenant_id", "line_items"],
                },
                "securitySchemes": _WRITE_SCOPES,
            },
            {
                "name": "create_credit_note",
                "description": "Create a credit note (ACCRECCREDIT or ACCPAYCREDIT) after validating it against the tenant.",
                "inputSchema": {
                    "type": "object",
                    "properties": {
                        "tenant_id": _TENANT,
                        "type": {"type": "string", "enum": ["ACCRECCREDIT", "ACCPAYCREDIT"], "default": "ACCRECCREDIT"},
                        "contact": _CONTACT_REF,
                        "contact_id": {"type": "string"},
                        "date": {"type": "string"},
                        "status": {"type": "string", "enum": ["DRAFT", "SUBMITTED", "AUTHORISED"]},
                        "reference": {"type": "string"},
                        "line_amount_types": _LINE_AMOUNT_TYPES,
                        "line_items": _LINE_ITEMS,
                        "currency_code": {"type": "string"},
                        "idempotency_key": _IDEMPOTENCY_KEY,
                        "verbosity": _VERBOSITY,
                    },
                    "required": ["tenant_id", "line_items"],
                },
                "securitySchemes": _WRITE_SCOPES,
            },
            {
                "name": "create_payment",
                "description": "Record a payment against an AUTHORISED invoice or credit note from a BANK account.",
                "inputSchema": {
                    "type": "object",
                    "properties": {
                        "tenant_id": _TENANT,
                        "invoice_id": {"type": "string"},
                        "credit_note_id": {"type": "string"},
                        "account_id": {"type": "string", "description": "BANK account_id"},
                        "amount": {"type": "number", "exclusiveMinimum": 0},
                        "date": {"type": "string"},
                        "reference": {"type": "string"},
                        "currency_code": {"type": "string"},
                        "idempotency_key": _IDEMPOTENCY_KEY,
                        "verbosity": _VERBOSITY,
                    },
                    "required": ["tenant_id", "account_id", "amount"],
                },
                "securitySchemes": _WRITE_SCOPES,
            },
            {
                "name": "create_bank_transaction",
                "description": "Record money received (RECEIVE) or spent (SPEND) through a BANK account.",
                "inputSchema": {
                    "type": "object",
                    "properties": {
                        "tenant_id": _TENANT,
                        "type": {"type": "string", "enum": ["RECEIVE", "SPEND", "RECEIVE-OVERPAYMENT", "RECEIVE-PREPAYMENT",
                                                            "SPEND-OVERPAYMENT", "SPEND-PREPAYMENT"]},
                        "bank_account_id": {"type": "string"},
                        "contact_id": {"type": "string"},
                        "date": {"type": "string"},
                        "reference": {"type": "string"},
                        "line_amount_types": _LINE_AMOUNT_TYPES,
                        "line_items": _LINE_ITEMS,
                        "currency_code": {"type": "string"},
                        "idempotency_key": _IDEMPOTENCY_KEY,
                        "verbosity": _VERBOSITY,
                    },
                    "required": ["tenant_id", "type", "bank_account_id", "line_items"],
                },
                "securitySchemes": _WRITE_SCOPES,
            },
            {
                "name": "get_invoice",
                "description": "Fetch one invoice by ID, including its outstanding balance.",
                "inputSchema": {
                    "type": "object",
                    "properties": {"tenant_id": _TENANT, "invoice_id": {"type": "string"}, "verbosity": _VERBOSITY},
                    "required": ["tenant_id", "invoice_id"],
                },
                "securitySchemes": _READ_SCOPES,
            },
            {
                "name": "get_contact",
                "description": "Fetch one contact by ID.",
                "inputSchema": {
                    "type": "object",
                    "properties": {"tenant_id": _TENANT, "contact_id": {"type": "string"}, "verbosity": _VERBOSITY},
                    "required": ["tenant_id", "contact_id"],
                },
                "securitySchemes": _READ_SCOPES,
            },
            {
                "name": "list_invoices",
                "description": "List invoices with optional status, type, contact and date filters.",
                "inputSchema": {
                    "type": "object",
                    "properties": {
                        "tenant_id": _TENANT,
                        "status": {"type": "string", "enum": ["DRAFT", "SUBMITTED", "AUTHORISED", "PAID", "VOIDED"]},
                        "type": {"type": "string", "enum": ["ACCREC", "ACCPAY"]},
                        "contact_id": {"type": "string"},
                        "from_date": {"type": "string"},
                        "to_date": {"type": "string"},
                        "page": {"type": "integer", "minimum": 1, "default": 1},
                        "page_size": {"type": "integer", "minimum": 1, "maximum": MAX_PAGE_SIZE, "default": 20},
                        "verbosity": _VERBOSITY,
                    },
                    "required": ["tenant_id"],
                },
                "securitySchemes": _READ_SCOPES,
            },
            {
                "name": "list_contacts",
                "description": "List contacts with optional status, customer/supplier and name filters.",
                "inputSchema": {
                    "type": "object",
                    "properties": {
                        "tenant_id": _TENANT,
                        "status": {"type": "string", "enum": ["ACTIVE", "ARCHIVED"]},
                        "is_customer": {"type": "boolean"},
                        "is_supplier": {"type": "boolean"},
                        "search": {"type": "string", "description": "Case-insensitive match on the contact name"},
                        "page": {"type": "integer", "minimum": 1, "default": 1},
                        "page_size": {"type": "integer", "minimum": 1, "maximum": MAX_PAGE_SIZE, "default": 20},
                        "verbosity": _VERBOSITY,
                    },
                    "required": ["tenant_id"],
                },
                "securitySchemes": _READ_SCOPES,
            },
            {
                "name": "get_authorization_url",
                "description": "Start the Xero OAuth flow (live mode). Open the returned URL in a browser.",
                "inputSchema": {
                    "type": "object",
                    "properties": {
                        "scopes": {"type": "array", "items": {"type": "string"}},
                        "verbosity": _VERBOSITY,
                    },
                },
                "securitySchemes": _WRITE_SCOPES,
            },
            {
                "name": "exchange_auth_code",
                "description": "Finish the Xero OAuth flow with the full callback URL the browser was redirected to.",
                "inputSchema": {
                    "type": "object",
                    "properties": {"callback_url": {"type": "string"}, "verbosity": _VERBOSITY},
                    "required": ["callback_url"],
                },
                "securitySchemes": _WRITE_SCOPES,
            },
            {
                "name": "list_connections",
                "description": "List connected Xero organisations and their token status (live mode).",
                "inputSchema": {
                    "type": "object",
                    "properties": {"include_inactive": {"type": "boolean", "default": False}, "verbosity": _VERBOSITY},
                },
                "securitySchemes": _READ_SCOPES,
            },
            {
                "name": "refresh_connection",
                "description": "Refresh the access token for a connected organisation (live mode).",
                "inputSchema": {
                    "type": "object",
                    "properties": {"tenant_id": {"type": "string"}, "verbosity": _VERBOSITY},
                    "required": ["tenant_id"],
                },
                "securitySchemes": _WRITE_SCOPES,
            },
            {
                "name": "revoke_connection",
                "description": "Revoke the tokens for a connected organisation and mark it revoked (live mode).",
                "inputSchema": {
                    "type": "object",
                    "properties": {"tenant_id": {"type": "string"}, "verbosity": _VERBOSITY},
                    "required": ["tenant_id"],
                },
                "securitySchemes": _WRITE_SCOPES,
            },
        ]
    }

_KNOWN_TOOL_NAMES: Set[str] = {tool["name"] for tool in _list_tools_payload()["tools"]}

_TOOL_NAME_ALIASES = {f"xerodev.{name}": name for name in _KNOWN_TOOL_NAMES}
_TOOL_NAME_ALIASES.update({
    "get_capabilities": "get_mcp_capabilities",
    "switch_tenant": "switch_tenant_context",
    "validate_schema": "validate_schema_match",
    "seed_sandbox": "seed_sandbox_data",
    "simulate_network": "simulate_network_conditions",
})

# ---- Tool server ----
@dataclass
class ToolOutcome:
    envelope: Dict[str, Any]
    reason: Optional[str] = None
    http_status: int = 200
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return bool(self.envelope.get("success"))


class ToolServer:
    """Runs tool calls against injected collaborators.

    The validation, recovery and introspection components are pure; everything with
    state (backend, idempotency store, audit log, simulator, OAuth stores) is passed
    in here so tests can build an isolated server.
    """

    def __init__(
        self,
        adapter: Optional[BaseAdapter] = None,
        idempotency: Optional[IdempotencyStore] = None,
        audit: Optional[AuditLog] = None,
        simulator: Optional[NetworkSimulator] = None,
        engine: Optional[ValidationEngine] = None,
        advisor: Optional[RecoveryAdvisor] = None,
        introspector: Optional[EnumIntrospector] = None,
        seeder: Optional[SeedGenerator] = None,
        connections: Optional[ConnectionStore] = None,
        oauth_states: Optional[OAuthStateStore] = None,
        oauth_client: Optional[XeroOAuthClient] = None,
    ):
        self.adapter = adapter or create_adapter()
        self.idempotency = idempotency or create_idempotency_store()
        self.audit = audit or AuditLog()
        self.simulator = simulator or NetworkSimulator()
        self.engine = engine or ValidationEngine()
        self.advisor = advisor or RecoveryAdvisor()
        self.introspector = introspector or EnumIntrospector()
        self.seeder = seeder or SeedGenerator()
        self._connections = connections
        self.oauth_states = oauth_states or OAuthStateStore()
        self.oauth_client = oauth_client or XeroOAuthClient()
        self.current_tenant_id: Optional[str] = None

    @property
    def connections(self) -> ConnectionStore:
        if self._connections is None:
            self._connections = getattr(self.adapter, "connections", None) or ConnectionStore()
        return self._connections

    # -- envelope helpers --

    @staticmethod
    def _ok(data: Any, verbosity: VerbosityLevel, **kwargs) -> ToolOutcome:
        return ToolOutcome(build_response(True, data, verbosity, **kwargs))

    @staticmethod
    def _fail(data: Any, verbosity: VerbosityLevel, reason: str, http_status: int = 400, **kwargs) -> ToolOutcome:
        error = kwargs.get("root_cause") or (data.get("error") if isinstance(data, dict) else None)
        return ToolOutcome(build_response(False, data, verbosity, **kwargs), reason, http_status, error)

    def _tenant_arg(self, args: Dict[str, Any]) -> str:
        tenant_id = _get_arg(args, "tenant_id") or self.current_tenant_id
        if not tenant_id:
            raise ToolArgumentError("'tenant_id' is required (or select one with switch_tenant_context)")
        return tenant_id

    def _simulated_fault(self, tenant_id: str, verbosity: VerbosityLevel) -> Optional[ToolOutcome]:
        fault = self.simulator.check(tenant_id)
        if fault is None:
            return None
        logger.info("Simulated %s for tenant %s", fault.condition, tenant_id)
        return self._fail(
            {"error": f"Simulated {fault.condition}: {fault.message}", **fault.to_dict()},
            verbosity,
            reason="simulatedFault",
            http_status=fault.http_status,
            narrative=f"Request failed due to a simulated {fault.condition} condition. "
                      "Clear the simulation or retry with backoff.",
            root_cause=fault.message,
            recovery=simulation_recovery(tenant_id),
        )

    def _validation_failure(self, entity_type: EntityType, tenant_id: str, result: ValidationResult,
                            verbosity: VerbosityLevel) -> ToolOutcome:
        recovery = self.advisor.suggest(entity_type, result, tenant_id)
        narrative = (f"{entity_type.value} validation failed with {len(result.errors)} error(s). "
                     f"Most common issue: {result.errors[0]}.")
        if recovery is not None and recovery.next_tool_call is not None:
            narrative += " See recovery.next_tool_call for the suggested fix."
        return self._fail(
            {
                "valid": False,
                "entity_type": entity_type.value,
                "score": result.score,
                "errors": result.errors,
                "warnings": result.warnings,
                "diff": [d.to_dict() for d in result.diff],
            },
            verbosity,
            reason="validationFailed",
            http_status=200,
            narrative=narrative,
            warnings=result.warnings,
            recovery=recovery,
            score=result.score,
        )

    # -- dispatch --

    async def call(self, name: str, args: Dict[str, Any]) -> ToolOutcome:
        args = args or {}
        verbosity = VerbosityLevel.parse(_get_arg(args, "verbosity"), _default_verbosity(name))
        start = time.perf_counter()
        handler = getattr(self, f"_tool_{name}")
        logger.info("Tool call %s", name)
        try:
            outcome = await handler(args, verbosity)
        except ToolArgumentError as e:
            outcome = self._fail(
                {"error": str(e)}, verbosity, reason="invalidArguments", http_status=400,
                narrative=f"Invalid arguments for {name}: {e}", root_cause=str(e))
        except TenantNotFoundError as e:
            outcome = self._fail(
                {"error": str(e)}, verbosity, reason="tenantNotFound", http_status=404,
                narrative=f"Tenant '{e.tenant_id}' not found. Use get_mcp_capabilities to list available tenants.",
                root_cause=str(e), recovery=tenant_not_found_recovery())
        except CapabilityNotSupportedError as e:
            outcome = self._capability_failure(name, e, verbosity)
        except SnapshotUnavailableError as e:
            outcome = self._fail(
                {"error": str(e)}, verbosity, reason="snapshotUnavailable", http_status=503,
                root_cause=str(e), recovery=tenant_not_found_recovery())
        except Exception as e:
            logger.exception("Tool error during %s", name)
            outcome = self._fail(
                {"error": f"Error while executing {name}"}, verbosity, reason="exception", http_status=500,
                root_cause=f"{type(e).__name__}: {safe_exception_message(e)}")

        elapsed_ms = (time.perf_counter() - start) * 1000
        if "meta" in outcome.envelope:
            outcome.envelope["meta"]["execution_time_ms"] = int(round(elapsed_ms))
        self.audit.record(
            tool_name=name,
            tenant_id=_get_arg(args, "tenant_id") or self.current_tenant_id,
            success=outcome.success,
            execution_time_ms=elapsed_ms,
            arguments={k: v for k, v in args.items() if k not in ("payload", "payloads", "callback_url")},
            error=outcome.error,
            score=(outcome.envelope.get("meta") or {}).get("score"),
        )
        return outcome

    def _capability_failure(self, name: str, exc: CapabilityNotSupportedError, verbosity) -> ToolOutcome:
        if exc.capability == Capability.OAUTH:
            if name == "list_connections":
                recovery = RecoveryAction(
                    suggested_action_id="use_mock_capabilities",
                    description="Mock tenants are listed by get_mcp_capabilities",
                    next_tool_call=NextToolCall(name="get_mcp_capabilities", arguments={"include_tenants": True}),
                )
            else:
                recovery = RecoveryAction(
                    suggested_action_id="use_mock_mode",
                    description="Mock mode needs no OAuth; all data is simulated",
                )
            narrative = f"The {name} tool requires live mode (MCP_MODE=live)."
        else:
            recovery = RecoveryAction(
                suggested_action_id="use_mock_mode",
                description=f"Restart the server with MCP_MODE=mock to use {name}",
            )
            narrative = f"The {self.adapter.mode} backend does not support {name}."
        return self._fail({"error": str(exc)}, verbosity, reason="notSupported", http_status=501,
                          narrative=narrative, root_cause=str(exc), recovery=recovery)

    # ---- Core tools ----

    async def _tool_get_mcp_capabilities(self, args, verbosity) -> ToolOutcome:
        include_tenants = _bool_arg(args, "include_tenants", True)
        mode = self.adapter.mode
        data: Dict[str, Any] = {
            "server": {
                "name": SERVER_NAME,
                "version": SERVER_VERSION,
                "mode": mode,
                "capabilities": sorted(c.value for c in self.adapter.capabilities),
                "tool_count": len(_KNOWN_TOOL_NAMES),
            },
            "guidelines": {
                "workflow": [
                    "1. Call get_mcp_capabilities (this tool) to understand the server",
                    "2. Call switch_tenant_context to select a tenant",
                    "3. Call introspect_enums to find valid account codes, tax types and contacts",
                    "4. Call validate_schema_match BEFORE any write operation",
                    "5. Follow recovery.next_tool_call when a call fails",
                    "6. Call the create_* tool with an idempotency_key",
                ],
                "rules": [
                    "Always validate payloads before creating them",
                    "Check recovery.next_tool_call in error responses for suggested fixes",
                    "Copy account codes and tax types verbatim from introspect_enums",
                    "Use verbosity='diagnostic' when debugging issues",
                    "Reuse the same idempotency_key when retrying a write",
                ],
            },
            "rate_limits": {
                "mode": "unlimited" if mode == "mock" else "60 requests/minute per tenant (Xero limit)",
                "backoff_enabled": True,
            },
            "data_persistence": (
                "Data is held in memory, loaded from test fixtures. Safe for testing without affecting real data."
                if mode == "mock" else "Data is stored in real Xero. Changes are permanent."
            ),
            "idempotency": {
                "backend": getattr(self.idempotency, "backend", "custom"),
                "ttl_hours": IDEMPOTENCY_TTL_HOURS,
            },
        }
        if include_tenants:
            data["available_tenants"] = [
                {
                    "tenant_id": t["tenant_id"],
                    "tenant_name": t.get("tenant_name"),
                    "region": t.get("region"),
                    "description": t.get("description", ""),
                }
                for t in await self.adapter.get_tenants()
            ]
        tenant_count = len(data.get("available_tenants", []))
        return self._ok(
            data,
            verbosity,
            narrative=f"xerodev-mcp {SERVER_VERSION} running in {mode} mode"
                      + (f" with {tenant_count} tenant(s) available." if include_tenants else ".")
                      + " Follow the workflow in guidelines.workflow for best results.",
        )

    async def _tool_switch_tenant_context(self, args, verbosity) -> ToolOutcome:
        tenant_id = _require_arg(args, "tenant_id")
        snapshot = await self.adapter.get_tenant_context(tenant_id)
        self.current_tenant_id = tenant_id
        active_accounts = [a for a in snapshot.accounts if a.status == "ACTIVE"]
        data = {
            "tenant_id": snapshot.tenant_id,
            "tenant_name": snapshot.tenant_name,
            "region": snapshot.region,
            "currency": snapshot.currency,
            "accounts_count": len(snapshot.accounts),
            "tax_rates_count": len(snapshot.tax_rates),
            "contacts_count": len(snapshot.contacts),
            "account_types": sorted({a.type for a in active_accounts}),
            "tax_types": [t.tax_type for t in snapshot.tax_rates if t.status == "ACTIVE"],
        }
        return self._ok(
            data,
            verbosity,
            narrative=f"Switched to {snapshot.tenant_name} ({snapshot.region}, {snapshot.currency}). "
                      f"{len(active_accounts)} active account(s), {len(data['tax_types'])} active tax type(s).",
        )

    async def _tool_get_audit_log(self, args, verbosity) -> ToolOutcome:
        limit = _int_arg(args, "limit", 20, 1, 100)
        offset = _int_arg(args, "offset", 0, 0)
        tenant_id = _get_arg(args, "tenant_id")
        tool_name = _get_arg(args, "tool_name")
        success = _bool_arg(args, "success")
        page = self.audit.entries(tenant_id=tenant_id, tool_name=tool_name, success=success, limit=limit, offset=offset)
        data: Dict[str, Any] = {
            "entries": page["entries"],
            "pagination": {"limit": limit, "offset": offset, "total": page["total"], "has_more": page["has_more"]},
        }
        if _bool_arg(args, "include_stats", True):
            data["stats"] = self.audit.stats(tenant_id)
        return self._ok(data, verbosity,
                        narrative=f"Returned {len(page['entries'])} of {page['total']} audit entries.")

    # ---- Validation tools ----

    async def _tool_validate_schema_match(self, args, verbosity) -> ToolOutcome:
        tenant_id = self._tenant_arg(args)
        raw_type = _require_arg(args, "entity_type")
        try:
            entity_type = EntityType(raw_type)
        except ValueError:
            entity_type = None
        if entity_type not in PAYLOAD_SCHEMAS:
            raise ToolArgumentError(
                f"entity_type must be one of {', '.join(e.value for e in PAYLOAD_SCHEMAS)}; got '{raw_type}'")
        payload = _get_arg(args, "payload")
        if payload is None:
            raise ToolArgumentError("'payload' is required")
        if isinstance(payload, dict):
            payload = _normalize_payload(payload)

        snapshot = await self.adapter.get_tenant_context(tenant_id)
        result = self.engine.validate(snapshot, entity_type, payload)
        if not result.valid:
            return self._validation_failure(entity_type, tenant_id, result, verbosity)
        return self._ok(
            {
                "valid": True,
                "entity_type": entity_type.value,
                "score": result.score,
                "warnings": result.warnings,
                "diff": [d.to_dict() for d in result.diff],
            },
            verbosity,
            score=result.score,
            warnings=result.warnings,
            narrative=f"{entity_type.value} payload is valid for tenant {tenant_id}. "
                      f"Score: {result.score:.2f}. Safe to proceed.",
        )

    async def _tool_introspect_enums(self, args, verbosity) -> ToolOutcome:
        tenant_id = self._tenant_arg(args)
        raw_type = _require_arg(args, "entity_type")
        filter = _get_arg(args, "filter") or {}
        if not isinstance(filter, dict):
            raise ToolArgumentError("'filter' must be an object")
        snapshot = await self.adapter.get_tenant_context(tenant_id)
        try:
            values = self.introspector.introspect(snapshot, raw_type, filter)
        except ValueError as e:
            raise ToolArgumentError(str(e))

        entity_type = EntityType(raw_type)
        if entity_type == EntityType.ACCOUNT:
            narrative = f"Found {len(values)} account(s)" \
                        + (f" of type {filter['type']}" if filter.get("type") else "") \
                        + (f" with status {filter['status']}" if filter.get("status") else "") + "."
        elif entity_type == EntityType.TAX_RATE:
            narrative = f"Found {len(values)} tax rate(s) for the {snapshot.region} region. " \
                        "Use these tax_type values in line items."
        else:
            narrative = f"Found {len(values)} contact(s)."
        return self._ok(
            {"entity_type": entity_type.value, "count": len(values), "values": values, "tenant_region": snapshot.region},
            verbosity,
            narrative=narrative,
        )

    # ---- Simulation tools ----

    async def _tool_dry_run_sync(self, args, verbosity) -> ToolOutcome:
        tenant_id = self._tenant_arg(args)
        operation = _require_arg(args, "operation")
        if operation not in ("create_invoices", "create_contacts"):
            raise ToolArgumentError("operation must be 'create_invoices' or 'create_contacts'")
        payloads = _get_arg(args, "payloads")
        if not isinstance(payloads, list) or not payloads:
            raise ToolArgumentError("'payloads' must be a non-empty array")
        if len(payloads) > MAX_DRY_RUN_PAYLOADS:
            raise ToolArgumentError(f"At most {MAX_DRY_RUN_PAYLOADS} payloads per dry run")

        entity_type = EntityType.INVOICE if operation == "create_invoices" else EntityType.CONTACT
        snapshot = await self.adapter.get_tenant_context(tenant_id)
        results: List[Dict[str, Any]] = []
        issues: Dict[str, int] = {}
        estimated_total = 0.0

        for index, raw in enumerate(payloads):
            payload = _normalize_payload(raw) if isinstance(raw, dict) else raw
            result = self.engine.validate(snapshot, entity_type, payload)
            entry: Dict[str, Any] = {
                "index": index,
                "valid": result.valid,
                "score": result.score,
                "errors": result.errors,
                "warnings": result.warnings,
            }
            if result.valid and entity_type == EntityType.INVOICE:
                line_items = [LineItem(**li) for li in payload["line_items"]]
                _, _, total = compute_totals(snapshot, line_items, payload.get("line_amount_types") or "Exclusive")
                entry["estimated_total"] = total
                estimated_total += total
            if not result.valid:
                for diff in result.diff:
                    if diff.severity == Severity.ERROR:
                        issues[diff.field] = issues.get(diff.field, 0) + 1
            results.append(entry)

        would_succeed = sum(1 for r in results if r["valid"])
        would_fail = len(results) - would_succeed
        success_rate = round(would_succeed / len(results), 4)
        issues_summary = [f"{field}: {count} occurrence(s)"
                          for field, count in sorted(issues.items(), key=lambda kv: (-kv[1], kv[0]))]
        data: Dict[str, Any] = {
            "operation": operation,
            "total_payloads": len(results),
            "would_succeed": would_succeed,
            "would_fail": would_fail,
            "success_rate": success_rate,
            "results": results if verbosity == VerbosityLevel.DEBUG else [r for r in results if not r["valid"]],
            "issues_summary": issues_summary,
        }
        if entity_type == EntityType.INVOICE:
            data["estimated_total_amount"] = round(estimated_total, 2)

        if would_fail == 0:
            narrative = f"Dry run complete: all {len(results)} payload(s) would succeed."
            if entity_type == EntityType.INVOICE:
                narrative += f" Estimated total: {snapshot.currency} {estimated_total:.2f}."
            return self._ok(data, verbosity, score=success_rate, narrative=narrative + " Safe to proceed.")

        return self._fail(
            data,
            verbosity,
            reason="dryRunFailures",
            http_status=200,
            score=success_rate,
            narrative=f"Dry run complete: {would_succeed}/{len(results)} would succeed "
                      f"({round(success_rate * 100)}%). Top issue: {issues_summary[0] if issues_summary else 'unknown'}.",
            warnings=[f"{would_fail} payload(s) would fail"],
            recovery=RecoveryAction(
                suggested_action_id="fix_payloads",
                description="Fix the failing payloads and run dry_run_sync again",
                next_tool_call=NextToolCall(
                    name="introspect_enums",
                    arguments={
                        "tenant_id": tenant_id,
                        "entity_type": "Account" if entity_type == EntityType.INVOICE else "Contact",
                        "filter": {"status": "ACTIVE"},
                    },
                ),
            ),
        )

    async def _tool_seed_sandbox_data(self, args, verbosity) -> ToolOutcome:
        tenant_id = self._tenant_arg(args)
        entity = str(_require_arg(args, "entity")).upper()
        if entity not in SEED_ENTITIES:
            raise ToolArgumentError(f"entity must be one of {', '.join(SEED_ENTITIES)}")
        scenario = str(_get_arg(args, "scenario", default="DEFAULT")).upper()
        if scenario not in SEED_SCENARIOS:
            raise ToolArgumentError(f"scenario must be one of {', '.join(SEED_SCENARIOS)}")
        count = _int_arg(args, "count", 10, 1, MAX_SEED_COUNT)
        self.adapter.require(Capability.SEED)

        snapshot = await self.adapter.get_tenant_context(tenant_id)
        generated = self.seeder.generate(snapshot, entity, count, scenario)
        id_field = "contact_id" if entity == "CONTACTS" else "invoice_id"
        data = {
            "entity_type": entity,
            "count": len(generated),
            "scenario": scenario,
            "generated": generated if verbosity == VerbosityLevel.DEBUG else generated[:3],
            "sample_ids": [g[id_field] for g in generated[:5]],
        }
        if entity == "INVOICES":
            total = sum(li["quantity"] * li["unit_amount"] for g in generated for li in g["line_items"])
            narrative = (f"Generated {count} sample invoice(s) with scenario '{scenario}'. "
                         f"Total estimated value: {snapshot.currency} {total:.2f}. "
                         "Use these payloads with validate_schema_match or dry_run_sync.")
        else:
            narrative = (f"Generated {count} sample contact(s). "
                         "Use these payloads with validate_schema_match before creating.")
        return self._ok(data, verbosity, narrative=narrative)

    async def _load_document(self, tenant_id: str, entity_type: EntityType, entity_id: str):
        if entity_type == EntityType.INVOICE:
            documents, id_field = await self.adapter.get_invoices(tenant_id), "invoice_id"
        elif entity_type == EntityType.QUOTE:
            documents, id_field = await self.adapter.get_quotes(tenant_id), "quote_id"
        else:
            documents, id_field = await self.adapter.get_credit_notes(tenant_id), "credit_note_id"
        return next((d for d in documents if getattr(d, id_field) == entity_id), None)

    async def _tool_drive_lifecycle(self, args, verbosity) -> ToolOutcome:
        tenant_id = self._tenant_arg(args)
        raw_type = _require_arg(args, "entity_type")
        try:
            entity_type = EntityType(raw_type)
        except ValueError:
            entity_type = None
        if entity_type not in LIFECYCLES:
            raise ToolArgumentError("entity_type must be one of Invoice, Quote, CreditNote")
        entity_id = _require_arg(args, "entity_id")
        target = str(_require_arg(args, "target_state")).upper()
        transitions = LIFECYCLES[entity_type]
        if target not in transitions:
            raise ToolArgumentError(f"target_state must be one of {', '.join(transitions)} for {entity_type.value}")
        self.adapter.require(Capability.LIFECYCLE)

        document = await self._load_document(tenant_id, entity_type, entity_id)
        if document is None:
            return self._fail(
                {"error": f"{entity_type.value} '{entity_id}' not found"},
                verbosity,
                reason="notFound",
                http_status=404,
                root_cause=f"{entity_type.value} '{entity_id}' not found in tenant {tenant_id}",
                recovery=RecoveryAction(
                    suggested_action_id="list_entities",
                    description=f"List existing {entity_type.value} records to find a valid ID",
                    next_tool_call=NextToolCall(name="list_invoices", arguments={"tenant_id": tenant_id})
                    if entity_type == EntityType.INVOICE else None,
                ),
            )

        current = document.status
        base = {"entity_type": entity_type.value, "entity_id": entity_id, "previous_state": current}
        if current == target:
            return self._ok({**base, "new_state": current, "transition_path": [current]}, verbosity,
                            narrative=f"{entity_type.value} {entity_id} is already {current}.")

        path = find_transition_path(transitions, current, target)
        if path is None:
            return self._fail(
                {**base, "target_state": target, "allowed_transitions": transitions.get(current, [])},
                verbosity,
                reason="invalidTransition",
                http_status=409,
                root_cause=f"No transition path from {current} to {target} for {entity_type.value}",
                narrative=f"Cannot move {entity_type.value} from {current} to {target}. "
                          f"Allowed next states: {', '.join(transitions.get(current, [])) or 'none (terminal state)'}.",
            )

        payment_amount = _as_float(_get_arg(args, "payment_amount"))
        payment_account_id = _get_arg(args, "payment_account_id")
        if "PAID" in path:
            if payment_amount is None or payment_amount <= 0:
                return self._fail(
                    {**base, "target_state": target, "transition_path": path,
                     "error": "payment_amount must be greater than 0 to reach PAID"},
                    verbosity,
                    reason="missingPaymentDetails",
                    root_cause="payment_amount is required to reach PAID",
                    recovery=RecoveryAction(
                        suggested_action_id="provide_payment_details",
                        description="Call drive_lifecycle again with payment_amount and payment_account_id",
                    ),
                )
            if not payment_account_id:
                return self._fail(
                    {**base, "target_state": target, "transition_path": path,
                     "error": "payment_account_id is required to reach PAID"},
                    verbosity,
                    reason="missingPaymentDetails",
                    root_cause="payment_account_id is required to reach PAID",
                    recovery=RecoveryAction(
                        suggested_action_id="find_bank_accounts",
                        description="Find an ACTIVE BANK account to pay from",
                        next_tool_call=NextToolCall(
                            name="introspect_enums",
                            arguments={"tenant_id": tenant_id, "entity_type": "Account",
                                       "filter": {"type": "BANK", "status": "ACTIVE"}},
                        ),
                    ),
                )

        data: Dict[str, Any] = dict(base)
        for state in path[1:]:
            if state == "PAID":
                ref = ({"invoice": {"invoice_id": entity_id}} if entity_type == EntityType.INVOICE
                       else {"credit_note": {"credit_note_id": entity_id}})
                payment = await self.adapter.create_payment(
                    tenant_id, {**ref, "account": {"account_id": payment_account_id}, "amount": payment_amount})
                data["payment_created"] = payment.to_dict()
            if state == "INVOICED":
                invoice = await self.adapter.create_invoice(tenant_id, {
                    "type": "ACCREC",
                    "contact": document.contact.to_dict(),
                    "line_amount_types": document.line_amount_types,
                    "line_items": [li.to_dict() for li in document.line_items],
                    "currency_code": document.currency_code,
                    "reference": document.quote_number,
                })
                data["invoice_created"] = invoice.to_dict()
            await self.adapter.update_status(tenant_id, entity_type, entity_id, state)

        data.update({"new_state": target, "transition_path": path})
        return self._ok(data, verbosity,
                        narrative=f"{entity_type.value} {entity_id} moved {' -> '.join(path)}.")

    # ---- Chaos tools ----

    async def _tool_simulate_network_conditions(self, args, verbosity) -> ToolOutcome:
        tenant_id = self._tenant_arg(args)
        duration = _int_arg(args, "duration_seconds", 60, 0, 300)
        condition = _get_arg(args, "condition")
        failure_rate = _as_float(_get_arg(args, "failure_rate"))
        if duration == 0:
            cleared = self.simulator.clear(tenant_id)
            return self._ok({"tenant_id": tenant_id, "active": False, "cleared": cleared}, verbosity,
                            narrative=f"Network simulation cleared for tenant {tenant_id}.")
        if not condition:
            raise ToolArgumentError("'condition' is required unless duration_seconds is 0")
        try:
            status = self.simulator.activate(tenant_id, str(condition), duration, failure_rate)
        except ValueError as e:
            raise ToolArgumentError(str(e))
        expires_at = (datetime.now(timezone.utc) + timedelta(seconds=duration)).isoformat().replace("+00:00", "Z")
        return self._ok(
            {"tenant_id": tenant_id, "active": True, "duration_seconds": duration, "expires_at": expires_at, **status},
            verbosity,
            narrative=f"Simulating {status['condition']} for tenant {tenant_id} for {duration}s. "
                      "Write calls for this tenant will fail accordingly.",
        )

    async def _tool_replay_idempotency(self, args, verbosity) -> ToolOutcome:
        tenant_id = self._tenant_arg(args)
        operation = _require_arg(args, "operation")
        if operation not in ("create_invoice", "create_contact", "create_payment"):
            raise ToolArgumentError("operation must be create_invoice, create_contact or create_payment")
        replay_count = _int_arg(args, "replay_count", 3, 1, MAX_REPLAY_COUNT)
        key = _get_arg(args, "idempotency_key") or f"idem-{uuid.uuid4()}"
        prefix = operation.replace("create_", "")

        attempts = []
        for attempt in range(1, replay_count + 1):
            attempt_start = time.perf_counter()
            cached = self.idempotency.get(tenant_id, key)
            if cached is not None:
                result_id, was_cached = cached.get("result_id"), True
            else:
                result_id, was_cached = f"{prefix}-{uuid.uuid4().hex[:8]}", False
                self.idempotency.put(tenant_id, key, {"result_id": result_id, "operation": operation}, operation)
            attempts.append({
                "attempt": attempt,
                "idempotency_key": key,
                "result_id": result_id,
                "was_cached": was_cached,
                "response_time_ms": int(round((time.perf_counter() - attempt_start) * 1000)),
            })

        unique_ids = list(dict.fromkeys(a["result_id"] for a in attempts))
        maintained = len(unique_ids) == 1
        cached_responses = sum(1 for a in attempts if a["was_cached"])
        data = {
            "tenant_id": tenant_id,
            "operation": operation,
            "idempotency_key": key,
            "replay_count": replay_count,
            "attempts": attempts if verbosity == VerbosityLevel.DEBUG else attempts[:3],
            "idempotency_maintained": maintained,
            "unique_result_ids": unique_ids,
            "summary": {
                "total_attempts": replay_count,
                "cached_responses": cached_responses,
                "new_creations": replay_count - cached_responses,
            },
        }
        if maintained:
            return self._ok(data, verbosity,
                            narrative=f"Idempotency test passed. All {replay_count} requests returned the same "
                                      f"result ID. {cached_responses} response(s) were cached.")
        return self._fail(
            data, verbosity, reason="idempotencyViolated", http_status=200,
            narrative=f"Idempotency test FAILED. {len(unique_ids)} different result IDs were returned for the same key.",
            warnings=[f"Got {len(unique_ids)} different result IDs for the same key; "
                      "this would create duplicates in a real integration."],
        )

    # ---- CRUD tools ----

    async def _write_entity(self, entity_type: EntityType, args, verbosity, create, describe) -> ToolOutcome:
        tenant_id = self._tenant_arg(args)
        self.adapter.require(Capability.WRITE)
        fault = self._simulated_fault(tenant_id, verbosity)
        if fault is not None:
            return fault

        key = _get_arg(args, "idempotency_key")
        if key:
            cached = self.idempotency.get(tenant_id, key)
            if cached is not None:
                return self._ok(
                    {**cached, "idempotent_replay": True},
                    verbosity,
                    narrative=f"{entity_type.value} already exists with this idempotency key. Returning the original result.",
                )

        payload = _normalize_payload(args)
        snapshot = await self.adapter.get_tenant_context(tenant_id)
        result = self.engine.validate(snapshot, entity_type, payload)
        if not result.valid:
            return self._validation_failure(entity_type, tenant_id, result, verbosity)

        created = await create(tenant_id, payload)
        data, narrative = describe(created, snapshot)
        if key:
            self.idempotency.put(tenant_id, key, data, entity_type.value)
        return self._ok(data, verbosity, score=result.score, warnings=result.warnings, narrative=narrative)

    async def _tool_create_contact(self, args, verbosity) -> ToolOutcome:
        def describe(contact, snapshot):
            return {"contact": contact.to_dict()}, f"Created contact '{contact.name}' ({contact.contact_id})."
        return await self._write_entity(EntityType.CONTACT, args, verbosity, self.adapter.create_contact, describe)

    async def _tool_create_invoice(self, args, verbosity) -> ToolOutcome:
        def describe(invoice, snapshot):
            label = "bill" if invoice.type == "ACCPAY" else "invoice"
            return {"invoice": invoice.to_dict()}, (
                f"Created {label} {invoice.invoice_number or invoice.invoice_id} "
                f"for {invoice.currency_code} {invoice.total:.2f} ({invoice.status}).")
        return await self._write_entity(EntityType.INVOICE, args, verbosity, self.adapter.create_invoice, describe)

    async def _tool_create_quote(self, args, verbosity) -> ToolOutcome:
        def describe(quote, snapshot):
            return {"quote": quote.to_dict()}, (
                f"Created quote {quote.quote_number or quote.quote_id} for {quote.currency_code} {quote.total:.2f}.")
        return await self._write_entity(EntityType.QUOTE, args, verbosity, self.adapter.create_quote, describe)

    async def _tool_create_credit_note(self, args, verbosity) -> ToolOutcome:
        def describe(note, snapshot):
            return {"credit_note": note.to_dict()}, (
                f"Created credit note {note.credit_note_number or note.credit_note_id} "
                f"for {note.currency_code} {note.total:.2f}.")
        return await self._write_entity(EntityType.CREDIT_NOTE, args, verbosity, self.adapter.create_credit_note, describe)

    async def _tool_create_payment(self, args, verbosity) -> ToolOutcome:
        def describe(payment, snapshot):
            target = payment.invoice.invoice_id if payment.invoice else payment.credit_note.credit_note_id
            return {"payment": payment.to_dict()}, (
                f"Recorded payment of {payment.currency_code} {payment.amount:.2f} against {target}.")
        return await self._write_entity(EntityType.PAYMENT, args, verbosity, self.adapter.create_payment, describe)

    async def _tool_create_bank_transaction(self, args, verbosity) -> ToolOutcome:
        def describe(txn, snapshot):
            return {"bank_transaction": txn.to_dict()}, (
                f"Recorded {txn.type} bank transaction for {txn.currency_code} {txn.total:.2f}.")
        return await self._write_entity(
            EntityType.BANK_TRANSACTION, args, verbosity, self.adapter.create_bank_transaction, describe)

    async def _tool_get_invoice(self, args, verbosity) -> ToolOutcome:
        tenant_id = self._tenant_arg(args)
        invoice_id = _require_arg(args, "invoice_id")
        fault = self._simulated_fault(tenant_id, verbosity)
        if fault is not None:
            return fault
        try:
            invoice = await self.adapter.get_invoice(tenant_id, invoice_id)
        except EntityNotFoundError as e:
            return self._fail(
                {"error": f"Invoice '{invoice_id}' not found in tenant {tenant_id}"}, verbosity,
                reason="notFound", http_status=404, root_cause=str(e),
                narrative=f"Invoice '{invoice_id}' not found. Use list_invoices to search for invoices.",
                recovery=RecoveryAction(
                    suggested_action_id="list_invoices",
                    description="List invoices to find a valid invoice_id",
                    next_tool_call=NextToolCall(name="list_invoices", arguments={"tenant_id": tenant_id}),
                ),
            )
        return self._ok(
            {"invoice": invoice.to_dict()},
            verbosity,
            narrative=f"Invoice {invoice.invoice_number or invoice.invoice_id} is {invoice.status}; "
                      f"{invoice.currency_code} {invoice.amount_due:.2f} outstanding of {invoice.total:.2f}.",
        )

    async def _tool_get_contact(self, args, verbosity) -> ToolOutcome:
        tenant_id = self._tenant_arg(args)
        contact_id = _require_arg(args, "contact_id")
        fault = self._simulated_fault(tenant_id, verbosity)
        if fault is not None:
            return fault
        try:
            contact = await self.adapter.get_contact(tenant_id, contact_id)
        except EntityNotFoundError as e:
            return self._fail(
                {"error": f"Contact '{contact_id}' not found in tenant {tenant_id}"}, verbosity,
                reason="notFound", http_status=404, root_cause=str(e),
                narrative=f"Contact '{contact_id}' not found. Use list_contacts to search for contacts.",
                recovery=RecoveryAction(
                    suggested_action_id="list_contacts",
                    description="List contacts to find a valid contact_id",
                    next_tool_call=NextToolCall(name="list_contacts", arguments={"tenant_id": tenant_id}),
                ),
            )
        roles = [r for r, flag in (("customer", contact.is_customer), ("supplier", contact.is_supplier)) if flag]
        return self._ok(
            {"contact": contact.to_dict()},
            verbosity,
            narrative=f"Found {' and '.join(roles) or 'contact'} '{contact.name}' ({contact.status}).",
        )

    @staticmethod
    def _paginate(items: List[Any], args) -> Dict[str, Any]:
        page = _int_arg(args, "page", 1, 1)
        page_size = _int_arg(args, "page_size", 20, 1, MAX_PAGE_SIZE)
        total = len(items)
        start = (page - 1) * page_size
        return {
            "items": items[start:start + page_size],
            "total_count": total,
            "page": page,
            "page_size": page_size,
            "total_pages": (total + page_size - 1) // page_size,
        }

    async def _tool_list_invoices(self, args, verbosity) -> ToolOutcome:
        tenant_id = self._tenant_arg(args)
        fault = self._simulated_fault(tenant_id, verbosity)
        if fault is not None:
            return fault
        filter = {k: _get_arg(args, k) for k in ("status", "type", "contact_id", "from_date", "to_date")}
        filter = {k: v for k, v in filter.items() if v}
        invoices = await self.adapter.get_invoices(tenant_id, filter)
        page = self._paginate(invoices, args)
        page_total = sum(i.total for i in page["items"])
        filters_applied = [f"{k}={v}" for k, v in filter.items()]
        return self._ok(
            {
                "invoices": [i.to_dict() for i in page["items"]],
                "total_count": page["total_count"],
                "page": page["page"],
                "page_size": page["page_size"],
                "total_pages": page["total_pages"],
                "filters_applied": filters_applied,
            },
            verbosity,
            narrative=f"Found {page['total_count']} invoice(s). "
                      + (f"Filters: {', '.join(filters_applied)}. " if filters_applied else "")
                      + f"Showing page {page['page']} of {max(page['total_pages'], 1)} "
                        f"({len(page['items'])} items, page total {page_total:.2f}).",
        )

    async def _tool_list_contacts(self, args, verbosity) -> ToolOutcome:
        tenant_id = self._tenant_arg(args)
        fault = self._simulated_fault(tenant_id, verbosity)
        if fault is not None:
            return fault
        filter = {
            "status": _get_arg(args, "status"),
            "is_customer": _bool_arg(args, "is_customer"),
            "is_supplier": _bool_arg(args, "is_supplier"),
        }
        contacts = await self.adapter.get_contacts(tenant_id, filter)
        search = _get_arg(args, "search")
        if search:
            contacts = [c for c in contacts if str(search).lower() in c.name.lower()]
        page = self._paginate(contacts, args)
        filters_applied = [f"{k}={v}" for k, v in filter.items() if v is not None]
        if search:
            filters_applied.append(f"search={search}")
        return self._ok(
            {
                "contacts": [c.to_dict() for c in page["items"]],
                "total_count": page["total_count"],
                "page": page["page"],
                "page_size": page["page_size"],
                "total_pages": page["total_pages"],
                "filters_applied": filters_applied,
            },
            verbosity,
            narrative=f"Found {page['total_count']} contact(s).",
        )

    # ---- OAuth tools ----

    @staticmethod
    def _restart_oauth(description: str = "Start the OAuth flow again") -> RecoveryAction:
        return RecoveryAction(
            suggested_action_id="restart_oauth",
            description=description,
            next_tool_call=NextToolCall(name="get_authorization_url", arguments={}),
        )

    async def _run_blocking(self, fn, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, fn, *args)

    async def _tool_get_authorization_url(self, args, verbosity) -> ToolOutcome:
        self.adapter.require(Capability.OAUTH)
        if not self.oauth_client.configured:
            return self._fail(
                {"error": "XERO_CLIENT_ID and XERO_CLIENT_SECRET must be set"}, verbosity,
                reason="notConfigured", http_status=500,
                narrative="Xero client credentials must be configured before using OAuth.",
                recovery=RecoveryAction(suggested_action_id="check_credentials",
                                        description="Set XERO_CLIENT_ID and XERO_CLIENT_SECRET and restart the server"),
            )
        scopes = _get_arg(args, "scopes") or DEFAULT_SCOPES
        if isinstance(scopes, str):
            scopes = scopes.split()
        state, _, code_challenge = self.oauth_states.generate(scopes)
        url = build_authorization_url(state, code_challenge, scopes,
                                      client_id=self.oauth_client.client_id,
                                      redirect_uri=self.oauth_client.redirect_uri)
        expires_at = (datetime.now(timezone.utc) + timedelta(seconds=STATE_TTL_SECONDS)).isoformat().replace("+00:00", "Z")
        return self._ok(
            {"authorization_url": url, "state": state, "expires_at": expires_at, "scopes": list(scopes)},
            verbosity,
            narrative="Authorization URL generated. State expires in 10 minutes. Open the URL, approve access, "
                      "then pass the full redirect URL to exchange_auth_code.",
        )

    async def _tool_exchange_auth_code(self, args, verbosity) -> ToolOutcome:
        self.adapter.require(Capability.OAUTH)
        callback_url = _require_arg(args, "callback_url")

        def fail(error: str, narrative: str) -> ToolOutcome:
            return self._fail({"error": error}, verbosity, reason="oauthFailed", http_status=400,
                              narrative=narrative, root_cause=error, recovery=self._restart_oauth())

        parsed = urlparse(str(callback_url))
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            return fail("Invalid callback URL format",
                        "The callback_url must be the full URL from the browser after authorization.")
        query = {k: v[0] for k, v in parse_qs(parsed.query).items()}
        if query.get("error"):
            detail = query["error"] + (f" - {query['error_description']}" if query.get("error_description") else "")
            return fail(detail, f"Xero returned an error: {detail}")
        if not query.get("code"):
            return fail("No authorization code found in callback URL",
                        "The callback URL must contain a 'code' parameter.")
        if not query.get("state"):
            return fail("No state parameter found in callback URL",
                        "The callback URL must contain a 'state' parameter for CSRF validation.")
        pending = self.oauth_states.consume(query["state"])
        if pending is None:
            return fail("Invalid or expired state parameter",
                        "The state parameter is invalid or has expired (10 minute limit). Start the OAuth flow again.")

        try:
            tokens = await self._run_blocking(self.oauth_client.exchange_code, query["code"], pending["code_verifier"])
            tenants = await self._run_blocking(self.oauth_client.get_connections, tokens.get("access_token"))
        except (OAuthError, requests.RequestException) as e:
            logger.warning("Xero token exchange failed: %s", e)
            return fail(f"Failed to exchange authorization code: {safe_exception_message(e)}",
                        "Xero rejected the authorization code. It may have expired or already been used.")
        if not tenants:
            return fail("No tenants found for this authorization",
                        "Authorization succeeded but no Xero organisations were connected.")

        stored = []
        for tenant in tenants:
            record = self.connections.upsert(
                tenant_id=tenant.get("tenantId"),
                tenant_name=tenant.get("tenantName") or "Unknown Organisation",
                tokens=tokens,
                scopes=pending["scopes"],
                xero_region=tenant.get("tenantType"),
            )
            stored.append({"tenant_id": record["tenant_id"], "tenant_name": record["tenant_name"]})
        return self._ok(
            {"connections": stored, "count": len(stored)},
            verbosity,
            narrative=f"Successfully established {len(stored)} connection(s). "
                      "Use switch_tenant_context with one of the tenant IDs to start working.",
        )

    async def _tool_list_connections(self, args, verbosity) -> ToolOutcome:
        self.adapter.require(Capability.OAUTH)
        include_inactive = _bool_arg(args, "include_inactive", False)
        connections = []
        for record in self.connections.list(include_inactive=include_inactive):
            status = record.get("connection_status")
            if status == "active" and ConnectionStore.is_expired(record):
                status = "expired"
            connections.append({
                "tenant_id": record["tenant_id"],
                "tenant_name": record.get("tenant_name"),
                "connection_status": status,
                "xero_region": record.get("xero_region"),
                "granted_scopes": record.get("granted_scopes", []),
                "created_at": _iso_from_epoch(record.get("created_at")),
                "last_synced_at": _iso_from_epoch(record.get("last_synced_at")),
            })
        if not connections:
            return self._ok(
                {"connections": []},
                verbosity,
                narrative="No connections found. Complete the OAuth flow by calling get_authorization_url.",
                recovery=RecoveryAction(
                    suggested_action_id="start_oauth",
                    description="Connect a Xero organisation",
                    next_tool_call=NextToolCall(name="get_authorization_url", arguments={}),
                ),
            )
        counts: Dict[str, int] = {}
        for c in connections:
            counts[c["connection_status"]] = counts.get(c["connection_status"], 0) + 1
        return self._ok(
            {"connections": connections},
            verbosity,
            narrative=f"Found {len(connections)} connection(s). "
                      + ", ".join(f"{k}: {v}" for k, v in sorted(counts.items())) + ".",
        )

    def _connection_not_found(self, tenant_id: str, verbosity) -> ToolOutcome:
        return self._fail(
            {"error": f"No connection found for tenant '{tenant_id}'"}, verbosity,
            reason="connectionNotFound", http_status=404,
            recovery=RecoveryAction(
                suggested_action_id="list_connections",
                description="List connected organisations",
                next_tool_call=NextToolCall(name="list_connections", arguments={"include_inactive": True}),
            ),
        )

    async def _tool_refresh_connection(self, args, verbosity) -> ToolOutcome:
        self.adapter.require(Capability.OAUTH)
        tenant_id = _require_arg(args, "tenant_id")
        record = self.connections.get(tenant_id)
        if record is None:
            return self._connection_not_found(tenant_id, verbosity)
        refresh_token = (record.get("tokens") or {}).get("refresh_token")
        if not refresh_token or record.get("connection_status") == "revoked":
            return self._fail(
                {"error": f"Connection for tenant '{tenant_id}' cannot be refreshed"}, verbosity,
                reason="oauthFailed", recovery=self._restart_oauth("Reconnect the organisation"))
        try:
            tokens = await self._run_blocking(self.oauth_client.refresh, refresh_token)
        except (OAuthError, requests.RequestException) as e:
            logger.warning("Token refresh failed for %s: %s", tenant_id, e)
            self.connections.set_status(tenant_id, "expired")
            return self._fail(
                {"error": f"Token refresh failed: {safe_exception_message(e)}"}, verbosity,
                reason="oauthFailed", root_cause=safe_exception_message(e),
                recovery=self._restart_oauth("The refresh token was rejected; reconnect the organisation"))
        updated = self.connections.update_tokens(tenant_id, tokens)
        expires_at = _iso_from_epoch((updated.get("tokens") or {}).get("expires_at"))
        return self._ok({"tenant_id": tenant_id, "refreshed": True, "expires_at": expires_at}, verbosity,
                        narrative=f"Refreshed tokens for {updated.get('tenant_name') or tenant_id}.")

    async def _tool_revoke_connection(self, args, verbosity) -> ToolOutcome:
        self.adapter.require(Capability.OAUTH)
        tenant_id = _require_arg(args, "tenant_id")
        record = self.connections.get(tenant_id)
        if record is None:
            return self._connection_not_found(tenant_id, verbosity)
        warnings = []
        refresh_token = (record.get("tokens") or {}).get("refresh_token")
        remote_revoked = False
        if refresh_token:
            try:
                await self._run_blocking(self.oauth_client.revoke, refresh_token)
                remote_revoked = True
            except (OAuthError, requests.RequestException) as e:
                logger.warning("Remote revocation failed for %s: %s", tenant_id, e)
                warnings.append(f"Xero revocation call failed ({safe_exception_message(e)}); connection marked revoked locally.")
        self.connections.set_status(tenant_id, "revoked")
        if self.current_tenant_id == tenant_id:
            self.current_tenant_id = None
        return self._ok({"tenant_id": tenant_id, "revoked": True, "remote_revoked": remote_revoked}, verbosity,
                        warnings=warnings,
                        narrative=f"Connection for {record.get('tenant_name') or tenant_id} revoked.")


_server: Optional[ToolServer] = None


def get_server() -> ToolServer:
    global _server
    if _server is None:
        _server = ToolServer()
    return _server


def set_server(server: Optional[ToolServer]):
    global _server
    _server = server


def _tool_result(outcome: ToolOutcome) -> Dict[str, Any]:
    result: Dict[str, Any] = {"content": [{"type": "text", "text": safe_dumps(outcome.envelope)}]}
    if not outcome.success:
        result["isError"] = True
        result["metadata"] = {"reason": outcome.reason or "toolFailed"}
        result["httpStatus"] = outcome.http_status
    return result


async def handle_tool_call(name: str, args: Dict):
    if name in _TOOL_NAME_ALIASES:
        name = _TOOL_NAME_ALIASES[name]

    if not name or name not in _KNOWN_TOOL_NAMES:
        return {
            "isError": True,
            "content": [
                {
                    "type": "text",
                    "text": f"Unknown tool '{name}'. Available tools: {sorted(_KNOWN_TOOL_NAMES)}"
                }
            ],
            "metadata": {"reason": "unknownTool"},
            "httpStatus": 404,
        }
    outcome = await get_server().call(name, args if isinstance(args, dict) else {})
    return _tool_result(outcome)

# ---- Router Setup ----
router = APIRouter()

@router.get("/")
@router.get("")
def xerodev_index():
    """Basic index endpoint so /xerodev/ doesn't 404 behind a proxy."""
    return {
        "service": SERVER_NAME,
        "status": "ok",
        "mode": os.environ.get("MCP_MODE", "mock"),
        "endpoints": {
            "health": "/xerodev/healthz",
            "mcp": "/xerodev/mcp",
            "callback": "/xerodev/callback",
        },
    }

@router.post("/")
@router.post("")
async def xerodev_index_post(request: Request, payload: Dict = Depends(require_mcp_auth)):
    """Handle MCP JSON-RPC requests at the root /xerodev/ endpoint."""
    return await handle_mcp_request(request, payload)

@router.get("/healthz")
def xerodev_healthz():
    return {"status": "ok", "service": SERVER_NAME}

@router.get("/callback")
async def xerodev_callback(request: Request):
    """Browser redirect target for the Xero OAuth flow."""
    result = await handle_tool_call("exchange_auth_code", {"callback_url": str(request.url)})
    status = int(result.get("httpStatus", 200)) if result.get("isError") else 200
    return JSONResponse(status_code=status, content=result)

@router.post("/mcp")
async def handle_mcp_request(request: Request, payload: Dict = Depends(require_mcp_auth)):
    """
    Standard MCP endpoint for xerodev tools.
    JSON-RPC 2.0
    """
    try:
        body = await request.json()
    except Exception:
        raise HTTPException(status_code=400, detail="Invalid JSON body")
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Expected a JSON-RPC object")

    rpc_id = body.get("id")
    method = body.get("method")
    params = body.get("params") or {}

    if method == "initialize":
        return _rpc_result(rpc_id, _initialize_payload())

    elif method == "ping":
        return _rpc_result(rpc_id, {"status": "ok"})

    elif method == "tools/list":
        return _rpc_result(rpc_id, _list_tools_payload())

    elif method == "tools/call":
        name = params.get("name")
        args = params.get("arguments", {})
        result = await handle_tool_call(name, args)
        if isinstance(result, dict) and result.get("isError"):
            status = int(result.get("httpStatus", 502))
            return JSONResponse(status_code=status, content=_rpc_result(rpc_id, result))
        return _rpc_result(rpc_id, result)

    elif method == "resources/list":
        return _rpc_result(rpc_id, {"resources": []})

    elif method == "resources/read":
        return _rpc_result(rpc_id, {"contents": []})

    elif method == "prompts/list":
        return _rpc_result(rpc_id, {"prompts": []})

    elif method == "prompts/get":
        return _rpc_result(rpc_id, {"messages": []})

    else:
        return _rpc_error(rpc_id, -32601, f"Method {method} not found")
