"""Maps validation failure categories to the next tool call an agent should make.

suggested_action_id values are part of the tool contract. Agents branch on them, so an
id is never renamed once shipped; a new category gets a new id.
"""
from typing import Any, Dict, List, Optional

from models import (
    DiffCategory,
    EntityType,
    NextToolCall,
    RecoveryAction,
    Severity,
    ValidationDiff,
    ValidationResult,
)
from validation import expected_account_type

FIND_VALID_ACCOUNT_CODES = "find_valid_account_codes"
FIND_VALID_TAX_TYPES = "find_valid_tax_types"
FIND_OR_CREATE_CONTACT = "find_or_create_contact"
FIND_VALID_INVOICES = "find_valid_invoices"
FIND_VALID_CREDIT_NOTES = "find_valid_credit_notes"
CHECK_OUTSTANDING_BALANCE = "check_outstanding_balance"
FIX_STRUCTURE = "fix_structure"
LIST_TENANTS = "list_tenants"
CLEAR_SIMULATION = "clear_simulation"

# Checked in order, first match wins.
CATEGORY_PRIORITY: List[tuple] = [
    ({DiffCategory.ACCOUNT_NOT_FOUND, DiffCategory.ACCOUNT_ARCHIVED, DiffCategory.ACCOUNT_TYPE_MISMATCH},
     FIND_VALID_ACCOUNT_CODES),
    ({DiffCategory.TAX_TYPE_INVALID}, FIND_VALID_TAX_TYPES),
    ({DiffCategory.CONTACT_NOT_FOUND, DiffCategory.CONTACT_ARCHIVED}, FIND_OR_CREATE_CONTACT),
    ({DiffCategory.INVOICE_NOT_FOUND, DiffCategory.DOCUMENT_STATUS}, FIND_VALID_INVOICES),
    ({DiffCategory.CREDIT_NOTE_NOT_FOUND}, FIND_VALID_CREDIT_NOTES),
    ({DiffCategory.AMOUNT_EXCEEDS_BALANCE}, CHECK_OUTSTANDING_BALANCE),
    ({DiffCategory.REQUIRED_FIELD, DiffCategory.INVALID_VALUE}, FIX_STRUCTURE),
]


def _with_tenant(arguments: Dict[str, Any], tenant_id: Optional[str]) -> Dict[str, Any]:
    if tenant_id:
        return {"tenant_id": tenant_id, **arguments}
    return arguments


class RecoveryAdvisor:
    """Pure decision table from a ValidationResult to a RecoveryAction."""

    def suggest(self, entity_type: EntityType | str, result: ValidationResult,
                tenant_id: Optional[str] = None) -> Optional[RecoveryAction]:
        entity_type = EntityType(entity_type)
        errors = [d for d in result.diff if d.severity == Severity.ERROR and d.category is not None]
        for categories, action_id in CATEGORY_PRIORITY:
            match = next((d for d in errors if d.category in categories), None)
            if match is not None:
                return self._recipe(action_id, entity_type, match, tenant_id)
        return None

    def _recipe(self, action_id: str, entity_type: EntityType, diff: ValidationDiff,
                tenant_id: Optional[str]) -> RecoveryAction:
        details = diff.details or {}

        if action_id == FIND_VALID_ACCOUNT_CODES:
            account_type = details.get("account_type") or expected_account_type(entity_type)
            return RecoveryAction(
                suggested_action_id=action_id,
                description=f"Find valid ACTIVE {account_type} account codes for this tenant",
                next_tool_call=NextToolCall(
                    name="introspect_enums",
                    arguments=_with_tenant(
                        {"entity_type": "Account", "filter": {"status": "ACTIVE", "type": account_type}}, tenant_id),
                ),
            )

        if action_id == FIND_VALID_TAX_TYPES:
            return RecoveryAction(
                suggested_action_id=action_id,
                description="Find valid tax types for this tenant's region",
                next_tool_call=NextToolCall(
                    name="introspect_enums",
                    arguments=_with_tenant({"entity_type": "TaxRate", "filter": {"status": "ACTIVE"}}, tenant_id),
                ),
            )

        if action_id == FIND_OR_CREATE_CONTACT:
            contact_name = details.get("contact_name")
            if diff.category == DiffCategory.CONTACT_NOT_FOUND and contact_name:
                return RecoveryAction(
                    suggested_action_id=action_id,
                    description=f"Create the contact '{contact_name}' before retrying",
                    next_tool_call=NextToolCall(
                        name="create_contact", arguments=_with_tenant({"name": contact_name}, tenant_id)),
                )
            return RecoveryAction(
                suggested_action_id=action_id,
                description="Look up an ACTIVE contact to reference",
                next_tool_call=NextToolCall(
                    name="introspect_enums",
                    arguments=_with_tenant({"entity_type": "Contact", "filter": {"status": "ACTIVE"}}, tenant_id),
                ),
            )

        if action_id == FIND_VALID_INVOICES:
            return RecoveryAction(
                suggested_action_id=action_id,
                description="List AUTHORISED invoices that can receive a payment",
                next_tool_call=NextToolCall(
                    name="list_invoices", arguments=_with_tenant({"status": "AUTHORISED"}, tenant_id)),
            )

        if action_id == FIND_VALID_CREDIT_NOTES:
            return RecoveryAction(
                suggested_action_id=action_id,
                description="Reference an AUTHORISED credit note, or create one with create_credit_note",
            )

        if action_id == CHECK_OUTSTANDING_BALANCE:
            invoice_id = details.get("invoice_id")
            if invoice_id:
                return RecoveryAction(
                    suggested_action_id=action_id,
                    description="Check the outstanding balance and reduce the payment amount",
                    next_tool_call=NextToolCall(
                        name="get_invoice", arguments=_with_tenant({"invoice_id": invoice_id}, tenant_id)),
                )
            return RecoveryAction(
                suggested_action_id=action_id,
                description="Reduce the payment amount to the remaining credit",
            )

        return RecoveryAction(
            suggested_action_id=FIX_STRUCTURE,
            description="Fix the structural issues in the payload",
        )


def tenant_not_found_recovery() -> RecoveryAction:
    return RecoveryAction(
        suggested_action_id=LIST_TENANTS,
        description="Check available tenants",
        next_tool_call=NextToolCall(name="get_mcp_capabilities", arguments={"include_tenants": True}),
    )


def simulation_recovery(tenant_id: str) -> RecoveryAction:
    return RecoveryAction(
        suggested_action_id=CLEAR_SIMULATION,
        description="Clear the active network simulation for this tenant",
        next_tool_call=NextToolCall(
            name="simulate_network_conditions",
            arguments={"tenant_id": tenant_id, "duration_seconds": 0},
        ),
    )


def suggest(entity_type: EntityType | str, result: ValidationResult,
            tenant_id: Optional[str] = None) -> Optional[RecoveryAction]:
    return RecoveryAdvisor().suggest(entity_type, result, tenant_id)
