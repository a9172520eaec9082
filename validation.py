"""Structural and contextual validation of write payloads against a tenant snapshot."""
import os
from datetime import date
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from pydantic import ValidationError

from models import (
    PAYLOAD_SCHEMAS,
    DiffCategory,
    EntityType,
    Severity,
    TenantSnapshot,
    ValidationDiff,
    ValidationResult,
)

ERROR_PENALTY = 0.2
WARNING_PENALTY = 0.05
AMOUNT_TOLERANCE = 0.005

SALES_TYPES = {"ACCREC", "ACCRECCREDIT", "RECEIVE", "RECEIVE-OVERPAYMENT", "RECEIVE-PREPAYMENT"}


class SnapshotUnavailableError(Exception):
    """Raised when validation is attempted without a tenant snapshot."""


class ArchivedContactPolicy(str, Enum):
    WARN = "warn"
    ERROR = "error"

    @classmethod
    def from_env(cls) -> "ArchivedContactPolicy":
        raw = (os.environ.get("ARCHIVED_CONTACT_POLICY") or cls.WARN.value).strip().lower()
        try:
            return cls(raw)
        except ValueError:
            return cls.WARN


def expected_account_type(entity_type: EntityType | str, document_type: Optional[str] = None) -> str:
    """Account type a line item should post to for the given entity and document type."""
    entity_type = EntityType(entity_type)
    if entity_type == EntityType.PAYMENT:
        return "BANK"
    if entity_type == EntityType.INVOICE:
        return "EXPENSE" if document_type == "ACCPAY" else "REVENUE"
    if entity_type == EntityType.CREDIT_NOTE:
        return "EXPENSE" if document_type == "ACCPAYCREDIT" else "REVENUE"
    if entity_type == EntityType.BANK_TRANSACTION:
        return "REVENUE" if document_type in SALES_TYPES else "EXPENSE"
    return "REVENUE"


def _field_path(loc: Iterable[Any]) -> str:
    path = ""
    for part in loc:
        if isinstance(part, int):
            path += f"[{part}]"
        else:
            path = f"{path}.{part}" if path else str(part)
    return path or "payload"


def _parse_date(value: Any) -> Optional[date]:
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value[:10])
        except ValueError:
            return None
    return None


def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


class _Collector:
    """Accumulates diffs together with the human-readable message for each."""

    def __init__(self):
        self.items: List[Tuple[ValidationDiff, str]] = []

    def add(self, message: str, field: str, severity: Severity, category: Optional[DiffCategory] = None,
            issue: Optional[str] = None, expected: Optional[str] = None, received: Any = None,
            details: Optional[Dict[str, Any]] = None):
        diff = ValidationDiff(
            field=field,
            issue=issue or message,
            expected=expected,
            received=None if received is None else str(received),
            severity=severity,
            category=category,
            details=details,
        )
        self.items.append((diff, message))

    def error(self, message: str, field: str, category: DiffCategory, **kwargs):
        self.add(message, field, Severity.ERROR, category, **kwargs)

    def warning(self, message: str, field: str, category: Optional[DiffCategory] = None, **kwargs):
        self.add(message, field, Severity.WARNING, category, **kwargs)

    def info(self, message: str, field: str, **kwargs):
        self.add(message, field, Severity.INFO, None, **kwargs)


class ValidationEngine:
    """Validates entity payloads in two passes and scores the outcome.

    The structural pass checks shape against the pydantic payload schemas. The
    contextual pass cross-references account codes, tax types, contacts, documents
    and dates against the tenant snapshot. Fields that failed the structural pass
    are not checked again by the contextual pass.
    """

    def __init__(self, archived_contact_policy: ArchivedContactPolicy | str | None = None):
        if archived_contact_policy is None:
            archived_contact_policy = ArchivedContactPolicy.from_env()
        self.archived_contact_policy = ArchivedContactPolicy(archived_contact_policy)

    def validate(self, snapshot: Optional[TenantSnapshot], entity_type: EntityType | str, payload: Any) -> ValidationResult:
        if snapshot is None:
            raise SnapshotUnavailableError("Tenant snapshot is unavailable")
        entity_type = EntityType(entity_type)
        if entity_type not in PAYLOAD_SCHEMAS:
            raise ValueError(f"{entity_type.value} payloads cannot be validated")

        collector = _Collector()
        if not isinstance(payload, dict):
            collector.error("payload: must be an object", "payload", DiffCategory.INVALID_VALUE,
                            issue="must be an object", expected="object", received=type(payload).__name__)
            return self._finalize(collector)

        self._structural_pass(entity_type, payload, collector)
        failed = {diff.field for diff, _ in collector.items}
        self._contextual_pass(snapshot, entity_type, payload, failed, collector)
        return self._finalize(collector)

    # ---- Pass 1 ----

    def _structural_pass(self, entity_type: EntityType, payload: Dict[str, Any], collector: _Collector):
        schema = PAYLOAD_SCHEMAS[entity_type]
        try:
            schema.model_validate(payload)
        except ValidationError as exc:
            for err in exc.errors():
                field = _field_path(err.get("loc", ()))
                if err.get("type") == "missing":
                    collector.error(f"{field}: is required", field, DiffCategory.REQUIRED_FIELD,
                                    issue="is required")
                else:
                    message = err.get("msg", "is invalid")
                    received = err.get("input")
                    collector.error(f"{field}: {message}", field, DiffCategory.INVALID_VALUE, issue=message,
                                    received=received if isinstance(received, (str, int, float, bool)) else None)

        if entity_type == EntityType.PAYMENT and not payload.get("invoice") and not payload.get("credit_note"):
            collector.error(
                "invoice.invoice_id: either invoice.invoice_id or credit_note.credit_note_id is required",
                "invoice.invoice_id",
                DiffCategory.REQUIRED_FIELD,
                issue="either invoice.invoice_id or credit_note.credit_note_id is required",
            )

    # ---- Pass 2 ----

    def _contextual_pass(self, snapshot: TenantSnapshot, entity_type: EntityType, payload: Dict[str, Any],
                         failed: Set[str], collector: _Collector):
        def skip(field: str) -> bool:
            for f in failed:
                if field == f or field.startswith(f + ".") or field.startswith(f + "["):
                    return True
            return False

        document_type = payload.get("type") if isinstance(payload.get("type"), str) else None

        if entity_type == EntityType.CONTACT:
            self._check_contact_name(snapshot, payload, skip, collector)
            return

        if entity_type == EntityType.PAYMENT:
            self._check_payment(snapshot, payload, skip, collector)
        else:
            line_type = expected_account_type(entity_type, document_type)
            self._check_line_items(snapshot, payload, line_type, skip, collector)

        if entity_type == EntityType.BANK_TRANSACTION:
            self._check_bank_account(snapshot, "bank_account", payload, skip, collector)

        contact = payload.get("contact")
        if entity_type != EntityType.PAYMENT and (contact is not None or entity_type != EntityType.BANK_TRANSACTION):
            self._check_contact_ref(snapshot, _as_dict(contact), skip, collector)

        self._check_dates(entity_type, payload, skip, collector)

        currency = payload.get("currency_code")
        if isinstance(currency, str) and currency and not skip("currency_code") and currency != snapshot.currency:
            collector.warning(
                f"Currency '{currency}' differs from tenant currency '{snapshot.currency}'",
                "currency_code",
                DiffCategory.CURRENCY_MISMATCH,
                expected=snapshot.currency,
                received=currency,
            )

    def _check_line_items(self, snapshot, payload, line_type, skip, collector):
        line_items = payload.get("line_items")
        if not isinstance(line_items, list):
            return
        accounts = {a.code: a for a in snapshot.accounts}
        active_tax = [t.tax_type for t in snapshot.tax_rates if t.status == "ACTIVE"]

        for i, item in enumerate(line_items):
            if not isinstance(item, dict):
                continue
            code_field = f"line_items[{i}].account_code"
            if not skip(code_field):
                code = item.get("account_code")
                account = accounts.get(code)
                if account is None:
                    collector.error(f"Account code '{code}' not found", code_field, DiffCategory.ACCOUNT_NOT_FOUND,
                                    expected=f"An active {line_type} account code", received=code,
                                    details={"account_type": line_type})
                elif account.status == "ARCHIVED":
                    collector.error(f"Account code '{code}' is ARCHIVED", code_field, DiffCategory.ACCOUNT_ARCHIVED,
                                    expected="An ACTIVE account code", received=code,
                                    details={"account_type": line_type})
                elif line_type == "REVENUE" and account.type != "REVENUE":
                    collector.warning(
                        f"Account code '{code}' is a {account.type} account; sales usually post to REVENUE",
                        code_field, DiffCategory.ACCOUNT_TYPE_MISMATCH, expected="REVENUE", received=account.type)
                elif line_type == "EXPENSE" and account.type == "REVENUE":
                    collector.warning(
                        f"Account code '{code}' is a REVENUE account; purchases usually post to EXPENSE",
                        code_field, DiffCategory.ACCOUNT_TYPE_MISMATCH, expected="EXPENSE", received=account.type)

            tax_field = f"line_items[{i}].tax_type"
            tax_type = item.get("tax_type")
            if tax_type is not None and not skip(tax_field) and tax_type not in active_tax:
                collector.error(
                    f"Tax type '{tax_type}' is not valid for region {snapshot.region}",
                    tax_field,
                    DiffCategory.TAX_TYPE_INVALID,
                    expected=", ".join(active_tax),
                    received=tax_type,
                    details={"valid_tax_types": active_tax},
                )
                collector.info(f"Valid tax types for {snapshot.region}: {', '.join(active_tax)}", tax_field,
                               details={"valid_tax_types": active_tax})

    def _check_contact_ref(self, snapshot, contact: Dict[str, Any], skip, collector):
        field = "contact.contact_id"
        if skip(field) or skip("contact"):
            return
        contact_id = contact.get("contact_id")
        match = next((c for c in snapshot.contacts if c.contact_id == contact_id), None)
        if match is None:
            details = {"contact_name": contact["name"]} if isinstance(contact.get("name"), str) and contact["name"] else None
            collector.error(f"Contact '{contact_id}' not found", field, DiffCategory.CONTACT_NOT_FOUND,
                            expected="An existing contact_id", received=contact_id, details=details)
        elif match.status == "ARCHIVED":
            message = f"Contact '{contact_id}' ({match.name}) is ARCHIVED"
            if self.archived_contact_policy == ArchivedContactPolicy.ERROR:
                collector.error(message, field, DiffCategory.CONTACT_ARCHIVED, expected="An ACTIVE contact",
                                received=contact_id)
            else:
                collector.warning(message, field, DiffCategory.CONTACT_ARCHIVED, expected="An ACTIVE contact",
                                  received=contact_id)

    def _check_contact_name(self, snapshot, payload, skip, collector):
        name = payload.get("name")
        if skip("name") or not isinstance(name, str):
            return
        existing = next((c for c in snapshot.contacts if c.name.strip().lower() == name.strip().lower()), None)
        if existing is not None:
            collector.warning(f"A contact named '{existing.name}' already exists ({existing.contact_id})", "name",
                              received=name, details={"contact_id": existing.contact_id})

    def _check_bank_account(self, snapshot, prefix, payload, skip, collector):
        field = f"{prefix}.account_id"
        if skip(field) or skip(prefix):
            return
        account_id = _as_dict(payload.get(prefix)).get("account_id")
        account = next((a for a in snapshot.accounts if a.account_id == account_id), None)
        details = {"account_type": "BANK"}
        if account is None:
            collector.error(f"Account '{account_id}' not found", field, DiffCategory.ACCOUNT_NOT_FOUND,
                            expected="An active BANK account_id", received=account_id, details=details)
        elif account.status == "ARCHIVED":
            collector.error(f"Account '{account_id}' ({account.code}) is ARCHIVED", field,
                            DiffCategory.ACCOUNT_ARCHIVED, expected="An ACTIVE BANK account", received=account_id,
                            details=details)
        elif account.type != "BANK":
            collector.error(f"Account '{account_id}' is a {account.type} account, not a BANK account", field,
                            DiffCategory.ACCOUNT_TYPE_MISMATCH, expected="BANK", received=account.type,
                            details=details)

    def _check_payment(self, snapshot, payload, skip, collector):
        amount = payload.get("amount") if not skip("amount") else None
        amount = amount if isinstance(amount, (int, float)) and not isinstance(amount, bool) else None

        invoice_ref = payload.get("invoice")
        if isinstance(invoice_ref, dict) and not skip("invoice.invoice_id") and not skip("invoice"):
            invoice_id = invoice_ref.get("invoice_id")
            invoice = next((inv for inv in snapshot.invoices if inv.invoice_id == invoice_id), None)
            if invoice is None:
                collector.error(f"Invoice '{invoice_id}' not found", "invoice.invoice_id",
                                DiffCategory.INVOICE_NOT_FOUND, expected="An existing AUTHORISED invoice_id",
                                received=invoice_id)
            else:
                self._check_document_balance(
                    "Invoice", invoice_id, invoice.status, invoice.amount_due, amount, "invoice.invoice_id",
                    {"invoice_id": invoice_id, "amount_due": invoice.amount_due}, collector)

        credit_ref = payload.get("credit_note")
        if isinstance(credit_ref, dict) and not skip("credit_note.credit_note_id") and not skip("credit_note"):
            credit_note_id = credit_ref.get("credit_note_id")
            credit_note = next((cn for cn in snapshot.credit_notes if cn.credit_note_id == credit_note_id), None)
            if credit_note is None:
                collector.error(f"Credit note '{credit_note_id}' not found", "credit_note.credit_note_id",
                                DiffCategory.CREDIT_NOTE_NOT_FOUND, expected="An existing AUTHORISED credit_note_id",
                                received=credit_note_id)
            else:
                self._check_document_balance(
                    "Credit note", credit_note_id, credit_note.status, credit_note.remaining_credit, amount,
                    "credit_note.credit_note_id",
                    {"credit_note_id": credit_note_id, "remaining_credit": credit_note.remaining_credit}, collector)

        self._check_bank_account(snapshot, "account", payload, skip, collector)

    def _check_document_balance(self, label, document_id, status, balance, amount, field, details, collector):
        if status in ("DRAFT", "SUBMITTED", "VOIDED"):
            collector.error(f"{label} '{document_id}' is {status}; only AUTHORISED documents can be paid", field,
                            DiffCategory.DOCUMENT_STATUS, expected="AUTHORISED", received=status, details=details)
        elif status == "PAID":
            collector.warning(f"{label} '{document_id}' is already PAID", field, DiffCategory.DOCUMENT_STATUS,
                              expected="AUTHORISED", received=status)
        elif amount is not None and amount > balance + AMOUNT_TOLERANCE:
            collector.error(
                f"Payment amount {amount:.2f} exceeds remaining balance {balance:.2f} on {label.lower()} '{document_id}'",
                "amount",
                DiffCategory.AMOUNT_EXCEEDS_BALANCE,
                expected=f"<= {balance:.2f}",
                received=f"{amount:.2f}",
                details=details,
            )

    def _check_dates(self, entity_type, payload, skip, collector):
        if entity_type == EntityType.INVOICE:
            later_field, label = "due_date", "Due date"
        elif entity_type == EntityType.QUOTE:
            later_field, label = "expiry_date", "Expiry date"
        else:
            return
        if skip("date") or skip(later_field):
            return
        start = _parse_date(payload.get("date"))
        end = _parse_date(payload.get(later_field))
        if start and end and end < start:
            collector.error(
                f"{label} {end.isoformat()} is before the {entity_type.value.lower()} date {start.isoformat()}",
                later_field,
                DiffCategory.TEMPORAL_ORDER,
                expected=f">= {start.isoformat()}",
                received=end.isoformat(),
            )

    # ---- Scoring ----

    @staticmethod
    def _finalize(collector: _Collector) -> ValidationResult:
        errors = [message for diff, message in collector.items if diff.severity == Severity.ERROR]
        warnings = [message for diff, message in collector.items if diff.severity == Severity.WARNING]
        score = max(0.0, 1.0 - ERROR_PENALTY * len(errors) - WARNING_PENALTY * len(warnings))
        return ValidationResult(
            valid=not errors,
            score=round(score, 4),
            errors=errors,
            warnings=warnings,
            diff=[diff for diff, _ in collector.items],
        )


def validate(snapshot: Optional[TenantSnapshot], entity_type: EntityType | str, payload: Any,
             archived_contact_policy: ArchivedContactPolicy | str | None = None) -> ValidationResult:
    return ValidationEngine(archived_contact_policy).validate(snapshot, entity_type, payload)
