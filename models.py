"""Pydantic models shared by the validation core, the adapters and the tool layer.

Tenant entities (accounts, tax rates, contacts and stored documents) describe what a
tenant snapshot holds. The ``*Payload`` schemas describe what a caller may send for a
write and drive the structural validation pass.
"""
import datetime as dt
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class EntityType(str, Enum):
    INVOICE = "Invoice"
    CONTACT = "Contact"
    QUOTE = "Quote"
    CREDIT_NOTE = "CreditNote"
    PAYMENT = "Payment"
    BANK_TRANSACTION = "BankTransaction"
    ACCOUNT = "Account"
    TAX_RATE = "TaxRate"


class Severity(str, Enum):
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


class DiffCategory(str, Enum):
    REQUIRED_FIELD = "REQUIRED_FIELD"
    INVALID_VALUE = "INVALID_VALUE"
    ACCOUNT_NOT_FOUND = "ACCOUNT_NOT_FOUND"
    ACCOUNT_ARCHIVED = "ACCOUNT_ARCHIVED"
    ACCOUNT_TYPE_MISMATCH = "ACCOUNT_TYPE_MISMATCH"
    TAX_TYPE_INVALID = "TAX_TYPE_INVALID"
    CONTACT_NOT_FOUND = "CONTACT_NOT_FOUND"
    CONTACT_ARCHIVED = "CONTACT_ARCHIVED"
    INVOICE_NOT_FOUND = "INVOICE_NOT_FOUND"
    CREDIT_NOTE_NOT_FOUND = "CREDIT_NOTE_NOT_FOUND"
    DOCUMENT_STATUS = "DOCUMENT_STATUS"
    AMOUNT_EXCEEDS_BALANCE = "AMOUNT_EXCEEDS_BALANCE"
    TEMPORAL_ORDER = "TEMPORAL_ORDER"
    CURRENCY_MISMATCH = "CURRENCY_MISMATCH"


AccountType = Literal["REVENUE", "EXPENSE", "BANK", "CURRENT", "FIXED", "LIABILITY", "EQUITY"]
LineAmountTypes = Literal["Exclusive", "Inclusive", "NoTax"]
DocumentStatus = Literal["DRAFT", "SUBMITTED", "AUTHORISED", "PAID", "VOIDED"]
QuoteStatus = Literal["DRAFT", "SENT", "ACCEPTED", "DECLINED", "INVOICED"]
BankTransactionType = Literal[
    "RECEIVE", "SPEND", "RECEIVE-OVERPAYMENT", "RECEIVE-PREPAYMENT", "SPEND-OVERPAYMENT", "SPEND-PREPAYMENT"
]


class _Model(BaseModel):
    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


# ---- Tenant entities ----

class Account(_Model):
    account_id: str
    code: str
    name: str
    type: AccountType
    tax_type: Optional[str] = None
    status: Literal["ACTIVE", "ARCHIVED"] = "ACTIVE"


class TaxRate(_Model):
    name: str
    tax_type: str
    rate: float
    status: Literal["ACTIVE", "DELETED"] = "ACTIVE"


class Contact(_Model):
    contact_id: str
    name: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    is_customer: bool = False
    is_supplier: bool = False
    status: Literal["ACTIVE", "ARCHIVED"] = "ACTIVE"


class ContactRef(_Model):
    contact_id: str = Field(min_length=1)


class InvoiceRef(_Model):
    invoice_id: str = Field(min_length=1)


class CreditNoteRef(_Model):
    credit_note_id: str = Field(min_length=1)


class AccountRef(_Model):
    account_id: str = Field(min_length=1)


class LineItem(_Model):
    description: str = Field(min_length=1)
    quantity: float = Field(gt=0)
    unit_amount: float
    account_code: str = Field(min_length=1)
    tax_type: Optional[str] = None


class Invoice(_Model):
    invoice_id: str
    invoice_number: Optional[str] = None
    type: Literal["ACCREC", "ACCPAY"] = "ACCREC"
    contact: ContactRef
    date: str
    due_date: Optional[str] = None
    status: DocumentStatus = "DRAFT"
    line_amount_types: LineAmountTypes = "Exclusive"
    line_items: List[LineItem] = Field(default_factory=list)
    currency_code: str
    reference: Optional[str] = None
    sub_total: float = 0.0
    total_tax: float = 0.0
    total: float = 0.0
    amount_due: float = 0.0
    amount_paid: float = 0.0


class Quote(_Model):
    quote_id: str
    quote_number: Optional[str] = None
    contact: ContactRef
    date: str
    expiry_date: Optional[str] = None
    status: QuoteStatus = "DRAFT"
    line_amount_types: LineAmountTypes = "Exclusive"
    line_items: List[LineItem] = Field(default_factory=list)
    currency_code: str
    title: Optional[str] = None
    summary: Optional[str] = None
    terms: Optional[str] = None
    reference: Optional[str] = None
    sub_total: float = 0.0
    total_tax: float = 0.0
    total: float = 0.0


class CreditNote(_Model):
    credit_note_id: str
    credit_note_number: Optional[str] = None
    type: Literal["ACCRECCREDIT", "ACCPAYCREDIT"] = "ACCRECCREDIT"
    contact: ContactRef
    date: str
    status: DocumentStatus = "DRAFT"
    line_amount_types: LineAmountTypes = "Exclusive"
    line_items: List[LineItem] = Field(default_factory=list)
    currency_code: str
    reference: Optional[str] = None
    sub_total: float = 0.0
    total_tax: float = 0.0
    total: float = 0.0
    remaining_credit: float = 0.0


class Payment(_Model):
    payment_id: str
    invoice: Optional[InvoiceRef] = None
    credit_note: Optional[CreditNoteRef] = None
    account: AccountRef
    date: str
    amount: float
    currency_code: str
    reference: Optional[str] = None
    status: Literal["AUTHORISED", "DELETED"] = "AUTHORISED"


class BankTransaction(_Model):
    bank_transaction_id: str
    type: BankTransactionType
    contact: Optional[ContactRef] = None
    bank_account: AccountRef
    date: str
    status: Literal["DRAFT", "AUTHORISED", "DELETED"] = "AUTHORISED"
    line_amount_types: LineAmountTypes = "Exclusive"
    line_items: List[LineItem] = Field(default_factory=list)
    currency_code: str
    reference: Optional[str] = None
    sub_total: float = 0.0
    total_tax: float = 0.0
    total: float = 0.0
    is_reconciled: bool = False


class TenantSnapshot(_Model):
    """Point-in-time view of a tenant used as ground truth for contextual validation."""

    tenant_id: str
    tenant_name: str = ""
    region: str
    currency: str
    accounts: List[Account] = Field(default_factory=list)
    tax_rates: List[TaxRate] = Field(default_factory=list)
    contacts: List[Contact] = Field(default_factory=list)
    # Optional document context, only consulted by payment checks.
    invoices: List[Invoice] = Field(default_factory=list)
    credit_notes: List[CreditNote] = Field(default_factory=list)


# ---- Write payload schemas (structural pass) ----

class _Payload(_Model):
    model_config = ConfigDict(extra="ignore")


class InvoicePayload(_Payload):
    type: Literal["ACCREC", "ACCPAY"] = "ACCREC"
    contact: ContactRef
    date: Optional[dt.date] = None
    due_date: Optional[dt.date] = None
    reference: Optional[str] = None
    status: Optional[Literal["DRAFT", "SUBMITTED", "AUTHORISED"]] = None
    line_amount_types: LineAmountTypes = "Exclusive"
    line_items: List[LineItem] = Field(min_length=1)
    currency_code: Optional[str] = None


class QuotePayload(_Payload):
    contact: ContactRef
    date: Optional[dt.date] = None
    expiry_date: Optional[dt.date] = None
    status: Optional[QuoteStatus] = None
    title: Optional[str] = None
    summary: Optional[str] = None
    terms: Optional[str] = None
    reference: Optional[str] = None
    line_amount_types: LineAmountTypes = "Exclusive"
    line_items: List[LineItem] = Field(min_length=1)
    currency_code: Optional[str] = None


class CreditNotePayload(_Payload):
    type: Literal["ACCRECCREDIT", "ACCPAYCREDIT"] = "ACCRECCREDIT"
    contact: ContactRef
    date: Optional[dt.date] = None
    status: Optional[Literal["DRAFT", "SUBMITTED", "AUTHORISED"]] = None
    reference: Optional[str] = None
    line_amount_types: LineAmountTypes = "Exclusive"
    line_items: List[LineItem] = Field(min_length=1)
    currency_code: Optional[str] = None


class PaymentPayload(_Payload):
    invoice: Optional[InvoiceRef] = None
    credit_note: Optional[CreditNoteRef] = None
    account: AccountRef
    amount: float = Field(gt=0)
    date: Optional[dt.date] = None
    reference: Optional[str] = None
    currency_code: Optional[str] = None


class BankTransactionPayload(_Payload):
    type: BankTransactionType
    contact: Optional[ContactRef] = None
    bank_account: AccountRef
    date: Optional[dt.date] = None
    status: Optional[Literal["DRAFT", "AUTHORISED"]] = None
    reference: Optional[str] = None
    line_amount_types: LineAmountTypes = "Exclusive"
    line_items: List[LineItem] = Field(min_length=1)
    currency_code: Optional[str] = None


class ContactPayload(_Payload):
    name: str = Field(min_length=1)
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    is_customer: Optional[bool] = None
    is_supplier: Optional[bool] = None

    @field_validator("email")
    @classmethod
    def _email_has_at(cls, value):
        if value is not None and "@" not in value:
            raise ValueError("email must contain '@'")
        return value


PAYLOAD_SCHEMAS = {
    EntityType.INVOICE: InvoicePayload,
    EntityType.QUOTE: QuotePayload,
    EntityType.CREDIT_NOTE: CreditNotePayload,
    EntityType.PAYMENT: PaymentPayload,
    EntityType.BANK_TRANSACTION: BankTransactionPayload,
    EntityType.CONTACT: ContactPayload,
}


# ---- Validation and recovery results ----

class ValidationDiff(_Model):
    field: str
    issue: str
    expected: Optional[str] = None
    received: Optional[str] = None
    severity: Severity
    category: Optional[DiffCategory] = None
    details: Optional[Dict[str, Any]] = None


class ValidationResult(_Model):
    valid: bool
    score: float
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    diff: List[ValidationDiff] = Field(default_factory=list)


class NextToolCall(_Model):
    name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)


class RecoveryAction(_Model):
    suggested_action_id: str
    description: Optional[str] = None
    next_tool_call: Optional[NextToolCall] = None
