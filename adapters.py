"""Tenant data backends.

Each backend declares the operations it supports through a ``capabilities`` set.
Tools check membership before calling an operation.
"""
import os
import json
import uuid
import asyncio
from abc import ABC, abstractmethod
from datetime import date, timedelta
from enum import Enum
from pathlib import Path
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

from xero_python.accounting import AccountingApi
from xero_python.accounting import Account as XeroAccount
from xero_python.accounting import BankTransaction as XeroBankTransaction
from xero_python.accounting import BankTransactions as XeroBankTransactions
from xero_python.accounting import Contact as XeroContact
from xero_python.accounting import Contacts as XeroContacts
from xero_python.accounting import CreditNote as XeroCreditNote
from xero_python.accounting import CreditNotes as XeroCreditNotes
from xero_python.accounting import Invoice as XeroInvoice
from xero_python.accounting import Invoices as XeroInvoices
from xero_python.accounting import LineItem as XeroLineItem
from xero_python.accounting import Payment as XeroPayment
from xero_python.accounting import Quote as XeroQuote
from xero_python.accounting import Quotes as XeroQuotes
from xero_python.api_client import ApiClient
from xero_python.api_client.configuration import Configuration
from xero_python.api_client.oauth2 import OAuth2Token

from connections import XERO_CLIENT_ID, XERO_CLIENT_SECRET, ConnectionStore
from models import (
    Account,
    BankTransaction,
    Contact,
    CreditNote,
    EntityType,
    Invoice,
    LineItem,
    Payment,
    Quote,
    TaxRate,
    TenantSnapshot,
)
from utils import logger

FIXTURES_DIR = os.environ.get("FIXTURES_DIR", str(Path(__file__).resolve().parent / "fixtures"))
DEFAULT_PAYMENT_TERMS_DAYS = 30
# Every status the payment checks tell apart; DELETED documents stay out of the snapshot.
SNAPSHOT_DOCUMENT_STATUSES = ("DRAFT", "SUBMITTED", "AUTHORISED", "PAID", "VOIDED")


class Capability(str, Enum):
    READ = "read"
    WRITE = "write"
    LIFECYCLE = "lifecycle"
    SEED = "seed"
    OAUTH = "oauth"


class TenantNotFoundError(LookupError):
    def __init__(self, tenant_id: str):
        super().__init__(f"Tenant '{tenant_id}' not found")
        self.tenant_id = tenant_id


class EntityNotFoundError(LookupError):
    pass


class CapabilityNotSupportedError(Exception):
    def __init__(self, mode: str, capability: Capability):
        super().__init__(f"The {mode} backend does not support '{capability.value}' operations")
        self.mode = mode
        self.capability = capability


def resolve_tax_rate(snapshot: TenantSnapshot, tax_type: Optional[str], account_code: Optional[str] = None) -> float:
    """Percentage rate for a line, from its tax type or the account's default tax type; 0 when neither applies."""
    if not tax_type and account_code:
        account = next((a for a in snapshot.accounts if a.code == account_code), None)
        tax_type = account.tax_type if account else None
    if not tax_type:
        return 0.0
    rate = next((t for t in snapshot.tax_rates if t.tax_type == tax_type and t.status == "ACTIVE"), None)
    return rate.rate if rate else 0.0


def compute_totals(snapshot: TenantSnapshot, line_items: List[LineItem],
                   line_amount_types: str = "Exclusive") -> Tuple[float, float, float]:
    sub_total = 0.0
    total_tax = 0.0
    for item in line_items:
        amount = item.quantity * item.unit_amount
        if line_amount_types == "NoTax":
            sub_total += amount
            continue
        rate = resolve_tax_rate(snapshot, item.tax_type, item.account_code) / 100.0
        if line_amount_types == "Inclusive":
            tax = amount - amount / (1 + rate) if rate else 0.0
            sub_total += amount - tax
        else:
            tax = amount * rate
            sub_total += amount
        total_tax += tax
    sub_total = round(sub_total, 2)
    total_tax = round(total_tax, 2)
    return sub_total, total_tax, round(sub_total + total_tax, 2)


def _new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:8]}"


def _iso(value: Any, default: Optional[date] = None) -> Optional[str]:
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, str) and value:
        return value[:10]
    return default.isoformat() if default else None


def _matches(record: Dict[str, Any], criteria: Dict[str, Any]) -> bool:
    return all(record.get(k) == v for k, v in criteria.items() if v is not None)


class BaseAdapter(ABC):
    mode = "base"
    capabilities: FrozenSet[Capability] = frozenset()

    def supports(self, capability: Capability) -> bool:
        return capability in self.capabilities

    def require(self, capability: Capability):
        if not self.supports(capability):
            raise CapabilityNotSupportedError(self.mode, capability)

    @abstractmethod
    async def get_tenants(self) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    async def get_tenant_context(self, tenant_id: str) -> TenantSnapshot:
        ...

    async def get_accounts(self, tenant_id: str, filter: Optional[Dict[str, Any]] = None) -> List[Account]:
        snapshot = await self.get_tenant_context(tenant_id)
        return [a for a in snapshot.accounts if _matches(a.model_dump(), filter or {})]

    async def get_tax_rates(self, tenant_id: str) -> List[TaxRate]:
        snapshot = await self.get_tenant_context(tenant_id)
        return list(snapshot.tax_rates)

    async def get_contacts(self, tenant_id: str, filter: Optional[Dict[str, Any]] = None) -> List[Contact]:
        snapshot = await self.get_tenant_context(tenant_id)
        return [c for c in snapshot.contacts if _matches(c.model_dump(), filter or {})]

    @abstractmethod
    async def get_invoices(self, tenant_id: str, filter: Optional[Dict[str, Any]] = None) -> List[Invoice]:
        ...

    async def get_invoice(self, tenant_id: str, invoice_id: str) -> Invoice:
        for invoice in await self.get_invoices(tenant_id):
            if invoice.invoice_id == invoice_id:
                return invoice
        raise EntityNotFoundError(f"Invoice '{invoice_id}' not found")

    async def get_contact(self, tenant_id: str, contact_id: str) -> Contact:
        for contact in await self.get_contacts(tenant_id):
            if contact.contact_id == contact_id:
                return contact
        raise EntityNotFoundError(f"Contact '{contact_id}' not found")

    @abstractmethod
    async def get_quotes(self, tenant_id: str, filter: Optional[Dict[str, Any]] = None) -> List[Quote]:
        ...

    @abstractmethod
    async def get_credit_notes(self, tenant_id: str, filter: Optional[Dict[str, Any]] = None) -> List[CreditNote]:
        ...

    @abstractmethod
    async def create_contact(self, tenant_id: str, payload: Dict[str, Any]) -> Contact:
        ...

    @abstractmethod
    async def create_invoice(self, tenant_id: str, payload: Dict[str, Any]) -> Invoice:
        ...

    @abstractmethod
    async def create_quote(self, tenant_id: str, payload: Dict[str, Any]) -> Quote:
        ...

    @abstractmethod
    async def create_credit_note(self, tenant_id: str, payload: Dict[str, Any]) -> CreditNote:
        ...

    @abstractmethod
    async def create_payment(self, tenant_id: str, payload: Dict[str, Any]) -> Payment:
        ...

    @abstractmethod
    async def create_bank_transaction(self, tenant_id: str, payload: Dict[str, Any]) -> BankTransaction:
        ...

    @abstractmethod
    async def update_status(self, tenant_id: str, entity_type: EntityType, entity_id: str, status: str):
        ...


class _MockTenant:
    def __init__(self, raw: Dict[str, Any]):
        self.info = {
            "tenant_id": raw["tenant_id"],
            "tenant_name": raw.get("tenant_name", raw["tenant_id"]),
            "region": raw["region"],
            "currency": raw["currency"],
            "description": raw.get("description", ""),
        }
        self.accounts = [Account(**a) for a in raw.get("accounts", [])]
        self.tax_rates = [TaxRate(**t) for t in raw.get("tax_rates", [])]
        self.contacts = [Contact(**c) for c in raw.get("contacts", [])]
        self.invoices = [Invoice(**i) for i in raw.get("invoices", [])]
        self.quotes = [Quote(**q) for q in raw.get("quotes", [])]
        self.credit_notes = [CreditNote(**c) for c in raw.get("credit_notes", [])]
        self.payments = [Payment(**p) for p in raw.get("payments", [])]
        self.bank_transactions = [BankTransaction(**b) for b in raw.get("bank_transactions", [])]


class MockAdapter(BaseAdapter):
    """In-memory tenants loaded from JSON fixtures. Writes live for the adapter's lifetime."""

    mode = "mock"
    capabilities = frozenset({Capability.READ, Capability.WRITE, Capability.LIFECYCLE, Capability.SEED})

    def __init__(self, fixtures_dir: Optional[str] = None):
        self.fixtures_dir = Path(fixtures_dir or FIXTURES_DIR)
        self._tenants: Dict[str, _MockTenant] = {}
        self._load_fixtures()

    def _load_fixtures(self):
        tenant_dir = self.fixtures_dir / "tenants"
        for path in sorted(tenant_dir.glob("*.json")):
            with open(path, "r", encoding="utf-8") as f:
                raw = json.load(f)
            tenant = _MockTenant(raw)
            self._tenants[tenant.info["tenant_id"]] = tenant
        logger.info("Loaded %s mock tenants from %s", len(self._tenants), tenant_dir)

    def _tenant(self, tenant_id: str) -> _MockTenant:
        tenant = self._tenants.get(tenant_id)
        if tenant is None:
            raise TenantNotFoundError(tenant_id)
        return tenant

    def _snapshot(self, tenant: _MockTenant) -> TenantSnapshot:
        return TenantSnapshot(
            tenant_id=tenant.info["tenant_id"],
            tenant_name=tenant.info["tenant_name"],
            region=tenant.info["region"],
            currency=tenant.info["currency"],
            accounts=tenant.accounts,
            tax_rates=tenant.tax_rates,
            contacts=tenant.contacts,
            invoices=tenant.invoices,
            credit_notes=tenant.credit_notes,
        ).model_copy(deep=True)

    async def get_tenants(self) -> List[Dict[str, Any]]:
        return [dict(t.info) for t in self._tenants.values()]

    async def get_tenant_context(self, tenant_id: str) -> TenantSnapshot:
        return self._snapshot(self._tenant(tenant_id))

    async def get_invoices(self, tenant_id: str, filter: Optional[Dict[str, Any]] = None) -> List[Invoice]:
        filter = filter or {}
        results = []
        for invoice in self._tenant(tenant_id).invoices:
            if filter.get("status") and invoice.status != filter["status"]:
                continue
            if filter.get("type") and invoice.type != filter["type"]:
                continue
            if filter.get("contact_id") and invoice.contact.contact_id != filter["contact_id"]:
                continue
            if filter.get("from_date") and invoice.date < filter["from_date"]:
                continue
            if filter.get("to_date") and invoice.date > filter["to_date"]:
                continue
            results.append(invoice.model_copy(deep=True))
        return results

    async def get_quotes(self, tenant_id: str, filter: Optional[Dict[str, Any]] = None) -> List[Quote]:
        return [q.model_copy(deep=True) for q in self._tenant(tenant_id).quotes
                if _matches(q.model_dump(), filter or {})]

    async def get_credit_notes(self, tenant_id: str, filter: Optional[Dict[str, Any]] = None) -> List[CreditNote]:
        return [c.model_copy(deep=True) for c in self._tenant(tenant_id).credit_notes
                if _matches(c.model_dump(), filter or {})]

    async def create_contact(self, tenant_id: str, payload: Dict[str, Any]) -> Contact:
        tenant = self._tenant(tenant_id)
        contact = Contact(
            contact_id=_new_id("contact"),
            name=payload["name"],
            first_name=payload.get("first_name"),
            last_name=payload.get("last_name"),
            email=payload.get("email"),
            is_customer=bool(payload.get("is_customer", True)),
            is_supplier=bool(payload.get("is_supplier", False)),
            status="ACTIVE",
        )
        tenant.contacts.append(contact)
        return contact.model_copy(deep=True)

    def _document_fields(self, tenant: _MockTenant, payload: Dict[str, Any]) -> Dict[str, Any]:
        snapshot = self._snapshot(tenant)
        line_items = [LineItem(**li) for li in payload.get("line_items", [])]
        line_amount_types = payload.get("line_amount_types") or "Exclusive"
        sub_total, total_tax, total = compute_totals(snapshot, line_items, line_amount_types)
        return {
            "contact": {"contact_id": payload["contact"]["contact_id"]},
            "line_amount_types": line_amount_types,
            "line_items": line_items,
            "currency_code": payload.get("currency_code") or tenant.info["currency"],
            "reference": payload.get("reference"),
            "sub_total": sub_total,
            "total_tax": total_tax,
            "total": total,
        }

    async def create_invoice(self, tenant_id: str, payload: Dict[str, Any]) -> Invoice:
        tenant = self._tenant(tenant_id)
        issued = _iso(payload.get("date"), date.today())
        fields = self._document_fields(tenant, payload)
        invoice = Invoice(
            invoice_id=_new_id("inv"),
            invoice_number=f"INV-{len(tenant.invoices) + 1:04d}",
            type=payload.get("type") or "ACCREC",
            date=issued,
            due_date=_iso(payload.get("due_date"), date.fromisoformat(issued) + timedelta(days=DEFAULT_PAYMENT_TERMS_DAYS)),
            status=payload.get("status") or "DRAFT",
            amount_due=fields["total"],
            **fields,
        )
        tenant.invoices.append(invoice)
        return invoice.model_copy(deep=True)

    async def create_quote(self, tenant_id: str, payload: Dict[str, Any]) -> Quote:
        tenant = self._tenant(tenant_id)
        issued = _iso(payload.get("date"), date.today())
        quote = Quote(
            quote_id=_new_id("quote"),
            quote_number=f"QU-{len(tenant.quotes) + 1:04d}",
            date=issued,
            expiry_date=_iso(payload.get("expiry_date"),
                             date.fromisoformat(issued) + timedelta(days=DEFAULT_PAYMENT_TERMS_DAYS)),
            status=payload.get("status") or "DRAFT",
            title=payload.get("title"),
            summary=payload.get("summary"),
            terms=payload.get("terms"),
            **self._document_fields(tenant, payload),
        )
        tenant.quotes.append(quote)
        return quote.model_copy(deep=True)

    async def create_credit_note(self, tenant_id: str, payload: Dict[str, Any]) -> CreditNote:
        tenant = self._tenant(tenant_id)
        fields = self._document_fields(tenant, payload)
        credit_note = CreditNote(
            credit_note_id=_new_id("cn"),
            credit_note_number=f"CN-{len(tenant.credit_notes) + 1:04d}",
            type=payload.get("type") or "ACCRECCREDIT",
            date=_iso(payload.get("date"), date.today()),
            status=payload.get("status") or "DRAFT",
            remaining_credit=fields["total"],
            **fields,
        )
        tenant.credit_notes.append(credit_note)
        return credit_note.model_copy(deep=True)

    async def create_payment(self, tenant_id: str, payload: Dict[str, Any]) -> Payment:
        tenant = self._tenant(tenant_id)
        amount = float(payload["amount"])
        invoice_ref = payload.get("invoice") or None
        credit_ref = payload.get("credit_note") or None

        if invoice_ref:
            invoice = next((i for i in tenant.invoices if i.invoice_id == invoice_ref["invoice_id"]), None)
            if invoice is None:
                raise EntityNotFoundError(f"Invoice '{invoice_ref['invoice_id']}' not found")
            invoice.amount_paid = round(invoice.amount_paid + amount, 2)
            invoice.amount_due = round(max(0.0, invoice.amount_due - amount), 2)
            if invoice.amount_due <= 0:
                invoice.status = "PAID"
        if credit_ref:
            credit_note = next((c for c in tenant.credit_notes if c.credit_note_id == credit_ref["credit_note_id"]), None)
            if credit_note is None:
                raise EntityNotFoundError(f"Credit note '{credit_ref['credit_note_id']}' not found")
            credit_note.remaining_credit = round(max(0.0, credit_note.remaining_credit - amount), 2)
            if credit_note.remaining_credit <= 0:
                credit_note.status = "PAID"

        payment = Payment(
            payment_id=_new_id("pay"),
            invoice=invoice_ref,
            credit_note=credit_ref,
            account={"account_id": payload["account"]["account_id"]},
            date=_iso(payload.get("date"), date.today()),
            amount=amount,
            currency_code=payload.get("currency_code") or tenant.info["currency"],
            reference=payload.get("reference"),
        )
        tenant.payments.append(payment)
        return payment.model_copy(deep=True)

    async def create_bank_transaction(self, tenant_id: str, payload: Dict[str, Any]) -> BankTransaction:
        tenant = self._tenant(tenant_id)
        snapshot = self._snapshot(tenant)
        line_items = [LineItem(**li) for li in payload.get("line_items", [])]
        line_amount_types = payload.get("line_amount_types") or "Exclusive"
        sub_total, total_tax, total = compute_totals(snapshot, line_items, line_amount_types)
        transaction = BankTransaction(
            bank_transaction_id=_new_id("bt"),
            type=payload["type"],
            contact=payload.get("contact") or None,
            bank_account={"account_id": payload["bank_account"]["account_id"]},
            date=_iso(payload.get("date"), date.today()),
            status=payload.get("status") or "AUTHORISED",
            line_amount_types=line_amount_types,
            line_items=line_items,
            currency_code=payload.get("currency_code") or tenant.info["currency"],
            reference=payload.get("reference"),
            sub_total=sub_total,
            total_tax=total_tax,
            total=total,
        )
        tenant.bank_transactions.append(transaction)
        return transaction.model_copy(deep=True)

    async def update_status(self, tenant_id: str, entity_type: EntityType, entity_id: str, status: str):
        tenant = self._tenant(tenant_id)
        collections = {
            EntityType.INVOICE: (tenant.invoices, "invoice_id"),
            EntityType.QUOTE: (tenant.quotes, "quote_id"),
            EntityType.CREDIT_NOTE: (tenant.credit_notes, "credit_note_id"),
        }
        items, id_field = collections[EntityType(entity_type)]
        entity = next((e for e in items if getattr(e, id_field) == entity_id), None)
        if entity is None:
            raise EntityNotFoundError(f"{EntityType(entity_type).value} '{entity_id}' not found")
        entity.status = status
        return entity.model_copy(deep=True)


def _value(v: Any) -> Any:
    return getattr(v, "value", v)


def _xero_date(v: Any) -> Optional[str]:
    if isinstance(v, date):
        return v.isoformat()
    return str(v)[:10] if v else None


class LiveAdapter(BaseAdapter):
    """Xero accounting API backend. Blocking SDK calls run in the default executor."""

    mode = "live"
    capabilities = frozenset({Capability.READ, Capability.WRITE, Capability.OAUTH})

    def __init__(self, connections: Optional[ConnectionStore] = None):
        self.connections = connections or ConnectionStore()

    def _accounting_api(self, tenant_id: str) -> AccountingApi:
        record = self.connections.get(tenant_id)
        if not record or record.get("connection_status") != "active":
            raise TenantNotFoundError(tenant_id)
        cfg = Configuration(
            oauth2_token=OAuth2Token(client_id=XERO_CLIENT_ID, client_secret=XERO_CLIENT_SECRET),
            debug=False,
        )
        client = ApiClient(configuration=cfg)
        tokens = record.get("tokens") or {}

        @client.oauth2_token_getter
        def _getter():
            return tokens

        @client.oauth2_token_saver
        def _saver(token):
            self.connections.update_tokens(tenant_id, token)

        client.set_oauth2_token(tokens)
        return AccountingApi(client)

    async def _call(self, fn, *args, **kwargs):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, lambda: fn(*args, **kwargs))

    async def get_tenants(self) -> List[Dict[str, Any]]:
        return [
            {
                "tenant_id": r["tenant_id"],
                "tenant_name": r.get("tenant_name") or "Unknown Organisation",
                "region": r.get("xero_region") or "",
                "description": "Connected Xero organisation",
            }
            for r in self.connections.list()
        ]

    async def get_tenant_context(self, tenant_id: str) -> TenantSnapshot:
        api = self._accounting_api(tenant_id)
        accounts = await self._call(api.get_accounts, tenant_id)
        tax_rates = await self._call(api.get_tax_rates, tenant_id)
        contacts = await self._call(api.get_contacts, tenant_id)
        organisations = await self._call(api.get_organisations, tenant_id)
        org = (getattr(organisations, "organisations", None) or [None])[0]
        record = self.connections.get(tenant_id) or {}
        return TenantSnapshot(
            tenant_id=tenant_id,
            tenant_name=getattr(org, "name", None) or record.get("tenant_name", ""),
            region=_value(getattr(org, "country_code", None)) or record.get("xero_region") or "",
            currency=_value(getattr(org, "base_currency", None)) or "",
            accounts=[self._account(a) for a in getattr(accounts, "accounts", None) or [] if getattr(a, "code", None)],
            tax_rates=[self._tax_rate(t) for t in getattr(tax_rates, "tax_rates", None) or []],
            contacts=[self._contact(c) for c in getattr(contacts, "contacts", None) or []],
            invoices=await self.get_invoices(tenant_id, {"statuses": list(SNAPSHOT_DOCUMENT_STATUSES)}),
            credit_notes=await self.get_credit_notes(tenant_id),
        )

    @staticmethod
    def _account(a) -> Account:
        account_type = _value(getattr(a, "type", None))
        return Account(
            account_id=str(a.account_id),
            code=a.code,
            name=a.name or "",
            type=account_type if account_type in ("REVENUE", "EXPENSE", "BANK", "CURRENT", "FIXED", "LIABILITY", "EQUITY") else "CURRENT",
            tax_type=getattr(a, "tax_type", None),
            status="ARCHIVED" if _value(getattr(a, "status", None)) == "ARCHIVED" else "ACTIVE",
        )

    @staticmethod
    def _tax_rate(t) -> TaxRate:
        return TaxRate(
            name=t.name or "",
            tax_type=t.tax_type,
            rate=float(getattr(t, "effective_rate", None) or getattr(t, "display_tax_rate", None) or 0),
            status="ACTIVE" if _value(getattr(t, "status", None)) == "ACTIVE" else "DELETED",
        )

    @staticmethod
    def _contact(c) -> Contact:
        return Contact(
            contact_id=str(c.contact_id),
            name=c.name or "",
            first_name=getattr(c, "first_name", None),
            last_name=getattr(c, "last_name", None),
            email=getattr(c, "email_address", None),
            is_customer=bool(getattr(c, "is_customer", False)),
            is_supplier=bool(getattr(c, "is_supplier", False)),
            status="ARCHIVED" if _value(getattr(c, "contact_status", None)) == "ARCHIVED" else "ACTIVE",
        )

    @staticmethod
    def _line_items(items) -> List[LineItem]:
        return [
            LineItem(
                description=li.description or "-",
                quantity=float(li.quantity or 1),
                unit_amount=float(li.unit_amount or 0),
                account_code=li.account_code or "-",
                tax_type=getattr(li, "tax_type", None),
            )
            for li in items or []
        ]

    def _invoice(self, inv) -> Invoice:
        return Invoice(
            invoice_id=str(inv.invoice_id),
            invoice_number=getattr(inv, "invoice_number", None),
            type=_value(inv.type),
            contact={"contact_id": str(inv.contact.contact_id)},
            date=_xero_date(inv.date) or "",
            due_date=_xero_date(getattr(inv, "due_date", None)),
            status=_value(inv.status),
            line_amount_types=_value(getattr(inv, "line_amount_types", None)) or "Exclusive",
            line_items=self._line_items(getattr(inv, "line_items", None)),
            currency_code=_value(getattr(inv, "currency_code", None)) or "",
            reference=getattr(inv, "reference", None),
            sub_total=float(inv.sub_total or 0),
            total_tax=float(inv.total_tax or 0),
            total=float(inv.total or 0),
            amount_due=float(getattr(inv, "amount_due", 0) or 0),
            amount_paid=float(getattr(inv, "amount_paid", 0) or 0),
        )

    async def get_invoices(self, tenant_id: str, filter: Optional[Dict[str, Any]] = None) -> List[Invoice]:
        filter = filter or {}
        api = self._accounting_api(tenant_id)
        kwargs: Dict[str, Any] = {}
        if filter.get("statuses"):
            kwargs["statuses"] = list(filter["statuses"])
        elif filter.get("status"):
            kwargs["statuses"] = [filter["status"]]
        if filter.get("contact_id"):
            kwargs["contact_i_ds"] = [filter["contact_id"]]
        response = await self._call(api.get_invoices, tenant_id, **kwargs)
        invoices = [self._invoice(inv) for inv in getattr(response, "invoices", None) or []]
        if filter.get("type"):
            invoices = [i for i in invoices if i.type == filter["type"]]
        return invoices

    def _credit_note(self, cn, contact_id: Optional[str] = None) -> CreditNote:
        contact = getattr(cn, "contact", None)
        return CreditNote(
            credit_note_id=str(cn.credit_note_id),
            credit_note_number=getattr(cn, "credit_note_number", None),
            type=_value(cn.type),
            contact={"contact_id": str(contact.contact_id) if contact is not None else contact_id},
            date=_xero_date(cn.date) or "",
            status=_value(cn.status),
            line_amount_types=_value(getattr(cn, "line_amount_types", None)) or "Exclusive",
            line_items=self._line_items(getattr(cn, "line_items", None)),
            currency_code=_value(getattr(cn, "currency_code", None)) or "",
            reference=getattr(cn, "reference", None),
            sub_total=float(getattr(cn, "sub_total", 0) or 0),
            total_tax=float(getattr(cn, "total_tax", 0) or 0),
            total=float(getattr(cn, "total", 0) or 0),
            remaining_credit=float(getattr(cn, "remaining_credit", 0) or 0),
        )

    async def get_quotes(self, tenant_id: str, filter: Optional[Dict[str, Any]] = None) -> List[Quote]:
        raise CapabilityNotSupportedError(self.mode, Capability.LIFECYCLE)

    async def get_credit_notes(self, tenant_id: str, filter: Optional[Dict[str, Any]] = None) -> List[CreditNote]:
        api = self._accounting_api(tenant_id)
        response = await self._call(api.get_credit_notes, tenant_id)
        notes = [self._credit_note(cn) for cn in getattr(response, "credit_notes", None) or []
                 if _value(getattr(cn, "status", None)) in SNAPSHOT_DOCUMENT_STATUSES]
        return [n for n in notes if _matches(n.model_dump(), filter or {})]

    async def update_status(self, tenant_id: str, entity_type: EntityType, entity_id: str, status: str):
        raise CapabilityNotSupportedError(self.mode, Capability.LIFECYCLE)

    @staticmethod
    def _xero_line_items(payload: Dict[str, Any]) -> List[XeroLineItem]:
        return [XeroLineItem(**li) for li in payload.get("line_items", [])]

    async def create_contact(self, tenant_id: str, payload: Dict[str, Any]) -> Contact:
        api = self._accounting_api(tenant_id)
        contact = XeroContact(
            name=payload["name"],
            first_name=payload.get("first_name"),
            last_name=payload.get("last_name"),
            email_address=payload.get("email"),
        )
        created = await self._call(api.create_contacts, tenant_id, XeroContacts(contacts=[contact]))
        return self._contact(created.contacts[0])

    async def create_invoice(self, tenant_id: str, payload: Dict[str, Any]) -> Invoice:
        api = self._accounting_api(tenant_id)
        invoice = XeroInvoice(
            type=payload.get("type") or "ACCREC",
            contact=XeroContact(contact_id=payload["contact"]["contact_id"]),
            date=payload.get("date"),
            due_date=payload.get("due_date"),
            status=payload.get("status") or "DRAFT",
            line_amount_types=payload.get("line_amount_types") or "Exclusive",
            line_items=self._xero_line_items(payload),
            reference=payload.get("reference"),
        )
        created = await self._call(api.create_invoices, tenant_id, XeroInvoices(invoices=[invoice]))
        return self._invoice(created.invoices[0])

    async def create_quote(self, tenant_id: str, payload: Dict[str, Any]) -> Quote:
        api = self._accounting_api(tenant_id)
        quote = XeroQuote(
            contact=XeroContact(contact_id=payload["contact"]["contact_id"]),
            date=payload.get("date"),
            expiry_date=payload.get("expiry_date"),
            title=payload.get("title"),
            summary=payload.get("summary"),
            terms=payload.get("terms"),
            line_items=self._xero_line_items(payload),
        )
        created = (await self._call(api.create_quotes, tenant_id, XeroQuotes(quotes=[quote]))).quotes[0]
        return Quote(
            quote_id=str(created.quote_id),
            quote_number=getattr(created, "quote_number", None),
            contact={"contact_id": payload["contact"]["contact_id"]},
            date=_xero_date(created.date) or "",
            expiry_date=_xero_date(getattr(created, "expiry_date", None)),
            status=_value(created.status) or "DRAFT",
            line_items=self._line_items(created.line_items),
            currency_code=_value(getattr(created, "currency_code", None)) or "",
            total=float(getattr(created, "total", 0) or 0),
        )

    async def create_credit_note(self, tenant_id: str, payload: Dict[str, Any]) -> CreditNote:
        api = self._accounting_api(tenant_id)
        note = XeroCreditNote(
            type=payload.get("type") or "ACCRECCREDIT",
            contact=XeroContact(contact_id=payload["contact"]["contact_id"]),
            date=payload.get("date"),
            status=payload.get("status") or "DRAFT",
            line_items=self._xero_line_items(payload),
            reference=payload.get("reference"),
        )
        created = (await self._call(api.create_credit_notes, tenant_id, XeroCreditNotes(credit_notes=[note]))).credit_notes[0]
        return self._credit_note(created, payload["contact"]["contact_id"])

    async def create_payment(self, tenant_id: str, payload: Dict[str, Any]) -> Payment:
        api = self._accounting_api(tenant_id)
        payment = XeroPayment(
            invoice=XeroInvoice(invoice_id=payload["invoice"]["invoice_id"]) if payload.get("invoice") else None,
            credit_note=XeroCreditNote(credit_note_id=payload["credit_note"]["credit_note_id"]) if payload.get("credit_note") else None,
            account=XeroAccount(account_id=payload["account"]["account_id"]),
            amount=payload["amount"],
            date=payload.get("date") or date.today().isoformat(),
            reference=payload.get("reference"),
        )
        created = (await self._call(api.create_payment, tenant_id, payment)).payments[0]
        return Payment(
            payment_id=str(created.payment_id),
            invoice=payload.get("invoice"),
            credit_note=payload.get("credit_note"),
            account={"account_id": payload["account"]["account_id"]},
            date=_xero_date(created.date) or "",
            amount=float(created.amount or 0),
            currency_code=_value(getattr(created, "currency_code", None)) or "",
            reference=getattr(created, "reference", None),
        )

    async def create_bank_transaction(self, tenant_id: str, payload: Dict[str, Any]) -> BankTransaction:
        api = self._accounting_api(tenant_id)
        transaction = XeroBankTransaction(
            type=payload["type"],
            contact=XeroContact(contact_id=payload["contact"]["contact_id"]) if payload.get("contact") else None,
            bank_account=XeroAccount(account_id=payload["bank_account"]["account_id"]),
            date=payload.get("date"),
            line_items=self._xero_line_items(payload),
            reference=payload.get("reference"),
        )
        created = (await self._call(
            api.create_bank_transactions, tenant_id, XeroBankTransactions(bank_transactions=[transaction])
        )).bank_transactions[0]
        return BankTransaction(
            bank_transaction_id=str(created.bank_transaction_id),
            type=_value(created.type),
            contact=payload.get("contact"),
            bank_account={"account_id": payload["bank_account"]["account_id"]},
            date=_xero_date(created.date) or "",
            status=_value(created.status) or "AUTHORISED",
            line_items=self._line_items(created.line_items),
            currency_code=_value(getattr(created, "currency_code", None)) or "",
            total=float(getattr(created, "total", 0) or 0),
        )


def create_adapter(mode: Optional[str] = None) -> BaseAdapter:
    mode = (mode or os.environ.get("MCP_MODE") or "mock").strip().lower()
    if mode == "live":
        logger.info("Starting in LIVE mode against the Xero API")
        return LiveAdapter()
    if mode != "mock":
        logger.warning("Unknown MCP_MODE %r, falling back to mock", mode)
    return MockAdapter()
