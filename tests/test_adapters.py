from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from adapters import (
    BaseAdapter,
    Capability,
    CapabilityNotSupportedError,
    EntityNotFoundError,
    LiveAdapter,
    MockAdapter,
    TenantNotFoundError,
    compute_totals,
    create_adapter,
)
from models import DiffCategory, EntityType, LineItem
from tests.conftest import ACME, UK, US
from validation import validate


def _line(amount, tax_type="OUTPUT", account_code="200"):
    return LineItem(description="Line", quantity=1, unit_amount=amount, account_code=account_code, tax_type=tax_type)


@pytest.mark.asyncio
async def test_loads_all_fixture_tenants(adapter):
    tenants = await adapter.get_tenants()
    assert {t["tenant_id"] for t in tenants} == {ACME, UK, US}
    uk = next(t for t in tenants if t["tenant_id"] == UK)
    assert uk["currency"] == "GBP"


@pytest.mark.asyncio
async def test_unknown_tenant(adapter):
    with pytest.raises(TenantNotFoundError) as exc:
        await adapter.get_tenant_context("nowhere-001")
    assert exc.value.tenant_id == "nowhere-001"


@pytest.mark.asyncio
async def test_snapshot_is_a_copy(adapter):
    snapshot = await adapter.get_tenant_context(ACME)
    snapshot.accounts.clear()
    assert (await adapter.get_tenant_context(ACME)).accounts


@pytest.mark.asyncio
async def test_account_filters(adapter):
    bank = await adapter.get_accounts(ACME, {"type": "BANK"})
    assert [a.code for a in bank] == ["090", "091"]


def test_exclusive_totals(snapshot):
    assert compute_totals(snapshot, [_line(100), _line(50)]) == (150.0, 15.0, 165.0)


def test_inclusive_totals(snapshot):
    assert compute_totals(snapshot, [_line(110)], "Inclusive") == (100.0, 10.0, 110.0)


def test_no_tax_totals(snapshot):
    assert compute_totals(snapshot, [_line(110)], "NoTax") == (110.0, 0.0, 110.0)


def test_tax_falls_back_to_account_default(snapshot):
    assert compute_totals(snapshot, [_line(100, tax_type=None)]) == (100.0, 10.0, 110.0)


def test_unknown_tax_type_is_untaxed(snapshot):
    assert compute_totals(snapshot, [_line(100, tax_type="GSTONIMPORTS")]) == (100.0, 0.0, 100.0)


@pytest.mark.asyncio
async def test_created_invoice_is_listed(adapter):
    invoice = await adapter.create_invoice(ACME, {
        "contact": {"contact_id": "contact-001"},
        "date": "2026-10-01",
        "line_items": [_line(200).to_dict()],
    })
    assert invoice.invoice_number == "INV-0005"
    assert invoice.due_date == "2026-10-31"
    assert invoice.amount_due == 220.0
    fetched = await adapter.get_invoice(ACME, invoice.invoice_id)
    assert fetched.total == 220.0


@pytest.mark.asyncio
async def test_full_payment_marks_invoice_paid(adapter):
    await adapter.create_payment(ACME, {"invoice": {"invoice_id": "inv-001"}, "account": {"account_id": "acc-au-090"},
                                        "amount": 1100})
    invoice = await adapter.get_invoice(ACME, "inv-001")
    assert invoice.amount_due == 0.0
    assert invoice.amount_paid == 1100.0
    assert invoice.status == "PAID"


@pytest.mark.asyncio
async def test_credit_note_payment_reduces_remaining_credit(adapter):
    await adapter.create_payment(ACME, {"credit_note": {"credit_note_id": "cn-001"},
                                        "account": {"account_id": "acc-au-090"}, "amount": 10})
    notes = await adapter.get_credit_notes(ACME, {"credit_note_id": "cn-001"})
    assert notes[0].remaining_credit == 100.0
    assert notes[0].status == "AUTHORISED"


@pytest.mark.asyncio
async def test_payment_against_missing_invoice(adapter):
    with pytest.raises(EntityNotFoundError):
        await adapter.create_payment(ACME, {"invoice": {"invoice_id": "inv-404"},
                                            "account": {"account_id": "acc-au-090"}, "amount": 1})


@pytest.mark.asyncio
async def test_update_status(adapter):
    updated = await adapter.update_status(ACME, EntityType.QUOTE, "quote-001", "SENT")
    assert updated.status == "SENT"
    quotes = await adapter.get_quotes(ACME, {"status": "SENT"})
    assert {q.quote_id for q in quotes} == {"quote-001", "quote-002"}
    with pytest.raises(EntityNotFoundError):
        await adapter.update_status(ACME, EntityType.INVOICE, "inv-404", "VOIDED")


@pytest.mark.asyncio
async def test_writes_are_isolated_per_adapter(adapter):
    await adapter.create_contact(ACME, {"name": "Fresh Co"})
    assert len(await adapter.get_contacts(ACME)) == 6
    other = MockAdapter(fixtures_dir=str(adapter.fixtures_dir))
    assert len(await other.get_contacts(ACME)) == 5


def test_mock_capabilities(adapter):
    assert adapter.supports(Capability.SEED)
    with pytest.raises(CapabilityNotSupportedError) as exc:
        adapter.require(Capability.OAUTH)
    assert exc.value.capability == Capability.OAUTH
    assert "mock" in str(exc.value)


def test_create_adapter_defaults_to_mock(monkeypatch):
    monkeypatch.delenv("MCP_MODE", raising=False)
    assert create_adapter().mode == "mock"
    assert create_adapter("bogus").mode == "mock"


def _xero_invoice(invoice_id, status, amount_due=110.0):
    return SimpleNamespace(
        invoice_id=invoice_id, invoice_number=None, type="ACCREC", contact=SimpleNamespace(contact_id="c-1"),
        date="2026-10-01", due_date="2026-10-31", status=status, line_amount_types="Exclusive", line_items=[],
        currency_code="AUD", reference=None, sub_total=100.0, total_tax=10.0, total=110.0,
        amount_due=amount_due, amount_paid=110.0 - amount_due,
    )


def _xero_credit_note(credit_note_id, status, remaining_credit=50.0):
    return SimpleNamespace(
        credit_note_id=credit_note_id, credit_note_number="CN-0001", type="ACCRECCREDIT",
        contact=SimpleNamespace(contact_id="c-1"), date="2026-10-01", status=status, line_items=[],
        currency_code="AUD", total=50.0, remaining_credit=remaining_credit,
    )


@pytest.fixture
def live_api():
    api = MagicMock()
    api.get_accounts.return_value = SimpleNamespace(accounts=[
        SimpleNamespace(account_id="a-bank", code="090", name="Bank", type="BANK", tax_type=None, status="ACTIVE"),
    ])
    api.get_tax_rates.return_value = SimpleNamespace(tax_rates=[])
    api.get_contacts.return_value = SimpleNamespace(contacts=[])
    api.get_organisations.return_value = SimpleNamespace(organisations=[
        SimpleNamespace(name="Demo Co", country_code="AU", base_currency="AUD"),
    ])
    api.get_invoices.return_value = SimpleNamespace(invoices=[
        _xero_invoice("inv-auth", "AUTHORISED"),
        _xero_invoice("inv-draft", "DRAFT"),
        _xero_invoice("inv-void", "VOIDED", amount_due=0.0),
    ])
    api.get_credit_notes.return_value = SimpleNamespace(credit_notes=[
        _xero_credit_note("cn-auth", "AUTHORISED"),
        _xero_credit_note("cn-gone", "DELETED"),
    ])
    return api


@pytest.fixture
def live_adapter(connection_store, live_api, monkeypatch):
    live = LiveAdapter(connections=connection_store)
    monkeypatch.setattr(live, "_accounting_api", lambda tenant_id: live_api)
    return live


@pytest.mark.asyncio
async def test_live_snapshot_fetches_every_payable_status(live_adapter, live_api):
    snapshot = await live_adapter.get_tenant_context("t-live")
    assert set(live_api.get_invoices.call_args.kwargs["statuses"]) == {"DRAFT", "SUBMITTED", "AUTHORISED", "PAID", "VOIDED"}
    assert {i.invoice_id for i in snapshot.invoices} == {"inv-auth", "inv-draft", "inv-void"}
    assert [c.credit_note_id for c in snapshot.credit_notes] == ["cn-auth"]


@pytest.mark.asyncio
async def test_live_payment_checks_match_mock(live_adapter):
    snapshot = await live_adapter.get_tenant_context("t-live")
    draft = validate(snapshot, EntityType.PAYMENT, {"invoice": {"invoice_id": "inv-draft"},
                                                     "account": {"account_id": "a-bank"}, "amount": 10})
    assert [d.category for d in draft.diff] == [DiffCategory.DOCUMENT_STATUS]

    credit = validate(snapshot, EntityType.PAYMENT, {"credit_note": {"credit_note_id": "cn-auth"},
                                                      "account": {"account_id": "a-bank"}, "amount": 10})
    assert credit.valid


@pytest.mark.asyncio
async def test_live_lifecycle_calls_are_not_supported(live_adapter):
    with pytest.raises(CapabilityNotSupportedError) as exc:
        await live_adapter.get_quotes("t-live")
    assert exc.value.capability == Capability.LIFECYCLE
    with pytest.raises(CapabilityNotSupportedError):
        await live_adapter.update_status("t-live", EntityType.INVOICE, "inv-auth", "VOIDED")


def test_base_adapter_is_abstract():
    with pytest.raises(TypeError):
        BaseAdapter()
