import pytest

import xerodev_mcp
from tests.conftest import ACME, decode_tool_payload, invoice_payload


def _tool_inventory():
    return xerodev_mcp._list_tools_payload().get("tools", [])


def _paged_tools():
    return [t for t in _tool_inventory() if "page" in (t.get("inputSchema") or {}).get("properties", {})]


@pytest.mark.asyncio
@pytest.mark.parametrize("tool", _paged_tools(), ids=lambda t: t["name"])
async def test_paging_defaults(call_tool, tool):
    first = decode_tool_payload(await call_tool(tool["name"], {"tenant_id": ACME}))
    second = decode_tool_payload(await call_tool(tool["name"], {"tenant_id": ACME, "page": 1}))
    assert first["data"] == second["data"], f"{tool['name']} should treat omitted page as page=1"


@pytest.mark.asyncio
@pytest.mark.parametrize("tool", _paged_tools(), ids=lambda t: t["name"])
@pytest.mark.parametrize("bad_args", [{"page": 0}, {"page_size": 101}, {"page": "two"}, {"page_size": True}])
async def test_paging_bounds(call_tool, tool, bad_args):
    response = await call_tool(tool["name"], {"tenant_id": ACME, **bad_args})
    assert response["metadata"]["reason"] == "invalidArguments"


@pytest.mark.asyncio
@pytest.mark.parametrize("tool", _paged_tools(), ids=lambda t: t["name"])
async def test_page_past_the_end_is_empty(call_tool, tool):
    payload = decode_tool_payload(await call_tool(tool["name"], {"tenant_id": ACME, "page": 99}))
    listed = payload["data"].get("invoices", payload["data"].get("contacts"))
    assert listed == []
    assert payload["data"]["total_count"] > 0


@pytest.mark.asyncio
async def test_camel_case_arguments_are_accepted(call_tool):
    payload = decode_tool_payload(await call_tool("get_invoice", {"tenantId": ACME, "invoiceId": "inv-001"}))
    assert payload["data"]["invoice"]["invoice_id"] == "inv-001"


@pytest.mark.asyncio
async def test_bad_dates_fail_validation(call_tool):
    args = {"tenant_id": ACME, "entity_type": "Invoice", "payload": invoice_payload(date="2026-13-40")}
    response = await call_tool("validate_schema_match", args)
    payload = decode_tool_payload(response)
    assert response["metadata"]["reason"] == "validationFailed"
    assert payload["data"]["diff"][0]["field"] == "date"


@pytest.mark.asyncio
async def test_due_date_before_issue_date(call_tool):
    args = {"tenant_id": ACME, "entity_type": "Invoice",
            "payload": invoice_payload(date="2026-10-10", due_date="2026-10-01")}
    payload = decode_tool_payload(await call_tool("validate_schema_match", args))
    assert payload["data"]["diff"][0]["field"] == "due_date"


@pytest.mark.asyncio
async def test_verbosity_is_case_insensitive(call_tool):
    payload = decode_tool_payload(await call_tool("get_mcp_capabilities", {"verbosity": "SILENT"}))
    assert set(payload) == {"success", "data"}


@pytest.mark.asyncio
async def test_unknown_verbosity_uses_tool_default(call_tool):
    payload = decode_tool_payload(await call_tool("get_contact", {"tenant_id": ACME, "contact_id": "contact-001",
                                                                  "verbosity": "shouty"}))
    assert "meta" in payload and "diagnostics" not in payload


def test_normalize_payload_expands_flat_ids():
    payload = xerodev_mcp._normalize_payload({
        "tenant_id": ACME,
        "verbosity": "debug",
        "idempotency_key": "k",
        "invoice_id": "inv-001",
        "account_id": "acc-au-090",
        "amount": 10,
    })
    assert payload == {"invoice": {"invoice_id": "inv-001"}, "account": {"account_id": "acc-au-090"}, "amount": 10}


def test_normalize_payload_keeps_explicit_refs():
    payload = xerodev_mcp._normalize_payload({"contact": {"contact_id": "a"}, "contact_id": "b"})
    assert payload["contact"] == {"contact_id": "a"}


def test_bank_account_shorthand():
    payload = xerodev_mcp._normalize_payload({"bank_account_id": "acc-au-090"})
    assert payload == {"bank_account": {"account_id": "acc-au-090"}}


@pytest.mark.parametrize("raw,expected", [("true", True), ("No", False), (None, None), (1, True)])
def test_bool_arg(raw, expected):
    assert xerodev_mcp._bool_arg({"flag": raw}, "flag") is expected
