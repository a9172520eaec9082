import pytest

import xerodev_mcp
from tests.conftest import ACME, UK, decode_tool_payload, invoice_payload


async def _envelope(call_tool, name, args):
    response = await call_tool(name, args)
    return response, decode_tool_payload(response)


@pytest.mark.asyncio
async def test_capabilities_lists_tenants_and_workflow(call_tool):
    response, envelope = await _envelope(call_tool, "get_mcp_capabilities", {})
    assert not response.get("isError")
    data = envelope["data"]
    assert data["server"]["mode"] == "mock"
    assert data["server"]["tool_count"] == 25
    assert "oauth" not in data["server"]["capabilities"]
    assert {t["tenant_id"] for t in data["available_tenants"]} == {"acme-au-001", "company-uk-001", "startup-us-001"}
    assert data["rate_limits"]["mode"] == "unlimited"
    assert any("validate_schema_match" in step for step in data["guidelines"]["workflow"])


@pytest.mark.asyncio
async def test_capabilities_without_tenants(call_tool):
    _, envelope = await _envelope(call_tool, "get_mcp_capabilities", {"include_tenants": False})
    assert "available_tenants" not in envelope["data"]


@pytest.mark.asyncio
async def test_switch_tenant_sets_default_tenant(call_tool, installed_server):
    _, envelope = await _envelope(call_tool, "switch_tenant_context", {"tenant_id": UK})
    assert envelope["success"]
    assert envelope["data"]["currency"] == "GBP"
    assert installed_server.current_tenant_id == UK

    _, introspected = await _envelope(call_tool, "introspect_enums", {"entity_type": "TaxRate"})
    assert introspected["data"]["tenant_region"] == "UK"


@pytest.mark.asyncio
async def test_unknown_tenant_points_to_capabilities(call_tool):
    response, envelope = await _envelope(call_tool, "switch_tenant_context", {"tenant_id": "nope-001"})
    assert response["isError"]
    assert response["metadata"]["reason"] == "tenantNotFound"
    assert response["httpStatus"] == 404
    assert envelope["recovery"]["suggested_action_id"] == "list_tenants"
    assert envelope["recovery"]["next_tool_call"]["name"] == "get_mcp_capabilities"


@pytest.mark.asyncio
async def test_missing_tenant_argument(call_tool):
    response, envelope = await _envelope(call_tool, "list_invoices", {})
    assert response["metadata"]["reason"] == "invalidArguments"
    assert response["httpStatus"] == 400
    assert envelope["success"] is False


@pytest.mark.asyncio
async def test_validate_then_follow_recovery(call_tool):
    bad = invoice_payload(line_items=[
        {"description": "Legacy", "quantity": 2, "unit_amount": 50, "account_code": "999", "tax_type": "OUTPUT"}
    ])
    response, envelope = await _envelope(
        call_tool, "validate_schema_match", {"tenant_id": ACME, "entity_type": "Invoice", "payload": bad})
    assert response["isError"]
    assert response["metadata"]["reason"] == "validationFailed"
    assert response["httpStatus"] == 200
    assert envelope["data"]["valid"] is False
    assert envelope["meta"]["score"] == 0.8
    assert "ARCHIVED" in envelope["diagnostics"]["narrative"]
    next_call = envelope["recovery"]["next_tool_call"]
    assert next_call["name"] == "introspect_enums"

    _, accounts = await _envelope(call_tool, next_call["name"], next_call["arguments"])
    codes = [v["code"] for v in accounts["data"]["values"]]
    assert "999" not in codes and "200" in codes

    fixed = invoice_payload(line_items=[dict(bad["line_items"][0], account_code=codes[0])])
    response, envelope = await _envelope(
        call_tool, "validate_schema_match", {"tenant_id": ACME, "entity_type": "Invoice", "payload": fixed})
    assert not response.get("isError")
    assert envelope["data"]["valid"] is True
    assert envelope["meta"]["score"] == 1.0


@pytest.mark.asyncio
async def test_validate_rejects_unknown_entity_type(call_tool):
    response, _ = await _envelope(
        call_tool, "validate_schema_match", {"tenant_id": ACME, "entity_type": "Widget", "payload": {}})
    assert response["metadata"]["reason"] == "invalidArguments"


@pytest.mark.asyncio
async def test_introspect_defaults_to_compact(call_tool):
    _, envelope = await _envelope(call_tool, "introspect_enums", {"tenant_id": ACME, "entity_type": "Account",
                                                                  "filter": {"type": "BANK"}})
    assert "meta" in envelope and "diagnostics" not in envelope
    assert envelope["data"]["count"] == 2


@pytest.mark.asyncio
async def test_silent_verbosity(call_tool):
    _, envelope = await _envelope(call_tool, "get_mcp_capabilities", {"verbosity": "silent"})
    assert set(envelope) == {"success", "data"}


@pytest.mark.asyncio
async def test_silent_verbosity_on_validation_failure(call_tool):
    bad = invoice_payload(line_items=[{"description": "Legacy", "quantity": 1, "unit_amount": 50, "account_code": "999"}])
    response, envelope = await _envelope(call_tool, "validate_schema_match", {
        "tenant_id": ACME, "entity_type": "Invoice", "payload": bad, "verbosity": "silent"})
    assert response["metadata"]["reason"] == "validationFailed"
    assert set(envelope) == {"success", "data"}
    assert envelope["success"] is False
    assert envelope["data"]["valid"] is False
    assert envelope["data"]["diff"]


@pytest.mark.asyncio
async def test_create_invoice_with_flat_contact_id(call_tool):
    args = invoice_payload(tenant_id=ACME)
    args.pop("contact")
    args["contact_id"] = "contact-002"
    response, envelope = await _envelope(call_tool, "create_invoice", args)
    assert not response.get("isError")
    invoice = envelope["data"]["invoice"]
    assert invoice["contact"] == {"contact_id": "contact-002"}
    assert invoice["total"] == 110.0
    assert invoice["amount_due"] == 110.0
    assert invoice["status"] == "DRAFT"

    _, fetched = await _envelope(call_tool, "get_invoice", {"tenant_id": ACME, "invoice_id": invoice["invoice_id"]})
    assert fetched["data"]["invoice"]["invoice_number"] == invoice["invoice_number"]


@pytest.mark.asyncio
async def test_create_invoice_validation_failure_does_not_write(call_tool):
    args = invoice_payload(tenant_id=ACME, line_items=[
        {"description": "x", "quantity": 1, "unit_amount": 1, "account_code": "200", "tax_type": "VAT20"}
    ])
    response, envelope = await _envelope(call_tool, "create_invoice", args)
    assert response["metadata"]["reason"] == "validationFailed"
    assert envelope["recovery"]["suggested_action_id"] == "find_valid_tax_types"

    _, listed = await _envelope(call_tool, "list_invoices", {"tenant_id": ACME})
    assert listed["data"]["total_count"] == 4


@pytest.mark.asyncio
async def test_idempotent_contact_creation(call_tool):
    args = {"tenant_id": ACME, "name": "Blue Harbour Ltd", "email": "hi@blueharbour.com", "idempotency_key": "k-1"}
    _, first = await _envelope(call_tool, "create_contact", args)
    _, second = await _envelope(call_tool, "create_contact", args)
    assert first["data"]["contact"]["contact_id"] == second["data"]["contact"]["contact_id"]
    assert second["data"]["idempotent_replay"] is True
    assert "idempotent_replay" not in first["data"]

    _, listed = await _envelope(call_tool, "list_contacts", {"tenant_id": ACME, "search": "blue harbour"})
    assert listed["data"]["total_count"] == 1


@pytest.mark.asyncio
async def test_payment_over_balance_suggests_balance_check(call_tool):
    args = {"tenant_id": ACME, "invoice_id": "inv-001", "account_id": "acc-au-090", "amount": 5000}
    response, envelope = await _envelope(call_tool, "create_payment", args)
    assert response["isError"]
    assert envelope["recovery"]["suggested_action_id"] == "check_outstanding_balance"
    assert envelope["recovery"]["next_tool_call"] == {
        "name": "get_invoice", "arguments": {"tenant_id": ACME, "invoice_id": "inv-001"}}


@pytest.mark.asyncio
async def test_partial_payment_updates_invoice(call_tool):
    args = {"tenant_id": ACME, "invoice_id": "inv-001", "account_id": "acc-au-090", "amount": 100}
    response, envelope = await _envelope(call_tool, "create_payment", args)
    assert not response.get("isError")
    assert envelope["data"]["payment"]["amount"] == 100.0

    _, fetched = await _envelope(call_tool, "get_invoice", {"tenant_id": ACME, "invoice_id": "inv-001"})
    assert fetched["data"]["invoice"]["amount_due"] == 1000.0
    assert fetched["data"]["invoice"]["status"] == "AUTHORISED"


@pytest.mark.asyncio
async def test_create_quote_credit_note_and_bank_transaction(call_tool):
    quote_args = invoice_payload(tenant_id=ACME, title="Fit-out")
    quote_args.pop("type")
    quote_args.pop("due_date")
    _, quote = await _envelope(call_tool, "create_quote", quote_args)
    assert quote["data"]["quote"]["status"] == "DRAFT"

    note_args = invoice_payload(tenant_id=ACME, type="ACCRECCREDIT")
    note_args.pop("due_date")
    _, note = await _envelope(call_tool, "create_credit_note", note_args)
    assert note["data"]["credit_note"]["remaining_credit"] == 110.0

    txn_args = {
        "tenant_id": ACME,
        "type": "RECEIVE",
        "bank_account_id": "acc-au-090",
        "line_amount_types": "Inclusive",
        "line_items": [{"description": "Cash sale", "quantity": 1, "unit_amount": 110, "account_code": "200",
                        "tax_type": "OUTPUT"}],
    }
    response, txn = await _envelope(call_tool, "create_bank_transaction", txn_args)
    assert not response.get("isError")
    assert txn["data"]["bank_transaction"]["sub_total"] == 100.0
    assert txn["data"]["bank_transaction"]["total_tax"] == 10.0


@pytest.mark.asyncio
async def test_rate_limit_simulation_blocks_writes_until_cleared(call_tool):
    _, sim = await _envelope(call_tool, "simulate_network_conditions",
                             {"tenant_id": ACME, "condition": "RATE_LIMIT", "duration_seconds": 60})
    assert sim["data"]["active"] is True

    args = {"tenant_id": ACME, "name": "Throttled Pty Ltd"}
    response, envelope = await _envelope(call_tool, "create_contact", args)
    assert response["isError"]
    assert response["httpStatus"] == 429
    assert response["metadata"]["reason"] == "simulatedFault"
    assert envelope["data"]["retry_after"] == 60
    next_call = envelope["recovery"]["next_tool_call"]
    assert envelope["recovery"]["suggested_action_id"] == "clear_simulation"

    _, cleared = await _envelope(call_tool, next_call["name"], next_call["arguments"])
    assert cleared["data"]["active"] is False

    response, _ = await _envelope(call_tool, "create_contact", args)
    assert not response.get("isError")


@pytest.mark.asyncio
async def test_simulation_requires_condition(call_tool):
    response, _ = await _envelope(call_tool, "simulate_network_conditions", {"tenant_id": ACME})
    assert response["metadata"]["reason"] == "invalidArguments"


@pytest.mark.asyncio
async def test_drive_invoice_to_paid(call_tool):
    args = {"tenant_id": ACME, "entity_type": "Invoice", "entity_id": "inv-002", "target_state": "PAID",
            "payment_amount": 990, "payment_account_id": "acc-au-090"}
    response, envelope = await _envelope(call_tool, "drive_lifecycle", args)
    assert not response.get("isError")
    data = envelope["data"]
    assert data["transition_path"] == ["DRAFT", "AUTHORISED", "PAID"]
    assert data["previous_state"] == "DRAFT"
    assert data["new_state"] == "PAID"
    assert data["payment_created"]["amount"] == 990.0

    _, fetched = await _envelope(call_tool, "get_invoice", {"tenant_id": ACME, "invoice_id": "inv-002"})
    assert fetched["data"]["invoice"]["status"] == "PAID"
    assert fetched["data"]["invoice"]["amount_due"] == 0.0


@pytest.mark.asyncio
async def test_drive_to_paid_needs_payment_amount(call_tool):
    args = {"tenant_id": ACME, "entity_type": "Invoice", "entity_id": "inv-001", "target_state": "PAID"}
    response, envelope = await _envelope(call_tool, "drive_lifecycle", args)
    assert response["metadata"]["reason"] == "missingPaymentDetails"
    assert envelope["recovery"]["suggested_action_id"] == "provide_payment_details"


@pytest.mark.asyncio
async def test_drive_to_paid_needs_payment_account(call_tool):
    args = {"tenant_id": ACME, "entity_type": "Invoice", "entity_id": "inv-001", "target_state": "PAID",
            "payment_amount": 1100}
    _, envelope = await _envelope(call_tool, "drive_lifecycle", args)
    assert envelope["recovery"]["suggested_action_id"] == "find_bank_accounts"
    assert envelope["recovery"]["next_tool_call"]["arguments"]["filter"] == {"type": "BANK", "status": "ACTIVE"}


@pytest.mark.asyncio
async def test_drive_rejects_impossible_transition(call_tool):
    args = {"tenant_id": ACME, "entity_type": "Invoice", "entity_id": "inv-003", "target_state": "DRAFT"}
    response, envelope = await _envelope(call_tool, "drive_lifecycle", args)
    assert response["metadata"]["reason"] == "invalidTransition"
    assert response["httpStatus"] == 409
    assert envelope["data"]["allowed_transitions"] == []


@pytest.mark.asyncio
async def test_drive_already_in_target_state(call_tool):
    args = {"tenant_id": ACME, "entity_type": "Invoice", "entity_id": "inv-001", "target_state": "AUTHORISED"}
    _, envelope = await _envelope(call_tool, "drive_lifecycle", args)
    assert envelope["success"]
    assert envelope["data"]["transition_path"] == ["AUTHORISED"]


@pytest.mark.asyncio
async def test_drive_quote_to_invoiced_creates_invoice(call_tool):
    args = {"tenant_id": ACME, "entity_type": "Quote", "entity_id": "quote-002", "target_state": "INVOICED"}
    response, envelope = await _envelope(call_tool, "drive_lifecycle", args)
    assert not response.get("isError")
    assert envelope["data"]["transition_path"] == ["SENT", "ACCEPTED", "INVOICED"]
    invoice = envelope["data"]["invoice_created"]
    assert invoice["total"] == 1584.0
    assert invoice["reference"] == "QU-0002"


@pytest.mark.asyncio
async def test_drive_unknown_invoice(call_tool):
    args = {"tenant_id": ACME, "entity_type": "Invoice", "entity_id": "inv-404", "target_state": "VOIDED"}
    response, envelope = await _envelope(call_tool, "drive_lifecycle", args)
    assert response["metadata"]["reason"] == "notFound"
    assert envelope["recovery"]["next_tool_call"]["name"] == "list_invoices"


@pytest.mark.asyncio
async def test_dry_run_reports_failures_only(call_tool):
    good = invoice_payload()
    bad = invoice_payload(line_items=[
        {"description": "x", "quantity": 1, "unit_amount": 10, "account_code": "999"}
    ])
    response, envelope = await _envelope(
        call_tool, "dry_run_sync", {"tenant_id": ACME, "operation": "create_invoices", "payloads": [good, bad]})
    assert response["isError"]
    assert response["metadata"]["reason"] == "dryRunFailures"
    data = envelope["data"]
    assert data["would_succeed"] == 1
    assert data["would_fail"] == 1
    assert data["success_rate"] == 0.5
    assert [r["index"] for r in data["results"]] == [1]
    assert data["issues_summary"] == ["line_items[0].account_code: 1 occurrence(s)"]
    assert data["estimated_total_amount"] == 110.0
    assert envelope["recovery"]["suggested_action_id"] == "fix_payloads"


@pytest.mark.asyncio
async def test_dry_run_all_valid(call_tool):
    payloads = [{"name": "One Ltd"}, {"name": "Two Ltd"}]
    response, envelope = await _envelope(
        call_tool, "dry_run_sync",
        {"tenant_id": ACME, "operation": "create_contacts", "payloads": payloads, "verbosity": "debug"})
    assert not response.get("isError")
    assert envelope["data"]["success_rate"] == 1.0
    assert len(envelope["data"]["results"]) == 2


@pytest.mark.asyncio
async def test_dry_run_batch_limit(call_tool):
    response, _ = await _envelope(
        call_tool, "dry_run_sync",
        {"tenant_id": ACME, "operation": "create_contacts", "payloads": [{"name": "x"}] * 51})
    assert response["metadata"]["reason"] == "invalidArguments"


@pytest.mark.asyncio
async def test_seed_sandbox_data(call_tool):
    args = {"tenant_id": ACME, "entity": "CONTACTS", "count": 5}
    _, envelope = await _envelope(call_tool, "seed_sandbox_data", args)
    data = envelope["data"]
    assert data["count"] == 5
    assert len(data["generated"]) == 3
    assert len(data["sample_ids"]) == 5

    _, again = await _envelope(call_tool, "seed_sandbox_data", args)
    assert again["data"]["sample_ids"] == data["sample_ids"]


@pytest.mark.asyncio
async def test_replay_idempotency(call_tool):
    args = {"tenant_id": ACME, "operation": "create_invoice", "replay_count": 4, "idempotency_key": "replay-1"}
    response, envelope = await _envelope(call_tool, "replay_idempotency", args)
    assert not response.get("isError")
    data = envelope["data"]
    assert data["idempotency_maintained"] is True
    assert len(data["unique_result_ids"]) == 1
    assert data["unique_result_ids"][0].startswith("invoice-")
    assert len(data["attempts"]) == 3
    assert data["summary"] == {"total_attempts": 4, "cached_responses": 3, "new_creations": 1}


@pytest.mark.asyncio
async def test_audit_log_records_calls(call_tool):
    await call_tool("get_mcp_capabilities", {})
    await call_tool("switch_tenant_context", {"tenant_id": "missing"})
    await call_tool("list_invoices", {"tenant_id": ACME})
    _, envelope = await _envelope(call_tool, "get_audit_log", {"limit": 2})
    data = envelope["data"]
    assert [e["tool_name"] for e in data["entries"]] == ["list_invoices", "switch_tenant_context"]
    assert data["pagination"] == {"limit": 2, "offset": 0, "total": 3, "has_more": True}
    assert data["stats"]["failed"] == 1

    _, failures = await _envelope(call_tool, "get_audit_log", {"success": False, "include_stats": False})
    assert failures["data"]["entries"][0]["error"]
    assert "stats" not in failures["data"]


@pytest.mark.asyncio
async def test_audit_log_limit_is_bounded(call_tool):
    response, _ = await _envelope(call_tool, "get_audit_log", {"limit": 500})
    assert response["metadata"]["reason"] == "invalidArguments"


@pytest.mark.asyncio
async def test_list_invoices_filters_and_pages(call_tool):
    _, envelope = await _envelope(call_tool, "list_invoices",
                                  {"tenant_id": ACME, "status": "AUTHORISED", "page_size": 1})
    data = envelope["data"]
    assert data["total_count"] == 2
    assert data["total_pages"] == 2
    assert len(data["invoices"]) == 1
    assert data["filters_applied"] == ["status=AUTHORISED"]


@pytest.mark.asyncio
async def test_get_contact_not_found(call_tool):
    response, envelope = await _envelope(
        call_tool, "get_contact", {"tenant_id": ACME, "contact_id": "contact-404", "verbosity": "diagnostic"})
    assert response["httpStatus"] == 404
    assert envelope["recovery"]["next_tool_call"] == {"name": "list_contacts", "arguments": {"tenant_id": ACME}}


@pytest.mark.asyncio
async def test_oauth_tools_need_live_mode(call_tool):
    response, envelope = await _envelope(call_tool, "get_authorization_url", {})
    assert response["metadata"]["reason"] == "notSupported"
    assert response["httpStatus"] == 501
    assert envelope["recovery"]["suggested_action_id"] == "use_mock_mode"

    _, listed = await _envelope(call_tool, "list_connections", {})
    assert listed["recovery"]["suggested_action_id"] == "use_mock_capabilities"


@pytest.mark.asyncio
async def test_tool_aliases(call_tool):
    response = await call_tool("xerodev.get_mcp_capabilities", {})
    assert not response.get("isError")


@pytest.mark.asyncio
async def test_unknown_tool(call_tool):
    response = await call_tool("delete_everything", {})
    assert response["isError"]
    assert response["metadata"]["reason"] == "unknownTool"


@pytest.mark.asyncio
async def test_unexpected_errors_are_contained(call_tool, installed_server, monkeypatch):
    async def _boom(tenant_id):
        raise RuntimeError("disk on fire")

    monkeypatch.setattr(installed_server.adapter, "get_tenant_context", _boom)
    response, envelope = await _envelope(call_tool, "switch_tenant_context", {"tenant_id": ACME})
    assert response["metadata"]["reason"] == "exception"
    assert response["httpStatus"] == 500
    assert envelope["diagnostics"]["root_cause"] == "RuntimeError: disk on fire"


def test_default_server_is_lazy(monkeypatch):
    monkeypatch.setattr(xerodev_mcp, "_server", None)
    monkeypatch.setenv("MCP_MODE", "mock")
    server = xerodev_mcp.get_server()
    assert server is xerodev_mcp.get_server()
    assert server.adapter.mode == "mock"
