import json
import random
import sys
from pathlib import Path
from typing import Any, Callable, Dict, List, Union

import pytest
import pytest_asyncio
from cryptography.fernet import Fernet

sys.path.append(str(Path(__file__).resolve().parents[1]))

import xerodev_mcp
from adapters import MockAdapter
from connections import ConnectionStore, XeroOAuthClient
from models import TenantSnapshot
from simulation import NetworkSimulator
from stores import AuditLog, InMemoryIdempotencyStore
from validation import ValidationEngine

ROOT_DIR = Path(__file__).resolve().parents[1]
TENANT_DIR = ROOT_DIR / "fixtures" / "tenants"

ACME = "acme-au-001"
UK = "company-uk-001"
US = "startup-us-001"


def load_tenant(tenant_id: str) -> Dict[str, Any]:
    return json.loads((TENANT_DIR / f"{tenant_id}.json").read_text(encoding="utf-8"))


def decode_tool_payload(response: Dict[str, Any]) -> Union[Dict[str, Any], List[Any]]:
    """Parse the JSON envelope carried in an MCP tool result."""
    if not isinstance(response, dict):
        return {"error": "unexpected-response", "raw": response}

    content = response.get("content") or []
    text = None
    if content and isinstance(content, list) and isinstance(content[0], dict):
        text = content[0].get("text")
    if text is None:
        return {"error": "missing-content"}
    try:
        payload = json.loads(text)
    except ValueError:
        return {"raw": text}
    return payload


def invoice_payload(**overrides) -> Dict[str, Any]:
    payload = {
        "type": "ACCREC",
        "contact": {"contact_id": "contact-001"},
        "date": "2026-10-01",
        "due_date": "2026-10-31",
        "line_amount_types": "Exclusive",
        "line_items": [
            {"description": "Consulting", "quantity": 1, "unit_amount": 100.0, "account_code": "200", "tax_type": "OUTPUT"}
        ],
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def snapshot() -> TenantSnapshot:
    return TenantSnapshot(**load_tenant(ACME))


@pytest.fixture
def adapter() -> MockAdapter:
    return MockAdapter(fixtures_dir=str(ROOT_DIR / "fixtures"))


@pytest.fixture
def connection_store(tmp_path) -> ConnectionStore:
    return ConnectionStore(path=str(tmp_path / "connections.enc"), enc_key=Fernet.generate_key())


@pytest.fixture
def server(adapter, connection_store) -> xerodev_mcp.ToolServer:
    return xerodev_mcp.ToolServer(
        adapter=adapter,
        idempotency=InMemoryIdempotencyStore(),
        audit=AuditLog(),
        simulator=NetworkSimulator(rng=random.Random(7)),
        engine=ValidationEngine("warn"),
        connections=connection_store,
        oauth_client=XeroOAuthClient(client_id="test-client", client_secret="test-secret",
                                     redirect_uri="http://localhost:8000/xerodev/callback"),
    )


@pytest.fixture
def installed_server(server, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(xerodev_mcp, "_server", server)
    return server


@pytest_asyncio.fixture
async def call_tool(installed_server) -> Callable[[str, Dict[str, Any]], Any]:
    async def _call(name: str, args: Dict[str, Any]):
        result = xerodev_mcp.handle_tool_call(name, args)
        if hasattr(result, "__await__"):
            return await result
        return result

    return _call
