from unittest.mock import MagicMock
from urllib.parse import parse_qs, urlparse

import pytest

import xerodev_mcp
from adapters import Capability, MockAdapter
from connections import OAuthError
from stores import AuditLog, InMemoryIdempotencyStore
from tests.conftest import ROOT_DIR, decode_tool_payload


class OAuthMockAdapter(MockAdapter):
    capabilities = MockAdapter.capabilities | {Capability.OAUTH}


@pytest.fixture
def oauth_client():
    client = MagicMock()
    client.configured = True
    client.client_id = "test-client"
    client.redirect_uri = "http://localhost:8000/xerodev/callback"
    client.exchange_code.return_value = {"access_token": "at-1", "refresh_token": "rt-1", "expires_in": 1800}
    client.get_connections.return_value = [
        {"tenantId": "xero-tenant-1", "tenantName": "Demo Company (AU)", "tenantType": "ORGANISATION"}
    ]
    client.refresh.return_value = {"access_token": "at-2", "refresh_token": "rt-2", "expires_in": 1800}
    client.revoke.side_effect = OAuthError("Revocation endpoint returned 503")
    return client


@pytest.fixture
def oauth_server(connection_store, oauth_client, monkeypatch):
    server = xerodev_mcp.ToolServer(
        adapter=OAuthMockAdapter(fixtures_dir=str(ROOT_DIR / "fixtures")),
        idempotency=InMemoryIdempotencyStore(),
        audit=AuditLog(),
        connections=connection_store,
        oauth_client=oauth_client,
    )
    monkeypatch.setattr(xerodev_mcp, "_server", server)
    return server


async def _call(name, args):
    response = await xerodev_mcp.handle_tool_call(name, args)
    return response, decode_tool_payload(response)


async def _authorize():
    _, envelope = await _call("get_authorization_url", {})
    return envelope["data"]


@pytest.mark.asyncio
async def test_authorization_url_uses_pkce(oauth_server):
    data = await _authorize()
    query = parse_qs(urlparse(data["authorization_url"]).query)
    assert query["client_id"] == ["test-client"]
    assert query["code_challenge_method"] == ["S256"]
    assert query["state"] == [data["state"]]
    assert "offline_access" in query["scope"][0].split()
    assert oauth_server.oauth_states.pending_count() == 1


@pytest.mark.asyncio
async def test_full_connection_lifecycle(oauth_server, oauth_client):
    data = await _authorize()
    callback = f"http://localhost:8000/xerodev/callback?code=auth-code&state={data['state']}"

    response, envelope = await _call("exchange_auth_code", {"callback_url": callback})
    assert not response.get("isError")
    assert envelope["data"]["connections"] == [{"tenant_id": "xero-tenant-1", "tenant_name": "Demo Company (AU)"}]
    oauth_client.exchange_code.assert_called_once()
    assert oauth_client.exchange_code.call_args[0][0] == "auth-code"

    _, listed = await _call("list_connections", {})
    connection = listed["data"]["connections"][0]
    assert connection["connection_status"] == "active"
    assert connection["xero_region"] == "ORGANISATION"
    assert connection["created_at"].endswith("Z")

    _, refreshed = await _call("refresh_connection", {"tenant_id": "xero-tenant-1"})
    assert refreshed["data"]["refreshed"] is True
    assert refreshed["data"]["expires_at"]
    oauth_client.refresh.assert_called_once_with("rt-1")
    assert oauth_server.connections.get("xero-tenant-1")["tokens"]["access_token"] == "at-2"

    response, revoked = await _call("revoke_connection", {"tenant_id": "xero-tenant-1"})
    assert not response.get("isError")
    assert revoked["data"] == {"tenant_id": "xero-tenant-1", "revoked": True, "remote_revoked": False}
    assert revoked["diagnostics"]["warnings"]

    _, empty = await _call("list_connections", {})
    assert empty["data"]["connections"] == []
    assert empty["recovery"]["suggested_action_id"] == "start_oauth"

    _, everything = await _call("list_connections", {"include_inactive": True})
    assert everything["data"]["connections"][0]["connection_status"] == "revoked"

    response, envelope = await _call("refresh_connection", {"tenant_id": "xero-tenant-1"})
    assert response["metadata"]["reason"] == "oauthFailed"
    assert envelope["recovery"]["suggested_action_id"] == "restart_oauth"


@pytest.mark.asyncio
async def test_state_is_single_use(oauth_server):
    data = await _authorize()
    callback = f"http://localhost:8000/xerodev/callback?code=auth-code&state={data['state']}"
    first, _ = await _call("exchange_auth_code", {"callback_url": callback})
    second, envelope = await _call("exchange_auth_code", {"callback_url": callback})
    assert not first.get("isError")
    assert second["metadata"]["reason"] == "oauthFailed"
    assert "state" in envelope["data"]["error"]


@pytest.mark.asyncio
@pytest.mark.parametrize("callback,fragment", [
    ("not-a-url", "Invalid callback URL"),
    ("http://localhost:8000/xerodev/callback?error=access_denied", "access_denied"),
    ("http://localhost:8000/xerodev/callback?state=abc", "No authorization code"),
    ("http://localhost:8000/xerodev/callback?code=abc", "No state parameter"),
    ("http://localhost:8000/xerodev/callback?code=abc&state=forged", "Invalid or expired state"),
])
async def test_bad_callbacks(oauth_server, oauth_client, callback, fragment):
    response, envelope = await _call("exchange_auth_code", {"callback_url": callback})
    assert response["metadata"]["reason"] == "oauthFailed"
    assert fragment in envelope["data"]["error"]
    assert envelope["recovery"]["next_tool_call"]["name"] == "get_authorization_url"
    oauth_client.exchange_code.assert_not_called()


@pytest.mark.asyncio
async def test_rejected_code(oauth_server, oauth_client):
    oauth_client.exchange_code.side_effect = OAuthError("Token endpoint returned 400: invalid_grant")
    data = await _authorize()
    callback = f"http://localhost:8000/xerodev/callback?code=stale&state={data['state']}"
    response, envelope = await _call("exchange_auth_code", {"callback_url": callback})
    assert response["metadata"]["reason"] == "oauthFailed"
    assert "invalid_grant" in envelope["data"]["error"]
    assert oauth_server.connections.list(include_inactive=True) == []


@pytest.mark.asyncio
async def test_unconfigured_client(oauth_server, oauth_client):
    oauth_client.configured = False
    response, envelope = await _call("get_authorization_url", {})
    assert response["metadata"]["reason"] == "notConfigured"
    assert envelope["recovery"]["suggested_action_id"] == "check_credentials"


@pytest.mark.asyncio
async def test_unknown_connection(oauth_server):
    response, envelope = await _call("revoke_connection", {"tenant_id": "ghost"})
    assert response["httpStatus"] == 404
    assert response["metadata"]["reason"] == "connectionNotFound"
    assert envelope["recovery"]["next_tool_call"]["name"] == "list_connections"
