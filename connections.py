import os
import json
import time
import base64
import hashlib
import secrets
import requests
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlencode

from cryptography.fernet import Fernet, InvalidToken

from utils import logger, safe_dumps

# Environment variables
XERO_CLIENT_ID = os.environ.get("XERO_CLIENT_ID")
XERO_CLIENT_SECRET = os.environ.get("XERO_CLIENT_SECRET")
XERO_REDIRECT_URI = os.environ.get("XERO_REDIRECT_URI", "http://localhost:8000/xerodev/callback")

# Encryption setup
TOKEN_ENC_KEY = os.environ.get("TOKEN_ENC_KEY")
TOKEN_STORE_PATH = os.environ.get("TOKEN_STORE_PATH", ".xerodev_connections.enc")

XERO_AUTHORIZE_URL = "https://login.xero.com/identity/connect/authorize"
XERO_TOKEN_URL = "https://identity.xero.com/connect/token"
XERO_REVOKE_URL = "https://identity.xero.com/connect/revocation"
XERO_CONNECTIONS_URL = "https://api.xero.com/connections"

DEFAULT_SCOPES = [
    "openid",
    "profile",
    "email",
    "offline_access",
    "accounting.transactions",
    "accounting.contacts",
    "accounting.settings",
]
STATE_TTL_SECONDS = 600


class OAuthError(Exception):
    pass


def _b64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


class OAuthStateStore:
    """One-time CSRF state and PKCE verifiers for pending authorizations."""

    def __init__(self, ttl_seconds: int = STATE_TTL_SECONDS):
        self.ttl_seconds = ttl_seconds
        self._states: Dict[str, Dict[str, Any]] = {}

    def generate(self, scopes: List[str]) -> Tuple[str, str, str]:
        self._cleanup()
        state = secrets.token_urlsafe(32)
        code_verifier = secrets.token_urlsafe(32)
        code_challenge = _b64url(hashlib.sha256(code_verifier.encode("ascii")).digest())
        self._states[state] = {
            "scopes": list(scopes),
            "code_verifier": code_verifier,
            "created_at": time.time(),
        }
        return state, code_verifier, code_challenge

    def consume(self, state: str) -> Optional[Dict[str, Any]]:
        entry = self._states.pop(state, None)
        if entry is None:
            return None
        if time.time() - entry["created_at"] > self.ttl_seconds:
            return None
        return entry

    def pending_count(self) -> int:
        self._cleanup()
        return len(self._states)

    def _cleanup(self):
        now = time.time()
        for key in [k for k, v in self._states.items() if now - v["created_at"] > self.ttl_seconds]:
            self._states.pop(key, None)


def build_authorization_url(state: str, code_challenge: str, scopes: List[str],
                            client_id: Optional[str] = None, redirect_uri: Optional[str] = None) -> str:
    params = {
        "response_type": "code",
        "client_id": client_id or XERO_CLIENT_ID,
        "redirect_uri": redirect_uri or XERO_REDIRECT_URI,
        "scope": " ".join(scopes),
        "state": state,
        "code_challenge": code_challenge,
        "code_challenge_method": "S256",
    }
    return f"{XERO_AUTHORIZE_URL}?{urlencode(params)}"


def _with_expiry(tokens: Dict[str, Any]) -> Dict[str, Any]:
    if tokens and "expires_at" not in tokens and "expires_in" in tokens:
        tokens = {**tokens, "expires_at": int(time.time()) + int(tokens["expires_in"]) - 60}
    return tokens


class XeroOAuthClient:
    """Token endpoint calls for the authorization-code flow."""

    def __init__(self, client_id: Optional[str] = None, client_secret: Optional[str] = None,
                 redirect_uri: Optional[str] = None, timeout: int = 10):
        self.client_id = client_id or XERO_CLIENT_ID
        self.client_secret = client_secret or XERO_CLIENT_SECRET
        self.redirect_uri = redirect_uri or XERO_REDIRECT_URI
        self.timeout = timeout

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.client_secret)

    def _auth(self):
        return requests.auth.HTTPBasicAuth(self.client_id, self.client_secret)

    def _post_token(self, data: Dict[str, Any]) -> Dict[str, Any]:
        response = requests.post(XERO_TOKEN_URL, data=data, auth=self._auth(), timeout=self.timeout)
        if response.status_code != 200:
            raise OAuthError(f"Token endpoint returned {response.status_code}: {response.text[:200]}")
        return _with_expiry(response.json())

    def exchange_code(self, code: str, code_verifier: str) -> Dict[str, Any]:
        return self._post_token({
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.redirect_uri,
            "code_verifier": code_verifier,
        })

    def refresh(self, refresh_token: str) -> Dict[str, Any]:
        return self._post_token({"grant_type": "refresh_token", "refresh_token": refresh_token})

    def revoke(self, refresh_token: str) -> None:
        response = requests.post(XERO_REVOKE_URL, data={"token": refresh_token}, auth=self._auth(), timeout=self.timeout)
        if response.status_code not in (200, 204):
            raise OAuthError(f"Revocation endpoint returned {response.status_code}")

    def get_connections(self, access_token: str) -> List[Dict[str, Any]]:
        response = requests.get(
            XERO_CONNECTIONS_URL,
            headers={"Authorization": f"Bearer {access_token}", "Accept": "application/json"},
            timeout=self.timeout,
        )
        response.raise_for_status()
        return response.json() or []


class ConnectionStore:
    """Tenant connections and their tokens, kept in a Fernet-encrypted JSON file."""

    def __init__(self, path: Optional[str] = None, enc_key: Optional[str] = None):
        self.path = path or TOKEN_STORE_PATH
        key = enc_key if enc_key is not None else TOKEN_ENC_KEY
        if not key:
            logger.warning("TOKEN_ENC_KEY not set; connection tokens will not be encrypted!")
        self.fernet = Fernet(key) if key else None

    def _encrypt(self, data: bytes) -> bytes:
        return self.fernet.encrypt(data) if self.fernet else data

    def _decrypt(self, encrypted: bytes) -> bytes:
        if not self.fernet:
            return encrypted
        try:
            return self.fernet.decrypt(encrypted)
        except InvalidToken:
            raise ValueError("Invalid encryption key or corrupted connection store")

    def _load(self) -> Dict[str, Dict[str, Any]]:
        if not os.path.exists(self.path):
            return {}
        with open(self.path, "rb") as f:
            encrypted = f.read()
        if not encrypted:
            return {}
        return json.loads(self._decrypt(encrypted))

    def _save(self, records: Dict[str, Dict[str, Any]]):
        with open(self.path, "wb") as f:
            f.write(self._encrypt(safe_dumps(records).encode("utf-8")))

    def upsert(self, tenant_id: str, tenant_name: str, tokens: Dict[str, Any], scopes: List[str],
               xero_region: Optional[str] = None) -> Dict[str, Any]:
        records = self._load()
        now = int(time.time())
        record = records.get(tenant_id, {"created_at": now})
        record.update({
            "tenant_id": tenant_id,
            "tenant_name": tenant_name,
            "connection_status": "active",
            "xero_region": xero_region,
            "granted_scopes": list(scopes),
            "tokens": _with_expiry(tokens),
            "last_synced_at": now,
        })
        records[tenant_id] = record
        self._save(records)
        return record

    def get(self, tenant_id: str) -> Optional[Dict[str, Any]]:
        return self._load().get(tenant_id)

    def list(self, include_inactive: bool = False) -> List[Dict[str, Any]]:
        records = sorted(self._load().values(), key=lambda r: r.get("created_at", 0))
        if include_inactive:
            return records
        return [r for r in records if r.get("connection_status") == "active"]

    def update_tokens(self, tenant_id: str, tokens: Dict[str, Any]) -> Dict[str, Any]:
        records = self._load()
        if tenant_id not in records:
            raise KeyError(tenant_id)
        records[tenant_id]["tokens"] = _with_expiry(tokens)
        records[tenant_id]["connection_status"] = "active"
        records[tenant_id]["last_synced_at"] = int(time.time())
        self._save(records)
        return records[tenant_id]

    def set_status(self, tenant_id: str, status: str) -> Dict[str, Any]:
        records = self._load()
        if tenant_id not in records:
            raise KeyError(tenant_id)
        records[tenant_id]["connection_status"] = status
        self._save(records)
        return records[tenant_id]

    @staticmethod
    def is_expired(record: Dict[str, Any]) -> bool:
        expires_at = (record.get("tokens") or {}).get("expires_at")
        return bool(expires_at) and int(expires_at) <= int(time.time())
