import os
import requests
from typing import Optional, Dict, Any
from fastapi import HTTPException, Request, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import jwt, JWTError

from utils import logger

# Auth0 configuration (only consulted when MCP_REQUIRE_AUTH is on)
AUTH0_DOMAIN = os.environ.get("AUTH0_DOMAIN")
AUTH0_AUDIENCE = os.environ.get("AUTH0_AUDIENCE")
AUTH0_CLIENT_ID = os.environ.get("AUTH0_CLIENT_ID")
AUTH0_JWKS_URL = os.environ.get("AUTH0_JWKS_URL")
AUTH0_ISSUER = f"https://{AUTH0_DOMAIN}/" if AUTH0_DOMAIN else None
PUBLIC_BASE_URL = os.environ.get("PUBLIC_BASE_URL", "http://localhost:8000")

JWKS_URL = AUTH0_JWKS_URL or (f"{AUTH0_ISSUER}.well-known/jwks.json" if AUTH0_ISSUER else None)
ALGORITHMS = ["RS256"]

MCP_SCOPES = ["mcp:read:xerodev", "mcp:write:xerodev"]

security = HTTPBearer(auto_error=False)
_jwks_cache = None


def auth_required() -> bool:
    return os.environ.get("MCP_REQUIRE_AUTH", "false").strip().lower() in ("1", "true", "yes")


def _validate_jwt_format(token: str, *, context: str) -> None:
    """Basic structural validation before decoding a JWT."""
    parts = token.split(".")
    if len(parts) != 3:
        logger.warning("Malformed bearer token for %s: expected 3 segments, got %s", context, len(parts))
        raise HTTPException(
            status_code=401,
            detail="Invalid token format: expected a JWT access token issued by Auth0.",
        )

def get_jwks(force_refresh: bool = False):
    """Fetch JWKS, optionally bypassing the cache when keys rotate."""
    global _jwks_cache

    if JWKS_URL is None:
        raise HTTPException(status_code=500, detail="Auth not configured")

    if _jwks_cache is None or force_refresh:
        try:
            resp = requests.get(JWKS_URL, timeout=5)
            resp.raise_for_status()
            _jwks_cache = resp.json()
            logger.info("JWKS fetched%s", " (force refresh)" if force_refresh else "")
        except requests.RequestException as e:
            logger.error(f"Failed to fetch JWKS: {e}")
            raise HTTPException(status_code=500, detail="Failed to fetch JWKS")
    return _jwks_cache

def _find_rsa_key(token: str, *, refresh_on_miss: bool = True) -> Dict[str, Any]:
    """Locate the RSA key for the token's kid, refreshing JWKS once on a miss."""
    unverified_header = jwt.get_unverified_header(token)

    def _match_key(jwks_payload):
        for key in jwks_payload.get("keys", []):
            if key.get("kid") == unverified_header.get("kid"):
                return {k: key.get(k) for k in ("kty", "kid", "use", "n", "e")}
        return None

    rsa_key = _match_key(get_jwks(force_refresh=False))
    if not rsa_key and refresh_on_miss:
        rsa_key = _match_key(get_jwks(force_refresh=True))
    return rsa_key or {}


def verify_jwt(token: str, audience: Optional[str] = None) -> Dict[str, Any]:
    audience = audience or AUTH0_AUDIENCE
    try:
        rsa_key = _find_rsa_key(token)
        if not rsa_key:
            raise HTTPException(status_code=401, detail="Invalid token: signing key not found")
        payload = jwt.decode(
            token,
            rsa_key,
            algorithms=ALGORITHMS,
            audience=audience,
            issuer=AUTH0_ISSUER,
            options={"verify_aud": bool(audience), "verify_at_hash": False},
        )
    except JWTError as e:
        logger.warning("JWT decode failed: %s", e)
        raise HTTPException(status_code=401, detail=f"Invalid token: {str(e)}")
    if not audience and AUTH0_CLIENT_ID and payload.get("azp") != AUTH0_CLIENT_ID:
        raise HTTPException(status_code=401, detail="Invalid token: audience mismatch")
    return payload

def check_permissions(payload: Dict[str, Any], required_scopes: list[str]) -> bool:
    """
    Check if the JWT payload contains at least one of the required scopes.
    Scopes can be in 'scope' (space-separated string) or 'permissions' (list).
    """
    permissions = payload.get("permissions", [])
    if isinstance(permissions, list) and any(scope in permissions for scope in required_scopes):
        return True

    scope_string = payload.get("scope", "")
    if isinstance(scope_string, str):
        scopes = scope_string.split()
        return any(scope in scopes for scope in required_scopes)
    return False


def require_mcp_auth(request: Request, creds: HTTPAuthorizationCredentials = Depends(security)):
    """Bearer auth for the MCP endpoints; a no-op unless MCP_REQUIRE_AUTH is set."""
    if not auth_required():
        return {}
    if creds is None or creds.scheme.lower() != "bearer":
        logger.warning("Missing/invalid Authorization header for %s %s", request.method, request.url.path)
        raise HTTPException(
            status_code=401,
            detail="Authorization required",
            headers={
                "WWW-Authenticate": (
                    'Bearer '
                    f'resource_metadata="{PUBLIC_BASE_URL}/.well-known/oauth-protected-resource/xerodev", '
                    f'scope="{" ".join(MCP_SCOPES)}"'
                )
            },
        )
    context = f"{request.method} {request.url.path}"
    _validate_jwt_format(creds.credentials, context=context)
    try:
        payload = verify_jwt(creds.credentials)
    except HTTPException as exc:
        logger.warning("JWT validation failed for %s: %s", context, exc.detail)
        raise
    if not check_permissions(payload, MCP_SCOPES):
        logger.warning("Insufficient permissions for %s", context)
        raise HTTPException(
            status_code=403,
            detail=f"Insufficient permissions. Required: {' or '.join(MCP_SCOPES)}",
        )
    return payload
