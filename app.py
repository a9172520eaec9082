import os
import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI, Request, Response
from fastapi.responses import RedirectResponse
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware

# Load environment variables
load_dotenv()

from utils import logger, MCP_PROTOCOL_VERSION, SERVER_NAME, SERVER_VERSION
from auth import AUTH0_AUDIENCE, AUTH0_DOMAIN, MCP_SCOPES, PUBLIC_BASE_URL, auth_required
import xerodev_mcp

# Initialize FastAPI app
app = FastAPI(title="Xero Sandbox MCP Server", version=SERVER_VERSION)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Request Logging Middleware
class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        logger.info(f"Incoming request: {request.method} {request.url.path}")
        if request.method.upper() == "POST" and request.url.path.endswith("/mcp"):
            logger.debug("Routing MCP call for path=%s", request.url.path)
        try:
            response = await call_next(request)
            logger.info(f"Request completed: {response.status_code}")
            return response
        except Exception as e:
            logger.error(f"Request failed: {e}")
            raise

app.add_middleware(RequestLoggingMiddleware)

# Mount Routers
app.include_router(xerodev_mcp.router, prefix="/xerodev", tags=["xerodev"])


@app.get("/")
async def root():
    return RedirectResponse(url="/xerodev/", status_code=307)

# MCP Manifest
@app.get("/.well-known/mcp.json")
async def mcp_manifest():
    tools = xerodev_mcp._list_tools_payload().get("tools", [])
    return {
        "mcpVersion": MCP_PROTOCOL_VERSION,
        "capabilities": {
            "tools": {
                "listChanged": False
            },
            "resources": {
                "listChanged": False,
                "subscribe": False
            },
            "prompts": {
                "listChanged": False
            },
            "logging": {}
        },
        "serverInfo": {
            "name": SERVER_NAME,
            "version": SERVER_VERSION
        },
        "endpoint": "/xerodev/mcp",
        "toolCount": len(tools),
    }


# OAuth 2.0 Protected Resource Metadata (RFC 9728)
@app.get("/.well-known/oauth-protected-resource")
@app.get("/.well-known/oauth-protected-resource/xerodev")
async def oauth_protected_resource():
    if not auth_required() or not AUTH0_DOMAIN:
        return Response(status_code=404)
    return {
        "resource": AUTH0_AUDIENCE or f"{PUBLIC_BASE_URL}/xerodev",
        "authorization_servers": [f"https://{AUTH0_DOMAIN}/"],
        "scopes_supported": MCP_SCOPES,
        "bearer_methods_supported": ["header"],
    }

# Health Check
@app.get("/healthz")
@app.get("/health")
def health_check():
    return {"status": "ok"}

if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
