"""
MCP server configuration. Port 8082.
Resource server for tool calls (tokens with aud resos-mcp-server) and client_credentials
client of the booking backend (registration backend-api).
"""
import os

# Authorization server: iss check, JWKS and token endpoint
ISSUER = os.environ.get("OAUTH_ISSUER", "http://localhost:8080").rstrip("/")
JWKS_URI = os.environ.get("OAUTH_JWKS_URI", f"{ISSUER}/oauth2/jwks")
TOKEN_URI = os.environ.get("OAUTH_TOKEN_URI", f"{ISSUER}/oauth2/token")

# Access tokens presented to us must carry this audience
AUDIENCE = os.environ.get("MCP_SERVER_AUDIENCE", "resos-mcp-server")

# Outbound hop to the booking API
BACKEND_BASE_URL = os.environ.get("BACKEND_BASE_URL", "http://localhost:8080").rstrip("/")
BACKEND_REGISTRATION_ID = "backend-api"
BACKEND_CLIENT_ID = os.environ.get("MCP_SERVER_CLIENT_ID", "mcp-server")
# Development default matches the seeded client; override in any shared environment
BACKEND_CLIENT_SECRET = os.environ.get("MCP_SERVER_CLIENT_SECRET", "mcp-server-secret")
BACKEND_SCOPES = tuple(os.environ.get("MCP_SERVER_SCOPES", "backend.read backend.write").split())

JWKS_CACHE_TTL_SECONDS = int(os.environ.get("JWKS_CACHE_TTL_SECONDS", "300"))
CLOCK_SKEW_SECONDS = int(os.environ.get("CLOCK_SKEW_SECONDS", "60"))
TOKEN_REFRESH_SKEW_SECONDS = int(os.environ.get("TOKEN_REFRESH_SKEW_SECONDS", "60"))
HTTP_TIMEOUT_SECONDS = float(os.environ.get("HTTP_TIMEOUT_SECONDS", "10"))

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
