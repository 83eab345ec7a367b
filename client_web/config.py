"""
Chat front end configuration. Port 8081.
Public OAuth2 client `frontend-app` for user login (authorization code + PKCE), and
client_credentials client of the MCP server (registration mcp-client-to-server).
"""
import os

# Authorization server (issuer)
ISSUER = os.environ.get("OAUTH_ISSUER", "http://localhost:8080").rstrip("/")
AUTHORIZATION_URI = os.environ.get("OAUTH_AUTHORIZATION_URI", f"{ISSUER}/oauth2/authorize")
TOKEN_URI = os.environ.get("OAUTH_TOKEN_URI", f"{ISSUER}/oauth2/token")
JWKS_URI = os.environ.get("OAUTH_JWKS_URI", f"{ISSUER}/oauth2/jwks")

BASE_URL = os.environ.get("FRONTEND_BASE_URL", "http://localhost:8081").rstrip("/")

# Our client_id (registered at the AS as a public client)
CLIENT_ID = os.environ.get("FRONTEND_APP_CLIENT_ID", "frontend-app")
REDIRECT_URI = os.environ.get("OAUTH_REDIRECT_URI", f"{BASE_URL}/login/oauth2/code/frontend-app")
LOGIN_PATH = "/oauth2/authorization/frontend-app"
SCOPE = os.environ.get("OAUTH_SCOPE", "openid profile email chat.read chat.write")

# HS256 key for the authorization-request cookie; development default only
COOKIE_SECRET = os.environ.get("CLIENT_WEB_COOKIE_SECRET", "dev-only-cookie-secret-change-me-0123456789")
COOKIE_SECURE = os.environ.get("CLIENT_WEB_COOKIE_SECURE", "false").lower() in ("1", "true", "yes")
AUTH_REQUEST_COOKIE = "oauth2_auth_request"
AUTH_REQUEST_MAX_AGE_SECONDS = 180
SESSION_COOKIE = "SESSION"
SESSION_TTL_SECONDS = int(os.environ.get("SESSION_TTL_SECONDS", "1800"))

# Outbound hop to the MCP server
MCP_SERVER_URL = os.environ.get("MCP_SERVER_URL", "http://localhost:8082").rstrip("/")
MCP_REGISTRATION_ID = "mcp-client-to-server"
MCP_CLIENT_ID = os.environ.get("MCP_CLIENT_ID", "mcp-client")
MCP_CLIENT_SECRET = os.environ.get("MCP_CLIENT_SECRET", "mcp-client-secret")
MCP_SCOPES = tuple(os.environ.get("MCP_CLIENT_SCOPES", "mcp.read mcp.write").split())

JWKS_CACHE_TTL_SECONDS = int(os.environ.get("JWKS_CACHE_TTL_SECONDS", "300"))
CLOCK_SKEW_SECONDS = int(os.environ.get("CLOCK_SKEW_SECONDS", "60"))
TOKEN_REFRESH_SKEW_SECONDS = int(os.environ.get("TOKEN_REFRESH_SKEW_SECONDS", "60"))
HTTP_TIMEOUT_SECONDS = float(os.environ.get("HTTP_TIMEOUT_SECONDS", "10"))

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
