"""
Backend configuration: authorization server and booking API.
Everything comes from env; the defaults are for local development only.
"""
import os

# Issuer URL (public identifier, also the `iss` claim)
ISSUER = os.environ.get("OAUTH_ISSUER", "http://localhost:8080").rstrip("/")

DATABASE_URL = os.environ.get("AUTH_DATABASE_URL", "sqlite:///./auth_server.db")

# Authorization code lifetime (seconds)
CODE_TTL_SECONDS = int(os.environ.get("OAUTH_CODE_TTL_SECONDS", "300"))

# Defaults for clients that do not carry their own token settings
ACCESS_TOKEN_EXPIRES = int(os.environ.get("OAUTH_ACCESS_TOKEN_EXPIRES", "3600"))
REFRESH_TOKEN_EXPIRES = int(os.environ.get("OAUTH_REFRESH_TOKEN_EXPIRES", str(7 * 24 * 3600)))

# Signing keys. Empty path = ephemeral in-memory key (tests, throwaway runs).
SIGNING_KEY_PATH = os.environ.get("OAUTH_SIGNING_KEY_PATH", ".auth_signing_key.pem").strip()
# Comma-separated PEM paths of retired keys: published in JWKS, never used to sign
RETIRED_KEY_PATHS = [
    p.strip() for p in os.environ.get("OAUTH_RETIRED_KEY_PATHS", "").split(",") if p.strip()
]

# Access tokens presented to the booking API are validated against our own JWKS
JWKS_CACHE_TTL_SECONDS = int(os.environ.get("OAUTH_JWKS_CACHE_TTL_SECONDS", "300"))
CLOCK_SKEW_SECONDS = int(os.environ.get("OAUTH_CLOCK_SKEW_SECONDS", "60"))

# Per-IP, per minute
RATE_LIMIT_LOGIN_PER_MINUTE = int(os.environ.get("OAUTH_RATE_LIMIT_LOGIN_PER_MINUTE", "20"))
RATE_LIMIT_TOKEN_PER_MINUTE = int(os.environ.get("OAUTH_RATE_LIMIT_TOKEN_PER_MINUTE", "60"))

# Public base URL of the chat front end, used for the frontend-app redirect URI
FRONTEND_BASE_URL = os.environ.get("FRONTEND_BASE_URL", "http://localhost:8081").rstrip("/")

# Audiences of the two service hops
BACKEND_AUDIENCE = os.environ.get("BACKEND_AUDIENCE", "resos-backend")
MCP_SERVER_AUDIENCE = os.environ.get("MCP_SERVER_AUDIENCE", "resos-mcp-server")
# User access tokens minted for the chat front end; no service hop accepts them
CHAT_AUDIENCE = os.environ.get("CHAT_AUDIENCE", "resos-chat")

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
