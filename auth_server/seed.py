"""
Seed the registered clients of the trust chain and an optional user from environment.
Client secrets default to development values; override them in any shared environment.
"""
import json
import logging
import os

import bcrypt
from sqlalchemy.orm import Session

from auth_server import store
from auth_server.config import BACKEND_AUDIENCE, CHAT_AUDIENCE, FRONTEND_BASE_URL, MCP_SERVER_AUDIENCE
from auth_server.models import RegisteredClient, User

logger = logging.getLogger(__name__)


def hash_password(password: str) -> str:
    # Bcrypt has a 72-byte limit
    raw = password.encode("utf-8")
    if len(raw) > 72:
        raw = raw[:72]
    return bcrypt.hashpw(raw, bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    raw = plain.encode("utf-8")[:72]
    return bcrypt.checkpw(raw, hashed.encode("utf-8"))


def default_clients() -> list[dict]:
    """Registered clients for each hop: frontend-app (login), mcp-client (front end -> MCP server),
    mcp-server (MCP server -> backend), test-client (manual testing)."""
    return [
        {
            "client_id": "mcp-server",
            "client_name": "MCP server",
            "client_secret": os.environ.get("MCP_SERVER_CLIENT_SECRET", "mcp-server-secret"),
            "grant_types": ["client_credentials"],
            "scopes": ["backend.read", "backend.write"],
            "audience": BACKEND_AUDIENCE,
            "access_token_ttl": 3600,
        },
        {
            "client_id": "mcp-client",
            "client_name": "Chat front end (service)",
            "client_secret": os.environ.get("MCP_CLIENT_SECRET", "mcp-client-secret"),
            "grant_types": ["client_credentials"],
            "scopes": ["mcp.read", "mcp.write"],
            "audience": MCP_SERVER_AUDIENCE,
            "access_token_ttl": 3600,
        },
        {
            "client_id": os.environ.get("FRONTEND_APP_CLIENT_ID", "frontend-app"),
            "client_name": "Chat front end",
            "client_secret": None,
            "grant_types": ["authorization_code", "refresh_token"],
            "scopes": ["openid", "profile", "email", "chat.read", "chat.write"],
            "redirect_uris": [
                f"{FRONTEND_BASE_URL}/login/oauth2/code/frontend-app",
                f"{FRONTEND_BASE_URL}/authorized",
            ],
            "audience": CHAT_AUDIENCE,
            "require_proof_key": True,
            "access_token_ttl": 3600,
            "refresh_token_ttl": 7 * 24 * 3600,
            "reuse_refresh_tokens": False,
        },
        {
            "client_id": "test-client",
            "client_name": "Test client",
            "client_secret": os.environ.get("TEST_CLIENT_SECRET", "test-secret"),
            "grant_types": ["client_credentials"],
            "scopes": ["backend.read", "backend.write"],
            "audience": BACKEND_AUDIENCE,
            "access_token_ttl": 3600,
        },
    ]


def register_client(db: Session, registration: dict) -> RegisteredClient:
    """Create a registered client unless one with the same client_id exists."""
    existing = store.get_client(db, registration["client_id"])
    if existing is not None:
        logger.debug("Client already exists: %s", registration["client_id"])
        return existing
    secret = registration.get("client_secret")
    client = RegisteredClient(
        client_id=registration["client_id"],
        client_name=registration.get("client_name"),
        client_secret_hash=hash_password(secret) if secret else None,
        grant_types=" ".join(registration["grant_types"]),
        scopes=" ".join(registration.get("scopes", [])),
        redirect_uris=json.dumps(registration.get("redirect_uris", [])),
        audience=registration.get("audience"),
        require_proof_key=registration.get("require_proof_key", False),
        require_consent=registration.get("require_consent", False),
        access_token_ttl=registration.get("access_token_ttl", 3600),
        refresh_token_ttl=registration.get("refresh_token_ttl", 7 * 24 * 3600),
        reuse_refresh_tokens=registration.get("reuse_refresh_tokens", False),
    )
    db.add(client)
    db.commit()
    logger.info("Seeded client: %s (confidential=%s)", client.client_id, client.is_confidential)
    return client


def register_user(
    db: Session,
    username: str,
    password: str,
    authorities=(),
    *,
    email: str | None = None,
    name: str | None = None,
) -> User:
    user = store.get_user(db, username)
    if user is not None:
        logger.debug("User already exists: %s", username)
        return user
    user = User(username=username, password_hash=hash_password(password), email=email, name=name)
    db.add(user)
    db.commit()
    if authorities:
        store.set_authorities(db, username, authorities)
    logger.info("Seeded user: %s", username)
    return user


def seed_from_env(db: Session) -> None:
    """Register the trust-chain clients and, if OAUTH_SEED_USER/OAUTH_SEED_PASSWORD are set, one user."""
    for registration in default_clients():
        register_client(db, registration)

    seed_user = os.environ.get("OAUTH_SEED_USER")
    seed_password = os.environ.get("OAUTH_SEED_PASSWORD")
    if seed_user and seed_password:
        authorities = [a.strip() for a in os.environ.get("OAUTH_SEED_AUTHORITIES", "ROLE_USER").split(",") if a.strip()]
        register_user(
            db,
            seed_user,
            seed_password,
            authorities,
            email=os.environ.get("OAUTH_SEED_EMAIL"),
            name=os.environ.get("OAUTH_SEED_NAME"),
        )
