"""
Client authentication at the token, revocation and introspection endpoints. RFC 6749 §2.3.1.
Credentials via Authorization: Basic base64(client_id:client_secret) or client_id + client_secret in form.
Public clients present only client_id.
"""
import base64
import logging
from urllib.parse import unquote_plus

from fastapi import Request
from sqlalchemy.orm import Session

from auth_server import store
from auth_server.models import RegisteredClient
from auth_server.seed import verify_password
from oauth_kit.errors import InvalidClient

logger = logging.getLogger(__name__)


def _parse_basic(header_value: str) -> tuple[str, str] | None:
    """Parse 'Basic <base64(client_id:client_secret)>'. Returns (client_id, client_secret) or None."""
    if not header_value or not header_value.strip().lower().startswith("basic "):
        return None
    try:
        encoded = header_value.strip()[6:].strip()
        decoded = base64.b64decode(encoded, validate=True).decode("utf-8")
    except (ValueError, UnicodeDecodeError):
        return None
    if ":" not in decoded:
        return None
    client_id, _, client_secret = decoded.partition(":")
    return unquote_plus(client_id.strip()), unquote_plus(client_secret)


def get_client_credentials_from_request(
    request: Request,
    client_id_form: str | None,
    client_secret_form: str | None,
) -> tuple[str | None, str | None]:
    """
    Get (client_id, client_secret) from Authorization Basic or from form.
    Form takes precedence if both present.
    """
    auth_header = request.headers.get("Authorization")
    basic = _parse_basic(auth_header) if auth_header else None
    if client_id_form and client_secret_form is not None:
        return client_id_form.strip(), client_secret_form
    if basic:
        return basic
    if client_id_form:
        return client_id_form.strip(), client_secret_form
    return None, None


def verify_client_credentials(db: Session, client_id: str, client_secret: str | None) -> RegisteredClient | None:
    """
    Load client by client_id; if confidential, verify client_secret against the stored hash.
    Returns the client if valid, None otherwise.
    """
    client = store.get_client(db, client_id)
    if client is None:
        return None
    if not client.is_confidential:
        return client
    if not client_secret or not verify_password(client_secret, client.client_secret_hash):
        return None
    return client


def require_client_auth(
    db: Session,
    request: Request,
    client_id_form: str | None,
    client_secret_form: str | None,
) -> RegisteredClient:
    """Resolve and authenticate the calling client or raise InvalidClient (401)."""
    client_id, client_secret = get_client_credentials_from_request(request, client_id_form, client_secret_form)
    if not client_id:
        raise InvalidClient("client_id is required")
    client = verify_client_credentials(db, client_id, client_secret)
    if client is None:
        logger.info("Client authentication failed for client_id=%s", client_id)
        raise InvalidClient("Invalid client credentials")
    return client
