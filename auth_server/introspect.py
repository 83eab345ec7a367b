"""
Token introspection endpoint (POST /oauth2/introspect). RFC 7662.
Only confidential clients may introspect. A token is active while its segment is neither
invalidated nor expired.
"""
import logging
from datetime import timezone

from fastapi import APIRouter, Depends, Form, Request
from sqlalchemy.orm import Session

from auth_server import store
from auth_server.audit import EVENT_INTROSPECT, get_client_ip, log_audit
from auth_server.claims import ACCESS_TOKEN
from auth_server.client_auth import require_client_auth
from auth_server.config import ISSUER
from auth_server.database import get_db
from auth_server.issuer import REFRESH_TOKEN
from oauth_kit.errors import InvalidClient, InvalidRequest

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/oauth2/introspect")
def introspect(
    request: Request,
    token: str = Form(""),
    token_type_hint: str | None = Form(None),
    client_id: str | None = Form(None),
    client_secret: str | None = Form(None),
    db: Session = Depends(get_db),
):
    client = require_client_auth(db, request, client_id, client_secret)
    if not client.is_confidential:
        raise InvalidClient("Public clients may not introspect tokens")
    if not token.strip():
        raise InvalidRequest("token is required")
    log_audit(db, EVENT_INTROSPECT, client_id=client.client_id, ip=get_client_ip(request))

    segment = store.find_segment(db, token.strip())
    if segment is None or segment.token_type not in (ACCESS_TOKEN, REFRESH_TOKEN) or not segment.is_active():
        return {"active": False}

    authorization = segment.authorization
    body = {
        "active": True,
        "scope": segment.scopes,
        "client_id": authorization.client.client_id,
        "username": authorization.principal_name,
        "sub": authorization.principal_name,
        "token_type": "Bearer" if segment.token_type == ACCESS_TOKEN else "refresh_token",
        "iat": int(segment.issued_at.replace(tzinfo=timezone.utc).timestamp()),
        "exp": int(segment.expires_at.replace(tzinfo=timezone.utc).timestamp()),
        "iss": ISSUER,
    }
    if segment.token_type == ACCESS_TOKEN and authorization.client.audience:
        body["aud"] = authorization.client.audience
    return body
