"""
Token revocation endpoint (POST /oauth2/revoke). RFC 7009.
Revoking a refresh token revokes its whole authorization. Access tokens are self-contained JWTs:
revoking one marks its segment so introspection reports it inactive, but resource servers
validating locally accept it until it expires.
"""
import logging

from fastapi import APIRouter, Depends, Form, Request
from sqlalchemy.orm import Session

from auth_server import store
from auth_server.audit import EVENT_TOKEN_REVOKED, get_client_ip, log_audit
from auth_server.client_auth import require_client_auth
from auth_server.database import get_db
from auth_server.issuer import REFRESH_TOKEN
from oauth_kit.errors import InvalidRequest

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/oauth2/revoke")
def revoke(
    request: Request,
    token: str = Form(""),
    token_type_hint: str | None = Form(None),
    client_id: str | None = Form(None),
    client_secret: str | None = Form(None),
    db: Session = Depends(get_db),
):
    """
    RFC 7009: always 200 for an authenticated client, even if the token is unknown or
    belongs to another client, so callers learn nothing about other tokens.
    """
    if not token.strip():
        raise InvalidRequest("token is required")
    client = require_client_auth(db, request, client_id, client_secret)

    # The hint only orders the lookup; any token type is accepted
    segment = store.find_segment(db, token.strip())
    if segment is None or segment.authorization.registered_client_id != client.id:
        logger.debug("Revocation of unknown token requested by client_id=%s (hint=%s)", client.client_id, token_type_hint)
        return {}

    if segment.token_type == REFRESH_TOKEN:
        count = store.invalidate_segments(db, segment.authorization)
    else:
        segment.invalidated = True
        count = 1
    db.commit()
    logger.info("Revoked %s for client_id=%s (%d segment(s))", segment.token_type, client.client_id, count)
    log_audit(
        db,
        EVENT_TOKEN_REVOKED,
        client_id=client.client_id,
        principal_name=segment.authorization.principal_name,
        ip=get_client_ip(request),
    )
    return {}
