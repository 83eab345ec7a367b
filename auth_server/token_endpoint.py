"""
Token endpoint (POST /oauth2/token): client_credentials, authorization_code and refresh_token grants.
"""
import logging

from fastapi import APIRouter, Depends, Form, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from auth_server.audit import (
    EVENT_TOKEN_ISSUED,
    EVENT_TOKEN_REFRESHED,
    OUTCOME_FAIL,
    OUTCOME_SUCCESS,
    get_client_ip,
    log_audit,
)
from auth_server.client_auth import get_client_credentials_from_request, require_client_auth
from auth_server.config import RATE_LIMIT_TOKEN_PER_MINUTE
from auth_server.database import get_db
from auth_server.issuer import GRANT_REFRESH_TOKEN, TokenIssuer
from auth_server.keys import get_key_ring
from auth_server.rate_limit import token_limiter, too_many_requests
from oauth_kit.errors import InvalidRequest, OAuth2Error

logger = logging.getLogger(__name__)
router = APIRouter()

NO_STORE = {"Cache-Control": "no-store", "Pragma": "no-cache"}


@router.post("/oauth2/token")
def token(
    request: Request,
    grant_type: str | None = Form(None),
    scope: str | None = Form(None),
    code: str | None = Form(None),
    redirect_uri: str | None = Form(None),
    code_verifier: str | None = Form(None),
    refresh_token: str | None = Form(None),
    client_id: str | None = Form(None),
    client_secret: str | None = Form(None),
    db: Session = Depends(get_db),
):
    ip = get_client_ip(request)
    allowed, retry_after = token_limiter.check_and_consume(f"token:{ip}", RATE_LIMIT_TOKEN_PER_MINUTE)
    if not allowed:
        logger.warning("Token endpoint rate limit exceeded for ip=%s", ip)
        return too_many_requests(retry_after)

    event = EVENT_TOKEN_REFRESHED if grant_type == GRANT_REFRESH_TOKEN else EVENT_TOKEN_ISSUED
    presented_client, _ = get_client_credentials_from_request(request, client_id, client_secret)
    try:
        client = require_client_auth(db, request, client_id, client_secret)
        presented_client = client.client_id
        if not grant_type:
            raise InvalidRequest("grant_type is required")
        response = TokenIssuer(db, get_key_ring()).issue_token(
            client,
            grant_type,
            scope=scope,
            code=code,
            redirect_uri=redirect_uri,
            code_verifier=code_verifier,
            refresh_token=refresh_token,
        )
    except OAuth2Error as e:
        db.rollback()
        logger.info("Token request rejected (grant_type=%s client_id=%s): %s", grant_type, presented_client, e.error)
        log_audit(db, event, client_id=presented_client, ip=ip, outcome=OUTCOME_FAIL)
        raise

    log_audit(db, event, client_id=client.client_id, ip=ip, outcome=OUTCOME_SUCCESS)
    return JSONResponse(content=response.to_dict(), headers=NO_STORE)
