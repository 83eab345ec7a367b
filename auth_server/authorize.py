"""
Authorization endpoint and interactive login.
GET /oauth2/authorize: validate the request, show login.
POST /oauth2/authorize: verify the user, then either ask for consent or issue a code and redirect.
POST /oauth2/authorize/consent: record the user's decision.
"""
import html
import logging
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Form, Request
from fastapi.responses import HTMLResponse, RedirectResponse
from sqlalchemy.orm import Session

from auth_server import store
from auth_server.audit import (
    EVENT_CODE_ISSUED,
    EVENT_CONSENT_ALLOW,
    EVENT_CONSENT_DENY,
    EVENT_LOGIN_FAIL,
    EVENT_LOGIN_OK,
    OUTCOME_FAIL,
    OUTCOME_SUCCESS,
    get_client_ip,
    log_audit,
)
from auth_server.config import RATE_LIMIT_LOGIN_PER_MINUTE
from auth_server.database import get_db
from auth_server.issuer import GRANT_AUTHORIZATION_CODE, TokenIssuer, resolve_scopes
from auth_server.keys import get_key_ring
from auth_server.models import RegisteredClient
from auth_server.rate_limit import login_limiter, too_many_requests
from auth_server.seed import verify_password
from oauth_kit.errors import InvalidScope

logger = logging.getLogger(__name__)
router = APIRouter()


def e(s: str | None) -> str:
    return html.escape(s or "")


def _bad_request(message: str) -> HTMLResponse:
    return HTMLResponse(f"<h1>Invalid request</h1><p>{e(message)}</p>", status_code=400)


def _redirect_error(redirect_uri: str, error: str, error_description: str, state: str | None) -> RedirectResponse:
    params = {"error": error, "error_description": error_description}
    if state:
        params["state"] = state
    return RedirectResponse(url=f"{redirect_uri}?{urlencode(params)}", status_code=302)


def _redirect_code(redirect_uri: str, code: str, state: str) -> RedirectResponse:
    return RedirectResponse(url=f"{redirect_uri}?{urlencode({'code': code, 'state': state})}", status_code=302)


def _check_client(db: Session, client_id: str | None, redirect_uri: str | None) -> RegisteredClient | str:
    """Return the client, or an error message when it must not be redirected to."""
    if not client_id or not redirect_uri:
        return "client_id and redirect_uri are required."
    client = store.get_client(db, client_id)
    if client is None:
        return "Unknown client_id."
    if not client.redirect_uri_allowed(redirect_uri):
        return "redirect_uri not allowed."
    return client


def _login_form(params: dict, error: str | None = None, username: str = "") -> str:
    hidden = "".join(
        f'<input type="hidden" name="{name}" value="{e(params.get(name))}"/>'
        for name in (
            "client_id",
            "redirect_uri",
            "scope",
            "state",
            "response_type",
            "code_challenge",
            "code_challenge_method",
            "nonce",
        )
    )
    error_html = f'<p style="color:red;">{e(error)}</p>' if error else ""
    return f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>Log in</title></head>
<body>
  <h1>Log in</h1>
  {error_html}
  <form method="post" action="/oauth2/authorize">
    {hidden}
    <label>Username: <input type="text" name="username" value="{e(username)}" required/></label><br/>
    <label>Password: <input type="password" name="password" required/></label><br/>
    <button type="submit">Log in</button>
  </form>
</body>
</html>"""


def _consent_form(client: RegisteredClient, consent_state: str, scopes: list[str]) -> str:
    checkboxes = "".join(
        f'<label><input type="checkbox" name="granted_scope" value="{e(s)}" checked/> {e(s)}</label><br/>'
        for s in scopes
    )
    return f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>Consent</title></head>
<body>
  <h1>Consent</h1>
  <p><strong>{e(client.client_name or client.client_id)}</strong> requests the following scopes:</p>
  <form method="post" action="/oauth2/authorize/consent" style="display:inline;">
    <input type="hidden" name="consent_state" value="{e(consent_state)}"/>
    <input type="hidden" name="allow" value="true"/>
    {checkboxes}
    <button type="submit">Allow</button>
  </form>
  <form method="post" action="/oauth2/authorize/consent" style="display:inline; margin-left: 0.5em;">
    <input type="hidden" name="consent_state" value="{e(consent_state)}"/>
    <input type="hidden" name="allow" value="false"/>
    <button type="submit">Deny</button>
  </form>
</body>
</html>"""


def _validate_request(client: RegisteredClient, params: dict) -> RedirectResponse | frozenset[str]:
    """Check the parts of the request that are reported back to the client by redirect."""
    redirect_uri, state = params["redirect_uri"], params.get("state")
    if params.get("response_type") != "code":
        return _redirect_error(redirect_uri, "unsupported_response_type", "response_type must be 'code'", state)
    if GRANT_AUTHORIZATION_CODE not in client.grant_type_list:
        return _redirect_error(redirect_uri, "unauthorized_client", "Client may not use authorization_code", state)
    if not state:
        return _redirect_error(redirect_uri, "invalid_request", "state is required", None)
    method = params.get("code_challenge_method")
    if params.get("code_challenge"):
        if method != "S256":
            return _redirect_error(redirect_uri, "invalid_request", "code_challenge_method must be S256", state)
    elif client.require_proof_key:
        return _redirect_error(redirect_uri, "invalid_request", "code_challenge is required", state)
    try:
        return resolve_scopes(client, params.get("scope"))
    except InvalidScope as exc:
        return _redirect_error(redirect_uri, exc.error, exc.description, state)


@router.get("/oauth2/authorize", response_class=HTMLResponse)
def authorize_get(
    request: Request,
    response_type: str | None = None,
    client_id: str | None = None,
    redirect_uri: str | None = None,
    scope: str | None = None,
    state: str | None = None,
    code_challenge: str | None = None,
    code_challenge_method: str | None = None,
    nonce: str | None = None,
    db: Session = Depends(get_db),
):
    """
    OAuth2 authorization endpoint (GET). Unknown clients and unregistered redirect URIs get a
    400 page; other problems go back to the client as error redirects. Renders the login form.
    """
    client = _check_client(db, client_id, redirect_uri)
    if isinstance(client, str):
        return _bad_request(client)
    params = {
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "scope": scope,
        "state": state,
        "response_type": response_type,
        "code_challenge": code_challenge,
        "code_challenge_method": code_challenge_method,
        "nonce": nonce,
    }
    checked = _validate_request(client, params)
    if isinstance(checked, RedirectResponse):
        return checked
    return HTMLResponse(_login_form(params))


@router.post("/oauth2/authorize")
def authorize_post(
    request: Request,
    client_id: str = Form(...),
    redirect_uri: str = Form(...),
    scope: str = Form(""),
    state: str = Form(""),
    response_type: str = Form(...),
    username: str = Form(...),
    password: str = Form(...),
    code_challenge: str | None = Form(None),
    code_challenge_method: str | None = Form(None),
    nonce: str | None = Form(None),
    db: Session = Depends(get_db),
):
    """
    Process login. Disabled, locked and credentials-expired principals are refused.
    On success: consent form if the client needs consent for these scopes, else code redirect.
    """
    ip = get_client_ip(request)
    allowed, retry_after = login_limiter.check_and_consume(f"login:{ip}", RATE_LIMIT_LOGIN_PER_MINUTE)
    if not allowed:
        logger.warning("Login rate limit exceeded for ip=%s", ip)
        return too_many_requests(retry_after)

    client = _check_client(db, client_id, redirect_uri)
    if isinstance(client, str):
        return _bad_request(client)
    params = {
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "scope": scope,
        "state": state,
        "response_type": response_type,
        "code_challenge": code_challenge or None,
        "code_challenge_method": code_challenge_method or None,
        "nonce": nonce or None,
    }
    scopes = _validate_request(client, params)
    if isinstance(scopes, RedirectResponse):
        return scopes

    user = store.get_user(db, username)
    if user is None or not verify_password(password, user.password_hash):
        log_audit(db, EVENT_LOGIN_FAIL, client_id=client_id, ip=ip, outcome=OUTCOME_FAIL)
        return HTMLResponse(_login_form(params, "Invalid username or password.", username), status_code=401)
    if not user.can_log_in:
        log_audit(db, EVENT_LOGIN_FAIL, client_id=client_id, principal_name=user.username, ip=ip, outcome=OUTCOME_FAIL)
        logger.info("Login refused for inactive principal %s", user.username)
        return HTMLResponse(_login_form(params, "This account cannot sign in.", username), status_code=401)

    log_audit(db, EVENT_LOGIN_OK, client_id=client_id, principal_name=user.username, ip=ip, outcome=OUTCOME_SUCCESS)
    issuer = TokenIssuer(db, get_key_ring())

    if client.require_consent:
        consent = store.get_consent(db, client, user.username)
        if consent is None or not scopes <= consent.scope_set:
            attributes = {k: params[k] for k in ("redirect_uri", "state", "code_challenge", "code_challenge_method", "nonce")}
            consent_state = issuer.request_consent(client, user.username, scopes, attributes)
            return HTMLResponse(_consent_form(client, consent_state, sorted(scopes)))

    code = issuer.issue_authorization_code(
        client,
        user.username,
        scopes,
        redirect_uri=redirect_uri,
        code_challenge=params["code_challenge"],
        code_challenge_method=params["code_challenge_method"],
        nonce=params["nonce"],
    )
    log_audit(db, EVENT_CODE_ISSUED, client_id=client_id, principal_name=user.username, ip=ip, outcome=OUTCOME_SUCCESS)
    return _redirect_code(redirect_uri, code, state)


@router.post("/oauth2/authorize/consent")
def authorize_consent(
    request: Request,
    consent_state: str = Form(...),
    allow: str = Form(...),
    granted_scope: list[str] = Form([]),
    db: Session = Depends(get_db),
):
    """Process consent. Granted scopes must be a subset of what was requested."""
    issuer = TokenIssuer(db, get_key_ring())
    authorization = issuer.load_pending(consent_state)
    if authorization is None:
        return _bad_request("Unknown or expired authorization request.")
    client = authorization.client
    attributes = authorization.get_attributes()
    redirect_uri, state = attributes["redirect_uri"], attributes.get("state")
    ip = get_client_ip(request)

    if allow.lower() not in ("true", "1", "yes", "allow"):
        issuer.abandon(authorization)
        log_audit(db, EVENT_CONSENT_DENY, client_id=client.client_id, principal_name=authorization.principal_name, ip=ip)
        return _redirect_error(redirect_uri, "access_denied", "User denied authorization", state)

    requested = authorization.scope_set
    granted = frozenset(s.strip() for s in granted_scope if s and s.strip())
    if not granted <= requested:
        return _bad_request("Granted scopes must be a subset of the requested scopes.")

    store.save_consent(db, client, authorization.principal_name, granted)
    code = issuer.issue_authorization_code(
        client,
        authorization.principal_name,
        granted,
        redirect_uri=redirect_uri,
        code_challenge=attributes.get("code_challenge"),
        code_challenge_method=attributes.get("code_challenge_method"),
        nonce=attributes.get("nonce"),
        authorization=authorization,
    )
    log_audit(db, EVENT_CONSENT_ALLOW, client_id=client.client_id, principal_name=authorization.principal_name, ip=ip)
    log_audit(db, EVENT_CODE_ISSUED, client_id=client.client_id, principal_name=authorization.principal_name, ip=ip)
    return _redirect_code(redirect_uri, code, state)
