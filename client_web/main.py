"""
Chat front end: browser login via authorization code + PKCE against the backend AS,
server-side sessions, and tool calls forwarded to the MCP server with our own
client_credentials token. Port 8081.
"""
import html
import logging
import threading
import time
from contextlib import asynccontextmanager

import httpx
from fastapi import Depends, FastAPI, Request
from fastapi.responses import HTMLResponse, RedirectResponse

from client_web.auth_request import (
    AuthorizationRequest,
    CookieAuthorizationRequestRepository,
    build_authorize_url,
)
from client_web.config import (
    AUTH_REQUEST_COOKIE,
    AUTH_REQUEST_MAX_AGE_SECONDS,
    AUTHORIZATION_URI,
    CLIENT_ID,
    CLOCK_SKEW_SECONDS,
    COOKIE_SECRET,
    COOKIE_SECURE,
    HTTP_TIMEOUT_SECONDS,
    ISSUER,
    JWKS_CACHE_TTL_SECONDS,
    JWKS_URI,
    LOG_LEVEL,
    LOGIN_PATH,
    MCP_CLIENT_ID,
    MCP_CLIENT_SECRET,
    MCP_REGISTRATION_ID,
    MCP_SCOPES,
    MCP_SERVER_URL,
    REDIRECT_URI,
    SCOPE,
    SESSION_COOKIE,
    SESSION_TTL_SECONDS,
    TOKEN_REFRESH_SKEW_SECONDS,
    TOKEN_URI,
)
from client_web.security import security_filter
from client_web.session_store import SessionStore
from oauth_kit.client_tokens import AuthorizedClient, AuthorizedClientCache, ClientRegistration, ClientTokenManager
from oauth_kit.downstream import ServiceClient, request_cancellation
from oauth_kit.errors import (
    DownstreamError,
    InvalidToken,
    OAuth2Error,
    TokenAcquisitionFailed,
    bad_gateway_handler,
    oauth2_error_handler,
)
from oauth_kit.filter_chain import current_authentication
from oauth_kit.validator import KeySetCache, TokenValidator, ValidatedClaims, jwks_fetcher

logger = logging.getLogger(__name__)

MCP_REGISTRATION = ClientRegistration(
    registration_id=MCP_REGISTRATION_ID,
    client_id=MCP_CLIENT_ID,
    client_secret=MCP_CLIENT_SECRET,
    token_uri=TOKEN_URI,
    scopes=MCP_SCOPES,
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Outbound clients and the token cache live exactly as long as the service."""
    cache = AuthorizedClientCache()
    manager = ClientTokenManager(
        [MCP_REGISTRATION],
        cache,
        skew_seconds=TOKEN_REFRESH_SKEW_SECONDS,
        timeout_seconds=HTTP_TIMEOUT_SECONDS,
    )
    app.state.client_tokens = manager
    app.state.http = httpx.Client(timeout=HTTP_TIMEOUT_SECONDS)
    app.state.mcp = ServiceClient("mcp-server", MCP_SERVER_URL, manager, MCP_REGISTRATION_ID, timeout=HTTP_TIMEOUT_SECONDS)
    yield
    app.state.mcp.close()
    app.state.http.close()
    manager.close()
    cache.clear()
    app.state.sessions.clear()


app = FastAPI(title="Restaurant Chat", version="1.0.0", lifespan=lifespan)

app.state.sessions = SessionStore(ttl_seconds=SESSION_TTL_SECONDS)
app.state.auth_requests = CookieAuthorizationRequestRepository(
    COOKIE_SECRET, AUTH_REQUEST_COOKIE, AUTH_REQUEST_MAX_AGE_SECONDS, secure=COOKIE_SECURE
)
# ID tokens must be addressed to us; they carry no scope claim
app.state.id_token_validator = TokenValidator(
    ISSUER,
    KeySetCache(jwks_fetcher(JWKS_URI, HTTP_TIMEOUT_SECONDS), ttl_seconds=JWKS_CACHE_TTL_SECONDS),
    audience=CLIENT_ID,
    require_audience=True,
    leeway_seconds=CLOCK_SKEW_SECONDS,
    require_scope=False,
)

app.add_exception_handler(OAuth2Error, oauth2_error_handler)
app.add_exception_handler(TokenAcquisitionFailed, bad_gateway_handler)
app.add_exception_handler(DownstreamError, bad_gateway_handler)
app.middleware("http")(security_filter)


def _page(title: str, body: str, status_code: int = 200) -> HTMLResponse:
    return HTMLResponse(
        f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>{html.escape(title)}</title></head>
<body>
  <h1>{html.escape(title)}</h1>
  {body}
  <p><a href="/">Home</a></p>
</body>
</html>""",
        status_code=status_code,
    )


def _login_error(message: str, status_code: int = 400) -> HTMLResponse:
    return _page("Login error", f"<p>{html.escape(message)}</p>", status_code)


@app.get("/health")
def health():
    """Health check endpoint."""
    return {"status": "ok", "service": "client_web"}


@app.get("/", response_class=HTMLResponse)
def home(request: Request):
    authentication = getattr(request.state, "authentication", None)
    if authentication is None:
        return _page("Restaurant Chat", f'<p><a href="{LOGIN_PATH}">Log in</a></p>')
    return _page(
        "Restaurant Chat",
        f"<p>Logged in as <strong>{html.escape(authentication.username)}</strong></p>"
        '<p><a href="/chat">Chat</a> | <a href="/logout">Log out</a></p>',
    )


@app.get("/chat", response_class=HTMLResponse)
def chat(authentication: ValidatedClaims = Depends(current_authentication)):
    return _page(
        "Chat",
        f"<p>Hello {html.escape(authentication.claims.get('name') or authentication.username)}.</p>"
        '<p><a href="/api/tools/customers">List customers</a></p>',
    )


@app.get(LOGIN_PATH)
def start_login(request: Request):
    """Generate state, nonce and PKCE; keep them in the signed cookie; redirect to the AS."""
    auth_request = AuthorizationRequest.new(REDIRECT_URI, SCOPE)
    response = RedirectResponse(build_authorize_url(AUTHORIZATION_URI, CLIENT_ID, auth_request), status_code=302)
    request.app.state.auth_requests.save(response, auth_request)
    return response


def _exchange_code(request: Request, code: str, auth_request: AuthorizationRequest) -> dict:
    """Code + verifier for tokens. Raises DownstreamError if the AS is unreachable."""
    try:
        r = request.app.state.http.post(
            TOKEN_URI,
            data={
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": auth_request.redirect_uri,
                "client_id": CLIENT_ID,
                "code_verifier": auth_request.code_verifier,
            },
            headers={"Accept": "application/json"},
        )
    except httpx.TransportError as e:
        raise DownstreamError("authorization-server", f"token exchange failed: {e}") from e
    try:
        data = r.json()
    except ValueError:
        data = {}
    if r.status_code != 200:
        raise InvalidToken(f"token exchange rejected: {r.status_code} {data.get('error', 'unknown_error')}")
    return data


@app.get("/login/oauth2/code/frontend-app")
def login_callback(request: Request):
    """
    Handle redirect from AS: check state, exchange the code, validate the ID token
    (signature, iss, aud, nonce), then start a session.
    """
    repository = request.app.state.auth_requests
    auth_request = repository.load(request)
    params = request.query_params

    def fail(message: str, status_code: int = 400) -> HTMLResponse:
        response = _login_error(message, status_code)
        repository.remove(response)
        return response

    if params.get("error"):
        logger.info("Authorization failed at AS: %s", params.get("error"))
        return fail(params.get("error_description") or params["error"])
    if auth_request is None:
        return fail("Invalid or expired login request. Please try logging in again.")
    if params.get("state") != auth_request.state:
        logger.warning("State mismatch on login callback")
        return fail("Invalid or expired state. Please try logging in again.")
    code = params.get("code")
    if not code:
        return fail("Missing code parameter.")

    try:
        data = _exchange_code(request, code, auth_request)
        if not data.get("access_token") or not data.get("id_token"):
            raise InvalidToken("token response without access_token or id_token")
        claims = request.app.state.id_token_validator.validate(data["id_token"])
        if claims.claims.get("nonce") != auth_request.nonce:
            raise InvalidToken("nonce mismatch")
    except InvalidToken as e:
        logger.warning("Login rejected: %s", e.reason)
        return fail("Login failed. Please try again.")
    except DownstreamError as e:
        logger.warning("Login failed: %s", e)
        return fail("Authorization server unavailable.", status_code=502)

    username = claims.username
    request.app.state.client_tokens.cache.put(
        AuthorizedClient(
            registration_id=CLIENT_ID,
            principal_name=username,
            access_token=data["access_token"],
            issued_at=time.time(),
            expires_in=int(data.get("expires_in") or 300),
            scopes=frozenset((data.get("scope") or "").split()),
            refresh_token=data.get("refresh_token"),
        )
    )
    session = request.app.state.sessions.create(
        username,
        email=claims.claims.get("email"),
        name=claims.claims.get("name"),
        roles=tuple(claims.roles),
        scopes=frozenset((data.get("scope") or "").split()),
    )
    logger.info("User %s logged in", username)

    response = RedirectResponse("/", status_code=302)
    repository.remove(response)
    response.set_cookie(
        SESSION_COOKIE,
        session.session_id,
        path="/",
        httponly=True,
        samesite="lax",
        secure=COOKIE_SECURE,
    )
    return response


@app.get("/logout")
def logout(request: Request):
    """Drop the session and the user's cached tokens; service-account tokens stay."""
    session = request.app.state.sessions.delete(request.cookies.get(SESSION_COOKIE))
    if session is not None:
        request.app.state.client_tokens.cache.evict(CLIENT_ID, session.username)
        logger.info("User %s logged out", session.username)
    response = RedirectResponse("/", status_code=302)
    response.delete_cookie(SESSION_COOKIE, path="/", httponly=True, samesite="lax", secure=COOKIE_SECURE)
    return response


@app.get("/api/auth/status")
def auth_status(request: Request):
    authentication = getattr(request.state, "authentication", None)
    if authentication is None:
        return {"authenticated": False, "loginUrl": LOGIN_PATH}
    return {"authenticated": True, "username": authentication.username}


@app.get("/api/auth/user")
def auth_user(authentication: ValidatedClaims = Depends(current_authentication)):
    return {
        "username": authentication.username,
        "email": authentication.claims.get("email"),
        "name": authentication.claims.get("name"),
        "roles": authentication.roles,
    }


@app.get("/api/auth/login-url")
def login_url():
    return {"loginUrl": LOGIN_PATH}


@app.get("/api/tools/customers")
def tool_customers(
    request: Request,
    authentication: ValidatedClaims = Depends(current_authentication),
    cancelled: threading.Event = Depends(request_cancellation),
):
    """Customer list via the MCP server, called with our mcp-client-to-server token."""
    logger.info("Customer tool requested by %s", authentication.username)
    return request.app.state.mcp.get_json("/mcp/customers", cancelled=cancelled)


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    uvicorn.run(
        "client_web.main:app",
        host="127.0.0.1",
        port=8081,
        reload=True,
    )
