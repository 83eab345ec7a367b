"""
Tests for the chat front end routes: login bridge (authorization code + PKCE, ID token
checks), sessions, logout, and the tool call forwarded to the MCP server.
The authorization server and MCP server are one httpx.MockTransport double.
"""
import base64
import hashlib
import threading
import time
from urllib.parse import parse_qs, urlparse

import httpx
import jwt
import pytest
from cryptography.hazmat.primitives.asymmetric import rsa
from fastapi.testclient import TestClient
from jwt.algorithms import RSAAlgorithm

from client_web.config import CLIENT_ID, ISSUER, LOGIN_PATH, MCP_REGISTRATION_ID, MCP_SERVER_URL
from client_web.main import MCP_REGISTRATION, app
from oauth_kit.client_tokens import AuthorizedClient, AuthorizedClientCache, ClientTokenManager
from oauth_kit.downstream import ServiceClient, request_cancellation
from oauth_kit.validator import KeySetCache, TokenValidator

KID = "as-test-key"
_signing_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
CALLBACK = "/login/oauth2/code/frontend-app"


def _jwks() -> dict:
    jwk = RSAAlgorithm.to_jwk(_signing_key.public_key(), as_dict=True)
    jwk.update(kid=KID, alg="RS256", use="sig")
    return {"keys": [jwk]}


class Upstream:
    """Authorization server token endpoint plus MCP server."""

    def __init__(self):
        self.challenge = None
        self.nonce = None
        self.id_token_overrides = {}
        self.token_status = 200
        self.mcp_status = 200
        self.user_exchanges: list[dict] = []
        self.service_token_requests = 0
        self.on_service_token = None
        self.mcp_requests: list[httpx.Request] = []

    def id_token(self) -> str:
        now = int(time.time())
        claims = {
            "iss": ISSUER,
            "sub": "alice",
            "aud": CLIENT_ID,
            "iat": now,
            "exp": now + 300,
            "nonce": self.nonce,
            "preferred_username": "alice",
            "email": "alice@example.com",
            "name": "Alice",
            "roles": ["ROLE_USER"],
        }
        claims.update(self.id_token_overrides)
        return jwt.encode(claims, _signing_key, algorithm="RS256", headers={"kid": KID})

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/oauth2/token":
            form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
            if form["grant_type"] == "client_credentials":
                self.service_token_requests += 1
                if self.on_service_token is not None:
                    self.on_service_token()
                return httpx.Response(200, json={"access_token": "svc-token", "token_type": "Bearer", "expires_in": 3600})
            self.user_exchanges.append(form)
            if self.token_status != 200:
                return httpx.Response(self.token_status, json={"error": "invalid_grant"})
            digest = hashlib.sha256(form["code_verifier"].encode()).digest()
            if base64.urlsafe_b64encode(digest).rstrip(b"=").decode() != self.challenge:
                return httpx.Response(400, json={"error": "invalid_grant"})
            return httpx.Response(
                200,
                json={
                    "access_token": "user-access",
                    "token_type": "Bearer",
                    "expires_in": 3600,
                    "scope": "openid profile email chat.read chat.write",
                    "refresh_token": "user-refresh",
                    "id_token": self.id_token(),
                },
            )
        self.mcp_requests.append(request)
        if self.mcp_status != 200:
            return httpx.Response(self.mcp_status)
        return httpx.Response(200, json=[{"id": "c-1", "name": "Ada"}])


@pytest.fixture
def upstream():
    return Upstream()


@pytest.fixture
def client(upstream):
    transport = httpx.MockTransport(upstream)
    cache = AuthorizedClientCache()
    manager = ClientTokenManager([MCP_REGISTRATION], cache, http_client=httpx.Client(transport=transport), max_attempts=1)
    original_validator = app.state.id_token_validator
    app.state.client_tokens = manager
    app.state.http = httpx.Client(transport=transport)
    app.state.mcp = ServiceClient("mcp-server", MCP_SERVER_URL, manager, MCP_REGISTRATION_ID, transport=transport)
    app.state.id_token_validator = TokenValidator(
        ISSUER, KeySetCache(_jwks), audience=CLIENT_ID, require_audience=True, require_scope=False
    )
    yield TestClient(app)
    app.state.id_token_validator = original_validator
    app.state.sessions.clear()
    app.state.mcp.close()
    app.state.http.close()


def _start_login(client, upstream) -> dict:
    r = client.get(LOGIN_PATH, follow_redirects=False)
    assert r.status_code == 302
    params = {k: v[0] for k, v in parse_qs(urlparse(r.headers["location"]).query).items()}
    upstream.challenge = params["code_challenge"]
    upstream.nonce = params["nonce"]
    return params


def _login(client, upstream):
    params = _start_login(client, upstream)
    return client.get(CALLBACK, params={"code": "the-code", "state": params["state"]}, follow_redirects=False)


def test_health(client):
    assert client.get("/health").json() == {"status": "ok", "service": "client_web"}


def test_home_offers_login_link(client):
    r = client.get("/")
    assert r.status_code == 200
    assert LOGIN_PATH in r.text


def test_start_login_redirects_to_as_with_cookie(client, upstream):
    r = client.get(LOGIN_PATH, follow_redirects=False)
    location = urlparse(r.headers["location"])
    assert f"{location.scheme}://{location.netloc}" == ISSUER
    assert location.path == "/oauth2/authorize"
    params = parse_qs(location.query)
    assert params["client_id"] == ["frontend-app"]
    assert params["code_challenge_method"] == ["S256"]
    assert "openid" in params["scope"][0].split()
    assert "oauth2_auth_request" in client.cookies


def test_full_login_creates_session(client, upstream):
    r = _login(client, upstream)
    assert r.status_code == 302
    assert r.headers["location"] == "/"
    set_cookies = r.headers.get_list("set-cookie")
    session_cookie = next(c for c in set_cookies if c.startswith("SESSION="))
    assert "HttpOnly" in session_cookie
    assert "samesite=lax" in session_cookie.lower()
    assert "oauth2_auth_request" not in client.cookies

    exchange = upstream.user_exchanges[0]
    assert exchange["grant_type"] == "authorization_code"
    assert exchange["client_id"] == "frontend-app"
    assert exchange["code"] == "the-code"

    assert client.get("/api/auth/status").json() == {"authenticated": True, "username": "alice"}
    assert client.get("/api/auth/user").json() == {
        "username": "alice",
        "email": "alice@example.com",
        "name": "Alice",
        "roles": ["ROLE_USER"],
    }
    assert "alice" in client.get("/").text

    entry = app.state.client_tokens.cache.get(CLIENT_ID, "alice")
    assert entry.access_token == "user-access"
    assert entry.refresh_token == "user-refresh"


def test_callback_without_login_request_is_rejected(client):
    r = client.get(CALLBACK, params={"code": "c", "state": "s"})
    assert r.status_code == 400
    assert "expired" in r.text


def test_callback_state_mismatch(client, upstream):
    _start_login(client, upstream)
    r = client.get(CALLBACK, params={"code": "c", "state": "forged"})
    assert r.status_code == 400
    assert upstream.user_exchanges == []


def test_callback_error_from_as(client, upstream):
    params = _start_login(client, upstream)
    r = client.get(CALLBACK, params={"state": params["state"], "error": "access_denied", "error_description": "User denied"})
    assert r.status_code == 400
    assert "User denied" in r.text


def test_login_request_is_single_use(client, upstream):
    params = _start_login(client, upstream)
    assert client.get(CALLBACK, params={"code": "c", "state": params["state"]}, follow_redirects=False).status_code == 302
    r = client.get(CALLBACK, params={"code": "c", "state": params["state"]}, follow_redirects=False)
    assert r.status_code == 400


@pytest.mark.parametrize(
    "overrides",
    [
        {"nonce": "replayed"},
        {"aud": "someone-else"},
        {"iss": "http://evil.test"},
        {"exp": int(time.time()) - 3600},
    ],
)
def test_bad_id_token_rejects_login(client, upstream, overrides):
    upstream.id_token_overrides = overrides
    r = _login(client, upstream)
    assert r.status_code == 400
    assert client.get("/api/auth/status").json()["authenticated"] is False


def test_rejected_code_exchange(client, upstream):
    upstream.token_status = 400
    assert _login(client, upstream).status_code == 400


def test_unauthenticated_api_is_json_401(client):
    r = client.get("/api/auth/user")
    assert r.status_code == 401
    assert r.json()["error"] == "unauthorized"


def test_unauthenticated_page_redirects_to_login(client):
    r = client.get("/chat", follow_redirects=False)
    assert r.status_code == 302
    assert r.headers["location"] == LOGIN_PATH


def test_status_and_login_url_for_anonymous(client):
    assert client.get("/api/auth/status").json() == {"authenticated": False, "loginUrl": LOGIN_PATH}
    assert client.get("/api/auth/login-url").json() == {"loginUrl": LOGIN_PATH}


def test_tool_call_uses_service_token(client, upstream):
    _login(client, upstream)
    r = client.get("/api/tools/customers")
    assert r.status_code == 200
    assert r.json() == [{"id": "c-1", "name": "Ada"}]

    mcp_request = upstream.mcp_requests[0]
    assert mcp_request.url.path == "/mcp/customers"
    assert mcp_request.headers["authorization"] == "Bearer svc-token"
    assert upstream.service_token_requests == 1


def test_tool_call_downstream_failure_is_502(client, upstream):
    _login(client, upstream)
    upstream.mcp_status = 503
    r = client.get("/api/tools/customers")
    assert r.status_code == 502
    assert r.json()["error"] == "bad_gateway"


def test_logout_drops_session_and_user_tokens_only(client, upstream):
    _login(client, upstream)
    client.get("/api/tools/customers")
    cache = app.state.client_tokens.cache
    assert isinstance(cache.get(CLIENT_ID, "alice"), AuthorizedClient)

    r = client.get("/logout", follow_redirects=False)
    assert r.status_code == 302
    assert r.headers["location"] == "/"
    assert cache.get(CLIENT_ID, "alice") is None
    assert cache.get(MCP_REGISTRATION_ID, app.state.client_tokens.principal_name) is not None
    assert client.get("/api/auth/status").json()["authenticated"] is False
    assert client.get("/api/auth/user").status_code == 401


def test_logout_ends_the_users_other_sessions(client, upstream):
    _login(client, upstream)
    other_tab = TestClient(app)
    _login(other_tab, upstream)
    assert other_tab.get("/api/auth/status").json()["authenticated"] is True

    client.get("/logout", follow_redirects=False)
    assert other_tab.get("/api/auth/status").json()["authenticated"] is False
    assert other_tab.get("/api/auth/user").status_code == 401
    assert len(app.state.sessions) == 0


def test_tool_call_abandoned_when_browser_goes_away(client, upstream):
    _login(client, upstream)
    gone = threading.Event()
    upstream.on_service_token = gone.set
    app.dependency_overrides[request_cancellation] = lambda: gone
    try:
        r = client.get("/api/tools/customers")
    finally:
        app.dependency_overrides.pop(request_cancellation)
    assert r.status_code == 502
    assert upstream.mcp_requests == []
    manager = app.state.client_tokens
    assert manager.cache.get(MCP_REGISTRATION_ID, manager.principal_name).access_token == "svc-token"
