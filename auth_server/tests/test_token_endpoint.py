"""
Tests for POST /oauth2/token (client_credentials) and the well-known endpoints.
"""
import jwt
import pytest
from fastapi.testclient import TestClient

from auth_server.config import BACKEND_AUDIENCE, ISSUER
from auth_server.main import app
from auth_server.rate_limit import token_limiter
from auth_server.seed import default_clients


@pytest.fixture
def client():
    token_limiter.reset()
    with TestClient(app) as c:
        yield c


def _error(r) -> str | None:
    return (r.json().get("detail") or r.json()).get("error")


def _decode(client, token: str, audience: str | None = None) -> dict:
    jwks = jwt.PyJWKSet.from_dict(client.get("/oauth2/jwks").json())
    kid = jwt.get_unverified_header(token)["kid"]
    key = next(k for k in jwks.keys if k.key_id == kid)
    return jwt.decode(
        token,
        key.key,
        algorithms=["RS256"],
        issuer=ISSUER,
        audience=audience,
        options={"verify_aud": audience is not None},
    )


def test_jwks_publishes_current_key(client):
    r = client.get("/oauth2/jwks")
    assert r.status_code == 200
    keys = r.json()["keys"]
    assert len(keys) >= 1
    key = keys[0]
    assert key["kty"] == "RSA"
    assert key["alg"] == "RS256"
    assert key["use"] == "sig"
    assert key["kid"]
    assert "n" in key and "e" in key
    assert "d" not in key


def test_openid_configuration(client):
    r = client.get("/.well-known/openid-configuration")
    assert r.status_code == 200
    data = r.json()
    assert data["issuer"] == ISSUER
    assert data["token_endpoint"] == f"{ISSUER}/oauth2/token"
    assert data["authorization_endpoint"] == f"{ISSUER}/oauth2/authorize"
    assert data["jwks_uri"] == f"{ISSUER}/oauth2/jwks"
    assert "client_credentials" in data["grant_types_supported"]
    assert "password" not in data["grant_types_supported"]
    assert data["code_challenge_methods_supported"] == ["S256"]


def test_client_credentials_with_test_client_grants_backend_scopes(client):
    r = client.post(
        "/oauth2/token",
        data={"grant_type": "client_credentials"},
        auth=("test-client", "test-secret"),
    )
    assert r.status_code == 200
    assert r.headers["cache-control"] == "no-store"
    body = r.json()
    assert body["token_type"] == "Bearer"
    assert body["expires_in"] == 3600
    assert set(body["scope"].split()) == {"backend.read", "backend.write"}
    assert "refresh_token" not in body
    assert "id_token" not in body

    claims = _decode(client, body["access_token"], audience=BACKEND_AUDIENCE)
    assert claims["sub"] == "test-client"
    assert claims["iss"] == ISSUER
    assert claims["jti"]
    assert set(claims["scope"].split()) == {"backend.read", "backend.write"}
    assert set(claims["authorities"]) == {"backend.read", "backend.write"}
    assert "roles" not in claims
    assert claims["exp"] - claims["iat"] == 3600


def test_client_credentials_grants_requested_subset(client):
    r = client.post(
        "/oauth2/token",
        data={"grant_type": "client_credentials", "scope": "backend.read"},
        auth=("test-client", "test-secret"),
    )
    assert r.status_code == 200
    assert r.json()["scope"] == "backend.read"
    assert _decode(client, r.json()["access_token"])["scope"] == "backend.read"


def test_client_credentials_rejects_unregistered_scope(client):
    r = client.post(
        "/oauth2/token",
        data={"grant_type": "client_credentials", "scope": "backend.read mcp.write"},
        auth=("test-client", "test-secret"),
    )
    assert r.status_code == 400
    assert _error(r) == "invalid_scope"


def test_client_credentials_via_form_parameters(client):
    r = client.post(
        "/oauth2/token",
        data={
            "grant_type": "client_credentials",
            "client_id": "mcp-client",
            "client_secret": "mcp-client-secret",
        },
    )
    assert r.status_code == 200
    claims = _decode(client, r.json()["access_token"])
    assert claims["aud"] == "resos-mcp-server"
    assert set(claims["scope"].split()) == {"mcp.read", "mcp.write"}


def test_wrong_secret_is_invalid_client(client):
    r = client.post(
        "/oauth2/token",
        data={"grant_type": "client_credentials"},
        auth=("test-client", "not-the-secret"),
    )
    assert r.status_code == 401
    assert _error(r) == "invalid_client"
    assert "www-authenticate" in r.headers


def test_unknown_client_is_invalid_client(client):
    r = client.post(
        "/oauth2/token",
        data={"grant_type": "client_credentials"},
        auth=("nobody", "whatever"),
    )
    assert r.status_code == 401
    assert _error(r) == "invalid_client"


def test_missing_client_is_invalid_client(client):
    r = client.post("/oauth2/token", data={"grant_type": "client_credentials"})
    assert r.status_code == 401
    assert _error(r) == "invalid_client"


def test_password_grant_is_unsupported(client):
    r = client.post(
        "/oauth2/token",
        data={"grant_type": "password", "username": "u", "password": "p"},
        auth=("test-client", "test-secret"),
    )
    assert r.status_code == 400
    assert _error(r) == "unsupported_grant_type"


def test_grant_not_registered_for_client_is_unauthorized_client(client):
    r = client.post(
        "/oauth2/token",
        data={"grant_type": "refresh_token", "refresh_token": "x"},
        auth=("test-client", "test-secret"),
    )
    assert r.status_code == 400
    assert _error(r) == "unauthorized_client"


def test_public_client_cannot_use_client_credentials(client):
    r = client.post(
        "/oauth2/token",
        data={"grant_type": "client_credentials", "client_id": "frontend-app"},
    )
    assert r.status_code == 400
    assert _error(r) == "unauthorized_client"


def test_missing_grant_type_is_invalid_request(client):
    r = client.post("/oauth2/token", data={}, auth=("test-client", "test-secret"))
    assert r.status_code == 400
    assert _error(r) == "invalid_request"


def test_token_endpoint_rate_limit(client, monkeypatch):
    monkeypatch.setattr("auth_server.token_endpoint.RATE_LIMIT_TOKEN_PER_MINUTE", 2)
    for _ in range(2):
        r = client.post("/oauth2/token", data={"grant_type": "client_credentials"}, auth=("test-client", "test-secret"))
        assert r.status_code == 200
    r = client.post("/oauth2/token", data={"grant_type": "client_credentials"}, auth=("test-client", "test-secret"))
    assert r.status_code == 429
    assert int(r.headers["retry-after"]) >= 1


def test_seed_reads_the_env_names_the_callers_use(monkeypatch):
    # client_web reads MCP_CLIENT_SECRET and FRONTEND_APP_CLIENT_ID; mcp_server reads MCP_SERVER_CLIENT_SECRET
    monkeypatch.setenv("MCP_CLIENT_SECRET", "rotated-mcp-client")
    monkeypatch.setenv("MCP_SERVER_CLIENT_SECRET", "rotated-mcp-server")
    monkeypatch.setenv("FRONTEND_APP_CLIENT_ID", "chat-ui")
    by_name = {c["client_name"]: c for c in default_clients()}
    assert by_name["Chat front end (service)"]["client_secret"] == "rotated-mcp-client"
    assert by_name["MCP server"]["client_secret"] == "rotated-mcp-server"
    assert by_name["Chat front end"]["client_id"] == "chat-ui"
