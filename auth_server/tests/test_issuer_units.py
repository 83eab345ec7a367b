"""
Unit tests for the pieces under the token endpoint: authorization status transitions,
PKCE, scope resolution, claim customization and the signing key ring.
"""
import hashlib
from base64 import urlsafe_b64encode
from datetime import datetime, timedelta, timezone

import jwt
import pytest

from auth_server import store
from auth_server.claims import ACCESS_TOKEN, ID_TOKEN, PrincipalView, customize_claims
from auth_server.database import SessionLocal, init_db
from auth_server.issuer import (
    AuthorizationStatus,
    effective_status,
    pkce_verify,
    resolve_scopes,
    transition,
)
from auth_server.keys import SigningKey, SigningKeyRing, generate_key, thumbprint
from auth_server.models import Authorization, AuthorizationToken, RegisteredClient
from auth_server.seed import register_user
from oauth_kit.errors import InvalidGrant, InvalidScope

NOW = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


def _segment(expires_in: int, invalidated: bool = False) -> AuthorizationToken:
    return AuthorizationToken(
        token_type=ACCESS_TOKEN,
        value_hash="x",
        issued_at=NOW.replace(tzinfo=None),
        expires_at=(NOW + timedelta(seconds=expires_in)).replace(tzinfo=None),
        invalidated=invalidated,
    )


# --- status transitions ---


def test_interactive_path_transitions():
    auth = Authorization(status=AuthorizationStatus.REQUESTED.value)
    transition(auth, AuthorizationStatus.CODE_ISSUED)
    transition(auth, AuthorizationStatus.TOKEN_ISSUED)
    transition(auth, AuthorizationStatus.REFRESHED)
    transition(auth, AuthorizationStatus.REFRESHED)
    assert auth.status == "REFRESHED"


def test_client_credentials_skips_code_issued():
    auth = Authorization(status=AuthorizationStatus.REQUESTED.value)
    transition(auth, AuthorizationStatus.TOKEN_ISSUED)
    assert auth.status == "TOKEN_ISSUED"


@pytest.mark.parametrize(
    "start, target",
    [
        (AuthorizationStatus.CODE_ISSUED, AuthorizationStatus.CODE_ISSUED),
        (AuthorizationStatus.TOKEN_ISSUED, AuthorizationStatus.TOKEN_ISSUED),
        (AuthorizationStatus.REQUESTED, AuthorizationStatus.REFRESHED),
        (AuthorizationStatus.EXPIRED, AuthorizationStatus.REFRESHED),
    ],
)
def test_illegal_transitions_are_invalid_grant(start, target):
    auth = Authorization(status=start.value)
    with pytest.raises(InvalidGrant):
        transition(auth, target)
    assert auth.status == start.value


def test_effective_status_expires_when_no_live_segment():
    auth = Authorization(status="TOKEN_ISSUED", segments=[_segment(60), _segment(600, invalidated=True)])
    assert effective_status(auth, NOW) == AuthorizationStatus.TOKEN_ISSUED
    assert effective_status(auth, NOW + timedelta(seconds=120)) == AuthorizationStatus.EXPIRED


def test_effective_status_keeps_pending_states():
    auth = Authorization(status="CODE_ISSUED", segments=[])
    assert effective_status(auth, NOW) == AuthorizationStatus.CODE_ISSUED


# --- PKCE and scopes ---


def test_pkce_s256_only():
    verifier = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"
    challenge = urlsafe_b64encode(hashlib.sha256(verifier.encode()).digest()).rstrip(b"=").decode()
    assert challenge == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"
    assert pkce_verify(verifier, challenge, "S256")
    assert not pkce_verify(verifier, challenge, "plain")
    assert not pkce_verify(verifier, verifier, "plain")
    assert not pkce_verify("other", challenge, "S256")


def test_resolve_scopes():
    client = RegisteredClient(client_id="c", scopes="backend.read backend.write")
    assert resolve_scopes(client, None) == {"backend.read", "backend.write"}
    assert resolve_scopes(client, "  backend.read ") == {"backend.read"}
    with pytest.raises(InvalidScope):
        resolve_scopes(client, "backend.read admin")


# --- claims ---


def test_access_token_claims_merge_authorities_and_scopes():
    principal = PrincipalView(
        name="alice",
        authorities=frozenset({"ROLE_USER", "ROLE_ADMIN"}),
        granted_scopes=frozenset({"openid", "chat.read"}),
    )
    assert customize_claims(ACCESS_TOKEN, principal) == {
        "authorities": ["ROLE_ADMIN", "ROLE_USER", "chat.read", "openid"],
        "roles": ["ROLE_ADMIN", "ROLE_USER"],
    }


def test_service_access_token_has_no_roles():
    principal = PrincipalView(name="mcp-server", granted_scopes=frozenset({"backend.read"}))
    assert customize_claims(ACCESS_TOKEN, principal) == {"authorities": ["backend.read"]}


def test_id_token_claims_follow_scope():
    principal = PrincipalView(
        name="alice",
        authorities=frozenset({"ROLE_USER", "chat.read"}),
        granted_scopes=frozenset({"openid", "email"}),
        email="alice@example.com",
        full_name="Alice",
    )
    assert customize_claims(ID_TOKEN, principal) == {
        "preferred_username": "alice",
        "roles": ["ROLE_USER"],
        "email": "alice@example.com",
    }


def test_unknown_token_type_gets_no_claims():
    assert customize_claims("authorization_code", PrincipalView(name="x")) == {}


# --- keys ---


def test_thumbprint_matches_pyjwt_jwk():
    key = SigningKey(generate_key())
    jwk = jwt.PyJWK.from_dict(key.public_jwk())
    assert jwk.key_id == key.kid == thumbprint(key.private_key.public_key())


def test_key_ring_publishes_retired_keys_and_signs_with_current():
    old = SigningKey(generate_key())
    ring = SigningKeyRing(old)
    new = ring.rotate()
    assert [k["kid"] for k in ring.jwks()["keys"]] == [new.kid, old.kid]

    token = ring.sign({"sub": "x"})
    header = jwt.get_unverified_header(token)
    assert header["kid"] == new.kid
    assert header["alg"] == "RS256"
    assert jwt.decode(token, new.private_key.public_key(), algorithms=["RS256"])["sub"] == "x"


def test_key_ring_load_persists_generated_key(tmp_path):
    path = tmp_path / "signing.pem"
    first = SigningKeyRing.load(str(path))
    assert path.exists()
    second = SigningKeyRing.load(str(path), [str(tmp_path / "missing.pem")])
    assert second.current.kid == first.current.kid
    assert second.retired == ()


def test_key_ring_load_retired(tmp_path):
    old_path = tmp_path / "old.pem"
    old = SigningKeyRing.load(str(old_path))
    ring = SigningKeyRing.load(str(tmp_path / "new.pem"), [str(old_path)])
    assert {k["kid"] for k in ring.jwks()["keys"]} == {ring.current.kid, old.current.kid}


# --- principal store ---


def test_set_authorities_replaces_set():
    init_db()
    db = SessionLocal()
    try:
        register_user(db, "dave", "pw", ["ROLE_USER"])
        user = store.set_authorities(db, "dave", ["ROLE_ADMIN", "backend.read", "ROLE_ADMIN"])
        assert user.authority_names == {"ROLE_ADMIN", "backend.read"}
        with pytest.raises(LookupError):
            store.set_authorities(db, "nobody", ["ROLE_USER"])
    finally:
        db.close()
