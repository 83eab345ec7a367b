"""
Tests for TokenValidator and the JWKS KeySetCache (TTL, forced refetch on unknown kid,
coalesced refetches, stale keys kept when the issuer is unreachable).
"""
import threading
import time

import httpx
import jwt
import pytest
from cryptography.hazmat.primitives.asymmetric import rsa
from jwt.algorithms import RSAAlgorithm

from oauth_kit.errors import InvalidToken
from oauth_kit.validator import KeySetCache, TokenValidator, jwks_fetcher, parse_scope_claim

ISSUER = "http://issuer.test"


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class Issuer:
    """Signs tokens and serves a JWKS document; counts fetches."""

    def __init__(self):
        self.keys = {}
        self.fetches = 0
        self.fail = False
        self.delay = 0.0
        self.add_key("k1")

    def add_key(self, kid: str):
        self.keys[kid] = rsa.generate_private_key(public_exponent=65537, key_size=2048)

    def jwks(self) -> dict:
        self.fetches += 1
        if self.delay:
            time.sleep(self.delay)
        if self.fail:
            raise httpx.ConnectError("issuer down")
        keys = []
        for kid, private in self.keys.items():
            jwk = RSAAlgorithm.to_jwk(private.public_key(), as_dict=True)
            jwk.update(kid=kid, alg="RS256", use="sig")
            keys.append(jwk)
        return {"keys": keys}

    def sign(self, kid: str = "k1", **overrides) -> str:
        now = int(time.time())
        payload = {"iss": ISSUER, "sub": "svc", "iat": now, "exp": now + 300, "scope": "backend.read"}
        payload.update(overrides)
        payload = {k: v for k, v in payload.items() if v is not None}
        return jwt.encode(payload, self.keys[kid], algorithm="RS256", headers={"kid": kid})


@pytest.fixture
def issuer():
    return Issuer()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(issuer, clock):
    return KeySetCache(issuer.jwks, ttl_seconds=300, clock=clock)


# --- KeySetCache ---


def test_cache_fetches_once_within_ttl(issuer, cache, clock):
    assert cache.get_key("k1") is not None
    clock.now += 299
    assert cache.get_key("k1") is not None
    assert issuer.fetches == 1


def test_cache_refetches_after_ttl(issuer, cache, clock):
    cache.get_key("k1")
    clock.now += 300
    cache.get_key("k1")
    assert issuer.fetches == 2


def test_unknown_kid_forces_one_refetch(issuer, cache, clock):
    cache.get_key("k1")
    issuer.add_key("k2")
    assert cache.get_key("k2") is not None
    assert issuer.fetches == 2

    clock.now += 10
    assert cache.get_key("nope") is None
    assert issuer.fetches == 3


def test_forced_refetches_are_rate_limited(issuer, cache, clock):
    cache.get_key("k1")
    assert cache.get_key("random-1") is None
    assert issuer.fetches == 2
    # A stream of made-up kids inside the cooldown never reaches the issuer
    for i in range(20):
        clock.now += 0.4
        assert cache.get_key(f"random-{i + 2}") is None
    assert issuer.fetches == 2
    assert cache.get_key("k1") is not None

    clock.now += 2
    issuer.add_key("k2")
    assert cache.get_key("k2") is not None
    assert issuer.fetches == 3


def test_zero_cooldown_refetches_every_unknown_kid(issuer, clock):
    cache = KeySetCache(issuer.jwks, ttl_seconds=300, clock=clock, refetch_cooldown_seconds=0)
    cache.get_key("k1")
    cache.get_key("x")
    cache.get_key("y")
    assert issuer.fetches == 3


def test_stale_keys_kept_when_issuer_unreachable(issuer, cache, clock):
    cache.get_key("k1")
    issuer.fail = True
    clock.now += 301
    assert cache.get_key("k1") is not None
    # The failed attempt counts as this window's fetch
    clock.now += 10
    assert cache.get_key("k1") is not None
    assert issuer.fetches == 2


def test_concurrent_misses_coalesce_into_one_fetch(issuer, cache):
    issuer.delay = 0.2
    barrier = threading.Barrier(8)
    found = []

    def worker():
        barrier.wait()
        found.append(cache.get_key("k1") is not None)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=5)

    assert found == [True] * 8
    assert issuer.fetches == 1


def test_jwks_fetcher_uses_http(monkeypatch):
    seen = {}

    def fake_get(url, headers=None, timeout=None):
        seen["url"] = url
        return httpx.Response(200, json={"keys": []}, request=httpx.Request("GET", url))

    monkeypatch.setattr(httpx, "get", fake_get)
    assert jwks_fetcher("http://issuer.test/oauth2/jwks")() == {"keys": []}
    assert seen["url"] == "http://issuer.test/oauth2/jwks"


# --- TokenValidator ---


def test_valid_token_maps_scopes_and_roles(issuer, cache):
    validator = TokenValidator(ISSUER, cache)
    claims = validator.validate(issuer.sign(scope="backend.read backend.write", roles=["ROLE_USER"]))
    assert claims.subject == "svc"
    assert claims.scopes == {"backend.read", "backend.write"}
    assert claims.authorities == {"backend.read", "backend.write", "ROLE_USER"}
    assert claims.roles == ["ROLE_USER"]
    assert claims.username == "svc"


def test_scp_claim_is_accepted(issuer, cache):
    validator = TokenValidator(ISSUER, cache)
    claims = validator.validate(issuer.sign(scope=None, scp=["mcp.read"]))
    assert claims.scopes == {"mcp.read"}


def test_parse_scope_claim_forms():
    assert parse_scope_claim({"scope": "a b"}) == {"a", "b"}
    assert parse_scope_claim({"scp": "a"}) == {"a"}
    assert parse_scope_claim({}) == frozenset()


@pytest.mark.parametrize(
    "overrides",
    [
        {"exp": int(time.time()) - 3600},
        {"iss": "http://other.test"},
        {"sub": None},
        {"scope": None},
    ],
)
def test_rejected_claims(issuer, cache, overrides):
    with pytest.raises(InvalidToken):
        TokenValidator(ISSUER, cache).validate(issuer.sign(**overrides))


def test_expiry_within_leeway_is_accepted(issuer, cache):
    token = issuer.sign(exp=int(time.time()) - 30)
    assert TokenValidator(ISSUER, cache, leeway_seconds=60).validate(token).subject == "svc"
    with pytest.raises(InvalidToken):
        TokenValidator(ISSUER, cache, leeway_seconds=0).validate(token)


@pytest.mark.parametrize("token", ["", "abc", "a.b", "a..c", "x.y.z"])
def test_malformed_tokens(cache, token):
    with pytest.raises(InvalidToken):
        TokenValidator(ISSUER, cache).validate(token)


def test_unsigned_and_symmetric_tokens_rejected(cache):
    now = int(time.time())
    payload = {"iss": ISSUER, "sub": "svc", "iat": now, "exp": now + 60, "scope": "x"}
    validator = TokenValidator(ISSUER, cache)
    with pytest.raises(InvalidToken):
        validator.validate(jwt.encode(payload, None, algorithm="none", headers={"kid": "k1"}))
    with pytest.raises(InvalidToken):
        validator.validate(jwt.encode(payload, "s" * 32, algorithm="HS256", headers={"kid": "k1"}))


def test_missing_or_unknown_kid(issuer, cache):
    validator = TokenValidator(ISSUER, cache)
    now = int(time.time())
    no_kid = jwt.encode({"iss": ISSUER, "sub": "svc", "iat": now, "exp": now + 60, "scope": ""}, issuer.keys["k1"], algorithm="RS256")
    with pytest.raises(InvalidToken) as exc:
        validator.validate(no_kid)
    assert exc.value.reason == "missing kid"

    issuer.add_key("k9")
    token = issuer.sign(kid="k9")
    del issuer.keys["k9"]
    with pytest.raises(InvalidToken) as exc:
        validator.validate(token)
    assert exc.value.reason.startswith("unknown kid")


def test_audience_checked_when_present(issuer, cache):
    validator = TokenValidator(ISSUER, cache, audience="resos-backend")
    assert validator.validate(issuer.sign(aud="resos-backend")).subject == "svc"
    assert validator.validate(issuer.sign(aud=["x", "resos-backend"])).subject == "svc"
    assert validator.validate(issuer.sign()).subject == "svc"
    with pytest.raises(InvalidToken) as exc:
        validator.validate(issuer.sign(aud="resos-mcp-server"))
    assert exc.value.reason == "audience mismatch"


def test_required_audience(issuer, cache):
    validator = TokenValidator(ISSUER, cache, audience="frontend-app", require_audience=True, require_scope=False)
    assert validator.validate(issuer.sign(aud="frontend-app", scope=None)).subject == "svc"
    with pytest.raises(InvalidToken):
        validator.validate(issuer.sign(scope=None))


def test_public_description_never_reveals_reason(issuer, cache):
    with pytest.raises(InvalidToken) as exc:
        TokenValidator(ISSUER, cache).validate(issuer.sign(iss="http://other.test"))
    assert exc.value.reason == "issuer mismatch"
    assert exc.value.to_dict() == {"error": "invalid_token", "error_description": "Invalid or expired token"}
