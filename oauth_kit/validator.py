"""
Bearer token validation via the issuer's JWKS.
Checks structure, RS256 signature (by kid), exp with leeway, iss and optionally aud,
then maps scope/scp and roles claims onto a flat authority set.
"""
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable

import httpx
import jwt
from jwt import PyJWK, PyJWKSet

from oauth_kit.errors import InvalidToken

logger = logging.getLogger(__name__)

ALGORITHMS = ["RS256"]


def jwks_fetcher(jwks_uri: str, timeout: float = 5.0) -> Callable[[], dict]:
    """Return a callable that GETs the JWKS document from the issuer."""

    def fetch() -> dict:
        r = httpx.get(jwks_uri, headers={"Accept": "application/json"}, timeout=timeout)
        r.raise_for_status()
        return r.json()

    return fetch


def _index_keys(jwks: dict) -> dict[str, PyJWK]:
    keys = {}
    for jwk in PyJWKSet.from_dict(jwks).keys:
        if jwk.key_id:
            keys[jwk.key_id] = jwk
    return keys


class KeySetCache:
    """
    JWKS cache with a TTL. Readers take an immutable snapshot without locking;
    refetches are serialized and coalesced through a generation counter, so a burst
    of misses (expired TTL or unknown kid) produces a single fetch.
    Forced refetches for unknown kids happen at most once per `refetch_cooldown_seconds`;
    within the cooldown an unknown kid is rejected from the cached set.
    """

    def __init__(
        self,
        fetch_jwks: Callable[[], dict],
        ttl_seconds: float = 300,
        clock: Callable[[], float] = time.monotonic,
        refetch_cooldown_seconds: float = 10,
    ):
        self._fetch = fetch_jwks
        self._ttl = ttl_seconds
        self._clock = clock
        self._cooldown = refetch_cooldown_seconds
        self._forced_at: float | None = None
        self._lock = threading.Lock()
        # (keys by kid, fetched_at or None, generation); replaced as a whole
        self._state: tuple[dict[str, PyJWK], float | None, int] = ({}, None, 0)

    def get_key(self, kid: str) -> PyJWK | None:
        keys, fetched_at, generation = self._state
        refreshed = False
        if fetched_at is None or self._clock() - fetched_at >= self._ttl:
            keys, generation = self._refresh(generation)
            refreshed = True
        key = keys.get(kid)
        if key is None and not refreshed:
            # Possibly a freshly rotated key: one forced refetch before rejecting
            logger.info("kid %s not in cached JWKS; refetching", kid)
            keys, _ = self._refresh(generation, forced=True)
            key = keys.get(kid)
        return key

    def _refresh(self, seen_generation: int, forced: bool = False) -> tuple[dict[str, PyJWK], int]:
        with self._lock:
            keys, _, generation = self._state
            if generation != seen_generation:
                return keys, generation
            if forced:
                now = self._clock()
                if self._forced_at is not None and now - self._forced_at < self._cooldown:
                    logger.debug("Forced JWKS refetch skipped; last one %.1fs ago", now - self._forced_at)
                    return keys, generation
                self._forced_at = now
            try:
                fresh = _index_keys(self._fetch())
            except (httpx.HTTPError, ValueError, jwt.PyJWKSetError) as e:
                logger.warning("JWKS fetch failed: %s; keeping %d cached key(s)", e, len(keys))
                # Back off until the next TTL window instead of refetching per request
                self._state = (keys, self._clock(), generation)
                return keys, generation
            generation += 1
            self._state = (fresh, self._clock(), generation)
            logger.debug("Loaded %d signing key(s) from JWKS (generation %d)", len(fresh), generation)
            return fresh, generation


def parse_scope_claim(claims: dict) -> frozenset[str]:
    """Scopes from `scope` (space-delimited) or `scp` (array or string)."""
    value = claims.get("scope", claims.get("scp"))
    if value is None:
        return frozenset()
    if isinstance(value, (list, tuple)):
        return frozenset(str(s) for s in value if s)
    return frozenset(str(value).split())


@dataclass(frozen=True)
class ValidatedClaims:
    subject: str
    scopes: frozenset[str]
    authorities: frozenset[str]
    claims: dict = field(default_factory=dict, compare=False, repr=False)

    @property
    def username(self) -> str:
        return self.claims.get("preferred_username") or self.subject

    @property
    def roles(self) -> list[str]:
        return sorted(a for a in self.authorities if a.startswith("ROLE_"))


class TokenValidator:
    """
    `audience`: when set, a token carrying `aud` must list it. Tokens without `aud` pass
    unless `require_audience` is True (ID tokens, hop-specific service tokens).
    """

    def __init__(
        self,
        issuer: str,
        keys: KeySetCache,
        *,
        audience: str | None = None,
        require_audience: bool = False,
        leeway_seconds: int = 60,
        require_scope: bool = True,
    ):
        self.issuer = issuer
        self.audience = audience
        self._keys = keys
        self._require_audience = require_audience
        self._leeway = leeway_seconds
        self._require_scope = require_scope

    def validate(self, token: str) -> ValidatedClaims:
        """Return validated claims or raise InvalidToken (reason is for logs only)."""
        if not token or token.count(".") != 2 or not all(token.split(".")):
            raise InvalidToken("malformed token")
        try:
            header = jwt.get_unverified_header(token)
        except jwt.DecodeError:
            raise InvalidToken("malformed header")
        alg = header.get("alg")
        if alg not in ALGORITHMS:
            raise InvalidToken(f"unsupported alg {alg!r}")
        kid = header.get("kid")
        if not kid:
            raise InvalidToken("missing kid")
        key = self._keys.get_key(kid)
        if key is None:
            raise InvalidToken(f"unknown kid {kid!r}")

        try:
            claims = jwt.decode(
                token,
                key.key,
                algorithms=ALGORITHMS,
                issuer=self.issuer,
                leeway=self._leeway,
                options={
                    "require": ["exp", "iat", "iss", "sub"],
                    "verify_aud": False,
                },
            )
        except jwt.ExpiredSignatureError:
            raise InvalidToken("expired")
        except jwt.InvalidIssuerError:
            raise InvalidToken("issuer mismatch")
        except jwt.InvalidSignatureError:
            raise InvalidToken("signature verification failed")
        except jwt.MissingRequiredClaimError as e:
            raise InvalidToken(f"missing claim {e.claim}")
        except jwt.InvalidTokenError as e:
            raise InvalidToken(f"invalid token: {e}")

        self._check_audience(claims.get("aud"))
        if self._require_scope and "scope" not in claims and "scp" not in claims:
            raise InvalidToken("missing scope claim")

        scopes = parse_scope_claim(claims)
        roles = claims.get("roles") or []
        if isinstance(roles, str):
            roles = roles.split()
        # Scope values are used verbatim as authorities, next to role names
        authorities = scopes | frozenset(str(r) for r in roles)
        return ValidatedClaims(
            subject=str(claims["sub"]),
            scopes=scopes,
            authorities=authorities,
            claims=claims,
        )

    def _check_audience(self, aud) -> None:
        if self.audience is None:
            return
        if aud is None:
            if self._require_audience:
                raise InvalidToken("missing claim aud")
            return
        audiences = [aud] if isinstance(aud, str) else list(aud)
        if self.audience not in audiences:
            raise InvalidToken("audience mismatch")
