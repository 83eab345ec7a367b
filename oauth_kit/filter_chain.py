"""
Ordered security filter chains, evaluated in priority order.
The first chain whose matcher covers the request path authenticates the request
(bearer token, session, or nothing) and asks its policy engine for a decision.
Register with: app.middleware("http")(SecurityFilter([...]))
"""
import logging
import re
from dataclasses import dataclass, field
from typing import Callable, Sequence

from fastapi import Request
from fastapi.responses import Response
from starlette.concurrency import run_in_threadpool

from oauth_kit.errors import AuthenticationRequired, InsufficientAuthority, InvalidToken, error_response
from oauth_kit.policy import Decision, PolicyEngine, compile_glob, normalize_path
from oauth_kit.validator import ValidatedClaims

logger = logging.getLogger(__name__)

Authenticator = Callable[[Request], ValidatedClaims | None]
EntryPoint = Callable[[Request, Decision], Response]


def anonymous_authenticator(request: Request) -> ValidatedClaims | None:
    return None


def bearer_authenticator_using(validator_attr: str) -> Authenticator:
    """
    Authenticator validating `Authorization: Bearer <jwt>` with app.state.<validator_attr>.
    No header -> anonymous; a malformed header or bad token -> InvalidToken.
    """

    def authenticate(request: Request) -> ValidatedClaims | None:
        header = request.headers.get("Authorization")
        if not header:
            return None
        scheme, _, token = header.strip().partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            raise InvalidToken("authorization header is not a bearer token")
        return getattr(request.app.state, validator_attr).validate(token.strip())

    return authenticate


bearer_authenticator = bearer_authenticator_using("token_validator")


def json_entry_point(request: Request, decision: Decision) -> Response:
    if decision.status == 403:
        return error_response(InsufficientAuthority())
    return error_response(AuthenticationRequired())


@dataclass(frozen=True)
class FilterChain:
    name: str
    policy: PolicyEngine
    matcher: tuple[str, ...] = ()  # path globs; empty = every path
    authenticator: Authenticator = anonymous_authenticator
    entry_point: EntryPoint = json_entry_point
    _regexes: tuple[re.Pattern, ...] = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "_regexes", tuple(compile_glob(p) for p in self.matcher))

    def covers(self, path: str) -> bool:
        if not self._regexes:
            return True
        return any(r.match(path) for r in self._regexes)


class SecurityFilter:
    def __init__(self, chains: Sequence[FilterChain]):
        self.chains = tuple(chains)

    def select(self, path: str) -> FilterChain | None:
        path = normalize_path(path)
        for chain in self.chains:
            if chain.covers(path):
                return chain
        return None

    async def __call__(self, request: Request, call_next):
        method, path = request.method, request.url.path
        chain = self.select(path)
        if chain is None:
            logger.warning("No filter chain covers %s %s; denying", method, path)
            return error_response(AuthenticationRequired())

        try:
            authentication = await run_in_threadpool(chain.authenticator, request)
        except InvalidToken as e:
            logger.info("Rejected credentials on %s %s (chain=%s): %s", method, path, chain.name, e.reason)
            return error_response(e)

        authorities = authentication.authorities if authentication is not None else None
        decision = chain.policy.decide(method, path, authorities)
        if not decision.allowed:
            logger.info(
                "Denied %s %s (chain=%s rule=%s status=%d): %s",
                method,
                path,
                chain.name,
                decision.rule,
                decision.status,
                decision.reason,
            )
            return chain.entry_point(request, decision)

        request.state.authentication = authentication
        return await call_next(request)


def current_authentication(request: Request) -> ValidatedClaims:
    """Dependency: the authentication established by the filter chain."""
    authentication = getattr(request.state, "authentication", None)
    if authentication is None:
        raise AuthenticationRequired()
    return authentication
