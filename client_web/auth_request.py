"""
Authorization request for login initiation: state, nonce and PKCE (RFC 7636, S256 only).
Between the redirect to the AS and the callback the request lives in a short-lived
HS256-signed cookie, so no server-side flow store is needed.
"""
import hashlib
import logging
import secrets
import time
from base64 import urlsafe_b64encode
from dataclasses import dataclass
from urllib.parse import urlencode

import jwt
from fastapi import Request
from fastapi.responses import Response

logger = logging.getLogger(__name__)


def generate_state() -> str:
    """Opaque value for CSRF protection; returned in callback."""
    return secrets.token_urlsafe(32)


def generate_nonce() -> str:
    """Random value binding the ID token to this login."""
    return secrets.token_urlsafe(32)


def generate_pkce() -> tuple[str, str]:
    """
    Generate code_verifier and code_challenge (S256).
    Returns (code_verifier, code_challenge). Verifier is 43 chars (256 bits entropy).
    """
    code_verifier = secrets.token_urlsafe(32)
    return code_verifier, code_challenge_for(code_verifier)


def code_challenge_for(code_verifier: str) -> str:
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    return urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


@dataclass(frozen=True)
class AuthorizationRequest:
    state: str
    nonce: str
    code_verifier: str
    redirect_uri: str
    scope: str

    @classmethod
    def new(cls, redirect_uri: str, scope: str) -> "AuthorizationRequest":
        code_verifier, _ = generate_pkce()
        return cls(
            state=generate_state(),
            nonce=generate_nonce(),
            code_verifier=code_verifier,
            redirect_uri=redirect_uri,
            scope=scope,
        )

    @property
    def code_challenge(self) -> str:
        return code_challenge_for(self.code_verifier)


def build_authorize_url(authorization_uri: str, client_id: str, auth_request: AuthorizationRequest) -> str:
    """Build AS /oauth2/authorize URL with required and optional params."""
    params = {
        "response_type": "code",
        "client_id": client_id,
        "redirect_uri": auth_request.redirect_uri,
        "scope": auth_request.scope,
        "state": auth_request.state,
        "code_challenge": auth_request.code_challenge,
        "code_challenge_method": "S256",
        "nonce": auth_request.nonce,
    }
    return f"{authorization_uri}?{urlencode(params)}"


class CookieAuthorizationRequestRepository:
    """Saves, loads and removes the pending authorization request as a signed cookie."""

    def __init__(self, secret: str, cookie_name: str, max_age_seconds: int = 180, secure: bool = False):
        self._secret = secret
        self.cookie_name = cookie_name
        self._max_age = max_age_seconds
        self._secure = secure

    def save(self, response: Response, auth_request: AuthorizationRequest) -> None:
        now = int(time.time())
        value = jwt.encode(
            {
                "state": auth_request.state,
                "nonce": auth_request.nonce,
                "code_verifier": auth_request.code_verifier,
                "redirect_uri": auth_request.redirect_uri,
                "scope": auth_request.scope,
                "iat": now,
                "exp": now + self._max_age,
            },
            self._secret,
            algorithm="HS256",
        )
        response.set_cookie(
            self.cookie_name,
            value,
            max_age=self._max_age,
            path="/",
            httponly=True,
            samesite="lax",
            secure=self._secure,
        )

    def load(self, request: Request) -> AuthorizationRequest | None:
        value = request.cookies.get(self.cookie_name)
        if not value:
            return None
        try:
            data = jwt.decode(value, self._secret, algorithms=["HS256"], options={"require": ["exp"]})
        except jwt.InvalidTokenError as e:
            logger.info("Discarding authorization request cookie: %s", e)
            return None
        try:
            return AuthorizationRequest(
                state=data["state"],
                nonce=data["nonce"],
                code_verifier=data["code_verifier"],
                redirect_uri=data["redirect_uri"],
                scope=data["scope"],
            )
        except KeyError:
            return None

    def remove(self, response: Response) -> None:
        response.delete_cookie(self.cookie_name, path="/", httponly=True, samesite="lax", secure=self._secure)
