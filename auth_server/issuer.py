"""
Token issuance: client_credentials, authorization_code (+PKCE) and refresh_token grants.
Every grant is an Authorization row whose status moves
REQUESTED -> CODE_ISSUED (interactive only) -> TOKEN_ISSUED -> REFRESHED*; EXPIRED is derived.
Callers authenticate the client first (client_auth.require_client_auth).
"""
import hashlib
import logging
import secrets
import uuid
from base64 import urlsafe_b64encode
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable

from sqlalchemy.orm import Session

from auth_server import store
from auth_server.claims import ACCESS_TOKEN, ID_TOKEN, PrincipalView, customize_claims
from auth_server.config import CODE_TTL_SECONDS, ISSUER
from auth_server.keys import SigningKeyRing
from auth_server.models import Authorization, RegisteredClient, User
from oauth_kit.errors import (
    InvalidGrant,
    InvalidRequest,
    InvalidScope,
    UnauthorizedClient,
    UnsupportedGrantType,
)

logger = logging.getLogger(__name__)

GRANT_CLIENT_CREDENTIALS = "client_credentials"
GRANT_AUTHORIZATION_CODE = "authorization_code"
GRANT_REFRESH_TOKEN = "refresh_token"
SUPPORTED_GRANT_TYPES = (GRANT_CLIENT_CREDENTIALS, GRANT_AUTHORIZATION_CODE, GRANT_REFRESH_TOKEN)

# Token segment types
AUTHORIZATION_CODE = "authorization_code"
REFRESH_TOKEN = "refresh_token"


class AuthorizationStatus(str, Enum):
    REQUESTED = "REQUESTED"
    CODE_ISSUED = "CODE_ISSUED"
    TOKEN_ISSUED = "TOKEN_ISSUED"
    REFRESHED = "REFRESHED"
    EXPIRED = "EXPIRED"


_TRANSITIONS = {
    AuthorizationStatus.REQUESTED: {AuthorizationStatus.CODE_ISSUED, AuthorizationStatus.TOKEN_ISSUED},
    AuthorizationStatus.CODE_ISSUED: {AuthorizationStatus.TOKEN_ISSUED},
    AuthorizationStatus.TOKEN_ISSUED: {AuthorizationStatus.REFRESHED},
    AuthorizationStatus.REFRESHED: {AuthorizationStatus.REFRESHED},
    AuthorizationStatus.EXPIRED: set(),
}


def transition(authorization: Authorization, new_status: AuthorizationStatus) -> None:
    current = AuthorizationStatus(authorization.status)
    if new_status not in _TRANSITIONS[current]:
        raise InvalidGrant(f"Authorization cannot move from {current.value} to {new_status.value}")
    authorization.status = new_status.value


def effective_status(authorization: Authorization, now: datetime | None = None) -> AuthorizationStatus:
    """Stored status, or EXPIRED once every live token segment has expired."""
    status = AuthorizationStatus(authorization.status)
    if status in (AuthorizationStatus.TOKEN_ISSUED, AuthorizationStatus.REFRESHED):
        if not any(s.is_active(now) for s in authorization.segments):
            return AuthorizationStatus.EXPIRED
    return status


def pkce_verify(code_verifier: str, code_challenge: str, method: str | None) -> bool:
    """Verify PKCE: S256 only; SHA256(verifier) base64url == challenge."""
    if method != "S256":
        return False
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    computed = urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")
    return secrets.compare_digest(computed, code_challenge)


def parse_scope(scope: str | None) -> frozenset[str]:
    return frozenset(s for s in (scope or "").split() if s)


def resolve_scopes(client: RegisteredClient, scope: str | None) -> frozenset[str]:
    """Requested scopes, or every registered scope when none were requested."""
    requested = parse_scope(scope)
    if not requested:
        return client.scope_set
    invalid = requested - client.scope_set
    if invalid:
        raise InvalidScope(f"Scope(s) not allowed for this client: {' '.join(sorted(invalid))}")
    return requested


@dataclass(frozen=True)
class TokenResponse:
    access_token: str
    expires_in: int
    scope: str
    refresh_token: str | None = None
    id_token: str | None = None

    def to_dict(self) -> dict:
        body = {
            "access_token": self.access_token,
            "token_type": "Bearer",
            "expires_in": self.expires_in,
            "scope": self.scope,
        }
        if self.refresh_token:
            body["refresh_token"] = self.refresh_token
        if self.id_token:
            body["id_token"] = self.id_token
        return body


def _user_principal(user: User, granted: frozenset[str]) -> PrincipalView:
    return PrincipalView(
        name=user.username,
        authorities=user.authority_names,
        granted_scopes=granted,
        email=user.email,
        full_name=user.name,
    )


class TokenIssuer:
    def __init__(
        self,
        db: Session,
        key_ring: SigningKeyRing,
        *,
        issuer: str = ISSUER,
        code_ttl_seconds: int = CODE_TTL_SECONDS,
        clock: Callable[[], datetime] | None = None,
    ):
        self.db = db
        self.key_ring = key_ring
        self.issuer = issuer
        self.code_ttl_seconds = code_ttl_seconds
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def issue_token(
        self,
        client: RegisteredClient,
        grant_type: str,
        *,
        scope: str | None = None,
        code: str | None = None,
        redirect_uri: str | None = None,
        code_verifier: str | None = None,
        refresh_token: str | None = None,
    ) -> TokenResponse:
        if grant_type not in SUPPORTED_GRANT_TYPES:
            raise UnsupportedGrantType(f"Unsupported grant_type: {grant_type}")
        if grant_type not in client.grant_type_list:
            raise UnauthorizedClient(f"Client is not allowed to use {grant_type}")
        if grant_type == GRANT_CLIENT_CREDENTIALS:
            return self._client_credentials(client, scope)
        if grant_type == GRANT_AUTHORIZATION_CODE:
            return self._authorization_code(client, code, redirect_uri, code_verifier)
        return self._refresh(client, refresh_token, scope)

    def request_consent(
        self,
        client: RegisteredClient,
        principal_name: str,
        scopes: frozenset[str],
        attributes: dict,
    ) -> str:
        """Park an interactive request until the user decides. Returns the one-time consent state."""
        consent_state = secrets.token_urlsafe(32)
        store.create_authorization(
            self.db,
            client,
            principal_name,
            GRANT_AUTHORIZATION_CODE,
            scopes,
            AuthorizationStatus.REQUESTED.value,
            attributes=attributes,
            consent_state_hash=store.hash_token(consent_state),
        )
        self.db.commit()
        return consent_state

    def load_pending(self, consent_state: str) -> Authorization | None:
        authorization = store.find_pending_authorization(self.db, consent_state)
        if authorization is None or authorization.status != AuthorizationStatus.REQUESTED.value:
            return None
        age = self._clock() - authorization.created_at.replace(tzinfo=timezone.utc)
        if age > timedelta(seconds=self.code_ttl_seconds):
            return None
        return authorization

    def abandon(self, authorization: Authorization) -> None:
        authorization.consent_state_hash = None
        self.db.commit()

    def issue_authorization_code(
        self,
        client: RegisteredClient,
        principal_name: str,
        scopes: frozenset[str],
        *,
        redirect_uri: str,
        code_challenge: str | None = None,
        code_challenge_method: str | None = None,
        nonce: str | None = None,
        authorization: Authorization | None = None,
    ) -> str:
        if authorization is None:
            authorization = store.create_authorization(
                self.db,
                client,
                principal_name,
                GRANT_AUTHORIZATION_CODE,
                scopes,
                AuthorizationStatus.REQUESTED.value,
            )
        else:
            authorization.scopes = " ".join(sorted(scopes))
            authorization.consent_state_hash = None
        transition(authorization, AuthorizationStatus.CODE_ISSUED)

        code = secrets.token_urlsafe(32)
        now = self._clock()
        store.add_segment(
            self.db,
            authorization,
            AUTHORIZATION_CODE,
            code,
            now,
            now + timedelta(seconds=self.code_ttl_seconds),
            scopes,
            {
                "redirect_uri": redirect_uri,
                "code_challenge": code_challenge,
                "code_challenge_method": code_challenge_method,
                "nonce": nonce,
            },
        )
        self.db.commit()
        return code

    def _client_credentials(self, client: RegisteredClient, scope: str | None) -> TokenResponse:
        if not client.is_confidential:
            raise UnauthorizedClient("Public clients cannot use client_credentials")
        granted = resolve_scopes(client, scope)
        authorization = store.create_authorization(
            self.db,
            client,
            client.client_id,
            GRANT_CLIENT_CREDENTIALS,
            granted,
            AuthorizationStatus.REQUESTED.value,
        )
        transition(authorization, AuthorizationStatus.TOKEN_ISSUED)
        principal = PrincipalView(name=client.client_id, granted_scopes=granted)
        access_token = self._mint_access(authorization, client, principal)
        self.db.commit()
        logger.info("client_credentials: token issued for client_id=%s scope=%s", client.client_id, " ".join(sorted(granted)))
        return TokenResponse(access_token, client.access_token_ttl, " ".join(sorted(granted)))

    def _authorization_code(
        self,
        client: RegisteredClient,
        code: str | None,
        redirect_uri: str | None,
        code_verifier: str | None,
    ) -> TokenResponse:
        if not code or not redirect_uri:
            raise InvalidRequest("code and redirect_uri are required for authorization_code grant")
        segment = store.find_segment(self.db, code, AUTHORIZATION_CODE)
        if segment is None:
            raise InvalidGrant("Invalid or expired authorization code")
        authorization = segment.authorization
        if authorization.registered_client_id != client.id:
            raise InvalidGrant("Client mismatch")
        if segment.invalidated:
            # A replayed code revokes everything issued from it
            store.invalidate_segments(self.db, authorization)
            self.db.commit()
            logger.warning("Authorization code replay for client_id=%s; authorization %s revoked", client.client_id, authorization.id)
            raise InvalidGrant("Authorization code already used")
        if segment.is_expired(self._clock()):
            raise InvalidGrant("Authorization code expired")

        meta = segment.get_metadata()
        if meta.get("redirect_uri") != redirect_uri:
            raise InvalidGrant("redirect_uri mismatch")
        challenge = meta.get("code_challenge")
        if challenge:
            if not code_verifier or not pkce_verify(code_verifier, challenge, meta.get("code_challenge_method")):
                raise InvalidGrant("PKCE verification failed")
        elif client.require_proof_key:
            raise InvalidGrant("PKCE is required for this client")

        user = store.get_user(self.db, authorization.principal_name)
        if user is None or not user.can_log_in:
            raise InvalidGrant("Principal is no longer active")

        segment.invalidated = True
        transition(authorization, AuthorizationStatus.TOKEN_ISSUED)
        granted = authorization.scope_set
        principal = _user_principal(user, granted)
        access_token = self._mint_access(authorization, client, principal)
        refresh_token = None
        if GRANT_REFRESH_TOKEN in client.grant_type_list:
            refresh_token = self._mint_refresh(authorization, client, granted)
        id_token = None
        if "openid" in granted:
            id_token = self._mint_id_token(authorization, client, principal, meta.get("nonce"))
        self.db.commit()
        logger.info("authorization_code: tokens issued for client_id=%s sub=%s", client.client_id, user.username)
        return TokenResponse(access_token, client.access_token_ttl, " ".join(sorted(granted)), refresh_token, id_token)

    def _refresh(self, client: RegisteredClient, refresh_token: str | None, scope: str | None) -> TokenResponse:
        if not refresh_token:
            raise InvalidRequest("refresh_token is required")
        segment = store.find_segment(self.db, refresh_token, REFRESH_TOKEN)
        if segment is None:
            raise InvalidGrant("Invalid or revoked refresh token")
        authorization = segment.authorization
        if authorization.registered_client_id != client.id:
            raise InvalidGrant("Client mismatch")
        if segment.invalidated:
            # A rotated-out refresh token presented again revokes the whole family
            revoked = store.invalidate_segments(self.db, authorization)
            self.db.commit()
            if revoked:
                logger.warning(
                    "Refresh token replay for client_id=%s; authorization %s revoked", client.client_id, authorization.id
                )
            raise InvalidGrant("Invalid or revoked refresh token")
        if segment.is_expired(self._clock()):
            raise InvalidGrant("Refresh token expired")

        granted = authorization.scope_set
        requested = parse_scope(scope)
        if requested:
            if not requested <= granted:
                raise InvalidScope("Refresh may not widen the original scope")
            granted = requested

        if authorization.grant_type == GRANT_AUTHORIZATION_CODE:
            user = store.get_user(self.db, authorization.principal_name)
            if user is None or not user.can_log_in:
                raise InvalidGrant("Principal is no longer active")
            principal = _user_principal(user, granted)
        else:
            principal = PrincipalView(name=authorization.principal_name, granted_scopes=granted)

        transition(authorization, AuthorizationStatus.REFRESHED)
        store.invalidate_segments(self.db, authorization, ACCESS_TOKEN, ID_TOKEN)
        access_token = self._mint_access(authorization, client, principal)
        if client.reuse_refresh_tokens:
            new_refresh = refresh_token
        else:
            segment.invalidated = True
            new_refresh = self._mint_refresh(authorization, client, granted)
        id_token = None
        if "openid" in granted:
            id_token = self._mint_id_token(authorization, client, principal, None)
        self.db.commit()
        logger.info(
            "refresh_token grant: new tokens issued for client_id=%s sub=%s (refresh token %s)",
            client.client_id,
            principal.name,
            "reused" if client.reuse_refresh_tokens else "rotated",
        )
        return TokenResponse(access_token, client.access_token_ttl, " ".join(sorted(granted)), new_refresh, id_token)

    def _mint_access(self, authorization: Authorization, client: RegisteredClient, principal: PrincipalView) -> str:
        now = self._clock()
        exp = now + timedelta(seconds=client.access_token_ttl)
        jti = uuid.uuid4().hex
        payload = {
            "iss": self.issuer,
            "sub": principal.name,
            "iat": int(now.timestamp()),
            "exp": int(exp.timestamp()),
            "jti": jti,
            "scope": " ".join(sorted(principal.granted_scopes)),
            "client_id": client.client_id,
        }
        if client.audience:
            payload["aud"] = client.audience
        payload.update(customize_claims(ACCESS_TOKEN, principal))
        token = self.key_ring.sign(payload)
        store.add_segment(self.db, authorization, ACCESS_TOKEN, token, now, exp, principal.granted_scopes, {"jti": jti})
        return token

    def _mint_refresh(self, authorization: Authorization, client: RegisteredClient, granted: frozenset[str]) -> str:
        now = self._clock()
        value = secrets.token_urlsafe(48)
        store.add_segment(
            self.db, authorization, REFRESH_TOKEN, value, now, now + timedelta(seconds=client.refresh_token_ttl), granted
        )
        return value

    def _mint_id_token(
        self,
        authorization: Authorization,
        client: RegisteredClient,
        principal: PrincipalView,
        nonce: str | None,
    ) -> str:
        now = self._clock()
        exp = now + timedelta(seconds=client.access_token_ttl)
        payload = {
            "iss": self.issuer,
            "sub": principal.name,
            "aud": client.client_id,
            "iat": int(now.timestamp()),
            "exp": int(exp.timestamp()),
            "jti": uuid.uuid4().hex,
        }
        if nonce:
            payload["nonce"] = nonce
        payload.update(customize_claims(ID_TOKEN, principal))
        token = self.key_ring.sign(payload)
        store.add_segment(self.db, authorization, ID_TOKEN, token, now, exp, principal.granted_scopes)
        return token
