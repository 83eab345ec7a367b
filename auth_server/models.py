"""
SQLAlchemy models for the backend credential store: principals and authorities,
registered clients, authorizations with their token segments, consents, audit log.
Raw token values, secrets and passwords are never stored.
"""
import json
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Table, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _split(value: str | None) -> list[str]:
    return [v for v in (value or "").split() if v]


class Base(DeclarativeBase):
    pass


user_authorities = Table(
    "user_authorities",
    Base.metadata,
    Column("user_id", ForeignKey("users.id"), primary_key=True),
    Column("authority_id", ForeignKey("authorities.id"), primary_key=True),
)


class Authority(Base):
    __tablename__ = "authorities"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)  # e.g. ROLE_ADMIN


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    account_non_locked: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    credentials_non_expired: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)

    authorities: Mapped[list[Authority]] = relationship(secondary=user_authorities, lazy="selectin")

    @property
    def authority_names(self) -> frozenset[str]:
        return frozenset(a.name for a in self.authorities)

    @property
    def can_log_in(self) -> bool:
        return self.enabled and self.account_non_locked and self.credentials_non_expired


class RegisteredClient(Base):
    __tablename__ = "registered_clients"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    client_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    client_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    # bcrypt hash of client_secret; None = public client
    client_secret_hash: Mapped[str | None] = mapped_column(String(255), nullable=True)
    grant_types: Mapped[str] = mapped_column(Text, nullable=False)  # space-separated
    scopes: Mapped[str] = mapped_column(Text, nullable=False, default="")  # space-separated
    redirect_uris: Mapped[str] = mapped_column(Text, nullable=False, default="[]")  # JSON array, exact match
    audience: Mapped[str | None] = mapped_column(String(255), nullable=True)  # `aud` of issued access tokens
    require_proof_key: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    require_consent: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    access_token_ttl: Mapped[int] = mapped_column(Integer, nullable=False, default=3600)
    refresh_token_ttl: Mapped[int] = mapped_column(Integer, nullable=False, default=7 * 24 * 3600)
    reuse_refresh_tokens: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)

    @property
    def grant_type_list(self) -> list[str]:
        return _split(self.grant_types)

    @property
    def scope_set(self) -> frozenset[str]:
        return frozenset(_split(self.scopes))

    def get_redirect_uris_list(self) -> list[str]:
        return json.loads(self.redirect_uris or "[]")

    def redirect_uri_allowed(self, uri: str) -> bool:
        return uri in self.get_redirect_uris_list()

    @property
    def is_confidential(self) -> bool:
        return bool(self.client_secret_hash)


class Authorization(Base):
    """One issued grant. Status follows REQUESTED -> CODE_ISSUED -> TOKEN_ISSUED -> REFRESHED*."""

    __tablename__ = "authorizations"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    registered_client_id: Mapped[int] = mapped_column(ForeignKey("registered_clients.id"), nullable=False, index=True)
    principal_name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    grant_type: Mapped[str] = mapped_column(String(64), nullable=False)
    scopes: Mapped[str] = mapped_column(Text, nullable=False, default="")  # space-separated
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    # Pending interactive request (redirect_uri, state, nonce, PKCE challenge) as JSON
    attributes: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    # SHA-256 of the one-time value carried by the consent form while REQUESTED
    consent_state_hash: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now, onupdate=_utc_now)

    client: Mapped[RegisteredClient] = relationship()
    segments: Mapped[list["AuthorizationToken"]] = relationship(
        back_populates="authorization", cascade="all, delete-orphan", order_by="AuthorizationToken.id"
    )

    @property
    def scope_set(self) -> frozenset[str]:
        return frozenset(_split(self.scopes))

    def get_attributes(self) -> dict:
        return json.loads(self.attributes or "{}")


class AuthorizationToken(Base):
    """A token segment of an authorization. Only the SHA-256 of the value is kept."""

    __tablename__ = "authorization_tokens"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    authorization_id: Mapped[int] = mapped_column(ForeignKey("authorizations.id"), nullable=False, index=True)
    token_type: Mapped[str] = mapped_column(String(32), nullable=False)  # authorization_code | access_token | refresh_token | id_token
    value_hash: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    issued_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=_utc_now)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    # `metadata` is reserved on declarative classes
    token_metadata: Mapped[str] = mapped_column("metadata", Text, nullable=False, default="{}")
    scopes: Mapped[str] = mapped_column(Text, nullable=False, default="")
    invalidated: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    authorization: Mapped[Authorization] = relationship(back_populates="segments")

    def get_metadata(self) -> dict:
        return json.loads(self.token_metadata or "{}")

    def is_expired(self, now: datetime | None = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return self.expires_at.replace(tzinfo=timezone.utc) <= now

    def is_active(self, now: datetime | None = None) -> bool:
        return not self.invalidated and not self.is_expired(now)


class Consent(Base):
    __tablename__ = "consents"
    __table_args__ = (UniqueConstraint("registered_client_id", "principal_name"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    registered_client_id: Mapped[int] = mapped_column(ForeignKey("registered_clients.id"), nullable=False)
    principal_name: Mapped[str] = mapped_column(String(255), nullable=False)
    scopes: Mapped[str] = mapped_column(Text, nullable=False, default="")  # space-separated
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now, onupdate=_utc_now)

    @property
    def scope_set(self) -> frozenset[str]:
        return frozenset(_split(self.scopes))


class AuditLog(Base):
    """Security-relevant events. No tokens, secrets or passwords stored."""

    __tablename__ = "audit_log"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    client_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    principal_name: Mapped[str | None] = mapped_column(String(255), nullable=True)  # None = anonymous
    ip: Mapped[str | None] = mapped_column(String(64), nullable=True)
    outcome: Mapped[str] = mapped_column(String(16), nullable=False)  # success | fail
