"""
Credential store: data access for clients, principals, authorizations and consents.
No policy lives here; callers decide what is allowed.
"""
import hashlib
import json
from datetime import datetime, timezone
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.orm import Session

from auth_server.models import (
    Authority,
    Authorization,
    AuthorizationToken,
    Consent,
    RegisteredClient,
    User,
)


def hash_token(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def get_client(db: Session, client_id: str) -> RegisteredClient | None:
    return db.scalars(select(RegisteredClient).where(RegisteredClient.client_id == client_id)).first()


def get_user(db: Session, username: str) -> User | None:
    return db.scalars(select(User).where(User.username == username)).first()


def get_or_create_authority(db: Session, name: str) -> Authority:
    authority = db.scalars(select(Authority).where(Authority.name == name)).first()
    if authority is None:
        authority = Authority(name=name)
        db.add(authority)
        db.flush()
    return authority


def set_authorities(db: Session, username: str, names: Iterable[str]) -> User:
    """Replace a principal's authority set. Raises LookupError for unknown principals."""
    user = get_user(db, username)
    if user is None:
        raise LookupError(f"Unknown principal: {username}")
    user.authorities = [get_or_create_authority(db, n) for n in sorted(set(names))]
    db.commit()
    return user


def create_authorization(
    db: Session,
    client: RegisteredClient,
    principal_name: str,
    grant_type: str,
    scopes: Iterable[str],
    status: str,
    *,
    attributes: dict | None = None,
    consent_state_hash: str | None = None,
) -> Authorization:
    authorization = Authorization(
        registered_client_id=client.id,
        principal_name=principal_name,
        grant_type=grant_type,
        scopes=" ".join(sorted(scopes)),
        status=status,
        attributes=json.dumps(attributes or {}),
        consent_state_hash=consent_state_hash,
    )
    db.add(authorization)
    db.flush()
    return authorization


def add_segment(
    db: Session,
    authorization: Authorization,
    token_type: str,
    value: str,
    issued_at: datetime,
    expires_at: datetime,
    scopes: Iterable[str] = (),
    metadata: dict | None = None,
) -> AuthorizationToken:
    segment = AuthorizationToken(
        token_type=token_type,
        value_hash=hash_token(value),
        issued_at=issued_at,
        expires_at=expires_at,
        scopes=" ".join(sorted(scopes)),
        token_metadata=json.dumps(metadata or {}),
    )
    authorization.segments.append(segment)
    db.flush()
    return segment


def find_segment(db: Session, value: str, token_type: str | None = None) -> AuthorizationToken | None:
    """Look a presented token value up by hash, optionally restricted to one token type."""
    stmt = select(AuthorizationToken).where(AuthorizationToken.value_hash == hash_token(value))
    if token_type is not None:
        stmt = stmt.where(AuthorizationToken.token_type == token_type)
    return db.scalars(stmt).first()


def invalidate_segments(db: Session, authorization: Authorization, *token_types: str) -> int:
    """Invalidate live segments of the given types (all types if none given). Returns the count."""
    count = 0
    for segment in authorization.segments:
        if segment.invalidated:
            continue
        if token_types and segment.token_type not in token_types:
            continue
        segment.invalidated = True
        count += 1
    db.flush()
    return count


def find_pending_authorization(db: Session, consent_state: str) -> Authorization | None:
    return db.scalars(
        select(Authorization).where(Authorization.consent_state_hash == hash_token(consent_state))
    ).first()


def get_consent(db: Session, client: RegisteredClient, principal_name: str) -> Consent | None:
    return db.scalars(
        select(Consent).where(
            Consent.registered_client_id == client.id,
            Consent.principal_name == principal_name,
        )
    ).first()


def save_consent(db: Session, client: RegisteredClient, principal_name: str, scopes: Iterable[str]) -> Consent:
    """Record approved scopes, merged with any earlier approval for the same client and principal."""
    consent = get_consent(db, client, principal_name)
    if consent is None:
        consent = Consent(registered_client_id=client.id, principal_name=principal_name, scopes="")
        db.add(consent)
    consent.scopes = " ".join(sorted(consent.scope_set | set(scopes)))
    consent.updated_at = datetime.now(timezone.utc)
    db.flush()
    return consent
