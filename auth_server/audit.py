"""
Security event trail for the backend.

Every login, consent decision, code, token, revocation and introspection call is
recorded with client id, principal, caller IP and outcome. Records never hold
token values, secrets or passwords. Failures are mirrored to the module logger
at warning level so they show up without querying the table.

GET /audit lists recent events for administrators (ROLE_ADMIN, enforced by the
filter chain).
"""
import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy import select
from sqlalchemy.orm import Session

from auth_server.database import get_db
from auth_server.models import AuditLog

logger = logging.getLogger(__name__)

EVENT_LOGIN_OK = "login_ok"
EVENT_LOGIN_FAIL = "login_fail"
EVENT_CONSENT_ALLOW = "consent_allow"
EVENT_CONSENT_DENY = "consent_deny"
EVENT_CODE_ISSUED = "code_issued"
EVENT_TOKEN_ISSUED = "token_issued"
EVENT_TOKEN_REFRESHED = "token_refreshed"
EVENT_TOKEN_REVOKED = "token_revoked"
EVENT_INTROSPECT = "introspect"

OUTCOME_SUCCESS = "success"
OUTCOME_FAIL = "fail"

MAX_LISTING = 500


def get_client_ip(request: Request | None) -> str | None:
    # Forwarding headers are not trusted
    if request is None or request.client is None:
        return None
    return request.client.host


def log_audit(
    db: Session,
    event_type: str,
    *,
    client_id: str | None = None,
    principal_name: str | None = None,
    ip: str | None = None,
    outcome: str = OUTCOME_SUCCESS,
) -> None:
    """Append one audit record and commit it."""
    db.add(
        AuditLog(
            event_type=event_type,
            client_id=client_id,
            principal_name=principal_name,
            ip=ip,
            outcome=outcome,
        )
    )
    db.commit()
    if outcome == OUTCOME_FAIL:
        logger.warning("Audit %s failed: client=%s principal=%s ip=%s", event_type, client_id, principal_name, ip)
    else:
        logger.debug("Audit %s: client=%s principal=%s", event_type, client_id, principal_name)


def _as_dict(row: AuditLog) -> dict:
    return {
        "created_at": row.created_at.isoformat() if row.created_at else None,
        "event_type": row.event_type,
        "client_id": row.client_id,
        "principal_name": row.principal_name,
        "ip": row.ip,
        "outcome": row.outcome,
    }


router = APIRouter(tags=["audit"])


@router.get("/audit")
def list_audit_logs(
    limit: int = 100,
    event_type: str | None = None,
    outcome: str | None = None,
    client_id: str | None = None,
    principal_name: str | None = None,
    db: Session = Depends(get_db),
):
    """Recent audit events, most recent first. Empty filters match everything."""
    filters = {
        AuditLog.event_type: event_type,
        AuditLog.outcome: outcome,
        AuditLog.client_id: client_id,
        AuditLog.principal_name: principal_name,
    }
    stmt = select(AuditLog)
    for column, value in filters.items():
        if value:
            stmt = stmt.where(column == value)
    stmt = stmt.order_by(AuditLog.id.desc()).limit(min(max(1, limit), MAX_LISTING))
    return [_as_dict(row) for row in db.scalars(stmt)]
