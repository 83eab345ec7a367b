"""
Token claim customization. Pure: reads a principal view and returns extra claims.
"""
from dataclasses import dataclass

ACCESS_TOKEN = "access_token"
ID_TOKEN = "id_token"

ROLE_PREFIX = "ROLE_"


@dataclass(frozen=True)
class PrincipalView:
    """Read-only snapshot of whoever the token is issued for (a user or a client)."""

    name: str
    authorities: frozenset[str] = frozenset()
    granted_scopes: frozenset[str] = frozenset()
    email: str | None = None
    full_name: str | None = None


def customize_claims(token_type: str, principal: PrincipalView) -> dict:
    roles = sorted(a for a in principal.authorities if a.startswith(ROLE_PREFIX))
    if token_type == ACCESS_TOKEN:
        claims = {"authorities": sorted(principal.authorities | principal.granted_scopes)}
        if roles:
            claims["roles"] = roles
        return claims
    if token_type == ID_TOKEN:
        claims = {"preferred_username": principal.name, "roles": roles}
        if "email" in principal.granted_scopes and principal.email:
            claims["email"] = principal.email
        if "profile" in principal.granted_scopes and principal.full_name:
            claims["name"] = principal.full_name
        return claims
    return {}
