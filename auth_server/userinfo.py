"""
OIDC UserInfo endpoint (GET /userinfo). The bearer token is validated by the resource-server
filter chain; claims returned depend on the token's scope.
"""
import logging

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from auth_server import store
from auth_server.database import get_db
from oauth_kit.errors import InsufficientAuthority, InvalidToken
from oauth_kit.filter_chain import current_authentication
from oauth_kit.validator import ValidatedClaims

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/userinfo")
def userinfo(
    authentication: ValidatedClaims = Depends(current_authentication),
    db: Session = Depends(get_db),
):
    """
    Claims for the authenticated user. Requires an access token with the openid scope.
    profile -> name, preferred_username; email -> email; roles always.
    """
    if "openid" not in authentication.scopes:
        raise InsufficientAuthority("openid scope required")
    user = store.get_user(db, authentication.subject)
    if user is None:
        raise InvalidToken(f"no principal named {authentication.subject!r}")

    claims = {"sub": user.username, "preferred_username": user.username}
    if "profile" in authentication.scopes and user.name is not None:
        claims["name"] = user.name
    if "email" in authentication.scopes and user.email is not None:
        claims["email"] = user.email
    claims["roles"] = sorted(a for a in user.authority_names if a.startswith("ROLE_"))
    return claims
