"""
Well-known endpoints: JWKS and OpenID Connect discovery.
"""
from fastapi import APIRouter

from auth_server.config import ISSUER
from auth_server.issuer import SUPPORTED_GRANT_TYPES
from auth_server.keys import get_key_ring

router = APIRouter()


@router.get("/oauth2/jwks")
def jwks():
    """JSON Web Key Set: the current signing key and every retired key still in the ring."""
    return get_key_ring().jwks()


@router.get("/.well-known/openid-configuration")
def openid_configuration():
    """OpenID Connect discovery document."""
    return {
        "issuer": ISSUER,
        "authorization_endpoint": f"{ISSUER}/oauth2/authorize",
        "token_endpoint": f"{ISSUER}/oauth2/token",
        "userinfo_endpoint": f"{ISSUER}/userinfo",
        "revocation_endpoint": f"{ISSUER}/oauth2/revoke",
        "introspection_endpoint": f"{ISSUER}/oauth2/introspect",
        "jwks_uri": f"{ISSUER}/oauth2/jwks",
        "response_types_supported": ["code"],
        "grant_types_supported": list(SUPPORTED_GRANT_TYPES),
        "scopes_supported": [
            "openid",
            "profile",
            "email",
            "backend.read",
            "backend.write",
            "mcp.read",
            "mcp.write",
            "chat.read",
            "chat.write",
        ],
        "token_endpoint_auth_methods_supported": ["client_secret_basic", "client_secret_post", "none"],
        "subject_types_supported": ["public"],
        "id_token_signing_alg_values_supported": ["RS256"],
        "code_challenge_methods_supported": ["S256"],
    }
