"""
Backend: OAuth2 authorization server and resource server for the booking API.
Port 8080.
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from auth_server.api import router as api_router
from auth_server.audit import router as audit_router
from auth_server.authorize import router as authorize_router
from auth_server.config import BACKEND_AUDIENCE, CLOCK_SKEW_SECONDS, ISSUER, JWKS_CACHE_TTL_SECONDS, LOG_LEVEL
from auth_server.database import SessionLocal, init_db
from auth_server.introspect import router as introspect_router
from auth_server.keys import get_key_ring
from auth_server.revoke import router as revoke_router
from auth_server.security import security_filter
from auth_server.seed import seed_from_env
from auth_server.token_endpoint import router as token_router
from auth_server.userinfo import router as userinfo_router
from auth_server.well_known import router as well_known_router
from oauth_kit.errors import OAuth2Error, oauth2_error_handler
from oauth_kit.validator import KeySetCache, TokenValidator

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables, load signing keys, seed clients/user from env on startup."""
    init_db()
    get_key_ring()
    db = SessionLocal()
    try:
        seed_from_env(db)
    finally:
        db.close()
    yield


app = FastAPI(title="Restaurant Booking Backend", version="1.0.0", lifespan=lifespan)

# Bearer tokens for the booking API are checked against our own key ring, through the same
# cache a remote resource server would use. Reloading our own ring is free: no refetch cooldown.
_keys = KeySetCache(lambda: get_key_ring().jwks(), ttl_seconds=JWKS_CACHE_TTL_SECONDS, refetch_cooldown_seconds=0)
app.state.token_validator = TokenValidator(
    ISSUER, _keys, audience=BACKEND_AUDIENCE, require_audience=True, leeway_seconds=CLOCK_SKEW_SECONDS
)
# UserInfo accepts any access token we issued that carries openid, whatever its audience
app.state.userinfo_validator = TokenValidator(ISSUER, _keys, leeway_seconds=CLOCK_SKEW_SECONDS)

app.add_exception_handler(OAuth2Error, oauth2_error_handler)
app.middleware("http")(security_filter)

app.include_router(authorize_router, tags=["authorize"])
app.include_router(token_router, tags=["token"])
app.include_router(revoke_router, tags=["revoke"])
app.include_router(introspect_router, tags=["introspect"])
app.include_router(userinfo_router, tags=["userinfo"])
app.include_router(well_known_router, tags=["well-known"])
app.include_router(audit_router)
app.include_router(api_router)


@app.get("/health")
def health():
    """Health check endpoint."""
    return {"status": "ok", "service": "auth_server"}


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    uvicorn.run(
        "auth_server.main:app",
        host="127.0.0.1",
        port=8080,
        reload=True,
    )
