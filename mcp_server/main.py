"""
MCP server: tool endpoints for the chat front end, forwarding to the booking API.
Port 8082.
"""
import logging
import threading
from contextlib import asynccontextmanager

from fastapi import Body, Depends, FastAPI, Request

from mcp_server.backend_client import BackendClient
from mcp_server.config import (
    AUDIENCE,
    BACKEND_BASE_URL,
    BACKEND_CLIENT_ID,
    BACKEND_CLIENT_SECRET,
    BACKEND_REGISTRATION_ID,
    BACKEND_SCOPES,
    CLOCK_SKEW_SECONDS,
    HTTP_TIMEOUT_SECONDS,
    ISSUER,
    JWKS_CACHE_TTL_SECONDS,
    JWKS_URI,
    LOG_LEVEL,
    TOKEN_REFRESH_SKEW_SECONDS,
    TOKEN_URI,
)
from mcp_server.security import security_filter
from oauth_kit.client_tokens import AuthorizedClientCache, ClientRegistration, ClientTokenManager
from oauth_kit.downstream import request_cancellation
from oauth_kit.errors import (
    DownstreamError,
    OAuth2Error,
    TokenAcquisitionFailed,
    bad_gateway_handler,
    oauth2_error_handler,
)
from oauth_kit.filter_chain import current_authentication
from oauth_kit.validator import KeySetCache, TokenValidator, ValidatedClaims, jwks_fetcher

logger = logging.getLogger(__name__)

BACKEND_REGISTRATION = ClientRegistration(
    registration_id=BACKEND_REGISTRATION_ID,
    client_id=BACKEND_CLIENT_ID,
    client_secret=BACKEND_CLIENT_SECRET,
    token_uri=TOKEN_URI,
    scopes=BACKEND_SCOPES,
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """The outbound token cache lives exactly as long as the service."""
    cache = AuthorizedClientCache()
    manager = ClientTokenManager(
        [BACKEND_REGISTRATION],
        cache,
        skew_seconds=TOKEN_REFRESH_SKEW_SECONDS,
        timeout_seconds=HTTP_TIMEOUT_SECONDS,
    )
    app.state.client_tokens = manager
    app.state.backend = BackendClient(
        BACKEND_BASE_URL, manager, BACKEND_REGISTRATION_ID, timeout=HTTP_TIMEOUT_SECONDS
    )
    yield
    app.state.backend.close()
    manager.close()
    cache.clear()


app = FastAPI(title="Restaurant Booking MCP Server", version="1.0.0", lifespan=lifespan)


def build_token_validator(keys: KeySetCache) -> TokenValidator:
    """Only tokens minted for this server (aud) are accepted; a token without aud is another hop's."""
    return TokenValidator(ISSUER, keys, audience=AUDIENCE, require_audience=True, leeway_seconds=CLOCK_SKEW_SECONDS)


app.state.token_validator = build_token_validator(
    KeySetCache(jwks_fetcher(JWKS_URI, HTTP_TIMEOUT_SECONDS), ttl_seconds=JWKS_CACHE_TTL_SECONDS)
)

app.add_exception_handler(OAuth2Error, oauth2_error_handler)
app.add_exception_handler(TokenAcquisitionFailed, bad_gateway_handler)
app.add_exception_handler(DownstreamError, bad_gateway_handler)
app.middleware("http")(security_filter)


def get_backend(request: Request) -> BackendClient:
    return request.app.state.backend


@app.get("/health")
def health():
    """Health check endpoint."""
    return {"status": "ok", "service": "mcp_server"}


@app.get("/mcp/customers")
def customers(
    authentication: ValidatedClaims = Depends(current_authentication),
    backend: BackendClient = Depends(get_backend),
    cancelled: threading.Event = Depends(request_cancellation),
):
    logger.info("Tool call customers by sub=%s", authentication.subject)
    return backend.list_customers(cancelled)


@app.get("/mcp/bookings")
def bookings(
    authentication: ValidatedClaims = Depends(current_authentication),
    backend: BackendClient = Depends(get_backend),
    cancelled: threading.Event = Depends(request_cancellation),
):
    logger.info("Tool call bookings by sub=%s", authentication.subject)
    return backend.list_bookings(cancelled)


@app.post("/mcp/bookings", status_code=201)
def create_booking(
    booking: dict = Body(...),
    authentication: ValidatedClaims = Depends(current_authentication),
    backend: BackendClient = Depends(get_backend),
    cancelled: threading.Event = Depends(request_cancellation),
):
    logger.info("Tool call create_booking by sub=%s", authentication.subject)
    return backend.create_booking(booking, cancelled)


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    uvicorn.run(
        "mcp_server.main:app",
        host="127.0.0.1",
        port=8082,
        reload=True,
    )
