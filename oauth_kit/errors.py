"""
OAuth2 error taxonomy shared by all three services (RFC 6749 §5.2, RFC 6750 §3.1).
Issuance and validation errors are terminal for the request; the handler renders
{"error", "error_description"} and never echoes internal reasons.
"""
import logging

from fastapi import Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class OAuth2Error(Exception):
    """Base for errors that map onto an OAuth2 error code and HTTP status."""

    error = "server_error"
    status_code = 400
    default_description = "Request failed"

    def __init__(self, description: str | None = None):
        self.description = description or self.default_description
        super().__init__(self.description)

    def to_dict(self) -> dict:
        return {"error": self.error, "error_description": self.description}


class InvalidRequest(OAuth2Error):
    error = "invalid_request"
    default_description = "Malformed request"


class InvalidClient(OAuth2Error):
    error = "invalid_client"
    status_code = 401
    default_description = "Client authentication failed"


class UnauthorizedClient(OAuth2Error):
    error = "unauthorized_client"
    default_description = "Client is not allowed to use this grant type"


class InvalidScope(OAuth2Error):
    error = "invalid_scope"
    default_description = "Requested scope is not allowed"


class InvalidGrant(OAuth2Error):
    error = "invalid_grant"
    default_description = "Invalid or expired grant"


class UnsupportedGrantType(OAuth2Error):
    error = "unsupported_grant_type"
    default_description = "Grant type is not supported"


class InvalidToken(OAuth2Error):
    """
    Bearer token rejected. `reason` is for logs only; the public description is
    always the same so callers cannot probe key or claim details.
    """

    error = "invalid_token"
    status_code = 401
    default_description = "Invalid or expired token"

    def __init__(self, reason: str = "invalid"):
        self.reason = reason
        super().__init__(None)


class AuthenticationRequired(OAuth2Error):
    """No credentials were presented for a protected resource (RFC 6750 §3.1: no error code)."""

    error = "unauthorized"
    status_code = 401
    default_description = "Authentication required"


class InsufficientAuthority(OAuth2Error):
    error = "insufficient_scope"
    status_code = 403
    default_description = "Insufficient authority for this resource"


class TokenAcquisitionFailed(RuntimeError):
    """
    A service could not obtain its own outbound token. `transient` is True for
    network, timeout and 5xx causes; False for rejected credentials.
    """

    def __init__(self, registration_id: str, message: str, *, transient: bool = False):
        self.registration_id = registration_id
        self.transient = transient
        super().__init__(f"[{registration_id}] {message}")


class DownstreamError(RuntimeError):
    """A call to the next hop failed (transport error or non-2xx answer)."""

    def __init__(self, service: str, message: str, *, status_code: int | None = None):
        self.service = service
        self.status_code = status_code
        super().__init__(f"{service}: {message}")


def www_authenticate(error: OAuth2Error) -> str:
    if isinstance(error, (InvalidToken, InsufficientAuthority)):
        return f'Bearer error="{error.error}"'
    if isinstance(error, InvalidClient):
        return 'Basic realm="oauth2"'
    return "Bearer"


def error_response(error: OAuth2Error) -> JSONResponse:
    headers = {"Cache-Control": "no-store", "Pragma": "no-cache"}
    if error.status_code in (401, 403):
        headers["WWW-Authenticate"] = www_authenticate(error)
    return JSONResponse(status_code=error.status_code, content=error.to_dict(), headers=headers)


async def oauth2_error_handler(request: Request, exc: OAuth2Error) -> JSONResponse:
    """FastAPI exception handler: register with app.add_exception_handler(OAuth2Error, ...)."""
    if isinstance(exc, InvalidToken):
        logger.info("Rejected bearer token on %s %s: %s", request.method, request.url.path, exc.reason)
    return error_response(exc)


async def bad_gateway_handler(request: Request, exc: Exception) -> JSONResponse:
    """Register for TokenAcquisitionFailed and DownstreamError: the next hop could not be reached."""
    logger.warning("Downstream failure on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=502,
        content={"error": "bad_gateway", "error_description": "Upstream service unavailable"},
        headers={"Cache-Control": "no-store"},
    )
