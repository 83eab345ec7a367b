"""
Filter chains for the chat front end. Requests are authenticated by the SESSION cookie.
Login endpoints and the status API are open; /api/** answers JSON 401, other pages
redirect the browser to the login entry point.
"""
from fastapi import Request
from fastapi.responses import RedirectResponse

from client_web.config import CLIENT_ID, LOGIN_PATH, SESSION_COOKIE
from oauth_kit.filter_chain import FilterChain, SecurityFilter, json_entry_point
from oauth_kit.policy import Decision, PolicyEngine, authenticated, permit_all
from oauth_kit.validator import ValidatedClaims


def session_authenticator(request: Request) -> ValidatedClaims | None:
    """
    A session counts only while the user's authorized client (the tokens from login) is
    cached. Logout evicts it, which ends every other session of the same user too.
    """
    sessions = request.app.state.sessions
    session = sessions.get(request.cookies.get(SESSION_COOKIE))
    if session is None:
        return None
    if request.app.state.client_tokens.cache.get(CLIENT_ID, session.username) is None:
        sessions.delete(session.session_id)
        return None
    return ValidatedClaims(
        subject=session.username,
        scopes=session.scopes,
        authorities=frozenset(session.roles) | session.scopes,
        claims={
            "preferred_username": session.username,
            "email": session.email,
            "name": session.name,
            "sid": session.session_id,
        },
    )


def login_redirect_entry_point(request: Request, decision: Decision) -> RedirectResponse:
    return RedirectResponse(LOGIN_PATH, status_code=302)


PUBLIC_PATHS = (
    "/",
    "/health",
    "/oauth2/**",
    "/login/**",
    "/logout",
    "/api/auth/status",
    "/api/auth/login-url",
)

CHAINS = (
    FilterChain(
        name="login",
        policy=PolicyEngine.from_table([("*", "/**", permit_all())]),
        matcher=PUBLIC_PATHS,
        authenticator=session_authenticator,
    ),
    FilterChain(
        name="api",
        policy=PolicyEngine.from_table([("*", "/api/**", authenticated())]),
        matcher=("/api/**",),
        authenticator=session_authenticator,
        entry_point=json_entry_point,
    ),
    FilterChain(
        name="pages",
        policy=PolicyEngine.from_table([("*", "/**", authenticated())]),
        authenticator=session_authenticator,
        entry_point=login_redirect_entry_point,
    ),
)

security_filter = SecurityFilter(CHAINS)
