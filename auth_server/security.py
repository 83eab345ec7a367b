"""
Filter chains for the backend, highest priority first:
authorization-server endpoints (open, they authenticate clients and users themselves),
then the booking API and admin endpoints behind bearer tokens.
"""
from oauth_kit.filter_chain import (
    FilterChain,
    SecurityFilter,
    anonymous_authenticator,
    bearer_authenticator,
    bearer_authenticator_using,
)
from oauth_kit.policy import PolicyEngine, authenticated, has_any_authority, permit_all

READ = has_any_authority("backend.read", "ROLE_USER", "ROLE_OPERATOR", "ROLE_ADMIN")
WRITE = has_any_authority("backend.write", "ROLE_OPERATOR", "ROLE_ADMIN")
ADMIN = has_any_authority("ROLE_ADMIN")

AUTHORIZATION_SERVER_POLICY = PolicyEngine.from_table([("*", "/**", permit_all())])

RESOURCE_SERVER_POLICY = PolicyEngine.from_table(
    [
        ("GET", "/health/**", permit_all()),
        ("GET", "/customers/**", READ),
        ("GET", "/bookings/**", READ),
        ("GET", "/feedback/**", READ),
        ("GET", "/tables/**", READ),
        ("GET", "/opening-hours/**", READ),
        ("GET", "/orders/**", READ),
        ("POST/PUT/DELETE", "/bookings/**", WRITE),
        ("POST/PUT", "/orders/**", WRITE),
        ("POST", "/feedback/**", WRITE),
        ("*", "/customers/**", ADMIN),
        ("*", "/audit/**", ADMIN),
    ]
)

CHAINS = (
    FilterChain(
        name="authorization-server",
        policy=AUTHORIZATION_SERVER_POLICY,
        matcher=("/oauth2/**", "/.well-known/**"),
        authenticator=anonymous_authenticator,
    ),
    FilterChain(
        name="userinfo",
        policy=PolicyEngine.from_table([("GET/POST", "/userinfo", authenticated())]),
        matcher=("/userinfo",),
        authenticator=bearer_authenticator_using("userinfo_validator"),
    ),
    FilterChain(
        name="resource-server",
        policy=RESOURCE_SERVER_POLICY,
        authenticator=bearer_authenticator,
    ),
)

security_filter = SecurityFilter(CHAINS)
