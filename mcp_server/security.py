"""
Filter chain for the MCP server: tool endpoints behind bearer tokens minted for this server.
"""
from oauth_kit.filter_chain import FilterChain, SecurityFilter, bearer_authenticator
from oauth_kit.policy import PolicyEngine, has_any_authority, permit_all

TOOLS_READ = has_any_authority("mcp.read", "mcp.write", "ROLE_ADMIN")
TOOLS_WRITE = has_any_authority("mcp.write")

POLICY = PolicyEngine.from_table(
    [
        ("GET", "/health/**", permit_all()),
        ("GET", "/mcp/**", TOOLS_READ),
        ("POST", "/mcp/**", TOOLS_WRITE),
    ]
)

CHAINS = (FilterChain(name="mcp-server", policy=POLICY, authenticator=bearer_authenticator),)

security_filter = SecurityFilter(CHAINS)
