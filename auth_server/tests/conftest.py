"""
Pytest configuration for auth_server. In-memory SQLite and an ephemeral signing key,
so tests don't touch the filesystem.
"""
import os

# In-memory SQLite; database.py uses StaticPool so all connections share the same DB
os.environ["AUTH_DATABASE_URL"] = "sqlite:///:memory:"
# Empty path = key generated in memory
os.environ["OAUTH_SIGNING_KEY_PATH"] = ""
os.environ.pop("OAUTH_RETIRED_KEY_PATHS", None)
# Avoid seed_from_env using unexpected env users during tests
for name in ("OAUTH_SEED_USER", "OAUTH_SEED_PASSWORD", "OAUTH_SEED_AUTHORITIES"):
    os.environ.pop(name, None)
