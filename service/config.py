"""Service configuration: every setting comes from an environment variable."""
from __future__ import annotations

import os


def _env_flag(name: str, default: str = "0") -> bool:
    return os.environ.get(name, default).strip().lower() in {"1", "true", "yes", "on"}


# ── Redis backend ─────────────────────────────────────────────────────────────
REDIS_URL        = os.environ.get("MEMVAULT_REDIS_URL", "redis://localhost:6379/0")
# "user:password" for ACL auth, or a bare password.
REDIS_CREDENTIAL = os.environ.get("MEMVAULT_REDIS_CREDENTIAL", "")

# ── Collection ────────────────────────────────────────────────────────────────
COLLECTION_NAME     = os.environ.get("MEMVAULT_COLLECTION", "memories")
VECTOR_SIZE         = int(os.environ.get("MEMVAULT_VECTOR_SIZE", "1536"))
RECREATE_COLLECTION = _env_flag("MEMVAULT_RECREATE_COLLECTION")

DELETE_BY_OWNER_LIMIT = int(os.environ.get("MEMVAULT_DELETE_BY_OWNER_LIMIT", "10000"))
SCAN_PAGE_SIZE        = int(os.environ.get("MEMVAULT_SCAN_PAGE_SIZE", "500"))

# ── Deployment mode ───────────────────────────────────────────────────────────
# Production refuses to run without native vector search; anything else
# degrades to the in-process scan with a warning.
DEPLOYMENT_ENV = os.environ.get("MEMVAULT_ENV", "development").strip()
IS_PRODUCTION  = DEPLOYMENT_ENV.lower() == "production"

# ── Service ───────────────────────────────────────────────────────────────────
HOST      = os.environ.get("MEMVAULT_HOST", "127.0.0.1")
PORT      = int(os.environ.get("MEMVAULT_PORT", "7431"))
API_KEY   = os.environ.get("MEMVAULT_API_KEY", "dev-key-change-in-production")
TEST_MODE = _env_flag("MEMVAULT_TEST_MODE")
