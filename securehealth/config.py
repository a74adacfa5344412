"""
Centralised configuration constants and environment helpers.
"""

import os
import sys

from dotenv import load_dotenv

load_dotenv()

# ── Sessions / API server ────────────────────────────────────────────
SECRET_KEY = os.getenv("JWT_SECRET_KEY", "dev-secret-key-change-in-production")
TOKEN_EXPIRY_HOURS = 24
MAX_AUDIT_RESULTS = 1000

# ── Security configuration ───────────────────────────────────────────
# JSON document with roles / attributes / record_types; built-in catalog if unset.
POLICY_FILE = os.getenv("SECUREHEALTH_POLICY_FILE")

# Comma-separated Fernet keys, newest first.
ENCRYPTION_KEYS = [
    k.strip() for k in os.getenv("SECUREHEALTH_ENCRYPTION_KEYS", "").split(",") if k.strip()
]

# HMAC key for audit entry signatures (optional).
AUDIT_SIGNING_KEY = os.getenv("SECUREHEALTH_AUDIT_SIGNING_KEY")

# Per-field evaluation workers inside one projection.
PROJECTION_WORKERS = int(os.getenv("SECUREHEALTH_PROJECTION_WORKERS", "1"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")


def get_env(name: str) -> str:
    """Return an environment variable or exit with an error message."""
    value = os.getenv(name)
    if not value:
        print(f"ERROR: env var {name} is not set", file=sys.stderr)
        sys.exit(1)
    return value
