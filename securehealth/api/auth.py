"""
JWT session handling and the principal resolver for the Flask API.

The resolved Principal is passed to view functions as an explicit argument;
nothing is read back from ambient request or session state.
"""

import threading
import uuid
from datetime import datetime, timedelta, timezone
from functools import wraps
from typing import Any, Dict, Optional

import jwt
import structlog
from flask import request

from securehealth.config import SECRET_KEY, TOKEN_EXPIRY_HOURS
from securehealth.errors import AuthenticationError
from securehealth.models import Principal

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionPrincipalResolver:
    """
    Issues session tokens and resolves them back into Principals.

    Sessions live in memory (use Redis in production); a token is only
    honoured while its session exists and has been active within
    TOKEN_EXPIRY_HOURS.
    """

    def __init__(self, secret_key: str = SECRET_KEY, expiry_hours: int = TOKEN_EXPIRY_HOURS):
        self.secret_key = secret_key
        self.expiry = timedelta(hours=expiry_hours)
        # {token: {"principal": Principal, "created_at": datetime, "last_activity": datetime}}
        self.sessions: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def issue(self, principal: Principal) -> str:
        now = _utcnow()
        payload = {
            "sub": principal.identity,
            "roles": sorted(principal.roles),
            "iat": now,
            "exp": now + self.expiry,
            "jti": uuid.uuid4().hex,
        }
        token = jwt.encode(payload, self.secret_key, algorithm="HS256")
        with self._lock:
            self.sessions[token] = {
                "principal": principal,
                "created_at": now,
                "last_activity": now,
            }
        logger.info("Session issued", principal=principal.identity)
        return token

    def verify_token(self, token: str) -> Optional[Dict[str, Any]]:
        """Verify a JWT token and return the decoded payload (or None)."""
        try:
            return jwt.decode(token, self.secret_key, algorithms=["HS256"])
        except jwt.ExpiredSignatureError:
            return None
        except jwt.InvalidTokenError:
            return None

    def resolve(self, token: Optional[str]) -> Principal:
        """Return the session's Principal or raise AuthenticationError."""
        if not token:
            logger.info("Authentication failed", reason="missing token")
            raise AuthenticationError()
        payload = self.verify_token(token)
        if not payload:
            logger.info("Authentication failed", reason="invalid or expired token")
            raise AuthenticationError()

        with self._lock:
            session = self.sessions.get(token)
            if session is None:
                logger.info("Authentication failed", reason="session not found")
                raise AuthenticationError()
            now = _utcnow()
            if now - session["last_activity"] > self.expiry:
                del self.sessions[token]
                logger.info("Authentication failed", reason="session idle too long")
                raise AuthenticationError()
            session["last_activity"] = now
            principal = session["principal"]

        if principal.identity != payload.get("sub"):
            logger.warning("Authentication failed", reason="token subject mismatch")
            raise AuthenticationError()
        return principal

    def revoke(self, token: str) -> bool:
        with self._lock:
            return self.sessions.pop(token, None) is not None

    def cleanup_expired_sessions(self) -> int:
        """Remove sessions that have been inactive beyond the expiry window."""
        now = _utcnow()
        with self._lock:
            expired = [
                tok for tok, data in self.sessions.items()
                if now - data["last_activity"] > self.expiry
            ]
            for tok in expired:
                del self.sessions[tok]
        if expired:
            logger.info("Removed expired sessions", count=len(expired))
        return len(expired)


def bearer_token() -> Optional[str]:
    """Token from the Authorization header (Bearer scheme), else None."""
    header = request.headers.get("Authorization", "")
    parts = header.split(" ")
    if len(parts) == 2 and parts[0].lower() == "bearer" and parts[1]:
        return parts[1]
    return None


def principal_required(resolver: SessionPrincipalResolver):
    """
    Decorator factory: resolve the Principal before the view runs and pass
    it as the first positional argument. Resolution failures raise
    AuthenticationError before any permission evaluation happens.
    """
    def decorator(f):
        @wraps(f)
        def decorated(*args, **kwargs):
            principal = resolver.resolve(bearer_token())
            return f(principal, *args, **kwargs)
        return decorated
    return decorator
