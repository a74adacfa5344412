"""
Audit trail – append-only record of every permission decision.

Non-repudiation: entries are written synchronously with the decision they
describe and can optionally be HMAC-signed. There is no update or delete
path; a failed write raises AuditWriteFailure and aborts the request.
"""

import dataclasses
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import FrozenSet, Iterator, List, Optional

import structlog
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.hmac import HMAC
from sqlalchemy import select

from securehealth.catalog import AUDIT_QUERY_ATTRIBUTE
from securehealth.config import MAX_AUDIT_RESULTS
from securehealth.database import audit_log
from securehealth.errors import AuditWriteFailure, AuthorizationError
from securehealth.models import Action, AuditEntry, AuditFilter, Decision, Outcome, Principal

logger = structlog.get_logger()


class AuditStore(ABC):
    """Durable, append-only storage for audit entries."""

    @abstractmethod
    def append(self, entry: AuditEntry) -> AuditEntry:
        """Persist *entry* and return it as stored (with its id assigned)."""

    @abstractmethod
    def query(self, audit_filter: AuditFilter) -> Iterator[AuditEntry]:
        """Entries matching the filter, newest first."""


def _canonical(entry: AuditEntry) -> bytes:
    parts = [
        repr(entry.timestamp.timestamp()), entry.principal_identity, ",".join(entry.roles),
        entry.attribute, entry.action, entry.outcome.value, entry.reason,
        entry.subject_type or "", entry.subject_id or "", entry.field_name or "",
    ]
    return "|".join(parts).encode("utf-8")


class SqlAuditStore(AuditStore):
    """SQLAlchemy-backed store over the `audit_log` table."""

    def __init__(self, engine, signing_key=None):
        self.engine = engine
        if isinstance(signing_key, str):
            signing_key = signing_key.encode("utf-8")
        self._signing_key = signing_key

    def _sign(self, entry: AuditEntry) -> Optional[str]:
        if not self._signing_key:
            return None
        h = HMAC(self._signing_key, hashes.SHA256())
        h.update(_canonical(entry))
        return h.finalize().hex()

    def verify(self, entry: AuditEntry) -> bool:
        """Check an entry's signature. Unsigned entries never verify."""
        if not self._signing_key or not entry.signature:
            return False
        h = HMAC(self._signing_key, hashes.SHA256())
        h.update(_canonical(entry))
        try:
            h.verify(bytes.fromhex(entry.signature))
        except (InvalidSignature, ValueError):
            return False
        return True

    def append(self, entry: AuditEntry) -> AuditEntry:
        signature = self._sign(entry)
        with self.engine.begin() as conn:
            result = conn.execute(audit_log.insert().values(
                timestamp=entry.timestamp.timestamp(),
                principal_identity=entry.principal_identity,
                roles=",".join(entry.roles),
                attribute=entry.attribute,
                action=entry.action,
                outcome=entry.outcome.value,
                reason=entry.reason,
                subject_type=entry.subject_type,
                subject_id=entry.subject_id,
                field_name=entry.field_name,
                signature=signature,
            ))
            entry_id = result.inserted_primary_key[0]
        return dataclasses.replace(entry, entry_id=entry_id, signature=signature)

    def query(self, audit_filter: AuditFilter) -> Iterator[AuditEntry]:
        c = audit_log.c
        sql = select(audit_log)
        if audit_filter.since is not None:
            sql = sql.where(c.timestamp >= audit_filter.since.timestamp())
        if audit_filter.until is not None:
            sql = sql.where(c.timestamp < audit_filter.until.timestamp())
        if audit_filter.principal_identity is not None:
            sql = sql.where(c.principal_identity == audit_filter.principal_identity)
        if audit_filter.subject_type is not None:
            sql = sql.where(c.subject_type == audit_filter.subject_type)
        if audit_filter.subject_id is not None:
            sql = sql.where(c.subject_id == audit_filter.subject_id)
        if audit_filter.outcome is not None:
            sql = sql.where(c.outcome == audit_filter.outcome.value)
        sql = (
            sql.order_by(c.timestamp.desc(), c.entry_id.desc())
            .limit(audit_filter.limit)
            .offset(audit_filter.offset)
        )

        with self.engine.connect() as conn:
            rows = conn.execute(sql).mappings().all()
        for row in rows:
            yield AuditEntry(
                timestamp=datetime.fromtimestamp(row["timestamp"], tz=timezone.utc),
                principal_identity=row["principal_identity"],
                roles=tuple(r for r in row["roles"].split(",") if r),
                attribute=row["attribute"],
                action=row["action"],
                outcome=Outcome(row["outcome"]),
                reason=row["reason"],
                subject_type=row["subject_type"],
                subject_id=row["subject_id"],
                field_name=row["field_name"],
                entry_id=row["entry_id"],
                signature=row["signature"],
            )


class AuditSink:
    """
    Records decisions and serves permission-checked audit queries.

    Queries are themselves decisions: each one is evaluated against the
    audit attribute and audited before any entry is returned.
    """

    def __init__(self, store: AuditStore, configurations,
                 query_attribute: str = AUDIT_QUERY_ATTRIBUTE,
                 max_results: int = MAX_AUDIT_RESULTS):
        self.store = store
        self.configurations = configurations
        self.query_attribute = query_attribute
        self.max_results = max_results

    def record(self, entry: AuditEntry) -> AuditEntry:
        try:
            return self.store.append(entry)
        except AuditWriteFailure:
            raise
        except Exception as e:
            logger.error(
                "Audit write failed",
                principal=entry.principal_identity,
                attribute=entry.attribute,
                error=str(e),
            )
            raise AuditWriteFailure() from e

    def record_decision(
        self,
        principal: Principal,
        expanded_roles: FrozenSet[str],
        decision: Decision,
        action: Action,
        field_name: Optional[str] = None,
    ) -> AuditEntry:
        entry = AuditEntry(
            timestamp=datetime.now(timezone.utc),
            principal_identity=principal.identity,
            roles=tuple(sorted(expanded_roles)),
            attribute=decision.attribute,
            action=action.value,
            outcome=decision.outcome,
            reason=decision.reason,
            subject_type=decision.subject_type,
            subject_id=decision.subject_id,
            field_name=field_name,
        )
        return self.record(entry)

    def query(self, principal: Principal, audit_filter: AuditFilter) -> List[AuditEntry]:
        config = self.configurations.current
        expanded = config.hierarchy.expand(principal.roles)
        decision = config.policy.evaluate(expanded, self.query_attribute, None, principal)
        self.record_decision(principal, expanded, decision, Action.AUDIT_QUERY)

        if not decision.granted:
            logger.warning(
                "Audit query denied", principal=principal.identity, reason=decision.reason
            )
            raise AuthorizationError()

        limit = max(0, min(audit_filter.limit, self.max_results))
        bounded = dataclasses.replace(audit_filter, limit=limit)
        logger.info(
            "Audit query",
            principal=principal.identity,
            subject_id=bounded.subject_id,
            filter_principal=bounded.principal_identity,
        )
        return list(self.store.query(bounded))
