"""
Role-Based Access Control – loading principals and evaluating permission attributes.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, FrozenSet, Iterable, Optional, Tuple

import structlog
from sqlalchemy import text

from securehealth.errors import AuthenticationError, ConfigurationError
from securehealth.models import Decision, Outcome, Principal, SubjectRecord

logger = structlog.get_logger()

# Denial reasons. Internal only: callers see a generic "not permitted".
REASON_GRANTED = "role match"
REASON_UNKNOWN_ATTRIBUTE = "unknown attribute"
REASON_NO_ROLE = "no authorized role"
REASON_NO_SUBJECT = "subject required"
REASON_RELATIONSHIP = "relationship not satisfied"


# ── Relationship lookups ─────────────────────────────────────────────

class RelationshipLookup(ABC):
    """Answers whether a context-specific relationship holds for (principal, subject)."""

    #: Relationship names this lookup can answer; validated at configuration load.
    supported_relationships: FrozenSet[str] = frozenset()

    @abstractmethod
    def holds(self, relationship: str, principal: Principal, subject: SubjectRecord) -> bool:
        ...


class MetadataRelationshipLookup(RelationshipLookup):
    """Relationships derived from a record's cleartext routing metadata."""

    supported_relationships = frozenset({"assigned-provider", "own-record", "same-organization"})

    def holds(self, relationship: str, principal: Principal, subject: SubjectRecord) -> bool:
        meta = subject.metadata
        if relationship == "assigned-provider":
            doctor = meta.get("primary_doctor_id")
            return doctor is not None and str(doctor) == principal.identity
        if relationship == "own-record":
            owner = meta.get("patient_principal")
            if owner is not None and str(owner) == principal.identity:
                return True
            return (
                principal.patient_id is not None
                and subject.record_id is not None
                and principal.patient_id == subject.record_id
            )
        if relationship == "same-organization":
            org = meta.get("organization_id")
            return (
                org is not None
                and principal.organization_id is not None
                and str(org) == principal.organization_id
            )
        return False


# ── Policy table ─────────────────────────────────────────────────────

@dataclass(frozen=True)
class Grant:
    """One clause of a rule: any of *roles*, optionally bound to a subject relationship."""
    roles: FrozenSet[str]
    relationship: Optional[str] = None


@dataclass(frozen=True)
class AttributeRule:
    """
    Grant clauses for one attribute, combined with OR.

    A single unconditional clause is the common case; per-role relationships
    (staff see everyone, a patient only their own record) take one clause each.
    """
    attribute: str
    grants: Tuple[Grant, ...]

    @classmethod
    def simple(cls, attribute: str, roles: Iterable[str],
               relationship: Optional[str] = None) -> "AttributeRule":
        return cls(attribute, (Grant(frozenset(roles), relationship),))

    @property
    def roles(self) -> FrozenSet[str]:
        return frozenset().union(*(g.roles for g in self.grants))

    @property
    def subject_sensitive(self) -> bool:
        return any(g.relationship is not None for g in self.grants)


class PermissionPolicy:
    """
    Pure decision function over a data-driven attribute table.

    There is no fallthrough-allow: anything not explicitly granted by the
    table is denied.
    """

    def __init__(
        self,
        rules: Iterable[AttributeRule],
        relationship_lookup: Optional[RelationshipLookup] = None,
    ):
        table: Dict[str, AttributeRule] = {}
        for rule in rules:
            if rule.attribute in table:
                raise ConfigurationError(f"Duplicate attribute '{rule.attribute}'.")
            if not rule.grants or not all(g.roles for g in rule.grants):
                raise ConfigurationError(
                    f"Attribute '{rule.attribute}' authorizes no roles; it could never be granted."
                )
            for grant in rule.grants:
                if grant.relationship is None:
                    continue
                if relationship_lookup is None:
                    raise ConfigurationError(
                        f"Attribute '{rule.attribute}' requires relationship "
                        f"'{grant.relationship}' but no relationship lookup is configured."
                    )
                if grant.relationship not in relationship_lookup.supported_relationships:
                    raise ConfigurationError(
                        f"Attribute '{rule.attribute}' requires unsupported relationship "
                        f"'{grant.relationship}'."
                    )
            table[rule.attribute] = rule
        self._table = table
        self._lookup = relationship_lookup

    @property
    def attributes(self) -> FrozenSet[str]:
        return frozenset(self._table)

    def rule_for(self, attribute: str) -> Optional[AttributeRule]:
        return self._table.get(attribute)

    def evaluate(
        self,
        expanded_roles: FrozenSet[str],
        attribute: str,
        subject: Optional[SubjectRecord] = None,
        principal: Optional[Principal] = None,
    ) -> Decision:
        """Decide one (roles, attribute, subject) triple. Never raises, never does I/O."""
        subject_type = subject.record_type if subject is not None else None
        subject_id = subject.record_id if subject is not None else None

        def deny(reason: str) -> Decision:
            return Decision(attribute, Outcome.DENIED, reason, subject_type, subject_id)

        def grant() -> Decision:
            return Decision(attribute, Outcome.GRANTED, REASON_GRANTED, subject_type, subject_id)

        rule = self._table.get(attribute)
        if rule is None:
            return deny(REASON_UNKNOWN_ATTRIBUTE)

        # Any qualifying role grants; there is no most-specific-role narrowing.
        matching = [g for g in rule.grants if g.roles & expanded_roles]
        if not matching:
            return deny(REASON_NO_ROLE)
        if any(g.relationship is None for g in matching):
            return grant()

        if subject is None or principal is None:
            return deny(REASON_NO_SUBJECT)
        if any(self._lookup.holds(g.relationship, principal, subject) for g in matching):
            return grant()
        return deny(REASON_RELATIONSHIP)

    def __eq__(self, other):
        if not isinstance(other, PermissionPolicy):
            return NotImplemented
        return self._table == other._table


# ── Principal loading ────────────────────────────────────────────────

def _split_roles(raw) -> FrozenSet[str]:
    return frozenset(r.strip() for r in str(raw or "").split(",") if r.strip())


def load_principal(engine, api_key: str) -> Principal:
    """Look up an active portal user by API key and return their Principal."""
    sql = text("""
        SELECT id, email, display_name, roles, organization_id, patient_id
        FROM portal_users
        WHERE api_key = :k AND is_active = 1
        LIMIT 1
    """)
    with engine.connect() as conn:
        row = conn.execute(sql, {"k": api_key}).mappings().first()

    if not row:
        logger.info("Principal lookup failed", reason="no active user for key")
        raise AuthenticationError()

    roles = _split_roles(row["roles"])
    if not roles:
        logger.info("Principal lookup failed", reason="user has no roles", user_id=row["id"])
        raise AuthenticationError()

    return Principal(
        identity=str(row["email"]),
        roles=roles,
        display_name=str(row["display_name"] or ""),
        organization_id=str(row["organization_id"]) if row["organization_id"] is not None else None,
        patient_id=str(row["patient_id"]) if row["patient_id"] is not None else None,
    )
