"""
Domain dataclasses used across the application.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, Mapping, Optional, Tuple


class EncryptionClass(Enum):
    """How a field's ciphertext is produced by the encryption provider."""
    EQUALITY = "equality"  # deterministic, equality-searchable
    RANGE = "range"        # range-searchable
    OPAQUE = "opaque"      # randomized, not searchable


class Outcome(Enum):
    GRANTED = "granted"
    DENIED = "denied"


class Action(Enum):
    READ = "read"
    WRITE = "write"
    AUDIT_QUERY = "audit-query"


@dataclass(frozen=True)
class Principal:
    """An authenticated actor for one request. Never mutated after resolution."""
    identity: str
    roles: FrozenSet[str]                  # declared roles, before expansion
    display_name: str = ""
    organization_id: Optional[str] = None  # tenant scope, see same-organization
    patient_id: Optional[str] = None       # set for patient-portal principals


@dataclass(frozen=True)
class FieldDescriptor:
    record_type: str
    field_name: str
    encryption_class: EncryptionClass
    read_attribute: str
    write_attribute: str


@dataclass(frozen=True)
class SubjectRecord:
    """
    A stored record as the engine sees it: per-field ciphertext plus
    cleartext routing metadata (primary_doctor_id, organization_id, ...).
    """
    record_type: str
    record_id: Optional[str]
    ciphertexts: Mapping[str, Any] = field(default_factory=dict)
    metadata: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Decision:
    """Result of one permission evaluation. Not cached across requests."""
    attribute: str
    outcome: Outcome
    reason: str
    subject_type: Optional[str] = None
    subject_id: Optional[str] = None

    @property
    def granted(self) -> bool:
        return self.outcome is Outcome.GRANTED


@dataclass(frozen=True)
class AuditEntry:
    """Immutable record of one permission decision."""
    timestamp: datetime
    principal_identity: str
    roles: Tuple[str, ...]          # expanded roles at decision time, sorted
    attribute: str
    action: str
    outcome: Outcome
    reason: str
    subject_type: Optional[str] = None
    subject_id: Optional[str] = None
    field_name: Optional[str] = None
    entry_id: Optional[int] = None  # assigned by the store
    signature: Optional[str] = None


@dataclass(frozen=True)
class AuditFilter:
    """Read-only audit query. Omitted fields do not restrict."""
    since: Optional[datetime] = None
    until: Optional[datetime] = None
    principal_identity: Optional[str] = None
    subject_type: Optional[str] = None
    subject_id: Optional[str] = None
    outcome: Optional[Outcome] = None
    limit: int = 100
    offset: int = 0


@dataclass
class FilteredRecord:
    """
    Outbound projection of a SubjectRecord. Denied fields are absent from
    `fields`; fields whose decryption failed are absent too and listed in
    `field_errors` by error kind.
    """
    record_type: str
    record_id: Optional[str]
    fields: Dict[str, Any] = field(default_factory=dict)
    field_errors: Dict[str, str] = field(default_factory=dict)

    @property
    def is_partial(self) -> bool:
        return bool(self.field_errors)

    def to_dict(self) -> Dict[str, Any]:
        data = {"id": self.record_id, "type": self.record_type}
        data.update(self.fields)
        return data


@dataclass(frozen=True)
class WriteAccepted:
    """Authorized field updates, already encrypted and ready to persist."""
    record_type: str
    record_id: Optional[str]
    ciphertexts: Mapping[str, Any]
