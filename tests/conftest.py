"""
Shared fakes and fixtures: recording audit store, fake encryption gateway,
and a configuration holder over the built-in catalog.
"""

import dataclasses
import itertools
import threading

import pytest
from sqlalchemy import create_engine

from securehealth.audit import AuditSink, AuditStore
from securehealth.database import PERSISTED_FIELDS, metadata
from securehealth.encryption import EncryptionGateway
from securehealth.errors import KeyUnavailableError, MalformedCiphertextError
from securehealth.models import Principal, SubjectRecord
from securehealth.policy_config import ConfigurationHolder, default_configuration
from securehealth.rbac import MetadataRelationshipLookup


# ── Fakes ────────────────────────────────────────────────────────────

class RecordingAuditStore(AuditStore):
    """In-memory append-only store. `fail=True` makes every append raise."""
    def __init__(self, fail=False):
        self.entries = []
        self.fail = fail
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def append(self, entry):
        if self.fail:
            raise OSError("disk full")
        with self._lock:
            stored = dataclasses.replace(entry, entry_id=next(self._ids))
            self.entries.append(stored)
        return stored

    def query(self, audit_filter):
        matching = [
            e for e in reversed(self.entries)
            if audit_filter.principal_identity in (None, e.principal_identity)
            and audit_filter.subject_id in (None, e.subject_id)
        ]
        return iter(matching[audit_filter.offset:audit_filter.offset + audit_filter.limit])


class FakeGateway(EncryptionGateway):
    """
    Reversible "encryption": ciphertext is ["enc", value]. Fields named in
    `broken` fail with the given error.
    """
    def __init__(self, broken=None):
        self.broken = dict(broken or {})
        self.encrypted = []
        self.decrypted = []

    def encrypt(self, descriptor, plaintext):
        if descriptor.field_name in self.broken:
            raise self.broken[descriptor.field_name]
        self.encrypted.append(descriptor.field_name)
        return ["enc", plaintext]

    def decrypt(self, descriptor, ciphertext):
        self.decrypted.append(descriptor.field_name)
        if descriptor.field_name in self.broken:
            raise self.broken[descriptor.field_name]
        if not (isinstance(ciphertext, list) and ciphertext[:1] == ["enc"]):
            raise MalformedCiphertextError("not produced by FakeGateway")
        return ciphertext[1]


def enc(value):
    return ["enc", value]


# ── Fixtures ─────────────────────────────────────────────────────────

@pytest.fixture
def configurations():
    lookup = MetadataRelationshipLookup()
    return ConfigurationHolder(default_configuration(lookup), PERSISTED_FIELDS, lookup)


@pytest.fixture
def audit_store():
    return RecordingAuditStore()


@pytest.fixture
def audit_sink(audit_store, configurations):
    return AuditSink(audit_store, configurations)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def broken_gateway():
    return FakeGateway(broken={
        "notes": MalformedCiphertextError("bad token"),
        "ssn": KeyUnavailableError("no key"),
    })


@pytest.fixture
def sqlite_engine(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'securehealth.db'}", future=True)
    metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def doctor():
    return Principal("dr.smith@clinic.example", frozenset({"ROLE_DOCTOR"}), "Dr Smith", "org-1")


@pytest.fixture
def nurse():
    return Principal("nurse.lee@clinic.example", frozenset({"ROLE_NURSE"}), "Sam Lee", "org-1")


@pytest.fixture
def receptionist():
    return Principal("desk@clinic.example", frozenset({"ROLE_RECEPTIONIST"}), "Desk", "org-1")


@pytest.fixture
def admin():
    return Principal("admin@clinic.example", frozenset({"ROLE_ADMIN"}), "Admin", "org-1")


@pytest.fixture
def patient():
    return Principal("ada@mail.example", frozenset({"ROLE_PATIENT"}), "Ada Lovelace",
                     patient_id="p-1001")


@pytest.fixture
def patient_record():
    return SubjectRecord(
        record_type="patient",
        record_id="p-1001",
        ciphertexts={
            "patient_id": enc("p-1001"),
            "first_name": enc("Ada"),
            "last_name": enc("Lovelace"),
            "email": enc("ada@mail.example"),
            "phone_number": enc("555-0100"),
            "birth_date": enc("1815-12-10"),
            "ssn": enc("123-45-6789"),
            "diagnosis": enc(["J45"]),
            "medications": enc(["albuterol"]),
            "notes": enc("Follow up in 2 weeks"),
            "notes_history": enc([]),
            "insurance_details": enc("ACME-42"),
            "primary_doctor_id": enc("dr.smith@clinic.example"),
        },
        metadata={"primary_doctor_id": "dr.smith@clinic.example", "organization_id": "org-1"},
    )


@pytest.fixture
def failing_audit_sink(configurations):
    return AuditSink(RecordingAuditStore(fail=True), configurations)


@pytest.fixture
def make_gateway():
    return FakeGateway
