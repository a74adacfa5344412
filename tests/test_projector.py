"""
Unit tests for the response projector – per-field decisions, omission of
denied fields, failure isolation and audit completeness.
"""

import copy
import dataclasses

import pytest
from structlog.testing import capture_logs

from securehealth.catalog import DEFAULT_CONFIGURATION
from securehealth.errors import AuditWriteFailure, AuthorizationError, KeyUnavailableError
from securehealth.models import Outcome, SubjectRecord
from securehealth.projector import ResponseProjector


@pytest.fixture
def projector(configurations, gateway, audit_sink):
    return ResponseProjector(configurations, gateway, audit_sink)


# ── Tests: read path ─────────────────────────────────────────────────

def test_doctor_sees_restricted_identifier(projector, audit_store, doctor, patient_record):
    out = projector.project(doctor, patient_record, ["ssn"])
    assert out.fields == {"ssn": "123-45-6789"}
    (entry,) = audit_store.entries
    assert entry.outcome is Outcome.GRANTED
    assert entry.attribute == "view-restricted-identifier"
    assert entry.field_name == "ssn"
    assert entry.subject_id == "p-1001"


def test_denied_single_field_raises_and_is_audited(
        projector, audit_store, gateway, receptionist, patient_record):
    with pytest.raises(AuthorizationError, match="not permitted"):
        projector.project(receptionist, patient_record, ["ssn"])
    (entry,) = audit_store.entries
    assert entry.outcome is Outcome.DENIED
    assert entry.principal_identity == receptionist.identity
    assert gateway.decrypted == []


def test_denied_fields_are_omitted_not_nulled(projector, admin, patient_record):
    out = projector.project(admin, patient_record)
    assert "ssn" not in out.fields
    assert "diagnosis" not in out.fields
    assert "notes" not in out.fields
    assert out.fields["first_name"] == "Ada"
    assert out.fields["insurance_details"] == "ACME-42"
    assert "ssn" not in out.to_dict()


def test_nurse_sees_clinical_data_but_not_ssn(projector, nurse, patient_record):
    out = projector.project(nurse, patient_record)
    assert out.fields["diagnosis"] == ["J45"]
    assert "ssn" not in out.fields
    assert "primary_doctor_id" not in out.fields


def test_audit_count_equals_fields_evaluated(projector, audit_store, admin, patient_record,
                                             configurations):
    out = projector.project(admin, patient_record)
    fields = configurations.current.sensitivity.fields_of("patient")
    assert len(audit_store.entries) == len(fields)
    granted = [e for e in audit_store.entries if e.outcome is Outcome.GRANTED]
    assert len(granted) == len(out.fields)


def test_duplicate_requested_fields_evaluated_once(projector, audit_store, doctor, patient_record):
    projector.project(doctor, patient_record, ["ssn", "ssn", "first_name"])
    assert [e.field_name for e in audit_store.entries] == ["ssn", "first_name"]


def test_unmapped_field_is_denied(projector, audit_store, doctor, patient_record):
    record = dataclasses.replace(
        patient_record, ciphertexts={**patient_record.ciphertexts, "shoe_size": ["enc", 42]}
    )
    out = projector.project(doctor, record, ["first_name", "shoe_size"])
    assert "shoe_size" not in out.fields
    denied = [e for e in audit_store.entries if e.outcome is Outcome.DENIED]
    assert [e.attribute for e in denied] == ["__unmapped-field__"]


def test_granted_field_missing_from_record_is_omitted(projector, doctor):
    record = SubjectRecord("patient", "p-2", {"first_name": ["enc", "Bo"]}, {})
    out = projector.project(doctor, record, ["first_name", "last_name"])
    assert out.fields == {"first_name": "Bo"}
    assert not out.is_partial


def test_decryption_failure_isolated_per_field(
        configurations, broken_gateway, audit_sink, doctor, patient_record):
    projector = ResponseProjector(configurations, broken_gateway, audit_sink)
    with capture_logs() as logs:
        out = projector.project(doctor, patient_record, ["first_name", "notes", "ssn"])

    assert out.fields == {"first_name": "Ada"}
    assert out.field_errors == {"notes": "malformed-ciphertext", "ssn": "key-unavailable"}
    assert out.is_partial
    failures = [log for log in logs if log["event"] == "Field decryption failed"]
    assert {log["field"] for log in failures} == {"patient.notes", "patient.ssn"}
    assert all("123-45-6789" not in str(log) for log in logs)


def test_unexpected_gateway_error_isolated(configurations, audit_sink, doctor, patient_record):
    class ExplodingGateway:
        def decrypt(self, descriptor, ciphertext):
            raise RuntimeError("socket closed")

    projector = ResponseProjector(configurations, ExplodingGateway(), audit_sink)
    out = projector.project(doctor, patient_record, ["first_name"])
    assert out.fields == {}
    assert out.field_errors == {"first_name": "encryption-failed"}


def test_audit_failure_aborts_projection(configurations, gateway, failing_audit_sink, doctor,
                                        patient_record):
    projector = ResponseProjector(configurations, gateway, failing_audit_sink)
    with pytest.raises(AuditWriteFailure):
        projector.project(doctor, patient_record, ["first_name"])
    assert gateway.decrypted == []


def test_concurrent_projection_matches_sequential(
        configurations, gateway, audit_sink, audit_store, nurse, patient_record):
    sequential = ResponseProjector(configurations, gateway, audit_sink).project(
        nurse, patient_record
    )
    count = len(audit_store.entries)
    concurrent = ResponseProjector(configurations, gateway, audit_sink, max_workers=4).project(
        nurse, patient_record
    )
    assert concurrent.fields == sequential.fields
    assert len(audit_store.entries) == 2 * count


def test_projection_uses_reloaded_configuration(projector, configurations, admin, patient_record):
    document = copy.deepcopy(DEFAULT_CONFIGURATION)
    document["attributes"]["view-restricted-identifier"]["roles"].append("ROLE_ADMIN")
    configurations.reload(document)
    assert projector.project(admin, patient_record, ["ssn"]).fields == {"ssn": "123-45-6789"}


def test_empty_field_request_is_denied(projector, audit_store, doctor, patient_record):
    with pytest.raises(AuthorizationError):
        projector.project(doctor, patient_record, [])
    assert audit_store.entries == []


def test_record_type_without_descriptors_is_denied(projector, audit_store, gateway, doctor):
    invoice = SubjectRecord("invoice", "inv-1", {"amount": ["enc", 120]}, {})
    with pytest.raises(AuthorizationError):
        projector.project(doctor, invoice)
    with pytest.raises(AuthorizationError):
        projector.project(doctor, invoice, ["amount"])
    assert [e.attribute for e in audit_store.entries] == ["__unmapped-field__"]
    assert gateway.decrypted == []


# ── Tests: patient self-access ───────────────────────────────────────

def test_patient_reads_own_basic_fields(projector, patient, patient_record):
    out = projector.project(patient, patient_record)
    assert out.fields == {
        "patient_id": "p-1001", "first_name": "Ada", "last_name": "Lovelace",
        "email": "ada@mail.example", "phone_number": "555-0100", "birth_date": "1815-12-10",
    }


def test_patient_cannot_read_other_patient(projector, audit_store, patient, patient_record):
    other = dataclasses.replace(patient_record, record_id="p-2002")
    with pytest.raises(AuthorizationError):
        projector.project(patient, other)
    assert {e.reason for e in audit_store.entries} == {
        "relationship not satisfied", "no authorized role",
    }


def test_patient_cannot_read_own_ssn(projector, patient, patient_record):
    with pytest.raises(AuthorizationError):
        projector.project(patient, patient_record, ["ssn"])


# ── Tests: write path ────────────────────────────────────────────────

def test_write_granted_encrypts_all_fields(projector, audit_store, gateway, doctor, patient_record):
    accepted = projector.authorize_write(
        doctor, patient_record, {"diagnosis": ["J45", "E11"], "first_name": "Ada"}
    )
    assert accepted.ciphertexts == {
        "diagnosis": ["enc", ["J45", "E11"]], "first_name": ["enc", "Ada"],
    }
    assert [e.action for e in audit_store.entries] == ["write", "write"]


def test_write_requires_assigned_provider(projector, gateway, doctor, patient_record):
    record = dataclasses.replace(patient_record, metadata={"primary_doctor_id": "other@x"})
    with pytest.raises(AuthorizationError):
        projector.authorize_write(doctor, record, {"diagnosis": ["J45"]})
    assert gateway.encrypted == []


def test_write_is_all_or_nothing(projector, audit_store, gateway, receptionist, patient_record):
    with pytest.raises(AuthorizationError):
        projector.authorize_write(
            receptionist, patient_record, {"insurance_details": "NEW-1", "ssn": "000-00-0000"}
        )
    assert gateway.encrypted == []
    outcomes = {e.field_name: e.outcome for e in audit_store.entries}
    assert outcomes == {"insurance_details": Outcome.GRANTED, "ssn": Outcome.DENIED}


def test_write_encryption_failure_fails_whole_write(configurations, audit_sink, make_gateway,
                                                    doctor, patient_record):
    gateway = make_gateway(broken={"last_name": KeyUnavailableError("no key")})
    projector = ResponseProjector(configurations, gateway, audit_sink)
    with pytest.raises(KeyUnavailableError):
        projector.authorize_write(doctor, patient_record, {"first_name": "A", "last_name": "B"})


def test_patient_updates_own_contact_details(projector, gateway, patient, patient_record):
    accepted = projector.authorize_write(patient, patient_record, {"phone_number": "555-0199"})
    assert accepted.ciphertexts == {"phone_number": ["enc", "555-0199"]}


def test_patient_cannot_update_name_or_other_records(projector, gateway, patient, patient_record):
    with pytest.raises(AuthorizationError):
        projector.authorize_write(patient, patient_record, {"first_name": "Eve"})
    other = dataclasses.replace(patient_record, record_id="p-2002")
    with pytest.raises(AuthorizationError):
        projector.authorize_write(patient, other, {"email": "eve@mail.example"})
    assert gateway.encrypted == []


def test_admin_updates_insurance(projector, admin, patient_record):
    accepted = projector.authorize_write(admin, patient_record, {"insurance_details": "NEW-2"})
    assert accepted.ciphertexts == {"insurance_details": ["enc", "NEW-2"]}
