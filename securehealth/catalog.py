"""
Built-in security configuration: role hierarchy, attribute table and the
field sensitivity tables for patient and message records.

Used when SECUREHEALTH_POLICY_FILE is not set. The JSON file format is the
same document shape.
"""

# ── Roles ────────────────────────────────────────────────────────────
ROLES = {
    "ROLE_DOCTOR": ["ROLE_NURSE"],
    "ROLE_NURSE": ["ROLE_STAFF"],
    "ROLE_RECEPTIONIST": ["ROLE_STAFF"],
    "ROLE_ADMIN": ["ROLE_STAFF"],
    "ROLE_STAFF": ["ROLE_USER"],
    "ROLE_PATIENT": ["ROLE_USER"],
}

# ── Attributes ───────────────────────────────────────────────────────
# Admins see demographics and insurance but never clinical data or SSN.
# Patients see their own demographics and may change only their contact details.
ATTRIBUTES = {
    "view-patient-basic": {"grants": [
        {"roles": ["ROLE_STAFF"]},
        {"roles": ["ROLE_PATIENT"], "relationship": "own-record"},
    ]},
    "edit-patient-basic": {"roles": ["ROLE_NURSE"]},
    "edit-patient-contact": {"grants": [
        {"roles": ["ROLE_NURSE"]},
        {"roles": ["ROLE_PATIENT"], "relationship": "own-record"},
    ]},
    "view-restricted-identifier": {"roles": ["ROLE_DOCTOR"]},
    "edit-restricted-identifier": {"roles": ["ROLE_DOCTOR"]},
    "view-clinical-data": {"roles": ["ROLE_NURSE"]},
    "edit-clinical-data": {"roles": ["ROLE_DOCTOR"], "relationship": "assigned-provider"},
    "view-insurance": {"roles": ["ROLE_STAFF"]},
    "edit-insurance": {"roles": ["ROLE_DOCTOR", "ROLE_RECEPTIONIST", "ROLE_ADMIN"]},
    "view-care-team": {"roles": ["ROLE_DOCTOR"]},
    "edit-care-team": {"roles": ["ROLE_DOCTOR"]},
    "view-message": {"roles": ["ROLE_STAFF"]},
    "view-message-body": {"roles": ["ROLE_NURSE"]},
    "send-message": {"roles": ["ROLE_STAFF"]},
    "audit-log": {"roles": ["ROLE_ADMIN", "ROLE_DOCTOR"]},
}

AUDIT_QUERY_ATTRIBUTE = "audit-log"


def _field(encryption, read, write):
    return {"encryption": encryption, "read": read, "write": write}


# ── Record types ─────────────────────────────────────────────────────
PATIENT_FIELDS = {
    "patient_id": _field("equality", "view-patient-basic", "edit-patient-basic"),
    "first_name": _field("equality", "view-patient-basic", "edit-patient-basic"),
    "last_name": _field("equality", "view-patient-basic", "edit-patient-basic"),
    "email": _field("equality", "view-patient-basic", "edit-patient-contact"),
    "phone_number": _field("equality", "view-patient-basic", "edit-patient-contact"),
    "birth_date": _field("range", "view-patient-basic", "edit-patient-basic"),
    "ssn": _field("opaque", "view-restricted-identifier", "edit-restricted-identifier"),
    "diagnosis": _field("opaque", "view-clinical-data", "edit-clinical-data"),
    "medications": _field("opaque", "view-clinical-data", "edit-clinical-data"),
    "notes": _field("opaque", "view-clinical-data", "edit-clinical-data"),
    "notes_history": _field("opaque", "view-clinical-data", "edit-clinical-data"),
    "insurance_details": _field("opaque", "view-insurance", "edit-insurance"),
    "primary_doctor_id": _field("equality", "view-care-team", "edit-care-team"),
}

MESSAGE_FIELDS = {
    "patient_id": _field("equality", "view-message", "send-message"),
    "sender_name": _field("equality", "view-message", "send-message"),
    "conversation_id": _field("equality", "view-message", "send-message"),
    "subject": _field("equality", "view-message", "send-message"),
    "body": _field("opaque", "view-message-body", "send-message"),
}

DEFAULT_CONFIGURATION = {
    "roles": ROLES,
    "attributes": ATTRIBUTES,
    "record_types": {
        "patient": PATIENT_FIELDS,
        "message": MESSAGE_FIELDS,
    },
}
