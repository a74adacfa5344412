"""
Database engine initialisation, table definitions and the record repository.
"""

import json
import sys
from typing import Mapping, Optional

import structlog
from sqlalchemy import (
    Column, Float, Index, Integer, MetaData, String, Table, Text, UniqueConstraint,
    create_engine, select, text,
)

from securehealth.config import get_env
from securehealth.models import SubjectRecord

logger = structlog.get_logger()

metadata = MetaData()

portal_users = Table(
    "portal_users", metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("display_name", String(255)),
    Column("roles", String(512), nullable=False),  # comma-separated declared roles
    Column("organization_id", String(64)),
    Column("patient_id", String(64)),
    Column("api_key", String(128), nullable=False, unique=True),
    Column("is_active", Integer, nullable=False, default=1),
)

records = Table(
    "records", metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("record_type", String(64), nullable=False),
    Column("record_id", String(64), nullable=False),
    Column("fields", Text, nullable=False),   # JSON: field -> ciphertext
    Column("routing", Text, nullable=False),  # JSON: cleartext routing metadata
    UniqueConstraint("record_type", "record_id", name="uq_records_type_id"),
)

# Append-only: the application never issues UPDATE or DELETE against it.
audit_log = Table(
    "audit_log", metadata,
    Column("entry_id", Integer, primary_key=True, autoincrement=True),
    Column("timestamp", Float, nullable=False),
    Column("principal_identity", String(255), nullable=False),
    Column("roles", Text, nullable=False),
    Column("attribute", String(128), nullable=False),
    Column("action", String(32), nullable=False),
    Column("outcome", String(16), nullable=False),
    Column("reason", String(255), nullable=False),
    Column("subject_type", String(64)),
    Column("subject_id", String(64)),
    Column("field_name", String(128)),
    Column("signature", String(128)),
    Index("idx_audit_timestamp", "timestamp"),
    Index("idx_audit_principal", "principal_identity"),
    Index("idx_audit_subject", "subject_type", "subject_id"),
)

# Fields the repository persists for patient records. Checked against the
# field sensitivity map at startup.
PATIENT_SCHEMA = (
    "patient_id", "first_name", "last_name", "email", "phone_number", "birth_date",
    "ssn", "diagnosis", "medications", "notes", "notes_history",
    "insurance_details", "primary_doctor_id",
)

# Persisted fields per record type; every configuration must describe them all.
PERSISTED_FIELDS = {"patient": PATIENT_SCHEMA}


def init_engine(db_uri: Optional[str] = None):
    """Create a SQLAlchemy engine, verify the connection and create missing tables."""
    db_uri = db_uri or get_env("DB_URI")
    engine = create_engine(db_uri, echo=False, future=True)
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception as e:
        print("ERROR: could not connect to DB:", e, file=sys.stderr)
        sys.exit(1)
    metadata.create_all(engine)
    logger.info("Connected to DB", dialect=engine.dialect.name)
    return engine


# ── Record repository ────────────────────────────────────────────────

def load_record(engine, record_type: str, record_id: str) -> Optional[SubjectRecord]:
    sql = select(records.c.fields, records.c.routing).where(
        records.c.record_type == record_type,
        records.c.record_id == record_id,
    )
    with engine.connect() as conn:
        row = conn.execute(sql).mappings().first()
    if not row:
        return None
    return SubjectRecord(
        record_type=record_type,
        record_id=record_id,
        ciphertexts=json.loads(row["fields"]),
        metadata=json.loads(row["routing"]),
    )


def save_record(engine, record: SubjectRecord) -> None:
    """Insert a record with its ciphertexts and routing metadata."""
    with engine.begin() as conn:
        conn.execute(records.insert().values(
            record_type=record.record_type,
            record_id=record.record_id,
            fields=json.dumps(dict(record.ciphertexts)),
            routing=json.dumps(dict(record.metadata)),
        ))


def update_record_fields(engine, record: SubjectRecord, ciphertexts: Mapping) -> SubjectRecord:
    """Merge already-authorized ciphertexts into a stored record."""
    merged = dict(record.ciphertexts)
    merged.update(ciphertexts)
    with engine.begin() as conn:
        conn.execute(
            records.update()
            .where(
                records.c.record_type == record.record_type,
                records.c.record_id == record.record_id,
            )
            .values(fields=json.dumps(merged))
        )
    return SubjectRecord(record.record_type, record.record_id, merged, record.metadata)
