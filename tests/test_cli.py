"""
Tests for the operator CLI.
"""

import copy
import json

from securehealth.catalog import DEFAULT_CONFIGURATION
from securehealth.cli import main
from securehealth.database import portal_users


def test_check_config_builtin(capsys):
    assert main(["check-config", "--file", ""]) == 0
    out = capsys.readouterr().out
    assert "[config] OK (built-in catalog)" in out
    assert "patient: 13 fields" in out


def test_check_config_rejects_cycle(tmp_path, capsys):
    doc = copy.deepcopy(DEFAULT_CONFIGURATION)
    doc["roles"]["ROLE_USER"] = ["ROLE_PATIENT"]
    path = tmp_path / "policy.json"
    path.write_text(json.dumps(doc), encoding="utf-8")

    assert main(["check-config", "--file", str(path)]) == 1
    assert "Cyclic role implication" in capsys.readouterr().err


def test_check_config_rejects_uncovered_patient_schema(tmp_path, capsys):
    doc = copy.deepcopy(DEFAULT_CONFIGURATION)
    del doc["record_types"]["patient"]["notes_history"]
    path = tmp_path / "policy.json"
    path.write_text(json.dumps(doc), encoding="utf-8")

    assert main(["check-config", "--file", str(path)]) == 1
    assert "notes_history" in capsys.readouterr().err


def test_check_config_rejects_wrongly_typed_roles(tmp_path, capsys):
    doc = copy.deepcopy(DEFAULT_CONFIGURATION)
    doc["roles"]["ROLE_BILLING"] = 5
    path = tmp_path / "policy.json"
    path.write_text(json.dumps(doc), encoding="utf-8")

    assert main(["check-config", "--file", str(path)]) == 1
    assert "roles.ROLE_BILLING" in capsys.readouterr().err


def _add_user(engine, email, roles, key):
    with engine.begin() as conn:
        conn.execute(portal_users.insert().values(
            email=email, display_name=email, roles=roles, api_key=key, is_active=1,
        ))


def test_audit_report_for_admin(sqlite_engine, tmp_path, capsys):
    _add_user(sqlite_engine, "admin@clinic.example", "ROLE_ADMIN", "key-admin")
    db_uri = f"sqlite:///{tmp_path / 'securehealth.db'}"

    assert main(["audit-report", "--api-key", "key-admin", "--db-uri", db_uri, "--file", ""]) == 0
    assert "Decisions: 1" in capsys.readouterr().out


def test_audit_report_denied_for_nurse(sqlite_engine, tmp_path, capsys):
    _add_user(sqlite_engine, "nurse@clinic.example", "ROLE_NURSE", "key-nurse")
    db_uri = f"sqlite:///{tmp_path / 'securehealth.db'}"

    assert main(["audit-report", "--api-key", "key-nurse", "--db-uri", db_uri, "--file", ""]) == 1
    assert "not permitted" in capsys.readouterr().err
