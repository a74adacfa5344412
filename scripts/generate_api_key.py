#!/usr/bin/env python3
"""
Generate API keys for portal users.
Prints INSERT statements for the portal_users table.
"""

import secrets
import string


def generate_api_key(prefix="shk", length=32):
    chars = string.ascii_letters + string.digits
    return f"{prefix}_" + "".join(secrets.choice(chars) for _ in range(length))


EXAMPLE_USERS = [
    ("dr.smith@clinic.example", "Dr. Jane Smith", "ROLE_DOCTOR", "org-1", None),
    ("nurse.lee@clinic.example", "Sam Lee", "ROLE_NURSE", "org-1", None),
    ("front.desk@clinic.example", "Front Desk", "ROLE_RECEPTIONIST", "org-1", None),
    ("admin@clinic.example", "System Admin", "ROLE_ADMIN", "org-1", None),
    ("pat.jones@mail.example", "Pat Jones", "ROLE_PATIENT", "org-1", "p-1001"),
]


def _sql(value):
    return "NULL" if value is None else f"'{value}'"


if __name__ == "__main__":
    print("=" * 70)
    print("SecureHealth API Key Generator")
    print("=" * 70)
    print()

    for email, name, roles, org, patient in EXAMPLE_USERS:
        print(f"-- {name} ({roles})")
        print(f"""INSERT INTO portal_users
    (email, display_name, roles, organization_id, patient_id, api_key, is_active)
VALUES
    ('{email}', '{name}', '{roles}', {_sql(org)}, {_sql(patient)}, '{generate_api_key()}', 1);
""")

    print("=" * 70)
    print("Note: roles is a comma-separated list, e.g. 'ROLE_DOCTOR,ROLE_ADMIN'.")
    print("=" * 70)
