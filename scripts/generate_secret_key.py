#!/usr/bin/env python3
"""
Generate the JWT secret and a field encryption key.
Run this and copy the output to your .env file.
"""

import secrets

from cryptography.fernet import Fernet

if __name__ == "__main__":
    print("=" * 60)
    print("SecureHealth Key Generator")
    print("=" * 60)
    print("\nGenerating secure random keys...\n")

    print(f"JWT_SECRET_KEY={secrets.token_hex(32)}")
    print(f"SECUREHEALTH_ENCRYPTION_KEYS={Fernet.generate_key().decode()}")
    print(f"SECUREHEALTH_AUDIT_SIGNING_KEY={secrets.token_hex(32)}")
    print("\n" + "=" * 60)
    print("Copy the lines above to your .env file.")
    print("To rotate, prepend the new encryption key: NEW,OLD")
    print("=" * 60)
