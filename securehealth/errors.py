"""
Error taxonomy for the permission and audit engine.

Authentication and authorization failures carry deliberately generic
messages; the reason for a denial only ever reaches internal logs and the
audit trail.
"""


class SecureHealthError(Exception):
    """Base error for expected failures."""

    def __init__(self, message: str, *, http_status: int = 400):
        super().__init__(message)
        self.message = message
        self.http_status = http_status


class AuthenticationError(SecureHealthError):
    def __init__(self, message: str = "not authenticated"):
        super().__init__(message, http_status=401)


class AuthorizationError(SecureHealthError):
    def __init__(self, message: str = "not permitted"):
        super().__init__(message, http_status=403)


class ConfigurationError(Exception):
    """Invalid security configuration. Fatal at startup."""


class EncryptionFailure(SecureHealthError):
    kind = "encryption-failed"

    def __init__(self, message: str = "encryption provider failure"):
        super().__init__(message, http_status=500)


class KeyUnavailableError(EncryptionFailure):
    kind = "key-unavailable"


class MalformedCiphertextError(EncryptionFailure):
    kind = "malformed-ciphertext"


class AuditWriteFailure(SecureHealthError):
    def __init__(self, message: str = "audit trail unavailable"):
        super().__init__(message, http_status=500)
