from typing import Any, Optional


class TrustfiIdentityError(Exception):
    """Base class for exceptions in the trustfi_identity library."""

    code = "IDENTITY_ERROR"

    def __init__(self, message: str, *, code: Optional[str] = None, details: Any = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.details = details


class LedgerConnectionError(TrustfiIdentityError, ConnectionError):
    """Raised when the identity ledger stays unreachable after the retry budget is spent."""

    code = "NETWORK_ERROR"

    def __init__(self, message: str, *, attempts: int = 0, last_error: Optional[BaseException] = None):
        super().__init__(message, details={"attempts": attempts})
        self.attempts = attempts
        self.last_error = last_error


class DIDResolutionError(TrustfiIdentityError):
    """Raised when a DID cannot be resolved because of a transport or format failure."""

    code = "NETWORK_ERROR"


class ClaimValidationError(TrustfiIdentityError):
    """Raised when a claim is malformed or cannot be signed."""

    code = "CREDENTIAL_INVALID"


class StorageError(TrustfiIdentityError):
    """Raised when the identity store fails."""

    code = "STORAGE_ERROR"


class CredentialStateError(TrustfiIdentityError):
    """Raised when a credential lifecycle transition is not allowed."""

    code = "CREDENTIAL_INVALID"


class DecryptionError(TrustfiIdentityError):
    """Raised when issuer key material cannot be decrypted with the presented key."""

    code = "KEY_ENCRYPTION_FAILED"


class SignatureError(TrustfiIdentityError):
    """Raised when there is an error with a cryptographic signature."""

    code = "VERIFICATION_FAILED"
