"""Error taxonomy for capvault.

Every failure that can reach a requester is a CapVaultError subclass carrying
a stable ``code`` (used in broker responses) and a ``retryable`` flag.
"""

from __future__ import annotations

import logging

logger = logging.getLogger(__name__)

# Security-relevant failures are always logged here in full detail.
security_logger = logging.getLogger("capvault.security")


class CapVaultError(Exception):
    """Base error for capvault operations."""

    code = "INTERNAL_ERROR"
    retryable = False
    public_message = "Request failed"


# =============================================================================
# REQUEST LIFECYCLE
# =============================================================================


class UserRejectedError(CapVaultError):
    """The user rejected the request."""

    code = "USER_REJECTED"
    public_message = "User rejected the request"


class RequestTimeoutError(CapVaultError):
    """No user decision arrived before the request deadline."""

    code = "TIMEOUT"
    public_message = "Request timed out"


class RequestSupersededError(CapVaultError):
    """A newer request of the same kind replaced this one."""

    code = "SUPERSEDED"
    public_message = "Request was superseded by a newer request"


class UnknownRequestTypeError(CapVaultError):
    """Message type is not part of the request protocol."""

    code = "UNKNOWN_REQUEST_TYPE"
    public_message = "Unknown request type"


class ValidationError(CapVaultError):
    """Request or payload failed validation."""

    code = "VALIDATION_ERROR"


class NotConnectedError(CapVaultError):
    """Origin has no connection to the wallet."""

    code = "NOT_CONNECTED"
    public_message = "Not connected to wallet"


# =============================================================================
# SECURITY
# =============================================================================


class OriginMismatchError(CapVaultError):
    """Claimed origin does not match the verified sender origin."""

    code = "ORIGIN_MISMATCH"
    public_message = "Request not permitted"


class NonceViolationError(CapVaultError):
    """Invocation nonce is not strictly greater than the last accepted one."""

    code = "NONCE_VIOLATION"
    public_message = "Request not permitted"


class SignatureInvalidError(CapVaultError):
    """Signing failed or a signature did not verify."""

    code = "SIGNATURE_INVALID"
    public_message = "Request not permitted"


# =============================================================================
# CAPABILITIES
# =============================================================================


class CapabilityExpiredError(CapVaultError):
    """Capability has expired."""

    code = "CAPABILITY_EXPIRED"
    public_message = "Capability expired"


class CapabilityNotFoundError(CapVaultError):
    """Capability not found for this origin."""

    code = "CAPABILITY_NOT_FOUND"
    public_message = "Capability not found"


class MethodNotAllowedError(CapVaultError):
    """Method is not granted by the capability."""

    code = "METHOD_NOT_ALLOWED"
    public_message = "Method not allowed by capability"


class MethodExecutionError(CapVaultError):
    """An authorized method failed while executing."""

    code = "METHOD_FAILED"
    retryable = True
    public_message = "Method execution failed"


# =============================================================================
# VAULT
# =============================================================================


class VaultLockedError(CapVaultError):
    """Operation requires an unlocked vault."""

    code = "VAULT_LOCKED"
    retryable = True
    public_message = "Wallet is locked"


class NoPasswordSetError(CapVaultError):
    """Vault has not been set up yet."""

    code = "NO_PASSWORD_SET"
    public_message = "Wallet is not set up"


class InvalidPasswordError(CapVaultError):
    """Password did not match the stored hash."""

    code = "INVALID_PASSWORD"
    retryable = True
    public_message = "Invalid password"

    def __init__(self, message: str = "Invalid password", remaining_attempts: int = 0):
        super().__init__(message)
        self.remaining_attempts = remaining_attempts


class RateLimitedError(CapVaultError):
    """Too many failed unlock attempts; locked out for a while."""

    code = "RATE_LIMITED"
    retryable = True
    public_message = "Too many attempts"

    def __init__(self, remaining_ms: int, remaining_attempts: int = 0):
        super().__init__(
            f"Too many failed attempts. Try again in {(remaining_ms + 999) // 1000} seconds"
        )
        self.remaining_ms = remaining_ms
        self.remaining_attempts = remaining_attempts


class WalletNotFoundError(CapVaultError):
    """No wallet with the given address."""

    code = "WALLET_NOT_FOUND"
    public_message = "Wallet not found"


class StorageError(CapVaultError):
    """Primary storage failed or its contents are inconsistent."""

    code = "STORAGE_ERROR"
    public_message = "Storage error"


SECURITY_ERRORS: tuple[type[CapVaultError], ...] = (
    OriginMismatchError,
    NonceViolationError,
    SignatureInvalidError,
)


def is_security_error(exc: BaseException) -> bool:
    """Check whether an error indicates spoofing, replay or tampering."""
    return isinstance(exc, SECURITY_ERRORS)


def public_message(exc: CapVaultError) -> str:
    """Requester-facing message for an error.

    Security errors and internal failures get their generic message; the
    rest carry their own text, which never includes secrets.
    """
    if is_security_error(exc) or type(exc) is CapVaultError:
        return exc.public_message
    return str(exc) or exc.public_message
