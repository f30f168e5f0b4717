"""Credential vault: password hashing, wallet encryption, unlock rate limits."""

from .models import EncryptedWalletRecord, Wallet
from .password import PasswordStrength, validate_password_strength
from .rate_limit import RateLimitStatus, UnlockRateLimiter
from .vault import CredentialVault, VaultState

__all__ = [
    "CredentialVault",
    "EncryptedWalletRecord",
    "PasswordStrength",
    "RateLimitStatus",
    "UnlockRateLimiter",
    "VaultState",
    "Wallet",
    "validate_password_strength",
]
