"""Credential vault: password-protected wallet secrets.

State machine::

    LOCKED --unlock(password)--> UNLOCKED
    UNLOCKED --lock() | idle timeout | all contexts closed--> LOCKED

Only wrapped artifacts reach the shared store (password hash + salt, session
salt, encrypted wallet records). The session key and decrypted wallets live
in a VaultState held by this object and are zeroed on lock.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

from ..core.clock import Clock, now_ms
from ..core.config import VaultConfig
from ..crypto import signer
from ..errors import (
    InvalidPasswordError,
    NoPasswordSetError,
    RateLimitedError,
    StorageError,
    ValidationError,
    VaultLockedError,
    WalletNotFoundError,
)
from ..registry.kv import KeyValueStore
from . import password as pw
from .models import EncryptedWalletRecord, Wallet
from .rate_limit import RATE_LIMIT_STATE_KEY, RateLimitStatus, UnlockRateLimiter

logger = logging.getLogger(__name__)

# Shared store keys
PASSWORD_HASH_KEY = "walletPasswordHash"
PASSWORD_SALT_KEY = "walletPasswordSalt"
SESSION_SALT_KEY = "walletSessionSalt"
KDF_ITERATIONS_KEY = "walletKdfIterations"
ENCRYPTED_WALLETS_KEY = "encryptedWallets"
LOCK_FLAG_KEY = "isWalletLocked"

VAULT_KEYS = (
    PASSWORD_HASH_KEY,
    PASSWORD_SALT_KEY,
    SESSION_SALT_KEY,
    KDF_ITERATIONS_KEY,
    ENCRYPTED_WALLETS_KEY,
)


def _wipe(key: Optional[bytearray]) -> None:
    if key is not None:
        for i in range(len(key)):
            key[i] = 0


@dataclass
class VaultState:
    """Volatile session state. Never persisted."""

    unlocked: bool = False
    session_key: Optional[bytearray] = None
    wallets: Dict[str, Wallet] = field(default_factory=dict)
    # Records that failed to decrypt at unlock; kept on disk untouched
    unreadable: Set[str] = field(default_factory=set)
    last_activity: int = 0

    def clear(self) -> None:
        _wipe(self.session_key)
        self.session_key = None
        self.wallets.clear()
        self.unreadable.clear()
        self.unlocked = False
        self.last_activity = 0


class CredentialVault:
    """Password-protected store of wallet secrets.

    Example:
        >>> vault = CredentialVault(store)
        >>> await vault.setup("Correct-Horse-9", wallet)
        >>> await vault.lock()
        >>> wallets = await vault.unlock("Correct-Horse-9")
    """

    def __init__(
        self,
        store: KeyValueStore,
        config: Optional[VaultConfig] = None,
        clock: Clock = now_ms,
    ) -> None:
        self.store = store
        self.config = config or VaultConfig()
        self.clock = clock
        self.state = VaultState()
        self.limiter = UnlockRateLimiter(
            max_attempts=self.config.max_attempts,
            lockout_ms=self.config.lockout_ms,
            max_lockout_ms=self.config.max_lockout_ms,
        )
        # Bumped by every lock(); operations that awaited compare against it
        self._generation = 0
        self._mutex = asyncio.Lock()
        self._auto_lock_task: Optional[asyncio.Task] = None

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    @property
    def is_unlocked(self) -> bool:
        return self.state.unlocked

    @property
    def wallets(self) -> List[Wallet]:
        return list(self.state.wallets.values())

    async def has_password(self) -> bool:
        return await self.store.get(PASSWORD_HASH_KEY) is not None

    def rate_limit_status(self) -> RateLimitStatus:
        return self.limiter.status(self.clock())

    def touch(self) -> None:
        """Record user activity for the idle auto-lock."""
        if self.state.unlocked:
            self.state.last_activity = self.clock()

    def _require_unlocked(self) -> bytearray:
        if not self.state.unlocked or self.state.session_key is None:
            raise VaultLockedError("Wallet is locked")
        self.touch()
        return self.state.session_key

    def get_wallet(self, address: Optional[str] = None) -> Wallet:
        """Get an unlocked wallet; the first one when no address is given."""
        self._require_unlocked()
        if address is None:
            if not self.state.wallets:
                raise WalletNotFoundError("No wallets available")
            return next(iter(self.state.wallets.values()))
        wallet = self.state.wallets.get(address)
        if wallet is None:
            raise WalletNotFoundError(f"Wallet not found: {address}")
        return wallet

    # -------------------------------------------------------------------------
    # Key derivation helpers
    # -------------------------------------------------------------------------

    async def _run_kdf(self, func, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, func, *args)

    async def _iterations(self) -> int:
        stored = await self.store.get(KDF_ITERATIONS_KEY)
        return int(stored) if stored else self.config.pbkdf2_iterations

    def _check_strength(self, password: str) -> None:
        if not self.config.enforce_password_strength:
            return
        strength = pw.validate_password_strength(password)
        if not strength.valid:
            raise ValidationError(f"Password too weak: {'; '.join(strength.feedback)}")

    async def _derive_artifacts(self, password: str) -> tuple[Dict[str, Any], bytearray]:
        iterations = self.config.pbkdf2_iterations
        salt = pw.generate_salt(self.config.salt_length)
        session_salt = pw.generate_salt(self.config.salt_length)
        password_hash = await self._run_kdf(pw.hash_password, password, salt, iterations)
        session_key = await self._run_kdf(pw.derive_session_key, password, session_salt, iterations)
        artifacts = {
            PASSWORD_HASH_KEY: pw.b64(password_hash),
            PASSWORD_SALT_KEY: pw.b64(salt),
            SESSION_SALT_KEY: pw.b64(session_salt),
            KDF_ITERATIONS_KEY: iterations,
        }
        return artifacts, session_key

    async def _verify(self, password: str) -> bool:
        stored_hash = await self.store.get(PASSWORD_HASH_KEY)
        salt = await self.store.get(PASSWORD_SALT_KEY)
        if stored_hash is None or salt is None:
            raise NoPasswordSetError("No password set")
        iterations = await self._iterations()
        return await self._run_kdf(
            pw.verify_password, password, pw.unb64(stored_hash), pw.unb64(salt), iterations
        )

    # -------------------------------------------------------------------------
    # Rate limit bookkeeping
    # -------------------------------------------------------------------------

    async def _sync_rate_limit(self) -> None:
        """Fold in the shared limiter state written by other contexts."""
        try:
            data = await self.store.get(RATE_LIMIT_STATE_KEY)
        except Exception as e:
            logger.warning(f"Failed to read unlock rate limit state: {e}")
            return
        if data:
            self.limiter.load(data)

    async def _mirror_rate_limit(self) -> None:
        try:
            await self.store.set(RATE_LIMIT_STATE_KEY, self.limiter.to_dict())
        except Exception as e:
            logger.warning(f"Failed to persist unlock rate limit state: {e}")

    def _enforce_rate_limit(self) -> None:
        try:
            self.limiter.check(self.clock())
        except RateLimitedError as e:
            logger.warning(f"Unlock rejected: locked out for another {e.remaining_ms}ms")
            raise

    async def _check_password(self, password: str) -> None:
        """Verify a password through the rate limiter."""
        await self._sync_rate_limit()
        self._enforce_rate_limit()

        verified = await self._verify(password)
        # Another context may have locked us out while the KDF ran.
        await self._sync_rate_limit()
        self._enforce_rate_limit()
        if verified:
            self.limiter.reset(self.clock())
            await self._mirror_rate_limit()
            return

        status = self.limiter.record_failure(self.clock())
        await self._mirror_rate_limit()
        if status.limited:
            logger.warning(f"Too many failed unlock attempts, locked out for {status.remaining_ms}ms")
            raise RateLimitedError(status.remaining_ms, status.remaining_attempts)
        logger.info(f"Invalid password, {status.remaining_attempts} attempts remaining")
        raise InvalidPasswordError(remaining_attempts=status.remaining_attempts)

    # -------------------------------------------------------------------------
    # Records
    # -------------------------------------------------------------------------

    async def _load_records(self) -> List[EncryptedWalletRecord]:
        raw = await self.store.get(ENCRYPTED_WALLETS_KEY, [])
        return [EncryptedWalletRecord.from_dict(item) for item in raw]

    def _encrypt(self, wallet: Wallet, key: bytearray) -> EncryptedWalletRecord:
        return EncryptedWalletRecord(
            address=wallet.address,
            ciphertext=pw.encrypt_secret(wallet.to_secret_bytes(), key),
            created_at=self.clock(),
        )

    async def _cross_check(self) -> None:
        records = {record.address for record in await self._load_records()}
        expected = set(self.state.wallets) | self.state.unreadable
        if records != expected:
            raise StorageError(
                f"Wallet records out of sync: stored={sorted(records)} unlocked={sorted(expected)}"
            )

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    def _still_current(self, generation: int) -> bool:
        return generation == self._generation

    async def setup(self, password: str, wallet: Wallet) -> None:
        """Create the vault with its first wallet and leave it unlocked."""
        async with self._mutex:
            if await self.has_password():
                raise ValidationError("Vault is already set up")
            self._check_strength(password)
            generation = self._generation

            artifacts, session_key = await self._derive_artifacts(password)
            record = self._encrypt(wallet, session_key)
            locked_meanwhile = not self._still_current(generation)
            await self.store.apply(
                {
                    **artifacts,
                    ENCRYPTED_WALLETS_KEY: [record.to_dict()],
                    LOCK_FLAG_KEY: locked_meanwhile,
                }
            )
            self.limiter.reset()
            if locked_meanwhile or not self._still_current(generation):
                _wipe(session_key)
                logger.info(f"Vault set up with wallet {wallet.address}, left locked")
                return

            self.state.clear()
            self.state.session_key = session_key
            self.state.wallets[wallet.address] = wallet
            self.state.unlocked = True
            self.state.last_activity = self.clock()
            logger.info(f"Vault set up with wallet {wallet.address}")

    async def unlock(self, password: str) -> List[Wallet]:
        """Unlock the vault and return the decrypted wallets.

        Raises:
            NoPasswordSetError: If the vault was never set up
            RateLimitedError: While locked out after repeated failures
            InvalidPasswordError: If the password is wrong
            VaultLockedError: If lock() was called while unlocking
        """
        async with self._mutex:
            generation = self._generation
            await self._check_password(password)

            session_salt = await self.store.get(SESSION_SALT_KEY)
            if session_salt is None:
                raise StorageError("Session salt missing")
            iterations = await self._iterations()
            session_key = await self._run_kdf(
                pw.derive_session_key, password, pw.unb64(session_salt), iterations
            )

            wallets: Dict[str, Wallet] = {}
            unreadable: Set[str] = set()
            for record in await self._load_records():
                try:
                    wallet = Wallet.from_secret_bytes(pw.decrypt_secret(record.ciphertext, session_key))
                except Exception as e:
                    logger.warning(f"Skipping wallet {record.address}: failed to decrypt ({e})")
                    unreadable.add(record.address)
                    continue
                wallets[wallet.address] = wallet

            if not self._still_current(generation):
                _wipe(session_key)
                logger.info("Unlock abandoned: vault was locked while unlocking")
                raise VaultLockedError("Vault was locked during unlock")

            self.state.clear()
            self.state.session_key = session_key
            self.state.wallets.update(wallets)
            self.state.unreadable = unreadable
            self.state.unlocked = True
            self.state.last_activity = self.clock()

            await self.store.set(LOCK_FLAG_KEY, False)
            logger.info(f"Vault unlocked with {len(wallets)} wallet(s)")
            return list(wallets.values())

    async def lock(self) -> None:
        """Zero the session key and drop decrypted wallets. Idempotent.

        Takes effect immediately, also against an unlock or password change
        that is still deriving keys: those abort instead of unlocking again.
        """
        self._generation += 1
        was_unlocked = self.state.unlocked
        self.state.clear()
        if not was_unlocked:
            return
        try:
            await self.store.set(LOCK_FLAG_KEY, True)
        except Exception as e:
            logger.warning(f"Failed to publish lock flag: {e}")
        logger.info("Vault locked")

    async def add_wallet(self, wallet: Wallet) -> None:
        """Encrypt and store a wallet; replaces a wallet with the same address."""
        async with self._mutex:
            key = self._require_unlocked()
            generation = self._generation
            records = await self._load_records()
            if not self._still_current(generation):
                raise VaultLockedError("Wallet is locked")
            previous = self.state.wallets.get(wallet.address)

            updated = [r for r in records if r.address != wallet.address]
            updated.append(self._encrypt(wallet, key))
            await self.store.set(ENCRYPTED_WALLETS_KEY, [r.to_dict() for r in updated])
            if not self._still_current(generation):
                # The record is written under the unchanged session key; it
                # decrypts on the next unlock.
                logger.info(f"Added wallet {wallet.address} while locking")
                return
            self.state.wallets[wallet.address] = wallet
            self.state.unreadable.discard(wallet.address)

            try:
                await self._cross_check()
            except StorageError:
                if not self._still_current(generation):
                    logger.info(f"Added wallet {wallet.address} while locking")
                    return
                logger.error(f"Rolling back add of wallet {wallet.address}")
                await self.store.set(ENCRYPTED_WALLETS_KEY, [r.to_dict() for r in records])
                if previous is None:
                    self.state.wallets.pop(wallet.address, None)
                else:
                    self.state.wallets[wallet.address] = previous
                raise
            logger.info(f"Added wallet {wallet.address}")

    async def remove_wallet(self, address: str) -> None:
        """Delete a wallet and its encrypted record."""
        async with self._mutex:
            self._require_unlocked()
            generation = self._generation
            records = await self._load_records()
            if not self._still_current(generation):
                raise VaultLockedError("Wallet is locked")
            if address not in self.state.wallets and not any(r.address == address for r in records):
                raise WalletNotFoundError(f"Wallet not found: {address}")

            previous = self.state.wallets.pop(address, None)
            was_unreadable = address in self.state.unreadable
            self.state.unreadable.discard(address)
            await self.store.set(
                ENCRYPTED_WALLETS_KEY,
                [r.to_dict() for r in records if r.address != address],
            )
            if not self._still_current(generation):
                logger.info(f"Removed wallet {address} while locking")
                return

            try:
                await self._cross_check()
            except StorageError:
                if not self._still_current(generation):
                    logger.info(f"Removed wallet {address} while locking")
                    return
                logger.error(f"Rolling back removal of wallet {address}")
                await self.store.set(ENCRYPTED_WALLETS_KEY, [r.to_dict() for r in records])
                if previous is not None:
                    self.state.wallets[address] = previous
                if was_unreadable:
                    self.state.unreadable.add(address)
                raise
            logger.info(f"Removed wallet {address}")

    async def change_password(self, old_password: str, new_password: str) -> None:
        """Re-derive every artifact and re-wrap all wallet records.

        Raises:
            VaultLockedError: If the vault is locked, or gets locked before
                the new artifacts are written (nothing is written then)
            StorageError: If a stored record has no decrypted wallet to re-wrap
        """
        async with self._mutex:
            self._require_unlocked()
            generation = self._generation
            await self._check_password(old_password)
            self._check_strength(new_password)

            artifacts, session_key = await self._derive_artifacts(new_password)
            records = await self._load_records()
            if not self._still_current(generation) or not self.state.unlocked:
                _wipe(session_key)
                raise VaultLockedError("Vault was locked during password change")

            rewrapped = []
            for record in records:
                wallet = self.state.wallets.get(record.address)
                if wallet is not None:
                    new_record = self._encrypt(wallet, session_key)
                    new_record.created_at = record.created_at
                    rewrapped.append(new_record)
                elif record.address in self.state.unreadable:
                    logger.warning(f"Keeping unreadable wallet record {record.address} as-is")
                    rewrapped.append(record)
                else:
                    _wipe(session_key)
                    raise StorageError(
                        f"Wallet records out of sync: no unlocked wallet for {record.address}"
                    )

            await self.store.apply(
                {**artifacts, ENCRYPTED_WALLETS_KEY: [r.to_dict() for r in rewrapped]}
            )

            if not self._still_current(generation) or not self.state.unlocked:
                # Locked while writing; the new artifacts are complete on disk.
                _wipe(session_key)
                logger.info("Vault password changed while locking")
                return
            old_key = self.state.session_key
            self.state.session_key = session_key
            _wipe(old_key)
            logger.info("Vault password changed")

    # -------------------------------------------------------------------------
    # Signing (keys never leave the vault)
    # -------------------------------------------------------------------------

    def sign_capability(self, payload: Dict[str, Any], address: Optional[str] = None) -> Dict[str, Any]:
        wallet = self.get_wallet(address)
        return signer.sign_capability(payload, wallet.private_key)

    def sign_message(self, message: str, address: Optional[str] = None) -> Dict[str, str]:
        wallet = self.get_wallet(address)
        return signer.sign_message(message, wallet.private_key)

    def public_key(self, address: Optional[str] = None) -> str:
        """Hex ed25519 public key of an unlocked wallet."""
        wallet = self.get_wallet(address)
        return signer.public_key_hex(wallet.private_key)

    # -------------------------------------------------------------------------
    # Auto-lock
    # -------------------------------------------------------------------------

    async def check_idle(self) -> bool:
        """Lock if idle longer than the auto-lock window. Returns True if locked."""
        if not self.state.unlocked:
            return False
        idle = self.clock() - self.state.last_activity
        if idle >= self.config.auto_lock_ms:
            logger.info(f"Auto-locking vault after {idle}ms idle")
            await self.lock()
            return True
        return False

    async def _auto_lock_loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self.config.auto_lock_check_interval_s)
                await self.check_idle()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.warning(f"Auto-lock loop error: {e}")

    def start_auto_lock(self) -> None:
        if self._auto_lock_task is None or self._auto_lock_task.done():
            self._auto_lock_task = asyncio.create_task(self._auto_lock_loop())

    async def stop_auto_lock(self) -> None:
        task = self._auto_lock_task
        self._auto_lock_task = None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def on_all_contexts_closed(self) -> None:
        """Host signal: every UI window is gone."""
        logger.info("All contexts closed, locking vault")
        await self.lock()
