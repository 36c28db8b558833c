"""
Credential encryption for tenant secrets (Twilio auth tokens).

Wire formats, oldest first:
  plaintext         raw value, never encrypted
  env reference     ${VAR_NAME}, resolved from the process environment
  legacy            hex(iv):hex(tag):hex(ciphertext), AES-256-GCM, key = sha256(secret-salt)
  v2 salted         v2:hex(key_salt):hex(iv):hex(tag):hex(ciphertext), key = PBKDF2(secret-salt, key_salt)
  v2 (current)      v2:hex(iv):hex(tag):hex(ciphertext), AES-256-GCM, key = PBKDF2(secret-salt)

A stored value is classified exactly once by parse_stored_credential() and
everything downstream matches on the resulting type. Values only move
forward to the current format; every older one stays readable.
"""
import hashlib
import logging
import os
import re
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional, Tuple, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from core import config
from core.credential_metrics import CredentialHealthMetrics, EncryptionMethod

logger = logging.getLogger(__name__)

CURRENT_VERSION = "v2"
VERSION_PREFIX = f"{CURRENT_VERSION}:"
IV_LENGTH = 16
TAG_LENGTH = 16
KEY_LENGTH = 32
MAX_CACHED_KEYS = 100
KEY_SALT_LENGTH = 32
# v2 salted values were always written with this count
SALTED_V2_ITERATIONS = 100_000

_HEX_RE = re.compile(r"[0-9a-fA-F]*")
_ENV_REFERENCE_RE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class CredentialError(Exception):
    """Base class for credential encryption failures. Messages are safe to log, not to return."""


class FormatError(CredentialError):
    """Stored value does not have the shape required for decryption"""


class IntegrityError(CredentialError):
    """Authentication tag did not verify: wrong key, tampering or corruption"""


class CipherError(CredentialError):
    """Any other failure inside the cipher"""


# ---------------------------------------------------------------------------
# Stored credential parsing
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Plaintext:
    value: str = field(repr=False)


@dataclass(frozen=True)
class EnvReference:
    """``${VAR_NAME}``: the secret lives in the process environment, not the database"""
    name: str


@dataclass(frozen=True)
class LegacyEncrypted:
    iv: bytes
    tag: bytes
    ciphertext: bytes


@dataclass(frozen=True)
class SaltedCurrentEncrypted:
    """v2 value carrying its own random PBKDF2 salt; readable, rewritten on upgrade"""
    key_salt: bytes
    iv: bytes
    tag: bytes
    ciphertext: bytes


@dataclass(frozen=True)
class CurrentEncrypted:
    iv: bytes
    tag: bytes
    ciphertext: bytes


Encrypted = Union[LegacyEncrypted, SaltedCurrentEncrypted, CurrentEncrypted]
StoredCredential = Union[Plaintext, EnvReference, Encrypted]


def _split_hex(value: str, count: int) -> Optional[Tuple[bytes, ...]]:
    parts = value.split(":")
    if len(parts) != count:
        return None
    # ciphertext may be empty (empty secret); every other part never is
    if not all(parts[:-1]):
        return None
    try:
        decoded = []
        for part in parts:
            if not _HEX_RE.fullmatch(part):
                return None
            decoded.append(bytes.fromhex(part))
    except ValueError:
        return None
    return tuple(decoded)


def parse_stored_credential(value: str, encryption_version: Optional[str] = None) -> StoredCredential:
    """
    Classify a stored credential value.

    ``encryption_version`` is the tag persisted alongside the value. A bare
    hex triple tagged "v2" is read as current rather than legacy.

    Raises FormatError for values that claim to be v2 (by prefix or tag)
    but do not parse; those are never treated as plaintext.
    """
    if value is None:
        raise FormatError("Stored credential is missing")

    if value.startswith(VERSION_PREFIX):
        body = value[len(VERSION_PREFIX):]
        triple = _split_hex(body, 3)
        if triple is not None:
            return CurrentEncrypted(*triple)
        salted = _split_hex(body, 4)
        if salted is not None:
            return SaltedCurrentEncrypted(*salted)
        raise FormatError("Malformed v2 credential")

    reference = _ENV_REFERENCE_RE.fullmatch(value)
    if reference:
        return EnvReference(reference.group(1))

    triple = _split_hex(value, 3)
    if triple is None:
        if encryption_version == CURRENT_VERSION:
            raise FormatError("Credential tagged v2 is not in encrypted format")
        return Plaintext(value)

    if encryption_version == CURRENT_VERSION:
        return CurrentEncrypted(*triple)
    return LegacyEncrypted(*triple)


def method_for(credential: StoredCredential) -> EncryptionMethod:
    if isinstance(credential, (CurrentEncrypted, SaltedCurrentEncrypted)):
        return EncryptionMethod.PBKDF2
    if isinstance(credential, LegacyEncrypted):
        return EncryptionMethod.LEGACY
    if isinstance(credential, EnvReference):
        return EncryptionMethod.ENV_VAR
    return EncryptionMethod.PLAINTEXT


def is_encrypted(value: Optional[str]) -> bool:
    """Structural check for the encrypted shape; says nothing about whether the key is right."""
    if not value:
        return False
    if value.startswith(VERSION_PREFIX):
        body = value[len(VERSION_PREFIX):]
        return _split_hex(body, 3) is not None or _split_hex(body, 4) is not None
    return _split_hex(value, 3) is not None


# ---------------------------------------------------------------------------
# Key derivation
# ---------------------------------------------------------------------------

def _namespace(secret: str, salt: Optional[str]) -> str:
    return f"{secret}-{salt}" if salt else secret


class KeyDerivation(ABC):
    """Derives a symmetric key from an application secret and an optional tenant salt."""

    def __init__(
        self,
        secret_provider: Callable[[], str],
        metrics: Optional[CredentialHealthMetrics] = None,
    ):
        self._secret_provider = secret_provider
        self.metrics = metrics

    @abstractmethod
    def derive(self, salt: Optional[str] = None) -> bytes:
        ...

    def derive_with_key_salt(self, salt: Optional[str], key_salt: bytes) -> bytes:
        raise CipherError(f"{type(self).__name__} cannot read values with an embedded key salt")

    def clear(self) -> None:
        pass

    @property
    def cache_size(self) -> int:
        return 0


class Sha256KeyDerivation(KeyDerivation):
    """Single SHA-256 over secret-salt. Only used to read legacy ciphertexts."""

    def derive(self, salt: Optional[str] = None) -> bytes:
        source = _namespace(self._secret_provider(), salt)
        return hashlib.sha256(source.encode("utf-8")).digest()


class Pbkdf2KeyDerivation(KeyDerivation):
    """PBKDF2-HMAC-SHA256 over secret-salt, cached in memory for ``cache_ttl`` seconds."""

    def __init__(
        self,
        secret_provider: Callable[[], str],
        iterations: int = 100_000,
        cache_ttl: float = 300,
        metrics: Optional[CredentialHealthMetrics] = None,
        salted_iterations: int = SALTED_V2_ITERATIONS,
    ):
        super().__init__(secret_provider, metrics)
        self.iterations = iterations
        self.salted_iterations = salted_iterations
        self.cache_ttl = cache_ttl
        self._cache: Dict[str, Tuple[bytes, float]] = {}
        self._lock = threading.Lock()

    def _count(self, counter: str) -> None:
        if self.metrics is not None:
            self.metrics.increment(counter)

    def derive(self, salt: Optional[str] = None) -> bytes:
        kdf_salt = hashlib.sha256(f"credential-key:{salt or ''}".encode("utf-8")).digest()
        return self._derive(salt, kdf_salt, self.iterations)

    def derive_with_key_salt(self, salt: Optional[str], key_salt: bytes) -> bytes:
        return self._derive(salt, key_salt, self.salted_iterations)

    def _derive(self, salt: Optional[str], kdf_salt: bytes, iterations: int) -> bytes:
        namespace = _namespace(self._secret_provider(), salt)
        # cache key covers the secret too, so rotating it never serves a stale key
        cache_key = hashlib.sha256(
            f"{namespace}:{kdf_salt.hex()}:{iterations}".encode("utf-8")
        ).hexdigest()
        now = time.monotonic()

        with self._lock:
            cached = self._cache.get(cache_key)
        if cached and now - cached[1] < self.cache_ttl:
            self._count("cache_hits")
            return cached[0]

        self._count("cache_misses")
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=KEY_LENGTH,
            salt=kdf_salt,
            iterations=iterations,
        )
        key = kdf.derive(namespace.encode("utf-8"))

        with self._lock:
            self._cache[cache_key] = (key, now)
            if len(self._cache) > MAX_CACHED_KEYS:
                expired = [k for k, (_, ts) in self._cache.items() if now - ts >= self.cache_ttl]
                for k in expired:
                    del self._cache[k]
        return key

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()

    @property
    def cache_size(self) -> int:
        with self._lock:
            return len(self._cache)


# ---------------------------------------------------------------------------
# Cipher
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ResolvedCredential:
    secret: str = field(repr=False)
    method: EncryptionMethod
    requires_reencryption: bool


@dataclass(frozen=True)
class ReencryptionResult:
    new_encrypted: str
    was_legacy: bool
    from_method: EncryptionMethod


class CredentialCipher:
    """
    Tenant-scoped authenticated encryption for stored secrets.

    The salt is the tenant's Twilio account SID. Callers must pass the same
    salt on decrypt that was used on encrypt.
    """

    def __init__(
        self,
        metrics: Optional[CredentialHealthMetrics] = None,
        key_derivation: Optional[KeyDerivation] = None,
        legacy_key_derivation: Optional[KeyDerivation] = None,
    ):
        self.metrics = metrics if metrics is not None else CredentialHealthMetrics()
        if key_derivation is None:
            key_derivation = Pbkdf2KeyDerivation(
                config.get_encryption_key,
                iterations=config.PBKDF2_ITERATIONS,
                cache_ttl=config.KEY_CACHE_TTL_SECONDS,
            )
        if key_derivation.metrics is None:
            key_derivation.metrics = self.metrics
        self.key_derivation = key_derivation
        if legacy_key_derivation is None:
            legacy_key_derivation = Sha256KeyDerivation(config.get_legacy_encryption_key)
        self.legacy_key_derivation = legacy_key_derivation
        self._legacy_warned = False
        self._plaintext_warned = False

    # -- write path ---------------------------------------------------------

    def encrypt(self, plaintext: str, salt: Optional[str] = None) -> str:
        self.metrics.increment("encryption_attempts")
        try:
            key = self.key_derivation.derive(salt)
            iv = os.urandom(IV_LENGTH)
            sealed = AESGCM(key).encrypt(iv, plaintext.encode("utf-8"), None)
        except Exception as exc:
            self.metrics.increment("encryption_failures")
            logger.error(f"Credential encryption failed: {exc!r}")
            raise CipherError("Failed to encrypt data") from exc

        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        self.metrics.increment("encryption_successes")
        self.metrics.record_method(EncryptionMethod.PBKDF2)
        return f"{VERSION_PREFIX}{iv.hex()}:{tag.hex()}:{ciphertext.hex()}"

    # -- read path ----------------------------------------------------------

    def _key_for(self, credential: Encrypted, salt: Optional[str]) -> bytes:
        if isinstance(credential, LegacyEncrypted):
            return self.legacy_key_derivation.derive(salt)
        if isinstance(credential, SaltedCurrentEncrypted):
            return self.key_derivation.derive_with_key_salt(salt, credential.key_salt)
        return self.key_derivation.derive(salt)

    def _open(self, credential: Encrypted, salt: Optional[str]) -> str:
        try:
            key = self._key_for(credential, salt)
            raw = AESGCM(key).decrypt(credential.iv, credential.ciphertext + credential.tag, None)
        except InvalidTag as exc:
            logger.error("Credential integrity check failed (wrong key or tampered value)")
            raise IntegrityError("Credential integrity check failed") from exc
        except Exception as exc:
            logger.error(f"Credential decryption failed: {exc!r}")
            raise CipherError("Failed to decrypt data") from exc

        try:
            plaintext = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            logger.error("Decrypted credential is not valid UTF-8")
            raise CipherError("Failed to decrypt data") from exc

        if isinstance(credential, LegacyEncrypted):
            self.metrics.record_method(EncryptionMethod.LEGACY)
            self.metrics.increment("fallback_decryptions")
            if not self._legacy_warned:
                logger.warning(
                    "Legacy encrypted credential detected; re-encrypt with enhanced security"
                )
                self._legacy_warned = True
        else:
            self.metrics.record_method(EncryptionMethod.PBKDF2)
        return plaintext

    def _read(
        self,
        stored: str,
        salt: Optional[str],
        encryption_version: Optional[str],
        allow_unencrypted: bool,
    ) -> Tuple[str, StoredCredential]:
        self.metrics.increment("decryption_attempts")
        try:
            credential = parse_stored_credential(stored, encryption_version)
            if isinstance(credential, (Plaintext, EnvReference)):
                if not allow_unencrypted:
                    raise FormatError("Value is not in an encrypted format")
                if isinstance(credential, EnvReference):
                    secret = self._read_env_reference(credential)
                else:
                    secret = credential.value
                    self._record_plaintext()
            else:
                secret = self._open(credential, salt)
        except CredentialError:
            self.metrics.increment("decryption_failures")
            raise
        self.metrics.increment("decryption_successes")
        return secret, credential

    def _read_env_reference(self, credential: EnvReference) -> str:
        secret = config.get_env_reference(credential.name)
        if not secret:
            logger.error(f"Credential references environment variable {credential.name}, which is not set")
            raise FormatError("Referenced environment variable is not set")
        self.metrics.record_method(EncryptionMethod.ENV_VAR)
        self.metrics.increment("fallback_decryptions")
        return secret

    def _record_plaintext(self) -> None:
        self.metrics.record_method(EncryptionMethod.PLAINTEXT)
        self.metrics.increment("fallback_decryptions")
        if config.is_production() and not self._plaintext_warned:
            logger.error(
                "[SECURITY CRITICAL] Plaintext credential detected in production; encrypt immediately"
            )
            self._plaintext_warned = True

    def decrypt(self, stored: str, salt: Optional[str] = None, encryption_version: Optional[str] = None) -> str:
        """
        Decrypt a legacy or v2 value.

        Plaintext-shaped input and ${VAR} references raise FormatError; use
        resolve() or is_encrypted() first when the value may never have been
        encrypted.
        """
        secret, _ = self._read(stored, salt, encryption_version, allow_unencrypted=False)
        return secret

    def resolve(self, stored: str, salt: Optional[str] = None, encryption_version: Optional[str] = None) -> ResolvedCredential:
        """Return the usable secret for any supported format, plaintext and env references included."""
        secret, credential = self._read(stored, salt, encryption_version, allow_unencrypted=True)
        return ResolvedCredential(
            secret=secret,
            method=method_for(credential),
            requires_reencryption=not isinstance(credential, CurrentEncrypted),
        )

    def classify(self, stored: str, encryption_version: Optional[str] = None) -> EncryptionMethod:
        return method_for(parse_stored_credential(stored, encryption_version))

    @staticmethod
    def is_encrypted(value: Optional[str]) -> bool:
        return is_encrypted(value)

    # -- migration ----------------------------------------------------------

    def reencrypt_with_enhanced_security(
        self,
        stored: str,
        salt: Optional[str] = None,
        encryption_version: Optional[str] = None,
    ) -> ReencryptionResult:
        """
        Upgrade a stored value to the current format.

        Plaintext is encrypted as-is. Anything in an encrypted shape must
        decrypt first; a failure propagates so the only working copy of the
        credential is never overwritten with garbage.
        """
        resolved = self.resolve(stored, salt, encryption_version)
        new_encrypted = self.encrypt(resolved.secret, salt)
        if resolved.requires_reencryption:
            self.metrics.increment("self_healing_reencryptions")
        return ReencryptionResult(
            new_encrypted=new_encrypted,
            was_legacy=resolved.method == EncryptionMethod.LEGACY,
            from_method=resolved.method,
        )

    def clear_key_cache(self) -> None:
        self.key_derivation.clear()
        self.legacy_key_derivation.clear()
        logger.info("Credential key cache cleared")


# Singleton instance
credential_cipher = CredentialCipher()


def get_credential_cipher() -> CredentialCipher:
    return credential_cipher
