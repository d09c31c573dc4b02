"""Field-level envelope encryption and deterministic index hashing for PII.

Every field value is encrypted with AES-256-GCM under a data key obtained from
a key provider (a KMS in production). The encryption context is bound twice:
as the AAD of the wrapped data key and as the AAD of the field ciphertext, so
decrypting under a different context fails closed.

Stored payload (base64 of JSON)::

    {"version": "1.0", "algorithm": "AES-256-GCM", "key_id": ...,
     "encrypted_key": b64, "iv": b64, "data": b64, "context": {...}}
"""

import base64
import hashlib
import json
import os
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from identity_service.core.config import Settings, settings
from identity_service.core.logging import get_logger

logger = get_logger(__name__)

ENVELOPE_VERSION = "1.0"
ALGORITHM = "AES-256-GCM"
NONCE_BYTES = 12

# Domain separators for deterministic hashes
EMAIL_HASH_DOMAIN = "identity-service:email:v1"
INDEX_HASH_DOMAIN = "identity-service:index:v1"


class EncryptionError(Exception):
    """Raised when a value cannot be encrypted or decrypted. Always fatal for the write."""


@dataclass(frozen=True)
class DataKey:
    """A data key in plaintext and in its provider-wrapped form."""

    plaintext: bytes
    ciphertext: bytes


def _b64encode(raw: bytes) -> str:
    return base64.b64encode(raw).decode("ascii")


def _b64decode(value: str) -> bytes:
    return base64.b64decode(value.encode("ascii"), validate=True)


def context_aad(context: dict[str, Any] | None) -> bytes:
    """Canonical byte form of an encryption context."""
    return json.dumps(context or {}, sort_keys=True, separators=(",", ":")).encode("utf-8")


class KeyProvider(ABC):
    """Interface of the external key-management service."""

    @abstractmethod
    def generate_data_key(self, key_id: str, context: dict[str, Any]) -> DataKey:
        """Create a fresh 256-bit data key wrapped under ``key_id``."""
        raise NotImplementedError

    @abstractmethod
    def decrypt_data_key(self, ciphertext: bytes, context: dict[str, Any]) -> bytes:
        """Unwrap a data key. ``context`` must equal the one used to wrap it."""
        raise NotImplementedError


class LocalKeyProvider(KeyProvider):
    """Key provider holding master keys in process memory.

    Mirrors the KMS contract (context-bound wrapping, key id carried inside the
    wrapped blob) so the envelope code is identical against either backend.
    """

    def __init__(self, master_keys: dict[str, bytes]):
        for key_id, key in master_keys.items():
            if len(key) != 32:
                raise ValueError(f"Master key {key_id!r} must be 32 bytes")
        self._master_keys = dict(master_keys)

    def _master_key(self, key_id: str) -> bytes:
        try:
            return self._master_keys[key_id]
        except KeyError:
            raise EncryptionError(f"Unknown master key: {key_id}") from None

    def generate_data_key(self, key_id: str, context: dict[str, Any]) -> DataKey:
        master = self._master_key(key_id)
        data_key = AESGCM.generate_key(bit_length=256)
        nonce = os.urandom(NONCE_BYTES)
        wrapped = AESGCM(master).encrypt(nonce, data_key, context_aad(context))
        blob = json.dumps(
            {"key_id": key_id, "nonce": _b64encode(nonce), "key": _b64encode(wrapped)}
        ).encode("utf-8")
        return DataKey(plaintext=data_key, ciphertext=blob)

    def decrypt_data_key(self, ciphertext: bytes, context: dict[str, Any]) -> bytes:
        try:
            parsed = json.loads(ciphertext.decode("utf-8"))
            master = self._master_key(parsed["key_id"])
            return AESGCM(master).decrypt(
                _b64decode(parsed["nonce"]), _b64decode(parsed["key"]), context_aad(context)
            )
        except (ValueError, KeyError, TypeError, InvalidTag) as e:
            raise EncryptionError("Data key decryption failed") from e


class CryptoEnvelope:
    """Encrypts and decrypts record fields; computes deterministic lookup hashes.

    Plaintext never outlives the call: callers get ciphertext back and own
    persistence.
    """

    def __init__(
        self,
        key_provider: KeyProvider,
        default_key_id: str,
        email_hash_salt: str | None = None,
        data_key_ttl_seconds: int = 3600,
        data_key_cache_size: int = 100,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.key_provider = key_provider
        self.default_key_id = default_key_id
        self.email_hash_salt = email_hash_salt or ""
        self.data_key_ttl_seconds = data_key_ttl_seconds
        self.data_key_cache_size = data_key_cache_size
        self._clock = clock
        # {(key_id, aad): (DataKey, created_at)}
        self._data_keys: OrderedDict[tuple[str, bytes], tuple[DataKey, float]] = OrderedDict()

    def _get_data_key(self, key_id: str, context: dict[str, Any]) -> DataKey:
        cache_key = (key_id, context_aad(context))
        now = self._clock()

        cached = self._data_keys.get(cache_key)
        if cached and now - cached[1] < self.data_key_ttl_seconds:
            return cached[0]

        data_key = self.key_provider.generate_data_key(key_id, context)

        if cache_key not in self._data_keys and len(self._data_keys) >= self.data_key_cache_size:
            self._data_keys.popitem(last=False)  # oldest entry
        self._data_keys[cache_key] = (data_key, now)
        return data_key

    def encrypt_value(
        self, plaintext: str | None, key_id: str | None = None, context: dict[str, Any] | None = None
    ) -> str | None:
        """Encrypt a single string. ``None`` and empty strings pass through unchanged."""
        if not plaintext:
            return plaintext
        key_id = key_id or self.default_key_id
        context = dict(context or {})

        try:
            data_key = self._get_data_key(key_id, context)
            nonce = os.urandom(NONCE_BYTES)
            data = AESGCM(data_key.plaintext).encrypt(
                nonce, plaintext.encode("utf-8"), context_aad(context)
            )
        except EncryptionError:
            raise
        except Exception as e:
            logger.error("Field encryption failed", extra={"error_type": type(e).__name__})
            raise EncryptionError("Data encryption failed") from e

        payload = {
            "version": ENVELOPE_VERSION,
            "algorithm": ALGORITHM,
            "key_id": key_id,
            "encrypted_key": _b64encode(data_key.ciphertext),
            "iv": _b64encode(nonce),
            "data": _b64encode(data),
            "context": context,
        }
        return _b64encode(json.dumps(payload).encode("utf-8"))

    def decrypt_value(self, encrypted: str | None, context: dict[str, Any] | None = None) -> str | None:
        """
        Decrypt a payload produced by ``encrypt_value``.

        When ``context`` is given it is used instead of the context recorded in
        the payload; any mismatch makes decryption fail.
        """
        if not encrypted:
            return encrypted

        try:
            payload = json.loads(_b64decode(encrypted).decode("utf-8"))
            if payload.get("version") != ENVELOPE_VERSION:
                raise EncryptionError(f"Unsupported encryption version: {payload.get('version')}")
            effective_context = payload.get("context", {}) if context is None else context
            data_key = self.key_provider.decrypt_data_key(
                _b64decode(payload["encrypted_key"]), effective_context
            )
            plaintext = AESGCM(data_key).decrypt(
                _b64decode(payload["iv"]), _b64decode(payload["data"]), context_aad(effective_context)
            )
            return plaintext.decode("utf-8")
        except EncryptionError:
            raise
        except (ValueError, KeyError, TypeError, InvalidTag) as e:
            raise EncryptionError("Data decryption failed") from e

    def encrypt_fields(
        self,
        record: dict[str, Any],
        field_names: Iterable[str],
        key_id: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Return a copy of ``record`` with the named fields encrypted.

        Each field is bound to ``{**context, "field": name}``.
        """
        encrypted = dict(record)
        for field in field_names:
            value = encrypted.get(field)
            if value is None:
                continue
            encrypted[field] = self.encrypt_value(
                str(value), key_id, {**(context or {}), "field": field}
            )
        return encrypted

    def decrypt_fields(
        self,
        record: dict[str, Any],
        field_names: Iterable[str],
        context: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Return a copy of ``record`` with the named fields decrypted."""
        decrypted = dict(record)
        for field in field_names:
            value = decrypted.get(field)
            if value is None:
                continue
            field_context = None if context is None else {**context, "field": field}
            decrypted[field] = self.decrypt_value(value, field_context)
        return decrypted

    def hash_for_index(self, value: str | None) -> str | None:
        """Deterministic SHA-256 lookup hash. Case-sensitive; one-way."""
        if not value:
            return None
        return hashlib.sha256(f"{INDEX_HASH_DOMAIN}:{value}".encode("utf-8")).hexdigest()

    def hash_email(self, email: str | None) -> str | None:
        """Deterministic salted hash of an email address.

        Surrounding whitespace is stripped and case is folded before hashing,
        so ``A@X.com`` and ``a@x.com`` produce the same digest.
        """
        if not email or not email.strip():
            return None
        normalized = email.strip().lower()
        material = f"{EMAIL_HASH_DOMAIN}:{self.email_hash_salt}:{normalized}"
        return hashlib.sha256(material.encode("utf-8")).hexdigest()

    def clear_data_key_cache(self) -> None:
        """Drop every cached data key."""
        self._data_keys.clear()
        logger.info("Data key cache cleared")

    def cache_stats(self) -> dict[str, int]:
        """Data key cache statistics for monitoring."""
        now = self._clock()
        valid = sum(
            1 for _, created_at in self._data_keys.values() if now - created_at < self.data_key_ttl_seconds
        )
        return {
            "total_entries": len(self._data_keys),
            "valid_entries": valid,
            "expired_entries": len(self._data_keys) - valid,
            "max_size": self.data_key_cache_size,
            "ttl_seconds": self.data_key_ttl_seconds,
        }


def build_crypto_envelope(config: Settings = settings) -> CryptoEnvelope:
    """Create the envelope configured for this deployment."""
    if not config.PII_MASTER_KEY:
        raise ValueError("PII_MASTER_KEY must be set")
    provider = LocalKeyProvider({config.PII_KMS_KEY_ID: base64.b64decode(config.PII_MASTER_KEY)})
    return CryptoEnvelope(
        key_provider=provider,
        default_key_id=config.PII_KMS_KEY_ID,
        email_hash_salt=config.EMAIL_HASH_SALT,
        data_key_ttl_seconds=config.DATA_KEY_CACHE_TTL_SECONDS,
        data_key_cache_size=config.DATA_KEY_CACHE_MAX_SIZE,
    )
