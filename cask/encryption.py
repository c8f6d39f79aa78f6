from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

try:  # pragma: no cover - optional dependency at runtime
    from Cryptodome.Cipher import AES  # type: ignore
    from Cryptodome.Random import get_random_bytes  # type: ignore
except ImportError:  # pragma: no cover - fallback
    AES = None  # type: ignore
    get_random_bytes = None  # type: ignore

from .constants import (
    ALGORITHM_AES_256_GCM,
    CONTAINER_VERSION,
    DEFAULT_SALT,
    IV_SIZE,
    KDF_SCRYPT,
    KEY_SIZE,
    TAG_SIZE,
)
from .errors import AuthenticationError, FormatError
from .kdf import Passphrase, _HAS_CRYPTO, _HAS_CRYPTODOME, check_params, derive_key


logger = logging.getLogger(__name__)


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _unhex(meta: Dict[str, Any], key: str) -> bytes:
    value = meta.get(key)
    if not isinstance(value, str):
        raise FormatError(f"Container metadata missing '{key}'")
    try:
        return bytes.fromhex(value)
    except ValueError as exc:
        raise FormatError(f"Container metadata '{key}' is not hex") from exc


@dataclass
class EncryptedContainer:
    ciphertext: bytes
    iv: bytes
    auth_tag: bytes
    salt: bytes = DEFAULT_SALT
    algorithm: str = ALGORITHM_AES_256_GCM
    key_derivation: str = KDF_SCRYPT
    kdf_params: Dict[str, int] = field(default_factory=lambda: check_params(KDF_SCRYPT, None))
    timestamp: str = field(default_factory=_utc_timestamp)

    def to_metadata(self) -> Dict[str, Any]:
        """Envelope fields for the JSON sidecar (ciphertext excluded)."""
        return {
            "version": CONTAINER_VERSION,
            "algorithm": self.algorithm,
            "keySize": KEY_SIZE * 8,
            "keyDerivation": self.key_derivation,
            "kdfParams": dict(self.kdf_params),
            "salt": self.salt.hex(),
            "iv": self.iv.hex(),
            "authTag": self.auth_tag.hex(),
            "timestamp": self.timestamp,
            "totalSize": len(self.ciphertext),
        }

    @classmethod
    def from_metadata(cls, meta: Dict[str, Any], ciphertext: bytes) -> "EncryptedContainer":
        if not isinstance(meta, dict):
            raise FormatError("Container metadata must be a JSON object")
        key_derivation = meta.get("keyDerivation", KDF_SCRYPT)
        return cls(
            ciphertext=ciphertext,
            iv=_unhex(meta, "iv"),
            auth_tag=_unhex(meta, "authTag"),
            salt=_unhex(meta, "salt") if "salt" in meta else DEFAULT_SALT,
            algorithm=meta.get("algorithm", ALGORITHM_AES_256_GCM),
            key_derivation=key_derivation,
            kdf_params=meta.get("kdfParams") or check_params(key_derivation, None),
            timestamp=meta.get("timestamp", ""),
        )

    def to_blob(self) -> bytes:
        """Single-file layout: ``iv || auth_tag || ciphertext``."""
        return self.iv + self.auth_tag + self.ciphertext

    @classmethod
    def from_blob(cls, blob: bytes, meta: Optional[Dict[str, Any]] = None) -> "EncryptedContainer":
        if len(blob) < IV_SIZE + TAG_SIZE:
            raise FormatError("Encrypted blob too short")
        iv = blob[:IV_SIZE]
        tag = blob[IV_SIZE : IV_SIZE + TAG_SIZE]
        ciphertext = blob[IV_SIZE + TAG_SIZE :]
        if meta is None:
            return cls(ciphertext=ciphertext, iv=iv, auth_tag=tag)
        container = cls.from_metadata(meta, ciphertext)
        # The sidecar and the blob each carry IV and tag; both must agree.
        if container.iv != iv or container.auth_tag != tag:
            raise AuthenticationError("Blob IV/tag do not match container metadata")
        return container


class CipherContext:
    """AES-256-GCM sealing with a key derived once from a passphrase."""

    def __init__(self, key: bytes, salt: bytes, key_derivation: str, kdf_params: Dict[str, int]):
        if len(key) != KEY_SIZE:
            raise ValueError("Key must be 32 bytes for AES-256-GCM")
        self.key = key
        self.salt = salt
        self.key_derivation = key_derivation
        self.kdf_params = kdf_params

    @classmethod
    def create(
        cls,
        passphrase: Passphrase,
        *,
        salt: bytes = DEFAULT_SALT,
        key_derivation: str = KDF_SCRYPT,
    ) -> "CipherContext":
        _ensure_backend()
        params = check_params(key_derivation, None)
        key = derive_key(passphrase, salt, key_derivation=key_derivation, params=params)
        return cls(key, salt, key_derivation, params)

    @classmethod
    def for_container(cls, passphrase: Passphrase, container: EncryptedContainer) -> "CipherContext":
        _ensure_backend()
        if container.algorithm != ALGORITHM_AES_256_GCM:
            raise FormatError(f"Unsupported algorithm: {container.algorithm!r}")
        params = check_params(container.key_derivation, container.kdf_params)
        key = derive_key(passphrase, container.salt, key_derivation=container.key_derivation, params=params)
        return cls(key, container.salt, container.key_derivation, params)

    def encrypt(self, plaintext: bytes) -> EncryptedContainer:
        # Fresh random IV on every call; reusing one under the same key would
        # void GCM's confidentiality and integrity guarantees.
        iv = get_random_bytes(IV_SIZE)
        cipher = AES.new(self.key, AES.MODE_GCM, nonce=iv, mac_len=TAG_SIZE)
        ciphertext, tag = cipher.encrypt_and_digest(plaintext)
        logger.debug("Encrypted %d bytes", len(plaintext))
        return EncryptedContainer(
            ciphertext=ciphertext,
            iv=iv,
            auth_tag=tag,
            salt=self.salt,
            key_derivation=self.key_derivation,
            kdf_params=dict(self.kdf_params),
        )

    def decrypt(self, container: EncryptedContainer) -> bytes:
        """Verify the tag and return the plaintext; nothing is returned on failure."""
        if container.algorithm != ALGORITHM_AES_256_GCM:
            raise FormatError(f"Unsupported algorithm: {container.algorithm!r}")
        if len(container.iv) != IV_SIZE:
            raise FormatError(f"IV must be {IV_SIZE} bytes")
        if len(container.auth_tag) != TAG_SIZE:
            raise AuthenticationError("Authentication tag has the wrong length")
        cipher = AES.new(self.key, AES.MODE_GCM, nonce=container.iv, mac_len=TAG_SIZE)
        try:
            plaintext = cipher.decrypt_and_verify(container.ciphertext, container.auth_tag)
        except ValueError as exc:
            raise AuthenticationError(
                "Authentication failed: wrong passphrase or corrupted container"
            ) from exc
        logger.debug("Decrypted %d bytes", len(plaintext))
        return plaintext


def _ensure_backend() -> None:
    if not _HAS_CRYPTODOME or AES is None:
        raise RuntimeError("PyCryptodomex is required for AES-256-GCM support")


def encrypt(
    plaintext: bytes,
    passphrase: Passphrase,
    *,
    salt: bytes = DEFAULT_SALT,
    key_derivation: str = KDF_SCRYPT,
) -> EncryptedContainer:
    return CipherContext.create(passphrase, salt=salt, key_derivation=key_derivation).encrypt(plaintext)


def decrypt(container: EncryptedContainer, passphrase: Passphrase) -> bytes:
    return CipherContext.for_container(passphrase, container).decrypt(container)


__all__ = [
    "EncryptedContainer",
    "CipherContext",
    "encrypt",
    "decrypt",
    "_HAS_CRYPTO",
]
