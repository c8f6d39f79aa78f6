from __future__ import annotations

import logging
import os
import subprocess
import time
from typing import Dict, Mapping, Optional, Tuple, Union

try:  # pragma: no cover - availability depends on environment
    from Cryptodome.Protocol.KDF import scrypt as _scrypt  # type: ignore
    _HAS_CRYPTODOME = True
except ImportError:  # pragma: no cover - graceful fallback
    _scrypt = None  # type: ignore
    _HAS_CRYPTODOME = False

try:  # pragma: no cover - availability depends on environment
    from argon2.low_level import Type as _ArgonType, hash_secret_raw as _argon_hash  # type: ignore
    _HAS_ARGON2 = True
except ImportError:  # pragma: no cover - graceful fallback
    _ArgonType = None  # type: ignore
    _argon_hash = None  # type: ignore
    _HAS_ARGON2 = False

from .constants import (
    ARGON_MEMORY_COST_KIB,
    ARGON_PARALLELISM,
    ARGON_TIME_COST,
    ENV_ASSET_KEY,
    KDF_ARGON2ID,
    KDF_SCRYPT,
    KEY_SIZE,
    SCRYPT_N,
    SCRYPT_P,
    SCRYPT_R,
)
from .errors import FormatError


logger = logging.getLogger(__name__)

Passphrase = Union[str, bytes]

# Parameters are fixed per KDF; containers carrying any other set are refused.
DEFAULT_PARAMS: Dict[str, Dict[str, int]] = {
    KDF_SCRYPT: {"n": SCRYPT_N, "r": SCRYPT_R, "p": SCRYPT_P},
    KDF_ARGON2ID: {
        "time_cost": ARGON_TIME_COST,
        "memory_cost_kib": ARGON_MEMORY_COST_KIB,
        "parallelism": ARGON_PARALLELISM,
    },
}


def _to_bytes(passphrase: Passphrase) -> bytes:
    if isinstance(passphrase, bytes):
        return passphrase
    return passphrase.encode("utf-8")


def check_params(key_derivation: str, params: Optional[Mapping[str, int]]) -> Dict[str, int]:
    """Return the parameter set for ``key_derivation``, validating ``params``."""
    expected = DEFAULT_PARAMS.get(key_derivation)
    if expected is None:
        raise FormatError(f"Unsupported key derivation: {key_derivation!r}")
    if params is None:
        return dict(expected)
    if not isinstance(params, Mapping) or dict(params) != expected:
        raise FormatError(f"Unsupported {key_derivation} parameters: {params!r}")
    return dict(expected)


def derive_key(
    passphrase: Passphrase,
    salt: bytes,
    *,
    key_derivation: str = KDF_SCRYPT,
    params: Optional[Mapping[str, int]] = None,
) -> bytes:
    """Derive a 256-bit key from ``passphrase`` and ``salt``.

    Deterministic: the same passphrase, salt and parameters always give the
    same key, which is what lets a build-time secret open the container at
    runtime. Deliberately slow; call once per process.
    """
    p = check_params(key_derivation, params)
    secret = _to_bytes(passphrase)
    t0 = time.monotonic()
    if key_derivation == KDF_SCRYPT:
        if not _HAS_CRYPTODOME:
            raise RuntimeError("PyCryptodomex is required for scrypt key derivation")
        key = _scrypt(secret, salt, KEY_SIZE, N=p["n"], r=p["r"], p=p["p"])
    else:
        if not _HAS_ARGON2:
            raise RuntimeError("argon2-cffi is required for argon2id key derivation")
        key = _argon_hash(
            secret,
            salt,
            time_cost=p["time_cost"],
            memory_cost=p["memory_cost_kib"],
            parallelism=p["parallelism"],
            hash_len=KEY_SIZE,
            type=_ArgonType.ID,
        )
    logger.debug("Derived %s key in %.3fs", key_derivation, time.monotonic() - t0)
    return key


def _git_short_head(cwd: Optional[str]) -> Optional[str]:
    try:
        out = subprocess.run(
            ["git", "rev-parse", "--short", "HEAD"],
            cwd=cwd,
            stdout=subprocess.PIPE,
            stderr=subprocess.DEVNULL,
            text=True,
            check=True,
        )
    except (OSError, subprocess.CalledProcessError):
        return None
    head = out.stdout.strip()
    return head or None


def resolve_build_passphrase(
    explicit: Optional[str] = None,
    *,
    env: Optional[Mapping[str, str]] = None,
    cwd: Optional[str] = None,
) -> Tuple[str, str]:
    """Pick the build passphrase and report where it came from.

    Order: ``explicit`` value, the ``CASK_ASSET_KEY`` environment variable,
    the short git commit of ``cwd``, and finally a timestamp build id.

    Returns:
        ``(passphrase, source)`` where source is one of ``"explicit"``,
        ``"env"``, ``"git"`` or ``"timestamp"``.
    """
    if explicit:
        return explicit, "explicit"
    environ = os.environ if env is None else env
    value = environ.get(ENV_ASSET_KEY)
    if value:
        return value, "env"
    head = _git_short_head(cwd)
    if head:
        return head, "git"
    return f"build-{int(time.time() * 1000)}", "timestamp"


_HAS_CRYPTO = bool(_HAS_CRYPTODOME and _HAS_ARGON2)
