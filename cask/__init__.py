"""
Cask: single-file asset containers with optional authenticated encryption.

Features:

- Pickle-framed container: four u32 sizes, a padded JSON file tree, then the
  concatenated file data; deterministic lexicographic layout.
- Random-access reads by path with '/' or '\\' separators.
- AES-256-GCM sealing with scrypt (or argon2id) passphrase-derived keys,
  stored as a blob or split into chunks, described by a JSON sidecar.
- A runtime loader that decrypts once into memory with an explicit fallback
  policy for unreadable containers.
"""

__version__ = "0.1"

__all__ = [
    "constants",
    "errors",
    "pathutil",
    "header",
    "tree",
    "writer",
    "reader",
    "kdf",
    "encryption",
    "container",
    "runtime",
    "cli",
]

# Programmatic API: cask.writer.build / cask.reader.ArchiveReader for plain
# archives, cask.encryption.encrypt/decrypt for sealing, and
# cask.runtime.RuntimeLoader at application startup.
