"""
Content addressing for KYB evidence.

Every stored document and manifest is keyed by a locator derived from its
bytes. The locator doubles as the storage key and as an integrity proof:
re-hashing retrieved content must reproduce it.

Design Decisions:
- SHA-256 for wide support and collision resistance
- Lowercase unpadded base32 keeps locators URL-safe and case-insensitive
- Fixed ``sha256-`` prefix so a locator can never be mistaken for a
  wallet address or business hash in the mapping index
- Canonical JSON (sorted keys, compact separators, UTF-8) so manifest
  locators are reproducible in any language
"""

import base64
import hashlib
import json
from pathlib import Path
from typing import Any, BinaryIO

LOCATOR_PREFIX = "sha256-"

# 32-byte digest -> 52 base32 characters once padding is stripped
_ENCODED_DIGEST_LENGTH = 52
_BASE32_ALPHABET = frozenset("abcdefghijklmnopqrstuvwxyz234567")
_CHUNK_SIZE = 65536  # 64KB chunks


def _encode(digest: bytes) -> str:
    encoded = base64.b32encode(digest).decode("ascii").rstrip("=").lower()
    return f"{LOCATOR_PREFIX}{encoded}"


def address(content: bytes) -> str:
    """
    Derive the locator for a byte sequence.

    Args:
        content: Raw bytes of a document or serialized manifest.
            Empty content is valid and has its own locator.

    Returns:
        Locator string: ``sha256-`` followed by 52 base32 characters
    """
    return _encode(hashlib.sha256(content).digest())


def address_stream(stream: BinaryIO) -> str:
    """
    Derive the locator of a binary stream without loading it whole.

    Raises:
        OSError: If the stream cannot be read
    """
    hasher = hashlib.sha256()
    while chunk := stream.read(_CHUNK_SIZE):
        hasher.update(chunk)
    return _encode(hasher.digest())


def address_file(file_path: Path) -> str:
    """
    Derive the locator of a file on disk.

    Raises:
        FileNotFoundError: If file does not exist
        PermissionError: If file cannot be read
    """
    with open(file_path, "rb") as f:
        return address_stream(f)


def is_locator(value: str) -> bool:
    """True if ``value`` is a well-formed locator."""
    if not isinstance(value, str) or not value.startswith(LOCATOR_PREFIX):
        return False
    encoded = value[len(LOCATOR_PREFIX):]
    return len(encoded) == _ENCODED_DIGEST_LENGTH and set(encoded) <= _BASE32_ALPHABET


def ensure_locator(value: str) -> str:
    """Return ``value`` unchanged, or raise ValueError if it is not a locator."""
    if not is_locator(value):
        raise ValueError(f"Invalid locator: {value!r}")
    return value


def verify_locator(content: bytes, locator: str) -> bool:
    """
    Check that content matches a locator.

    Used for tamper detection when retrieving content from storage.
    """
    ensure_locator(locator)
    return address(content) == locator


def canonical_json(payload: Any) -> bytes:
    """
    Serialize a JSON-compatible object to its canonical byte form.

    Two payloads with the same content but different key insertion
    order produce identical bytes.
    """
    return json.dumps(
        payload,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    ).encode("utf-8")
