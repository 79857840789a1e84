"""Password-derived blob and field codecs for the chat vault.

A blob is ``salt_hex::tag_hex::payload_hex``. The payload is the UTF-8
plaintext rendered as hex; the tag is ``SHA256(payload_hex + key_hex)`` where
``key_hex = SHA256(password + salt_hex)``. The tag proves the password and
detects tampering. It does not hide the payload.
"""

from __future__ import annotations

import binascii
import json
import os
from typing import Any, Tuple

from asgiref.sync import sync_to_async
from cryptography.hazmat.primitives import constant_time, hashes

from core.logging_utils import get_vault_logger
from vault.exceptions import AuthenticationError, FormatError

logger = get_vault_logger()

DELIMITER = "::"
SALT_BYTES = 16


def generate_salt(length: int = SALT_BYTES) -> bytes:
    """Generate a cryptographically secure random salt."""

    return os.urandom(length)


def sha256_hex(text: str) -> str:
    """Return the lowercase hex SHA-256 digest of a UTF-8 string."""

    digest = hashes.Hash(hashes.SHA256())
    digest.update(text.encode("utf-8"))
    return digest.finalize().hex()


def derive_key(password: str, salt_hex: str) -> str:
    """Derive the verification key for ``password`` and ``salt_hex``."""

    return sha256_hex(password + salt_hex)


def compute_tag(payload_hex: str, key_hex: str) -> str:
    return sha256_hex(payload_hex + key_hex)


def hash_password(password: str) -> str:
    """Hash used by the keystore to recognise the vault password."""

    return sha256_hex(password)


def digests_match(left: str, right: str) -> bool:
    """Constant-time comparison of two hex digests."""

    return constant_time.bytes_eq(left.encode("ascii", "replace"), right.encode("ascii", "replace"))


def split_blob(blob: str) -> Tuple[str, str, str]:
    """Split a blob into its three segments or raise :class:`FormatError`."""

    if not isinstance(blob, str):
        raise FormatError("Invalid encrypted data format")
    parts = blob.split(DELIMITER)
    if len(parts) != 3 or not all(parts):
        raise FormatError("Invalid encrypted data format")
    salt_hex, tag_hex, payload_hex = parts
    return salt_hex, tag_hex, payload_hex


def is_encrypted(value: Any) -> bool:
    """True when ``value`` looks like a blob: three non-empty ``::`` parts."""

    if not isinstance(value, str):
        return False
    parts = value.split(DELIMITER)
    return len(parts) == 3 and all(parts)


def encode_blob(plaintext: bytes, password: str) -> str:
    """Encode raw bytes into a blob bound to ``password``."""

    salt_hex = generate_salt().hex()
    key_hex = derive_key(password, salt_hex)
    payload_hex = plaintext.hex()
    tag_hex = compute_tag(payload_hex, key_hex)
    return f"{salt_hex}{DELIMITER}{tag_hex}{DELIMITER}{payload_hex}"


def verify_blob(blob: str, password: str) -> bool:
    """Return True if ``blob`` was encoded with ``password`` and is intact."""

    try:
        salt_hex, tag_hex, payload_hex = split_blob(blob)
    except FormatError:
        return False
    expected = compute_tag(payload_hex, derive_key(password, salt_hex))
    return digests_match(expected, tag_hex)


def decode_blob(blob: str, password: str) -> bytes:
    """Verify ``blob`` against ``password`` and return the raw plaintext."""

    salt_hex, tag_hex, payload_hex = split_blob(blob)
    expected = compute_tag(payload_hex, derive_key(password, salt_hex))
    if not digests_match(expected, tag_hex):
        logger.security_event(
            "Blob verification failed",
            extra_data={"salt_length": len(salt_hex), "payload_length": len(payload_hex)},
        )
        raise AuthenticationError("wrong password or corrupted data")

    try:
        return binascii.unhexlify(payload_hex)
    except (binascii.Error, ValueError) as exc:
        raise FormatError("Encrypted payload is not valid hex") from exc


# ---------------------------------------------------------------------------
# Document variant
# ---------------------------------------------------------------------------


def _document_text(document: Any) -> str:
    if isinstance(document, (bytes, bytearray)):
        try:
            document = bytes(document).decode("utf-8")
        except UnicodeDecodeError as exc:
            raise FormatError("Encryption failed: Invalid JSON data") from exc

    if isinstance(document, str):
        try:
            json.loads(document)
        except ValueError as exc:
            raise FormatError("Encryption failed: Invalid JSON data") from exc
        return document

    try:
        return json.dumps(document, ensure_ascii=False, separators=(",", ":"))
    except (TypeError, ValueError) as exc:
        raise FormatError("Encryption failed: Invalid JSON data") from exc


def encode_document(document: Any, password: str) -> str:
    """Encode a JSON document (string or serializable object) into a blob."""

    return encode_blob(_document_text(document).encode("utf-8"), password)


def decode_document(blob: str, password: str) -> Any:
    """Decode a document blob and return the parsed JSON value."""

    plaintext = decode_blob(blob, password)
    try:
        return json.loads(plaintext.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as exc:
        raise FormatError("Decrypted document is not valid JSON") from exc


# ---------------------------------------------------------------------------
# Field variant
# ---------------------------------------------------------------------------


def encrypt_field(value: str, password: str) -> str:
    """Encode a single scalar value. Empty values are stored as-is."""

    if value in (None, ""):
        return ""
    return encode_blob(value.encode("utf-8"), password)


def decrypt_field(encrypted_value: str, password: str) -> str:
    """Decode a single scalar value produced by :func:`encrypt_field`."""

    if not encrypted_value:
        return ""
    plaintext = decode_blob(encrypted_value, password)
    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise FormatError("Decrypted field is not valid UTF-8") from exc


# Async variants keep hashing off the event loop.
aencode_document = sync_to_async(encode_document, thread_sensitive=False)
adecode_document = sync_to_async(decode_document, thread_sensitive=False)
aencrypt_field = sync_to_async(encrypt_field, thread_sensitive=False)
adecrypt_field = sync_to_async(decrypt_field, thread_sensitive=False)
