"""Custom exceptions for the vault domain."""

from typing import Optional


class VaultError(Exception):
    """Base exception for every chat vault failure."""

    def __init__(self, message: str, *, recoverable: Optional[bool] = None):
        super().__init__(message)
        self.recoverable = recoverable


class CryptoError(VaultError):
    """Base exception for codec operations."""


class AuthenticationError(CryptoError):
    """Verification tag mismatch: wrong password or corrupted data."""


class FormatError(CryptoError):
    """Malformed blob or field, or a document payload that is not JSON."""


class NotFoundError(VaultError):
    """A chat thread or message id is absent."""


class ProviderError(VaultError):
    """An upstream language model provider failed."""


class MigrationError(VaultError):
    """A step of the flat file to relational migration failed."""
