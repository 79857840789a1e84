"""
Password gate for the vault.

The vault has no server-side account. A SHA-256 hash of the password sits in
the keystore; once it matches, the password itself is held in a
:class:`VaultSession` for the codecs to use until logout.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from asgiref.sync import sync_to_async

from accounts.keystore import PASSWORD_HASH_KEY, BaseKeystore
from chats.backends import FLAT_FILE_NAME
from chats.store import ChatStore
from core.files import BaseFileStore
from core.logging_utils import get_accounts_logger
from vault.crypto_utils import digests_match, hash_password
from vault.exceptions import AuthenticationError

logger = get_accounts_logger()


@dataclass
class VaultSession:
    password: str = ""
    authenticated: bool = False

    def require_password(self) -> str:
        if not self.authenticated:
            raise AuthenticationError("Vault is locked", recoverable=True)
        return self.password

    def clear(self) -> None:
        self.password = ""
        self.authenticated = False

    def __repr__(self) -> str:
        return f"VaultSession(authenticated={self.authenticated})"


class AuthService:
    """Create, unlock and wipe the vault."""

    def __init__(self, keystore: BaseKeystore, store: ChatStore, files: BaseFileStore):
        self.keystore = keystore
        self.store = store
        self.files = files
        self.session = VaultSession()

    def is_new_user(self) -> bool:
        return not (self.files.exists(FLAT_FILE_NAME) or self.store.backend.exists())

    async def validate_and_save_password(self, password: str, confirm_password: Optional[str] = None) -> VaultSession:
        """
        Unlock the vault, or create it on first use.

        Raises AuthenticationError for a confirmation mismatch or a wrong
        password. Codec and filesystem errors from loading the data propagate;
        in every failure case the session stays locked.
        """
        self.session.clear()
        new_user = await sync_to_async(self.is_new_user)()

        if new_user:
            if password != confirm_password:
                raise AuthenticationError("Passwords do not match", recoverable=True)
            await sync_to_async(self.keystore.set)(PASSWORD_HASH_KEY, hash_password(password))
            await self.store.load(password)
            logger.security_event("Vault created")
        else:
            stored_hash = await sync_to_async(self.keystore.get)(PASSWORD_HASH_KEY)
            if stored_hash is None or not digests_match(stored_hash, hash_password(password)):
                logger.security_event("Vault unlock failed: incorrect password")
                raise AuthenticationError("Incorrect password", recoverable=True)
            await self.store.load(password)
            logger.info("Vault unlocked")

        self.session = VaultSession(password=password, authenticated=True)
        return self.session

    def logout(self) -> None:
        self.session.clear()
        self.store.reset()
        logger.info("Vault locked")

    async def delete_all_data(self) -> None:
        """Remove chat data in both formats, the migration backup and the password hash."""

        await self.store.clear()
        for path in (FLAT_FILE_NAME, f"{FLAT_FILE_NAME}.bak"):
            await sync_to_async(self.files.delete)(path)
        await sync_to_async(self.keystore.delete)(PASSWORD_HASH_KEY)
        self.session.clear()
        logger.security_event("All vault data deleted")
