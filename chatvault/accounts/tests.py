import os
import shutil
import stat
import tempfile
from unittest.mock import patch

from django.core.exceptions import ImproperlyConfigured
from django.test import SimpleTestCase, override_settings

from accounts import keystore as keystore_module
from accounts.auth import AuthService, VaultSession
from accounts.keystore import PASSWORD_HASH_KEY, FileKeystore, MemoryKeystore, get_keystore
from chats.backends import FlatFileStore
from chats.dataset import ModelDescriptor
from chats.store import ChatStore
from core.files import LocalFileStore
from vault.crypto_utils import hash_password
from vault.exceptions import AuthenticationError

PASSWORD = 'hunter2-but-longer'
MODEL = ModelDescriptor(id='gemini-1.5-flash', display_name='Gemini Flash', provider='gemini')


class KeystoreTests(SimpleTestCase):
    def setUp(self):
        self.root = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, self.root, True)

    def test_memory_keystore_get_set_delete(self):
        keystore = MemoryKeystore()
        self.assertIsNone(keystore.get('a'))
        keystore.set('a', '1')
        self.assertEqual(keystore.get('a'), '1')
        keystore.delete('a')
        keystore.delete('a')
        self.assertIsNone(keystore.get('a'))

    def test_file_keystore_persists_with_owner_only_permissions(self):
        path = os.path.join(self.root, 'keys', 'keystore.json')
        FileKeystore(path).set(PASSWORD_HASH_KEY, 'abc')

        self.assertEqual(FileKeystore(path).get(PASSWORD_HASH_KEY), 'abc')
        self.assertEqual(stat.S_IMODE(os.stat(path).st_mode), 0o600)

    def test_file_keystore_delete(self):
        keystore = FileKeystore(os.path.join(self.root, 'keystore.json'))
        keystore.set('a', '1')
        keystore.set('b', '2')
        keystore.delete('a')
        self.assertIsNone(keystore.get('a'))
        self.assertEqual(keystore.get('b'), '2')

    def test_get_keystore_respects_backend_setting(self):
        with patch.object(keystore_module, '_keystore_instance', None):
            with override_settings(CHATVAULT_KEYSTORE_BACKEND='memory'):
                self.assertIsInstance(get_keystore(), MemoryKeystore)

    def test_get_keystore_rejects_unknown_backend(self):
        with patch.object(keystore_module, '_keystore_instance', None):
            with override_settings(CHATVAULT_KEYSTORE_BACKEND='keychain'):
                with self.assertRaises(ImproperlyConfigured):
                    get_keystore()


class VaultSessionTests(SimpleTestCase):
    def test_locked_session_refuses_password(self):
        with self.assertRaises(AuthenticationError):
            VaultSession().require_password()

    def test_repr_hides_password(self):
        session = VaultSession(password='secret', authenticated=True)
        self.assertEqual(session.require_password(), 'secret')
        self.assertNotIn('secret', repr(session))


class AuthServiceTests(SimpleTestCase):
    def setUp(self):
        self.root = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, self.root, True)
        self.files = LocalFileStore(self.root)
        self.keystore = MemoryKeystore()
        self.store = ChatStore(FlatFileStore(self.files))
        self.auth = AuthService(self.keystore, self.store, self.files)

    async def test_new_user_creates_vault(self):
        self.assertTrue(self.auth.is_new_user())

        session = await self.auth.validate_and_save_password(PASSWORD, PASSWORD)

        self.assertTrue(session.authenticated)
        self.assertEqual(session.require_password(), PASSWORD)
        self.assertEqual(self.keystore.get(PASSWORD_HASH_KEY), hash_password(PASSWORD))
        self.assertTrue(self.files.exists('data.json'))
        self.assertFalse(self.auth.is_new_user())

    async def test_new_user_confirmation_mismatch(self):
        with self.assertRaisesMessage(AuthenticationError, 'Passwords do not match'):
            await self.auth.validate_and_save_password(PASSWORD, 'different')
        self.assertFalse(self.auth.session.authenticated)
        self.assertIsNone(self.keystore.get(PASSWORD_HASH_KEY))

    async def test_existing_user_unlocks_and_loads_data(self):
        await self.auth.validate_and_save_password(PASSWORD, PASSWORD)
        thread_id = await self.store.create_thread(PASSWORD, MODEL)
        self.auth.logout()
        self.assertFalse(self.auth.session.authenticated)
        self.assertIsNone(self.store.get_thread(thread_id))

        session = await self.auth.validate_and_save_password(PASSWORD)

        self.assertTrue(session.authenticated)
        self.assertEqual(self.store.active_thread.id, thread_id)

    async def test_existing_user_wrong_password(self):
        await self.auth.validate_and_save_password(PASSWORD, PASSWORD)
        self.auth.logout()

        with self.assertLogs('chatvault.security', level='WARNING'):
            with self.assertRaisesMessage(AuthenticationError, 'Incorrect password'):
                await self.auth.validate_and_save_password('wrong')
        self.assertFalse(self.auth.session.authenticated)

    async def test_load_failure_leaves_session_locked(self):
        await self.auth.validate_and_save_password(PASSWORD, PASSWORD)
        self.auth.logout()
        self.files.write_text('data.json', 'corrupted::data::zz')

        with self.assertRaises(AuthenticationError):
            await self.auth.validate_and_save_password(PASSWORD)
        self.assertFalse(self.auth.session.authenticated)

    async def test_delete_all_data_resets_to_new_user(self):
        await self.auth.validate_and_save_password(PASSWORD, PASSWORD)
        self.files.write_text('data.json.bak', 'backup')

        await self.auth.delete_all_data()

        self.assertFalse(self.files.exists('data.json'))
        self.assertFalse(self.files.exists('data.json.bak'))
        self.assertIsNone(self.keystore.get(PASSWORD_HASH_KEY))
        self.assertFalse(self.auth.session.authenticated)
        self.assertTrue(self.auth.is_new_user())
