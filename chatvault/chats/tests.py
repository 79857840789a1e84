import json
import shutil
import tempfile
from io import StringIO
from unittest.mock import patch

from django.core.exceptions import ImproperlyConfigured
from django.core.management import call_command
from django.core.management.base import CommandError
from django.test import SimpleTestCase, TestCase

from chats.backends import BaseStore, FlatFileStore, RelationalStore
from chats.dataset import (
    DEFAULT_TITLE,
    ChatThreadRecord,
    Dataset,
    MessageRecord,
    ModelDescriptor,
    SettingsRecord,
    new_thread_id,
)
from chats.migration import MigrationService
from chats.models import ApiKey, ChatThread, Message, Settings
from chats.store import ChatStore, extract_title, infer_title, next_active_thread_id, select_backend
from core.files import LocalFileStore
from vault.crypto_utils import decode_document, decrypt_field, encode_document, encrypt_field, is_encrypted
from vault.exceptions import AuthenticationError, FormatError, MigrationError, NotFoundError

PASSWORD = 'correct horse battery staple'
MODEL = ModelDescriptor(id='openai/gpt-4o-mini', display_name='GPT-4o mini', provider='openrouter')


def user(text, timestamp=1):
    return MessageRecord(is_user=True, text=text, timestamp=timestamp)


def assistant(text, timestamp=2):
    return MessageRecord(is_user=False, text=text, timestamp=timestamp)


def build_thread(thread_id, updated_at, messages=(), title=DEFAULT_TITLE, active=False):
    return ChatThreadRecord(
        id=thread_id,
        title=title,
        created_at=updated_at,
        updated_at=updated_at,
        model=MODEL,
        messages=list(messages),
        is_active=active,
    )


def build_dataset():
    dataset = Dataset(
        api_keys={'openRouter': 'sk-or-123', 'gemini': 'AIza-456', 'anthropic': 'sk-ant-789'},
        model_ids=['openai/gpt-4o-mini', 'meta-llama/llama-3-8b-instruct'],
        settings=SettingsRecord(custom_prompt='Answer briefly.'),
    )
    dataset.add_thread(build_thread('1700000000001', 1, [user('# Hello\nworld'), assistant('hi')], title='Hello'))
    dataset.add_thread(
        build_thread('1700000000002', 2, [user('Explain decorators', 3), assistant('A decorator wraps...', 4)], active=True)
    )
    return dataset


class RecordingStore(BaseStore):
    """In-memory backend that records every write."""

    name = 'recording'

    def __init__(self, dataset=None):
        self.dataset = dataset or Dataset()
        self.writes = []
        self.fail_with = None

    def initialize(self):
        pass

    def exists(self):
        return True

    def fetch_all(self, password):
        return self.dataset.copy()

    def fetch_one(self, thread_id, password):
        return self.dataset.threads[thread_id].copy()

    def persist_dataset(self, dataset, password):
        self.writes.append(('dataset', None))
        self.dataset = dataset.copy()

    def persist_thread(self, thread, password):
        if self.fail_with is not None:
            raise self.fail_with
        self.writes.append(('thread', thread.id))
        previous = self.dataset.threads.get(thread.id)
        stored = thread.copy()
        stored.is_active = previous.is_active if previous else False
        self.dataset.threads[thread.id] = stored

    def persist_active(self, thread_id, password):
        self.writes.append(('active', thread_id))
        for thread in self.dataset.threads.values():
            thread.is_active = thread.id == thread_id

    def remove_thread(self, thread_id, active_thread_id, password):
        self.writes.append(('remove', thread_id))
        del self.dataset.threads[thread_id]
        self.persist_active(active_thread_id, password)

    def persist_api_key(self, service_name, key, password):
        self.writes.append(('api_key', service_name))
        self.dataset.api_keys[service_name] = key

    def persist_settings(self, settings, model_ids, password):
        self.writes.append(('settings', None))
        self.dataset.settings = settings
        self.dataset.model_ids = list(model_ids)

    def clear(self):
        self.dataset = Dataset()


class TitleInferenceTests(SimpleTestCase):
    def test_heading_marks_are_stripped_from_first_line(self):
        self.assertEqual(infer_title([user('# Hello\nworld'), assistant('hi')]), 'Hello')

    def test_long_first_line_is_truncated_with_ellipsis(self):
        self.assertEqual(extract_title('x' * 60), 'x' * 50 + '...')

    def test_exactly_fifty_characters_is_not_truncated(self):
        self.assertEqual(extract_title('y' * 50), 'y' * 50)

    def test_short_user_title_falls_back_to_longer_assistant_title(self):
        title = infer_title([user('Hi'), assistant('## Python decorators explained\nA decorator...')])
        self.assertEqual(title, 'Python decorators explained')

    def test_short_user_title_kept_when_assistant_title_is_not_longer(self):
        self.assertEqual(infer_title([user('Hey there'), assistant('Hi')]), 'Hey there')

    def test_missing_user_message_uses_assistant(self):
        self.assertEqual(infer_title([assistant('Welcome to the chat'), assistant('again')]), 'Welcome to the chat')


class DatasetTests(SimpleTestCase):
    def test_document_round_trip_keeps_shape(self):
        dataset = build_dataset()
        document = dataset.to_document()
        self.assertEqual(document['activeThreadId'], '1700000000002')
        self.assertEqual(document['settings'], {'customPrompt': 'Answer briefly.'})
        self.assertEqual(document['chatThreads'][0]['messages'][0], {'isUser': True, 'text': '# Hello\nworld', 'timestamp': 1})
        self.assertEqual(document['chatThreads'][0]['model']['displayName'], 'GPT-4o mini')
        self.assertEqual(Dataset.from_document(document).to_document(), document)

    def test_older_document_without_lists_loads_empty(self):
        dataset = Dataset.from_document({'apiKeys': {'gemini': 'k'}})
        self.assertEqual(dataset.threads, {})
        self.assertEqual(dataset.model_ids, [])
        self.assertIsNone(dataset.active_thread_id)
        self.assertIsNone(dataset.settings.custom_prompt)

    def test_new_thread_id_skips_existing_ids(self):
        with patch('chats.dataset.now_millis', return_value=1000):
            self.assertEqual(new_thread_id({'1000', '1001'}), '1002')

    def test_next_active_keeps_current_holder(self):
        dataset = Dataset()
        dataset.add_thread(build_thread('a', 1, active=True))
        dataset.add_thread(build_thread('b', 5))
        self.assertEqual(next_active_thread_id(dataset, 'b'), 'a')


class FlatFileStoreTests(SimpleTestCase):
    def setUp(self):
        self.root = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, self.root, True)
        self.files = LocalFileStore(self.root)
        self.backend = FlatFileStore(self.files)

    def test_missing_file_is_created_as_empty_encoded_document(self):
        dataset = self.backend.fetch_all(PASSWORD)
        self.assertEqual(dataset.threads, {})
        content = self.files.read_text('data.json')
        self.assertTrue(is_encrypted(content))
        self.assertEqual(decode_document(content, PASSWORD), {})

    def test_missing_file_without_heal_raises_not_found(self):
        with self.assertRaises(NotFoundError):
            self.backend.read_document(PASSWORD, heal=False)

    def test_legacy_plaintext_document_is_reencoded(self):
        document = build_dataset().to_document()
        self.files.write_text('data.json', json.dumps(document))
        with self.assertLogs('chats', level='INFO') as captured:
            dataset = self.backend.fetch_all(PASSWORD)
        self.assertTrue(any('ENCRYPTION SUCCESS' in entry for entry in captured.output))
        self.assertEqual(dataset.to_document(), document)
        self.assertEqual(decode_document(self.files.read_text('data.json'), PASSWORD), document)

    def test_unparsable_plaintext_is_left_untouched(self):
        self.files.write_text('data.json', 'not json at all')
        with self.assertRaises(FormatError):
            self.backend.fetch_all(PASSWORD)
        self.assertEqual(self.files.read_text('data.json'), 'not json at all')

    def test_wrong_password_raises_authentication_error(self):
        self.backend.persist_dataset(build_dataset(), PASSWORD)
        with self.assertRaises(AuthenticationError):
            self.backend.fetch_all('wrong password')

    def test_failed_encode_keeps_previous_file(self):
        self.backend.persist_dataset(build_dataset(), PASSWORD)
        before = self.files.read('data.json')
        with patch('chats.backends.encode_document', side_effect=FormatError('boom')):
            with self.assertRaises(FormatError):
                self.backend.persist_api_key('gemini', 'new', PASSWORD)
        self.assertEqual(self.files.read('data.json'), before)

    def test_fetch_one_unknown_thread_raises(self):
        self.backend.persist_dataset(build_dataset(), PASSWORD)
        with self.assertRaises(NotFoundError):
            self.backend.fetch_one('missing', PASSWORD)


class ChatStoreTests(SimpleTestCase):
    def setUp(self):
        self.root = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, self.root, True)
        self.files = LocalFileStore(self.root)
        self.store = ChatStore(FlatFileStore(self.files))

    async def reload(self):
        fresh = ChatStore(FlatFileStore(self.files))
        await fresh.load(PASSWORD)
        return fresh

    async def test_create_thread_is_active_and_titled_new_chat(self):
        await self.store.load(PASSWORD)
        thread_id = await self.store.create_thread(PASSWORD, MODEL.to_dict())

        fresh = await self.reload()
        thread = fresh.get_thread(thread_id)
        self.assertEqual(thread.title, DEFAULT_TITLE)
        self.assertEqual(thread.messages, [])
        self.assertEqual(thread.model, MODEL)
        self.assertEqual(fresh.active_thread.id, thread_id)

    async def test_switching_active_thread_leaves_one_holder(self):
        await self.store.load(PASSWORD)
        first = await self.store.create_thread(PASSWORD, MODEL)
        second = await self.store.create_thread(PASSWORD, MODEL)
        await self.store.set_active_thread(first, PASSWORD)

        fresh = await self.reload()
        active = [thread.id for thread in fresh.dataset.threads.values() if thread.is_active]
        self.assertEqual(active, [first])
        self.assertNotEqual(first, second)

    async def test_update_messages_infers_title_once(self):
        await self.store.load(PASSWORD)
        thread_id = await self.store.create_thread(PASSWORD, MODEL)

        changed = await self.store.update_thread_messages(
            thread_id,
            [{'isUser': True, 'text': '# Hello\nworld', 'timestamp': 1}, {'isUser': False, 'text': 'hi', 'timestamp': 2}],
            PASSWORD,
        )
        self.assertTrue(changed)

        fresh = await self.reload()
        thread = fresh.get_thread(thread_id)
        self.assertEqual(thread.title, 'Hello')
        self.assertEqual([m.text for m in thread.messages], ['# Hello\nworld', 'hi'])

        await self.store.update_thread_messages(
            thread_id, thread.messages + [user('A completely different topic', 3)], PASSWORD
        )
        self.assertEqual(self.store.get_thread(thread_id).title, 'Hello')

    async def test_single_message_keeps_default_title(self):
        await self.store.load(PASSWORD)
        thread_id = await self.store.create_thread(PASSWORD, MODEL)
        await self.store.update_thread_messages(thread_id, [user('# Hello')], PASSWORD)
        self.assertEqual(self.store.get_thread(thread_id).title, DEFAULT_TITLE)

    async def test_update_unknown_thread_raises(self):
        await self.store.load(PASSWORD)
        with self.assertRaises(NotFoundError):
            await self.store.update_thread_messages('missing', [user('hi')], PASSWORD)

    async def test_updated_at_advances_on_write(self):
        await self.store.load(PASSWORD)
        with patch('chats.store.now_millis', return_value=1000):
            thread_id = await self.store.create_thread(PASSWORD, MODEL)
        with patch('chats.store.now_millis', return_value=5000):
            await self.store.update_thread_messages(thread_id, [user('hello')], PASSWORD)
        thread = (await self.reload()).get_thread(thread_id)
        self.assertEqual(thread.created_at, 1000)
        self.assertEqual(thread.updated_at, 5000)

    async def test_deleting_active_thread_activates_most_recent(self):
        dataset = Dataset()
        dataset.add_thread(build_thread('1', 1))
        dataset.add_thread(build_thread('2', 2))
        dataset.add_thread(build_thread('3', 3, active=True))
        await self.store.save(dataset, PASSWORD)

        next_active = await self.store.delete_thread('3', PASSWORD)
        self.assertEqual(next_active, '2')

        fresh = await self.reload()
        self.assertEqual(list(fresh.dataset.threads), ['1', '2'])
        self.assertEqual(fresh.active_thread.id, '2')

    async def test_deleting_last_thread_leaves_no_active(self):
        await self.store.load(PASSWORD)
        thread_id = await self.store.create_thread(PASSWORD, MODEL)
        self.assertIsNone(await self.store.delete_thread(thread_id, PASSWORD))
        fresh = await self.reload()
        self.assertIsNone(fresh.active_thread)
        self.assertNotIn('activeThreadId', decode_document(self.files.read_text('data.json'), PASSWORD))

    async def test_in_memory_update_then_write_through_persists(self):
        await self.store.load(PASSWORD)
        thread_id = await self.store.create_thread(PASSWORD, MODEL)
        messages = [user('streamed question'), assistant('streamed answer')]

        self.store.update_thread_messages_in_memory(thread_id, messages)
        self.assertTrue(await self.store.update_thread_messages(thread_id, messages, PASSWORD))

        fresh = await self.reload()
        self.assertEqual(fresh.get_thread(thread_id).messages, messages)

    async def test_flush_writes_pending_in_memory_changes(self):
        dataset = Dataset()
        dataset.add_thread(build_thread('1', 1))
        dataset.add_thread(build_thread('2', 2, active=True))
        dataset.add_thread(build_thread('3', 3))
        await self.store.save(dataset, PASSWORD)

        self.store.update_thread_messages_in_memory('1', [user('hello')])
        self.store.delete_thread_in_memory('2')
        self.assertEqual(self.store.active_thread.id, '1')
        self.store.set_active_thread_in_memory('3')

        self.assertEqual(await self.store.flush(PASSWORD), 2)
        self.assertEqual(await self.store.flush(PASSWORD), 0)

        fresh = await self.reload()
        self.assertEqual(list(fresh.dataset.threads), ['1', '3'])
        self.assertEqual(fresh.get_thread('1').messages, [user('hello')])
        self.assertEqual(fresh.active_thread.id, '3')

    async def test_flush_infers_title_for_streamed_thread(self):
        await self.store.load(PASSWORD)
        thread_id = await self.store.create_thread(PASSWORD, MODEL)
        messages = [user('Explain python decorators'), assistant('Sure')]

        self.store.update_thread_messages_in_memory(thread_id, messages)
        self.assertEqual(await self.store.flush(PASSWORD), 1)
        self.assertFalse(await self.store.update_thread_messages(thread_id, messages, PASSWORD))

        fresh = await self.reload()
        self.assertEqual(fresh.get_thread(thread_id).title, 'Explain python decorators')

    async def test_api_keys_and_settings_are_upserted(self):
        await self.store.load(PASSWORD)
        await self.store.set_api_key('gemini', 'first', PASSWORD)
        await self.store.set_api_key('gemini', 'second', PASSWORD)
        await self.store.update_settings(PASSWORD, custom_prompt='Be terse.', model_ids=['a/b'])

        fresh = await self.reload()
        self.assertEqual(fresh.get_api_key('gemini'), 'second')
        self.assertIsNone(fresh.get_api_key('openRouter'))
        self.assertEqual(fresh.dataset.settings.custom_prompt, 'Be terse.')
        self.assertEqual(fresh.dataset.model_ids, ['a/b'])

    async def test_threads_by_recency_orders_newest_first(self):
        dataset = Dataset()
        dataset.add_thread(build_thread('1', 10))
        dataset.add_thread(build_thread('2', 30))
        dataset.add_thread(build_thread('3', 20))
        await self.store.save(dataset, PASSWORD)
        self.assertEqual([t.id for t in self.store.threads_by_recency()], ['2', '3', '1'])


class ChatStoreWriteTests(SimpleTestCase):
    def setUp(self):
        self.backend = RecordingStore()
        self.store = ChatStore(self.backend)

    async def test_identical_messages_are_written_once(self):
        await self.store.load(PASSWORD)
        thread_id = await self.store.create_thread(PASSWORD, MODEL)
        self.backend.writes.clear()

        messages = [user('hello'), assistant('world')]
        self.assertTrue(await self.store.update_thread_messages(thread_id, messages, PASSWORD))
        self.assertFalse(await self.store.update_thread_messages(thread_id, list(messages), PASSWORD))

        self.assertEqual(self.backend.writes, [('thread', thread_id)])

    async def test_failed_backend_write_keeps_persisted_snapshot(self):
        await self.store.load(PASSWORD)
        thread_id = await self.store.create_thread(PASSWORD, MODEL)

        self.backend.fail_with = OSError('disk full')
        with self.assertRaises(OSError):
            await self.store.update_thread_messages(thread_id, [user('hello')], PASSWORD)
        self.backend.fail_with = None

        self.assertEqual(self.store.get_thread(thread_id).messages, [])
        self.assertTrue(await self.store.update_thread_messages(thread_id, [user('hello')], PASSWORD))

    async def test_create_thread_persists_then_activates(self):
        await self.store.load(PASSWORD)
        thread_id = await self.store.create_thread(PASSWORD, MODEL)
        self.assertEqual(self.backend.writes, [('thread', thread_id), ('active', thread_id)])


class RelationalStoreTests(TestCase):
    def setUp(self):
        self.backend = RelationalStore()

    def test_message_text_is_field_encoded_at_rest(self):
        self.backend.persist_thread(build_thread('t1', 1, [user('secret question'), assistant('')]), PASSWORD)

        texts = list(Message.objects.order_by('id').values_list('text', flat=True))
        self.assertTrue(is_encrypted(texts[0]))
        self.assertEqual(decrypt_field(texts[0], PASSWORD), 'secret question')
        self.assertEqual(texts[1], '')

        thread = self.backend.fetch_one('t1', PASSWORD)
        self.assertEqual([m.text for m in thread.messages], ['secret question', ''])

    def test_thread_metadata_is_stored_in_clear(self):
        self.backend.persist_thread(build_thread('t1', 7, title='Plain title'), PASSWORD)
        row = ChatThread.objects.get(pk='t1')
        self.assertEqual(row.title, 'Plain title')
        self.assertEqual(row.model_display_name, 'GPT-4o mini')
        self.assertEqual(row.updated_at, 7)

    def test_persist_thread_replaces_message_list(self):
        self.backend.persist_thread(build_thread('t1', 1, [user('a'), assistant('b'), user('c', 3)]), PASSWORD)
        self.backend.persist_thread(build_thread('t1', 2, [user('a')]), PASSWORD)
        self.assertEqual(Message.objects.filter(thread_id='t1').count(), 1)

    def test_encode_failure_leaves_previous_messages(self):
        self.backend.persist_thread(build_thread('t1', 1, [user('a')]), PASSWORD)
        with patch('chats.backends.encrypt_field', side_effect=FormatError('boom')):
            with self.assertRaises(FormatError):
                self.backend.persist_thread(build_thread('t1', 2, [user('b')]), PASSWORD)
        self.assertEqual([m.text for m in self.backend.fetch_one('t1', PASSWORD).messages], ['a'])

    def test_legacy_plaintext_rows_are_reencoded_on_read(self):
        row = ChatThread.objects.create(
            id='legacy', model_id='m', model_display_name='M', model_provider='openrouter', created_at=1, updated_at=1
        )
        Message.objects.create(thread=row, is_user=True, text='old plaintext', timestamp=1)
        ApiKey.objects.create(service_name='gemini', encrypted_key='plain-key')

        dataset = self.backend.fetch_all(PASSWORD)

        self.assertEqual(dataset.threads['legacy'].messages[0].text, 'old plaintext')
        self.assertEqual(dataset.api_keys['gemini'], 'plain-key')
        self.assertTrue(is_encrypted(Message.objects.get().text))
        self.assertTrue(is_encrypted(ApiKey.objects.get().encrypted_key))

    def test_wrong_password_read_does_not_rebind_legacy_rows(self):
        row = ChatThread.objects.create(
            id='mixed', model_id='m', model_display_name='M', model_provider='openrouter', created_at=1, updated_at=1
        )
        Message.objects.create(thread=row, is_user=True, text='old plaintext', timestamp=1)
        Message.objects.create(thread=row, is_user=False, text=encrypt_field('new reply', PASSWORD), timestamp=2)

        with self.assertRaises(AuthenticationError):
            self.backend.fetch_all('wrong password')
        self.assertEqual(Message.objects.get(timestamp=1).text, 'old plaintext')

        dataset = self.backend.fetch_all(PASSWORD)
        self.assertEqual([m.text for m in dataset.threads['mixed'].messages], ['old plaintext', 'new reply'])
        self.assertEqual(decrypt_field(Message.objects.get(timestamp=1).text, PASSWORD), 'old plaintext')

    def test_active_switch_never_leaves_two_holders(self):
        self.backend.persist_thread(build_thread('a', 1), PASSWORD)
        self.backend.persist_thread(build_thread('b', 2), PASSWORD)
        self.backend.persist_active('a', PASSWORD)
        self.backend.persist_active('b', PASSWORD)
        self.assertEqual(list(ChatThread.objects.filter(is_active=True).values_list('id', flat=True)), ['b'])

    def test_persist_active_unknown_thread_raises(self):
        with self.assertRaises(NotFoundError):
            self.backend.persist_active('missing', PASSWORD)

    def test_remove_thread_cascades_to_messages(self):
        self.backend.persist_thread(build_thread('a', 1, [user('x')]), PASSWORD)
        self.backend.persist_thread(build_thread('b', 2, [user('y')]), PASSWORD)
        self.backend.remove_thread('a', 'b', PASSWORD)
        self.assertFalse(Message.objects.filter(thread_id='a').exists())
        self.assertEqual(ChatThread.objects.get(is_active=True).id, 'b')

    def test_api_key_upsert_and_wrong_password(self):
        self.backend.persist_api_key('openRouter', 'first', PASSWORD)
        self.backend.persist_api_key('openRouter', 'second', PASSWORD)
        self.assertEqual(ApiKey.objects.count(), 1)
        self.assertEqual(self.backend.get_api_key('openRouter', PASSWORD), 'second')
        self.assertIsNone(self.backend.get_api_key('openRouter', 'wrong'))
        self.assertIsNone(self.backend.get_api_key('gemini', PASSWORD))

    def test_fetch_all_with_wrong_password_raises(self):
        self.backend.persist_thread(build_thread('a', 1, [user('x')]), PASSWORD)
        with self.assertRaises(AuthenticationError):
            self.backend.fetch_all('wrong')

    def test_persist_dataset_round_trip_and_clear(self):
        dataset = build_dataset()
        self.backend.persist_dataset(dataset, PASSWORD)
        self.assertEqual(self.backend.fetch_all(PASSWORD).to_document(), dataset.to_document())
        self.assertEqual(Settings.objects.count(), 1)

        self.backend.clear()
        self.assertFalse(ChatThread.objects.exists())
        self.assertFalse(Message.objects.exists())
        self.assertFalse(ApiKey.objects.exists())
        self.assertFalse(Settings.objects.exists())

    async def test_chat_store_over_relational_backend(self):
        store = ChatStore(self.backend)
        await store.load(PASSWORD)
        thread_id = await store.create_thread(PASSWORD, MODEL)
        await store.update_thread_messages(thread_id, [user('How do I sort a dict?'), assistant('Use sorted().')], PASSWORD)

        fresh = ChatStore(RelationalStore())
        await fresh.load(PASSWORD)
        thread = fresh.get_thread(thread_id)
        self.assertEqual(thread.title, 'How do I sort a dict?')
        self.assertTrue(thread.is_active)
        self.assertEqual(len(thread.messages), 2)


class SelectBackendTests(SimpleTestCase):
    def setUp(self):
        self.root = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, self.root, True)
        self.files = LocalFileStore(self.root)

    def test_auto_prefers_flat_file_before_migration(self):
        self.files.write_text('data.json', encode_document({}, PASSWORD))
        self.assertIsInstance(select_backend('auto', self.files), FlatFileStore)

    def test_auto_uses_relational_after_migration(self):
        self.files.write_text('data.json', encode_document({}, PASSWORD))
        self.files.write_text('data.json.bak', encode_document({}, PASSWORD))
        self.assertIsInstance(select_backend('auto', self.files), RelationalStore)

    def test_auto_uses_relational_on_fresh_install(self):
        self.assertIsInstance(select_backend('auto', self.files), RelationalStore)

    def test_explicit_backend_names(self):
        self.assertIsInstance(select_backend('flatfile', self.files), FlatFileStore)
        self.assertIsInstance(select_backend('RELATIONAL', self.files), RelationalStore)

    def test_unknown_backend_is_rejected(self):
        with self.assertRaises(ImproperlyConfigured):
            select_backend('mongo', self.files)


class MigrationServiceTests(TestCase):
    def setUp(self):
        self.root = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, self.root, True)
        self.files = LocalFileStore(self.root)
        self.flat = FlatFileStore(self.files)
        self.dataset = build_dataset()
        self.flat.persist_dataset(self.dataset, PASSWORD)
        self.service = MigrationService(self.flat, RelationalStore(), self.files)

    def test_migration_copies_every_entity(self):
        self.assertTrue(self.service.migrate(PASSWORD))

        migrated = RelationalStore().fetch_all(PASSWORD)
        self.assertEqual(migrated.to_document(), self.dataset.to_document())
        self.assertEqual(ChatThread.objects.count(), 2)
        self.assertEqual(Message.objects.count(), 4)
        self.assertEqual(ApiKey.objects.count(), 3)

    def test_backup_is_byte_identical_and_source_kept(self):
        original = self.files.read('data.json')
        self.service.migrate(PASSWORD)
        self.assertEqual(self.files.read('data.json.bak'), original)
        self.assertEqual(self.files.read('data.json'), original)

    def test_wrong_password_propagates_and_writes_nothing(self):
        with self.assertRaises(AuthenticationError):
            self.service.migrate('wrong')
        self.assertFalse(ChatThread.objects.exists())
        self.assertFalse(self.files.exists('data.json.bak'))

    def test_missing_flat_file_is_not_found(self):
        self.files.delete('data.json')
        with self.assertRaises(NotFoundError):
            self.service.migrate(PASSWORD)
        self.assertFalse(self.files.exists('data.json'))

    def test_step_failure_is_wrapped_and_partial_rows_kept(self):
        with patch.object(RelationalStore, 'persist_api_key', side_effect=RuntimeError('disk full')):
            with self.assertLogs('alerts', level='ERROR') as alerts_log:
                with self.assertRaises(MigrationError) as ctx:
                    self.service.migrate(PASSWORD)

        self.assertIn('CRITICAL: Migration failed', alerts_log.output[0])
        self.assertIsInstance(ctx.exception.__cause__, RuntimeError)
        self.assertIn('api_keys', str(ctx.exception))
        self.assertEqual(ChatThread.objects.count(), 2)
        self.assertFalse(self.files.exists('data.json.bak'))

    def test_plan_counts_without_writing(self):
        plan = self.service.plan(PASSWORD)
        self.assertEqual((plan.threads, plan.messages, plan.api_keys, plan.model_ids), (2, 4, 3, 2))
        self.assertTrue(plan.has_custom_prompt)
        self.assertFalse(ChatThread.objects.exists())

    async def test_async_migrate(self):
        self.assertTrue(await self.service.amigrate(PASSWORD))
        self.assertEqual(await ChatThread.objects.acount(), 2)


class MigrateToRelationalCommandTests(TestCase):
    def setUp(self):
        self.root = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, self.root, True)
        self.files = LocalFileStore(self.root)
        FlatFileStore(self.files).persist_dataset(build_dataset(), PASSWORD)
        patcher = patch('chats.management.commands.migrate_to_relational.get_file_store', return_value=self.files)
        patcher.start()
        self.addCleanup(patcher.stop)

    def test_command_migrates_and_reports(self):
        out = StringIO()
        call_command('migrate_to_relational', password=PASSWORD, stdout=out)
        self.assertIn('Migration completed', out.getvalue())
        self.assertEqual(ChatThread.objects.count(), 2)
        self.assertTrue(self.files.exists('data.json.bak'))

    def test_dry_run_writes_nothing(self):
        out = StringIO()
        call_command('migrate_to_relational', password=PASSWORD, dry_run=True, stdout=out)
        self.assertIn('Threads: 2', out.getvalue())
        self.assertFalse(ChatThread.objects.exists())
        self.assertFalse(self.files.exists('data.json.bak'))

    def test_wrong_password_is_a_command_error(self):
        with self.assertRaises(CommandError):
            call_command('migrate_to_relational', password='wrong', stdout=StringIO())

    def test_password_is_prompted_when_omitted(self):
        with patch('chats.management.commands.migrate_to_relational.getpass', return_value=PASSWORD) as prompt:
            call_command('migrate_to_relational', stdout=StringIO())
        prompt.assert_called_once()
        self.assertEqual(ChatThread.objects.count(), 2)
