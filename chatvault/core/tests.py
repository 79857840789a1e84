import json
import logging
import os
import shutil
import sys
import tempfile
from unittest.mock import patch

from django.core.exceptions import ImproperlyConfigured
from django.test import SimpleTestCase, override_settings

from core import files as files_module
from core.files import LocalFileStore, get_file_store
from core.logging_formatters import StructuredJSONFormatter
from core.logging_utils import AppLogger


class AppLoggerTests(SimpleTestCase):
    def setUp(self):
        self.logger = AppLogger('core.tests')

    def test_info_logs_formatted_message_with_thread_and_extra(self):
        extra = {'backend': 'flatfile', 'writes': 2}
        with self.assertLogs('core.tests', level='INFO') as captured:
            self.logger.info('Test message', thread_id='1700000000000', extra_data=extra)
        self.assertEqual(len(captured.output), 1)
        logged_message = captured.output[0]
        self.assertIn('[Thread: 1700000000000] Test message', logged_message)
        self.assertIn('backend: flatfile', logged_message)
        self.assertIn('writes: 2', logged_message)

    def test_context_is_attached_to_record(self):
        with self.assertLogs('core.tests', level='INFO') as captured:
            self.logger.info('With context', thread_id='t1', extra_data={'state': 'completed'})
        self.assertEqual(captured.records[0].context, {'thread_id': 't1', 'state': 'completed'})

    def test_security_event_uses_security_logger(self):
        with self.assertLogs('chatvault.security', level='WARNING') as captured:
            self.logger.security_event('Vault unlock failed')
        self.assertEqual(len(captured.output), 1)
        self.assertIn('SECURITY EVENT: Vault unlock failed', captured.output[0])

    def test_critical_also_raises_alert(self):
        with self.assertLogs('alerts', level='ERROR') as alerts_log, self.assertLogs(
            'core.tests', level='CRITICAL'
        ) as core_log:
            self.logger.critical('Critical failure detected')
        self.assertTrue(any('CRITICAL: Critical failure detected' in entry for entry in alerts_log.output))
        self.assertTrue(any('Critical failure detected' in entry for entry in core_log.output))

    def test_encryption_event_logs_success_and_failure(self):
        with self.assertLogs('core.tests', level='INFO') as success_log:
            self.logger.encryption_event('Flat file re-encoded', success=True)
        self.assertTrue(any('ENCRYPTION SUCCESS: Flat file re-encoded' in entry for entry in success_log.output))

        with self.assertLogs('core.tests', level='ERROR') as failure_log:
            self.logger.encryption_event('Flat file re-encode failed', success=False)
        self.assertTrue(any('ENCRYPTION FAILURE: Flat file re-encode failed' in entry for entry in failure_log.output))

    def test_thread_activity_includes_id_and_action(self):
        with self.assertLogs('core.tests', level='INFO') as captured:
            self.logger.thread_activity('deleted', '42', details='2 remaining')
        self.assertIn('Thread 42 action: deleted - 2 remaining', captured.output[0])


class StructuredJSONFormatterTests(SimpleTestCase):
    def make_record(self, **extra):
        record = logging.LogRecord('chats', logging.INFO, __file__, 10, 'Saved %s', ('thread',), None)
        for key, value in extra.items():
            setattr(record, key, value)
        return record

    def test_formats_core_fields(self):
        payload = json.loads(StructuredJSONFormatter().format(self.make_record()))
        self.assertEqual(payload['level'], 'INFO')
        self.assertEqual(payload['logger'], 'chats')
        self.assertEqual(payload['message'], 'Saved thread')
        self.assertIn('timestamp', payload)

    def test_merges_context_and_renames_core_field_conflicts(self):
        record = self.make_record(context={'thread_id': 't2', 'writes': 3, 'message': 'shadow'})
        payload = json.loads(StructuredJSONFormatter().format(record))
        self.assertEqual(payload['thread_id'], 't2')
        self.assertEqual(payload['writes'], 3)
        self.assertEqual(payload['message'], 'Saved thread')
        self.assertEqual(payload['context_message'], 'shadow')

    def test_formats_app_logger_records(self):
        with self.assertLogs('chats', level='INFO') as captured:
            AppLogger('chats').info('Flushed', thread_id='42', extra_data={'writes': 2})
        payload = json.loads(StructuredJSONFormatter().format(captured.records[0]))
        self.assertEqual(payload['thread_id'], '42')
        self.assertEqual(payload['writes'], 2)
        self.assertTrue(payload['message'].startswith('[Thread: 42] Flushed'))

    def test_includes_exception_text(self):
        try:
            raise ValueError('bad value')
        except ValueError:
            record = logging.LogRecord('chats', logging.ERROR, __file__, 1, 'failed', (), sys.exc_info())
        payload = json.loads(StructuredJSONFormatter().format(record))
        self.assertIn('ValueError: bad value', payload['exc_info'])


class LocalFileStoreTests(SimpleTestCase):
    def setUp(self):
        self.root = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, self.root, True)
        self.files = LocalFileStore(self.root)

    def test_write_read_and_nested_directories(self):
        self.files.write_text('nested/dir/data.json', '{"a": 1}')
        self.assertTrue(self.files.exists('nested/dir/data.json'))
        self.assertEqual(self.files.read_text('nested/dir/data.json'), '{"a": 1}')

    def test_failed_write_keeps_previous_content_and_no_temp_file(self):
        self.files.write_text('data.json', 'previous')
        with patch('core.files.os.replace', side_effect=OSError('disk full')):
            with self.assertRaises(OSError):
                self.files.write_text('data.json', 'next')
        self.assertEqual(self.files.read_text('data.json'), 'previous')
        self.assertEqual(os.listdir(self.root), ['data.json'])

    def test_copy_is_byte_identical(self):
        self.files.write('data.json', b'\x00salt::tag::payload\xff')
        self.files.copy('data.json', 'data.json.bak')
        self.assertEqual(self.files.read('data.json.bak'), self.files.read('data.json'))

    def test_delete_is_idempotent(self):
        self.files.write_text('data.json', 'x')
        with self.assertLogs('core', level='INFO'):
            self.files.delete('data.json')
        self.files.delete('data.json')
        self.assertFalse(self.files.exists('data.json'))

    def test_absolute_paths_are_kept(self):
        target = os.path.join(self.root, 'absolute.txt')
        self.files.write_text(target, 'abs')
        self.assertEqual(self.files.resolve(target), self.files.resolve('absolute.txt'))

    def test_get_file_store_uses_document_dir(self):
        with patch.object(files_module, '_store_instance', None):
            with override_settings(CHATVAULT_DOCUMENT_DIR=self.root):
                store = get_file_store()
        self.assertEqual(str(store.root), self.root)

    def test_get_file_store_requires_document_dir(self):
        with patch.object(files_module, '_store_instance', None):
            with override_settings(CHATVAULT_DOCUMENT_DIR=''):
                with self.assertRaises(ImproperlyConfigured):
                    get_file_store()
