import asyncio
import json
import shutil
import tempfile
from unittest.mock import MagicMock, patch

import requests
from django.test import SimpleTestCase

from accounts.auth import VaultSession
from assistant.context import ChatContextWindow
from assistant.providers import (
    STREAM_DONE,
    BaseProvider,
    GeminiProvider,
    OpenRouterProvider,
    get_provider,
)
from assistant.streaming import (
    API_KEY_MISSING,
    GENERIC_ERROR,
    NETWORK_ERROR,
    NO_MODEL_SELECTED,
    REQUEST_IN_PROGRESS,
    EventKind,
    StreamingSession,
    TurnState,
)
from chats.backends import FlatFileStore
from chats.dataset import ModelDescriptor
from chats.store import ChatStore
from core.files import LocalFileStore
from vault.exceptions import ProviderError

PASSWORD = 'stream-test-password'


class ScriptedProvider(BaseProvider):
    """Provider that replays fixed snapshots without any network."""

    name = 'scripted'

    def __init__(self, snapshots=(), final=None, error=None, api_key='key', model='test/model'):
        super().__init__(api_key, model, base_url='http://provider.invalid')
        self.snapshots = list(snapshots)
        self.final = final
        self.error = error
        self.received = []

    async def send(self, messages, on_snapshot=None):
        self.received.append(messages)
        for snapshot in self.snapshots:
            if on_snapshot is not None:
                on_snapshot(snapshot)
            await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        if self.final is not None:
            return self.final
        return self.snapshots[-1] if self.snapshots else ''


class GatedProvider(BaseProvider):
    name = 'gated'

    def __init__(self, gate):
        super().__init__('key', 'test/model', base_url='http://provider.invalid')
        self.gate = gate

    async def send(self, messages, on_snapshot=None):
        on_snapshot('partial')
        await self.gate.wait()
        return 'partial done'


def streaming_response(lines):
    response = MagicMock()
    response.__enter__.return_value = response
    response.__exit__.return_value = False
    response.iter_lines.return_value = iter(lines)
    return response


def sse(content):
    return 'data: ' + json.dumps({'choices': [{'delta': {'content': content}}]})


class ChatContextWindowTests(SimpleTestCase):
    def test_window_drops_oldest_turns(self):
        window = ChatContextWindow(3)
        for index in range(5):
            window.add('user', str(index))
        self.assertEqual([turn['content'] for turn in window.history()], ['2', '3', '4'])
        self.assertEqual(len(window), 3)

    def test_rejects_non_positive_size(self):
        with self.assertRaises(ValueError):
            ChatContextWindow(0)


class StreamingSessionTests(SimpleTestCase):
    async def collect(self, session, text):
        return [event async for event in session.send(text)]

    async def test_completed_turn_yields_cumulative_snapshots(self):
        session = StreamingSession(ScriptedProvider(['He', 'Hell', 'Hello']))

        events = await self.collect(session, 'hi')

        self.assertEqual([e.kind for e in events], [EventKind.SNAPSHOT] * 3 + [EventKind.COMPLETED])
        self.assertEqual([e.text for e in events], ['He', 'Hell', 'Hello', 'Hello'])
        self.assertEqual(session.state, TurnState.COMPLETED)
        self.assertEqual(
            session.context.history(),
            [{'role': 'user', 'content': 'hi'}, {'role': 'assistant', 'content': 'Hello'}],
        )
        self.assertFalse(session.in_flight)

    async def test_cancel_before_third_snapshot(self):
        session = StreamingSession(ScriptedProvider(['a', 'ab', 'abc', 'abcd', 'abcde']))
        seen = []

        async for event in session.send('count'):
            seen.append(event)
            if event.text == 'ab':
                session.cancel()

        self.assertEqual([e.text for e in seen[:-1]], ['a', 'ab'])
        self.assertEqual(seen[-1].kind, EventKind.CANCELLED)
        self.assertEqual(seen[-1].text, 'ab [Generation stopped]')
        self.assertEqual(session.state, TurnState.CANCELLED)
        self.assertEqual(session.context.history()[-1], {'role': 'assistant', 'content': 'ab [Generation stopped]'})

    async def test_cancel_applies_once_stalled_provider_returns(self):
        gate = asyncio.Event()
        session = StreamingSession(GatedProvider(gate))
        turn = session.send('slow')
        self.assertEqual((await turn.__anext__()).text, 'partial')

        session.cancel()
        pending = asyncio.ensure_future(turn.__anext__())
        await asyncio.sleep(0)
        self.assertFalse(pending.done())
        self.assertTrue(session.in_flight)

        gate.set()
        terminal = await pending
        self.assertEqual(terminal.kind, EventKind.CANCELLED)
        self.assertEqual(terminal.text, 'partial [Generation stopped]')

    async def test_cancel_outside_a_turn_is_ignored(self):
        session = StreamingSession(ScriptedProvider(['done']))
        session.cancel()
        terminal = await session.respond('hi')
        self.assertEqual(terminal.kind, EventKind.COMPLETED)

    async def test_non_streaming_provider_gives_single_snapshot(self):
        session = StreamingSession(ScriptedProvider(final='Whole reply'))
        snapshots = []

        terminal = await session.respond('hi', on_snapshot=snapshots.append)

        self.assertEqual(snapshots, ['Whole reply'])
        self.assertEqual(terminal.text, 'Whole reply')

    async def test_missing_api_key_completes_with_sentinel(self):
        provider = ScriptedProvider(['never'], api_key='')
        session = StreamingSession(provider)

        terminal = await session.respond('hi')

        self.assertEqual(terminal.kind, EventKind.COMPLETED)
        self.assertEqual(terminal.text, API_KEY_MISSING)
        self.assertEqual(provider.received, [])
        self.assertEqual(len(session.context), 0)

    async def test_missing_model_completes_with_sentinel(self):
        terminal = await StreamingSession(ScriptedProvider(['never'], model='')).respond('hi')
        self.assertEqual(terminal.text, NO_MODEL_SELECTED)

    async def test_connection_error_becomes_network_sentinel(self):
        session = StreamingSession(ScriptedProvider(error=requests.ConnectionError('offline')))

        with self.assertLogs('assistant', level='ERROR'):
            terminal = await session.respond('hi')

        self.assertEqual(terminal.kind, EventKind.FAILED)
        self.assertEqual(terminal.text, NETWORK_ERROR)
        self.assertEqual(session.state, TurnState.FAILED)
        self.assertEqual(session.context.history(), [{'role': 'user', 'content': 'hi'}])

    async def test_provider_error_becomes_generic_sentinel(self):
        session = StreamingSession(ScriptedProvider(['part'], error=ProviderError('boom')))

        with self.assertLogs('assistant', level='ERROR'):
            events = await self.collect(session, 'hi')

        self.assertEqual(events[0].text, 'part')
        self.assertEqual(events[-1].kind, EventKind.FAILED)
        self.assertEqual(events[-1].text, GENERIC_ERROR)

    async def test_second_send_while_in_flight_is_rejected(self):
        gate = asyncio.Event()
        session = StreamingSession(GatedProvider(gate))

        turn = session.send('first')
        first = await turn.__anext__()
        self.assertEqual(first.text, 'partial')

        rejected = await session.respond('second')
        self.assertEqual(rejected.kind, EventKind.FAILED)
        self.assertEqual(rejected.text, REQUEST_IN_PROGRESS)
        self.assertTrue(session.in_flight)

        gate.set()
        remaining = [event async for event in turn]
        self.assertEqual(remaining[-1].kind, EventKind.COMPLETED)
        self.assertEqual(remaining[-1].text, 'partial done')

    async def test_history_window_is_bounded(self):
        provider = ScriptedProvider(['ok'])
        session = StreamingSession(provider, window_size=10)

        for index in range(7):
            await session.respond(f'question {index}')

        last_call = provider.received[-1]
        self.assertEqual(len(last_call), 11)
        self.assertEqual(last_call[0], {'role': 'user', 'content': 'question 1'})
        self.assertEqual(last_call[-1], {'role': 'user', 'content': 'question 6'})

    async def test_system_prompt_is_prepended_and_change_resets_window(self):
        provider = ScriptedProvider(['ok'])
        session = StreamingSession(provider, system_prompt='Be terse.')

        await session.respond('one')
        self.assertEqual(provider.received[-1][0], {'role': 'system', 'content': 'Be terse.'})

        session.set_system_prompt('Be terse.')
        self.assertEqual(len(session.context), 2)

        session.set_system_prompt('Be verbose.')
        self.assertEqual(len(session.context), 0)
        await session.respond('two')
        self.assertEqual(
            provider.received[-1],
            [{'role': 'system', 'content': 'Be verbose.'}, {'role': 'user', 'content': 'two'}],
        )


class StreamingCommitTests(SimpleTestCase):
    def setUp(self):
        self.root = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, self.root, True)
        self.files = LocalFileStore(self.root)
        self.store = ChatStore(FlatFileStore(self.files))
        self.session = VaultSession(password=PASSWORD, authenticated=True)

    async def test_completed_exchange_is_committed_to_thread(self):
        await self.store.load(PASSWORD)
        thread_id = await self.store.create_thread(PASSWORD, {'id': 'test/model', 'displayName': 'Test', 'provider': 'openrouter'})
        streaming = StreamingSession(
            ScriptedProvider(['Use', 'Use sorted()']), store=self.store, thread_id=thread_id, session=self.session
        )

        await streaming.respond('How do I sort a list?')

        reloaded = ChatStore(FlatFileStore(self.files))
        await reloaded.load(PASSWORD)
        thread = reloaded.get_thread(thread_id)
        self.assertEqual([(m.is_user, m.text) for m in thread.messages], [(True, 'How do I sort a list?'), (False, 'Use sorted()')])
        self.assertEqual(thread.title, 'How do I sort a list?')

    async def test_cancelled_exchange_commits_stopped_text(self):
        await self.store.load(PASSWORD)
        thread_id = await self.store.create_thread(PASSWORD, {'id': 'test/model', 'displayName': 'Test', 'provider': 'openrouter'})
        streaming = StreamingSession(
            ScriptedProvider(['x', 'xy', 'xyz']), store=self.store, thread_id=thread_id, session=self.session
        )

        async for event in streaming.send('go'):
            if event.text == 'x':
                streaming.cancel()

        self.assertEqual(self.store.get_thread(thread_id).messages[-1].text, 'x [Generation stopped]')


class OpenRouterProviderTests(SimpleTestCase):
    def test_parse_event_handles_comments_done_and_deltas(self):
        self.assertIsNone(OpenRouterProvider.parse_event(': OPENROUTER PROCESSING'))
        self.assertIsNone(OpenRouterProvider.parse_event(''))
        self.assertIsNone(OpenRouterProvider.parse_event('data: {not json'))
        self.assertIs(OpenRouterProvider.parse_event('data: [DONE]'), STREAM_DONE)
        self.assertEqual(OpenRouterProvider.parse_event(sse('Hi')), 'Hi')

    def test_parse_event_raises_on_stream_error(self):
        with self.assertRaises(ProviderError):
            OpenRouterProvider.parse_event('data: {"error": {"message": "rate limited"}}')

    @patch('assistant.providers.requests.post')
    async def test_streaming_reply_through_session(self, mock_post):
        mock_post.return_value = streaming_response(
            [': OPENROUTER PROCESSING', sse('Hel'), '', sse('lo'), 'data: [DONE]', sse('ignored')]
        )
        provider = OpenRouterProvider('sk-or', 'openai/gpt-4o-mini', base_url='https://openrouter.test/api/v1')
        snapshots = []

        terminal = await StreamingSession(provider).respond('hi', on_snapshot=snapshots.append)

        self.assertEqual(snapshots, ['Hel', 'Hello'])
        self.assertEqual(terminal.text, 'Hello')
        args, kwargs = mock_post.call_args
        self.assertEqual(args[0], 'https://openrouter.test/api/v1/chat/completions')
        self.assertTrue(kwargs['stream'])
        self.assertTrue(kwargs['json']['stream'])
        self.assertEqual(kwargs['headers']['Authorization'], 'Bearer sk-or')

    @patch('assistant.providers.requests.get')
    def test_list_models_wraps_request_errors(self, mock_get):
        mock_get.side_effect = requests.ConnectionError('offline')
        with self.assertLogs('assistant', level='ERROR'):
            with self.assertRaises(ProviderError):
                OpenRouterProvider('sk-or', 'm').list_models()

    @patch('assistant.providers.requests.get')
    def test_list_models_returns_catalog(self, mock_get):
        mock_get.return_value.json.return_value = {'data': [{'id': 'openai/gpt-4o-mini'}]}
        self.assertEqual(OpenRouterProvider('sk-or', 'm').list_models(), [{'id': 'openai/gpt-4o-mini'}])

    def test_list_models_requires_key(self):
        with self.assertRaises(ProviderError):
            OpenRouterProvider('', 'm').list_models()


class GeminiProviderTests(SimpleTestCase):
    def test_payload_maps_roles_and_system_prompt(self):
        payload = GeminiProvider.build_payload(
            [
                {'role': 'system', 'content': 'Be terse.'},
                {'role': 'user', 'content': 'hi'},
                {'role': 'assistant', 'content': 'hello'},
            ]
        )
        self.assertEqual(payload['systemInstruction'], {'parts': [{'text': 'Be terse.'}]})
        self.assertEqual([c['role'] for c in payload['contents']], ['user', 'model'])

    @patch('assistant.providers.requests.post')
    async def test_single_shot_reply_through_session(self, mock_post):
        mock_post.return_value.json.return_value = {
            'candidates': [{'content': {'parts': [{'text': 'Hello '}, {'text': 'there'}]}}]
        }
        provider = GeminiProvider('AIza', 'gemini-1.5-flash', base_url='https://gemini.test/v1beta')
        snapshots = []

        terminal = await StreamingSession(provider).respond('hi', on_snapshot=snapshots.append)

        self.assertEqual(snapshots, ['Hello there'])
        self.assertEqual(terminal.kind, EventKind.COMPLETED)
        self.assertEqual(mock_post.call_args.kwargs['params'], {'key': 'AIza'})

    @patch('assistant.providers.requests.post')
    async def test_http_error_becomes_generic_sentinel(self, mock_post):
        mock_post.return_value.raise_for_status.side_effect = requests.HTTPError('500')
        with self.assertLogs('assistant', level='ERROR'):
            terminal = await StreamingSession(GeminiProvider('AIza', 'gemini-1.5-flash')).respond('hi')
        self.assertEqual(terminal.text, GENERIC_ERROR)


class GetProviderTests(SimpleTestCase):
    def test_picks_provider_from_model_descriptor(self):
        keys = {'openRouter': 'sk-or', 'gemini': 'AIza'}
        openrouter = get_provider(ModelDescriptor('openai/gpt-4o-mini', 'GPT', 'openrouter'), keys)
        gemini = get_provider(ModelDescriptor('gemini-1.5-flash', 'Flash', 'gemini'), keys)

        self.assertIsInstance(openrouter, OpenRouterProvider)
        self.assertEqual(openrouter.api_key, 'sk-or')
        self.assertIsInstance(gemini, GeminiProvider)
        self.assertEqual(gemini.model, 'gemini-1.5-flash')

    def test_missing_key_gives_unconfigured_provider(self):
        provider = get_provider(ModelDescriptor('m', 'M', 'openrouter'), {})
        self.assertFalse(provider.is_configured())

    def test_unknown_provider_raises(self):
        with self.assertRaises(ProviderError):
            get_provider(ModelDescriptor('m', 'M', 'llamafile'), {})
