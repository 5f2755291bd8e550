"""
Unit Tests for the progress bus
"""
import asyncio

import pytest

from pilot.services.progress_store import (
    COMPLETED_ERROR_MESSAGE,
    COMPLETED_SUCCESS_MESSAGE,
    ProgressSeverity,
    ProgressStore,
)


class TestAppend:
    """Message recording and duplicate suppression"""

    def test_append_records_message(self, progress_store):
        progress_store.create('exec-1')

        assert progress_store.append('exec-1', 'Cloning acme/storefront') is True

        messages = progress_store.get_messages('exec-1')
        assert [m.message for m in messages] == ['Cloning acme/storefront']
        assert messages[0].type == ProgressSeverity.INFO
        assert messages[0].to_dict()['type'] == 'info'

    def test_consecutive_duplicate_is_dropped(self, progress_store):
        progress_store.create('exec-1')

        progress_store.append('exec-1', 'Installing dependencies')
        assert progress_store.append('exec-1', 'Installing dependencies') is False

        assert len(progress_store.get_messages('exec-1')) == 1

    def test_repeat_after_different_message_is_kept(self, progress_store):
        progress_store.create('exec-1')

        progress_store.append('exec-1', 'Waiting')
        progress_store.append('exec-1', 'Still starting')
        progress_store.append('exec-1', 'Waiting')

        assert [m.message for m in progress_store.get_messages('exec-1')] == [
            'Waiting', 'Still starting', 'Waiting'
        ]

    def test_same_text_with_different_severity_is_kept(self, progress_store):
        progress_store.create('exec-1')

        progress_store.append('exec-1', 'Build step', ProgressSeverity.INFO)
        progress_store.append('exec-1', 'Build step', ProgressSeverity.ERROR)

        assert len(progress_store.get_messages('exec-1')) == 2

    def test_append_to_unknown_execution_is_noop(self, progress_store):
        assert progress_store.append('missing', 'hello') is False
        assert progress_store.get_messages('missing') == []
        assert progress_store.exists('missing') is False


class TestCompletion:
    """Completion marks and terminal messages"""

    def test_complete_success_appends_terminal_message(self, progress_store):
        progress_store.create('exec-1')

        assert progress_store.complete('exec-1', success=True) is True

        messages = progress_store.get_messages('exec-1')
        assert messages[-1].message == COMPLETED_SUCCESS_MESSAGE
        assert messages[-1].type == ProgressSeverity.SUCCESS
        assert progress_store.is_completed('exec-1') is True

    def test_complete_failure_appends_error_message(self, progress_store):
        progress_store.create('exec-1')

        progress_store.complete('exec-1', success=False)

        last = progress_store.get_messages('exec-1')[-1]
        assert last.message == COMPLETED_ERROR_MESSAGE
        assert last.type == ProgressSeverity.ERROR

    def test_second_complete_is_ignored(self, progress_store):
        progress_store.create('exec-1')

        progress_store.complete('exec-1', success=True)
        assert progress_store.complete('exec-1', success=False) is False

        texts = [m.message for m in progress_store.get_messages('exec-1')]
        assert texts == [COMPLETED_SUCCESS_MESSAGE]

    def test_append_after_completion_is_ignored(self, progress_store):
        progress_store.create('exec-1')
        progress_store.complete('exec-1')

        assert progress_store.append('exec-1', 'late message') is False
        assert len(progress_store.get_messages('exec-1')) == 1


class TestSubscribers:
    """Live fan-out and history replay"""

    def test_subscribe_replays_history_then_streams(self, progress_store):
        progress_store.create('exec-1')
        progress_store.append('exec-1', 'one')
        progress_store.append('exec-1', 'two')

        received = []
        progress_store.subscribe('exec-1', lambda m: received.append(m.message))
        progress_store.append('exec-1', 'three')

        assert received == ['one', 'two', 'three']

    def test_subscribe_without_replay(self, progress_store):
        progress_store.create('exec-1')
        progress_store.append('exec-1', 'one')

        received = []
        progress_store.subscribe('exec-1', lambda m: received.append(m.message), replay_existing=False)
        progress_store.append('exec-1', 'two')

        assert received == ['two']

    def test_unsubscribe_stops_delivery(self, progress_store):
        progress_store.create('exec-1')
        received = []
        unsubscribe = progress_store.subscribe('exec-1', lambda m: received.append(m.message))

        progress_store.append('exec-1', 'one')
        unsubscribe()
        progress_store.append('exec-1', 'two')

        assert received == ['one']
        assert progress_store.subscriber_count('exec-1') == 0

    def test_completion_message_reaches_subscribers(self, progress_store):
        progress_store.create('exec-1')
        received = []
        progress_store.subscribe('exec-1', received.append)

        progress_store.complete('exec-1', success=True)

        assert [m.message for m in received] == [COMPLETED_SUCCESS_MESSAGE]

    def test_failing_subscriber_does_not_block_others(self, progress_store):
        progress_store.create('exec-1')
        received = []

        def broken(message):
            raise RuntimeError('subscriber exploded')

        progress_store.subscribe('exec-1', broken)
        progress_store.subscribe('exec-1', lambda m: received.append(m.message))

        assert progress_store.append('exec-1', 'still delivered') is True
        assert received == ['still delivered']

    def test_subscribe_to_unknown_execution_returns_noop(self, progress_store):
        unsubscribe = progress_store.subscribe('missing', lambda m: None)

        assert callable(unsubscribe)
        unsubscribe()


class TestExpiryAndDedup:
    """Retention window and input-hash lookup"""

    def test_execution_expires_after_retention(self, progress_store, monotonic):
        progress_store.create('exec-1', dedup_key='key-1')
        progress_store.append('exec-1', 'working')

        monotonic.advance(progress_store.retention_seconds + 1)

        assert progress_store.exists('exec-1') is False
        assert progress_store.get_messages('exec-1') == []
        assert progress_store.lookup_by_dedup_key('key-1') is None
        assert progress_store.append('exec-1', 'too late') is False

    def test_completed_execution_also_expires(self, progress_store, monotonic):
        progress_store.create('exec-1')
        progress_store.complete('exec-1')

        monotonic.advance(progress_store.retention_seconds)

        assert progress_store.purge_expired() == ['exec-1']

    def test_retention_counts_from_creation(self, progress_store, monotonic):
        progress_store.create('exec-1')
        monotonic.advance(progress_store.retention_seconds - 10)
        progress_store.complete('exec-1')

        monotonic.advance(10)

        assert progress_store.exists('exec-1') is False

    def test_execution_alive_within_retention(self, progress_store, monotonic):
        progress_store.create('exec-1')

        monotonic.advance(progress_store.retention_seconds - 1)

        assert progress_store.exists('exec-1') is True

    def test_lookup_by_dedup_key(self, progress_store):
        key = ProgressStore.hash_input({'repoUrl': 'https://github.com/acme/storefront'})
        progress_store.create('exec-1', dedup_key=key)

        assert progress_store.lookup_by_dedup_key(key) == 'exec-1'
        assert progress_store.lookup_by_dedup_key('unknown') is None

    def test_hash_input_ignores_key_order(self):
        first = ProgressStore.hash_input({'a': 1, 'b': [1, 2]})
        second = ProgressStore.hash_input({'b': [1, 2], 'a': 1})

        assert first == second
        assert len(first) == 64

    def test_recreating_execution_resets_history(self, progress_store):
        progress_store.create('exec-1')
        progress_store.append('exec-1', 'old')

        progress_store.create('exec-1')

        assert progress_store.get_messages('exec-1') == []


@pytest.mark.asyncio
async def test_expiry_is_scheduled_on_running_loop(monotonic):
    store = ProgressStore(retention_seconds=0, clock=monotonic)
    store.create('exec-1')

    await asyncio.sleep(0.01)

    with store._lock:
        assert 'exec-1' not in store._executions
