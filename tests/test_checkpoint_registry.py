"""Tests for the checkpoint saver registry."""
import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from threadmem.exceptions import CheckpointError, InvalidInputError, SaverNotFoundError
from threadmem.services import checkpoint_savers
from threadmem.services.checkpoint_registry import CheckpointRegistry, build_registry, saver_type_of
from threadmem.services.checkpoint_savers import MemoryCheckpointSaver, SqliteCheckpointSaver
from threadmem.utils.config import CheckpointConfig


class StubSaver:
    """Saver stand-in recording close calls; ``close_error`` makes close fail."""

    def __init__(self, saver_type, close_error=None):
        self.saver_type = saver_type
        self.close_error = close_error
        self.closed = 0

    async def close(self):
        self.closed += 1
        if self.close_error is not None:
            raise self.close_error


class CleanableSaver(StubSaver):
    """Stub with cleanup and health hooks. ``stale`` is what the next cleanup removes."""

    def __init__(self, saver_type, stale=0, healthy=True, cleanup_error=None):
        super().__init__(saver_type)
        self.stale = stale
        self.healthy = healthy
        self.cleanup_error = cleanup_error
        self.cleanup_calls = []

    async def cleanup(self, max_age, exclude_threads=None, dry_run=False):
        self.cleanup_calls.append((max_age, exclude_threads, dry_run))
        if self.cleanup_error is not None:
            raise self.cleanup_error
        removed = self.stale
        if not dry_run:
            self.stale = 0
        return removed

    async def health_check(self):
        if isinstance(self.healthy, Exception):
            raise self.healthy
        return self.healthy


class SyncCloseSaver:

    def __init__(self):
        self.closed = False

    def close(self):
        self.closed = True


@pytest.fixture
def registry():
    return CheckpointRegistry()


class TestDefaults:

    def test_first_registered_becomes_default(self, registry):
        registry.register('primary', StubSaver('memory'))
        registry.register('secondary', StubSaver('sqlite'))

        assert registry.get_default_saver_name() == 'primary'
        assert registry.get() is registry.get('primary')

    def test_explicit_default(self, registry):
        registry.register('primary', StubSaver('memory'))
        registry.register('durable', StubSaver('sqlite'), is_default=True)

        assert registry.get_default_saver_name() == 'durable'
        assert registry.get_saver_info()['is_default'] is True
        assert registry.get_saver_info('primary')['is_default'] is False

    async def test_removing_default_prefers_memory_saver(self, registry):
        memory, redis, sqlite = StubSaver('memory'), StubSaver('redis'), StubSaver('sqlite')
        registry.register('memory', memory)
        registry.register('redis', redis, is_default=True)
        registry.register('sqlite', sqlite)

        assert await registry.remove('redis') is True

        assert registry.get_default_saver_name() == 'memory'
        assert registry.available_savers() == ['memory', 'sqlite']
        assert redis.closed == 1

    async def test_removing_default_without_memory_saver_takes_first_remaining(self, registry):
        registry.register('redis', StubSaver('redis'))
        registry.register('sqlite', StubSaver('sqlite'))
        registry.register('dynamo', StubSaver('dynamodb'))

        await registry.remove('redis')

        assert registry.get_default_saver_name() == 'sqlite'

    async def test_removing_last_saver_clears_default(self, registry):
        registry.register('only', StubSaver('memory'))

        await registry.remove('only')

        assert registry.get_default_saver_name() is None
        with pytest.raises(SaverNotFoundError):
            registry.get()

    def test_set_default_unknown(self, registry):
        registry.register('memory', StubSaver('memory'))

        with pytest.raises(SaverNotFoundError):
            registry.set_default('redis')


class TestLookup:

    def test_get_unknown_lists_available(self, registry):
        registry.register('memory', StubSaver('memory'))
        registry.register('sqlite', StubSaver('sqlite'))

        with pytest.raises(SaverNotFoundError) as exc_info:
            registry.get('redis')

        assert exc_info.value.available == ['memory', 'sqlite']
        assert 'memory, sqlite' in str(exc_info.value)

    async def test_remove_unknown(self, registry):
        assert await registry.remove('missing') is False

    @pytest.mark.parametrize('name, saver', [('', StubSaver('memory')), ('   ', StubSaver('memory')), ('x', None)])
    def test_register_rejects_invalid(self, registry, name, saver):
        with pytest.raises(InvalidInputError):
            registry.register(name, saver)

    def test_replacing_a_name_keeps_one_entry(self, registry):
        first, second = StubSaver('memory'), StubSaver('sqlite')
        registry.register('main', first)
        registry.register('main', second)

        assert registry.get('main') is second
        assert registry.available_savers() == ['main']
        assert registry.get_saver_info('main') == {
            'name': 'main',
            'type': 'sqlite',
            'is_default': True,
            'registered_at': registry.get_saver_info('main')['registered_at']
        }
        assert first.closed == 0

    def test_saver_type_falls_back_to_class_name(self):
        assert saver_type_of(SyncCloseSaver()) == 'syncclosesaver'
        assert saver_type_of(MemoryCheckpointSaver()) == 'memory'

    def test_stats_and_types(self, registry):
        registry.register('a', StubSaver('memory'))
        registry.register('b', StubSaver('memory'))
        registry.register('c', StubSaver('sqlite'))

        stats = registry.get_stats()

        assert stats == {
            'total_savers': 3,
            'default_saver': 'a',
            'saver_types': {
                'memory': 2,
                'sqlite': 1
            },
            'savers': ['a', 'b', 'c']
        }
        assert registry.savers_by_type('memory') == ['a', 'b']


class TestLifecycle:

    async def test_close_errors_are_swallowed(self, registry):
        failing = StubSaver('redis', close_error=ConnectionError('already closed'))
        registry.register('redis', failing)

        assert await registry.remove('redis') is True
        assert failing.closed == 1
        assert not registry.has('redis')

    async def test_close_all(self, registry):
        async_saver = StubSaver('memory')
        sync_saver = SyncCloseSaver()
        failing = StubSaver('redis', close_error=RuntimeError('boom'))
        registry.register('a', async_saver)
        registry.register('b', sync_saver)
        registry.register('c', failing)

        await registry.close_all()

        assert async_saver.closed == 1
        assert sync_saver.closed
        assert registry.available_savers() == []
        assert registry.get_default_saver_name() is None

    def test_clear_does_not_close(self, registry):
        saver = StubSaver('memory')
        registry.register('a', saver)

        registry.clear()

        assert saver.closed == 0
        assert not registry.has('a')

    def test_validate(self, registry):
        report = registry.validate()
        assert report['valid'] is False
        assert report['issues'] == ['No checkpoint savers registered']

        registry.register('a', StubSaver('memory'))
        registry.register('b', StubSaver('memory'))
        report = registry.validate()
        assert report['valid'] is True
        assert report['warnings'] == ["2 savers share backend type 'memory'"]

    async def test_build_registry_from_config(self, tmp_path):
        config = CheckpointConfig(default_saver='sqlite',
                                  savers=['memory', 'sqlite'],
                                  sqlite_path=str(tmp_path / 'checkpoints.db'))

        registry = build_registry(config)

        assert registry.get_default_saver_name() == 'sqlite'
        assert isinstance(registry.get(), SqliteCheckpointSaver)
        assert isinstance(registry.get('memory'), MemoryCheckpointSaver)
        await registry.close_all()


class TestCleanup:

    async def test_cleanup_targets_default_saver(self, registry):
        other = CleanableSaver('memory', stale=3)
        default = CleanableSaver('sqlite', stale=1)
        registry.register('other', other)
        registry.register('default', default, is_default=True)

        assert await registry.cleanup(max_age=60) == 1

        assert other.cleanup_calls == []
        assert default.cleanup_calls == [(60, None, False)]
        stats = registry.get_cleanup_stats()
        assert stats['total_cleaned'] == 1
        assert stats['last_cleanup_at'] is not None

    async def test_named_saver_and_excluded_threads(self, registry):
        saver = CleanableSaver('sqlite', stale=2)
        registry.register('memory', CleanableSaver('memory'))
        registry.register('sqlite', saver)

        assert await registry.cleanup(3600, name='sqlite', exclude_threads=['t9']) == 2
        assert saver.cleanup_calls == [(3600, ['t9'], False)]

    async def test_dry_run_deletes_nothing(self, registry):
        saver = CleanableSaver('memory', stale=2)
        registry.register('memory', saver)

        assert await registry.cleanup(60, dry_run=True) == 2

        assert saver.stale == 2
        assert registry.get_cleanup_stats()['total_cleaned'] == 0
        assert registry.get_cleanup_stats()['last_cleanup_at'] is None

    async def test_cleanup_all_continues_past_failures(self, registry):
        registry.register('a', CleanableSaver('memory', stale=2))
        registry.register('b', CleanableSaver('sqlite', cleanup_error=CheckpointError('table locked')))
        registry.register('c', StubSaver('redis'))

        assert await registry.cleanup_all(60) == {'a': 2, 'c': 0}
        assert registry.get_cleanup_stats()['total_cleaned'] == 2

    @pytest.mark.parametrize('max_age', [-1, 'week', None, True])
    async def test_rejects_invalid_max_age(self, registry, max_age):
        registry.register('memory', CleanableSaver('memory'))

        with pytest.raises(InvalidInputError):
            await registry.cleanup(max_age)
        with pytest.raises(InvalidInputError):
            await registry.cleanup_all(max_age)

    async def test_unknown_saver(self, registry):
        with pytest.raises(SaverNotFoundError):
            await registry.cleanup(60, name='missing')

    async def test_cleans_real_savers(self, tmp_path, monkeypatch):
        current = [datetime(2024, 1, 1, tzinfo=timezone.utc)]
        monkeypatch.setattr(checkpoint_savers, 'utc_now', lambda: current[0])
        config = CheckpointConfig(savers=['memory', 'sqlite'], sqlite_path=str(tmp_path / 'checkpoints.db'))
        registry = build_registry(config)
        await registry.get('memory').save('t1', {'step': 1})
        await registry.get('sqlite').save('t1', {'step': 1})
        current[0] += timedelta(hours=2)

        assert await registry.cleanup_all(3600, dry_run=True) == {'memory': 1, 'sqlite': 1}
        assert await registry.cleanup_all(3600) == {'memory': 1, 'sqlite': 1}
        assert await registry.get('sqlite').load('t1') is None
        await registry.close_all()


class TestScheduledCleanup:

    async def test_runs_on_interval_until_stopped(self):
        registry = CheckpointRegistry(CheckpointConfig(max_age=60, cleanup_interval=0.01))
        saver = CleanableSaver('memory', stale=4)
        registry.register('memory', saver)

        task = registry.start_cleanup_scheduler()
        await asyncio.sleep(0.05)

        assert task is not None
        assert saver.stale == 0
        assert saver.cleanup_calls[0] == (60, None, False)
        assert registry.get_cleanup_stats()['scheduled'] is True

        await registry.stop_cleanup_scheduler()
        assert registry.get_cleanup_stats()['scheduled'] is False

    def test_disabled_without_max_age(self, registry):
        assert registry.start_cleanup_scheduler() is None
        assert registry.start_cleanup_scheduler(max_age=60, interval=0) is None

    async def test_close_all_stops_scheduler(self, registry):
        registry.register('memory', CleanableSaver('memory'))
        task = registry.start_cleanup_scheduler(max_age=60, interval=3600)

        await registry.close_all()

        assert task.cancelled()
        assert registry.get_cleanup_stats()['scheduled'] is False


class TestSaverHealth:

    async def test_health_check_all(self, registry):
        registry.register('ok', CleanableSaver('memory'))
        registry.register('down', CleanableSaver('sqlite', healthy=False))
        registry.register('raising', CleanableSaver('redis', healthy=ConnectionError('refused')))
        registry.register('plain', StubSaver('postgres'))

        assert await registry.health_check_all() == {'ok': True, 'down': False, 'raising': False, 'plain': True}
        assert await registry.health_check() is True
        assert await registry.health_check('down') is False

    async def test_health_check_unknown(self, registry):
        with pytest.raises(SaverNotFoundError):
            await registry.health_check('missing')
