"""Tests for environment-driven configuration and the error taxonomy."""
import pytest

from threadmem.exceptions import MemoryStorageError, SaverNotFoundError, SecurityError, StorageError, ThreadMemError
from threadmem.utils.config import RetentionConfig, load_config


class TestLoadConfig:

    def test_defaults(self, monkeypatch):
        for name in ('MEMORY_RETENTION_MAX_PER_THREAD', 'MEMORY_RETENTION_STRATEGY', 'CHECKPOINT_SAVERS',
                     'MEMORY_GRAPH_MIRROR', 'MEMORY_RETENTION_MODE', 'CHECKPOINT_MAX_AGE'):
            monkeypatch.delenv(name, raising=False)

        config = load_config()

        assert config.memory.retention.max_per_thread == 1000
        assert config.memory.retention.eviction_strategy == 'lru'
        assert config.memory.retention_mode == 'sync'
        assert config.memory.graph_mirror is True
        assert config.checkpoint.savers == ['memory']
        assert config.checkpoint.max_age is None

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv('MEMORY_RETENTION_MAX_PER_THREAD', '0')
        monkeypatch.setenv('MEMORY_RETENTION_MAX_ENTRIES', '')
        monkeypatch.setenv('MEMORY_RETENTION_STRATEGY', 'FIFO')
        monkeypatch.setenv('MEMORY_GRAPH_MIRROR', 'false')
        monkeypatch.setenv('MEMORY_RETENTION_MODE', 'async')
        monkeypatch.setenv('CHECKPOINT_SAVERS', 'memory, sqlite ,')
        monkeypatch.setenv('CHECKPOINT_DEFAULT_SAVER', 'sqlite')
        monkeypatch.setenv('CHECKPOINT_MAX_AGE', '604800')
        monkeypatch.setenv('OPENSEARCH_SERVICE', 'es')

        config = load_config()

        assert config.memory.retention.max_per_thread is None
        assert config.memory.retention.max_entries is None
        assert config.memory.retention.eviction_strategy == 'fifo'
        assert config.memory.graph_mirror is False
        assert config.memory.retention_mode == 'async'
        assert config.checkpoint.savers == ['memory', 'sqlite']
        assert config.checkpoint.default_saver == 'sqlite'
        assert config.checkpoint.max_age == 604800
        assert config.opensearch.service == 'es'

    @pytest.mark.parametrize('max_entries, max_total, expected', [(10, 50, 10), (None, 50, 50), (None, None, None)])
    def test_global_cap(self, max_entries, max_total, expected):
        assert RetentionConfig(max_entries=max_entries, max_total=max_total).global_cap == expected


class TestErrors:

    def test_detailed_message_and_dict(self):
        cause = ConnectionError('reset')
        error = MemoryStorageError('Failed to store memory',
                                   operation='store',
                                   context={'thread_id': 't1'},
                                   cause=cause)

        assert isinstance(error, StorageError)
        assert error.detailed_message() == 'Failed to store memory (operation=store, thread_id=t1)\nCaused by: reset'
        assert error.to_dict() == {
            'error': 'MemoryStorageError',
            'message': 'Failed to store memory',
            'operation': 'store',
            'context': {
                'thread_id': 't1'
            },
            'cause': 'reset'
        }

    def test_security_error_carries_keyword(self):
        error = SecurityError('blocked', keyword='DROP')

        assert isinstance(error, ThreadMemError)
        assert error.context == {'keyword': 'DROP'}

    def test_saver_not_found_message(self):
        assert str(SaverNotFoundError(None, [])) == 'Checkpoint saver default saver not found. Available savers: none'
        assert "'redis'" in str(SaverNotFoundError('redis', ['memory']))
