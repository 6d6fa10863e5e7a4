"""
Checkpoint saver backends: in-memory, SQLite file and Amazon DynamoDB.
"""

import asyncio
import sqlite3
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional

import boto3
from boto3.dynamodb.conditions import Attr, Key
from botocore.exceptions import BotoCoreError, ClientError

from ..exceptions import CheckpointError, InvalidInputError
from ..models.checkpoint import Checkpoint
from ..utils import json_utils
from ..utils.config import CheckpointConfig
from ..utils.id_utils import generate_id
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import from_millis, to_millis, utc_now

logger = get_logger(__name__)


def _require_thread(thread_id: Any, operation: str) -> None:
    if not isinstance(thread_id, str) or not thread_id.strip():
        raise InvalidInputError('thread_id must be a non-empty string', operation=operation)


def _cutoff(max_age: Any) -> datetime:
    if isinstance(max_age, bool) or not isinstance(max_age, (int, float)) or max_age < 0:
        raise InvalidInputError('max_age must be a non-negative number of seconds', operation='cleanup_checkpoints',
                                context={'max_age': max_age})
    return utc_now() - timedelta(seconds=max_age)


class CheckpointSaver(ABC):
    """Persists opaque workflow state per thread.

    ``list`` returns checkpoints newest first and ``load`` without an id returns the
    newest one. With ``max_checkpoints`` set, older checkpoints of a thread are pruned on
    save.
    """
    saver_type = 'base'

    def __init__(self, max_checkpoints: Optional[int] = None):
        self.max_checkpoints = max_checkpoints

    @abstractmethod
    async def save(self, thread_id: str, state: Dict[str, Any], metadata: Optional[Dict[str, Any]] = None) -> str:
        """Persist a checkpoint and return its id."""

    @abstractmethod
    async def load(self, thread_id: str, checkpoint_id: Optional[str] = None) -> Optional[Checkpoint]:
        pass

    @abstractmethod
    async def list(self, thread_id: str, limit: Optional[int] = None) -> List[Checkpoint]:
        pass

    @abstractmethod
    async def delete(self, thread_id: str, checkpoint_id: Optional[str] = None) -> int:
        """Delete one checkpoint, or all of a thread's when ``checkpoint_id`` is omitted."""

    @abstractmethod
    async def cleanup(self, max_age: float, exclude_threads: Optional[List[str]] = None, dry_run: bool = False) -> int:
        """
        Delete checkpoints created more than ``max_age`` seconds ago.

        Args:
            max_age: Age threshold in seconds
            exclude_threads: Threads left untouched
            dry_run: Count matching checkpoints without deleting them

        Returns:
            Number of checkpoints deleted, or that would be with ``dry_run``
        """

    @abstractmethod
    async def health_check(self) -> bool:
        """Whether the backing storage is reachable."""

    async def close(self) -> None:
        pass


class MemoryCheckpointSaver(CheckpointSaver):
    """Process-local saver; state is lost on exit."""
    saver_type = 'memory'

    def __init__(self, max_checkpoints: Optional[int] = None):
        super().__init__(max_checkpoints)
        self._threads: Dict[str, List[Checkpoint]] = {}

    async def save(self, thread_id: str, state: Dict[str, Any], metadata: Optional[Dict[str, Any]] = None) -> str:
        _require_thread(thread_id, 'save_checkpoint')
        history = self._threads.setdefault(thread_id, [])
        # Round-trip through JSON so stored state cannot be mutated by the caller
        checkpoint = Checkpoint(thread_id=thread_id,
                                checkpoint_id=generate_id(),
                                state=json_utils.loads(json_utils.dumps(state)),
                                metadata=json_utils.loads(json_utils.dumps(metadata or {})),
                                created_at=utc_now(),
                                parent_id=history[-1].checkpoint_id if history else None)
        history.append(checkpoint)
        if self.max_checkpoints and len(history) > self.max_checkpoints:
            del history[:len(history) - self.max_checkpoints]
        return checkpoint.checkpoint_id

    async def load(self, thread_id: str, checkpoint_id: Optional[str] = None) -> Optional[Checkpoint]:
        history = self._threads.get(thread_id) or []
        if checkpoint_id is None:
            return history[-1] if history else None
        return next((c for c in history if c.checkpoint_id == checkpoint_id), None)

    async def list(self, thread_id: str, limit: Optional[int] = None) -> List[Checkpoint]:
        history = list(reversed(self._threads.get(thread_id) or []))
        return history[:limit] if limit is not None else history

    async def delete(self, thread_id: str, checkpoint_id: Optional[str] = None) -> int:
        history = self._threads.get(thread_id)
        if not history:
            return 0
        if checkpoint_id is None:
            return len(self._threads.pop(thread_id))
        remaining = [c for c in history if c.checkpoint_id != checkpoint_id]
        self._threads[thread_id] = remaining
        return len(history) - len(remaining)

    async def cleanup(self, max_age: float, exclude_threads: Optional[List[str]] = None, dry_run: bool = False) -> int:
        cutoff = _cutoff(max_age)
        excluded = set(exclude_threads or ())
        removed = 0
        for thread_id in [t for t in self._threads if t not in excluded]:
            history = self._threads[thread_id]
            remaining = [c for c in history if c.created_at >= cutoff]
            removed += len(history) - len(remaining)
            if dry_run:
                continue
            if remaining:
                self._threads[thread_id] = remaining
            else:
                del self._threads[thread_id]
        return removed

    async def health_check(self) -> bool:
        return True

    async def close(self) -> None:
        self._threads.clear()


class SqliteCheckpointSaver(CheckpointSaver):
    """File-backed saver on a single SQLite database in WAL mode."""
    saver_type = 'sqlite'

    def __init__(self, db_path: str, max_checkpoints: Optional[int] = None):
        """
        Open (or create) the checkpoint database.

        Args:
            db_path: Database file path, or ':memory:'
            max_checkpoints: Per-thread retention limit
        """
        super().__init__(max_checkpoints)
        self.db_path = db_path
        if db_path != ':memory:':
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

        self._lock = threading.Lock()
        self._conn = sqlite3.connect(db_path, check_same_thread=False, timeout=10.0)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute('PRAGMA journal_mode=WAL')
        self._conn.execute('PRAGMA synchronous=NORMAL')
        self._init_tables()
        logger.info(f'Opened SQLite checkpoint store at {db_path}')

    def _init_tables(self) -> None:
        with self._lock:
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS checkpoints (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    thread_id TEXT NOT NULL,
                    checkpoint_id TEXT NOT NULL,
                    parent_id TEXT,
                    state TEXT NOT NULL,
                    metadata TEXT NOT NULL,
                    created_at INTEGER NOT NULL,
                    UNIQUE (thread_id, checkpoint_id)
                )
            """)
            self._conn.execute('CREATE INDEX IF NOT EXISTS idx_checkpoints_thread ON checkpoints(thread_id, seq)')
            self._conn.commit()

    @staticmethod
    def _row_to_checkpoint(row: sqlite3.Row) -> Checkpoint:
        return Checkpoint(thread_id=row['thread_id'],
                          checkpoint_id=row['checkpoint_id'],
                          state=json_utils.loads(row['state']),
                          metadata=json_utils.loads(row['metadata']),
                          created_at=from_millis(row['created_at']),
                          parent_id=row['parent_id'])

    def _save(self, thread_id: str, state: Dict[str, Any], metadata: Optional[Dict[str, Any]]) -> str:
        checkpoint_id = generate_id()
        try:
            with self._lock:
                parent = self._conn.execute('SELECT checkpoint_id FROM checkpoints WHERE thread_id = ? ORDER BY seq DESC LIMIT 1',
                                            (thread_id, )).fetchone()
                self._conn.execute(
                    'INSERT INTO checkpoints (thread_id, checkpoint_id, parent_id, state, metadata, created_at) '
                    'VALUES (?, ?, ?, ?, ?, ?)', (thread_id, checkpoint_id, parent['checkpoint_id'] if parent else None,
                                                  json_utils.dumps(state), json_utils.dumps(metadata or {}), to_millis(utc_now())))
                if self.max_checkpoints:
                    self._conn.execute(
                        'DELETE FROM checkpoints WHERE thread_id = ? AND seq NOT IN '
                        '(SELECT seq FROM checkpoints WHERE thread_id = ? ORDER BY seq DESC LIMIT ?)',
                        (thread_id, thread_id, self.max_checkpoints))
                self._conn.commit()
        except sqlite3.Error as e:
            logger.error(f'Error saving checkpoint for thread {thread_id}: {e}')
            raise CheckpointError(f'Failed to save checkpoint: {e}', operation='save_checkpoint',
                                  context={'thread_id': thread_id}, cause=e) from e
        return checkpoint_id

    async def save(self, thread_id: str, state: Dict[str, Any], metadata: Optional[Dict[str, Any]] = None) -> str:
        _require_thread(thread_id, 'save_checkpoint')
        return await asyncio.to_thread(self._save, thread_id, state, metadata)

    def _select(self, sql: str, params: tuple) -> List[Checkpoint]:
        try:
            with self._lock:
                rows = self._conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise CheckpointError(f'Failed to read checkpoints: {e}', operation='load_checkpoint', cause=e) from e
        return [self._row_to_checkpoint(row) for row in rows]

    async def load(self, thread_id: str, checkpoint_id: Optional[str] = None) -> Optional[Checkpoint]:
        if checkpoint_id is None:
            rows = await asyncio.to_thread(self._select, 'SELECT * FROM checkpoints WHERE thread_id = ? ORDER BY seq DESC LIMIT 1',
                                           (thread_id, ))
        else:
            rows = await asyncio.to_thread(self._select, 'SELECT * FROM checkpoints WHERE thread_id = ? AND checkpoint_id = ?',
                                           (thread_id, checkpoint_id))
        return rows[0] if rows else None

    async def list(self, thread_id: str, limit: Optional[int] = None) -> List[Checkpoint]:
        return await asyncio.to_thread(self._select, 'SELECT * FROM checkpoints WHERE thread_id = ? ORDER BY seq DESC LIMIT ?',
                                       (thread_id, limit if limit is not None else -1))

    def _delete(self, thread_id: str, checkpoint_id: Optional[str]) -> int:
        try:
            with self._lock:
                if checkpoint_id is None:
                    cursor = self._conn.execute('DELETE FROM checkpoints WHERE thread_id = ?', (thread_id, ))
                else:
                    cursor = self._conn.execute('DELETE FROM checkpoints WHERE thread_id = ? AND checkpoint_id = ?',
                                                (thread_id, checkpoint_id))
                self._conn.commit()
                return cursor.rowcount
        except sqlite3.Error as e:
            raise CheckpointError(f'Failed to delete checkpoints: {e}', operation='delete_checkpoint',
                                  context={'thread_id': thread_id}, cause=e) from e

    async def delete(self, thread_id: str, checkpoint_id: Optional[str] = None) -> int:
        return await asyncio.to_thread(self._delete, thread_id, checkpoint_id)

    def _cleanup(self, cutoff_ms: int, excluded: List[str], dry_run: bool) -> int:
        where = 'created_at < ?'
        params: List[Any] = [cutoff_ms]
        if excluded:
            where += f" AND thread_id NOT IN ({', '.join('?' * len(excluded))})"
            params.extend(excluded)
        try:
            with self._lock:
                if dry_run:
                    return self._conn.execute(f'SELECT COUNT(*) FROM checkpoints WHERE {where}', params).fetchone()[0]
                cursor = self._conn.execute(f'DELETE FROM checkpoints WHERE {where}', params)
                self._conn.commit()
                return cursor.rowcount
        except sqlite3.Error as e:
            raise CheckpointError(f'Failed to clean up checkpoints: {e}', operation='cleanup_checkpoints', cause=e) from e

    async def cleanup(self, max_age: float, exclude_threads: Optional[List[str]] = None, dry_run: bool = False) -> int:
        cutoff_ms = to_millis(_cutoff(max_age))
        return await asyncio.to_thread(self._cleanup, cutoff_ms, list(exclude_threads or []), dry_run)

    def _ping(self) -> bool:
        try:
            with self._lock:
                self._conn.execute('SELECT 1').fetchone()
        except sqlite3.Error as e:
            logger.warning(f'SQLite checkpoint store at {self.db_path} is unreachable: {e}')
            return False
        return True

    async def health_check(self) -> bool:
        return await asyncio.to_thread(self._ping)

    async def close(self) -> None:
        with self._lock:
            self._conn.close()


class DynamoDBCheckpointSaver(CheckpointSaver):
    """Networked saver on a DynamoDB table keyed by ``thread_id`` (hash) and ``checkpoint_id`` (range).

    Checkpoint ids start with the creation time in milliseconds, so range-key order is
    creation order.
    """
    saver_type = 'dynamodb'

    def __init__(self, table_name: str, region: str = 'us-east-1', table=None, max_checkpoints: Optional[int] = None):
        """
        Initialize the DynamoDB saver.

        Args:
            table_name: Existing table name
            region: AWS region
            table: Pre-built boto3 Table resource
            max_checkpoints: Per-thread retention limit
        """
        super().__init__(max_checkpoints)
        self.table_name = table_name
        self.table = table or boto3.resource('dynamodb', region_name=region).Table(table_name)
        logger.info(f'Initialized DynamoDB checkpoint saver on table {table_name}')

    @staticmethod
    def _item_to_checkpoint(item: Dict[str, Any]) -> Checkpoint:
        return Checkpoint(thread_id=item['thread_id'],
                          checkpoint_id=item['checkpoint_id'],
                          state=json_utils.loads(item['state']),
                          metadata=json_utils.loads(item.get('metadata') or '{}'),
                          created_at=from_millis(int(item['created_at'])),
                          parent_id=item.get('parent_id'))

    def _query(self, thread_id: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Items of a thread, newest first, following pagination."""
        kwargs = {'KeyConditionExpression': Key('thread_id').eq(thread_id), 'ScanIndexForward': False}
        items: List[Dict[str, Any]] = []
        while True:
            if limit is not None:
                kwargs['Limit'] = limit - len(items)
            response = self.table.query(**kwargs)
            items.extend(response.get('Items', []))
            last_key = response.get('LastEvaluatedKey')
            if not last_key or (limit is not None and len(items) >= limit):
                return items
            kwargs['ExclusiveStartKey'] = last_key

    def _save(self, thread_id: str, state: Dict[str, Any], metadata: Optional[Dict[str, Any]]) -> str:
        checkpoint_id = generate_id()
        try:
            latest = self._query(thread_id, limit=1)
            item = {
                'thread_id': thread_id,
                'checkpoint_id': checkpoint_id,
                'state': json_utils.dumps(state),
                'metadata': json_utils.dumps(metadata or {}),
                'created_at': to_millis(utc_now()),
            }
            if latest:
                item['parent_id'] = latest[0]['checkpoint_id']
            self.table.put_item(Item=item)

            if self.max_checkpoints:
                stale = self._query(thread_id)[self.max_checkpoints:]
                with self.table.batch_writer() as batch:
                    for old in stale:
                        batch.delete_item(Key={'thread_id': thread_id, 'checkpoint_id': old['checkpoint_id']})
        except (ClientError, BotoCoreError) as e:
            logger.error(f'Error saving checkpoint for thread {thread_id}: {e}')
            raise CheckpointError(f'Failed to save checkpoint: {e}', operation='save_checkpoint',
                                  context={'thread_id': thread_id}, cause=e) from e
        return checkpoint_id

    async def save(self, thread_id: str, state: Dict[str, Any], metadata: Optional[Dict[str, Any]] = None) -> str:
        _require_thread(thread_id, 'save_checkpoint')
        return await asyncio.to_thread(self._save, thread_id, state, metadata)

    def _load(self, thread_id: str, checkpoint_id: Optional[str]) -> Optional[Checkpoint]:
        try:
            if checkpoint_id is None:
                items = self._query(thread_id, limit=1)
                return self._item_to_checkpoint(items[0]) if items else None
            item = self.table.get_item(Key={'thread_id': thread_id, 'checkpoint_id': checkpoint_id}).get('Item')
            return self._item_to_checkpoint(item) if item else None
        except (ClientError, BotoCoreError) as e:
            raise CheckpointError(f'Failed to load checkpoint: {e}', operation='load_checkpoint',
                                  context={'thread_id': thread_id}, cause=e) from e

    async def load(self, thread_id: str, checkpoint_id: Optional[str] = None) -> Optional[Checkpoint]:
        return await asyncio.to_thread(self._load, thread_id, checkpoint_id)

    async def list(self, thread_id: str, limit: Optional[int] = None) -> List[Checkpoint]:
        try:
            items = await asyncio.to_thread(self._query, thread_id, limit)
        except (ClientError, BotoCoreError) as e:
            raise CheckpointError(f'Failed to list checkpoints: {e}', operation='list_checkpoints',
                                  context={'thread_id': thread_id}, cause=e) from e
        return [self._item_to_checkpoint(item) for item in items]

    def _delete(self, thread_id: str, checkpoint_id: Optional[str]) -> int:
        try:
            if checkpoint_id is not None:
                response = self.table.delete_item(Key={'thread_id': thread_id, 'checkpoint_id': checkpoint_id},
                                                  ReturnValues='ALL_OLD')
                return 1 if response.get('Attributes') else 0
            items = self._query(thread_id)
            with self.table.batch_writer() as batch:
                for item in items:
                    batch.delete_item(Key={'thread_id': thread_id, 'checkpoint_id': item['checkpoint_id']})
            return len(items)
        except (ClientError, BotoCoreError) as e:
            raise CheckpointError(f'Failed to delete checkpoints: {e}', operation='delete_checkpoint',
                                  context={'thread_id': thread_id}, cause=e) from e

    async def delete(self, thread_id: str, checkpoint_id: Optional[str] = None) -> int:
        return await asyncio.to_thread(self._delete, thread_id, checkpoint_id)

    def _scan_older_than(self, cutoff_ms: int) -> List[Dict[str, Any]]:
        """Keys of every checkpoint created before the cutoff, following pagination."""
        kwargs = {'FilterExpression': Attr('created_at').lt(cutoff_ms), 'ProjectionExpression': 'thread_id, checkpoint_id'}
        items: List[Dict[str, Any]] = []
        while True:
            response = self.table.scan(**kwargs)
            items.extend(response.get('Items', []))
            last_key = response.get('LastEvaluatedKey')
            if not last_key:
                return items
            kwargs['ExclusiveStartKey'] = last_key

    def _cleanup(self, cutoff_ms: int, excluded: List[str], dry_run: bool) -> int:
        try:
            stale = [item for item in self._scan_older_than(cutoff_ms) if item['thread_id'] not in excluded]
            if stale and not dry_run:
                with self.table.batch_writer() as batch:
                    for item in stale:
                        batch.delete_item(Key={'thread_id': item['thread_id'], 'checkpoint_id': item['checkpoint_id']})
        except (ClientError, BotoCoreError) as e:
            raise CheckpointError(f'Failed to clean up checkpoints: {e}', operation='cleanup_checkpoints',
                                  context={'table': self.table_name}, cause=e) from e
        return len(stale)

    async def cleanup(self, max_age: float, exclude_threads: Optional[List[str]] = None, dry_run: bool = False) -> int:
        cutoff_ms = to_millis(_cutoff(max_age))
        return await asyncio.to_thread(self._cleanup, cutoff_ms, list(exclude_threads or []), dry_run)

    def _describe(self) -> bool:
        try:
            status = self.table.meta.client.describe_table(TableName=self.table_name)['Table']['TableStatus']
        except (ClientError, BotoCoreError) as e:
            logger.warning(f'DynamoDB checkpoint table {self.table_name} is unreachable: {e}')
            return False
        return status in ('ACTIVE', 'UPDATING')

    async def health_check(self) -> bool:
        return await asyncio.to_thread(self._describe)


def create_saver(config: CheckpointConfig, saver_type: str) -> CheckpointSaver:
    """
    Build a saver of the given type from configuration.

    Args:
        config: CheckpointConfig
        saver_type: 'memory', 'sqlite' or 'dynamodb'

    Returns:
        CheckpointSaver instance

    Raises:
        InvalidInputError: If the type is unknown
    """
    if saver_type == 'memory':
        return MemoryCheckpointSaver(max_checkpoints=config.max_checkpoints)
    if saver_type == 'sqlite':
        return SqliteCheckpointSaver(config.sqlite_path, max_checkpoints=config.max_checkpoints)
    if saver_type == 'dynamodb':
        return DynamoDBCheckpointSaver(config.dynamodb_table, region=config.dynamodb_region,
                                       max_checkpoints=config.max_checkpoints)
    raise InvalidInputError(f'Unknown checkpoint saver type: {saver_type}', operation='create_saver')
