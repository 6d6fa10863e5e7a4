"""
Memory store: thread-scoped agent memory over a vector store with an optional graph mirror.
"""

import asyncio
import time
from collections import Counter
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from ..adapters.graph import GraphStoreAdapter
from ..adapters.vector import VectorRecord, VectorStoreAdapter
from ..exceptions import (GraphOperationError, InvalidInputError, MemoryStorageError, StorageError, ThreadMemError,
                          ValidationError, VectorStoreError)
from ..models.core import ContextResult, DeleteResult, MemoryEntry, MemoryStats, MemoryType, SearchOptions
from ..models.graph import Direction, FindCriteria, GraphOperation, OperationType, TraversalSpec
from ..utils.config import MemoryConfig
from ..utils.id_utils import generate_memory_id
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import to_millis, utc_now
from .retention import RetentionPolicyEngine
from .summarization import SummarizationEngine, Summarizer

logger = get_logger(__name__)

MEMORY_LABEL = 'Memory'
SIMILARITY_RELATIONSHIP = 'SEMANTICALLY_SIMILAR'

# Post-filtered searches fetch this many times the requested limit
OVERFETCH_FACTOR = 3

EmbeddingFunction = Callable[[str], List[float]]


def _require_text(value: Any, field: str, operation: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidInputError(f'{field} must be a non-empty string', operation=operation, context={field: value})
    return value


class MemoryStore:
    """Stores, retrieves and searches memory entries per thread.

    The vector store is the source of truth. When ``graph_mirror`` is enabled each entry is
    also written as a ``Memory`` node in the graph store, always after the vector write.
    Every backend call is bounded by ``operation_timeout``; a timeout counts as a failure of
    that backend.
    """

    def __init__(self,
                 vector_store: VectorStoreAdapter,
                 embedding_function: EmbeddingFunction,
                 graph_store: Optional[GraphStoreAdapter] = None,
                 summarizer: Optional[Summarizer] = None,
                 config: Optional[MemoryConfig] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        """
        Initialize the memory store.

        Args:
            vector_store: Vector backend holding the entries
            embedding_function: Blocking ``embed(text) -> vector``, run in a worker thread
            graph_store: Optional graph backend for mirror nodes and relationships
            summarizer: Optional LLM summarizer; without one summaries are extractive
            config: MemoryConfig, defaults apply if None
            clock: Returns the current aware datetime
        """
        self.vector_store = vector_store
        self.graph_store = graph_store
        self.embedding_function = embedding_function
        self.config = config or MemoryConfig()
        self.collection = self.config.collection
        self.retention = RetentionPolicyEngine(self.config.retention)
        self.summarization = SummarizationEngine(self.config.summarization, summarizer)
        self._clock = clock or utc_now
        self._pending_threads: Set[str] = set()
        self._active_threads: Set[str] = set()
        self._cleanup_task: Optional[asyncio.Task] = None
        self._last_sequence = 0

        if self.config.retention_mode not in ('sync', 'async'):
            raise InvalidInputError(f'Invalid retention mode: {self.config.retention_mode}', operation='init')

        logger.info(f'Initialized MemoryStore on collection {self.collection} '
                    f'(graph mirror: {self.graph_store is not None and self.config.graph_mirror})')

    def _next_sequence(self) -> int:
        # Nanosecond wall clock, strictly increasing within this store
        self._last_sequence = max(time.time_ns(), self._last_sequence + 1)
        return self._last_sequence

    @property
    def _mirror_enabled(self) -> bool:
        return self.graph_store is not None and self.config.graph_mirror

    async def _vector(self, operation: str, call: Awaitable[Any]) -> Any:
        try:
            return await asyncio.wait_for(call, timeout=self.config.operation_timeout)
        except asyncio.TimeoutError as e:
            raise VectorStoreError(f'Vector store timed out after {self.config.operation_timeout}s',
                                   operation=operation,
                                   context={'collection': self.collection},
                                   cause=e) from e

    async def _graph(self, operation: str, call: Awaitable[Any]) -> Any:
        try:
            return await asyncio.wait_for(call, timeout=self.config.operation_timeout)
        except asyncio.TimeoutError as e:
            raise GraphOperationError(f'Graph store timed out after {self.config.operation_timeout}s',
                                      operation=operation,
                                      cause=e) from e

    async def _embed(self, text: str, operation: str) -> List[float]:
        try:
            return await asyncio.wait_for(asyncio.to_thread(self.embedding_function, text),
                                          timeout=self.config.operation_timeout)
        except asyncio.TimeoutError as e:
            raise MemoryStorageError('Embedding timed out', operation=operation, cause=e) from e
        except Exception as e:
            raise MemoryStorageError(f'Embedding failed: {e}', operation=operation, cause=e) from e

    async def _list_entries(self, operation: str, thread_id: Optional[str] = None,
                            include_embeddings: bool = False) -> List[MemoryEntry]:
        records: List[VectorRecord] = await self._vector(
            operation,
            self.vector_store.get(self.collection,
                                  filter={'thread_id': thread_id} if thread_id else None,
                                  include_embeddings=include_embeddings))
        return [MemoryEntry.from_record(r.id, r.content, r.metadata, embedding=r.embedding) for r in records]

    async def _touch(self, entries: List[MemoryEntry]) -> None:
        """Record an access on each entry, locally and in the vector store."""
        if not entries:
            return
        now = self._clock()
        for entry in entries:
            entry.last_accessed_at = now
            entry.access_count += 1

        results = await asyncio.gather(*[
            self._vector('touch',
                         self.vector_store.update_metadata(self.collection, entry.id, {
                             'last_accessed_at': to_millis(now),
                             'access_count': entry.access_count
                         })) for entry in entries
        ],
                                       return_exceptions=True)
        failures = [r for r in results if isinstance(r, Exception)]
        if failures:
            logger.warning(f'Failed to record access for {len(failures)} of {len(entries)} entries: {failures[0]}')

    async def _mirror(self, entry: MemoryEntry) -> None:
        properties = {
            'thread_id': entry.thread_id,
            'type': entry.type.value,
            'importance': entry.importance,
            'created_at': to_millis(entry.created_at),
            'tags': entry.tags,
        }
        if entry.user_id is not None:
            properties['user_id'] = entry.user_id
        await self._graph('mirror', self.graph_store.create_node([MEMORY_LABEL, entry.type.label], properties, entry.id))

    async def store(self,
                    thread_id: str,
                    content: str,
                    metadata: Optional[Dict[str, Any]] = None,
                    user_id: Optional[str] = None) -> MemoryEntry:
        """
        Store a new memory entry.

        Args:
            thread_id: Thread the entry belongs to
            content: Text content
            metadata: Optional ``type``, ``importance`` and ``tags``; other keys are kept as
                free-form entry metadata
            user_id: Optional owning user

        Returns:
            The stored MemoryEntry

        Raises:
            InvalidInputError: If arguments are malformed
            MemoryStorageError: If embedding or the vector write fails
        """
        _require_text(thread_id, 'thread_id', 'store')
        _require_text(content, 'content', 'store')
        extra = dict(metadata or {})

        try:
            memory_type = MemoryType(extra.pop('type', MemoryType.CONVERSATION))
        except ValueError as e:
            raise InvalidInputError(f'Invalid memory type: {e}', operation='store', context={'thread_id': thread_id}) from e
        try:
            importance = float(extra.pop('importance', 0.5))
        except (TypeError, ValueError) as e:
            raise InvalidInputError(f'Invalid importance: {e}', operation='store', context={'thread_id': thread_id}) from e
        if not 0.0 <= importance <= 1.0:
            raise InvalidInputError('importance must be within [0, 1]', operation='store', context={'importance': importance})
        tags = extra.pop('tags', None) or []
        if isinstance(tags, str) or not all(isinstance(tag, str) for tag in tags):
            raise InvalidInputError('tags must be a list of strings', operation='store', context={'tags': tags})

        embedding = await self._embed(content, 'store')
        entry = MemoryEntry(id=generate_memory_id(),
                            thread_id=thread_id,
                            content=content,
                            type=memory_type,
                            user_id=user_id,
                            importance=importance,
                            tags=list(tags),
                            embedding=embedding,
                            metadata=extra,
                            created_at=self._clock(),
                            sequence=self._next_sequence())

        try:
            await self._vector('store', self.vector_store.upsert(self.collection, entry.id, content, embedding,
                                                                 entry.to_metadata()))
        except ValidationError:
            raise
        except ThreadMemError as e:
            logger.error(f'Failed to store memory for thread {thread_id}: {e}')
            raise MemoryStorageError(f'Failed to store memory: {e}',
                                     operation='store',
                                     context={
                                         'thread_id': thread_id,
                                         'memory_id': entry.id
                                     },
                                     cause=e) from e

        if self._mirror_enabled:
            try:
                await self._mirror(entry)
            except ThreadMemError as e:
                logger.warning(f'Graph mirror failed for memory {entry.id}, vector entry kept: {e}')

        logger.debug(f'Stored memory {entry.id} in thread {thread_id}')
        await self._after_store(thread_id)
        return entry

    async def _after_store(self, thread_id: str) -> None:
        if self.config.retention_mode == 'sync':
            try:
                await self._apply_retention_after_store(thread_id)
            except ThreadMemError as e:
                logger.error(f'Retention failed for thread {thread_id}: {e}')
        else:
            self._pending_threads.add(thread_id)

        if self.config.auto_summarize:
            try:
                await self.summarize_thread(thread_id)
            except ThreadMemError as e:
                logger.error(f'Auto-summarization failed for thread {thread_id}: {e}')

    async def _apply_retention_after_store(self, thread_id: str) -> None:
        await self.apply_retention(thread_id)
        cap = self.config.retention.global_cap
        if cap and await self._vector('count', self.vector_store.count(self.collection)) > cap:
            await self.apply_retention()

    async def retrieve(self, thread_id: str, limit: Optional[int] = None) -> List[MemoryEntry]:
        """
        Get a thread's entries, most recent first, recording an access on each.

        Args:
            thread_id: Thread to read
            limit: Maximum number of entries

        Returns:
            List of MemoryEntry; empty if the vector store is down and graceful
            degradation is enabled
        """
        _require_text(thread_id, 'thread_id', 'retrieve')
        if limit is not None and limit <= 0:
            raise InvalidInputError('limit must be positive', operation='retrieve', context={'limit': limit})

        try:
            entries = await self._list_entries('retrieve', thread_id)
        except StorageError as e:
            if self.config.graceful_degradation:
                logger.warning(f'Vector store unavailable, returning no memories for thread {thread_id}: {e}')
                return []
            raise MemoryStorageError(f'Failed to retrieve memories: {e}',
                                     operation='retrieve',
                                     context={'thread_id': thread_id},
                                     cause=e) from e

        entries.sort(key=lambda e: e.creation_key, reverse=True)
        if limit is not None:
            entries = entries[:limit]
        await self._touch(entries)
        return entries

    async def search(self, options: SearchOptions) -> List[MemoryEntry]:
        """
        Similarity search, closest first.

        Thread, user and type are filtered in the vector store; tags (any-of) and
        ``min_importance`` are applied afterwards.

        Args:
            options: SearchOptions

        Returns:
            List of MemoryEntry with ``distance`` set
        """
        _require_text(options.query, 'query', 'search')
        if options.limit <= 0:
            raise InvalidInputError('limit must be positive', operation='search', context={'limit': options.limit})

        vector_filter: Dict[str, Any] = {}
        if options.thread_id:
            vector_filter['thread_id'] = options.thread_id
        if options.user_id:
            vector_filter['user_id'] = options.user_id
        if options.type is not None:
            try:
                vector_filter['type'] = MemoryType(options.type).value
            except ValueError as e:
                raise InvalidInputError(f'Invalid memory type: {e}', operation='search') from e

        post_filtered = bool(options.tags) or options.min_importance is not None
        k = options.limit * OVERFETCH_FACTOR if post_filtered else options.limit

        try:
            query_embedding = await self._embed(options.query, 'search')
            records = await self._vector(
                'search',
                self.vector_store.query(self.collection, query_embedding=query_embedding, k=k, filter=vector_filter or None))
        except StorageError as e:
            if self.config.graceful_degradation:
                logger.warning(f'Search degraded to empty result: {e}')
                return []
            raise MemoryStorageError(f'Search failed: {e}', operation='search', context={'query': options.query}, cause=e) from e

        entries = [MemoryEntry.from_record(r.id, r.content, r.metadata, distance=r.distance) for r in records]
        if options.tags:
            wanted = set(options.tags)
            entries = [e for e in entries if wanted.intersection(e.tags)]
        if options.min_importance is not None:
            entries = [e for e in entries if e.importance >= options.min_importance]

        entries = entries[:options.limit]
        await self._touch(entries)
        logger.debug(f'Search returned {len(entries)} memories')
        return entries

    async def search_for_context(self,
                                 query: str,
                                 thread_id: str,
                                 user_id: Optional[str] = None,
                                 limit: int = 10) -> ContextResult:
        """
        Search a thread and score how well the results cover the query.

        Confidence is ``1 / (1 + mean distance)`` over the returned entries, 0.0 when
        nothing is found.
        """
        memories = await self.search(SearchOptions(query=query, thread_id=thread_id, user_id=user_id, limit=limit))
        if not memories:
            return ContextResult(relevant_memories=[], confidence=0.0)

        distances = [m.distance if m.distance is not None else 1.0 for m in memories]
        mean_distance = sum(distances) / len(distances)
        return ContextResult(relevant_memories=memories, confidence=1.0 / (1.0 + max(mean_distance, 0.0)))

    async def _remove(self, ids: List[str], thread_id: str, operation: str) -> DeleteResult:
        result = DeleteResult(thread_id=thread_id, deleted_ids=list(ids))
        if not ids:
            return result

        try:
            result.vector_deleted = await self._vector(operation, self.vector_store.delete(self.collection, ids))
        except ThreadMemError as e:
            logger.error(f'Vector delete failed for thread {thread_id}: {e}')
            raise MemoryStorageError(f'Failed to delete memories: {e}',
                                     operation=operation,
                                     context={
                                         'thread_id': thread_id,
                                         'memory_ids': list(ids)
                                     },
                                     cause=e) from e

        if self._mirror_enabled:
            try:
                result.graph_deleted = await self._graph(operation,
                                                         self.graph_store.run_transaction(lambda tx: tx.delete_nodes(ids)))
            except ThreadMemError as e:
                # No shared transaction across backends: the vector delete stands
                logger.error(f'Graph mirror delete failed after vector delete for thread {thread_id}: {e}')
                result.partial = True
                result.graph_error = str(e)
        return result

    async def delete(self, thread_id: str, memory_ids: Optional[List[str]] = None) -> DeleteResult:
        """
        Delete entries of a thread, or the whole thread when ``memory_ids`` is omitted.

        Ids that do not belong to the thread are ignored. A graph mirror failure after the
        vector delete is reported as a partial failure and not rolled back.

        Args:
            thread_id: Thread to delete from
            memory_ids: Entry ids to delete

        Returns:
            DeleteResult

        Raises:
            MemoryStorageError: If listing or deleting in the vector store fails
        """
        _require_text(thread_id, 'thread_id', 'delete')
        try:
            owned = await self._list_entries('delete', thread_id)
        except ThreadMemError as e:
            raise MemoryStorageError(f'Failed to list memories for delete: {e}',
                                     operation='delete',
                                     context={'thread_id': thread_id},
                                     cause=e) from e

        owned_ids = [e.id for e in owned]
        if memory_ids is None:
            ids = owned_ids
        else:
            owned_set = set(owned_ids)
            ids = [memory_id for memory_id in dict.fromkeys(memory_ids) if memory_id in owned_set]

        result = await self._remove(ids, thread_id, 'delete')
        logger.info(f'Deleted {result.vector_deleted} memories from thread {thread_id}'
                    f'{" (graph mirror failed)" if result.partial else ""}')
        return result

    async def clear_thread(self, thread_id: str) -> DeleteResult:
        return await self.delete(thread_id)

    async def apply_retention(self, thread_id: Optional[str] = None) -> List[str]:
        """
        Run the retention policy over a thread, or over the whole collection, and delete
        the evicted entries.

        Returns:
            Evicted entry ids
        """
        entries = await self._list_entries('retention', thread_id)
        evicted = self.retention.select_evictions(entries, now=self._clock(), active_threads=set(self._active_threads))
        if not evicted:
            return []

        result = await self._remove(evicted, thread_id or '*', 'retention')
        logger.info(f'Retention evicted {len(evicted)} memories{f" from thread {thread_id}" if thread_id else ""}')
        return result.deleted_ids

    async def summarize_thread(self, thread_id: str, force: bool = False) -> Optional[MemoryEntry]:
        """
        Replace the oldest window of a thread with a summary entry.

        Args:
            thread_id: Thread to summarize
            force: Summarize even when the thread is under ``max_messages``

        Returns:
            The new summary entry, or None when nothing was summarized
        """
        _require_text(thread_id, 'thread_id', 'summarize')
        entries = await self._list_entries('summarize', thread_id)
        if not force and not self.summarization.should_summarize(entries):
            return None

        plan = self.summarization.plan(thread_id, entries)
        if plan is None:
            return None

        text = await asyncio.to_thread(self.summarization.condense, plan)
        embedding = await self._embed(text, 'summarize')
        summary = self.summarization.build_summary_entry(plan, text, generate_memory_id(), now=self._clock())
        summary.embedding = embedding
        summary.sequence = self._next_sequence()

        try:
            await self._vector('summarize', self.vector_store.upsert(self.collection, summary.id, summary.content, embedding,
                                                                     summary.to_metadata()))
        except ThreadMemError as e:
            raise MemoryStorageError(f'Failed to store summary: {e}',
                                     operation='summarize',
                                     context={'thread_id': thread_id},
                                     cause=e) from e
        if self._mirror_enabled:
            try:
                await self._mirror(summary)
            except ThreadMemError as e:
                logger.warning(f'Graph mirror failed for summary {summary.id}: {e}')

        try:
            await self._remove([entry.id for entry in plan.window], thread_id, 'summarize')
        except MemoryStorageError:
            # Sources remain in place, the summary must not
            await self._discard_summary(summary.id, thread_id)
            raise
        logger.info(f'Summarized {len(plan.window)} memories of thread {thread_id} into {summary.id}')
        return summary

    async def _discard_summary(self, summary_id: str, thread_id: str) -> None:
        try:
            await self._remove([summary_id], thread_id, 'summarize')
            logger.warning(f'Discarded summary {summary_id} of thread {thread_id} after failing to remove its sources')
        except MemoryStorageError as e:
            logger.error(f'Failed to discard summary {summary_id} of thread {thread_id}: {e}')

    async def _existing_similarity_pairs(self, node_ids: List[str]) -> Set[frozenset]:
        spec = TraversalSpec(depth=1, direction=Direction.BOTH, relationship_types=[SIMILARITY_RELATIONSHIP], limit=1000)
        pairs = set()
        for node_id in node_ids:
            traversal = await self._graph('build_relationships', self.graph_store.traverse(node_id, spec))
            for rel in traversal.relationships:
                pairs.add(frozenset((rel.from_node_id, rel.to_node_id)))
        return pairs

    async def build_semantic_relationships(self, thread_id: str) -> int:
        """
        Link similar entries of a thread with ``SEMANTICALLY_SIMILAR`` relationships.

        Each entry is compared with its ``relationship_neighbors`` nearest neighbours only.
        Pairs whose similarity (``1 - distance``) reaches ``relationship_threshold`` are
        linked once, from the older entry to the newer one.

        Returns:
            Number of relationships created
        """
        _require_text(thread_id, 'thread_id', 'build_relationships')
        if self.graph_store is None:
            logger.warning('No graph store configured, skipping relationship building')
            return 0

        try:
            entries = await self._list_entries('build_relationships', thread_id, include_embeddings=True)
        except ThreadMemError as e:
            raise MemoryStorageError(f'Failed to list memories: {e}', operation='build_relationships', cause=e) from e
        if len(entries) < 2:
            return 0
        by_id = {entry.id: entry for entry in entries}

        # Mirror nodes may be missing when mirroring was off or failed at store time
        existing_nodes = await self._graph(
            'build_relationships',
            self.graph_store.find_nodes(FindCriteria(labels=[MEMORY_LABEL], properties={'thread_id': thread_id})))
        known = {node.id for node in existing_nodes}
        missing = [entry for entry in entries if entry.id not in known]
        if missing:
            node_ops = [
                GraphOperation(type=OperationType.CREATE_NODE,
                               data={
                                   'labels': [MEMORY_LABEL, entry.type.label],
                                   'properties': {
                                       'thread_id': entry.thread_id,
                                       'type': entry.type.value,
                                       'importance': entry.importance,
                                       'created_at': to_millis(entry.created_at)
                                   },
                                   'id': entry.id
                               },
                               operation_id=entry.id) for entry in missing
            ]
            await self._graph('build_relationships', self.graph_store.batch_execute(node_ops))

        pairs: Dict[frozenset, float] = {}
        k = self.config.relationship_neighbors + 1
        for entry in entries:
            if not entry.embedding:
                continue
            neighbours = await self._vector(
                'build_relationships',
                self.vector_store.query(self.collection, query_embedding=entry.embedding, k=k, filter={'thread_id': thread_id}))
            for neighbour in neighbours:
                if neighbour.id == entry.id or neighbour.id not in by_id:
                    continue
                similarity = 1.0 - neighbour.distance
                if similarity >= self.config.relationship_threshold:
                    key = frozenset((entry.id, neighbour.id))
                    pairs[key] = max(pairs.get(key, similarity), similarity)

        existing_pairs = await self._existing_similarity_pairs(list(by_id))
        operations = []
        for key, similarity in pairs.items():
            if key in existing_pairs:
                continue
            older, newer = sorted((by_id[i] for i in key), key=lambda e: e.creation_key)
            operations.append(
                GraphOperation(type=OperationType.CREATE_RELATIONSHIP,
                               data={
                                   'from_node_id': older.id,
                                   'to_node_id': newer.id,
                                   'type': SIMILARITY_RELATIONSHIP,
                                   'properties': {
                                       'similarity': round(similarity, 4),
                                       'thread_id': thread_id
                                   }
                               },
                               operation_id=f'{older.id}:{newer.id}'))

        if not operations:
            return 0
        batch = await self._graph('build_relationships', self.graph_store.batch_execute(operations))
        if batch.error_count:
            logger.warning(f'{batch.error_count} similarity relationships failed for thread {thread_id}')
        logger.info(f'Created {batch.success_count} similarity relationships in thread {thread_id}')
        return batch.success_count

    async def get_stats(self) -> MemoryStats:
        """Counts per thread and type plus a rough storage size."""
        try:
            entries = await self._list_entries('stats', include_embeddings=True)
        except ThreadMemError as e:
            raise MemoryStorageError(f'Failed to compute stats: {e}', operation='stats', cause=e) from e

        return MemoryStats(total_entries=len(entries),
                           per_thread=dict(Counter(e.thread_id for e in entries)),
                           per_type=dict(Counter(e.type.value for e in entries)),
                           storage_bytes_estimate=sum(e.size_estimate() for e in entries))

    def mark_thread_active(self, thread_id: str) -> None:
        """Protect a thread from global-cap eviction while it is in use."""
        self._active_threads.add(thread_id)

    def mark_thread_inactive(self, thread_id: str) -> None:
        self._active_threads.discard(thread_id)

    @property
    def pending_threads(self) -> Set[str]:
        return set(self._pending_threads)

    async def run_cleanup(self) -> int:
        """
        Process threads awaiting retention, then sweep the whole collection.

        Failures are logged and do not stop the sweep.

        Returns:
            Number of evicted entries
        """
        evicted = 0
        pending = sorted(self._pending_threads)
        self._pending_threads.clear()
        for thread_id in pending:
            try:
                evicted += len(await self.apply_retention(thread_id))
            except ThreadMemError as e:
                logger.error(f'Scheduled retention failed for thread {thread_id}: {e}')
                self._pending_threads.add(thread_id)
        try:
            evicted += len(await self.apply_retention())
        except ThreadMemError as e:
            logger.error(f'Scheduled retention sweep failed: {e}')
        return evicted

    async def _cleanup_loop(self) -> None:
        interval = self.config.retention.cleanup_interval
        while True:
            await asyncio.sleep(interval)
            evicted = await self.run_cleanup()
            if evicted:
                logger.info(f'Scheduled cleanup evicted {evicted} memories')

    def start_cleanup_scheduler(self) -> asyncio.Task:
        """Start periodic retention on the running event loop."""
        if self._cleanup_task is None or self._cleanup_task.done():
            self._cleanup_task = asyncio.create_task(self._cleanup_loop())
            logger.info(f'Started memory cleanup every {self.config.retention.cleanup_interval}s')
        return self._cleanup_task

    async def stop_cleanup_scheduler(self) -> None:
        if self._cleanup_task is None:
            return
        self._cleanup_task.cancel()
        try:
            await self._cleanup_task
        except asyncio.CancelledError:
            pass
        self._cleanup_task = None
        logger.info('Stopped memory cleanup')


def build_memory_store(app_config=None) -> MemoryStore:
    """
    Wire a MemoryStore to OpenSearch, Neptune and Bedrock from application configuration.

    Args:
        app_config: AppConfig, uses the global configuration if None

    Returns:
        MemoryStore
    """
    from ..utils.bedrock_embed import BedrockEmbed
    from ..utils.bedrock_llm import BedrockLLM
    from ..utils.config import config as default_config
    from ..utils.neptune_client import NeptuneClient
    from ..utils.opensearch_client import OpenSearchClient
    from .summarization import BedrockSummarizer

    app_config = app_config or default_config
    embed = BedrockEmbed(app_config.bedrock_embed)
    vector_store = OpenSearchClient(app_config.opensearch, embedding_function=embed.embed_query)
    graph_store = NeptuneClient(app_config.neptune) if app_config.memory.graph_mirror else None
    return MemoryStore(vector_store=vector_store,
                       embedding_function=embed,
                       graph_store=graph_store,
                       summarizer=BedrockSummarizer(BedrockLLM(app_config.bedrock_llm)),
                       config=app_config.memory)
