"""
In-process vector store for embedded use and tests.
"""

import copy
import math
import re
from typing import Any, Callable, Dict, List, Optional

from ..exceptions import InvalidInputError, VectorStoreError
from ..utils.logging_config import get_logger
from .validation import validate_vector_query
from .vector import VectorRecord, VectorStoreAdapter, matches_filter

logger = get_logger(__name__)

_TOKEN = re.compile(r'\w+')


def cosine_distance(a: List[float], b: List[float]) -> float:
    """``1 - cosine similarity``; a zero vector is treated as orthogonal to everything."""
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 1.0
    return 1.0 - dot / (norm_a * norm_b)


class InMemoryVectorAdapter(VectorStoreAdapter):
    """Dictionary-backed vector store with brute-force cosine ranking.

    Set ``available = False`` to make every call fail with ``VectorStoreError``, which is
    how callers exercise their degradation paths.
    """

    def __init__(self, embedding_function: Optional[Callable[[str], List[float]]] = None):
        """
        Initialize the store.

        Args:
            embedding_function: Used to embed ``query_text``; without it text queries fall
                back to term matching
        """
        self.embedding_function = embedding_function
        self.available = True
        self._collections: Dict[str, Dict[str, VectorRecord]] = {}
        self._dimensions: Dict[str, int] = {}

    def _check_available(self, operation: str, collection: str) -> None:
        if not self.available:
            raise VectorStoreError('Vector store unavailable', operation=operation, context={'collection': collection})

    async def upsert(self, collection: str, id: str, content: str, embedding: List[float], metadata: Dict[str, Any]) -> None:
        self._check_available('upsert', collection)
        if not embedding:
            raise InvalidInputError('Embedding must be non-empty', operation='upsert', context={'id': id})

        expected = self._dimensions.get(collection)
        if expected is not None and len(embedding) != expected:
            raise InvalidInputError(f'Embedding dimension {len(embedding)} does not match collection dimension {expected}',
                                    operation='upsert',
                                    context={
                                        'collection': collection,
                                        'id': id
                                    })

        if collection not in self._collections:
            logger.info(f'Creating collection {collection} with dimension {len(embedding)}')
            self._collections[collection] = {}
            self._dimensions[collection] = len(embedding)

        self._collections[collection][id] = VectorRecord(id=id,
                                                         content=content,
                                                         metadata=copy.deepcopy(metadata),
                                                         embedding=list(embedding))

    async def query(self,
                    collection: str,
                    query_embedding: Optional[List[float]] = None,
                    query_text: Optional[str] = None,
                    k: int = 10,
                    filter: Optional[Dict[str, Any]] = None) -> List[VectorRecord]:
        validate_vector_query(query_embedding, query_text, k)
        self._check_available('query', collection)

        records = self._collections.get(collection)
        if not records:
            return []

        if query_embedding is None and self.embedding_function is not None:
            query_embedding = self.embedding_function(query_text)

        scored = []
        if query_embedding is not None:
            expected = self._dimensions[collection]
            if len(query_embedding) != expected:
                raise InvalidInputError(f'Query dimension {len(query_embedding)} does not match collection dimension {expected}',
                                        operation='query',
                                        context={'collection': collection})
            for record in records.values():
                if matches_filter(record.metadata, filter):
                    scored.append((cosine_distance(query_embedding, record.embedding), record))
        else:
            terms = set(_TOKEN.findall(query_text.lower()))
            for record in records.values():
                if not matches_filter(record.metadata, filter):
                    continue
                hits = len(terms.intersection(_TOKEN.findall(record.content.lower())))
                if hits:
                    scored.append((1.0 / (1.0 + hits), record))

        scored.sort(key=lambda item: item[0])
        return [self._copy(record, distance=distance) for distance, record in scored[:k]]

    async def get(self,
                  collection: str,
                  ids: Optional[List[str]] = None,
                  filter: Optional[Dict[str, Any]] = None,
                  limit: Optional[int] = None,
                  include_embeddings: bool = False) -> List[VectorRecord]:
        self._check_available('get', collection)
        records = self._collections.get(collection)
        if not records:
            return []

        candidates = [records[i] for i in ids if i in records] if ids is not None else list(records.values())
        matched = [self._copy(r, include_embedding=include_embeddings) for r in candidates if matches_filter(r.metadata, filter)]
        return matched[:limit] if limit is not None else matched

    async def update_metadata(self, collection: str, id: str, metadata: Dict[str, Any]) -> bool:
        self._check_available('update_metadata', collection)
        record = self._collections.get(collection, {}).get(id)
        if record is None:
            return False
        record.metadata.update(copy.deepcopy(metadata))
        return True

    async def delete(self, collection: str, ids: List[str]) -> int:
        self._check_available('delete', collection)
        records = self._collections.get(collection)
        if not records:
            return 0
        deleted = 0
        for record_id in ids:
            if records.pop(record_id, None) is not None:
                deleted += 1
        return deleted

    async def count(self, collection: str) -> int:
        self._check_available('count', collection)
        return len(self._collections.get(collection, {}))

    async def health_check(self) -> bool:
        return self.available

    @staticmethod
    def _copy(record: VectorRecord, distance: Optional[float] = None, include_embedding: bool = True) -> VectorRecord:
        return VectorRecord(id=record.id,
                            content=record.content,
                            metadata=copy.deepcopy(record.metadata),
                            distance=distance,
                            embedding=list(record.embedding) if include_embedding and record.embedding else None)
