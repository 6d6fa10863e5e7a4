"""
Vector store adapter contract.

Distance convention: every implementation reports cosine distance (``1 - cosine
similarity``, range [0, 2]) and returns query results ordered by ascending distance,
closest first.

Filter language shared by all implementations, conditions ANDed:

- ``{'key': value}``: equality; a list-valued field matches if it contains ``value``
- ``{'key': [v1, v2]}``: membership
- ``{'key': {'gte': a, 'lt': b}}``: range, operators ``gt``, ``gte``, ``lt``, ``lte``
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

RANGE_OPERATORS = ('gt', 'gte', 'lt', 'lte')


@dataclass
class VectorRecord:
    """A stored document as returned by ``query`` or ``get``."""
    id: str
    content: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    distance: Optional[float] = None
    embedding: Optional[List[float]] = None


def _matches_value(actual: Any, expected: Any) -> bool:
    if isinstance(expected, dict):
        if actual is None:
            return False
        for operator, bound in expected.items():
            if operator not in RANGE_OPERATORS:
                raise ValueError(f'Unsupported range operator: {operator}')
            if operator == 'gt' and not actual > bound:
                return False
            if operator == 'gte' and not actual >= bound:
                return False
            if operator == 'lt' and not actual < bound:
                return False
            if operator == 'lte' and not actual <= bound:
                return False
        return True
    if isinstance(expected, (list, tuple, set)):
        if isinstance(actual, list):
            return any(value in expected for value in actual)
        return actual in expected
    if isinstance(actual, list):
        return expected in actual
    return actual == expected


def matches_filter(metadata: Dict[str, Any], filter: Optional[Dict[str, Any]]) -> bool:
    """Evaluate a metadata filter against one record's metadata."""
    if not filter:
        return True
    return all(_matches_value(metadata.get(key), expected) for key, expected in filter.items())


class VectorStoreAdapter(ABC):
    """Contract over a vector database with named collections.

    Reads against an unknown collection return empty results; ``upsert`` creates the
    collection on first write. Backend failures raise ``VectorStoreError``.
    """

    @abstractmethod
    async def upsert(self, collection: str, id: str, content: str, embedding: List[float], metadata: Dict[str, Any]) -> None:
        """Insert or replace a document.

        Raises:
            InvalidInputError: If the embedding dimension differs from the collection's
            VectorStoreError: If the backend call fails
        """

    @abstractmethod
    async def query(self,
                    collection: str,
                    query_embedding: Optional[List[float]] = None,
                    query_text: Optional[str] = None,
                    k: int = 10,
                    filter: Optional[Dict[str, Any]] = None) -> List[VectorRecord]:
        """Return at most ``k`` records ordered by ascending distance."""

    @abstractmethod
    async def get(self,
                  collection: str,
                  ids: Optional[List[str]] = None,
                  filter: Optional[Dict[str, Any]] = None,
                  limit: Optional[int] = None,
                  include_embeddings: bool = False) -> List[VectorRecord]:
        """Fetch records by id and/or filter without similarity ranking."""

    @abstractmethod
    async def update_metadata(self, collection: str, id: str, metadata: Dict[str, Any]) -> bool:
        """Merge ``metadata`` into a stored record. Returns False if the record is missing."""

    @abstractmethod
    async def delete(self, collection: str, ids: List[str]) -> int:
        """Delete records by id and return how many existed."""

    @abstractmethod
    async def count(self, collection: str) -> int:
        """Number of records in the collection, 0 if it does not exist."""

    async def health_check(self) -> bool:
        return True

    async def close(self) -> None:
        pass
