"""
Core data models for thread-scoped agent memory.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from ..utils.timestamp_utils import from_millis, to_millis, utc_now


class MemoryType(str, Enum):
    """Kind of content a memory entry holds."""
    CONVERSATION = 'conversation'
    FACT = 'fact'
    PREFERENCE = 'preference'
    SUMMARY = 'summary'
    CONTEXT = 'context'
    CUSTOM = 'custom'

    @property
    def label(self) -> str:
        """Graph node label for this type, e.g. ``Conversation``."""
        return self.value.capitalize()


# Keys MemoryStore owns inside backend metadata
RESERVED_METADATA_KEYS = ('thread_id', 'user_id', 'type', 'importance', 'tags', 'created_at', 'last_accessed_at',
                          'access_count', 'sequence', 'extra')


@dataclass
class MemoryEntry:
    """A single stored unit of agent or user context within a thread.

    Each entry belongs to exactly one thread and optionally to a user. ``distance`` is
    only populated on search results and is never persisted.
    """
    id: str
    thread_id: str
    content: str
    type: MemoryType = MemoryType.CONVERSATION
    user_id: Optional[str] = None
    importance: float = 0.5
    tags: List[str] = field(default_factory=list)
    embedding: Optional[List[float]] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utc_now)
    last_accessed_at: Optional[datetime] = None
    access_count: int = 0
    sequence: int = 0
    distance: Optional[float] = None

    def __post_init__(self):
        if not isinstance(self.type, MemoryType):
            self.type = MemoryType(self.type)
        if self.last_accessed_at is None:
            self.last_accessed_at = self.created_at
        # De-duplicate tags, keep first-seen order
        self.tags = list(dict.fromkeys(self.tags))

    @property
    def creation_key(self) -> Tuple[datetime, int, str]:
        """Creation order; ``sequence`` separates entries stored within the same millisecond."""
        return (self.created_at, self.sequence, self.id)

    def to_metadata(self) -> Dict[str, Any]:
        """Flatten the entry into the metadata map stored next to the vector."""
        metadata = {
            'thread_id': self.thread_id,
            'type': self.type.value,
            'importance': self.importance,
            'tags': list(self.tags),
            'created_at': to_millis(self.created_at),
            'last_accessed_at': to_millis(self.last_accessed_at),
            'access_count': self.access_count,
            'sequence': self.sequence,
            'extra': dict(self.metadata),
        }
        if self.user_id is not None:
            metadata['user_id'] = self.user_id
        return metadata

    @classmethod
    def from_record(cls,
                    entry_id: str,
                    content: str,
                    metadata: Dict[str, Any],
                    embedding: Optional[List[float]] = None,
                    distance: Optional[float] = None) -> 'MemoryEntry':
        """Rebuild an entry from a vector backend record."""
        created_at = from_millis(metadata.get('created_at'))
        last_accessed = metadata.get('last_accessed_at')
        return cls(id=entry_id,
                   thread_id=metadata.get('thread_id', ''),
                   content=content,
                   type=MemoryType(metadata.get('type', MemoryType.CONVERSATION.value)),
                   user_id=metadata.get('user_id'),
                   importance=float(metadata.get('importance', 0.5)),
                   tags=list(metadata.get('tags') or []),
                   embedding=embedding,
                   metadata=dict(metadata.get('extra') or {}),
                   created_at=created_at,
                   last_accessed_at=from_millis(last_accessed) if last_accessed is not None else created_at,
                   access_count=int(metadata.get('access_count', 0)),
                   sequence=int(metadata.get('sequence', 0)),
                   distance=distance)

    def size_estimate(self) -> int:
        """Rough storage footprint in bytes: content, embedding floats and metadata."""
        size = len(self.content.encode('utf-8'))
        if self.embedding:
            size += 4 * len(self.embedding)
        size += sum(len(tag) for tag in self.tags)
        size += len(str(self.metadata)) if self.metadata else 0
        # Fixed-width fields: ids, timestamps, counters
        return size + len(self.id) + len(self.thread_id) + 64


@dataclass
class SearchOptions:
    """Parameters for a similarity search over stored memories."""
    query: str
    thread_id: Optional[str] = None
    user_id: Optional[str] = None
    type: Optional[MemoryType] = None
    tags: List[str] = field(default_factory=list)
    limit: int = 10
    min_importance: Optional[float] = None


@dataclass
class ContextResult:
    """Memories relevant to a query plus an aggregate confidence in [0, 1]."""
    relevant_memories: List[MemoryEntry]
    confidence: float


@dataclass
class DeleteResult:
    """Outcome of a cross-backend delete.

    The vector side is authoritative. When the graph mirror delete fails after the vector
    delete succeeded, ``partial`` is set and ``graph_error`` holds the failure message.
    """
    thread_id: str
    deleted_ids: List[str] = field(default_factory=list)
    vector_deleted: int = 0
    graph_deleted: int = 0
    partial: bool = False
    graph_error: Optional[str] = None

    @property
    def success(self) -> bool:
        return not self.partial


@dataclass
class MemoryStats:
    """Aggregate counts over the memory collection."""
    total_entries: int
    per_thread: Dict[str, int]
    per_type: Dict[str, int]
    storage_bytes_estimate: int
