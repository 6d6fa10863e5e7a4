"""
Graph data models shared by the graph store adapters.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from ..utils.id_utils import generate_id


class Direction(str, Enum):
    """Relationship direction followed during traversal."""
    OUT = 'OUT'
    IN = 'IN'
    BOTH = 'BOTH'

    def pattern(self, relationship: str = '') -> str:
        """Render the direction as an arrow pattern around a relationship expression."""
        if self is Direction.OUT:
            return f'-[{relationship}]->'
        if self is Direction.IN:
            return f'<-[{relationship}]-'
        return f'-[{relationship}]-'


@dataclass
class GraphNode:
    id: str
    labels: List[str]
    properties: Dict[str, Any] = field(default_factory=dict)


@dataclass
class GraphRelationship:
    id: str
    type: str
    from_node_id: str
    to_node_id: str
    properties: Dict[str, Any] = field(default_factory=dict)


@dataclass
class GraphPath:
    """Ordered walk from a start node: ``nodes[i]`` and ``nodes[i + 1]`` are joined by ``relationships[i]``."""
    nodes: List[GraphNode]
    relationships: List[GraphRelationship]

    @property
    def length(self) -> int:
        return len(self.relationships)


@dataclass
class TraversalSpec:
    """Parameters for walking the graph from a start node.

    ``relationship_types`` are OR-matched; ``node_labels`` and ``filter`` constrain the
    endpoint nodes, with filter properties ANDed together.
    """
    depth: int = 1
    direction: Direction = Direction.OUT
    relationship_types: List[str] = field(default_factory=list)
    node_labels: List[str] = field(default_factory=list)
    filter: Dict[str, Any] = field(default_factory=dict)
    limit: int = 100

    def __post_init__(self):
        if not isinstance(self.direction, Direction):
            self.direction = Direction(str(self.direction).upper())

    def describe(self) -> str:
        """Pattern-style description, e.g. ``(start)-[:KNOWS|LIKES*1..2]->(:Person)``."""
        types = '|'.join(self.relationship_types)
        relationship = f':{types}*1..{self.depth}' if types else f'*1..{self.depth}'
        labels = ''.join(f':{label}' for label in self.node_labels)
        return f'(start){self.direction.pattern(relationship)}(end{labels})'


@dataclass
class TraversalResult:
    nodes: List[GraphNode] = field(default_factory=list)
    relationships: List[GraphRelationship] = field(default_factory=list)
    paths: List[GraphPath] = field(default_factory=list)


@dataclass
class QueryResult:
    records: List[Dict[str, Any]] = field(default_factory=list)
    summary: Dict[str, Any] = field(default_factory=dict)


@dataclass
class FindCriteria:
    """Node lookup by labels (all must match) and property equality."""
    labels: List[str] = field(default_factory=list)
    properties: Dict[str, Any] = field(default_factory=dict)
    limit: Optional[int] = None


class OperationType(str, Enum):
    CREATE_NODE = 'CREATE_NODE'
    CREATE_RELATIONSHIP = 'CREATE_RELATIONSHIP'
    DELETE_NODE = 'DELETE_NODE'
    DELETE_RELATIONSHIP = 'DELETE_RELATIONSHIP'
    QUERY = 'QUERY'


@dataclass
class GraphOperation:
    """One unit of work inside a batch.

    ``data`` holds the keyword arguments of the matching adapter call, e.g.
    ``{'labels': [...], 'properties': {...}}`` for ``CREATE_NODE`` or
    ``{'from_node_id': ..., 'to_node_id': ..., 'type': ...}`` for ``CREATE_RELATIONSHIP``.
    """
    type: OperationType
    data: Dict[str, Any] = field(default_factory=dict)
    operation_id: str = field(default_factory=generate_id)

    def __post_init__(self):
        if not isinstance(self.type, OperationType):
            self.type = OperationType(str(self.type).upper())


@dataclass
class BatchResult:
    """Partial-success summary keyed by operation id."""
    success_count: int = 0
    error_count: int = 0
    results: Dict[str, Any] = field(default_factory=dict)
    errors: Dict[str, str] = field(default_factory=dict)
