"""
In-process graph store for embedded use and tests.
"""

import copy
from collections import Counter
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, TypeVar

from ..exceptions import GraphOperationError, InvalidNodeError, ThreadMemError, TransactionError
from ..models.graph import (Direction, FindCriteria, GraphNode, GraphPath, GraphRelationship, QueryResult,
                            TraversalResult, TraversalSpec)
from ..utils.id_utils import generate_id
from ..utils.logging_config import get_logger
from .graph import GraphStoreAdapter
from .validation import validate_node_data, validate_node_id, validate_query, validate_relationship_data

logger = get_logger(__name__)

T = TypeVar('T')

QueryHandler = Callable[[str, Dict[str, Any], 'InMemoryGraphAdapter'], List[Dict[str, Any]]]


class InMemoryGraphAdapter(GraphStoreAdapter):
    """Dictionary-backed labeled property graph.

    Raw queries have no native language here; pass ``query_handler`` to interpret them.
    Transactions snapshot the whole graph and restore it when the callback fails.
    """

    def __init__(self, query_handler: Optional[QueryHandler] = None):
        self.query_handler = query_handler
        self.available = True
        self.nodes: Dict[str, GraphNode] = {}
        self.relationships: Dict[str, GraphRelationship] = {}

    def _check_available(self, operation: str) -> None:
        if not self.available:
            raise GraphOperationError('Graph store unavailable', operation=operation)

    async def create_node(self, labels: List[str], properties: Optional[Dict[str, Any]] = None, node_id: Optional[str] = None) -> str:
        labels = validate_node_data(labels, node_id)
        self._check_available('create_node')

        node_id = node_id or generate_id()
        if node_id in self.nodes:
            raise InvalidNodeError('Node already exists', operation='create_node', context={'node_id': node_id})
        self.nodes[node_id] = GraphNode(id=node_id, labels=labels, properties=copy.deepcopy(properties or {}))
        logger.debug(f'Created node {node_id} with labels {labels}')
        return node_id

    async def create_relationship(self,
                                  from_node_id: str,
                                  to_node_id: str,
                                  rel_type: str,
                                  properties: Optional[Dict[str, Any]] = None,
                                  rel_id: Optional[str] = None) -> str:
        validate_relationship_data(from_node_id, to_node_id, rel_type)
        self._check_available('create_relationship')

        for node_id in (from_node_id, to_node_id):
            if node_id not in self.nodes:
                raise GraphOperationError('Relationship endpoint not found',
                                          operation='create_relationship',
                                          context={'node_id': node_id})

        rel_id = rel_id or generate_id()
        self.relationships[rel_id] = GraphRelationship(id=rel_id,
                                                       type=rel_type,
                                                       from_node_id=from_node_id,
                                                       to_node_id=to_node_id,
                                                       properties=copy.deepcopy(properties or {}))
        logger.debug(f'Created relationship {rel_id}: ({from_node_id})-[:{rel_type}]->({to_node_id})')
        return rel_id

    def _neighbours(self, node_id: str, spec: TraversalSpec):
        for rel in self.relationships.values():
            if spec.relationship_types and rel.type not in spec.relationship_types:
                continue
            if spec.direction in (Direction.OUT, Direction.BOTH) and rel.from_node_id == node_id:
                yield rel, rel.to_node_id
            if spec.direction in (Direction.IN, Direction.BOTH) and rel.to_node_id == node_id:
                # A self-loop was already yielded by the OUT branch
                if not (spec.direction is Direction.BOTH and rel.from_node_id == node_id):
                    yield rel, rel.from_node_id

    def _endpoint_matches(self, node: GraphNode, spec: TraversalSpec) -> bool:
        if spec.node_labels and not any(label in node.labels for label in spec.node_labels):
            return False
        return all(node.properties.get(key) == value for key, value in spec.filter.items())

    async def traverse(self, start_node_id: str, spec: Optional[TraversalSpec] = None) -> TraversalResult:
        validate_node_id(start_node_id, 'start_node_id')
        self._check_available('traverse')
        spec = spec or TraversalSpec()
        logger.debug(f'Traversing {spec.describe()} from {start_node_id}')

        result = TraversalResult()
        start = self.nodes.get(start_node_id)
        if start is None:
            return result

        seen_nodes: Set[str] = set()
        seen_rels: Set[str] = set()
        # Breadth-first over simple paths so shorter paths come first
        frontier = [([start], [])]
        for _ in range(max(spec.depth, 0)):
            next_frontier = []
            for path_nodes, path_rels in frontier:
                visited = {node.id for node in path_nodes}
                for rel, other_id in self._neighbours(path_nodes[-1].id, spec):
                    if other_id in visited:
                        continue
                    other = self.nodes[other_id]
                    extended = (path_nodes + [other], path_rels + [rel])
                    next_frontier.append(extended)
                    if not self._endpoint_matches(other, spec):
                        continue
                    result.paths.append(GraphPath(nodes=list(extended[0]), relationships=list(extended[1])))
                    if other.id not in seen_nodes:
                        seen_nodes.add(other.id)
                        result.nodes.append(other)
                    for path_rel in extended[1]:
                        if path_rel.id not in seen_rels:
                            seen_rels.add(path_rel.id)
                            result.relationships.append(path_rel)
                    if len(result.paths) >= spec.limit:
                        return result
            frontier = next_frontier
        return result

    async def execute_query(self, query: str, params: Optional[Dict[str, Any]] = None) -> QueryResult:
        validate_query(query)
        self._check_available('execute_query')
        if self.query_handler is None:
            raise GraphOperationError('Raw queries are not supported without a query handler', operation='execute_query')
        try:
            records = self.query_handler(query, params or {}, self)
        except ThreadMemError:
            raise
        except Exception as e:
            raise GraphOperationError(f'Query failed: {e}', operation='execute_query', context={'query': query}, cause=e) from e
        return QueryResult(records=list(records), summary={'record_count': len(records)})

    async def find_nodes(self, criteria: FindCriteria) -> List[GraphNode]:
        self._check_available('find_nodes')
        found = []
        for node in self.nodes.values():
            if not all(label in node.labels for label in criteria.labels):
                continue
            if not all(node.properties.get(key) == value for key, value in criteria.properties.items()):
                continue
            found.append(node)
            if criteria.limit is not None and len(found) >= criteria.limit:
                break
        return found

    async def delete_nodes(self, node_ids: List[str]) -> int:
        for node_id in node_ids:
            validate_node_id(node_id)
        self._check_available('delete_nodes')
        targets = {node_id for node_id in node_ids if node_id in self.nodes}
        for rel_id in [r.id for r in self.relationships.values() if r.from_node_id in targets or r.to_node_id in targets]:
            del self.relationships[rel_id]
        for node_id in targets:
            del self.nodes[node_id]
        return len(targets)

    async def delete_relationships(self, rel_ids: List[str]) -> int:
        self._check_available('delete_relationships')
        deleted = 0
        for rel_id in rel_ids:
            if self.relationships.pop(rel_id, None) is not None:
                deleted += 1
        return deleted

    async def run_transaction(self, fn: Callable[[GraphStoreAdapter], Awaitable[T]]) -> T:
        snapshot = (copy.deepcopy(self.nodes), copy.deepcopy(self.relationships))
        try:
            return await fn(self)
        except Exception as e:
            self.nodes, self.relationships = snapshot
            logger.warning(f'Graph transaction rolled back: {e}')
            raise TransactionError(f'Transaction failed: {e}', operation='run_transaction', cause=e) from e

    async def get_stats(self) -> Dict[str, Any]:
        labels = Counter(label for node in self.nodes.values() for label in node.labels)
        types = Counter(rel.type for rel in self.relationships.values())
        return {
            'node_count': len(self.nodes),
            'relationship_count': len(self.relationships),
            'labels': dict(labels),
            'relationship_types': dict(types)
        }

    async def health_check(self) -> bool:
        return self.available
