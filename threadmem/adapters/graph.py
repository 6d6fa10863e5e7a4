"""
Graph store adapter contract and batch execution.
"""

from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from ..exceptions import InvalidInputError
from ..models.graph import (BatchResult, FindCriteria, GraphNode, GraphOperation, OperationType, QueryResult,
                            TraversalResult, TraversalSpec)
from ..utils.logging_config import get_logger

logger = get_logger(__name__)

T = TypeVar('T')


class GraphStoreAdapter(ABC):
    """Contract over a labeled property graph.

    Implementations validate input with the functions in ``adapters.validation`` before
    touching the backend, raise ``GraphOperationError`` on backend failures and wrap any
    failure inside ``run_transaction`` in ``TransactionError``.
    """

    @abstractmethod
    async def create_node(self, labels: List[str], properties: Optional[Dict[str, Any]] = None, node_id: Optional[str] = None) -> str:
        """Create a node and return its id (generated when ``node_id`` is omitted)."""

    @abstractmethod
    async def create_relationship(self,
                                  from_node_id: str,
                                  to_node_id: str,
                                  rel_type: str,
                                  properties: Optional[Dict[str, Any]] = None,
                                  rel_id: Optional[str] = None) -> str:
        """Create a typed directed relationship and return its id."""

    @abstractmethod
    async def traverse(self, start_node_id: str, spec: Optional[TraversalSpec] = None) -> TraversalResult:
        """Walk the graph from ``start_node_id``."""

    @abstractmethod
    async def execute_query(self, query: str, params: Optional[Dict[str, Any]] = None) -> QueryResult:
        """Run a raw backend query after the destructive-keyword gate."""

    @abstractmethod
    async def find_nodes(self, criteria: FindCriteria) -> List[GraphNode]:
        """Find nodes by labels and property equality."""

    @abstractmethod
    async def delete_nodes(self, node_ids: List[str]) -> int:
        """Delete nodes and their relationships. Returns the number of nodes deleted."""

    @abstractmethod
    async def delete_relationships(self, rel_ids: List[str]) -> int:
        """Delete relationships. Returns the number deleted."""

    @abstractmethod
    async def run_transaction(self, fn: Callable[['GraphStoreAdapter'], Awaitable[T]]) -> T:
        """Run ``fn`` against a transaction-bound adapter; all of its writes commit or none do."""

    async def get_stats(self) -> Dict[str, Any]:
        return {}

    async def health_check(self) -> bool:
        return True

    async def close(self) -> None:
        pass

    async def batch_execute(self, operations: List[GraphOperation]) -> BatchResult:
        """
        Execute operations independently, in order.

        A failing operation is recorded under its ``operation_id`` in ``errors`` and does
        not stop the remaining ones.

        Args:
            operations: Operations to run

        Returns:
            BatchResult with per-operation results and errors
        """
        result = BatchResult()
        if not operations:
            return result

        for operation in operations:
            try:
                result.results[operation.operation_id] = await self._execute_operation(operation)
                result.success_count += 1
            except Exception as e:
                logger.warning(f'Batch operation {operation.operation_id} ({operation.type.value}) failed: {e}')
                result.errors[operation.operation_id] = str(e)
                result.error_count += 1

        logger.debug(f'Batch executed: {result.success_count} succeeded, {result.error_count} failed')
        return result

    async def _execute_operation(self, operation: GraphOperation) -> Any:
        data = operation.data
        try:
            if operation.type is OperationType.CREATE_NODE:
                return await self.create_node(data['labels'], data.get('properties'), data.get('id'))
            if operation.type is OperationType.CREATE_RELATIONSHIP:
                return await self.create_relationship(data['from_node_id'], data['to_node_id'], data['type'],
                                                      data.get('properties'), data.get('id'))
            if operation.type is OperationType.DELETE_NODE:
                return await self.delete_nodes(_ids(data))
            if operation.type is OperationType.DELETE_RELATIONSHIP:
                return await self.delete_relationships(_ids(data))
            if operation.type is OperationType.QUERY:
                return await self.execute_query(data['query'], data.get('params'))
        except KeyError as e:
            raise InvalidInputError(f'Missing field {e} for {operation.type.value}',
                                    operation='batch_execute',
                                    context={'operation_id': operation.operation_id})
        raise InvalidInputError(f'Unsupported operation type: {operation.type}', operation='batch_execute')


def _ids(data: Dict[str, Any]) -> List[str]:
    if 'ids' in data:
        return list(data['ids'])
    return [data['id']]
