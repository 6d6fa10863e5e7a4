"""
Amazon Neptune implementation of the graph store adapter, using the Gremlin Python driver
with AWS SigV4 authentication.
"""

import asyncio
import copy
from datetime import datetime
from functools import wraps
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar

from boto3 import Session
from botocore.auth import SigV4Auth
from botocore.awsrequest import AWSRequest
from gremlin_python.driver.aiohttp.transport import AiohttpTransport
from gremlin_python.driver.client import Client
from gremlin_python.driver.driver_remote_connection import DriverRemoteConnection
from gremlin_python.process.anonymous_traversal import traversal
from gremlin_python.process.graph_traversal import __
from gremlin_python.process.traversal import Direction as GremlinDirection
from gremlin_python.process.traversal import T

from ..adapters.graph import GraphStoreAdapter
from ..adapters.validation import validate_node_data, validate_node_id, validate_query, validate_relationship_data
from ..exceptions import GraphOperationError, ThreadMemError, TransactionError
from ..models.graph import (Direction, FindCriteria, GraphNode, GraphPath, GraphRelationship, QueryResult,
                            TraversalResult, TraversalSpec)
from . import json_utils
from .config import NeptuneConfig
from .id_utils import generate_id
from .logging_config import get_logger
from .timestamp_utils import to_millis

logger = get_logger(__name__)

R = TypeVar('R')

# Neptune stores multiple labels on one vertex joined by this separator
LABEL_SEPARATOR = '::'


def retry_on_connection_error(func):
    """Run a blocking Gremlin operation in a worker thread, reconnecting once on a closed transport."""

    @wraps(func)
    async def wrapper(self, *args, **kwargs):
        try:
            return await asyncio.to_thread(func, self, *args, **kwargs)
        except ThreadMemError:
            raise
        except Exception as e:
            if 'cannot write to closing transport' in str(e).lower():
                logger.warning(f'Connection error detected: {e}. Reconnecting...')
                self.close_connection()
                self._connect()
                try:
                    return await asyncio.to_thread(func, self, *args, **kwargs)
                except ThreadMemError:
                    raise
                except Exception as retry_e:
                    logger.error(f'Error in {func.__name__}: {retry_e}')
                    raise GraphOperationError(f'Failed to {func.__name__}: {retry_e}', operation=func.__name__,
                                              cause=retry_e) from retry_e
            logger.error(f'Error in {func.__name__}: {e}')
            raise GraphOperationError(f'Failed to {func.__name__}: {e}', operation=func.__name__, cause=e) from e

    return wrapper


def _encode(value: Any) -> Any:
    """Neptune properties are scalars; collections are stored as JSON text."""
    if isinstance(value, datetime):
        return to_millis(value)
    if isinstance(value, (list, tuple, set, dict)):
        return json_utils.dumps(value)
    return value


def _decode(value: Any) -> Any:
    if isinstance(value, str) and value[:1] in ('[', '{'):
        try:
            return json_utils.loads(value)
        except ValueError:
            return value
    return value


def _key(element: Dict[Any, Any], token: Any, name: str) -> Any:
    """Look up a token key, which deserializes as either the enum or its name."""
    if token in element:
        return element[token]
    return element.get(name)


def _is_edge(element: Dict[Any, Any]) -> bool:
    return GremlinDirection.OUT in element or 'OUT' in element


def _properties(element: Dict[Any, Any]) -> Dict[str, Any]:
    return {k: _decode(v) for k, v in element.items() if isinstance(k, str) and k not in ('id', 'label', 'IN', 'OUT')}


def _to_node(element: Dict[Any, Any]) -> GraphNode:
    label = _key(element, T.label, 'label') or ''
    return GraphNode(id=str(_key(element, T.id, 'id')),
                     labels=[part for part in label.split(LABEL_SEPARATOR) if part],
                     properties=_properties(element))


def _to_relationship(element: Dict[Any, Any]) -> GraphRelationship:
    out_vertex = _key(element, GremlinDirection.OUT, 'OUT') or {}
    in_vertex = _key(element, GremlinDirection.IN, 'IN') or {}
    return GraphRelationship(id=str(_key(element, T.id, 'id')),
                             type=_key(element, T.label, 'label'),
                             from_node_id=str(_key(out_vertex, T.id, 'id')),
                             to_node_id=str(_key(in_vertex, T.id, 'id')),
                             properties=_properties(element))


class NeptuneClient(GraphStoreAdapter):
    """Amazon Neptune client using Gremlin Python driver with AWS authentication."""

    def __init__(self, config: NeptuneConfig, g: Any = None, client: Optional[Client] = None):
        """
        Initialize Neptune client with Gremlin driver.

        Args:
            config: NeptuneConfig instance with connection parameters
            g: Pre-built traversal source, skips connecting
            client: Pre-built script client for raw queries
        """
        self.config = config
        self.connection = None
        self.g = g
        self.client = client
        if g is None:
            self._connect()
            logger.info(f'Connected to Neptune at {config.endpoint}')

    def _signed_headers(self, url: str) -> Dict[str, str]:
        credentials = Session().get_credentials()
        if credentials is None:
            raise GraphOperationError('No AWS credentials found', operation='connect')
        creds = credentials.get_frozen_credentials()
        region = Session().region_name or self.config.region or 'us-east-1'

        request = AWSRequest(method='GET', url=url, data=None)
        SigV4Auth(creds, 'neptune-db', region).add_auth(request)
        return dict(request.headers.items())

    def _connect(self):
        """Establish traversal and script connections to Neptune."""
        conn_string = f'wss://{self.config.endpoint}:{self.config.port}/gremlin'
        headers = self._signed_headers(conn_string)

        self.connection = DriverRemoteConnection(conn_string,
                                                 'g',
                                                 headers=headers,
                                                 transport_factory=lambda: AiohttpTransport(call_from_event_loop=True))
        self.g = traversal().with_remote(self.connection)
        self.client = Client(conn_string,
                             'g',
                             headers=headers,
                             transport_factory=lambda: AiohttpTransport(call_from_event_loop=True))

    def close_connection(self):
        if self.connection is not None:
            self.connection.close()
            self.connection = None
        if self.client is not None:
            self.client.close()
            self.client = None

    async def close(self) -> None:
        """Close the Neptune connections."""
        await asyncio.to_thread(self.close_connection)

    @retry_on_connection_error
    def create_node(self, labels: List[str], properties: Optional[Dict[str, Any]] = None, node_id: Optional[str] = None) -> str:
        labels = validate_node_data(labels, node_id)
        node_id = node_id or generate_id()

        t = self.g.add_v(LABEL_SEPARATOR.join(labels)).property(T.id, node_id)
        for key, value in (properties or {}).items():
            t = t.property(key, _encode(value))
        t.to_list()

        logger.debug(f'Created vertex {node_id} with labels {labels}')
        return node_id

    @retry_on_connection_error
    def create_relationship(self,
                            from_node_id: str,
                            to_node_id: str,
                            rel_type: str,
                            properties: Optional[Dict[str, Any]] = None,
                            rel_id: Optional[str] = None) -> str:
        validate_relationship_data(from_node_id, to_node_id, rel_type)
        rel_id = rel_id or generate_id()

        t = self.g.V(from_node_id).add_e(rel_type).to(__.V(to_node_id)).property(T.id, rel_id)
        for key, value in (properties or {}).items():
            t = t.property(key, _encode(value))
        created = t.to_list()
        if not created:
            raise GraphOperationError('Relationship endpoint not found',
                                      operation='create_relationship',
                                      context={
                                          'from_node_id': from_node_id,
                                          'to_node_id': to_node_id
                                      })

        logger.debug(f'Created edge {rel_id}: ({from_node_id})-[:{rel_type}]->({to_node_id})')
        return rel_id

    def _step(self, spec: TraversalSpec):
        if spec.direction is Direction.OUT:
            edges = __.out_e(*spec.relationship_types)
        elif spec.direction is Direction.IN:
            edges = __.in_e(*spec.relationship_types)
        else:
            edges = __.both_e(*spec.relationship_types)
        return edges.other_v().simple_path()

    @retry_on_connection_error
    def traverse(self, start_node_id: str, spec: Optional[TraversalSpec] = None) -> TraversalResult:
        validate_node_id(start_node_id, 'start_node_id')
        spec = spec or TraversalSpec()
        logger.debug(f'Traversing {spec.describe()} from {start_node_id}')

        t = self.g.V(start_node_id).repeat(self._step(spec)).emit().times(spec.depth)
        if spec.node_labels:
            t = t.has_label(*spec.node_labels)
        for key, value in spec.filter.items():
            t = t.has(key, _encode(value))
        raw_paths = t.limit(spec.limit).path().by(__.element_map()).to_list()

        result = TraversalResult()
        seen_nodes = set()
        seen_rels = set()
        for raw_path in raw_paths:
            nodes, relationships = self._split_path(raw_path)
            result.paths.append(GraphPath(nodes=nodes, relationships=relationships))
            end = nodes[-1]
            if end.id not in seen_nodes:
                seen_nodes.add(end.id)
                result.nodes.append(end)
            for rel in relationships:
                if rel.id not in seen_rels:
                    seen_rels.add(rel.id)
                    result.relationships.append(rel)
        return result

    @staticmethod
    def _split_path(raw_path: Any) -> Tuple[List[GraphNode], List[GraphRelationship]]:
        objects = getattr(raw_path, 'objects', raw_path)
        nodes = []
        relationships = []
        for element in objects:
            if _is_edge(element):
                relationships.append(_to_relationship(element))
            else:
                nodes.append(_to_node(element))
        return nodes, relationships

    @retry_on_connection_error
    def execute_query(self, query: str, params: Optional[Dict[str, Any]] = None) -> QueryResult:
        validate_query(query)
        if self.client is None:
            raise GraphOperationError('No script client available for raw queries', operation='execute_query')

        results = self.client.submit(query, params or {}).all().result()
        records = [r if isinstance(r, dict) else {'value': r} for r in results]
        return QueryResult(records=records, summary={'record_count': len(records)})

    @retry_on_connection_error
    def find_nodes(self, criteria: FindCriteria) -> List[GraphNode]:
        t = self.g.V()
        for label in criteria.labels:
            t = t.has_label(label)
        for key, value in criteria.properties.items():
            t = t.has(key, _encode(value))
        if criteria.limit is not None:
            t = t.limit(criteria.limit)
        return [_to_node(element) for element in t.element_map().to_list()]

    @retry_on_connection_error
    def delete_nodes(self, node_ids: List[str]) -> int:
        for node_id in node_ids:
            validate_node_id(node_id)
        if not node_ids:
            return 0
        count = self.g.V(*node_ids).count().to_list()
        # Dropping a vertex drops its edges
        self.g.V(*node_ids).drop().iterate()
        logger.debug(f'Deleted {count[0] if count else 0} vertices')
        return int(count[0]) if count else 0

    @retry_on_connection_error
    def delete_relationships(self, rel_ids: List[str]) -> int:
        if not rel_ids:
            return 0
        count = self.g.E(*rel_ids).count().to_list()
        self.g.E(*rel_ids).drop().iterate()
        return int(count[0]) if count else 0

    async def run_transaction(self, fn: Callable[[GraphStoreAdapter], Awaitable[R]]) -> R:
        """
        Run ``fn`` inside a Gremlin remote transaction.

        Args:
            fn: Coroutine function receiving a transaction-bound client

        Returns:
            Whatever ``fn`` returns

        Raises:
            TransactionError: If beginning, running or committing the transaction fails
        """
        tx = self.g.tx()
        try:
            gtx = await asyncio.to_thread(tx.begin)
        except Exception as e:
            raise TransactionError(f'Failed to begin transaction: {e}', operation='run_transaction', cause=e) from e

        bound = copy.copy(self)
        bound.g = gtx
        try:
            result = await fn(bound)
            await asyncio.to_thread(tx.commit)
            return result
        except Exception as e:
            try:
                await asyncio.to_thread(tx.rollback)
            except Exception as rollback_error:
                logger.error(f'Transaction rollback failed: {rollback_error}')
            logger.warning(f'Neptune transaction rolled back: {e}')
            raise TransactionError(f'Transaction failed: {e}', operation='run_transaction', cause=e) from e

    @retry_on_connection_error
    def get_stats(self) -> Dict[str, Any]:
        node_count = self.g.V().count().to_list()
        relationship_count = self.g.E().count().to_list()
        labels = self.g.V().label().group_count().to_list()
        return {
            'node_count': int(node_count[0]) if node_count else 0,
            'relationship_count': int(relationship_count[0]) if relationship_count else 0,
            'labels': dict(labels[0]) if labels else {}
        }

    async def health_check(self) -> bool:
        """
        Perform a health check on the Neptune service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            await asyncio.to_thread(lambda: self.g.V().limit(1).count().to_list())
            return True
        except Exception as e:
            logger.error(f'Neptune health check failed: {e}')
            return False
