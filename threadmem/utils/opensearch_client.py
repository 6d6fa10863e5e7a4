"""
OpenSearch k-NN implementation of the vector store adapter.
"""

import asyncio
import time
from functools import wraps
from typing import Any, Callable, Dict, List, Optional

import boto3
from opensearchpy import OpenSearch, RequestsHttpConnection
from opensearchpy.exceptions import NotFoundError, OpenSearchException
from requests_aws4auth import AWS4Auth

from ..adapters.validation import validate_vector_query
from ..adapters.vector import RANGE_OPERATORS, VectorRecord, VectorStoreAdapter
from ..exceptions import InvalidInputError, ThreadMemError, VectorStoreError
from .config import OpenSearchConfig
from .logging_config import get_logger

logger = get_logger(__name__)

# Page size for unranked listing, below the default index.max_result_window
LIST_PAGE_SIZE = 1000


def _offload(func):
    """Run a blocking client method in a worker thread."""

    @wraps(func)
    async def wrapper(*args, **kwargs):
        return await asyncio.to_thread(func, *args, **kwargs)

    return wrapper


def _filter_clauses(filter: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Translate the adapter filter language into OpenSearch bool filter clauses."""
    clauses = []
    for key, expected in (filter or {}).items():
        field = f'metadata.{key}'
        if isinstance(expected, dict):
            unknown = set(expected) - set(RANGE_OPERATORS)
            if unknown:
                raise InvalidInputError(f'Unsupported range operators: {sorted(unknown)}', operation='query')
            clauses.append({'range': {field: dict(expected)}})
        elif isinstance(expected, (list, tuple, set)):
            clauses.append({'terms': {field: list(expected)}})
        else:
            clauses.append({'term': {field: expected}})
    return clauses


class OpenSearchClient(VectorStoreAdapter):
    """OpenSearch client with AWS authentication, one k-NN index per collection."""

    def __init__(self,
                 config: OpenSearchConfig,
                 client: Optional[OpenSearch] = None,
                 embedding_function: Optional[Callable[[str], List[float]]] = None):
        """
        Initialize OpenSearch client.

        Args:
            config: OpenSearchConfig instance with connection parameters
            client: Pre-built client, skips AWS authentication setup
            embedding_function: Used to embed ``query_text``; without it text queries
                run as BM25 matches on the content field
        """
        self.config = config
        self.embedding_function = embedding_function
        self._dimensions: Dict[str, int] = {}

        if client is None:
            credentials = boto3.Session().get_credentials()
            auth = AWS4Auth(region=config.region, service=config.service, refreshable_credentials=credentials)
            endpoint = config.endpoint
            if '://' in endpoint:
                endpoint = endpoint.split('://', 1)[1]

            client = OpenSearch(hosts=[{
                'host': endpoint,
                'port': config.port
            }],
                                http_auth=auth,
                                use_ssl=True,
                                verify_certs=True,
                                connection_class=RequestsHttpConnection)
        self.client = client

        logger.info(f'Initialized OpenSearch client for endpoint: {config.endpoint}')

    @staticmethod
    def _index(collection: str) -> str:
        return collection.lower()

    def _write_kwargs(self) -> Dict[str, Any]:
        # Serverless collections reject the refresh parameter
        return {} if self.config.service == 'aoss' else {'refresh': True}

    def _index_body(self, dimension: int) -> Dict[str, Any]:
        return {
            'mappings': {
                'dynamic_templates': [{
                    'strings_as_keywords': {
                        'match_mapping_type': 'string',
                        'mapping': {
                            'type': 'keyword'
                        }
                    }
                }],
                'properties': {
                    'id': {
                        'type': 'keyword'
                    },
                    'content': {
                        'type': 'text'
                    },
                    'embedding': {
                        'type': 'knn_vector',
                        'dimension': dimension,
                        'method': {
                            'name': 'hnsw',
                            'space_type': 'cosinesimil',
                            'engine': 'lucene'
                        }
                    },
                    'metadata': {
                        'properties': {
                            'importance': {
                                'type': 'float'
                            },
                            'created_at': {
                                'type': 'long'
                            },
                            'last_accessed_at': {
                                'type': 'long'
                            },
                            'access_count': {
                                'type': 'integer'
                            },
                            'sequence': {
                                'type': 'long'
                            },
                            'extra': {
                                'type': 'object',
                                'enabled': False
                            }
                        }
                    }
                }
            },
            'settings': {
                'index': {
                    'knn': True
                }
            }
        }

    def _collection_dimension(self, index_name: str) -> Optional[int]:
        """Dimension of an existing index, None if the index does not exist."""
        if index_name in self._dimensions:
            return self._dimensions[index_name]
        if not self.client.indices.exists(index=index_name):
            return None
        mapping = self.client.indices.get_mapping(index=index_name)
        dimension = int(mapping[index_name]['mappings']['properties']['embedding']['dimension'])
        self._dimensions[index_name] = dimension
        return dimension

    def create_index_if_not_exists(self, collection: str, dimension: int) -> str:
        """
        Create the collection's index if it doesn't exist.

        Args:
            collection: Collection name
            dimension: Embedding dimension for the knn_vector field

        Returns:
            'exists', 'created' or 'failed'
        """
        index_name = self._index(collection)
        try:
            if self.client.indices.exists(index=index_name):
                logger.debug(f'Index {index_name} already exists')
                return 'exists'

            response = self.client.indices.create(index=index_name, body=self._index_body(dimension))
            logger.info(f'Created index {index_name}')
            if response.get('acknowledged', False):
                self._dimensions[index_name] = dimension
                if self.config.index_sync_wait > 0:
                    logger.info(f'Waiting {self.config.index_sync_wait}s for index {index_name} sync-up...')
                    time.sleep(self.config.index_sync_wait)
                return 'created'
            return 'failed'
        except OpenSearchException as e:
            logger.error(f'Error creating index {index_name}: {e}')
            raise VectorStoreError(f'Failed to create index: {e}', operation='create_index', context={'collection': collection},
                                   cause=e) from e

    @_offload
    def upsert(self, collection: str, id: str, content: str, embedding: List[float], metadata: Dict[str, Any]) -> None:
        if not embedding:
            raise InvalidInputError('Embedding must be non-empty', operation='upsert', context={'id': id})
        index_name = self._index(collection)

        try:
            dimension = self._collection_dimension(index_name)
            if dimension is None:
                self.create_index_if_not_exists(collection, len(embedding))
            elif dimension != len(embedding):
                raise InvalidInputError(f'Embedding dimension {len(embedding)} does not match collection dimension {dimension}',
                                        operation='upsert',
                                        context={
                                            'collection': collection,
                                            'id': id
                                        })

            document = {'id': id, 'content': content, 'embedding': list(embedding), 'metadata': metadata}
            response = self.client.index(index=index_name, id=id, body=document, **self._write_kwargs())
            if response.get('result') not in ['created', 'updated']:
                logger.warning(f'Unexpected result indexing document {id}: {response}')
            logger.debug(f'Indexed document {id} in {index_name}')

        except ThreadMemError:
            raise
        except OpenSearchException as e:
            logger.error(f'Error indexing document {id}: {e}')
            raise VectorStoreError(f'Failed to index document: {e}',
                                   operation='upsert',
                                   context={
                                       'collection': collection,
                                       'id': id
                                   },
                                   cause=e) from e
        except Exception as e:
            logger.error(f'Unexpected error indexing document {id}: {e}')
            raise VectorStoreError(f'Unexpected error indexing document: {e}', operation='upsert', cause=e) from e

    @_offload
    def query(self,
              collection: str,
              query_embedding: Optional[List[float]] = None,
              query_text: Optional[str] = None,
              k: int = 10,
              filter: Optional[Dict[str, Any]] = None) -> List[VectorRecord]:
        validate_vector_query(query_embedding, query_text, k)
        index_name = self._index(collection)
        clauses = _filter_clauses(filter)

        if query_embedding is None and self.embedding_function is not None:
            query_embedding = self.embedding_function(query_text)

        if query_embedding is not None:
            knn = {'vector': list(query_embedding), 'k': k}
            if clauses:
                # Filtered during the graph search, so k hits come from the matching documents
                knn['filter'] = {'bool': {'filter': clauses}}
            query = {'knn': {'embedding': knn}}
        else:
            query = {'bool': {'must': [{'match': {'content': query_text}}], 'filter': clauses}}

        search_body = {
            'size': k,
            'query': query,
            '_source': {
                'excludes': ['embedding']  # Don't return embedding in results
            }
        }

        try:
            response = self.client.search(index=index_name, body=search_body)
        except NotFoundError:
            logger.debug(f'Query against missing index {index_name}')
            return []
        except OpenSearchException as e:
            logger.error(f'Error performing vector search: {e}')
            raise VectorStoreError(f'Vector search failed: {e}', operation='query', context={'collection': collection},
                                   cause=e) from e
        except Exception as e:
            logger.error(f'Unexpected error in vector search: {e}')
            raise VectorStoreError(f'Unexpected error in vector search: {e}', operation='query', cause=e) from e

        results = []
        for hit in response['hits']['hits']:
            score = float(hit.get('_score') or 0.0)
            if query_embedding is not None:
                # lucene cosinesimil scores as (2 - cosine distance) / 2
                distance = min(max(2.0 * (1.0 - score), 0.0), 2.0)
            else:
                distance = 1.0 / (1.0 + score)
            source = hit['_source']
            results.append(
                VectorRecord(id=hit['_id'], content=source.get('content', ''), metadata=source.get('metadata', {}),
                             distance=distance))

        results.sort(key=lambda r: r.distance)
        logger.debug(f'Vector search returned {len(results)} results from {index_name}')
        return results

    @_offload
    def get(self,
            collection: str,
            ids: Optional[List[str]] = None,
            filter: Optional[Dict[str, Any]] = None,
            limit: Optional[int] = None,
            include_embeddings: bool = False) -> List[VectorRecord]:
        """List documents without ranking, paging with ``search_after`` on the ``id`` field."""
        index_name = self._index(collection)
        clauses = _filter_clauses(filter)
        if ids is not None:
            if not ids:
                return []
            clauses.append({'ids': {'values': list(ids)}})
        if limit is not None and limit <= 0:
            return []

        search_body: Dict[str, Any] = {
            'query': {
                'bool': {
                    'filter': clauses
                }
            } if clauses else {
                'match_all': {}
            },
            'sort': [{
                'id': 'asc'
            }],
        }
        if not include_embeddings:
            search_body['_source'] = {'excludes': ['embedding']}

        records = []
        search_after = None
        while True:
            page_size = LIST_PAGE_SIZE if limit is None else min(LIST_PAGE_SIZE, limit - len(records))
            body = dict(search_body, size=page_size)
            if search_after is not None:
                body['search_after'] = search_after
            try:
                response = self.client.search(index=index_name, body=body)
            except NotFoundError:
                return []
            except OpenSearchException as e:
                logger.error(f'Error getting documents from {index_name}: {e}')
                raise VectorStoreError(f'Failed to get documents: {e}', operation='get', context={'collection': collection},
                                       cause=e) from e

            hits = response['hits']['hits']
            for hit in hits:
                source = hit['_source']
                records.append(
                    VectorRecord(id=hit['_id'],
                                 content=source.get('content', ''),
                                 metadata=source.get('metadata', {}),
                                 embedding=source.get('embedding') if include_embeddings else None))

            if len(hits) < page_size or (limit is not None and len(records) >= limit):
                break
            search_after = hits[-1]['sort']

        logger.debug(f'Listed {len(records)} documents from {index_name}')
        return records

    @_offload
    def update_metadata(self, collection: str, id: str, metadata: Dict[str, Any]) -> bool:
        index_name = self._index(collection)
        try:
            self.client.update(index=index_name, id=id, body={'doc': {'metadata': metadata}}, **self._write_kwargs())
            return True
        except NotFoundError:
            logger.warning(f'Document {id} not found for metadata update')
            return False
        except OpenSearchException as e:
            logger.error(f'Error updating document {id}: {e}')
            raise VectorStoreError(f'Failed to update document: {e}', operation='update_metadata', context={'id': id},
                                   cause=e) from e

    @_offload
    def delete(self, collection: str, ids: List[str]) -> int:
        index_name = self._index(collection)
        deleted = 0
        for doc_id in ids:
            try:
                response = self.client.delete(index=index_name, id=doc_id, **self._write_kwargs())
                if response.get('result') == 'deleted':
                    deleted += 1
                    logger.debug(f'Deleted document {doc_id} from {index_name}')
                else:
                    logger.warning(f'Document {doc_id} not found for deletion')
            except OpenSearchException as e:
                # OpenSearchException args: (status_code, error_type, error_info)
                if len(e.args) >= 2 and (e.args[0] == 404 or e.args[1] == 'not_found'):
                    logger.debug(f'Document {doc_id} not found for deletion')
                    continue
                logger.error(f'Error deleting document {doc_id}: {e}')
                raise VectorStoreError(f'Failed to delete document: {e}',
                                       operation='delete',
                                       context={
                                           'collection': collection,
                                           'id': doc_id
                                       },
                                       cause=e) from e
        return deleted

    @_offload
    def count(self, collection: str) -> int:
        index_name = self._index(collection)
        try:
            if not self.client.indices.exists(index=index_name):
                return 0
            return int(self.client.count(index=index_name)['count'])
        except OpenSearchException as e:
            logger.error(f'Error counting documents in {index_name}: {e}')
            raise VectorStoreError(f'Failed to count documents: {e}', operation='count', context={'collection': collection},
                                   cause=e) from e

    async def health_check(self) -> bool:
        """
        Perform a health check on the OpenSearch service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            response = await asyncio.to_thread(self.client.indices.exists, index='health_check')
            return response in [True, False]

        except Exception as e:
            logger.error(f'OpenSearch health check failed: {e}')
            return False

    async def close(self) -> None:
        await asyncio.to_thread(self.client.close)
