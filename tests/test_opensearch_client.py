"""Tests for OpenSearchClient with a mocked opensearch-py client."""
from unittest.mock import MagicMock

import pytest
from opensearchpy.exceptions import NotFoundError, TransportError

from threadmem.exceptions import InvalidInputError, VectorStoreError
from threadmem.services.memory_store import MemoryStore
from threadmem.utils import opensearch_client
from threadmem.utils.config import MemoryConfig, OpenSearchConfig, RetentionConfig
from threadmem.utils.opensearch_client import OpenSearchClient, _filter_clauses


def hit(doc_id, score, **metadata):
    return {'_id': doc_id, '_score': score, '_source': {'content': f'content {doc_id}', 'metadata': metadata}}


@pytest.fixture
def os_client():
    return MagicMock()


@pytest.fixture
def opensearch(os_client):
    config = OpenSearchConfig(endpoint='search.local', port=443, region='us-east-1', index_sync_wait=0)
    return OpenSearchClient(config, client=os_client)


class TestFilterClauses:

    def test_filter_language(self):
        clauses = _filter_clauses({'thread_id': 't1', 'type': ['fact', 'summary'], 'importance': {'gte': 0.5}})

        assert clauses == [
            {'term': {'metadata.thread_id': 't1'}},
            {'terms': {'metadata.type': ['fact', 'summary']}},
            {'range': {'metadata.importance': {'gte': 0.5}}},
        ]

    def test_unknown_range_operator(self):
        with pytest.raises(InvalidInputError):
            _filter_clauses({'importance': {'between': 1}})


class TestQuery:

    async def test_scores_converted_to_cosine_distance(self, opensearch, os_client):
        os_client.search.return_value = {'hits': {'hits': [hit('far', 0.75), hit('near', 1.0, thread_id='t1')]}}

        results = await opensearch.query('Memory-Entries', query_embedding=[0.1, 0.2], k=2, filter={'thread_id': 't1'})

        assert [r.id for r in results] == ['near', 'far']
        assert [r.distance for r in results] == [pytest.approx(0.0), pytest.approx(0.5)]
        assert results[0].metadata == {'thread_id': 't1'}
        kwargs = os_client.search.call_args.kwargs
        assert kwargs['index'] == 'memory-entries'
        knn = kwargs['body']['query']['knn']['embedding']
        assert knn['k'] == 2
        assert knn['filter'] == {'bool': {'filter': [{'term': {'metadata.thread_id': 't1'}}]}}

    async def test_unfiltered_knn_has_no_filter(self, opensearch, os_client):
        os_client.search.return_value = {'hits': {'hits': []}}

        await opensearch.query('memories', query_embedding=[0.1, 0.2], k=5)

        assert os_client.search.call_args.kwargs['body']['query'] == {'knn': {'embedding': {'vector': [0.1, 0.2], 'k': 5}}}

    async def test_text_query_without_embedding_function_uses_bm25(self, opensearch, os_client):
        os_client.search.return_value = {'hits': {'hits': [hit('a', 3.0)]}}

        [record] = await opensearch.query('memories', query_text='dark mode')

        assert record.distance == pytest.approx(0.25)
        assert os_client.search.call_args.kwargs['body']['query']['bool']['must'] == [{'match': {'content': 'dark mode'}}]

    async def test_text_query_embedded_when_function_given(self, os_client):
        config = OpenSearchConfig(endpoint='search.local', port=443, region='us-east-1')
        client = OpenSearchClient(config, client=os_client, embedding_function=lambda text: [1.0, 0.0])
        os_client.search.return_value = {'hits': {'hits': []}}

        assert await client.query('memories', query_text='dark mode') == []
        assert os_client.search.call_args.kwargs['body']['query']['knn']['embedding']['vector'] == [1.0, 0.0]

    async def test_missing_index_returns_empty(self, opensearch, os_client):
        os_client.search.side_effect = NotFoundError(404, 'index_not_found_exception', {})

        assert await opensearch.query('memories', query_embedding=[0.1]) == []
        assert await opensearch.get('memories', filter={'thread_id': 't1'}) == []

    async def test_backend_error(self, opensearch, os_client):
        os_client.search.side_effect = TransportError(500, 'internal', {})

        with pytest.raises(VectorStoreError):
            await opensearch.query('memories', query_embedding=[0.1])

    async def test_requires_exactly_one_query_form(self, opensearch, os_client):
        with pytest.raises(InvalidInputError):
            await opensearch.query('memories')
        with pytest.raises(InvalidInputError):
            await opensearch.query('memories', query_embedding=[0.1], query_text='both')
        os_client.search.assert_not_called()


class TestWrites:

    async def test_upsert_creates_index_with_dimension(self, opensearch, os_client):
        os_client.indices.exists.return_value = False
        os_client.indices.create.return_value = {'acknowledged': True}
        os_client.index.return_value = {'result': 'created'}

        await opensearch.upsert('memories', 'm1', 'hello', [0.1, 0.2, 0.3], {'thread_id': 't1'})

        body = os_client.indices.create.call_args.kwargs['body']
        assert body['mappings']['properties']['embedding']['dimension'] == 3
        assert body['mappings']['properties']['embedding']['method']['engine'] == 'lucene'
        os_client.index.assert_called_once_with(index='memories',
                                                id='m1',
                                                body={
                                                    'id': 'm1',
                                                    'content': 'hello',
                                                    'embedding': [0.1, 0.2, 0.3],
                                                    'metadata': {
                                                        'thread_id': 't1'
                                                    }
                                                })

        with pytest.raises(InvalidInputError):
            await opensearch.upsert('memories', 'm2', 'wrong size', [0.1, 0.2], {})

    async def test_managed_domain_refreshes_writes(self, os_client):
        config = OpenSearchConfig(endpoint='search.local', port=443, region='us-east-1', service='es')
        client = OpenSearchClient(config, client=os_client)
        os_client.update.return_value = {'result': 'updated'}

        assert await client.update_metadata('memories', 'm1', {'access_count': 2}) is True
        os_client.update.assert_called_once_with(index='memories',
                                                 id='m1',
                                                 body={'doc': {
                                                     'metadata': {
                                                         'access_count': 2
                                                     }
                                                 }},
                                                 refresh=True)

    async def test_update_missing_document(self, opensearch, os_client):
        os_client.update.side_effect = NotFoundError(404, 'document_missing_exception', {})

        assert await opensearch.update_metadata('memories', 'gone', {'access_count': 1}) is False

    async def test_delete_counts_existing_documents(self, opensearch, os_client):
        os_client.delete.side_effect = [{'result': 'deleted'}, NotFoundError(404, 'not_found', {}), {'result': 'deleted'}]

        assert await opensearch.delete('memories', ['a', 'missing', 'b']) == 2

    async def test_get_by_ids(self, opensearch, os_client):
        os_client.search.return_value = {'hits': {'hits': [hit('a', 1.0, thread_id='t1')]}}

        [record] = await opensearch.get('memories', ids=['a'], filter={'thread_id': 't1'})

        assert record.id == 'a' and record.embedding is None
        clauses = os_client.search.call_args.kwargs['body']['query']['bool']['filter']
        assert {'ids': {'values': ['a']}} in clauses
        assert await opensearch.get('memories', ids=[]) == []

    async def test_count_missing_index(self, opensearch, os_client):
        os_client.indices.exists.return_value = False

        assert await opensearch.count('memories') == 0
        os_client.count.assert_not_called()


class FakeIndices:

    def __init__(self):
        self.names = set()

    def exists(self, index):
        return index in self.names

    def create(self, index, body):
        self.names.add(index)
        return {'acknowledged': True}


class FakeOpenSearch:
    """Single-index stand-in that honours ``size``, the ``id`` sort and ``search_after``."""

    def __init__(self):
        self.indices = FakeIndices()
        self.docs = {}
        self.page_sizes = []

    def index(self, index, id, body, **kwargs):
        result = 'updated' if id in self.docs else 'created'
        self.docs[id] = body
        return {'result': result}

    def delete(self, index, id, **kwargs):
        return {'result': 'deleted' if self.docs.pop(id, None) is not None else 'not_found'}

    def count(self, index):
        return {'count': len(self.docs)}

    def search(self, index, body):
        self.page_sizes.append(body['size'])
        clauses = body['query'].get('bool', {}).get('filter', [])
        matching = sorted((doc for doc in self.docs.values() if all(self._matches(doc, c) for c in clauses)),
                          key=lambda doc: doc['id'])
        after = body.get('search_after')
        if after is not None:
            matching = [doc for doc in matching if doc['id'] > after[0]]
        return {'hits': {'hits': [{'_id': doc['id'], '_source': doc, 'sort': [doc['id']]} for doc in matching[:body['size']]]}}

    @staticmethod
    def _matches(doc, clause):
        if 'ids' in clause:
            return doc['id'] in clause['ids']['values']
        [(field, value)] = clause['term'].items()
        return doc['metadata'].get(field.split('.', 1)[1]) == value


class TestListing:

    @pytest.fixture
    def fake(self, monkeypatch):
        monkeypatch.setattr(opensearch_client, 'LIST_PAGE_SIZE', 2)
        return FakeOpenSearch()

    @pytest.fixture
    def paged(self, fake):
        config = OpenSearchConfig(endpoint='search.local', port=443, region='us-east-1', index_sync_wait=0)
        return OpenSearchClient(config, client=fake)

    async def test_get_pages_through_every_document(self, paged, fake):
        for i in range(5):
            await paged.upsert('memories', f'm{i}', f'text {i}', [1.0, 0.0], {'thread_id': 't1'})

        records = await paged.get('memories', filter={'thread_id': 't1'})

        assert [r.id for r in records] == ['m0', 'm1', 'm2', 'm3', 'm4']
        assert fake.page_sizes == [2, 2, 2]

    async def test_get_stops_at_limit(self, paged, fake):
        for i in range(5):
            await paged.upsert('memories', f'm{i}', f'text {i}', [1.0, 0.0], {})

        records = await paged.get('memories', limit=3)

        assert [r.id for r in records] == ['m0', 'm1', 'm2']
        assert fake.page_sizes == [2, 1]

    async def test_global_cap_holds_past_one_page(self, paged, fake, embedder, clock):
        retention = RetentionConfig(max_entries=5, max_total=None, max_age=None, max_per_thread=None,
                                    eviction_strategy='fifo')
        store = MemoryStore(paged, embedder, config=MemoryConfig(retention=retention), clock=clock)

        stored = [await store.store(f't{i}', f'message {i}') for i in range(8)]

        assert await paged.count(store.collection) == 5
        assert set(fake.docs) == {entry.id for entry in stored[3:]}
