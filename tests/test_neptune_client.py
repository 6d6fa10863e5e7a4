"""Tests for NeptuneClient with mocked Gremlin traversal source and script client."""
from unittest.mock import MagicMock

import pytest
from gremlin_python.process.traversal import Direction as GremlinDirection
from gremlin_python.process.traversal import T

from threadmem.exceptions import GraphOperationError, InvalidRelationshipError, SecurityError, TransactionError
from threadmem.models.graph import FindCriteria
from threadmem.utils.config import NeptuneConfig
from threadmem.utils.neptune_client import NeptuneClient


@pytest.fixture
def neptune_config():
    return NeptuneConfig(endpoint='neptune.local', port=8182, region='us-east-1')


@pytest.fixture
def g():
    return MagicMock()


@pytest.fixture
def script_client():
    return MagicMock()


@pytest.fixture
def neptune(neptune_config, g, script_client):
    return NeptuneClient(neptune_config, g=g, client=script_client)


class TestSecurityGate:

    async def test_destructive_query_never_reaches_client(self, neptune, script_client):
        with pytest.raises(SecurityError) as exc_info:
            await neptune.execute_query('DROP DATABASE neo4j')

        assert exc_info.value.keyword == 'DROP'
        script_client.submit.assert_not_called()

    async def test_query_results_wrapped_as_records(self, neptune, script_client):
        script_client.submit.return_value.all.return_value.result.return_value = [{'name': 'a'}, 3]

        result = await neptune.execute_query('g.V().count()', {'x': 1})

        script_client.submit.assert_called_once_with('g.V().count()', {'x': 1})
        assert result.records == [{'name': 'a'}, {'value': 3}]

    async def test_invalid_relationship_type_never_reaches_graph(self, neptune, g):
        with pytest.raises(InvalidRelationshipError):
            await neptune.create_relationship('a', 'b', 'knows')

        g.V.assert_not_called()


class TestWrites:

    async def test_create_node_joins_labels(self, neptune, g):
        node_id = await neptune.create_node(['Memory', 'Fact'], {'thread_id': 't1', 'tags': ['a', 'b']}, 'm1')

        assert node_id == 'm1'
        g.add_v.assert_called_once_with('Memory::Fact')
        chain = g.add_v.return_value.property
        chain.assert_called_once_with(T.id, 'm1')
        chain.return_value.property.assert_called_once_with('thread_id', 't1')
        chain.return_value.property.return_value.property.assert_called_once_with('tags', '["a","b"]')

    async def test_create_relationship_missing_endpoint(self, neptune, g):
        g.V.return_value.add_e.return_value.to.return_value.property.return_value.to_list.return_value = []

        with pytest.raises(GraphOperationError):
            await neptune.create_relationship('a', 'b', 'KNOWS', rel_id='r1')

    async def test_backend_errors_become_graph_operation_errors(self, neptune, g):
        g.V.side_effect = RuntimeError('boom')

        with pytest.raises(GraphOperationError) as exc_info:
            await neptune.find_nodes(FindCriteria(labels=['Memory']))

        assert isinstance(exc_info.value.cause, RuntimeError)

    async def test_reconnects_once_on_closed_transport(self, neptune, g, script_client, monkeypatch):
        g.V.side_effect = RuntimeError('Cannot write to closing transport')
        fresh = MagicMock()
        fresh.V.return_value.element_map.return_value.to_list.return_value = [{
            T.id: 'n1',
            T.label: 'Memory::Conversation',
            'thread_id': 't1'
        }]

        def reconnect():
            neptune.g = fresh

        monkeypatch.setattr(neptune, '_connect', reconnect)

        [node] = await neptune.find_nodes(FindCriteria())

        script_client.close.assert_called_once()
        assert node.id == 'n1'
        assert node.labels == ['Memory', 'Conversation']
        assert node.properties == {'thread_id': 't1'}


class TestReads:

    async def test_traverse_builds_paths(self, neptune, g):
        start = {T.id: 'a', T.label: 'Person'}
        end = {T.id: 'b', T.label: 'Person::Employee', 'since': '["2020"]'}
        edge = {
            T.id: 'r1',
            T.label: 'KNOWS',
            GremlinDirection.OUT: {
                T.id: 'a',
                T.label: 'Person'
            },
            GremlinDirection.IN: {
                T.id: 'b',
                T.label: 'Person'
            },
            'weight': 0.5
        }
        path = MagicMock()
        path.objects = [start, edge, end]
        repeated = g.V.return_value.repeat.return_value.emit.return_value.times.return_value
        repeated.limit.return_value.path.return_value.by.return_value.to_list.return_value = [path]

        result = await neptune.traverse('a')

        assert [n.id for n in result.nodes] == ['b']
        assert result.nodes[0].labels == ['Person', 'Employee']
        assert result.nodes[0].properties == {'since': ['2020']}
        [rel] = result.relationships
        assert (rel.id, rel.type, rel.from_node_id, rel.to_node_id) == ('r1', 'KNOWS', 'a', 'b')
        assert rel.properties == {'weight': 0.5}
        assert result.paths[0].length == 1

    async def test_delete_nodes_counts_then_drops(self, neptune, g):
        g.V.return_value.count.return_value.to_list.return_value = [2]

        assert await neptune.delete_nodes(['a', 'b']) == 2
        g.V.return_value.drop.return_value.iterate.assert_called_once()

    async def test_delete_nothing(self, neptune, g):
        assert await neptune.delete_nodes([]) == 0
        g.V.assert_not_called()


class TestTransactions:

    async def test_commit(self, neptune, g):
        tx = g.tx.return_value
        gtx = tx.begin.return_value

        async def work(bound):
            assert bound.g is gtx
            return 'ok'

        assert await neptune.run_transaction(work) == 'ok'
        tx.commit.assert_called_once()
        tx.rollback.assert_not_called()
        assert neptune.g is g

    async def test_rollback(self, neptune, g):
        tx = g.tx.return_value

        async def work(bound):
            raise GraphOperationError('write failed')

        with pytest.raises(TransactionError):
            await neptune.run_transaction(work)
        tx.rollback.assert_called_once()
        tx.commit.assert_not_called()

    async def test_health_check(self, neptune, g):
        assert await neptune.health_check() is True

        g.V.side_effect = RuntimeError('down')
        assert await neptune.health_check() is False
