"""Tests for queueing document snippets into the docs grain."""

import pytest

from conftest import mock_vector
from grainmem.models.core import QueryResult, TemporalGrain
from grainmem.services.document_indexing import DocumentIndexer, DocumentTooLargeError
from grainmem.services.read_client import ReadClient, VectorQueryError
from grainmem.utils.partitions import resolve_partition
from grainmem.utils.sqs_client import QueueError

CONTENT = 'First paragraph.\n\nSecond paragraph.'


class FakeQueue:

    def __init__(self, error=None):
        self.sent = []
        self.error = error

    async def send_write_operation(self, message):
        if self.error:
            raise self.error
        self.sent.append(message)
        return f'msg-{len(self.sent)}'


class ScriptedReadClient:
    """Returns one scripted batch of snippet ids per query."""

    def __init__(self, batches, error=None):
        self.batches = list(batches)
        self.error = error
        self.calls = []

    async def query(self, agent_id, grain, vector=None, filter=None, limit=None, temporal_filter=None):
        self.calls.append({'agent_id': agent_id, 'grain': grain, 'filter': filter, 'limit': limit})
        if self.error:
            raise self.error
        ids = self.batches.pop(0) if self.batches else []
        return [QueryResult(id=record_id, content='', embedding=[], timestamp='', metadata={}) for record_id in ids]


@pytest.mark.asyncio
async def test_index_document_queues_raw_facts():
    queue = FakeQueue()
    indexer = DocumentIndexer(queue, ScriptedReadClient([]), chunk_size=20)

    count = await indexer.index_document('ws-1', 'doc-1', CONTENT, 'Guide', folder_path='manuals')

    assert count == 2
    message = queue.sent[0]
    assert message.operation == 'insert'
    assert message.agent_id == 'ws-1'
    assert message.workspace_id == 'ws-1'
    assert message.temporal_grain is TemporalGrain.DOCS
    facts = message.data.raw_facts
    assert [fact.id for fact in facts] == ['doc-1:0', 'doc-1:1']
    assert [fact.content for fact in facts] == ['First paragraph.', 'Second paragraph.']
    assert facts[0].metadata == {'documentId': 'doc-1', 'documentName': 'Guide', 'folderPath': 'manuals', 'workspaceId': 'ws-1'}
    assert message.to_wire()['data']['rawFacts'][1]['id'] == 'doc-1:1'


@pytest.mark.asyncio
async def test_empty_document_queues_nothing():
    queue = FakeQueue()
    indexer = DocumentIndexer(queue, ScriptedReadClient([]))

    assert await indexer.index_document('ws-1', 'doc-1', '   ', 'Empty') == 0
    assert queue.sent == []


@pytest.mark.asyncio
async def test_oversized_document_is_rejected():
    queue = FakeQueue()
    indexer = DocumentIndexer(queue, ScriptedReadClient([]), chunk_size=20, max_snippets=1)

    with pytest.raises(DocumentTooLargeError, match='maximum allowed is 1'):
        await indexer.index_document('ws-1', 'doc-1', CONTENT, 'Guide')
    assert queue.sent == []


@pytest.mark.asyncio
async def test_queue_errors_propagate_from_indexing():
    indexer = DocumentIndexer(FakeQueue(error=QueueError('WRITE_QUEUE_URL is not set')), ScriptedReadClient([]))

    with pytest.raises(QueueError):
        await indexer.index_document('ws-1', 'doc-1', CONTENT, 'Guide')


@pytest.mark.asyncio
async def test_delete_collects_snippet_ids():
    queue = FakeQueue()
    reader = ScriptedReadClient([['doc-1:0', 'doc-1:1']])
    indexer = DocumentIndexer(queue, reader)

    assert await indexer.delete_document_snippets('ws-1', 'doc-1') == 2

    message = queue.sent[0]
    assert message.operation == 'delete'
    assert message.temporal_grain is TemporalGrain.DOCS
    assert message.data.record_ids == ['doc-1:0', 'doc-1:1']
    assert reader.calls[0] == {'agent_id': 'ws-1', 'grain': TemporalGrain.DOCS, 'filter': 'documentId:"doc-1"', 'limit': 1000}


@pytest.mark.asyncio
async def test_delete_pages_through_results():
    queue = FakeQueue()
    reader = ScriptedReadClient([['a', 'b'], ['c'], []])
    indexer = DocumentIndexer(queue, reader, max_snippets=10, query_limit=2)

    assert await indexer.delete_document_snippets('ws-1', 'doc-1') == 3
    assert queue.sent[0].data.record_ids == ['a', 'b', 'c']


@pytest.mark.asyncio
async def test_later_batches_exclude_collected_ids():
    queue = FakeQueue()
    reader = ScriptedReadClient([['a', 'b'], ['c']])
    indexer = DocumentIndexer(queue, reader, max_snippets=10, query_limit=2)

    await indexer.delete_document_snippets('ws-1', 'doc-1')

    assert reader.calls[1]['filter'] == '(documentId:"doc-1") AND (NOT id:("a" OR "b"))'


@pytest.mark.asyncio
async def test_repeated_batch_stops_collection():
    queue = FakeQueue()
    reader = ScriptedReadClient([['a', 'b'], ['a', 'b'], ['c']])
    indexer = DocumentIndexer(queue, reader, max_snippets=10, query_limit=2)

    assert await indexer.delete_document_snippets('ws-1', 'doc-1') == 2
    assert len(reader.calls) == 2


@pytest.mark.asyncio
async def test_delete_collects_every_snippet_beyond_one_page(partition_store):
    docs = resolve_partition('ws-1', 'docs')
    rows = [{'id': f'doc-1:{i}', 'content': f'snippet {i}', 'vector': mock_vector(f'snippet {i}'), 'timestamp': '', 'documentId': 'doc-1'}
            for i in range(5)]
    rows.append({'id': 'doc-2:0', 'content': 'other', 'vector': mock_vector('other'), 'timestamp': '', 'documentId': 'doc-2'})
    partition_store.seed(docs, rows)
    queue = FakeQueue()
    indexer = DocumentIndexer(queue, ReadClient(partition_store), max_snippets=10, query_limit=2)

    assert await indexer.delete_document_snippets('ws-1', 'doc-1') == 5
    assert sorted(queue.sent[0].data.record_ids) == [f'doc-1:{i}' for i in range(5)]


@pytest.mark.asyncio
async def test_delete_without_snippets_queues_nothing():
    queue = FakeQueue()
    indexer = DocumentIndexer(queue, ScriptedReadClient([]))

    assert await indexer.delete_document_snippets('ws-1', 'doc-1') == 0
    assert queue.sent == []


@pytest.mark.asyncio
async def test_delete_never_raises():
    indexer = DocumentIndexer(FakeQueue(), ScriptedReadClient([], error=VectorQueryError('unreachable')))

    assert await indexer.delete_document_snippets('ws-1', 'doc-1') == 0


@pytest.mark.asyncio
async def test_update_document_deletes_then_indexes():
    queue = FakeQueue()
    indexer = DocumentIndexer(queue, ScriptedReadClient([['doc-1:0']]), chunk_size=20)

    assert await indexer.update_document('ws-1', 'doc-1', CONTENT, 'Guide') == 2
    assert [message.operation for message in queue.sent] == ['delete', 'insert']
