"""
Write consumer: applies queued write operations to per-agent, per-grain partitions.
"""

import asyncio
import json
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from ..models.core import BatchResult, FactRecord, QueueMessage, RawFactData
from ..models.messages import WriteOperationMessage
from ..utils.api_keys import ApiKeyResolver, ResolvedApiKey
from ..utils.credit_store import InsufficientCreditsError
from ..utils.embedding import EmbeddingError, EmbeddingGenerator, snippet_cache_key
from ..utils.filters import MATCH_ALL, chunked, ids_filter
from ..utils.logging_config import get_logger
from ..utils.partition_store import PartitionConnection, PartitionConnectionCache, PartitionStoreError, Row, TableNotFoundError
from ..utils.partitions import VECTORS_TABLE, PartitionAddress, resolve_partition
from .credit_guard import CreditReservationGuard, generate_billed_embedding

logger = get_logger(__name__)

# Columns owned by the row itself; metadata keys with these names are not flattened
RESERVED_COLUMNS = frozenset({'id', 'content', 'vector', 'embedding', 'timestamp', 'metadata'})

DELETE_CHUNK_SIZE = 500


class WriteOperationValidationError(Exception):
    """Custom exception for malformed write operation messages."""
    pass


def record_to_row(record: FactRecord) -> Row:
    """Storage row of a fact, with metadata flattened into top-level columns."""
    row: Row = {
        'id': record.id,
        'content': record.content,
        'vector': list(record.embedding),
        'timestamp': record.timestamp,
    }
    for key, value in (record.metadata or {}).items():
        if key in RESERVED_COLUMNS or key.startswith('_'):
            logger.warning(f'Dropping metadata key {key!r} on record {record.id}: clashes with a row column')
            continue
        row[key] = value
    return row


def parse_write_message(body: Optional[str]) -> WriteOperationMessage:
    """
    Parse and validate a queued message body.

    Raises:
        WriteOperationValidationError: If the body is missing, not JSON or fails validation
    """
    if not body:
        raise WriteOperationValidationError('Message body is missing')
    try:
        payload = json.loads(body)
    except json.JSONDecodeError as e:
        raise WriteOperationValidationError(f'Invalid message format: JSON parse error ({e.msg})')
    try:
        return WriteOperationMessage.model_validate(payload)
    except ValidationError as e:
        errors = [f'{".".join(str(part) for part in error["loc"])}: {error["msg"]}' for error in e.errors()]
        raise WriteOperationValidationError(f'Invalid write operation message: {", ".join(errors)}')


class WriteConsumer:
    """Consumes batches of write operations from the partition write queue."""

    def __init__(self,
                 connections: PartitionConnectionCache,
                 generator: EmbeddingGenerator,
                 guard: Optional[CreditReservationGuard],
                 key_resolver: ApiKeyResolver,
                 index_prefix: str = 'vectordb',
                 delete_chunk_size: int = DELETE_CHUNK_SIZE):
        """
        Initialize the consumer.

        Args:
            connections: Partition connection cache
            generator: Embedding generator for raw facts
            guard: Credit guard billing raw fact embeddings, None disables billing
            key_resolver: Embedding API key resolver
            index_prefix: Partition index name prefix
            delete_chunk_size: Maximum ids per delete filter
        """
        self.connections = connections
        self.generator = generator
        self.guard = guard
        self.key_resolver = key_resolver
        self.index_prefix = index_prefix
        self.delete_chunk_size = delete_chunk_size

    async def process_batch(self, messages: List[QueueMessage]) -> BatchResult:
        """
        Process a batch in delivery order, isolating failures per message.

        Args:
            messages: Delivered queue messages

        Returns:
            BatchResult listing the ids of messages to redeliver
        """
        logger.info(f'Received {len(messages)} write operation message(s)')
        result = BatchResult(total=len(messages))

        for message in messages:
            try:
                await self.process_message(message)
                logger.debug(f'Successfully processed message {message.message_id}')
            except Exception as e:
                body_preview = (message.body or 'no body')[:500]
                logger.error(f'Failed to process message {message.message_id}: {type(e).__name__}: {e}')
                logger.debug(f'Message body preview: {body_preview}')
                result.failed_message_ids.append(message.message_id)

        logger.info(f'Batch processing complete: {result.succeeded} succeeded, {len(result.failed_message_ids)} failed')
        return result

    async def process_message(self, message: QueueMessage) -> None:
        """
        Parse, validate and apply one message.

        Raises:
            WriteOperationValidationError: If the message is malformed
            PartitionStoreError: If the partition store fails
        """
        operation = parse_write_message(message.body)
        address = resolve_partition(operation.agent_id, operation.temporal_grain, self.index_prefix)
        logger.debug(f'Processing {operation.operation} for {address.uri} (message {message.message_id})')

        if operation.operation == 'insert':
            records = await self._collect_records(operation)
            await self.execute_insert(address, records)
        elif operation.operation == 'update':
            records = await self._collect_records(operation)
            await self.execute_update(address, records)
        elif operation.operation == 'delete':
            await self.execute_delete(address, operation.data.record_ids or [])
        elif operation.operation == 'purge':
            await self.execute_purge(address)
        else:
            raise WriteOperationValidationError(f'Unknown operation: {operation.operation}')

    async def _collect_records(self, operation: WriteOperationMessage) -> List[FactRecord]:
        records = [payload.to_record() for payload in operation.data.records or []]
        raw_facts = [payload.to_raw_fact() for payload in operation.data.raw_facts or []]
        if raw_facts:
            records.extend(await self.embed_raw_facts(raw_facts, operation.workspace_id, operation.agent_id))
        return records

    async def embed_raw_facts(self, raw_facts: List[RawFactData], workspace_id: str, agent_id: Optional[str] = None) -> List[FactRecord]:
        """
        Embed raw facts concurrently, one billed unit per fact.

        A failed fact is logged and left out; the others still produce records.

        Returns:
            Records for the facts that embedded successfully, in input order
        """
        resolved_key = await self.key_resolver.resolve(workspace_id)
        logger.info(f'Generating embeddings for {len(raw_facts)} raw facts (workspace {workspace_id})')

        results = await asyncio.gather(*(self._embed_fact(fact, workspace_id, agent_id, resolved_key) for fact in raw_facts))
        records = [record for record in results if record is not None]

        logger.info(f'Generated {len(records)} embeddings out of {len(raw_facts)} raw facts')
        return records

    async def _embed_fact(self, fact: RawFactData, workspace_id: str, agent_id: Optional[str],
                          resolved_key: ResolvedApiKey) -> Optional[FactRecord]:
        cache_key = fact.cache_key
        document_id = (fact.metadata or {}).get('documentId')
        if not cache_key and document_id:
            cache_key = snippet_cache_key(workspace_id, str(document_id), fact.content)

        try:
            result = await generate_billed_embedding(self.generator,
                                                     self.guard,
                                                     fact.content,
                                                     resolved_key,
                                                     workspace_id,
                                                     cache_key=cache_key,
                                                     agent_id=agent_id)
        except (EmbeddingError, InsufficientCreditsError) as e:
            logger.error(f'Failed to generate embedding for fact {fact.id}: {type(e).__name__}: {e}')
            return None

        return FactRecord(id=fact.id,
                          content=fact.content,
                          embedding=result.embedding,
                          timestamp=fact.timestamp,
                          metadata=fact.metadata)

    async def _connect(self, address: PartitionAddress) -> PartitionConnection:
        return await self.connections.get(address)

    async def execute_insert(self, address: PartitionAddress, records: List[FactRecord]) -> None:
        """Add records to the partition, creating its table from the first batch."""
        if not records:
            logger.info(f'No records to insert into {address.uri}')
            return

        rows = [record_to_row(record) for record in records]
        logger.info(f'Inserting {len(rows)} records into {address.uri}')
        logger.debug(f'Record IDs: {", ".join(record.id for record in records)}')

        db = await self._connect(address)
        try:
            table = await db.open_table(VECTORS_TABLE)
        except TableNotFoundError:
            await db.create_table(VECTORS_TABLE, rows)
            logger.info(f'Created table {VECTORS_TABLE!r} in {address.uri}')
            return
        await self._evicting(address, table.add(rows))

    async def execute_update(self, address: PartitionAddress, records: List[FactRecord]) -> None:
        """Replace records by id: backend upsert when available, else delete then add."""
        if not records:
            logger.info(f'No records to update in {address.uri}')
            return

        rows = [record_to_row(record) for record in records]
        logger.info(f'Updating {len(rows)} records in {address.uri}')

        db = await self._connect(address)
        try:
            table = await db.open_table(VECTORS_TABLE)
        except TableNotFoundError:
            await db.create_table(VECTORS_TABLE, rows)
            logger.info(f'Created table {VECTORS_TABLE!r} in {address.uri} for update')
            return

        if table.supports_upsert:
            await self._evicting(address, table.upsert(rows))
            return
        for chunk in chunked([record.id for record in records], self.delete_chunk_size):
            await self._evicting(address, table.delete(ids_filter(chunk)))
        await self._evicting(address, table.add(rows))

    async def execute_delete(self, address: PartitionAddress, record_ids: List[str]) -> None:
        """Remove records by id; unknown ids and a missing table are not errors."""
        if not record_ids:
            return

        db = await self._connect(address)
        try:
            table = await db.open_table(VECTORS_TABLE)
        except TableNotFoundError:
            logger.info(f'No table in {address.uri}, nothing to delete')
            return

        deleted = 0
        for chunk in chunked(list(dict.fromkeys(record_ids)), self.delete_chunk_size):
            deleted += await self._evicting(address, table.delete(ids_filter(chunk)))
        logger.info(f'Deleted {deleted} of {len(record_ids)} requested records from {address.uri}')

    async def execute_purge(self, address: PartitionAddress) -> None:
        """Remove every record of the partition."""
        db = await self._connect(address)
        try:
            table = await db.open_table(VECTORS_TABLE)
        except TableNotFoundError:
            logger.info(f'No table in {address.uri}, nothing to purge')
            return

        deleted = await self._evicting(address, table.delete(MATCH_ALL))
        logger.info(f'Purged {deleted} records from {address.uri}')

    async def _evicting(self, address: PartitionAddress, operation) -> Any:
        # A failed write may leave the cached connection unusable
        try:
            return await operation
        except PartitionStoreError:
            self.connections.evict(address)
            raise


def summarize_batch(result: BatchResult) -> Dict[str, Any]:
    """Partial batch failure response understood by SQS event source mappings."""
    return {'batchItemFailures': [{'itemIdentifier': message_id} for message_id in result.failed_message_ids]}
