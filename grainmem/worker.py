"""
Write queue worker: long-polling loop and AWS Lambda SQS handler.
"""

import asyncio
from typing import Any, Dict, List, Optional

from .models.core import BatchResult, QueueMessage
from .services.credit_guard import CreditReservationGuard
from .services.write_consumer import WriteConsumer, summarize_batch
from .utils.api_keys import ApiKeyResolver
from .utils.config import AppConfig, config
from .utils.credit_store import DynamoReservationStore
from .utils.embedding import EmbeddingCache, EmbeddingGenerator
from .utils.logging_config import get_logger
from .utils.opensearch_client import OpenSearchPartitionStore
from .utils.partition_store import PartitionConnectionCache
from .utils.record_store import DynamoWorkspaceKeyStore
from .utils.sqs_client import QueueError, WriteQueueClient

logger = get_logger(__name__)

# Pause after a failed receive before polling again
POLL_ERROR_DELAY = 5.0


def build_key_resolver(app_config: AppConfig = config) -> ApiKeyResolver:
    return ApiKeyResolver(app_config.embedding.platform_api_key, DynamoWorkspaceKeyStore(app_config.record_store))


def build_write_consumer(app_config: AppConfig = config, cache: Optional[EmbeddingCache] = None) -> WriteConsumer:
    """Wire a WriteConsumer to OpenSearch, DynamoDB and the embedding provider."""
    store = OpenSearchPartitionStore(app_config.opensearch)
    generator = EmbeddingGenerator(app_config.embedding, cache=cache)
    guard = CreditReservationGuard(DynamoReservationStore(app_config.credits), app_config.credits)
    return WriteConsumer(PartitionConnectionCache(store),
                         generator,
                         guard,
                         build_key_resolver(app_config),
                         index_prefix=app_config.opensearch.index_prefix)


class QueueWorker:
    """Receives write operations from SQS and deletes the ones applied successfully."""

    def __init__(self, queue: WriteQueueClient, consumer: WriteConsumer):
        self.queue = queue
        self.consumer = consumer
        self._stopping = False

    async def poll_once(self) -> BatchResult:
        """
        Receive one batch, process it and acknowledge the successful messages.

        Failed messages are left on the queue for redelivery.

        Returns:
            Outcome of the batch
        """
        messages = await self.queue.receive_messages()
        if not messages:
            return BatchResult(total=0)

        result = await self.consumer.process_batch(messages)
        failed = set(result.failed_message_ids)
        await self.queue.delete_messages([message for message in messages if message.message_id not in failed])
        return result

    async def run_forever(self) -> None:
        logger.info(f'Write worker polling {self.queue.queue_url}')
        while not self._stopping:
            try:
                await self.poll_once()
            except QueueError as e:
                logger.error(f'Queue polling failed, retrying in {POLL_ERROR_DELAY}s: {e}')
                await asyncio.sleep(POLL_ERROR_DELAY)
        logger.info('Write worker stopped')

    def stop(self) -> None:
        self._stopping = True


def messages_from_event(event: Dict[str, Any]) -> List[QueueMessage]:
    """Queue messages carried by an SQS Lambda event."""
    return [
        QueueMessage(message_id=record.get('messageId') or 'unknown',
                     body=record.get('body'),
                     receipt_handle=record.get('receiptHandle')) for record in event.get('Records', [])
    ]


# Reused across warm Lambda invocations; cached connections are bound to this loop
_lambda_loop: Optional[asyncio.AbstractEventLoop] = None
_lambda_consumer: Optional[WriteConsumer] = None


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    SQS event source handler with partial batch failure reporting.

    Returns:
        `{"batchItemFailures": [{"itemIdentifier": message_id}, ...]}`
    """
    global _lambda_loop, _lambda_consumer
    if _lambda_loop is None or _lambda_loop.is_closed():
        _lambda_loop = asyncio.new_event_loop()
    if _lambda_consumer is None:
        _lambda_consumer = build_write_consumer()

    messages = messages_from_event(event)
    result = _lambda_loop.run_until_complete(_lambda_consumer.process_batch(messages))
    return summarize_batch(result)


async def main() -> None:
    consumer = build_write_consumer()
    worker = QueueWorker(WriteQueueClient(config.queue), consumer)
    try:
        await worker.run_forever()
    finally:
        await consumer.generator.aclose()


if __name__ == '__main__':
    asyncio.run(main())
