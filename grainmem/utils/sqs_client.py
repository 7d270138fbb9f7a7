"""
Amazon SQS FIFO client for partition write operations.
"""

import asyncio
import json
import uuid
from typing import List

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from ..models.core import QueueMessage
from ..models.messages import WriteOperationMessage
from .config import QueueConfig
from .logging_config import get_logger
from .partitions import message_group_id

logger = get_logger(__name__)


class QueueError(Exception):
    """Custom exception for write queue errors."""
    pass


class WriteQueueClient:
    """Producer and consumer side of the write operation queue."""

    def __init__(self, config: QueueConfig, client=None):
        """
        Initialize SQS client.

        Args:
            config: QueueConfig instance with queue URL and polling parameters
            client: boto3 SQS client, created from config if None
        """
        self.config = config
        self.queue_url = config.queue_url
        self.sqs = client if client is not None else boto3.client('sqs', region_name=config.region)

        logger.info(f'Initialized SQS write queue client: {self.queue_url}')

    def _send(self, message: WriteOperationMessage) -> str:
        if not self.queue_url:
            raise QueueError('WRITE_QUEUE_URL is not set')
        try:
            response = self.sqs.send_message(QueueUrl=self.queue_url,
                                             MessageBody=json.dumps(message.to_wire()),
                                             MessageGroupId=message_group_id(message.agent_id, message.temporal_grain),
                                             MessageDeduplicationId=str(uuid.uuid4()))
        except (ClientError, BotoCoreError) as e:
            logger.error(f'Error sending {message.operation} for {message.agent_id}/{message.temporal_grain}: {e}')
            raise QueueError(f'Failed to send write operation: {e}')
        return response['MessageId']

    async def send_write_operation(self, message: WriteOperationMessage) -> str:
        """
        Queue a write operation on its partition's message group.

        Args:
            message: Validated write operation

        Returns:
            SQS message id

        Raises:
            QueueError: If the queue rejects the message
        """
        message_id = await asyncio.to_thread(self._send, message)
        logger.info(f'Queued {message.operation} for {message.agent_id}/{message.temporal_grain} (message {message_id})')
        return message_id

    def _receive(self) -> List[QueueMessage]:
        try:
            response = self.sqs.receive_message(QueueUrl=self.queue_url,
                                                MaxNumberOfMessages=min(self.config.max_messages, 10),
                                                WaitTimeSeconds=self.config.wait_time_seconds)
        except (ClientError, BotoCoreError) as e:
            logger.error(f'Error receiving from {self.queue_url}: {e}')
            raise QueueError(f'Failed to receive messages: {e}')
        return [
            QueueMessage(message_id=item['MessageId'], body=item.get('Body'), receipt_handle=item.get('ReceiptHandle'))
            for item in response.get('Messages', [])
        ]

    async def receive_messages(self) -> List[QueueMessage]:
        return await asyncio.to_thread(self._receive)

    def _delete(self, messages: List[QueueMessage]) -> None:
        entries = [{'Id': str(i), 'ReceiptHandle': message.receipt_handle} for i, message in enumerate(messages)]
        try:
            response = self.sqs.delete_message_batch(QueueUrl=self.queue_url, Entries=entries)
        except (ClientError, BotoCoreError) as e:
            logger.error(f'Error deleting messages from {self.queue_url}: {e}')
            raise QueueError(f'Failed to delete messages: {e}')
        for failure in response.get('Failed', []):
            logger.warning(f'Failed to delete message entry {failure.get("Id")}: {failure.get("Message")}')

    async def delete_messages(self, messages: List[QueueMessage]) -> None:
        if not messages:
            return
        await asyncio.to_thread(self._delete, messages)
