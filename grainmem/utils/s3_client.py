"""
Amazon S3 client for workspace document content.
"""

import asyncio
from typing import Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .config import S3Config
from .logging_config import get_logger

logger = get_logger(__name__)


class ObjectStoreError(Exception):
    """Custom exception for object store errors."""

    def __init__(self, message: str, key: Optional[str] = None):
        super().__init__(message)
        self.key = key


class ObjectNotFoundError(ObjectStoreError):
    """No object is stored under the key."""
    pass


def normalize_folder_path(folder_path: Optional[str]) -> str:
    """
    Strip surrounding whitespace and slashes from a folder path.

    Raises:
        ValueError: If the path tries to traverse upwards
    """
    if not folder_path:
        return ''
    normalized = folder_path.strip().strip('/')
    if '..' in normalized:
        raise ValueError('Invalid folder path: path traversal not allowed')
    return normalized


def build_document_key(workspace_id: str, folder_path: Optional[str], filename: str) -> str:
    """Storage key of a workspace document: `workspaces/{ws}/documents/[{folder}/]{filename}`."""
    normalized = normalize_folder_path(folder_path)
    if normalized:
        return f'workspaces/{workspace_id}/documents/{normalized}/{filename}'
    return f'workspaces/{workspace_id}/documents/{filename}'


class S3ObjectStore:
    """Read access to document bytes in one bucket."""

    def __init__(self, config: S3Config, client=None):
        """
        Initialize S3 client.

        Args:
            config: S3Config instance with bucket and region
            client: boto3 S3 client, created from config if None
        """
        self.config = config
        self.bucket = config.bucket
        if client is None:
            client = boto3.client('s3', region_name=config.region, endpoint_url=config.endpoint or None)
        self.s3 = client

        logger.info(f'Initialized S3 object store for bucket: {self.bucket}')

    def _get(self, key: str) -> bytes:
        try:
            response = self.s3.get_object(Bucket=self.bucket, Key=key)
            return response['Body'].read()
        except ClientError as e:
            code = e.response.get('Error', {}).get('Code')
            if code in ('NoSuchKey', '404', 'NotFound'):
                raise ObjectNotFoundError(f'Document not found: {key}', key)
            logger.error(f'Error fetching s3://{self.bucket}/{key}: {e}')
            raise ObjectStoreError(f'Failed to fetch document: {e}', key)
        except BotoCoreError as e:
            logger.error(f'Error fetching s3://{self.bucket}/{key}: {e}')
            raise ObjectStoreError(f'Failed to fetch document: {e}', key)

    async def get(self, key: str) -> bytes:
        """
        Fetch an object's bytes.

        Raises:
            ObjectNotFoundError: If the key does not exist
            ObjectStoreError: For any other S3 failure
        """
        return await asyncio.to_thread(self._get, key)

    def health_check(self) -> bool:
        try:
            self.s3.head_bucket(Bucket=self.bucket)
            return True
        except (ClientError, BotoCoreError) as e:
            logger.error(f'S3 health check failed: {e}')
            return False
