"""
DynamoDB adapters for workspace document metadata and workspace-owned API keys.
"""

import asyncio
from typing import Any, Dict, List, Optional, Protocol

import boto3
from boto3.dynamodb.conditions import Key
from botocore.exceptions import BotoCoreError, ClientError

from ..models.core import WorkspaceDocument
from .config import RecordStoreConfig
from .logging_config import get_logger

logger = get_logger(__name__)


class RecordStoreError(Exception):
    """Custom exception for record store errors."""
    pass


class DocumentRecordStore(Protocol):

    async def list_documents(self, workspace_id: str) -> List[WorkspaceDocument]:
        ...


def document_from_item(item: Dict[str, Any]) -> WorkspaceDocument:
    """Build a WorkspaceDocument from a `workspace-documents/{ws}/{id}` item."""
    pk = item['pk']
    document_id = pk.rsplit('/', 1)[-1]
    return WorkspaceDocument(id=document_id,
                             name=item.get('name') or item.get('filename') or document_id,
                             filename=item.get('filename', ''),
                             storage_key=item.get('s3Key', ''),
                             folder_path=item.get('folderPath') or '')


class DynamoDocumentRecordStore:
    """Workspace document listing from the workspace-document table."""

    def __init__(self, config: RecordStoreConfig, resource=None):
        """
        Initialize DynamoDB table.

        Args:
            config: RecordStoreConfig instance with table names
            resource: boto3 DynamoDB resource, created from config if None
        """
        self.config = config
        dynamodb = resource if resource is not None else boto3.resource('dynamodb', region_name=config.region)
        self.table = dynamodb.Table(config.documents_table)

        logger.info(f'Initialized DynamoDB document record store: {config.documents_table}')

    def _list_documents(self, workspace_id: str) -> List[WorkspaceDocument]:
        documents = []
        query_args = {
            'IndexName': self.config.documents_index,
            'KeyConditionExpression': Key('workspaceId').eq(workspace_id),
        }
        try:
            while True:
                response = self.table.query(**query_args)
                documents.extend(document_from_item(item) for item in response.get('Items', []))
                last_key = response.get('LastEvaluatedKey')
                if not last_key:
                    break
                query_args['ExclusiveStartKey'] = last_key
        except (ClientError, BotoCoreError) as e:
            logger.error(f'Error listing documents for workspace {workspace_id}: {e}')
            raise RecordStoreError(f'Failed to list documents: {e}')
        return documents

    async def list_documents(self, workspace_id: str) -> List[WorkspaceDocument]:
        """
        List every document of a workspace.

        Raises:
            RecordStoreError: If the query fails
        """
        documents = await asyncio.to_thread(self._list_documents, workspace_id)
        logger.debug(f'Found {len(documents)} documents for workspace {workspace_id}')
        return documents


class DynamoWorkspaceKeyStore:
    """Workspace-owned provider keys from the workspace-api-key table."""

    def __init__(self, config: RecordStoreConfig, resource=None):
        self.config = config
        dynamodb = resource if resource is not None else boto3.resource('dynamodb', region_name=config.region)
        self.table = dynamodb.Table(config.api_keys_table)

    def _get_key(self, workspace_id: str, provider: str) -> Optional[str]:
        try:
            response = self.table.get_item(Key={'pk': f'workspace-api-keys/{workspace_id}/{provider}', 'sk': 'key'})
        except (ClientError, BotoCoreError) as e:
            logger.error(f'Error reading {provider} key for workspace {workspace_id}: {e}')
            raise RecordStoreError(f'Failed to read workspace API key: {e}')
        item = response.get('Item') or {}
        return item.get('key') or None

    async def get_workspace_api_key(self, workspace_id: str, provider: str) -> Optional[str]:
        return await asyncio.to_thread(self._get_key, workspace_id, provider)
