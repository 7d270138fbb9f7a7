"""
Document snippet indexing into a workspace's docs partition via the write queue.
"""

from typing import List

from ..models.core import TemporalGrain
from ..models.messages import RawFactPayload, WriteOperationData, WriteOperationMessage
from ..utils.filters import all_of, eq, exclude, ids_filter
from ..utils.logging_config import get_logger
from ..utils.sqs_client import WriteQueueClient
from ..utils.timestamp_utils import utc_now_iso
from .document_search import DEFAULT_CHUNK_SIZE, split_document_into_snippets
from .read_client import MAX_QUERY_LIMIT, ReadClient

logger = get_logger(__name__)

MAX_DOCUMENT_SNIPPETS = 10000


class DocumentTooLargeError(Exception):
    """Custom exception for documents that split into too many snippets."""

    def __init__(self, document_name: str, snippet_count: int, max_snippets: int):
        super().__init__(f'Document "{document_name}" exceeds maximum size limit. Document has {snippet_count} snippets, '
                         f'but maximum allowed is {max_snippets}. Please split the document into smaller files.')
        self.snippet_count = snippet_count
        self.max_snippets = max_snippets


def snippet_id(document_id: str, index: int) -> str:
    return f'{document_id}:{index}'


class DocumentIndexer:
    """Queues document snippets for embedding into the docs grain.

    The docs partition of a workspace is addressed with the workspace ID as agent ID.
    """

    def __init__(self,
                 queue: WriteQueueClient,
                 read_client: ReadClient,
                 chunk_size: int = DEFAULT_CHUNK_SIZE,
                 max_snippets: int = MAX_DOCUMENT_SNIPPETS,
                 query_limit: int = MAX_QUERY_LIMIT):
        self.queue = queue
        self.read_client = read_client
        self.chunk_size = chunk_size
        self.max_snippets = max_snippets
        self.query_limit = query_limit

    async def index_document(self, workspace_id: str, document_id: str, content: str, document_name: str,
                             folder_path: str = '') -> int:
        """
        Split a document and queue its snippets as raw facts.

        Args:
            workspace_id: Workspace ID (agent ID of the docs partition)
            document_id: Document ID
            content: Document text
            document_name: Display name stored with every snippet
            folder_path: Folder stored with every snippet

        Returns:
            Number of snippets queued

        Raises:
            DocumentTooLargeError: If the document has more than max_snippets snippets
            QueueError: If the queue rejects the message
        """
        snippets = split_document_into_snippets(content, self.chunk_size)
        if not snippets:
            logger.info(f'No snippets to index for document {document_id}')
            return 0

        if len(snippets) > self.max_snippets:
            error = DocumentTooLargeError(document_name, len(snippets), self.max_snippets)
            logger.error(f'Document size validation failed for {document_id}: {error}')
            raise error

        timestamp = utc_now_iso()
        raw_facts = [
            RawFactPayload(id=snippet_id(document_id, index),
                           content=text,
                           timestamp=timestamp,
                           metadata={
                               'documentId': document_id,
                               'documentName': document_name,
                               'folderPath': folder_path,
                               'workspaceId': workspace_id,
                           }) for index, text in enumerate(snippets)
        ]

        message = WriteOperationMessage(operation='insert',
                                        agent_id=workspace_id,
                                        temporal_grain=TemporalGrain.DOCS,
                                        workspace_id=workspace_id,
                                        data=WriteOperationData(raw_facts=raw_facts))
        await self.queue.send_write_operation(message)

        logger.info(f'Queued {len(raw_facts)} snippets for document {document_id} in workspace {workspace_id}')
        return len(raw_facts)

    async def delete_document_snippets(self, workspace_id: str, document_id: str) -> int:
        """
        Queue deletion of every snippet of a document.

        Failures are logged and swallowed so document deletion is never blocked.

        Returns:
            Number of snippet ids queued for deletion
        """
        try:
            record_ids = await self._collect_snippet_ids(workspace_id, document_id)
            if not record_ids:
                logger.info(f'No snippets found to delete for document {document_id}')
                return 0

            message = WriteOperationMessage(operation='delete',
                                            agent_id=workspace_id,
                                            temporal_grain=TemporalGrain.DOCS,
                                            workspace_id=workspace_id,
                                            data=WriteOperationData(record_ids=record_ids))
            await self.queue.send_write_operation(message)

            logger.info(f'Queued deletion of {len(record_ids)} snippets for document {document_id}')
            return len(record_ids)
        except Exception as e:
            logger.error(f'Failed to delete snippets for document {document_id}: {type(e).__name__}: {e}')
            return 0

    async def _collect_snippet_ids(self, workspace_id: str, document_id: str) -> List[str]:
        # Each query excludes the ids already collected, so successive batches page through the document
        document_filter = eq('documentId', document_id)
        seen = set()
        record_ids: List[str] = []
        max_batches = -(-self.max_snippets // self.query_limit)

        for _ in range(max_batches):
            query_filter = all_of(document_filter, exclude(ids_filter(record_ids))) if record_ids else document_filter
            results = await self.read_client.query(workspace_id, TemporalGrain.DOCS, filter=query_filter, limit=self.query_limit)
            new_ids = [result.id for result in results if result.id not in seen]
            seen.update(new_ids)
            record_ids.extend(new_ids)
            if len(results) < self.query_limit or not new_ids:
                return record_ids

        logger.warning(f'Reached maximum batch limit ({max_batches}) collecting snippet ids for document {document_id}; '
                       f'collected {len(record_ids)}, there may be more')
        return record_ids

    async def update_document(self, workspace_id: str, document_id: str, content: str, document_name: str,
                              folder_path: str = '') -> int:
        """Replace a document's snippets: queue deletion of the old ones, then index the new content."""
        await self.delete_document_snippets(workspace_id, document_id)
        return await self.index_document(workspace_id, document_id, content, document_name, folder_path)

