"""
Workspace document indexing and semantic search.

Documents are fetched from the object store, split into snippets and embedded
into the shared embedding cache. Searches rank the cached snippet embeddings of
a workspace against the query embedding by cosine similarity. Indexing is
single-flight per workspace within one process.
"""

import asyncio
import math
import re
import time
from typing import Dict, List, Optional, Sequence

from ..models.core import DocumentCacheEntry, IndexingReport, SearchResult, WorkspaceDocument
from ..utils.api_keys import ApiKeyResolver, ResolvedApiKey
from ..utils.cancellation import CancellationToken, OperationCancelledError, run_cancellable
from ..utils.config import DocumentSearchConfig
from ..utils.embedding import EmbeddingError, EmbeddingGenerator, snippet_cache_key
from ..utils.logging_config import get_logger
from ..utils.record_store import DocumentRecordStore
from ..utils.s3_client import ObjectStoreError, build_document_key
from .credit_guard import CreditReservationGuard, generate_billed_embedding

logger = get_logger(__name__)

DEFAULT_CHUNK_SIZE = 2000

_PARAGRAPH_BREAK = re.compile(r'\n\s*\n')


def split_document_into_snippets(content: str, chunk_size: int = DEFAULT_CHUNK_SIZE) -> List[str]:
    """
    Split document text into snippets of roughly chunk_size characters.

    Blank-line delimited paragraphs are packed together, joined by a blank line,
    until the next one would overflow the chunk. A paragraph longer than a chunk
    on its own is cut at the last sentence end or line break past the middle of
    the chunk, or hard-cut at the chunk boundary when there is none.

    Args:
        content: Document text
        chunk_size: Target snippet size in characters

    Returns:
        Non-empty snippets in document order
    """
    if not content or not content.strip():
        return []

    paragraphs = [paragraph.strip() for paragraph in _PARAGRAPH_BREAK.split(content)]
    paragraphs = [paragraph for paragraph in paragraphs if paragraph]

    snippets: List[str] = []
    current: List[str] = []
    current_length = 0

    for paragraph in paragraphs:
        if len(paragraph) > chunk_size:
            if current:
                snippets.append('\n\n'.join(current))
                current = []
                current_length = 0
            snippets.extend(_split_long_paragraph(paragraph, chunk_size))
            continue

        separator_length = 2 if current else 0
        if current and current_length + separator_length + len(paragraph) > chunk_size:
            snippets.append('\n\n'.join(current))
            current = [paragraph]
            current_length = len(paragraph)
        else:
            current.append(paragraph)
            current_length += separator_length + len(paragraph)

    if current:
        snippets.append('\n\n'.join(current))

    return [snippet for snippet in snippets if snippet]


def _split_long_paragraph(paragraph: str, chunk_size: int) -> List[str]:
    chunks = []
    start = 0
    length = len(paragraph)
    while start < length:
        end = start + chunk_size
        if end < length:
            break_point = max(paragraph.rfind('.', start, end), paragraph.rfind('\n', start, end))
            if break_point > start + chunk_size * 0.5:
                end = break_point + 1
        chunk = paragraph[start:end].strip()
        if chunk:
            chunks.append(chunk)
        start = end
    return chunks


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """
    Cosine similarity of two vectors.

    Returns:
        Similarity in [-1, 1]; 0 when either vector has zero magnitude

    Raises:
        ValueError: If the vectors differ in length
    """
    if len(a) != len(b):
        raise ValueError('Vectors must have the same length')

    dot_product = 0.0
    magnitude_a = 0.0
    magnitude_b = 0.0
    for x, y in zip(a, b):
        dot_product += x * y
        magnitude_a += x * x
        magnitude_b += y * y

    magnitude_a = math.sqrt(magnitude_a)
    magnitude_b = math.sqrt(magnitude_b)
    if magnitude_a == 0 or magnitude_b == 0:
        return 0.0
    return dot_product / (magnitude_a * magnitude_b)


class DocumentCache:
    """Fetched document content and snippets, keyed `{workspace}:{document}`."""

    def __init__(self):
        self._entries: Dict[str, DocumentCacheEntry] = {}

    @staticmethod
    def key(workspace_id: str, document_id: str) -> str:
        return f'{workspace_id}:{document_id}'

    def get(self, workspace_id: str, document_id: str) -> Optional[DocumentCacheEntry]:
        return self._entries.get(self.key(workspace_id, document_id))

    def set(self, workspace_id: str, document_id: str, entry: DocumentCacheEntry) -> None:
        self._entries[self.key(workspace_id, document_id)] = entry

    def clear_workspace(self, workspace_id: str) -> int:
        prefix = f'{workspace_id}:'
        keys = [key for key in self._entries if key.startswith(prefix)]
        for key in keys:
            del self._entries[key]
        return len(keys)

    def __len__(self) -> int:
        return len(self._entries)


class DocumentSearchService:
    """Semantic search over a workspace's documents."""

    def __init__(self,
                 record_store: DocumentRecordStore,
                 object_store,
                 generator: EmbeddingGenerator,
                 key_resolver: ApiKeyResolver,
                 config: DocumentSearchConfig,
                 guard: Optional[CreditReservationGuard] = None,
                 document_cache: Optional[DocumentCache] = None):
        """
        Initialize the search service.

        Args:
            record_store: Lists the documents of a workspace
            object_store: Fetches document bytes by key
            generator: Embedding generator; its cache holds snippet embeddings
            key_resolver: Embedding API key resolver
            config: DocumentSearchConfig with chunk size, timeout and default top N
            guard: Credit guard billing embeddings, None disables billing
            document_cache: Document content cache
        """
        self.record_store = record_store
        self.object_store = object_store
        self.generator = generator
        self.key_resolver = key_resolver
        self.config = config
        self.guard = guard
        self.document_cache = document_cache if document_cache is not None else DocumentCache()
        self._indexing: Dict[str, 'asyncio.Task[IndexingReport]'] = {}

    def is_indexing(self, workspace_id: str) -> bool:
        return workspace_id in self._indexing

    async def search_documents(self, workspace_id: str, query: str, top_n: Optional[int] = None) -> List[SearchResult]:
        """
        Rank workspace document snippets against a query.

        Args:
            workspace_id: Workspace ID
            query: Natural language query
            top_n: Maximum results, config default if None

        Returns:
            Up to top_n results, most similar first

        Raises:
            EmbeddingError: If the query embedding cannot be produced
        """
        if not query or not query.strip():
            return []

        resolved_key = await self.key_resolver.resolve(workspace_id)
        try:
            result = await generate_billed_embedding(self.generator, self.guard, query.strip(), resolved_key, workspace_id)
        except EmbeddingError as e:
            logger.error(f'Failed to generate query embedding for workspace {workspace_id}: {e}')
            raise

        report = await self.ensure_index(workspace_id)
        if report.timed_out:
            logger.warning(f'Searching partial index for workspace {workspace_id}: '
                           f'{report.snippets_unprocessed} snippets were not embedded before the timeout')

        limit = top_n if top_n is not None else self.config.default_top_n
        return self._rank(workspace_id, report.document_ids, result.embedding, limit)

    async def ensure_index(self, workspace_id: str) -> IndexingReport:
        """
        Run an indexing pass, or join the pass already running for the workspace.

        Cancelling a caller does not cancel a pass other callers are waiting on.

        Returns:
            Report of the pass
        """
        task = self._indexing.get(workspace_id)
        if task is None:
            task = asyncio.ensure_future(self._run_indexing(workspace_id))
            self._indexing[workspace_id] = task
        else:
            logger.debug(f'Joining in-flight indexing for workspace {workspace_id}')
        return await asyncio.shield(task)

    async def _run_indexing(self, workspace_id: str) -> IndexingReport:
        try:
            return await self._perform_indexing(workspace_id)
        except Exception as e:
            logger.error(f'Error during indexing for workspace {workspace_id}: {e}')
            raise
        finally:
            if self._indexing.get(workspace_id) is asyncio.current_task():
                del self._indexing[workspace_id]

    async def _perform_indexing(self, workspace_id: str) -> IndexingReport:
        report = IndexingReport(workspace_id=workspace_id)
        documents = await self.record_store.list_documents(workspace_id)
        report.documents_total = len(documents)
        if not documents:
            return report

        timeout = self.config.indexing_timeout_seconds
        token = CancellationToken()
        timer = asyncio.get_running_loop().call_later(timeout, token.cancel,
                                                      f'Indexing timeout reached ({timeout}s) for workspace: {workspace_id}')
        try:
            pending = []
            pending_keys = set()
            for document in documents:
                try:
                    entry = await self._load_document(workspace_id, document, token)
                except Exception as e:
                    logger.error(f'Failed to load document {document.name} ({document.id}): {type(e).__name__}: {e}')
                    entry = None
                if entry is None:
                    report.documents_skipped.append(document.id)
                    continue
                report.document_ids.append(document.id)
                for snippet_index, text in enumerate(entry.snippets):
                    cache_key = snippet_cache_key(workspace_id, document.id, text)
                    # Repeated snippets share a cache key and are embedded once
                    if cache_key in pending_keys or self.generator.cache.has(cache_key):
                        continue
                    pending_keys.add(cache_key)
                    pending.append((document, snippet_index, text, cache_key))

            report.snippets_pending = len(pending)
            if pending and not token.cancelled:
                resolved_key = await self.key_resolver.resolve(workspace_id)
                outcomes = await asyncio.gather(*(self._embed_snippet(workspace_id, document, snippet_index, text, cache_key,
                                                                      resolved_key, token)
                                                  for document, snippet_index, text, cache_key in pending))
                report.snippets_embedded = outcomes.count('embedded')
                report.snippets_failed = outcomes.count('failed')
                report.snippets_unprocessed = outcomes.count('unprocessed')
            else:
                report.snippets_unprocessed = len(pending)
            report.timed_out = token.cancelled
        finally:
            timer.cancel()

        if report.timed_out:
            logger.error(f'{token.reason}. Embedded {report.snippets_embedded} snippets, '
                         f'{report.snippets_failed} failed, {report.snippets_unprocessed} unprocessed')
            if report.documents_skipped:
                logger.error(f'Unprocessed documents: {", ".join(report.documents_skipped)}')
        else:
            logger.info(f'Indexed workspace {workspace_id}: {len(report.document_ids)}/{report.documents_total} documents, '
                        f'{report.snippets_embedded} snippets embedded, {report.snippets_failed} failed')
        return report

    async def _load_document(self, workspace_id: str, document: WorkspaceDocument,
                             token: CancellationToken) -> Optional[DocumentCacheEntry]:
        cached = self.document_cache.get(workspace_id, document.id)
        if cached is not None:
            return cached
        if token.cancelled:
            return None

        try:
            content = await self._fetch_document(workspace_id, document, token)
        except OperationCancelledError:
            return None
        if content is None:
            return None

        text = content.decode('utf-8', errors='replace')
        entry = DocumentCacheEntry(content=text,
                                   snippets=split_document_into_snippets(text, self.config.chunk_size),
                                   fetched_at=time.time(),
                                   document_name=document.name,
                                   folder_path=document.folder_path)
        self.document_cache.set(workspace_id, document.id, entry)
        return entry

    async def _fetch_document(self, workspace_id: str, document: WorkspaceDocument, token: CancellationToken) -> Optional[bytes]:
        try:
            return await run_cancellable(self.object_store.get(document.storage_key), token)
        except ObjectStoreError as e:
            logger.error(f'Failed to fetch document {document.name} (key {e.key or document.storage_key}): {e}')

        if not document.filename:
            return None
        try:
            fallback_key = build_document_key(workspace_id, document.folder_path, document.filename)
        except ValueError as e:
            logger.error(f'Cannot reconstruct key for document {document.name}: {e}')
            return None
        if fallback_key == document.storage_key:
            logger.error(f'Reconstructed key matches stored key, document {document.name} likely does not exist')
            return None

        try:
            return await run_cancellable(self.object_store.get(fallback_key), token)
        except ObjectStoreError as e:
            logger.error(f'Reconstructed key {fallback_key} also failed for document {document.name}: {e}')
            return None

    async def _embed_snippet(self, workspace_id: str, document: WorkspaceDocument, snippet_index: int, text: str, cache_key: str,
                             resolved_key: ResolvedApiKey, token: CancellationToken) -> str:
        if token.cancelled:
            return 'unprocessed'
        try:
            await generate_billed_embedding(self.generator,
                                            self.guard,
                                            text,
                                            resolved_key,
                                            workspace_id,
                                            cache_key=cache_key,
                                            cancel_token=token)
        except OperationCancelledError:
            return 'unprocessed'
        except Exception as e:
            logger.error(f'Failed to embed snippet {snippet_index + 1} of document {document.name}: {type(e).__name__}: {e}')
            return 'failed'
        return 'embedded'

    def _rank(self, workspace_id: str, document_ids: List[str], query_embedding: List[float], top_n: int) -> List[SearchResult]:
        results = []
        for document_id in document_ids:
            entry = self.document_cache.get(workspace_id, document_id)
            if entry is None:
                continue
            for text in entry.snippets:
                embedding = self.generator.cache.get(snippet_cache_key(workspace_id, document_id, text))
                if embedding is None:
                    continue
                results.append(
                    SearchResult(snippet=text,
                                 document_id=document_id,
                                 document_name=entry.document_name,
                                 folder_path=entry.folder_path,
                                 similarity=cosine_similarity(query_embedding, embedding)))

        results.sort(key=lambda result: result.similarity, reverse=True)
        return results[:max(0, top_n)]

    def clear_workspace_cache(self, workspace_id: str) -> Dict[str, int]:
        """Drop every cached embedding and document of a workspace."""
        embeddings = self.generator.cache.clear_workspace(workspace_id)
        documents = self.document_cache.clear_workspace(workspace_id)
        logger.info(f'Cleared document cache for workspace: {workspace_id} ({documents} documents)')
        return {'embeddings': embeddings, 'documents': documents}
