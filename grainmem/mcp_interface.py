"""
MCP Interface Layer using fastmcp for agent document and memory search.
"""
import os
import sys
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Dict, List, Optional

from fastmcp import FastMCP

# Add the project root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from grainmem.models.core import TemporalFilter  # noqa: E402
from grainmem.services.credit_guard import CreditReservationGuard, generate_billed_embedding  # noqa: E402
from grainmem.services.document_search import DocumentSearchService  # noqa: E402
from grainmem.services.read_client import ReadClient, VectorQueryError  # noqa: E402
from grainmem.utils.api_keys import ApiKeyResolver  # noqa: E402
from grainmem.utils.config import config  # noqa: E402
from grainmem.utils.credit_store import DynamoReservationStore  # noqa: E402
from grainmem.utils.embedding import EmbeddingError, EmbeddingGenerator  # noqa: E402
from grainmem.utils.logging_config import get_logger  # noqa: E402
from grainmem.utils.opensearch_client import OpenSearchPartitionStore  # noqa: E402
from grainmem.utils.partitions import parse_grain  # noqa: E402
from grainmem.utils.record_store import DynamoDocumentRecordStore  # noqa: E402
from grainmem.utils.s3_client import S3ObjectStore  # noqa: E402
from grainmem.worker import build_key_resolver  # noqa: E402

logger = get_logger(__name__)

# Initialize FastMCP application
mcp = FastMCP('Temporal Memory')


@dataclass
class Services:
    generator: EmbeddingGenerator
    guard: CreditReservationGuard
    key_resolver: ApiKeyResolver
    document_search: DocumentSearchService
    read_client: ReadClient


@lru_cache(maxsize=1)
def get_services() -> Services:
    """Build the shared service graph on first use."""
    generator = EmbeddingGenerator(config.embedding)
    guard = CreditReservationGuard(DynamoReservationStore(config.credits), config.credits)
    key_resolver = build_key_resolver(config)
    document_search = DocumentSearchService(DynamoDocumentRecordStore(config.record_store),
                                            S3ObjectStore(config.s3),
                                            generator,
                                            key_resolver,
                                            config.document_search,
                                            guard=guard)
    read_client = ReadClient(OpenSearchPartitionStore(config.opensearch), config.vector_query, config.opensearch.index_prefix)
    logger.info('Initialized MCP services')
    return Services(generator=generator,
                    guard=guard,
                    key_resolver=key_resolver,
                    document_search=document_search,
                    read_client=read_client)


@mcp.tool()
async def search_documents(workspace_id: str, query: str, top_n: int = 5) -> List[Dict[str, Any]]:
    """Search a workspace's documents by meaning.

    Args:
        workspace_id: Workspace ID
        query: Natural language query
        top_n: Maximum number of snippets to return (default: 5)

    Returns:
        List of snippets with document id, name, folder and similarity

    Raises:
        Exception: If search fails
    """
    try:
        if not workspace_id or not workspace_id.strip():
            raise ValueError('Workspace ID is required')

        results = await get_services().document_search.search_documents(workspace_id, query, top_n)

        logger.debug(f'MCP document search returned {len(results)} snippets for workspace {workspace_id}')
        return [{
            'snippet': result.snippet,
            'documentId': result.document_id,
            'documentName': result.document_name,
            'folderPath': result.folder_path,
            'similarity': result.similarity
        } for result in results]

    except EmbeddingError as e:
        logger.error(f'Embedding error in MCP document search: {e}')
        raise Exception(f'Document search failed: {e}')
    except Exception as e:
        logger.error(f'Unexpected error in MCP document search: {e}')
        raise Exception(f'Document search failed: {e}')


@mcp.tool()
async def search_memory(workspace_id: str,
                        agent_id: str,
                        query: str,
                        grain: str = 'working',
                        limit: int = 10,
                        start_date: Optional[str] = None,
                        end_date: Optional[str] = None) -> List[Dict[str, Any]]:
    """Search an agent's memory facts in one temporal grain.

    Args:
        workspace_id: Workspace ID, billed for the query embedding
        agent_id: Agent ID
        query: Natural language query
        grain: Temporal grain (working, daily, weekly, monthly, quarterly, yearly)
        limit: Maximum number of facts to return (default: 10)
        start_date: Inclusive ISO start date
        end_date: Inclusive ISO end date

    Returns:
        List of facts with id, content, timestamp, metadata and score

    Raises:
        Exception: If search fails
    """
    try:
        if not agent_id or not agent_id.strip():
            raise ValueError('Agent ID is required')
        if not query or not query.strip():
            return []

        services = get_services()
        resolved_key = await services.key_resolver.resolve(workspace_id)
        embedding = await generate_billed_embedding(services.generator,
                                                    services.guard,
                                                    query.strip(),
                                                    resolved_key,
                                                    workspace_id,
                                                    agent_id=agent_id)

        temporal_filter = TemporalFilter(start_date=start_date, end_date=end_date) if start_date or end_date else None
        results = await services.read_client.query(agent_id,
                                                   parse_grain(grain),
                                                   vector=embedding.embedding,
                                                   limit=limit,
                                                   temporal_filter=temporal_filter)

        logger.debug(f'MCP memory search returned {len(results)} facts for agent {agent_id}, grain {grain}')
        return [{
            'id': result.id,
            'content': result.content,
            'timestamp': result.timestamp,
            'metadata': result.metadata,
            'score': result.score
        } for result in results]

    except (EmbeddingError, VectorQueryError) as e:
        logger.error(f'Memory search error in MCP: {e}')
        raise Exception(f'Memory search failed: {e}')
    except Exception as e:
        logger.error(f'Unexpected error in MCP memory search: {e}')
        raise Exception(f'Memory search failed: {e}')


@mcp.tool()
def clear_document_cache(workspace_id: str) -> Dict[str, int]:
    """Drop cached document content and embeddings for a workspace.

    Args:
        workspace_id: Workspace ID

    Returns:
        Number of embeddings and documents removed
    """
    if not workspace_id or not workspace_id.strip():
        raise ValueError('Workspace ID is required')
    return get_services().document_search.clear_workspace_cache(workspace_id)


if __name__ == '__main__':
    transport = config.mcp.transport
    host = config.mcp.host
    port = config.mcp.port
    mcp.run(transport=transport, host=host, port=port)
