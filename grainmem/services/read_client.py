"""
Read client for querying partitions by vector similarity and metadata filters.
"""

from typing import Any, Dict, List, Optional, Union

from ..models.core import QueryResult, TemporalFilter, TemporalGrain
from ..utils.config import VectorQueryConfig
from ..utils.filters import eq
from ..utils.logging_config import get_logger
from ..utils.partition_store import PartitionConnectionCache, PartitionStore, PartitionStoreError, Row, TableNotFoundError
from ..utils.partitions import VECTORS_TABLE, resolve_partition
from ..utils.timestamp_utils import parse_iso_timestamp, within_range

logger = get_logger(__name__)

DEFAULT_QUERY_LIMIT = 100
MAX_QUERY_LIMIT = 1000

# Metadata fields always present on a result, read from flattened columns or legacy nested metadata
METADATA_FIELDS = ('conversationId', 'workspaceId', 'agentId', 'documentId', 'documentName', 'folderPath')

_ROW_COLUMNS = frozenset({'id', 'content', 'vector', 'embedding', 'timestamp', 'metadata', '_score'})


class VectorQueryError(Exception):
    """Custom exception for vector query errors."""
    pass


def clamp_query_limit(limit: Optional[int], max_limit: int = MAX_QUERY_LIMIT, default: int = DEFAULT_QUERY_LIMIT) -> int:
    if limit is None:
        limit = default
    return min(max(1, int(limit)), max_limit)


def build_metadata(row: Row) -> Dict[str, Any]:
    """Reassemble a row's metadata, preferring flattened columns over legacy nested metadata."""
    nested = row.get('metadata')
    if not isinstance(nested, dict):
        nested = {}

    metadata: Dict[str, Any] = {}
    for key, value in row.items():
        if key not in _ROW_COLUMNS and not key.startswith('_'):
            metadata[key] = value
    for key in METADATA_FIELDS:
        metadata[key] = row.get(key) or nested.get(key) or None
    return metadata


def row_to_result(row: Row) -> QueryResult:
    return QueryResult(id=row['id'],
                       content=row.get('content', ''),
                       embedding=list(row.get('vector') or row.get('embedding') or []),
                       timestamp=row.get('timestamp', ''),
                       metadata=build_metadata(row),
                       score=row.get('_score'))


def apply_temporal_filter(results: List[QueryResult], temporal_filter: Optional[TemporalFilter]) -> List[QueryResult]:
    """Keep results whose timestamp lies in the filter's inclusive date range."""
    if temporal_filter is None or (not temporal_filter.start_date and not temporal_filter.end_date):
        return results
    start = parse_iso_timestamp(temporal_filter.start_date)
    end = parse_iso_timestamp(temporal_filter.end_date)
    return [result for result in results if within_range(result.timestamp, start, end)]


class ReadClient:
    """Query client with one cached connection per partition."""

    def __init__(self, store: PartitionStore, config: Optional[VectorQueryConfig] = None, index_prefix: str = 'vectordb'):
        """
        Initialize the read client.

        Args:
            store: Partition store backend
            config: VectorQueryConfig with default and maximum limits
            index_prefix: Partition index name prefix
        """
        self.connections = PartitionConnectionCache(store)
        self.default_limit = config.default_query_limit if config else DEFAULT_QUERY_LIMIT
        self.max_limit = config.max_query_limit if config else MAX_QUERY_LIMIT
        self.index_prefix = index_prefix

    async def query(self,
                    agent_id: str,
                    grain: Union[str, TemporalGrain],
                    vector: Optional[List[float]] = None,
                    filter: Optional[str] = None,
                    limit: Optional[int] = None,
                    temporal_filter: Optional[TemporalFilter] = None) -> List[QueryResult]:
        """
        Query a partition.

        Args:
            agent_id: Agent ID (workspace ID for the docs grain)
            grain: Temporal grain
            vector: Query vector for similarity ranking
            filter: Filter expression built with the filters module
            limit: Maximum rows, clamped to [1, max_query_limit]
            temporal_filter: Inclusive date range applied after retrieval

        Returns:
            Matching results; empty when the partition has no table yet

        Raises:
            VectorQueryError: If the backend fails
        """
        query_limit = clamp_query_limit(limit, self.max_limit, self.default_limit)

        try:
            address = resolve_partition(agent_id, grain, self.index_prefix)
        except ValueError as e:
            raise VectorQueryError(f'Vector database query failed: {e}')

        logger.debug(f'Querying {address.uri} for agent {agent_id}, grain {address.grain}')

        try:
            db = await self.connections.get(address)
            try:
                table = await db.open_table(VECTORS_TABLE)
            except TableNotFoundError:
                logger.debug(f'No table found, returning empty results for agent {agent_id}, grain {address.grain}')
                return []
            rows = await table.search(vector, filter, query_limit)
        except TableNotFoundError:
            return []
        except PartitionStoreError as e:
            self.connections.evict(address)
            logger.error(f'Query failed for agent {agent_id}, grain {address.grain}: {e}')
            raise VectorQueryError(f'Vector database query failed: {e}')

        results = [row_to_result(row) for row in rows]
        filtered = apply_temporal_filter(results, temporal_filter)

        logger.debug(f'Query completed for agent {agent_id}, grain {address.grain}: '
                     f'{len(results)} raw results, {len(filtered)} after temporal filter')
        return filtered

    async def get_record_by_id(self, agent_id: str, grain: Union[str, TemporalGrain], record_id: str) -> Optional[QueryResult]:
        """Fetch one record by id, or None when absent."""
        results = await self.query(agent_id, grain, filter=eq('id', record_id), limit=1)
        return results[0] if results else None
