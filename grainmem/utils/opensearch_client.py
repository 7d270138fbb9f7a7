"""
OpenSearch-backed partition store for vector rows.
"""

import asyncio
from typing import Any, Dict, List, Optional

import boto3
from opensearchpy import OpenSearch, RequestsHttpConnection, helpers
from opensearchpy.exceptions import NotFoundError, OpenSearchException, RequestError
from requests_aws4auth import AWS4Auth

from .config import OpenSearchConfig
from .logging_config import get_logger
from .partition_store import PartitionStoreError, Row, TableNotFoundError
from .partitions import PartitionAddress

logger = get_logger(__name__)


def build_index_body(rows: List[Row]) -> Dict[str, Any]:
    """
    Infer the index mapping from the first batch of rows.

    Args:
        rows: Rows about to be written; the first one fixes the vector dimension

    Returns:
        Index body with k-NN vector mapping

    Raises:
        PartitionStoreError: If no row carries a vector
    """
    vector = rows[0].get('vector') if rows else None
    if not vector:
        raise PartitionStoreError('Cannot infer table schema without a vector in the first row')

    return {
        'mappings': {
            # Flattened metadata columns are exact-match keywords
            'dynamic_templates': [{
                'metadata_strings': {
                    'match_mapping_type': 'string',
                    'mapping': {
                        'type': 'keyword'
                    }
                }
            }],
            'properties': {
                'id': {
                    'type': 'keyword'
                },
                'content': {
                    'type': 'text'
                },
                'vector': {
                    'type': 'knn_vector',
                    'dimension': len(vector),
                    'method': {
                        'name': 'hnsw',
                        'space_type': 'cosinesimil',
                        'engine': 'nmslib'
                    }
                },
                'timestamp': {
                    'type': 'keyword'
                },
                'metadata': {
                    'type': 'object',
                    'enabled': False
                }
            }
        },
        'settings': {
            'index': {
                'knn': True,
                'knn.algo_param.ef_search': 100
            }
        }
    }


class OpenSearchTable:
    """One table (physical index) of a partition."""

    supports_upsert = True

    def __init__(self, client: OpenSearch, index_name: str, refresh: bool = True):
        self.client = client
        self.index_name = index_name
        self.refresh = refresh

    def _bulk_index(self, rows: List[Row]) -> None:
        actions = [{'_op_type': 'index', '_index': self.index_name, '_id': row['id'], '_source': row} for row in rows]
        try:
            helpers.bulk(self.client, actions, refresh=self.refresh)
        except helpers.BulkIndexError as e:
            logger.error(f'Bulk write to {self.index_name} failed for {len(e.errors)} rows')
            raise PartitionStoreError(f'Failed to write rows: {e.errors[:3]}')
        except NotFoundError:
            raise TableNotFoundError(self.index_name)
        except OpenSearchException as e:
            logger.error(f'Error writing rows to {self.index_name}: {e}')
            raise PartitionStoreError(f'Failed to write rows: {e}')

    async def add(self, rows: List[Row]) -> None:
        if not rows:
            return
        await asyncio.to_thread(self._bulk_index, rows)
        logger.debug(f'Indexed {len(rows)} rows in {self.index_name}')

    async def upsert(self, rows: List[Row]) -> None:
        # Indexing by _id replaces the previous document atomically per row
        await self.add(rows)

    def _delete_by_query(self, filter_expr: str) -> int:
        try:
            response = self.client.delete_by_query(index=self.index_name,
                                                   body={'query': {
                                                       'query_string': {
                                                           'query': filter_expr
                                                       }
                                                   }},
                                                   refresh=self.refresh,
                                                   conflicts='proceed')
            return int(response.get('deleted', 0))
        except NotFoundError:
            raise TableNotFoundError(self.index_name)
        except OpenSearchException as e:
            logger.error(f'Error deleting from {self.index_name} where {filter_expr}: {e}')
            raise PartitionStoreError(f'Failed to delete rows: {e}')

    async def delete(self, filter_expr: str) -> int:
        deleted = await asyncio.to_thread(self._delete_by_query, filter_expr)
        logger.debug(f'Deleted {deleted} rows from {self.index_name}')
        return deleted

    def _search(self, vector: Optional[List[float]], filter_expr: Optional[str], limit: int) -> List[Row]:
        filter_clause = [{'query_string': {'query': filter_expr}}] if filter_expr else []
        if vector:
            query: Dict[str, Any] = {
                'bool': {
                    'must': [{
                        'knn': {
                            'vector': {
                                'vector': vector,
                                'k': limit
                            }
                        }
                    }],
                    'filter': filter_clause
                }
            }
        elif filter_clause:
            query = {'bool': {'filter': filter_clause}}
        else:
            query = {'match_all': {}}

        try:
            response = self.client.search(index=self.index_name, body={'size': limit, 'query': query})
        except NotFoundError:
            raise TableNotFoundError(self.index_name)
        except OpenSearchException as e:
            logger.error(f'Error searching {self.index_name}: {e}')
            raise PartitionStoreError(f'Search failed: {e}')

        rows = []
        for hit in response['hits']['hits']:
            row = dict(hit['_source'])
            row['_score'] = hit.get('_score')
            rows.append(row)
        return rows

    async def search(self, vector: Optional[List[float]], filter_expr: Optional[str], limit: int) -> List[Row]:
        return await asyncio.to_thread(self._search, vector, filter_expr, limit)


class OpenSearchPartition:
    """Connection handle on one partition."""

    def __init__(self, client: OpenSearch, address: PartitionAddress, refresh: bool = True):
        self.client = client
        self.address = address
        self.refresh = refresh

    async def open_table(self, name: str) -> OpenSearchTable:
        index_name = self.address.table_index(name)
        try:
            exists = await asyncio.to_thread(self.client.indices.exists, index=index_name)
        except OpenSearchException as e:
            raise PartitionStoreError(f'Failed to open table {index_name}: {e}')
        if not exists:
            raise TableNotFoundError(index_name)
        return OpenSearchTable(self.client, index_name, self.refresh)

    def _create_index(self, index_name: str, rows: List[Row]) -> None:
        try:
            self.client.indices.create(index=index_name, body=build_index_body(rows))
            logger.info(f'Created index {index_name}')
        except RequestError as e:
            # Another consumer created it first
            if getattr(e, 'error', '') != 'resource_already_exists_exception':
                raise PartitionStoreError(f'Failed to create index: {e}')
            logger.debug(f'Index {index_name} already exists')
        except OpenSearchException as e:
            logger.error(f'Error creating index {index_name}: {e}')
            raise PartitionStoreError(f'Failed to create index: {e}')

    async def create_table(self, name: str, rows: List[Row]) -> OpenSearchTable:
        index_name = self.address.table_index(name)
        await asyncio.to_thread(self._create_index, index_name, rows)
        table = OpenSearchTable(self.client, index_name, self.refresh)
        await table.add(rows)
        return table


class OpenSearchPartitionStore:
    """OpenSearch client with AWS authentication, addressing one index family per partition."""

    def __init__(self, config: OpenSearchConfig, client: Optional[OpenSearch] = None):
        """
        Initialize OpenSearch client.

        Args:
            config: OpenSearchConfig instance with connection parameters
            client: Pre-built client, created from config if None
        """
        self.config = config
        self.client = client if client is not None else self._create_client(config)

        logger.info(f'Initialized OpenSearch partition store for endpoint: {config.endpoint}')

    @staticmethod
    def _create_client(config: OpenSearchConfig) -> OpenSearch:
        # Parse endpoint to get host
        endpoint = config.endpoint
        if '://' in endpoint:
            # Remove protocol if present
            endpoint = endpoint.split('://', 1)[1]

        if config.use_aws_auth:
            credentials = boto3.Session().get_credentials()
            auth = AWS4Auth(region=config.region, service='aoss', refreshable_credentials=credentials)
        elif config.username:
            auth = (config.username, config.password or '')
        else:
            auth = None

        return OpenSearch(hosts=[{
            'host': endpoint,
            'port': config.port
        }],
                          http_auth=auth,
                          use_ssl=config.use_ssl,
                          verify_certs=config.use_ssl,
                          connection_class=RequestsHttpConnection)

    async def connect(self, address: PartitionAddress) -> OpenSearchPartition:
        """
        Open a handle on a partition.

        Raises:
            PartitionStoreError: If the cluster is unreachable
        """
        try:
            reachable = await asyncio.to_thread(self.client.ping)
        except Exception as e:
            raise PartitionStoreError(f'OpenSearch unreachable at {self.config.endpoint}: {e}')
        if not reachable:
            raise PartitionStoreError(f'OpenSearch unreachable at {self.config.endpoint}')
        logger.debug(f'Connected to partition {address.uri}')
        return OpenSearchPartition(self.client, address)

    def health_check(self) -> bool:
        """
        Perform a health check on the OpenSearch service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            return bool(self.client.ping())

        except Exception as e:
            logger.error(f'OpenSearch health check failed: {e}')
            return False
