"""
Configuration management for AWS services and application settings.
"""

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


@dataclass
class EmbeddingConfig:
    """Configuration for the embedding provider and retry policy."""
    api_url: str
    model_id: str
    platform_api_key: Optional[str]
    request_timeout: float
    max_retries: int
    initial_delay: float
    max_delay: float
    backoff_multiplier: float
    validation_max_retries: int
    validation_initial_delay: float


@dataclass
class CreditConfig:
    """Configuration for embedding credit reservations."""
    cost_per_million_tokens_usd: float
    usage_cost_markup: float
    reservations_table: str
    workspaces_table: str
    transactions_table: str
    region: str


@dataclass
class OpenSearchConfig:
    """Configuration for OpenSearch."""
    endpoint: str
    port: int
    region: str
    index_prefix: str
    use_aws_auth: bool
    username: Optional[str]
    password: Optional[str]
    use_ssl: bool


@dataclass
class VectorQueryConfig:
    """Configuration for the partition read path."""
    default_query_limit: int
    max_query_limit: int


@dataclass
class S3Config:
    """Configuration for the document object store."""
    bucket: str
    region: str
    endpoint: Optional[str]


@dataclass
class QueueConfig:
    """Configuration for the write operation queue."""
    queue_url: str
    region: str
    wait_time_seconds: int
    max_messages: int


@dataclass
class RecordStoreConfig:
    """Configuration for the primary record store tables."""
    region: str
    documents_table: str
    documents_index: str
    api_keys_table: str


@dataclass
class DocumentSearchConfig:
    """Configuration for document indexing and search."""
    chunk_size: int
    indexing_timeout_seconds: float
    default_top_n: int
    max_document_snippets: int


@dataclass
class MCPConfig:
    """Configuration for MCP interface."""
    transport: str
    host: str
    port: int


@dataclass
class AppConfig:
    """Main application configuration."""
    environment: str
    log_level: str
    embedding: EmbeddingConfig
    credits: CreditConfig
    opensearch: OpenSearchConfig
    vector_query: VectorQueryConfig
    s3: S3Config
    queue: QueueConfig
    record_store: RecordStoreConfig
    document_search: DocumentSearchConfig
    mcp: MCPConfig


def _get_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ('1', 'true', 'yes', 'on')


def load_config() -> AppConfig:
    """Load configuration from environment variables with defaults."""
    environment = os.getenv('ENVIRONMENT', 'development')
    aws_region = os.getenv('AWS_REGION', 'eu-west-2')

    # Embedding configuration
    embedding_config = EmbeddingConfig(api_url=os.getenv('EMBEDDING_API_URL', 'https://openrouter.ai/api/v1'),
                                       model_id=os.getenv('EMBEDDING_MODEL_ID', 'thenlper/gte-base'),
                                       platform_api_key=os.getenv('OPENROUTER_API_KEY'),
                                       request_timeout=float(os.getenv('EMBEDDING_REQUEST_TIMEOUT', '30.0')),
                                       max_retries=int(os.getenv('EMBEDDING_MAX_RETRIES', '5')),
                                       initial_delay=float(os.getenv('EMBEDDING_RETRY_DELAY', '1.0')),
                                       max_delay=float(os.getenv('EMBEDDING_MAX_RETRY_DELAY', '60.0')),
                                       backoff_multiplier=float(os.getenv('EMBEDDING_BACKOFF_MULTIPLIER', '2.0')),
                                       validation_max_retries=int(os.getenv('EMBEDDING_VALIDATION_MAX_RETRIES', '2')),
                                       validation_initial_delay=float(os.getenv('EMBEDDING_VALIDATION_RETRY_DELAY', '0.5')))

    # Credit reservation configuration
    credit_config = CreditConfig(cost_per_million_tokens_usd=float(os.getenv('EMBEDDING_COST_PER_MILLION_TOKENS_USD', '0.005')),
                                 usage_cost_markup=float(os.getenv('EMBEDDING_USAGE_COST_MARKUP', '1.055')),
                                 reservations_table=os.getenv('CREDIT_RESERVATIONS_TABLE', 'credit-reservations'),
                                 workspaces_table=os.getenv('WORKSPACES_TABLE', 'workspace'),
                                 transactions_table=os.getenv('CREDIT_TRANSACTIONS_TABLE', 'workspace-credit-transactions'),
                                 region=os.getenv('DYNAMODB_AWS_REGION', aws_region))

    # Vector search configuration
    opensearch_config = OpenSearchConfig(endpoint=os.getenv('OPENSEARCH_ENDPOINT', 'localhost'),
                                         port=int(os.getenv('OPENSEARCH_PORT', '443')),
                                         region=os.getenv('OPENSEARCH_AWS_REGION', aws_region),
                                         index_prefix=os.getenv('OPENSEARCH_INDEX_PREFIX', 'vectordb'),
                                         use_aws_auth=_get_bool('OPENSEARCH_USE_AWS_AUTH', 'true'),
                                         username=os.getenv('OPENSEARCH_USERNAME'),
                                         password=os.getenv('OPENSEARCH_PASSWORD'),
                                         use_ssl=_get_bool('OPENSEARCH_USE_SSL', 'true'))

    vector_query_config = VectorQueryConfig(default_query_limit=int(os.getenv('VECTOR_DEFAULT_QUERY_LIMIT', '100')),
                                            max_query_limit=int(os.getenv('VECTOR_MAX_QUERY_LIMIT', '1000')))

    # Object store configuration
    s3_config = S3Config(bucket=os.getenv('DOCUMENTS_S3_BUCKET', 'workspace.documents').strip(),
                         region=os.getenv('DOCUMENTS_S3_REGION', aws_region),
                         endpoint=os.getenv('DOCUMENTS_S3_ENDPOINT'))

    # Queue configuration
    queue_config = QueueConfig(queue_url=os.getenv('WRITE_QUEUE_URL', ''),
                               region=os.getenv('WRITE_QUEUE_AWS_REGION', aws_region),
                               wait_time_seconds=int(os.getenv('WRITE_QUEUE_WAIT_TIME_SECONDS', '20')),
                               max_messages=int(os.getenv('WRITE_QUEUE_MAX_MESSAGES', '10')))

    record_store_config = RecordStoreConfig(region=os.getenv('DYNAMODB_AWS_REGION', aws_region),
                                            documents_table=os.getenv('WORKSPACE_DOCUMENTS_TABLE', 'workspace-document'),
                                            documents_index=os.getenv('WORKSPACE_DOCUMENTS_INDEX', 'byWorkspaceId'),
                                            api_keys_table=os.getenv('WORKSPACE_API_KEYS_TABLE', 'workspace-api-key'))

    document_search_config = DocumentSearchConfig(chunk_size=int(os.getenv('DOCUMENT_CHUNK_SIZE', '2000')),
                                                  indexing_timeout_seconds=float(os.getenv('INDEXING_TIMEOUT_SECONDS', '300')),
                                                  default_top_n=int(os.getenv('DOCUMENT_SEARCH_TOP_N', '5')),
                                                  max_document_snippets=int(os.getenv('MAX_DOCUMENT_SNIPPETS', '10000')))

    # MCP configuration
    mcp_config = MCPConfig(transport=os.getenv('MCP_TRANSPORT', 'sse'),
                           host=os.getenv('MCP_HOST', '127.0.0.1'),
                           port=int(os.getenv('MCP_PORT', '8000')))

    return AppConfig(environment=environment,
                     log_level=os.getenv('LOG_LEVEL', 'INFO'),
                     embedding=embedding_config,
                     credits=credit_config,
                     opensearch=opensearch_config,
                     vector_query=vector_query_config,
                     s3=s3_config,
                     queue=queue_config,
                     record_store=record_store_config,
                     document_search=document_search_config,
                     mcp=mcp_config)


# Global configuration instance
config = load_config()
