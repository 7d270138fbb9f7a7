"""
Health check utilities for the application.
"""

from typing import Any, Dict, Optional

from .config import AppConfig, config
from .logging_config import get_logger
from .opensearch_client import OpenSearchPartitionStore
from .s3_client import S3ObjectStore

logger = get_logger(__name__)


def check_health(app_config: Optional[AppConfig] = None) -> bool:
    """Check the health of all system components.

    Returns:
        True if all components are healthy, False otherwise
    """
    try:
        health_status = get_health_status(app_config)

        # Check if all components are healthy
        all_healthy = all(status.get('healthy', False) for status in health_status.values())

        if all_healthy:
            logger.info('All system components are healthy')
        else:
            logger.warning('Some system components are unhealthy')

        return all_healthy

    except Exception as e:
        logger.error(f'Health check failed: {e}')
        return False


def get_health_status(app_config: Optional[AppConfig] = None,
                      partition_store: Optional[OpenSearchPartitionStore] = None,
                      object_store: Optional[S3ObjectStore] = None) -> Dict[str, Any]:
    """Get detailed health status of all components.

    Returns:
        Dictionary with health status of each component
    """
    app_config = app_config or config
    health_status = {}

    # Embedding provider: only the platform key can be checked without spending credits
    health_status['embedding'] = {
        'healthy': bool(app_config.embedding.platform_api_key),
        'service': 'OpenRouter embeddings',
        'model': app_config.embedding.model_id
    }
    if not app_config.embedding.platform_api_key:
        health_status['embedding']['error'] = 'OPENROUTER_API_KEY is not set'

    # Check OpenSearch
    try:
        opensearch = partition_store or OpenSearchPartitionStore(app_config.opensearch)
        health_status['opensearch'] = {
            'healthy': opensearch.health_check(),
            'service': 'Amazon OpenSearch',
            'endpoint': app_config.opensearch.endpoint
        }
    except Exception as e:
        health_status['opensearch'] = {'healthy': False, 'service': 'Amazon OpenSearch', 'error': str(e)}

    # Check S3
    try:
        s3 = object_store or S3ObjectStore(app_config.s3)
        health_status['s3'] = {'healthy': s3.health_check(), 'service': 'Amazon S3', 'bucket': app_config.s3.bucket}
    except Exception as e:
        health_status['s3'] = {'healthy': False, 'service': 'Amazon S3', 'error': str(e)}

    return health_status


def get_system_info(app_config: Optional[AppConfig] = None) -> Dict[str, Any]:
    """Get system information and configuration.

    Returns:
        Dictionary with system information
    """
    app_config = app_config or config
    return {
        'service_name': 'grainmem',
        'version': '1.0.0',
        'configuration': {
            'embedding_model': app_config.embedding.model_id,
            'index_prefix': app_config.opensearch.index_prefix,
            'max_query_limit': app_config.vector_query.max_query_limit,
            'indexing_timeout_seconds': app_config.document_search.indexing_timeout_seconds,
            'aws_region': app_config.opensearch.region
        },
        'health_status': get_health_status(app_config)
    }
