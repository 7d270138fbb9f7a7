"""Tests for component health reporting and configuration loading."""

from dataclasses import replace
from unittest.mock import MagicMock, patch

from grainmem.utils import health_check
from grainmem.utils.config import config, load_config


def test_health_status_reports_each_component():
    partition_store = MagicMock()
    partition_store.health_check.return_value = True
    object_store = MagicMock()
    object_store.health_check.return_value = False
    app_config = replace(config, embedding=replace(config.embedding, platform_api_key='platform-key'))

    status = health_check.get_health_status(app_config, partition_store=partition_store, object_store=object_store)

    assert status['embedding']['healthy']
    assert status['opensearch']['healthy']
    assert not status['s3']['healthy']


def test_missing_platform_key_is_unhealthy():
    app_config = replace(config, embedding=replace(config.embedding, platform_api_key=None))

    status = health_check.get_health_status(app_config, partition_store=MagicMock(), object_store=MagicMock())

    assert not status['embedding']['healthy']
    assert 'OPENROUTER_API_KEY' in status['embedding']['error']


def test_check_health_requires_every_component():
    with patch.object(health_check, 'get_health_status', return_value={'a': {'healthy': True}, 'b': {'healthy': False}}):
        assert not health_check.check_health()
    with patch.object(health_check, 'get_health_status', return_value={'a': {'healthy': True}}):
        assert health_check.check_health()
    with patch.object(health_check, 'get_health_status', side_effect=RuntimeError('boom')):
        assert not health_check.check_health()


def test_load_config_reads_environment(monkeypatch):
    monkeypatch.setenv('OPENSEARCH_INDEX_PREFIX', 'memory')
    monkeypatch.setenv('VECTOR_MAX_QUERY_LIMIT', '50')
    monkeypatch.setenv('OPENSEARCH_USE_AWS_AUTH', 'false')
    monkeypatch.setenv('INDEXING_TIMEOUT_SECONDS', '12.5')
    monkeypatch.setenv('EMBEDDING_COST_PER_MILLION_TOKENS_USD', '0.02')

    loaded = load_config()

    assert loaded.opensearch.index_prefix == 'memory'
    assert loaded.vector_query.max_query_limit == 50
    assert loaded.opensearch.use_aws_auth is False
    assert loaded.document_search.indexing_timeout_seconds == 12.5
    assert loaded.credits.cost_per_million_tokens_usd == 0.02


def test_load_config_defaults(monkeypatch):
    for name in ('VECTOR_DEFAULT_QUERY_LIMIT', 'VECTOR_MAX_QUERY_LIMIT', 'DOCUMENT_CHUNK_SIZE', 'EMBEDDING_USAGE_COST_MARKUP'):
        monkeypatch.delenv(name, raising=False)

    loaded = load_config()

    assert loaded.vector_query.default_query_limit == 100
    assert loaded.vector_query.max_query_limit == 1000
    assert loaded.document_search.chunk_size == 2000
    assert loaded.credits.usage_cost_markup == 1.055
