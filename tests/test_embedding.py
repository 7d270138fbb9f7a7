"""Tests for the embedding generator, cache and OpenRouter client."""

import asyncio
import json
import time

import httpx
import pytest

from conftest import MockEmbeddingProvider
from grainmem.utils.cancellation import CancellationToken, OperationCancelledError
from grainmem.utils.embedding import (EmbeddingCache, EmbeddingConfigurationError, EmbeddingError, EmbeddingGenerator,
                                      EmbeddingNetworkError, EmbeddingProviderError, EmbeddingResponseError,
                                      EmbeddingThrottlingError, OpenRouterEmbeddingProvider, classify_error, snippet_cache_key)


def throttled():
    return EmbeddingProviderError('HTTP 429: rate limit exceeded', 429)


@pytest.mark.asyncio
async def test_cache_hit_skips_provider(generator, provider):
    first = await generator.generate_embedding_with_usage('hello world', 'key', cache_key='ws-1:q:1')
    second = await generator.generate_embedding_with_usage('hello world', 'key', cache_key='ws-1:q:1')

    assert provider.calls == 1
    assert not first.from_cache
    assert second.from_cache
    assert second.embedding == first.embedding


@pytest.mark.asyncio
async def test_no_cache_key_always_calls_provider(generator, provider):
    await generator.generate_embedding('hello', 'key')
    await generator.generate_embedding('hello', 'key')

    assert provider.calls == 2
    assert len(generator.cache) == 0


@pytest.mark.asyncio
async def test_empty_text_is_rejected(generator, provider):
    with pytest.raises(EmbeddingError, match='empty'):
        await generator.generate_embedding('   ', 'key')
    assert provider.calls == 0


@pytest.mark.asyncio
async def test_throttling_is_retried(embedding_config):
    provider = MockEmbeddingProvider(failures=[throttled(), throttled(), None])
    generator = EmbeddingGenerator(embedding_config, provider=provider)

    result = await generator.generate_embedding_with_usage('hello', 'key')

    assert provider.calls == 3
    assert len(result.embedding) == MockEmbeddingProvider.dimension


@pytest.mark.asyncio
async def test_throttling_gives_up_after_max_retries(embedding_config):
    provider = MockEmbeddingProvider(failures=[throttled()] * 10)
    generator = EmbeddingGenerator(embedding_config, provider=provider)

    with pytest.raises(EmbeddingThrottlingError):
        await generator.generate_embedding('hello', 'key')
    assert provider.calls == embedding_config.max_retries + 1


@pytest.mark.asyncio
async def test_network_errors_are_retried(embedding_config):
    provider = MockEmbeddingProvider(failures=[EmbeddingNetworkError('ConnectError: refused'), None])
    generator = EmbeddingGenerator(embedding_config, provider=provider)

    await generator.generate_embedding('hello', 'key')
    assert provider.calls == 2


@pytest.mark.asyncio
async def test_rejected_key_is_not_retried(embedding_config):
    provider = MockEmbeddingProvider(failures=[EmbeddingProviderError('HTTP 401: invalid api key', 401), None])
    generator = EmbeddingGenerator(embedding_config, provider=provider)

    with pytest.raises(EmbeddingConfigurationError, match='rejected the API key'):
        await generator.generate_embedding('hello', 'key')
    assert provider.calls == 1


@pytest.mark.asyncio
async def test_fatal_error_is_not_retried(embedding_config):
    provider = MockEmbeddingProvider(failures=[EmbeddingProviderError('HTTP 400: bad request', 400), None])
    generator = EmbeddingGenerator(embedding_config, provider=provider)

    with pytest.raises(EmbeddingError) as info:
        await generator.generate_embedding('hello', 'key')
    assert not isinstance(info.value, EmbeddingThrottlingError)
    assert provider.calls == 1


@pytest.mark.asyncio
async def test_validation_failures_get_their_own_retry_budget(embedding_config):
    provider = MockEmbeddingProvider(failures=[EmbeddingResponseError('Invalid embedding response format')] * 2 + [None])
    generator = EmbeddingGenerator(embedding_config, provider=provider)

    await generator.generate_embedding('hello', 'key')
    assert provider.calls == 3


@pytest.mark.asyncio
async def test_validation_failures_exhausted(embedding_config):
    provider = MockEmbeddingProvider(failures=[EmbeddingResponseError('Invalid embedding response format')] * 5)
    generator = EmbeddingGenerator(embedding_config, provider=provider)

    with pytest.raises(EmbeddingError, match='validation failed'):
        await generator.generate_embedding('hello', 'key')
    assert provider.calls == embedding_config.validation_max_retries + 1


@pytest.mark.asyncio
async def test_cancel_aborts_in_flight_request(embedding_config):
    provider = MockEmbeddingProvider(delay=5.0)
    generator = EmbeddingGenerator(embedding_config, provider=provider)
    token = CancellationToken()
    asyncio.get_running_loop().call_later(0.01, token.cancel, 'timeout')

    started = time.monotonic()
    with pytest.raises(OperationCancelledError, match='timeout'):
        await generator.generate_embedding('hello', 'key', cache_key='ws-1:q:1', cancel_token=token)

    assert time.monotonic() - started < 1.0
    assert not generator.cache.has('ws-1:q:1')


@pytest.mark.asyncio
async def test_fired_token_prevents_request(generator, provider):
    token = CancellationToken()
    token.cancel()

    with pytest.raises(OperationCancelledError):
        await generator.generate_embedding('hello', 'key', cancel_token=token)
    assert provider.calls == 0


@pytest.mark.parametrize('error, kind', [
    (EmbeddingProviderError('HTTP 429: slow down', 429), 'throttling'),
    (EmbeddingProviderError('Quota exceeded for project', 400), 'throttling'),
    (EmbeddingProviderError('HTTP 403: forbidden', 403), 'configuration'),
    (EmbeddingProviderError('Requests from referer <empty> are blocked', 400), 'configuration'),
    (EmbeddingProviderError('HTTP 503: unavailable', 503), 'network'),
    (EmbeddingNetworkError('ReadTimeout'), 'network'),
    (EmbeddingResponseError('Invalid embedding response format', 200), 'validation'),
    (EmbeddingProviderError('HTTP 400: bad input', 400), 'fatal'),
])
def test_classify_error(error, kind):
    assert classify_error(error) == kind


def test_snippet_cache_key():
    key = snippet_cache_key('ws-1', 'doc-1', 'some text')

    assert key.startswith('ws-1:doc-1:')
    assert len(key.rsplit(':', 1)[1]) == 16
    assert key == snippet_cache_key('ws-1', 'doc-1', 'some text')
    assert key != snippet_cache_key('ws-1', 'doc-1', 'other text')


def test_cache_clear_only_touches_one_workspace():
    cache = EmbeddingCache()
    cache.set('ws-1:doc:a', [1.0])
    cache.set('ws-1:doc:b', [1.0])
    cache.set('ws-10:doc:a', [1.0])

    assert cache.clear_workspace('ws-1') == 2
    assert len(cache) == 1
    assert cache.has('ws-10:doc:a')


def _provider_with(embedding_config, handler):
    provider = OpenRouterEmbeddingProvider(embedding_config)
    provider._client = httpx.AsyncClient(base_url=embedding_config.api_url, transport=httpx.MockTransport(handler))
    return provider


@pytest.mark.asyncio
async def test_openrouter_provider_parses_response(embedding_config):
    requests = []

    def handler(request):
        requests.append(request)
        return httpx.Response(200,
                              json={
                                  'id': 'gen-1',
                                  'data': [{
                                      'embedding': [0.25, 0.5]
                                  }],
                                  'usage': {
                                      'prompt_tokens': 3,
                                      'total_tokens': 3,
                                      'cost': 0.00002
                                  }
                              })

    provider = _provider_with(embedding_config, handler)
    result = await provider.embed('hello', 'secret')
    await provider.aclose()

    assert result.embedding == [0.25, 0.5]
    assert result.usage.total_tokens == 3
    assert result.usage.cost == 0.00002
    assert result.id == 'gen-1'
    assert requests[0].headers['Authorization'] == 'Bearer secret'
    assert requests[0].url.path.endswith('/embeddings')
    assert json.loads(requests[0].content) == {'model': 'mock-model', 'input': 'hello'}


@pytest.mark.asyncio
async def test_openrouter_provider_reports_status(embedding_config):

    def handler(request):
        return httpx.Response(429, json={'error': {'message': 'Rate limit exceeded'}})

    provider = _provider_with(embedding_config, handler)
    with pytest.raises(EmbeddingProviderError, match='Rate limit exceeded') as info:
        await provider.embed('hello', 'secret')
    await provider.aclose()

    assert info.value.status_code == 429
    assert classify_error(info.value) == 'throttling'


@pytest.mark.asyncio
async def test_openrouter_provider_rejects_malformed_payload(embedding_config):

    def handler(request):
        return httpx.Response(200, json={'data': []})

    provider = _provider_with(embedding_config, handler)
    with pytest.raises(EmbeddingResponseError):
        await provider.embed('hello', 'secret')
    await provider.aclose()


@pytest.mark.asyncio
async def test_validation_retries_leave_the_backoff_budget_intact(embedding_config):
    invalid = EmbeddingResponseError('Invalid embedding response format')
    failures = [invalid] * embedding_config.validation_max_retries + [throttled()] * embedding_config.max_retries + [None]
    provider = MockEmbeddingProvider(failures=failures)
    generator = EmbeddingGenerator(embedding_config, provider=provider)

    await generator.generate_embedding('hello', 'key')

    assert provider.calls == len(failures)
