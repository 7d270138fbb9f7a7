"""
Embedding client with caching, retry/backoff and cooperative cancellation.
"""

import asyncio
import functools
import hashlib
import random
from typing import Awaitable, Callable, Dict, List, Optional, Protocol

import httpx

from ..models.core import EmbeddingResult, EmbeddingUsage
from .cancellation import CancellationToken, OperationCancelledError, run_cancellable, sleep_cancellable
from .config import EmbeddingConfig
from .logging_config import get_logger

logger = get_logger(__name__)

_THROTTLING_MARKERS = ('quota', 'rate limit', 'throttl', 'too many requests')
_CONFIGURATION_MARKERS = ('api key not valid', 'invalid api key', 'referer', 'referrer', 'unauthorized')
_RETRYABLE_STATUS = (502, 503, 504)


class EmbeddingError(Exception):
    """Custom exception for embedding errors."""
    pass


class EmbeddingConfigurationError(EmbeddingError):
    """The provider rejected the credentials; retrying cannot help."""
    pass


class EmbeddingThrottlingError(EmbeddingError):
    """The provider kept throttling requests after all retries."""
    pass


class EmbeddingProviderError(EmbeddingError):
    """Error reported by the embedding provider."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class EmbeddingNetworkError(EmbeddingProviderError):
    """The request never produced a response (connect/read failure, timeout)."""
    pass


class EmbeddingResponseError(EmbeddingProviderError):
    """The provider answered with a payload that is not an embedding."""
    pass


def classify_error(error: EmbeddingProviderError) -> str:
    """Classify a provider error as configuration, throttling, network, validation or fatal."""
    status = error.status_code
    text = str(error).lower()
    if isinstance(error, EmbeddingResponseError):
        return 'validation'
    if status == 429 or any(marker in text for marker in _THROTTLING_MARKERS):
        return 'throttling'
    if status in (401, 403) or any(marker in text for marker in _CONFIGURATION_MARKERS):
        return 'configuration'
    if isinstance(error, EmbeddingNetworkError) or status in _RETRYABLE_STATUS:
        return 'network'
    return 'fatal'


def snippet_cache_key(workspace_id: str, document_id: str, text: str) -> str:
    """Cache key for a document snippet: `{workspace}:{document}:{sha256(text)[:16]}`."""
    digest = hashlib.sha256(text.encode('utf-8')).hexdigest()[:16]
    return f'{workspace_id}:{document_id}:{digest}'


class EmbeddingCache:
    """In-memory embedding cache keyed by `{workspace}:{scope}:{hash}` strings.

    Entries live until the owning workspace is cleared explicitly.
    """

    def __init__(self):
        self._entries: Dict[str, List[float]] = {}

    def get(self, cache_key: str) -> Optional[List[float]]:
        return self._entries.get(cache_key)

    def has(self, cache_key: str) -> bool:
        return cache_key in self._entries

    def set(self, cache_key: str, embedding: List[float]) -> None:
        self._entries[cache_key] = embedding

    def clear_workspace(self, workspace_id: str) -> int:
        prefix = f'{workspace_id}:'
        keys = [key for key in self._entries if key.startswith(prefix)]
        for key in keys:
            del self._entries[key]
        logger.info(f'Cleared embedding cache for workspace: {workspace_id} ({len(keys)} embeddings)')
        return len(keys)

    def __len__(self) -> int:
        return len(self._entries)


class EmbeddingProvider(Protocol):
    """Text-to-vector network client."""

    async def embed(self, text: str, api_key: str) -> EmbeddingResult:
        ...


class OpenRouterEmbeddingProvider:
    """OpenRouter embeddings API client."""

    def __init__(self, config: EmbeddingConfig):
        """
        Initialize the provider client.

        Args:
            config: EmbeddingConfig instance with endpoint and model parameters
        """
        self.config = config
        self.model_id = config.model_id
        self._client: Optional[httpx.AsyncClient] = None

        logger.info(f'Initialized OpenRouter embedding client with model: {self.model_id}')

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=self.config.api_url.rstrip('/'),
                                             timeout=httpx.Timeout(self.config.request_timeout))
        return self._client

    async def embed(self, text: str, api_key: str) -> EmbeddingResult:
        """
        Request an embedding for one text.

        Args:
            text: Text to embed
            api_key: Provider API key (workspace-owned or platform)

        Returns:
            EmbeddingResult with vector and usage

        Raises:
            EmbeddingProviderError: On transport failure, error status or malformed response
        """
        client = self._get_client()
        try:
            response = await client.post('/embeddings',
                                         json={
                                             'model': self.model_id,
                                             'input': text
                                         },
                                         headers={
                                             'Authorization': f'Bearer {api_key}',
                                             'Content-Type': 'application/json'
                                         })
        except httpx.TransportError as e:
            raise EmbeddingNetworkError(f'{type(e).__name__}: {e}')

        if response.status_code >= 400:
            raise EmbeddingProviderError(f'HTTP {response.status_code}: {self._error_message(response)}', response.status_code)

        try:
            payload = response.json()
        except ValueError:
            raise EmbeddingResponseError(f'Invalid embedding response format: {response.text[:200]}', response.status_code)

        data = payload.get('data') if isinstance(payload, dict) else None
        embedding = data[0].get('embedding') if data and isinstance(data[0], dict) else None
        if not isinstance(embedding, list) or not embedding:
            raise EmbeddingResponseError(f'Invalid embedding response format: {str(payload)[:200]}', response.status_code)

        usage = payload.get('usage') or {}
        return EmbeddingResult(embedding=[float(value) for value in embedding],
                               usage=EmbeddingUsage(prompt_tokens=usage.get('prompt_tokens'),
                                                    total_tokens=usage.get('total_tokens'),
                                                    cost=usage.get('cost')),
                               id=payload.get('id'),
                               from_cache=False)

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text[:500]
        error = body.get('error') if isinstance(body, dict) else None
        if isinstance(error, dict) and error.get('message'):
            return str(error['message'])
        return str(body)[:500]

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class EmbeddingGenerator:
    """Embedding generation with cache, retry logic and cancellation."""

    def __init__(self,
                 config: EmbeddingConfig,
                 provider: Optional[EmbeddingProvider] = None,
                 cache: Optional[EmbeddingCache] = None):
        """
        Initialize the generator.

        Args:
            config: EmbeddingConfig instance with retry parameters
            provider: Provider client, OpenRouter if None
            cache: Embedding cache shared with the document search service
        """
        self.config = config
        self.provider = provider if provider is not None else OpenRouterEmbeddingProvider(config)
        self.cache = cache if cache is not None else EmbeddingCache()
        self._in_flight: Dict[str, 'asyncio.Task[EmbeddingResult]'] = {}

    async def single_flight(self, cache_key: str, call: Callable[[], Awaitable[EmbeddingResult]]) -> EmbeddingResult:
        """
        Run at most one embedding call per cache key at a time.

        Callers arriving while a call for the same key is running wait for it and
        receive its vector as a cache hit, so the content is embedded once.

        Args:
            cache_key: Key the call fills
            call: Starts the embedding call when no call for the key is running

        Returns:
            The call's result; from_cache is set for callers that joined it
        """
        task = self._in_flight.get(cache_key)
        if task is not None:
            logger.debug(f'Joining in-flight embedding for cache key {cache_key}')
            result = await asyncio.shield(task)
            return EmbeddingResult(embedding=result.embedding, from_cache=True)

        task = asyncio.ensure_future(call())
        self._in_flight[cache_key] = task
        task.add_done_callback(functools.partial(self._forget_in_flight, cache_key))
        return await asyncio.shield(task)

    def _forget_in_flight(self, cache_key: str, task: 'asyncio.Task[EmbeddingResult]') -> None:
        if self._in_flight.get(cache_key) is task:
            del self._in_flight[cache_key]

    def _backoff_delay(self, attempt: int) -> float:
        # Exponential backoff with jitter
        base_delay = min(self.config.initial_delay * (self.config.backoff_multiplier**attempt), self.config.max_delay)
        return base_delay + random.uniform(0, base_delay * 0.2)

    async def generate_embedding(self,
                                 text: str,
                                 api_key: str,
                                 cache_key: Optional[str] = None,
                                 cancel_token: Optional[CancellationToken] = None) -> List[float]:
        """
        Generate the embedding vector for text.

        Args:
            text: Text to embed
            api_key: Provider API key
            cache_key: Cache key; a hit skips the network call entirely
            cancel_token: Aborts the in-flight request and any backoff sleep

        Returns:
            Embedding vector

        Raises:
            EmbeddingError: If embedding generation fails
            OperationCancelledError: If cancel_token fires
        """
        result = await self.generate_embedding_with_usage(text, api_key, cache_key, cancel_token)
        return result.embedding

    async def generate_embedding_with_usage(self,
                                            text: str,
                                            api_key: str,
                                            cache_key: Optional[str] = None,
                                            cancel_token: Optional[CancellationToken] = None) -> EmbeddingResult:
        """
        Generate an embedding and return the provider usage with it.

        Raises:
            EmbeddingConfigurationError: If the provider rejects the key
            EmbeddingThrottlingError: If throttling outlasts all retries
            EmbeddingError: For empty text and other failures
            OperationCancelledError: If cancel_token fires
        """
        if cache_key:
            cached = self.cache.get(cache_key)
            if cached is not None:
                return EmbeddingResult(embedding=cached, from_cache=True)

        if not text or not text.strip():
            raise EmbeddingError('Text cannot be empty')

        if cancel_token is not None:
            cancel_token.raise_if_cancelled()

        max_retries = self.config.max_retries
        # Throttling/network retries and validation retries draw on separate budgets
        attempt = 0
        validation_attempts = 0

        while True:
            if cancel_token is not None:
                cancel_token.raise_if_cancelled()

            try:
                result = await run_cancellable(self.provider.embed(text, api_key), cancel_token)
            except OperationCancelledError:
                raise
            except EmbeddingProviderError as e:
                kind = classify_error(e)

                if kind == 'configuration':
                    logger.error(f'Embedding provider rejected credentials: {e}')
                    raise EmbeddingConfigurationError(
                        f'Embedding provider rejected the API key ({e}). Check that the key is valid and enabled for '
                        f'embeddings, and that any HTTP referrer or IP restriction on it allows server-side requests.') from e

                if kind == 'validation':
                    if validation_attempts < self.config.validation_max_retries:
                        validation_attempts += 1
                        delay = self.config.validation_initial_delay * (2**(validation_attempts - 1))
                        logger.warning(f'Embedding response validation failure (attempt {validation_attempts}/'
                                       f'{self.config.validation_max_retries + 1}), retrying in {delay:.2f}s: {str(e)[:200]}')
                        await sleep_cancellable(delay, cancel_token)
                        continue
                    raise EmbeddingError(f'Embedding response validation failed after {validation_attempts + 1} attempts: {e}') from e

                if kind in ('throttling', 'network') and attempt < max_retries:
                    delay = self._backoff_delay(attempt)
                    attempt += 1
                    logger.warning(f'Embedding attempt {attempt}/{max_retries + 1} failed ({kind}), '
                                   f'retrying in {delay:.2f}s: {e}')
                    await sleep_cancellable(delay, cancel_token)
                    continue

                if kind == 'throttling':
                    raise EmbeddingThrottlingError(f'Embedding throttled after {attempt + 1} attempts: {e}') from e
                logger.error(f'Embedding generation failed: {e}')
                raise EmbeddingError(f'Embedding generation failed after {attempt + 1} attempts: {e}') from e

            if cache_key:
                self.cache.set(cache_key, result.embedding)
            return result

    async def aclose(self) -> None:
        close = getattr(self.provider, 'aclose', None)
        if close is not None:
            await close()
