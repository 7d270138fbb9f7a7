"""
Shared pytest fixtures for grainmem tests.

Provides in-memory stand-ins for the embedding provider, the partition store,
the object store and the record store so no AWS or network access is needed.
"""

import asyncio
import hashlib
import math
import re
from typing import Dict, List, Optional

import pytest

from grainmem.models.core import EmbeddingResult, EmbeddingUsage, WorkspaceDocument
from grainmem.services.credit_guard import CreditReservationGuard
from grainmem.services.write_consumer import WriteConsumer
from grainmem.utils.api_keys import ApiKeyResolver
from grainmem.utils.config import CreditConfig, DocumentSearchConfig, EmbeddingConfig
from grainmem.utils.credit_store import InMemoryReservationStore
from grainmem.utils.embedding import EmbeddingCache, EmbeddingGenerator
from grainmem.utils.filters import MATCH_ALL
from grainmem.utils.partition_store import PartitionConnectionCache, PartitionStoreError, Row, TableNotFoundError
from grainmem.utils.partitions import PartitionAddress
from grainmem.utils.s3_client import ObjectNotFoundError

WORKSPACE = 'ws-1'


def mock_vector(text: str, dimension: int = 8) -> List[float]:
    """Deterministic non-zero embedding derived from the text hash."""
    digest = hashlib.md5(text.encode('utf-8')).digest()
    return [(digest[i % len(digest)] + 1) / 256.0 for i in range(dimension)]


class MockEmbeddingProvider:
    """
    Deterministic embedding provider.

    Failures queued in `failures` are raised by successive calls (None means succeed);
    texts listed in `fail_texts` always fail with the mapped error.
    """

    dimension = 8

    def __init__(self, failures=None, delay: float = 0.0, cost: Optional[float] = None, fail_texts=None):
        self.calls = 0
        self.texts: List[str] = []
        self.api_keys: List[str] = []
        self.failures = list(failures or [])
        self.delay = delay
        self.cost = cost
        self.fail_texts = dict(fail_texts or {})

    async def embed(self, text: str, api_key: str) -> EmbeddingResult:
        self.calls += 1
        self.texts.append(text)
        self.api_keys.append(api_key)
        if self.delay:
            await asyncio.sleep(self.delay)
        if text in self.fail_texts:
            raise self.fail_texts[text]
        if self.failures:
            failure = self.failures.pop(0)
            if failure is not None:
                raise failure
        tokens = max(1, len(text) // 4)
        return EmbeddingResult(embedding=mock_vector(text, self.dimension),
                               usage=EmbeddingUsage(prompt_tokens=tokens, total_tokens=tokens, cost=self.cost),
                               id=f'emb-{self.calls}')


_QUOTED = re.compile(r'"((?:[^"\\]|\\.)*)"')


def parse_filter(expr: Optional[str]):
    """Parse the query_string subset produced by grainmem.utils.filters into (field, values, negated) clauses."""
    if not expr or expr == MATCH_ALL:
        return []
    clauses = [expr]
    if expr.startswith('(') and ') AND (' in expr:
        clauses = expr[1:-1].split(') AND (')
    parsed = []
    for clause in clauses:
        negated = clause.startswith('NOT ')
        if negated:
            clause = clause[len('NOT '):]
        field, _, rest = clause.partition(':')
        values = {re.sub(r'\\(.)', r'\1', value) for value in _QUOTED.findall(rest)}
        parsed.append((field, values, negated))
    return parsed


def row_matches(row: Row, expr: Optional[str]) -> bool:
    return all((str(row.get(field)) in values) != negated for field, values, negated in parse_filter(expr))


def _cosine(a: List[float], b: List[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    norm = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    return dot / norm if norm else 0.0


class InMemoryTable:
    """Partition table recording every mutation it receives."""

    def __init__(self, rows: List[Row], supports_upsert: bool = False):
        self.rows: List[Row] = [dict(row) for row in rows]
        self.supports_upsert = supports_upsert
        self.calls: List[tuple] = []
        self.search_calls: List[dict] = []

    async def add(self, rows: List[Row]) -> None:
        self.calls.append(('add', [row['id'] for row in rows]))
        self.rows.extend(dict(row) for row in rows)

    async def upsert(self, rows: List[Row]) -> None:
        self.calls.append(('upsert', [row['id'] for row in rows]))
        ids = {row['id'] for row in rows}
        self.rows = [row for row in self.rows if row['id'] not in ids] + [dict(row) for row in rows]

    async def delete(self, filter_expr: str) -> int:
        self.calls.append(('delete', filter_expr))
        kept = [row for row in self.rows if not row_matches(row, filter_expr)]
        deleted = len(self.rows) - len(kept)
        self.rows = kept
        return deleted

    async def search(self, vector, filter_expr, limit) -> List[Row]:
        self.search_calls.append({'vector': vector, 'filter': filter_expr, 'limit': limit})
        rows = [dict(row) for row in self.rows if row_matches(row, filter_expr)]
        if vector:
            for row in rows:
                row['_score'] = _cosine(vector, row['vector'])
            rows.sort(key=lambda row: row['_score'], reverse=True)
        return rows[:limit]


class InMemoryPartition:

    def __init__(self, supports_upsert: bool = False):
        self.tables: Dict[str, InMemoryTable] = {}
        self.created: List[str] = []
        self.supports_upsert = supports_upsert

    async def open_table(self, name: str) -> InMemoryTable:
        if name not in self.tables:
            raise TableNotFoundError(name)
        return self.tables[name]

    async def create_table(self, name: str, rows: List[Row]) -> InMemoryTable:
        self.created.append(name)
        self.tables[name] = InMemoryTable(rows, self.supports_upsert)
        return self.tables[name]


class InMemoryPartitionStore:
    """Partition store keyed by partition uri; `fail_connects` makes the next connects fail."""

    def __init__(self, supports_upsert: bool = False):
        self.partitions: Dict[str, InMemoryPartition] = {}
        self.connects = 0
        self.fail_connects = 0
        self.supports_upsert = supports_upsert

    async def connect(self, address: PartitionAddress) -> InMemoryPartition:
        self.connects += 1
        await asyncio.sleep(0)
        if self.fail_connects:
            self.fail_connects -= 1
            raise PartitionStoreError(f'Cannot reach {address.uri}')
        return self.partitions.setdefault(address.uri, InMemoryPartition(self.supports_upsert))

    def table(self, address: PartitionAddress, name: str = 'vectors') -> Optional[InMemoryTable]:
        partition = self.partitions.get(address.uri)
        return partition.tables.get(name) if partition else None

    def seed(self, address: PartitionAddress, rows: List[Row], name: str = 'vectors') -> InMemoryTable:
        partition = self.partitions.setdefault(address.uri, InMemoryPartition(self.supports_upsert))
        partition.tables[name] = InMemoryTable(rows, self.supports_upsert)
        return partition.tables[name]


class FakeObjectStore:

    def __init__(self, objects: Optional[Dict[str, bytes]] = None):
        self.objects = dict(objects or {})
        self.requested: List[str] = []

    async def get(self, key: str) -> bytes:
        self.requested.append(key)
        await asyncio.sleep(0)
        if key not in self.objects:
            raise ObjectNotFoundError(f'Document not found: {key}', key)
        return self.objects[key]


class FakeRecordStore:

    def __init__(self, documents: Optional[Dict[str, List[WorkspaceDocument]]] = None, delay: float = 0.0):
        self.documents = dict(documents or {})
        self.delay = delay
        self.list_calls = 0

    async def list_documents(self, workspace_id: str) -> List[WorkspaceDocument]:
        self.list_calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        return list(self.documents.get(workspace_id, []))


class FakeKeyStore:

    def __init__(self, keys: Optional[Dict[str, str]] = None):
        self.keys = dict(keys or {})

    async def get_workspace_api_key(self, workspace_id: str, provider: str) -> Optional[str]:
        return self.keys.get(workspace_id)


@pytest.fixture
def embedding_config():
    return EmbeddingConfig(api_url='http://embeddings.test/api/v1',
                           model_id='mock-model',
                           platform_api_key='platform-key',
                           request_timeout=1.0,
                           max_retries=3,
                           initial_delay=0.001,
                           max_delay=0.01,
                           backoff_multiplier=2.0,
                           validation_max_retries=2,
                           validation_initial_delay=0.001)


@pytest.fixture
def credit_config():
    # 1 USD per million tokens: 1000 nano-USD per token
    return CreditConfig(cost_per_million_tokens_usd=1.0,
                        usage_cost_markup=1.055,
                        reservations_table='credit-reservations',
                        workspaces_table='workspace',
                        transactions_table='workspace-credit-transactions',
                        region='eu-west-2')


@pytest.fixture
def search_config():
    return DocumentSearchConfig(chunk_size=2000, indexing_timeout_seconds=5.0, default_top_n=5, max_document_snippets=10000)


@pytest.fixture
def provider():
    return MockEmbeddingProvider()


@pytest.fixture
def embedding_cache():
    return EmbeddingCache()


@pytest.fixture
def generator(embedding_config, provider, embedding_cache):
    return EmbeddingGenerator(embedding_config, provider=provider, cache=embedding_cache)


@pytest.fixture
def ledger():
    return InMemoryReservationStore({WORKSPACE: 1_000_000_000})


@pytest.fixture
def guard(ledger, credit_config):
    return CreditReservationGuard(ledger, credit_config)


@pytest.fixture
def key_store():
    return FakeKeyStore()


@pytest.fixture
def key_resolver(key_store):
    return ApiKeyResolver('platform-key', key_store)


@pytest.fixture
def partition_store():
    return InMemoryPartitionStore()


@pytest.fixture
def consumer(partition_store, generator, guard, key_resolver):
    return WriteConsumer(PartitionConnectionCache(partition_store), generator, guard, key_resolver)
