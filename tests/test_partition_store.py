"""Tests for the per-partition connection cache."""

import asyncio

import pytest

from conftest import InMemoryPartitionStore
from grainmem.utils.partition_store import PartitionConnectionCache, PartitionStoreError
from grainmem.utils.partitions import resolve_partition

DAILY = resolve_partition('agent-1', 'daily')
WEEKLY = resolve_partition('agent-1', 'weekly')


@pytest.mark.asyncio
async def test_concurrent_callers_share_one_connect():
    store = InMemoryPartitionStore()
    cache = PartitionConnectionCache(store)

    connections = await asyncio.gather(*(cache.get(DAILY) for _ in range(5)))

    assert store.connects == 1
    assert all(connection is connections[0] for connection in connections)
    assert DAILY in cache


@pytest.mark.asyncio
async def test_partitions_get_separate_connections():
    store = InMemoryPartitionStore()
    cache = PartitionConnectionCache(store)

    assert await cache.get(DAILY) is not await cache.get(WEEKLY)
    assert len(cache) == 2


@pytest.mark.asyncio
async def test_failed_connect_is_forgotten():
    store = InMemoryPartitionStore()
    store.fail_connects = 1
    cache = PartitionConnectionCache(store)

    with pytest.raises(PartitionStoreError):
        await cache.get(DAILY)
    assert DAILY not in cache

    await cache.get(DAILY)
    assert store.connects == 2


@pytest.mark.asyncio
async def test_evict_and_clear():
    store = InMemoryPartitionStore()
    cache = PartitionConnectionCache(store)
    await cache.get(DAILY)
    await cache.get(WEEKLY)

    cache.evict(DAILY)
    assert DAILY not in cache
    await cache.get(DAILY)
    assert store.connects == 3

    cache.clear()
    assert len(cache) == 0
