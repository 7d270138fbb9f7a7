"""
Partition store interfaces and the per-address connection cache.
"""

import asyncio
from typing import Any, Dict, List, Optional, Protocol

from .logging_config import get_logger
from .partitions import PartitionAddress

logger = get_logger(__name__)

Row = Dict[str, Any]


class PartitionStoreError(Exception):
    """Custom exception for partition store errors."""
    pass


class TableNotFoundError(PartitionStoreError):
    """The partition has no table of that name yet."""

    def __init__(self, table: str):
        super().__init__(f'Table not found: {table}')
        self.table = table


class PartitionTable(Protocol):
    """A table of vector rows inside one partition."""

    supports_upsert: bool

    async def add(self, rows: List[Row]) -> None:
        ...

    async def upsert(self, rows: List[Row]) -> None:
        ...

    async def delete(self, filter_expr: str) -> int:
        ...

    async def search(self, vector: Optional[List[float]], filter_expr: Optional[str], limit: int) -> List[Row]:
        ...


class PartitionConnection(Protocol):
    """Handle on one partition."""

    async def open_table(self, name: str) -> PartitionTable:
        ...

    async def create_table(self, name: str, rows: List[Row]) -> PartitionTable:
        ...


class PartitionStore(Protocol):

    async def connect(self, address: PartitionAddress) -> PartitionConnection:
        ...


class PartitionConnectionCache:
    """One connection per partition address, shared by concurrent callers.

    A failed connect is evicted so the next call reconnects.
    """

    def __init__(self, store: PartitionStore):
        self.store = store
        self._connections: Dict[str, 'asyncio.Future[PartitionConnection]'] = {}

    async def get(self, address: PartitionAddress) -> PartitionConnection:
        pending = self._connections.get(address.uri)
        if pending is None:
            pending = asyncio.ensure_future(self.store.connect(address))
            self._connections[address.uri] = pending
        try:
            return await asyncio.shield(pending)
        except Exception as e:
            logger.error(f'Failed to connect to {address.uri}: {e}')
            if self._connections.get(address.uri) is pending:
                del self._connections[address.uri]
            raise

    def evict(self, address: PartitionAddress) -> None:
        self._connections.pop(address.uri, None)

    def clear(self) -> None:
        self._connections.clear()

    def __contains__(self, address: PartitionAddress) -> bool:
        return address.uri in self._connections

    def __len__(self) -> int:
        return len(self._connections)
