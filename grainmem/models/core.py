"""
Core data models for the temporally-partitioned memory store.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class TemporalGrain(str, Enum):
    """Partitioning granularity for an agent's memory facts.

    Memory grains are ordered from the shortest to the longest time bucket.
    The docs grain holds workspace document snippets and sorts after all of them.
    """
    WORKING = 'working'
    DAILY = 'daily'
    WEEKLY = 'weekly'
    MONTHLY = 'monthly'
    QUARTERLY = 'quarterly'
    YEARLY = 'yearly'
    DOCS = 'docs'

    @property
    def rank(self) -> int:
        return _GRAIN_ORDER.index(self)

    def __lt__(self, other):
        if not isinstance(other, TemporalGrain):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other):
        if not isinstance(other, TemporalGrain):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other):
        if not isinstance(other, TemporalGrain):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other):
        if not isinstance(other, TemporalGrain):
            return NotImplemented
        return self.rank >= other.rank

    def __str__(self) -> str:
        return self.value


_GRAIN_ORDER = [
    TemporalGrain.WORKING,
    TemporalGrain.DAILY,
    TemporalGrain.WEEKLY,
    TemporalGrain.MONTHLY,
    TemporalGrain.QUARTERLY,
    TemporalGrain.YEARLY,
    TemporalGrain.DOCS,
]

MEMORY_GRAINS = tuple(grain for grain in _GRAIN_ORDER if grain is not TemporalGrain.DOCS)


@dataclass
class FactRecord:
    """An embedded fact stored in a partition."""
    id: str
    content: str
    embedding: List[float]
    timestamp: str  # ISO-8601
    metadata: Optional[Dict[str, Any]] = None


@dataclass
class RawFactData:
    """A fact waiting for its embedding to be generated by the write consumer."""
    id: str
    content: str
    timestamp: str
    metadata: Optional[Dict[str, Any]] = None
    cache_key: Optional[str] = None


@dataclass
class TemporalFilter:
    """Inclusive ISO-8601 date range applied to query results in-process."""
    start_date: Optional[str] = None
    end_date: Optional[str] = None


@dataclass
class QueryResult:
    """A row returned from a partition query."""
    id: str
    content: str
    embedding: List[float]
    timestamp: str
    metadata: Dict[str, Any]
    score: Optional[float] = None


@dataclass
class WorkspaceDocument:
    """Document metadata from the primary record store."""
    id: str
    name: str
    filename: str
    storage_key: str
    folder_path: str = ''


@dataclass
class DocumentCacheEntry:
    """Fetched document content and its derived snippets."""
    content: str
    snippets: List[str]
    fetched_at: float
    document_name: str
    folder_path: str


@dataclass
class SearchResult:
    """A ranked document snippet."""
    snippet: str
    document_id: str
    document_name: str
    folder_path: str
    similarity: float


@dataclass
class IndexingReport:
    """Outcome of one indexing pass over a workspace.

    A pass that hit the global timeout still reports what it embedded; the
    snippets it did not reach are counted as unprocessed.
    """
    workspace_id: str
    document_ids: List[str] = field(default_factory=list)
    documents_total: int = 0
    documents_skipped: List[str] = field(default_factory=list)
    snippets_pending: int = 0
    snippets_embedded: int = 0
    snippets_failed: int = 0
    snippets_unprocessed: int = 0
    timed_out: bool = False

    @property
    def complete(self) -> bool:
        return not self.timed_out and self.snippets_failed == 0 and self.snippets_unprocessed == 0


@dataclass
class EmbeddingUsage:
    """Token usage and cost reported by the embedding provider."""
    prompt_tokens: Optional[int] = None
    total_tokens: Optional[int] = None
    cost: Optional[float] = None  # USD


@dataclass
class EmbeddingResult:
    """Embedding vector plus provider metadata."""
    embedding: List[float]
    usage: Optional[EmbeddingUsage] = None
    id: Optional[str] = None
    from_cache: bool = False


@dataclass
class CreditReservation:
    """A provisional charge placed before an embedding call."""
    reservation_id: str
    workspace_id: str
    reserved_amount: int  # nano-USD
    estimated_tokens: int
    uses_byok: bool = False
    agent_id: Optional[str] = None


@dataclass
class QueueMessage:
    """A single delivery from the write operation queue."""
    message_id: str
    body: Optional[str]
    receipt_handle: Optional[str] = None


@dataclass
class BatchResult:
    """Per-message outcome of a consumed batch."""
    total: int
    failed_message_ids: List[str] = field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return self.total - len(self.failed_message_ids)
