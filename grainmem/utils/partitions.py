"""
Partition addressing for per-agent, per-grain vector stores.
"""

import hashlib
import re
from dataclasses import dataclass
from typing import Union

from ..models.core import TemporalGrain

VECTORS_TABLE = 'vectors'

_INDEX_UNSAFE = re.compile(r'[^a-z0-9_-]+')


@dataclass(frozen=True)
class PartitionAddress:
    """Storage address of one partition."""
    agent_id: str
    grain: TemporalGrain
    index_name: str

    @property
    def uri(self) -> str:
        return f'opensearch://{self.index_name}'

    def table_index(self, table: str = VECTORS_TABLE) -> str:
        """Physical index holding a table of this partition."""
        return f'{self.index_name}-{table}'


def parse_grain(value: Union[str, TemporalGrain]) -> TemporalGrain:
    """Coerce a grain name into a TemporalGrain.

    Raises:
        ValueError: If the value is not a known grain
    """
    if isinstance(value, TemporalGrain):
        return value
    try:
        return TemporalGrain(str(value).strip().lower())
    except ValueError:
        raise ValueError(f'Unknown temporal grain: {value!r}')


def _index_safe_agent_id(agent_id: str) -> str:
    safe = _INDEX_UNSAFE.sub('_', agent_id.lower()).strip('_-')
    if safe != agent_id:
        # Sanitising is lossy, keep raw ids that collapse to the same name apart
        digest = hashlib.sha256(agent_id.encode('utf-8')).hexdigest()[:8]
        safe = f'{safe}_{digest}' if safe else digest
    return safe


def resolve_partition(agent_id: str, grain: Union[str, TemporalGrain], prefix: str = 'vectordb') -> PartitionAddress:
    """Map (agent_id, grain) to the partition's storage address.

    Args:
        agent_id: Agent ID (the workspace ID for the docs grain)
        grain: Temporal grain
        prefix: Index name prefix

    Returns:
        PartitionAddress for the partition

    Raises:
        ValueError: If agent_id is empty or grain is unknown
    """
    if not agent_id or not agent_id.strip():
        raise ValueError('Agent ID is required')
    grain = parse_grain(grain)
    index_name = f'{prefix.lower()}-{_index_safe_agent_id(agent_id)}-{grain.value}'
    return PartitionAddress(agent_id=agent_id, grain=grain, index_name=index_name)


def message_group_id(agent_id: str, grain: Union[str, TemporalGrain]) -> str:
    """Queue ordering key serialising writes to one partition."""
    return f'{agent_id}:{parse_grain(grain).value}'
