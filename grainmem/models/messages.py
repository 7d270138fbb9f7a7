"""
Wire schema for write operation messages exchanged over the write queue.
"""

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .core import FactRecord, RawFactData, TemporalGrain


class _WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra='ignore')


class FactRecordPayload(_WireModel):
    """A fact that already carries its embedding."""
    id: str = Field(min_length=1)
    content: str
    embedding: List[float] = Field(min_length=1)
    timestamp: str
    metadata: Optional[Dict[str, Any]] = None

    def to_record(self) -> FactRecord:
        return FactRecord(id=self.id,
                          content=self.content,
                          embedding=list(self.embedding),
                          timestamp=self.timestamp,
                          metadata=dict(self.metadata) if self.metadata else None)


class RawFactPayload(_WireModel):
    """A fact whose embedding is generated by the consumer."""
    id: str = Field(min_length=1)
    content: str = Field(min_length=1)
    timestamp: str
    metadata: Optional[Dict[str, Any]] = None
    cache_key: Optional[str] = Field(default=None, alias='cacheKey')

    def to_raw_fact(self) -> RawFactData:
        return RawFactData(id=self.id,
                           content=self.content,
                           timestamp=self.timestamp,
                           metadata=dict(self.metadata) if self.metadata else None,
                           cache_key=self.cache_key)


class WriteOperationData(_WireModel):
    records: Optional[List[FactRecordPayload]] = None
    raw_facts: Optional[List[RawFactPayload]] = Field(default=None, alias='rawFacts')
    record_ids: Optional[List[str]] = Field(default=None, alias='recordIds')


class WriteOperationMessage(_WireModel):
    """A single partition mutation.

    insert and update must carry records or rawFacts, rawFacts need a
    workspaceId for key lookup and billing, and delete needs recordIds.
    purge carries no payload.
    """
    operation: Literal['insert', 'update', 'delete', 'purge']
    agent_id: str = Field(alias='agentId', min_length=1)
    temporal_grain: TemporalGrain = Field(alias='temporalGrain')
    workspace_id: Optional[str] = Field(default=None, alias='workspaceId')
    data: WriteOperationData = Field(default_factory=WriteOperationData)

    @model_validator(mode='after')
    def _check_payload(self) -> 'WriteOperationMessage':
        data = self.data
        if self.operation in ('insert', 'update'):
            if not data.records and not data.raw_facts:
                raise ValueError(f'{self.operation} operation requires either records or rawFacts')
        if data.raw_facts and not self.workspace_id:
            raise ValueError('workspaceId is required when rawFacts are provided for embedding generation')
        if self.operation == 'delete' and data.record_ids is None:
            raise ValueError('delete operation requires recordIds')
        return self

    def to_wire(self) -> Dict[str, Any]:
        """Serialize with the camelCase field names used on the queue."""
        return self.model_dump(mode='json', by_alias=True, exclude_none=True)
