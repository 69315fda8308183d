from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class WireModel(BaseModel):
    """Base for payloads that travel through the queue or blob store as camelCase JSON."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)


class JobParams(WireModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    time_range_days: int = Field(default=30, ge=1)
    subscription_id: Optional[str] = None
    tenant_id: Optional[str] = None
    workspace_id: Optional[str] = None


class Batch(WireModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    job_id: str
    batch_index: int = Field(ge=0)
    work_items: List[str]
    job_params: JobParams = Field(default_factory=JobParams)
    total_batches: Optional[int] = None
    retry_count: int = 0
    enqueued_at: Optional[datetime] = None


class QueueMessage(BaseModel):
    message_id: str
    pop_receipt: str
    dequeue_count: int
    inserted_on: datetime
    expires_on: datetime
    next_visible_on: Optional[datetime] = None
    content: str

    def parse_batch(self) -> Batch:
        return Batch.model_validate_json(self.content)


class EnqueueReceipt(WireModel):
    message_id: str
    pop_receipt: str
    inserted_on: datetime
    expires_on: datetime


class EnqueueAllResult(WireModel):
    job_id: str
    batch_count: int
    message_ids: List[str]


class DeadLetteredBatch(WireModel):
    message_id: str
    original_message_id: Optional[str] = None
    content: Union[Dict[str, Any], str]
    error: str
    failed_at: datetime
    dequeue_count: int = 0


class QueueCounts(WireModel):
    approximate_messages_count: int


class QueueStats(WireModel):
    batch_jobs_queue: QueueCounts
    dead_letter_queue: QueueCounts


class BatchResultMetadata(WireModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    saved_at: datetime
    expires_at: datetime
    vm_count: int


class BatchResult(WireModel):
    job_id: str
    batch_index: int
    rows: List[Dict[str, Any]] = Field(default_factory=list)
    metadata: BatchResultMetadata


class BatchInfo(WireModel):
    blob_name: str
    batch_index: int
    content_length: int
    created_on: datetime
    metadata: Dict[str, str] = Field(default_factory=dict)


class BatchOutcome(WireModel):
    batch_index: int
    status: str
    vm_count: Optional[int] = None
    error: Optional[str] = None


class AggregateSummary(WireModel):
    total_batches: int = 0
    successful_batches: int = 0
    failed_batches: int = 0
    total_rows: int = 0


class AggregatedResults(WireModel):
    job_id: str
    rows: List[Dict[str, Any]] = Field(default_factory=list)
    summary: AggregateSummary = Field(default_factory=AggregateSummary)
    batches: List[BatchOutcome] = Field(default_factory=list)
    aggregated_at: datetime


class JobState(str, Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


TERMINAL_STATES = (JobState.COMPLETED, JobState.FAILED)


class JobStatusRecord(WireModel):
    job_id: str
    status: JobState = JobState.PENDING
    total_batches: int = 0
    progress: Dict[str, Any] = Field(default_factory=dict)
    partial_results: bool = False
    error: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class CacheLookup(WireModel):
    data: Any
    cache_hit: bool
    cache_age_seconds: Optional[float] = None
    cache_expiry: datetime


# HTTP request/response bodies


class JobCreate(WireModel):
    work_items: List[str] = Field(min_length=1)
    params: JobParams = Field(default_factory=JobParams)
    job_id: Optional[str] = None
    max_items_per_batch: Optional[int] = Field(default=None, ge=1)


class JobResponse(WireModel):
    job_id: str
    status: JobState
    total_batches: int
    partial_results: bool = False
    progress: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None
