"""Schemas for the one-way replication pipeline.

Covers file discovery, the replication queue and audit records, and the
per-transfer / per-candidate / per-tick results passed between components.
"""

from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field


class ReplicationStatus(StrEnum):
    """Lifecycle status of a queue record. Also the terminal status of an audit record."""

    PENDING = "Pending"
    COMPLETED = "Completed"
    FAILED = "Failed"


class ReplicationOutcome(StrEnum):
    """What happened to one candidate during a tick."""

    COMPLETED = "completed"
    FAILED = "failed"
    NOT_QUEUED = "not_queued"


class CandidateFile(BaseModel):
    """A file discovered in the watched directory during one discovery pass."""

    path: str = Field(description="Absolute path; also the dedup key")
    name: str
    size_bytes: int = Field(ge=0)
    observed_creation_time: datetime

    @property
    def dedup_key(self) -> str:
        return self.path


class QueueRecord(BaseModel):
    """One row of the replication queue, as read back from the store."""

    queue_id: int
    file_name: str
    file_size: int = Field(ge=0)
    source_region: str
    target_region: str
    status: ReplicationStatus
    upload_time: datetime = Field(description="Creation time of the source file")
    replication_start_time: datetime | None = None
    replication_end_time: datetime | None = None
    created_date: datetime
    modified_date: datetime


class AuditRecord(BaseModel):
    """An immutable record of one terminal replication outcome."""

    audit_id: int | None = None
    file_name: str
    file_size: int = Field(ge=0)
    status: ReplicationStatus
    source_region: str
    target_region: str
    upload_time: datetime
    replication_time: datetime = Field(description="When the retry sequence terminated")
    replication_duration_ms: int = Field(ge=0)
    error_message: str | None = None
    created_date: datetime | None = None


class TransferResult(BaseModel):
    """Result of one retry-controlled transfer: success, or the terminal failure."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    remote_path: str
    attempts: int = Field(ge=0)
    failure: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.failure is None

    @property
    def error_message(self) -> str | None:
        return None if self.failure is None else str(self.failure)


class ReplicationResult(BaseModel):
    """Result of routing one candidate through the pipeline."""

    file_name: str
    path: str
    outcome: ReplicationOutcome
    queue_id: int | None = None
    attempts: int = 0
    duration_ms: int = 0
    error_message: str | None = None
    store_errors: list[str] = Field(
        default_factory=list,
        description="Update/audit write failures that happened after the transfer",
    )

    @property
    def handled(self) -> bool:
        """True once a queue record exists and the transfer sequence has terminated."""
        return self.outcome != ReplicationOutcome.NOT_QUEUED


class TickSummary(BaseModel):
    """Counters for one tick of the discovery-and-replicate cycle."""

    ran: bool = True
    discovered: int = 0
    completed: int = 0
    failed: int = 0
    not_queued: int = 0
    errors: int = 0
    results: list[ReplicationResult] = Field(default_factory=list)
