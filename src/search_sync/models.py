"""Data Models Module

Defines Pydantic models for the values that flow through the indexing
orchestrator: collection definitions, schema diffs, per-batch and
per-partition import accounting, and the descriptors returned by the
lifecycle, dispatch and cascade layers.
"""

from typing import Any, Callable, Dict, List, Optional, Set, Tuple
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

STATUS_OK = "ok"
STATUS_PARTIAL = "partial"
STATUS_FAILED = "failed"
STATUS_SPLIT = "split"


class FieldSpec(BaseModel):
    """A single declared field of a logical collection."""

    model_config = ConfigDict(frozen=True)

    name: str
    type: str = "string"
    array: bool = False
    optional: Optional[bool] = None
    sort: Optional[bool] = None
    facet: Optional[bool] = None
    locale: Optional[str] = None
    infix: Optional[bool] = None
    empty_filtering: Optional[bool] = None


class Reference(BaseModel):
    """Belongs-to edge: ``local_key`` on this collection points at ``collection.foreign_key``."""

    model_config = ConfigDict(frozen=True)

    collection: str
    local_key: str
    foreign_key: str = "id"


class CollectionDefinition(BaseModel):
    """Immutable description of one logical collection.

    Besides the schema declaration it carries the collaborators used to
    populate the collection: a source adapter (``each_batch``), a record
    mapper, an optional partitioner and an optional stale-delete filter
    builder.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    name: str
    fields: Tuple[FieldSpec, ...] = ()
    references: Tuple[Reference, ...] = ()
    keep_last: Optional[int] = Field(default=None, ge=0)
    default_sorting_field: Optional[str] = None
    token_separators: Optional[Tuple[str, ...]] = None
    symbols_to_index: Optional[Tuple[str, ...]] = None

    source: Optional[Any] = None
    map_record: Optional[Callable[[Any], Dict[str, Any]]] = None
    partitioner: Optional[Any] = None
    stale_filter: Optional[Callable[[Any], Optional[str]]] = None


class SchemaDiff(BaseModel):
    """Structured difference between the compiled and the live schema."""

    logical: str
    physical: Optional[str] = None
    added_fields: List[Dict[str, Any]] = []
    removed_fields: List[Dict[str, Any]] = []
    changed_fields: Dict[str, Dict[str, List[Any]]] = {}
    collection_options: Dict[str, Any] = {}

    @property
    def missing(self) -> bool:
        return self.collection_options.get("live") == "missing"

    @property
    def in_sync(self) -> bool:
        return not (
            self.added_fields
            or self.removed_fields
            or self.changed_fields
            or self.collection_options
        )

    @property
    def drift(self) -> bool:
        return not self.missing and not self.in_sync


OUTCOME_SUCCESS = "success"
OUTCOME_TRANSIENT = "transient"
OUTCOME_PERMANENT = "permanent"
OUTCOME_TOO_LARGE = "payload_too_large"


class ImportOutcome(BaseModel):
    """Typed result of one bulk import request.

    ``success`` means the request itself was accepted; individual
    documents may still have failed (see ``failure_count``).
    """

    kind: str
    http_status: Optional[int] = None
    success_count: int = 0
    failure_count: int = 0
    errors: List[str] = []
    bytes_sent: int = 0


class BatchImportResult(BaseModel):
    """Accounting for one attempted bulk request (split halves get their own)."""

    index: int
    docs_count: int
    success_count: int = 0
    failure_count: int = 0
    attempts: int = 0
    duration_ms: int = 0
    http_status: Optional[int] = None
    transient_retry: bool = False
    bytes_sent: int = 0
    split_level: int = 0
    split: bool = False
    errors_sample: List[str] = []

    @property
    def status(self) -> str:
        if self.split:
            return STATUS_SPLIT
        if self.failure_count == 0:
            return STATUS_OK
        if self.success_count > 0:
            return STATUS_PARTIAL
        return STATUS_FAILED


class PartitionSummary(BaseModel):
    collection: str
    into: Optional[str] = None
    partition: Any = None
    partition_hash: Optional[str] = None
    status: str = STATUS_OK
    batches_total: int = 0
    docs_total: int = 0
    success_total: int = 0
    failed_total: int = 0
    duration_ms: int = 0
    batches: List[BatchImportResult] = []
    error: Optional[str] = None

    @classmethod
    def from_batches(
        cls,
        collection: str,
        into: Optional[str],
        partition: Any,
        batches: List[BatchImportResult],
        duration_ms: int,
        partition_hash: Optional[str] = None,
    ) -> "PartitionSummary":
        success_total = sum(b.success_count for b in batches)
        failed_total = sum(b.failure_count for b in batches)
        # A 413 parent is recorded next to its halves, so count documents by outcome.
        docs_total = success_total + failed_total
        if failed_total == 0:
            status = STATUS_OK
        elif success_total > 0:
            status = STATUS_PARTIAL
        else:
            status = STATUS_FAILED
        return cls(
            collection=collection,
            into=into,
            partition=partition,
            partition_hash=partition_hash,
            status=status,
            batches_total=len(batches),
            docs_total=docs_total,
            success_total=success_total,
            failed_total=failed_total,
            duration_ms=duration_ms,
            batches=batches,
        )

    @classmethod
    def failed(
        cls,
        collection: str,
        partition: Any,
        error: str,
        into: Optional[str] = None,
        partition_hash: Optional[str] = None,
    ) -> "PartitionSummary":
        return cls(
            collection=collection,
            into=into,
            partition=partition,
            partition_hash=partition_hash,
            status=STATUS_FAILED,
            error=error,
        )


def aggregate_status(statuses: List[str]) -> str:
    """Fold partition statuses: ok iff all ok, failed iff all failed, else partial."""
    if not statuses or all(s == STATUS_OK for s in statuses):
        return STATUS_OK
    if all(s == STATUS_FAILED for s in statuses):
        return STATUS_FAILED
    return STATUS_PARTIAL


class DispatchDescriptor(BaseModel):
    mode: str
    collection: str
    partition: Any = None
    into: Optional[str] = None
    summary: Optional[PartitionSummary] = None
    job_id: Optional[str] = None
    queue: Optional[str] = None
    duration_ms: Optional[int] = None


class RunSummary(BaseModel):
    collection: str
    into: Optional[str] = None
    status: str = STATUS_OK
    partitions: List[PartitionSummary] = []
    enqueued: List[DispatchDescriptor] = []
    duration_ms: int = 0

    @property
    def docs_total(self) -> int:
        return sum(p.docs_total for p in self.partitions)

    @property
    def failed_total(self) -> int:
        return sum(p.failed_total for p in self.partitions)


class ApplyResult(BaseModel):
    logical: str
    new_physical: str
    previous_physical: Optional[str] = None
    alias_target: str
    dropped_physicals: List[str] = []
    populate_status: Optional[str] = None


class RollbackResult(BaseModel):
    logical: str
    new_target: str
    previous_target: Optional[str] = None


class StaleDeleteResult(BaseModel):
    status: str
    collection: str
    into: Optional[str] = None
    partition_hash: Optional[str] = None
    filter_hash: Optional[str] = None
    deleted_count: int = 0
    will_delete: bool = False
    duration_ms: int = 0
    reason: Optional[str] = None
    error: Optional[str] = None


class CascadeOutcome(BaseModel):
    collection: str
    mode: str
    partitions: Optional[List[Any]] = None
    status: Optional[str] = None
    error: Optional[str] = None


class CascadeReport(BaseModel):
    source: str
    outcomes: List[CascadeOutcome] = []


class IndexationReport(BaseModel):
    """What ``indexate`` did, step by step."""

    collection: str
    mode: str = "full"
    steps: List[str] = []
    preflight: List[Tuple[str, str]] = []
    applied: Optional[ApplyResult] = None
    run: Optional[RunSummary] = None
    dropped_physicals: List[str] = []
    cascade: Optional[CascadeReport] = None
    skipped_reason: Optional[str] = None

    @property
    def status(self) -> Optional[str]:
        if self.run is not None:
            return self.run.status
        if self.applied is not None:
            return self.applied.populate_status
        return None


class RunContext(BaseModel):
    """Per-run context threaded explicitly through every call.

    ``visited`` is shared by preflight and cascade so a logical collection
    is processed at most once per top-level run, whatever the direction
    of traversal.
    """

    correlation_id: str = Field(default_factory=lambda: uuid4().hex)
    dispatch_mode: Optional[str] = None
    job_id: Optional[str] = None
    visited: Set[str] = Field(default_factory=set)
    cascade_depth: int = 0

    def descend(self) -> "RunContext":
        """Context for one cascade level deeper; the visited set is shared."""
        return self.model_copy(update={"cascade_depth": self.cascade_depth + 1})
