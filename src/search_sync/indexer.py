"""Batch Indexer

Streams a partition's records into a physical collection:

  source batches -> mapper -> accumulate up to ``batch_size`` -> bulk upsert

Each bulk request is classified by its ``ImportOutcome``:
  - transient (timeout, connection, 429, 5xx): retried with backoff
  - permanent (400/401/403/404/422...): failed immediately
  - payload_too_large (413): split in half and resubmitted recursively;
    an irreducible single document is recorded as failed on its own

One ``BatchImportResult`` is kept per attempted request, split halves
included, so nothing is aggregated silently. Only the current batch is
held in memory.

Also hosts stale-document deletion for a partition.
"""

import itertools
import logging
import re
import time
from typing import Any, Dict, Iterable, Iterator, List, Optional

from .config import Settings
from .errors import InvalidParams, MapperValidationError, SearchSyncError, StrictSafetyViolation
from .mapper import Mapper
from .models import (
    OUTCOME_SUCCESS,
    OUTCOME_TOO_LARGE,
    OUTCOME_TRANSIENT,
    STATUS_FAILED,
    BatchImportResult,
    CollectionDefinition,
    PartitionSummary,
    RunContext,
    StaleDeleteResult,
)
from .observability import EventSink, filter_hash, partition_fields
from .partitioner import run_hook
from .retry import RetryPolicy

logger = logging.getLogger(__name__)

MAX_ERROR_SAMPLES = 5
MAX_ERROR_CHARS = 200
FIELD_COMPARATOR_RE = re.compile(r"[A-Za-z0-9_]+\s*[:><=!]")


def suspicious_filter(filter_by: str) -> bool:
    """A filter without '=' or with a bare '*' and no field comparator looks catch-all."""
    if "=" not in filter_by:
        return True
    if "*" in filter_by and not FIELD_COMPARATOR_RE.search(filter_by):
        return True
    return False


class BatchIndexer:
    def __init__(
        self,
        client: Any,
        settings: Optional[Settings] = None,
        sink: Optional[EventSink] = None,
        retry: Optional[RetryPolicy] = None,
    ):
        self.client = client
        self.settings = settings or Settings()
        self.sink = sink
        self.retry = retry or RetryPolicy.from_settings(self.settings)
        self.batch_size = self.settings.batch_size

    # ---- bulk import ----

    def import_batches(
        self,
        collection: str,
        into: str,
        batches: Iterable[List[Dict[str, Any]]],
        partition: Any = None,
    ) -> PartitionSummary:
        """Import already-mapped document batches into ``into``."""
        start = time.time()
        counter = itertools.count(1)
        results: List[BatchImportResult] = []
        for docs in self._rechunk(batches):
            results.extend(self._submit(collection, into, docs, counter))
        return PartitionSummary.from_batches(
            collection,
            into,
            partition,
            results,
            int((time.time() - start) * 1000),
            partition_hash=partition_fields(partition)["partition_hash"],
        )

    def _rechunk(self, batches: Iterable[List[Dict[str, Any]]]) -> Iterator[List[Dict[str, Any]]]:
        buffer: List[Dict[str, Any]] = []
        for docs in batches:
            buffer.extend(docs)
            while len(buffer) >= self.batch_size:
                yield buffer[: self.batch_size]
                buffer = buffer[self.batch_size:]
        if buffer:
            yield buffer

    def _submit(
        self,
        collection: str,
        into: str,
        docs: List[Dict[str, Any]],
        counter: Iterator[int],
        level: int = 0,
    ) -> List[BatchImportResult]:
        index = next(counter)
        start = time.time()
        attempt = 0
        retried = False
        while True:
            attempt += 1
            outcome = self.client.import_documents(into, docs)
            if outcome.kind == OUTCOME_TRANSIENT and self.retry.should_retry(attempt, outcome):
                logger.warning(
                    "Batch %d into %s: transient failure (status=%s) on attempt %d/%d",
                    index,
                    into,
                    outcome.http_status,
                    attempt,
                    self.retry.attempts,
                )
                retried = True
                self.retry.wait(attempt)
                continue
            break

        docs_count = len(docs)
        result = BatchImportResult(
            index=index,
            docs_count=docs_count,
            attempts=attempt,
            http_status=outcome.http_status,
            transient_retry=retried,
            bytes_sent=outcome.bytes_sent,
            split_level=level,
            duration_ms=int((time.time() - start) * 1000),
            errors_sample=[e[:MAX_ERROR_CHARS] for e in outcome.errors[:MAX_ERROR_SAMPLES]],
        )

        if outcome.kind == OUTCOME_TOO_LARGE and docs_count > 1:
            mid = docs_count // 2
            logger.info(
                "Batch %d into %s: payload too large (%d docs), splitting into %d + %d",
                index,
                into,
                docs_count,
                mid,
                docs_count - mid,
            )
            result.split = True
            self._emit_batch(collection, into, result)
            return (
                [result]
                + self._submit(collection, into, docs[:mid], counter, level + 1)
                + self._submit(collection, into, docs[mid:], counter, level + 1)
            )

        if outcome.kind == OUTCOME_SUCCESS:
            success = min(outcome.success_count, docs_count)
            result.success_count = success
            result.failure_count = docs_count - success
            if result.failure_count:
                logger.warning(
                    "Batch %d into %s: %d/%d documents rejected (sample: %s)",
                    index,
                    into,
                    result.failure_count,
                    docs_count,
                    result.errors_sample[:1],
                )
            else:
                logger.debug("✓ Batch %d into %s: %d docs (attempts=%d)", index, into, docs_count, attempt)
        else:
            if outcome.kind == OUTCOME_TOO_LARGE and not result.errors_sample:
                result.errors_sample = ["document exceeds the maximum payload size"]
            result.failure_count = docs_count
            logger.error(
                "Batch %d into %s failed: kind=%s status=%s attempts=%d",
                index,
                into,
                outcome.kind,
                outcome.http_status,
                attempt,
            )

        self._emit_batch(collection, into, result)
        return [result]

    def _emit_batch(self, collection: str, into: str, result: BatchImportResult) -> None:
        if self.sink is None:
            return
        self.sink.emit(
            "indexer.batch_import",
            {
                "collection": collection,
                "into": into,
                "batch_index": result.index,
                "docs_count": result.docs_count,
                "success_count": result.success_count,
                "failure_count": result.failure_count,
                "attempts": result.attempts,
                "http_status": result.http_status,
                "bytes_sent": result.bytes_sent,
                "transient_retry": result.transient_retry,
                "split": result.split,
                "duration_ms": result.duration_ms,
            },
        )

    # ---- partitions ----

    def rebuild_partition(
        self,
        definition: CollectionDefinition,
        partition: Any = None,
        into: Optional[str] = None,
        ctx: Optional[RunContext] = None,
    ) -> PartitionSummary:
        """
        Fetch, map and import one partition of ``definition``.

        ``into`` defaults to the logical alias. Mapper failures are
        recorded as failed batches and do not stop the partition. A failing
        or timed-out ``after_partition`` hook marks the partition failed but
        keeps its batch accounting.
        """
        ctx = ctx or RunContext()
        target = into or definition.name
        partitioner = definition.partitioner
        pfields = partition_fields(partition)
        start = time.time()

        rows = self._rows_for(definition, partition)
        mapper = Mapper(definition)

        self._emit(
            "indexer.partition_start",
            {
                "collection": definition.name,
                "into": target,
                **pfields,
                "correlation_id": ctx.correlation_id,
                "dispatch_mode": ctx.dispatch_mode,
                "job_id": ctx.job_id,
            },
        )

        if partitioner is not None and partitioner.before_partition is not None:
            if partition is None:
                logger.debug("Skipping before_partition hook for %s: no partition key", definition.name)
            elif not self._logical_present(definition.name):
                logger.debug("Skipping before_partition hook for %s: collection not present yet", definition.name)
            else:
                run_hook(
                    partitioner.before_partition, partition, self.settings.before_hook_timeout_s, name="before_partition"
                )

        counter = itertools.count(1)
        results: List[BatchImportResult] = []
        for docs in self._rechunk(self._mapped(mapper, rows, counter, results)):
            results.extend(self._submit(definition.name, target, docs, counter))

        hook_error = None
        if partitioner is not None and partitioner.after_partition is not None:
            try:
                run_hook(partitioner.after_partition, partition, self.settings.after_hook_timeout_s, name="after_partition")
            except Exception as e:
                logger.exception("after_partition hook failed for %s partition=%r", definition.name, partition)
                hook_error = f"after_partition: {type(e).__name__}: {str(e)[:MAX_ERROR_CHARS]}"

        results.sort(key=lambda r: r.index)
        summary = PartitionSummary.from_batches(
            definition.name,
            target,
            partition,
            results,
            int((time.time() - start) * 1000),
            partition_hash=pfields["partition_hash"],
        )
        if hook_error is not None:
            summary.status = STATUS_FAILED
            summary.error = hook_error
        self._emit(
            "indexer.partition_finish",
            {
                "collection": definition.name,
                "into": target,
                **pfields,
                "batches_total": summary.batches_total,
                "docs_total": summary.docs_total,
                "success_total": summary.success_total,
                "failed_total": summary.failed_total,
                "status": summary.status,
                "duration_ms": summary.duration_ms,
            },
        )
        return summary

    def _rows_for(self, definition: CollectionDefinition, partition: Any) -> Iterable[List[Any]]:
        partitioner = definition.partitioner
        if partitioner is not None and partitioner.fetch is not None:
            return partitioner.batches(partition)
        if definition.source is not None:
            return definition.source.each_batch(partition)
        raise InvalidParams(f"{definition.name}: no partition fetch and no source defined")

    def _mapped(
        self,
        mapper: Mapper,
        rows: Iterable[List[Any]],
        counter: Iterator[int],
        results: List[BatchImportResult],
    ) -> Iterator[List[Dict[str, Any]]]:
        for batch_index, records in enumerate(rows):
            try:
                docs, _ = mapper.map_batch(records, batch_index=batch_index)
            except MapperValidationError as e:
                logger.warning(
                    "Batch %d of %s rejected by mapper (%d records): %s",
                    batch_index,
                    mapper.definition.name,
                    len(records),
                    str(e)[:MAX_ERROR_CHARS],
                )
                results.append(
                    BatchImportResult(
                        index=next(counter),
                        docs_count=len(records),
                        failure_count=len(records),
                        errors_sample=[str(e)[:MAX_ERROR_CHARS]],
                    )
                )
                continue
            yield docs

    def _logical_present(self, logical: str) -> bool:
        if self.client.resolve_alias(logical):
            return True
        return self.client.retrieve_collection(logical) is not None

    # ---- stale deletes ----

    def delete_stale(
        self,
        definition: CollectionDefinition,
        partition: Any = None,
        into: Optional[str] = None,
        dry_run: bool = False,
        strict: Optional[bool] = None,
    ) -> StaleDeleteResult:
        """
        Delete documents matching the collection's stale filter for a partition.

        Skipped when stale deletes are disabled, no filter is defined or the
        filter is blank. In strict mode a catch-all looking filter raises
        ``StrictSafetyViolation``. Backend errors are reported as ``failed``.
        """
        target = into or definition.name
        pfields = partition_fields(partition)
        strict = self.settings.stale_strict_mode if strict is None else strict
        base = {"collection": definition.name, "into": target, "partition_hash": pfields["partition_hash"]}

        if not self.settings.stale_deletes_enabled:
            return self._stale_skipped(base, "disabled")
        if definition.stale_filter is None:
            return self._stale_skipped(base, "no_filter_defined")

        filter_by = definition.stale_filter(partition)
        if filter_by is None or not str(filter_by).strip():
            return self._stale_skipped(base, "empty_filter")
        filter_by = str(filter_by)
        fhash = filter_hash(filter_by)

        if strict and suspicious_filter(filter_by):
            self._stale_skipped(base, "strict_blocked", filter_hash=fhash)
            raise StrictSafetyViolation(
                f"{definition.name}: stale-delete filter looks like a catch-all (filter_hash={fhash}); "
                "disable strict mode to run it"
            )

        start = time.time()
        self._emit("stale_delete.started", {**base, "filter_hash": fhash, "dry_run": dry_run})
        if dry_run:
            logger.info("Stale delete dry run for %s (filter_hash=%s)", target, fhash)
            return StaleDeleteResult(
                status="ok",
                filter_hash=fhash,
                will_delete=True,
                duration_ms=int((time.time() - start) * 1000),
                **base,
            )

        try:
            deleted = self.client.delete_by_filter(target, filter_by)
        except SearchSyncError as e:
            duration = int((time.time() - start) * 1000)
            logger.error("Stale delete on %s failed (filter_hash=%s): %s", target, fhash, e)
            self._emit(
                "stale_delete.error",
                {**base, "filter_hash": fhash, "error_class": type(e).__name__, "duration_ms": duration},
            )
            return StaleDeleteResult(
                status="failed",
                filter_hash=fhash,
                duration_ms=duration,
                error=str(e)[:MAX_ERROR_CHARS],
                **base,
            )

        duration = int((time.time() - start) * 1000)
        logger.info("✓ Stale delete on %s removed %d documents (%.2fs)", target, deleted, duration / 1000)
        self._emit(
            "stale_delete.finished",
            {**base, "filter_hash": fhash, "deleted_count": deleted, "duration_ms": duration},
        )
        return StaleDeleteResult(
            status="ok",
            filter_hash=fhash,
            deleted_count=deleted,
            duration_ms=duration,
            **base,
        )

    def _stale_skipped(self, base: Dict[str, Any], reason: str, filter_hash: Optional[str] = None) -> StaleDeleteResult:
        logger.info("Stale delete for %s skipped: %s", base["into"], reason)
        payload = {**base, "reason": reason}
        if filter_hash:
            payload["filter_hash"] = filter_hash
        self._emit("stale_delete.skipped", payload)
        return StaleDeleteResult(status="skipped", reason=reason, filter_hash=filter_hash, **base)

    def _emit(self, event: str, payload: Dict[str, Any]) -> None:
        if self.sink is not None:
            self.sink.emit(event, payload)
