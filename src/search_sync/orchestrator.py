"""
Indexing Orchestrator

Top-level workflow for one logical collection. Full indexation runs:

  1. Presence        diff against live; missing -> create
  2. Create+Apply    (missing only) new physical, populate, alias swap
  3. Drift check     (present only) non-empty diff -> drift
  4. Apply schema    (drift only) same as step 2 for a live collection
  5. Indexation      (skipped when step 2/4 populated) all partitions
  6. Retention       (skipped when step 2/4 pruned) drop old physicals

Partial indexation (named partitions) only runs against a present,
in-sync collection. Referencers are cascaded only after an ``ok`` run.

Partitions fan out on a bounded thread pool when there is more than one
and the parallelism ceiling is above 1. A lock serializes aggregation and
progress logging. Partitions still unfinished after the pool timeout and
grace period are reported as failed.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, wait
from typing import Any, Dict, List, Optional, Union

from .cascade import CascadeEngine
from .config import Settings
from .dependencies import CollectionRegistry, DependencyResolver
from .dispatcher import MODE_INLINE, Dispatcher, JobQueue
from .indexer import BatchIndexer
from .lifecycle import BlueGreenApplier, utc_now
from .models import (
    STATUS_OK,
    ApplyResult,
    CascadeReport,
    CollectionDefinition,
    DispatchDescriptor,
    IndexationReport,
    PartitionSummary,
    RollbackResult,
    RunContext,
    RunSummary,
    SchemaDiff,
    StaleDeleteResult,
    aggregate_status,
)
from .observability import EventSink, partition_fields
from .partitioner import partition_keys
from .retry import RetryPolicy
from .schema import diff_schema

logger = logging.getLogger(__name__)

TOTAL_STEPS = 6


class Orchestrator:
    def __init__(
        self,
        client: Any,
        registry: CollectionRegistry,
        settings: Optional[Settings] = None,
        sink: Optional[EventSink] = None,
        queue: Optional[JobQueue] = None,
        clock=utc_now,
        retry: Optional[RetryPolicy] = None,
    ):
        self.client = client
        self.registry = registry
        self.settings = settings or Settings()
        self.sink = sink
        self.applier = BlueGreenApplier(client, self.settings, sink, clock)
        self.indexer = BatchIndexer(client, self.settings, sink, retry)
        self.dispatcher = Dispatcher(self.indexer, self.settings, queue, sink)
        self.resolver = DependencyResolver(
            registry,
            client,
            lambda definition, ctx: self.indexate(definition, ctx=ctx),
            sink,
        )
        self.cascader = CascadeEngine(
            registry,
            client,
            lambda definition, partitions, ctx: self.index_partitions(definition, partitions=partitions, ctx=ctx),
            max_depth=self.settings.max_cascade_depth,
            sink=sink,
        )
        self._lock = threading.Lock()

    def definition(self, collection: Union[str, CollectionDefinition]) -> CollectionDefinition:
        if isinstance(collection, CollectionDefinition):
            return collection
        return self.registry.require(collection)

    # ---- schema operations ----

    def diff(self, collection: Union[str, CollectionDefinition]) -> SchemaDiff:
        return diff_schema(self.definition(collection), self.client, self.sink)

    def apply(self, collection: Union[str, CollectionDefinition], ctx: Optional[RunContext] = None) -> ApplyResult:
        """Blue-green apply: new physical, full population, alias swap, retention."""
        definition = self.definition(collection)
        ctx = ctx or RunContext()
        return self.applier.apply(
            definition,
            lambda physical: self.index_partitions(definition, into=physical, mode=MODE_INLINE, ctx=ctx),
        )

    def rollback(self, collection: Union[str, CollectionDefinition]) -> RollbackResult:
        return self.applier.rollback(self.definition(collection))

    def delete_stale(
        self,
        collection: Union[str, CollectionDefinition],
        partition: Any = None,
        into: Optional[str] = None,
        dry_run: bool = False,
        strict: Optional[bool] = None,
    ) -> StaleDeleteResult:
        return self.indexer.delete_stale(self.definition(collection), partition, into, dry_run, strict)

    # ---- indexation workflows ----

    def indexate(
        self,
        collection: Union[str, CollectionDefinition],
        partitions: Optional[List[Any]] = None,
        pre: Optional[str] = None,
        ctx: Optional[RunContext] = None,
    ) -> IndexationReport:
        """
        Run the full indexation workflow, or the partial one when
        ``partitions`` is given.

        Args:
            collection: logical name or definition
            partitions: partition keys for a partial run
            pre: preflight mode for dependencies, 'ensure' or 'index'
            ctx: run context shared with preflight and cascade

        Returns:
            IndexationReport with the step log, apply result, run summary
            and cascade outcomes.

        Raises:
            ApplyFailed: population of a new physical failed (alias untouched)
        """
        definition = self.definition(collection)
        if partitions is not None:
            return self.rebuild_partitions(definition, partitions, pre=pre, ctx=ctx)

        ctx = ctx or RunContext()
        ctx.visited.add(definition.name)
        report = IndexationReport(collection=definition.name, mode="full")
        job_start = time.time()
        logger.info("=== Indexating collection %s (correlation_id=%s) ===", definition.name, ctx.correlation_id)

        if pre:
            report.preflight = self.resolver.preflight(definition, pre, ctx)

        diff = self.diff(definition)
        missing = diff.missing
        self._step(report, 1, "Presence", "missing" if missing else "present")

        applied: Optional[ApplyResult] = None
        populated: Dict[str, RunSummary] = {}

        def populate(physical: str) -> RunSummary:
            run = self.index_partitions(definition, into=physical, mode=MODE_INLINE, ctx=ctx)
            populated["run"] = run
            return run

        # ========== STEP 2: CREATE + APPLY ==========
        if missing:
            self._step(report, 2, "Create+Apply schema", "processing")
            applied = self._apply_with_logging(definition, populate)
            self._step(report, 2, "Create+Apply schema", f"done (physical={applied.new_physical})")
        else:
            self._step(report, 2, "Create+Apply schema", "skip (collection present)")

        # ========== STEP 3: DRIFT CHECK ==========
        drift = False
        if missing:
            self._step(report, 3, "Check schema status", "skip (just created)")
        else:
            drift = diff.drift
            self._step(report, 3, "Check schema status", "drift" if drift else "in_sync")

        # ========== STEP 4: APPLY NEW SCHEMA ==========
        if drift:
            self._step(report, 4, "Apply new schema", "processing")
            applied = self._apply_with_logging(definition, populate)
            self._step(report, 4, "Apply new schema", f"done (physical={applied.new_physical})")
        else:
            self._step(report, 4, "Apply new schema", "skip")

        # ========== STEP 5: INDEXATION ==========
        if applied is not None:
            report.run = populated.get("run")
            self._step(report, 5, "Indexation", "skip (performed during schema apply)")
        else:
            self._step(report, 5, "Indexation", "processing")
            report.run = self.index_partitions(definition, ctx=ctx)
            self._step(report, 5, "Indexation", f"done (status={report.run.status})")
        report.applied = applied

        # ========== STEP 6: RETENTION ==========
        if applied is not None:
            report.dropped_physicals = list(applied.dropped_physicals)
            self._step(report, 6, "Retention cleanup", "skip (handled by schema apply)")
        else:
            report.dropped_physicals = self.applier.enforce_retention(
                definition.name, self.applier.keep_last_for(definition)
            )
            self._step(report, 6, "Retention cleanup", f"dropped={report.dropped_physicals}")

        report.cascade = self._cascade_if_ok(definition, report.run, ctx)
        logger.info(
            "=== Indexation of %s finished in %.2fs (status=%s) ===",
            definition.name,
            time.time() - job_start,
            report.status,
        )
        return report

    def rebuild_partitions(
        self,
        collection: Union[str, CollectionDefinition],
        partitions: List[Any],
        pre: Optional[str] = None,
        mode: Optional[str] = None,
        ctx: Optional[RunContext] = None,
    ) -> IndexationReport:
        """Re-index named partitions of a present, in-sync collection.

        Refuses with a ``skipped_reason`` when the collection is missing or
        drifted; run full indexation first in that case.
        """
        definition = self.definition(collection)
        ctx = ctx or RunContext()
        ctx.visited.add(definition.name)
        report = IndexationReport(collection=definition.name, mode="partial")
        keys = list(partitions) or [None]

        diff = self.diff(definition)
        self._step(report, 1, "Presence", "missing" if diff.missing else "present", total=3)
        if diff.missing:
            report.skipped_reason = "collection is not present; run full indexation first"
            logger.warning("Partial: %s is not present. Quit early.", definition.name)
            return report

        if diff.drift:
            report.skipped_reason = "schema is not up-to-date; run full indexation first"
            self._step(report, 2, "Check schema status", "drift", total=3)
            logger.warning("Partial: %s schema drifted. Quit early (run full indexation).", definition.name)
            return report
        self._step(report, 2, "Check schema status", "in_sync", total=3)

        if pre:
            report.preflight = self.resolver.preflight(definition, pre, ctx)

        self._step(report, 3, "Partial indexation", f"processing ({len(keys)} partition(s))", total=3)
        report.run = self.index_partitions(definition, partitions=keys, mode=mode, ctx=ctx)
        self._step(report, 3, "Partial indexation", f"done (status={report.run.status})", total=3)

        report.cascade = self._cascade_if_ok(definition, report.run, ctx)
        return report

    def reindex(
        self,
        collection: Union[str, CollectionDefinition],
        pre: Optional[str] = None,
        ctx: Optional[RunContext] = None,
    ) -> IndexationReport:
        """Drop the live physical, then run a full indexation from scratch."""
        definition = self.definition(collection)
        self.applier.drop_collection(definition)
        return self.indexate(definition, pre=pre, ctx=ctx)

    # ---- partition fan-out ----

    def index_partitions(
        self,
        definition: CollectionDefinition,
        partitions: Optional[List[Any]] = None,
        into: Optional[str] = None,
        mode: Optional[str] = None,
        ctx: Optional[RunContext] = None,
    ) -> RunSummary:
        """Dispatch every partition (or the given ones) and aggregate a ``RunSummary``."""
        ctx = ctx or RunContext()
        keys = list(partitions) if partitions is not None else partition_keys(definition.partitioner)
        max_parallel = (
            definition.partitioner.max_parallel if definition.partitioner is not None else self.settings.max_parallel
        )
        start = time.time()
        run = RunSummary(collection=definition.name, into=into)
        slots: List[Optional[PartitionSummary]] = [None] * len(keys)

        if len(keys) > 1 and max_parallel > 1:
            logger.info("Indexing %d partitions of %s (parallel=%d)", len(keys), definition.name, max_parallel)
            self._run_parallel(definition, keys, into, mode, ctx, max_parallel, run, slots)
        else:
            logger.info("Indexing %d partition(s) of %s sequentially", len(keys), definition.name)
            for i, key in enumerate(keys):
                self._record(run, slots, i, self._dispatch_one(definition, key, into, mode, ctx))

        run.partitions = [s for s in slots if s is not None]
        run.status = aggregate_status([p.status for p in run.partitions])
        run.duration_ms = int((time.time() - start) * 1000)
        logger.info(
            "✓ %s: %d partition(s) indexed, %d enqueued, status=%s (%.2fs)",
            definition.name,
            len(run.partitions),
            len(run.enqueued),
            run.status,
            run.duration_ms / 1000,
        )
        return run

    def _dispatch_one(self, definition, key, into, mode, ctx) -> Union[PartitionSummary, DispatchDescriptor]:
        try:
            descriptor = self.dispatcher.dispatch(definition, key, mode=mode, into=into, ctx=ctx)
        except Exception as e:
            logger.error("  partition=%r -> error=%s: %s", key, type(e).__name__, str(e)[:200])
            return PartitionSummary.failed(
                definition.name,
                key,
                f"{type(e).__name__}: {str(e)[:200]}",
                into=into,
                partition_hash=partition_fields(key)["partition_hash"],
            )
        if descriptor.summary is not None:
            return descriptor.summary
        return descriptor

    def _record(self, run: RunSummary, slots: List[Optional[PartitionSummary]], i: int, result) -> None:
        with self._lock:
            if slots[i] is not None:
                logger.warning("  partition slot %d already reported as %s; ignoring late result", i, slots[i].status)
                return
            if isinstance(result, DispatchDescriptor):
                run.enqueued.append(result)
                logger.info("  partition=%r -> enqueued job_id=%s queue=%s", result.partition, result.job_id, result.queue)
                return
            slots[i] = result
            sample = next((e for b in result.batches for e in b.errors_sample), None) or result.error
            logger.info(
                "  partition=%r -> status=%s docs=%d failed=%d batches=%d duration_ms=%d%s",
                result.partition,
                result.status,
                result.docs_total,
                result.failed_total,
                result.batches_total,
                result.duration_ms,
                f" sample_error={sample!r}" if sample else "",
            )

    def _run_parallel(self, definition, keys, into, mode, ctx, max_parallel, run, slots) -> None:
        def work(i: int, key: Any) -> None:
            self._record(run, slots, i, self._dispatch_one(definition, key, into, mode, ctx))

        executor = ThreadPoolExecutor(max_workers=max_parallel, thread_name_prefix=f"index-{definition.name}")
        futures = {}
        try:
            for i, key in enumerate(keys):
                futures[executor.submit(work, i, key)] = i

            _, pending = wait(futures, timeout=self.settings.pool_timeout_s)
            if pending:
                logger.warning("%d partition(s) still running after %.0fs; cancelling", len(pending), self.settings.pool_timeout_s)
                for future in pending:
                    future.cancel()
                _, pending = wait(pending, timeout=self.settings.pool_grace_s)
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        for future, i in futures.items():
            if future.done() and not future.cancelled() and future.exception() is None:
                continue
            key = keys[i]
            reason = "terminated: worker did not finish before pool shutdown"
            if future.done() and not future.cancelled():
                reason = f"{type(future.exception()).__name__}: {str(future.exception())[:200]}"
            with self._lock:
                # A late completion may already have filled the slot.
                if slots[i] is None:
                    slots[i] = PartitionSummary.failed(
                        definition.name, key, reason, into=into, partition_hash=partition_fields(key)["partition_hash"]
                    )
                    logger.error("  partition=%r -> failed (%s)", key, reason)

    # ---- helpers ----

    def _apply_with_logging(self, definition: CollectionDefinition, populate) -> ApplyResult:
        try:
            return self.applier.apply(definition, populate)
        except Exception:
            logger.exception("Schema apply for %s failed", definition.name)
            raise

    def _cascade_if_ok(self, definition: CollectionDefinition, run: Optional[RunSummary], ctx: RunContext) -> Optional[CascadeReport]:
        if run is None or run.status != STATUS_OK:
            logger.info("Cascade for %s: skip (status=%s)", definition.name, run.status if run else None)
            return None
        if run.enqueued:
            logger.info("Cascade for %s: skip (%d partition job(s) enqueued)", definition.name, len(run.enqueued))
            return None
        try:
            return self.cascader.cascade(definition.name, ctx)
        except Exception as e:
            logger.warning("Cascade from %s failed: %s: %s", definition.name, type(e).__name__, str(e)[:200])
            return None

    def _step(self, report: IndexationReport, n: int, name: str, state: str, total: int = TOTAL_STEPS) -> None:
        line = f"STEP {n}/{total}: {name} -> {state}"
        report.steps.append(line)
        logger.info(line)
