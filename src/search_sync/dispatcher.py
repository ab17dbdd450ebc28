"""Partition Dispatch

Routes one partition's indexation either inline (synchronous, in the
calling thread) or to a job queue. Inline descriptors carry the
``PartitionSummary``; async descriptors carry the job id and queue name.

Queues:
  - ``InMemoryJobQueue``: records jobs and runs them on ``drain``
  - ``CeleryJobQueue``: ``app.send_task`` onto a named Celery queue; the
    worker side is registered with ``register_partition_task``
"""

import logging
import time
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple
from uuid import uuid4

from .config import Settings
from .errors import BackendConnectionError, BackendTimeout, InvalidParams
from .models import CollectionDefinition, DispatchDescriptor, PartitionSummary, RunContext
from .observability import EventSink, partition_fields

logger = logging.getLogger(__name__)

MODE_INLINE = "inline"
MODE_ASYNC = "async"
TASK_NAME = "search_sync.index_partition"


class JobQueue(Protocol):
    def enqueue(self, payload: Dict[str, Any], queue: str) -> str:
        ...


class InMemoryJobQueue:
    """Keeps enqueued jobs in order; ``drain`` hands each payload to a handler."""

    def __init__(self):
        self.jobs: List[Tuple[str, str, Dict[str, Any]]] = []

    def enqueue(self, payload: Dict[str, Any], queue: str) -> str:
        job_id = uuid4().hex
        self.jobs.append((job_id, queue, dict(payload)))
        return job_id

    def drain(self, handler: Callable[[Dict[str, Any], str], Any]) -> List[Any]:
        results = []
        while self.jobs:
            job_id, _, payload = self.jobs.pop(0)
            results.append(handler(payload, job_id))
        return results


class CeleryJobQueue:
    def __init__(self, app: Any, task_name: str = TASK_NAME):
        self.app = app
        self.task_name = task_name

    def enqueue(self, payload: Dict[str, Any], queue: str) -> str:
        result = self.app.send_task(self.task_name, kwargs=payload, queue=queue)
        return str(result.id)


class Dispatcher:
    def __init__(
        self,
        indexer: Any,
        settings: Optional[Settings] = None,
        queue: Optional[JobQueue] = None,
        sink: Optional[EventSink] = None,
    ):
        self.indexer = indexer
        self.settings = settings or Settings()
        self.queue = queue
        self.sink = sink

    def resolve_mode(self, mode: Optional[str] = None) -> str:
        """Explicit mode, else configured default, else inline. Async needs a queue."""
        resolved = (mode or self.settings.dispatch_mode or MODE_INLINE).lower()
        if resolved not in (MODE_INLINE, MODE_ASYNC):
            raise InvalidParams(f"unknown dispatch mode {mode!r}")
        if resolved == MODE_ASYNC and self.queue is None:
            logger.warning("Async dispatch requested but no job queue configured; running inline")
            return MODE_INLINE
        return resolved

    def dispatch(
        self,
        definition: CollectionDefinition,
        partition: Any = None,
        mode: Optional[str] = None,
        into: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        ctx: Optional[RunContext] = None,
    ) -> DispatchDescriptor:
        effective = self.resolve_mode(mode)
        if effective == MODE_ASYNC:
            return self._enqueue(definition, partition, into, metadata or {}, ctx)
        return self._inline(definition, partition, into, metadata or {}, ctx)

    def _enqueue(self, definition, partition, into, metadata, ctx) -> DispatchDescriptor:
        queue_name = self.settings.queue_name
        payload = {
            "collection": definition.name,
            "partition": partition,
            "into": into,
            "metadata": {**metadata, "correlation_id": ctx.correlation_id if ctx else None},
        }
        job_id = self.queue.enqueue(payload, queue_name)
        logger.info("Enqueued %s partition=%r on %s (job_id=%s)", definition.name, partition, queue_name, job_id)
        self._emit(
            "dispatcher.enqueued",
            {
                "collection": definition.name,
                **partition_fields(partition),
                "into": into,
                "queue": queue_name,
                "job_id": job_id,
            },
        )
        return DispatchDescriptor(
            mode=MODE_ASYNC,
            collection=definition.name,
            partition=partition,
            into=into,
            queue=queue_name,
            job_id=job_id,
        )

    def _inline(self, definition, partition, into, metadata, ctx) -> DispatchDescriptor:
        ctx = (ctx or RunContext()).model_copy(update={"dispatch_mode": MODE_INLINE})
        base = {"collection": definition.name, **partition_fields(partition), "into": into}
        self._emit("dispatcher.inline_started", base)
        start = time.time()
        try:
            summary = self.indexer.rebuild_partition(definition, partition=partition, into=into, ctx=ctx)
        except Exception as e:
            self._emit(
                "dispatcher.inline_error",
                {**base, "error_class": type(e).__name__, "message_truncated": str(e)[:200]},
            )
            raise
        duration = int((time.time() - start) * 1000)
        self._emit("dispatcher.inline_finished", {**base, "duration_ms": duration, "status": summary.status})
        return DispatchDescriptor(
            mode=MODE_INLINE,
            collection=definition.name,
            partition=partition,
            into=into,
            summary=summary,
            duration_ms=duration,
        )

    def _emit(self, event: str, payload: Dict[str, Any]) -> None:
        if self.sink is not None:
            self.sink.emit(event, payload)


def perform_partition_job(
    payload: Dict[str, Any],
    registry: Any,
    indexer: Any,
    job_id: Optional[str] = None,
) -> PartitionSummary:
    """Worker-side handler for an enqueued partition job."""
    definition = registry.require(payload["collection"])
    metadata = payload.get("metadata") or {}
    ctx = RunContext(dispatch_mode=MODE_ASYNC, job_id=job_id)
    if metadata.get("correlation_id"):
        ctx = ctx.model_copy(update={"correlation_id": metadata["correlation_id"]})

    logger.info("Job %s: rebuilding %s partition=%r", job_id, definition.name, payload.get("partition"))
    try:
        summary = indexer.rebuild_partition(
            definition,
            partition=payload.get("partition"),
            into=payload.get("into"),
            ctx=ctx,
        )
    except Exception:
        logger.exception("Job %s for %s failed", job_id, definition.name)
        raise
    logger.info(
        "✓ Job %s: %s partition=%r status=%s docs=%d failed=%d",
        job_id,
        definition.name,
        payload.get("partition"),
        summary.status,
        summary.docs_total,
        summary.failed_total,
    )
    return summary


def register_partition_task(app: Any, registry: Any, indexer_factory: Callable[[], Any], name: str = TASK_NAME):
    """Register the partition job on a Celery app; transport errors retry with backoff."""

    @app.task(
        name=name,
        bind=True,
        autoretry_for=(BackendTimeout, BackendConnectionError),
        retry_backoff=True,
        max_retries=3,
    )
    def index_partition(self, collection, partition=None, into=None, metadata=None):
        summary = perform_partition_job(
            {"collection": collection, "partition": partition, "into": into, "metadata": metadata},
            registry,
            indexer_factory(),
            job_id=self.request.id,
        )
        return summary.model_dump(mode="json")

    return index_partition
