# tests/test_dispatcher.py

"""
Tests for inline and queued partition dispatch, including the Celery
adapters driven through a fake app.
"""

from types import SimpleNamespace

import pytest

from search_sync.config import Settings
from search_sync.dependencies import CollectionRegistry
from search_sync.dispatcher import (
    MODE_ASYNC,
    MODE_INLINE,
    TASK_NAME,
    CeleryJobQueue,
    Dispatcher,
    InMemoryJobQueue,
    perform_partition_job,
    register_partition_task,
)
from search_sync.errors import BackendTimeout, InvalidParams
from search_sync.models import PartitionSummary, RunContext


class RecordingIndexer:
    """Stands in for BatchIndexer.rebuild_partition and remembers every call."""

    def __init__(self, error=None):
        self.calls = []
        self.error = error

    def rebuild_partition(self, definition, partition=None, into=None, ctx=None):
        self.calls.append({"collection": definition.name, "partition": partition, "into": into, "ctx": ctx})
        if self.error is not None:
            raise self.error
        return PartitionSummary(collection=definition.name, into=into or definition.name, partition=partition, docs_total=3)


class FakeCeleryApp:
    def __init__(self):
        self.sent = []
        self.tasks = {}

    def send_task(self, name, kwargs=None, queue=None):
        self.sent.append({"name": name, "kwargs": kwargs, "queue": queue})
        return SimpleNamespace(id=f"celery-{len(self.sent)}")

    def task(self, **options):
        def decorator(fn):
            self.tasks[options["name"]] = (fn, options)
            return fn

        return decorator


# -------------------------------------------------------------------
# Inline
# -------------------------------------------------------------------


def test_inline_dispatch_runs_partition_and_returns_summary(sink, make_definition):
    indexer = RecordingIndexer()
    dispatcher = Dispatcher(indexer, Settings(), sink=sink)
    ctx = RunContext()

    descriptor = dispatcher.dispatch(make_definition(), partition=4, into="products_x", ctx=ctx)

    assert descriptor.mode == MODE_INLINE
    assert descriptor.summary.docs_total == 3
    call = indexer.calls[0]
    assert call["partition"] == 4
    assert call["into"] == "products_x"
    assert call["ctx"].dispatch_mode == MODE_INLINE
    assert call["ctx"].correlation_id == ctx.correlation_id
    assert [e for e, _ in sink.events] == ["dispatcher.inline_started", "dispatcher.inline_finished"]


def test_inline_dispatch_reraises_errors(sink, make_definition):
    dispatcher = Dispatcher(RecordingIndexer(error=RuntimeError("db down")), Settings(), sink=sink)

    with pytest.raises(RuntimeError):
        dispatcher.dispatch(make_definition(), partition=1)

    error = sink.named("dispatcher.inline_error")[0]
    assert error["error_class"] == "RuntimeError"
    assert error["message_truncated"] == "db down"


def test_unknown_mode_is_rejected(make_definition):
    with pytest.raises(InvalidParams):
        Dispatcher(RecordingIndexer()).dispatch(make_definition(), mode="sideways")


# -------------------------------------------------------------------
# Async
# -------------------------------------------------------------------


def test_async_dispatch_enqueues_payload(sink, make_definition):
    queue = InMemoryJobQueue()
    indexer = RecordingIndexer()
    dispatcher = Dispatcher(indexer, Settings(queue_name="reindex"), queue=queue, sink=sink)
    ctx = RunContext()

    descriptor = dispatcher.dispatch(make_definition(), partition=9, mode=MODE_ASYNC, into="products_x", ctx=ctx)

    assert descriptor.mode == MODE_ASYNC
    assert descriptor.summary is None
    assert descriptor.queue == "reindex"
    assert indexer.calls == []
    job_id, queue_name, payload = queue.jobs[0]
    assert descriptor.job_id == job_id
    assert queue_name == "reindex"
    assert payload["collection"] == "products"
    assert payload["partition"] == 9
    assert payload["into"] == "products_x"
    assert payload["metadata"]["correlation_id"] == ctx.correlation_id
    assert sink.named("dispatcher.enqueued")[0]["job_id"] == job_id


def test_settings_dispatch_mode_is_the_default(make_definition):
    queue = InMemoryJobQueue()
    dispatcher = Dispatcher(RecordingIndexer(), Settings(dispatch_mode="async"), queue=queue)

    assert dispatcher.dispatch(make_definition()).mode == MODE_ASYNC
    assert dispatcher.dispatch(make_definition(), mode="inline").mode == MODE_INLINE


def test_async_without_queue_falls_back_to_inline(make_definition):
    indexer = RecordingIndexer()

    descriptor = Dispatcher(indexer, Settings()).dispatch(make_definition(), mode=MODE_ASYNC)

    assert descriptor.mode == MODE_INLINE
    assert len(indexer.calls) == 1


def test_drained_jobs_run_on_the_worker_side(make_definition):
    queue = InMemoryJobQueue()
    definition = make_definition()
    registry = CollectionRegistry([definition])
    worker_indexer = RecordingIndexer()
    ctx = RunContext()
    Dispatcher(RecordingIndexer(), Settings(), queue=queue).dispatch(
        definition, partition=2, mode=MODE_ASYNC, ctx=ctx
    )

    summaries = queue.drain(lambda payload, job_id: perform_partition_job(payload, registry, worker_indexer, job_id))

    assert summaries[0].partition == 2
    assert queue.jobs == []
    worker_ctx = worker_indexer.calls[0]["ctx"]
    assert worker_ctx.dispatch_mode == MODE_ASYNC
    assert worker_ctx.job_id is not None
    assert worker_ctx.correlation_id == ctx.correlation_id


# -------------------------------------------------------------------
# Celery adapters
# -------------------------------------------------------------------


def test_celery_queue_sends_task_to_named_queue():
    app = FakeCeleryApp()

    job_id = CeleryJobQueue(app).enqueue({"collection": "products", "partition": 1}, "search_index")

    assert job_id == "celery-1"
    assert app.sent == [
        {"name": TASK_NAME, "kwargs": {"collection": "products", "partition": 1}, "queue": "search_index"}
    ]


def test_registered_task_rebuilds_partition(make_definition):
    app = FakeCeleryApp()
    indexer = RecordingIndexer()
    registry = CollectionRegistry([make_definition()])

    register_partition_task(app, registry, lambda: indexer)
    fn, options = app.tasks[TASK_NAME]
    result = fn(SimpleNamespace(request=SimpleNamespace(id="job-7")), "products", partition=5, into="products_x")

    assert options["bind"] is True
    assert BackendTimeout in options["autoretry_for"]
    assert result["partition"] == 5
    assert result["status"] == "ok"
    assert indexer.calls[0]["ctx"].job_id == "job-7"
