# tests/test_indexer.py

"""
Tests for bulk import batching, retries, 413 splitting, partition rebuilds
and stale-document deletion.
"""

import threading

import pytest

from search_sync.config import Settings
from search_sync.errors import BackendApiError, HookTimeout, InvalidParams, StrictSafetyViolation
from search_sync.indexer import BatchIndexer, suspicious_filter
from search_sync.models import (
    OUTCOME_PERMANENT,
    OUTCOME_SUCCESS,
    OUTCOME_TRANSIENT,
    STATUS_FAILED,
    STATUS_OK,
    STATUS_PARTIAL,
    STATUS_SPLIT,
    CollectionDefinition,
    FieldSpec,
    ImportOutcome,
)
from search_sync.partitioner import Partitioner
from search_sync.sources import LambdaSource


# -------------------------------------------------------------------
# Helpers
# -------------------------------------------------------------------


def make_indexer(backend, settings, sink=None):
    return BatchIndexer(backend, settings, sink)


def docs(count, prefix="d"):
    return [{"id": f"{prefix}-{i}", "title": "x"} for i in range(count)]


@pytest.fixture
def live_products(backend):
    backend.create_collection({"name": "products_20250101_000000_001", "fields": [{"name": "title", "type": "string"}]})
    backend.upsert_alias("products", "products_20250101_000000_001")
    return "products_20250101_000000_001"


# -------------------------------------------------------------------
# import_batches
# -------------------------------------------------------------------


def test_batches_are_regrouped_to_batch_size(backend, settings, live_products):
    indexer = make_indexer(backend, settings)
    source_batches = [docs(500, prefix=f"b{n}") for n in range(5)]

    summary = indexer.import_batches("products", live_products, source_batches)

    assert backend.import_sizes == [2000, 500]
    assert summary.docs_total == 2500
    assert summary.success_total == 2500
    assert summary.batches_total == 2
    assert summary.status == STATUS_OK


def test_payload_too_large_is_split_in_half(backend, settings, live_products, sink):
    backend.max_docs_per_import = 1000
    indexer = make_indexer(backend, settings, sink)

    summary = indexer.import_batches("products", live_products, [docs(2500)])

    assert backend.import_sizes == [2000, 1000, 1000, 500]
    assert summary.docs_total == 2500
    assert summary.success_total == 2500
    assert summary.failed_total == 0
    assert summary.status == STATUS_OK
    assert [b.split_level for b in summary.batches] == [0, 1, 1, 0]
    assert summary.batches[0].http_status == 413
    assert len(sink.named("indexer.batch_import")) == 4
    assert [b.status for b in summary.batches] == [STATUS_SPLIT, STATUS_OK, STATUS_OK, STATUS_OK]
    assert [e["split"] for e in sink.named("indexer.batch_import")] == [True, False, False, False]
    assert len(backend.docs_in("products")) == 2500


def test_irreducible_document_fails_on_its_own(backend, settings, live_products):
    backend.max_docs_per_import = 0
    indexer = make_indexer(backend, settings)

    summary = indexer.import_batches("products", live_products, [docs(2)])

    assert backend.import_sizes == [2, 1, 1]
    assert summary.failed_total == 2
    assert summary.status == STATUS_FAILED
    assert summary.batches[1].errors_sample == ["document exceeds the maximum payload size"]


def test_transient_failures_are_retried(backend, settings, live_products, sink):
    backend.import_outcomes = [
        ImportOutcome(kind=OUTCOME_TRANSIENT, http_status=503),
        ImportOutcome(kind=OUTCOME_TRANSIENT, http_status=503),
    ]
    indexer = make_indexer(backend, settings, sink)

    summary = indexer.import_batches("products", live_products, [docs(3)])

    batch = summary.batches[0]
    assert batch.attempts == 3
    assert batch.transient_retry is True
    assert batch.success_count == 3
    assert summary.status == STATUS_OK
    assert sink.named("indexer.batch_import")[0]["attempts"] == 3


def test_transient_failures_exhaust_attempts(backend, settings, live_products):
    backend.import_outcomes = [ImportOutcome(kind=OUTCOME_TRANSIENT, http_status=503)] * 3

    summary = make_indexer(backend, settings).import_batches("products", live_products, [docs(3)])

    batch = summary.batches[0]
    assert batch.attempts == 3
    assert batch.failure_count == 3
    assert batch.http_status == 503
    assert summary.status == STATUS_FAILED


def test_permanent_failure_is_not_retried(backend, settings, live_products):
    backend.import_outcomes = [ImportOutcome(kind=OUTCOME_PERMANENT, http_status=400, errors=["bad request"])]

    summary = make_indexer(backend, settings).import_batches("products", live_products, [docs(3)])

    assert backend.import_sizes == [3]
    assert summary.batches[0].attempts == 1
    assert summary.batches[0].errors_sample == ["bad request"]
    assert summary.status == STATUS_FAILED


def test_per_document_rejections_make_the_batch_partial(backend, settings, live_products):
    backend.import_outcomes = [
        ImportOutcome(kind=OUTCOME_SUCCESS, http_status=200, success_count=2, failure_count=1, errors=["bad doc"])
    ]

    summary = make_indexer(backend, settings).import_batches("products", live_products, [docs(3)])

    assert (summary.success_total, summary.failed_total) == (2, 1)
    assert summary.status == STATUS_PARTIAL


# -------------------------------------------------------------------
# rebuild_partition
# -------------------------------------------------------------------


def test_rebuild_partition_maps_and_imports_into_alias(backend, settings, sink, live_products, make_definition):
    indexer = make_indexer(backend, settings, sink)

    summary = indexer.rebuild_partition(make_definition(), partition=7)

    assert summary.status == STATUS_OK
    assert summary.into == "products"
    assert summary.docs_total == 3
    assert sorted(backend.docs_in("products")) == ["products-7-0", "products-7-1", "products-7-2"]
    start = sink.named("indexer.partition_start")[0]
    finish = sink.named("indexer.partition_finish")[0]
    assert start["partition"] == 7
    assert start["partition_hash"] == finish["partition_hash"]
    assert finish["docs_total"] == 3


def test_rebuild_partition_records_mapper_failures_per_batch(backend, settings, live_products, make_definition):
    def fetch(partition, cursor):
        yield [{"id": "good-0", "title": "a"}, {"id": "good-1", "title": "b"}]
        yield [{"title": "no id"}]

    definition = make_definition(source=LambdaSource(fetch))

    summary = make_indexer(backend, settings).rebuild_partition(definition)

    assert summary.status == STATUS_PARTIAL
    assert summary.success_total == 2
    assert summary.failed_total == 1
    failed = [b for b in summary.batches if b.failure_count]
    assert "without id" in failed[0].errors_sample[0]


def test_rebuild_partition_survives_a_crashing_map_record(backend, settings, live_products, make_definition):
    after = []
    partitioner = Partitioner(
        [1],
        fetch=lambda key: [[{"id": "1", "title": "a"}], [{"id": "2"}], [{"id": "3", "title": "c"}]],
        after_partition=after.append,
    )
    definition = make_definition(
        partitioner=partitioner,
        map_record=lambda record: {"id": record["id"], "title": record["title"]},
    )

    summary = make_indexer(backend, settings).rebuild_partition(definition, partition=1)

    assert summary.status == STATUS_PARTIAL
    assert (summary.success_total, summary.failed_total) == (2, 1)
    assert sorted(backend.docs_in("products")) == ["1", "3"]
    failed = [b for b in summary.batches if b.failure_count]
    assert "KeyError" in failed[0].errors_sample[0]
    assert after == [1]


def test_before_partition_hook_skipped_until_collection_exists(backend, settings, make_definition):
    calls = []
    partitioner = Partitioner(
        [1],
        fetch=lambda key: [[{"id": f"p{key}-0", "title": "a"}]],
        before_partition=lambda key: calls.append(("before", key)),
        after_partition=lambda key: calls.append(("after", key)),
    )
    definition = make_definition(partitioner=partitioner)
    backend.create_collection({"name": "products_20250101_000000_001", "fields": []})
    indexer = make_indexer(backend, settings)

    indexer.rebuild_partition(definition, partition=1, into="products_20250101_000000_001")
    assert calls == [("after", 1)]

    backend.upsert_alias("products", "products_20250101_000000_001")
    indexer.rebuild_partition(definition, partition=1)
    assert calls == [("after", 1), ("before", 1), ("after", 1)]


def test_hung_before_partition_hook_times_out(backend, live_products, make_definition):
    release = threading.Event()
    partitioner = Partitioner(
        [1],
        fetch=lambda key: [[{"id": "p1-0", "title": "a"}]],
        before_partition=lambda key: release.wait(10),
    )
    indexer = make_indexer(backend, Settings(before_hook_timeout_s=0.2))

    try:
        with pytest.raises(HookTimeout):
            indexer.rebuild_partition(make_definition(partitioner=partitioner), partition=1)
    finally:
        release.set()

    assert backend.import_sizes == []


def test_hung_after_partition_hook_fails_partition_but_keeps_batches(backend, live_products, make_definition):
    release = threading.Event()
    partitioner = Partitioner(
        [1],
        fetch=lambda key: [[{"id": "p1-0", "title": "a"}]],
        after_partition=lambda key: release.wait(10),
    )
    indexer = make_indexer(backend, Settings(after_hook_timeout_s=0.2))

    try:
        summary = indexer.rebuild_partition(make_definition(partitioner=partitioner), partition=1)
    finally:
        release.set()

    assert summary.status == STATUS_FAILED
    assert summary.error.startswith("after_partition: HookTimeout")
    assert summary.success_total == 1
    assert summary.batches_total == 1


def test_rebuild_partition_without_source_is_invalid(backend, settings):
    with pytest.raises(InvalidParams):
        make_indexer(backend, settings).rebuild_partition(
            CollectionDefinition(name="products", fields=(FieldSpec(name="title"),))
        )


# -------------------------------------------------------------------
# delete_stale
# -------------------------------------------------------------------


@pytest.mark.parametrize(
    "filter_by, suspicious",
    [
        ("shop_id:=5", False),
        ("shop_id:=5 && updated_at:<1700000000", False),
        ("*", True),
        ("id:*", True),
        ("", True),
    ],
)
def test_suspicious_filter(filter_by, suspicious):
    assert suspicious_filter(filter_by) is suspicious


def test_delete_stale_runs_partition_filter(backend, sink, make_definition):
    backend.delete_by_filter_result = 4
    definition = make_definition(stale_filter=lambda shop: f"shop_id:={shop} && synced:=false")
    indexer = make_indexer(backend, Settings(), sink)

    result = indexer.delete_stale(definition, 3)

    assert result.status == "ok"
    assert result.deleted_count == 4
    assert backend.filters_deleted == [("products", "shop_id:=3 && synced:=false")]
    finished = sink.named("stale_delete.finished")[0]
    assert finished["filter_hash"] == result.filter_hash
    assert all("shop_id" not in str(payload) for _, payload in sink.events)


def test_delete_stale_dry_run_does_not_delete(backend, make_definition):
    definition = make_definition(stale_filter=lambda shop: f"shop_id:={shop}")

    result = make_indexer(backend, Settings()).delete_stale(definition, 3, dry_run=True)

    assert result.will_delete is True
    assert backend.filters_deleted == []


def test_delete_stale_strict_mode_blocks_catch_all_filters(backend, sink, make_definition):
    definition = make_definition(stale_filter=lambda shop: "*")
    indexer = make_indexer(backend, Settings(), sink)

    with pytest.raises(StrictSafetyViolation):
        indexer.delete_stale(definition, 3)

    assert backend.filters_deleted == []
    assert sink.named("stale_delete.skipped")[0]["reason"] == "strict_blocked"

    result = indexer.delete_stale(definition, 3, strict=False)
    assert result.status == "ok"
    assert backend.filters_deleted == [("products", "*")]


@pytest.mark.parametrize(
    "settings_kwargs, stale_filter, reason",
    [
        ({"stale_deletes_enabled": False}, lambda shop: "shop_id:=1", "disabled"),
        ({}, None, "no_filter_defined"),
        ({}, lambda shop: "  ", "empty_filter"),
        ({}, lambda shop: None, "empty_filter"),
    ],
)
def test_delete_stale_skips(backend, make_definition, settings_kwargs, stale_filter, reason):
    definition = make_definition(stale_filter=stale_filter)

    result = make_indexer(backend, Settings(**settings_kwargs)).delete_stale(definition, 1)

    assert result.status == "skipped"
    assert result.reason == reason
    assert backend.filters_deleted == []


def test_delete_stale_backend_error_is_reported_as_failed(backend, sink, make_definition):
    backend.delete_by_filter_error = BackendApiError(400, {"message": "Could not parse the filter query."})
    definition = make_definition(stale_filter=lambda shop: f"shop_id:={shop}")

    result = make_indexer(backend, Settings(), sink).delete_stale(definition, 1, into="products_20250101_000000_001")

    assert result.status == "failed"
    assert result.into == "products_20250101_000000_001"
    assert "HTTP 400" in result.error
    assert sink.named("stale_delete.error")[0]["error_class"] == "BackendApiError"
