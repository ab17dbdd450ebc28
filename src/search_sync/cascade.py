"""Cascade re-indexing of referencers.

After a collection is successfully indexed, every collection that
references it carries denormalized joined data that may now be stale.
The cascade re-indexes those referencers: partially (only documents whose
local key matches the changed ids) when possible, otherwise in full.

The traversal shares ``RunContext.visited`` with preflight and stops at
``max_depth`` levels. Errors are logged per referencer and never raised.
"""

import logging
from typing import Any, Callable, Iterable, List, Optional

from .dependencies import CollectionRegistry, DependencyGraph, Edge
from .models import STATUS_OK, CascadeOutcome, CascadeReport, CollectionDefinition, RunContext, RunSummary
from .observability import EventSink
from .partitioner import partition_keys

logger = logging.getLogger(__name__)

MODE_PARTIAL = "partial"
MODE_FULL = "full"
SKIPPED_UNREGISTERED = "skipped_unregistered"
SKIPPED_CYCLE = "skipped_cycle"
SKIPPED_DUPLICATE = "skipped_duplicate"
SKIPPED_DEPTH = "skipped_depth"
SKIPPED_NO_PARTITIONS = "skipped_no_partitions"
FAILED = "failed"


class CascadeEngine:
    """
    Args:
        registry: registered collection definitions
        client: backend client, used to read live reference fields
        reindex: ``reindex(definition, partitions, ctx) -> RunSummary``;
            ``partitions=None`` means the single implicit partition of an
            unpartitioned referencer
        max_depth: referencer levels to follow from the source
    """

    def __init__(
        self,
        registry: CollectionRegistry,
        client: Any,
        reindex: Callable[[CollectionDefinition, Optional[List[Any]], RunContext], RunSummary],
        max_depth: int = 3,
        sink: Optional[EventSink] = None,
    ):
        self.registry = registry
        self.client = client
        self.reindex = reindex
        self.max_depth = max_depth
        self.sink = sink

    def reverse_graph(self) -> DependencyGraph:
        """Live reference fields when any exist, else the registry declarations."""
        try:
            graph = DependencyGraph.from_live(self.client)
        except Exception as e:
            logger.warning("Cascade: could not read live schemas (%s); using registry", e)
            graph = DependencyGraph()
        return graph if graph else DependencyGraph.from_registry(self.registry)

    def cascade(self, source: str, ctx: RunContext, ids: Optional[Iterable[Any]] = None) -> CascadeReport:
        ids = list(ids) if ids is not None else None
        ctx.visited.add(source)
        report = CascadeReport(source=source)
        edges = self.reverse_graph().referencers(source)

        logger.info("Cascade from %s: %d referencer edge(s), depth=%d", source, len(edges), ctx.cascade_depth)
        seen: List[str] = []
        direct_outcomes: List[CascadeOutcome] = []
        for edge in edges:
            outcomes = self._visit(edge, seen, ids, ctx)
            direct = outcomes[0]
            direct_outcomes.append(direct)
            logger.info("  Referencer %s -> %s%s", direct.collection, direct.mode, f" ({direct.error})" if direct.error else "")
            report.outcomes.extend(outcomes)

        if self.sink is not None:
            self.sink.emit(
                "cascade.run",
                {
                    "source_collection": source,
                    "ids_count": len(ids) if ids is not None else 0,
                    "targets_total": len(edges),
                    "partial_count": sum(1 for o in direct_outcomes if o.mode == MODE_PARTIAL),
                    "full_count": sum(1 for o in direct_outcomes if o.mode == MODE_FULL),
                    "skipped_count": sum(1 for o in direct_outcomes if o.mode.startswith("skipped")),
                    "failed_count": sum(1 for o in direct_outcomes if o.mode == FAILED),
                    "depth": ctx.cascade_depth,
                },
            )
        return report

    def _visit(self, edge: Edge, seen: List[str], ids: Optional[List[Any]], ctx: RunContext) -> List[CascadeOutcome]:
        """Decide one referencer edge; the first outcome is the referencer's own."""
        name = edge.referrer
        if name in seen:
            return [CascadeOutcome(collection=name, mode=SKIPPED_DUPLICATE)]
        seen.append(name)

        if name in ctx.visited:
            return [CascadeOutcome(collection=name, mode=SKIPPED_CYCLE)]
        if ctx.cascade_depth >= self.max_depth:
            return [CascadeOutcome(collection=name, mode=SKIPPED_DEPTH)]
        definition = self.registry.get(name)
        if definition is None:
            return [CascadeOutcome(collection=name, mode=SKIPPED_UNREGISTERED)]

        ctx.visited.add(name)
        return self._reindex_referencer(definition, edge.local_key, ids, ctx)

    def _reindex_referencer(
        self,
        definition: CollectionDefinition,
        local_key: str,
        ids: Optional[List[Any]],
        ctx: RunContext,
    ) -> List[CascadeOutcome]:
        child = ctx.descend()
        try:
            if ids is not None and definition.partitioner is None:
                mode = MODE_PARTIAL
                partitions: Optional[List[Any]] = [{local_key: ids}]
            else:
                mode = MODE_FULL
                partitions = None
                if definition.partitioner is not None:
                    partitions = partition_keys(definition.partitioner)
                    if not partitions:
                        return [CascadeOutcome(collection=definition.name, mode=SKIPPED_NO_PARTITIONS)]

            run = self.reindex(definition, partitions, child)
        except Exception as e:
            logger.warning("Cascade re-index of %s failed: %s: %s", definition.name, type(e).__name__, str(e)[:200])
            return [CascadeOutcome(collection=definition.name, mode=FAILED, error=f"{type(e).__name__}: {str(e)[:200]}")]

        outcomes = [CascadeOutcome(collection=definition.name, mode=mode, partitions=partitions, status=run.status)]
        if run.status == STATUS_OK and not run.enqueued:
            outcomes.extend(self.cascade(definition.name, child).outcomes)
        return outcomes
