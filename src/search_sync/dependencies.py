"""Collection Registry, Dependency Graph and Preflight

The registry is a read-only lookup of ``CollectionDefinition`` values built
once at startup. The dependency graph holds ``referencer -> referenced``
edges (belongs-to semantics) plus their reverse, built either from the
registry or from the live backend schemas.

Preflight walks a collection's dependencies depth-first before it is
indexed, so a dependency is always brought up before its dependents.
Each logical collection is visited at most once per run through the
``RunContext.visited`` set, which keeps cyclic graphs finite.
"""

import logging
import re
from types import MappingProxyType
from typing import Any, Callable, Dict, Iterable, Iterator, List, NamedTuple, Optional, Tuple

from .errors import ConfigurationError, InvalidParams
from .models import CollectionDefinition, RunContext
from .observability import EventSink
from .schema import compile_schema, diff_schema

logger = logging.getLogger(__name__)

PHYSICAL_SUFFIX_RE = re.compile(r"^(.+)_\d{8}_\d{6}_\d{3}$")

PREFLIGHT_ENSURE = "ensure"
PREFLIGHT_INDEX = "index"


class CollectionRegistry:
    def __init__(self, definitions: Iterable[CollectionDefinition]):
        by_name: Dict[str, CollectionDefinition] = {}
        for definition in definitions:
            if definition.name in by_name:
                raise ConfigurationError(f"collection {definition.name!r} registered twice")
            by_name[definition.name] = definition
        self._by_name = MappingProxyType(by_name)

    def get(self, name: str) -> Optional[CollectionDefinition]:
        return self._by_name.get(name)

    def require(self, name: str) -> CollectionDefinition:
        definition = self._by_name.get(name)
        if definition is None:
            raise InvalidParams(f"unknown collection {name!r}; registered: {', '.join(sorted(self._by_name)) or 'none'}")
        return definition

    def names(self) -> List[str]:
        return list(self._by_name)

    def __contains__(self, name: object) -> bool:
        return name in self._by_name

    def __iter__(self) -> Iterator[CollectionDefinition]:
        return iter(self._by_name.values())

    def __len__(self) -> int:
        return len(self._by_name)


class Edge(NamedTuple):
    referrer: str
    target: str
    local_key: str
    foreign_key: Optional[str]


def logical_name(physical: str) -> str:
    """``products_20250131_235959_001`` -> ``products``; other names unchanged."""
    match = PHYSICAL_SUFFIX_RE.match(physical)
    return match.group(1) if match else physical


def parse_reference(value: Any) -> Tuple[str, Optional[str]]:
    collection, _, foreign_key = str(value).partition(".")
    return collection, foreign_key or None


class DependencyGraph:
    """Adjacency lists keyed by logical name: forward (depends on) and reverse (referenced by)."""

    def __init__(self, edges: Iterable[Edge] = ()):
        self.forward: Dict[str, List[str]] = {}
        self.reverse: Dict[str, List[Edge]] = {}
        for edge in edges:
            self.add(edge)

    def add(self, edge: Edge) -> None:
        targets = self.forward.setdefault(edge.referrer, [])
        if edge.target not in targets:
            targets.append(edge.target)
        if edge not in self.reverse.setdefault(edge.target, []):
            self.reverse[edge.target].append(edge)

    def dependencies(self, name: str) -> List[str]:
        return list(self.forward.get(name, []))

    def referencers(self, name: str) -> List[Edge]:
        return list(self.reverse.get(name, []))

    def __bool__(self) -> bool:
        return bool(self.forward)

    @classmethod
    def from_registry(cls, registry: CollectionRegistry) -> "DependencyGraph":
        graph = cls()
        for definition in registry:
            for field in compile_schema(definition)["fields"]:
                if "reference" in field:
                    target, foreign_key = parse_reference(field["reference"])
                    graph.add(Edge(definition.name, target, field["name"], foreign_key))
        return graph

    @classmethod
    def from_live(cls, client: Any) -> "DependencyGraph":
        """Edges from the reference fields of every live collection schema."""
        graph = cls()
        for collection in client.list_collections():
            schema = collection if "fields" in collection else client.retrieve_collection(str(collection.get("name")))
            if not schema:
                continue
            referrer = logical_name(str(schema.get("name")))
            for field in schema.get("fields") or []:
                reference = field.get("reference")
                if reference is None or not str(reference).strip():
                    continue
                target, foreign_key = parse_reference(reference)
                if target:
                    graph.add(Edge(referrer, logical_name(target), str(field.get("name")), foreign_key))
        return graph


class DependencyResolver:
    """
    Depth-first preflight over declared dependencies.

    Modes:
      - ensure: index a dependency only when it is missing
      - index: also re-index it when its schema drifted

    Unregistered dependencies are graph leaves: logged and skipped.
    """

    def __init__(
        self,
        registry: CollectionRegistry,
        client: Any,
        indexate: Callable[[CollectionDefinition, RunContext], Any],
        sink: Optional[EventSink] = None,
    ):
        self.registry = registry
        self.client = client
        self.indexate = indexate
        self.sink = sink
        self.graph = DependencyGraph.from_registry(registry)

    def preflight(self, definition: CollectionDefinition, mode: str, ctx: Optional[RunContext] = None) -> List[Tuple[str, str]]:
        if mode not in (PREFLIGHT_ENSURE, PREFLIGHT_INDEX):
            raise InvalidParams(f"preflight mode must be '{PREFLIGHT_ENSURE}' or '{PREFLIGHT_INDEX}', got {mode!r}")
        ctx = ctx or RunContext()
        ctx.visited.add(definition.name)
        actions: List[Tuple[str, str]] = []
        logger.info("Preflight (%s) for %s", mode, definition.name)
        self._visit(definition.name, mode, ctx, actions)
        return actions

    def _visit(self, name: str, mode: str, ctx: RunContext, actions: List[Tuple[str, str]]) -> None:
        for dependency in self.graph.dependencies(name):
            if dependency in ctx.visited:
                logger.debug("Preflight: %s already visited, skipping", dependency)
                actions.append((dependency, "skipped_visited"))
                continue
            ctx.visited.add(dependency)

            dep_definition = self.registry.get(dependency)
            if dep_definition is None:
                logger.warning("Preflight: dependency %s of %s is not registered, skipping", dependency, name)
                actions.append((dependency, "skipped_unregistered"))
                continue

            self._visit(dependency, mode, ctx, actions)

            diff = diff_schema(dep_definition, self.client, self.sink)
            if diff.missing:
                action = "indexed_missing"
            elif mode == PREFLIGHT_INDEX and diff.drift:
                action = "indexed_drift"
            else:
                actions.append((dependency, "in_sync" if diff.in_sync else "present"))
                logger.info("Preflight: %s ok (%s)", dependency, actions[-1][1])
                continue

            logger.info("Preflight: %s -> %s", dependency, action)
            self.indexate(dep_definition, ctx)
            actions.append((dependency, action))
