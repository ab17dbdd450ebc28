"""Blue-Green Schema Lifecycle

Creates versioned physical collections behind a logical alias, swaps the
alias once the new physical is populated, prunes old physicals and rolls
the alias back to the previous retained version.

Physical names look like ``products_20250131_235959_001`` (UTC timestamp
plus a 3-digit sequence for collisions within the same second).
"""

import logging
import re
import time
from datetime import datetime, timezone
from typing import Any, Callable, List, Optional, Tuple

from .config import Settings
from .errors import ApplyFailed, InvalidParams, RollbackUnavailable
from .models import STATUS_FAILED, ApplyResult, CollectionDefinition, RollbackResult
from .observability import EventSink
from .schema import compile_schema, physical_schema

logger = logging.getLogger(__name__)

MAX_SEQUENCE = 999


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def physical_pattern(logical: str) -> "re.Pattern[str]":
    return re.compile(rf"^{re.escape(logical)}_(\d{{8}})_(\d{{6}})_(\d{{3}})$")


def order_physicals(logical: str, names: List[str]) -> List[str]:
    """Physicals of ``logical`` ordered newest first by (timestamp, sequence)."""
    pattern = physical_pattern(logical)
    keyed: List[Tuple[Tuple[int, int], str]] = []
    for name in names:
        match = pattern.match(name)
        if match:
            keyed.append(((int(match.group(1) + match.group(2)), int(match.group(3))), name))
    keyed.sort(key=lambda item: item[0], reverse=True)
    return [name for _, name in keyed]


def populate_status(outcome: Any) -> Optional[str]:
    """Status reported by a populate callback: a string, or an object with ``.status``."""
    if outcome is None:
        return None
    if isinstance(outcome, str):
        return outcome
    return getattr(outcome, "status", None)


class BlueGreenApplier:
    def __init__(
        self,
        client: Any,
        settings: Optional[Settings] = None,
        sink: Optional[EventSink] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.client = client
        self.settings = settings or Settings()
        self.sink = sink
        self.clock = clock

    def keep_last_for(self, definition: CollectionDefinition) -> int:
        if definition.keep_last is not None:
            return definition.keep_last
        return self.settings.keep_last

    def list_physicals(self, logical: str) -> List[str]:
        names = [str(c.get("name")) for c in self.client.list_collections()]
        return order_physicals(logical, names)

    def generate_physical_name(self, logical: str) -> str:
        """Next ``<logical>_<YYYYMMDD>_<HHMMSS>_<NNN>`` name for the current second.

        The sequence is one above the highest in use, so a new physical
        always sorts after the existing ones.
        """
        timestamp = self.clock().astimezone(timezone.utc).strftime("%Y%m%d_%H%M%S")
        prefix = f"{logical}_{timestamp}_"
        used = [0]
        for collection in self.client.list_collections():
            name = str(collection.get("name"))
            if name.startswith(prefix) and name[len(prefix):].isdigit():
                used.append(int(name[len(prefix):]))

        seq = max(used) + 1
        if seq > MAX_SEQUENCE:
            raise InvalidParams(f"no free physical sequence left for {prefix}")
        return f"{prefix}{seq:03d}"

    def apply(self, definition: CollectionDefinition, populate: Callable[[str], Any]) -> ApplyResult:
        """
        Create a new physical, populate it, swap the alias and prune old physicals.

        ``populate`` receives the new physical name. If it raises, or
        reports ``failed``, the alias is left untouched, the new physical
        is kept for inspection and ``ApplyFailed`` is raised.

        Returns:
            ApplyResult with the new/previous physical and the dropped names.
        """
        start = time.time()
        compiled = compile_schema(definition)
        logical = compiled["name"]
        previous = self.client.resolve_alias(logical)

        new_physical = self.generate_physical_name(logical)
        logger.info("Creating physical %s for %s (previous=%s)", new_physical, logical, previous)
        self.client.create_collection(physical_schema(compiled, new_physical))

        try:
            status = populate_status(populate(new_physical))
        except Exception as e:
            logger.exception("Populate of %s failed; alias %s left on %s", new_physical, logical, previous)
            self._emit_apply(logical, new_physical, previous, [], False, STATUS_FAILED, start)
            raise ApplyFailed(new_physical, STATUS_FAILED, f"populate of {new_physical} raised: {e}") from e

        if status == STATUS_FAILED:
            logger.error("Populate of %s reported status=failed; alias %s left on %s", new_physical, logical, previous)
            self._emit_apply(logical, new_physical, previous, [], False, status, start)
            raise ApplyFailed(new_physical, status)

        swapped = self.client.resolve_alias(logical) != new_physical
        if swapped:
            self.client.upsert_alias(logical, new_physical)
        logger.info("✓ Alias %s -> %s (swapped=%s)", logical, new_physical, swapped)

        dropped = self.enforce_retention(logical, self.keep_last_for(definition), alias_target=new_physical)
        self._emit_apply(logical, new_physical, previous, dropped, swapped, status or "ok", start)

        return ApplyResult(
            logical=logical,
            new_physical=new_physical,
            previous_physical=previous,
            alias_target=new_physical,
            dropped_physicals=dropped,
            populate_status=status,
        )

    def enforce_retention(self, logical: str, keep_last: int, alias_target: Optional[str] = None) -> List[str]:
        """
        Keep the newest ``keep_last`` physicals besides the alias target, delete the rest.

        The alias target is looked up when not given and is never deleted.
        """
        keep = max(int(keep_last or 0), 0)
        if alias_target is None:
            alias_target = self.client.resolve_alias(logical)

        candidates = [n for n in self.list_physicals(logical) if n != alias_target]
        to_drop = candidates[keep:]
        for name in to_drop:
            logger.debug("Retention: dropping %s", name)
            self.client.delete_collection(name)

        if to_drop:
            logger.info("Retention for %s: kept %d, dropped %d", logical, len(candidates) - len(to_drop), len(to_drop))
        else:
            logger.info("Retention for %s: nothing to drop", logical)
        if self.sink is not None:
            self.sink.emit(
                "schema.retention",
                {"collection": logical, "keep_last": keep, "dropped_count": len(to_drop)},
            )
        return to_drop

    def rollback(self, definition: CollectionDefinition) -> RollbackResult:
        """Point the alias at the newest retained physical other than the current target.

        Never deletes anything. Raises ``RollbackUnavailable`` when no such
        physical exists (e.g. retention keeps 0).
        """
        start = time.time()
        logical = definition.name
        current = self.client.resolve_alias(logical)

        previous = next((n for n in self.list_physicals(logical) if n != current), None)
        if previous is None:
            raise RollbackUnavailable(
                f"no previous physical available for {logical}; retention keep_last may be 0"
            )

        self.client.upsert_alias(logical, previous)
        logger.info("✓ Rolled back %s: %s -> %s", logical, current, previous)
        if self.sink is not None:
            self.sink.emit(
                "schema.rollback",
                {
                    "collection": logical,
                    "new_target": previous,
                    "previous_target": current,
                    "duration_ms": int((time.time() - start) * 1000),
                },
            )
        return RollbackResult(logical=logical, new_target=previous, previous_target=current)

    def drop_collection(self, definition: CollectionDefinition) -> Optional[str]:
        """Drop the physical behind the alias (or a bare collection named like the alias)."""
        logical = definition.name
        physical = self.client.resolve_alias(logical)
        if not physical:
            physical = logical if self.client.retrieve_collection(logical) is not None else None
        if physical is None:
            logger.info("Drop collection %s: skip (not present)", logical)
            return None
        logger.info("Drop collection %s: deleting physical %s", logical, physical)
        self.client.delete_collection(physical)
        return physical

    def _emit_apply(self, logical, new_physical, previous, dropped, swapped, status, start) -> None:
        if self.sink is None:
            return
        self.sink.emit(
            "schema.apply",
            {
                "collection": logical,
                "physical_new": new_physical,
                "previous_physical": previous,
                "alias_swapped": swapped,
                "retention_deleted_count": len(dropped),
                "status": status,
                "duration_ms": int((time.time() - start) * 1000),
            },
        )
