"""Search Sync CLI

Schema lifecycle and indexing commands for registered collections.

Usage:
    search-sync --registry myapp.search:REGISTRY schema:diff products
    search-sync schema:apply products
    search-sync schema:rollback products
    search-sync index:rebuild products --pre ensure
    search-sync index:rebuild_partition products 12 13
    search-sync index:delete_stale products 12 --dry-run

The registry is a ``module:attr`` path (or SEARCH_SYNC_REGISTRY) naming a
CollectionRegistry, an iterable of CollectionDefinition, or a zero-arg
callable returning either.

Exit codes:
    0  success
    1  error (including partial/failed indexation)
    2  rollback unavailable
    3  strict-mode safety violation (stale delete)
    10 drift detected (schema:diff only)
"""

import argparse
import importlib
import json
import logging
from pathlib import Path
from typing import Any, Optional

from ..client import SearchClient
from ..config import Settings
from ..dependencies import PREFLIGHT_ENSURE, PREFLIGHT_INDEX, CollectionRegistry
from ..errors import ConfigurationError, RollbackUnavailable, SearchSyncError, StrictSafetyViolation
from ..models import STATUS_OK
from ..observability import LoggingSink
from ..orchestrator import Orchestrator
from ..schema import format_diff

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_ROLLBACK_UNAVAILABLE = 2
EXIT_STRICT_VIOLATION = 3
EXIT_DRIFT = 10

logger = logging.getLogger(__name__)


def configure_logging(log_dir: Optional[Path] = Path("logs")) -> None:
    """Configure logging with console output and an optional file log.

    Sets up:
      - Root logger at DEBUG level
      - Console handler at INFO level for user-facing messages
      - File handler at DEBUG level (skipped when log_dir is None)
      - Reduced verbosity for httpx/httpcore loggers
    """
    root = logging.getLogger()
    root.setLevel(logging.DEBUG)

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    formatter = logging.Formatter("%(asctime)s | %(levelname)s | %(name)s | %(message)s")

    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.INFO)
    console_handler.setFormatter(formatter)

    # Clear existing handlers to avoid duplicates if run multiple times
    root.handlers.clear()
    root.addHandler(console_handler)

    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_dir / "search_sync.log", encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)


def parse_partition(value: Optional[str]) -> Any:
    """CLI partition token: digits -> int, blank/'nil'/'none' -> None, else the string."""
    if value is None:
        return None
    s = value.strip()
    if not s or s.lower() in ("nil", "none", "null"):
        return None
    if s.lstrip("-").isdigit():
        return int(s)
    return s


def load_registry(path: str) -> CollectionRegistry:
    module_name, _, attr = path.partition(":")
    if not module_name or not attr:
        raise ConfigurationError(f"registry must look like 'module:attr', got {path!r}")
    try:
        target = getattr(importlib.import_module(module_name), attr)
    except (ImportError, AttributeError) as e:
        raise ConfigurationError(f"cannot load registry {path!r}: {e}") from e
    if callable(target) and not isinstance(target, CollectionRegistry):
        target = target()
    if isinstance(target, CollectionRegistry):
        return target
    return CollectionRegistry(target)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="search-sync", description="Search collection schema and indexing tools")
    parser.add_argument("--registry", default=None, help="Collection registry as module:attr (default: SEARCH_SYNC_REGISTRY)")
    parser.add_argument("--json", action="store_true", help="Print machine-readable JSON results")
    parser.add_argument("--log-dir", type=Path, default=Path("logs"), help="Directory for the debug log file")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("schema:diff", help="Show drift between compiled and live schema")
    p.add_argument("collection")

    p = sub.add_parser("schema:apply", help="Blue-green apply: new physical, reindex, alias swap")
    p.add_argument("collection")

    p = sub.add_parser("schema:rollback", help="Point the alias at the previous retained physical")
    p.add_argument("collection")

    p = sub.add_parser("index:rebuild", help="Full indexation workflow")
    p.add_argument("collection")
    p.add_argument("--pre", choices=[PREFLIGHT_ENSURE, PREFLIGHT_INDEX], default=None, help="Dependency preflight mode")
    p.add_argument("--drop", action="store_true", help="Drop the live collection first")

    p = sub.add_parser("index:rebuild_partition", help="Re-index named partitions of an in-sync collection")
    p.add_argument("collection")
    p.add_argument("partitions", nargs="*", help="Partition keys (digits are parsed as integers)")
    p.add_argument("--pre", choices=[PREFLIGHT_ENSURE, PREFLIGHT_INDEX], default=None)
    p.add_argument("--mode", choices=["inline", "async"], default=None, help="Dispatch mode override")

    p = sub.add_parser("index:delete_stale", help="Delete stale documents of a partition")
    p.add_argument("collection")
    p.add_argument("partition", nargs="?", default=None)
    p.add_argument("--into", default=None, help="Target physical collection (default: alias)")
    p.add_argument("--dry-run", action="store_true")
    p.add_argument("--no-strict", action="store_true", help="Allow catch-all looking filters")
    return parser


def main(argv=None, client: Any = None, registry: Optional[CollectionRegistry] = None) -> int:
    """
    CLI entrypoint. Returns the process exit code.

    ``client`` and ``registry`` may be injected; otherwise they are built
    from settings and the ``--registry`` path.
    """
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_dir)

    own_client = None
    try:
        settings = Settings.from_env()
        if registry is None:
            path = args.registry or settings.registry
            if not path:
                raise ConfigurationError("no registry given; pass --registry module:attr or set SEARCH_SYNC_REGISTRY")
            registry = load_registry(path)
        if client is None:
            client = own_client = SearchClient.from_settings(settings)

        orchestrator = Orchestrator(client, registry, settings, sink=LoggingSink())
        return _run(args, orchestrator)
    except RollbackUnavailable as e:
        logger.error("Rollback unavailable: %s", e)
        return EXIT_ROLLBACK_UNAVAILABLE
    except StrictSafetyViolation as e:
        logger.error("Refusing stale delete: %s", e)
        return EXIT_STRICT_VIOLATION
    except SearchSyncError as e:
        logger.error("%s failed: %s", args.command, e)
        return EXIT_ERROR
    except Exception as e:
        logger.exception(f"{args.command} failed with an unhandled exception: {e}")
        return EXIT_ERROR
    finally:
        if own_client is not None:
            own_client.close()


def _run(args: argparse.Namespace, orchestrator: Orchestrator) -> int:
    command = args.command

    if command == "schema:diff":
        diff = orchestrator.diff(args.collection)
        _output(args, diff.model_dump(mode="json"), format_diff(diff))
        return EXIT_OK if diff.in_sync else EXIT_DRIFT

    if command == "schema:apply":
        result = orchestrator.apply(args.collection)
        _output(args, result.model_dump(mode="json"), f"Applied {result.logical}: alias -> {result.new_physical} (dropped={result.dropped_physicals})")
        return EXIT_OK

    if command == "schema:rollback":
        result = orchestrator.rollback(args.collection)
        _output(args, result.model_dump(mode="json"), f"Rolled back {result.logical}: {result.previous_target} -> {result.new_target}")
        return EXIT_OK

    if command == "index:rebuild":
        if args.drop:
            report = orchestrator.reindex(args.collection, pre=args.pre)
        else:
            report = orchestrator.indexate(args.collection, pre=args.pre)
        _output(args, report.model_dump(mode="json"), "\n".join(report.steps))
        return EXIT_OK if report.status in (STATUS_OK, None) else EXIT_ERROR

    if command == "index:rebuild_partition":
        partitions = [parse_partition(p) for p in args.partitions]
        report = orchestrator.rebuild_partitions(args.collection, partitions, pre=args.pre, mode=args.mode)
        _output(args, report.model_dump(mode="json"), report.skipped_reason or "\n".join(report.steps))
        if report.skipped_reason:
            return EXIT_ERROR
        return EXIT_OK if report.status in (STATUS_OK, None) else EXIT_ERROR

    if command == "index:delete_stale":
        result = orchestrator.delete_stale(
            args.collection,
            parse_partition(args.partition),
            into=args.into,
            dry_run=args.dry_run,
            strict=False if args.no_strict else None,
        )
        _output(args, result.model_dump(mode="json"), f"Stale delete {result.status}: deleted={result.deleted_count} reason={result.reason}")
        return EXIT_OK if result.status != "failed" else EXIT_ERROR

    raise ConfigurationError(f"unknown command {command!r}")


def _output(args: argparse.Namespace, data: Any, text: str) -> None:
    if args.json:
        print(json.dumps(data, indent=2, default=str))
    else:
        print(text)


if __name__ == "__main__":
    raise SystemExit(main())
