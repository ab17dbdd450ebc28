"""Runtime Configuration

Settings for the backend connection, batching, retries, retention,
dispatch and worker-pool behaviour. Values come from environment
variables, read once into an immutable ``Settings`` object.

Environment variables:
  SEARCH_SYNC_HOST / SEARCH_SYNC_PORT / SEARCH_SYNC_PROTOCOL: backend address
  SEARCH_SYNC_API_KEY: API key sent with every request (defaults to None)
  SEARCH_SYNC_TIMEOUT_S: per-attempt HTTP timeout in seconds (default: 5)
  SEARCH_SYNC_BATCH_SIZE: documents per bulk import request (default: 2000)
  SEARCH_SYNC_RETRY_ATTEMPTS / _BASE_S / _MAX_S / _JITTER: retry policy
  SEARCH_SYNC_KEEP_LAST: retained old physicals per collection (default: 0)
  SEARCH_SYNC_DISPATCH: 'inline' or 'async' (default: inline)
  SEARCH_SYNC_QUEUE: job queue name for async dispatch (default: search_index)
  SEARCH_SYNC_MAX_PARALLEL: default worker pool ceiling (default: 1)
  SEARCH_SYNC_POOL_TIMEOUT_S / SEARCH_SYNC_POOL_GRACE_S: pool shutdown bounds
  SEARCH_SYNC_BEFORE_HOOK_TIMEOUT_S / SEARCH_SYNC_AFTER_HOOK_TIMEOUT_S: partition hook
    time limits in seconds (default: unset; 0 also means no limit)
  SEARCH_SYNC_STALE_ENABLED / SEARCH_SYNC_STALE_STRICT: stale-delete switches
  SEARCH_SYNC_MAX_CASCADE_DEPTH: referencer levels to re-index (default: 3)
  SEARCH_SYNC_REGISTRY: 'module:attr' of the collection registry for the CLI
"""

import os
from typing import Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field

from .errors import ConfigurationError

DISPATCH_MODES = ("inline", "async")

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


class Settings(BaseModel):
    model_config = ConfigDict(frozen=True)

    host: str = "localhost"
    port: int = 8108
    protocol: str = "http"
    api_key: Optional[str] = None
    timeout_s: float = Field(default=5.0, gt=0)

    batch_size: int = Field(default=2000, ge=1)
    retry_attempts: int = Field(default=3, ge=1)
    retry_base_s: float = Field(default=0.5, ge=0)
    retry_max_s: float = Field(default=5.0, ge=0)
    retry_jitter_fraction: float = Field(default=0.2, ge=0, le=1)

    keep_last: int = Field(default=0, ge=0)
    dispatch_mode: Optional[str] = None
    queue_name: str = "search_index"
    max_parallel: int = Field(default=1, ge=1)
    pool_timeout_s: float = 3600.0
    pool_grace_s: float = 60.0
    before_hook_timeout_s: Optional[float] = Field(default=None, ge=0)
    after_hook_timeout_s: Optional[float] = Field(default=None, ge=0)

    stale_deletes_enabled: bool = True
    stale_strict_mode: bool = True
    max_cascade_depth: int = Field(default=3, ge=0)
    registry: Optional[str] = None

    @property
    def base_url(self) -> str:
        return f"{self.protocol}://{self.host}:{self.port}"

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        """Build settings from environment variables; unset ones keep their defaults."""
        env = os.environ if env is None else env
        values = {}

        def read(var, field, parse=str):
            raw = env.get(var)
            if raw is None or raw.strip() == "":
                return
            try:
                values[field] = parse(raw.strip())
            except ValueError as e:
                raise ConfigurationError(f"{var}: invalid value {raw!r} ({e})") from e

        read("SEARCH_SYNC_HOST", "host")
        read("SEARCH_SYNC_PORT", "port", int)
        read("SEARCH_SYNC_PROTOCOL", "protocol")
        read("SEARCH_SYNC_API_KEY", "api_key")
        read("SEARCH_SYNC_TIMEOUT_S", "timeout_s", float)
        read("SEARCH_SYNC_BATCH_SIZE", "batch_size", int)
        read("SEARCH_SYNC_RETRY_ATTEMPTS", "retry_attempts", int)
        read("SEARCH_SYNC_RETRY_BASE_S", "retry_base_s", float)
        read("SEARCH_SYNC_RETRY_MAX_S", "retry_max_s", float)
        read("SEARCH_SYNC_RETRY_JITTER", "retry_jitter_fraction", float)
        read("SEARCH_SYNC_KEEP_LAST", "keep_last", int)
        read("SEARCH_SYNC_DISPATCH", "dispatch_mode", _parse_dispatch_mode)
        read("SEARCH_SYNC_QUEUE", "queue_name")
        read("SEARCH_SYNC_MAX_PARALLEL", "max_parallel", int)
        read("SEARCH_SYNC_POOL_TIMEOUT_S", "pool_timeout_s", float)
        read("SEARCH_SYNC_POOL_GRACE_S", "pool_grace_s", float)
        read("SEARCH_SYNC_BEFORE_HOOK_TIMEOUT_S", "before_hook_timeout_s", float)
        read("SEARCH_SYNC_AFTER_HOOK_TIMEOUT_S", "after_hook_timeout_s", float)
        read("SEARCH_SYNC_STALE_ENABLED", "stale_deletes_enabled", _parse_bool)
        read("SEARCH_SYNC_STALE_STRICT", "stale_strict_mode", _parse_bool)
        read("SEARCH_SYNC_MAX_CASCADE_DEPTH", "max_cascade_depth", int)
        read("SEARCH_SYNC_REGISTRY", "registry")

        try:
            return cls(**values)
        except ValueError as e:
            raise ConfigurationError(f"invalid settings: {e}") from e


def _parse_bool(raw: str) -> bool:
    lowered = raw.lower()
    if lowered in _TRUE:
        return True
    if lowered in _FALSE:
        return False
    raise ValueError("expected a boolean")


def _parse_dispatch_mode(raw: str) -> str:
    lowered = raw.lower()
    if lowered not in DISPATCH_MODES:
        raise ValueError(f"expected one of {', '.join(DISPATCH_MODES)}")
    return lowered
