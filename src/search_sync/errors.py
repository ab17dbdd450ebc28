"""Error Types

Exception hierarchy for the search sync package. Transport and API
failures raised by the backend client, caller mistakes, and the two
user-facing conditions that the CLI maps to dedicated exit codes.

HTTP outcomes of a bulk import are NOT exceptions; see
``client.ImportOutcome``.
"""

from typing import Any, Optional


class SearchSyncError(Exception):
    """Base class for every error raised by this package."""


class ConfigurationError(SearchSyncError):
    """Raised when settings or the collection registry are invalid."""


class InvalidParams(SearchSyncError):
    """Raised on caller mistakes, before any network I/O happens."""


class BackendTimeout(SearchSyncError):
    """A request to the search backend timed out."""


class BackendConnectionError(SearchSyncError):
    """The search backend could not be reached."""


class BackendApiError(SearchSyncError):
    """Non-2xx response from the search backend."""

    def __init__(self, status: int, body: Any = None, message: Optional[str] = None):
        self.status = status
        self.body = body
        super().__init__(message or f"backend returned HTTP {status}: {str(body)[:200]}")


class MapperValidationError(SearchSyncError):
    """Raised when mapped documents fail validation; fatal for that batch only."""

    def __init__(self, message: str, report: Any = None):
        self.report = report
        super().__init__(message)


class ApplyFailed(SearchSyncError):
    """Populating a freshly created physical collection did not succeed.

    The alias is left untouched and the new physical is kept for inspection.
    """

    def __init__(self, physical: str, status: Optional[str] = None, message: Optional[str] = None):
        self.physical = physical
        self.status = status
        super().__init__(message or f"populate of {physical} finished with status={status}")


class RollbackUnavailable(SearchSyncError):
    """No retained physical collection exists to roll back to."""


class StrictSafetyViolation(SearchSyncError):
    """A stale-delete filter looks like a catch-all and strict mode is on."""


class HookTimeout(SearchSyncError):
    """A before or after partition hook ran longer than its configured timeout."""


def is_transient_status(status: Optional[int]) -> bool:
    """HTTP statuses worth retrying: 429 and every 5xx."""
    if status is None:
        return False
    return status == 429 or 500 <= status <= 599
