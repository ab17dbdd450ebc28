"""Search Backend Client

Thin synchronous wrapper over the collection, alias and document
endpoints of a Typesense-compatible HTTP API, built on ``httpx``.

Every request carries its own timeout. Transport failures surface as
``BackendTimeout`` / ``BackendConnectionError`` and non-2xx responses as
``BackendApiError``, except for ``import_documents`` which never raises
for HTTP outcomes and returns an ``ImportOutcome`` instead.
"""

import json
import logging
from typing import Any, Dict, Iterable, List, Optional

import httpx

from .config import Settings
from .errors import BackendApiError, BackendConnectionError, BackendTimeout, is_transient_status
from .models import (
    OUTCOME_PERMANENT,
    OUTCOME_SUCCESS,
    OUTCOME_TOO_LARGE,
    OUTCOME_TRANSIENT,
    ImportOutcome,
)

logger = logging.getLogger(__name__)

API_KEY_HEADER = "X-TYPESENSE-API-KEY"
MAX_ERROR_CHARS = 200


class SearchClient:
    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout_s: float = 5.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        headers = {API_KEY_HEADER: api_key} if api_key else {}
        self._http = httpx.Client(
            base_url=base_url,
            headers=headers,
            timeout=httpx.Timeout(timeout_s),
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings: Settings, transport: Optional[httpx.BaseTransport] = None) -> "SearchClient":
        return cls(
            settings.base_url,
            api_key=settings.api_key,
            timeout_s=settings.timeout_s,
            transport=transport,
        )

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "SearchClient":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # ---- collections ----

    def create_collection(self, schema: Dict[str, Any]) -> Dict[str, Any]:
        logger.info("Creating collection %s (%d fields)", schema.get("name"), len(schema.get("fields", [])))
        return self._request("POST", "/collections", json=schema).json()

    def delete_collection(self, name: str) -> bool:
        """Delete a collection; a missing collection is not an error."""
        response = self._request("DELETE", f"/collections/{name}", allow=(404,))
        if response.status_code == 404:
            logger.debug("Collection %s already gone", name)
            return False
        logger.info("Deleted collection %s", name)
        return True

    def list_collections(self) -> List[Dict[str, Any]]:
        return self._request("GET", "/collections").json()

    def retrieve_collection(self, name: str) -> Optional[Dict[str, Any]]:
        response = self._request("GET", f"/collections/{name}", allow=(404,))
        if response.status_code == 404:
            return None
        return response.json()

    # ---- aliases ----

    def resolve_alias(self, logical: str) -> Optional[str]:
        response = self._request("GET", f"/aliases/{logical}", allow=(404,))
        if response.status_code == 404:
            return None
        return response.json().get("collection_name")

    def upsert_alias(self, logical: str, physical: str) -> None:
        self._request("PUT", f"/aliases/{logical}", json={"collection_name": physical})
        logger.info("Alias %s -> %s", logical, physical)

    # ---- documents ----

    def import_documents(self, collection: str, documents: Iterable[Dict[str, Any]], action: str = "upsert") -> ImportOutcome:
        """
        Bulk upsert documents as JSONL and classify the outcome.

        Returns:
            ImportOutcome with kind:
              - success: request accepted; per-document results counted
              - transient: timeout, connection error, 429 or 5xx
              - payload_too_large: HTTP 413
              - permanent: any other non-2xx status
        """
        body = "\n".join(json.dumps(doc, ensure_ascii=False, default=str) for doc in documents)
        encoded = body.encode("utf-8")
        try:
            response = self._http.post(
                f"/collections/{collection}/documents/import",
                params={"action": action},
                content=encoded,
                headers={"Content-Type": "text/plain"},
            )
        except httpx.TimeoutException as e:
            return ImportOutcome(kind=OUTCOME_TRANSIENT, errors=[f"timeout: {e}"[:MAX_ERROR_CHARS]], bytes_sent=len(encoded))
        except httpx.TransportError as e:
            return ImportOutcome(kind=OUTCOME_TRANSIENT, errors=[f"connection: {e}"[:MAX_ERROR_CHARS]], bytes_sent=len(encoded))

        status = response.status_code
        if status == 413:
            return ImportOutcome(kind=OUTCOME_TOO_LARGE, http_status=status, bytes_sent=len(encoded))
        if status >= 400:
            kind = OUTCOME_TRANSIENT if is_transient_status(status) else OUTCOME_PERMANENT
            return ImportOutcome(
                kind=kind,
                http_status=status,
                errors=[response.text[:MAX_ERROR_CHARS]],
                bytes_sent=len(encoded),
            )

        success, failure, errors = parse_import_response(response.text)
        return ImportOutcome(
            kind=OUTCOME_SUCCESS,
            http_status=status,
            success_count=success,
            failure_count=failure,
            errors=errors,
            bytes_sent=len(encoded),
        )

    def delete_by_filter(self, collection: str, filter_by: str) -> int:
        response = self._request(
            "DELETE",
            f"/collections/{collection}/documents",
            params={"filter_by": filter_by},
        )
        return int(response.json().get("num_deleted", 0))

    # ---- internals ----

    def _request(self, method: str, path: str, allow=(), **kwargs) -> httpx.Response:
        try:
            response = self._http.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise BackendTimeout(f"{method} {path} timed out") from e
        except httpx.TransportError as e:
            raise BackendConnectionError(f"{method} {path} failed: {e}") from e

        if response.status_code >= 400 and response.status_code not in allow:
            raise BackendApiError(response.status_code, _safe_body(response))
        return response


def parse_import_response(text: str, max_samples: int = 5):
    """Count per-line ``success`` flags of a JSONL import response."""
    success = 0
    failure = 0
    errors: List[str] = []
    for line in text.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            item = json.loads(line)
        except json.JSONDecodeError:
            failure += 1
            if len(errors) < max_samples:
                errors.append(f"unparseable response line: {line[:100]}")
            continue
        if item.get("success") is True:
            success += 1
        else:
            failure += 1
            if len(errors) < max_samples:
                errors.append(str(item.get("error") or "unknown error")[:MAX_ERROR_CHARS])
    return success, failure, errors


def _safe_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text[:MAX_ERROR_CHARS]
