# tests/test_client.py

"""
Tests for the HTTP backend client, using httpx.MockTransport so no
server is needed.
"""

import json

import httpx
import pytest

from search_sync.client import SearchClient, parse_import_response
from search_sync.config import Settings
from search_sync.errors import BackendApiError, BackendConnectionError, BackendTimeout
from search_sync.models import OUTCOME_PERMANENT, OUTCOME_SUCCESS, OUTCOME_TOO_LARGE, OUTCOME_TRANSIENT


class RecordingTransport:
    """
    Routes requests to a handler and records them.

    handler(request) -> httpx.Response, or raises an httpx exception.
    """

    def __init__(self, handler):
        self.handler = handler
        self.requests = []

    def __call__(self, request):
        self.requests.append(request)
        return self.handler(request)


def make_client(handler):
    recorder = RecordingTransport(handler)
    client = SearchClient("http://search.test", api_key="test-key", transport=httpx.MockTransport(recorder))
    return client, recorder


# -------------------------------------------------------------------
# import_documents
# -------------------------------------------------------------------


def test_import_documents_sends_jsonl_and_counts_per_document_results():
    client, recorder = make_client(
        lambda request: httpx.Response(
            200, text='{"success": true}\n{"success": false, "error": "Field `price` must be a float."}\n'
        )
    )

    outcome = client.import_documents("products_x", [{"id": "1", "title": "a"}, {"id": "2", "price": "oops"}])

    request = recorder.requests[0]
    assert request.method == "POST"
    assert request.url.path == "/collections/products_x/documents/import"
    assert request.url.params["action"] == "upsert"
    assert request.headers["X-TYPESENSE-API-KEY"] == "test-key"
    lines = request.content.decode("utf-8").splitlines()
    assert [json.loads(line)["id"] for line in lines] == ["1", "2"]

    assert outcome.kind == OUTCOME_SUCCESS
    assert outcome.success_count == 1
    assert outcome.failure_count == 1
    assert outcome.errors == ["Field `price` must be a float."]
    assert outcome.bytes_sent == len(request.content)


@pytest.mark.parametrize(
    "status, kind",
    [
        (413, OUTCOME_TOO_LARGE),
        (429, OUTCOME_TRANSIENT),
        (500, OUTCOME_TRANSIENT),
        (503, OUTCOME_TRANSIENT),
        (400, OUTCOME_PERMANENT),
        (401, OUTCOME_PERMANENT),
        (404, OUTCOME_PERMANENT),
        (422, OUTCOME_PERMANENT),
    ],
)
def test_import_documents_classifies_http_status(status, kind):
    client, _ = make_client(lambda request: httpx.Response(status, json={"message": "nope"}))

    outcome = client.import_documents("products", [{"id": "1"}])

    assert outcome.kind == kind
    assert outcome.http_status == status


def test_import_documents_timeout_is_transient():
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    client, _ = make_client(handler)

    outcome = client.import_documents("products", [{"id": "1"}])

    assert outcome.kind == OUTCOME_TRANSIENT
    assert outcome.http_status is None
    assert outcome.errors[0].startswith("timeout")


def test_import_documents_connection_error_is_transient():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    client, _ = make_client(handler)

    assert client.import_documents("products", [{"id": "1"}]).kind == OUTCOME_TRANSIENT


def test_parse_import_response_counts_unparseable_lines_as_failures():
    success, failure, errors = parse_import_response('{"success": true}\nnot-json\n\n{"success": false}')

    assert (success, failure) == (1, 2)
    assert errors[0].startswith("unparseable response line")
    assert errors[1] == "unknown error"


# -------------------------------------------------------------------
# collections and aliases
# -------------------------------------------------------------------


def test_resolve_alias_returns_none_when_missing():
    client, _ = make_client(lambda request: httpx.Response(404, json={"message": "Not Found"}))

    assert client.resolve_alias("products") is None


def test_resolve_alias_returns_collection_name():
    client, recorder = make_client(
        lambda request: httpx.Response(200, json={"name": "products", "collection_name": "products_20250101_000000_001"})
    )

    assert client.resolve_alias("products") == "products_20250101_000000_001"
    assert recorder.requests[0].url.path == "/aliases/products"


def test_upsert_alias_puts_collection_name():
    client, recorder = make_client(lambda request: httpx.Response(200, json={}))

    client.upsert_alias("products", "products_20250101_000000_002")

    request = recorder.requests[0]
    assert request.method == "PUT"
    assert json.loads(request.content) == {"collection_name": "products_20250101_000000_002"}


def test_retrieve_and_delete_collection_tolerate_404():
    client, _ = make_client(lambda request: httpx.Response(404, json={"message": "Not Found"}))

    assert client.retrieve_collection("gone") is None
    assert client.delete_collection("gone") is False


def test_create_collection_posts_schema():
    client, recorder = make_client(lambda request: httpx.Response(201, json=json.loads(request.content)))
    schema = {"name": "products_x", "fields": [{"name": "title", "type": "string"}]}

    assert client.create_collection(schema) == schema
    assert recorder.requests[0].url.path == "/collections"


def test_api_error_carries_status_and_body():
    client, _ = make_client(lambda request: httpx.Response(409, json={"message": "already exists"}))

    with pytest.raises(BackendApiError) as exc_info:
        client.create_collection({"name": "products", "fields": []})

    assert exc_info.value.status == 409
    assert exc_info.value.body == {"message": "already exists"}


def test_transport_errors_are_mapped():
    def timeout(request):
        raise httpx.ConnectTimeout("slow", request=request)

    def refused(request):
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(BackendTimeout):
        make_client(timeout)[0].list_collections()
    with pytest.raises(BackendConnectionError):
        make_client(refused)[0].list_collections()


def test_delete_by_filter_returns_deleted_count():
    client, recorder = make_client(lambda request: httpx.Response(200, json={"num_deleted": 7}))

    assert client.delete_by_filter("products", "shop_id:=3") == 7
    assert recorder.requests[0].url.params["filter_by"] == "shop_id:=3"


def test_from_settings_uses_base_url_and_key():
    recorder = RecordingTransport(lambda request: httpx.Response(200, json=[]))
    settings = Settings(host="search.internal", port=9108, api_key="abc")

    with SearchClient.from_settings(settings, transport=httpx.MockTransport(recorder)) as client:
        assert client.list_collections() == []

    request = recorder.requests[0]
    assert str(request.url) == "http://search.internal:9108/collections"
    assert request.headers["X-TYPESENSE-API-KEY"] == "abc"
