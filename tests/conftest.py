# tests/conftest.py

"""
Shared fixtures: an in-memory search backend that speaks the same
methods as ``SearchClient``, a recording event sink, fast settings and
small collection definitions.
"""

import copy
import threading
from datetime import datetime, timezone

import pytest

from search_sync.config import Settings
from search_sync.errors import BackendApiError
from search_sync.models import (
    OUTCOME_PERMANENT,
    OUTCOME_SUCCESS,
    OUTCOME_TOO_LARGE,
    CollectionDefinition,
    FieldSpec,
    ImportOutcome,
    Reference,
)
from search_sync.observability import RecordingSink
from search_sync.sources import LambdaSource


FIXED_NOW = datetime(2025, 1, 31, 23, 59, 59, tzinfo=timezone.utc)


class FakeBackend:
    """
    In-memory stand-in for the search backend client.

    - ``import_outcomes``: scripted ImportOutcome values, consumed one per
      import call before the default behaviour kicks in
    - ``max_docs_per_import``: larger requests answer 413
    - ``calls``: every mutating call, in order
    """

    def __init__(self):
        self.collections = {}
        self.aliases = {}
        self.documents = {}
        self.calls = []
        self.import_outcomes = []
        self.import_sizes = []
        self.max_docs_per_import = None
        self.filters_deleted = []
        self.delete_by_filter_result = 0
        self.delete_by_filter_error = None
        self._lock = threading.Lock()

    def _resolve(self, name):
        return self.aliases.get(name, name)

    def create_collection(self, schema):
        with self._lock:
            name = schema["name"]
            if name in self.collections:
                raise BackendApiError(409, {"message": f"A collection with name `{name}` already exists."})
            self.collections[name] = copy.deepcopy(schema)
            self.documents[name] = {}
            self.calls.append(("create_collection", name))
        return schema

    def delete_collection(self, name):
        with self._lock:
            self.calls.append(("delete_collection", name))
            self.documents.pop(name, None)
            return self.collections.pop(name, None) is not None

    def list_collections(self):
        with self._lock:
            return [copy.deepcopy(s) for s in self.collections.values()]

    def retrieve_collection(self, name):
        with self._lock:
            schema = self.collections.get(self._resolve(name))
            return copy.deepcopy(schema) if schema is not None else None

    def resolve_alias(self, logical):
        return self.aliases.get(logical)

    def upsert_alias(self, logical, physical):
        with self._lock:
            self.calls.append(("upsert_alias", logical, physical))
            self.aliases[logical] = physical

    def import_documents(self, collection, documents):
        docs = list(documents)
        with self._lock:
            self.import_sizes.append(len(docs))
            self.calls.append(("import_documents", collection, len(docs)))
            scripted = self.import_outcomes.pop(0) if self.import_outcomes else None
            if scripted is not None:
                return scripted
            if self.max_docs_per_import is not None and len(docs) > self.max_docs_per_import:
                return ImportOutcome(kind=OUTCOME_TOO_LARGE, http_status=413)
            target = self._resolve(collection)
            if target not in self.collections:
                return ImportOutcome(kind=OUTCOME_PERMANENT, http_status=404, errors=["Not Found"])
            for doc in docs:
                self.documents[target][str(doc["id"])] = dict(doc)
            return ImportOutcome(kind=OUTCOME_SUCCESS, http_status=200, success_count=len(docs))

    def delete_by_filter(self, collection, filter_by):
        with self._lock:
            self.calls.append(("delete_by_filter", collection))
            self.filters_deleted.append((collection, filter_by))
        if self.delete_by_filter_error is not None:
            raise self.delete_by_filter_error
        return self.delete_by_filter_result

    # ---- test helpers ----

    def docs_in(self, logical):
        return self.documents.get(self._resolve(logical), {})

    def physicals_of(self, logical):
        return sorted(n for n in self.collections if n.startswith(f"{logical}_"))


def records_for(prefix, count, **extra):
    return [{"id": f"{prefix}-{i}", "title": f"{prefix} {i}", **extra} for i in range(count)]


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def settings():
    """Default settings with instant retries."""
    return Settings(retry_base_s=0.0, retry_max_s=0.0, retry_jitter_fraction=0.0)


@pytest.fixture
def clock():
    return lambda: FIXED_NOW


@pytest.fixture
def make_definition():
    """
    Factory for small collection definitions.

    Without explicit ``records`` or ``source`` each partition yields three
    records with ids derived from the collection name and partition key.
    """

    def _make(name="products", fields=None, references=(), records=None, source=None, **kwargs):
        if fields is None:
            fields = (FieldSpec(name="title"),)
        if source is None:
            if records is None:
                def fetch(partition, cursor):
                    yield records_for(f"{name}-{partition}", 3)
            else:
                def fetch(partition, cursor):
                    yield list(records)
            source = LambdaSource(fetch)
        refs = tuple(r if isinstance(r, Reference) else Reference(**r) for r in references)
        return CollectionDefinition(name=name, fields=tuple(fields), references=refs, source=source, **kwargs)

    return _make
