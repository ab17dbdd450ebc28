"""Document Mapping Module

Maps raw source records into backend documents through the collection's
``map_record`` callable and validates them against the compiled schema:

  - every document needs a non-empty ``id``
  - non-optional schema fields must be present
  - values must match the compiled field type (optionally coercing
    numeric/boolean strings)
  - unknown keys are reported, or rejected in strict mode

Time-like fields are normalized to ISO-8601 strings, and the hidden
``<name>_blank`` / ``<name>_empty`` flags are filled in.
"""

import logging
import math
import re
import time
from datetime import date, datetime
from typing import Any, Dict, List, Mapping, Optional, Tuple

from pydantic import BaseModel

from .errors import MapperValidationError
from .models import CollectionDefinition
from .schema import compile_schema

logger = logging.getLogger(__name__)

INT_RE = re.compile(r"^[-+]?\d+$")
FLOAT_RE = re.compile(r"^[-+]?(\d+\.?\d*|\.\d+)([eE][-+]?\d+)?$")
TIME_TYPES = ("time", "datetime", "date")


class MapReport(BaseModel):
    collection: str
    batch_index: Optional[int] = None
    docs_count: int = 0
    missing_required: List[str] = []
    missing_id: int = 0
    extras_sample: List[str] = []
    invalid_type_sample: List[str] = []
    coerced_count: int = 0
    duration_ms: float = 0.0

    @property
    def valid(self) -> bool:
        return not (self.missing_required or self.missing_id or self.invalid_type_sample)


def normalize_optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    s = str(value).strip()
    return s if s else None


def normalize_iso8601(value: Any) -> Optional[str]:
    """Render datetimes as ISO-8601; trim '.000Z' millisecond noise from strings."""
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    s = normalize_optional_str(value)
    if s is None:
        return None
    if s.endswith(".000Z"):
        return s.replace(".000Z", "Z")
    return s


def is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, dict)):
        return len(value) == 0
    return False


class Mapper:
    def __init__(
        self,
        definition: CollectionDefinition,
        coerce: bool = False,
        strict_unknown_keys: bool = False,
        max_error_samples: int = 5,
    ):
        self.definition = definition
        self.coerce = coerce
        self.strict_unknown_keys = strict_unknown_keys
        self.max_error_samples = max_error_samples

        compiled = compile_schema(definition)
        self.types_by_field: Dict[str, str] = {f["name"]: f["type"] for f in compiled["fields"]}
        self.required = [
            spec.name for spec in definition.fields if not spec.optional
        ]
        self.allowed = set(self.types_by_field) | {"id"}
        self.time_fields = {spec.name for spec in definition.fields if spec.type.lower() in TIME_TYPES}
        self.blank_flags = [spec.name for spec in definition.fields if spec.optional]
        self.empty_flags = [spec.name for spec in definition.fields if spec.empty_filtering and spec.array]

    def map_record(self, record: Any) -> Dict[str, Any]:
        fn = self.definition.map_record
        try:
            mapped = fn(record) if fn is not None else record
        except Exception as e:
            raise MapperValidationError(
                f"{self.definition.name}: map_record raised {type(e).__name__}: {e}"
            ) from e
        if isinstance(mapped, Mapping):
            return dict(mapped)
        if hasattr(mapped, "model_dump"):
            return mapped.model_dump()
        raise MapperValidationError(
            f"{self.definition.name}: mapper must return a mapping, got {type(mapped).__name__}"
        )

    def map_batch(self, records: List[Any], batch_index: Optional[int] = None) -> Tuple[List[Dict[str, Any]], MapReport]:
        """
        Map and validate one batch of records.

        Returns:
            (documents, report)

        Raises:
            MapperValidationError: missing ids, missing required fields,
                type mismatches, or unknown keys in strict mode. The
                exception carries the report; only this batch is affected.
        """
        start = time.time()
        report = MapReport(collection=self.definition.name, batch_index=batch_index)
        missing_required = set()
        extras = set()
        docs: List[Dict[str, Any]] = []

        for record in records:
            doc = self.map_record(record)

            if is_blank(doc.get("id")):
                report.missing_id += 1
            else:
                doc["id"] = str(doc["id"])

            missing_required.update(name for name in self.required if name not in doc)
            extras.update(k for k in doc if k not in self.allowed)

            self._fill_flags(doc)
            self._validate_types(doc, report)
            docs.append(doc)

        report.docs_count = len(docs)
        report.missing_required = sorted(missing_required)
        report.extras_sample = sorted(extras)[: self.max_error_samples]
        report.duration_ms = round((time.time() - start) * 1000, 1)

        if not report.valid:
            message = self._failure_message(report)
            logger.warning("Mapper rejected batch %s of %s: %s", batch_index, self.definition.name, message)
            raise MapperValidationError(message, report)
        if extras and self.strict_unknown_keys:
            message = f"{self.definition.name}: unknown fields {sorted(extras)}"
            logger.warning("Mapper rejected batch %s: %s", batch_index, message)
            raise MapperValidationError(message, report)
        if extras:
            logger.debug("Mapper batch %s of %s has unknown keys: %s", batch_index, self.definition.name, report.extras_sample)

        return docs, report

    def _fill_flags(self, doc: Dict[str, Any]) -> None:
        for name in self.blank_flags:
            doc.setdefault(f"{name}_blank", is_blank(doc.get(name)))
        for name in self.empty_flags:
            value = doc.get(name)
            doc.setdefault(f"{name}_empty", not value)

    def _validate_types(self, doc: Dict[str, Any], report: MapReport) -> None:
        for key in list(doc):
            expected = self.types_by_field.get(key)
            if expected is None:
                continue
            value = doc[key]
            if value is None:
                continue
            if key in self.time_fields:
                doc[key] = value = normalize_iso8601(value)

            ok, coerced = self._check(expected, value)
            if coerced is not None:
                doc[key] = coerced
                report.coerced_count += 1
            elif not ok and len(report.invalid_type_sample) < self.max_error_samples:
                preview = str(value)[:50]
                report.invalid_type_sample.append(
                    f"invalid type for field {key} (expected {expected}, got {type(value).__name__}: {preview!r})"
                )

    def _check(self, expected: str, value: Any) -> Tuple[bool, Any]:
        """Returns (valid, coerced_value_or_None)."""
        if expected.endswith("[]"):
            if not isinstance(value, (list, tuple)):
                return False, None
            inner = expected[:-2]
            results = [self._check(inner, v) for v in value]
            if not all(ok for ok, _ in results):
                return False, None
            if any(c is not None for _, c in results):
                return True, [c if c is not None else v for (_, c), v in zip(results, value)]
            return True, None

        if expected in ("int64", "int32"):
            if isinstance(value, int) and not isinstance(value, bool):
                return True, None
            if self.coerce and isinstance(value, str) and INT_RE.match(value.strip()):
                return True, int(value.strip())
            return False, None
        if expected == "float":
            if isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value):
                return True, None
            if self.coerce and isinstance(value, str) and FLOAT_RE.match(value.strip()):
                parsed = float(value.strip())
                return (True, parsed) if math.isfinite(parsed) else (False, None)
            return False, None
        if expected == "bool":
            if isinstance(value, bool):
                return True, None
            if self.coerce and str(value).strip().lower() in ("true", "false", "1", "0"):
                return True, str(value).strip().lower() in ("true", "1")
            return False, None
        if expected == "string":
            return isinstance(value, str), None
        # object and unknown types are opaque
        return True, None

    def _failure_message(self, report: MapReport) -> str:
        parts = []
        if report.missing_id:
            parts.append(f"{report.missing_id} document(s) without id")
        if report.missing_required:
            parts.append(f"missing required fields {report.missing_required}")
        if report.invalid_type_sample:
            parts.append(report.invalid_type_sample[0])
        return f"{self.definition.name}: " + "; ".join(parts)
