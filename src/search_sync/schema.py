"""Schema Compilation and Drift Detection

Turns a ``CollectionDefinition`` into a backend collection schema and
compares that schema with the live collection behind the alias.

Type policy (fixed):
  - integer -> int64 (wider range preferred)
  - float / decimal -> float
  - boolean -> bool
  - time / datetime / date -> string (ISO-8601 serialized)
  - string -> string, object -> object
  - array fields get a ``[]`` suffix

Only options that are declared on a field are emitted, so live schemas
that carry backend defaults do not show up as drift.
"""

import logging
import time
from typing import Any, Dict, List, Optional, Tuple

from .errors import InvalidParams
from .models import CollectionDefinition, FieldSpec, SchemaDiff
from .observability import EventSink

logger = logging.getLogger(__name__)

TYPE_MAPPING = {
    "string": "string",
    "integer": "int64",
    "int": "int64",
    "float": "float",
    "decimal": "float",
    "boolean": "bool",
    "bool": "bool",
    "time": "string",
    "datetime": "string",
    "date": "string",
    "object": "object",
}

FIELD_OPTION_KEYS = ("locale", "sort", "optional", "infix", "facet")
FIELD_COMPARE_KEYS = ("type", "reference") + FIELD_OPTION_KEYS
COLLECTION_OPTION_KEYS = (
    "default_sorting_field",
    "token_separators",
    "symbols_to_index",
    "enable_nested_fields",
)


def backend_type(spec: FieldSpec) -> str:
    mapped = TYPE_MAPPING.get(spec.type.lower())
    if mapped is None:
        raise InvalidParams(f"field {spec.name!r}: unsupported type {spec.type!r}")
    return f"{mapped}[]" if spec.array else mapped


def compile_schema(definition: CollectionDefinition) -> Dict[str, Any]:
    """
    Compile a collection definition into a backend schema document.

    Pure and deterministic: the same definition always yields an equal
    dict (and byte-identical JSON when dumped with sorted keys).

    Besides the declared fields this emits hidden flag fields:
      - ``<name>_empty`` (bool) for array fields with ``empty_filtering``
      - ``<name>_blank`` (bool) for optional fields

    Raises:
        InvalidParams: on a blank collection name, duplicate field names
            or an unsupported field type.
    """
    if not definition.name or not definition.name.strip():
        raise InvalidParams("collection definition must have a name")

    references = {
        ref.local_key: f"{ref.collection}.{ref.foreign_key}" for ref in reversed(definition.references)
    }

    fields: List[Dict[str, Any]] = []
    seen = set()
    needs_nested = False
    for spec in definition.fields:
        if spec.name in seen:
            raise InvalidParams(f"duplicate field {spec.name!r} in {definition.name}")
        seen.add(spec.name)

        ftype = backend_type(spec)
        needs_nested = needs_nested or ftype in ("object", "object[]")

        entry: Dict[str, Any] = {"name": spec.name, "type": ftype}
        for key in FIELD_OPTION_KEYS:
            value = getattr(spec, key)
            if value is not None:
                entry[key] = value
        if spec.name in references:
            entry["reference"] = references[spec.name]
        fields.append(entry)

        if spec.empty_filtering and spec.array:
            fields.append({"name": f"{spec.name}_empty", "type": "bool"})
        if spec.optional:
            fields.append({"name": f"{spec.name}_blank", "type": "bool"})

    missing_keys = sorted(set(references) - seen)
    if missing_keys:
        raise InvalidParams(
            f"{definition.name}: reference local keys not declared as fields: {', '.join(missing_keys)}"
        )

    schema: Dict[str, Any] = {"name": definition.name, "fields": fields}
    if definition.default_sorting_field is not None:
        schema["default_sorting_field"] = definition.default_sorting_field
    if definition.token_separators is not None:
        schema["token_separators"] = list(definition.token_separators)
    if definition.symbols_to_index is not None:
        schema["symbols_to_index"] = list(definition.symbols_to_index)
    if needs_nested:
        schema["enable_nested_fields"] = True
    return schema


def physical_schema(compiled: Dict[str, Any], physical: str) -> Dict[str, Any]:
    """Copy of a compiled schema renamed to a physical collection."""
    schema = {k: v for k, v in compiled.items() if k != "fields"}
    schema["name"] = physical
    schema["fields"] = [dict(f) for f in compiled["fields"]]
    return schema


def normalize_type(value: Any) -> str:
    s = str(value).strip()
    lowered = s.lower()
    if lowered in ("bool", "boolean"):
        return "bool"
    if lowered in ("bool[]", "boolean[]"):
        return "bool[]"
    if lowered in ("string", "string[]", "int64", "int64[]", "int32", "int32[]", "float", "float[]", "object", "object[]"):
        return lowered
    return s


def normalize_schema(schema: Dict[str, Any]) -> Tuple[Dict[str, Dict[str, Any]], Dict[str, Any]]:
    """Index fields by name (dropping ``id``) and pull out collection options."""
    fields: Dict[str, Dict[str, Any]] = {}
    for field in schema.get("fields") or []:
        name = str(field.get("name"))
        if name == "id":
            continue
        entry: Dict[str, Any] = {"name": name, "type": normalize_type(field.get("type"))}
        reference = field.get("reference")
        if reference is not None and str(reference).strip():
            entry["reference"] = str(reference)
        for key in FIELD_OPTION_KEYS:
            if field.get(key) is not None:
                entry[key] = field[key]
        fields[name] = entry
    options = {key: schema.get(key) for key in COLLECTION_OPTION_KEYS}
    return fields, options


def values_equal(a: Any, b: Any) -> bool:
    if isinstance(a, (list, tuple)) and isinstance(b, (list, tuple)):
        return list(a) == list(b)
    return str(a) == str(b)


def diff_fields(
    compiled: Dict[str, Dict[str, Any]], live: Dict[str, Dict[str, Any]]
) -> Tuple[List[Dict[str, Any]], List[Dict[str, Any]], Dict[str, Dict[str, List[Any]]]]:
    added = [compiled[n] for n in compiled if n not in live]
    removed = [live[n] for n in live if n not in compiled]

    changed: Dict[str, Dict[str, List[Any]]] = {}
    for name, cfield in compiled.items():
        lfield = live.get(name)
        if lfield is None:
            continue
        changes = {}
        for key in FIELD_COMPARE_KEYS:
            # type and reference always count; flags only when declared locally
            if key not in ("type", "reference") and key not in cfield:
                continue
            cval, lval = cfield.get(key), lfield.get(key)
            if cval is None and lval is None:
                continue
            if not values_equal(cval, lval):
                changes[key] = [cval, lval]
        if changes:
            changed[name] = changes
    return added, removed, changed


def diff_collection_options(compiled: Dict[str, Any], live: Dict[str, Any]) -> Dict[str, List[Any]]:
    differences: Dict[str, List[Any]] = {}
    for key in COLLECTION_OPTION_KEYS:
        cval = compiled.get(key)
        if cval is None:
            continue
        lval = live.get(key)
        if not values_equal(cval, lval):
            differences[key] = [cval, lval]
    return differences


def diff_schema(
    definition: CollectionDefinition,
    client: Any,
    sink: Optional[EventSink] = None,
) -> SchemaDiff:
    """
    Diff the compiled schema against the live collection behind the alias.

    Network reads only. When nothing is live, every compiled field is
    reported as added and ``collection_options`` carries ``{"live": "missing"}``.
    """
    start = time.time()
    compiled = compile_schema(definition)
    logical = compiled["name"]

    physical = client.resolve_alias(logical) or logical
    live_schema = client.retrieve_collection(physical)

    compiled_fields, compiled_options = normalize_schema(compiled)
    if live_schema is None:
        diff = SchemaDiff(
            logical=logical,
            physical=None,
            added_fields=list(compiled_fields.values()),
            collection_options={"live": "missing"},
        )
    else:
        live_fields, live_options = normalize_schema(live_schema)
        added, removed, changed = diff_fields(compiled_fields, live_fields)
        diff = SchemaDiff(
            logical=logical,
            physical=physical,
            added_fields=added,
            removed_fields=removed,
            changed_fields=changed,
            collection_options=diff_collection_options(compiled_options, live_options),
        )

    logger.debug(
        "Schema diff for %s (physical=%s): added=%d removed=%d changed=%d in_sync=%s",
        logical,
        diff.physical,
        len(diff.added_fields),
        len(diff.removed_fields),
        len(diff.changed_fields),
        diff.in_sync,
    )
    if sink is not None:
        sink.emit(
            "schema.diff",
            {
                "collection": logical,
                "physical_current": diff.physical,
                "added_count": len(diff.added_fields),
                "removed_count": len(diff.removed_fields),
                "fields_changed_count": len(diff.changed_fields),
                "in_sync": diff.in_sync,
                "duration_ms": int((time.time() - start) * 1000),
            },
        )
    return diff


def format_diff(diff: SchemaDiff) -> str:
    """Compact human-readable rendering of a ``SchemaDiff``."""
    if diff.physical and diff.physical != diff.logical:
        lines = [f"Collection: {diff.logical} -> {diff.physical}"]
    else:
        lines = [f"Collection: {diff.logical}"]

    if diff.in_sync:
        lines.append("No changes")
        return "\n".join(lines)

    if diff.added_fields:
        lines.append("+ Added fields:")
        lines.extend(f"  - {f['name']}:{f['type']}" for f in diff.added_fields)
    if diff.removed_fields:
        lines.append("- Removed fields:")
        lines.extend(f"  - {f['name']}:{f['type']}" for f in diff.removed_fields)
    if diff.changed_fields:
        lines.append("~ Changed fields:")
        for name in sorted(diff.changed_fields):
            for attr, (cval, lval) in diff.changed_fields[name].items():
                lines.append(f"  - {name}.{attr}: {cval} -> {lval}")
    if diff.collection_options:
        lines.append("~ Collection options:")
        for key, value in diff.collection_options.items():
            if key == "live":
                lines.append(f"  - live: {value}")
            else:
                lines.append(f"  - {key}: {value[0]} -> {value[1]}")
    return "\n".join(lines)
