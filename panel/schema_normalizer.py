# panel/schema_normalizer.py
"""
Sampler statistics -> canonical FieldSchema map.

`analyze_documents` is the sampler side: it turns raw documents into per-field
statistics (type counts, occurrences, examples, ranges). `normalize` is the
panel side: it turns those statistics, whoever produced them, into the
FieldSchema records stored on a project.
"""
import re
from collections import Counter, defaultdict
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, Optional

from bson import Decimal128, ObjectId

from panel.config import IDENTITY_FIELD, MAX_EXAMPLES, MAX_UNIQUE_VALUES
from panel.schema_models import FieldSchema, FieldType, FormType, Provenance, Schema
from panel.utils import utc_now

_TYPE_ALIASES: Dict[str, FieldType] = {
    "string": FieldType.STRING,
    "str": FieldType.STRING,
    "objectid": FieldType.STRING,
    "uuid": FieldType.STRING,
    "number": FieldType.NUMBER,
    "int": FieldType.NUMBER,
    "int32": FieldType.NUMBER,
    "int64": FieldType.NUMBER,
    "long": FieldType.NUMBER,
    "float": FieldType.NUMBER,
    "double": FieldType.NUMBER,
    "decimal": FieldType.NUMBER,
    "decimal128": FieldType.NUMBER,
    "boolean": FieldType.BOOLEAN,
    "bool": FieldType.BOOLEAN,
    "date": FieldType.DATE,
    "datetime": FieldType.DATE,
    "timestamp": FieldType.DATE,
    "array": FieldType.ARRAY,
    "list": FieldType.ARRAY,
    "primitive.a": FieldType.ARRAY,
    "object": FieldType.OBJECT,
    "dict": FieldType.OBJECT,
    "bson.m": FieldType.OBJECT,
    "primitive.m": FieldType.OBJECT,
    "null": FieldType.NULL,
    "nonetype": FieldType.NULL,
    "mixed": FieldType.MIXED,
}

_STRING_PATTERNS = [
    (re.compile(r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$'), "email"),
    (re.compile(r'^https?://'), "url"),
    (re.compile(r'^[\+]?[1-9][\d]{0,15}$'), "phone"),
    (re.compile(r'^\d{4}-\d{2}-\d{2}'), "date"),
]


# -----------------------
# Sampler side
# -----------------------

def value_type(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float, Decimal, Decimal128)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, ObjectId):
        return "ObjectID"
    if isinstance(value, (datetime, date)):
        return "date"
    if isinstance(value, (list, tuple)):
        return "array"
    if isinstance(value, dict):
        return "object"
    if isinstance(value, (bytes, bytearray)):
        return "binary"
    return type(value).__name__


def _example_text(value: Any) -> Optional[str]:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (str, int, float, bool, ObjectId, Decimal, Decimal128)):
        return str(value)
    return None


def _detect_pattern(value: str) -> Optional[str]:
    for regex, name in _STRING_PATTERNS:
        if regex.match(value):
            return name
    return None


def analyze_documents(documents: Iterable[dict], total_count: Optional[int] = None) -> Dict[str, Any]:
    """
    Compute per-field statistics over sampled documents, top-level fields only
    (embedded documents are reported as a single `object` field).

    Returns the same envelope the external db-access service answers with:
      {"schema": {field: {...}}, "sample_count": n, "total_fields": k, "total_count": N}

    `occurrences` counts documents holding a non-null value for the field, so
    occurrences == total_docs means every sampled document filled it in.
    """
    docs = list(documents or [])
    n = len(docs)

    type_counts: Dict[str, Counter] = defaultdict(Counter)
    present: Dict[str, int] = defaultdict(int)
    examples: Dict[str, list] = defaultdict(list)
    uniques: Dict[str, list] = defaultdict(list)
    lengths: Dict[str, list] = defaultdict(list)
    numbers: Dict[str, list] = defaultdict(list)
    patterns: Dict[str, Counter] = defaultdict(Counter)
    array_items: Dict[str, str] = {}

    for doc in docs:
        for field, value in (doc or {}).items():
            type_counts[field][value_type(value)] += 1
            if value is None:
                continue
            present[field] += 1

            text = _example_text(value)
            if text is not None:
                if len(examples[field]) < MAX_EXAMPLES and text not in examples[field]:
                    examples[field].append(text)
                if len(uniques[field]) < MAX_UNIQUE_VALUES and text not in uniques[field]:
                    uniques[field].append(text)

            if isinstance(value, str):
                lengths[field].append(len(value))
                pattern = _detect_pattern(value)
                if pattern:
                    patterns[field][pattern] += 1
            elif isinstance(value, (int, float)) and not isinstance(value, bool):
                numbers[field].append(float(value))
            elif isinstance(value, (list, tuple)) and value and field not in array_items:
                array_items[field] = value_type(value[0])

    schema: Dict[str, Any] = {}
    for field, counts in type_counts.items():
        non_null = {t: c for t, c in counts.items() if t != "null"}
        dominant = max(non_null.items(), key=lambda kv: kv[1])[0] if non_null else "null"

        stats: Dict[str, Any] = {"examples": examples[field]}
        if uniques[field]:
            stats["unique_values"] = uniques[field]
        if lengths[field]:
            stats["min_length"] = min(lengths[field])
            stats["max_length"] = max(lengths[field])
            stats["avg_length"] = sum(lengths[field]) / len(lengths[field])
        if numbers[field]:
            stats["min_value"] = min(numbers[field])
            stats["max_value"] = max(numbers[field])
            stats["avg_value"] = sum(numbers[field]) / len(numbers[field])
        if patterns[field]:
            stats["pattern"] = patterns[field].most_common(1)[0][0]
        if field in array_items:
            stats["array_items"] = array_items[field]

        schema[field] = {
            "type": dominant,
            "occurrences": present[field],
            "total_docs": n,
            "frequency": (present[field] / n) if n else 0.0,
            "all_types": dict(counts),
            "stats": stats,
        }

    return {
        "schema": schema,
        "sample_count": n,
        "total_fields": len(schema),
        "total_count": total_count if total_count is not None else n,
    }


# -----------------------
# Panel side
# -----------------------

def canonical_type(raw_type: Any) -> FieldType:
    if isinstance(raw_type, FieldType):
        return raw_type
    return _TYPE_ALIASES.get(str(raw_type or "").strip().lower(), FieldType.MIXED)


def dominant_type(type_counts: Dict[FieldType, int]) -> FieldType:
    """
    Most frequent observed type. `null` only wins when nothing else was seen;
    a tie between the top types means the values disagree -> mixed.
    """
    observed = {t: c for t, c in type_counts.items() if c > 0}
    if not observed:
        return FieldType.NULL
    non_null = {t: c for t, c in observed.items() if t != FieldType.NULL}
    if not non_null:
        return FieldType.NULL

    top = max(non_null.values())
    leaders = [t for t, c in non_null.items() if c == top]
    if len(leaders) > 1:
        return FieldType.MIXED
    return leaders[0]


def derive_form_type(name: str, field_type: FieldType) -> FormType:
    lowered = name.lower()
    if "email" in lowered:
        return FormType.EMAIL
    if "phone" in lowered or "tel" in lowered:
        return FormType.TEL
    if field_type == FieldType.NUMBER:
        return FormType.NUMBER
    if field_type == FieldType.BOOLEAN:
        return FormType.CHECKBOX
    if field_type == FieldType.DATE:
        return FormType.DATE
    if field_type == FieldType.ARRAY:
        return FormType.ARRAY
    return FormType.TEXT


def _pick(raw: dict, *keys, default=None):
    for key in keys:
        if key in raw and raw[key] is not None:
            return raw[key]
    return default


def _canonical_type_counts(raw: dict, occurrences: int) -> Dict[FieldType, int]:
    all_types = _pick(raw, "all_types", "allTypes")
    counts: Dict[FieldType, int] = defaultdict(int)
    if isinstance(all_types, dict) and all_types:
        for raw_type, count in all_types.items():
            counts[canonical_type(raw_type)] += int(count or 0)
    else:
        counts[canonical_type(raw.get("type"))] += max(occurrences, 1)
    return dict(counts)


def normalize(raw_stats: Optional[Dict[str, Any]], now: Optional[datetime] = None) -> Schema:
    """
    Convert the sampler's per-field statistics into FieldSchema records with
    provenance `database`.

    - required is a strict check: occurrences == total_docs. With `all_types`
      present, occurrences is the sum of the non-null type counts (the
      db-access service reports the dominant type's count instead).
    - the identity field is never emitted.
    - fields sampled from zero documents are skipped, so an empty collection
      yields an empty schema.
    """
    now = now or utc_now()
    schema: Schema = {}

    for name, raw in (raw_stats or {}).items():
        if not name or name == IDENTITY_FIELD:
            continue
        raw = raw or {}

        total_docs = int(_pick(raw, "total_docs", "totalDocs", default=0))
        if total_docs <= 0:
            continue
        occurrences = int(_pick(raw, "occurrences", default=0))

        counts = _canonical_type_counts(raw, occurrences)
        if _pick(raw, "all_types", "allTypes"):
            # presence counts every non-null observation, whatever its type
            occurrences = sum(c for t, c in counts.items() if t != FieldType.NULL)
        field_type = dominant_type(counts)
        alternate_types = {t.value: c for t, c in counts.items() if t != field_type}

        stats = dict(raw.get("stats") or {})
        examples = stats.pop("examples", None) or raw.get("examples") or []
        # the sampler's own guesses are superseded by the panel's rules
        for key in ("form_type", "is_required"):
            stats.pop(key, None)

        schema[name] = FieldSchema(
            name=name,
            type=field_type,
            occurrences=occurrences,
            total_docs=total_docs,
            required=occurrences == total_docs,
            form_type=derive_form_type(name, field_type),
            examples=list(examples)[:MAX_EXAMPLES],
            alternate_types=alternate_types,
            stats=stats,
            provenance=Provenance.DATABASE,
            last_analyzed_at=now,
            added_at=now,
        )

    return schema


def normalize_response(response: Optional[Dict[str, Any]], now: Optional[datetime] = None) -> Schema:
    """Accept the full sampler envelope ({"schema": ..., "sample_count": ...})."""
    response = response or {}
    if "sample_count" in response and int(response["sample_count"] or 0) <= 0:
        return {}
    return normalize(response.get("schema") or {}, now=now)
