# panel/schema_merge.py
"""
Reconcile a stored schema with a fresh sampling pass.

Policy:
  - manual fields are never dropped or overwritten by a refresh;
  - fields the sampler no longer observes are kept as they were;
  - every freshly observed field is (re)written with provenance `database`,
    unless a manual field of the same name exists, in which case manual wins.
"""
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from panel.config import IDENTITY_FIELD, MAX_EXAMPLES
from panel.schema_models import FieldSchema, FormType, MergeStats, Provenance, Schema
from panel.schema_normalizer import canonical_type, derive_form_type
from panel.utils import load_json_blob, utc_now


def merge(old: Optional[Schema], fresh: Optional[Schema], now: Optional[datetime] = None) -> Tuple[Schema, MergeStats]:
    old = old or {}
    fresh = fresh or {}
    now = now or utc_now()

    merged: Schema = {}
    stats = MergeStats()

    for name, field in old.items():
        if field.provenance == Provenance.MANUAL:
            merged[name] = field.model_copy(deep=True)
            stats.preserved_manual += 1
        elif name not in fresh:
            merged[name] = field.model_copy(deep=True)
            stats.retained_unobserved += 1

    for name, field in fresh.items():
        if name == IDENTITY_FIELD:
            continue
        previous = old.get(name)
        if previous is not None and previous.provenance == Provenance.MANUAL:
            continue

        if previous is not None and previous.added_at is not None:
            added_at = previous.added_at
        else:
            added_at = field.added_at or now

        merged[name] = field.model_copy(
            update={
                "name": name,
                "provenance": Provenance.DATABASE,
                "last_analyzed_at": now,
                "added_at": added_at,
            },
            deep=True,
        )
        stats.updated_or_added += 1

    return dict(sorted(merged.items())), stats


# -----------------------
# Persistence helpers
# -----------------------

def _pick(raw: dict, *keys, default=None):
    for key in keys:
        if key in raw and raw[key] is not None:
            return raw[key]
    return default


def _legacy_provenance(entry: dict) -> Provenance:
    value = _pick(entry, "provenance", "source")
    if value == Provenance.MANUAL.value or entry.get("addedViaSharedLink"):
        return Provenance.MANUAL
    return Provenance.DATABASE


def _coerce_field(name: str, entry: Any) -> FieldSchema:
    if isinstance(entry, FieldSchema):
        return entry.model_copy(update={"name": name}, deep=True)
    if not isinstance(entry, dict):
        raise ValueError(f"Schema entry for '{name}' must be an object, got {type(entry).__name__}")

    stats = dict(entry.get("stats") or {})
    field_type = canonical_type(entry.get("type"))
    occurrences = int(_pick(entry, "occurrences", default=0))
    total_docs = int(_pick(entry, "total_docs", "totalDocs", default=0))

    required = _pick(entry, "required")
    if required is None:
        required = _pick(stats, "is_required")
    if required is None:
        required = total_docs > 0 and occurrences == total_docs

    raw_form_type = _pick(entry, "form_type", "formType") or stats.get("form_type")
    try:
        form_type = FormType(raw_form_type)
    except ValueError:
        # sampler-only hints like url/textarea have no widget of their own
        form_type = derive_form_type(name, field_type)

    alternate_types = _pick(entry, "alternate_types")
    if alternate_types is None:
        all_types = _pick(entry, "all_types", "allTypes", default={})
        alternate_types = {}
        for raw_type, count in all_types.items():
            canonical = canonical_type(raw_type)
            if canonical != field_type:
                alternate_types[canonical.value] = alternate_types.get(canonical.value, 0) + int(count or 0)

    examples = _pick(entry, "examples") or stats.get("examples") or []
    for key in ("examples", "form_type", "is_required"):
        stats.pop(key, None)

    return FieldSchema(
        name=name,
        type=field_type,
        occurrences=occurrences,
        total_docs=total_docs,
        required=bool(required),
        form_type=form_type,
        examples=list(examples)[:MAX_EXAMPLES],
        alternate_types=alternate_types,
        stats=stats,
        provenance=_legacy_provenance(entry),
        last_analyzed_at=_pick(entry, "last_analyzed_at", "lastAnalyzed", "analyzedAt"),
        added_at=_pick(entry, "added_at", "addedAt"),
    )


def coerce_schema(blob: Any) -> Schema:
    """
    Load a persisted schema blob into FieldSchema records.

    Accepts dicts, JSON text and rows written by earlier versions of the
    panel (`source: "manual"`, `addedViaSharedLink`, sampler-shaped entries).
    """
    data = load_json_blob(blob)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError("A schema blob must be a JSON object")

    schema: Schema = {}
    for name, entry in data.items():
        if name == IDENTITY_FIELD:
            continue
        schema[name] = _coerce_field(name, entry)
    return schema


def dump_schema(schema: Optional[Schema]) -> Dict[str, Any]:
    return {name: field.model_dump(mode="json") for name, field in sorted((schema or {}).items())}
