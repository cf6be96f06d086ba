# panel/share_projector.py
from datetime import datetime
from typing import Any, List, Optional

from panel.config import IDENTITY_FIELD
from panel.errors import DuplicateField, FieldNotFound, LinkExpired, LinkRevoked, PermissionDenied, ProtectedField
from panel.schema_models import (
    AddField,
    AuthDecision,
    FieldSchema,
    FormFieldDescriptor,
    LinkStatus,
    Operation,
    PermissionSet,
    Provenance,
    RemoveField,
    Schema,
)
from panel.schema_normalizer import derive_form_type
from panel.utils import as_utc, humanize_field_name, utc_now

PLACEHOLDER_EXAMPLES = 3


# -----------------------
# Link state
# -----------------------

def link_status(link: Any, now: Optional[datetime] = None) -> LinkStatus:
    """
    Derived from `is_active` and `expires_at`. Expiry is checked first: a link
    past its expiry is expired whatever its active flag says.
    """
    now = as_utc(now) or utc_now()
    expires_at = as_utc(getattr(link, "expires_at", None))
    if expires_at is not None and expires_at <= now:
        return LinkStatus.EXPIRED
    if not getattr(link, "is_active", False):
        return LinkStatus.REVOKED
    return LinkStatus.ACTIVE


def check_link(link: Any, now: Optional[datetime] = None) -> LinkStatus:
    status = link_status(link, now)
    if status == LinkStatus.EXPIRED:
        raise LinkExpired("link expired")
    if status == LinkStatus.REVOKED:
        raise LinkRevoked("link revoked")
    return status


# -----------------------
# Authorization
# -----------------------

def authorize(permissions: PermissionSet, operation: Operation, status: LinkStatus = LinkStatus.ACTIVE) -> AuthDecision:
    """
    All-or-nothing per operation across the whole collection. An inactive link
    is denied before any permission flag is looked at.
    """
    if status == LinkStatus.EXPIRED:
        return AuthDecision.deny("link_expired")
    if status == LinkStatus.REVOKED:
        return AuthDecision.deny("link_revoked")

    operation = Operation(operation)
    if permissions.allows(operation):
        return AuthDecision.allow()
    return AuthDecision.deny(f"missing_permission:{operation.value}")


def require(permissions: PermissionSet, operation: Operation, status: LinkStatus = LinkStatus.ACTIVE) -> None:
    decision = authorize(permissions, operation, status)
    if decision.allowed:
        return
    if decision.reason == "link_expired":
        raise LinkExpired(decision.reason)
    if decision.reason == "link_revoked":
        raise LinkRevoked(decision.reason)
    raise PermissionDenied(f"This link does not allow the '{Operation(operation).value}' operation")


# -----------------------
# Schema projection
# -----------------------

def effective_schema(project_schema: Optional[Schema], custom_schema: Optional[Schema]) -> Schema:
    if custom_schema is not None:
        return custom_schema
    return project_schema or {}


def _placeholder(field: FieldSchema) -> Optional[str]:
    examples = [str(e) for e in field.examples[:PLACEHOLDER_EXAMPLES] if e is not None and str(e) != ""]
    if not examples:
        return None
    return "e.g. " + ", ".join(examples)


def describe_field(field: FieldSchema) -> FormFieldDescriptor:
    return FormFieldDescriptor(
        name=field.name,
        label=humanize_field_name(field.name),
        widget=field.form_type,
        field_type=field.type,
        required=field.required,
        placeholder=_placeholder(field),
    )


def render_form_fields(schema: Optional[Schema], permissions: PermissionSet, purpose: Operation = Operation.INSERT) -> List[FormFieldDescriptor]:
    """
    Form descriptors for the client data-entry UI, required fields first and
    then by name. The identity field is never offered.
    """
    purpose = Operation(purpose)
    if not permissions.allows(purpose):
        raise PermissionDenied(f"This link does not allow the '{purpose.value}' form")

    fields = [f for name, f in (schema or {}).items() if name != IDENTITY_FIELD]
    fields.sort(key=lambda f: (not f.required, f.name))
    return [describe_field(f) for f in fields]


# -----------------------
# Schema edits
# -----------------------

def apply_schema_edit(schema: Optional[Schema], edit, now: Optional[datetime] = None) -> Schema:
    """
    Returns a new schema; the input is left untouched.

    Removal is provenance-blind: unlike a refresh, an explicit remove deletes
    database-observed fields as readily as manual ones.
    """
    updated: Schema = {name: f.model_copy(deep=True) for name, f in (schema or {}).items()}

    if isinstance(edit, AddField):
        name = edit.name
        if not name or not name.strip():
            raise ValueError("add_field requires a non-empty field name")
        if name == IDENTITY_FIELD or name in updated:
            raise DuplicateField(f"Field already exists: {name}")
        updated[name] = FieldSchema(
            name=name,
            type=edit.type,
            required=edit.required,
            form_type=derive_form_type(name, edit.type),
            provenance=Provenance.MANUAL,
            added_at=now or utc_now(),
        )
        return dict(sorted(updated.items()))

    if isinstance(edit, RemoveField):
        if edit.name == IDENTITY_FIELD:
            raise ProtectedField(f"The identity field '{IDENTITY_FIELD}' cannot be removed")
        if edit.name not in updated:
            raise FieldNotFound(f"Field not found: {edit.name}")
        del updated[edit.name]
        return updated

    raise ValueError(f"Unsupported schema edit: {edit!r}")
