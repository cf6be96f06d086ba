# panel/schema_models.py
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, TypeAlias, Union

from pydantic import BaseModel, Field


class FieldType(str, Enum):
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    DATE = "date"
    ARRAY = "array"
    OBJECT = "object"
    NULL = "null"
    MIXED = "mixed"


class FormType(str, Enum):
    TEXT = "text"
    EMAIL = "email"
    TEL = "tel"
    NUMBER = "number"
    DATE = "date"
    CHECKBOX = "checkbox"
    ARRAY = "array"


class Provenance(str, Enum):
    DATABASE = "database"
    MANUAL = "manual"


class Operation(str, Enum):
    VIEW = "view"
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"
    MODIFY_SCHEMA = "modify_schema"


class LinkStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    REVOKED = "revoked"


class FieldSchema(BaseModel):
    """
    One inferred (provenance=database) or declared (provenance=manual) field.
    """
    name: str
    type: FieldType = FieldType.STRING
    occurrences: int = 0
    total_docs: int = 0
    required: bool = False
    form_type: FormType = FormType.TEXT
    examples: List[Any] = Field(default_factory=list)
    alternate_types: Dict[str, int] = Field(default_factory=dict)
    stats: Dict[str, Any] = Field(default_factory=dict)
    provenance: Provenance = Provenance.DATABASE
    last_analyzed_at: Optional[datetime] = None
    added_at: Optional[datetime] = None

    @property
    def frequency(self) -> float:
        if self.total_docs <= 0:
            return 0.0
        return self.occurrences / self.total_docs


Schema: TypeAlias = Dict[str, FieldSchema]


class ConnectionTarget(BaseModel):
    mongo_uri: str
    database_name: str
    collection_name: str


class PermissionSet(BaseModel):
    can_view: bool = True
    can_insert: bool = True
    can_update: bool = False
    can_delete: bool = False
    can_modify_schema: bool = False

    def allows(self, operation: Operation) -> bool:
        return {
            Operation.VIEW: self.can_view,
            Operation.INSERT: self.can_insert,
            Operation.UPDATE: self.can_update,
            Operation.DELETE: self.can_delete,
            Operation.MODIFY_SCHEMA: self.can_modify_schema,
        }[Operation(operation)]


class AuthDecision(BaseModel):
    allowed: bool
    reason: Optional[str] = None

    @classmethod
    def allow(cls) -> "AuthDecision":
        return cls(allowed=True)

    @classmethod
    def deny(cls, reason: str) -> "AuthDecision":
        return cls(allowed=False, reason=reason)


class FormFieldDescriptor(BaseModel):
    name: str
    label: str
    widget: FormType
    field_type: FieldType
    required: bool
    placeholder: Optional[str] = None


class MergeStats(BaseModel):
    preserved_manual: int = 0
    updated_or_added: int = 0
    # database fields the latest sampling pass no longer saw, kept as they were
    retained_unobserved: int = 0


class AddField(BaseModel):
    action: Literal["add_field"] = "add_field"
    name: str
    type: FieldType = FieldType.STRING
    required: bool = False


class RemoveField(BaseModel):
    action: Literal["remove_field"] = "remove_field"
    name: str


SchemaEdit = Annotated[Union[AddField, RemoveField], Field(discriminator="action")]
