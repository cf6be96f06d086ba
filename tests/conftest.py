from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

from panel.db_connection import DbConnection
from panel.field_sampler import DocumentListSampler
from panel.panel_backend import PanelBackend
from panel.project_locks import ProjectLockRegistry
from panel.schema_models import FieldSchema, FieldType, FormType, Provenance

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

DEVELOPER = "dev-1"
OTHER_DEVELOPER = "dev-2"

CUSTOMERS = [
    {"_id": "a1", "name": "Ada", "email": "ada@example.com", "age": 36},
    {"_id": "a2", "name": "Grace", "email": "grace@example.com", "age": 45},
    {"_id": "a3", "name": "Linus", "email": "linus@example.com"},
]


class FakeDocumentStore:
    """Stands in for the db-access service; records every call."""

    def __init__(self):
        self.calls = []
        self.documents = {}
        self._next = 1

    def insert_data(self, target, document):
        self.calls.append(("insert", target, document))
        document_id = f"doc-{self._next}"
        self._next += 1
        self.documents[document_id] = dict(document)
        return {"code": 0, "message": "Data inserted successfully", "document_id": document_id}

    def retrieve_data(self, target, query=None, limit=None, skip=None):
        self.calls.append(("retrieve", target, limit, skip))
        docs = [{"_id": k, **v} for k, v in self.documents.items()]
        return {"code": 0, "data": docs, "count": len(docs)}

    def update_data(self, target, document_id, changes):
        self.calls.append(("update", target, document_id, changes))
        self.documents.setdefault(document_id, {}).update(changes)
        return {"code": 0, "message": "Data updated successfully", "document_id": document_id}

    def delete_data(self, target, document_id):
        self.calls.append(("delete", target, document_id))
        self.documents.pop(document_id, None)
        return {"code": 0, "message": "Data deleted successfully", "document_id": document_id}


def make_field(name, type=FieldType.STRING, provenance=Provenance.DATABASE, required=False, **extra):
    return FieldSchema(
        name=name,
        type=type,
        occurrences=extra.pop("occurrences", 10),
        total_docs=extra.pop("total_docs", 10),
        required=required,
        form_type=extra.pop("form_type", FormType.TEXT),
        provenance=provenance,
        added_at=extra.pop("added_at", NOW),
        last_analyzed_at=extra.pop("last_analyzed_at", NOW),
        **extra,
    )


@pytest.fixture
def session_factory():
    db = DbConnection("sqlite://")
    db.create_tables()
    return db.build_db_session_factory()


@pytest.fixture
def sampler():
    return DocumentListSampler(CUSTOMERS)


@pytest.fixture
def store():
    return FakeDocumentStore()


@pytest.fixture
def backend(session_factory, sampler, store):
    return PanelBackend(session_factory, sampler=sampler, document_store=store, locks=ProjectLockRegistry())


@pytest.fixture
def project(backend):
    return backend.create_project(
        DEVELOPER,
        name="Customers",
        description="CRM leads",
        mongo_uri="mongodb://user:p@ss@localhost:27017",
        database_name="crm",
        collection_name="customers",
    )


@pytest.fixture
def client(backend):
    from server import app

    app.state.backend = backend
    with TestClient(app) as c:
        yield c
    app.state.backend = None
