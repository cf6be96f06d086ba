import pytest
from pymongo.errors import OperationFailure, ServerSelectionTimeoutError

import panel.field_sampler as field_sampler
from panel.errors import SamplingFailed
from panel.field_sampler import DocumentListSampler, MongoFieldSampler
from panel.schema_models import ConnectionTarget

TARGET = ConnectionTarget(mongo_uri="mongodb://localhost", database_name="crm", collection_name="customers")


def test_document_list_sampler_respects_sample_size():
    docs = [{"n": i} for i in range(10)]
    result = DocumentListSampler(docs, sample_size=4).sample(TARGET)
    assert result["sample_count"] == 4
    assert result["total_count"] == 10


def test_document_list_sampler_by_collection():
    sampler = DocumentListSampler({"customers": [{"a": 1}]})
    assert sampler.sample(TARGET)["schema"]["a"]["type"] == "number"
    with pytest.raises(SamplingFailed):
        sampler.sample(TARGET.model_copy(update={"collection_name": "orders"}))


class FakeCollection:
    def __init__(self, docs):
        self.docs = docs

    def count_documents(self, query):
        return len(self.docs)

    def find(self, query, limit=0):
        return iter(self.docs[:limit] if limit else self.docs)


class FakeDatabase:
    def __init__(self, collections):
        self.collections = collections

    def list_collection_names(self):
        return list(self.collections)

    def __getitem__(self, name):
        return FakeCollection(self.collections[name])


class FakeMongoClient:
    databases = {}
    error = None
    closed = 0

    def __init__(self, uri, serverSelectionTimeoutMS=None):
        self.uri = uri

    def list_database_names(self):
        if FakeMongoClient.error is not None:
            raise FakeMongoClient.error
        return list(self.databases)

    def __getitem__(self, name):
        return FakeDatabase(self.databases[name])

    def close(self):
        FakeMongoClient.closed += 1


@pytest.fixture
def fake_mongo(monkeypatch):
    FakeMongoClient.databases = {"crm": {"customers": [{"_id": 1, "name": "Ada"}, {"_id": 2}]}}
    FakeMongoClient.error = None
    FakeMongoClient.closed = 0
    monkeypatch.setattr(field_sampler, "MongoClient", FakeMongoClient)
    return FakeMongoClient


def test_mongo_sampler_analyzes_collection(fake_mongo):
    result = MongoFieldSampler(sample_size=10).sample(TARGET)
    assert result["total_count"] == 2
    assert result["schema"]["name"]["occurrences"] == 1
    assert fake_mongo.closed == 1


def test_mongo_sampler_missing_database_or_collection(fake_mongo):
    with pytest.raises(SamplingFailed, match="database was not found"):
        MongoFieldSampler().sample(TARGET.model_copy(update={"database_name": "nope"}))
    with pytest.raises(SamplingFailed, match="collection was not found"):
        MongoFieldSampler().sample(TARGET.model_copy(update={"collection_name": "nope"}))


def test_mongo_sampler_error_translation(fake_mongo):
    fake_mongo.error = OperationFailure("auth failed", code=18)
    with pytest.raises(SamplingFailed, match="authentication failed"):
        MongoFieldSampler().sample(TARGET)

    fake_mongo.error = ServerSelectionTimeoutError("no servers")
    with pytest.raises(SamplingFailed, match="Connection timeout"):
        MongoFieldSampler().sample(TARGET)
    assert fake_mongo.closed == 2
