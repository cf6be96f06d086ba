# panel/field_sampler.py
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional, Union

from pymongo import MongoClient
from pymongo.errors import OperationFailure, PyMongoError, ServerSelectionTimeoutError

from panel.config import SAMPLE_SIZE
from panel.errors import SamplingFailed
from panel.schema_models import ConnectionTarget
from panel.schema_normalizer import analyze_documents


class FieldSampler(ABC):
    """
    Inspects sample documents of one collection and answers with the
    per-field statistics envelope:
      {"schema": {field: {type, occurrences, total_docs, all_types, stats}}, "sample_count": n}
    Any failure is raised as SamplingFailed.
    """

    @abstractmethod
    def sample(self, target: ConnectionTarget) -> Dict[str, Any]:
        raise NotImplementedError


class DocumentListSampler(FieldSampler):
    """
    Samples fixed in-memory documents: either one list used for every target
    or a mapping collection_name -> documents.
    """

    def __init__(self, documents: Union[Iterable[dict], Dict[str, Iterable[dict]], None] = None, sample_size: int = SAMPLE_SIZE):
        if isinstance(documents, dict):
            self._by_collection: Optional[Dict[str, List[dict]]] = {k: list(v) for k, v in documents.items()}
            self._documents: List[dict] = []
        else:
            self._by_collection = None
            self._documents = list(documents or [])
        self.sample_size = sample_size
        self.calls: List[ConnectionTarget] = []

    def sample(self, target: ConnectionTarget) -> Dict[str, Any]:
        self.calls.append(target)
        if self._by_collection is not None:
            if target.collection_name not in self._by_collection:
                raise SamplingFailed(f"The specified collection was not found: {target.collection_name}")
            docs = self._by_collection[target.collection_name]
        else:
            docs = self._documents
        return analyze_documents(docs[: self.sample_size], total_count=len(docs))


class MongoFieldSampler(FieldSampler):
    """Samples a live MongoDB collection with pymongo."""

    def __init__(self, sample_size: int = SAMPLE_SIZE, timeout_ms: int = 15000):
        self.sample_size = sample_size
        self.timeout_ms = timeout_ms

    def sample(self, target: ConnectionTarget) -> Dict[str, Any]:
        client = None
        try:
            client = MongoClient(target.mongo_uri, serverSelectionTimeoutMS=self.timeout_ms)
            if target.database_name not in client.list_database_names():
                raise SamplingFailed(
                    f"The specified database was not found: {target.database_name}"
                )
            db = client[target.database_name]
            if target.collection_name not in db.list_collection_names():
                raise SamplingFailed(
                    f"The specified collection was not found: {target.collection_name}"
                )
            collection = db[target.collection_name]
            total = collection.count_documents({})
            docs = list(collection.find({}, limit=self.sample_size))
            return analyze_documents(docs, total_count=total)
        except SamplingFailed:
            raise
        except OperationFailure as e:
            raise SamplingFailed(
                "MongoDB authentication failed. Please check your username and password in the connection URL"
                if e.code in (13, 18) else f"MongoDB error: {e}"
            ) from e
        except ServerSelectionTimeoutError as e:
            raise SamplingFailed(
                "Connection timeout. Please check your network connection and MongoDB availability"
            ) from e
        except PyMongoError as e:
            raise SamplingFailed(f"Cannot connect to MongoDB: {e}") from e
        finally:
            if client is not None:
                client.close()
