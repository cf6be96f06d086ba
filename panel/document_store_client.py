# panel/document_store_client.py
import logging
import re
from typing import Any, Dict, Optional
from urllib.parse import quote

import requests

from panel import config
from panel.errors import DocumentStoreError, SamplingFailed
from panel.field_sampler import FieldSampler
from panel.schema_models import ConnectionTarget

logger = logging.getLogger("panel_backend")


def encode_mongo_uri(uri: str) -> str:
    """
    Percent-encode the password part of a Mongo URI. Passwords may contain '@'
    so the credentials end at the LAST '@'.
    """
    match = re.match(r'^(mongodb(?:\+srv)?://)', uri or "")
    if not match:
        return uri
    protocol = match.group(1)
    remaining = uri[len(protocol):]

    at = remaining.rfind("@")
    if at == -1:
        return uri
    credentials, host_and_params = remaining[:at], remaining[at + 1:]

    colon = credentials.find(":")
    if colon == -1:
        return uri
    username, password = credentials[:colon], credentials[colon + 1:]
    return f"{protocol}{username}:{quote(password, safe='')}@{host_and_params}"


def friendly_error(error_msg: str, default: str) -> str:
    msg = (error_msg or "").lower()
    if not msg:
        return default
    if "auth error" in msg or "authentication failed" in msg or "bad auth" in msg:
        return "MongoDB authentication failed. Please check your username and password in the connection URL"
    if "timeout" in msg or "timed out" in msg:
        return "Connection timeout. Please check your network connection and MongoDB availability"
    if "connection" in msg or "connect" in msg:
        return "Cannot connect to MongoDB. Please verify your connection URL and network access"
    if "database" in msg and "not found" in msg:
        return "The specified database was not found. Please check the database name"
    if "collection" in msg and "not found" in msg:
        return "The specified collection was not found. Please check the collection name"
    return error_msg


class DocumentStoreClient(FieldSampler):
    """
    HTTP client for the external db-access service, which owns every call
    that touches the target document store.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        sampler_timeout: Optional[float] = None,
        mutation_timeout: Optional[float] = None,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = (base_url or config.DB_ACCESS_SERVICE_URL).rstrip("/")
        self.sampler_timeout = sampler_timeout or config.SAMPLER_TIMEOUT
        self.mutation_timeout = mutation_timeout or config.MUTATION_TIMEOUT
        self.session = session or requests.Session()

    def _target_body(self, target: ConnectionTarget) -> Dict[str, Any]:
        return {
            "mongo_uri": encode_mongo_uri(target.mongo_uri),
            "database_name": target.database_name,
            "collection_name": target.collection_name,
        }

    def _post(self, path: str, body: Dict[str, Any], timeout: float, error_cls, default_message: str) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            response = self.session.post(url, json=body, timeout=timeout)
        except requests.RequestException as e:
            logger.warning("db-access request failed url=%s: %s", url, e)
            raise error_cls(friendly_error(str(e), default_message)) from e

        try:
            data = response.json()
        except ValueError:
            data = {}

        if response.status_code != 200:
            upstream = data.get("error") or data.get("message") or response.text
            logger.warning("db-access error url=%s status=%s: %s", url, response.status_code, upstream)
            raise error_cls(friendly_error(str(upstream or ""), default_message))
        if not isinstance(data, dict):
            raise error_cls(default_message)
        return data

    # -----------------------
    # Sampling
    # -----------------------

    def test_connection(self, mongo_uri: str, database_name: str) -> bool:
        try:
            response = self.session.post(
                f"{self.base_url}/allocate",
                json={"mongo_uri": mongo_uri, "database_name": database_name},
                timeout=15,
            )
            return response.status_code == 200 and response.json().get("code") == 0
        except (requests.RequestException, ValueError) as e:
            logger.info("MongoDB connection test failed: %s", e)
            return False

    def sample(self, target: ConnectionTarget) -> Dict[str, Any]:
        logger.info(
            "Schema analysis request db=%s collection=%s",
            target.database_name, target.collection_name,
        )
        data = self._post(
            "/method3/schema-analysis",
            self._target_body(target),
            self.sampler_timeout,
            SamplingFailed,
            "Schema analysis failed",
        )
        code = data.get("code", 0)
        if code not in (0, None):
            raise SamplingFailed(friendly_error(str(data.get("message") or ""), "Schema analysis failed"))
        return data

    # -----------------------
    # Data operations
    # -----------------------

    def insert_data(self, target: ConnectionTarget, document: Dict[str, Any]) -> Dict[str, Any]:
        body = self._target_body(target)
        body["data"] = document
        return self._post("/method3/data-insert", body, self.mutation_timeout, DocumentStoreError, "Data insertion failed")

    def retrieve_data(self, target: ConnectionTarget, query: Optional[Dict[str, Any]] = None, limit: Optional[int] = None, skip: Optional[int] = None) -> Dict[str, Any]:
        body = self._target_body(target)
        if query:
            body["query"] = query
        if limit is not None:
            body["limit"] = limit
        if skip is not None:
            body["skip"] = skip
        return self._post("/method3/data-get", body, self.mutation_timeout, DocumentStoreError, "Data retrieval failed")

    def update_data(self, target: ConnectionTarget, document_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        body = self._target_body(target)
        body["document_id"] = document_id
        body["data"] = changes
        return self._post("/method3/data-update", body, self.mutation_timeout, DocumentStoreError, "Data update failed")

    def delete_data(self, target: ConnectionTarget, document_id: str) -> Dict[str, Any]:
        body = self._target_body(target)
        body["document_id"] = document_id
        return self._post("/method3/data-delete", body, self.mutation_timeout, DocumentStoreError, "Data deletion failed")
