import logging
import os
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from fastapi import Body, Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from panel import config
from panel.db_connection import DbConnection
from panel.document_store_client import DocumentStoreClient
from panel.errors import (
    AccessDenied,
    ConflictOrIOError,
    DocumentStoreError,
    DuplicateField,
    FieldNotFound,
    NotFound,
    PermissionDenied,
    ProtectedField,
    SamplingFailed,
)
from panel.panel_backend import PanelBackend
from panel.schema_models import Operation, PermissionSet

logger = logging.getLogger("panel_backend")

app = FastAPI()

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("CORS_ORIGINS", "*").split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class CreateProjectRequest(BaseModel):
    name: str
    description: Optional[str] = None
    mongo_uri: str
    database_name: str
    collection_name: str


class CreateSharedLinkRequest(BaseModel):
    permissions: Optional[PermissionSet] = None
    expires_at: Optional[datetime] = None
    expires_in_days: Optional[float] = None
    custom_schema: Optional[Dict[str, Any]] = None


class UpdateSharedLinkRequest(BaseModel):
    is_active: Optional[bool] = None
    expires_at: Optional[datetime] = None
    permissions: Optional[Dict[str, bool]] = None


class DataRequest(BaseModel):
    data: Dict[str, Any]


def build_backend() -> PanelBackend:
    db = DbConnection()
    db.create_tables()
    store = DocumentStoreClient()
    return PanelBackend(db.build_db_session_factory(), sampler=store, document_store=store)


def get_backend(request: Request) -> PanelBackend:
    backend = getattr(request.app.state, "backend", None)
    if backend is None:
        backend = build_backend()
        request.app.state.backend = backend
    return backend


def get_developer_id(x_developer_id: Optional[str] = Header(None)) -> str:
    if not x_developer_id or not x_developer_id.strip():
        raise HTTPException(status_code=401, detail="Missing developer identity")
    return x_developer_id.strip()


# -----------------------
# Error translation
# -----------------------

def _error(status_code: int, error: str, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": error, "message": message})


@app.exception_handler(AccessDenied)
async def access_denied_handler(request: Request, exc: AccessDenied):
    # expired, revoked and unknown links all answer the same
    return _error(403, "Invalid or expired link", AccessDenied.public_message)


@app.exception_handler(PermissionDenied)
async def permission_denied_handler(request: Request, exc: PermissionDenied):
    return _error(403, "Access denied", str(exc))


@app.exception_handler(NotFound)
async def not_found_handler(request: Request, exc: NotFound):
    return _error(404, "Not found", str(exc))


@app.exception_handler(FieldNotFound)
async def field_not_found_handler(request: Request, exc: FieldNotFound):
    return _error(404, "Field not found", str(exc))


@app.exception_handler(DuplicateField)
async def duplicate_field_handler(request: Request, exc: DuplicateField):
    return _error(400, "Duplicate field", str(exc))


@app.exception_handler(ProtectedField)
async def protected_field_handler(request: Request, exc: ProtectedField):
    return _error(400, "Protected field", str(exc))


@app.exception_handler(ConflictOrIOError)
async def conflict_handler(request: Request, exc: ConflictOrIOError):
    return _error(409, "Conflict", str(exc))


@app.exception_handler(SamplingFailed)
async def sampling_failed_handler(request: Request, exc: SamplingFailed):
    return _error(502, "Schema analysis failed", str(exc))


@app.exception_handler(DocumentStoreError)
async def document_store_handler(request: Request, exc: DocumentStoreError):
    return _error(502, "Database operation failed", str(exc))


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    return _error(400, "Invalid request", str(exc))


# -----------------------
# Developer routes
# -----------------------

@app.post("/api/projects", status_code=201)
def create_project(
    body: CreateProjectRequest,
    developer_id: str = Depends(get_developer_id),
    backend: PanelBackend = Depends(get_backend),
):
    project = backend.create_project(
        developer_id,
        name=body.name,
        description=body.description,
        mongo_uri=body.mongo_uri,
        database_name=body.database_name,
        collection_name=body.collection_name,
    )
    return {"success": True, "data": project, "message": "Project created successfully"}


@app.get("/api/projects")
def list_projects(developer_id: str = Depends(get_developer_id), backend: PanelBackend = Depends(get_backend)):
    return {"success": True, "data": backend.list_projects(developer_id)}


@app.get("/api/projects/{project_id}")
def get_project(project_id: str, developer_id: str = Depends(get_developer_id), backend: PanelBackend = Depends(get_backend)):
    return {"success": True, "data": backend.get_project(developer_id, project_id)}


@app.delete("/api/projects/{project_id}")
def delete_project(project_id: str, developer_id: str = Depends(get_developer_id), backend: PanelBackend = Depends(get_backend)):
    backend.delete_project(developer_id, project_id)
    return {"success": True, "message": "Project deleted successfully"}


@app.post("/api/projects/{project_id}/refresh-schema")
def refresh_schema(project_id: str, developer_id: str = Depends(get_developer_id), backend: PanelBackend = Depends(get_backend)):
    result = backend.refresh_schema(developer_id, project_id)
    return {"success": True, "data": result, "message": "Schema refreshed successfully"}


@app.post("/api/projects/{project_id}/share", status_code=201)
def create_shared_link(
    project_id: str,
    body: Optional[CreateSharedLinkRequest] = None,
    developer_id: str = Depends(get_developer_id),
    backend: PanelBackend = Depends(get_backend),
):
    body = body or CreateSharedLinkRequest()
    link = backend.create_shared_link(
        developer_id,
        project_id,
        permissions=body.permissions,
        expires_at=body.expires_at,
        expires_in_days=body.expires_in_days,
        custom_schema=body.custom_schema,
    )
    return {"success": True, "data": link, "message": "Shared link created successfully"}


@app.get("/api/projects/{project_id}/share")
def list_shared_links(project_id: str, developer_id: str = Depends(get_developer_id), backend: PanelBackend = Depends(get_backend)):
    return {"success": True, "data": backend.list_shared_links(developer_id, project_id)}


@app.get("/api/projects/{project_id}/entries")
def list_client_entries(project_id: str, developer_id: str = Depends(get_developer_id), backend: PanelBackend = Depends(get_backend)):
    return {"success": True, "data": backend.list_client_entries(developer_id, project_id)}


@app.put("/api/shared-links/{token}")
def update_shared_link(
    token: str,
    body: UpdateSharedLinkRequest,
    developer_id: str = Depends(get_developer_id),
    backend: PanelBackend = Depends(get_backend),
):
    link = backend.update_shared_link(developer_id, token, body.model_dump(exclude_unset=True))
    return {"success": True, "data": link, "message": "Shared link updated successfully"}


@app.delete("/api/shared-links/{token}")
def delete_shared_link(token: str, developer_id: str = Depends(get_developer_id), backend: PanelBackend = Depends(get_backend)):
    backend.delete_shared_link(developer_id, token)
    return {"success": True, "message": "Shared link deleted successfully"}


# -----------------------
# Client routes (share token is the only credential)
# -----------------------

@app.get("/shared/{token}")
def get_shared_project(token: str, backend: PanelBackend = Depends(get_backend)):
    return {"success": True, "data": backend.get_shared_project(token)}


@app.get("/shared/{token}/form")
def get_form_fields(token: str, purpose: Operation = Operation.INSERT, backend: PanelBackend = Depends(get_backend)):
    return {"success": True, "data": backend.get_form_fields(token, purpose)}


@app.get("/shared/{token}/schema")
def get_link_schema(token: str, backend: PanelBackend = Depends(get_backend)):
    return {"success": True, "data": backend.get_link_schema(token)}


@app.post("/shared/{token}/schema")
def modify_link_schema(
    token: str,
    edits: Union[List[Dict[str, Any]], Dict[str, Any]] = Body(...),
    backend: PanelBackend = Depends(get_backend),
):
    result = backend.modify_link_schema(token, edits)
    return {"success": True, "data": result, "message": "Schema updated successfully"}


@app.get("/shared/{token}/data")
def list_data(token: str, limit: Optional[int] = None, skip: Optional[int] = None, backend: PanelBackend = Depends(get_backend)):
    return {"success": True, "data": backend.list_data(token, limit=limit, skip=skip)}


@app.post("/shared/{token}/data", status_code=201)
def insert_data(token: str, body: DataRequest, backend: PanelBackend = Depends(get_backend)):
    result = backend.insert_data(token, body.data)
    return {"success": True, "data": result, "message": "Data inserted successfully"}


@app.put("/shared/{token}/data/{document_id}")
def update_data(token: str, document_id: str, body: DataRequest, backend: PanelBackend = Depends(get_backend)):
    result = backend.update_data(token, document_id, body.data)
    return {"success": True, "data": result, "message": "Data updated successfully"}


@app.delete("/shared/{token}/data/{document_id}")
def delete_data(token: str, document_id: str, backend: PanelBackend = Depends(get_backend)):
    result = backend.delete_data(token, document_id)
    return {"success": True, "data": result, "message": "Data deleted successfully"}


if __name__ == "__main__":
    import uvicorn
    logger.info(f"Starting panel server, db-access service at {config.DB_ACCESS_SERVICE_URL}")
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
