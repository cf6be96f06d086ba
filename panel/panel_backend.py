# panel/panel_backend.py

import logging
import secrets
import string
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Dict, Iterator, List, Optional

from pydantic import TypeAdapter
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from panel.config import IDENTITY_FIELD, SHARE_TOKEN_LENGTH, SHARE_TOKEN_PREFIX
from panel.entities import ClientEntry, Developer, Project, SharedLink
from panel.errors import (
    AccessDenied,
    ConflictOrIOError,
    DocumentStoreError,
    LinkNotFound,
    NotFound,
    PermissionDenied,
    SamplingFailed,
)
from panel.field_sampler import FieldSampler
from panel.project_locks import PROJECT_LOCKS, ProjectLockRegistry
from panel.schema_merge import coerce_schema, dump_schema, merge
from panel.schema_models import ConnectionTarget, Operation, PermissionSet, Schema, SchemaEdit
from panel.schema_normalizer import normalize_response
from panel.share_projector import (
    apply_schema_edit,
    check_link,
    effective_schema,
    link_status,
    render_form_fields,
    require,
)
from panel.utils import as_utc, utc_now

logger = logging.getLogger("panel_backend")

_TOKEN_ALPHABET = string.ascii_letters + string.digits
_SCHEMA_EDITS = TypeAdapter(List[SchemaEdit])
_LINK_FIELDS = ("is_active", "expires_at", "permissions")


def generate_share_token() -> str:
    return SHARE_TOKEN_PREFIX + "".join(secrets.choice(_TOKEN_ALPHABET) for _ in range(SHARE_TOKEN_LENGTH))


def _iso(value: Optional[datetime]) -> Optional[str]:
    value = as_utc(value)
    return value.isoformat() if value is not None else None


def _permissions_of(link: SharedLink) -> PermissionSet:
    return PermissionSet(
        can_view=link.can_view,
        can_insert=link.can_insert,
        can_update=link.can_update,
        can_delete=link.can_delete,
        can_modify_schema=link.can_modify_schema,
    )


def _target_of(project: Project) -> ConnectionTarget:
    return ConnectionTarget(
        mongo_uri=project.mongo_uri,
        database_name=project.database_name,
        collection_name=project.collection_name,
    )


class PanelBackend:
    """
    Orchestrates the metadata store, the field sampler and the document store.

    Developer-facing methods take the caller's developer id and only touch
    that developer's projects and links. Client-facing methods take a share
    token; every one of them checks the link state before anything else.
    """

    def __init__(
        self,
        session_factory,
        sampler: FieldSampler,
        document_store=None,
        locks: ProjectLockRegistry = PROJECT_LOCKS,
    ):
        self.SessionFactory = session_factory
        self.sampler = sampler
        self.document_store = document_store
        self.locks = locks

    # -----------------------
    # Serialization
    # -----------------------

    def _project_dict(self, project: Project, with_schema: bool = True) -> dict:
        data = {
            "id": project.project_id,
            "developer_id": project.developer_id,
            "name": project.name,
            "description": project.description,
            "database_name": project.database_name,
            "collection_name": project.collection_name,
            "schema_version": project.schema_version,
            "is_active": project.is_active,
            "created_at": _iso(project.created_at),
            "updated_at": _iso(project.updated_at),
        }
        if with_schema:
            data["schema"] = dump_schema(coerce_schema(project.schema_data))
        return data

    def _link_dict(self, link: SharedLink, now: Optional[datetime] = None) -> dict:
        custom = coerce_schema(link.custom_schema) if link.custom_schema is not None else None
        return {
            "id": link.id,
            "project_id": link.project_id,
            "token": link.token,
            "status": link_status(link, now).value,
            "is_active": link.is_active,
            "expires_at": _iso(link.expires_at),
            "permissions": _permissions_of(link).model_dump(),
            "custom_schema": dump_schema(custom) if custom is not None else None,
            "created_at": _iso(link.created_at),
        }

    # -----------------------
    # Loading helpers
    # -----------------------

    def _ensure_developer(self, session: Session, developer_id: str) -> None:
        if session.get(Developer, developer_id) is None:
            session.add(Developer(id=developer_id))
            session.flush()

    def _owned_project(self, session: Session, developer_id: str, project_id: str) -> Project:
        project = (
            session.query(Project)
            .filter(Project.project_id == str(project_id), Project.is_active.is_(True))
            .one_or_none()
        )
        if project is None:
            raise NotFound(f"Project not found: {project_id}")
        if project.developer_id != str(developer_id):
            raise PermissionDenied("You do not have access to this project")
        return project

    def _owned_link(self, session: Session, developer_id: str, token: str) -> SharedLink:
        link = session.query(SharedLink).filter(SharedLink.token == token).one_or_none()
        if link is None:
            raise NotFound("Shared link not found")
        self._owned_project(session, developer_id, link.project_id)
        return link

    def _open_link(self, session: Session, token: str, operation: Optional[Operation] = None):
        """
        Link + project for a client request. Raises AccessDenied subclasses for
        unknown, expired or revoked links and PermissionDenied for a missing grant.
        """
        link = session.query(SharedLink).filter(SharedLink.token == token).one_or_none()
        if link is None:
            raise LinkNotFound("unknown token")
        project = (
            session.query(Project)
            .filter(Project.project_id == link.project_id, Project.is_active.is_(True))
            .one_or_none()
        )
        if project is None:
            raise LinkNotFound("project inactive")

        status = check_link(link)
        if operation is not None:
            require(_permissions_of(link), operation, status)
        return link, project

    @contextmanager
    def _client_request(self, token: str, action: str) -> Iterator[Session]:
        session = self.SessionFactory()
        try:
            yield session
        except AccessDenied as e:
            logger.info(f"Shared link denied: action={action} token={token[:12]}... reason={type(e).__name__}: {e.reason}")
            raise
        except PermissionDenied as e:
            logger.info(f"Shared link permission denied: action={action} token={token[:12]}... {e}")
            raise
        finally:
            session.close()

    # -----------------------
    # Schema persistence
    # -----------------------

    def _save_schema(self, project_id: str, expected_version: int, schema: Schema, link_id: Optional[str] = None) -> int:
        """
        Compare-and-swap on Project.schema_version. The counter covers the
        project schema and every link's custom schema.
        Returns the new version; raises ConflictOrIOError when another writer won.
        """
        session = self.SessionFactory()
        try:
            new_version = expected_version + 1
            updated = (
                session.query(Project)
                .filter(Project.project_id == project_id, Project.schema_version == expected_version)
                .update(
                    {
                        Project.schema_version: new_version,
                        Project.updated_at: utc_now(),
                        **({} if link_id else {Project.schema_data: dump_schema(schema)}),
                    },
                    synchronize_session=False,
                )
            )
            if updated != 1:
                session.rollback()
                raise ConflictOrIOError(
                    f"Schema of project {project_id} changed concurrently (expected version {expected_version})"
                )
            if link_id:
                session.query(SharedLink).filter(SharedLink.id == link_id).update(
                    {SharedLink.custom_schema: dump_schema(schema)},
                    synchronize_session=False,
                )
            session.commit()
            return new_version
        except SQLAlchemyError as e:
            session.rollback()
            logger.info(f"Schema save failed for project {project_id}: {e}")
            raise ConflictOrIOError(f"Failed to save schema of project {project_id}") from e
        finally:
            session.close()

    # -----------------------
    # Projects (developer)
    # -----------------------

    def create_project(
        self,
        developer_id: str,
        name: str,
        mongo_uri: str,
        database_name: str,
        collection_name: str,
        description: Optional[str] = None,
    ) -> dict:
        for label, value in (("name", name), ("mongo_uri", mongo_uri), ("database_name", database_name), ("collection_name", collection_name)):
            if not value or not str(value).strip():
                raise ValueError(f"{label} is required")

        target = ConnectionTarget(mongo_uri=mongo_uri, database_name=database_name, collection_name=collection_name)
        try:
            schema = normalize_response(self.sampler.sample(target))
        except SamplingFailed as e:
            # the project is still created; the developer can refresh once the store is reachable
            logger.warning(f"Initial schema analysis failed for {database_name}.{collection_name}: {e}")
            schema = {}

        session = self.SessionFactory()
        try:
            self._ensure_developer(session, str(developer_id))
            project = Project(
                developer_id=str(developer_id),
                name=name.strip(),
                description=description,
                mongo_uri=mongo_uri,
                database_name=database_name,
                collection_name=collection_name,
                schema_data=dump_schema(schema),
                schema_version=0,
                is_active=True,
            )
            session.add(project)
            session.commit()
            logger.info(f"Project created: {project.project_id} fields={len(schema)}")
            return self._project_dict(project)
        finally:
            session.close()

    def list_projects(self, developer_id: str) -> List[dict]:
        session = self.SessionFactory()
        try:
            rows = (
                session.query(Project)
                .filter(Project.developer_id == str(developer_id), Project.is_active.is_(True))
                .order_by(Project.created_at.desc())
                .all()
            )
            return [self._project_dict(p, with_schema=False) for p in rows]
        finally:
            session.close()

    def get_project(self, developer_id: str, project_id: str) -> dict:
        session = self.SessionFactory()
        try:
            project = self._owned_project(session, developer_id, project_id)
            data = self._project_dict(project)
            data["connection"] = {"mongo_uri": project.mongo_uri}
            return data
        finally:
            session.close()

    def refresh_schema(self, developer_id: str, project_id: str) -> dict:
        """
        Re-sample the collection and merge into the stored schema. Manual
        fields always survive; a sampler failure leaves the stored schema as is.
        """
        with self.locks.hold(project_id):
            session = self.SessionFactory()
            try:
                project = self._owned_project(session, developer_id, project_id)
                target = _target_of(project)
                version = project.schema_version
                old = coerce_schema(project.schema_data)
            finally:
                session.close()

            logger.info(f"Schema refresh started: project={project_id} version={version} fields={len(old)}")
            fresh = normalize_response(self.sampler.sample(target))
            merged, stats = merge(old, fresh)
            new_version = self._save_schema(project_id, version, merged)
            logger.info(
                f"Schema refresh merged: project={project_id} version={new_version} "
                f"preserved_manual={stats.preserved_manual} updated_or_added={stats.updated_or_added} "
                f"retained_unobserved={stats.retained_unobserved}"
            )
            return {
                "schema": dump_schema(merged),
                "schema_version": new_version,
                "stats": stats.model_dump(),
            }

    def delete_project(self, developer_id: str, project_id: str) -> None:
        session = self.SessionFactory()
        try:
            project = self._owned_project(session, developer_id, project_id)
            project.is_active = False
            session.commit()
            logger.info(f"Project deactivated: {project_id}")
        finally:
            session.close()

    def list_client_entries(self, developer_id: str, project_id: str) -> List[dict]:
        session = self.SessionFactory()
        try:
            self._owned_project(session, developer_id, project_id)
            rows = (
                session.query(ClientEntry)
                .filter(ClientEntry.project_id == str(project_id))
                .order_by(ClientEntry.created_at.desc())
                .all()
            )
            return [
                {
                    "id": e.id,
                    "project_id": e.project_id,
                    "shared_link_id": e.shared_link_id,
                    "document_id": e.document_id,
                    "data": e.data,
                    "created_at": _iso(e.created_at),
                }
                for e in rows
            ]
        finally:
            session.close()

    # -----------------------
    # Shared links (developer)
    # -----------------------

    def create_shared_link(
        self,
        developer_id: str,
        project_id: str,
        permissions: Optional[Any] = None,
        expires_at: Optional[datetime] = None,
        expires_in_days: Optional[float] = None,
        custom_schema: Optional[Any] = None,
    ) -> dict:
        grants = PermissionSet.model_validate(permissions or {})
        if expires_at is None and expires_in_days:
            expires_at = utc_now() + timedelta(days=float(expires_in_days))

        session = self.SessionFactory()
        try:
            project = self._owned_project(session, developer_id, project_id)
            link = SharedLink(
                project_id=project.project_id,
                token=generate_share_token(),
                expires_at=as_utc(expires_at),
                is_active=True,
                custom_schema=dump_schema(coerce_schema(custom_schema)) if custom_schema is not None else None,
                **grants.model_dump(),
            )
            session.add(link)
            session.commit()
            logger.info(f"Shared link created: project={project_id} link={link.id} grants={grants.model_dump()}")
            return self._link_dict(link)
        finally:
            session.close()

    def list_shared_links(self, developer_id: str, project_id: str) -> List[dict]:
        session = self.SessionFactory()
        try:
            self._owned_project(session, developer_id, project_id)
            rows = (
                session.query(SharedLink)
                .filter(SharedLink.project_id == str(project_id))
                .order_by(SharedLink.created_at.desc())
                .all()
            )
            now = utc_now()
            return [self._link_dict(link, now) for link in rows]
        finally:
            session.close()

    def update_shared_link(self, developer_id: str, token: str, changes: Dict[str, Any]) -> dict:
        """
        `changes` may hold is_active, expires_at (None clears the expiry) and a
        partial permissions mapping. Keys that are absent are left untouched.
        """
        changes = changes or {}
        unknown = set(changes) - set(_LINK_FIELDS)
        if unknown:
            raise ValueError(f"Unsupported shared link fields: {sorted(unknown)}")

        session = self.SessionFactory()
        try:
            link = self._owned_link(session, developer_id, token)
            if "is_active" in changes and changes["is_active"] is not None:
                link.is_active = bool(changes["is_active"])
            if "expires_at" in changes:
                link.expires_at = as_utc(changes["expires_at"])
            if changes.get("permissions"):
                unknown = set(changes["permissions"]) - set(PermissionSet.model_fields)
                if unknown:
                    raise ValueError(f"Unsupported permission flags: {sorted(unknown)}")
                grants = PermissionSet.model_validate(
                    {**_permissions_of(link).model_dump(), **changes["permissions"]}
                )
                for key, value in grants.model_dump().items():
                    setattr(link, key, value)
            session.commit()
            logger.info(f"Shared link updated: link={link.id} fields={sorted(changes)}")
            return self._link_dict(link)
        finally:
            session.close()

    def delete_shared_link(self, developer_id: str, token: str) -> None:
        session = self.SessionFactory()
        try:
            link = self._owned_link(session, developer_id, token)
            session.query(ClientEntry).filter(ClientEntry.shared_link_id == link.id).update(
                {ClientEntry.shared_link_id: None},
                synchronize_session=False,
            )
            session.delete(link)
            session.commit()
            logger.info(f"Shared link deleted: link={link.id}")
        finally:
            session.close()

    # -----------------------
    # Shared links (client)
    # -----------------------

    def resolve_link(self, token: str, operation: Optional[Operation] = None) -> dict:
        with self._client_request(token, "resolve") as session:
            link, _ = self._open_link(session, token, operation)
            return self._link_dict(link)

    def get_shared_project(self, token: str) -> dict:
        with self._client_request(token, "project") as session:
            link, project = self._open_link(session, token)
            schema = effective_schema(
                coerce_schema(project.schema_data),
                coerce_schema(link.custom_schema) if link.custom_schema is not None else None,
            )
            return {
                "project_name": project.name,
                "description": project.description,
                "database_name": project.database_name,
                "collection_name": project.collection_name,
                "schema": dump_schema(schema),
                "permissions": _permissions_of(link).model_dump(),
                "expires_at": _iso(link.expires_at),
            }

    def get_form_fields(self, token: str, purpose: Operation = Operation.INSERT) -> List[dict]:
        with self._client_request(token, f"form:{Operation(purpose).value}") as session:
            link, project = self._open_link(session, token)
            schema = self._link_schema(link, project)
            return [d.model_dump(mode="json") for d in render_form_fields(schema, _permissions_of(link), purpose)]

    def get_link_schema(self, token: str) -> dict:
        with self._client_request(token, "schema") as session:
            link, project = self._open_link(session, token)
            return {
                "schema": dump_schema(self._link_schema(link, project)),
                "custom": link.custom_schema is not None,
                "schema_version": project.schema_version,
            }

    def _link_schema(self, link: SharedLink, project: Project) -> Schema:
        custom = coerce_schema(link.custom_schema) if link.custom_schema is not None else None
        return effective_schema(coerce_schema(project.schema_data), custom)

    def modify_link_schema(self, token: str, edits: Any) -> dict:
        """
        Add or remove fields through a link with modify_schema permission.
        Writes into the link's custom schema when it has one, else into the
        project schema.

        `edits` is one edit or a list of them. A list is applied in order and
        saved once; if any edit fails nothing is saved.
        """
        with self._client_request(token, "modify_schema") as session:
            link, project = self._open_link(session, token, Operation.MODIFY_SCHEMA)
            project_id, link_id = project.project_id, link.id

        if not isinstance(edits, (list, tuple)):
            edits = [edits]
        if not edits:
            raise ValueError("At least one schema edit is required")
        edits = _SCHEMA_EDITS.validate_python(list(edits))

        with self.locks.hold(project_id):
            session = self.SessionFactory()
            try:
                link = session.get(SharedLink, link_id)
                project = session.get(Project, project_id)
                if link is None or project is None:
                    raise LinkNotFound("link removed during edit")
                version = project.schema_version
                uses_custom = link.custom_schema is not None
                current = self._link_schema(link, project)
            finally:
                session.close()

            updated = current
            for edit in edits:
                updated = apply_schema_edit(updated, edit)
            new_version = self._save_schema(project_id, version, updated, link_id=link_id if uses_custom else None)
            logger.info(
                f"Schema edited through link: project={project_id} link={link_id} "
                f"edits={','.join(f'{e.action}:{e.name}' for e in edits)} target={'custom' if uses_custom else 'project'} version={new_version}"
            )
            return {"schema": dump_schema(updated), "schema_version": new_version, "custom": uses_custom}

    # -----------------------
    # Data (client)
    # -----------------------

    def _store(self):
        if self.document_store is None:
            raise DocumentStoreError("No document store is configured")
        return self.document_store

    def list_data(self, token: str, limit: Optional[int] = None, skip: Optional[int] = None) -> dict:
        with self._client_request(token, "view") as session:
            _, project = self._open_link(session, token, Operation.VIEW)
            target = _target_of(project)
        return self._store().retrieve_data(target, limit=limit, skip=skip)

    def insert_data(self, token: str, data: Dict[str, Any]) -> dict:
        with self._client_request(token, "insert") as session:
            link, project = self._open_link(session, token, Operation.INSERT)
            schema = self._link_schema(link, project)
            project_id, link_id, target = project.project_id, link.id, _target_of(project)

        if not isinstance(data, dict) or not data:
            raise ValueError("data must be a non-empty JSON object")
        document = {k: v for k, v in data.items() if k != IDENTITY_FIELD}

        missing = [
            name for name, field in schema.items()
            if field.required and document.get(name) in (None, "")
        ]
        if missing:
            raise ValueError(f"Missing required fields: {', '.join(sorted(missing))}")

        result = self._store().insert_data(target, document)
        document_id = result.get("document_id") or (result.get("data") or {}).get("document_id")
        if document_id:
            session = self.SessionFactory()
            try:
                session.add(
                    ClientEntry(
                        project_id=project_id,
                        shared_link_id=link_id,
                        document_id=str(document_id),
                        data=document,
                    )
                )
                session.commit()
            finally:
                session.close()
        else:
            logger.warning(f"Insert through link {link_id} returned no document id; entry not tracked")
        return result

    def update_data(self, token: str, document_id: str, changes: Dict[str, Any]) -> dict:
        with self._client_request(token, "update") as session:
            _, project = self._open_link(session, token, Operation.UPDATE)
            target = _target_of(project)

        if not isinstance(changes, dict) or not changes:
            raise ValueError("changes must be a non-empty JSON object")
        changes = {k: v for k, v in changes.items() if k != IDENTITY_FIELD}
        return self._store().update_data(target, str(document_id), changes)

    def delete_data(self, token: str, document_id: str) -> dict:
        with self._client_request(token, "delete") as session:
            _, project = self._open_link(session, token, Operation.DELETE)
            target = _target_of(project)
        return self._store().delete_data(target, str(document_id))
