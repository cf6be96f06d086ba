from datetime import timedelta

import pytest

from panel.entities import Project
from panel.errors import (
    ConflictOrIOError,
    DuplicateField,
    LinkExpired,
    LinkNotFound,
    LinkRevoked,
    NotFound,
    PermissionDenied,
    ProtectedField,
    SamplingFailed,
)
from panel.field_sampler import DocumentListSampler
from panel.panel_backend import PanelBackend, generate_share_token
from panel.project_locks import ProjectLockRegistry
from panel.schema_models import Operation
from panel.utils import utc_now

from conftest import CUSTOMERS, DEVELOPER, OTHER_DEVELOPER


def _link(backend, project, **grants):
    return backend.create_shared_link(DEVELOPER, project["id"], permissions=grants or None)


def test_share_token_shape():
    token = generate_share_token()
    assert token.startswith("share_")
    assert len(token) == len("share_") + 32
    assert token[len("share_"):].isalnum()


def test_create_project_samples_schema(project):
    schema = project["schema"]
    assert set(schema) == {"name", "email", "age"}
    assert schema["name"]["required"] is True
    assert schema["email"]["form_type"] == "email"
    assert schema["age"]["required"] is False
    assert schema["age"]["provenance"] == "database"
    assert project["schema_version"] == 0


def test_create_project_survives_sampling_failure(session_factory, store):
    backend = PanelBackend(session_factory, sampler=DocumentListSampler({}), document_store=store, locks=ProjectLockRegistry())
    project = backend.create_project(DEVELOPER, "Empty", "mongodb://localhost", "crm", "missing")
    assert project["schema"] == {}


def test_create_project_validates_input(backend):
    with pytest.raises(ValueError):
        backend.create_project(DEVELOPER, " ", "mongodb://localhost", "crm", "customers")


def test_projects_are_owner_scoped(backend, project):
    assert [p["id"] for p in backend.list_projects(DEVELOPER)] == [project["id"]]
    assert backend.list_projects(OTHER_DEVELOPER) == []
    with pytest.raises(PermissionDenied):
        backend.get_project(OTHER_DEVELOPER, project["id"])
    with pytest.raises(NotFound):
        backend.get_project(DEVELOPER, "nope")


def test_delete_project_is_soft(backend, project, session_factory):
    backend.delete_project(DEVELOPER, project["id"])

    assert backend.list_projects(DEVELOPER) == []
    with pytest.raises(NotFound):
        backend.get_project(DEVELOPER, project["id"])

    session = session_factory()
    try:
        row = session.get(Project, project["id"])
        assert row is not None
        assert row.is_active is False
    finally:
        session.close()


def test_links_of_deleted_project_stop_working(backend, project):
    link = _link(backend, project)
    backend.delete_project(DEVELOPER, project["id"])
    with pytest.raises(LinkNotFound):
        backend.get_shared_project(link["token"])


def test_refresh_keeps_manual_fields(backend, project, sampler):
    link = _link(backend, project, can_modify_schema=True)
    backend.modify_link_schema(link["token"], {"action": "add_field", "name": "nickname"})

    sampler._documents = [{"_id": "z", "name": "Zed", "phone": "+15551234"}]
    result = backend.refresh_schema(DEVELOPER, project["id"])
    schema = result["schema"]

    assert schema["nickname"]["provenance"] == "manual"
    assert schema["phone"]["provenance"] == "database"
    assert schema["phone"]["form_type"] == "tel"
    # no longer sampled but kept
    assert "email" in schema
    assert result["stats"] == {"preserved_manual": 1, "updated_or_added": 2, "retained_unobserved": 2}
    assert result["schema_version"] == 2


def test_refresh_propagates_sampling_failure(backend, project, sampler):
    sampler._by_collection = {}
    with pytest.raises(SamplingFailed):
        backend.refresh_schema(DEVELOPER, project["id"])
    assert set(backend.get_project(DEVELOPER, project["id"])["schema"]) == {"name", "email", "age"}


def test_several_fields_added_in_one_edit(backend, project):
    link = _link(backend, project, can_modify_schema=True)
    before = backend.get_link_schema(link["token"])["schema_version"]

    result = backend.modify_link_schema(
        link["token"],
        [
            {"action": "add_field", "name": "vip", "type": "boolean"},
            {"action": "add_field", "name": "notes"},
            {"action": "remove_field", "name": "age"},
        ],
    )

    assert result["schema_version"] == before + 1
    assert {"vip", "notes"} <= set(result["schema"])
    assert "age" not in result["schema"]
    assert set(backend.get_project(DEVELOPER, project["id"])["schema"]) == {"name", "email", "vip", "notes"}


def test_failed_edit_in_batch_saves_nothing(backend, project):
    link = _link(backend, project, can_modify_schema=True)
    before = backend.get_link_schema(link["token"])

    with pytest.raises(DuplicateField):
        backend.modify_link_schema(
            link["token"],
            [{"action": "add_field", "name": "vip"}, {"action": "add_field", "name": "vip"}],
        )
    with pytest.raises(ValueError):
        backend.modify_link_schema(link["token"], [])

    after = backend.get_link_schema(link["token"])
    assert after["schema_version"] == before["schema_version"]
    assert set(after["schema"]) == set(before["schema"])


def test_save_schema_detects_lost_race(backend, project):
    backend._save_schema(project["id"], 0, {})
    with pytest.raises(ConflictOrIOError):
        backend._save_schema(project["id"], 0, {})


def test_default_link_grants(backend, project):
    link = _link(backend, project)
    assert link["token"].startswith("share_")
    assert link["status"] == "active"
    assert link["permissions"] == {
        "can_view": True,
        "can_insert": True,
        "can_update": False,
        "can_delete": False,
        "can_modify_schema": False,
    }


def test_other_developer_cannot_manage_links(backend, project):
    link = _link(backend, project)
    with pytest.raises(PermissionDenied):
        backend.list_shared_links(OTHER_DEVELOPER, project["id"])
    with pytest.raises(PermissionDenied):
        backend.update_shared_link(OTHER_DEVELOPER, link["token"], {"is_active": False})
    with pytest.raises(NotFound):
        backend.delete_shared_link(DEVELOPER, "share_unknown")


def test_revoked_and_expired_links_are_denied(backend, project):
    link = _link(backend, project)
    backend.update_shared_link(DEVELOPER, link["token"], {"is_active": False})
    with pytest.raises(LinkRevoked):
        backend.list_data(link["token"])

    backend.update_shared_link(
        DEVELOPER, link["token"], {"is_active": True, "expires_at": utc_now() - timedelta(minutes=5)}
    )
    with pytest.raises(LinkExpired):
        backend.get_form_fields(link["token"])

    backend.update_shared_link(DEVELOPER, link["token"], {"expires_at": None})
    assert backend.resolve_link(link["token"])["status"] == "active"


def test_update_link_permissions_partially(backend, project):
    link = _link(backend, project)
    updated = backend.update_shared_link(DEVELOPER, link["token"], {"permissions": {"can_delete": True}})
    assert updated["permissions"]["can_delete"] is True
    assert updated["permissions"]["can_insert"] is True

    with pytest.raises(ValueError):
        backend.update_shared_link(DEVELOPER, link["token"], {"token": "x"})


def test_update_link_rejects_unknown_permission_flags(backend, project):
    link = _link(backend, project)
    with pytest.raises(ValueError):
        backend.update_shared_link(DEVELOPER, link["token"], {"permissions": {"canDelete": True}})
    with pytest.raises(ValueError):
        backend.update_shared_link(DEVELOPER, link["token"], {"permissions": {"can_delete": True, "can_drop": True}})

    assert backend.resolve_link(link["token"])["permissions"]["can_delete"] is False


def test_delete_link_is_physical(backend, project):
    link = _link(backend, project)
    backend.insert_data(link["token"], {"name": "Bo", "email": "bo@example.com"})
    backend.delete_shared_link(DEVELOPER, link["token"])

    assert backend.list_shared_links(DEVELOPER, project["id"]) == []
    with pytest.raises(LinkNotFound):
        backend.resolve_link(link["token"])
    entries = backend.list_client_entries(DEVELOPER, project["id"])
    assert len(entries) == 1
    assert entries[0]["shared_link_id"] is None


def test_shared_project_view(backend, project):
    link = _link(backend, project)
    shared = backend.get_shared_project(link["token"])
    assert shared["project_name"] == "Customers"
    assert shared["collection_name"] == "customers"
    assert set(shared["schema"]) == {"name", "email", "age"}
    assert "mongo_uri" not in shared


def test_form_fields_through_link(backend, project):
    link = _link(backend, project)
    fields = backend.get_form_fields(link["token"])
    assert [f["name"] for f in fields] == ["email", "name", "age"]
    assert fields[0]["widget"] == "email"

    no_insert = _link(backend, project, can_insert=False)
    with pytest.raises(PermissionDenied):
        backend.get_form_fields(no_insert["token"])


def test_insert_tracks_client_entry(backend, project, store):
    link = _link(backend, project)
    result = backend.insert_data(link["token"], {"_id": "forged", "name": "Bo", "email": "bo@example.com"})

    assert result["document_id"] == "doc-1"
    op, target, document = store.calls[-1]
    assert op == "insert"
    assert target.collection_name == "customers"
    assert "_id" not in document

    entries = backend.list_client_entries(DEVELOPER, project["id"])
    assert entries[0]["document_id"] == "doc-1"
    assert entries[0]["shared_link_id"] == link["id"]
    assert entries[0]["data"] == {"name": "Bo", "email": "bo@example.com"}


def test_insert_requires_required_fields(backend, project, store):
    link = _link(backend, project)
    with pytest.raises(ValueError):
        backend.insert_data(link["token"], {"name": "Bo"})
    assert store.calls == []


def test_data_operations_check_grants(backend, project, store):
    view_only = _link(backend, project, can_insert=False)
    with pytest.raises(PermissionDenied):
        backend.insert_data(view_only["token"], {"name": "Bo", "email": "bo@example.com"})
    with pytest.raises(PermissionDenied):
        backend.update_data(view_only["token"], "doc-1", {"name": "B"})
    with pytest.raises(PermissionDenied):
        backend.delete_data(view_only["token"], "doc-1")
    assert backend.list_data(view_only["token"])["code"] == 0

    full = _link(backend, project, can_update=True, can_delete=True)
    backend.update_data(full["token"], "doc-9", {"name": "B", "_id": "x"})
    assert store.calls[-1] == ("update", store.calls[-1][1], "doc-9", {"name": "B"})
    backend.delete_data(full["token"], "doc-9")
    assert store.calls[-1][0] == "delete"


def test_schema_edit_requires_grant(backend, project):
    link = _link(backend, project)
    with pytest.raises(PermissionDenied):
        backend.modify_link_schema(link["token"], {"action": "add_field", "name": "nickname"})


def test_schema_edits_through_link(backend, project):
    link = _link(backend, project, can_modify_schema=True)

    result = backend.modify_link_schema(link["token"], {"action": "add_field", "name": "vip", "type": "boolean"})
    assert result["custom"] is False
    assert result["schema"]["vip"]["provenance"] == "manual"
    assert result["schema"]["vip"]["form_type"] == "checkbox"
    assert "vip" in backend.get_project(DEVELOPER, project["id"])["schema"]

    with pytest.raises(DuplicateField):
        backend.modify_link_schema(link["token"], {"action": "add_field", "name": "email"})
    with pytest.raises(ProtectedField):
        backend.modify_link_schema(link["token"], {"action": "remove_field", "name": "_id"})

    result = backend.modify_link_schema(link["token"], {"action": "remove_field", "name": "age"})
    assert "age" not in result["schema"]

    with pytest.raises(ValueError):
        backend.modify_link_schema(link["token"], {"action": "rename_field", "name": "x"})


def test_schema_edits_go_to_custom_schema_when_present(backend, project):
    link = backend.create_shared_link(
        DEVELOPER,
        project["id"],
        permissions={"can_modify_schema": True},
        custom_schema={"title": {"type": "string", "provenance": "manual"}},
    )
    result = backend.modify_link_schema(link["token"], {"action": "add_field", "name": "subtitle"})

    assert result["custom"] is True
    assert set(result["schema"]) == {"title", "subtitle"}
    assert set(backend.get_link_schema(link["token"])["schema"]) == {"title", "subtitle"}
    assert set(backend.get_project(DEVELOPER, project["id"])["schema"]) == {"name", "email", "age"}


def test_expired_link_is_denied_even_with_every_grant(backend, project):
    link = backend.create_shared_link(
        DEVELOPER,
        project["id"],
        permissions={"can_update": True, "can_delete": True, "can_modify_schema": True},
        expires_at=utc_now() - timedelta(seconds=1),
    )
    token = link["token"]
    for call in (
        lambda: backend.list_data(token),
        lambda: backend.insert_data(token, {"name": "a", "email": "a@b.io"}),
        lambda: backend.update_data(token, "d", {"a": 1}),
        lambda: backend.delete_data(token, "d"),
        lambda: backend.modify_link_schema(token, {"action": "add_field", "name": "x"}),
        lambda: backend.resolve_link(token, Operation.VIEW),
    ):
        with pytest.raises(LinkExpired):
            call()


def test_sampler_sees_project_target(backend, project, sampler):
    target = sampler.calls[-1]
    assert target.database_name == "crm"
    assert target.collection_name == "customers"
    assert len(CUSTOMERS) == 3
