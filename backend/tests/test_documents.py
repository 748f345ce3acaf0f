"""Tests for document versioning, annotations, presence and folders"""
from datetime import timedelta

import pytest
import pytest_asyncio
from httpx import AsyncClient

import errors
from documents_collab import DocumentService, active_editors, checksum, leave_editor, touch_editor
from models import DocumentChangeType, iso, utcnow
from tests.conftest import get_auth_headers


@pytest_asyncio.fixture
async def document(db_session, test_user):
    return await DocumentService(db_session).create_document(
        test_user.id, "Runbook", "runbook.md", "step one\nstep two",
    )


async def _current(service, document_id):
    return [v for v in await service.list_versions(document_id) if v.is_current_version]


# ── Versions ─────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_create_takes_initial_snapshot(db_session, document):
    versions = await DocumentService(db_session).list_versions(document.id)
    assert document.version == 1
    assert len(versions) == 1
    assert versions[0].change_type == DocumentChangeType.CREATED
    assert versions[0].is_current_version is True
    assert versions[0].checksum == checksum("step one\nstep two")
    assert document.size == len("step one\nstep two")


@pytest.mark.asyncio
async def test_updates_append_versions(db_session, test_user, document):
    service = DocumentService(db_session)
    doc = await service.update_document(document.id, test_user.id, {"content": "step one\nstep three"}, "fix step")
    assert doc.version == 2
    doc = await service.update_document(document.id, test_user.id, {"title": "Ops Runbook"})
    assert doc.version == 3
    doc = await service.update_document(document.id, test_user.id, {"tags": ["ops"]})
    assert doc.version == 4

    versions = await service.list_versions(document.id)
    assert [v.version_number for v in versions] == [4, 3, 2, 1]
    assert [v.change_type for v in versions[:3]] == [
        DocumentChangeType.METADATA_UPDATED, DocumentChangeType.RENAMED, DocumentChangeType.CONTENT_UPDATED,
    ]
    assert versions[2].change_description == "fix step"
    assert versions[2].version_metadata == {"fields": ["content"]}
    current = await _current(service, document.id)
    assert [v.version_number for v in current] == [4]


@pytest.mark.asyncio
async def test_noop_update_keeps_version(db_session, test_user, document):
    service = DocumentService(db_session)
    doc = await service.update_document(document.id, test_user.id, {"title": "Runbook"})
    assert doc.version == 1
    with pytest.raises(errors.ValidationError):
        await service.update_document(document.id, test_user.id, {"owner_id": test_user.id})


@pytest.mark.asyncio
async def test_restore_creates_new_version(db_session, test_user, document):
    service = DocumentService(db_session)
    await service.update_document(document.id, test_user.id, {"content": "rewritten"})

    doc = await service.restore_version(document.id, 1, test_user.id)
    assert doc.version == 3
    assert doc.content == "step one\nstep two"

    latest = await service.get_version(document.id, 3)
    assert latest.change_type == DocumentChangeType.RESTORED
    assert latest.version_metadata == {"restoredFrom": 1}
    # Older history is untouched
    assert (await service.get_version(document.id, 2)).content == "rewritten"


@pytest.mark.asyncio
async def test_restore_backs_up_unsnapshotted_state(db_session, test_user, document):
    service = DocumentService(db_session)
    document.content = "edited outside of versioning"
    await db_session.commit()

    doc = await service.restore_version(document.id, 1, test_user.id)
    assert doc.version == 3
    backup = await service.get_version(document.id, 2)
    assert backup.content == "edited outside of versioning"
    assert backup.is_current_version is False
    assert [v.version_number for v in await _current(service, document.id)] == [3]


@pytest.mark.asyncio
async def test_compare_versions(db_session, test_user, document):
    service = DocumentService(db_session)
    await service.update_document(document.id, test_user.id, {"content": "step one\nstep 2!"})
    comparison = await service.compare_versions(document.id, 1, 2)
    assert comparison["contentChanged"] is True
    assert "checksum" in comparison["differences"]
    assert comparison["stats"] == {"linesAdded": 1, "linesRemoved": 1}
    assert "+step 2!" in comparison["diff"]

    with pytest.raises(errors.NotFoundError):
        await service.compare_versions(document.id, 1, 9)


@pytest.mark.asyncio
async def test_current_version_cannot_be_deleted(db_session, test_user, document):
    service = DocumentService(db_session)
    await service.update_document(document.id, test_user.id, {"content": "v2"})
    with pytest.raises(errors.IntegrityError):
        await service.delete_version(document.id, 2)
    await service.delete_version(document.id, 1)
    assert [v.version_number for v in await service.list_versions(document.id)] == [2]


@pytest.mark.asyncio
async def test_cleanup_keeps_recent_versions(db_session, test_user, document):
    service = DocumentService(db_session)
    for i in range(4):
        await service.update_document(document.id, test_user.id, {"content": f"revision {i}"})

    assert await service.cleanup_versions(document.id, keep=2) == 3
    assert [v.version_number for v in await service.list_versions(document.id)] == [5, 4]
    with pytest.raises(errors.ValidationError):
        await service.cleanup_versions(document.id, keep=0)


@pytest.mark.asyncio
async def test_explicit_version_and_stats(db_session, test_user, other_user, document):
    service = DocumentService(db_session)
    version = await service.create_version(document.id, other_user.id, "checkpoint")
    assert version.version_number == 2
    assert version.content == document.content

    stats = await service.version_stats(document.id)
    assert stats["currentVersion"] == 2
    assert stats["totalVersions"] == 2
    assert stats["contributors"] == 2
    assert stats["byChangeType"] == {"created": 1, "content_updated": 1}


# ── Annotations ──────────────────────────────────────────────

@pytest.mark.asyncio
async def test_annotations(db_session, test_user, other_user, document):
    service = DocumentService(db_session)
    note = await service.add_annotation(document.id, test_user.id, "Check step two", position={"line": 2})
    resolved = await service.add_annotation(document.id, other_user.id, "Typo", "highlight", color="#ffcc00")
    assert resolved.color == "#ffcc00"
    assert note.color is None
    await service.resolve_annotation(resolved.id, test_user.id)

    assert len(await service.list_annotations(document.id)) == 2
    open_notes = await service.list_annotations(document.id, include_resolved=False)
    assert [a.id for a in open_notes] == [note.id]
    assert resolved.resolved_by == test_user.id

    with pytest.raises(errors.ForbiddenError):
        await service.delete_annotation(note.id, other_user.id)
    await service.delete_annotation(note.id, test_user.id)
    with pytest.raises(errors.ValidationError):
        await service.add_annotation(document.id, test_user.id, "   ")


# ── Presence ─────────────────────────────────────────────────

def test_presence_expires_after_ttl():
    t0 = utcnow()
    touch_editor("doc-1", "alice", t0, user_name="Alice", cursor_position={"line": 4, "column": 2})
    editors = touch_editor("doc-1", "bob", t0 + timedelta(minutes=3), user_name="Bob")
    assert [e["userId"] for e in editors] == ["alice", "bob"]
    assert editors[0] == {
        "userId": "alice", "userName": "Alice",
        "cursorPosition": {"line": 4, "column": 2}, "lastActivity": iso(t0),
    }

    # A bare heartbeat keeps the name and moves the cursor only when given
    editors = touch_editor("doc-1", "bob", t0 + timedelta(minutes=4), cursor_position={"line": 1})
    assert editors[1]["userName"] == "Bob"
    assert editors[1]["cursorPosition"] == {"line": 1}
    assert editors[1]["lastActivity"] == iso(t0 + timedelta(minutes=4))

    later = active_editors("doc-1", t0 + timedelta(minutes=6))
    assert [e["userId"] for e in later] == ["bob"]

    leave_editor("doc-1", "bob")
    assert active_editors("doc-1", t0 + timedelta(minutes=6)) == []


# ── Folders ──────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_folder_tree(db_session, test_user):
    service = DocumentService(db_session)
    root = await service.create_folder("Engineering", test_user.id)
    child = await service.create_folder("Runbooks", test_user.id, root.id)
    leaf = await service.create_folder("Database", test_user.id, child.id)

    path = await service.folder_path(leaf.id)
    assert [p["name"] for p in path] == ["Engineering", "Runbooks", "Database"]

    with pytest.raises(errors.ValidationError):
        await service.move_folder(root.id, leaf.id)
    with pytest.raises(errors.ValidationError):
        await service.move_folder(root.id, root.id)

    moved = await service.move_folder(leaf.id, root.id)
    assert moved.parent_id == root.id
    assert [f.name for f in await service.list_folders(test_user.id, root.id)] == ["Database", "Runbooks"]
    moved = await service.move_folder(leaf.id, None)
    assert [f.name for f in await service.list_folders(test_user.id)] == ["Database", "Engineering"]


@pytest.mark.asyncio
async def test_document_folder_must_exist(db_session, test_user):
    with pytest.raises(errors.NotFoundError):
        await DocumentService(db_session).create_document(test_user.id, "x", "x.txt", folder_id="missing")


# ── Routes ───────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_document_routes(client: AsyncClient, test_user):
    headers = get_auth_headers(test_user)
    r = await client.post("/api/v1/documents", json={
        "title": "Architecture", "filename": "architecture.md", "content": "# Overview", "tags": ["design"],
    }, headers=headers)
    assert r.status_code == 201
    doc = r.json()["data"]
    assert doc["version"] == 1

    r = await client.patch(f"/api/v1/documents/{doc['id']}", json={
        "content": "# Overview\nServices", "change_description": "add services",
    }, headers=headers)
    assert r.json()["data"]["version"] == 2

    r = await client.get(f"/api/v1/documents/{doc['id']}/versions/compare", params={"from": 1, "to": 2},
                         headers=headers)
    assert r.status_code == 200
    assert r.json()["data"]["stats"]["linesAdded"] == 1

    r = await client.post(f"/api/v1/documents/{doc['id']}/versions/1/restore", headers=headers)
    assert r.json()["data"]["content"] == "# Overview"

    r = await client.get(f"/api/v1/documents/{doc['id']}/versions", headers=headers)
    versions = r.json()["data"]
    assert [v["versionNumber"] for v in versions] == [3, 2, 1]
    assert versions[0]["changeType"] == "restored"

    r = await client.delete(f"/api/v1/documents/{doc['id']}/versions/3", headers=headers)
    assert r.status_code == 409

    r = await client.post(f"/api/v1/documents/{doc['id']}/editors", json={"cursor_position": {"line": 3}},
                          headers=headers)
    editors = r.json()["data"]
    assert [e["userId"] for e in editors] == [test_user.id]
    assert editors[0]["userName"] == test_user.display_name
    assert editors[0]["cursorPosition"] == {"line": 3}
    r = await client.get(f"/api/v1/documents/{doc['id']}", headers=headers)
    assert len(r.json()["data"]["activeEditors"]) == 1


@pytest.mark.asyncio
async def test_annotation_routes(client: AsyncClient, test_user, other_user):
    headers = get_auth_headers(test_user)
    r = await client.post("/api/v1/documents", json={"title": "Spec", "filename": "spec.md"}, headers=headers)
    doc_id = r.json()["data"]["id"]

    r = await client.post(f"/api/v1/documents/{doc_id}/annotations",
                          json={"content": "Needs review", "color": "#3366ff"}, headers=headers)
    assert r.status_code == 201
    assert r.json()["data"]["color"] == "#3366ff"
    annotation_id = r.json()["data"]["id"]

    r = await client.delete(f"/api/v1/documents/annotations/{annotation_id}", headers=get_auth_headers(other_user))
    assert r.status_code == 403

    r = await client.post(f"/api/v1/documents/annotations/{annotation_id}/resolve",
                          headers=get_auth_headers(other_user))
    assert r.json()["data"]["resolved"] is True


@pytest.mark.asyncio
async def test_folder_move_cycle_route(client: AsyncClient, test_user):
    headers = get_auth_headers(test_user)
    parent = (await client.post("/api/v1/documents/folders", json={"name": "A"}, headers=headers)).json()["data"]
    child = (await client.post("/api/v1/documents/folders", json={"name": "B", "parent_id": parent["id"]},
                               headers=headers)).json()["data"]
    r = await client.post(f"/api/v1/documents/folders/{parent['id']}/move", json={"parent_id": child["id"]},
                          headers=headers)
    assert r.status_code == 400

    r = await client.get(f"/api/v1/documents/folders/{child['id']}/path", headers=headers)
    assert [p["name"] for p in r.json()["data"]] == ["A", "B"]


@pytest.mark.asyncio
async def test_missing_document(client: AsyncClient, test_user):
    r = await client.get("/api/v1/documents/missing", headers=get_auth_headers(test_user))
    assert r.status_code == 404
