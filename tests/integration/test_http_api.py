"""
Integration tests for the Folio HTTP API.

Tests cover:
- Health and workspace lifecycle
- Page create, archive, restore and delete
- Error responses and status codes
- Synced block routes
- Database, property and relation routes
- Search limits and integrity report
"""

import pytest
from fastapi.testclient import TestClient

from engine.folio.api import Settings, create_app
from engine.folio.notify import InMemoryNotifier
from engine.folio.store import EntityStore
from engine.folio.workspace import Workspace


@pytest.fixture
def http_notifier():
    return InMemoryNotifier()


@pytest.fixture
def client(data_dir, http_notifier):
    """TestClient whose lifespan opens and closes a fresh workspace."""
    workspace = Workspace(EntityStore(data_dir, wal_mode=False), http_notifier)
    app = create_app(workspace, Settings(default_search_limit=2, max_search_limit=3))
    with TestClient(app) as test_client:
        yield test_client


def create_page(client, title, parent_id=None, owner_id="user-1"):
    response = client.post(
        "/api/v1/pages", json={"owner_id": owner_id, "title": title, "parent_id": parent_id}
    )
    assert response.status_code == 201
    return response.json()


def flush_events(client):
    """Wait until queued change events reached the notifier, on the app's loop."""
    client.portal.call(client.app.state.workspace.notifier.flush)


class TestHealth:
    """Tests for the health endpoint."""

    def test_health(self, client):
        """Health reports an open workspace."""
        response = client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["service"] == "folio"
        assert body["workspace_open"] is True


class TestPageRoutes:
    """Tests for page lifecycle routes."""

    def test_create_and_get(self, client):
        """Created pages can be read back."""
        page = create_page(client, "Notes")

        response = client.get(f"/api/v1/pages/{page['page_id']}")

        assert response.status_code == 200
        assert response.json()["title"] == "Notes"
        assert response.json()["is_archived"] is False

    def test_archive_restore_delete(self, client):
        """The parent/child archive scenario over HTTP."""
        p1 = create_page(client, "P1")
        p2 = create_page(client, "P2", parent_id=p1["page_id"])

        response = client.post(f"/api/v1/pages/{p1['page_id']}/archive")
        assert response.status_code == 200
        assert set(response.json()["archived_page_ids"]) == {p1["page_id"], p2["page_id"]}

        response = client.post(f"/api/v1/pages/{p2['page_id']}/restore")
        assert response.status_code == 200
        assert response.json()["parent_id"] is None
        assert response.json()["is_archived"] is False

        archived = client.get("/api/v1/users/user-1/archived-pages").json()["pages"]
        assert [p["page_id"] for p in archived] == [p1["page_id"]]

        response = client.delete(f"/api/v1/pages/{p1['page_id']}")
        assert response.status_code == 200
        assert response.json() == {"deleted_page_ids": [p1["page_id"]]}

        roots = client.get("/api/v1/users/user-1/pages").json()["pages"]
        assert [p["page_id"] for p in roots] == [p2["page_id"]]

    def test_move_and_breadcrumbs(self, client):
        """Moves re-parent pages and show up in breadcrumbs."""
        root = create_page(client, "Root")
        child = create_page(client, "Child")

        response = client.post(
            f"/api/v1/pages/{child['page_id']}/move", json={"new_parent_id": root["page_id"]}
        )
        assert response.status_code == 200

        crumbs = client.get(f"/api/v1/pages/{child['page_id']}/breadcrumbs").json()["pages"]
        assert [p["title"] for p in crumbs] == ["Root", "Child"]

    def test_search_limit(self, client):
        """Search uses the default limit and caps requested limits."""
        for i in range(5):
            create_page(client, f"Meeting {i}")

        default = client.get("/api/v1/users/user-1/search", params={"q": "meeting"})
        capped = client.get("/api/v1/users/user-1/search", params={"q": "meeting", "limit": 10})

        assert len(default.json()["pages"]) == 2
        assert len(capped.json()["pages"]) == 3


class TestErrorResponses:
    """Tests for FolioError to HTTP mapping."""

    def test_not_found(self, client):
        """Unknown pages are 404 with an error code."""
        response = client.get("/api/v1/pages/missing")

        assert response.status_code == 404
        body = response.json()
        assert body["error_code"] == "NOT_FOUND"
        assert body["details"] == {"kind": "Page", "id": "missing"}

    def test_delete_requires_archive(self, client):
        """Deleting an active page is a 409."""
        page = create_page(client, "Active")

        response = client.delete(f"/api/v1/pages/{page['page_id']}")

        assert response.status_code == 409
        assert response.json()["error_code"] == "NOT_ARCHIVED"

    def test_invalid_move(self, client):
        """Moving a page under its own child is a 409."""
        parent = create_page(client, "Parent")
        child = create_page(client, "Child", parent_id=parent["page_id"])

        response = client.post(
            f"/api/v1/pages/{parent['page_id']}/move", json={"new_parent_id": child["page_id"]}
        )

        assert response.status_code == 409
        assert response.json()["error_code"] == "INVALID_MOVE"

    def test_stale_version(self, client):
        """A stale expected_version is a 409."""
        page = create_page(client, "Versioned")

        response = client.post(
            f"/api/v1/pages/{page['page_id']}/move",
            json={"new_parent_id": None, "expected_version": page["version"] + 5},
        )

        assert response.status_code == 409
        assert response.json()["error_code"] == "CONCURRENT_MODIFICATION"

    def test_block_validation(self, client):
        """Invalid block content is a 422."""
        page = create_page(client, "Doc")

        response = client.post(
            f"/api/v1/pages/{page['page_id']}/blocks",
            json={"type": "heading", "content": {"text": "Title", "level": 9}},
        )

        assert response.status_code == 422
        assert response.json()["error_code"] == "BLOCK_VALIDATION_ERROR"


class TestBlockRoutes:
    """Tests for synced block routes."""

    def test_mirror_follows_edit(self, client, http_notifier):
        """Editing the source updates what the mirror resolves to."""
        source_page = create_page(client, "Source")
        other_page = create_page(client, "Other")
        source = client.post(
            f"/api/v1/pages/{source_page['page_id']}/blocks",
            json={"type": "paragraph", "content": {"text": "v1"}},
        ).json()
        mirror = client.post(
            f"/api/v1/pages/{other_page['page_id']}/mirrors",
            json={"source_block_id": source["block_id"]},
        )
        assert mirror.status_code == 201
        mirror_id = mirror.json()["block_id"]

        response = client.put(f"/api/v1/blocks/{source['block_id']}/content", json={"content": {"text": "v2"}})
        assert response.status_code == 200

        resolved = client.get(f"/api/v1/blocks/{mirror_id}/resolved").json()
        assert resolved["content"] == {"text": "v2"}
        flush_events(client)
        assert "block.updated" in http_notifier.get_event_names(f"page:{other_page['page_id']}")

    def test_mirror_is_read_only(self, client):
        """Content edits on a mirror are a 409."""
        page = create_page(client, "Doc")
        source = client.post(
            f"/api/v1/pages/{page['page_id']}/blocks",
            json={"type": "paragraph", "content": {"text": "shared"}},
        ).json()
        mirror = client.post(
            f"/api/v1/pages/{page['page_id']}/mirrors",
            json={"source_block_id": source["block_id"]},
        ).json()

        response = client.put(f"/api/v1/blocks/{mirror['block_id']}/content", json={"content": {"text": "x"}})

        assert response.status_code == 409
        assert response.json()["error_code"] == "READ_ONLY_MIRROR"

    def test_delete_source_leaves_placeholder(self, client):
        """Deleting a source turns its mirror into a placeholder."""
        page = create_page(client, "Doc")
        source = client.post(
            f"/api/v1/pages/{page['page_id']}/blocks",
            json={"type": "paragraph", "content": {"text": "gone"}},
        ).json()
        mirror = client.post(
            f"/api/v1/pages/{page['page_id']}/mirrors",
            json={"source_block_id": source["block_id"]},
        ).json()

        response = client.delete(f"/api/v1/blocks/{source['block_id']}")
        assert response.json() == {"deleted_block_id": source["block_id"]}

        blocks = client.get(f"/api/v1/pages/{page['page_id']}/blocks").json()["blocks"]
        assert [b["block_id"] for b in blocks] == [mirror["block_id"]]
        assert blocks[0]["type"] == "placeholder"
        assert blocks[0]["source_block_id"] is None


class TestRelationRoutes:
    """Tests for database and relation routes."""

    def make_pair(self, client):
        projects_page = create_page(client, "Projects")
        tasks_page = create_page(client, "Tasks")
        projects = client.post("/api/v1/databases", json={"page_id": projects_page["page_id"]}).json()
        tasks = client.post("/api/v1/databases", json={"page_id": tasks_page["page_id"]}).json()
        response = client.post(
            f"/api/v1/databases/{tasks['database_id']}/properties",
            json={
                "name": "Project",
                "type": "relation",
                "relation": {"target_database_id": projects["database_id"]},
                "create_reverse": True,
                "reverse_name": "Tasks",
            },
        )
        assert response.status_code == 201
        forward = response.json()
        return projects, tasks, forward["property_id"], forward["config"]["reverse_property_id"]

    def add_row(self, client, database_id):
        response = client.post(f"/api/v1/databases/{database_id}/rows", json={})
        assert response.status_code == 201
        return response.json()

    def test_database_has_properties(self, client):
        """Databases list their title property and paired reverse."""
        projects, tasks, forward_id, reverse_id = self.make_pair(client)

        body = client.get(f"/api/v1/databases/{projects['database_id']}").json()

        assert [p["type"] for p in body["properties"]] == ["title", "relation"]
        assert body["properties"][1]["property_id"] == reverse_id
        assert body["properties"][1]["config"]["reverse_property_id"] == forward_id

    def test_link_unlink(self, client):
        """Links are mirrored and show up as back-references."""
        projects, tasks, forward_id, reverse_id = self.make_pair(client)
        project = self.add_row(client, projects["database_id"])
        task = self.add_row(client, tasks["database_id"])

        response = client.post(
            "/api/v1/relations/link",
            json={"property_id": forward_id, "source_row_id": task["row_id"], "target_row_ids": [project["row_id"]]},
        )
        assert response.status_code == 200
        assert response.json()["linked_row_ids"] == [project["row_id"]]

        refs = client.get(f"/api/v1/rows/{project['row_id']}/back-references").json()["references"]
        assert refs == [{"property_id": forward_id, "source_row_id": task["row_id"]}]

        linked = client.post(
            f"/api/v1/databases/{projects['database_id']}/linked-rows",
            json={"linked_row_ids": [project["row_id"], "missing"]},
        ).json()["rows"]
        assert [r["row_id"] for r in linked] == [project["row_id"]]

        response = client.post(
            "/api/v1/relations/unlink",
            json={"property_id": forward_id, "source_row_id": task["row_id"], "target_row_id": project["row_id"]},
        )
        assert response.json() == {"ok": True}
        assert client.get(f"/api/v1/rows/{project['row_id']}/back-references").json()["references"] == []

    def test_limit_one(self, client):
        """A second link on a limit 'one' property is a 409."""
        projects, tasks, forward_id, _ = self.make_pair(client)
        response = client.patch(f"/api/v1/properties/{forward_id}/relation", json={"limit_type": "one"})
        assert response.status_code == 200
        assert response.json()["config"]["limit_type"] == "one"
        a = self.add_row(client, projects["database_id"])
        b = self.add_row(client, projects["database_id"])
        task = self.add_row(client, tasks["database_id"])

        response = client.post(
            "/api/v1/relations/link",
            json={"property_id": forward_id, "source_row_id": task["row_id"], "target_row_ids": [a["row_id"], b["row_id"]]},
        )

        assert response.status_code == 409
        assert response.json()["error_code"] == "CARDINALITY_VIOLATION"

    def test_delete_row_and_integrity(self, client):
        """Deleting a row clears references and keeps the workspace consistent."""
        projects, tasks, forward_id, _ = self.make_pair(client)
        project = self.add_row(client, projects["database_id"])
        task = self.add_row(client, tasks["database_id"])
        client.post(
            "/api/v1/relations/link",
            json={"property_id": forward_id, "source_row_id": task["row_id"], "target_row_ids": [project["row_id"]]},
        )

        response = client.delete(f"/api/v1/rows/{project['row_id']}")
        assert response.json() == {"deleted_row_id": project["row_id"]}

        rows = client.get(f"/api/v1/databases/{tasks['database_id']}/rows").json()["rows"]
        assert rows[0]["values"][forward_id] == {"linked_row_ids": []}
        report = client.get("/api/v1/integrity")
        assert report.status_code == 200
        assert report.json()["ok"] is True

    def test_relation_cell_via_set_cell_rejected(self, client):
        """Relation cells are only written through link routes."""
        projects, tasks, forward_id, _ = self.make_pair(client)
        task = self.add_row(client, tasks["database_id"])

        response = client.put(f"/api/v1/rows/{task['row_id']}/cells/{forward_id}", json={"value": ["x"]})

        assert response.status_code == 422

    def test_rollup_route(self, client):
        """Rollup properties are created with a config and computed per row."""
        projects, tasks, forward_id, reverse_id = self.make_pair(client)
        estimate = client.post(
            f"/api/v1/databases/{tasks['database_id']}/properties",
            json={"name": "Estimate", "type": "number"},
        ).json()
        response = client.post(
            f"/api/v1/databases/{projects['database_id']}/properties",
            json={
                "name": "Total estimate",
                "type": "rollup",
                "rollup": {
                    "relation_property_id": reverse_id,
                    "target_property_id": estimate["property_id"],
                    "aggregation": "sum",
                },
            },
        )
        assert response.status_code == 201
        rollup = response.json()
        assert rollup["config"]["aggregation"] == "sum"

        project = self.add_row(client, projects["database_id"])
        for hours in (3, 5):
            task = client.post(
                f"/api/v1/databases/{tasks['database_id']}/rows",
                json={"values": {estimate["property_id"]: hours}},
            ).json()
            client.post(
                "/api/v1/relations/link",
                json={"property_id": forward_id, "source_row_id": task["row_id"], "target_row_ids": [project["row_id"]]},
            )

        response = client.get(f"/api/v1/rows/{project['row_id']}/rollups/{rollup['property_id']}")

        assert response.status_code == 200
        assert response.json() == {"row_id": project["row_id"], "property_id": rollup["property_id"], "value": 8}

    def test_rollup_requires_config(self, client):
        """A rollup property without a config is a 422."""
        projects, _, _, _ = self.make_pair(client)

        response = client.post(
            f"/api/v1/databases/{projects['database_id']}/properties",
            json={"name": "Broken", "type": "rollup"},
        )

        assert response.status_code == 422
        assert response.json()["error_code"] == "RELATION_SCHEMA_ERROR"
