"""Integration tests for the HTTP routes.

Tests cover:
- Viewer header handling (health is public, everything else needs a viewer)
- Visibility point, excluded-ids and count queries
- Admin restriction rule CRUD and kind validation
- Viewer hide list CRUD, bulk hide and clear-all
- Admin recompute and stats endpoints
- The internal catalog sync endpoint and its header guard
"""

import pytest
from fastapi.testclient import TestClient

from shroud.api.deps import get_db
from shroud.app import create_app
from shroud.auth.middleware import INTERNAL_HEADER, ViewerMiddleware
from tests.helpers import admin_headers, viewer_headers


def restrict_tag(client: TestClient, user_id: int, *tag_ids: str):
    return client.put(
        f"/admin/users/{user_id}/restrictions/tag",
        json={"mode": "EXCLUDE", "entity_ids": list(tag_ids)},
        headers=admin_headers(),
    )


class TestViewerHeaders:
    """Tests for viewer identity on requests."""

    def test_health_needs_no_viewer(self, client):
        """Health check is public."""
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"data": {"status": "ok"}}

    def test_missing_viewer_is_401(self, client):
        """A request without X-Viewer-Id is rejected."""
        response = client.get("/visibility/scene/sc1")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "E_UNAUTHENTICATED"

    def test_non_numeric_viewer_is_401(self, client):
        """A viewer id that is not an integer is rejected."""
        response = client.get("/visibility/scene/sc1", headers={"X-Viewer-Id": "bob"})
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "E_UNAUTHENTICATED"

    def test_unknown_route_is_404(self, client):
        """Unknown paths use the error envelope."""
        response = client.get("/nope", headers=viewer_headers(2))
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "E_NOT_FOUND"


class TestVisibilityRoutes:
    """Tests for the viewer visibility queries."""

    def test_restricted_tag_hides_studio_content(self, client):
        """A studio carrying an excluded tag takes its scene with it."""
        assert restrict_tag(client, 2, "t123").status_code == 200

        response = client.get("/visibility/scene/sc1", headers=viewer_headers(2))
        assert response.status_code == 200
        assert response.json()["data"] == {"kind": "scene", "entity_id": "sc1", "visible": False}

        response = client.get("/visibility/scene/sc2", headers=viewer_headers(2))
        assert response.json()["data"]["visible"] is True

    def test_excluded_ids(self, client):
        """The excluded route lists hidden ids of one kind."""
        restrict_tag(client, 2, "t123")
        response = client.get("/visibility/scene/excluded", headers=viewer_headers(2))
        assert response.status_code == 200
        assert response.json()["data"] == {"kind": "scene", "ids": ["sc1"]}

    def test_visible_count(self, client):
        """A performer left without visible scenes drops out of the count."""
        restrict_tag(client, 2, "t123")
        response = client.get("/visibility/performer/count", headers=viewer_headers(2))
        assert response.status_code == 200
        assert response.json()["data"] == {"kind": "performer", "visible_count": 1}

    def test_unrestricted_user_sees_everything(self, client):
        """Other users are unaffected by a user's rules."""
        restrict_tag(client, 2, "t123")
        response = client.get("/visibility/scene/sc1", headers=viewer_headers(3))
        assert response.json()["data"]["visible"] is True

    def test_unknown_kind_is_400(self, client):
        """Only known entity kinds are accepted."""
        response = client.get("/visibility/movie/m1", headers=viewer_headers(2))
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "E_INVALID_KIND"

    def test_id_missing_from_catalog_is_not_visible(self, client):
        """An id the published catalog does not contain reads as not visible."""
        response = client.get("/visibility/scene/sc-new", headers=viewer_headers(3))
        assert response.status_code == 200
        assert response.json()["data"] == {"kind": "scene", "entity_id": "sc-new", "visible": False}


class TestRestrictionRoutes:
    """Tests for admin restriction rule endpoints."""

    def test_non_admin_is_403(self, client):
        """Viewers without the admin role cannot manage rules."""
        response = client.put(
            "/admin/users/2/restrictions/tag",
            json={"mode": "EXCLUDE", "entity_ids": ["t123"]},
            headers=viewer_headers(2),
        )
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "E_ADMIN_ONLY"

    def test_put_returns_rule(self, client):
        """PUT replies with the stored rule, ids sorted."""
        response = restrict_tag(client, 2, "t5", "t123")
        assert response.status_code == 200
        assert response.json()["data"] == {
            "user_id": 2,
            "kind": "tag",
            "mode": "EXCLUDE",
            "entity_ids": ["t123", "t5"],
        }

    def test_scene_rule_is_rejected(self, client):
        """Scenes are not a rule kind."""
        response = client.put(
            "/admin/users/2/restrictions/scene",
            json={"mode": "EXCLUDE", "entity_ids": ["sc1"]},
            headers=admin_headers(),
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "E_INVALID_KIND"

    def test_invalid_mode_is_400(self, client):
        """An unknown mode fails validation."""
        response = client.put(
            "/admin/users/2/restrictions/tag",
            json={"mode": "MAYBE", "entity_ids": []},
            headers=admin_headers(),
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "E_INVALID_REQUEST"

    def test_list_rules(self, client):
        """GET lists the user's rules."""
        restrict_tag(client, 2, "t123")
        response = client.get("/admin/users/2/restrictions", headers=admin_headers())
        assert response.status_code == 200
        data = response.json()["data"]
        assert [rule["kind"] for rule in data] == ["tag"]

    def test_delete_rule_restores_visibility(self, client):
        """Clearing a rule makes its content visible again."""
        restrict_tag(client, 2, "t123")
        client.get("/visibility/scene/sc1", headers=viewer_headers(2))

        response = client.delete("/admin/users/2/restrictions/tag", headers=admin_headers())
        assert response.status_code == 200

        response = client.get("/visibility/scene/sc1", headers=viewer_headers(2))
        assert response.json()["data"]["visible"] is True

    def test_delete_missing_rule_is_404(self, client):
        """Clearing a rule that does not exist is a 404."""
        response = client.delete("/admin/users/2/restrictions/studio", headers=admin_headers())
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "E_RULE_NOT_FOUND"

    def test_malformed_json_is_400(self, client):
        """A body that is not JSON is rejected before the route runs."""
        response = client.put(
            "/admin/users/2/restrictions/tag",
            content=b"{not json",
            headers={**admin_headers(), "Content-Type": "application/json"},
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "E_INVALID_REQUEST"


class TestHiddenRoutes:
    """Tests for the viewer hide list."""

    def test_hide_is_idempotent(self, client):
        """Hiding twice reports no change the second time."""
        first = client.put("/hidden/scene/sc2", headers=viewer_headers(2))
        assert first.status_code == 200
        assert first.json()["data"] == {
            "kind": "scene",
            "entity_id": "sc2",
            "hidden": True,
            "changed": True,
            "applied": True,
        }

        second = client.put("/hidden/scene/sc2", headers=viewer_headers(2))
        assert second.json()["data"]["changed"] is False

    def test_hidden_entity_is_not_visible(self, client):
        """A hidden scene is excluded for the viewer only."""
        client.put("/hidden/scene/sc2", headers=viewer_headers(2))

        response = client.get("/visibility/scene/sc2", headers=viewer_headers(2))
        assert response.json()["data"]["visible"] is False
        response = client.get("/visibility/scene/sc2", headers=viewer_headers(3))
        assert response.json()["data"]["visible"] is True

    def test_list_hidden(self, client):
        """GET /hidden lists the viewer's hides, optionally by kind."""
        client.put("/hidden/scene/sc2", headers=viewer_headers(2))
        client.put("/hidden/performer/p1", headers=viewer_headers(2))

        response = client.get("/hidden", headers=viewer_headers(2))
        assert response.status_code == 200
        assert {(e["kind"], e["entity_id"]) for e in response.json()["data"]} == {
            ("scene", "sc2"),
            ("performer", "p1"),
        }

        response = client.get("/hidden?kind=performer", headers=viewer_headers(2))
        assert [e["entity_id"] for e in response.json()["data"]] == ["p1"]

    def test_unhide(self, client):
        """DELETE removes the hide and makes the entity visible again."""
        client.put("/hidden/scene/sc2", headers=viewer_headers(2))
        client.get("/visibility/scene/sc2", headers=viewer_headers(2))

        response = client.delete("/hidden/scene/sc2", headers=viewer_headers(2))
        assert response.status_code == 200
        assert response.json()["data"]["hidden"] is False

        response = client.get("/visibility/scene/sc2", headers=viewer_headers(2))
        assert response.json()["data"]["visible"] is True

    def test_unhide_not_hidden_is_404(self, client):
        """Unhiding something that is not hidden is a 404."""
        response = client.delete("/hidden/scene/sc2", headers=viewer_headers(2))
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "E_HIDDEN_ENTITY_NOT_FOUND"

    def test_bulk_hide(self, client):
        """POST /hidden/bulk hides every entry and skips those already hidden."""
        client.put("/hidden/scene/sc1", headers=viewer_headers(2))

        response = client.post(
            "/hidden/bulk",
            json={
                "entities": [
                    {"kind": "scene", "entity_id": "sc1"},
                    {"kind": "scene", "entity_id": "sc2"},
                    {"kind": "scene", "entity_id": "sc2"},
                ]
            },
            headers=viewer_headers(2),
        )
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["requested"] == 3
        assert [(e["kind"], e["entity_id"]) for e in data["hidden"]] == [("scene", "sc2")]
        assert data["already_hidden"] == 2
        assert data["applied"] is True

        for scene_id in ("sc1", "sc2"):
            response = client.get(f"/visibility/scene/{scene_id}", headers=viewer_headers(2))
            assert response.json()["data"]["visible"] is False
        response = client.get("/visibility/performer/count", headers=viewer_headers(2))
        assert response.json()["data"]["visible_count"] == 0

    def test_bulk_hide_after_cached_read(self, client):
        """A bulk hide updates exclusions that were already cached."""
        client.get("/visibility/scene/sc2", headers=viewer_headers(2))

        client.post(
            "/hidden/bulk",
            json={"entities": [{"kind": "performer", "entity_id": "p2"}]},
            headers=viewer_headers(2),
        )

        response = client.get("/visibility/performer/p2", headers=viewer_headers(2))
        assert response.json()["data"]["visible"] is False
        response = client.get("/visibility/performer/p2", headers=viewer_headers(3))
        assert response.json()["data"]["visible"] is True

    def test_bulk_hide_empty_list_is_400(self, client):
        """An empty entities array is rejected."""
        response = client.post("/hidden/bulk", json={"entities": []}, headers=viewer_headers(2))
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "E_INVALID_REQUEST"

    def test_bulk_hide_missing_entities_is_400(self, client):
        """A body without an entities array is rejected."""
        response = client.post("/hidden/bulk", json={}, headers=viewer_headers(2))
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "E_INVALID_REQUEST"

    def test_bulk_hide_unknown_kind_hides_nothing(self, client):
        """One unknown kind rejects the whole request."""
        response = client.post(
            "/hidden/bulk",
            json={
                "entities": [
                    {"kind": "scene", "entity_id": "sc2"},
                    {"kind": "movie", "entity_id": "m1"},
                ]
            },
            headers=viewer_headers(2),
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "E_INVALID_KIND"

        response = client.get("/hidden", headers=viewer_headers(2))
        assert response.json()["data"] == []

    def test_unhide_all(self, client):
        """DELETE /hidden/all clears the hide list and restores visibility."""
        client.put("/hidden/scene/sc2", headers=viewer_headers(2))
        client.put("/hidden/performer/p1", headers=viewer_headers(2))
        client.put("/hidden/scene/sc1", headers=viewer_headers(3))
        client.get("/visibility/scene/sc2", headers=viewer_headers(2))

        response = client.delete("/hidden/all", headers=viewer_headers(2))
        assert response.status_code == 200
        assert response.json()["data"] == {"kind": None, "unhidden": 2, "applied": True}

        assert client.get("/hidden", headers=viewer_headers(2)).json()["data"] == []
        response = client.get("/visibility/scene/sc2", headers=viewer_headers(2))
        assert response.json()["data"]["visible"] is True
        response = client.get("/visibility/performer/p1", headers=viewer_headers(2))
        assert response.json()["data"]["visible"] is True
        response = client.get("/visibility/scene/sc1", headers=viewer_headers(3))
        assert response.json()["data"]["visible"] is False

    def test_unhide_all_of_one_kind(self, client):
        """?kind= limits the clear to one kind."""
        client.put("/hidden/scene/sc2", headers=viewer_headers(2))
        client.put("/hidden/performer/p1", headers=viewer_headers(2))

        response = client.delete("/hidden/all?kind=performer", headers=viewer_headers(2))
        assert response.status_code == 200
        assert response.json()["data"] == {"kind": "performer", "unhidden": 1, "applied": True}

        response = client.get("/hidden", headers=viewer_headers(2))
        assert [(e["kind"], e["entity_id"]) for e in response.json()["data"]] == [
            ("scene", "sc2")
        ]
        response = client.get("/visibility/scene/sc2", headers=viewer_headers(2))
        assert response.json()["data"]["visible"] is False

    def test_unhide_all_with_nothing_hidden(self, client):
        """Clearing an empty hide list succeeds with nothing removed."""
        response = client.delete("/hidden/all", headers=viewer_headers(2))
        assert response.status_code == 200
        assert response.json()["data"]["unhidden"] == 0

    def test_unhide_all_unknown_kind_is_400(self, client):
        response = client.delete("/hidden/all?kind=movie", headers=viewer_headers(2))
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "E_INVALID_KIND"


class TestExclusionAdminRoutes:
    """Tests for admin recompute and stats."""

    def test_recompute_user(self, client):
        """Recompute reports the version and number of exclusion records."""
        restrict_tag(client, 2, "t123")
        response = client.post("/admin/exclusions/recompute/2", headers=admin_headers())
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["user_id"] == 2
        assert data["version"] == 1
        assert data["excluded"] == 4
        assert data["fingerprint"]

    def test_recompute_all(self, client):
        """Recompute-all covers every user on the roster."""
        restrict_tag(client, 2, "t123")
        response = client.post("/admin/exclusions/recompute-all", headers=admin_headers())
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["success"] >= 1
        assert data["failed"] == 0
        assert data["errors"] == []

    def test_stats(self, client):
        """Stats aggregate cached exclusions by kind and reason."""
        restrict_tag(client, 2, "t123")
        client.get("/visibility/scene/sc1", headers=viewer_headers(2))

        response = client.get("/admin/exclusions/stats", headers=admin_headers())
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["version"] == 1
        assert data["by_kind"]["tag"] == {"restricted": 1}
        assert data["by_kind"]["performer"] == {"empty": 1}

    def test_recompute_requires_admin(self, client):
        response = client.post("/admin/exclusions/recompute/2", headers=viewer_headers(2))
        assert response.status_code == 403


class TestInternalRoutes:
    """Tests for the internal catalog sync endpoint."""

    def test_sync_without_secret_is_403(self, client):
        """Internal routes need the internal header even with a viewer."""
        response = client.post("/internal/catalog/sync-complete", headers=viewer_headers(2))
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "E_INTERNAL_ONLY"

    @pytest.fixture
    def internal_client(self, app, sql_service):
        internal_app = create_app(skip_viewer_middleware=True, visibility_service=sql_service)
        internal_app.dependency_overrides[get_db] = app.dependency_overrides[get_db]
        internal_app.add_middleware(
            ViewerMiddleware, requires_internal_header=False, internal_secret="s3cret"
        )
        with TestClient(internal_app) as client:
            yield client

    def test_sync_publishes_next_version(self, internal_client):
        """A completed sync publishes the catalog as the next graph version."""
        response = internal_client.post(
            "/internal/catalog/sync-complete", headers={INTERNAL_HEADER: "s3cret"}
        )
        assert response.status_code == 200
        assert response.json()["data"] == {"version": 2}

    def test_sync_with_wrong_secret_is_403(self, internal_client):
        response = internal_client.post(
            "/internal/catalog/sync-complete", headers={INTERNAL_HEADER: "guess"}
        )
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "E_INTERNAL_ONLY"
