"""
Tests for the admin API: catalog management, the management table and the roster.
"""

import pytest
import sqlalchemy as sa

import api.admin
from api.database import video_curriculums, videos


class TestAdminAuth:
    """Tests for AdminAuthMiddleware."""

    @pytest.fixture
    def admin_secret(self, monkeypatch):
        monkeypatch.setattr(api.admin, "ADMIN_API_SECRET", "s3cret-value")
        return "s3cret-value"

    def test_missing_secret(self, seeded_db, admin_client, admin_secret):
        """Requests without the header are rejected with 401."""
        response = admin_client.get("/api/categories")
        assert response.status_code == 401
        assert response.json()["detail"] == "Admin authentication required"

    def test_wrong_secret(self, seeded_db, admin_client, admin_secret):
        """Requests with a wrong secret are rejected with 403."""
        response = admin_client.get("/api/categories", headers={"X-Admin-Secret": "nope"})
        assert response.status_code == 403
        assert response.json()["detail"] == "Invalid admin secret"

    def test_correct_secret(self, seeded_db, admin_client, admin_secret):
        """The right secret is let through."""
        response = admin_client.get("/api/categories", headers={"X-Admin-Secret": admin_secret})
        assert response.status_code == 200

    def test_health_is_open(self, seeded_db, admin_client, admin_secret):
        """Health checks never need the secret."""
        assert admin_client.get("/health").status_code == 200

    def test_no_secret_configured(self, seeded_db, admin_client):
        """Without a configured secret every request is allowed."""
        assert admin_client.get("/api/categories").status_code == 200


class TestCategories:
    def test_list_counts_unpublished(self, seeded_db, admin_client):
        """Admin counts include drafts."""
        counts = {c["name"]: c["video_count"] for c in admin_client.get("/api/categories").json()}
        assert counts == {"Kata": 3, "Sparring": 1, "Weapons": 2}

    def test_create_update_delete(self, seeded_db, admin_client):
        """Full category lifecycle."""
        response = admin_client.post("/api/categories", json={"name": "  Self Defense ", "color": "#123456"})
        assert response.status_code == 201
        created = response.json()
        assert created["name"] == "Self Defense"
        assert created["video_count"] == 0

        response = admin_client.put(f"/api/categories/{created['id']}", json={"description": "Street skills"})
        assert response.status_code == 200
        assert response.json()["name"] == "Self Defense"
        assert response.json()["description"] == "Street skills"

        assert admin_client.delete(f"/api/categories/{created['id']}").json() == {"status": "ok"}
        names = [c["name"] for c in admin_client.get("/api/categories").json()]
        assert "Self Defense" not in names

    def test_duplicate_name(self, seeded_db, admin_client):
        """Duplicate names are a conflict."""
        response = admin_client.post("/api/categories", json={"name": "Kata"})
        assert response.status_code == 409
        assert response.json()["detail"] == "Category name already exists"

    def test_invalid_color(self, seeded_db, admin_client):
        """Colors must be hex."""
        assert admin_client.post("/api/categories", json={"name": "Drills", "color": "red"}).status_code == 422

    def test_missing(self, seeded_db, admin_client):
        """Unknown ids are 404."""
        assert admin_client.put("/api/categories/cat-missing", json={"name": "X"}).status_code == 404
        assert admin_client.delete("/api/categories/cat-missing").status_code == 404

    def test_delete_detaches_videos(self, seeded_db, admin_client):
        """Deleting a category removes it from videos and the cached catalog."""
        assert [c["id"] for c in admin_client.get("/api/videos/vid-kata").json()["categories"]] == [
            "cat-kata",
            "cat-weapons",
        ]
        admin_client.delete("/api/categories/cat-weapons")
        assert [c["id"] for c in admin_client.get("/api/videos/vid-kata").json()["categories"]] == ["cat-kata"]


class TestCurriculums:
    def test_create_and_reorder(self, seeded_db, admin_client):
        """New belts slot into rank order."""
        response = admin_client.post("/api/curriculums", json={"name": "Orange Belt", "display_order": 2})
        assert response.status_code == 201
        orange = response.json()

        admin_client.put("/api/curriculums/cur-yellow", json={"display_order": 4})
        names = [c["name"] for c in admin_client.get("/api/curriculums").json()]
        assert names == ["White Belt", "Orange Belt", "Green Belt", "Yellow Belt", "Black Belt"]
        assert orange["display_order"] == 2

    def test_duplicate_name(self, seeded_db, admin_client):
        """Duplicate belt names are a conflict."""
        response = admin_client.post("/api/curriculums", json={"name": "White Belt", "display_order": 5})
        assert response.status_code == 409

    def test_delete_clears_member_belts(self, seeded_db, admin_client):
        """Members holding a deleted belt are left without one."""
        assert admin_client.delete("/api/curriculums/cur-white").status_code == 200
        students = {s["id"]: s for s in admin_client.get("/api/students").json()["students"]}
        assert students["user-student"]["belt"] is None
        assert students["user-teacher"]["belt"]["name"] == "Black Belt"


class TestPerformers:
    def test_create_rename_delete(self, seeded_db, admin_client):
        """Full performer lifecycle."""
        created = admin_client.post("/api/performers", json={"name": "Kim Park"}).json()
        renamed = admin_client.put(f"/api/performers/{created['id']}", json={"name": "Kim Park-Lee"})
        assert renamed.json()["name"] == "Kim Park-Lee"

        names = [p["name"] for p in admin_client.get("/api/performers").json()]
        assert names == ["Kim Park-Lee", "Mia Chen", "Sensei Ito"]

        assert admin_client.delete(f"/api/performers/{created['id']}").status_code == 200
        assert admin_client.delete(f"/api/performers/{created['id']}").status_code == 404

    def test_rename_to_existing(self, seeded_db, admin_client):
        """Renaming onto another performer's name is a conflict."""
        assert admin_client.put("/api/performers/perf-mia", json={"name": "Sensei Ito"}).status_code == 409


class TestVideos:
    def test_get_unpublished(self, seeded_db, admin_client):
        """Admins can see drafts."""
        response = admin_client.get("/api/videos/vid-draft")
        assert response.status_code == 200
        assert response.json()["is_published"] is False
        assert admin_client.get("/api/videos/vid-missing").status_code == 404

    def test_create_with_associations(self, seeded_db, admin_client):
        """A new video comes back with its facets resolved."""
        response = admin_client.post(
            "/api/videos",
            json={
                "title": "Knife Defense",
                "video_url": "https://cdn.example.com/knife.mp4",
                "recorded": "Fall 2024",
                "category_ids": ["cat-weapons", "cat-sparring"],
                "curriculum_ids": ["cur-black"],
                "performer_ids": ["perf-ito"],
            },
        )
        assert response.status_code == 201
        data = response.json()
        assert data["title"] == "Knife Defense"
        assert [c["name"] for c in data["categories"]] == ["Sparring", "Weapons"]
        assert data["curriculums"][0]["name"] == "Black Belt"
        assert data["performers"][0]["name"] == "Sensei Ito"
        assert data["views"] == 0

    def test_create_rejects_unknown_ids(self, seeded_db, admin_client):
        """Association ids must exist."""
        response = admin_client.post(
            "/api/videos",
            json={"title": "Nope", "video_url": "https://cdn.example.com/x.mp4", "category_ids": ["cat-nope"]},
        )
        assert response.status_code == 400
        assert response.json()["detail"] == "Unknown category id: cat-nope"

    def test_update_fields_and_associations(self, seeded_db, admin_client):
        """Partial updates leave omitted associations alone and [] clears them."""
        response = admin_client.put(
            "/api/videos/vid-draft",
            json={"title": "Published Draft", "is_published": True, "curriculum_ids": ["cur-yellow"]},
        )
        assert response.status_code == 200
        data = response.json()
        assert data["title"] == "Published Draft"
        assert data["is_published"] is True
        assert [c["id"] for c in data["categories"]] == ["cat-kata"]
        assert [c["id"] for c in data["curriculums"]] == ["cur-yellow"]

        data = admin_client.put("/api/videos/vid-draft", json={"category_ids": []}).json()
        assert data["categories"] == []
        assert [c["id"] for c in data["curriculums"]] == ["cur-yellow"]

    @pytest.fixture
    def failing_associations(self, monkeypatch):
        async def fail(video_id, **kwargs):
            raise RuntimeError("insert or update on table \"video_categories\" violates foreign key constraint")

        monkeypatch.setattr(api.admin, "replace_video_associations", fail)

    def test_create_rolls_back_when_associations_fail(self, seeded_db, admin_client, failing_associations):
        """A failed association write leaves no video row behind."""
        response = admin_client.post(
            "/api/videos",
            json={"title": "Half Written", "video_url": "https://cdn.example.com/half.mp4", "category_ids": ["cat-kata"]},
        )
        assert response.status_code == 500
        assert response.json()["detail"] == "Failed to create video"

        with seeded_db.connect() as conn:
            rows = conn.execute(sa.select(videos.c.id).where(videos.c.title == "Half Written")).all()
        assert rows == []

    def test_update_rolls_back_when_associations_fail(self, seeded_db, admin_client, failing_associations):
        """A failed association write keeps the old title and belts."""
        response = admin_client.put(
            "/api/videos/vid-draft",
            json={"title": "Half Updated", "curriculum_ids": ["cur-yellow"]},
        )
        assert response.status_code == 500

        with seeded_db.connect() as conn:
            title = conn.execute(sa.select(videos.c.title).where(videos.c.id == "vid-draft")).scalar_one()
            belts = conn.execute(
                sa.select(video_curriculums.c.curriculum_id).where(video_curriculums.c.video_id == "vid-draft")
            ).scalars().all()
        assert title == "Unpublished Draft"
        assert "cur-yellow" not in belts

    def test_update_missing(self, seeded_db, admin_client):
        """Updating an unknown video is 404."""
        assert admin_client.put("/api/videos/vid-missing", json={"title": "X"}).status_code == 404

    def test_delete(self, seeded_db, admin_client):
        """Deleting a video removes it with its views and favorites."""
        assert admin_client.delete("/api/videos/vid-sparring").json() == {"status": "ok"}
        assert admin_client.get("/api/videos/vid-sparring").status_code == 404
        students = {s["id"]: s for s in admin_client.get("/api/students").json()["students"]}
        assert students["user-teacher"]["view_count"] == 0


class TestManagementLibrary:
    def test_includes_unpublished(self, seeded_db, admin_client):
        """The management table lists every video."""
        data = admin_client.get("/api/library").json()
        assert data["scope"] == "management"
        assert data["pagination"]["total_items"] == 6
        assert "Unpublished Draft" in [v["title"] for v in data["videos"]]

    def test_filters(self, seeded_db, admin_client):
        """The management table takes the same filters as the library."""
        response = admin_client.get("/api/library", params={"filters": '["cat-kata"]'})
        assert [v["title"] for v in response.json()["videos"]] == [
            "Advanced Kata",
            "Basic Blocks",
            "Unpublished Draft",
        ]

    def test_sees_changes_immediately(self, seeded_db, admin_client):
        """Writes drop the cached catalog."""
        assert admin_client.get("/api/library").json()["pagination"]["total_items"] == 6
        admin_client.delete("/api/videos/vid-draft")
        assert admin_client.get("/api/library").json()["pagination"]["total_items"] == 5


class TestStudents:
    def test_default_roster(self, seeded_db, admin_client):
        """Members sorted by name with activity and facets."""
        data = admin_client.get("/api/students").json()
        assert [s["full_name"] for s in data["students"]] == ["Alex Student", "Jo Newbie", "Sam Teacher"]
        assert data["total_count"] == 3
        student = data["students"][0]
        assert student["view_count"] == 2
        assert student["login_count"] == 5
        assert student["belt"]["name"] == "White Belt"
        assert data["facets"]["roles"] == ["Student", "Teacher"]
        assert data["facets"]["schools"] == ["North Dojo", "South Dojo"]

    def test_filters_keep_full_facets(self, seeded_db, admin_client):
        """Filtering narrows the list but not the dropdowns."""
        data = admin_client.get("/api/students", params={"role": "Teacher"}).json()
        assert [s["id"] for s in data["students"]] == ["user-teacher"]
        assert data["total_count"] == 1
        assert data["facets"]["schools"] == ["North Dojo", "South Dojo"]

    def test_sort_and_search(self, seeded_db, admin_client):
        """Sorting by login count descending and free-text search."""
        data = admin_client.get("/api/students", params={"sort": "login_count", "order": "desc"}).json()
        assert [s["id"] for s in data["students"]] == ["user-teacher", "user-student", "user-nobelt"]

        data = admin_client.get("/api/students", params={"search": "south"}).json()
        assert [s["id"] for s in data["students"]] == ["user-nobelt"]
