"""
Pytest fixtures for Dojo tests.

Unit tests build catalogs in memory. API tests run against a temporary SQLite
file that is recreated for every test and seeded through a synchronous
SQLAlchemy engine; the apps connect to it through their own lifespan.
"""

import os
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import AsyncGenerator

import pytest
import sqlalchemy as sa
from databases import Database

# Set up the test environment BEFORE importing config
_test_temp_dir = tempfile.mkdtemp()
TEST_DB_PATH = Path(_test_temp_dir) / "dojo_test.db"
os.environ["DOJO_TEST_MODE"] = "1"
os.environ["DOJO_DATABASE_URL"] = f"sqlite:///{TEST_DB_PATH}"
os.environ["DOJO_ADMIN_API_SECRET"] = ""
os.environ["DOJO_SNAPSHOT_CACHE_STORAGE_URL"] = "memory://"
os.environ["DOJO_CLI_PREFERENCES_PATH"] = str(Path(_test_temp_dir) / "preferences.json")

from api.database import (  # noqa: E402
    categories,
    configure_database,
    curriculums,
    database,
    metadata,
    performers,
    user_favorites,
    users,
    video_categories,
    video_curriculums,
    video_performers,
    video_views,
    videos,
)
from api.models import CatalogSnapshot, Category, Curriculum, Performer, Student, Video  # noqa: E402
from config import DATABASE_URL  # noqa: E402

BASE_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)

# ============================================================================
# Sample catalog, shared by the in-memory builders and the database seed
# ============================================================================

CATEGORIES = [
    {"id": "cat-kata", "name": "Kata", "color": "#dc2626"},
    {"id": "cat-sparring", "name": "Sparring", "color": "#2563eb"},
    {"id": "cat-weapons", "name": "Weapons", "color": "#16a34a"},
]

CURRICULUMS = [
    {"id": "cur-white", "name": "White Belt", "display_order": 1, "color": "#ffffff"},
    {"id": "cur-yellow", "name": "Yellow Belt", "display_order": 2, "color": "#facc15"},
    {"id": "cur-green", "name": "Green Belt", "display_order": 3, "color": "#22c55e"},
    {"id": "cur-black", "name": "Black Belt", "display_order": 10, "color": "#000000"},
]

PERFORMERS = [
    {"id": "perf-ito", "name": "Sensei Ito"},
    {"id": "perf-mia", "name": "Mia Chen"},
]

VIDEOS = [
    {
        "id": "vid-blocks",
        "title": "Basic Blocks",
        "description": "Fundamental blocking techniques",
        "recorded": "Spring 2023",
        "days": 1,
        "categories": ["cat-kata"],
        "curriculums": ["cur-white"],
        "performers": ["perf-ito"],
    },
    {
        "id": "vid-kata",
        "title": "Advanced Kata",
        "description": "Forms for green belts",
        "recorded": "Summer 2023",
        "days": 2,
        "categories": ["cat-kata", "cat-weapons"],
        "curriculums": ["cur-green"],
        "performers": ["perf-mia"],
    },
    {
        "id": "vid-sparring",
        "title": "Sparring Drills",
        "description": None,
        "recorded": None,
        "days": 3,
        "categories": ["cat-sparring"],
        "curriculums": ["cur-yellow"],
        "performers": ["perf-ito", "perf-mia"],
    },
    {
        "id": "vid-staff",
        "title": "Bo Staff Forms",
        "description": None,
        "recorded": "Unset",
        "days": 4,
        "categories": ["cat-weapons"],
        "curriculums": ["cur-black"],
        "performers": ["perf-ito"],
    },
    {
        "id": "vid-warmup",
        "title": "Warmup Routine",
        "description": None,
        "recorded": None,
        "days": 5,
        "categories": [],
        "curriculums": [],
        "performers": [],
    },
    {
        "id": "vid-draft",
        "title": "Unpublished Draft",
        "description": None,
        "recorded": None,
        "days": 6,
        "published": False,
        "categories": ["cat-kata"],
        "curriculums": [],
        "performers": [],
    },
]

USERS = [
    {
        "id": "user-student",
        "email": "alex@example.com",
        "full_name": "Alex Student",
        "role": "Student",
        "school": "North Dojo",
        "belt_id": "cur-white",
        "login_count": 5,
        "last_login_days": 10,
    },
    {
        "id": "user-teacher",
        "email": "sam@example.com",
        "full_name": "Sam Teacher",
        "role": "Teacher",
        "school": "North Dojo",
        "belt_id": "cur-black",
        "login_count": 20,
        "last_login_days": 12,
    },
    {
        "id": "user-nobelt",
        "email": "jo@example.com",
        "full_name": "Jo Newbie",
        "role": "Student",
        "school": "South Dojo",
        "belt_id": None,
        "login_count": 0,
        "last_login_days": None,
    },
]

# (video_id, user_id)
VIEWS = [
    ("vid-sparring", "user-student"),
    ("vid-sparring", "user-teacher"),
    ("vid-sparring", None),
    ("vid-blocks", "user-student"),
]

FAVORITES = [("user-student", "vid-kata")]

PUBLISHED_TITLES = ["Advanced Kata", "Basic Blocks", "Bo Staff Forms", "Sparring Drills", "Warmup Routine"]


def build_snapshot(include_unpublished: bool = False) -> CatalogSnapshot:
    """The sample catalog as an annotated snapshot, without a database."""
    category_map = {c["id"]: Category(**c) for c in CATEGORIES}
    curriculum_map = {c["id"]: Curriculum(**c) for c in CURRICULUMS}
    performer_map = {p["id"]: Performer(**p) for p in PERFORMERS}

    view_counts = {}
    for video_id, _ in VIEWS:
        view_counts[video_id] = view_counts.get(video_id, 0) + 1

    built = []
    for v in VIDEOS:
        published = v.get("published", True)
        if not published and not include_unpublished:
            continue
        built.append(
            Video(
                id=v["id"],
                title=v["title"],
                description=v["description"],
                recorded=v["recorded"],
                is_published=published,
                created_at=BASE_TIME + timedelta(days=v["days"]),
                views=view_counts.get(v["id"], 0),
                categories=tuple(category_map[i] for i in v["categories"]),
                curriculums=tuple(curriculum_map[i] for i in v["curriculums"]),
                performers=tuple(performer_map[i] for i in v["performers"]),
            )
        )

    return CatalogSnapshot(
        videos=tuple(built),
        categories=tuple(category_map.values()),
        curriculums=tuple(curriculum_map.values()),
        performers=tuple(performer_map.values()),
        loaded_at=BASE_TIME,
    )


def build_student(user_id: str) -> Student:
    row = next(u for u in USERS if u["id"] == user_id)
    belt = None
    if row["belt_id"]:
        belt = Curriculum(**next(c for c in CURRICULUMS if c["id"] == row["belt_id"]))
    return Student(
        id=row["id"],
        email=row["email"],
        full_name=row["full_name"],
        role=row["role"],
        school=row["school"],
        belt=belt,
        is_approved=True,
        created_at=BASE_TIME,
        login_count=row["login_count"],
        last_login=BASE_TIME + timedelta(days=row["last_login_days"]) if row["last_login_days"] else None,
    )


def seed_catalog(engine) -> None:
    """Insert the sample catalog into a freshly created database."""
    with engine.begin() as conn:
        for c in CATEGORIES:
            conn.execute(categories.insert().values(created_at=BASE_TIME, **c))
        for c in CURRICULUMS:
            conn.execute(curriculums.insert().values(created_at=BASE_TIME, **c))
        for p in PERFORMERS:
            conn.execute(performers.insert().values(created_at=BASE_TIME, **p))

        for v in VIDEOS:
            conn.execute(
                videos.insert().values(
                    id=v["id"],
                    title=v["title"],
                    description=v["description"],
                    video_url=f"https://cdn.example.com/{v['id']}.mp4",
                    recorded=v["recorded"],
                    is_published=v.get("published", True),
                    created_at=BASE_TIME + timedelta(days=v["days"]),
                )
            )
            for category_id in v["categories"]:
                conn.execute(video_categories.insert().values(video_id=v["id"], category_id=category_id))
            for curriculum_id in v["curriculums"]:
                conn.execute(video_curriculums.insert().values(video_id=v["id"], curriculum_id=curriculum_id))
            for performer_id in v["performers"]:
                conn.execute(video_performers.insert().values(video_id=v["id"], performer_id=performer_id))

        for u in USERS:
            conn.execute(
                users.insert().values(
                    id=u["id"],
                    email=u["email"],
                    full_name=u["full_name"],
                    role=u["role"],
                    school=u["school"],
                    belt_id=u["belt_id"],
                    is_approved=True,
                    created_at=BASE_TIME,
                    login_count=u["login_count"],
                    last_login=BASE_TIME + timedelta(days=u["last_login_days"]) if u["last_login_days"] else None,
                )
            )

        for index, (video_id, user_id) in enumerate(VIEWS):
            conn.execute(
                video_views.insert().values(
                    id=f"view-{index}",
                    video_id=video_id,
                    user_id=user_id,
                    viewed_at=BASE_TIME + timedelta(days=20, hours=index),
                )
            )

        for user_id, video_id in FAVORITES:
            conn.execute(user_favorites.insert().values(user_id=user_id, video_id=video_id, created_at=BASE_TIME))


# ============================================================================
# In-memory fixtures
# ============================================================================


@pytest.fixture
def catalog_snapshot() -> CatalogSnapshot:
    """Published part of the sample catalog."""
    return build_snapshot()


@pytest.fixture
def make_student():
    """Build one of the sample members by id."""
    return build_student


@pytest.fixture
def make_video():
    """Factory for one-off videos in unit tests."""

    def _make(video_id="v1", title="Video", **kwargs) -> Video:
        return Video(id=video_id, title=title, **kwargs)

    return _make


# ============================================================================
# Database fixtures
# ============================================================================


@pytest.fixture(scope="function")
def test_db_url() -> str:
    """Recreate every table in the test database."""
    engine = sa.create_engine(DATABASE_URL)
    metadata.drop_all(engine)
    metadata.create_all(engine)
    engine.dispose()
    return DATABASE_URL


@pytest.fixture(scope="function")
def db_engine(test_db_url: str):
    engine = sa.create_engine(test_db_url)
    yield engine
    engine.dispose()


@pytest.fixture(scope="function")
def seeded_db(db_engine):
    """Database holding the sample catalog. Returns the engine for extra inserts and checks."""
    seed_catalog(db_engine)
    return db_engine


@pytest.fixture(scope="function")
async def test_database(seeded_db) -> AsyncGenerator[Database, None]:
    """The application's database object, connected to the seeded test database."""
    await database.connect()
    await configure_database()
    yield database
    await database.disconnect()


# ============================================================================
# Test Client Fixtures
# ============================================================================


@pytest.fixture(scope="function")
def public_client(test_db_url: str):
    """
    Test client for the public API with a fresh catalog fetcher.
    The app manages its own database connection through its lifespan.
    """
    from fastapi.testclient import TestClient

    from api.library_service import create_catalog_fetcher
    from api.public import app

    app.state.catalog_fetcher = create_catalog_fetcher(storage_url="memory://")
    with TestClient(app, raise_server_exceptions=True) as client:
        yield client
    app.state.catalog_fetcher = None


@pytest.fixture(scope="function")
def admin_client(test_db_url: str):
    """Test client for the admin API with a fresh catalog fetcher."""
    from fastapi.testclient import TestClient

    from api.admin import app
    from api.library_service import create_catalog_fetcher

    app.state.catalog_fetcher = create_catalog_fetcher(storage_url="memory://")
    with TestClient(app, raise_server_exceptions=True) as client:
        yield client
    app.state.catalog_fetcher = None
