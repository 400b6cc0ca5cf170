import uuid
from datetime import datetime, timezone

import sqlalchemy as sa
from databases import Database

from config import DATABASE_URL

# Create database instance - works with PostgreSQL or SQLite
# PostgreSQL is the default and recommended database
database = Database(DATABASE_URL)
metadata = sa.MetaData()


def new_id() -> str:
    """Primary keys are opaque UUID strings generated by the application."""
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


async def configure_database():
    """
    Configure database-specific settings after connection.

    PostgreSQL enforces foreign keys by default. SQLite needs them switched
    on per connection for the ON DELETE CASCADE rules below to apply.
    """
    if database.url.dialect == "sqlite":
        await database.execute("PRAGMA foreign_keys = ON")


categories = sa.Table(
    "categories",
    metadata,
    sa.Column("id", sa.String(36), primary_key=True, default=new_id),
    sa.Column("name", sa.String(100), unique=True, nullable=False),
    sa.Column("color", sa.String(20), nullable=False, default="#6b7280"),
    sa.Column("description", sa.Text, nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), default=utcnow),
)

# Belts/levels. display_order is the rank used by "my level" bounds.
curriculums = sa.Table(
    "curriculums",
    metadata,
    sa.Column("id", sa.String(36), primary_key=True, default=new_id),
    sa.Column("name", sa.String(100), unique=True, nullable=False),
    sa.Column("color", sa.String(20), nullable=False, default="#6b7280"),
    sa.Column("display_order", sa.Integer, nullable=False, default=0),
    sa.Column("description", sa.Text, nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), default=utcnow),
    sa.Index("ix_curriculums_display_order", "display_order"),
)

performers = sa.Table(
    "performers",
    metadata,
    sa.Column("id", sa.String(36), primary_key=True, default=new_id),
    sa.Column("name", sa.String(100), unique=True, nullable=False),
    sa.Column("created_at", sa.DateTime(timezone=True), default=utcnow),
)

videos = sa.Table(
    "videos",
    metadata,
    sa.Column("id", sa.String(36), primary_key=True, default=new_id),
    sa.Column("title", sa.String(255), nullable=False),
    sa.Column("description", sa.Text, nullable=True),
    sa.Column("video_url", sa.String(1024), nullable=False, default=""),
    sa.Column("thumbnail_url", sa.String(1024), nullable=True),
    sa.Column("duration_seconds", sa.Integer, nullable=True),
    # Free-text session label, e.g. "Spring seminar 2023". "Unset" means none.
    sa.Column("recorded", sa.String(255), nullable=True),
    sa.Column("is_published", sa.Boolean, nullable=False, default=True),
    sa.Column("created_at", sa.DateTime(timezone=True), default=utcnow),
    sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    sa.Index("ix_videos_created_at", "created_at"),
    sa.Index("ix_videos_is_published", "is_published"),
)

# Many-to-many associations between videos and their facets
video_categories = sa.Table(
    "video_categories",
    metadata,
    sa.Column("video_id", sa.String(36), sa.ForeignKey("videos.id", ondelete="CASCADE"), nullable=False),
    sa.Column("category_id", sa.String(36), sa.ForeignKey("categories.id", ondelete="CASCADE"), nullable=False),
    sa.PrimaryKeyConstraint("video_id", "category_id"),
    sa.Index("ix_video_categories_category_id", "category_id"),
)

video_curriculums = sa.Table(
    "video_curriculums",
    metadata,
    sa.Column("video_id", sa.String(36), sa.ForeignKey("videos.id", ondelete="CASCADE"), nullable=False),
    sa.Column("curriculum_id", sa.String(36), sa.ForeignKey("curriculums.id", ondelete="CASCADE"), nullable=False),
    sa.PrimaryKeyConstraint("video_id", "curriculum_id"),
    sa.Index("ix_video_curriculums_curriculum_id", "curriculum_id"),
)

video_performers = sa.Table(
    "video_performers",
    metadata,
    sa.Column("video_id", sa.String(36), sa.ForeignKey("videos.id", ondelete="CASCADE"), nullable=False),
    sa.Column("performer_id", sa.String(36), sa.ForeignKey("performers.id", ondelete="CASCADE"), nullable=False),
    sa.PrimaryKeyConstraint("video_id", "performer_id"),
    sa.Index("ix_video_performers_performer_id", "performer_id"),
)

# Students, teachers and admins. Authentication lives upstream; this table only
# carries what the library and roster need.
users = sa.Table(
    "users",
    metadata,
    sa.Column("id", sa.String(36), primary_key=True, default=new_id),
    sa.Column("email", sa.String(255), unique=True, nullable=False),
    sa.Column("full_name", sa.String(255), nullable=True),
    sa.Column(
        "role",
        sa.String(20),
        sa.CheckConstraint("role IN ('Student', 'Teacher', 'Admin')", name="ck_users_role"),
        nullable=False,
        default="Student",
    ),
    sa.Column("school", sa.String(255), nullable=True),
    sa.Column("belt_id", sa.String(36), sa.ForeignKey("curriculums.id", ondelete="SET NULL"), nullable=True),
    sa.Column("is_approved", sa.Boolean, nullable=False, default=False),
    sa.Column("created_at", sa.DateTime(timezone=True), default=utcnow),
    sa.Column("last_login", sa.DateTime(timezone=True), nullable=True),
    sa.Column("login_count", sa.Integer, nullable=False, default=0),
)

# One row per view; counts and last-viewed timestamps are aggregated from here
video_views = sa.Table(
    "video_views",
    metadata,
    sa.Column("id", sa.String(36), primary_key=True, default=new_id),
    sa.Column("video_id", sa.String(36), sa.ForeignKey("videos.id", ondelete="CASCADE"), nullable=False),
    sa.Column("user_id", sa.String(36), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
    sa.Column("viewed_at", sa.DateTime(timezone=True), nullable=False, default=utcnow),
    sa.Index("ix_video_views_video_id", "video_id"),
    sa.Index("ix_video_views_viewed_at", "viewed_at"),
)

user_favorites = sa.Table(
    "user_favorites",
    metadata,
    sa.Column("user_id", sa.String(36), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    sa.Column("video_id", sa.String(36), sa.ForeignKey("videos.id", ondelete="CASCADE"), nullable=False),
    sa.Column("created_at", sa.DateTime(timezone=True), default=utcnow),
    sa.PrimaryKeyConstraint("user_id", "video_id"),
    sa.Index("ix_user_favorites_video_id", "video_id"),
)


def create_tables(url: str = DATABASE_URL):
    """
    Create database tables directly using SQLAlchemy metadata.
    This creates all tables if they don't exist.
    """
    engine = sa.create_engine(url)
    metadata.create_all(engine)
    engine.dispose()


if __name__ == "__main__":
    create_tables()
    print("Database tables created successfully!")
