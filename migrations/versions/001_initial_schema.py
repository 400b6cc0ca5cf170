"""initial_schema

Revision ID: 001
Revises:
Create Date: 2026-10-19

Library schema: videos, their facets (categories, curriculums, performers)
and join tables, members, views and favorites.
For databases created with create_tables(), use 'alembic stamp 001'.
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _join_table(name: str, column: str, target: str) -> None:
    op.create_table(
        name,
        sa.Column("video_id", sa.String(36), sa.ForeignKey("videos.id", ondelete="CASCADE"), nullable=False),
        sa.Column(column, sa.String(36), sa.ForeignKey(f"{target}.id", ondelete="CASCADE"), nullable=False),
        sa.PrimaryKeyConstraint("video_id", column),
    )
    op.create_index(f"ix_{name}_{column}", name, [column])


def upgrade() -> None:
    """Create all tables for the Dojo library."""
    op.create_table(
        "categories",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("name", sa.String(100), unique=True, nullable=False),
        sa.Column("color", sa.String(20), nullable=False, server_default="#6b7280"),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True)),
    )

    # Belts; display_order is the rank
    op.create_table(
        "curriculums",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("name", sa.String(100), unique=True, nullable=False),
        sa.Column("color", sa.String(20), nullable=False, server_default="#6b7280"),
        sa.Column("display_order", sa.Integer, nullable=False, server_default="0"),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True)),
    )
    op.create_index("ix_curriculums_display_order", "curriculums", ["display_order"])

    op.create_table(
        "performers",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("name", sa.String(100), unique=True, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True)),
    )

    op.create_table(
        "videos",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("video_url", sa.String(1024), nullable=False, server_default=""),
        sa.Column("thumbnail_url", sa.String(1024), nullable=True),
        sa.Column("duration_seconds", sa.Integer, nullable=True),
        sa.Column("recorded", sa.String(255), nullable=True),
        sa.Column("is_published", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True)),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_videos_created_at", "videos", ["created_at"])
    op.create_index("ix_videos_is_published", "videos", ["is_published"])

    _join_table("video_categories", "category_id", "categories")
    _join_table("video_curriculums", "curriculum_id", "curriculums")
    _join_table("video_performers", "performer_id", "performers")

    op.create_table(
        "users",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("email", sa.String(255), unique=True, nullable=False),
        sa.Column("full_name", sa.String(255), nullable=True),
        sa.Column("role", sa.String(20), nullable=False, server_default="Student"),
        sa.Column("school", sa.String(255), nullable=True),
        sa.Column("belt_id", sa.String(36), sa.ForeignKey("curriculums.id", ondelete="SET NULL"), nullable=True),
        sa.Column("is_approved", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True)),
        sa.Column("last_login", sa.DateTime(timezone=True), nullable=True),
        sa.Column("login_count", sa.Integer, nullable=False, server_default="0"),
        sa.CheckConstraint("role IN ('Student', 'Teacher', 'Admin')", name="ck_users_role"),
    )

    op.create_table(
        "video_views",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("video_id", sa.String(36), sa.ForeignKey("videos.id", ondelete="CASCADE"), nullable=False),
        sa.Column("user_id", sa.String(36), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("viewed_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_video_views_video_id", "video_views", ["video_id"])
    op.create_index("ix_video_views_viewed_at", "video_views", ["viewed_at"])

    op.create_table(
        "user_favorites",
        sa.Column("user_id", sa.String(36), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("video_id", sa.String(36), sa.ForeignKey("videos.id", ondelete="CASCADE"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True)),
        sa.PrimaryKeyConstraint("user_id", "video_id"),
    )
    op.create_index("ix_user_favorites_video_id", "user_favorites", ["video_id"])


def downgrade() -> None:
    """Drop all tables."""
    op.drop_table("user_favorites")
    op.drop_table("video_views")
    op.drop_table("users")
    op.drop_table("video_performers")
    op.drop_table("video_curriculums")
    op.drop_table("video_categories")
    op.drop_table("videos")
    op.drop_table("performers")
    op.drop_table("curriculums")
    op.drop_table("categories")
