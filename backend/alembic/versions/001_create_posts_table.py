"""Create posts table

Revision ID: 001
Revises: None
Create Date: 2026-10-17 00:00:00.000000+00:00

What:  Creates the `posts` table: title, caption, image URL, the storage
       provider's file id, an optional cached copy of the image bytes, and the
       optimistic-lock version counter.

Rollback: downgrade() drops the table (all posts lost).
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "posts",
        sa.Column(
            "id",
            postgresql.UUID(as_uuid=True),
            server_default=sa.text("gen_random_uuid()"),
            nullable=False,
        ),
        sa.Column("title", sa.String(500), nullable=False, server_default=sa.text("''")),
        sa.Column("caption", sa.Text(), nullable=False, server_default=sa.text("''")),
        sa.Column(
            "image_url",
            sa.String(2048),
            nullable=False,
            comment="CDN URL of the stored image, or a placeholder URL",
        ),
        sa.Column(
            "storage_file_id",
            sa.String(255),
            nullable=True,
            comment="Provider file id; NULL when the image is a placeholder",
        ),
        sa.Column("raw_image", sa.LargeBinary(), nullable=True),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.text("CURRENT_TIMESTAMP"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.text("CURRENT_TIMESTAMP"),
            nullable=False,
        ),
        sa.Column(
            "version",
            sa.Integer(),
            nullable=False,
            server_default=sa.text("1"),
            comment="Optimistic lock counter, bumped on every UPDATE",
        ),
        sa.PrimaryKeyConstraint("id"),
    )

    # Listing is always newest first
    op.create_index(
        "idx_posts_created_at",
        "posts",
        [sa.text("created_at DESC")],
    )


def downgrade() -> None:
    op.drop_index("idx_posts_created_at", table_name="posts")
    op.drop_table("posts")
