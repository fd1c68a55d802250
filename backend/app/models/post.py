"""
PostSnap Backend — Post SQLAlchemy Model
==========================================

What:  ORM model representing the `posts` table.
How:   Inherits from the shared DeclarativeBase; Alembic reads this for migrations.
Who:   Written only through PostRepository, on behalf of PostService.

Table Design:
    - UUID primary key generated in Python (portable across PostgreSQL and SQLite)
    - image_url: always populated; CDN URL or placeholder URL
    - storage_file_id: provider file id; NULL when no real upload happened
    - raw_image: cached copy of the uploaded bytes, deferred so listings never load it
    - version: optimistic lock counter; every UPDATE/DELETE checks it

    Index on created_at DESC serves the newest-first listing.
"""

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import DateTime, Index, Integer, LargeBinary, String, Text, Uuid, text
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Post(Base):
    """
    A published post: title and caption plus one image reference.

    Lifecycle:
        1. Created by PostService.create_post after the image upload settles
        2. title/caption/image fields replaced by PostService.update_post
        3. Removed by PostService.delete_post (remote image retired best-effort)
    """

    __tablename__ = "posts"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )

    title: Mapped[str] = mapped_column(
        String(500),
        nullable=False,
        default="",
        server_default=text("''"),
    )

    caption: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default="",
        server_default=text("''"),
    )

    image_url: Mapped[str] = mapped_column(
        String(2048),
        nullable=False,
        comment="CDN URL from the storage provider, or a placeholder URL",
    )

    # Non-null iff the provider was configured and the last upload succeeded
    storage_file_id: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
        default=None,
        comment="Storage provider file id, used to retire the remote object",
    )

    raw_image: Mapped[Optional[bytes]] = mapped_column(
        LargeBinary,
        nullable=True,
        default=None,
        deferred=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        onupdate=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )

    version: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        server_default=text("1"),
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("idx_posts_created_at", created_at.desc()),
    )

    def __repr__(self) -> str:
        return (
            f"<Post(id={self.id}, title='{self.title}', "
            f"storage_file_id={self.storage_file_id!r}, version={self.version})>"
        )
