"""
PostSnap Backend — Post Repository
====================================

What:  Durable CRUD and ordering for Post metadata.
How:   Thin layer over an AsyncSession. Writes are flushed, not committed;
       the caller decides when to call commit().
Who:   Used only by PostService.

Error translation:
    StaleDataError (version counter mismatch) → ConflictError
    any other SQLAlchemyError                → PersistenceError
"""

import logging
import uuid
from typing import Any, List, Mapping, Optional, Union

from sqlalchemy import desc, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from app.exceptions import ConflictError, PersistenceError
from app.models.post import Post

logger = logging.getLogger(__name__)

#: Columns update() may touch. Anything else is a programming error.
UPDATABLE_COLUMNS = frozenset(
    {"title", "caption", "image_url", "storage_file_id", "raw_image"}
)

PostId = Union[str, uuid.UUID]


def parse_post_id(post_id: PostId) -> Optional[uuid.UUID]:
    """UUID for `post_id`, or None when it can't name any post."""
    if isinstance(post_id, uuid.UUID):
        return post_id
    try:
        return uuid.UUID(str(post_id))
    except ValueError:
        return None


class PostRepository:
    """Post persistence bound to one session."""

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def insert(self, post: Post) -> Post:
        """Persist a new post; id, timestamps and version are assigned here."""
        try:
            self.db.add(post)
            await self.db.flush()
            await self.db.refresh(post)
        except SQLAlchemyError as e:
            raise self._wrap(e, "insert", post.id)
        logger.debug("Inserted post %s", post.id)
        return post

    async def find_all(self) -> List[Post]:
        """All posts, newest first. Ties on created_at fall back to id."""
        try:
            result = await self.db.execute(
                select(Post).order_by(desc(Post.created_at), desc(Post.id))
            )
        except SQLAlchemyError as e:
            raise self._wrap(e, "find_all")
        return list(result.scalars().all())

    async def find_by_id(self, post_id: PostId) -> Optional[Post]:
        pid = parse_post_id(post_id)
        if pid is None:
            return None
        try:
            result = await self.db.execute(select(Post).where(Post.id == pid))
        except SQLAlchemyError as e:
            raise self._wrap(e, "find_by_id", pid)
        return result.scalar_one_or_none()

    async def update(self, post_id: PostId, changes: Mapping[str, Any]) -> Optional[Post]:
        """
        Apply `changes` to a post and flush.

        Returns:
            The updated post, or None if it does not exist.

        Raises:
            ValueError: `changes` names a column outside UPDATABLE_COLUMNS
            ConflictError: another writer changed or removed the row
            PersistenceError: any other database failure
        """
        unknown = set(changes) - UPDATABLE_COLUMNS
        if unknown:
            raise ValueError(f"Columns not updatable: {sorted(unknown)}")

        post = await self.find_by_id(post_id)
        if post is None:
            return None

        for column, value in changes.items():
            setattr(post, column, value)

        try:
            await self.db.flush()
            await self.db.refresh(post)
        except SQLAlchemyError as e:
            raise self._wrap(e, "update", post.id)
        logger.debug("Updated post %s (%s) → version %d", post.id, ", ".join(sorted(changes)), post.version)
        return post

    async def delete(self, post_id: PostId) -> Optional[Post]:
        """Remove a post; returns the removed row, or None if it did not exist."""
        post = await self.find_by_id(post_id)
        if post is None:
            return None
        try:
            await self.db.delete(post)
            await self.db.flush()
        except SQLAlchemyError as e:
            raise self._wrap(e, "delete", post.id)
        logger.debug("Deleted post %s", post.id)
        return post

    async def commit(self) -> None:
        """Commit the session's transaction with the same error translation as writes."""
        try:
            await self.db.commit()
        except SQLAlchemyError as e:
            raise self._wrap(e, "commit")

    @staticmethod
    def _wrap(error: SQLAlchemyError, operation: str, post_id: Any = None) -> Exception:
        if isinstance(error, StaleDataError):
            logger.warning("Concurrent modification of post %s during %s", post_id, operation)
            return ConflictError(
                detail=str(error),
                context={"operation": operation, "post_id": str(post_id)},
            )
        logger.error(
            "Database error during post %s (post_id=%s): %s",
            operation,
            post_id,
            str(error),
            exc_info=True,
        )
        return PersistenceError(
            detail=type(error).__name__,
            context={"operation": operation, "post_id": str(post_id)},
        )
