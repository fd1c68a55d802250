"""
PostSnap Backend — Post Service (Lifecycle Orchestrator)
==========================================================

What:  Coordinates the storage adapter and the post repository for
       create / list / get / update / delete.
How:   Stateless. Each call receives the request's AsyncSession; the storage
       adapter is injected at construction (module singleton by default).
Who:   Called by the posts route handlers.

Consistency rules:
    create   upload → insert → commit
             Upload failure: nothing written. Insert failure after a real
             upload: the remote object is reported as orphaned.
    update   [upload → ] update row → commit → retire previous remote object
             The previous object is only deleted once the row durably points
             at the new one. Upload failure leaves the row and the old object
             untouched.
    delete   delete row → commit → retire remote object
             Row removal never depends on the remote delete succeeding.

Remote delete failures never raise. They are logged at WARNING on the
`app.services.post_service` logger with event=storage.orphaned_object so
operators can find and sweep orphans.
"""

import logging
import uuid
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.exceptions import ConflictError, NotFoundError, ValidationError
from app.models.post import Post
from app.repositories.post_repository import PostId, PostRepository
from app.schemas.post import PostUpdate
from app.services.storage_base import DeleteResult, StorageAdapter
from app.services.storage_service import storage_adapter

logger = logging.getLogger(__name__)

ORPHAN_EVENT = "storage.orphaned_object"


def display_name_for(title: Optional[str], filename: Optional[str]) -> str:
    """Name used for the remote file and the placeholder text."""
    if title and title.strip():
        return title.strip()
    if filename:
        return filename
    return "image"


class PostService:
    """
    Business logic layer for post operations.

    Error Handling Strategy:
        ValidationError / NotFoundError / ConflictError are raised here.
        UpstreamError comes from the storage adapter's upload() unchanged.
        PersistenceError / ConflictError come from the repository unchanged.
    """

    def __init__(self, storage: Optional[StorageAdapter] = None):
        self.storage = storage or storage_adapter

    # ── Validation ────────────────────────────────────────────────────────

    def validate_upload(self, content: Optional[bytes], content_length: Optional[int] = None) -> bytes:
        """
        Reject missing, empty or oversized uploads before any side effect.

        Checks the declared Content-Length first, then the actual byte count.
        """
        if not content:
            raise ValidationError(
                message="No file uploaded. Send a non-empty file in the 'file' form field.",
                field="file",
            )

        max_mb = settings.max_file_size / (1024 * 1024)
        size = max(content_length or 0, len(content))
        if size > settings.max_file_size:
            raise ValidationError(
                message=f"File size ({size / (1024 * 1024):.1f}MB) exceeds maximum of {max_mb:.0f}MB.",
                field="file",
                context={"max_size_mb": max_mb, "actual_size": size},
            )
        return content

    # ── Operations ────────────────────────────────────────────────────────

    async def create_post(
        self,
        db: AsyncSession,
        content: Optional[bytes],
        title: str = "",
        caption: str = "",
        filename: Optional[str] = None,
        content_length: Optional[int] = None,
    ) -> Post:
        """
        Upload the image, then persist the post.

        Raises:
            ValidationError: missing/empty/oversized file (adapter not called)
            UpstreamError: upload failed (nothing persisted)
            PersistenceError: insert or commit failed
        """
        content = self.validate_upload(content, content_length)
        title = title or ""
        caption = caption or ""

        upload = await self.storage.upload(
            content,
            display_name_for(title, filename),
            idempotency_key=uuid.uuid4().hex,
        )

        post = Post(
            title=title,
            caption=caption,
            image_url=upload.url,
            storage_file_id=upload.file_id,
            raw_image=content if settings.retain_raw_image else None,
        )
        try:
            repo = PostRepository(db)
            post = await repo.insert(post)
            await repo.commit()
        except Exception:
            if upload.file_id:
                self._report_orphan(upload.file_id, "create", None, "post insert failed")
            raise

        logger.info(
            "Post created: %s (fileId=%s, %d bytes)",
            post.id,
            post.storage_file_id,
            len(content),
        )
        return post

    async def list_posts(self, db: AsyncSession) -> List[Post]:
        """All posts, newest first."""
        posts = await PostRepository(db).find_all()
        logger.debug("Listed %d posts", len(posts))
        return posts

    async def get_post(self, db: AsyncSession, post_id: PostId) -> Post:
        post = await PostRepository(db).find_by_id(post_id)
        if post is None:
            raise NotFoundError(resource="post", resource_id=str(post_id))
        return post

    async def update_post(
        self,
        db: AsyncSession,
        post_id: PostId,
        fields: Optional[PostUpdate] = None,
        content: Optional[bytes] = None,
        filename: Optional[str] = None,
        content_length: Optional[int] = None,
        expected_version: Optional[int] = None,
    ) -> Post:
        """
        Merge title/caption and optionally replace the image.

        Workflow with a new image:
            1. Upload the new bytes (fatal on failure; nothing changed yet)
            2. Update and commit the row with the new url/fileId
            3. Retire the previous remote object, exactly once, best-effort

        Raises:
            NotFoundError: unknown post id
            ConflictError: expected_version is stale, or a concurrent writer won
            ValidationError: a supplied file is oversized
            UpstreamError: new upload failed
            PersistenceError: update failed
        """
        repo = PostRepository(db)
        post = await repo.find_by_id(post_id)
        if post is None:
            raise NotFoundError(resource="post", resource_id=str(post_id))

        if expected_version is not None and expected_version != post.version:
            raise ConflictError(
                detail=f"expected version {expected_version}, current version {post.version}",
                context={"post_id": str(post.id)},
            )

        changes = (fields or PostUpdate()).changes()
        previous_file_id = post.storage_file_id
        new_file_id: Optional[str] = None

        if content:
            content = self.validate_upload(content, content_length)
            upload = await self.storage.upload(
                content,
                display_name_for(changes.get("title", post.title), filename),
                idempotency_key=uuid.uuid4().hex,
            )
            new_file_id = upload.file_id
            changes.update(
                image_url=upload.url,
                storage_file_id=upload.file_id,
                raw_image=content if settings.retain_raw_image else None,
            )

        try:
            updated = await repo.update(post.id, changes)
            if updated is None:
                raise NotFoundError(resource="post", resource_id=str(post_id))
            await repo.commit()
        except Exception:
            if new_file_id:
                self._report_orphan(new_file_id, "update", post.id, "post update failed")
            raise

        if content and previous_file_id and previous_file_id != new_file_id:
            result = await self.storage.delete(previous_file_id)
            self._check_delete(result, "update", updated.id)

        logger.info(
            "Post updated: %s (fields=%s, image_replaced=%s)",
            updated.id,
            sorted(changes),
            bool(content),
        )
        return updated

    async def delete_post(self, db: AsyncSession, post_id: PostId) -> uuid.UUID:
        """
        Remove the post, then retire its remote image best-effort.

        Returns:
            The deleted post's id.

        Raises:
            NotFoundError: unknown post id
            ConflictError: a concurrent writer changed the row first
            PersistenceError: delete failed
        """
        repo = PostRepository(db)
        post = await repo.delete(post_id)
        if post is None:
            raise NotFoundError(resource="post", resource_id=str(post_id))

        file_id = post.storage_file_id
        await repo.commit()

        result = await self.storage.delete(file_id)
        self._check_delete(result, "delete", post.id)

        logger.info("Post deleted: %s (remote image: %s)", post.id, result.status)
        return post.id

    # ── Orphan reporting ──────────────────────────────────────────────────

    def _check_delete(self, result: DeleteResult, operation: str, post_id: uuid.UUID) -> None:
        if result.failed:
            self._report_orphan(result.file_id, operation, post_id, result.reason)

    def _report_orphan(
        self,
        file_id: Optional[str],
        operation: str,
        post_id: Optional[uuid.UUID],
        reason: Optional[str],
    ) -> None:
        logger.warning(
            "Orphaned storage object %s after %s of post %s: %s",
            file_id,
            operation,
            post_id,
            reason,
            extra={
                "event": ORPHAN_EVENT,
                "file_id": file_id,
                "operation": operation,
                "post_id": str(post_id) if post_id else None,
                "reason": reason,
            },
        )


# ── Singleton Instance ────────────────────────────────────────────────────
post_service = PostService()
