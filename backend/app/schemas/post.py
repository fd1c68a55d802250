"""
PostSnap Backend — Pydantic Request/Response Schemas
======================================================

What:  Pydantic models defining the API contract between frontend and backend.
How:   FastAPI uses these models to serialize responses and generate the
       OpenAPI documentation. Field names are snake_case in Python and
       camelCase on the wire (`image_url` → `imageUrl`).
Who:   Built by the posts routes from Post ORM objects.

Internal columns (storage_file_id, raw_image, version bookkeeping) are kept
off the list/create payloads; only the update payload exposes `version` so
clients can send it back for optimistic locking.
"""

import uuid
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from app.models.post import Post


# ══════════════════════════════════════════════════════════════════════════
# Response Models
# ══════════════════════════════════════════════════════════════════════════


class PostSummary(BaseModel):
    """Public representation of a post."""

    model_config = ConfigDict(populate_by_name=True)

    id: uuid.UUID = Field(description="Unique post identifier (UUID)")
    title: str = Field(description="Post title (may be empty)")
    caption: str = Field(description="Post caption (may be empty)")
    image_url: str = Field(
        alias="imageUrl",
        description="CDN URL of the image, or a placeholder URL",
    )
    version: Optional[int] = Field(
        default=None,
        description="Optimistic lock version; send back on update to detect concurrent edits",
    )

    @classmethod
    def from_post(cls, post: Post, include_version: bool = False) -> "PostSummary":
        return cls(
            id=post.id,
            title=post.title,
            caption=post.caption,
            image_url=post.image_url,
            version=post.version if include_version else None,
        )


class PostIdentity(BaseModel):
    """Just the id, returned after a delete."""
    id: uuid.UUID


class PostResponse(BaseModel):
    """
    What:  Single-post envelope.
    Who:   Returned by POST /create-post (201) and PUT /update-post/{id} (200).
    """
    message: str = Field(description="Human-readable success message")
    post: PostSummary


class PostListResponse(BaseModel):
    """
    What:  All posts, newest first.
    Who:   Returned by GET /posts.
    """
    message: str = Field(default="Posts retrieved successfully")
    posts: List[PostSummary] = Field(description="Posts ordered by creation time, newest first")


class PostDeletedResponse(BaseModel):
    """Returned by DELETE /delete-post/{id}."""
    message: str = Field(default="Post deleted successfully")
    post: PostIdentity


# ══════════════════════════════════════════════════════════════════════════
# Request Models
# ══════════════════════════════════════════════════════════════════════════


class PostUpdate(BaseModel):
    """
    What:  The metadata fields a client may change on an existing post.
    How:   Built from the multipart form; `None` means "leave unchanged".
           Anything else in the form is ignored, so this model is the
           whitelist of client-editable fields.
    """

    model_config = ConfigDict(extra="ignore")

    title: Optional[str] = None
    caption: Optional[str] = None

    def changes(self) -> dict:
        """Only the fields the client actually sent."""
        return self.model_dump(exclude_none=True)


# ══════════════════════════════════════════════════════════════════════════
# Error / Health Models
# ══════════════════════════════════════════════════════════════════════════


class ErrorResponse(BaseModel):
    """
    What:  Standardized error response format for all API errors.

    Example:
        {
            "message": "Failed to create post",
            "error": "ImageKit upload returned HTTP 500",
            "code": "upstream_error",
            "request_id": "550e8400"
        }
    """
    message: str = Field(description="Human-readable error description")
    error: Optional[str] = Field(default=None, description="Lower-level error detail")
    code: str = Field(description="Machine-readable error code")
    details: Optional[dict] = Field(default=None, description="Additional error context")
    request_id: Optional[str] = Field(default=None, description="Request correlation ID")


class HealthResponse(BaseModel):
    """Health check response showing service and dependency status."""
    status: str = Field(description="Overall service status: healthy, degraded, unhealthy")
    version: str = Field(description="Application version")
    database: str = Field(description="Database connectivity: connected, disconnected")
    storage: str = Field(description="Storage mode: imagekit, imagekit_circuit_open, placeholder")
    uptime_seconds: float = Field(description="Seconds since service started")
