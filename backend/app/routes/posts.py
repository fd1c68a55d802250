"""
PostSnap Backend — Post Route Handlers
========================================

What:  POST /create-post, GET /posts, GET /posts/{id}, PUT /update-post/{id},
       DELETE /delete-post/{id}.
How:   Parses multipart form data into {title, caption, file bytes}, delegates
       to PostService, wraps the result in a {message, post(s)} envelope.
Who:   Called by the blog frontend.

Request Flow (create/update):
    1. FastAPI extracts the optional UploadFile and form fields
    2. We read the file into memory (bounded by MAX_FILE_SIZE in the service)
    3. PostService runs upload → persist [→ retire old object]
    4. Errors propagate to the global exception handlers in main.py

Form fields:
    file         image bytes (required on create, optional on update)
    title        optional string
    caption      optional string; `description` is accepted as an alias
    version      optional int on update; a stale value yields 409
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, Request, UploadFile
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db_session
from app.schemas.post import (
    ErrorResponse,
    PostDeletedResponse,
    PostIdentity,
    PostListResponse,
    PostResponse,
    PostSummary,
    PostUpdate,
)
from app.services.post_service import PostService, post_service

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Posts"])


def get_post_service() -> PostService:
    """Dependency hook; tests override it with a service bound to fake storage."""
    return post_service


def _sent_text(form, name: str) -> Optional[str]:
    """Value of a text field exactly as sent: None if absent, '' if sent empty."""
    value = form.get(name)
    return value if isinstance(value, str) else None


async def _read_upload(file: Optional[UploadFile]) -> tuple:
    """(bytes or None, filename, declared size) for an optional upload."""
    if file is None:
        return None, None, None
    try:
        content = await file.read()
    finally:
        await file.close()
    return content, file.filename or None, file.size


@router.post(
    "/create-post",
    status_code=201,
    response_model=PostResponse,
    response_model_exclude_none=True,
    responses={
        400: {"description": "Missing, empty or oversized file", "model": ErrorResponse},
        429: {"description": "Rate limit exceeded", "model": ErrorResponse},
        500: {"description": "Upload or database failure", "model": ErrorResponse},
    },
    summary="Create a post with an image",
)
async def create_post(
    file: Optional[UploadFile] = File(default=None, description="Image file (max 10MB)"),
    title: Optional[str] = Form(default=None),
    caption: Optional[str] = Form(default=None),
    description: Optional[str] = Form(default=None, description="Alias for caption"),
    db: AsyncSession = Depends(get_db_session),
    service: PostService = Depends(get_post_service),
) -> PostResponse:
    """
    Upload the image, then store the post.

    Error responses (handled by global exception handlers):
        HTTP 400: no file / empty file / too large (ValidationError)
        HTTP 500: upload failed (UpstreamError) or insert failed (PersistenceError)
    """
    content, filename, size = await _read_upload(file)
    logger.info(
        "Received create request: filename=%s, size=%d bytes",
        filename or "none",
        len(content or b""),
    )

    post = await service.create_post(
        db=db,
        content=content,
        title=title or "",
        caption=caption if caption is not None else (description or ""),
        filename=filename,
        content_length=size,
    )
    return PostResponse(message="Post created successfully", post=PostSummary.from_post(post))


@router.get(
    "/create-post",
    status_code=405,
    include_in_schema=False,
)
async def create_post_usage() -> JSONResponse:
    return JSONResponse(
        status_code=405,
        content={
            "message": "Method Not Allowed. Use POST method to create a post.",
            "code": "method_not_allowed",
            "usage": {
                "method": "POST",
                "content_type": "multipart/form-data",
                "fields": {"file": "image file (required)", "title": "string", "caption": "string"},
            },
        },
        headers={"Allow": "POST"},
    )


@router.get(
    "/posts",
    response_model=PostListResponse,
    response_model_exclude_none=True,
    responses={500: {"description": "Database failure", "model": ErrorResponse}},
    summary="List all posts, newest first",
)
async def list_posts(
    db: AsyncSession = Depends(get_db_session),
    service: PostService = Depends(get_post_service),
) -> PostListResponse:
    posts = await service.list_posts(db)
    return PostListResponse(
        message="Posts retrieved successfully",
        posts=[PostSummary.from_post(p) for p in posts],
    )


@router.get(
    "/posts/{post_id}",
    response_model=PostResponse,
    response_model_exclude_none=True,
    responses={
        404: {"description": "Post not found", "model": ErrorResponse},
        500: {"description": "Database failure", "model": ErrorResponse},
    },
    summary="Fetch one post, including its current version",
)
async def get_post(
    post_id: str,
    db: AsyncSession = Depends(get_db_session),
    service: PostService = Depends(get_post_service),
) -> PostResponse:
    post = await service.get_post(db, post_id)
    return PostResponse(
        message="Post retrieved successfully",
        post=PostSummary.from_post(post, include_version=True),
    )


@router.put(
    "/update-post/{post_id}",
    response_model=PostResponse,
    response_model_exclude_none=True,
    responses={
        400: {"description": "Oversized file", "model": ErrorResponse},
        404: {"description": "Post not found", "model": ErrorResponse},
        409: {"description": "Stale version", "model": ErrorResponse},
        500: {"description": "Upload or database failure", "model": ErrorResponse},
    },
    summary="Update a post's title, caption and/or image",
)
async def update_post(
    post_id: str,
    request: Request,
    file: Optional[UploadFile] = File(default=None, description="Replacement image (optional)"),
    title: Optional[str] = Form(default=None),
    caption: Optional[str] = Form(default=None),
    description: Optional[str] = Form(default=None, description="Alias for caption"),
    version: Optional[int] = Form(default=None, description="Version the client last saw"),
    db: AsyncSession = Depends(get_db_session),
    service: PostService = Depends(get_post_service),
) -> PostResponse:
    """
    Merge the supplied fields; replace the image when a non-empty file is sent.

    A field sent empty clears it; a field not sent is left unchanged.

    Args:
        post_id: Kept as a plain string so a malformed id is a 404,
                 like any other id that names no post.
    """
    content, filename, size = await _read_upload(file)

    # FastAPI turns an empty Form value into None; the cached raw form keeps "".
    form = await request.form()
    title = _sent_text(form, "title")
    caption = _sent_text(form, "caption")
    if caption is None:
        caption = _sent_text(form, "description")
    fields = PostUpdate(title=title, caption=caption)

    post = await service.update_post(
        db=db,
        post_id=post_id,
        fields=fields,
        content=content or None,
        filename=filename,
        content_length=size,
        expected_version=version,
    )
    return PostResponse(
        message="Post updated successfully",
        post=PostSummary.from_post(post, include_version=True),
    )


@router.delete(
    "/delete-post/{post_id}",
    response_model=PostDeletedResponse,
    responses={
        404: {"description": "Post not found", "model": ErrorResponse},
        500: {"description": "Database failure", "model": ErrorResponse},
    },
    summary="Delete a post and retire its image",
)
async def delete_post(
    post_id: str,
    db: AsyncSession = Depends(get_db_session),
    service: PostService = Depends(get_post_service),
) -> PostDeletedResponse:
    """Remote image removal is best-effort and never fails this request."""
    deleted_id = await service.delete_post(db, post_id)
    return PostDeletedResponse(
        message="Post deleted successfully",
        post=PostIdentity(id=deleted_id),
    )
