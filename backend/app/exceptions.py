"""
PostSnap Backend — Custom Exception Hierarchy
===============================================

What:  Application-specific exceptions for the post lifecycle.
How:   Each exception class carries a message, an optional lower-level detail
       string and an optional context dict. Global exception handlers
       (registered in main.py) turn them into structured JSON responses.
Who:   Raised by the repository, storage adapter and post service; caught by
       the global handlers.

Exception Hierarchy:
    PostSnapError (base)
    ├── ValidationError          → 400 Bad Request (missing/empty/oversized upload)
    ├── NotFoundError            → 404 Not Found (unknown post id)
    ├── ConflictError            → 409 Conflict (stale version)
    ├── UpstreamError            → 500 (storage provider upload failure)
    │   ├── UploadRejectedError  → 500 (provider refused the upload, 4xx)
    │   └── CircuitBreakerOpenError → 500 + Retry-After
    ├── PersistenceError         → 500 (repository failure)
    └── RateLimitExceededError   → 429 Too Many Requests

Storage *delete* failures are not exceptions: the adapter reports them as a
DeleteResult and the post service logs them as orphaned objects.
"""

from typing import Any, Dict, Optional


class PostSnapError(Exception):
    """
    Base exception for all PostSnap application errors.

    Attributes:
        message:  User-facing error description (safe to return in API response)
        detail:   Lower-level error string, returned as `error` in the response
        context:  Additional debug info (logged but NOT returned to client)
    """

    code = "server_error"

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        detail: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.detail = detail
        self.context = context or {}
        super().__init__(self.message)


class ValidationError(PostSnapError):
    """
    Raised when client input fails validation.

    When:    Missing file, empty file, file over MAX_FILE_SIZE.
    HTTP:    400 Bad Request
    """

    code = "validation_error"

    def __init__(
        self,
        message: str = "Validation failed",
        field: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        if field:
            ctx["field"] = field
        super().__init__(message=message, context=ctx)
        self.field = field


class NotFoundError(PostSnapError):
    """
    Raised when a requested resource does not exist.

    When:    Update or delete of an unknown (or malformed) post id.
    HTTP:    404 Not Found
    """

    code = "not_found"

    def __init__(
        self,
        resource: str = "resource",
        resource_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        message = f"The requested {resource} was not found"
        if resource_id:
            message = f"{resource} with ID '{resource_id}' was not found"
        ctx = context or {}
        ctx["resource"] = resource
        if resource_id:
            ctx["resource_id"] = resource_id
        super().__init__(message=message, context=ctx)
        self.resource_id = resource_id


class ConflictError(PostSnapError):
    """
    Raised when a write targets a stale version of a post.

    When:    The client-supplied version does not match, or another writer
             changed/removed the row between our read and our flush.
    HTTP:    409 Conflict
    """

    code = "conflict"

    def __init__(
        self,
        message: str = "The post was modified by another request. Reload and try again.",
        detail: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, detail=detail, context=context)


class UpstreamError(PostSnapError):
    """
    Raised when the storage provider rejects or fails an upload.

    When:    After the bounded retry loop gives up, or on a malformed provider
             response. The post mutation that needed the upload does not happen.
    HTTP:    500 Internal Server Error
    """

    code = "upstream_error"

    def __init__(
        self,
        message: str = "Image upload failed",
        detail: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, detail=detail, context=context)


class UploadRejectedError(UpstreamError):
    """
    Raised when the provider answers an upload with a non-retryable 4xx.

    The provider is reachable; the request itself was refused (bad file,
    quota, credentials). Does not count against the circuit breaker.
    HTTP:    500 Internal Server Error
    """


class CircuitBreakerOpenError(UpstreamError):
    """
    Raised when the upload circuit breaker is OPEN.

    When:    After cb_failure_threshold consecutive failed uploads.
    HTTP:    500 with a Retry-After header
    """

    code = "storage_unavailable"

    def __init__(
        self,
        recovery_time: int = 60,
        context: Optional[Dict[str, Any]] = None,
    ):
        message = (
            f"Image storage is temporarily unavailable due to repeated failures. "
            f"Uploads will be retried in approximately {recovery_time} seconds."
        )
        ctx = context or {}
        ctx["recovery_time"] = recovery_time
        super().__init__(message=message, detail="circuit breaker open", context=ctx)
        self.recovery_time = recovery_time


class PersistenceError(PostSnapError):
    """
    Raised when a repository operation fails unexpectedly.

    When:    Connection lost mid-query, constraint violation, etc.
    HTTP:    500 Internal Server Error

    The response carries the generic message plus the exception type name;
    SQL text and parameters are logged server-side only.
    """

    code = "persistence_error"

    def __init__(
        self,
        message: str = "A database error occurred. Please try again later.",
        detail: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, detail=detail, context=context)


class RateLimitExceededError(PostSnapError):
    """
    Raised when a client exceeds the per-IP request rate limit.

    HTTP:    429 Too Many Requests (with Retry-After header)
    """

    code = "rate_limit_exceeded"

    def __init__(
        self,
        retry_after: int = 60,
        context: Optional[Dict[str, Any]] = None,
    ):
        message = (
            f"Rate limit exceeded. Please wait {retry_after} seconds before making more requests."
        )
        ctx = context or {}
        ctx["retry_after"] = retry_after
        super().__init__(message=message, context=ctx)
        self.retry_after = retry_after
