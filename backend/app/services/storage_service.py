"""
PostSnap Backend — Image Storage Service
==========================================

What:  Storage adapters for post images: ImageKit (real provider) and a
       placeholder fallback used when ImageKit is not configured.
How:   build_storage_adapter() picks the variant once, from an explicit
       StorageConfig. Call sites only ever see a StorageAdapter.
Who:   Instantiated once at import; used by PostService for every mutation.

Resilience Strategy (ImageKit uploads):
    1. Tenacity retry with exponential backoff + jitter for transport errors,
       HTTP 429 and HTTP 5xx
    2. Idempotent retries: every logical upload has a key that becomes the
       remote file name, uploaded with useUniqueFileName=false and
       overwriteFile=true, so a retried attempt replaces rather than duplicates
    3. Circuit breaker: after repeated failed uploads, fail fast for a while
    4. Deletes are single-shot and never raise; the outcome is a DeleteResult

ImageKit REST endpoints used:
    POST   {upload_url}                  multipart upload → {fileId, url, ...}
    DELETE {api_url}/files/{fileId}      → 204 No Content
    Both authenticate with HTTP Basic, private key as username, empty password.
"""

import logging
import re
import time
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional
from urllib.parse import quote

import httpx
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from app.config import Settings, settings
from app.exceptions import CircuitBreakerOpenError, UploadRejectedError, UpstreamError
from app.services.storage_base import DeleteResult, StorageAdapter, UploadResult

logger = logging.getLogger(__name__)

# ImageKit accepts letters, digits, '.', '-' and '_' in file names
_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9._-]+")
_MAX_NAME_LENGTH = 100


def placeholder_url(base_url: str, display_name: Optional[str]) -> str:
    """Deterministic placeholder image URL carrying `display_name` as its text."""
    # Same escaping as JavaScript's encodeURIComponent
    encoded = quote(display_name or "image", safe="!'()*")
    return f"{base_url}?text={encoded}"


@dataclass(frozen=True)
class StorageConfig:
    """
    Everything ImageKitStorage needs to talk to the provider.

    Built by from_settings(), which returns None unless all three secrets
    are present.
    """

    public_key: str
    private_key: str
    url_endpoint: str
    upload_url: str = "https://upload.imagekit.io/api/v1/files/upload"
    api_url: str = "https://api.imagekit.io/v1"
    folder: str = "/posts"
    timeout: float = 30.0

    @classmethod
    def from_settings(cls, cfg: Settings) -> Optional["StorageConfig"]:
        if not cfg.storage_configured:
            return None
        return cls(
            public_key=cfg.imagekit_public_key,
            private_key=cfg.imagekit_private_key,
            url_endpoint=cfg.imagekit_url_endpoint,
            upload_url=cfg.imagekit_upload_url,
            api_url=cfg.imagekit_api_url.rstrip("/"),
            folder=cfg.imagekit_folder,
            timeout=cfg.storage_timeout,
        )


class RetryableUploadError(Exception):
    """Provider answered with a status worth retrying (429 or 5xx)."""

    def __init__(self, status_code: int, body: str):
        self.status_code = status_code
        self.body = body
        super().__init__(f"ImageKit upload returned HTTP {status_code}: {body}")


# ══════════════════════════════════════════════════════════════════════════
# Circuit Breaker Implementation
# ══════════════════════════════════════════════════════════════════════════

class CircuitBreaker:
    """
    Circuit breaker guarding provider uploads.

    State Machine:
        CLOSED (normal operation)
            → On failure: increment failure_count
            → When failure_count >= threshold: transition to OPEN

        OPEN (rejecting all uploads)
            → All calls raise CircuitBreakerOpenError immediately
            → After recovery_timeout seconds: transition to HALF_OPEN

        HALF_OPEN (testing recovery)
            → Allow ONE trial upload through; concurrent uploads keep failing
              fast until it settles (or until recovery_timeout passes without
              a result, so a lost trial cannot wedge the breaker)
            → On success: transition to CLOSED (reset failure_count)
            → On failure: transition back to OPEN (reset timer)

    Not shared across processes; each uvicorn worker keeps its own counters.
    """

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"

    def __init__(self, failure_threshold: int = 5, recovery_timeout: int = 60):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.failure_count = 0
        self.state = self.CLOSED
        self.last_failure_time: Optional[float] = None
        self.trial_started: Optional[float] = None

    def can_execute(self) -> bool:
        """
        Returns True if an upload may proceed.

        Raises:
            CircuitBreakerOpenError if OPEN and the recovery timeout hasn't elapsed,
            or if HALF_OPEN and another trial upload is still in flight.
        """
        if self.state == self.CLOSED:
            return True

        if self.state == self.OPEN:
            elapsed = time.time() - (self.last_failure_time or 0)
            if elapsed >= self.recovery_timeout:
                logger.info(
                    "Circuit breaker transitioning to HALF_OPEN after %.1fs",
                    elapsed,
                )
                self.state = self.HALF_OPEN
                self.trial_started = time.time()
                return True
            remaining = max(int(self.recovery_timeout - elapsed), 1)
            raise CircuitBreakerOpenError(recovery_time=remaining)

        # HALF_OPEN: one trial at a time
        now = time.time()
        if self.trial_started is not None and now - self.trial_started < self.recovery_timeout:
            remaining = max(int(self.recovery_timeout - (now - self.trial_started)), 1)
            raise CircuitBreakerOpenError(recovery_time=remaining)
        self.trial_started = now
        return True

    def record_success(self) -> None:
        if self.state == self.HALF_OPEN:
            logger.info("Circuit breaker transitioning to CLOSED (storage recovered)")
        self.failure_count = 0
        self.state = self.CLOSED
        self.last_failure_time = None
        self.trial_started = None

    def record_failure(self) -> None:
        self.failure_count += 1
        self.last_failure_time = time.time()
        self.trial_started = None

        if self.state == self.HALF_OPEN:
            logger.warning("Circuit breaker returning to OPEN (test upload failed)")
            self.state = self.OPEN
        elif self.failure_count >= self.failure_threshold:
            logger.warning(
                "Circuit breaker OPENING after %d consecutive failed uploads",
                self.failure_count,
            )
            self.state = self.OPEN


# ══════════════════════════════════════════════════════════════════════════
# Adapters
# ══════════════════════════════════════════════════════════════════════════

class PlaceholderStorage(StorageAdapter):
    """
    Fallback adapter used when ImageKit is not configured.

    upload() synthesizes a placeholder URL and performs no I/O; delete() is
    always skipped. Neither method can fail.
    """

    mode = "placeholder"

    def __init__(self, base_url: Optional[str] = None):
        self.base_url = base_url or settings.placeholder_base_url

    async def upload(
        self,
        content: bytes,
        display_name: str,
        idempotency_key: Optional[str] = None,
    ) -> UploadResult:
        url = placeholder_url(self.base_url, display_name)
        logger.debug("Placeholder upload for '%s' (%d bytes): %s", display_name, len(content), url)
        return UploadResult(url=url, file_id=None)

    async def delete(self, file_id: Optional[str]) -> DeleteResult:
        logger.debug("Skipping remote delete of %r: storage provider not configured", file_id)
        return DeleteResult.skipped(file_id, "storage provider not configured")


class ImageKitStorage(StorageAdapter):
    """
    ImageKit-backed adapter.

    Error Handling Chain (upload):
        API call fails → tenacity retries transient failures (bounded)
        → retries exhausted or malformed response → UpstreamError
        → circuit breaker records the failure
        → threshold reached → further uploads fail fast (CircuitBreakerOpenError)

    A 4xx answer raises UploadRejectedError and counts as the provider being
    up: one client's bad files never open the breaker for everyone.
    """

    mode = "imagekit"

    def __init__(
        self,
        config: StorageConfig,
        client: Optional[httpx.AsyncClient] = None,
        retry_max_attempts: Optional[int] = None,
        retry_min_wait: Optional[float] = None,
        retry_max_wait: Optional[float] = None,
        retry_jitter: float = 1.0,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ):
        self.config = config
        self._client = client
        self._owns_client = client is None
        self._auth = httpx.BasicAuth(config.private_key, "")

        self.retry_max_attempts = retry_max_attempts or settings.retry_max_attempts
        self.retry_min_wait = settings.retry_min_wait if retry_min_wait is None else retry_min_wait
        self.retry_max_wait = settings.retry_max_wait if retry_max_wait is None else retry_max_wait
        self.retry_jitter = retry_jitter

        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            failure_threshold=settings.cb_failure_threshold,
            recovery_timeout=settings.cb_recovery_timeout,
        )

        logger.info(
            "ImageKitStorage initialized: endpoint=%s folder=%s "
            "retry(attempts=%d) circuit_breaker(threshold=%d, recovery=%ds)",
            config.url_endpoint,
            config.folder,
            self.retry_max_attempts,
            self.circuit_breaker.failure_threshold,
            self.circuit_breaker.recovery_timeout,
        )

    @property
    def configured(self) -> bool:
        return True

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.config.timeout)
        return self._client

    @staticmethod
    def remote_file_name(display_name: str, idempotency_key: str) -> str:
        """`<key>_<sanitized display name>`; identical inputs give identical names."""
        safe = _UNSAFE_NAME_CHARS.sub("_", display_name or "").strip("._") or "image"
        return f"{idempotency_key}_{safe[:_MAX_NAME_LENGTH]}"

    async def upload(
        self,
        content: bytes,
        display_name: str,
        idempotency_key: Optional[str] = None,
    ) -> UploadResult:
        """
        Upload image bytes to ImageKit.

        Flow:
            1. Check circuit breaker → may raise CircuitBreakerOpenError
            2. POST with bounded retry (same remote file name on every attempt)
            3. Record success/failure in circuit breaker
            4. Return the CDN url and fileId

        Raises:
            CircuitBreakerOpenError: Too many recent failed uploads
            UpstreamError: Upload failed after retries, or was rejected
        """
        self.circuit_breaker.can_execute()

        key = idempotency_key or uuid.uuid4().hex
        file_name = self.remote_file_name(display_name, key)
        started = time.perf_counter()

        try:
            payload = await self._upload_with_retry(content, file_name)
            result = self._parse_upload_payload(payload)
        except UploadRejectedError:
            # The provider answered; only the request was refused
            self.circuit_breaker.record_success()
            raise
        except UpstreamError:
            self.circuit_breaker.record_failure()
            raise
        except (httpx.HTTPError, RetryableUploadError) as e:
            self.circuit_breaker.record_failure()
            logger.error(
                "ImageKit upload of %s failed after %d attempt(s): %s",
                file_name,
                self.retry_max_attempts,
                str(e),
            )
            raise UpstreamError(
                message="Image upload failed. Please try again later.",
                detail=str(e) or type(e).__name__,
                context={"file_name": file_name, "attempts": self.retry_max_attempts},
            )

        self.circuit_breaker.record_success()
        logger.info(
            "Uploaded %s to ImageKit in %.0fms (%d bytes, fileId=%s)",
            file_name,
            (time.perf_counter() - started) * 1000,
            len(content),
            result.file_id,
        )
        return result

    async def _upload_with_retry(self, content: bytes, file_name: str) -> Dict[str, Any]:
        retrying = AsyncRetrying(
            retry=retry_if_exception_type((httpx.TransportError, RetryableUploadError)),
            stop=stop_after_attempt(self.retry_max_attempts),
            wait=wait_exponential_jitter(
                initial=self.retry_min_wait,
                max=self.retry_max_wait,
                jitter=self.retry_jitter,
            ),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                payload = await self._send_upload(content, file_name)
        return payload

    async def _send_upload(self, content: bytes, file_name: str) -> Dict[str, Any]:
        """One upload attempt. Raises RetryableUploadError for 429/5xx."""
        response = await self._get_client().post(
            self.config.upload_url,
            auth=self._auth,
            data={
                "fileName": file_name,
                "folder": self.config.folder,
                "useUniqueFileName": "false",
                "overwriteFile": "true",
            },
            files={"file": (file_name, content, "application/octet-stream")},
        )

        status = response.status_code
        if status == 429 or status >= 500:
            raise RetryableUploadError(status, response.text[:200])
        if status >= 400:
            raise UploadRejectedError(
                message="Image upload was rejected by the storage provider.",
                detail=f"ImageKit upload returned HTTP {status}: {response.text[:200]}",
                context={"file_name": file_name, "status": status},
            )

        try:
            return response.json()
        except ValueError:
            raise UpstreamError(
                message="Image upload failed. Please try again later.",
                detail="ImageKit upload returned a non-JSON response",
                context={"file_name": file_name, "status": status},
            )

    def _parse_upload_payload(self, payload: Dict[str, Any]) -> UploadResult:
        url = payload.get("url") if isinstance(payload, dict) else None
        file_id = payload.get("fileId") if isinstance(payload, dict) else None
        if not url or not file_id:
            raise UpstreamError(
                message="Image upload failed. Please try again later.",
                detail="ImageKit upload response is missing url or fileId",
            )
        return UploadResult(url=url, file_id=file_id)

    async def delete(self, file_id: Optional[str]) -> DeleteResult:
        """
        Delete a file from ImageKit by fileId.

        Returns a DeleteResult instead of raising: the caller's metadata
        cleanup proceeds whatever happens here.
        """
        if not file_id:
            logger.debug("Skipping ImageKit delete: no fileId")
            return DeleteResult.skipped(file_id, "no file id")

        url = f"{self.config.api_url}/files/{quote(file_id, safe='')}"
        try:
            response = await self._get_client().delete(url, auth=self._auth)
        except httpx.HTTPError as e:
            logger.error("ImageKit delete of %s failed: %s", file_id, str(e))
            return DeleteResult.error(file_id, f"{type(e).__name__}: {e}")

        if response.status_code in (200, 204):
            logger.info("Deleted %s from ImageKit", file_id)
            return DeleteResult.ok(file_id)

        logger.error(
            "ImageKit delete of %s returned HTTP %d: %s",
            file_id,
            response.status_code,
            response.text[:200],
        )
        return DeleteResult.error(
            file_id, f"ImageKit delete returned HTTP {response.status_code}"
        )

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None


def build_storage_adapter(config: Optional[StorageConfig]) -> StorageAdapter:
    """ImageKitStorage when a config is supplied, PlaceholderStorage otherwise."""
    if config is None:
        logger.warning(
            "ImageKit config missing (IMAGEKIT_PUBLIC_KEY/PRIVATE_KEY/URL_ENDPOINT). "
            "Using placeholder uploads."
        )
        return PlaceholderStorage()
    return ImageKitStorage(config)


# ── Singleton Instance ────────────────────────────────────────────────────
# Holds the circuit breaker and the pooled HTTP client shared by all requests
storage_adapter = build_storage_adapter(StorageConfig.from_settings(settings))
