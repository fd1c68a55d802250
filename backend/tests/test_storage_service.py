"""
PostSnap Backend — Storage Adapter Unit Tests
===============================================

What:  ImageKitStorage, PlaceholderStorage, CircuitBreaker, adapter selection.
How:   httpx.MockTransport stands in for the ImageKit API; retry waits are
       zeroed so retried tests run instantly.

What we test:
    ✅ Placeholder URLs are deterministic and URL-encoded
    ✅ Uploads authenticate and reuse one remote file name across retries
    ✅ 429/5xx and transport errors are retried; other 4xx are not
    ✅ Deletes never raise and report deleted / skipped / failed
    ✅ Circuit breaker opens, fails fast, and recovers
    ✅ Rejected uploads (4xx) never open the breaker
"""

import base64
import time

import httpx
import pytest

from app.config import Settings
from app.exceptions import CircuitBreakerOpenError, UploadRejectedError, UpstreamError
from app.services.storage_base import DeleteResult
from app.services.storage_service import (
    CircuitBreaker,
    ImageKitStorage,
    PlaceholderStorage,
    StorageConfig,
    build_storage_adapter,
    placeholder_url,
)

CONFIG = StorageConfig(
    public_key="public_test",
    private_key="private_test",
    url_endpoint="https://ik.imagekit.io/demo",
    upload_url="https://upload.imagekit.io/api/v1/files/upload",
    api_url="https://api.imagekit.io/v1",
    folder="/posts",
    timeout=5.0,
)

UPLOADED = {"fileId": "file_abc", "url": "https://ik.imagekit.io/demo/posts/k_Sunset.png"}


def make_storage(handler, attempts=3, breaker=None):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return ImageKitStorage(
        CONFIG,
        client=client,
        retry_max_attempts=attempts,
        retry_min_wait=0,
        retry_max_wait=0,
        retry_jitter=0,
        circuit_breaker=breaker or CircuitBreaker(failure_threshold=5, recovery_timeout=60),
    )


class TestPlaceholder:

    def test_placeholder_url_encodes_name(self):
        url = placeholder_url("https://placehold.co/600x400", "Hello World & more")
        assert url == "https://placehold.co/600x400?text=Hello%20World%20%26%20more"

    def test_placeholder_url_defaults_to_image(self):
        assert placeholder_url("https://placehold.co/600x400", "").endswith("?text=image")

    @pytest.mark.asyncio
    async def test_upload_is_deterministic_and_has_no_file_id(self):
        storage = PlaceholderStorage(base_url="https://placehold.co/600x400")
        first = await storage.upload(b"abc", "Sunset")
        second = await storage.upload(b"other bytes", "Sunset")
        assert first == second
        assert first.url == "https://placehold.co/600x400?text=Sunset"
        assert first.file_id is None

    @pytest.mark.asyncio
    async def test_delete_is_skipped(self):
        result = await PlaceholderStorage().delete("file_abc")
        assert result.status == DeleteResult.SKIPPED
        assert not result


class TestAdapterSelection:

    def test_missing_secret_yields_no_config(self):
        cfg = Settings(
            imagekit_public_key="pk",
            imagekit_private_key="   ",
            imagekit_url_endpoint="https://ik.imagekit.io/demo",
        )
        assert StorageConfig.from_settings(cfg) is None
        assert isinstance(build_storage_adapter(None), PlaceholderStorage)

    def test_full_config_selects_imagekit(self):
        cfg = Settings(
            imagekit_public_key="pk",
            imagekit_private_key="sk",
            imagekit_url_endpoint="https://ik.imagekit.io/demo",
            imagekit_api_url="https://api.imagekit.io/v1/",
        )
        config = StorageConfig.from_settings(cfg)
        assert config is not None
        assert config.api_url == "https://api.imagekit.io/v1"

        adapter = build_storage_adapter(config)
        assert isinstance(adapter, ImageKitStorage)
        assert adapter.configured
        assert adapter.mode == "imagekit"


class TestImageKitUpload:

    def test_remote_file_name_is_sanitized_and_keyed(self):
        assert ImageKitStorage.remote_file_name("My Trip!", "k1") == "k1_My_Trip"
        assert ImageKitStorage.remote_file_name("", "k1") == "k1_image"

    @pytest.mark.asyncio
    async def test_upload_success(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json=UPLOADED)

        storage = make_storage(handler)
        result = await storage.upload(b"png-bytes", "Sunset", idempotency_key="k")

        assert result.url == UPLOADED["url"]
        assert result.file_id == "file_abc"

        request = seen[0]
        expected = base64.b64encode(b"private_test:").decode()
        assert request.headers["Authorization"] == f"Basic {expected}"
        body = request.read()
        assert b"k_Sunset" in body
        assert b'name="useUniqueFileName"' in body
        assert b"png-bytes" in body

    @pytest.mark.asyncio
    async def test_retries_server_errors_with_same_file_name(self):
        bodies = []

        def handler(request):
            bodies.append(request.read())
            if len(bodies) < 3:
                return httpx.Response(503, text="busy")
            return httpx.Response(200, json=UPLOADED)

        storage = make_storage(handler, attempts=3)
        result = await storage.upload(b"x", "Sunset", idempotency_key="same-key")

        assert result.file_id == "file_abc"
        assert len(bodies) == 3
        assert all(b"same-key_Sunset" in body for body in bodies)
        assert storage.circuit_breaker.failure_count == 0

    @pytest.mark.asyncio
    async def test_retries_transport_errors(self):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) == 1:
                raise httpx.ConnectError("connection refused", request=request)
            return httpx.Response(200, json=UPLOADED)

        storage = make_storage(handler)
        result = await storage.upload(b"x", "Sunset")
        assert result.file_id == "file_abc"
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_exhausted_retries_raise_upstream_error(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(429, text="slow down")

        storage = make_storage(handler, attempts=2)
        with pytest.raises(UpstreamError) as exc_info:
            await storage.upload(b"x", "Sunset")

        assert len(calls) == 2
        assert "429" in exc_info.value.detail
        assert storage.circuit_breaker.failure_count == 1

    @pytest.mark.asyncio
    async def test_client_error_is_not_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(400, json={"message": "Invalid file"})

        storage = make_storage(handler)
        with pytest.raises(UploadRejectedError) as exc_info:
            await storage.upload(b"x", "Sunset")

        assert len(calls) == 1
        assert "HTTP 400" in exc_info.value.detail

    @pytest.mark.asyncio
    async def test_response_without_file_id_is_an_error(self):
        storage = make_storage(lambda request: httpx.Response(200, json={"url": "https://x"}))
        with pytest.raises(UpstreamError):
            await storage.upload(b"x", "Sunset")


class TestImageKitDelete:

    @pytest.mark.asyncio
    async def test_delete_success(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(204)

        result = await make_storage(handler).delete("file_abc")

        assert result.deleted
        assert bool(result)
        assert seen[0].method == "DELETE"
        assert str(seen[0].url) == "https://api.imagekit.io/v1/files/file_abc"

    @pytest.mark.asyncio
    async def test_delete_without_file_id_is_skipped(self):
        def handler(request):
            raise AssertionError("no request expected")

        result = await make_storage(handler).delete(None)
        assert result.status == DeleteResult.SKIPPED

    @pytest.mark.asyncio
    async def test_delete_http_error_is_reported_not_raised(self):
        result = await make_storage(lambda request: httpx.Response(404)).delete("gone")
        assert result.failed
        assert "404" in result.reason
        assert not result

    @pytest.mark.asyncio
    async def test_delete_transport_error_is_reported_not_raised(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        result = await make_storage(handler).delete("file_abc")
        assert result.failed
        assert "ReadTimeout" in result.reason


class TestCircuitBreaker:

    def test_opens_at_threshold(self):
        cb = CircuitBreaker(failure_threshold=3, recovery_timeout=60)
        for _ in range(2):
            cb.record_failure()
        assert cb.state == "closed"
        cb.record_failure()
        assert cb.state == "open"
        with pytest.raises(CircuitBreakerOpenError):
            cb.can_execute()

    def test_half_open_after_recovery_then_closes(self):
        cb = CircuitBreaker(failure_threshold=2, recovery_timeout=30)
        cb.record_failure()
        cb.record_failure()
        cb.last_failure_time = time.time() - 31

        assert cb.can_execute() is True
        assert cb.state == "half_open"
        cb.record_success()
        assert cb.state == "closed"
        assert cb.failure_count == 0

    def test_half_open_failure_reopens(self):
        cb = CircuitBreaker(failure_threshold=2, recovery_timeout=30)
        cb.record_failure()
        cb.record_failure()
        cb.last_failure_time = time.time() - 31
        cb.can_execute()
        cb.record_failure()
        assert cb.state == "open"

    @pytest.mark.asyncio
    async def test_open_breaker_fails_fast_without_request(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(503, text="unavailable")

        storage = make_storage(
            handler, attempts=1, breaker=CircuitBreaker(failure_threshold=2, recovery_timeout=60)
        )
        for _ in range(2):
            with pytest.raises(UpstreamError):
                await storage.upload(b"x", "Sunset")

        with pytest.raises(CircuitBreakerOpenError):
            await storage.upload(b"x", "Sunset")
        assert len(calls) == 2

    def test_half_open_admits_a_single_trial(self):
        cb = CircuitBreaker(failure_threshold=2, recovery_timeout=30)
        cb.record_failure()
        cb.record_failure()
        cb.last_failure_time = time.time() - 31

        assert cb.can_execute() is True
        with pytest.raises(CircuitBreakerOpenError):
            cb.can_execute()

        cb.record_success()
        assert cb.state == "closed"
        assert cb.can_execute() is True

    def test_lost_trial_expires_after_recovery_timeout(self):
        cb = CircuitBreaker(failure_threshold=2, recovery_timeout=30)
        cb.record_failure()
        cb.record_failure()
        cb.last_failure_time = time.time() - 31
        cb.can_execute()

        # The first trial never reported back
        cb.trial_started = time.time() - 31

        assert cb.can_execute() is True
        assert cb.state == "half_open"

    @pytest.mark.asyncio
    async def test_rejected_uploads_do_not_open_breaker(self):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) <= 5:
                return httpx.Response(400, json={"message": "Invalid file"})
            return httpx.Response(200, json=UPLOADED)

        breaker = CircuitBreaker(failure_threshold=5, recovery_timeout=60)
        storage = make_storage(handler, breaker=breaker)
        for _ in range(5):
            with pytest.raises(UploadRejectedError):
                await storage.upload(b"x", "Sunset")
        assert breaker.state == "closed"
        assert breaker.failure_count == 0

        result = await storage.upload(b"x", "Sunset")

        assert result.file_id == "file_abc"
