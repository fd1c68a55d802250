"""
PostSnap Backend — Abstract Storage Adapter Interface
=======================================================

What:  Abstract base class and result types for image object storage.
How:   Concrete adapters (ImageKitStorage, PlaceholderStorage) inherit from
       StorageAdapter and implement upload() and delete().
Who:   Called by PostService during create/update/delete.

Failure contract:
    upload() failures raise UpstreamError; the calling post mutation stops.
    delete() never raises; the outcome is a DeleteResult that the caller
    inspects and reports.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class UploadResult:
    """Where an uploaded image can be fetched, and the provider's handle for it."""

    url: str
    file_id: Optional[str] = None


@dataclass(frozen=True)
class DeleteResult:
    """
    Outcome of a remote delete.

    status:
        deleted: the provider confirmed removal
        skipped: nothing to delete (no file id, or no provider configured)
        failed:  the provider call failed; `reason` says why and the remote
                 object may be orphaned
    """

    DELETED = "deleted"
    SKIPPED = "skipped"
    FAILED = "failed"

    file_id: Optional[str]
    status: str
    reason: Optional[str] = None

    @property
    def deleted(self) -> bool:
        return self.status == self.DELETED

    @property
    def failed(self) -> bool:
        return self.status == self.FAILED

    def __bool__(self) -> bool:
        return self.deleted

    @classmethod
    def ok(cls, file_id: str) -> "DeleteResult":
        return cls(file_id=file_id, status=cls.DELETED)

    @classmethod
    def skipped(cls, file_id: Optional[str], reason: str) -> "DeleteResult":
        return cls(file_id=file_id, status=cls.SKIPPED, reason=reason)

    @classmethod
    def error(cls, file_id: Optional[str], reason: str) -> "DeleteResult":
        return cls(file_id=file_id, status=cls.FAILED, reason=reason)


class StorageAdapter(ABC):
    """
    Abstract interface for the image blob store.

    Implementations:
        - ImageKitStorage: ImageKit upload/management REST API
        - PlaceholderStorage: no provider configured; synthesizes placeholder URLs
    """

    #: Short name reported by the health endpoint
    mode: str = "unknown"

    @property
    def configured(self) -> bool:
        """True when uploads reach a real provider."""
        return False

    @abstractmethod
    async def upload(
        self,
        content: bytes,
        display_name: str,
        idempotency_key: Optional[str] = None,
    ) -> UploadResult:
        """
        Store image bytes and return their public URL.

        Args:
            content: Raw image bytes (already validated as non-empty).
            display_name: Human-readable name; used for the remote file name
                or the placeholder text.
            idempotency_key: Stable key for this logical upload. Retried
                attempts with the same key must not create a second object.

        Raises:
            UpstreamError: The provider rejected or failed the upload.
        """
        ...

    @abstractmethod
    async def delete(self, file_id: Optional[str]) -> DeleteResult:
        """Retire a remote object. Never raises."""
        ...

    async def aclose(self) -> None:
        """Release network resources. Called at application shutdown."""
        return None
