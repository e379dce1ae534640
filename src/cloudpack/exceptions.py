"""Custom exceptions for cloudpack.

Every failure the packaging, cache, registry and sync layers can report is a
subclass of :class:`CloudpackError`, so callers can catch the whole family or
a single kind.
"""

from typing import Optional


class CloudpackError(Exception):
    """Base exception for cloudpack errors."""

    pass


class InvalidDigestError(CloudpackError, ValueError):
    """Raised when a string is not a well-formed ``algorithm:hex`` digest."""

    pass


class InvalidApplicationError(CloudpackError, ValueError):
    """Raised when an application description fails validation at ingestion."""

    pass


class InvalidReferenceError(CloudpackError, ValueError):
    """Raised when an artifact reference cannot be parsed."""

    pass


class NotFoundError(CloudpackError):
    """Raised when a cache or registry lookup misses."""

    pass


class BlobNotFoundError(NotFoundError):
    """Raised when a blob is absent from the local cache or the registry."""

    def __init__(self, digest: str, message: Optional[str] = None):
        self.digest = digest
        super().__init__(message or f"Blob not found: {digest}")


class ManifestNotFoundError(NotFoundError):
    """Raised when an artifact reference does not resolve to a manifest."""

    def __init__(self, reference: str, message: Optional[str] = None):
        self.reference = reference
        super().__init__(message or f"Manifest not found: {reference}")


class InvalidManifestError(CloudpackError):
    """Raised when a fetched manifest is not a valid artifact manifest."""

    pass


class IntegrityMismatchError(CloudpackError):
    """Raised when received bytes do not hash to the requested digest."""

    def __init__(self, expected: str, actual: str, message: Optional[str] = None):
        self.expected = expected
        self.actual = actual
        super().__init__(
            message or f"Integrity mismatch: expected {expected}, got {actual}"
        )


class TransientNetworkError(CloudpackError):
    """Raised for timeouts, transport failures and retryable HTTP statuses."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
    ):
        self.status_code = status_code
        self.retry_after = retry_after
        super().__init__(message)


class TransferFailedError(CloudpackError):
    """Raised when a transient failure persists after all retry attempts."""

    pass


class RegistryRequestError(CloudpackError):
    """Raised when the registry rejects a request with a non-retryable 4xx."""

    def __init__(self, status_code: int, detail: str = ""):
        self.status_code = status_code
        self.detail = detail
        super().__init__(f"Registry returned {status_code}: {detail}".rstrip(": "))


class UnauthorizedError(RegistryRequestError):
    """Raised on 401/403 responses."""

    pass


class ConflictError(RegistryRequestError):
    """Raised on 409 responses."""

    pass


class MissingBlobError(CloudpackError):
    """Raised when materialization references a blob that was never pulled.

    This is a caller contract violation: pull the artifact before
    materializing it.
    """

    def __init__(self, digest: str, path: Optional[str] = None):
        self.digest = digest
        self.path = path
        location = f" (layer {path})" if path else ""
        super().__init__(
            f"Blob {digest}{location} is not in the local cache; "
            "pull the artifact before materializing it"
        )


class UnsafeArchiveError(CloudpackError):
    """Raised when an asset archive member would escape the destination."""

    pass


class SyncError(CloudpackError):
    """Raised when a push or pull fails.

    Carries the workflow state the session was in and, when the failure is
    tied to one blob, its digest and layer path. The underlying exception is
    chained as ``__cause__``.
    """

    def __init__(
        self,
        message: str,
        state: str,
        digest: Optional[str] = None,
        layer_path: Optional[str] = None,
    ):
        self.state = state
        self.digest = digest
        self.layer_path = layer_path
        super().__init__(message)

    @property
    def cause(self) -> Optional[BaseException]:
        return self.__cause__
