"""HTTP client for OCI distribution registries."""

import json
import logging
from dataclasses import dataclass
from typing import AsyncIterator, BinaryIO, Iterable, Optional, Tuple, Union

import httpx
from pydantic import ValidationError

from cloudpack.config import (
    DEFAULT_CHUNK_SIZE,
    DEFAULT_REQUEST_TIMEOUT,
    CloudpackConfig,
)
from cloudpack.core import media_types
from cloudpack.core.digest import IncrementalDigest
from cloudpack.core.digest import digest as compute_digest
from cloudpack.core.models import ArtifactManifest
from cloudpack.credentials import RegistryCredentials
from cloudpack.exceptions import (
    BlobNotFoundError,
    ConflictError,
    IntegrityMismatchError,
    InvalidManifestError,
    ManifestNotFoundError,
    RegistryRequestError,
    TransientNetworkError,
    UnauthorizedError,
)
from cloudpack.utils.backoff import parse_retry_after

from .reference import ArtifactReference
from .retry import RetryPolicy, retry_with_backoff

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = {408, 429, 500, 502, 503, 504}
CONTENT_DIGEST_HEADER = "Docker-Content-Digest"

Reference = Union[str, ArtifactReference]


def _as_reference(ref: Reference) -> ArtifactReference:
    if isinstance(ref, ArtifactReference):
        return ref
    return ArtifactReference.parse(ref)


def _error_detail(response: httpx.Response) -> str:
    """Extract the OCI ``errors`` payload, falling back to the raw body."""
    try:
        body = response.json()
    except (ValueError, httpx.ResponseNotRead):
        try:
            return response.text[:200]
        except httpx.ResponseNotRead:
            return ""

    errors = body.get("errors") if isinstance(body, dict) else None
    if isinstance(errors, list) and errors:
        return "; ".join(
            f"{error.get('code', 'UNKNOWN')}: {error.get('message', '')}".strip()
            for error in errors
            if isinstance(error, dict)
        )
    return json.dumps(body)[:200]


def _content_length(response: httpx.Response) -> Optional[int]:
    """Announced body size, or None when the header is absent or malformed.

    The streamed digest check still applies, so a bad header costs nothing.
    """
    value = response.headers.get("Content-Length")
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        logger.debug(f"Ignoring malformed Content-Length {value!r}")
        return None


def raise_for_registry_status(
    response: httpx.Response, expected: Iterable[int]
) -> None:
    """Map an unexpected HTTP status onto the cloudpack error taxonomy.

    Raises:
        UnauthorizedError: 401/403
        ConflictError: 409
        TransientNetworkError: 408, 429 and 5xx
        RegistryRequestError: any other unexpected status
    """
    status = response.status_code
    if status in expected:
        return

    detail = _error_detail(response)
    if status in (401, 403):
        raise UnauthorizedError(status, detail)
    if status == 409:
        raise ConflictError(status, detail)
    if status in RETRYABLE_STATUS_CODES or status >= 500:
        raise TransientNetworkError(
            f"Registry returned {status}: {detail}",
            status_code=status,
            retry_after=parse_retry_after(response.headers.get("Retry-After")),
        )
    raise RegistryRequestError(status, detail)


@dataclass
class _UploadSession:
    location: str
    offset: int = 0
    attempts: int = 0


class RegistryClient:
    """Push/pull client for a content-addressable registry.

    Speaks the OCI distribution v2 protocol: ``HEAD``/``GET`` on blobs,
    ``POST``+``PATCH``+``PUT`` upload sessions, and ``PUT``/``GET``/``HEAD``
    on tagged manifests. Every request carries the bearer credential given
    at construction time and the configured timeout; transient failures are
    retried according to ``retry_policy``.
    """

    def __init__(
        self,
        credentials: Optional[RegistryCredentials] = None,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
        retry_policy: Optional[RetryPolicy] = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        insecure_registries: Iterable[str] = (),
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize registry client.

        Args:
            credentials: Bearer credential attached to every request.
            timeout: Per-request timeout in seconds.
            retry_policy: Retry policy for transient failures (default: 3 attempts).
            chunk_size: Blobs larger than this are uploaded in chunks.
            insecure_registries: Registry hosts reached over plain HTTP.
            transport: Optional httpx transport (used by tests and proxies).
        """
        self.credentials = credentials
        self.timeout = timeout
        self.retry_policy = retry_policy or RetryPolicy()
        self.chunk_size = chunk_size
        self.insecure_registries = frozenset(insecure_registries)
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @classmethod
    def from_config(
        cls,
        config: CloudpackConfig,
        credentials: Optional[RegistryCredentials] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "RegistryClient":
        return cls(
            credentials=credentials,
            timeout=config.request_timeout,
            retry_policy=RetryPolicy(
                max_attempts=config.max_retries,
                base_delay=config.backoff_base,
                max_delay=config.backoff_max,
            ),
            chunk_size=config.chunk_size,
            insecure_registries=config.insecure_registries,
            transport=transport,
        )

    # HTTP plumbing

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client with proper configuration."""
        if self._client is None or self._client.is_closed:
            headers = self.credentials.to_headers() if self.credentials else {}
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                headers=headers,
                follow_redirects=True,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close HTTP session."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def __aenter__(self):
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close()

    def _origin(self, ref: ArtifactReference) -> str:
        scheme = "http" if ref.registry in self.insecure_registries else "https"
        return f"{scheme}://{ref.registry}"

    def _repository_url(self, ref: ArtifactReference) -> str:
        return f"{self._origin(ref)}/v2/{ref.repository}"

    def _blob_url(self, ref: ArtifactReference, digest: str) -> str:
        return f"{self._repository_url(ref)}/blobs/{digest}"

    def _manifest_url(self, ref: ArtifactReference, target: Optional[str] = None) -> str:
        return f"{self._repository_url(ref)}/manifests/{target or ref.target}"

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        """Send one request, turning timeouts and transport failures into
        :class:`TransientNetworkError`."""
        client = await self._get_client()
        try:
            return await client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise TransientNetworkError(f"{method} {url} timed out: {e}") from e
        except httpx.TransportError as e:
            raise TransientNetworkError(f"{method} {url} failed: {e}") from e

    async def _retry(self, func, *args, operation: str):
        return await retry_with_backoff(
            func, *args, policy=self.retry_policy, operation=operation
        )

    # Blobs

    async def blob_exists(self, ref: Reference, digest: str) -> bool:
        """Check whether the repository already stores ``digest``."""
        reference = _as_reference(ref)
        url = self._blob_url(reference, digest)

        async def attempt() -> bool:
            response = await self._request("HEAD", url)
            if response.status_code == 404:
                return False
            raise_for_registry_status(response, (200,))
            return True

        return await self._retry(attempt, operation=f"HEAD blob {digest}")

    async def push_blob(
        self, ref: Reference, digest: str, stream: BinaryIO, size: int
    ) -> bool:
        """Upload a blob unless the registry already has it.

        ``stream`` must be seekable so that interrupted uploads can resume
        from the offset the registry acknowledged.

        Returns:
            True if bytes were transferred, False if the blob was already there.
        """
        reference = _as_reference(ref)
        if await self.blob_exists(reference, digest):
            logger.debug(f"Blob {digest} already present in {reference.repository_key}")
            return False

        session = _UploadSession(location=await self._start_upload(reference))

        async def attempt() -> None:
            if session.attempts > 0:
                await self._resume_upload(reference, session)
            session.attempts += 1
            await self._send_upload(reference, session, digest, stream, size)

        await self._retry(attempt, operation=f"upload blob {digest}")
        logger.info(f"Uploaded blob {digest} ({size} bytes) to {reference.repository_key}")
        return True

    async def _start_upload(self, ref: ArtifactReference) -> str:
        url = f"{self._repository_url(ref)}/blobs/uploads/"

        async def attempt() -> str:
            response = await self._request("POST", url)
            raise_for_registry_status(response, (202,))
            location = response.headers.get("Location")
            if not location:
                raise RegistryRequestError(
                    response.status_code, "upload session has no Location header"
                )
            return self._absolute(ref, location)

        return await self._retry(attempt, operation=f"start upload to {ref.repository_key}")

    async def _resume_upload(self, ref: ArtifactReference, session: _UploadSession) -> None:
        """Re-sync ``session`` with the registry after a failed attempt."""
        response = await self._request("GET", session.location)
        if response.status_code == 404:
            logger.debug("Upload session expired; starting a new one")
            session.location = await self._start_upload(ref)
            session.offset = 0
            return

        raise_for_registry_status(response, (204,))
        session.location = self._absolute(
            ref, response.headers.get("Location", session.location)
        )
        session.offset = self._committed_offset(response)
        logger.debug(f"Resuming upload at offset {session.offset}")

    async def _send_upload(
        self,
        ref: ArtifactReference,
        session: _UploadSession,
        digest: str,
        stream: BinaryIO,
        size: int,
    ) -> None:
        if session.offset == 0 and size <= self.chunk_size:
            stream.seek(0)
            body = stream.read()
            response = await self._request(
                "PUT",
                session.location,
                params={"digest": digest},
                content=body,
                headers={
                    "Content-Type": "application/octet-stream",
                    "Content-Length": str(len(body)),
                },
            )
            raise_for_registry_status(response, (201,))
            self._check_reported_digest(response, digest)
            return

        while session.offset < size:
            stream.seek(session.offset)
            chunk = stream.read(self.chunk_size)
            if not chunk:
                break
            end = session.offset + len(chunk) - 1
            response = await self._request(
                "PATCH",
                session.location,
                content=chunk,
                headers={
                    "Content-Type": "application/octet-stream",
                    "Content-Range": f"{session.offset}-{end}",
                    "Content-Length": str(len(chunk)),
                },
            )
            raise_for_registry_status(response, (202,))
            session.location = self._absolute(
                ref, response.headers.get("Location", session.location)
            )
            session.offset = end + 1

        response = await self._request(
            "PUT",
            session.location,
            params={"digest": digest},
            headers={"Content-Length": "0"},
        )
        raise_for_registry_status(response, (201,))
        self._check_reported_digest(response, digest)

    def _absolute(self, ref: ArtifactReference, location: str) -> str:
        if location.startswith(("http://", "https://")):
            return location
        return f"{self._origin(ref)}/{location.lstrip('/')}"

    @staticmethod
    def _committed_offset(response: httpx.Response) -> int:
        # Range: 0-<last byte received>
        header = response.headers.get("Range", "")
        if "-" not in header:
            return 0
        try:
            return int(header.split("-", 1)[1]) + 1
        except ValueError:
            return 0

    @staticmethod
    def _check_reported_digest(response: httpx.Response, expected: str) -> None:
        reported = response.headers.get(CONTENT_DIGEST_HEADER)
        if reported and reported != expected:
            raise IntegrityMismatchError(expected, reported)

    async def pull_blob(
        self, ref: Reference, digest: str, expected_size: Optional[int] = None
    ) -> AsyncIterator[bytes]:
        """Stream a blob, verifying its digest as the bytes arrive.

        The final chunk is only released after the digest has been checked,
        so a consumer that writes chunks to a temp file can rely on the
        iterator raising before it completes for corrupt content.

        Raises:
            BlobNotFoundError: The registry does not have the blob.
            IntegrityMismatchError: Received bytes do not match ``digest``
                or the announced size.
            TransientNetworkError: Timeouts, transport errors, 5xx.
        """
        reference = _as_reference(ref)
        url = self._blob_url(reference, digest)
        client = await self._get_client()
        hasher = IncrementalDigest()

        try:
            async with client.stream("GET", url) as response:
                if response.status_code == 404:
                    raise BlobNotFoundError(
                        digest, f"Blob {digest} not found in {reference.repository_key}"
                    )
                if response.status_code != 200:
                    await response.aread()
                raise_for_registry_status(response, (200,))

                announced = _content_length(response)
                if (
                    announced is not None
                    and expected_size is not None
                    and announced != expected_size
                ):
                    raise IntegrityMismatchError(
                        digest,
                        f"{announced} bytes",
                        f"Blob {digest} announced {announced} bytes, "
                        f"expected {expected_size}",
                    )

                pending = None
                async for chunk in response.aiter_bytes():
                    if not chunk:
                        continue
                    hasher.update(chunk)
                    if expected_size is not None and hasher.size > expected_size:
                        raise IntegrityMismatchError(
                            digest,
                            f">{expected_size} bytes",
                            f"Blob {digest} is larger than {expected_size} bytes",
                        )
                    if pending is not None:
                        yield pending
                    pending = chunk
        except httpx.TimeoutException as e:
            raise TransientNetworkError(f"GET {url} timed out: {e}") from e
        except httpx.TransportError as e:
            raise TransientNetworkError(f"GET {url} failed: {e}") from e

        if hasher.digest != digest:
            logger.warning(f"Blob {digest} from {reference.registry} hashed to {hasher.digest}")
            raise IntegrityMismatchError(digest, hasher.digest)
        if pending is not None:
            yield pending

    async def pull_blob_bytes(
        self, ref: Reference, digest: str, expected_size: Optional[int] = None
    ) -> bytes:
        """Download a whole blob into memory, retrying transient failures."""

        async def attempt() -> bytes:
            chunks = []
            async for chunk in self.pull_blob(ref, digest, expected_size):
                chunks.append(chunk)
            return b"".join(chunks)

        return await self._retry(attempt, operation=f"download blob {digest}")

    # Manifests

    async def push_manifest(self, ref: Reference, manifest: ArtifactManifest) -> str:
        """Upload ``manifest`` under the reference's tag.

        Callers must ensure every referenced blob is already in the registry.

        Returns:
            The manifest digest.
        """
        reference = _as_reference(ref)
        body = manifest.to_bytes()
        local_digest = compute_digest(body)

        if reference.digest and reference.digest != local_digest:
            raise IntegrityMismatchError(
                reference.digest,
                local_digest,
                f"Reference pins {reference.digest} but manifest is {local_digest}",
            )
        target = reference.tag or local_digest
        url = self._manifest_url(reference, target)

        async def attempt() -> str:
            response = await self._request(
                "PUT",
                url,
                content=body,
                headers={"Content-Type": manifest.media_type},
            )
            raise_for_registry_status(response, (200, 201))
            self._check_reported_digest(response, local_digest)
            return local_digest

        manifest_digest = await self._retry(attempt, operation=f"PUT manifest {reference}")
        logger.info(f"Pushed manifest {manifest_digest} to {reference}")
        return manifest_digest

    async def fetch_manifest(self, ref: Reference) -> Tuple[ArtifactManifest, str]:
        """Fetch and verify a manifest.

        Returns:
            ``(manifest, digest)`` where ``digest`` is computed from the
            received bytes.

        Raises:
            ManifestNotFoundError: The reference does not resolve.
            IntegrityMismatchError: The body does not match the pinned or
                server-reported digest.
            InvalidManifestError: The body is not an artifact manifest.
        """
        reference = _as_reference(ref)
        url = self._manifest_url(reference)

        async def attempt() -> Tuple[bytes, str]:
            response = await self._request(
                "GET", url, headers={"Accept": media_types.MANIFEST_ACCEPT}
            )
            if response.status_code == 404:
                raise ManifestNotFoundError(str(reference))
            raise_for_registry_status(response, (200,))

            body = response.content
            received = compute_digest(body)
            if reference.digest and received != reference.digest:
                raise IntegrityMismatchError(reference.digest, received)
            self._check_reported_digest(response, received)
            return body, received

        body, manifest_digest = await self._retry(
            attempt, operation=f"GET manifest {reference}"
        )

        try:
            manifest = ArtifactManifest.from_bytes(body)
        except ValidationError as e:
            raise InvalidManifestError(
                f"{reference} is not a cloudpack artifact manifest: {e}"
            ) from e
        return manifest, manifest_digest

    async def pull_manifest(self, ref: Reference) -> ArtifactManifest:
        manifest, _ = await self.fetch_manifest(ref)
        return manifest

    async def manifest_digest(self, ref: Reference) -> Optional[str]:
        """Digest the reference currently resolves to, or None if it does not."""
        reference = _as_reference(ref)
        url = self._manifest_url(reference)

        async def attempt() -> Optional[str]:
            response = await self._request(
                "HEAD", url, headers={"Accept": media_types.MANIFEST_ACCEPT}
            )
            if response.status_code == 404:
                return None
            raise_for_registry_status(response, (200,))
            return response.headers.get(CONTENT_DIGEST_HEADER)

        reported = await self._retry(attempt, operation=f"HEAD manifest {reference}")
        if reported is not None:
            return reported

        try:
            _, fetched = await self.fetch_manifest(reference)
        except ManifestNotFoundError:
            return None
        return fetched
