"""Push and pull workflows over the builder, local cache and registry client."""

import asyncio
import logging
from collections import Counter
from contextlib import aclosing
from pathlib import Path
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Iterable,
    List,
    Optional,
    Sequence,
    Union,
)

import httpx

from cloudpack.build.builder import ArtifactBuilder
from cloudpack.cache.local_cache import LocalCache
from cloudpack.config import DEFAULT_MAX_CONCURRENCY, CloudpackConfig
from cloudpack.core.models import ApplicationDescription, ArtifactManifest, Layer
from cloudpack.credentials import RegistryCredentials
from cloudpack.exceptions import CloudpackError, SyncError
from cloudpack.registry.client import RegistryClient
from cloudpack.registry.reference import ArtifactReference
from cloudpack.registry.retry import retry_with_backoff

from .session import PullResult, PullState, PushResult, PushState, TransferSession
from .single_flight import SingleFlight

log = logging.getLogger(__name__)

Application = Union[ApplicationDescription, Dict[str, Any], ArtifactManifest]


class _BlobFailure(Exception):
    """Ties a transfer failure to the layer it happened on."""

    def __init__(self, layer: Layer, error: BaseException):
        super().__init__(str(error))
        self.layer = layer
        self.error = error


class SyncEngine:
    """Drives push and pull of application artifacts.

    Push: build → diff against the registry → upload missing blobs → upload
    the manifest. The manifest is only uploaded once every blob it references
    is confirmed present remotely, so a tag never resolves to an artifact
    that cannot be fetched completely.

    Pull: fetch the manifest → diff against the local cache → download and
    verify missing blobs → materialize. Materialization starts only after
    every blob is verified locally, so a failed pull leaves the destination
    untouched.

    Transfers for distinct digests run concurrently on a bounded pool; the
    same digest is never transferred twice at once, even across concurrent
    operations on one engine.
    """

    def __init__(
        self,
        client: RegistryClient,
        cache: LocalCache,
        builder: Optional[ArtifactBuilder] = None,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
    ):
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self.client = client
        self.cache = cache
        self.builder = builder or ArtifactBuilder(cache)
        self.max_concurrency = max_concurrency
        self._uploads = SingleFlight()
        self._downloads = SingleFlight()
        # Digests held by running operations; eviction never touches them
        self._pinned: Counter = Counter()

    @classmethod
    def from_config(
        cls,
        config: CloudpackConfig,
        credentials: Optional[RegistryCredentials] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "SyncEngine":
        cache = LocalCache(config.cache_dir, max_bytes=config.cache_max_bytes)
        return cls(
            client=RegistryClient.from_config(config, credentials, transport=transport),
            cache=cache,
            builder=ArtifactBuilder(cache, config.asset_archive_max_bytes),
            max_concurrency=config.max_concurrency,
        )

    async def close(self) -> None:
        await self.client.close()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    # Push

    async def push(
        self, application: Application, reference: Union[str, ArtifactReference]
    ) -> PushResult:
        """Publish ``application`` under ``reference``.

        ``application`` is an application description (or its dict form), or
        an already built manifest whose blobs are in the local cache.

        Raises:
            SyncError: The push failed; ``cause`` holds the underlying error
                and ``digest``/``layer_path`` name the blob involved, if any.
        """
        ref = self._reference(reference)
        session = TransferSession(reference=str(ref), state=PushState.BUILDING)
        pinned: List[str] = []

        try:
            if isinstance(application, ArtifactManifest):
                manifest = application
            else:
                manifest = self.builder.build(application)
            pinned = self._pin(layer.digest for layer in manifest.blobs())

            session.advance(PushState.DIFFING_REMOTE)
            blobs = manifest.unique_blobs()
            presence = await self._run_bounded(
                blobs, lambda layer: self.client.blob_exists(ref, layer.digest)
            )
            missing = []
            for layer, present in zip(blobs, presence):
                if present:
                    session.present_remote.add(layer.digest)
                    session.skipped.append(layer.digest)
                else:
                    missing.append(layer)
            log.info(
                f"{ref}: {len(missing)} of {len(blobs)} blobs need uploading"
            )

            session.advance(PushState.UPLOADING_BLOBS)
            await self._run_bounded(
                missing, lambda layer: self._upload(ref, layer, session)
            )

            # Every referenced blob must be confirmed before the manifest goes up
            unconfirmed = [
                layer.digest
                for layer in blobs
                if layer.digest not in session.present_remote
            ]
            if unconfirmed:
                raise SyncError(
                    f"Refusing to publish {ref}: {len(unconfirmed)} blobs unconfirmed",
                    state=session.state.value,
                    digest=unconfirmed[0],
                )

            session.advance(PushState.UPLOADING_MANIFEST)
            manifest_digest = manifest.digest
            manifest_uploaded = False
            if ref.tag and await self.client.manifest_digest(ref) == manifest_digest:
                log.info(f"{ref} already points at {manifest_digest}; skipping upload")
            else:
                manifest_digest = await self.client.push_manifest(ref, manifest)
                manifest_uploaded = True

            session.advance(PushState.DONE)
        except BaseException as e:
            self._unpin(pinned)
            raise self._failure(session, "Push", e)

        try:
            self._evict()
        finally:
            self._unpin(pinned)
        log.info(
            f"Pushed {ref} ({manifest_digest}): uploaded {len(session.transferred)}, "
            f"skipped {len(session.skipped)}"
        )
        return PushResult(
            reference=str(ref),
            manifest=manifest,
            manifest_digest=manifest_digest,
            uploaded=list(session.transferred),
            skipped=list(session.skipped),
            manifest_uploaded=manifest_uploaded,
            bytes_uploaded=session.bytes_transferred,
        )

    async def _upload(
        self, ref: ArtifactReference, layer: Layer, session: TransferSession
    ) -> None:
        led = False

        async def transfer() -> bool:
            nonlocal led
            led = True
            with self.cache.open_for_read(layer.digest) as stream:
                return await self.client.push_blob(ref, layer.digest, stream, layer.size)

        session.in_flight.add(layer.digest)
        try:
            sent = await self._uploads.do((ref.repository_key, layer.digest), transfer)
        finally:
            session.in_flight.discard(layer.digest)

        session.present_remote.add(layer.digest)
        if led and sent:
            session.transferred.append(layer.digest)
            session.bytes_transferred += layer.size
        else:
            session.skipped.append(layer.digest)

    # Pull

    async def pull(
        self,
        reference: Union[str, ArtifactReference],
        destination: Optional[Path] = None,
        overwrite: bool = True,
    ) -> PullResult:
        """Fetch an artifact into the cache and optionally materialize it.

        Raises:
            SyncError: The pull failed; ``destination`` was not modified.
        """
        ref = self._reference(reference)
        session = TransferSession(reference=str(ref), state=PullState.FETCHING_MANIFEST)
        files: List[str] = []
        pinned: List[str] = []

        try:
            manifest, manifest_digest = await self.client.fetch_manifest(ref)
            pinned = self._pin(layer.digest for layer in manifest.blobs())

            session.advance(PullState.DIFFING_CACHE)
            blobs = manifest.unique_blobs()
            missing = []
            for layer in blobs:
                if self.cache.has(layer.digest):
                    session.present_local.add(layer.digest)
                    session.skipped.append(layer.digest)
                else:
                    missing.append(layer)
            log.info(f"{ref}: {len(missing)} of {len(blobs)} blobs need downloading")

            session.advance(PullState.DOWNLOADING_BLOBS)
            by_digest = ref.with_digest(manifest_digest)
            await self._run_bounded(
                missing, lambda layer: self._download(by_digest, layer, session)
            )

            if destination is not None:
                session.advance(PullState.MATERIALIZING)
                files = self.builder.materialize(
                    manifest, Path(destination), overwrite=overwrite
                )

            session.advance(PullState.DONE)
        except BaseException as e:
            self._unpin(pinned)
            raise self._failure(session, "Pull", e)

        try:
            self._evict()
        finally:
            self._unpin(pinned)
        return PullResult(
            reference=str(ref),
            manifest=manifest,
            manifest_digest=manifest_digest,
            downloaded=list(session.transferred),
            cached=list(session.skipped),
            bytes_downloaded=session.bytes_transferred,
            destination=Path(destination) if destination is not None else None,
            files=files,
        )

    async def _download(
        self, ref: ArtifactReference, layer: Layer, session: TransferSession
    ) -> None:
        led = False

        async def attempt() -> None:
            async with aclosing(
                self.client.pull_blob(ref, layer.digest, layer.size)
            ) as chunks:
                await self.cache.write_async(layer.digest, chunks)

        async def transfer() -> bool:
            nonlocal led
            led = True
            if self.cache.has(layer.digest):
                return False
            await retry_with_backoff(
                attempt,
                policy=self.client.retry_policy,
                operation=f"download blob {layer.digest}",
            )
            return True

        session.in_flight.add(layer.digest)
        try:
            fetched = await self._downloads.do(layer.digest, transfer)
        finally:
            session.in_flight.discard(layer.digest)

        session.present_local.add(layer.digest)
        if led and fetched:
            session.transferred.append(layer.digest)
            session.bytes_transferred += layer.size
        else:
            session.skipped.append(layer.digest)

    # Helpers

    @staticmethod
    def _reference(reference: Union[str, ArtifactReference]) -> ArtifactReference:
        if isinstance(reference, ArtifactReference):
            return reference
        return ArtifactReference.parse(reference)

    async def _run_bounded(
        self,
        layers: Sequence[Layer],
        func: Callable[[Layer], Awaitable[Any]],
    ) -> List[Any]:
        """Run ``func`` for each layer with at most ``max_concurrency`` at once.

        The first failure cancels the remaining work and is raised as a
        :class:`_BlobFailure` naming its layer.
        """
        if not layers:
            return []

        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def run(layer: Layer) -> Any:
            async with semaphore:
                try:
                    return await func(layer)
                except (CloudpackError, OSError) as e:
                    raise _BlobFailure(layer, e) from e

        tasks = [asyncio.ensure_future(run(layer)) for layer in layers]
        try:
            await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        for task in tasks:
            if not task.cancelled() and task.exception() is not None:
                raise task.exception()
        return [task.result() for task in tasks]

    def _failure(
        self, session: TransferSession, operation: str, error: BaseException
    ) -> BaseException:
        """Record ``error`` on the session and translate it for the caller."""
        state = session.state.value

        if isinstance(error, asyncio.CancelledError):
            session.fail("cancelled")
            log.info(f"{operation} of {session.reference} cancelled during {state}")
            return error

        if isinstance(error, _BlobFailure):
            layer, cause = error.layer, error.error
            message = (
                f"{operation} of {session.reference} failed during {state}: "
                f"blob {layer.digest} ({layer.describe()}): {cause}"
            )
            session.fail(message)
            log.error(message)
            sync_error = SyncError(
                message, state=state, digest=layer.digest, layer_path=layer.path
            )
            sync_error.__cause__ = cause
            return sync_error

        if isinstance(error, SyncError):
            session.fail(str(error))
            log.error(str(error))
            return error

        if isinstance(error, (CloudpackError, OSError)):
            message = f"{operation} of {session.reference} failed during {state}: {error}"
            session.fail(message)
            log.error(message)
            sync_error = SyncError(message, state=state)
            sync_error.__cause__ = error
            return sync_error

        session.fail(repr(error))
        return error

    def _pin(self, digests: Iterable[str]) -> List[str]:
        pinned = list(dict.fromkeys(digests))
        self._pinned.update(pinned)
        return pinned

    def _unpin(self, digests: Sequence[str]) -> None:
        self._pinned.subtract(digests)
        for digest in digests:
            if self._pinned[digest] <= 0:
                del self._pinned[digest]

    def _evict(self) -> None:
        """Trim the cache, sparing every blob a running operation still needs."""
        if self.cache.max_bytes is None:
            return
        self.cache.evict(keep=set(self._pinned))
