"""
Test configuration and fixtures for cloudpack tests.

Provides shared fixtures for:
- An in-memory OCI registry served through httpx.MockTransport
- Local caches rooted in tmp_path
- Sample application trees and descriptions
- Environment variable management
"""

import asyncio
import hashlib
import json
import re
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Tuple

import httpx
import pytest

from cloudpack.build.builder import ArtifactBuilder
from cloudpack.cache.local_cache import LocalCache
from cloudpack.registry.client import RegistryClient
from cloudpack.registry.retry import RetryPolicy
from cloudpack.sync.engine import SyncEngine

REFERENCE = "registry.test/acme/hello:1.0.0"

_UPLOAD_PATH = re.compile(r"^/v2/(?P<repo>.+)/blobs/uploads/(?P<upload>[^/]*)$")
_BLOB_PATH = re.compile(r"^/v2/(?P<repo>.+)/blobs/(?P<digest>[^/]+)$")
_MANIFEST_PATH = re.compile(r"^/v2/(?P<repo>.+)/manifests/(?P<ref>[^/]+)$")


def _sha256(data: bytes) -> str:
    return f"sha256:{hashlib.sha256(data).hexdigest()}"


def _error(status: int, code: str, message: str = "") -> httpx.Response:
    return httpx.Response(
        status, json={"errors": [{"code": code, "message": message}]}
    )


@dataclass
class Fault:
    """A canned failure for matching requests."""

    method: str
    kind: str
    status: int = 503
    times: int = 1
    skip: int = 0
    exc: Optional[type] = None


@dataclass
class FakeRegistry:
    """Minimal OCI distribution registry kept in memory.

    Records every request and every completed blob upload, and supports
    injecting HTTP errors, timeouts, corrupted blob bodies and a gate that
    holds blob uploads until released.
    """

    blobs: Dict[str, Dict[str, bytes]] = field(default_factory=dict)
    manifests: Dict[str, Dict[str, bytes]] = field(default_factory=dict)
    tags: Dict[str, Dict[str, str]] = field(default_factory=dict)
    uploads: Dict[str, bytearray] = field(default_factory=dict)
    requests: List[Tuple[str, str]] = field(default_factory=list)
    completed_uploads: List[str] = field(default_factory=list)
    manifest_puts: List[str] = field(default_factory=list)
    faults: List[Fault] = field(default_factory=list)
    corrupt: Set[str] = field(default_factory=set)
    upload_gate: Optional[asyncio.Event] = None
    token: Optional[str] = None
    authorization: List[Optional[str]] = field(default_factory=list)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def inject(self, method: str, kind: str, **kwargs) -> Fault:
        fault = Fault(method=method, kind=kind, **kwargs)
        self.faults.append(fault)
        return fault

    def blob_gets(self) -> List[str]:
        return [
            path.rsplit("/", 1)[-1]
            for method, path in self.requests
            if method == "GET" and "/blobs/sha256:" in path
        ]

    def has_blob(self, repository: str, digest: str) -> bool:
        return digest in self.blobs.get(repository, {})

    async def handle(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.requests.append((request.method, path))
        self.authorization.append(request.headers.get("Authorization"))

        if self.token is not None:
            if request.headers.get("Authorization") != f"Bearer {self.token}":
                return _error(401, "UNAUTHORIZED", "authentication required")

        upload = _UPLOAD_PATH.match(path)
        if upload:
            failure = self._fault(request, "upload")
            if failure is not None:
                return failure
            return await self._handle_upload(request, upload["repo"], upload["upload"])

        blob = _BLOB_PATH.match(path)
        if blob:
            failure = self._fault(request, "blob")
            if failure is not None:
                return failure
            return self._handle_blob(request, blob["repo"], blob["digest"])

        manifest = _MANIFEST_PATH.match(path)
        if manifest:
            failure = self._fault(request, "manifest")
            if failure is not None:
                return failure
            return self._handle_manifest(request, manifest["repo"], manifest["ref"])

        return _error(404, "NAME_UNKNOWN", path)

    def _fault(self, request: httpx.Request, kind: str) -> Optional[httpx.Response]:
        for fault in self.faults:
            if fault.kind != kind or fault.method != request.method or fault.times <= 0:
                continue
            if fault.skip > 0:
                fault.skip -= 1
                return None
            fault.times -= 1
            if fault.exc is not None:
                raise fault.exc("injected failure", request=request)
            return _error(fault.status, "INJECTED", f"injected {fault.status}")
        return None

    async def _handle_upload(
        self, request: httpx.Request, repo: str, upload_id: str
    ) -> httpx.Response:
        if request.method == "POST" and not upload_id:
            new_id = uuid.uuid4().hex
            self.uploads[new_id] = bytearray()
            return httpx.Response(
                202,
                headers={"Location": f"/v2/{repo}/blobs/uploads/{new_id}"},
            )

        if upload_id not in self.uploads:
            return _error(404, "BLOB_UPLOAD_UNKNOWN", upload_id)
        received = self.uploads[upload_id]
        location = f"/v2/{repo}/blobs/uploads/{upload_id}"

        if request.method == "GET":
            headers = {"Location": location}
            if received:
                headers["Range"] = f"0-{len(received) - 1}"
            return httpx.Response(204, headers=headers)

        if self.upload_gate is not None:
            await self.upload_gate.wait()

        body = request.content
        if request.method == "PATCH":
            start = int(request.headers["Content-Range"].split("-", 1)[0])
            if start != len(received):
                return _error(416, "BLOB_UPLOAD_INVALID", "range out of order")
            received.extend(body)
            return httpx.Response(
                202,
                headers={"Location": location, "Range": f"0-{len(received) - 1}"},
            )

        if request.method == "PUT":
            received.extend(body)
            digest = request.url.params.get("digest")
            actual = _sha256(bytes(received))
            if digest != actual:
                del self.uploads[upload_id]
                return _error(400, "DIGEST_INVALID", f"{digest} != {actual}")
            self.blobs.setdefault(repo, {})[digest] = bytes(received)
            self.completed_uploads.append(digest)
            del self.uploads[upload_id]
            return httpx.Response(
                201,
                headers={
                    "Location": f"/v2/{repo}/blobs/{digest}",
                    "Docker-Content-Digest": digest,
                },
            )

        return _error(405, "UNSUPPORTED", request.method)

    def _handle_blob(
        self, request: httpx.Request, repo: str, digest: str
    ) -> httpx.Response:
        data = self.blobs.get(repo, {}).get(digest)
        if data is None:
            return _error(404, "BLOB_UNKNOWN", digest)

        if digest in self.corrupt:
            data = bytes([data[0] ^ 0xFF]) + data[1:]

        headers = {"Docker-Content-Digest": digest, "Content-Length": str(len(data))}
        if request.method == "HEAD":
            return httpx.Response(200, headers=headers)
        return httpx.Response(200, headers=headers, content=data)

    def _handle_manifest(
        self, request: httpx.Request, repo: str, ref: str
    ) -> httpx.Response:
        stored = self.manifests.setdefault(repo, {})
        tags = self.tags.setdefault(repo, {})

        if request.method == "PUT":
            body = request.content
            try:
                document = json.loads(body)
            except ValueError:
                return _error(400, "MANIFEST_INVALID", "not json")
            referenced = [document["config"], *document.get("layers", [])]
            for descriptor in referenced:
                if descriptor["digest"] not in self.blobs.get(repo, {}):
                    return _error(400, "MANIFEST_BLOB_UNKNOWN", descriptor["digest"])

            digest = _sha256(body)
            stored[digest] = body
            if not ref.startswith("sha256:"):
                tags[ref] = digest
            self.manifest_puts.append(ref)
            return httpx.Response(
                201,
                headers={
                    "Location": f"/v2/{repo}/manifests/{digest}",
                    "Docker-Content-Digest": digest,
                },
            )

        digest = ref if ref.startswith("sha256:") else tags.get(ref)
        body = stored.get(digest) if digest else None
        if body is None:
            return _error(404, "MANIFEST_UNKNOWN", ref)

        headers = {
            "Content-Type": "application/vnd.oci.image.manifest.v1+json",
            "Docker-Content-Digest": digest,
            "Content-Length": str(len(body)),
        }
        if request.method == "HEAD":
            return httpx.Response(200, headers=headers)
        return httpx.Response(200, headers=headers, content=body)


FAST_RETRY = RetryPolicy(max_attempts=3, base_delay=0.0, max_delay=0.0, jitter=0.0)


@pytest.fixture
def registry() -> FakeRegistry:
    """Provide an empty in-memory registry."""
    return FakeRegistry()


@pytest.fixture
def cache(tmp_path: Path) -> LocalCache:
    """Provide a local cache rooted in a temporary directory."""
    return LocalCache(tmp_path / "cache")


@pytest.fixture
def builder(cache: LocalCache) -> ArtifactBuilder:
    return ArtifactBuilder(cache)


@pytest.fixture
def client(registry: FakeRegistry) -> RegistryClient:
    """Provide a registry client talking to the in-memory registry.

    Retries happen without delay.
    """
    return RegistryClient(transport=registry.transport, retry_policy=FAST_RETRY)


@pytest.fixture
def engine(client: RegistryClient, cache: LocalCache) -> SyncEngine:
    return SyncEngine(client=client, cache=cache)


@pytest.fixture
def make_engine(registry: FakeRegistry, tmp_path: Path):
    """Build engines with their own cache against the shared registry."""

    def factory(name: str = "other", **kwargs) -> SyncEngine:
        client_kwargs = {"retry_policy": FAST_RETRY}
        if "chunk_size" in kwargs:
            client_kwargs["chunk_size"] = kwargs.pop("chunk_size")
        return SyncEngine(
            client=RegistryClient(transport=registry.transport, **client_kwargs),
            cache=LocalCache(tmp_path / f"cache-{name}"),
            **kwargs,
        )

    return factory


@pytest.fixture
def app_dir(tmp_path: Path) -> Path:
    """Provide a source tree for a three-component application.

    Layout:
    - bin/api.wasm, bin/worker.wasm, bin/web.wasm
    - config/routes.json (asset of ``api``)
    - static/index.html (asset of ``web``)
    """
    root = tmp_path / "app"
    (root / "bin").mkdir(parents=True)
    (root / "config").mkdir()
    (root / "static").mkdir()

    (root / "bin" / "api.wasm").write_bytes(b"\x00asm\x01\x00\x00\x00api-component")
    (root / "bin" / "worker.wasm").write_bytes(b"\x00asm\x01\x00\x00\x00worker-component")
    (root / "bin" / "web.wasm").write_bytes(b"\x00asm\x01\x00\x00\x00web-component")
    (root / "config" / "routes.json").write_text('{"routes": ["/api/..."]}')
    (root / "static" / "index.html").write_text("<html><body>hello</body></html>")
    return root


@pytest.fixture
def sample_app(app_dir: Path) -> Dict[str, Any]:
    """Provide an application description over ``app_dir``.

    Three components and two assets, each asset owned by a different
    component.
    """
    return {
        "name": "hello",
        "version": "1.0.0",
        "base_dir": str(app_dir),
        "components": [
            {
                "id": "api",
                "binary": {"kind": "file", "path": "bin/api.wasm"},
                "assets": [{"source": {"kind": "file", "path": "config/routes.json"}}],
                "config": {"LOG": "info"},
            },
            {
                "id": "worker",
                "binary": {"kind": "file", "path": "bin/worker.wasm"},
            },
            {
                "id": "web",
                "binary": {"kind": "file", "path": "bin/web.wasm"},
                "assets": [{"source": {"kind": "file", "path": "static/index.html"}}],
            },
        ],
        "triggers": [
            {"component": "api", "config": {"route": "/api/..."}},
            {"component": "web", "config": {"route": "/..."}},
            {"component": "worker", "type": "redis", "config": {"channel": "jobs"}},
        ],
        "environment": {"REGION": "eu"},
    }


@pytest.fixture
def mock_env_vars(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Dict[str, str]:
    """Provide patched environment variables for tests.

    Returns:
        Dictionary of environment variables set.
    """
    env_vars = {
        "CLOUDPACK_CACHE_DIR": str(tmp_path / "env-cache"),
        "CLOUDPACK_MAX_CONCURRENCY": "8",
        "CLOUDPACK_REQUEST_TIMEOUT": "12.5",
        "CLOUDPACK_INSECURE_REGISTRIES": "localhost:5000, registry.test",
        "LOG_LEVEL": "ERROR",
    }
    for key, value in env_vars.items():
        monkeypatch.setenv(key, value)
    return env_vars
