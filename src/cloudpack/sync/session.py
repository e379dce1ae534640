"""Per-operation transfer state and results."""

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, Optional, Set

from cloudpack.core.models import ArtifactManifest

log = logging.getLogger(__name__)


class PushState(str, Enum):
    BUILDING = "building"
    DIFFING_REMOTE = "diffing_remote"
    UPLOADING_BLOBS = "uploading_blobs"
    UPLOADING_MANIFEST = "uploading_manifest"
    DONE = "done"
    FAILED = "failed"


class PullState(str, Enum):
    FETCHING_MANIFEST = "fetching_manifest"
    DIFFING_CACHE = "diffing_cache"
    DOWNLOADING_BLOBS = "downloading_blobs"
    MATERIALIZING = "materializing"
    DONE = "done"
    FAILED = "failed"


_PUSH_TRANSITIONS = {
    PushState.BUILDING: {PushState.DIFFING_REMOTE},
    PushState.DIFFING_REMOTE: {PushState.UPLOADING_BLOBS},
    PushState.UPLOADING_BLOBS: {PushState.UPLOADING_MANIFEST},
    PushState.UPLOADING_MANIFEST: {PushState.DONE},
}

_PULL_TRANSITIONS = {
    PullState.FETCHING_MANIFEST: {PullState.DIFFING_CACHE},
    PullState.DIFFING_CACHE: {PullState.DOWNLOADING_BLOBS},
    PullState.DOWNLOADING_BLOBS: {PullState.MATERIALIZING, PullState.DONE},
    PullState.MATERIALIZING: {PullState.DONE},
}


@dataclass
class TransferSession:
    """Ephemeral bookkeeping for one push or pull.

    Lives only for the duration of the operation and is never persisted.
    """

    reference: str
    state: Enum
    present_remote: Set[str] = field(default_factory=set)
    present_local: Set[str] = field(default_factory=set)
    in_flight: Set[str] = field(default_factory=set)
    transferred: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    bytes_transferred: int = 0
    failure: Optional[str] = None

    def advance(self, state: Enum) -> None:
        """Move to ``state``; FAILED is reachable from anywhere else."""
        if self.state.value in ("done", "failed"):
            raise RuntimeError(f"Session for {self.reference} already {self.state.value}")

        if state.value != "failed":
            transitions = (
                _PUSH_TRANSITIONS if isinstance(self.state, PushState) else _PULL_TRANSITIONS
            )
            if state not in transitions.get(self.state, set()):
                raise RuntimeError(
                    f"Invalid transition {self.state.value} -> {state.value}"
                )

        log.debug(f"{self.reference}: {self.state.value} -> {state.value}")
        self.state = state

    def fail(self, reason: str) -> None:
        failed = PushState.FAILED if isinstance(self.state, PushState) else PullState.FAILED
        self.failure = reason
        if self.state.value not in ("done", "failed"):
            self.advance(failed)


@dataclass(frozen=True)
class PushResult:
    reference: str
    manifest: ArtifactManifest
    manifest_digest: str
    uploaded: List[str]
    skipped: List[str]
    manifest_uploaded: bool
    bytes_uploaded: int


@dataclass(frozen=True)
class PullResult:
    reference: str
    manifest: ArtifactManifest
    manifest_digest: str
    downloaded: List[str]
    cached: List[str]
    bytes_downloaded: int
    destination: Optional[Path] = None
    files: List[str] = field(default_factory=list)
