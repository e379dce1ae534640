"""Artifact references: ``registry/repository[:tag][@digest]``."""

import re
from dataclasses import dataclass, replace
from typing import Optional

from cloudpack.core.digest import is_digest
from cloudpack.exceptions import InvalidReferenceError

DEFAULT_TAG = "latest"

_REPOSITORY_PATTERN = re.compile(
    r"^[a-z0-9]+(?:[._-][a-z0-9]+)*(?:/[a-z0-9]+(?:[._-][a-z0-9]+)*)*$"
)
_TAG_PATTERN = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}$")


def _looks_like_registry(component: str) -> bool:
    return "." in component or ":" in component or component == "localhost"


@dataclass(frozen=True)
class ArtifactReference:
    """Location of an artifact in a registry.

    Callers pass references around as opaque strings; only the registry
    client parses them to build request URLs.
    """

    registry: str
    repository: str
    tag: Optional[str] = None
    digest: Optional[str] = None

    @classmethod
    def parse(cls, value: str) -> "ArtifactReference":
        """
        Parse ``host[:port]/repo/path[:tag][@sha256:...]``.

        A reference without tag or digest gets the ``latest`` tag.

        Raises:
            InvalidReferenceError: If the reference is malformed
        """
        if not value or not value.strip():
            raise InvalidReferenceError("Artifact reference is empty")
        remainder = value.strip()

        digest = None
        if "@" in remainder:
            remainder, digest = remainder.split("@", 1)
            if not is_digest(digest):
                raise InvalidReferenceError(f"Invalid digest in reference {value!r}")

        if "/" not in remainder:
            raise InvalidReferenceError(
                f"Reference {value!r} must include a registry host"
            )
        registry, path = remainder.split("/", 1)
        if not _looks_like_registry(registry):
            raise InvalidReferenceError(
                f"Reference {value!r} must start with a registry host"
            )

        tag = None
        last_segment = path.rsplit("/", 1)[-1]
        if ":" in last_segment:
            path, tag = path.rsplit(":", 1)
            if not _TAG_PATTERN.match(tag):
                raise InvalidReferenceError(f"Invalid tag {tag!r} in {value!r}")

        if not _REPOSITORY_PATTERN.match(path):
            raise InvalidReferenceError(f"Invalid repository {path!r} in {value!r}")

        if tag is None and digest is None:
            tag = DEFAULT_TAG

        return cls(registry=registry, repository=path, tag=tag, digest=digest)

    @property
    def target(self) -> str:
        """Manifest path component: the digest when pinned, else the tag."""
        return self.digest or self.tag or DEFAULT_TAG

    @property
    def repository_key(self) -> str:
        return f"{self.registry}/{self.repository}"

    def with_digest(self, digest: str) -> "ArtifactReference":
        return replace(self, digest=digest)

    def __str__(self) -> str:
        value = self.repository_key
        if self.tag:
            value += f":{self.tag}"
        if self.digest:
            value += f"@{self.digest}"
        return value
