"""Content addressing: stable digests and blob descriptors.

Digests are ``sha256:<64 lowercase hex>`` strings. They are the only identity
a blob has, so everything here is deterministic and free of side effects,
except for the optional ``sink`` that lets callers tee hashed bytes into a
cache file while reading a source once.
"""

import hashlib
import re
from pathlib import Path
from typing import TYPE_CHECKING, BinaryIO, Callable, Dict, Optional, Tuple

from cloudpack.config import READ_CHUNK_SIZE
from cloudpack.exceptions import InvalidDigestError

if TYPE_CHECKING:
    from .models import BlobDescriptor

DIGEST_ALGORITHM = "sha256"

_DIGEST_PATTERN = re.compile(
    r"^(?P<algorithm>[a-z0-9]+(?:[+._-][a-z0-9]+)*):(?P<hex>[a-f0-9]+)$"
)
_HEX_LENGTHS = {"sha256": 64, "sha512": 128}


class IncrementalDigest:
    """Hash bytes as they arrive and report the running size."""

    def __init__(self, algorithm: str = DIGEST_ALGORITHM):
        self.algorithm = algorithm
        self._hash = hashlib.new(algorithm)
        self.size = 0

    def update(self, chunk: bytes) -> None:
        self._hash.update(chunk)
        self.size += len(chunk)

    def hexdigest(self) -> str:
        return self._hash.hexdigest()

    @property
    def digest(self) -> str:
        return f"{self.algorithm}:{self._hash.hexdigest()}"


def digest(data: bytes) -> str:
    """Return the digest of ``data``."""
    return f"{DIGEST_ALGORITHM}:{hashlib.sha256(data).hexdigest()}"


def parse_digest(value: str) -> Tuple[str, str]:
    """Split a digest into ``(algorithm, hex)``.

    Raises:
        InvalidDigestError: If ``value`` is not a well-formed digest.
    """
    match = _DIGEST_PATTERN.match(value or "")
    if not match:
        raise InvalidDigestError(f"Invalid digest: {value!r}")

    algorithm, hex_value = match.group("algorithm"), match.group("hex")
    expected_length = _HEX_LENGTHS.get(algorithm)
    if expected_length is None:
        raise InvalidDigestError(f"Unsupported digest algorithm: {algorithm}")
    if len(hex_value) != expected_length:
        raise InvalidDigestError(
            f"Invalid {algorithm} digest length {len(hex_value)}: {value!r}"
        )
    return algorithm, hex_value


def is_digest(value: str) -> bool:
    try:
        parse_digest(value)
    except InvalidDigestError:
        return False
    return True


def hash_stream(
    stream: BinaryIO,
    sink: Optional[Callable[[bytes], object]] = None,
    chunk_size: int = READ_CHUNK_SIZE,
) -> Tuple[str, int]:
    """Hash ``stream`` chunk by chunk, passing each chunk to ``sink`` if given.

    Returns:
        ``(digest, size)`` of everything read.
    """
    hasher = IncrementalDigest()
    while True:
        chunk = stream.read(chunk_size)
        if not chunk:
            break
        hasher.update(chunk)
        if sink is not None:
            sink(chunk)
    return hasher.digest, hasher.size


def describe(
    data: bytes, media_type: str, annotations: Optional[Dict[str, str]] = None
) -> "BlobDescriptor":
    """Build the descriptor of an in-memory blob."""
    from .models import BlobDescriptor

    return BlobDescriptor(
        digest=digest(data),
        size=len(data),
        media_type=media_type,
        annotations=annotations or None,
    )


def describe_file(
    path: Path, media_type: str, annotations: Optional[Dict[str, str]] = None
) -> "BlobDescriptor":
    """Build the descriptor of a file without loading it into memory."""
    from .models import BlobDescriptor

    with open(path, "rb") as handle:
        file_digest, size = hash_stream(handle)
    return BlobDescriptor(
        digest=file_digest,
        size=size,
        media_type=media_type,
        annotations=annotations or None,
    )
