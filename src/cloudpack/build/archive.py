"""
Deterministic asset archives.

A component's asset files are bundled into gzipped tarballs whose bytes depend
only on file paths and contents: entries are sorted, timestamps and ownership
are zeroed and the gzip header carries no name or mtime. The same asset set
therefore always produces the same archive digest.
"""

import gzip
import logging
import shutil
import tarfile
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Callable, List, Optional

from cloudpack.core.models import normalize_relative_path
from cloudpack.exceptions import UnsafeArchiveError

log = logging.getLogger(__name__)

FILE_MODE = 0o644
GZIP_LEVEL = 6


@dataclass(frozen=True)
class ArchiveEntry:
    """One file to place in an archive."""

    destination: str  # Relative path inside the archive
    size: int
    open: Callable[[], BinaryIO]  # Returns a fresh readable stream


def plan_archives(
    entries: List[ArchiveEntry], max_bytes: Optional[int] = None
) -> List[List[ArchiveEntry]]:
    """
    Group entries into archives.

    Without ``max_bytes`` every entry goes into one archive. With it, entries
    are packed greedily in path order so that no archive exceeds ``max_bytes``
    of uncompressed content, except a single entry that is larger on its own.

    Args:
        entries: Files to bundle
        max_bytes: Optional split threshold in bytes

    Returns:
        Lists of entries, one list per archive, in deterministic order
    """
    ordered = sorted(entries, key=lambda entry: entry.destination)
    if not ordered:
        return []
    if max_bytes is None:
        return [ordered]

    groups: List[List[ArchiveEntry]] = []
    current: List[ArchiveEntry] = []
    current_size = 0
    for entry in ordered:
        if current and current_size + entry.size > max_bytes:
            groups.append(current)
            current, current_size = [], 0
        current.append(entry)
        current_size += entry.size
    groups.append(current)
    return groups


def write_archive(entries: List[ArchiveEntry], output: BinaryIO) -> None:
    """
    Write a deterministic ``tar+gzip`` archive of ``entries`` to ``output``.

    Args:
        entries: Files to archive; written in path order
        output: Writable binary stream
    """
    with gzip.GzipFile(
        filename="", mode="wb", fileobj=output, mtime=0, compresslevel=GZIP_LEVEL
    ) as gz:
        with tarfile.open(fileobj=gz, mode="w", format=tarfile.PAX_FORMAT) as tar:
            for entry in sorted(entries, key=lambda e: e.destination):
                info = tarfile.TarInfo(name=entry.destination)
                info.size = entry.size
                info.mtime = 0
                info.mode = FILE_MODE
                info.uid = info.gid = 0
                info.uname = info.gname = ""
                info.type = tarfile.REGTYPE

                with entry.open() as source:
                    tar.addfile(info, source)
                log.debug(f"      Archived: {entry.destination}")


def _safe_member_path(member: tarfile.TarInfo) -> str:
    try:
        return normalize_relative_path(member.name)
    except ValueError as e:
        raise UnsafeArchiveError(f"Refusing archive member {member.name!r}: {e}") from e


def list_archive(stream: BinaryIO) -> List[str]:
    """
    Return the file paths contained in an asset archive.

    Raises:
        UnsafeArchiveError: If the archive is malformed or has unsafe members
    """
    try:
        with tarfile.open(fileobj=stream, mode="r:gz") as tar:
            names = []
            for member in tar.getmembers():
                if member.isdir():
                    continue
                if not member.isfile():
                    raise UnsafeArchiveError(
                        f"Archive member {member.name!r} is not a regular file"
                    )
                names.append(_safe_member_path(member))
            return names
    except (tarfile.TarError, OSError, EOFError) as e:
        raise UnsafeArchiveError(f"Invalid asset archive: {e}") from e


def extract_archive(stream: BinaryIO, destination: Path) -> List[str]:
    """
    Extract an asset archive beneath ``destination``.

    Only regular files and directories are accepted; members with absolute
    paths, ``..`` segments, links or device nodes are rejected before any
    byte is written for them.

    Args:
        stream: Readable archive stream
        destination: Directory to extract into

    Returns:
        Relative paths of the extracted files

    Raises:
        UnsafeArchiveError: If the archive is malformed or has unsafe members
    """
    destination = Path(destination)
    root = destination.resolve()
    written = []

    try:
        with tarfile.open(fileobj=stream, mode="r:gz") as tar:
            for member in tar:
                if member.isdir():
                    continue
                if not member.isfile():
                    raise UnsafeArchiveError(
                        f"Archive member {member.name!r} is not a regular file"
                    )

                relative = _safe_member_path(member)
                target = destination / relative
                if not target.resolve().is_relative_to(root):
                    raise UnsafeArchiveError(
                        f"Archive member {member.name!r} escapes {destination}"
                    )

                source = tar.extractfile(member)
                if source is None:
                    raise UnsafeArchiveError(f"Cannot read archive member {member.name!r}")

                target.parent.mkdir(parents=True, exist_ok=True)
                with source, open(target, "wb") as out:
                    shutil.copyfileobj(source, out)
                written.append(relative)
    except (tarfile.TarError, EOFError) as e:
        raise UnsafeArchiveError(f"Invalid asset archive: {e}") from e

    return written
