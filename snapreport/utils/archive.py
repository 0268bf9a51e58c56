"""Deterministic zip archives: identical logical content yields identical bytes."""

from __future__ import annotations

import asyncio
import hashlib
import io
import logging
import os
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Union

logger = logging.getLogger(__name__)

# Every entry gets the same modification time so the bytes never depend on
# when or where the package was built. DOS timestamps need even seconds.
FILE_CREATION_DATE = (2019, 2, 8, 13, 31, 54)
COMPRESSION_LEVEL = 6

SOFT_LIMIT_BYTES = 30 * 1024 * 1024
HARD_LIMIT_BYTES = 60 * 1024 * 1024
LARGEST_ENTRIES_SHOWN = 20


class ArchiveError(ValueError):
    """Raised when an archive is empty or too large to upload."""


@dataclass
class ArchiveEntry:
    name: str
    size: int


@dataclass
class ContentEntry:
    """In-memory content to include in an archive under ``name``."""
    name: str
    content: Union[str, bytes]


@dataclass
class ArchiveResult:
    buffer: bytes
    hash: str


def create_hash(data: Union[str, bytes]) -> str:
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.md5(data).hexdigest()


def _to_mb(size: int) -> int:
    return round(size / 1024 / 1024)


def _largest_entries_listing(entries: list[ArchiveEntry]) -> str:
    largest = sorted(entries, key=lambda e: e.size, reverse=True)[:LARGEST_ENTRIES_SHOWN]
    return "\n".join(f"  - {e.name}: {_to_mb(e.size)} MB" for e in largest)


def validate_archive(total_bytes: int, entries: list[ArchiveEntry]) -> None:
    """Reject empty or oversized archives; warn when approaching the limit."""
    if total_bytes == 0:
        raise ArchiveError("Archive is empty")

    if total_bytes > HARD_LIMIT_BYTES:
        raise ArchiveError(
            f"Package size is {_to_mb(total_bytes)} MB, maximum is "
            f"{_to_mb(HARD_LIMIT_BYTES)} MB. Largest files:\n"
            f"{_largest_entries_listing(entries)}"
        )

    if total_bytes > SOFT_LIMIT_BYTES:
        logger.warning(
            "Package size is %d MB, which is close to the maximum of %d MB. "
            "Largest files:\n%s",
            _to_mb(total_bytes), _to_mb(HARD_LIMIT_BYTES),
            _largest_entries_listing(entries),
        )


def resolve_files(dirs_and_files: Iterable[Union[str, Path]]) -> list[tuple[str, Path]]:
    """Expand directories recursively into (archive name, file path) pairs.

    Directory contents are named relative to the directory; single files
    relative to the working directory. Names always use forward slashes.
    """
    result: list[tuple[str, Path]] = []
    for item in dict.fromkeys(str(p) for p in dirs_and_files):
        path = Path(item).resolve()
        if path.is_dir():
            for file_path in path.rglob("*"):
                if file_path.is_file():
                    result.append((file_path.relative_to(path).as_posix(), file_path))
        else:
            name = Path(os.path.relpath(path, Path.cwd())).as_posix()
            result.append((name, path))
    return result


def build_archive(
    dirs_and_files: Iterable[Union[str, Path]] = (),
    content: Iterable[ContentEntry] = (),
) -> ArchiveResult:
    """Build a deterministic zip of files on disk plus in-memory content.

    When the same name comes from several sources, the first one wins, with
    files on disk taking precedence over in-memory content.
    """
    files_sorted = sorted(resolve_files(dirs_and_files), key=lambda f: f[0])
    content_sorted = sorted(content, key=lambda c: c.name)

    seen: set[str] = set()
    entry_data: list[tuple[str, bytes]] = []

    for name, path in files_sorted:
        if name not in seen:
            entry_data.append((name, path.read_bytes()))
            seen.add(name)

    for item in content_sorted:
        if item.name not in seen:
            data = item.content.encode("utf-8") if isinstance(item.content, str) else item.content
            entry_data.append((item.name, data))
            seen.add(item.name)

    entry_data.sort(key=lambda e: e[0])

    out = io.BytesIO()
    with zipfile.ZipFile(out, "w") as zf:
        for name, data in entry_data:
            info = zipfile.ZipInfo(name, date_time=FILE_CREATION_DATE)
            info.compress_type = zipfile.ZIP_DEFLATED
            info.create_system = 3
            info.external_attr = 0o644 << 16
            zf.writestr(info, data, compresslevel=COMPRESSION_LEVEL)

    buffer = out.getvalue()
    validate_archive(len(buffer), [ArchiveEntry(name, len(data)) for name, data in entry_data])
    return ArchiveResult(buffer=buffer, hash=create_hash(buffer))


async def deterministic_archive(
    dirs_and_files: Iterable[Union[str, Path]] = (),
    content: Iterable[ContentEntry] = (),
) -> ArchiveResult:
    """Async wrapper that builds the archive off the event loop."""
    return await asyncio.to_thread(build_archive, list(dirs_and_files), list(content))
