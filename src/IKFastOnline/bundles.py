"""Helpers for the zip archives the job provider serves.

Artifact bundles and run-log archives both arrive as zip files held in
memory. Members are looked up by exact path first and then by a unique
basename, because the job may nest its outputs under ``outputs/``.
"""

from __future__ import annotations

import io
import posixpath
import zipfile
from typing import List, Optional

from .errors import CorruptBundleError


def open_bundle(data: bytes) -> zipfile.ZipFile:
    """Open ``data`` as a zip archive, raising :class:`CorruptBundleError` if unreadable."""

    try:
        return zipfile.ZipFile(io.BytesIO(data))
    except (zipfile.BadZipFile, ValueError) as exc:
        raise CorruptBundleError(f"Downloaded bundle is not a valid zip archive: {exc}") from exc


def member_names(archive: zipfile.ZipFile) -> List[str]:
    return [info.filename for info in archive.infolist() if not info.is_dir()]


def find_member(archive: zipfile.ZipFile, filename: str) -> Optional[str]:
    """Return the archive path holding ``filename``, or ``None``.

    An exact path wins; otherwise a single member with the same basename is
    accepted. Ambiguous basenames resolve to ``None``.
    """

    names = member_names(archive)
    wanted = filename.strip("/")
    if wanted in names:
        return wanted
    basename = posixpath.basename(wanted)
    candidates = [name for name in names if posixpath.basename(name) == basename]
    return candidates[0] if len(candidates) == 1 else None


def read_member(archive: zipfile.ZipFile, member: str) -> bytes:
    try:
        return archive.read(member)
    except (zipfile.BadZipFile, KeyError, RuntimeError) as exc:
        raise CorruptBundleError(f"Unable to read {member} from bundle: {exc}") from exc


def read_log_archive(data: bytes) -> str:
    """Concatenate every member of a run-log archive, ordered by member name.

    Plain-text payloads (some providers stream a single log) are returned as is.
    """

    if not zipfile.is_zipfile(io.BytesIO(data)):
        return data.decode("utf-8", errors="replace")
    with open_bundle(data) as archive:
        parts = []
        for name in sorted(member_names(archive)):
            parts.append(read_member(archive, name).decode("utf-8", errors="replace"))
    return "\n".join(parts)


__all__ = ["find_member", "member_names", "open_bundle", "read_log_archive", "read_member"]
