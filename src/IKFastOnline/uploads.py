"""Validation and upload of the robot description the job consumes.

The generator reads its input from a fixed path in the repository
(``jobs/current/robot.urdf`` by default). An upload replaces that file, so
the existing blob sha is looked up first and passed along with the new
content.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional
from xml.etree import ElementTree

from .errors import InputFileError
from .network.client import GitHubActionsClient
from .settings import RepositorySettings, UploadSettings

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class UploadResult:
    path: str
    size: int
    sha: Optional[str]
    replaced: bool


def validate_robot_description(data: bytes, name: str) -> None:
    """Raise :class:`InputFileError` unless ``data`` is a well-formed XML document."""

    if not data.strip():
        raise InputFileError(f"{name} is empty", reason="empty")
    try:
        ElementTree.fromstring(data)
    except ElementTree.ParseError as exc:
        raise InputFileError(f"{name} is not well-formed XML: {exc}", reason="xml") from exc


def validate_input_file(path: Path, settings: Optional[UploadSettings] = None) -> bytes:
    """Check extension, size, and XML well-formedness; return the file bytes.

    Args:
        path: Local robot description file.
        settings: Size limit and accepted extensions.

    Raises:
        InputFileError: ``reason`` is one of ``extension``, ``missing``,
            ``empty``, ``size``, ``xml``.
    """

    settings = settings or UploadSettings()
    path = Path(path)
    if path.suffix.lower() not in settings.allowed_extensions:
        raise InputFileError(
            f"{path.name}: unsupported file type (expected {', '.join(settings.allowed_extensions)})",
            reason="extension",
        )
    if not path.is_file():
        raise InputFileError(f"{path}: file not found", reason="missing")
    size = path.stat().st_size
    if size == 0:
        raise InputFileError(f"{path.name} is empty", reason="empty")
    if size > settings.max_file_size:
        raise InputFileError(
            f"{path.name} is {size / 1_048_576:.1f} MB; the limit is "
            f"{settings.max_file_size / 1_048_576:.0f} MB",
            reason="size",
        )
    data = path.read_bytes()
    validate_robot_description(data, path.name)
    return data


async def upload_input(
    client: GitHubActionsClient,
    path: Path,
    *,
    repository: Optional[RepositorySettings] = None,
    settings: Optional[UploadSettings] = None,
) -> UploadResult:
    """Validate ``path`` and store it at the repository's input path."""

    repository = repository or RepositorySettings()
    data = validate_input_file(path, settings)
    existing = await client.get_file(repository.input_path)
    existing_sha = existing.get("sha") if existing else None
    payload = await client.upload_file(
        repository.input_path,
        data,
        f"Upload robot description: {Path(path).name}",
        sha=existing_sha,
    )
    content = payload.get("content") or {}
    logger.info(
        "%s %s",
        "Replaced" if existing_sha else "Created",
        repository.input_path,
        extra={"stage": "upload"},
    )
    return UploadResult(
        path=repository.input_path,
        size=len(data),
        sha=content.get("sha"),
        replaced=existing_sha is not None,
    )


__all__ = ["UploadResult", "upload_input", "validate_input_file", "validate_robot_description"]
