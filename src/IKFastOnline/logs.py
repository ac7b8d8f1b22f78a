# === NAVMAP v1 ===
# {
#   "module": "IKFastOnline.logs",
#   "purpose": "Job log retrieval, line classification, bounded buffering, and robot link table parsing",
#   "sections": [
#     {"id": "classification", "name": "Line Classification", "anchor": "CLS", "kind": "helpers"},
#     {"id": "logbuffer", "name": "LogBuffer", "anchor": "class-logbuffer", "kind": "class"},
#     {"id": "runlogreader", "name": "RunLogReader", "anchor": "class-runlogreader", "kind": "class"},
#     {"id": "parse-link-info", "name": "parse_link_info", "anchor": "function-parse-link-info", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""Job log handling.

Logs become readable once the coordinator reports a terminal state. The run
log archive from the provider is preferred; when it is unavailable (expired,
no permission) the log files shipped inside the output bundle are used.

The info-mode job prints the robot's link table::

    === STEP 3: Extract Link Information ===
    name          index parents
    base_link     0
    link1         1     base_link(0)

:func:`parse_link_info` turns that table into :class:`LinkInfo` records so a
caller can pick the base and end-effector links for a generate run.
"""

from __future__ import annotations

import enum
import logging
import re
from collections import deque
from dataclasses import dataclass
from typing import Deque, List, Optional

from .bundles import find_member, open_bundle, read_log_archive, read_member
from .errors import ArtifactNotFoundError, CorruptBundleError, GateClosedError, RemoteAPIError
from .lifecycle import JobLifecycleCoordinator
from .network.client import RemoteJobClient
from .settings import ArtifactSettings

logger = logging.getLogger(__name__)

LOG_MAX_LINES = 10_000

_ANSI_ESCAPE = re.compile(r"\x1b\[[0-9;]*m")
_STEP_MARKERS = (
    re.compile(r"===\s*STEP\s+\d+:", re.IGNORECASE),
    re.compile(r"^STEP\s+\d+:", re.IGNORECASE),
)
_ERROR_MARKERS = re.compile(r"error:|failed:|exception:|traceback|\[ERROR\]|\[FAIL\]", re.IGNORECASE)

_LINK_SECTION_MARKERS = ("--info links", "Extract Link Information")
_LINK_HEADER = re.compile(r"^name\s+index\s+parent", re.IGNORECASE)
_LINK_ROW = re.compile(r"^(\S+)\s+(\d+)\s*(.*?)$")
_LINK_PARENT = re.compile(r"^(\S+)\(")


# --- Line Classification ---


def strip_ansi(text: str) -> str:
    return _ANSI_ESCAPE.sub("", text)


def is_step_marker(line: str) -> bool:
    stripped = line.strip()
    return any(pattern.search(stripped) for pattern in _STEP_MARKERS)


def is_error_line(line: str) -> bool:
    return bool(_ERROR_MARKERS.search(line))


class LineKind(str, enum.Enum):
    STEP = "step"
    ERROR = "error"
    TEXT = "text"


@dataclass(slots=True, frozen=True)
class LogLine:
    text: str
    kind: LineKind


def classify(line: str) -> LogLine:
    """Strip escapes from ``line`` and tag it as a step marker, error, or plain text."""

    text = strip_ansi(line).rstrip("\r")
    if is_step_marker(text):
        return LogLine(text, LineKind.STEP)
    if is_error_line(text):
        return LogLine(text, LineKind.ERROR)
    return LogLine(text, LineKind.TEXT)


class LogBuffer:
    """Bounded, append-only view of a job log; the oldest lines are evicted first."""

    def __init__(self, max_lines: int = LOG_MAX_LINES) -> None:
        if max_lines < 1:
            raise ValueError("max_lines must be >= 1")
        self.max_lines = max_lines
        self._lines: Deque[LogLine] = deque(maxlen=max_lines)
        self.dropped = 0

    def __len__(self) -> int:
        return len(self._lines)

    def append(self, chunk: str) -> List[LogLine]:
        """Append a chunk of log text and return the classified new lines."""

        added = [classify(line) for line in chunk.splitlines()]
        overflow = len(self._lines) + len(added) - self.max_lines
        if overflow > 0:
            self.dropped += overflow
        self._lines.extend(added)
        return added

    def clear(self) -> None:
        self._lines.clear()
        self.dropped = 0

    @property
    def lines(self) -> List[LogLine]:
        return list(self._lines)

    def steps(self) -> List[LogLine]:
        return [line for line in self._lines if line.kind is LineKind.STEP]

    def errors(self) -> List[LogLine]:
        return [line for line in self._lines if line.kind is LineKind.ERROR]

    def text(self) -> str:
        return "\n".join(line.text for line in self._lines)


class RunLogReader:
    """Fetch the log of the coordinator's current run once it has finished."""

    def __init__(
        self,
        coordinator: JobLifecycleCoordinator,
        client: RemoteJobClient,
        *,
        artifacts: Optional[ArtifactSettings] = None,
    ) -> None:
        self._coordinator = coordinator
        self._client = client
        self._settings = artifacts or ArtifactSettings()

    def is_available(self) -> bool:
        state = self._coordinator.state
        return state is not None and state.is_terminal and self._coordinator.run_id is not None

    async def read(self) -> str:
        """Return the run's log text with ANSI escapes removed.

        Raises:
            GateClosedError: The job has not reached a terminal state.
            ArtifactNotFoundError: Neither the run logs nor the bundle logs exist.
        """

        if not self.is_available():
            raise GateClosedError("Logs become available once the job has finished")
        run_id = int(self._coordinator.run_id)  # type: ignore[arg-type]
        try:
            return strip_ansi(read_log_archive(await self._client.get_logs(run_id)))
        except (RemoteAPIError, CorruptBundleError) as exc:
            logger.warning(
                "Run log archive unavailable, falling back to bundle logs: %s",
                exc,
                extra={"stage": "logs", "run_id": run_id},
            )
        text = await self._read_bundle_logs(run_id)
        if text is None:
            raise ArtifactNotFoundError(
                f"No logs are available for run {run_id}",
                artifact_name=self._settings.bundle_name,
                filename=self._settings.log_filename,
            )
        return strip_ansi(text)

    async def read_buffer(self, max_lines: int = LOG_MAX_LINES) -> LogBuffer:
        buffer = LogBuffer(max_lines)
        buffer.append(await self.read())
        return buffer

    async def _read_bundle_logs(self, run_id: int) -> Optional[str]:
        artifacts = await self._client.list_artifacts(run_id)
        bundle = next(
            (a for a in artifacts if a.name == self._settings.bundle_name and not a.expired),
            None,
        )
        if bundle is None:
            return None
        data = await self._client.download_artifact(bundle.id)
        parts = []
        with open_bundle(data) as archive:
            for filename in (self._settings.info_log_filename, self._settings.log_filename):
                member = find_member(archive, filename)
                if member is not None:
                    parts.append(read_member(archive, member).decode("utf-8", errors="replace"))
        return "\n".join(parts) if parts else None


# --- Link Table ---


@dataclass(slots=True, frozen=True)
class LinkInfo:
    """One row of the robot link table."""

    name: str
    index: int
    parent: Optional[str]
    is_root: bool
    is_leaf: bool


def parse_link_info(log_text: str) -> List[LinkInfo]:
    """Extract the link table printed by the info-mode job.

    Rows are read after the section marker and the ``name index parents``
    header, up to the next ``===`` or ``STEP`` line. A link is a root when it
    has no parent and a leaf when no other link names it as parent.

    Examples:
        >>> text = "STEP 2: --info links\\nname index parents\\nbase 0\\ntool 1 base(0)\\n"
        >>> [(link.name, link.is_root, link.is_leaf) for link in parse_link_info(text)]
        [('base', True, False), ('tool', False, True)]
    """

    rows = []
    in_section = False
    header_found = False
    for raw in strip_ansi(log_text).splitlines():
        line = raw.strip()
        if any(marker in line for marker in _LINK_SECTION_MARKERS):
            in_section = True
            continue
        if not in_section:
            continue
        if not header_found:
            if _LINK_HEADER.match(line):
                header_found = True
            continue
        if not line:
            continue
        if line.startswith("===") or line.startswith("STEP"):
            break
        match = _LINK_ROW.match(line)
        if match is None:
            continue
        name, index, parent_info = match.groups()
        parent_match = _LINK_PARENT.match(parent_info.strip())
        rows.append((name, int(index), parent_match.group(1) if parent_match else None))

    parents = {parent for _, _, parent in rows if parent is not None}
    return [
        LinkInfo(
            name=name,
            index=index,
            parent=parent,
            is_root=parent is None,
            is_leaf=name not in parents,
        )
        for name, index, parent in rows
    ]


__all__ = [
    "LOG_MAX_LINES",
    "LineKind",
    "LinkInfo",
    "LogBuffer",
    "LogLine",
    "RunLogReader",
    "classify",
    "is_error_line",
    "is_step_marker",
    "parse_link_info",
    "strip_ansi",
]
