# === NAVMAP v1 ===
# {
#   "module": "IKFastOnline.models",
#   "purpose": "Immutable records for remote runs, artifacts, lifecycle states, and polling snapshots",
#   "sections": [
#     {"id": "lifecyclestate", "name": "LifecycleState", "anchor": "class-lifecyclestate", "kind": "class"},
#     {"id": "map-status", "name": "map_status", "anchor": "function-map-status", "kind": "function"},
#     {"id": "jobrun", "name": "JobRun", "anchor": "class-jobrun", "kind": "class"},
#     {"id": "artifact", "name": "Artifact", "anchor": "class-artifact", "kind": "class"},
#     {"id": "pollingstate", "name": "PollingState", "anchor": "class-pollingstate", "kind": "class"},
#     {"id": "joboutcome", "name": "JobOutcome", "anchor": "class-joboutcome", "kind": "class"}
#   ]
# }
# === /NAVMAP ===

"""Immutable records exchanged between the remote client and the coordinator.

The remote CI provider reports a run as a ``(status, conclusion)`` pair drawn
from an open vocabulary. Everything downstream reacts to the closed
:class:`LifecycleState` view computed by :func:`map_status`; it is never
stored on its own, so a :class:`JobRun` snapshot and the state derived from it
cannot drift apart.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Mapping, Optional


class LifecycleState(str, enum.Enum):
    """Closed set of job states the rest of the system reacts to."""

    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    UNKNOWN = "unknown"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES

    @property
    def is_active(self) -> bool:
        return self in ACTIVE_STATES


TERMINAL_STATES = frozenset(
    {LifecycleState.COMPLETED, LifecycleState.FAILED, LifecycleState.CANCELLED}
)
ACTIVE_STATES = frozenset({LifecycleState.QUEUED, LifecycleState.IN_PROGRESS})

_CONCLUSION_STATES = {
    "success": LifecycleState.COMPLETED,
    "failure": LifecycleState.FAILED,
    "cancelled": LifecycleState.CANCELLED,
}


def map_status(raw_status: Optional[str], raw_conclusion: Optional[str]) -> LifecycleState:
    """Map a remote ``(status, conclusion)`` pair onto a :class:`LifecycleState`.

    ``completed`` runs whose conclusion is anything other than success,
    failure, or cancelled (``skipped``, ``neutral``, missing, ...) map to
    ``UNKNOWN`` so that downloads stay locked.

    Examples:
        >>> map_status("completed", "success")
        <LifecycleState.COMPLETED: 'completed'>
        >>> map_status("completed", "skipped")
        <LifecycleState.UNKNOWN: 'unknown'>
    """

    if raw_status == "queued":
        return LifecycleState.QUEUED
    if raw_status == "in_progress":
        return LifecycleState.IN_PROGRESS
    if raw_status == "completed":
        return _CONCLUSION_STATES.get(raw_conclusion or "", LifecycleState.UNKNOWN)
    return LifecycleState.UNKNOWN


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp (``Z`` suffix allowed) into an aware datetime."""

    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True, slots=True)
class JobRun:
    """One remote execution as last reported by the provider.

    Each successful poll replaces the whole record; it is never patched.
    """

    id: int
    raw_status: Optional[str]
    raw_conclusion: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    name: Optional[str] = None
    html_url: Optional[str] = None
    run_number: Optional[int] = None
    event: Optional[str] = None

    @property
    def lifecycle_state(self) -> LifecycleState:
        return map_status(self.raw_status, self.raw_conclusion)

    @classmethod
    def from_api(cls, payload: Mapping[str, Any]) -> "JobRun":
        """Build a run from a GitHub ``workflow_run`` JSON object."""

        return cls(
            id=int(payload["id"]),
            raw_status=payload.get("status"),
            raw_conclusion=payload.get("conclusion"),
            created_at=parse_timestamp(payload.get("created_at")),
            updated_at=parse_timestamp(payload.get("updated_at")),
            name=payload.get("name"),
            html_url=payload.get("html_url"),
            run_number=payload.get("run_number"),
            event=payload.get("event"),
        )


@dataclass(frozen=True, slots=True)
class Artifact:
    """Read-only snapshot of an output bundle attached to a run."""

    id: int
    name: str
    size_in_bytes: int = 0
    archive_download_url: Optional[str] = None
    expired: bool = False
    created_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None

    @classmethod
    def from_api(cls, payload: Mapping[str, Any]) -> "Artifact":
        return cls(
            id=int(payload["id"]),
            name=str(payload["name"]),
            size_in_bytes=int(payload.get("size_in_bytes") or 0),
            archive_download_url=payload.get("archive_download_url"),
            expired=bool(payload.get("expired", False)),
            created_at=parse_timestamp(payload.get("created_at")),
            expires_at=parse_timestamp(payload.get("expires_at")),
        )


@dataclass(frozen=True, slots=True)
class TriggerResponse:
    """Outcome of a dispatch request; the provider returns no run id."""

    success: bool
    status_code: Optional[int] = None


class CoordinatorPhase(str, enum.Enum):
    IDLE = "idle"
    TRIGGERING = "triggering"
    POLLING = "polling"
    TERMINAL = "terminal"


class OutcomeReason(str, enum.Enum):
    """Why polling ended."""

    REMOTE = "remote"
    TIMEOUT = "timeout"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class PollingState:
    """Snapshot of the coordinator's polling bookkeeping."""

    is_polling: bool
    poll_count: int
    current_interval: float
    run_id: Optional[int] = None
    started_at: Optional[float] = None


@dataclass(frozen=True, slots=True)
class JobOutcome:
    """Terminal result reported to completion callbacks."""

    state: LifecycleState
    run: Optional[JobRun]
    reason: OutcomeReason = OutcomeReason.REMOTE
    error: Optional[BaseException] = None

    @property
    def succeeded(self) -> bool:
        return self.reason is OutcomeReason.REMOTE and self.state is LifecycleState.COMPLETED

    @property
    def timed_out(self) -> bool:
        return self.reason is OutcomeReason.TIMEOUT


@dataclass(frozen=True, slots=True)
class TriggerResult:
    success: bool
    run_id: Optional[int] = None
    warning: Optional[Warning] = None


__all__ = [
    "ACTIVE_STATES",
    "Artifact",
    "CoordinatorPhase",
    "JobOutcome",
    "JobRun",
    "LifecycleState",
    "OutcomeReason",
    "PollingState",
    "TERMINAL_STATES",
    "TriggerResponse",
    "TriggerResult",
    "map_status",
    "parse_timestamp",
]
