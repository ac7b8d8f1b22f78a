"""Deterministic doubles for exercising the coordinator and gate without a network.

:class:`FakeClock` advances virtual time when slept on, so a thirty-minute
polling budget runs in milliseconds. :class:`ScriptedJobClient` is an
in-memory :class:`~IKFastOnline.network.client.RemoteJobClient` whose run
statuses, errors, artifacts, and logs are scripted per test.

Example:
    >>> client = ScriptedJobClient(statuses=["queued", ("completed", "success")])
    >>> coordinator = JobLifecycleCoordinator(client, job_definition_id="ikfast.yml",
    ...                                       clock=FakeClock())
"""

from __future__ import annotations

import asyncio
import io
import zipfile
from collections import deque
from datetime import datetime, timedelta, timezone
from typing import Any, Deque, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from .errors import RemoteAPIError
from .models import Artifact, JobRun, TriggerResponse

StatusStep = Union[str, Tuple[Optional[str], Optional[str]], JobRun, BaseException]

__all__ = ["FakeClock", "ScriptedJobClient", "StatusStep", "build_bundle"]


class FakeClock:
    """Virtual clock; ``sleep`` advances time and yields to the event loop once."""

    def __init__(self, start: float = 0.0, *, wall: Optional[datetime] = None) -> None:
        self._start = start
        self._now = start
        self._wall = wall or datetime(2024, 1, 1, tzinfo=timezone.utc)
        self.sleeps: List[float] = []

    def now(self) -> float:
        return self._now

    def utcnow(self) -> datetime:
        return self._wall + timedelta(seconds=self._now - self._start)

    async def sleep(self, seconds: float) -> None:
        seconds = max(0.0, float(seconds))
        self.sleeps.append(seconds)
        self._now += seconds
        await asyncio.sleep(0)

    def advance(self, seconds: float) -> None:
        self._now += seconds


def build_bundle(files: Mapping[str, Union[bytes, str]]) -> bytes:
    """Return zip bytes containing ``files`` (path -> content)."""

    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        for name, content in files.items():
            archive.writestr(name, content.encode("utf-8") if isinstance(content, str) else content)
    return buffer.getvalue()


def _not_found(what: str) -> RemoteAPIError:
    return RemoteAPIError(f"Resource not found: {what}", status_code=404, api_message="Not Found")


class ScriptedJobClient:
    """In-memory job provider.

    ``statuses`` is consumed one step per :meth:`get_run` call; the last step
    repeats once the script runs out. A step is a raw status string, a
    ``(status, conclusion)`` pair, a ready :class:`JobRun`, or an exception
    to raise.
    """

    def __init__(
        self,
        *,
        run_id: int = 1001,
        statuses: Iterable[StatusStep] = (),
        existing_runs: Iterable[JobRun] = (),
        lookup_misses: int = 0,
        run_created_at: Optional[datetime] = None,
    ) -> None:
        self.run_id = run_id
        self.script: Deque[StatusStep] = deque(statuses)
        self.existing_runs: List[JobRun] = list(existing_runs)
        self.lookup_misses = lookup_misses
        self.run_created_at = run_created_at
        self.trigger_response = TriggerResponse(success=True, status_code=204)
        self.trigger_error: Optional[BaseException] = None
        self.triggered: List[Dict[str, Any]] = []
        self.calls: List[Tuple[str, Any]] = []
        self.artifacts: Dict[int, List[Artifact]] = {}
        self.bundles: Dict[int, bytes] = {}
        self.logs: Dict[int, bytes] = {}
        self.files: Dict[str, Dict[str, Any]] = {}
        self.uploads: List[Dict[str, Any]] = []
        self.billing: Optional[Dict[str, Any]] = None
        self._last: Optional[StatusStep] = None
        self._next_artifact_id = 1

    # -- scripting helpers ----------------------------------------------

    def add_bundle(
        self,
        files: Mapping[str, Union[bytes, str]],
        *,
        run_id: Optional[int] = None,
        name: str = "ikfast-result",
        expired: bool = False,
    ) -> Artifact:
        run_id = self.run_id if run_id is None else run_id
        data = build_bundle(files)
        artifact = Artifact(
            id=self._next_artifact_id,
            name=name,
            size_in_bytes=len(data),
            archive_download_url=f"memory://artifacts/{self._next_artifact_id}",
            expired=expired,
        )
        self._next_artifact_id += 1
        self.artifacts.setdefault(run_id, []).append(artifact)
        self.bundles[artifact.id] = data
        return artifact

    def call_count(self, name: str) -> int:
        return sum(1 for call, _ in self.calls if call == name)

    def _own_run(self, step: Optional[StatusStep] = None) -> JobRun:
        if isinstance(step, JobRun):
            return step
        raw_status: Optional[str] = "queued"
        raw_conclusion: Optional[str] = None
        if isinstance(step, str):
            raw_status = step
        elif isinstance(step, tuple):
            raw_status, raw_conclusion = step
        return JobRun(
            id=self.run_id,
            raw_status=raw_status,
            raw_conclusion=raw_conclusion,
            created_at=self.run_created_at,
            updated_at=self.run_created_at,
        )

    # -- RemoteJobClient --------------------------------------------------

    async def trigger_job(
        self, job_definition_id: str, inputs: Mapping[str, str], ref: str
    ) -> TriggerResponse:
        self.calls.append(("trigger_job", (job_definition_id, dict(inputs), ref)))
        await asyncio.sleep(0)
        if self.trigger_error is not None:
            raise self.trigger_error
        if self.trigger_response.success:
            self.triggered.append(dict(inputs))
        return self.trigger_response

    async def list_runs(
        self, job_definition_id: str, *, per_page: int = 10, retry: bool = True
    ) -> List[JobRun]:
        self.calls.append(("list_runs", job_definition_id))
        await asyncio.sleep(0)
        if not self.triggered or self.lookup_misses > 0:
            if self.triggered:
                self.lookup_misses -= 1
            return list(self.existing_runs)[:per_page]
        last = None if isinstance(self._last, BaseException) else self._last
        return ([self._own_run(last)] + list(self.existing_runs))[:per_page]

    async def get_most_recent_run(self, job_definition_id: str) -> Optional[JobRun]:
        runs = await self.list_runs(job_definition_id, per_page=1)
        return runs[0] if runs else None

    async def get_run(self, run_id: int, *, retry: bool = True) -> JobRun:
        self.calls.append(("get_run", run_id))
        await asyncio.sleep(0)
        if self.script:
            step = self.script.popleft()
            self._last = step
        else:
            step = self._last
        if isinstance(step, BaseException):
            raise step
        return self._own_run(step)

    async def list_artifacts(self, run_id: int) -> List[Artifact]:
        self.calls.append(("list_artifacts", run_id))
        await asyncio.sleep(0)
        return list(self.artifacts.get(run_id, []))

    async def download_artifact(self, artifact_id: int) -> bytes:
        self.calls.append(("download_artifact", artifact_id))
        await asyncio.sleep(0)
        if artifact_id not in self.bundles:
            raise _not_found(f"artifact {artifact_id}")
        return self.bundles[artifact_id]

    async def get_logs(self, run_id: int) -> bytes:
        self.calls.append(("get_logs", run_id))
        await asyncio.sleep(0)
        if run_id not in self.logs:
            raise _not_found(f"logs of run {run_id}")
        return self.logs[run_id]

    # -- repository and account -------------------------------------------

    async def has_active_run(self, job_definition_id: str) -> bool:
        runs = await self.list_runs(job_definition_id)
        return any(run.lifecycle_state.is_active for run in runs)

    async def get_file(self, path: str) -> Optional[Dict[str, Any]]:
        self.calls.append(("get_file", path))
        return self.files.get(path)

    async def upload_file(
        self, path: str, content: bytes, message: str, *, sha: Optional[str] = None
    ) -> Dict[str, Any]:
        self.calls.append(("upload_file", path))
        self.uploads.append({"path": path, "content": content, "message": message, "sha": sha})
        entry = {"path": path, "sha": f"sha-{len(self.uploads)}"}
        self.files[path] = entry
        return {"content": entry}

    async def validate_token(self) -> Dict[str, Any]:
        return {"login": "octocat"}

    async def get_billing_usage(self) -> Optional[Dict[str, Any]]:
        self.calls.append(("get_billing_usage", None))
        return self.billing

    async def aclose(self) -> None:
        return None

    async def __aenter__(self) -> "ScriptedJobClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()
