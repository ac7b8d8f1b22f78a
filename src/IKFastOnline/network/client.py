# === NAVMAP v1 ===
# {
#   "module": "IKFastOnline.network.client",
#   "purpose": "Async job API protocol and its GitHub Actions binding over httpx",
#   "sections": [
#     {"id": "remotejobclient", "name": "RemoteJobClient", "anchor": "class-remotejobclient", "kind": "class"},
#     {"id": "githubactionsclient", "name": "GitHubActionsClient", "anchor": "class-githubactionsclient", "kind": "class"},
#     {"id": "error-from-response", "name": "error_from_response", "anchor": "function-error-from-response", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""Async client for the remote job API.

:class:`RemoteJobClient` is the narrow interface the lifecycle coordinator and
download gate depend on. :class:`GitHubActionsClient` binds it to the GitHub
REST API:

- ``trigger_job`` issues a ``workflow_dispatch`` (204 on success). It is never
  retried; a rejected trigger is reported and the caller decides.
- Reads (runs, artifacts, archives, logs) go through the Tenacity policy from
  :mod:`IKFastOnline.network.retry`. ``get_run`` and ``list_runs`` accept
  ``retry=False`` for callers that pace their own requests.
- HTTP failures become :class:`~IKFastOnline.errors.RemoteAPIError` with a
  short title plus the provider's message; transport failures become
  :class:`~IKFastOnline.errors.NetworkError`.

Example:
    >>> async with GitHubActionsClient(settings, token="ghp_...") as client:
    ...     run = await client.get_most_recent_run("ikfast.yml")
"""

from __future__ import annotations

import base64
import logging
from typing import Any, Dict, List, Mapping, Optional, Protocol, runtime_checkable
from urllib.parse import quote

import httpx

from ..errors import ConfigurationError, NetworkError, RemoteAPIError
from ..models import Artifact, JobRun, TriggerResponse
from ..settings import Settings
from .instrumentation import create_http_event_hooks
from .policy import (
    ACCEPT_HEADER,
    ARTIFACT_ZIP_ENDPOINT,
    ARTIFACTS_ENDPOINT,
    BILLING_ENDPOINT,
    CONTENTS_ENDPOINT,
    DISPATCH_ENDPOINT,
    RETRYABLE_STATUS_CODES,
    RUN_ENDPOINT,
    RUN_LOGS_ENDPOINT,
    RUNS_ENDPOINT,
    STATUS_TITLES,
    TRIGGER_SUCCESS_STATUS,
    USER_ENDPOINT,
)
from .retry import create_read_retry_policy

logger = logging.getLogger(__name__)


@runtime_checkable
class RemoteJobClient(Protocol):
    """Operations the coordinator and gate need from the job provider."""

    async def trigger_job(
        self, job_definition_id: str, inputs: Mapping[str, str], ref: str
    ) -> TriggerResponse: ...

    async def get_most_recent_run(self, job_definition_id: str) -> Optional[JobRun]: ...

    async def list_runs(
        self, job_definition_id: str, *, per_page: int = 10, retry: bool = True
    ) -> List[JobRun]: ...

    async def get_run(self, run_id: int, *, retry: bool = True) -> JobRun: ...

    async def list_artifacts(self, run_id: int) -> List[Artifact]: ...

    async def download_artifact(self, artifact_id: int) -> bytes: ...

    async def get_logs(self, run_id: int) -> bytes: ...


def error_from_response(response: httpx.Response) -> RemoteAPIError:
    """Translate an error response into a :class:`RemoteAPIError`."""

    status = response.status_code
    api_message: Optional[str] = None
    try:
        payload = response.json()
    except ValueError:
        api_message = response.text.strip()[:200] or None
    else:
        if isinstance(payload, Mapping) and payload.get("message"):
            api_message = str(payload["message"])

    rate_limited = status == 403 and "rate limit" in (api_message or "").lower()
    if rate_limited:
        title = STATUS_TITLES[429]
    elif status >= 500:
        title = "Server error"
    else:
        title = STATUS_TITLES.get(status, f"HTTP {status}")
    message = f"{title}: {api_message}" if api_message else title
    return RemoteAPIError(
        message,
        status_code=status,
        api_message=api_message,
        retryable=rate_limited or status in RETRYABLE_STATUS_CODES,
    )


class GitHubActionsClient:
    """:class:`RemoteJobClient` backed by the GitHub REST API."""

    def __init__(
        self,
        settings: Settings,
        *,
        token: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        if token is None and settings.api.token is not None:
            token = settings.api.token.get_secret_value()
        if not token:
            raise ConfigurationError(
                "A GitHub token is required (pass --token, set GITHUB_TOKEN or IKFAST_API__TOKEN)"
            )
        self._repository = settings.repository
        self._retry = settings.retry
        api = settings.api
        self._http = httpx.AsyncClient(
            base_url=api.base_url,
            headers={
                "Authorization": f"Bearer {token}",
                "Accept": ACCEPT_HEADER,
                "X-GitHub-Api-Version": api.api_version,
                "User-Agent": api.user_agent,
            },
            timeout=httpx.Timeout(
                connect=api.timeout_connect,
                read=api.timeout_read,
                write=api.timeout_write,
                pool=api.timeout_pool,
            ),
            transport=transport,
            event_hooks=create_http_event_hooks(),
        )

    async def __aenter__(self) -> "GitHubActionsClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    # ------------------------------------------------------------------
    # Transport helpers
    # ------------------------------------------------------------------

    def _path(self, template: str, **params: Any) -> str:
        return template.format(
            owner=quote(self._repository.owner, safe=""),
            repo=quote(self._repository.name, safe=""),
            **params,
        )

    async def _send(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Mapping[str, Any]] = None,
        json: Optional[Mapping[str, Any]] = None,
        follow_redirects: bool = False,
    ) -> httpx.Response:
        try:
            response = await self._http.request(
                method,
                path,
                params=params,
                json=json,
                follow_redirects=follow_redirects,
            )
        except httpx.TransportError as exc:
            raise NetworkError(
                f"Network error during {method} {path}: {exc.__class__.__name__}",
                detail=str(exc) or None,
            ) from exc
        if response.status_code >= 400:
            raise error_from_response(response)
        return response

    async def _get(
        self,
        path: str,
        *,
        params: Optional[Mapping[str, Any]] = None,
        follow_redirects: bool = False,
        retry: bool = True,
    ) -> httpx.Response:
        if not retry:
            return await self._send("GET", path, params=params, follow_redirects=follow_redirects)
        async for attempt in create_read_retry_policy(self._retry):
            with attempt:
                return await self._send(
                    "GET", path, params=params, follow_redirects=follow_redirects
                )
        raise RuntimeError("retry policy ended without an attempt")

    @staticmethod
    def _json(response: httpx.Response) -> Dict[str, Any]:
        try:
            payload = response.json()
        except ValueError as exc:
            raise RemoteAPIError(
                "Malformed response: body is not JSON",
                status_code=response.status_code,
                retryable=True,
            ) from exc
        if not isinstance(payload, dict):
            raise RemoteAPIError(
                "Malformed response: expected a JSON object",
                status_code=response.status_code,
                retryable=True,
            )
        return payload

    # ------------------------------------------------------------------
    # RemoteJobClient
    # ------------------------------------------------------------------

    async def trigger_job(
        self, job_definition_id: str, inputs: Mapping[str, str], ref: str
    ) -> TriggerResponse:
        path = self._path(DISPATCH_ENDPOINT, workflow_id=quote(job_definition_id, safe=""))
        response = await self._send(
            "POST", path, json={"ref": ref, "inputs": {k: str(v) for k, v in inputs.items()}}
        )
        success = response.status_code == TRIGGER_SUCCESS_STATUS
        logger.info(
            "Dispatch of %s on %s answered %s",
            job_definition_id,
            ref,
            response.status_code,
            extra={"stage": "trigger"},
        )
        return TriggerResponse(success=success, status_code=response.status_code)

    async def list_runs(
        self, job_definition_id: str, *, per_page: int = 10, retry: bool = True
    ) -> List[JobRun]:
        """Return the job's most recent runs, newest first.

        ``retry=False`` makes exactly one request; the coordinator polls that way
        so its own schedule is the only pacing.
        """

        path = self._path(RUNS_ENDPOINT, workflow_id=quote(job_definition_id, safe=""))
        payload = self._json(
            await self._get(path, params={"per_page": per_page}, retry=retry)
        )
        runs = []
        for item in payload.get("workflow_runs") or []:
            try:
                runs.append(JobRun.from_api(item))
            except (KeyError, TypeError, ValueError):
                logger.warning("Skipping malformed run entry in listing", extra={"stage": "lookup"})
        return runs

    async def get_most_recent_run(self, job_definition_id: str) -> Optional[JobRun]:
        runs = await self.list_runs(job_definition_id, per_page=1)
        return runs[0] if runs else None

    async def has_active_run(self, job_definition_id: str) -> bool:
        """Return ``True`` when any recent run of the job is queued or in progress."""

        runs = await self.list_runs(job_definition_id)
        return any(run.lifecycle_state.is_active for run in runs)

    async def get_run(self, run_id: int, *, retry: bool = True) -> JobRun:
        response = await self._get(self._path(RUN_ENDPOINT, run_id=int(run_id)), retry=retry)
        payload = self._json(response)
        try:
            return JobRun.from_api(payload)
        except (KeyError, TypeError, ValueError) as exc:
            raise RemoteAPIError(
                f"Malformed run payload for run {run_id}",
                status_code=response.status_code,
                retryable=True,
            ) from exc

    async def list_artifacts(self, run_id: int) -> List[Artifact]:
        path = self._path(ARTIFACTS_ENDPOINT, run_id=int(run_id))
        payload = self._json(await self._get(path, params={"per_page": 100}))
        return [Artifact.from_api(item) for item in payload.get("artifacts") or []]

    async def download_artifact(self, artifact_id: int) -> bytes:
        path = self._path(ARTIFACT_ZIP_ENDPOINT, artifact_id=int(artifact_id))
        response = await self._get(path, follow_redirects=True)
        return response.content

    async def get_logs(self, run_id: int) -> bytes:
        path = self._path(RUN_LOGS_ENDPOINT, run_id=int(run_id))
        response = await self._get(path, follow_redirects=True)
        return response.content

    # ------------------------------------------------------------------
    # Repository contents, account and billing
    # ------------------------------------------------------------------

    async def get_file(self, path: str) -> Optional[Dict[str, Any]]:
        """Return the contents entry for ``path`` on the configured branch, or ``None``."""

        endpoint = self._path(CONTENTS_ENDPOINT, path=quote(path.lstrip("/"), safe="/"))
        try:
            response = await self._get(endpoint, params={"ref": self._repository.branch})
        except RemoteAPIError as exc:
            if exc.status_code == 404:
                return None
            raise
        return self._json(response)

    async def upload_file(
        self,
        path: str,
        content: bytes,
        message: str,
        *,
        sha: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Create or update ``path``; ``sha`` is required when replacing a file."""

        endpoint = self._path(CONTENTS_ENDPOINT, path=quote(path.lstrip("/"), safe="/"))
        body: Dict[str, Any] = {
            "message": message,
            "content": base64.b64encode(content).decode("ascii"),
            "branch": self._repository.branch,
        }
        if sha:
            body["sha"] = sha
        response = await self._send("PUT", endpoint, json=body)
        logger.info("Uploaded %s (%d bytes)", path, len(content), extra={"stage": "upload"})
        return self._json(response)

    async def validate_token(self) -> Dict[str, Any]:
        """Return the authenticated user; raises :class:`RemoteAPIError` (401) for a bad token."""

        return self._json(await self._get(USER_ENDPOINT))

    async def get_billing_usage(self) -> Optional[Dict[str, Any]]:
        """Return Actions usage for the repository, or ``None`` without permission."""

        try:
            response = await self._get(self._path(BILLING_ENDPOINT))
        except RemoteAPIError as exc:
            if exc.status_code in (403, 404) and not exc.is_rate_limited:
                logger.debug("Billing usage unavailable (%s)", exc.status_code)
                return None
            raise
        return self._json(response)


__all__ = ["GitHubActionsClient", "RemoteJobClient", "error_from_response"]
