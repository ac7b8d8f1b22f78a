"""Exception hierarchy shared by the job coordinator, download gate, and client.

Remote job orchestration spans configuration parsing, HTTP calls to the CI
provider, the polling state machine, and artifact verification. This module
groups the failure modes into a single hierarchy so callers can react to
high-level categories (for example, gate refusals vs. remote API failures)
while still having access to the specific subclass and its structured fields
when they need to decide whether to retry, discard, or warn the user.
"""

from __future__ import annotations

from typing import Optional

__all__ = [
    "IKFastOnlineError",
    "ConfigurationError",
    "ParameterValidationError",
    "InputFileError",
    "RemoteAPIError",
    "NetworkError",
    "AlreadyActiveError",
    "TriggerFailedError",
    "JobTimeoutError",
    "GateClosedError",
    "ArtifactNotFoundError",
    "EmptyArtifactError",
    "ChecksumMismatchError",
    "CorruptBundleError",
    "RunIdUnresolvedWarning",
]


class IKFastOnlineError(RuntimeError):
    """Base exception for remote solver generation failures."""


class ConfigurationError(IKFastOnlineError):
    """Raised when settings files or environment overrides are invalid."""


class ParameterValidationError(IKFastOnlineError, ValueError):
    """Raised when job parameters fail validation before dispatch."""

    def __init__(self, message: str, *, field: Optional[str] = None) -> None:
        super().__init__(message)
        self.field = field


class InputFileError(IKFastOnlineError, ValueError):
    """Raised when an input robot description cannot be uploaded."""

    def __init__(self, message: str, *, reason: str) -> None:
        super().__init__(message)
        self.reason = reason


class RemoteAPIError(IKFastOnlineError):
    """Raised when the remote job API answers with an error status."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int,
        api_message: Optional[str] = None,
        retryable: bool = False,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.api_message = api_message
        self.retryable = retryable

    @property
    def is_rate_limited(self) -> bool:
        if self.status_code == 429:
            return True
        return self.status_code == 403 and "rate limit" in (self.api_message or "").lower()


class NetworkError(RemoteAPIError):
    """Transport-level failure (DNS, connect, read timeout); always retryable."""

    def __init__(self, message: str, *, detail: Optional[str] = None) -> None:
        super().__init__(message, status_code=0, api_message=detail, retryable=True)


class AlreadyActiveError(IKFastOnlineError):
    """Raised when a job is triggered while another one is still active."""

    def __init__(self, message: str, *, run_id: Optional[int] = None) -> None:
        super().__init__(message)
        self.run_id = run_id


class TriggerFailedError(IKFastOnlineError):
    """Raised when the remote system rejects a trigger request."""

    def __init__(self, message: str, *, cause: Optional[BaseException] = None) -> None:
        super().__init__(message)
        self.cause = cause


class JobTimeoutError(IKFastOnlineError, TimeoutError):
    """Synthetic terminal failure: no terminal status within the polling budget."""

    def __init__(self, message: str, *, elapsed_sec: float, timeout_sec: float) -> None:
        super().__init__(message)
        self.elapsed_sec = elapsed_sec
        self.timeout_sec = timeout_sec


class GateClosedError(IKFastOnlineError):
    """Raised when artifacts are requested before the job completed successfully."""


class ArtifactNotFoundError(IKFastOnlineError):
    """Raised when the output bundle, or a file inside it, is missing."""

    def __init__(
        self,
        message: str,
        *,
        artifact_name: str,
        filename: Optional[str] = None,
        reason: str = "missing",
    ) -> None:
        super().__init__(message)
        self.artifact_name = artifact_name
        self.filename = filename
        self.reason = reason


class EmptyArtifactError(IKFastOnlineError):
    """Raised when a downloaded file is absent or has zero length."""


class ChecksumMismatchError(IKFastOnlineError):
    """Digest of a downloaded file differs from the one recorded in the build log."""

    def __init__(self, message: str, *, expected: str, actual: str) -> None:
        super().__init__(message)
        self.expected = expected
        self.actual = actual


class CorruptBundleError(IKFastOnlineError):
    """Raised when a downloaded artifact bundle is not a readable archive."""


class RunIdUnresolvedWarning(UserWarning):
    """The job was triggered but its run id could not be looked up yet."""
# === NAVMAP v1 ===
# {
#   "module": "IKFastOnline.errors",
#   "purpose": "Define the exception hierarchy used across triggering, polling, gating, and verification",
#   "sections": [
#     {"id": "base", "name": "Base Exceptions", "anchor": "BAS", "kind": "api"},
#     {"id": "remote", "name": "Remote API Errors", "anchor": "REM", "kind": "api"},
#     {"id": "lifecycle", "name": "Lifecycle Errors", "anchor": "LIF", "kind": "api"},
#     {"id": "artifacts", "name": "Gate & Artifact Errors", "anchor": "ART", "kind": "api"}
#   ]
# }
# === /NAVMAP ===
