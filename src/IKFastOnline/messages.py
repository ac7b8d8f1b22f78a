"""Human-readable reasons for failures and job outcomes.

Every terminal non-success state and every gate, verification, or API failure
maps to its own sentence; nothing collapses into a generic message.
"""

from __future__ import annotations

from .errors import (
    AlreadyActiveError,
    ArtifactNotFoundError,
    ChecksumMismatchError,
    ConfigurationError,
    CorruptBundleError,
    EmptyArtifactError,
    GateClosedError,
    InputFileError,
    JobTimeoutError,
    NetworkError,
    ParameterValidationError,
    RemoteAPIError,
    TriggerFailedError,
)
from .models import JobOutcome, LifecycleState, OutcomeReason


def describe_remote_error(exc: RemoteAPIError) -> str:
    detail = f" ({exc.api_message})" if exc.api_message else ""
    if isinstance(exc, NetworkError):
        return "Could not reach the job service; check the network connection and try again."
    if exc.is_rate_limited:
        return "The job service rate limit was exceeded; wait a few minutes before retrying."
    if exc.status_code == 401:
        return "Authentication failed: the access token is invalid or expired."
    if exc.status_code == 403:
        return f"Permission denied: the token lacks the required repository or workflow scope{detail}."
    if exc.status_code == 404:
        return f"Resource not found: check the repository, workflow, or run id{detail}."
    if exc.status_code == 422:
        return f"The job service rejected the request as invalid{detail}."
    if exc.status_code >= 500:
        return f"The job service had a server error (HTTP {exc.status_code}); try again later."
    return f"The job service answered HTTP {exc.status_code}{detail}."


def describe_error(exc: BaseException) -> str:
    """Return a one-sentence reason for ``exc`` suitable for end users."""

    if isinstance(exc, RemoteAPIError):
        return describe_remote_error(exc)
    if isinstance(exc, AlreadyActiveError):
        suffix = f" (run {exc.run_id})" if exc.run_id is not None else ""
        return f"A job is already queued or running{suffix}; wait for it to finish."
    if isinstance(exc, TriggerFailedError):
        if isinstance(exc.cause, RemoteAPIError):
            return f"The job could not be started: {describe_remote_error(exc.cause)}"
        return f"The job could not be started: {exc}."
    if isinstance(exc, JobTimeoutError):
        return (
            f"The job did not finish within {exc.timeout_sec / 60:.0f} minutes; "
            "it may still be running remotely."
        )
    if isinstance(exc, GateClosedError):
        return f"Outputs are not available yet: {exc}."
    if isinstance(exc, ArtifactNotFoundError):
        if exc.reason == "expired":
            return f"The output bundle '{exc.artifact_name}' has expired; run the job again."
        if exc.filename:
            return f"'{exc.filename}' was not found in the output bundle '{exc.artifact_name}'."
        return f"The job produced no '{exc.artifact_name}' output bundle."
    if isinstance(exc, EmptyArtifactError):
        return "The downloaded file is empty; the job may not have generated any output."
    if isinstance(exc, ChecksumMismatchError):
        return (
            "The downloaded file failed its integrity check "
            f"(expected {exc.expected}, got {exc.actual}); do not use it."
        )
    if isinstance(exc, CorruptBundleError):
        return "The downloaded bundle is corrupt and could not be opened."
    if isinstance(exc, ParameterValidationError):
        prefix = f"Invalid {exc.field}: " if exc.field else "Invalid parameters: "
        return f"{prefix}{str(exc).rstrip('.')}."
    if isinstance(exc, InputFileError):
        return f"The robot description cannot be used: {str(exc).rstrip('.')}."
    if isinstance(exc, ConfigurationError):
        return f"Configuration problem: {str(exc).rstrip('.')}."
    return f"Unexpected error: {exc.__class__.__name__}: {exc}"


def describe_outcome(outcome: JobOutcome) -> str:
    """Return the reason a job ended the way it did."""

    run = f"Run {outcome.run.id}" if outcome.run is not None else "The job"
    if outcome.reason is OutcomeReason.TIMEOUT:
        if outcome.run is not None and outcome.run.raw_status == "completed":
            return (
                f"{run} finished with an unrecognised conclusion "
                f"({outcome.run.raw_conclusion or 'none'}); its outputs were not released."
            )
        if outcome.error is not None:
            return describe_error(outcome.error)
        return f"{run} did not finish before the polling timeout."
    if outcome.reason is OutcomeReason.ERROR:
        detail = describe_error(outcome.error) if outcome.error is not None else "unknown error"
        return f"{run} could no longer be tracked: {detail}"
    if outcome.state is LifecycleState.COMPLETED:
        return f"{run} completed successfully."
    if outcome.state is LifecycleState.FAILED:
        return f"{run} failed; check the build log for the failing step."
    if outcome.state is LifecycleState.CANCELLED:
        return f"{run} was cancelled before it finished."
    return f"{run} ended in an unrecognised state ({outcome.state.value})."


__all__ = ["describe_error", "describe_outcome", "describe_remote_error"]
