# === NAVMAP v1 ===
# {
#   "module": "IKFastOnline",
#   "purpose": "Package initialization for IKFastOnline",
#   "sections": []
# }
# === /NAVMAP ===

"""Public API for the remote IKFast solver generator.

Drive a remote CI job that turns a robot description into IKFast solver
source: trigger it, poll it to a terminal state with bounded backoff and a
hard timeout, and fetch its outputs through a gate that only opens for a
successfully completed run and verifies them against the logged checksum.
"""

from __future__ import annotations

from .checksums import ArtifactVerifier, VerificationResult
from .clock import Clock, SystemClock
from .errors import (
    AlreadyActiveError,
    ArtifactNotFoundError,
    ChecksumMismatchError,
    ConfigurationError,
    CorruptBundleError,
    EmptyArtifactError,
    GateClosedError,
    IKFastOnlineError,
    InputFileError,
    JobTimeoutError,
    NetworkError,
    ParameterValidationError,
    RemoteAPIError,
    RunIdUnresolvedWarning,
    TriggerFailedError,
)
from .gate import DownloadGate, FetchedFile
from .lifecycle import BackoffPolicy, JobLifecycleCoordinator
from .models import (
    Artifact,
    CoordinatorPhase,
    JobOutcome,
    JobRun,
    LifecycleState,
    OutcomeReason,
    PollingState,
    TriggerResult,
    map_status,
)
from .network import GitHubActionsClient, RemoteJobClient
from .parameters import TriggerParams
from .settings import Settings, get_settings, load_settings

__version__ = "0.1.0"

__all__ = [
    "AlreadyActiveError",
    "Artifact",
    "ArtifactNotFoundError",
    "ArtifactVerifier",
    "BackoffPolicy",
    "ChecksumMismatchError",
    "Clock",
    "ConfigurationError",
    "CoordinatorPhase",
    "CorruptBundleError",
    "DownloadGate",
    "EmptyArtifactError",
    "FetchedFile",
    "GateClosedError",
    "GitHubActionsClient",
    "IKFastOnlineError",
    "InputFileError",
    "JobLifecycleCoordinator",
    "JobOutcome",
    "JobRun",
    "JobTimeoutError",
    "LifecycleState",
    "NetworkError",
    "OutcomeReason",
    "ParameterValidationError",
    "PollingState",
    "RemoteAPIError",
    "RemoteJobClient",
    "RunIdUnresolvedWarning",
    "Settings",
    "SystemClock",
    "TriggerFailedError",
    "TriggerParams",
    "TriggerResult",
    "VerificationResult",
    "__version__",
    "get_settings",
    "load_settings",
    "map_status",
]
