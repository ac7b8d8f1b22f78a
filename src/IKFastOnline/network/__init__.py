"""Remote job API access: the client protocol, its GitHub binding, and HTTP policy."""

from .client import GitHubActionsClient, RemoteJobClient, error_from_response
from .retry import create_read_retry_policy, is_retryable_error

__all__ = [
    "GitHubActionsClient",
    "RemoteJobClient",
    "create_read_retry_policy",
    "error_from_response",
    "is_retryable_error",
]
