# === NAVMAP v1 ===
# {
#   "module": "IKFastOnline.network.policy",
#   "purpose": "HTTP policy constants and GitHub endpoint templates.",
#   "sections": []
# }
# === /NAVMAP ===

"""HTTP policy constants and endpoint templates.

Defines the media type, status families, and REST endpoint templates used by
the GitHub Actions binding of the job client.
"""

# ============================================================================
# Request Headers
# ============================================================================

#: Media type requested on every JSON call
ACCEPT_HEADER = "application/vnd.github+json"

# ============================================================================
# Status Families
# ============================================================================

#: Statuses worth retrying on idempotent reads (rate-limit and server errors)
RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})

#: Successful dispatch answers with an empty body
TRIGGER_SUCCESS_STATUS = 204

# ============================================================================
# Endpoint Templates
# ============================================================================

CONTENTS_ENDPOINT = "/repos/{owner}/{repo}/contents/{path}"
DISPATCH_ENDPOINT = "/repos/{owner}/{repo}/actions/workflows/{workflow_id}/dispatches"
RUN_ENDPOINT = "/repos/{owner}/{repo}/actions/runs/{run_id}"
RUNS_ENDPOINT = "/repos/{owner}/{repo}/actions/workflows/{workflow_id}/runs"
ARTIFACTS_ENDPOINT = "/repos/{owner}/{repo}/actions/runs/{run_id}/artifacts"
ARTIFACT_ZIP_ENDPOINT = "/repos/{owner}/{repo}/actions/artifacts/{artifact_id}/zip"
RUN_LOGS_ENDPOINT = "/repos/{owner}/{repo}/actions/runs/{run_id}/logs"
USER_ENDPOINT = "/user"
BILLING_ENDPOINT = "/repos/{owner}/{repo}/actions/billing/usage"

# ============================================================================
# Error Titles
# ============================================================================

#: Short titles per status, used as the exception message
STATUS_TITLES = {
    401: "Authentication failed",
    403: "Permission denied",
    404: "Resource not found",
    422: "Validation failed",
    429: "Rate limit exceeded",
}
