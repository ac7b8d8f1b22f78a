"""Actions minutes quota check.

Billing usage is only visible to accounts with admin access; without it the
check reports ``None`` rather than failing. Whether the user already
dismissed the warning lives in a caller-supplied session mapping.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Any, Mapping, MutableMapping, Optional

from .network.client import GitHubActionsClient

logger = logging.getLogger(__name__)

DISMISSED_KEY = "quota_warning_dismissed"
DEFAULT_INCLUDED_MINUTES = 2000


@dataclass(slots=True, frozen=True)
class QuotaStatus:
    total_minutes_used: float
    included_minutes: float
    paid_minutes_used: float
    percent_used: float
    should_warn: bool

    @property
    def message(self) -> str:
        return (
            f"Actions quota at {round(self.percent_used * 100)}% "
            f"({self.total_minutes_used:g}/{self.included_minutes:g} minutes)"
        )


def quota_from_usage(usage: Mapping[str, Any], threshold: float) -> QuotaStatus:
    used = float(usage.get("total_minutes_used") or 0)
    included = float(usage.get("included_minutes") or DEFAULT_INCLUDED_MINUTES)
    percent = used / included if included > 0 else 0.0
    return QuotaStatus(
        total_minutes_used=used,
        included_minutes=included,
        paid_minutes_used=float(usage.get("total_paid_minutes_used") or 0),
        percent_used=percent,
        should_warn=percent >= threshold,
    )


async def check_quota_warning(
    client: GitHubActionsClient,
    threshold: float = 0.8,
    *,
    session: Optional[MutableMapping[str, Any]] = None,
) -> Optional[QuotaStatus]:
    """Return the quota status, or ``None`` when usage is not visible.

    A warning dismissed in ``session`` is reported with ``should_warn=False``.
    """

    usage = await client.get_billing_usage()
    if usage is None:
        return None
    status = quota_from_usage(usage, threshold)
    if status.should_warn and session is not None and session.get(DISMISSED_KEY):
        logger.debug("Quota warning suppressed for this session")
        return replace(status, should_warn=False)
    if status.should_warn:
        logger.warning(status.message, extra={"stage": "quota"})
    return status


def dismiss_warning(session: MutableMapping[str, Any]) -> None:
    session[DISMISSED_KEY] = True


def reset_dismissal(session: MutableMapping[str, Any]) -> None:
    session.pop(DISMISSED_KEY, None)


__all__ = [
    "DISMISSED_KEY",
    "QuotaStatus",
    "check_quota_warning",
    "dismiss_warning",
    "quota_from_usage",
    "reset_dismissal",
]
