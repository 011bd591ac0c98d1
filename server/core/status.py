# Endpoint health state derivation
#
# Transitions:
#   heartbeat       -> ONLINE
#   result batch    -> WARNING if any accepted result failed, else ONLINE
#   offline sweep   -> OFFLINE once last_seen is older than the threshold
# CRITICAL is never entered automatically.
from datetime import datetime, timedelta
from typing import Iterable, Optional

from shared.models import CheckStatus, Endpoint, EndpointStatus


def status_after_heartbeat() -> EndpointStatus:
    return EndpointStatus.ONLINE


def status_after_results(statuses: Iterable[CheckStatus]) -> EndpointStatus:
    """
    Status implied by one batch of accepted results.

    Errors and skips do not degrade the endpoint; only a check that ran and
    found a problem does.
    """
    if any(status == CheckStatus.FAIL for status in statuses):
        return EndpointStatus.WARNING
    return EndpointStatus.ONLINE


def offline_threshold(now: datetime, threshold_minutes: int) -> datetime:
    return now - timedelta(minutes=threshold_minutes)


def should_mark_offline(endpoint: Endpoint, threshold: datetime) -> bool:
    """
    Whether the offline sweep applies to an endpoint.

    Endpoints that never reported (no last_seen) and endpoints already
    offline are left alone, which makes the sweep idempotent.
    """
    last_seen: Optional[datetime] = endpoint.last_seen
    if last_seen is None or endpoint.status == EndpointStatus.OFFLINE:
        return False
    return last_seen < threshold
