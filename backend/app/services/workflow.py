from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

from backend.app.models import CallResult, OutboundCampaignStatus, OutboundContactStatus

ALLOWED_TRANSITIONS = {
    OutboundCampaignStatus.draft: {
        OutboundCampaignStatus.scheduled,
        OutboundCampaignStatus.cancelled,
    },
    OutboundCampaignStatus.scheduled: {
        OutboundCampaignStatus.running,
        OutboundCampaignStatus.cancelled,
        OutboundCampaignStatus.draft,
    },
    OutboundCampaignStatus.running: {
        OutboundCampaignStatus.paused,
        OutboundCampaignStatus.completed,
        OutboundCampaignStatus.cancelled,
    },
    OutboundCampaignStatus.paused: {
        OutboundCampaignStatus.running,
        OutboundCampaignStatus.cancelled,
    },
    OutboundCampaignStatus.completed: set(),
    OutboundCampaignStatus.cancelled: {OutboundCampaignStatus.draft},
}

TERMINAL_CONTACT_STATUSES = {
    OutboundContactStatus.completed,
    OutboundContactStatus.failed,
    OutboundContactStatus.dnc,
    OutboundContactStatus.skipped,
}


def next_contact_state(
    *,
    call_result: CallResult,
    attempt_count: int,
    max_retries: int,
    retry_delay_hours: float,
    now: datetime,
) -> tuple[OutboundContactStatus, Optional[datetime]]:
    """Status and next attempt time for a contact after one call attempt ends.

    An answered call always completes the contact. Any other result re-queues
    it while attempts remain (``attempt_count < max_retries + 1``) and fails it
    otherwise.
    """
    if call_result == CallResult.answered:
        return OutboundContactStatus.completed, None
    if attempt_count < max_retries + 1:
        return OutboundContactStatus.queued, now + timedelta(hours=retry_delay_hours)
    return OutboundContactStatus.failed, None
