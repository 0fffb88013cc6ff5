from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

from backend.app.models import (
    CallResult,
    OutboundCampaignRecord,
    OutboundContactRecord,
    OutboundContactStatus,
    utc_now,
)
from backend.app.observability import MetricsRegistry
from backend.app.services.call_results import (
    TERMINAL_EVENT_TYPES,
    call_duration_seconds,
    call_ended_at,
    extract_transcript,
    provider_summary,
    recording_url,
    resolve_call_result,
    transcript_turns,
)
from backend.app.services.classifier import ClassificationError, PayloadClassifier
from backend.app.services.phone import try_normalize_phone
from backend.app.services.sms import SmsDispatcher
from backend.app.services.triggers import TriggerEvaluator, fire_matching_triggers
from backend.app.store import InMemoryStore

logger = logging.getLogger("followup_engine.outbound")


@dataclass(frozen=True)
class CallResultOutcome:
    skipped: Optional[str] = None
    duplicate: bool = False
    call_result: Optional[CallResult] = None
    contact_status: Optional[OutboundContactStatus] = None
    campaign_completed: bool = False


def _call_data(payload: dict[str, Any]) -> tuple[Optional[str], Optional[dict[str, Any]]]:
    message = payload.get("message")
    message = message if isinstance(message, dict) else {}
    event_type = payload.get("type") or message.get("type")
    call = payload.get("call") or message.get("call")
    return (
        event_type if isinstance(event_type, str) else None,
        call if isinstance(call, dict) else None,
    )


class OutboundCallResultHandler:
    """Applies voice-AI call-ended callbacks to the outbound campaign state."""

    def __init__(
        self,
        *,
        store: InMemoryStore,
        classifier: PayloadClassifier,
        evaluator: TriggerEvaluator,
        dispatcher: SmsDispatcher,
        metrics: Optional[MetricsRegistry] = None,
    ) -> None:
        self.store = store
        self.classifier = classifier
        self.evaluator = evaluator
        self.dispatcher = dispatcher
        self.metrics = metrics

    def handle(self, webhook_key: str, payload: dict[str, Any]) -> CallResultOutcome:
        # StoreNotFoundError propagates; the endpoint still acknowledges.
        campaign = self.store.get_outbound_campaign_by_webhook_key(webhook_key)
        event_type, call = _call_data(payload)
        if not call or not call.get("id"):
            return self._skip("no call data")

        call_log = self.store.get_call_log_by_provider_id(str(call["id"]))
        if call_log is None or call_log.campaign_id != campaign.id:
            return self._skip("call not found")

        if event_type not in TERMINAL_EVENT_TYPES and call.get("status") != "ended":
            return self._skip("event not terminal")

        call_result = resolve_call_result(call)
        duration = call_duration_seconds(call)
        transcript = extract_transcript(call)
        summary, extracted = provider_summary(call)
        if not summary and transcript:
            summary, extracted = self._summarize(campaign, call, transcript, call_result)

        completed_log = self.store.complete_call_log(
            call_log.id,
            call_result=call_result,
            duration_seconds=duration,
            transcript=transcript,
            transcript_formatted=transcript_turns(call),
            recording_url=recording_url(call),
            ai_summary=summary,
            ai_extracted_data=extracted,
            raw_payload=call,
            ended_at_utc=call_ended_at(call) or utc_now(),
        )
        if completed_log is None:
            logger.info("outbound_duplicate_result call_log_id=%s", call_log.id)
            self._record("duplicate")
            return CallResultOutcome(duplicate=True, call_result=call_log.call_result)

        previous_status, contact = self.store.apply_call_result(
            call_log.contact_id, call_result=call_result, duration_seconds=duration
        )
        newly_failed = (
            contact.status == OutboundContactStatus.failed
            and previous_status != OutboundContactStatus.failed
        )
        self.store.increment_outbound_counters(
            campaign.id,
            called=1,
            answered=1 if call_result == CallResult.answered else 0,
            failed=1 if newly_failed else 0,
        )
        logger.info(
            "outbound_call_result campaign_id=%s contact_id=%s result=%s status=%s attempt=%s",
            campaign.id,
            contact.id,
            call_result.value,
            contact.status.value,
            contact.attempt_count,
        )

        if call_result == CallResult.answered and campaign.sms_from_number:
            self._fire_triggers(campaign, contact, completed_log.id, transcript, summary)

        completed = self.check_completion(campaign.id)
        self._record(call_result.value)
        return CallResultOutcome(
            call_result=call_result,
            contact_status=contact.status,
            campaign_completed=completed,
        )

    def record_dial_failure(self, contact_id: str) -> OutboundContactRecord:
        """Book an attempt the scheduler could not place as a failed call."""
        contact = self.store.get_outbound_contact(contact_id)
        if contact.status != OutboundContactStatus.calling:
            return contact
        previous_status, updated = self.store.apply_call_result(
            contact_id, call_result=CallResult.failed
        )
        if updated.status == OutboundContactStatus.failed and previous_status != updated.status:
            self.store.increment_outbound_counters(updated.campaign_id, failed=1)
        self.check_completion(updated.campaign_id)
        return updated

    def check_completion(self, campaign_id: str) -> bool:
        completed = self.store.complete_campaign_if_exhausted(campaign_id)
        if completed:
            logger.info("outbound_campaign_completed campaign_id=%s", campaign_id)
        return completed

    def _summarize(
        self,
        campaign: OutboundCampaignRecord,
        call: dict[str, Any],
        transcript: str,
        call_result: CallResult,
    ) -> tuple[Optional[str], Optional[dict[str, Any]]]:
        customer = call.get("customer")
        customer_number = customer.get("number") if isinstance(customer, dict) else None
        try:
            analysis = self.classifier.analyze(
                {
                    "transcript": transcript,
                    "callResult": call_result.value,
                    "customerNumber": customer_number,
                },
                campaign.extraction_hints or None,
            )
        except ClassificationError as exc:
            logger.warning("outbound_summary_failed call_id=%s error=%s", call.get("id"), exc)
            return None, None
        return (
            analysis.extracted_data.summary,
            analysis.extracted_data.model_dump(exclude_none=True),
        )

    def _fire_triggers(
        self,
        campaign: OutboundCampaignRecord,
        contact: OutboundContactRecord,
        call_log_id: str,
        transcript: Optional[str],
        summary: Optional[str],
    ) -> None:
        to_number = try_normalize_phone(contact.phone_number)
        if not to_number:
            logger.warning("trigger_skip_invalid_phone contact_id=%s", contact.id)
            return
        triggers = self.store.list_active_triggers(campaign.id)
        if not triggers:
            return
        fire_matching_triggers(
            evaluator=self.evaluator,
            dispatcher=self.dispatcher,
            triggers=triggers,
            already_fired=self.store.outbound_fired_triggers(contact.id),
            transcript=transcript,
            summary=summary,
            to_number=to_number,
            from_number=campaign.sms_from_number or "",
            contact_id=contact.id,
            mark_fired=lambda trigger_id: self.store.mark_outbound_trigger_fired(
                contact.id, trigger_id
            ),
            on_sent=lambda trigger_id: self.store.note_call_log_sms(call_log_id, trigger_id),
            call_log_id=call_log_id,
        )

    def _skip(self, reason: str) -> CallResultOutcome:
        self._record("skipped")
        return CallResultOutcome(skipped=reason)

    def _record(self, outcome: str) -> None:
        if self.metrics:
            self.metrics.record_webhook(kind="outbound", outcome=outcome)
