from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Optional

from backend.app.models import (
    CampaignRecord,
    InteractionRecord,
    PayloadAnalysis,
    SourceType,
    WebhookErrorType,
    utc_now,
)
from backend.app.observability import MetricsRegistry
from backend.app.services.classifier import ClassificationError, PayloadClassifier
from backend.app.services.phone import try_normalize_phone
from backend.app.services.sms import SmsDispatcher
from backend.app.services.triggers import TriggerEvaluator, fire_matching_triggers
from backend.app.store import InMemoryStore

logger = logging.getLogger("followup_engine.ingestion")


class MalformedInputError(Exception):
    pass


class InactiveResourceError(Exception):
    pass


@dataclass(frozen=True)
class IngestionResult:
    interaction_id: Optional[str] = None
    duplicate: bool = False
    source_type: Optional[SourceType] = None
    source_platform: Optional[str] = None
    processing_error: bool = False
    fired_trigger_ids: tuple[str, ...] = ()


def payload_hash(raw_body: bytes) -> str:
    return hashlib.sha256(raw_body).hexdigest()


def parse_payload(raw_body: bytes) -> dict[str, Any]:
    try:
        payload = json.loads(raw_body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise MalformedInputError("invalid json payload") from exc
    if not isinstance(payload, dict):
        raise MalformedInputError("payload must be a json object")
    return payload


class InboundIngestionPipeline:
    """Turns one inbound webhook delivery into an Interaction plus follow-up SMS.

    Only unparseable bodies and unknown or inactive campaigns are rejected.
    Everything after the campaign is resolved is recovered locally so the
    sender always gets an acknowledgement.
    """

    def __init__(
        self,
        *,
        store: InMemoryStore,
        classifier: PayloadClassifier,
        evaluator: TriggerEvaluator,
        dispatcher: SmsDispatcher,
        dedup_window_seconds: int = 300,
        error_body_max_chars: int = 10000,
        metrics: Optional[MetricsRegistry] = None,
    ) -> None:
        self.store = store
        self.classifier = classifier
        self.evaluator = evaluator
        self.dispatcher = dispatcher
        self.dedup_window = timedelta(seconds=dedup_window_seconds)
        self.error_body_max_chars = error_body_max_chars
        self.metrics = metrics

    def process(self, webhook_key: str, raw_body: bytes) -> IngestionResult:
        try:
            payload = parse_payload(raw_body)
        except MalformedInputError as exc:
            self._log_error(None, raw_body, WebhookErrorType.invalid_json, str(exc))
            self._record("rejected_malformed")
            raise

        # StoreNotFoundError propagates to the caller as a 404.
        campaign = self.store.get_campaign_by_webhook_key(webhook_key)
        if not campaign.is_active:
            self._record("rejected_inactive")
            raise InactiveResourceError("campaign is not active")

        digest = payload_hash(raw_body)
        existing = self.store.find_recent_interaction(
            campaign_id=campaign.id,
            payload_hash=digest,
            since=utc_now() - self.dedup_window,
        )
        if existing:
            logger.info(
                "inbound_duplicate campaign_id=%s interaction_id=%s",
                campaign.id,
                existing.id,
            )
            self._record("duplicate")
            return IngestionResult(interaction_id=existing.id, duplicate=True)

        interaction: Optional[InteractionRecord] = None
        try:
            analysis = self._classify(campaign, payload, raw_body)
            interaction = self._persist(campaign, payload, digest, analysis)
            fired = self._fire_triggers(campaign, interaction, analysis)
        except Exception as exc:
            logger.exception("inbound_processing_failed campaign_id=%s", campaign.id)
            self._log_error(campaign.id, raw_body, WebhookErrorType.processing_error, str(exc))
            if interaction is None:
                interaction = self.store.create_interaction(
                    campaign_id=campaign.id,
                    source_type=SourceType.phone,
                    raw_payload=payload,
                    payload_hash=digest,
                    processing_error=str(exc) or exc.__class__.__name__,
                )
            else:
                self.store.note_interaction_error(
                    interaction.id, str(exc) or exc.__class__.__name__
                )
            self._record("processing_error")
            return IngestionResult(interaction_id=interaction.id, processing_error=True)

        self._record("processed")
        return IngestionResult(
            interaction_id=interaction.id,
            source_type=analysis.source_type,
            source_platform=analysis.source_platform,
            fired_trigger_ids=tuple(fired),
        )

    def _classify(
        self, campaign: CampaignRecord, payload: dict[str, Any], raw_body: bytes
    ) -> PayloadAnalysis:
        try:
            return self.classifier.analyze(payload, campaign.extraction_hints or None)
        except ClassificationError as exc:
            logger.warning(
                "inbound_classification_failed campaign_id=%s error=%s", campaign.id, exc
            )
            self._log_error(
                campaign.id, raw_body, WebhookErrorType.classification_error, str(exc)
            )
            return PayloadAnalysis()

    def _persist(
        self,
        campaign: CampaignRecord,
        payload: dict[str, Any],
        digest: str,
        analysis: PayloadAnalysis,
    ) -> InteractionRecord:
        phone_number = try_normalize_phone(analysis.extracted_data.phone_number)
        contact_id = None
        if phone_number:
            contact, created = self.store.resolve_or_create_contact(campaign.id, phone_number)
            contact_id = contact.id
            if created:
                logger.info(
                    "contact_created campaign_id=%s contact_id=%s", campaign.id, contact.id
                )

        interaction = self.store.create_interaction(
            campaign_id=campaign.id,
            contact_id=contact_id,
            source_type=analysis.source_type,
            source_platform=analysis.source_platform,
            phone_number=phone_number,
            call_status=analysis.call_status,
            duration_seconds=analysis.duration_seconds,
            transcript=analysis.transcript,
            transcript_formatted=analysis.transcript_formatted,
            recording_url=analysis.recording_url,
            ai_summary=analysis.extracted_data.summary,
            ai_extracted_data=analysis.extracted_data.model_dump(exclude_none=True),
            raw_payload=payload,
            payload_hash=digest,
        )
        logger.info(
            "interaction_created campaign_id=%s interaction_id=%s contact_id=%s",
            campaign.id,
            interaction.id,
            contact_id,
        )
        return interaction

    def _fire_triggers(
        self,
        campaign: CampaignRecord,
        interaction: InteractionRecord,
        analysis: PayloadAnalysis,
    ) -> list[str]:
        summary = analysis.extracted_data.summary
        if not interaction.contact_id or not (analysis.transcript or summary):
            return []
        if not campaign.sms_from_number:
            logger.info("trigger_skip_no_origin campaign_id=%s", campaign.id)
            return []
        triggers = self.store.list_active_triggers(campaign.id)
        if not triggers:
            return []

        contact_id = interaction.contact_id
        credentials = campaign.gateway_credentials if campaign.gateway_override else None
        outcome = fire_matching_triggers(
            evaluator=self.evaluator,
            dispatcher=self.dispatcher,
            triggers=triggers,
            already_fired=self.store.fired_triggers(contact_id),
            transcript=analysis.transcript,
            summary=summary,
            to_number=interaction.phone_number or "",
            from_number=campaign.sms_from_number,
            contact_id=contact_id,
            mark_fired=lambda trigger_id: self.store.mark_contact_trigger_fired(
                contact_id, trigger_id
            ),
            on_sent=lambda trigger_id: self.store.note_interaction_sms(
                interaction.id, trigger_id
            ),
            interaction_id=interaction.id,
            credentials=credentials,
        )
        if outcome.matched:
            logger.info(
                "triggers_fired interaction_id=%s matched=%s sent=%s failed=%s",
                interaction.id,
                ",".join(outcome.matched),
                len(outcome.sent),
                len(outcome.failed),
            )
        return outcome.matched

    def _log_error(
        self,
        campaign_id: Optional[str],
        raw_body: bytes,
        error_type: WebhookErrorType,
        message: str,
    ) -> None:
        self.store.add_webhook_error(
            campaign_id=campaign_id,
            raw_body=raw_body.decode("utf-8", errors="replace")[: self.error_body_max_chars],
            error_type=error_type,
            error_message=message,
        )

    def _record(self, outcome: str) -> None:
        if self.metrics:
            self.metrics.record_webhook(kind="inbound", outcome=outcome)
