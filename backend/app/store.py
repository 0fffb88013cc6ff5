from __future__ import annotations

from datetime import datetime
from threading import RLock
from typing import TYPE_CHECKING, Any, Optional
from uuid import uuid4

from backend.app.models import (
    CallLogRecord,
    CallResult,
    CampaignRecord,
    ContactRecord,
    InteractionRecord,
    OutboundCampaignRecord,
    OutboundCampaignStatus,
    OutboundContactRecord,
    OutboundContactStatus,
    SmsLogRecord,
    SmsStatus,
    TriggerRecord,
    WebhookErrorLogRecord,
    WebhookErrorType,
    utc_now,
)
from backend.app.services.workflow import (
    ALLOWED_TRANSITIONS,
    TERMINAL_CONTACT_STATUSES,
    next_contact_state,
)

if TYPE_CHECKING:
    from backend.app.persistence import SqlitePersistence


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex[:10]}"


class StoreConflictError(Exception):
    pass


class StoreNotFoundError(Exception):
    pass


class InvalidTransitionError(Exception):
    def __init__(
        self, from_status: OutboundCampaignStatus, to_status: OutboundCampaignStatus
    ) -> None:
        super().__init__(f"invalid transition {from_status.value} -> {to_status.value}")
        self.from_status = from_status
        self.to_status = to_status


class InMemoryStore:
    """Store-layer collaborator for campaigns, contacts and call bookkeeping.

    Every mutation runs under a single re-entrant lock, which is what makes
    contact resolve-or-create an atomic upsert, fired-trigger marking an
    idempotent set-add and campaign counters atomic increments.
    """

    def __init__(self, persistence: Optional["SqlitePersistence"] = None) -> None:
        self._lock = RLock()
        self.persistence = persistence
        self.campaigns: dict[str, CampaignRecord] = {}
        self.triggers: dict[str, TriggerRecord] = {}
        self.contacts: dict[str, ContactRecord] = {}
        self.interactions: dict[str, InteractionRecord] = {}
        self.outbound_campaigns: dict[str, OutboundCampaignRecord] = {}
        self.outbound_contacts: dict[str, OutboundContactRecord] = {}
        self.call_logs: dict[str, CallLogRecord] = {}
        self.sms_logs: dict[str, SmsLogRecord] = {}
        self.webhook_errors: dict[str, WebhookErrorLogRecord] = {}
        self._contact_index: dict[tuple[str, str], str] = {}
        self._call_log_index: dict[str, str] = {}

        if self.persistence:
            snapshot = self.persistence.load_snapshot()
            if snapshot:
                self._hydrate_from_snapshot(snapshot)
            for record in self.persistence.list_webhook_errors(limit=500):
                self.webhook_errors.setdefault(record.id, record)

    # -- inbound campaigns and triggers -------------------------------------

    def add_campaign(
        self,
        *,
        name: str,
        webhook_key: Optional[str] = None,
        is_active: bool = True,
        sms_from_number: Optional[str] = None,
        gateway_override: bool = False,
        gateway_credentials: Optional[dict[str, str]] = None,
        extraction_hints: Optional[dict[str, str]] = None,
    ) -> CampaignRecord:
        with self._lock:
            campaign = CampaignRecord(
                id=new_id("cmp"),
                name=name.strip(),
                webhook_key=webhook_key or uuid4().hex,
                is_active=is_active,
                sms_from_number=sms_from_number,
                gateway_override=gateway_override,
                gateway_credentials=gateway_credentials,
                extraction_hints=extraction_hints or {},
                created_at_utc=utc_now(),
            )
            self.campaigns[campaign.id] = campaign
            self._persist_state()
            return campaign

    def get_campaign_by_webhook_key(self, webhook_key: str) -> CampaignRecord:
        with self._lock:
            for campaign in self.campaigns.values():
                if campaign.webhook_key == webhook_key:
                    return campaign
        raise StoreNotFoundError("campaign not found")

    def add_trigger(
        self,
        *,
        campaign_id: str,
        intent_description: str,
        message: str,
        priority: int = 0,
        is_active: bool = True,
    ) -> TriggerRecord:
        with self._lock:
            if campaign_id not in self.campaigns and campaign_id not in self.outbound_campaigns:
                raise StoreNotFoundError(f"campaign not found: {campaign_id}")
            trigger = TriggerRecord(
                id=new_id("trg"),
                campaign_id=campaign_id,
                intent_description=intent_description.strip(),
                message=message,
                priority=priority,
                is_active=is_active,
                created_at_utc=utc_now(),
            )
            self.triggers[trigger.id] = trigger
            self._persist_state()
            return trigger

    def list_active_triggers(self, campaign_id: str) -> list[TriggerRecord]:
        with self._lock:
            triggers = [
                trigger
                for trigger in self.triggers.values()
                if trigger.campaign_id == campaign_id and trigger.is_active
            ]
        return sorted(triggers, key=lambda item: (item.priority, item.created_at_utc))

    # -- contacts -------------------------------------------------------------

    def resolve_or_create_contact(
        self, campaign_id: str, phone_number: str
    ) -> tuple[ContactRecord, bool]:
        with self._lock:
            key = (campaign_id, phone_number)
            existing_id = self._contact_index.get(key)
            if existing_id:
                return self.contacts[existing_id], False
            now = utc_now()
            contact = ContactRecord(
                id=new_id("con"),
                campaign_id=campaign_id,
                phone_number=phone_number,
                created_at_utc=now,
                updated_at_utc=now,
            )
            self.contacts[contact.id] = contact
            self._contact_index[key] = contact.id
            self._persist_state()
            return contact, True

    def get_contact(self, contact_id: str) -> ContactRecord:
        contact = self.contacts.get(contact_id)
        if not contact:
            raise StoreNotFoundError(f"contact not found: {contact_id}")
        return contact

    def fired_triggers(self, contact_id: str) -> set[str]:
        with self._lock:
            return set(self.get_contact(contact_id).fired_trigger_ids)

    def mark_contact_trigger_fired(self, contact_id: str, trigger_id: str) -> bool:
        with self._lock:
            contact = self.get_contact(contact_id)
            if trigger_id in contact.fired_trigger_ids:
                return False
            self.contacts[contact_id] = contact.model_copy(
                update={
                    "fired_trigger_ids": contact.fired_trigger_ids | {trigger_id},
                    "updated_at_utc": utc_now(),
                }
            )
            self._persist_state()
            return True

    # -- interactions ---------------------------------------------------------

    def find_recent_interaction(
        self, *, campaign_id: str, payload_hash: str, since: datetime
    ) -> Optional[InteractionRecord]:
        with self._lock:
            matches = [
                interaction
                for interaction in self.interactions.values()
                if interaction.campaign_id == campaign_id
                and interaction.payload_hash == payload_hash
                and interaction.created_at_utc > since
            ]
        if not matches:
            return None
        return max(matches, key=lambda item: item.created_at_utc)

    def create_interaction(self, **fields: Any) -> InteractionRecord:
        with self._lock:
            interaction = InteractionRecord(
                id=new_id("int"),
                created_at_utc=utc_now(),
                **fields,
            )
            self.interactions[interaction.id] = interaction
            self._persist_state()
            return interaction

    def get_interaction(self, interaction_id: str) -> InteractionRecord:
        interaction = self.interactions.get(interaction_id)
        if not interaction:
            raise StoreNotFoundError(f"interaction not found: {interaction_id}")
        return interaction

    def note_interaction_sms(self, interaction_id: str, trigger_id: str) -> InteractionRecord:
        with self._lock:
            interaction = self.get_interaction(interaction_id)
            trigger_ids = list(interaction.sms_trigger_ids)
            if trigger_id not in trigger_ids:
                trigger_ids.append(trigger_id)
            updated = interaction.model_copy(
                update={"sms_sent": True, "sms_trigger_ids": trigger_ids}
            )
            self.interactions[interaction_id] = updated
            self._persist_state()
            return updated

    def note_interaction_error(self, interaction_id: str, message: str) -> InteractionRecord:
        with self._lock:
            interaction = self.get_interaction(interaction_id)
            updated = interaction.model_copy(update={"processing_error": message})
            self.interactions[interaction_id] = updated
            self._persist_state()
            return updated

    # -- outbound campaigns ---------------------------------------------------

    def add_outbound_campaign(
        self,
        *,
        name: str,
        webhook_key: Optional[str] = None,
        status: OutboundCampaignStatus = OutboundCampaignStatus.draft,
        max_concurrent_calls: int = 1,
        max_retries: int = 2,
        retry_delay_hours: float = 4,
        sms_from_number: Optional[str] = None,
        extraction_hints: Optional[dict[str, str]] = None,
    ) -> OutboundCampaignRecord:
        with self._lock:
            now = utc_now()
            campaign = OutboundCampaignRecord(
                id=new_id("ocmp"),
                name=name.strip(),
                webhook_key=webhook_key or uuid4().hex,
                status=status,
                max_concurrent_calls=max_concurrent_calls,
                max_retries=max_retries,
                retry_delay_hours=retry_delay_hours,
                sms_from_number=sms_from_number,
                extraction_hints=extraction_hints or {},
                actual_start_at_utc=now if status == OutboundCampaignStatus.running else None,
                created_at_utc=now,
                updated_at_utc=now,
            )
            self.outbound_campaigns[campaign.id] = campaign
            self._persist_state()
            return campaign

    def get_outbound_campaign(self, campaign_id: str) -> OutboundCampaignRecord:
        campaign = self.outbound_campaigns.get(campaign_id)
        if not campaign:
            raise StoreNotFoundError(f"outbound campaign not found: {campaign_id}")
        return campaign

    def get_outbound_campaign_by_webhook_key(self, webhook_key: str) -> OutboundCampaignRecord:
        with self._lock:
            for campaign in self.outbound_campaigns.values():
                if campaign.webhook_key == webhook_key:
                    return campaign
        raise StoreNotFoundError("outbound campaign not found")

    def transition_outbound_campaign(
        self, campaign_id: str, to_status: OutboundCampaignStatus
    ) -> OutboundCampaignRecord:
        with self._lock:
            campaign = self.get_outbound_campaign(campaign_id)
            if to_status not in ALLOWED_TRANSITIONS[campaign.status]:
                raise InvalidTransitionError(campaign.status, to_status)
            updated = self._apply_campaign_status(campaign, to_status)
            # Contacts can finish while paused; a resumed campaign with none left closes.
            if (
                campaign.status == OutboundCampaignStatus.paused
                and to_status == OutboundCampaignStatus.running
                and self.count_actionable_contacts(campaign_id) == 0
            ):
                updated = self._apply_campaign_status(updated, OutboundCampaignStatus.completed)
            self._persist_state()
            return updated

    def increment_outbound_counters(
        self,
        campaign_id: str,
        *,
        called: int = 0,
        answered: int = 0,
        failed: int = 0,
    ) -> OutboundCampaignRecord:
        with self._lock:
            campaign = self.get_outbound_campaign(campaign_id)
            updated = campaign.model_copy(
                update={
                    "contacts_called": campaign.contacts_called + called,
                    "contacts_answered": campaign.contacts_answered + answered,
                    "contacts_failed": campaign.contacts_failed + failed,
                    "updated_at_utc": utc_now(),
                }
            )
            self.outbound_campaigns[campaign_id] = updated
            self._persist_state()
            return updated

    def count_actionable_contacts(self, campaign_id: str) -> int:
        with self._lock:
            return sum(
                1
                for contact in self.outbound_contacts.values()
                if contact.campaign_id == campaign_id
                and contact.status not in TERMINAL_CONTACT_STATUSES
            )

    def complete_campaign_if_exhausted(self, campaign_id: str) -> bool:
        with self._lock:
            campaign = self.get_outbound_campaign(campaign_id)
            if OutboundCampaignStatus.completed not in ALLOWED_TRANSITIONS[campaign.status]:
                return False
            if self.count_actionable_contacts(campaign_id) > 0:
                return False
            self._apply_campaign_status(campaign, OutboundCampaignStatus.completed)
            self._persist_state()
            return True

    # -- outbound contacts and call logs -------------------------------------

    def add_outbound_contact(
        self,
        *,
        campaign_id: str,
        phone_number: str,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        status: OutboundContactStatus = OutboundContactStatus.pending,
    ) -> OutboundContactRecord:
        with self._lock:
            self.get_outbound_campaign(campaign_id)
            now = utc_now()
            contact = OutboundContactRecord(
                id=new_id("ocon"),
                campaign_id=campaign_id,
                phone_number=phone_number,
                first_name=first_name,
                last_name=last_name,
                status=status,
                created_at_utc=now,
                updated_at_utc=now,
            )
            self.outbound_contacts[contact.id] = contact
            self._persist_state()
            return contact

    def get_outbound_contact(self, contact_id: str) -> OutboundContactRecord:
        contact = self.outbound_contacts.get(contact_id)
        if not contact:
            raise StoreNotFoundError(f"outbound contact not found: {contact_id}")
        return contact

    def claim_due_contacts(
        self, campaign_id: str, *, now: Optional[datetime] = None
    ) -> tuple[int, list[OutboundContactRecord]]:
        """Move due contacts to ``calling`` within the campaign's concurrency cap.

        Returns the number of free slots before claiming and the claimed
        contacts, each with its attempt count already advanced.
        """
        with self._lock:
            campaign = self.get_outbound_campaign(campaign_id)
            if campaign.status != OutboundCampaignStatus.running:
                return 0, []
            current = now or utc_now()
            contacts = [
                contact
                for contact in self.outbound_contacts.values()
                if contact.campaign_id == campaign_id
            ]
            active_calls = sum(
                1 for contact in contacts if contact.status == OutboundContactStatus.calling
            )
            available_slots = max(0, campaign.max_concurrent_calls - active_calls)
            attempt_limit = campaign.max_retries + 1
            due = [
                contact
                for contact in sorted(contacts, key=lambda item: item.created_at_utc)
                if contact.attempt_count < attempt_limit
                and (
                    contact.status == OutboundContactStatus.pending
                    or (
                        contact.status == OutboundContactStatus.queued
                        and (
                            contact.next_attempt_at_utc is None
                            or contact.next_attempt_at_utc <= current
                        )
                    )
                )
            ]
            claimed: list[OutboundContactRecord] = []
            for contact in due[:available_slots]:
                updated = contact.model_copy(
                    update={
                        "status": OutboundContactStatus.calling,
                        "attempt_count": contact.attempt_count + 1,
                        "last_attempt_at_utc": current,
                        "updated_at_utc": current,
                    }
                )
                self.outbound_contacts[contact.id] = updated
                claimed.append(updated)
            if claimed:
                self._persist_state()
            return available_slots, claimed

    def record_call_placed(self, contact_id: str, provider_call_id: str) -> CallLogRecord:
        with self._lock:
            contact = self.get_outbound_contact(contact_id)
            if contact.status != OutboundContactStatus.calling:
                raise StoreConflictError(
                    f"contact {contact_id} is not being called (status={contact.status.value})"
                )
            if provider_call_id in self._call_log_index:
                raise StoreConflictError(f"call already registered: {provider_call_id}")
            call_log = CallLogRecord(
                id=new_id("call"),
                campaign_id=contact.campaign_id,
                contact_id=contact.id,
                provider_call_id=provider_call_id,
                attempt_number=contact.attempt_count,
                started_at_utc=contact.last_attempt_at_utc or utc_now(),
            )
            self.call_logs[call_log.id] = call_log
            self._call_log_index[provider_call_id] = call_log.id
            self._persist_state()
            return call_log

    def get_call_log_by_provider_id(self, provider_call_id: str) -> Optional[CallLogRecord]:
        call_log_id = self._call_log_index.get(provider_call_id)
        if not call_log_id:
            return None
        return self.call_logs.get(call_log_id)

    def complete_call_log(self, call_log_id: str, **fields: Any) -> Optional[CallLogRecord]:
        """Record the outcome of a call once; returns None if already recorded."""
        with self._lock:
            call_log = self.call_logs.get(call_log_id)
            if not call_log:
                raise StoreNotFoundError(f"call log not found: {call_log_id}")
            if call_log.call_result is not None:
                return None
            updated = call_log.model_copy(update=fields)
            self.call_logs[call_log_id] = updated
            self._persist_state()
            return updated

    def note_call_log_sms(self, call_log_id: str, trigger_id: str) -> CallLogRecord:
        with self._lock:
            call_log = self.call_logs.get(call_log_id)
            if not call_log:
                raise StoreNotFoundError(f"call log not found: {call_log_id}")
            trigger_ids = list(call_log.sms_trigger_ids)
            if trigger_id not in trigger_ids:
                trigger_ids.append(trigger_id)
            updated = call_log.model_copy(
                update={"sms_sent": True, "sms_trigger_ids": trigger_ids}
            )
            self.call_logs[call_log_id] = updated
            self._persist_state()
            return updated

    def apply_call_result(
        self,
        contact_id: str,
        *,
        call_result: CallResult,
        duration_seconds: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> tuple[OutboundContactStatus, OutboundContactRecord]:
        """Advance a contact after one attempt; returns the prior status and the update."""
        with self._lock:
            contact = self.get_outbound_contact(contact_id)
            campaign = self.get_outbound_campaign(contact.campaign_id)
            current = now or utc_now()
            previous = contact.status
            update: dict[str, Any] = {
                "last_call_result": call_result,
                "call_duration_seconds": duration_seconds,
                "updated_at_utc": current,
            }
            if previous not in TERMINAL_CONTACT_STATUSES:
                status, next_attempt = next_contact_state(
                    call_result=call_result,
                    attempt_count=contact.attempt_count,
                    max_retries=campaign.max_retries,
                    retry_delay_hours=campaign.retry_delay_hours,
                    now=current,
                )
                update["status"] = status
                update["next_attempt_at_utc"] = next_attempt
            updated = contact.model_copy(update=update)
            self.outbound_contacts[contact_id] = updated
            self._persist_state()
            return previous, updated

    def outbound_fired_triggers(self, contact_id: str) -> set[str]:
        with self._lock:
            return set(self.get_outbound_contact(contact_id).fired_trigger_ids)

    def mark_outbound_trigger_fired(self, contact_id: str, trigger_id: str) -> bool:
        with self._lock:
            contact = self.get_outbound_contact(contact_id)
            if trigger_id in contact.fired_trigger_ids:
                return False
            self.outbound_contacts[contact_id] = contact.model_copy(
                update={
                    "fired_trigger_ids": contact.fired_trigger_ids | {trigger_id},
                    "updated_at_utc": utc_now(),
                }
            )
            self._persist_state()
            return True

    # -- sms and error logs ---------------------------------------------------

    def create_sms_log(self, **fields: Any) -> SmsLogRecord:
        with self._lock:
            now = utc_now()
            record = SmsLogRecord(
                id=new_id("sms"),
                status=SmsStatus.pending,
                created_at_utc=now,
                updated_at_utc=now,
                **fields,
            )
            self.sms_logs[record.id] = record
            self._persist_state()
            return record

    def update_sms_log(
        self,
        sms_log_id: str,
        *,
        status: SmsStatus,
        gateway_sid: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> SmsLogRecord:
        with self._lock:
            record = self.sms_logs.get(sms_log_id)
            if not record:
                raise StoreNotFoundError(f"sms log not found: {sms_log_id}")
            updated = record.model_copy(
                update={
                    "status": status,
                    "gateway_sid": gateway_sid,
                    "error_message": error_message,
                    "updated_at_utc": utc_now(),
                }
            )
            self.sms_logs[sms_log_id] = updated
            self._persist_state()
            return updated

    def list_sms_logs(self, *, contact_id: Optional[str] = None) -> list[SmsLogRecord]:
        with self._lock:
            records = list(self.sms_logs.values())
        if contact_id:
            records = [record for record in records if record.contact_id == contact_id]
        return sorted(records, key=lambda item: item.created_at_utc)

    def add_webhook_error(
        self,
        *,
        campaign_id: Optional[str],
        raw_body: str,
        error_type: WebhookErrorType,
        error_message: str,
    ) -> WebhookErrorLogRecord:
        record = WebhookErrorLogRecord(
            id=new_id("err"),
            campaign_id=campaign_id,
            raw_body=raw_body,
            error_type=error_type,
            error_message=error_message,
            created_at_utc=utc_now(),
        )
        with self._lock:
            self.webhook_errors[record.id] = record
        if self.persistence:
            self.persistence.insert_webhook_error(record)
        return record

    def list_webhook_errors(
        self, *, limit: int = 50, campaign_id: Optional[str] = None
    ) -> list[WebhookErrorLogRecord]:
        safe_limit = max(1, min(limit, 500))
        with self._lock:
            records = list(self.webhook_errors.values())
        if campaign_id:
            records = [record for record in records if record.campaign_id == campaign_id]
        records.sort(key=lambda item: item.created_at_utc, reverse=True)
        return records[:safe_limit]

    # -- internals ------------------------------------------------------------

    def _apply_campaign_status(
        self, campaign: OutboundCampaignRecord, to_status: OutboundCampaignStatus
    ) -> OutboundCampaignRecord:
        now = utc_now()
        update: dict[str, Any] = {"status": to_status, "updated_at_utc": now}
        if to_status == OutboundCampaignStatus.running and not campaign.actual_start_at_utc:
            update["actual_start_at_utc"] = now
        if to_status == OutboundCampaignStatus.completed:
            update["completed_at_utc"] = now
        updated = campaign.model_copy(update=update)
        self.outbound_campaigns[campaign.id] = updated
        return updated

    def _persist_state(self) -> None:
        if not self.persistence:
            return
        with self._lock:
            self.persistence.save_snapshot(self._snapshot_data())

    def _snapshot_data(self) -> dict:
        return {
            "campaigns": [record.model_dump(mode="json") for record in self.campaigns.values()],
            "triggers": [record.model_dump(mode="json") for record in self.triggers.values()],
            "contacts": [record.model_dump(mode="json") for record in self.contacts.values()],
            "interactions": [
                record.model_dump(mode="json") for record in self.interactions.values()
            ],
            "outbound_campaigns": [
                record.model_dump(mode="json") for record in self.outbound_campaigns.values()
            ],
            "outbound_contacts": [
                record.model_dump(mode="json") for record in self.outbound_contacts.values()
            ],
            "call_logs": [record.model_dump(mode="json") for record in self.call_logs.values()],
            "sms_logs": [record.model_dump(mode="json") for record in self.sms_logs.values()],
        }

    def _hydrate_from_snapshot(self, snapshot: dict) -> None:
        self.campaigns = {
            record["id"]: CampaignRecord.model_validate(record)
            for record in snapshot.get("campaigns", [])
        }
        self.triggers = {
            record["id"]: TriggerRecord.model_validate(record)
            for record in snapshot.get("triggers", [])
        }
        self.contacts = {
            record["id"]: ContactRecord.model_validate(record)
            for record in snapshot.get("contacts", [])
        }
        self.interactions = {
            record["id"]: InteractionRecord.model_validate(record)
            for record in snapshot.get("interactions", [])
        }
        self.outbound_campaigns = {
            record["id"]: OutboundCampaignRecord.model_validate(record)
            for record in snapshot.get("outbound_campaigns", [])
        }
        self.outbound_contacts = {
            record["id"]: OutboundContactRecord.model_validate(record)
            for record in snapshot.get("outbound_contacts", [])
        }
        self.call_logs = {
            record["id"]: CallLogRecord.model_validate(record)
            for record in snapshot.get("call_logs", [])
        }
        self.sms_logs = {
            record["id"]: SmsLogRecord.model_validate(record)
            for record in snapshot.get("sms_logs", [])
        }
        self._contact_index = {
            (contact.campaign_id, contact.phone_number): contact.id
            for contact in self.contacts.values()
        }
        self._call_log_index = {
            call_log.provider_call_id: call_log.id for call_log in self.call_logs.values()
        }
