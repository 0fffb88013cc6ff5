from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


def utc_now() -> datetime:
    return datetime.utcnow()


class SourceType(str, Enum):
    phone = "phone"
    sms = "sms"
    web_form = "web_form"
    chatbot = "chatbot"


class CallStatus(str, Enum):
    completed = "completed"
    no_answer = "no_answer"
    failed = "failed"
    busy = "busy"
    canceled = "canceled"


class CallResult(str, Enum):
    answered = "answered"
    no_answer = "no_answer"
    busy = "busy"
    voicemail = "voicemail"
    failed = "failed"


class OutboundCampaignStatus(str, Enum):
    draft = "draft"
    scheduled = "scheduled"
    running = "running"
    paused = "paused"
    completed = "completed"
    cancelled = "cancelled"


class OutboundContactStatus(str, Enum):
    pending = "pending"
    queued = "queued"
    calling = "calling"
    completed = "completed"
    no_answer = "no_answer"
    busy = "busy"
    voicemail = "voicemail"
    failed = "failed"
    dnc = "dnc"
    skipped = "skipped"


class SmsStatus(str, Enum):
    pending = "pending"
    sent = "sent"
    failed = "failed"


class WebhookErrorType(str, Enum):
    invalid_json = "invalid_json"
    classification_error = "classification_error"
    processing_error = "processing_error"
    server_error = "server_error"


class TranscriptTurn(BaseModel):
    role: str
    content: str


class ExtractedData(BaseModel):
    caller_name: Optional[str] = None
    phone_number: Optional[str] = None
    email: Optional[str] = None
    primary_intent: Optional[str] = None
    outcome: Optional[str] = None
    summary: Optional[str] = None
    custom_fields: Optional[dict[str, Any]] = None


class PayloadAnalysis(BaseModel):
    source_type: SourceType = SourceType.phone
    source_platform: str = "unknown"
    extracted_data: ExtractedData = Field(default_factory=ExtractedData)
    transcript: Optional[str] = None
    transcript_formatted: Optional[list[TranscriptTurn]] = None
    recording_url: Optional[str] = None
    call_status: Optional[CallStatus] = None
    duration_seconds: Optional[int] = None


class TriggerCandidate(BaseModel):
    id: str
    intent_description: str
    priority: int = 0


class GatewayCredentials(BaseModel):
    account_sid: str = Field(min_length=1)
    auth_token: str = Field(min_length=1)


class CampaignRecord(BaseModel):
    id: str
    name: str
    webhook_key: str
    is_active: bool = True
    sms_from_number: Optional[str] = None
    gateway_override: bool = False
    gateway_credentials: Optional[GatewayCredentials] = None
    extraction_hints: dict[str, str] = Field(default_factory=dict)
    created_at_utc: datetime


class TriggerRecord(BaseModel):
    id: str
    campaign_id: str
    intent_description: str
    message: str
    priority: int = 0
    is_active: bool = True
    created_at_utc: datetime


class ContactRecord(BaseModel):
    id: str
    campaign_id: str
    phone_number: str
    fired_trigger_ids: set[str] = Field(default_factory=set)
    created_at_utc: datetime
    updated_at_utc: datetime


class InteractionRecord(BaseModel):
    id: str
    campaign_id: str
    contact_id: Optional[str] = None
    source_type: SourceType = SourceType.phone
    source_platform: Optional[str] = None
    phone_number: Optional[str] = None
    call_status: Optional[CallStatus] = None
    duration_seconds: Optional[int] = None
    transcript: Optional[str] = None
    transcript_formatted: Optional[list[TranscriptTurn]] = None
    recording_url: Optional[str] = None
    ai_summary: Optional[str] = None
    ai_extracted_data: Optional[dict[str, Any]] = None
    raw_payload: dict[str, Any] = Field(default_factory=dict)
    payload_hash: str
    sms_sent: bool = False
    sms_trigger_ids: list[str] = Field(default_factory=list)
    processing_error: Optional[str] = None
    created_at_utc: datetime


class OutboundCampaignRecord(BaseModel):
    id: str
    name: str
    webhook_key: str
    status: OutboundCampaignStatus = OutboundCampaignStatus.draft
    max_concurrent_calls: int = Field(default=1, ge=1)
    max_retries: int = Field(default=2, ge=0)
    retry_delay_hours: float = Field(default=4, ge=0)
    sms_from_number: Optional[str] = None
    extraction_hints: dict[str, str] = Field(default_factory=dict)
    contacts_called: int = 0
    contacts_answered: int = 0
    contacts_failed: int = 0
    actual_start_at_utc: Optional[datetime] = None
    completed_at_utc: Optional[datetime] = None
    created_at_utc: datetime
    updated_at_utc: datetime


class OutboundContactRecord(BaseModel):
    id: str
    campaign_id: str
    phone_number: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    status: OutboundContactStatus = OutboundContactStatus.pending
    attempt_count: int = 0
    last_attempt_at_utc: Optional[datetime] = None
    next_attempt_at_utc: Optional[datetime] = None
    last_call_result: Optional[CallResult] = None
    call_duration_seconds: Optional[int] = None
    fired_trigger_ids: set[str] = Field(default_factory=set)
    created_at_utc: datetime
    updated_at_utc: datetime


class CallLogRecord(BaseModel):
    id: str
    campaign_id: str
    contact_id: str
    provider_call_id: str
    attempt_number: int
    call_result: Optional[CallResult] = None
    duration_seconds: Optional[int] = None
    transcript: Optional[str] = None
    transcript_formatted: Optional[list[TranscriptTurn]] = None
    recording_url: Optional[str] = None
    ai_summary: Optional[str] = None
    ai_extracted_data: Optional[dict[str, Any]] = None
    raw_payload: Optional[dict[str, Any]] = None
    sms_sent: bool = False
    sms_trigger_ids: list[str] = Field(default_factory=list)
    started_at_utc: datetime
    ended_at_utc: Optional[datetime] = None


class SmsLogRecord(BaseModel):
    id: str
    interaction_id: Optional[str] = None
    call_log_id: Optional[str] = None
    trigger_id: str
    contact_id: str
    to_number: str
    from_number: str
    message: str
    status: SmsStatus = SmsStatus.pending
    gateway_sid: Optional[str] = None
    error_message: Optional[str] = None
    created_at_utc: datetime
    updated_at_utc: datetime


class WebhookErrorLogRecord(BaseModel):
    id: str
    campaign_id: Optional[str] = None
    raw_body: str
    error_type: WebhookErrorType
    error_message: str
    created_at_utc: datetime


class InboundWebhookResponse(BaseModel):
    received: bool = True
    duplicate: Optional[bool] = None
    interaction_id: Optional[str] = None
    source_type: Optional[SourceType] = None
    source_platform: Optional[str] = None
    processing_error: Optional[bool] = None
    error: Optional[str] = None


class OutboundWebhookResponse(BaseModel):
    received: bool = True
    skipped: Optional[str] = None
    duplicate: Optional[bool] = None
    call_result: Optional[CallResult] = None
    contact_status: Optional[OutboundContactStatus] = None
    error: Optional[str] = None


class WebhookVerifyResponse(BaseModel):
    valid: bool
    campaign_name: str
    active: Optional[bool] = None
    type: Optional[str] = None


class CampaignStatusChangeRequest(BaseModel):
    status: OutboundCampaignStatus


class CampaignStatusResponse(BaseModel):
    campaign_id: str
    status: OutboundCampaignStatus
    actual_start_at_utc: Optional[datetime]
    completed_at_utc: Optional[datetime]


class ClaimedContact(BaseModel):
    contact_id: str
    phone_number: str
    first_name: Optional[str]
    last_name: Optional[str]
    attempt_count: int


class ClaimContactsResponse(BaseModel):
    campaign_id: str
    available_slots: int
    contacts: list[ClaimedContact]


class CallAttemptRequest(BaseModel):
    contact_id: str
    provider_call_id: str = Field(min_length=1, max_length=255)


class CallAttemptResponse(BaseModel):
    call_log_id: str
    contact_id: str
    attempt_number: int


class WebhookErrorItem(BaseModel):
    id: str
    campaign_id: Optional[str]
    error_type: WebhookErrorType
    error_message: str
    raw_body: str
    created_at_utc: datetime
