from __future__ import annotations

import json
import logging
from typing import Any, Optional

from openai import OpenAI, OpenAIError

from backend.app.models import (
    CallStatus,
    ExtractedData,
    PayloadAnalysis,
    SourceType,
    TranscriptTurn,
)
from backend.app.settings import Settings

logger = logging.getLogger("followup_engine.classifier")

ANALYSIS_SYSTEM_PROMPT = """You are an AI assistant that analyzes webhook payloads from various communication sources (VAPI, Autocalls.ai, Twilio, web forms, chatbots). Your job is to:

1. Identify the source type and platform
2. Extract standardized fields from the payload
3. Detect the primary intent and outcome
4. Generate a concise summary

Common payload structures:
- VAPI: Contains "message.type": "end-of-call-report", with call details, transcript in "artifact", and analysis
- Autocalls.ai: Contains "call_id", "phone_number", "transcript", "call_outcome"
- Twilio: Contains "From", "To", "Body" for SMS, or call details
- Web forms: Usually key-value pairs with form fields
- Chatbots: Contains conversation history or messages array

Only report values present in the payload. Omit any field you cannot find.

Return a JSON object with this structure:
{
  "sourceType": "phone" | "sms" | "web_form" | "chatbot",
  "sourcePlatform": "vapi" | "autocalls" | "twilio" | "custom" | etc,
  "extractedData": {
    "callerName": "name if detected",
    "phoneNumber": "phone in E.164 format if found",
    "email": "email if found",
    "primaryIntent": "main reason for contact",
    "outcome": "result of interaction (appointment_set, callback_requested, info_provided, etc)",
    "summary": "1-2 sentence summary of the interaction",
    "customFields": { any additional relevant data }
  },
  "transcript": "full transcript text if available",
  "transcriptFormatted": [{ "role": "assistant" | "user", "content": "..." }] if available,
  "recordingUrl": "URL if available",
  "callStatus": "completed" | "no_answer" | "failed" | "busy" | "canceled" if applicable,
  "durationSeconds": number if available
}"""


class ClassificationError(Exception):
    pass


def build_openai_client(settings: Settings) -> Optional[OpenAI]:
    if not settings.openai_api_key:
        return None
    return OpenAI(api_key=settings.openai_api_key, timeout=settings.openai_timeout_seconds)


def complete_json(
    client: Optional[OpenAI],
    *,
    model: str,
    system_prompt: str,
    user_prompt: str,
    temperature: float,
    max_tokens: int,
) -> dict[str, Any]:
    """Run one JSON-mode chat completion and decode the reply object."""
    if client is None:
        raise ClassificationError("classification service is not configured")
    try:
        response = client.chat.completions.create(
            model=model,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            response_format={"type": "json_object"},
            temperature=temperature,
            max_tokens=max_tokens,
        )
    except OpenAIError as exc:
        raise ClassificationError(f"classification request failed: {exc}") from exc

    content = response.choices[0].message.content if response.choices else None
    if not content:
        raise ClassificationError("classification service returned an empty response")
    try:
        decoded = json.loads(content)
    except json.JSONDecodeError as exc:
        raise ClassificationError("classification response was not valid json") from exc
    if not isinstance(decoded, dict):
        raise ClassificationError("classification response was not a json object")
    return decoded


def _text(value: object) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _parse_turns(value: object) -> Optional[list[TranscriptTurn]]:
    if not isinstance(value, list):
        return None
    turns = [
        TranscriptTurn(role=str(item["role"]), content=str(item.get("content") or ""))
        for item in value
        if isinstance(item, dict) and item.get("role")
    ]
    return turns or None


def _parse_duration(value: object) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)) and value >= 0:
        return int(round(value))
    return None


def parse_analysis(raw: dict[str, Any]) -> PayloadAnalysis:
    """Build a PayloadAnalysis from a classifier reply, dropping unusable values."""
    try:
        source_type = SourceType(raw.get("sourceType"))
    except ValueError:
        source_type = SourceType.phone
    try:
        call_status = CallStatus(raw["callStatus"]) if raw.get("callStatus") else None
    except ValueError:
        call_status = None

    extracted = raw.get("extractedData")
    if not isinstance(extracted, dict):
        extracted = {}
    custom_fields = extracted.get("customFields")

    return PayloadAnalysis(
        source_type=source_type,
        source_platform=_text(raw.get("sourcePlatform")) or "unknown",
        extracted_data=ExtractedData(
            caller_name=_text(extracted.get("callerName")),
            phone_number=_text(extracted.get("phoneNumber")),
            email=_text(extracted.get("email")),
            primary_intent=_text(extracted.get("primaryIntent")),
            outcome=_text(extracted.get("outcome")),
            summary=_text(extracted.get("summary")),
            custom_fields=custom_fields if isinstance(custom_fields, dict) else None,
        ),
        transcript=_text(raw.get("transcript")),
        transcript_formatted=_parse_turns(raw.get("transcriptFormatted")),
        recording_url=_text(raw.get("recordingUrl")),
        call_status=call_status,
        duration_seconds=_parse_duration(raw.get("durationSeconds")),
    )


class PayloadClassifier:
    def __init__(self, client: Optional[OpenAI], *, model: str = "gpt-4o-mini") -> None:
        self.client = client
        self.model = model

    def analyze(
        self,
        payload: dict[str, Any],
        extraction_hints: Optional[dict[str, str]] = None,
    ) -> PayloadAnalysis:
        system_prompt = ANALYSIS_SYSTEM_PROMPT
        if extraction_hints:
            system_prompt += (
                "\n\nAdditional extraction hints from campaign configuration:\n"
                + json.dumps(extraction_hints, indent=2)
            )
        raw = complete_json(
            self.client,
            model=self.model,
            system_prompt=system_prompt,
            user_prompt=f"Analyze this webhook payload:\n\n{json.dumps(payload, indent=2)}",
            temperature=0.3,
            max_tokens=2000,
        )
        analysis = parse_analysis(raw)
        logger.info(
            "payload_classified source_type=%s source_platform=%s has_transcript=%s",
            analysis.source_type.value,
            analysis.source_platform,
            bool(analysis.transcript),
        )
        return analysis
