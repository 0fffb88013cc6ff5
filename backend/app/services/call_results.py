from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from backend.app.models import CallResult, TranscriptTurn

# Ended-reason vocabulary reported by the voice-AI provider. Lookups are made
# on the lowercased reason with underscores folded to dashes.
PROVIDER_STATUS_RESULTS: dict[str, CallResult] = {
    "answered": CallResult.answered,
    "completed": CallResult.answered,
    "customer-ended-call": CallResult.answered,
    "assistant-ended-call": CallResult.answered,
    "assistant-said-end-call-phrase": CallResult.answered,
    "assistant-forwarded-call": CallResult.answered,
    "exceeded-max-duration": CallResult.answered,
    "silence-timed-out": CallResult.answered,
    "no-answer": CallResult.no_answer,
    "customer-did-not-answer": CallResult.no_answer,
    "ring-timeout": CallResult.no_answer,
    "busy": CallResult.busy,
    "customer-busy": CallResult.busy,
    "voicemail": CallResult.voicemail,
    "machine-detected": CallResult.voicemail,
    "failed": CallResult.failed,
    "error": CallResult.failed,
    "customer-did-not-give-microphone-permission": CallResult.failed,
    "twilio-failed-to-connect-call": CallResult.failed,
    "canceled": CallResult.failed,
    "cancelled": CallResult.failed,
}

TERMINAL_EVENT_TYPES = {"end-of-call-report", "call-ended"}


def map_provider_status(status: Optional[str]) -> CallResult:
    """Canonical result for a provider status; anything unrecognised is ``failed``."""
    if not status:
        return CallResult.failed
    key = status.strip().lower().replace("_", "-")
    return PROVIDER_STATUS_RESULTS.get(key, CallResult.failed)


def resolve_call_result(call: dict[str, Any]) -> CallResult:
    """A provider transcript or a spoken customer turn means someone picked up.

    Turns spoken only by the assistant (a greeting played into voicemail or an
    unanswered line) do not, and fall through to the ended-reason table.
    """
    if provider_transcript(call) or _customer_spoke(call):
        return CallResult.answered
    return map_provider_status(call.get("endedReason"))


def _customer_spoke(call: dict[str, Any]) -> bool:
    return any(
        message.get("role") == "user" and str(message.get("message") or "").strip()
        for message in _messages(call)
    )


def _parse_timestamp(value: object) -> Optional[datetime]:
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def call_ended_at(call: dict[str, Any]) -> Optional[datetime]:
    return _parse_timestamp(call.get("endedAt"))


def call_duration_seconds(call: dict[str, Any]) -> Optional[int]:
    started = _parse_timestamp(call.get("startedAt"))
    ended = _parse_timestamp(call.get("endedAt"))
    if not started or not ended:
        return None
    return max(0, round((ended - started).total_seconds()))


def _messages(call: dict[str, Any]) -> list[dict[str, Any]]:
    messages = call.get("messages")
    if not isinstance(messages, list):
        artifact = call.get("artifact")
        messages = artifact.get("messages") if isinstance(artifact, dict) else None
    if not isinstance(messages, list):
        return []
    return [message for message in messages if isinstance(message, dict)]


def format_transcript(call: dict[str, Any]) -> str:
    lines = []
    for message in _messages(call):
        role = message.get("role")
        if role not in {"assistant", "user"}:
            continue
        speaker = "AI" if role == "assistant" else "Customer"
        lines.append(f"{speaker}: {message.get('message') or ''}")
    return "\n".join(lines)


def provider_transcript(call: dict[str, Any]) -> Optional[str]:
    transcript = call.get("transcript")
    if not (isinstance(transcript, str) and transcript.strip()):
        artifact = call.get("artifact")
        transcript = artifact.get("transcript") if isinstance(artifact, dict) else None
    if isinstance(transcript, str) and transcript.strip():
        return transcript.strip()
    return None


def extract_transcript(call: dict[str, Any]) -> Optional[str]:
    return provider_transcript(call) or format_transcript(call) or None


def transcript_turns(call: dict[str, Any]) -> Optional[list[TranscriptTurn]]:
    turns = [
        TranscriptTurn(role=str(message.get("role")), content=str(message.get("message") or ""))
        for message in _messages(call)
        if message.get("role")
    ]
    return turns or None


def recording_url(call: dict[str, Any]) -> Optional[str]:
    url = call.get("recordingUrl")
    if not url:
        artifact = call.get("artifact")
        url = artifact.get("recordingUrl") if isinstance(artifact, dict) else None
    return url if isinstance(url, str) and url else None


def provider_summary(call: dict[str, Any]) -> tuple[Optional[str], Optional[dict[str, Any]]]:
    analysis = call.get("analysis")
    analysis = analysis if isinstance(analysis, dict) else {}
    summary = analysis.get("summary") or call.get("summary")
    structured = analysis.get("structuredData")
    return (
        summary if isinstance(summary, str) and summary.strip() else None,
        structured if isinstance(structured, dict) else None,
    )
