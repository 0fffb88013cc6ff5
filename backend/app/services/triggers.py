from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

from openai import OpenAI

from backend.app.models import GatewayCredentials, TriggerCandidate, TriggerRecord
from backend.app.services.classifier import ClassificationError, complete_json
from backend.app.services.sms import DispatchError, SmsDispatcher

logger = logging.getLogger("followup_engine.triggers")

EVALUATION_SYSTEM_PROMPT = """You are an AI assistant that evaluates whether a conversation matches specific intent triggers.

Given a conversation transcript or summary, determine which triggers (if any) should fire. A trigger fires if the caller's intent clearly matches the trigger's intent description.

Be conservative - only return triggers where there's a clear match. If the intent is ambiguous, do not match. Multiple triggers can match if appropriate.

Return a JSON object with this structure:
{
  "matchedTriggerIds": ["id1", "id2"]
}

If no triggers match, return:
{
  "matchedTriggerIds": []
}"""


class TriggerEvaluator:
    def __init__(self, client: Optional[OpenAI], *, model: str = "gpt-4o-mini") -> None:
        self.client = client
        self.model = model

    def evaluate(
        self,
        transcript: Optional[str],
        summary: Optional[str],
        candidates: list[TriggerCandidate],
    ) -> list[str]:
        content = (transcript or "").strip() or (summary or "").strip()
        if not content or not candidates:
            return []

        ordered = sorted(candidates, key=lambda item: item.priority)
        descriptions = "\n".join(
            f'{index}. ID: {candidate.id} - Intent: "{candidate.intent_description}"'
            for index, candidate in enumerate(ordered, start=1)
        )
        raw = complete_json(
            self.client,
            model=self.model,
            system_prompt=EVALUATION_SYSTEM_PROMPT,
            user_prompt=(
                f"Conversation content:\n{content}\n\n"
                f"Available triggers:\n{descriptions}\n\n"
                "Which triggers should fire?"
            ),
            temperature=0.2,
            max_tokens=500,
        )
        matched = raw.get("matchedTriggerIds", [])
        if not isinstance(matched, list):
            raise ClassificationError("matchedTriggerIds must be a list")
        return [str(value) for value in matched if isinstance(value, (str, int))]


@dataclass
class FiringOutcome:
    matched: list[str] = field(default_factory=list)
    sent: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


def fire_matching_triggers(
    *,
    evaluator: TriggerEvaluator,
    dispatcher: SmsDispatcher,
    triggers: list[TriggerRecord],
    already_fired: set[str],
    transcript: Optional[str],
    summary: Optional[str],
    to_number: str,
    from_number: str,
    contact_id: str,
    mark_fired: Callable[[str], bool],
    on_sent: Optional[Callable[[str], object]] = None,
    interaction_id: Optional[str] = None,
    call_log_id: Optional[str] = None,
    credentials: Optional[GatewayCredentials] = None,
) -> FiringOutcome:
    """Evaluate the contact's not-yet-fired triggers and send one SMS per match.

    Each matched trigger is sent first and marked fired afterwards, whether or
    not the gateway accepted the message. A crash between the two can repeat a
    send on redelivery but never skips one.
    """
    outcome = FiringOutcome()
    eligible = {trigger.id: trigger for trigger in triggers if trigger.id not in already_fired}
    if not eligible:
        return outcome

    try:
        matched_ids = evaluator.evaluate(
            transcript,
            summary,
            [
                TriggerCandidate(
                    id=trigger.id,
                    intent_description=trigger.intent_description,
                    priority=trigger.priority,
                )
                for trigger in eligible.values()
            ],
        )
    except ClassificationError as exc:
        logger.warning("trigger_evaluation_failed contact_id=%s error=%s", contact_id, exc)
        return outcome

    for trigger_id in matched_ids:
        trigger = eligible.get(trigger_id)
        if trigger is None or trigger_id in outcome.matched:
            continue
        outcome.matched.append(trigger_id)
        try:
            dispatcher.send(
                to_number=to_number,
                from_number=from_number,
                message=trigger.message,
                trigger_id=trigger_id,
                contact_id=contact_id,
                interaction_id=interaction_id,
                call_log_id=call_log_id,
                credentials=credentials,
            )
        except DispatchError:
            outcome.failed.append(trigger_id)
        else:
            outcome.sent.append(trigger_id)
            if on_sent:
                on_sent(trigger_id)
        mark_fired(trigger_id)
    return outcome
