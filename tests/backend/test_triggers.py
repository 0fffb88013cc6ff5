from __future__ import annotations

import json
from types import SimpleNamespace

from twilio.base.exceptions import TwilioException

from backend.app.models import GatewayCredentials, SmsStatus, TriggerCandidate
from backend.app.services.classifier import ClassificationError
from backend.app.services.sms import SmsDispatcher
from backend.app.services.triggers import TriggerEvaluator, fire_matching_triggers
from backend.app.store import InMemoryStore


class ScriptedCompletions:
    def __init__(self, reply: dict) -> None:
        self.reply = reply
        self.requests: list[dict] = []

    def create(self, **kwargs):
        self.requests.append(kwargs)
        message = SimpleNamespace(content=json.dumps(self.reply))
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


class StubEvaluator:
    def __init__(self, matches=None, error=None) -> None:
        self.matches = matches or []
        self.error = error
        self.candidates: list[str] = []

    def evaluate(self, transcript, summary, candidates):
        self.candidates = [candidate.id for candidate in candidates]
        if self.error:
            raise self.error
        return self.matches


class StubGateway:
    def __init__(self, fail_for: str = "") -> None:
        self.fail_for = fail_for
        self.bodies: list[str] = []
        self.messages = self

    def create(self, *, body, to, from_):
        if self.fail_for and self.fail_for in body:
            raise TwilioException("carrier rejected message")
        self.bodies.append(body)
        return SimpleNamespace(sid=f"SM{len(self.bodies)}", status="queued")


def test_evaluator_lists_candidates_by_priority() -> None:
    completions = ScriptedCompletions({"matchedTriggerIds": ["trg_b", 7]})
    evaluator = TriggerEvaluator(SimpleNamespace(chat=SimpleNamespace(completions=completions)))

    matched = evaluator.evaluate(
        "please call me back",
        None,
        [
            TriggerCandidate(id="trg_a", intent_description="wants pricing", priority=5),
            TriggerCandidate(id="trg_b", intent_description="wants callback", priority=1),
        ],
    )

    assert matched == ["trg_b", "7"]
    prompt = completions.requests[0]["messages"][1]["content"]
    assert prompt.index("trg_b") < prompt.index("trg_a")
    assert "please call me back" in prompt


def test_evaluator_skips_service_without_text_or_candidates() -> None:
    evaluator = TriggerEvaluator(None)
    candidate = TriggerCandidate(id="trg_a", intent_description="wants pricing")

    assert evaluator.evaluate("  ", None, [candidate]) == []
    assert evaluator.evaluate("hello", None, []) == []


def _setup():
    store = InMemoryStore()
    campaign = store.add_campaign(name="Clinic", sms_from_number="+14155550000")
    contact, _ = store.resolve_or_create_contact(campaign.id, "+14155550123")
    callback = store.add_trigger(
        campaign_id=campaign.id, intent_description="wants callback", message="callback soon"
    )
    pricing = store.add_trigger(
        campaign_id=campaign.id,
        intent_description="wants pricing",
        message="pricing attached",
        priority=1,
    )
    return store, contact, callback, pricing


def _fire(store, contact, evaluator, gateway, triggers):
    dispatcher = SmsDispatcher(
        store=store,
        default_credentials=GatewayCredentials(account_sid="AC1", auth_token="t"),
        client_factory=lambda sid, token: gateway,
    )
    return fire_matching_triggers(
        evaluator=evaluator,
        dispatcher=dispatcher,
        triggers=triggers,
        already_fired=store.fired_triggers(contact.id),
        transcript="call me back and send prices",
        summary=None,
        to_number=contact.phone_number,
        from_number="+14155550000",
        contact_id=contact.id,
        mark_fired=lambda trigger_id: store.mark_contact_trigger_fired(contact.id, trigger_id),
    )


def test_already_fired_triggers_are_not_offered_again() -> None:
    store, contact, callback, pricing = _setup()
    store.mark_contact_trigger_fired(contact.id, callback.id)
    evaluator = StubEvaluator(matches=[callback.id, pricing.id])
    gateway = StubGateway()

    outcome = _fire(store, contact, evaluator, gateway, [callback, pricing])

    assert evaluator.candidates == [pricing.id]
    assert outcome.matched == [pricing.id]
    assert gateway.bodies == ["pricing attached\nReply STOP to opt out"]


def test_unknown_and_repeated_ids_are_ignored() -> None:
    store, contact, callback, pricing = _setup()
    evaluator = StubEvaluator(matches=["trg_bogus", callback.id, callback.id])
    gateway = StubGateway()

    outcome = _fire(store, contact, evaluator, gateway, [callback, pricing])

    assert outcome.matched == [callback.id]
    assert len(gateway.bodies) == 1
    assert store.fired_triggers(contact.id) == {callback.id}


def test_failed_send_is_still_marked_fired() -> None:
    store, contact, callback, pricing = _setup()
    evaluator = StubEvaluator(matches=[callback.id, pricing.id])
    gateway = StubGateway(fail_for="callback soon")

    outcome = _fire(store, contact, evaluator, gateway, [callback, pricing])

    assert outcome.failed == [callback.id]
    assert outcome.sent == [pricing.id]
    assert store.fired_triggers(contact.id) == {callback.id, pricing.id}
    statuses = {log.trigger_id: log.status for log in store.list_sms_logs()}
    assert statuses == {callback.id: SmsStatus.failed, pricing.id: SmsStatus.sent}


def test_evaluation_failure_fires_nothing() -> None:
    store, contact, callback, pricing = _setup()
    evaluator = StubEvaluator(error=ClassificationError("timeout"))
    gateway = StubGateway()

    outcome = _fire(store, contact, evaluator, gateway, [callback, pricing])

    assert outcome.matched == []
    assert store.fired_triggers(contact.id) == set()
    assert not store.list_sms_logs()
