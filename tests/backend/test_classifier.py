from __future__ import annotations

import json
from types import SimpleNamespace

import pytest
from openai import OpenAIError

from backend.app.models import CallStatus, SourceType
from backend.app.services.classifier import (
    ClassificationError,
    PayloadClassifier,
    parse_analysis,
)


class FakeCompletions:
    def __init__(self, content=None, error=None) -> None:
        self.content = content
        self.error = error
        self.requests: list[dict] = []

    def create(self, **kwargs):
        self.requests.append(kwargs)
        if self.error:
            raise self.error
        message = SimpleNamespace(content=self.content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def _client(completions: FakeCompletions) -> SimpleNamespace:
    return SimpleNamespace(chat=SimpleNamespace(completions=completions))


def test_analyze_maps_classifier_reply() -> None:
    completions = FakeCompletions(
        json.dumps(
            {
                "sourceType": "sms",
                "sourcePlatform": "twilio",
                "extractedData": {
                    "callerName": "Dana",
                    "phoneNumber": "+14155550123",
                    "summary": "Asked for a callback.",
                    "customFields": {"preferredTime": "morning"},
                },
                "transcript": "please call me back",
                "transcriptFormatted": [{"role": "user", "content": "please call me back"}],
                "callStatus": "completed",
                "durationSeconds": 41.6,
            }
        )
    )
    classifier = PayloadClassifier(_client(completions), model="gpt-4o-mini")

    analysis = classifier.analyze({"From": "+14155550123", "Body": "please call me back"})

    assert analysis.source_type == SourceType.sms
    assert analysis.source_platform == "twilio"
    assert analysis.extracted_data.caller_name == "Dana"
    assert analysis.extracted_data.custom_fields == {"preferredTime": "morning"}
    assert analysis.transcript_formatted[0].role == "user"
    assert analysis.call_status == CallStatus.completed
    assert analysis.duration_seconds == 42
    request = completions.requests[0]
    assert request["model"] == "gpt-4o-mini"
    assert request["response_format"] == {"type": "json_object"}


def test_extraction_hints_extend_system_prompt() -> None:
    completions = FakeCompletions("{}")
    classifier = PayloadClassifier(_client(completions))

    classifier.analyze({"a": 1}, {"policyNumber": "look for POL- prefixed ids"})

    system_prompt = completions.requests[0]["messages"][0]["content"]
    assert "POL- prefixed ids" in system_prompt


def test_lenient_parsing_drops_unusable_values() -> None:
    analysis = parse_analysis(
        {
            "sourceType": "carrier-pigeon",
            "callStatus": "exploded",
            "extractedData": "not an object",
            "durationSeconds": "long",
            "transcript": "   ",
        }
    )

    assert analysis.source_type == SourceType.phone
    assert analysis.source_platform == "unknown"
    assert analysis.call_status is None
    assert analysis.duration_seconds is None
    assert analysis.transcript is None


@pytest.mark.parametrize(
    "completions",
    [
        FakeCompletions(error=OpenAIError("rate limited")),
        FakeCompletions(content=None),
        FakeCompletions(content="not json"),
        FakeCompletions(content="[1, 2]"),
    ],
)
def test_service_failures_raise_classification_error(completions: FakeCompletions) -> None:
    classifier = PayloadClassifier(_client(completions))

    with pytest.raises(ClassificationError):
        classifier.analyze({"a": 1})


def test_unconfigured_classifier_raises() -> None:
    with pytest.raises(ClassificationError):
        PayloadClassifier(None).analyze({"a": 1})
