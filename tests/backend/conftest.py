from __future__ import annotations

from dataclasses import dataclass
from types import SimpleNamespace
from typing import Optional

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from backend.app.main import create_app
from backend.app.models import GatewayCredentials, PayloadAnalysis, TriggerCandidate
from backend.app.services.sms import SmsDispatcher
from backend.app.store import InMemoryStore


class FakeClassifier:
    def __init__(self) -> None:
        self.analysis = PayloadAnalysis()
        self.error: Optional[Exception] = None
        self.calls: list[dict] = []

    def analyze(self, payload: dict, extraction_hints: Optional[dict] = None) -> PayloadAnalysis:
        self.calls.append(payload)
        if self.error:
            raise self.error
        return self.analysis


class FakeEvaluator:
    def __init__(self) -> None:
        self.matches: list[str] = []
        self.error: Optional[Exception] = None
        self.calls: list[list[str]] = []

    def evaluate(
        self,
        transcript: Optional[str],
        summary: Optional[str],
        candidates: list[TriggerCandidate],
    ) -> list[str]:
        self.calls.append([candidate.id for candidate in candidates])
        if self.error:
            raise self.error
        return list(self.matches)


class FakeGateway:
    """Stands in for ``twilio.rest.Client``; ``factory`` is the client constructor."""

    def __init__(self) -> None:
        self.sent: list[dict[str, str]] = []
        self.credentials: list[tuple[str, str]] = []
        self.error: Optional[Exception] = None
        self.messages = self

    def factory(self, account_sid: str, auth_token: str) -> "FakeGateway":
        self.credentials.append((account_sid, auth_token))
        return self

    def create(self, *, body: str, to: str, from_: str) -> SimpleNamespace:
        if self.error:
            raise self.error
        self.sent.append({"body": body, "to": to, "from": from_})
        return SimpleNamespace(sid=f"SM{len(self.sent):032d}", status="queued")


@dataclass
class Fakes:
    classifier: FakeClassifier
    evaluator: FakeEvaluator
    gateway: FakeGateway


@pytest.fixture()
def app(monkeypatch: pytest.MonkeyPatch) -> FastAPI:
    monkeypatch.setenv("PERSISTENCE_ENABLED", "false")
    monkeypatch.setenv("AUTH_ENABLED", "false")
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    monkeypatch.delenv("TWILIO_ACCOUNT_SID", raising=False)
    monkeypatch.delenv("TWILIO_AUTH_TOKEN", raising=False)
    return create_app()


@pytest.fixture()
def fakes(app: FastAPI) -> Fakes:
    installed = Fakes(
        classifier=FakeClassifier(),
        evaluator=FakeEvaluator(),
        gateway=FakeGateway(),
    )
    app.state.classifier = installed.classifier
    app.state.trigger_evaluator = installed.evaluator
    app.state.sms_dispatcher = SmsDispatcher(
        store=app.state.store,
        default_credentials=GatewayCredentials(account_sid="ACplatform", auth_token="platform"),
        client_factory=installed.gateway.factory,
        metrics=app.state.metrics,
    )
    return installed


@pytest.fixture()
def client(app: FastAPI, fakes: Fakes) -> TestClient:
    return TestClient(app)


@pytest.fixture()
def store(app: FastAPI) -> InMemoryStore:
    return app.state.store
