from __future__ import annotations

import json
from datetime import timedelta

from twilio.base.exceptions import TwilioException

from backend.app.models import ExtractedData, PayloadAnalysis, SmsStatus, WebhookErrorType
from backend.app.services.classifier import ClassificationError
from backend.app.services.sms import OPT_OUT_FOOTER

CALLBACK_BODY = json.dumps(
    {
        "message": {
            "type": "end-of-call-report",
            "artifact": {"transcript": "User: please call me back"},
            "customer": {"number": "(415) 555-0123"},
        }
    }
).encode("utf-8")


def _callback_analysis() -> PayloadAnalysis:
    return PayloadAnalysis(
        source_platform="vapi",
        transcript="please call me back",
        extracted_data=ExtractedData(
            phone_number="(415) 555-0123",
            summary="Caller asked for a callback.",
        ),
    )


def _seed(store, *, sms_from_number: str = "+14155550000", **campaign_fields):
    campaign = store.add_campaign(
        name="Smile Dental", sms_from_number=sms_from_number, **campaign_fields
    )
    trigger = store.add_trigger(
        campaign_id=campaign.id,
        intent_description="wants callback",
        message="Thanks! We will call you back within the hour.",
    )
    return campaign, trigger


def test_callback_request_fires_trigger_once(client, store, fakes) -> None:
    campaign, trigger = _seed(store)
    fakes.classifier.analysis = _callback_analysis()
    fakes.evaluator.matches = [trigger.id]

    response = client.post(f"/webhook/{campaign.webhook_key}", content=CALLBACK_BODY)

    assert response.status_code == 200
    data = response.json()
    assert data["received"] is True
    assert data["source_type"] == "phone"
    assert data["source_platform"] == "vapi"
    assert "duplicate" not in data

    interaction = store.get_interaction(data["interaction_id"])
    assert interaction.phone_number == "+14155550123"
    assert interaction.sms_sent is True
    assert interaction.sms_trigger_ids == [trigger.id]
    assert store.fired_triggers(interaction.contact_id) == {trigger.id}

    assert fakes.gateway.sent == [
        {
            "body": trigger.message + OPT_OUT_FOOTER,
            "to": "+14155550123",
            "from": "+14155550000",
        }
    ]
    [sms_log] = store.list_sms_logs(contact_id=interaction.contact_id)
    assert sms_log.status == SmsStatus.sent
    assert sms_log.interaction_id == interaction.id


def test_redelivery_within_window_is_duplicate(client, store, fakes) -> None:
    campaign, trigger = _seed(store)
    fakes.classifier.analysis = _callback_analysis()
    fakes.evaluator.matches = [trigger.id]

    first = client.post(f"/webhook/{campaign.webhook_key}", content=CALLBACK_BODY)
    second = client.post(f"/webhook/{campaign.webhook_key}", content=CALLBACK_BODY)

    assert second.status_code == 200
    assert second.json() == {
        "received": True,
        "duplicate": True,
        "interaction_id": first.json()["interaction_id"],
    }
    assert len(store.interactions) == 1
    assert len(fakes.gateway.sent) == 1
    assert len(fakes.classifier.calls) == 1


def test_redelivery_after_window_never_refires_trigger(client, store, fakes) -> None:
    campaign, trigger = _seed(store)
    fakes.classifier.analysis = _callback_analysis()
    fakes.evaluator.matches = [trigger.id]

    first = client.post(f"/webhook/{campaign.webhook_key}", content=CALLBACK_BODY)
    interaction_id = first.json()["interaction_id"]
    old = store.interactions[interaction_id]
    store.interactions[interaction_id] = old.model_copy(
        update={"created_at_utc": old.created_at_utc - timedelta(minutes=10)}
    )

    second = client.post(f"/webhook/{campaign.webhook_key}", content=CALLBACK_BODY)

    assert second.status_code == 200
    assert second.json()["interaction_id"] != interaction_id
    assert len(store.interactions) == 2
    assert len(store.contacts) == 1
    assert len(fakes.gateway.sent) == 1
    # Nothing left to evaluate once the only trigger has fired.
    assert len(fakes.evaluator.calls) == 1


def test_contacts_are_shared_across_phone_formats(client, store, fakes) -> None:
    campaign, _ = _seed(store)
    fakes.classifier.analysis = _callback_analysis()
    client.post(f"/webhook/{campaign.webhook_key}", json={"n": 1})

    fakes.classifier.analysis = PayloadAnalysis(
        extracted_data=ExtractedData(phone_number="+1 415.555.0123")
    )
    client.post(f"/webhook/{campaign.webhook_key}", json={"n": 2})

    assert len(store.interactions) == 2
    assert len(store.contacts) == 1


def test_invalid_json_is_rejected_and_logged(client, store) -> None:
    campaign, _ = _seed(store)

    response = client.post(f"/webhook/{campaign.webhook_key}", content=b"{not json")

    assert response.status_code == 400
    assert response.json()["detail"] == "invalid json payload"
    [error] = store.list_webhook_errors()
    assert error.error_type == WebhookErrorType.invalid_json
    assert error.raw_body == "{not json"
    assert not store.interactions


def test_non_object_json_is_rejected(client, store) -> None:
    campaign, _ = _seed(store)

    response = client.post(f"/webhook/{campaign.webhook_key}", json=[1, 2, 3])

    assert response.status_code == 400


def test_unknown_campaign_returns_404(client) -> None:
    response = client.post("/webhook/does-not-exist", json={"hello": "world"})
    assert response.status_code == 404


def test_inactive_campaign_is_rejected(client, store, fakes) -> None:
    campaign, _ = _seed(store, is_active=False)

    response = client.post(f"/webhook/{campaign.webhook_key}", json={"hello": "world"})

    assert response.status_code == 400
    assert response.json()["detail"] == "campaign is not active"
    assert not fakes.classifier.calls


def test_classification_failure_still_records_interaction(client, store, fakes) -> None:
    campaign, _ = _seed(store)
    fakes.classifier.error = ClassificationError("classification service is not configured")

    response = client.post(f"/webhook/{campaign.webhook_key}", json={"Body": "hi"})

    assert response.status_code == 200
    data = response.json()
    interaction = store.get_interaction(data["interaction_id"])
    assert interaction.contact_id is None
    assert interaction.source_platform == "unknown"
    assert interaction.raw_payload == {"Body": "hi"}
    [error] = store.list_webhook_errors(campaign_id=campaign.id)
    assert error.error_type == WebhookErrorType.classification_error
    assert not fakes.evaluator.calls


def test_unparseable_phone_skips_contact(client, store, fakes) -> None:
    campaign, trigger = _seed(store)
    fakes.classifier.analysis = PayloadAnalysis(
        transcript="please call me back",
        extracted_data=ExtractedData(phone_number="call me maybe"),
    )
    fakes.evaluator.matches = [trigger.id]

    response = client.post(f"/webhook/{campaign.webhook_key}", json={"n": 1})

    assert response.status_code == 200
    interaction = store.get_interaction(response.json()["interaction_id"])
    assert interaction.contact_id is None
    assert interaction.phone_number is None
    assert not store.contacts
    assert not fakes.gateway.sent


def test_campaign_without_origin_number_sends_nothing(client, store, fakes) -> None:
    campaign, trigger = _seed(store, sms_from_number=None)
    fakes.classifier.analysis = _callback_analysis()
    fakes.evaluator.matches = [trigger.id]

    response = client.post(f"/webhook/{campaign.webhook_key}", content=CALLBACK_BODY)

    assert response.status_code == 200
    assert not fakes.evaluator.calls
    assert not fakes.gateway.sent
    contact_id = store.get_interaction(response.json()["interaction_id"]).contact_id
    assert store.fired_triggers(contact_id) == set()


def test_gateway_failure_still_marks_trigger_fired(client, store, fakes) -> None:
    campaign, trigger = _seed(store)
    fakes.classifier.analysis = _callback_analysis()
    fakes.evaluator.matches = [trigger.id]
    fakes.gateway.error = TwilioException("unreachable")

    response = client.post(f"/webhook/{campaign.webhook_key}", content=CALLBACK_BODY)

    assert response.status_code == 200
    interaction = store.get_interaction(response.json()["interaction_id"])
    assert interaction.sms_sent is False
    assert store.fired_triggers(interaction.contact_id) == {trigger.id}
    [sms_log] = store.list_sms_logs()
    assert sms_log.status == SmsStatus.failed
    assert sms_log.error_message == "unreachable"


def test_campaign_gateway_override_is_used(client, store, fakes) -> None:
    campaign, trigger = _seed(
        store,
        gateway_override=True,
        gateway_credentials={"account_sid": "ACcampaign", "auth_token": "campaign"},
    )
    fakes.classifier.analysis = _callback_analysis()
    fakes.evaluator.matches = [trigger.id]

    client.post(f"/webhook/{campaign.webhook_key}", content=CALLBACK_BODY)

    assert fakes.gateway.credentials == [("ACcampaign", "campaign")]


def test_unexpected_failure_acknowledges_with_processing_error(client, store, fakes) -> None:
    campaign, _ = _seed(store)
    fakes.classifier.analysis = _callback_analysis()
    fakes.evaluator.error = RuntimeError("evaluator crashed")

    response = client.post(f"/webhook/{campaign.webhook_key}", content=CALLBACK_BODY)

    assert response.status_code == 200
    data = response.json()
    assert data["processing_error"] is True
    interaction = store.get_interaction(data["interaction_id"])
    assert interaction.processing_error == "evaluator crashed"
    [error] = store.list_webhook_errors(campaign_id=campaign.id)
    assert error.error_type == WebhookErrorType.processing_error


def test_failure_before_pipeline_boundary_is_still_acknowledged(
    client, store, monkeypatch
) -> None:
    campaign, _ = _seed(store)

    def broken(**_kwargs):
        raise RuntimeError("store offline")

    monkeypatch.setattr(store, "find_recent_interaction", broken)

    response = client.post(f"/webhook/{campaign.webhook_key}", json={"n": 1})

    assert response.status_code == 200
    assert response.json() == {"received": True, "error": "Processing failed"}
    [error] = store.list_webhook_errors()
    assert error.error_type == WebhookErrorType.server_error


def test_verify_endpoint_reports_campaign(client, store) -> None:
    campaign, _ = _seed(store, is_active=False)

    response = client.get(f"/webhook/{campaign.webhook_key}")

    assert response.status_code == 200
    assert response.json() == {
        "valid": True,
        "campaign_name": "Smile Dental",
        "active": False,
        "type": None,
    }
    assert client.get("/webhook/nope").status_code == 404
