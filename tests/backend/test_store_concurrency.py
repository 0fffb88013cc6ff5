from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

from backend.app.models import OutboundCampaignStatus
from backend.app.store import InMemoryStore


def test_resolve_or_create_contact_is_atomic() -> None:
    store = InMemoryStore()
    campaign = store.add_campaign(name="Clinic")

    with ThreadPoolExecutor(max_workers=16) as executor:
        results = list(
            executor.map(
                lambda _: store.resolve_or_create_contact(campaign.id, "+14155550123"),
                range(200),
            )
        )

    assert len(store.contacts) == 1
    assert len({contact.id for contact, _ in results}) == 1
    assert sum(1 for _, created in results if created) == 1


def test_concurrent_fire_marks_converge_to_one_entry() -> None:
    store = InMemoryStore()
    campaign = store.add_campaign(name="Clinic")
    contact, _ = store.resolve_or_create_contact(campaign.id, "+14155550123")

    with ThreadPoolExecutor(max_workers=16) as executor:
        results = list(
            executor.map(
                lambda _: store.mark_contact_trigger_fired(contact.id, "trg_callback"),
                range(100),
            )
        )

    assert results.count(True) == 1
    assert store.fired_triggers(contact.id) == {"trg_callback"}


def test_campaign_counters_do_not_lose_increments() -> None:
    store = InMemoryStore()
    campaign = store.add_outbound_campaign(name="Winback")

    def record(index: int) -> None:
        store.increment_outbound_counters(
            campaign.id,
            called=1,
            answered=1 if index % 2 == 0 else 0,
            failed=1 if index % 5 == 0 else 0,
        )

    with ThreadPoolExecutor(max_workers=16) as executor:
        list(executor.map(record, range(300)))

    final = store.get_outbound_campaign(campaign.id)
    assert final.contacts_called == 300
    assert final.contacts_answered == 150
    assert final.contacts_failed == 60


def test_concurrent_claims_never_share_a_contact() -> None:
    store = InMemoryStore()
    campaign = store.add_outbound_campaign(
        name="Winback", status=OutboundCampaignStatus.running, max_concurrent_calls=25
    )
    for index in range(40):
        store.add_outbound_contact(campaign_id=campaign.id, phone_number=f"+1415555{index:04d}")

    with ThreadPoolExecutor(max_workers=8) as executor:
        batches = list(executor.map(lambda _: store.claim_due_contacts(campaign.id)[1], range(8)))

    claimed_ids = [contact.id for batch in batches for contact in batch]
    assert len(claimed_ids) == 25
    assert len(set(claimed_ids)) == 25


def test_webhook_key_lookups_tolerate_concurrent_inserts() -> None:
    store = InMemoryStore()
    inbound = store.add_campaign(name="Clinic")
    outbound = store.add_outbound_campaign(name="Winback")

    def add(index: int) -> None:
        store.add_campaign(name=f"Clinic {index}")
        store.add_outbound_campaign(name=f"Winback {index}")

    def look_up(_: int) -> tuple[str, str]:
        return (
            store.get_campaign_by_webhook_key(inbound.webhook_key).id,
            store.get_outbound_campaign_by_webhook_key(outbound.webhook_key).id,
        )

    with ThreadPoolExecutor(max_workers=16) as executor:
        inserts = [executor.submit(add, index) for index in range(200)]
        lookups = list(executor.map(look_up, range(400)))
        for future in inserts:
            future.result()

    assert set(lookups) == {(inbound.id, outbound.id)}
    assert len(store.campaigns) == 201
