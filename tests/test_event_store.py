from datetime import timedelta

import pytest

from atsight.core.clock import to_epoch
from atsight.db.models import NotificationSettings
from atsight.services.alert_events import Alert, AlertKind, build_payload
from atsight.services.event_store import EventStore
from atsight.services.signal_ingest import LatLon
from atsight.services.zones import Zone


@pytest.fixture
def store(database):
    return EventStore()


def alert(kind, ts, alert_id, child_id="c1", guardian_id="g1", **fields):
    return Alert(
        id=alert_id,
        kind=kind,
        child_id=child_id,
        guardian_id=guardian_id,
        timestamp=ts,
        payload=build_payload(kind, child_name="Sam", **fields),
    )


@pytest.mark.asyncio
async def test_zones_keep_their_order_and_are_replaced(store):
    zones = [
        Zone(id="z2", center=LatLon(1.0, 2.0), radius_meters=50.0, name="School", is_safe=True),
        Zone(id="z1", center=LatLon(1.5, 2.5), radius_meters=20.0, name="Road", is_safe=False),
    ]
    assert await store.replace_zones("c1", zones)
    assert [z.name for z in await store.get_zones("c1")] == ["School", "Road"]

    assert await store.replace_zones("c1", zones[1:])
    stored = await store.get_zones("c1")
    assert [z.id for z in stored] == ["z1"]
    assert stored[0].is_safe is False
    assert await store.get_zones("other") == []


@pytest.mark.asyncio
async def test_settings_default_then_upsert(store):
    assert await store.get_notification_settings("c1") == NotificationSettings()

    prefs = NotificationSettings(low_battery_alert=False, sound="chime_sound", low_battery_threshold=35)
    assert await store.save_notification_settings("c1", prefs)
    assert await store.get_notification_settings("c1") == prefs

    prefs = prefs.model_copy(update={"low_battery_alert": True})
    await store.save_notification_settings("c1", prefs)
    assert (await store.get_notification_settings("c1")).low_battery_alert


@pytest.mark.asyncio
async def test_child_name_upsert(store):
    assert await store.get_child_name("c1") is None
    await store.set_child_name("c1", "Sam")
    await store.set_child_name("c1", "Samuel")
    assert await store.get_child_name("c1") == "Samuel"


@pytest.mark.asyncio
async def test_fetch_alerts_filters_since_and_kind(store, clock):
    t0 = clock.now()
    await store.post_alert(alert(AlertKind.SOS, t0, "a1"))
    await store.post_alert(alert(AlertKind.HALT, t0 + timedelta(seconds=5), "a2"))
    await store.post_alert(alert(AlertKind.SOS, t0 + timedelta(seconds=10), "a3", guardian_id="g2"))

    docs = await store.fetch_alerts(since=t0)
    assert [d["id"] for d in docs] == ["a2", "a3"]

    docs = await store.fetch_alerts(kinds=["sos"], guardian_id="g1")
    assert [d["id"] for d in docs] == ["a1"]
    assert docs[0]["ts"] == to_epoch(t0)
    assert docs[0]["payload"]["child_name"] == "Sam"

    docs = await store.fetch_alerts(child_id="c1", kinds=["sos", "halt"])
    assert len(docs) == 3


@pytest.mark.asyncio
async def test_history_is_newest_first_and_paged(store, clock):
    for i in range(5):
        await store.post_alert(alert(AlertKind.BATTERY_LOW, clock.advance(1), f"b{i}", battery_level=10 + i))

    page = await store.list_alerts("g1", limit=2)
    assert [a.id for a in page] == ["b4", "b3"]
    page = await store.list_alerts("g1", limit=2, offset=4)
    assert [a.id for a in page] == ["b0"]
    assert await store.list_alerts("g1", limit=5, child_id="other") == []
    assert await store.count_alerts("g1") == 5
    assert await store.count_alerts("g1", child_id="other") == 0


@pytest.mark.asyncio
async def test_mark_processed_is_scoped_to_guardian(store, clock):
    await store.post_alert(alert(AlertKind.SOS, clock.now(), "a1"))
    assert not await store.mark_alert_processed("a1", "g2")
    assert await store.mark_alert_processed("a1", "g1")
    docs = await store.fetch_alerts()
    assert docs[0]["processed"] is True


@pytest.mark.asyncio
async def test_watermark_never_moves_backwards(store, clock):
    assert await store.get_watermark("g1") is None
    later = clock.now() + timedelta(minutes=5)
    await store.update_watermark("g1", later)
    await store.update_watermark("g1", clock.now())
    assert await store.get_watermark("g1") == later


@pytest.mark.asyncio
async def test_duplicate_alert_id_is_not_stored_twice(store, clock):
    assert await store.post_alert(alert(AlertKind.SOS, clock.now(), "a1"))
    assert not await store.post_alert(alert(AlertKind.SOS, clock.now(), "a1"))


@pytest.mark.asyncio
async def test_links_and_check_link(store):
    assert not await store.check_link("g1", "c1")
    await store.register_pairing_code("123456", "c1")
    await store.request_link("123456", "g1", "Dana", child_name="Sam")
    assert await store.check_link("g1", "c1")
    assert await store.get_child_name("c1") == "Sam"
    assert await store.remove_link("g1", "c1")
    assert not await store.check_link("g1", "c1")
