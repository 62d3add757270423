import asyncio

import pytest
import pytest_asyncio
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from atsight.core.clock import to_epoch
from atsight.db.models import NotificationSettings, PairingStatusResponse
from atsight.services import monitor as monitor_module
from atsight.services.emergency import send_halt
from atsight.services.monitor import ChildMonitor, MonitorRegistry
from atsight.services.off_wrist import OffWristAction
from atsight.services.pairing import LinkStatus
from atsight.services.signal_ingest import LatLon
from atsight.services.tasks import collect_and_process_child_sensor_data_task, check_links_task
from atsight.services.zones import Zone, ZoneEventKind

HOME = LatLon(32.0853, 34.7818)


@pytest_asyncio.fixture
async def child(backend, manager, sink, clock):
    backend.link("g1", "c1", is_admin=True)
    backend.child_names["c1"] = "Sam"
    monitor = ChildMonitor("c1", backend, manager, sink, clock)
    await monitor.start()
    yield monitor
    await monitor.stop()


@pytest.mark.asyncio
async def test_start_loads_name_from_backend(child):
    assert child.running
    assert child.child_name == "Sam"
    assert child.status()["child_name"] == "Sam"


@pytest.mark.asyncio
async def test_unanswered_prompt_reports_removal_then_back_on(child, sink, clock):
    await child.on_heart_rate(72, clock.now())

    clock.advance(61)
    assert await child.evaluate_off_wrist() == OffWristAction.PROMPT
    assert sink.titles_for("c1") == ["Are you still wearing your watch?"]
    assert child.status()["prompt_pending"]

    clock.advance(15)
    assert await child.expire_prompt() == OffWristAction.WATCH_REMOVED
    assert sink.titles_for("g1") == ["Watch Removed"]

    clock.advance(30)
    await child.on_motion(1.4, clock.now())
    actions = []
    for _ in range(3):
        clock.advance(1)
        actions.append(await child.on_heart_rate(80, clock.now()))
    assert actions[-1] == OffWristAction.WATCH_BACK_ON
    assert sink.titles_for("g1") == ["Watch Removed", "Watch Back On"]
    assert not child.status()["is_likely_off_wrist"]


@pytest.mark.asyncio
async def test_redelivered_heart_rate_does_not_confirm_back_on(child, sink, clock):
    await child.on_heart_rate(72, clock.now())
    clock.advance(61)
    await child.evaluate_off_wrist()
    clock.advance(15)
    await child.expire_prompt()

    await child.on_motion(1.4, clock.now())
    sample_time = clock.advance(1)
    for _ in range(3):
        assert await child.on_heart_rate(80, sample_time) == OffWristAction.NONE
    assert child.status()["is_likely_off_wrist"]
    assert sink.titles_for("g1") == ["Watch Removed"]


@pytest.mark.asyncio
async def test_confirming_prompt_sends_nothing_to_guardians(child, sink, clock):
    await child.on_heart_rate(72, clock.now())
    clock.advance(61)
    await child.evaluate_off_wrist()

    clock.advance(5)
    assert await child.confirm_still_wearing()
    clock.advance(20)
    assert await child.expire_prompt() == OffWristAction.NONE
    assert sink.titles_for("g1") == []
    assert not await child.confirm_still_wearing()


@pytest.mark.asyncio
async def test_stale_generation_callbacks_are_ignored(child, clock):
    await child.on_battery(55)
    old_generation = child.generation

    await child.stop()
    await child.start()
    assert child.generation > old_generation
    assert child.status()["battery_percent"] is None

    assert not await child.on_battery(5, old_generation)
    assert await child.evaluate_off_wrist(old_generation) == OffWristAction.NONE
    assert child.status()["battery_percent"] is None


@pytest.mark.asyncio
async def test_stopped_monitor_ignores_readings(child, clock):
    await child.stop()
    assert not await child.on_motion(2.0, clock.now())
    assert await child.on_location(HOME.lat, HOME.lon, 5.0, clock.now()) == []


@pytest.mark.asyncio
async def test_battery_alert_uses_configured_threshold(backend, manager, sink, clock):
    backend.link("g1", "c1", is_admin=True)
    backend.settings["c1"] = NotificationSettings(low_battery_threshold=30)
    monitor = ChildMonitor("c1", backend, manager, sink, clock)
    await monitor.start()

    assert not await monitor.on_battery(35)
    assert await monitor.on_battery(29)
    assert not await monitor.on_battery(28)
    assert sink.titles_for("g1") == ["Low Battery Alert"]
    assert sink.alerts[0]["data"]["payload"]["threshold"] == 30
    await monitor.stop()


@pytest.mark.asyncio
async def test_danger_zone_entry_alerts_guardians(child, backend, sink, clock):
    backend.zones["c1"] = [Zone(id="road", center=HOME, radius_meters=50.0, name="Road", is_safe=False)]
    events = await child.on_location(HOME.lat, HOME.lon, 5.0, clock.now())
    assert [e.kind for e in events] == [ZoneEventKind.UNSAFE_ZONE_ENTRY]
    assert sink.titles_for("g1") == ["Alert! Child 'Sam' has entered the danger zone: 'Road'!"]


@pytest.mark.asyncio
async def test_zone_alerts_respect_notification_settings(child, backend, sink, clock):
    backend.settings["c1"] = NotificationSettings(unsafe_zone_alert=False)
    backend.zones["c1"] = [Zone(id="road", center=HOME, radius_meters=50.0, name="Road", is_safe=False)]
    events = await child.on_location(HOME.lat, HOME.lon, 5.0, clock.now())
    assert len(events) == 1
    assert sink.titles_for("g1") == []


@pytest.mark.asyncio
async def test_zone_outage_still_records_nothing(child, backend, sink, clock):
    backend.failing = {"get_zones"}
    assert await child.on_location(HOME.lat, HOME.lon, 5.0, clock.now()) == []
    assert sink.alerts == []


@pytest.mark.asyncio
async def test_halt_from_guardian_triggers_watch_alarm(child, backend, sink, clock):
    assert await child.poll_halt() == 0

    clock.advance(2)
    await send_halt(backend, "g1", "c1", clock=clock)
    assert await child.poll_halt() == 1
    assert child.halt.is_active
    assert not child.halt.can_dismiss
    assert ("c1", "failure") in sink.haptics
    assert not await child.halt.dismiss()


@pytest.mark.asyncio
async def test_pairing_screen_then_link_then_liveness_removal(backend, manager, sink, clock):
    monitor = ChildMonitor("c1", backend, manager, sink, clock)
    await monitor.start()
    assert monitor.child_name == "Your child"

    pin = await monitor.open_pairing_screen()
    assert backend.registered_pins[pin] == "c1"

    await backend.request_link(pin, "g1", "Dana", "Sam")
    await monitor.tick_pairing()
    assert monitor.pairing.status == LinkStatus.LINKED
    assert monitor.child_name == "Sam"
    assert monitor.status()["guardians"] == ["g1"]

    await backend.remove_link("g1", "c1")
    assert await monitor.check_links() == ["g1"]
    assert monitor.pairing.guardians == {}
    assert monitor.pairing.pin != pin
    assert backend.registered_pins[monitor.pairing.pin] == "c1"
    await monitor.stop()


@pytest.mark.asyncio
async def test_slow_pairing_poll_does_not_block_readings(child, backend, monkeypatch, clock):
    entered = asyncio.Event()
    release = asyncio.Event()
    original = backend.check_pairing_code

    async def slow_check(pin):
        entered.set()
        await release.wait()
        return await original(pin)

    monkeypatch.setattr(backend, "check_pairing_code", slow_check)
    tick = asyncio.create_task(child.tick_pairing())
    await entered.wait()

    await asyncio.wait_for(child.on_heart_rate(72, clock.now()), timeout=1)
    assert child.off_wrist_state.last_heart_rate_at == clock.now()

    release.set()
    await tick


@pytest.mark.asyncio
async def test_pairing_answer_for_a_replaced_pin_is_ignored(child, backend, monkeypatch):
    old_pin = await child.open_pairing_screen()
    backend.pairing_responses[old_pin] = PairingStatusResponse(status="linked", guardian_id="g9")
    entered = asyncio.Event()
    release = asyncio.Event()
    original = backend.check_pairing_code

    async def slow_check(pin):
        entered.set()
        await release.wait()
        return await original(pin)

    monkeypatch.setattr(backend, "check_pairing_code", slow_check)
    tick = asyncio.create_task(child.tick_pairing())
    await entered.wait()
    await child.open_pairing_screen()
    release.set()

    assert await tick is None
    assert child.pairing.status == LinkStatus.NONE
    assert child.pairing.guardians == {}


@pytest.mark.asyncio
async def test_slow_liveness_check_does_not_block_readings(child, backend, monkeypatch, clock):
    child.pairing.apply_status(PairingStatusResponse(status="linked", guardian_id="g1"), clock.now())
    entered = asyncio.Event()
    release = asyncio.Event()
    original = backend.check_link

    async def slow_check(guardian_id, child_id):
        entered.set()
        await release.wait()
        return await original(guardian_id, child_id)

    monkeypatch.setattr(backend, "check_link", slow_check)
    check = asyncio.create_task(child.check_links())
    await entered.wait()

    assert await asyncio.wait_for(child.on_motion(1.4, clock.now()), timeout=1)

    release.set()
    assert await check == []
    assert "g1" in child.pairing.guardians


@pytest.mark.asyncio
async def test_rejected_pairing_screen_closes_after_three_seconds(child, backend, clock):
    pin = await child.open_pairing_screen()
    backend.pairing_responses[pin] = PairingStatusResponse(status="rejected")
    assert await child.tick_pairing() == LinkStatus.REJECTED
    assert child.status()["pairing_dismissed"] is False

    clock.advance(2)
    await child.tick_pairing()
    assert child.status()["pairing_dismissed"] is False

    clock.advance(1)
    await child.tick_pairing()
    assert child.status()["pairing_dismissed"] is True
    assert child.pairing.dismiss_at is None

    await child.open_pairing_screen()
    assert child.status()["pairing_dismissed"] is False


@pytest.mark.asyncio
async def test_registry_reuses_monitor_and_manages_job(backend, manager, sink, clock):
    scheduler = AsyncIOScheduler()
    registry = MonitorRegistry(backend, manager, sink, clock)
    registry.attach_scheduler(scheduler)

    first = await registry.start("c1", "Sam")
    assert registry.active() == [first]
    assert scheduler.get_job("off_wrist:c1") is not None

    assert await registry.stop("c1")
    assert not await registry.stop("c1")
    assert scheduler.get_job("off_wrist:c1") is None
    assert registry.active() == []

    again = await registry.start("c1")
    assert again is first
    assert again.child_name == "Sam"
    await registry.stop_all()


class StaticSensors:
    def __init__(self, readings):
        self.readings = readings

    async def get_sensor_data(self, sensor_name, child_id):
        return self.readings.get(sensor_name)


@pytest.mark.asyncio
async def test_collection_task_feeds_active_monitors(monkeypatch, backend, manager, sink, clock):
    registry = MonitorRegistry(backend, manager, sink, clock)
    monkeypatch.setattr(monitor_module, "_registry", registry)
    backend.link("g1", "c1", is_admin=True)
    child = await registry.start("c1", "Sam")

    sensors = StaticSensors({
        "motion": {"magnitude": 1.3, "ts": to_epoch(clock.now())},
        "heart_rate": {"bpm": 75, "ts": to_epoch(clock.now())},
        "battery": {"level": 12},
    })
    summary = await collect_and_process_child_sensor_data_task(sensors)
    assert summary == {"success": 1, "failed": 0, "total": 1}
    assert child.ingest.last_motion_at == clock.now()
    assert sink.titles_for("g1") == ["Low Battery Alert"]
    await registry.stop_all()


@pytest.mark.asyncio
async def test_collection_task_without_monitors(monkeypatch, backend, manager, sink, clock):
    monkeypatch.setattr(monitor_module, "_registry", MonitorRegistry(backend, manager, sink, clock))
    summary = await collect_and_process_child_sensor_data_task(StaticSensors({}))
    assert summary["total"] == 0


@pytest.mark.asyncio
async def test_link_task_reports_only_children_with_removals(monkeypatch, backend, manager, sink, clock):
    registry = MonitorRegistry(backend, manager, sink, clock)
    monkeypatch.setattr(monitor_module, "_registry", registry)
    assert await check_links_task() is None

    child = await registry.start("c1")
    pin = await child.open_pairing_screen()
    await backend.request_link(pin, "g1", "Dana", "Sam")
    await child.tick_pairing()

    assert await check_links_task() == {}
    await backend.remove_link("g1", "c1")
    assert await check_links_task() == {"c1": ["g1"]}
    await registry.stop_all()
