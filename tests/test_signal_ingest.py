from datetime import timedelta

from atsight.services.signal_ingest import LatLon, SignalIngest


def test_heart_rate_plausibility_window(clock):
    ingest = SignalIngest("c1")
    now = clock.now()
    assert ingest.ingest_heart_rate(0, now, now) is None
    assert ingest.ingest_heart_rate(240, now, now) is None
    assert ingest.ingest_heart_rate(70, now - timedelta(seconds=15), now) is None

    sample = ingest.ingest_heart_rate(70, now - timedelta(seconds=14), now)
    assert sample is not None
    assert sample.bpm == 70.0
    assert ingest.snapshot(now).heart_rate_bpm == 70.0


def test_heart_rate_from_the_future_is_discarded(clock):
    ingest = SignalIngest("c1")
    now = clock.now()
    assert ingest.ingest_heart_rate(70, now + timedelta(days=1), now) is None
    assert ingest.ingest_heart_rate(70, now + timedelta(seconds=3), now) is None
    assert ingest.ingest_heart_rate(70, now + timedelta(seconds=2), now) is not None


def test_discarded_heart_rate_keeps_previous_snapshot(clock):
    ingest = SignalIngest("c1")
    now = clock.now()
    ingest.ingest_heart_rate(65, now, now)
    ingest.ingest_heart_rate(300, now, now)
    assert ingest.snapshot(now).heart_rate_bpm == 65.0


def test_motion_deviation_threshold(clock):
    ingest = SignalIngest("c1")
    now = clock.now()
    assert not ingest.ingest_motion(1.04, now)
    assert ingest.last_motion_at is None

    later = clock.advance(5)
    assert ingest.ingest_motion(1.2, later)
    assert ingest.last_motion_at == later
    assert abs(ingest.snapshot(later).motion_magnitude_deviation - 0.2) < 1e-9

    # Dropping the watch reads well below 1g, which is movement too
    assert ingest.ingest_motion(0.5, clock.advance(1))


def test_battery_bounds():
    ingest = SignalIngest("c1")
    assert ingest.ingest_battery(101) is None
    assert ingest.ingest_battery(-1) is None
    assert ingest.ingest_battery("abc") is None
    assert ingest.ingest_battery(42) == 42


def test_location_filters_zero_accuracy_and_out_of_range(clock):
    ingest = SignalIngest("c1")
    now = clock.now()
    assert ingest.ingest_location(32.0, 34.8, 0.0, now) is None
    assert ingest.ingest_location(91.0, 34.8, 5.0, now) is None
    assert ingest.ingest_location(32.0, 181.0, 5.0, now) is None

    fix = ingest.ingest_location(32.0, 34.8, 5.0, now)
    assert fix.point == LatLon(32.0, 34.8)
    assert ingest.snapshot(now).location == LatLon(32.0, 34.8)


def test_out_of_order_location_is_dropped(clock):
    ingest = SignalIngest("c1")
    later = clock.now() + timedelta(seconds=10)
    ingest.ingest_location(32.0, 34.8, 5.0, later)
    assert ingest.ingest_location(33.0, 34.8, 5.0, clock.now()) is None
    assert ingest.location.lat == 32.0
