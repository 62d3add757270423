from atsight.services.battery import BatteryMonitor, clamp_threshold


def test_threshold_is_clamped_to_slider_range():
    assert clamp_threshold(5) == 10
    assert clamp_threshold(80) == 50
    assert clamp_threshold(25) == 25


def test_fires_once_per_downward_crossing():
    monitor = BatteryMonitor("c1", threshold=20)
    readings = [50, 30, 20, 18, 15, 19, 21, 25, 19, 10]
    fired = [level for level in readings if monitor.update(level)]
    assert fired == [20, 19]


def test_first_reading_below_threshold_fires():
    monitor = BatteryMonitor("c1")
    assert monitor.update(12)
    assert not monitor.armed


def test_raising_threshold_above_level_does_not_rearm():
    monitor = BatteryMonitor("c1", threshold=20)
    assert monitor.update(15)
    monitor.set_threshold(30)
    assert not monitor.armed
    assert not monitor.update(15)


def test_lowering_threshold_below_level_rearms():
    monitor = BatteryMonitor("c1", threshold=30)
    assert monitor.update(25)
    monitor.set_threshold(20)
    assert monitor.armed
    assert not monitor.update(22)
    assert monitor.update(20)
