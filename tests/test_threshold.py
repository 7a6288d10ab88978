import pytest

from node_healer.core.exceptions import InvalidThreshold
from node_healer.models.fleet import AbsoluteThreshold, FleetConfig, PercentageThreshold, parse_healthy_threshold
from node_healer.services.threshold import gate_open, required_healthy


def cfg(value):
    return FleetConfig(healthy_threshold=parse_healthy_threshold(value))


# ----------------------------
# Documented examples
# ----------------------------

def test_half_of_five_rounds_up():
    assert required_healthy(cfg("50%"), 5) == 3

def test_absolute_above_fleet_size_tolerates_one_unhealthy():
    assert required_healthy(cfg(10), 5) == 4

def test_hundred_percent_tolerates_one_unhealthy():
    assert required_healthy(cfg("100%"), 5) == 4

def test_absolute_equal_to_fleet_size_falls_back():
    assert required_healthy(cfg(5), 5) == 4

def test_absolute_below_fleet_size_is_used_as_is():
    assert required_healthy(cfg(3), 5) == 3

def test_percentage_uses_exact_arithmetic():
    # 0.1 * 30 in binary floating point is 3.0000000000000004
    assert required_healthy(cfg("10%"), 30) == 3

def test_fractional_percentage():
    assert required_healthy(cfg("12.5%"), 8) == 1
    assert required_healthy(cfg("12.5%"), 9) == 2

def test_tiny_percentage_is_clamped_to_one():
    assert required_healthy(cfg("1%"), 5) == 1

def test_single_replica_fleet_requires_nothing():
    assert required_healthy(cfg(1), 1) == 0
    assert required_healthy(cfg("50%"), 1) == 0

def test_empty_fleet():
    assert required_healthy(cfg(3), 0) == 0
    assert required_healthy(cfg("50%"), 0) == 0


# ----------------------------
# Invalid thresholds
# ----------------------------

@pytest.mark.parametrize("value", [0, -1, "0%", "-5%", "101%", "nan%"])
def test_out_of_range_thresholds_are_rejected(value):
    with pytest.raises(InvalidThreshold):
        required_healthy(cfg(value), 5)

@pytest.mark.parametrize("value", ["abc%", "3", "", None, True, 2.5])
def test_unparseable_thresholds_are_rejected(value):
    with pytest.raises(InvalidThreshold):
        parse_healthy_threshold(value)

def test_validation_happens_even_for_empty_fleet():
    with pytest.raises(InvalidThreshold):
        required_healthy(FleetConfig(healthy_threshold=AbsoluteThreshold(count=0)), 0)


# ----------------------------
# Properties
# ----------------------------

@pytest.mark.parametrize("fleet_size", range(1, 13))
def test_percentage_is_monotonic_and_leaves_room_for_one(fleet_size):
    previous = 0
    for percent in range(1, 101):
        required = required_healthy(FleetConfig(healthy_threshold=PercentageThreshold(percent=percent)), fleet_size)
        assert previous <= required <= fleet_size - 1
        previous = required

@pytest.mark.parametrize("fleet_size", range(1, 13))
def test_absolute_is_monotonic_and_leaves_room_for_one(fleet_size):
    previous = 0
    for count in range(1, 20):
        required = required_healthy(FleetConfig(healthy_threshold=AbsoluteThreshold(count=count)), fleet_size)
        assert previous <= required <= fleet_size - 1
        previous = required

def test_gate():
    assert gate_open(3, 3)
    assert not gate_open(2, 3)
    assert gate_open(0, 0)

def test_threshold_rendering():
    assert str(parse_healthy_threshold("50%")) == "50%"
    assert str(parse_healthy_threshold(" 12.5% ")) == "12.5%"
    assert str(parse_healthy_threshold(3)) == "3"
