import math

import pytest

from mapper import (
    CabinState,
    changed_fields,
    clamp_frequency,
    clamp_speed,
    clamp_volume,
    map_environment,
    radio_master_gain,
    sanitize_state,
    weather_to_rain_gain,
)


@pytest.mark.parametrize("weather,gain", [
    ("clear", 0.0),
    ("cloudy", 0.0),
    ("rain", 0.35),
    ("snow", 0.05),
    ("hail", 0.0),
])
def test_weather_to_rain_gain(weather: str, gain: float) -> None:
    assert weather_to_rain_gain(weather) == gain


def test_frequency_is_kept_in_band() -> None:
    assert clamp_frequency(80.0) == 88.0
    assert clamp_frequency(120.0) == 108.0
    assert clamp_frequency(99.5) == 99.5
    assert clamp_frequency(math.nan) == 100.0


def test_volume_and_speed_clamps() -> None:
    assert clamp_volume(-0.5) == 0.0
    assert clamp_volume(1.5) == 1.0
    assert clamp_volume(math.inf) == 0.0
    assert clamp_speed(-3.0) == 0.0
    assert clamp_speed(40.0) == 40.0


def test_radio_master_gain() -> None:
    assert radio_master_gain(False, 0.8) == 0.0
    assert radio_master_gain(True, 0.8) == 0.8
    assert radio_master_gain(True, 2.0) == 1.0


def test_map_environment() -> None:
    target = map_environment(CabinState(weather="rain", radio_on=True, radio_volume=0.5))
    assert target.rain_gain == 0.35
    assert target.radio_master_gain == 0.5


def test_sanitize_state() -> None:
    state = sanitize_state(CabinState(radio_frequency=200.0, radio_volume=-1.0, speed=-5.0))
    assert state.radio_frequency == 108.0
    assert state.radio_volume == 0.0
    assert state.speed == 0.0


def test_changed_fields() -> None:
    old = CabinState()
    new = CabinState(weather="snow", radio_on=True)
    assert changed_fields(old, new) == ["weather", "radio_on"]
    assert changed_fields(old, CabinState()) == []
