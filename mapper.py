"""Maps cabin conditions pushed by the host to audio targets."""

import logging
import math
from dataclasses import dataclass, fields

from config import (
    DEFAULT_RADIO_FREQUENCY,
    DEFAULT_RADIO_VOLUME,
    RADIO_MAX_FREQUENCY,
    RADIO_MIN_FREQUENCY,
    REFERENCE_SPEED,
    WEATHER_RAIN_GAIN,
)

_LOGGER = logging.getLogger("cabin_audio.mapper")


@dataclass
class CabinState:
    """Inputs supplied by the host application."""

    audio_enabled: bool = True
    weather: str = "clear"  # clear/cloudy/rain/snow
    time_of_day: str = "night"  # day/night, no acoustic effect
    radio_on: bool = False
    radio_frequency: float = DEFAULT_RADIO_FREQUENCY  # MHz
    radio_volume: float = DEFAULT_RADIO_VOLUME  # 0.0 - 1.0
    speed: float = REFERENCE_SPEED


@dataclass
class EnvironmentTarget:
    """Bus gain targets the engine automates toward."""

    rain_gain: float = 0.0
    radio_master_gain: float = 0.0


def clamp(value: float, low: float, high: float) -> float:
    """Limit ``value`` to [low, high]."""
    return max(low, min(high, value))


def weather_to_rain_gain(weather: str) -> float:
    """Precipitation bus level for a weather state.

    Unknown states fall back to dry weather.
    """
    if weather not in WEATHER_RAIN_GAIN:
        _LOGGER.debug("Unknown weather %r, treating as clear", weather)
    return WEATHER_RAIN_GAIN.get(weather, 0.0)


def clamp_frequency(frequency: float) -> float:
    """Keep the dial inside the FM band."""
    if not math.isfinite(frequency):
        return DEFAULT_RADIO_FREQUENCY
    return clamp(frequency, RADIO_MIN_FREQUENCY, RADIO_MAX_FREQUENCY)


def clamp_volume(volume: float) -> float:
    """Keep a volume in [0, 1]; non-finite values mute."""
    if not math.isfinite(volume):
        return 0.0
    return clamp(volume, 0.0, 1.0)


def clamp_speed(speed: float) -> float:
    """Speed is never negative; non-finite values read as stopped."""
    if not math.isfinite(speed):
        return 0.0
    return max(0.0, speed)


def radio_master_gain(radio_on: bool, volume: float) -> float:
    """Radio master level: the volume when on, silence when off."""
    return clamp_volume(volume) if radio_on else 0.0


def sanitize_state(state: CabinState) -> CabinState:
    """Copy of ``state`` with every value clamped to its domain."""
    return CabinState(
        audio_enabled=bool(state.audio_enabled),
        weather=state.weather,
        time_of_day=state.time_of_day,
        radio_on=bool(state.radio_on),
        radio_frequency=clamp_frequency(state.radio_frequency),
        radio_volume=clamp_volume(state.radio_volume),
        speed=clamp_speed(state.speed),
    )


def map_environment(state: CabinState) -> EnvironmentTarget:
    """Combine cabin state into bus targets."""
    return EnvironmentTarget(
        rain_gain=weather_to_rain_gain(state.weather),
        radio_master_gain=radio_master_gain(state.radio_on, state.radio_volume),
    )


def changed_fields(old: CabinState, new: CabinState) -> list[str]:
    """Names of the fields that differ between two snapshots."""
    return [f.name for f in fields(CabinState) if getattr(old, f.name) != getattr(new, f.name)]
