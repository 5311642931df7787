"""Radio tuning model: dial frequency -> static/program mix and filter drift."""

import logging
import random
from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np

from config import (
    CAPTURE_BANDWIDTH,
    DRIFT_HZ_PER_MHZ,
    DROPOUT_CHANCE,
    DROPOUT_THRESHOLD,
    RADIO_FILTER_CENTER,
    RADIO_FILTER_RANGE,
    SAMPLE_RATE,
    STATIC_FLOOR,
    STATIC_RANGE,
    STATIONS,
)
from noise import NoiseBuffer

_LOGGER = logging.getLogger("cabin_audio.radio")

BUZZER_FREQUENCY = 90.0
BUZZER_ON = 0.8  # seconds of buzz per cycle
BUZZER_PERIOD = 2.0
BUZZER_FADE = 0.015


@dataclass(frozen=True)
class Station:
    """A fixed transmitter on the dial."""
    name: str
    kind: str  # music, buzzer
    frequency: float  # MHz
    capture_bandwidth: float = CAPTURE_BANDWIDTH


STATION_TABLE = tuple(Station(name, kind, frequency) for name, kind, frequency in STATIONS)


@dataclass(frozen=True)
class TuningResult:
    """Derived receiver state for one dial position."""

    signal_quality: float
    static_volume: float
    music_volume: float
    filter_drift_hz: float
    station: Optional[Station] = None
    distance: float = 0.0

    @property
    def filter_center(self) -> float:
        """Bandpass center with drift applied, kept inside the speaker's range."""
        low, high = RADIO_FILTER_RANGE
        return max(low, min(high, RADIO_FILTER_CENTER + self.filter_drift_hz))

    def program_volume(self, kind: str) -> float:
        """Received level of the program of the given station kind."""
        if self.station is not None and self.station.kind == kind:
            return self.music_volume
        return 0.0


def nearest_station(frequency: float, stations: Sequence[Station] = STATION_TABLE) -> tuple[Station, float]:
    """Closest station to ``frequency`` and its distance in MHz."""
    station = min(stations, key=lambda s: abs(frequency - s.frequency))
    return station, abs(frequency - station.frequency)


def compute_tuning(frequency: float, rng: Optional[random.Random] = None,
                   stations: Sequence[Station] = STATION_TABLE,
                   dropout_chance: float = DROPOUT_CHANCE) -> TuningResult:
    """Recompute signal quality for ``frequency`` (MHz).

    Weak signals (quality below the dropout threshold) are halved with
    ``dropout_chance`` to mimic sporadic fading. The drift sign is random
    on every call.
    """
    if rng is None:
        rng = random.Random()
    station, distance = nearest_station(frequency, stations)

    if distance >= station.capture_bandwidth:
        quality = 0.0
    else:
        quality = max(0.0, min(1.0, 1.0 - distance / station.capture_bandwidth))
        if quality < DROPOUT_THRESHOLD and rng.random() < dropout_chance:
            quality *= 0.5

    sign = 1.0 if rng.random() < 0.5 else -1.0
    result = TuningResult(
        signal_quality=quality,
        static_volume=(1.0 - quality) * STATIC_RANGE + STATIC_FLOOR,
        music_volume=quality,
        filter_drift_hz=sign * distance * DRIFT_HZ_PER_MHZ,
        station=station,
        distance=distance,
    )
    _LOGGER.debug("Tuned %.2f MHz: %s d=%.2f q=%.2f", frequency, station.name, distance, quality)
    return result


def generate_buzzer_buffer(sample_rate: int = SAMPLE_RATE) -> NoiseBuffer:
    """One gated buzz cycle for the buzzer station, looped by its source."""
    count = int(BUZZER_PERIOD * sample_rate)
    t = np.arange(count) / sample_rate
    tone = np.tanh(3.0 * np.sin(2.0 * np.pi * BUZZER_FREQUENCY * t)) * 0.6

    gate = np.zeros(count)
    on = int(BUZZER_ON * sample_rate)
    fade = max(1, int(BUZZER_FADE * sample_rate))
    gate[:on] = 1.0
    gate[:fade] = np.linspace(0.0, 1.0, fade)
    gate[on - fade:on] = np.linspace(1.0, 0.0, fade)
    return NoiseBuffer(kind="buzzer", samples=tone * gate, sample_rate=sample_rate)
