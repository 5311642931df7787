"""Wheel clack: paired noise hits whose cadence and loudness follow speed."""

import logging
import random
from contextlib import nullcontext
from dataclasses import dataclass
from typing import Callable, Optional

from config import (
    CLACK_BASE_DELAY,
    CLACK_CUTOFF,
    CLACK_DURATION,
    CLACK_JITTER,
    CLACK_MAX_LOUDNESS,
    CLACK_MIN_DELAY,
    CLACK_PAIR_OFFSET,
    CLACK_SLOW_POLL,
    CLACK_STOPPED_RATIO,
    CLACK_VOLUMES,
    REFERENCE_SPEED,
)
from graph import Node, RenderContext
from noise import NoiseBuffer
from scheduler import RepeatingTask, Scheduler, TimerHandle
from voices import VoicePool, play_noise

_LOGGER = logging.getLogger("cabin_audio.rhythm")

CLACK_ATTACK = 0.01
CLACK_FLOOR = 0.01
CLACK_TAIL = 0.05  # source runs until +0.15 s


@dataclass
class ClackState:
    """Persistent state of the clack loop."""
    last_fire_time: Optional[float] = None
    task: Optional[RepeatingTask] = None

    @property
    def pending_handle(self) -> Optional[TimerHandle]:
        """Timer of the next scheduled firing, if any."""
        return self.task.handle if self.task is not None else None


def speed_ratio(speed: float, reference: float = REFERENCE_SPEED) -> float:
    """Current speed relative to the reference cruise speed."""
    return max(0.0, speed) / reference


def pair_offset(ratio: float) -> float:
    """Gap between the two hits of a pair."""
    return CLACK_PAIR_OFFSET / ratio


def hit_loudness(ratio: float) -> float:
    """Gain multiplier for a hit pair, capped above cruise speed."""
    return min(ratio, CLACK_MAX_LOUDNESS)


def next_clack_delay(ratio: float, rng: random.Random) -> float:
    """Seconds until the next firing; a slow poll while essentially stopped."""
    if ratio < CLACK_STOPPED_RATIO:
        return CLACK_SLOW_POLL
    delay = CLACK_BASE_DELAY / ratio + rng.uniform(-CLACK_JITTER, CLACK_JITTER)
    return max(CLACK_MIN_DELAY, delay)


class ClackGenerator:
    """Self-rescheduling clack loop. Speed is read fresh at every firing."""

    def __init__(self, context: RenderContext, voices: VoicePool, noise: NoiseBuffer,
                 destination: Node, speed: Callable[[], float],
                 rng: Optional[random.Random] = None):
        self.context = context
        self.voices = voices
        self.noise = noise
        self.destination = destination
        self.speed = speed
        self.rng = rng or random.Random()
        self.state = ClackState()
        self._lock = None

    @property
    def ratio(self) -> float:
        """Speed ratio read fresh from the host state."""
        return speed_ratio(self.speed())

    def compute_next_delay(self) -> float:
        return next_clack_delay(self.ratio, self.rng)

    def start(self, scheduler: Scheduler, lock=None) -> RepeatingTask:
        """Fire immediately, then keep rescheduling on ``scheduler``."""
        self._lock = lock
        self.state.task = RepeatingTask(scheduler, self._fire_locked, self.compute_next_delay,
                                        name="clack")
        self.state.task.start(0.0)
        return self.state.task

    def stop(self):
        """Cancel the pending firing."""
        if self.state.task is not None:
            self.state.task.cancel()
            self.state.task = None

    def _fire_locked(self):
        with self._lock or nullcontext():
            self.fire()

    def fire(self) -> list[float]:
        """Emit one hit pair. Returns the hit start times (empty when nothing fired)."""
        ratio = self.ratio
        if ratio < CLACK_STOPPED_RATIO or not self.context.is_running:
            return []

        now = self.context.current_time
        loudness = hit_loudness(ratio)
        times = [now, now + pair_offset(ratio)]
        for when, volume in zip(times, CLACK_VOLUMES):
            play_noise(self.context, self.voices, [self.destination], self.noise, when,
                       CLACK_DURATION, volume * loudness, filter_type="lowpass",
                       cutoff=CLACK_CUTOFF, attack=CLACK_ATTACK,
                       offset=self.rng.randrange(len(self.noise)), floor=CLACK_FLOOR,
                       tail=CLACK_TAIL, kind="clack")
        self.state.last_fire_time = now
        return times
