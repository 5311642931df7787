"""Generative music composer - the program playing on the radio's music station."""

import logging
import random
from contextlib import nullcontext
from dataclasses import dataclass
from typing import Callable, Optional

from config import (
    BASS_CUTOFF,
    BASS_VOLUME,
    CHORD_PROGRESSION,
    DETUNE_CENTS,
    HAT_VOLUME,
    KICK_VOLUME,
    MELODY_CHANCE,
    MELODY_SCALE,
    MELODY_VOLUME,
    NOTE_ATTACK,
    SNARE_VOLUME,
    STEP_DURATION,
    STEPS_PER_BAR,
)
from graph import Node, RenderContext
from noise import NoiseBuffer
from scheduler import RepeatingTask, Scheduler
from voices import Voice, VoicePool, play_noise, play_tone

_LOGGER = logging.getLogger("cabin_audio.composer")

KICK_START_FREQ = 150.0
KICK_END_FREQ = 0.01
KICK_DURATION = 0.5
SNARE_DURATION = 0.1
SNARE_CUTOFF = 1000.0
HAT_DURATION = 0.02
HAT_CUTOFF = 7000.0


@dataclass
class NoteEvent:
    """A single note or hit to be played."""
    kind: str  # bass, melody, kick, snare, hat
    frequency: float = 0.0
    duration: float = 0.0  # seconds
    velocity: float = 0.0  # peak gain
    detune: float = 0.0  # cents
    step: int = 0
    bar: int = 0


@dataclass
class SequencerState:
    """Position in the 16-step pattern."""
    step: int = 0
    bar: int = 0


class Sequencer:
    """16-step pattern clock. Its step/bar position is the only mutable state."""

    def __init__(self, rng: Optional[random.Random] = None, step_duration: float = STEP_DURATION):
        self.rng = rng or random.Random()
        self.step_duration = step_duration
        self.state = SequencerState()

    @property
    def step(self) -> int:
        """Current step within the bar."""
        return self.state.step

    @property
    def bar(self) -> int:
        """Number of completed bars."""
        return self.state.bar

    @property
    def chord(self) -> tuple:
        """Current (name, bass root) from the progression."""
        return CHORD_PROGRESSION[self.state.bar % len(CHORD_PROGRESSION)]

    def _detune(self) -> float:
        return self.rng.uniform(-DETUNE_CENTS, DETUNE_CENTS)

    def tick(self) -> list[NoteEvent]:
        """Emit this step's events and advance."""
        step, bar = self.state.step, self.state.bar
        events = []

        # Bass: one note per half bar, held for 8 steps
        if step % 8 == 0:
            _, root = self.chord
            events.append(NoteEvent("bass", root, self.step_duration * 8, BASS_VOLUME,
                                    self._detune(), step, bar))

        if self.rng.random() < MELODY_CHANCE:
            frequency = self.rng.choice(MELODY_SCALE)
            if self.rng.random() < 0.3:
                frequency *= 2
            duration = self.step_duration * self.rng.uniform(0.5, 1.5)
            events.append(NoteEvent("melody", frequency, duration, MELODY_VOLUME,
                                    self._detune(), step, bar))

        if step % 4 == 0:
            events.append(NoteEvent("kick", KICK_START_FREQ, KICK_DURATION, KICK_VOLUME, 0.0, step, bar))
        elif step % 4 == 2:
            events.append(NoteEvent("snare", 0.0, SNARE_DURATION, SNARE_VOLUME, 0.0, step, bar))

        if step % 2 == 0:
            events.append(NoteEvent("hat", 0.0, HAT_DURATION, HAT_VOLUME, 0.0, step, bar))

        self.advance()
        return events

    def advance(self):
        """Move to the next step, wrapping into a new bar."""
        self.state.step += 1
        if self.state.step >= STEPS_PER_BAR:
            self.state.step = 0
            self.state.bar += 1


class Composer:
    """Turns sequencer ticks into voices on the music chain.

    Bass goes dry only, melody goes dry and to the reverb send, percussion
    goes dry. ``dry`` is normally the glue compressor.
    """

    def __init__(self, context: RenderContext, voices: VoicePool, dry: Node, reverb_send: Node,
                 noise: NoiseBuffer, rng: Optional[random.Random] = None,
                 audible: Callable[[], bool] = lambda: True):
        self.context = context
        self.voices = voices
        self.dry = dry
        self.reverb_send = reverb_send
        self.noise = noise
        self.rng = rng or random.Random()
        self.audible = audible
        self.sequencer = Sequencer(self.rng)
        self.task: Optional[RepeatingTask] = None
        self._lock = None

    def start(self, scheduler: Scheduler, lock=None) -> RepeatingTask:
        """Tick at a fixed period on ``scheduler``, holding ``lock`` while firing."""
        self._lock = lock
        self.task = RepeatingTask(scheduler, self._tick_locked,
                                  lambda: self.sequencer.step_duration, name="sequencer",
                                  fixed_rate=True)
        self.task.start(0.0)
        return self.task

    def stop(self):
        """Cancel the sequencer tick."""
        if self.task is not None:
            self.task.cancel()
            self.task = None

    def _tick_locked(self):
        with self._lock or nullcontext():
            self.tick()

    def tick(self) -> list[NoteEvent]:
        """One sequencer step. A no-op while the render process is not running."""
        if not self.context.is_running:
            return []
        events = self.sequencer.tick()
        if not self.audible():
            return events

        when = self.context.current_time
        for event in events:
            self.play(event, when)
        return events

    def play(self, event: NoteEvent, when: float) -> Voice:
        """Create the voice for one event."""
        if event.kind == "bass":
            return play_tone(self.context, self.voices, [self.dry], event.frequency, when,
                             event.duration, event.velocity, waveform="sawtooth",
                             attack=NOTE_ATTACK, detune=event.detune, cutoff=BASS_CUTOFF,
                             kind="bass")
        if event.kind == "melody":
            return play_tone(self.context, self.voices, [self.dry, self.reverb_send],
                             event.frequency, when, event.duration, event.velocity,
                             waveform="triangle", attack=NOTE_ATTACK, detune=event.detune,
                             kind="melody")
        if event.kind == "kick":
            voice = play_tone(self.context, self.voices, [self.dry], event.frequency, when,
                              event.duration, event.velocity, waveform="sine", attack=0.005,
                              kind="kick")
            sweep = voice.source.frequency
            sweep.set_value_at_time(event.frequency, when)
            sweep.exponential_ramp_to_value_at_time(KICK_END_FREQ, when + event.duration)
            return voice
        if event.kind == "snare":
            return play_noise(self.context, self.voices, [self.dry], self.noise, when,
                              event.duration, event.velocity, filter_type="highpass",
                              cutoff=SNARE_CUTOFF, offset=self._offset(), kind="snare")
        if event.kind == "hat":
            return play_noise(self.context, self.voices, [self.dry], self.noise, when,
                              event.duration, event.velocity, filter_type="highpass",
                              cutoff=HAT_CUTOFF, attack=0.002, offset=self._offset(),
                              kind="hat")
        raise ValueError(f"Unknown note kind: {event.kind!r}")

    def _offset(self) -> int:
        return self.rng.randrange(len(self.noise))
