"""Ephemeral voices and the arena that expires them.

Every voice is created with a hard expiry time. The arena keeps a min-heap
of expiry times and releases voices from the render side with ``sweep()``;
there are no per-voice cleanup callbacks.
"""

import heapq
import itertools
import logging
from dataclasses import dataclass, field
from typing import Iterable, Optional

from config import ENVELOPE_FLOOR, NOTE_ATTACK, VOICE_CAPACITY
from graph import BiquadFilter, BufferSource, Gain, Node, Oscillator, Param, RenderContext, ScheduledSource
from noise import NoiseBuffer

_LOGGER = logging.getLogger("cabin_audio.voices")


@dataclass
class Voice:
    """Source + optional filter + gain, alive until ``expires_at``."""

    nodes: list[Node]
    start_time: float
    expires_at: float
    kind: str = ""
    released: bool = False
    voice_id: int = field(default=-1, repr=False)

    @property
    def source(self) -> ScheduledSource:
        """Oscillator or buffer source at the head of the chain."""
        return self.nodes[0]

    @property
    def amp(self) -> Gain:
        """Envelope gain at the tail of the chain."""
        return self.nodes[-1]

    def release(self):
        """Disconnect every node of the voice. Safe to call twice."""
        if self.released:
            return
        for node in self.nodes:
            node.disconnect()
        self.released = True


class VoicePool:
    """Arena of live voices with bounded size."""

    def __init__(self, capacity: int = VOICE_CAPACITY):
        self.capacity = capacity
        self._heap: list[tuple[float, int, Voice]] = []
        self._live: dict[int, Voice] = {}
        self._ids = itertools.count()

    def __len__(self) -> int:
        return len(self._live)

    def __iter__(self):
        return iter(list(self._live.values()))

    def add(self, voice: Voice) -> Voice:
        """Register a voice, stealing the oldest one when the pool is full."""
        while len(self._live) >= self.capacity:
            oldest_id = next(iter(self._live))
            victim = self._live.pop(oldest_id)
            victim.release()
            _LOGGER.debug("Voice pool full, stole %s voice %d", victim.kind, oldest_id)

        voice.voice_id = next(self._ids)
        self._live[voice.voice_id] = voice
        heapq.heappush(self._heap, (voice.expires_at, voice.voice_id, voice))
        return voice

    def sweep(self, now: float) -> int:
        """Release every voice whose expiry time has passed."""
        released = 0
        while self._heap and self._heap[0][0] <= now:
            _, voice_id, voice = heapq.heappop(self._heap)
            if self._live.pop(voice_id, None) is not None:
                voice.release()
                released += 1
        return released

    def release_all(self):
        """Release every live voice, expired or not."""
        for voice in self._live.values():
            voice.release()
        self._live.clear()
        self._heap.clear()


def apply_envelope(param: Param, start: float, peak: float, attack: float,
                   duration: float, floor: float = ENVELOPE_FLOOR):
    """0 -> peak linearly over ``attack``, then exponentially toward ``floor``."""
    peak = max(0.0, peak)
    end = start + max(duration, attack)
    param.set_value_at_time(0.0, start)
    param.linear_ramp_to_value_at_time(peak, start + attack)
    if peak > floor:
        param.exponential_ramp_to_value_at_time(floor, end)
    else:
        param.linear_ramp_to_value_at_time(peak, end)


def _finish(context: RenderContext, pool: VoicePool, chain: list[Node],
            destinations: Iterable[Node], start: float, peak: float, attack: float,
            duration: float, floor: float, tail: float, kind: str) -> Voice:
    amp = Gain(context, 0.0, name=f"{kind}.amp")
    chain[-1].connect(amp)
    chain.append(amp)
    apply_envelope(amp.gain, start, peak, attack, duration, floor)
    for destination in destinations:
        amp.connect(destination)

    source = chain[0]
    source.start(start)
    source.stop(start + duration + tail)
    voice = Voice(chain, start, start + duration + tail, kind)
    return pool.add(voice)


def play_tone(context: RenderContext, pool: VoicePool, destinations: Iterable[Node],
              frequency: float, start: float, duration: float, peak: float,
              waveform: str = "sine", attack: float = NOTE_ATTACK, detune: float = 0.0,
              cutoff: Optional[float] = None, floor: float = ENVELOPE_FLOOR,
              tail: float = 0.1, kind: str = "tone") -> Voice:
    """Oscillator voice, optionally through a lowpass stage."""
    osc = Oscillator(context, waveform, frequency, detune, name=f"{kind}.osc")
    chain: list[Node] = [osc]
    if cutoff is not None:
        chain.append(osc.connect(BiquadFilter(context, "lowpass", cutoff, name=f"{kind}.filter")))
    return _finish(context, pool, chain, destinations, start, peak, attack, duration,
                   floor, tail, kind)


def play_noise(context: RenderContext, pool: VoicePool, destinations: Iterable[Node],
               buffer: NoiseBuffer, start: float, duration: float, peak: float,
               filter_type: str = "lowpass", cutoff: float = 1000.0, q: float = 0.7071,
               attack: float = 0.005, offset: int = 0, floor: float = ENVELOPE_FLOOR,
               tail: float = 0.05, kind: str = "noise") -> Voice:
    """Filtered burst read from a shared noise buffer."""
    src = BufferSource(context, buffer, loop=True, offset=offset, name=f"{kind}.src")
    filt = src.connect(BiquadFilter(context, filter_type, cutoff, q, name=f"{kind}.filter"))
    return _finish(context, pool, [src, filt], destinations, start, peak, attack, duration,
                   floor, tail, kind)
