"""Signal graph: automatable parameters, gain/filter/source nodes, render context.

Nodes are pulled once per render block (outputs are memoized per block so a
node feeding several destinations is only processed once). Every control
change goes through a Param automation event so the render side only ever
sees smooth curves.
"""

import bisect
import logging
import math
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Optional

import numpy as np
from numpy.typing import NDArray
from scipy.signal import lfilter

from config import CHANNELS, SAMPLE_RATE
from errors import EngineClosedError
from noise import NoiseBuffer

_LOGGER = logging.getLogger("cabin_audio.graph")

FloatArray = NDArray[np.float64]
TWO_PI = 2.0 * math.pi

_RAMPS = ("linear", "exponential")


# =============================================================================
# Automation
# =============================================================================


@dataclass
class AutomationEvent:
    """One scheduled change of a Param."""
    kind: str  # set, linear, exponential, target
    time: float
    value: float
    time_constant: float = 0.0


@dataclass
class Block:
    """One render quantum."""

    index: int
    start_frame: int
    frames: int
    sample_rate: int
    times: FloatArray = field(init=False, repr=False)

    def __post_init__(self):
        self.times = (self.start_frame + np.arange(self.frames)) / self.sample_rate

    @property
    def start_time(self) -> float:
        """Time of the first frame in seconds."""
        return self.start_frame / self.sample_rate


class Param:
    """A time-automated control value.

    Between events the param either holds a value or chases a target
    exponentially (``set_target_at_time``). Ramps end at their event time.
    """

    def __init__(self, value: float, min_value: float = -math.inf,
                 max_value: float = math.inf, name: str = ""):
        self.name = name
        self.min_value = min_value
        self.max_value = max_value
        self.value = self.clamp(value)
        self._events: list[AutomationEvent] = []
        self._hold_time = 0.0
        self._hold_value = self.value
        self._target: Optional[tuple[float, float]] = None  # (target, time constant)

    def clamp(self, value: float) -> float:
        """Limit ``value`` to the param's range."""
        return max(self.min_value, min(self.max_value, float(value)))

    @property
    def automating(self) -> bool:
        """True while events are queued or a target is being chased."""
        return bool(self._events) or self._target is not None

    def _insert(self, event: AutomationEvent):
        times = [e.time for e in self._events]
        self._events.insert(bisect.bisect_right(times, event.time), event)

    def set_value_at_time(self, value: float, when: float):
        """Jump to ``value`` at ``when``."""
        self._insert(AutomationEvent("set", when, self.clamp(value)))

    def linear_ramp_to_value_at_time(self, value: float, when: float):
        """Ramp linearly to ``value``, arriving at ``when``."""
        self._insert(AutomationEvent("linear", when, self.clamp(value)))

    def exponential_ramp_to_value_at_time(self, value: float, when: float):
        """Ramp geometrically to ``value``, arriving at ``when``."""
        self._insert(AutomationEvent("exponential", when, self.clamp(value)))

    def set_target_at_time(self, target: float, when: float, time_constant: float):
        """Chase ``target`` from ``when`` with the given time constant."""
        if time_constant <= 0:
            self.set_value_at_time(target, when)
            return
        self._insert(AutomationEvent("target", when, self.clamp(target), time_constant))

    def cancel_scheduled_values(self, when: float):
        """Drop events at or after ``when`` and stop chasing any target."""
        self._events = [e for e in self._events if e.time < when]
        if self._target is not None:
            self._settle(when)

    # --- curve evaluation -------------------------------------------------

    def _curve(self, times: FloatArray) -> FloatArray:
        if self._target is None:
            return np.full(len(times), self._hold_value)
        target, tau = self._target
        return target + (self._hold_value - target) * np.exp(-(times - self._hold_time) / tau)

    def _curve_at(self, when: float) -> float:
        return float(self._curve(np.array([when]))[0])

    def _hold(self, when: float, value: float):
        self._hold_time = when
        self._hold_value = value
        self._target = None

    def _settle(self, when: float):
        self._hold(when, self._curve_at(when))

    def _ramp(self, event: AutomationEvent, times: FloatArray) -> FloatArray:
        t0, v0 = self._hold_time, self._hold_value
        t1, v1 = event.time, event.value
        if t1 <= t0:
            return np.full(len(times), v1)
        frac = np.clip((times - t0) / (t1 - t0), 0.0, 1.0)
        if event.kind == "exponential" and v0 > 0 and v1 > 0:
            return v0 * (v1 / v0) ** frac
        return v0 + (v1 - v0) * frac

    def render(self, block: Block) -> FloatArray:
        """Per-sample values for ``block``, consuming events that have passed."""
        times = block.times
        frames = len(times)
        out = np.empty(frames)
        idx = 0

        while self._events:
            event = self._events[0]
            end = int(np.searchsorted(times, event.time, side="left"))

            if event.kind in _RAMPS:
                if self._target is not None:
                    self._settle(times[idx] if idx < frames else event.time)
                if end >= frames:
                    out[idx:] = self._ramp(event, times[idx:])
                    idx = frames
                    break
                out[idx:end] = self._ramp(event, times[idx:end])
                self._hold(event.time, event.value)
            else:
                if end >= frames:
                    break
                out[idx:end] = self._curve(times[idx:end])
                if event.kind == "set":
                    self._hold(event.time, event.value)
                else:
                    start_value = self._curve_at(event.time)
                    self._hold(event.time, start_value)
                    self._target = (event.value, event.time_constant)

            idx = max(idx, end)
            self._events.pop(0)

        if idx < frames:
            out[idx:] = self._curve(times[idx:])
        if frames:
            self.value = float(out[-1])
        return out


# =============================================================================
# Nodes
# =============================================================================


class Node:
    """Base graph node; outputs are cached per render block."""

    def __init__(self, context: "RenderContext", name: str = ""):
        self.context = context
        self.name = name or type(self).__name__
        self.inputs: list[Node] = []
        self.outputs: list[Node] = []
        self._block_index = -1
        self._output: Optional[FloatArray] = None

    def connect(self, destination: "Node") -> "Node":
        """Feed this node into ``destination`` and return it for chaining."""
        destination.inputs.append(self)
        self.outputs.append(destination)
        return destination

    def disconnect(self):
        """Detach from every destination."""
        for destination in self.outputs:
            if self in destination.inputs:
                destination.inputs.remove(self)
        self.outputs.clear()

    def pull(self, block: Block) -> FloatArray:
        """Output for ``block``, processed at most once per block."""
        if block.index != self._block_index:
            self._output = self.process(block)
            self._block_index = block.index
        return self._output

    def mix_inputs(self, block: Block) -> FloatArray:
        """Sum of every input for ``block``."""
        mixed = None
        for node in list(self.inputs):
            signal = node.pull(block)
            mixed = signal if mixed is None else mixed + signal
        if mixed is None:
            return np.zeros(block.frames)
        return mixed

    def process(self, block: Block) -> FloatArray:
        """Produce this node's output for ``block``."""
        raise NotImplementedError


class Gain(Node):
    def __init__(self, context: "RenderContext", value: float = 1.0, name: str = "",
                 min_value: float = 0.0, max_value: float = math.inf):
        super().__init__(context, name)
        self.gain = Param(value, min_value, max_value, name=f"{self.name}.gain")

    def process(self, block: Block) -> FloatArray:
        return self.mix_inputs(block) * self.gain.render(block)


class Bus(Gain):
    """Named mix point. The gain is bounded to [0, 1] and only ever automated."""

    def __init__(self, context: "RenderContext", name: str, value: float = 0.0):
        super().__init__(context, value, name=name, min_value=0.0, max_value=1.0)
        self.target = self.gain.value

    def automate(self, target: float, time_constant: float, when: Optional[float] = None):
        """Chase ``target`` exponentially from ``when`` (default: now)."""
        self.target = self.gain.clamp(target)
        if when is None:
            when = self.context.current_time
        self.gain.set_target_at_time(self.target, when, time_constant)


@lru_cache(maxsize=512)
def _biquad_cached(filter_type: str, frequency: float, q: float,
                   sample_rate: int) -> tuple[FloatArray, FloatArray]:
    w0 = TWO_PI * frequency / sample_rate
    cos_w0 = math.cos(w0)
    alpha = math.sin(w0) / (2.0 * q)

    if filter_type == "lowpass":
        b = [(1 - cos_w0) / 2, 1 - cos_w0, (1 - cos_w0) / 2]
    elif filter_type == "highpass":
        b = [(1 + cos_w0) / 2, -(1 + cos_w0), (1 + cos_w0) / 2]
    elif filter_type == "bandpass":
        b = [alpha, 0.0, -alpha]
    else:
        raise ValueError(f"Unknown filter type: {filter_type!r}")

    a = [1 + alpha, -2 * cos_w0, 1 - alpha]
    b_arr = np.array(b) / a[0]
    a_arr = np.array(a) / a[0]
    return b_arr, a_arr


def biquad_coefficients(filter_type: str, frequency: float, q: float = math.sqrt(0.5),
                        sample_rate: int = SAMPLE_RATE) -> tuple[FloatArray, FloatArray]:
    """RBJ cookbook biquad coefficients (b, a), normalized so a[0] == 1."""
    nyquist = sample_rate / 2.0
    frequency = min(max(frequency, 10.0), nyquist * 0.95)
    return _biquad_cached(filter_type, round(frequency, 2), round(q, 4), sample_rate)


class BiquadFilter(Node):
    """Lowpass / highpass / bandpass stage with state carried across blocks.

    The center frequency is read once per block (control rate).
    """

    def __init__(self, context: "RenderContext", filter_type: str, frequency: float,
                 q: float = math.sqrt(0.5), name: str = ""):
        super().__init__(context, name)
        self.filter_type = filter_type
        self.q = q
        self.frequency = Param(frequency, 10.0, context.sample_rate / 2.0,
                               name=f"{self.name}.frequency")
        self._zi: Optional[FloatArray] = None

    def process(self, block: Block) -> FloatArray:
        signal = self.mix_inputs(block)
        frequency = self.frequency.render(block)[0]
        b, a = biquad_coefficients(self.filter_type, frequency, self.q, block.sample_rate)

        state_shape = signal.shape[:-1] + (2,)
        if self._zi is None:
            self._zi = np.zeros(state_shape)
        elif self._zi.shape != state_shape:
            # mono -> stereo upgrade keeps the running state
            self._zi = np.broadcast_to(self._zi, state_shape).copy()

        out, self._zi = lfilter(b, a, signal, axis=-1, zi=self._zi)
        return out


class ScheduledSource(Node):
    """A source node active between ``start()`` and ``stop()`` times."""

    def __init__(self, context: "RenderContext", name: str = ""):
        super().__init__(context, name)
        self.start_frame: Optional[int] = None
        self.stop_frame: Optional[int] = None

    def start(self, when: float = 0.0):
        """Begin playback at ``when`` seconds."""
        self.start_frame = int(round(when * self.context.sample_rate))

    def stop(self, when: float):
        """End playback at ``when`` seconds."""
        self.stop_frame = int(round(when * self.context.sample_rate))

    def active_mask(self, block: Block) -> NDArray[np.bool_]:
        """Frames of ``block`` inside the start/stop window."""
        frames = block.start_frame + np.arange(block.frames)
        if self.start_frame is None:
            return np.zeros(block.frames, dtype=bool)
        mask = frames >= self.start_frame
        if self.stop_frame is not None:
            mask &= frames < self.stop_frame
        return mask


class BufferSource(ScheduledSource):
    """Plays a shared NoiseBuffer, looping by default."""

    def __init__(self, context: "RenderContext", buffer: NoiseBuffer, loop: bool = True,
                 offset: int = 0, name: str = ""):
        super().__init__(context, name)
        self.buffer = buffer
        self.loop = loop
        self.offset = offset

    def process(self, block: Block) -> FloatArray:
        out = np.zeros(block.frames)
        mask = self.active_mask(block)
        if not mask.any():
            return out

        samples = self.buffer.samples
        positions = block.start_frame + np.arange(block.frames) - self.start_frame + self.offset
        if self.loop:
            positions %= len(samples)
        else:
            mask &= positions < len(samples)
        out[mask] = samples[positions[mask]]
        return out


def _sine(phase: FloatArray) -> FloatArray:
    return np.sin(phase)


def _triangle(phase: FloatArray) -> FloatArray:
    return (2.0 / math.pi) * np.arcsin(np.sin(phase))


def _sawtooth(phase: FloatArray) -> FloatArray:
    return 2.0 * ((phase / TWO_PI) % 1.0) - 1.0


def _square(phase: FloatArray) -> FloatArray:
    return np.sign(np.sin(phase))


WAVEFORMS = {
    "sine": _sine,
    "triangle": _triangle,
    "sawtooth": _sawtooth,
    "square": _square,
}


class Oscillator(ScheduledSource):
    """Phase-accumulating oscillator with an automatable frequency."""

    def __init__(self, context: "RenderContext", waveform: str = "sine",
                 frequency: float = 440.0, detune: float = 0.0, name: str = ""):
        super().__init__(context, name)
        if waveform not in WAVEFORMS:
            raise ValueError(f"Unknown waveform: {waveform!r}")
        self.waveform = waveform
        self.frequency = Param(frequency, 0.0, context.sample_rate / 2.0,
                               name=f"{self.name}.frequency")
        self.detune = detune  # cents
        self._phase = 0.0

    def process(self, block: Block) -> FloatArray:
        frequency = self.frequency.render(block)
        mask = self.active_mask(block)
        if not mask.any():
            return np.zeros(block.frames)

        increments = TWO_PI * frequency * (2.0 ** (self.detune / 1200.0)) / block.sample_rate
        increments = increments * mask
        phase = self._phase + np.cumsum(increments) - increments
        self._phase = float((phase[-1] + increments[-1]) % TWO_PI)
        return WAVEFORMS[self.waveform](phase) * mask


# =============================================================================
# Render context
# =============================================================================


class RenderContext:
    """Owns the render clock and the destination node.

    ``current_time`` only advances while blocks are rendered, so it freezes
    while the output is suspended.
    """

    def __init__(self, sample_rate: int = SAMPLE_RATE, channels: int = CHANNELS):
        self.sample_rate = sample_rate
        self.channels = channels
        self.state = "suspended"
        self.frames_rendered = 0
        self._block_index = 0
        self.destination = Gain(self, 1.0, name="destination")

    @property
    def current_time(self) -> float:
        """Seconds rendered so far."""
        return self.frames_rendered / self.sample_rate

    @property
    def is_running(self) -> bool:
        """True while the output consumes the graph."""
        return self.state == "running"

    def resume(self):
        """Start consuming the graph."""
        if self.state == "closed":
            raise EngineClosedError("Render context is closed")
        self.state = "running"

    def suspend(self):
        """Pause rendering; the clock freezes."""
        if self.state == "running":
            self.state = "suspended"

    def close(self):
        """Detach the graph and refuse further renders."""
        for node in list(self.destination.inputs):
            node.disconnect()
        self.state = "closed"

    def render(self, frames: int) -> NDArray[np.float32]:
        """Pull one block through the graph. Returns shape (frames, channels)."""
        if self.state == "closed":
            raise EngineClosedError("Render context is closed")

        block = Block(self._block_index, self.frames_rendered, frames, self.sample_rate)
        signal = np.asarray(self.destination.pull(block))
        if signal.ndim == 1:
            signal = np.broadcast_to(signal, (self.channels, frames))
        elif signal.shape[0] != self.channels:
            signal = np.broadcast_to(signal.mean(axis=0), (self.channels, frames))

        self._block_index += 1
        self.frames_rendered += frames
        return np.ascontiguousarray(signal.T, dtype=np.float32)
