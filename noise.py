"""Noise primitives: the raw material for rumble, rain, static and hits."""

import logging
from dataclasses import dataclass
from typing import Literal, Optional

import numpy as np
from numpy.typing import NDArray
from scipy.signal import lfilter

from config import NOISE_DURATION, SAMPLE_RATE

_LOGGER = logging.getLogger("cabin_audio.noise")

NoiseKind = Literal["white", "brown", "pink"]
FloatArray = NDArray[np.float64]

# Paul Kellett's refined pink filter: (pole, input gain) per state variable
_PINK_POLES = (
    (0.99886, 0.0555179),
    (0.99332, 0.0750759),
    (0.96900, 0.1538520),
    (0.86650, 0.3104856),
    (0.55000, 0.5329522),
    (-0.7616, -0.0168980),
)
_PINK_DIRECT = 0.5362
_PINK_DELAYED = 0.115926
_PINK_SCALE = 0.11

_BROWN_LEAK = 1.02
_BROWN_INPUT = 0.02
_BROWN_SCALE = 3.5


@dataclass(frozen=True)
class NoiseBuffer:
    """Precomputed sample buffer shared read-only by every voice that loops it."""

    kind: str
    samples: FloatArray
    sample_rate: int

    def __post_init__(self):
        self.samples.setflags(write=False)

    @property
    def duration(self) -> float:
        """Length in seconds."""
        return len(self.samples) / self.sample_rate

    def __len__(self) -> int:
        return len(self.samples)


def white_noise(count: int, rng: np.random.Generator) -> FloatArray:
    """Uniform i.i.d. samples in [-1, 1]."""
    return rng.uniform(-1.0, 1.0, count)


def brown_from_white(white: FloatArray) -> FloatArray:
    """Leaky integrator: y[n] = (y[n-1] + 0.02*w[n]) / 1.02, scaled back up."""
    b = [_BROWN_INPUT / _BROWN_LEAK]
    a = [1.0, -1.0 / _BROWN_LEAK]
    return lfilter(b, a, white) * _BROWN_SCALE


def pink_from_white(white: FloatArray) -> FloatArray:
    """Six-pole pink approximation, each pole run as a one-pole IIR."""
    out = white * _PINK_DIRECT
    for pole, gain in _PINK_POLES:
        out = out + lfilter([gain], [1.0, -pole], white)
    delayed = np.concatenate(([0.0], white[:-1]))
    out = out + delayed * _PINK_DELAYED
    return out * _PINK_SCALE


def generate_noise(
    kind: NoiseKind,
    duration: float = NOISE_DURATION,
    sample_rate: int = SAMPLE_RATE,
    rng: Optional[np.random.Generator] = None,
) -> NoiseBuffer:
    """Generate a loopable noise buffer of the given kind."""
    if rng is None:
        rng = np.random.default_rng()
    count = max(1, int(round(duration * sample_rate)))
    white = white_noise(count, rng)

    if kind == "white":
        samples = white
    elif kind == "brown":
        samples = brown_from_white(white)
    elif kind == "pink":
        samples = pink_from_white(white)
    else:
        raise ValueError(f"Unknown noise kind: {kind!r}")

    _LOGGER.debug("Generated %s noise: %d samples @ %d Hz", kind, count, sample_rate)
    return NoiseBuffer(kind=kind, samples=np.ascontiguousarray(samples, dtype=np.float64),
                       sample_rate=sample_rate)
