"""Reverb send and glue compressor for the generative music chain."""

import logging
import math
from typing import Optional

import numpy as np
from numpy.typing import NDArray
from scipy.fft import irfft, next_fast_len, rfft

from config import (
    COMPRESSOR_ATTACK,
    COMPRESSOR_RATIO,
    COMPRESSOR_RELEASE,
    COMPRESSOR_THRESHOLD,
    REVERB_DURATION,
    SAMPLE_RATE,
)
from graph import Block, Node, RenderContext

_LOGGER = logging.getLogger("cabin_audio.effects")

FloatArray = NDArray[np.float64]

# cached IR spectra per convolver, one per distinct block size
_MAX_SPECTRA = 4


def generate_impulse_response(duration: float = REVERB_DURATION, sample_rate: int = SAMPLE_RATE,
                              rng: Optional[np.random.Generator] = None,
                              channels: int = 2) -> FloatArray:
    """Diffuse decaying tail: uniform noise shaped by (1 - i/N)^3 per channel."""
    if rng is None:
        rng = np.random.default_rng()
    length = max(1, int(duration * sample_rate))
    decay = (1.0 - np.arange(length) / length) ** 3
    impulse = rng.uniform(-1.0, 1.0, (channels, length)) * decay
    impulse.setflags(write=False)
    return impulse


class Convolver(Node):
    """Streaming overlap-add convolution reverb.

    The impulse response is energy-normalized per channel and its spectrum
    is computed once per FFT size, so a block only costs the transform of
    its own input and of the product. Output is always shaped
    (channels, frames).
    """

    def __init__(self, context: RenderContext, impulse: FloatArray, name: str = "reverb"):
        super().__init__(context, name)
        energy = np.sqrt(np.sum(impulse ** 2, axis=-1, keepdims=True))
        self.impulse = impulse / np.maximum(energy, 1e-12)
        self.channels, self.length = self.impulse.shape
        self._tail = np.zeros((self.channels, self.length - 1))
        self._spectra: dict[int, NDArray[np.complex128]] = {}

    def spectrum(self, frames: int) -> tuple[int, NDArray[np.complex128]]:
        """FFT size for ``frames``-long blocks and the cached IR spectrum at that size."""
        nfft = next_fast_len(frames + self.length - 1, real=True)
        spectrum = self._spectra.get(nfft)
        if spectrum is None:
            if len(self._spectra) >= _MAX_SPECTRA:
                self._spectra.clear()
            spectrum = rfft(self.impulse, nfft, axis=-1)
            self._spectra[nfft] = spectrum
            _LOGGER.debug("Cached %s spectrum for %d-frame blocks (nfft=%d)", self.name, frames, nfft)
        return nfft, spectrum

    def process(self, block: Block) -> FloatArray:
        signal = self.mix_inputs(block)
        if signal.ndim == 1:
            signal = signal[np.newaxis, :]

        if not signal.any() and not self._tail.any():
            return np.zeros((self.channels, block.frames))

        nfft, spectrum = self.spectrum(block.frames)
        overlap = self._tail.shape[-1]
        wet = irfft(rfft(signal, nfft, axis=-1) * spectrum, nfft, axis=-1)
        wet = wet[:, :block.frames + overlap]
        wet[:, :overlap] += self._tail
        self._tail = wet[:, block.frames:].copy()
        return wet[:, :block.frames]


class Compressor(Node):
    """Block-rate feed-forward compressor.

    Peak level is measured per block, gain reduction follows it with
    separate attack/release time constants and is ramped across the block.
    """

    def __init__(self, context: RenderContext, threshold: float = COMPRESSOR_THRESHOLD,
                 ratio: float = COMPRESSOR_RATIO, attack: float = COMPRESSOR_ATTACK,
                 release: float = COMPRESSOR_RELEASE, name: str = "compressor"):
        super().__init__(context, name)
        self.threshold = threshold
        self.ratio = ratio
        self.attack = attack
        self.release = release
        self.reduction = 0.0  # dB, positive
        self._last_gain = 1.0

    def target_reduction(self, level_db: float) -> float:
        """Steady-state gain reduction in dB for a block peak level."""
        over = level_db - self.threshold
        if over <= 0:
            return 0.0
        return over - over / self.ratio

    def process(self, block: Block) -> FloatArray:
        signal = self.mix_inputs(block)
        peak = float(np.max(np.abs(signal))) if signal.size else 0.0
        level_db = 20.0 * math.log10(max(peak, 1e-9))

        target = self.target_reduction(level_db)
        time_constant = self.attack if target > self.reduction else self.release
        coeff = math.exp(-(block.frames / block.sample_rate) / time_constant)
        self.reduction = target + (self.reduction - target) * coeff

        gain = 10.0 ** (-self.reduction / 20.0)
        gains = np.linspace(self._last_gain, gain, block.frames)
        self._last_gain = gain
        return signal * gains
