import numpy as np
import pytest
from scipy.signal import lfilter

from graph import biquad_coefficients
from noise import generate_noise


def _white(seed: int, count: int) -> np.ndarray:
    return np.random.default_rng(seed).uniform(-1.0, 1.0, count)


def test_white_noise_is_bounded_and_sized() -> None:
    buf = generate_noise("white", 0.5, 8000, np.random.default_rng(1))
    assert len(buf) == 4000
    assert buf.duration == pytest.approx(0.5)
    assert np.all(buf.samples >= -1.0)
    assert np.all(buf.samples <= 1.0)


def test_noise_buffer_is_read_only() -> None:
    buf = generate_noise("pink", 0.1, 8000, np.random.default_rng(1))
    assert not buf.samples.flags.writeable
    with pytest.raises(ValueError):
        buf.samples[0] = 1.0


def test_brown_noise_matches_leaky_integrator() -> None:
    buf = generate_noise("brown", 0.05, 8000, np.random.default_rng(7))
    white = _white(7, len(buf))

    expected = []
    last = 0.0
    for w in white:
        last = (last + 0.02 * w) / 1.02
        expected.append(last * 3.5)

    assert np.allclose(buf.samples, expected)


def test_pink_noise_matches_kellett_filter() -> None:
    buf = generate_noise("pink", 0.05, 8000, np.random.default_rng(3))
    white = _white(3, len(buf))

    b0 = b1 = b2 = b3 = b4 = b5 = b6 = 0.0
    expected = []
    for w in white:
        b0 = 0.99886 * b0 + w * 0.0555179
        b1 = 0.99332 * b1 + w * 0.0750759
        b2 = 0.96900 * b2 + w * 0.1538520
        b3 = 0.86650 * b3 + w * 0.3104856
        b4 = 0.55000 * b4 + w * 0.5329522
        b5 = -0.7616 * b5 - w * 0.0168980
        expected.append((b0 + b1 + b2 + b3 + b4 + b5 + b6 + w * 0.5362) * 0.11)
        b6 = w * 0.115926

    assert np.allclose(buf.samples, expected)


def test_highpassed_pink_energy_sits_above_cutoff() -> None:
    sr = 44100
    cutoff = 400.0
    buf = generate_noise("pink", 2.0, sr, np.random.default_rng(11))
    b, a = biquad_coefficients("highpass", cutoff, sample_rate=sr)
    filtered = lfilter(b, a, buf.samples)

    power = np.abs(np.fft.rfft(filtered)) ** 2
    freqs = np.fft.rfftfreq(len(filtered), 1.0 / sr)
    centroid = float(np.sum(freqs * power) / np.sum(power))

    assert centroid > cutoff
    assert np.sum(power[freqs >= cutoff]) / np.sum(power) > 0.8


def test_unknown_noise_kind_raises() -> None:
    with pytest.raises(ValueError):
        generate_noise("purple", 0.1, 8000)  # type: ignore[arg-type]
