import numpy as np
import pytest

from graph import Block, Gain, Param, RenderContext
from noise import generate_noise
from voices import Voice, VoicePool, apply_envelope, play_noise, play_tone


@pytest.fixture
def context() -> RenderContext:
    ctx = RenderContext(1000)
    ctx.resume()
    return ctx


def test_envelope_rises_then_decays_to_floor() -> None:
    param = Param(0.0)
    apply_envelope(param, 0.0, 1.0, 0.1, 1.0, floor=0.001)
    out = param.render(Block(0, 0, 150, 100))

    assert out[0] == pytest.approx(0.0)
    assert out[10] == pytest.approx(1.0)
    assert out[100] == pytest.approx(0.001)
    assert np.all(np.diff(out[10:100]) < 0)
    assert np.all(out[100:] > 0.0)


def test_silent_peak_never_ramps_exponentially() -> None:
    param = Param(0.0)
    apply_envelope(param, 0.0, 0.0, 0.05, 0.5)
    out = param.render(Block(0, 0, 100, 100))
    assert np.all(out == 0.0)


def test_tone_voice_expires_after_tail(context: RenderContext) -> None:
    pool = VoicePool()
    voice = play_tone(context, pool, [context.destination], 220.0, 0.2, 0.5, 0.3,
                      tail=0.1, kind="bass")

    assert voice.expires_at == pytest.approx(0.8)
    assert voice.source.start_frame == 200
    assert voice.source.stop_frame == 800
    assert len(pool) == 1

    assert pool.sweep(0.79) == 0
    assert pool.sweep(0.8) == 1
    assert len(pool) == 0
    assert voice.released


def test_released_voice_leaves_the_graph(context: RenderContext) -> None:
    pool = VoicePool()
    noise = generate_noise("white", 0.2, 1000, np.random.default_rng(0))
    bus = Gain(context, 1.0)
    voice = play_noise(context, pool, [bus], noise, 0.0, 0.1, 0.5, filter_type="highpass",
                       cutoff=300.0)

    assert voice.amp in bus.inputs
    pool.release_all()
    assert voice.amp not in bus.inputs
    assert all(not node.outputs for node in voice.nodes)
    assert len(pool) == 0


def test_sweep_releases_in_expiry_order(context: RenderContext) -> None:
    pool = VoicePool()
    late = play_tone(context, pool, [context.destination], 440.0, 0.0, 2.0, 0.1)
    early = play_tone(context, pool, [context.destination], 440.0, 0.0, 0.5, 0.1)

    assert pool.sweep(1.0) == 1
    assert early.released
    assert not late.released
    assert list(pool) == [late]


def test_full_pool_steals_oldest_voice(context: RenderContext) -> None:
    pool = VoicePool(capacity=2)
    voices = [play_tone(context, pool, [context.destination], 440.0, 0.0, 1.0, 0.1)
              for _ in range(3)]

    assert len(pool) == 2
    assert voices[0].released
    assert not voices[1].released
    assert not voices[2].released
    # stale heap entries for stolen voices are skipped
    assert pool.sweep(10.0) == 2


def test_voice_release_is_idempotent(context: RenderContext) -> None:
    amp = Gain(context, 0.0)
    amp.connect(context.destination)
    voice = Voice([amp], 0.0, 1.0, "test")
    voice.release()
    voice.release()
    assert voice.released
    assert amp not in context.destination.inputs
