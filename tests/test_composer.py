import random
from collections import Counter

import numpy as np
import pytest

from composer import Composer, NoteEvent, Sequencer
from config import CHORD_PROGRESSION, DETUNE_CENTS, MELODY_SCALE, STEPS_PER_BAR
from graph import Gain, RenderContext
from noise import generate_noise
from voices import VoicePool


def _bar(sequencer: Sequencer) -> list[NoteEvent]:
    events = []
    for _ in range(STEPS_PER_BAR):
        events.extend(sequencer.tick())
    return events


class TestSequencer:
    def test_bar_advances_once_per_sixteen_steps(self) -> None:
        seq = Sequencer(random.Random(1))
        for _ in range(15):
            seq.tick()
        assert (seq.step, seq.bar) == (15, 0)
        seq.tick()
        assert (seq.step, seq.bar) == (0, 1)

    def test_bass_plays_on_half_bars_following_progression(self) -> None:
        seq = Sequencer(random.Random(2))
        for bar in range(8):
            bass = [e for e in _bar(seq) if e.kind == "bass"]
            assert [e.step for e in bass] == [0, 8]
            root = CHORD_PROGRESSION[bar % len(CHORD_PROGRESSION)][1]
            assert all(e.frequency == root for e in bass)
            assert all(e.duration == pytest.approx(8 * seq.step_duration) for e in bass)

    def test_percussion_pattern(self) -> None:
        events = _bar(Sequencer(random.Random(3)))
        steps = {kind: [e.step for e in events if e.kind == kind]
                 for kind in ("kick", "snare", "hat")}
        assert steps["kick"] == [0, 4, 8, 12]
        assert steps["snare"] == [2, 6, 10, 14]
        assert steps["hat"] == list(range(0, 16, 2))

    def test_melody_notes_come_from_the_scale(self) -> None:
        seq = Sequencer(random.Random(4))
        melody = [e for _ in range(10) for e in _bar(seq) if e.kind == "melody"]

        allowed = set(MELODY_SCALE) | {f * 2 for f in MELODY_SCALE}
        assert melody
        assert all(e.frequency in allowed for e in melody)
        assert all(0.5 * seq.step_duration <= e.duration <= 1.5 * seq.step_duration
                   for e in melody)
        assert all(abs(e.detune) <= DETUNE_CENTS for e in melody)
        # roughly 60% of 160 steps
        assert 70 < len(melody) < 125

    def test_same_seed_same_pattern(self) -> None:
        a = _bar(Sequencer(random.Random(9)))
        b = _bar(Sequencer(random.Random(9)))
        assert a == b


@pytest.fixture
def music_chain():
    ctx = RenderContext(8000)
    dry = Gain(ctx, 1.0, name="dry")
    send = Gain(ctx, 1.0, name="send")
    noise = generate_noise("white", 0.5, 8000, np.random.default_rng(0))
    return ctx, dry, send, noise


def test_tick_is_noop_while_suspended(music_chain) -> None:
    ctx, dry, send, noise = music_chain
    pool = VoicePool()
    composer = Composer(ctx, pool, dry, send, noise, random.Random(1))

    assert composer.tick() == []
    assert composer.sequencer.step == 0
    assert len(pool) == 0


def test_tick_plays_voices_while_running(music_chain) -> None:
    ctx, dry, send, noise = music_chain
    ctx.resume()
    pool = VoicePool()
    composer = Composer(ctx, pool, dry, send, noise, random.Random(1))

    events = composer.tick()
    kinds = Counter(v.kind for v in pool)

    assert len(pool) == len(events)
    assert kinds["bass"] == 1
    assert kinds["kick"] == 1
    assert kinds["hat"] == 1
    assert composer.sequencer.step == 1


def test_inaudible_composer_keeps_time_without_voices(music_chain) -> None:
    ctx, dry, send, noise = music_chain
    ctx.resume()
    pool = VoicePool()
    composer = Composer(ctx, pool, dry, send, noise, random.Random(1), audible=lambda: False)

    events = composer.tick()
    assert events
    assert len(pool) == 0
    assert composer.sequencer.step == 1


def test_voice_routing(music_chain) -> None:
    ctx, dry, send, noise = music_chain
    ctx.resume()
    composer = Composer(ctx, VoicePool(), dry, send, noise, random.Random(1))

    melody = composer.play(NoteEvent("melody", 440.0, 0.5, 0.08), 0.0)
    bass = composer.play(NoteEvent("bass", 110.0, 4.8, 0.25), 0.0)

    assert melody.amp.outputs == [dry, send]
    assert bass.amp.outputs == [dry]
    assert bass.nodes[1].filter_type == "lowpass"


def test_kick_pitch_sweeps_down(music_chain) -> None:
    ctx, dry, send, noise = music_chain
    ctx.resume()
    composer = Composer(ctx, VoicePool(), dry, send, noise, random.Random(1))
    dry.connect(ctx.destination)
    kick = composer.play(NoteEvent("kick", 150.0, 0.5, 0.6), 0.0)

    ctx.render(4000)
    assert kick.source.frequency.value < 1.0


def test_unknown_event_kind_raises(music_chain) -> None:
    ctx, dry, send, noise = music_chain
    composer = Composer(ctx, VoicePool(), dry, send, noise, random.Random(1))
    with pytest.raises(ValueError):
        composer.play(NoteEvent("tuba"), 0.0)
