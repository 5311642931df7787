import pytest

from errors import RenderUnavailableError
from scheduler import Scheduler
from sound_engine import SoundEngine


class ManualClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeStream:
    """Stands in for the sounddevice output; nothing is played."""

    instances: list["FakeStream"] = []

    def __init__(self, sample_rate, block_size, channels, callback) -> None:
        self.sample_rate = sample_rate
        self.block_size = block_size
        self.channels = channels
        self.callback = callback
        self.started = False
        self.closed = False
        FakeStream.instances.append(self)

    def start(self) -> None:
        self.started = True

    def stop(self) -> None:
        self.started = False

    def close(self) -> None:
        self.closed = True


class BlockedStream(FakeStream):
    """Refuses to start until ``allowed`` is set, like an autoplay policy."""

    allowed = False

    def start(self) -> None:
        if not BlockedStream.allowed:
            raise RenderUnavailableError("playback requires a user gesture")
        super().start()


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def scheduler(clock: ManualClock) -> Scheduler:
    return Scheduler(clock=clock)


@pytest.fixture
def engine(scheduler: Scheduler):
    eng = SoundEngine(
        sample_rate=8000,
        block_size=256,
        seed=1234,
        scheduler=scheduler,
        stream_factory=FakeStream,
    )
    yield eng
    eng.stop()


@pytest.fixture
def render_seconds():
    """Render `seconds` of audio in block-sized chunks."""

    def _render(engine: SoundEngine, seconds: float) -> list:
        frames = int(seconds * engine.sample_rate)
        blocks = []
        while frames > 0:
            n = min(engine.block_size, frames)
            blocks.append(engine.render(n))
            frames -= n
        return blocks

    return _render
