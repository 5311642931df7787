"""Cabin soundscape engine: builds the bus graph and drives it from cabin state."""

import logging
import random
from threading import Lock
from typing import Callable, Optional

import numpy as np

from composer import Composer
from config import (
    BUFFER_SIZE,
    CHANNELS,
    DRIFT_TIME_CONSTANT,
    MASTER_GAIN,
    NOISE_DURATION,
    RADIO_FILTER_CENTER,
    RADIO_FILTER_Q,
    RADIO_TIME_CONSTANT,
    RAIN_CUTOFF,
    REVERB_DURATION,
    REVERB_WET,
    RUMBLE_CUTOFF,
    RUMBLE_GAIN,
    SAMPLE_RATE,
    TUNING_TIME_CONSTANT,
    WEATHER_TIME_CONSTANT,
)
from effects import Compressor, Convolver, generate_impulse_response
from errors import EngineClosedError, RenderUnavailableError
from graph import BiquadFilter, BufferSource, Bus, Gain, Node, RenderContext
from mapper import (
    CabinState,
    EnvironmentTarget,
    changed_fields,
    clamp_frequency,
    clamp_speed,
    clamp_volume,
    map_environment,
    sanitize_state,
)
from noise import NoiseBuffer, generate_noise
from radio import TuningResult, compute_tuning, generate_buzzer_buffer
from rhythm import ClackGenerator
from scheduler import Scheduler
from voices import VoicePool

_LOGGER = logging.getLogger("cabin_audio.engine")


class SoundDeviceOutput:
    """sounddevice output stream with its failures mapped to RenderUnavailableError."""

    def __init__(self, sample_rate: int, block_size: int, channels: int, callback: Callable):
        try:
            import sounddevice as sd
        except (ImportError, OSError) as e:
            raise RenderUnavailableError(f"sounddevice unavailable: {e}") from e
        self._errors = (sd.PortAudioError, ValueError)
        try:
            self._stream = sd.OutputStream(
                samplerate=sample_rate,
                blocksize=block_size,
                channels=channels,
                dtype="float32",
                callback=callback,
            )
        except self._errors as e:
            raise RenderUnavailableError(f"Failed to open audio output: {e}") from e

    def start(self):
        """Start the output stream."""
        try:
            self._stream.start()
        except self._errors as e:
            raise RenderUnavailableError(f"Failed to start audio output: {e}") from e

    def stop(self):
        """Stop the output stream."""
        try:
            self._stream.stop()
        except self._errors as e:
            raise RenderUnavailableError(f"Failed to stop audio output: {e}") from e

    def close(self):
        """Release the output stream."""
        try:
            self._stream.close()
        except self._errors as e:
            raise RenderUnavailableError(f"Failed to close audio output: {e}") from e


class SoundEngine:
    """Generates the cabin soundscape: rumble, rain, wheel clack and the radio.

    Host inputs are pushed through the ``set_*`` methods (or ``update``) and
    turned into smoothed automations. None of them raise: an unavailable
    output leaves the engine inert and is retried on the next input.
    """

    def __init__(self, sample_rate: int = SAMPLE_RATE, block_size: int = BUFFER_SIZE,
                 seed: Optional[int] = None, scheduler: Optional[Scheduler] = None,
                 stream_factory: Optional[Callable] = None):
        self.sample_rate = sample_rate
        self.block_size = block_size
        self.state = CabinState()
        self.rng = random.Random(seed)
        self.scheduler = scheduler or Scheduler()
        self._owns_scheduler = scheduler is None
        self._stream_factory = stream_factory or SoundDeviceOutput
        self._stream = None
        self._lock = Lock()
        self._started = False

        self.context: Optional[RenderContext] = None
        self.voices = VoicePool()
        self.buses: dict[str, Bus] = {}
        self.noise: dict[str, NoiseBuffer] = {}
        self.radio_filter: Optional[BiquadFilter] = None
        self.composer: Optional[Composer] = None
        self.clack: Optional[ClackGenerator] = None
        self.target = EnvironmentTarget()
        self.tuning: Optional[TuningResult] = None
        self._nodes: list[Node] = []

    # --- graph ------------------------------------------------------------

    def _bus(self, name: str, value: float) -> Bus:
        bus = Bus(self.context, name, value)
        self.buses[name] = bus
        self._nodes.append(bus)
        return bus

    def _loop(self, buffer: NoiseBuffer, offset: int = 0) -> BufferSource:
        source = BufferSource(self.context, buffer, loop=True, offset=offset, name=f"{buffer.kind}.loop")
        source.start(0.0)
        self._nodes.append(source)
        return source

    def _build_graph(self):
        """Create every bus, filter and looping source once."""
        sr = self.sample_rate
        np_rng = np.random.default_rng(self.rng.getrandbits(32))
        self.context = ctx = RenderContext(sr, CHANNELS)
        self.noise = {kind: generate_noise(kind, NOISE_DURATION, sr, np_rng)
                      for kind in ("white", "brown", "pink")}
        self.target = map_environment(self.state)

        master = self._bus("master", MASTER_GAIN)
        master.connect(ctx.destination)

        # Mechanical rumble: brown noise under a deep lowpass
        rumble_filter = BiquadFilter(ctx, "lowpass", RUMBLE_CUTOFF, name="rumble.filter")
        self._loop(self.noise["brown"]).connect(rumble_filter)
        rumble_filter.connect(self._bus("rumble", RUMBLE_GAIN)).connect(master)

        # Precipitation: pink noise, highpassed to hiss
        rain_filter = BiquadFilter(ctx, "highpass", RAIN_CUTOFF, name="rain.filter")
        self._loop(self.noise["pink"]).connect(rain_filter)
        rain_filter.connect(self._bus("rain", self.target.rain_gain)).connect(master)

        # Radio: static + programs through a small-speaker bandpass
        radio_master = self._bus("radio_master", self.target.radio_master_gain)
        radio_master.connect(master)
        self.radio_filter = BiquadFilter(ctx, "bandpass", RADIO_FILTER_CENTER, RADIO_FILTER_Q,
                                         name="radio.filter")
        self.radio_filter.connect(radio_master)

        static_offset = int(np_rng.integers(len(self.noise["white"])))
        self._loop(self.noise["white"], static_offset).connect(self._bus("radio_static", 0.0))
        self.buses["radio_static"].connect(self.radio_filter)
        self._bus("radio_music", 0.0).connect(self.radio_filter)
        self._loop(generate_buzzer_buffer(sr)).connect(self._bus("radio_buzzer", 0.0))
        self.buses["radio_buzzer"].connect(self.radio_filter)

        # Music chain: voices -> (reverb send) -> glue compressor -> radio music
        compressor = Compressor(ctx)
        compressor.connect(self.buses["radio_music"])
        reverb = Convolver(ctx, generate_impulse_response(REVERB_DURATION, sr, np_rng))
        wet = Gain(ctx, REVERB_WET, name="reverb.wet")
        reverb.connect(wet).connect(compressor)
        self._nodes.extend([rumble_filter, rain_filter, self.radio_filter, compressor, reverb, wet])

        self.composer = Composer(ctx, self.voices, dry=compressor, reverb_send=reverb,
                                 noise=self.noise["white"], rng=self.rng,
                                 audible=lambda: self.state.radio_on)
        self.clack = ClackGenerator(ctx, self.voices, self.noise["white"], master,
                                    speed=lambda: self.state.speed, rng=self.rng)

        self._apply_tuning(immediate=True)
        _LOGGER.info("Built cabin audio graph at %d Hz", sr)

    def _apply_tuning(self, immediate: bool = False):
        """Recompute the tuning model and automate every radio parameter from it."""
        result = compute_tuning(self.state.radio_frequency, self.rng)
        self.tuning = result
        self.target = map_environment(self.state)
        if self.context is None:
            return

        def tc(value: float) -> float:
            return 0.0 if immediate else value

        self.buses["radio_master"].automate(self.target.radio_master_gain, tc(RADIO_TIME_CONSTANT))
        self.buses["radio_static"].automate(result.static_volume, tc(TUNING_TIME_CONSTANT))
        self.buses["radio_music"].automate(result.program_volume("music"), tc(TUNING_TIME_CONSTANT))
        self.buses["radio_buzzer"].automate(result.program_volume("buzzer"), tc(TUNING_TIME_CONSTANT))
        self.radio_filter.frequency.set_target_at_time(result.filter_center, self.context.current_time,
                                                       tc(DRIFT_TIME_CONSTANT))

    # --- lifecycle --------------------------------------------------------

    def start(self) -> bool:
        """Build the graph, start both schedulers and, if enabled, the output."""
        with self._lock:
            if self.context is None:
                self._build_graph()
            elif self.context.state == "closed":
                _LOGGER.warning("Engine was stopped; create a new SoundEngine to restart")
                return False
            if not self._started:
                self.composer.start(self.scheduler, self._lock)
                self.clack.start(self.scheduler, self._lock)
                self._started = True

        if self._owns_scheduler:
            self.scheduler.start()
        if self.state.audio_enabled:
            self._resume()
        return self.context.is_running

    def stop(self):
        """Tear down: cancel every callback, release voices, close the output."""
        with self._lock:
            if self.context is None or self.context.state == "closed":
                return
            self.composer.stop()
            self.clack.stop()
            if self._owns_scheduler:
                self.scheduler.cancel_all()
            self.voices.release_all()
            for bus in self.buses.values():
                bus.gain.cancel_scheduled_values(0.0)
            self.radio_filter.frequency.cancel_scheduled_values(0.0)
            for node in self._nodes:
                node.disconnect()
            self._nodes.clear()
            self.noise.clear()
            self.context.close()
            self._started = False

        if self._stream is not None:
            try:
                self._stream.stop()
                self._stream.close()
            except RenderUnavailableError as e:
                _LOGGER.warning("Error closing audio output: %s", e)
            self._stream = None
        if self._owns_scheduler:
            self.scheduler.stop()
        _LOGGER.info("Cabin audio stopped")

    def _resume(self) -> bool:
        """Open and start the output; False if the platform refuses."""
        if self.context is None or self.context.state == "closed":
            return False
        if self.context.is_running:
            return True
        try:
            if self._stream is None:
                self._stream = self._stream_factory(self.sample_rate, self.block_size, CHANNELS,
                                                    self._audio_callback)
            with self._lock:
                self.context.resume()
            self._stream.start()
        except RenderUnavailableError as e:
            with self._lock:
                self.context.suspend()
            _LOGGER.warning("Audio output unavailable, will retry on next input: %s", e)
            return False
        _LOGGER.info("Audio resumed")
        return True

    def _suspend(self):
        """Pause rendering and stop the output, keeping the graph."""
        if self.context is None or not self.context.is_running:
            return
        with self._lock:
            self.context.suspend()
        if self._stream is not None:
            try:
                self._stream.stop()
            except RenderUnavailableError as e:
                _LOGGER.warning("Failed to suspend audio output: %s", e)
        _LOGGER.info("Audio suspended")

    def _retry_pending(self):
        """Retry a blocked resume on any qualifying input."""
        if (self._started and self.state.audio_enabled
                and self.context is not None and self.context.state == "suspended"):
            self._resume()

    def notify_user_gesture(self):
        """Host hook for clicks/keys; platforms may only allow playback after one."""
        self._retry_pending()

    # --- rendering --------------------------------------------------------

    def render(self, frames: int) -> np.ndarray:
        """Render the next ``frames`` samples, shape (frames, channels)."""
        with self._lock:
            if self.context is None:
                return np.zeros((frames, CHANNELS), dtype=np.float32)
            self.voices.sweep(self.context.current_time)
            return self.context.render(frames)

    def _audio_callback(self, outdata, frames, time_info, status):
        """Fill the output buffer from the graph."""
        if status:
            _LOGGER.debug("Output stream status: %s", status)
        try:
            block = self.render(frames)
        except EngineClosedError:
            outdata.fill(0)
            return
        except Exception:
            # an exception escaping here aborts the sounddevice stream
            _LOGGER.exception("Render failed, outputting silence")
            outdata.fill(0)
            return
        outdata[:] = np.tanh(block)

    # --- host inputs ------------------------------------------------------

    def set_audio_enabled(self, enabled: bool):
        """Suspend or resume rendering without touching the graph."""
        self.state.audio_enabled = bool(enabled)
        if not self._started:
            return
        if enabled:
            self._resume()
        else:
            self._suspend()

    def set_weather(self, weather: str):
        """Chase the precipitation level for ``weather``."""
        with self._lock:
            self.state.weather = weather
            self.target = map_environment(self.state)
            if self.context is not None:
                self.buses["rain"].automate(self.target.rain_gain, WEATHER_TIME_CONSTANT)
        self._retry_pending()

    def set_time_of_day(self, time_of_day: str):
        """Stored only; it has no acoustic effect."""
        self.state.time_of_day = time_of_day
        self._retry_pending()

    def set_radio_on(self, on: bool):
        """Switch the radio and re-derive its tuning."""
        with self._lock:
            self.state.radio_on = bool(on)
            self._apply_tuning()
        self._retry_pending()

    def set_radio_frequency(self, frequency: float):
        """Move the dial, clamped to the FM band, and retune."""
        with self._lock:
            self.state.radio_frequency = clamp_frequency(frequency)
            self._apply_tuning()
        self._retry_pending()

    def set_radio_volume(self, volume: float):
        """Set the radio level, clamped to [0, 1]."""
        with self._lock:
            self.state.radio_volume = clamp_volume(volume)
            self._apply_tuning()
        self._retry_pending()

    def set_speed(self, speed: float):
        """Read lazily by the clack loop at its next firing."""
        self.state.speed = clamp_speed(speed)

    def update(self, state: CabinState):
        """Push a full host snapshot; only changed fields are applied."""
        new = sanitize_state(state)
        setters = {
            "audio_enabled": self.set_audio_enabled,
            "weather": self.set_weather,
            "time_of_day": self.set_time_of_day,
            "radio_on": self.set_radio_on,
            "radio_frequency": self.set_radio_frequency,
            "radio_volume": self.set_radio_volume,
            "speed": self.set_speed,
        }
        for name in changed_fields(self.state, new):
            setters[name](getattr(new, name))
