"""Configuration for the cabin soundscape engine.

Everything here is a perceptual tuning constant; values were picked by ear
and are kept as-is rather than derived.
"""

# Audio settings
SAMPLE_RATE = 44100
BUFFER_SIZE = 512
CHANNELS = 2

# Control-rate scheduler resolution in seconds
CONTROL_INTERVAL = 0.01

# Noise buffers are generated once and looped
NOISE_DURATION = 2.0

# Bus levels
MASTER_GAIN = 0.5
RUMBLE_GAIN = 0.3
RUMBLE_CUTOFF = 120.0  # Hz, lowpass
RAIN_CUTOFF = 400.0  # Hz, highpass

# Weather -> precipitation bus target
WEATHER_RAIN_GAIN = {
    "clear": 0.0,
    "cloudy": 0.0,
    "rain": 0.35,
    "snow": 0.05,  # ambient bleed
}
WEATHER_TIME_CONSTANT = 0.5

# Envelopes never ramp exactly to zero
ENVELOPE_FLOOR = 0.001
VOICE_CAPACITY = 256

# Reverb / glue compressor
REVERB_DURATION = 1.5
REVERB_WET = 0.4
COMPRESSOR_THRESHOLD = -24.0  # dB
COMPRESSOR_RATIO = 12.0
COMPRESSOR_ATTACK = 0.003
COMPRESSOR_RELEASE = 0.25

# Musical settings
STEP_DURATION = 0.6  # seconds per step, ~100 BPM
STEPS_PER_BAR = 16
MELODY_CHANCE = 0.6
DETUNE_CENTS = 7.5
NOTE_ATTACK = 0.05

# (chord name, bass root Hz) - Am F C G
CHORD_PROGRESSION = [
    ("Am", 110.00),
    ("F", 87.31),
    ("C", 130.81),
    ("G", 98.00),
]
# A natural minor, octave 4
MELODY_SCALE = [440.00, 493.88, 523.25, 587.33, 659.25, 698.46, 783.99]

BASS_VOLUME = 0.25
BASS_CUTOFF = 400.0
MELODY_VOLUME = 0.08
KICK_VOLUME = 0.6
SNARE_VOLUME = 0.2
HAT_VOLUME = 0.04

# Radio
RADIO_MIN_FREQUENCY = 88.0  # MHz
RADIO_MAX_FREQUENCY = 108.0
DEFAULT_RADIO_FREQUENCY = 100.0
DEFAULT_RADIO_VOLUME = 0.5
CAPTURE_BANDWIDTH = 1.5  # MHz
DROPOUT_THRESHOLD = 0.8
DROPOUT_CHANCE = 0.1
STATIC_RANGE = 0.4
STATIC_FLOOR = 0.05
DRIFT_HZ_PER_MHZ = 500.0
RADIO_FILTER_CENTER = 1000.0
RADIO_FILTER_Q = 1.2
RADIO_FILTER_RANGE = (300.0, 3000.0)
RADIO_TIME_CONSTANT = 0.1
TUNING_TIME_CONSTANT = 0.2
DRIFT_TIME_CONSTANT = 0.3

# (name, kind, MHz)
STATIONS = [
    ("Mayak", "music", 96.0),
    ("Buzzer", "buzzer", 104.2),
]

# Wheel clack
REFERENCE_SPEED = 12.0
CLACK_BASE_DELAY = 1.75
CLACK_JITTER = 0.1
CLACK_MIN_DELAY = 0.25
CLACK_PAIR_OFFSET = 0.14
CLACK_STOPPED_RATIO = 0.1
CLACK_SLOW_POLL = 1.0
CLACK_VOLUMES = (0.4, 0.3)
CLACK_MAX_LOUDNESS = 1.25
CLACK_CUTOFF = 600.0
CLACK_DURATION = 0.1
