"""Exceptions raised by the cabin soundscape engine."""


class CabinAudioError(Exception):
    """Base error for the cabin soundscape engine."""


class RenderUnavailableError(CabinAudioError):
    """Raised when the audio output cannot be opened, started or resumed."""


class EngineClosedError(CabinAudioError):
    """Raised when rendering is requested from a torn-down context."""
