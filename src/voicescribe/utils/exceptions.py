"""Error taxonomy shared by every VoiceScribe component."""


class VoiceScribeError(Exception):
    """Base class for all VoiceScribe errors."""


class MicrophonePermissionError(VoiceScribeError, PermissionError):
    """Microphone access was denied or the input device is unavailable.

    Fatal to the recording session; never retried automatically.
    """

    def __init__(self, message: str = "Microphone access denied or not supported."):
        super().__init__(message)


class FormatError(VoiceScribeError, ValueError):
    """Audio bytes could not be parsed or decoded."""


class InferenceError(VoiceScribeError):
    """The ASR engine failed while loading or transcribing."""


class InitializationError(InferenceError):
    """The ASR model could not be loaded."""


class StaleLoadError(VoiceScribeError):
    """A superseded model load finished after a newer one started.

    Callers discard this silently; it is never shown to users.
    """

    def __init__(self, generation: int, current: int):
        super().__init__(f"Model load generation {generation} superseded by {current}")
        self.generation = generation
        self.current = current
