"""VoiceScribe: local voice dictation backed by Whisper."""

__version__ = "1.0.0"
