"""
Runtime configuration for VoiceScribe.

Values come from the environment (optionally seeded from a local .env file)
and fall back to defaults that work for a single-user desktop setup.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

ENV_PREFIX = "VOICESCRIBE_"

_BOOL_TRUTHY = {"1", "true", "yes", "on"}


def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(ENV_PREFIX + name)
    if value is None:
        return default
    return value.strip()


def _env_bool(name: str, default: bool = False) -> bool:
    value = _env(name)
    if value is None:
        return default
    return value.lower() in _BOOL_TRUTHY


def _env_int(name: str, default: int) -> int:
    value = _env(name)
    if value is None:
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _env_float(name: str, default: float) -> float:
    value = _env(name)
    if value is None:
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _env_optional_int(name: str) -> Optional[int]:
    value = _env(name)
    if not value:
        return None
    try:
        return int(value)
    except ValueError:
        return None


@dataclass(frozen=True)
class CaptureSettings:
    sample_rate: int
    channels: int
    flush_interval_ms: int
    device: Optional[int]


@dataclass(frozen=True)
class ModelSettings:
    model_id: str
    device: str
    adapter_path: Optional[str]
    cache_dir: Optional[str]
    execution: str  # "thread" or "process"


@dataclass(frozen=True)
class TranscriptionSettings:
    language: Optional[str]
    task: str
    chunk_length_s: float
    stride_length_s: float
    refresh_interval_s: float
    refresh_mode: str  # "full" or "incremental"
    vocabulary_profile: Optional[str]
    profiles_file: Optional[str]
    recordings_dir: Optional[str]


@dataclass(frozen=True)
class VadSettings:
    enabled: bool
    aggressiveness: int
    frame_ms: int
    min_speech_ms: int


@dataclass(frozen=True)
class LogSettings:
    level: str
    file: Optional[str]
    max_bytes: int
    backup_count: int


@dataclass(frozen=True)
class ServerSettings:
    host: str
    port: int


@dataclass(frozen=True)
class Settings:
    capture: CaptureSettings
    model: ModelSettings
    transcription: TranscriptionSettings
    vad: VadSettings
    log: LogSettings
    server: ServerSettings


def load_settings() -> Settings:
    """Load settings from the environment (and .env) with sensible defaults."""

    load_dotenv()

    capture = CaptureSettings(
        sample_rate=_env_int("CAPTURE_SAMPLE_RATE", 16000),
        channels=_env_int("CAPTURE_CHANNELS", 1),
        flush_interval_ms=_env_int("CAPTURE_FLUSH_INTERVAL_MS", 1000),
        device=_env_optional_int("CAPTURE_DEVICE"),
    )

    model = ModelSettings(
        model_id=_env("MODEL_ID", "openai/whisper-tiny.en"),
        device=_env("MODEL_DEVICE", "auto"),
        adapter_path=_env("MODEL_ADAPTER_PATH") or None,
        cache_dir=_env("MODEL_CACHE_DIR") or None,
        execution=(_env("EXECUTION", "thread") or "thread").lower(),
    )

    transcription = TranscriptionSettings(
        language=_env("LANGUAGE") or None,
        task=_env("TASK", "transcribe"),
        chunk_length_s=_env_float("CHUNK_LENGTH_S", 30.0),
        stride_length_s=_env_float("STRIDE_LENGTH_S", 5.0),
        refresh_interval_s=_env_float("REFRESH_INTERVAL_S", 2.0),
        refresh_mode=(_env("REFRESH_MODE", "full") or "full").lower(),
        vocabulary_profile=_env("VOCABULARY_PROFILE") or None,
        profiles_file=_env("PROFILES_FILE") or None,
        recordings_dir=_env("RECORDINGS_DIR") or None,
    )

    vad = VadSettings(
        enabled=_env_bool("VAD_ENABLED", True),
        aggressiveness=_env_int("VAD_AGGRESSIVENESS", 2),
        frame_ms=_env_int("VAD_FRAME_MS", 30),
        min_speech_ms=_env_int("VAD_MIN_SPEECH_MS", 90),
    )

    log = LogSettings(
        level=(_env("LOG_LEVEL", "INFO") or "INFO").upper(),
        file=_env("LOG_FILE", "voicescribe.log") or None,
        max_bytes=_env_int("LOG_MAX_BYTES", 5 * 1024 * 1024),
        backup_count=_env_int("LOG_BACKUP_COUNT", 2),
    )

    server = ServerSettings(
        host=_env("HOST", "127.0.0.1"),
        port=_env_int("PORT", 8000),
    )

    return Settings(
        capture=capture,
        model=model,
        transcription=transcription,
        vad=vad,
        log=log,
        server=server,
    )


settings = load_settings()

__all__ = [
    "CaptureSettings",
    "ModelSettings",
    "TranscriptionSettings",
    "VadSettings",
    "LogSettings",
    "ServerSettings",
    "Settings",
    "load_settings",
    "settings",
]
