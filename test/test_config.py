from voicescribe.config import load_settings


def test_defaults(monkeypatch):
    for name in ("MODEL_ID", "EXECUTION", "REFRESH_MODE", "REFRESH_INTERVAL_S", "VAD_ENABLED"):
        monkeypatch.delenv(f"VOICESCRIBE_{name}", raising=False)
    settings = load_settings()
    assert settings.model.model_id == "openai/whisper-tiny.en"
    assert settings.model.execution == "thread"
    assert settings.transcription.refresh_mode == "full"
    assert settings.transcription.refresh_interval_s == 2.0
    assert settings.transcription.chunk_length_s == 30.0
    assert settings.transcription.stride_length_s == 5.0
    assert settings.vad.enabled


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("VOICESCRIBE_MODEL_ID", "openai/whisper-small")
    monkeypatch.setenv("VOICESCRIBE_EXECUTION", "PROCESS")
    monkeypatch.setenv("VOICESCRIBE_REFRESH_INTERVAL_S", "0.5")
    monkeypatch.setenv("VOICESCRIBE_VAD_ENABLED", "no")
    monkeypatch.setenv("VOICESCRIBE_CAPTURE_DEVICE", "3")
    settings = load_settings()
    assert settings.model.model_id == "openai/whisper-small"
    assert settings.model.execution == "process"
    assert settings.transcription.refresh_interval_s == 0.5
    assert not settings.vad.enabled
    assert settings.capture.device == 3


def test_invalid_numbers_fall_back_to_defaults(monkeypatch):
    monkeypatch.setenv("VOICESCRIBE_PORT", "not-a-port")
    monkeypatch.setenv("VOICESCRIBE_CHUNK_LENGTH_S", "thirty")
    monkeypatch.setenv("VOICESCRIBE_CAPTURE_DEVICE", "usb")
    settings = load_settings()
    assert settings.server.port == 8000
    assert settings.transcription.chunk_length_s == 30.0
    assert settings.capture.device is None


def test_empty_log_file_disables_file_logging(monkeypatch):
    monkeypatch.setenv("VOICESCRIBE_LOG_FILE", "")
    assert load_settings().log.file is None
