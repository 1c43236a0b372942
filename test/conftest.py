import os
import threading
import time
from dataclasses import replace

import numpy as np
import pytest

# Keep test runs from writing voicescribe.log into the working directory
os.environ.setdefault("VOICESCRIBE_LOG_FILE", "")

from voicescribe.config import load_settings  # noqa: E402
from voicescribe.models.audio_data import AudioChunk, Segment, TranscriptionResult  # noqa: E402
from voicescribe.utils.exceptions import MicrophonePermissionError  # noqa: E402


class FakeEngine:
    """Stands in for WhisperAsrModel; behaviour is driven by its factory."""

    def __init__(self, factory, model_id):
        self.factory = factory
        self.model_id = model_id
        self.closed = False
        self.calls = []

    def load(self, on_progress=None):
        gate = self.factory.load_gates.get(self.model_id)
        if gate is not None:
            gate.wait(5)
        if on_progress is not None:
            on_progress(50)
        if self.model_id in self.factory.fail_load:
            raise RuntimeError("weights missing")

    def transcribe(self, samples, sample_rate, options):
        factory = self.factory
        with factory.lock:
            factory.active += 1
            factory.max_active = max(factory.max_active, factory.active)
        try:
            factory.started.set()
            if factory.gate is not None:
                factory.gate.wait(5)
            with factory.lock:
                fail = factory.fail_transcribe or factory.fail_next > 0
                factory.fail_next = max(0, factory.fail_next - 1)
            if fail:
                raise RuntimeError("decoder exploded")
            self.calls.append((len(samples), sample_rate, options))
            factory.calls.append((len(samples), sample_rate, options))
            text = factory.texts.pop(0) if factory.texts else factory.default_text
            duration = len(samples) / float(sample_rate)
            segments = (Segment(text=text, start=0.0, end=duration),) if text else ()
            return TranscriptionResult(text=text, segments=segments)
        finally:
            with factory.lock:
                factory.active -= 1

    def close(self):
        self.closed = True


class FakeEngineFactory:
    def __init__(self, default_text="hello world"):
        self.default_text = default_text
        self.texts = []
        self.gate = None
        self.load_gates = {}
        self.fail_load = set()
        self.fail_transcribe = False
        # Number of upcoming transcribe calls that raise
        self.fail_next = 0
        self.engines = []
        self.calls = []
        self.lock = threading.Lock()
        self.active = 0
        self.max_active = 0
        self.started = threading.Event()

    def __call__(self, model_id):
        engine = FakeEngine(self, model_id)
        self.engines.append(engine)
        return engine


class FakeCapture:
    def __init__(self, on_chunk, fail=False, tail=()):
        self.on_chunk = on_chunk
        self.fail = fail
        self.tail = list(tail)
        self.started = False
        self.stopped = False

    def start(self):
        if self.fail:
            raise MicrophonePermissionError()
        self.started = True

    def push(self, chunk):
        self.on_chunk(chunk)

    def stop(self):
        for chunk in self.tail:
            self.on_chunk(chunk)
        self.stopped = True


class FakeCaptureFactory:
    def __init__(self):
        self.fail = False
        self.tail = []
        self.captures = []

    def __call__(self, on_chunk):
        capture = FakeCapture(on_chunk, fail=self.fail, tail=self.tail)
        self.captures.append(capture)
        return capture

    @property
    def last(self):
        return self.captures[-1]


class StubDetector:
    def __init__(self, speech=True):
        self.speech = speech

    def contains_speech(self, buffer):
        return self.speech and len(buffer) > 0


def make_chunk(seconds=1.0, sample_rate=16000, index=0, amplitude=0.0, frequency=440.0):
    n = int(seconds * sample_rate)
    if amplitude:
        t = np.arange(n) / sample_rate
        samples = amplitude * np.sin(2 * np.pi * frequency * t)
    else:
        samples = np.zeros(n)
    return AudioChunk(samples=samples.astype(np.float32), sample_rate=sample_rate,
                      captured_at=time.time(), index=index)


def make_settings(**transcription):
    base = load_settings()
    defaults = {"refresh_interval_s": 3600.0, "refresh_mode": "full", "vocabulary_profile": None,
                "profiles_file": None, "recordings_dir": None}
    defaults.update(transcription)
    return replace(base, transcription=replace(base.transcription, **defaults))


@pytest.fixture
def engine_factory():
    return FakeEngineFactory()


@pytest.fixture
def capture_factory():
    return FakeCaptureFactory()


@pytest.fixture
def client(engine_factory):
    from voicescribe.app.inference_client import InferenceClient

    c = InferenceClient(engine_factory, default_model_id="fake/model").open()
    yield c
    c.close()
