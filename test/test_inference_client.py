import threading

import numpy as np
import pytest

from conftest import FakeEngineFactory
from voicescribe.app.inference_client import BusyPolicy, InferenceClient, clamp_progress
from voicescribe.models.audio_data import NormalizedAudioBuffer, TranscribeOptions, UpdateKind
from voicescribe.utils.exceptions import InferenceError, InitializationError, StaleLoadError


def one_second():
    return NormalizedAudioBuffer(samples=np.zeros(16000, dtype=np.float32))


def test_transcribe_requires_open_client(engine_factory):
    client = InferenceClient(engine_factory)
    with pytest.raises(InferenceError):
        client.transcribe(one_second())


def test_transcribe_without_model_fails(client):
    future = client.transcribe(one_second())
    with pytest.raises(InferenceError):
        future.result(timeout=5)


def test_load_reports_progress_and_becomes_ready(client, engine_factory):
    progress = []
    assert client.load("fake/a", on_progress=progress.append).result(timeout=5) == "fake/a"
    assert client.is_ready
    assert client.model_id == "fake/a"
    assert progress[0] == 0
    assert progress[-1] == 100
    assert progress == sorted(progress)


def test_transcribe_returns_tagged_update(client, engine_factory):
    client.load("fake/a").result(timeout=5)
    update = client.transcribe(
        one_second(), TranscribeOptions(), kind=UpdateKind.PARTIAL, sequence=7, covers_from_start=False
    ).result(timeout=5)
    assert update.text == "hello world"
    assert update.kind is UpdateKind.PARTIAL
    assert update.sequence == 7
    assert not update.covers_from_start
    assert update.duration_s == pytest.approx(1.0)
    assert engine_factory.calls[0][:2] == (16000, 16000)


def test_at_most_one_call_in_flight(client, engine_factory):
    """Queued calls run one after another, never concurrently."""
    client.load("fake/a").result(timeout=5)
    gate = threading.Event()
    engine_factory.gate = gate
    futures = [client.transcribe(one_second(), sequence=i) for i in range(4)]
    assert engine_factory.started.wait(5)
    assert client.busy
    gate.set()
    for f in futures:
        f.result(timeout=5)
    assert engine_factory.max_active == 1
    assert not client.busy


def test_drop_policy_skips_when_busy(client, engine_factory):
    client.load("fake/a").result(timeout=5)
    gate = threading.Event()
    engine_factory.gate = gate
    first = client.transcribe(one_second(), if_busy=BusyPolicy.DROP)
    assert engine_factory.started.wait(5)
    assert client.transcribe(one_second(), if_busy=BusyPolicy.DROP) is None
    queued = client.transcribe(one_second(), if_busy=BusyPolicy.QUEUE)
    assert queued is not None
    gate.set()
    first.result(timeout=5)
    queued.result(timeout=5)
    assert len(engine_factory.calls) == 2


def test_engine_failure_is_wrapped(client, engine_factory):
    client.load("fake/a").result(timeout=5)
    engine_factory.fail_transcribe = True
    future = client.transcribe(one_second())
    with pytest.raises(InferenceError) as info:
        future.result(timeout=5)
    assert isinstance(info.value.__cause__, RuntimeError)
    assert not client.busy


def test_load_failure_raises_initialization_error(client, engine_factory):
    engine_factory.fail_load.add("fake/broken")
    with pytest.raises(InitializationError):
        client.load("fake/broken").result(timeout=5)
    assert not client.is_ready


def test_superseded_load_is_discarded():
    """A slow load finishing after a newer one never replaces it."""
    factory = FakeEngineFactory()
    slow_gate = threading.Event()
    factory.load_gates["fake/slow"] = slow_gate
    progress = []
    with InferenceClient(factory) as client:
        slow = client.load("fake/slow", on_progress=lambda p: progress.append(("slow", p)))
        fast = client.load("fake/fast", on_progress=lambda p: progress.append(("fast", p)))
        assert fast.result(timeout=5) == "fake/fast"
        slow_gate.set()
        with pytest.raises(StaleLoadError):
            slow.result(timeout=5)
        assert client.model_id == "fake/fast"
        slow_engine = next(e for e in factory.engines if e.model_id == "fake/slow")
        assert slow_engine.closed
        assert ("slow", 50) not in progress
        assert ("slow", 100) not in progress


def test_reload_closes_previous_engine(client, engine_factory):
    client.load("fake/a").result(timeout=5)
    client.load("fake/b").result(timeout=5)
    # The old engine is closed on the inference thread
    client.transcribe(one_second()).result(timeout=5)
    first = engine_factory.engines[0]
    assert first.model_id == "fake/a"
    assert first.closed


def test_close_releases_engine(engine_factory):
    client = InferenceClient(engine_factory).open()
    client.load("fake/a").result(timeout=5)
    client.close()
    assert engine_factory.engines[0].closed
    assert not client.is_ready


def test_invalid_options_rejected(client):
    with pytest.raises(ValueError):
        client.transcribe(one_second(), TranscribeOptions(chunk_length_s=10, stride_length_s=5))


def test_clamp_progress():
    assert clamp_progress(-3) == 0
    assert clamp_progress(42.4) == 42
    assert clamp_progress(250) == 100


def test_close_cancels_queued_calls_and_reopen_is_idle(engine_factory):
    client = InferenceClient(engine_factory).open()
    client.load("fake/a").result(timeout=5)
    gate = threading.Event()
    engine_factory.gate = gate
    running = client.transcribe(one_second())
    assert engine_factory.started.wait(5)
    queued = client.transcribe(one_second())

    threading.Timer(0.2, gate.set).start()
    client.close()
    assert queued.cancelled()
    assert running.result(timeout=5).text == "hello world"
    assert not client.busy

    client.open()
    client.load("fake/a").result(timeout=5)
    again = client.transcribe(one_second(), if_busy=BusyPolicy.DROP)
    assert again is not None
    again.result(timeout=5)
    client.close()
