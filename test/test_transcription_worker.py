import queue

import numpy as np
import pytest

from conftest import FakeEngineFactory
from voicescribe.app.transcription_worker import TranscriptionWorker, WorkerInferenceClient, _PendingCall
from voicescribe.input.format_bridge import encode_wav
from voicescribe.models.audio_data import NormalizedAudioBuffer, UpdateKind
from voicescribe.models.messages import CommandKind, StatusKind, WorkerRequest, WorkerResponse
from voicescribe.utils.exceptions import InferenceError, InitializationError, StaleLoadError


def make_worker(factory=None):
    posted = []
    worker = TranscriptionWorker(factory or FakeEngineFactory(), posted.append, default_model_id="fake/model")
    return worker, posted


def statuses(posted):
    return [WorkerResponse.model_validate(m).status_kind for m in posted]


def test_request_wire_format_uses_camel_case():
    request = WorkerRequest(command_kind=CommandKind.TRANSCRIBE, correlation_id="abc", covers_from_start=False)
    wire = request.to_wire()
    assert wire["commandKind"] == CommandKind.TRANSCRIBE
    assert wire["correlationId"] == "abc"
    assert wire["coversFromStart"] is False
    assert WorkerRequest.model_validate(wire) == request


def test_load_sends_initiate_progress_ready():
    worker, posted = make_worker()
    assert worker.handle(WorkerRequest(command_kind=CommandKind.LOAD, correlation_id="c1", model_id="fake/a"))
    assert statuses(posted) == [StatusKind.INITIATE, StatusKind.PROGRESS, StatusKind.READY]
    assert all(m["correlationId"] == "c1" for m in posted)


def test_load_of_loaded_model_answers_ready():
    worker, posted = make_worker()
    worker.handle(WorkerRequest(command_kind=CommandKind.LOAD, correlation_id="c1", model_id="fake/a"))
    posted.clear()
    worker.handle(WorkerRequest(command_kind=CommandKind.LOAD, correlation_id="c2", model_id="fake/a"))
    assert statuses(posted) == [StatusKind.READY]


def test_switching_models_disposes_previous_engine():
    factory = FakeEngineFactory()
    worker, _ = make_worker(factory)
    worker.handle(WorkerRequest(command_kind=CommandKind.LOAD, correlation_id="c1", model_id="fake/a"))
    worker.handle(WorkerRequest(command_kind=CommandKind.LOAD, correlation_id="c2", model_id="fake/b"))
    assert factory.engines[0].closed
    assert not factory.engines[1].closed


def test_transcribe_decodes_wav_and_answers_update():
    factory = FakeEngineFactory()
    worker, posted = make_worker(factory)
    audio = encode_wav(np.zeros(8000), 8000)
    worker.handle(WorkerRequest(command_kind=CommandKind.TRANSCRIBE, correlation_id="c3",
                                audio_payload=audio, sample_rate=8000, sequence=4))
    last = WorkerResponse.model_validate(posted[-1])
    assert last.status_kind is StatusKind.UPDATE
    assert last.correlation_id == "c3"
    assert last.payload["kind"] == "partial"
    assert last.payload["sequence"] == 4
    assert last.payload["text"] == "hello world"
    # Resampled to 16 kHz before reaching the engine
    assert factory.calls[0][:2] == (16000, 16000)


def test_finalize_answers_complete():
    worker, posted = make_worker()
    worker.handle(WorkerRequest(command_kind=CommandKind.FINALIZE, correlation_id="c4",
                                audio_payload=encode_wav(np.zeros(1600), 16000)))
    last = WorkerResponse.model_validate(posted[-1])
    assert last.status_kind is StatusKind.COMPLETE
    assert last.payload["kind"] == "terminal"


def test_bad_audio_answers_error_with_correlation_id():
    worker, posted = make_worker()
    worker.handle(WorkerRequest(command_kind=CommandKind.TRANSCRIBE, correlation_id="c5", audio_payload=b"junk"))
    last = WorkerResponse.model_validate(posted[-1])
    assert last.status_kind is StatusKind.ERROR
    assert last.correlation_id == "c5"
    assert last.payload["phase"] == "transcribe"


def test_shutdown_stops_the_loop():
    worker, _ = make_worker()
    assert worker.handle(WorkerRequest(command_kind=CommandKind.SHUTDOWN, correlation_id="c6")) is False


def test_dispatch_routes_by_correlation_id():
    """Responses settle the future of the matching request only."""
    client = WorkerInferenceClient(FakeEngineFactory())
    first, second = _PendingCall(future=_future()), _PendingCall(future=_future())
    client._calls.update({"a": first, "b": second})
    client._pending_transcriptions = 2

    payload = {"kind": "terminal", "text": "second", "sequence": 2, "coversFromStart": True, "segments": []}
    client.dispatch(WorkerResponse(status_kind=StatusKind.COMPLETE, correlation_id="b", payload=payload))

    assert not first.future.done()
    update = second.future.result(timeout=1)
    assert update.text == "second"
    assert update.kind is UpdateKind.TERMINAL
    assert update.correlation_id == "b"
    assert client._pending_transcriptions == 1


def test_dispatch_error_fails_transcription():
    client = WorkerInferenceClient(FakeEngineFactory())
    call = _PendingCall(future=_future())
    client._calls["x"] = call
    client._pending_transcriptions = 1
    client.dispatch(WorkerResponse(status_kind=StatusKind.ERROR, correlation_id="x", payload={"message": "boom"}))
    with pytest.raises(InferenceError):
        call.future.result(timeout=1)
    assert not client.busy


def test_dispatch_load_progress_and_ready():
    client = WorkerInferenceClient(FakeEngineFactory())
    progress = []
    call = _PendingCall(future=_future(), generation=1, on_progress=progress.append, is_load=True,
                        extra={"model_id": "fake/a"})
    client._generation = 1
    client._calls["l"] = call
    client.dispatch(WorkerResponse(status_kind=StatusKind.PROGRESS, correlation_id="l", payload={"progress": 40}))
    client.dispatch(WorkerResponse(status_kind=StatusKind.READY, correlation_id="l", payload={"model": "fake/a"}))
    assert call.future.result(timeout=1) == "fake/a"
    assert progress == [40, 100]
    assert client.model_id == "fake/a"


def test_dispatch_stale_load_is_discarded():
    client = WorkerInferenceClient(FakeEngineFactory())
    progress = []
    call = _PendingCall(future=_future(), generation=1, on_progress=progress.append, is_load=True)
    client._generation = 2
    client._calls["old"] = call
    client.dispatch(WorkerResponse(status_kind=StatusKind.PROGRESS, correlation_id="old", payload={"progress": 60}))
    client.dispatch(WorkerResponse(status_kind=StatusKind.READY, correlation_id="old", payload={"model": "fake/old"}))
    with pytest.raises(StaleLoadError):
        call.future.result(timeout=1)
    assert progress == []
    assert client.model_id is None


def test_dispatch_load_error():
    client = WorkerInferenceClient(FakeEngineFactory())
    call = _PendingCall(future=_future(), generation=1, is_load=True)
    client._generation = 1
    client._calls["l"] = call
    client.dispatch(WorkerResponse(status_kind=StatusKind.ERROR, correlation_id="l", payload={"message": "no weights"}))
    with pytest.raises(InitializationError):
        call.future.result(timeout=1)


def test_requests_need_running_worker():
    client = WorkerInferenceClient(FakeEngineFactory())
    with pytest.raises(InferenceError):
        client.load("fake/a")


def test_transcription_sent_during_load_uses_newly_loaded_model():
    """A transcription queued behind a model switch runs on the new engine."""
    client = WorkerInferenceClient(FakeEngineFactory(), default_model_id="fake/default")
    client._process = object()
    client._requests = queue.Queue()
    client._model_id = "fake/default"
    client.load("fake/other")
    client.transcribe(NormalizedAudioBuffer(samples=np.zeros(1600, dtype=np.float32)))
    sent = [WorkerRequest.model_validate(client._requests.get_nowait()) for _ in range(2)]
    assert [(r.command_kind, r.model_id) for r in sent] == [(CommandKind.LOAD, "fake/other"),
                                                          (CommandKind.FINALIZE, None)]

    factory = FakeEngineFactory()
    worker, posted = make_worker(factory)
    worker.handle(WorkerRequest(command_kind=CommandKind.LOAD, correlation_id="c0", model_id="fake/default"))
    for request in sent:
        worker.handle(request)
    assert [e.model_id for e in factory.engines] == ["fake/default", "fake/other"]
    assert not factory.engines[-1].closed
    assert len(factory.engines[-1].calls) == 1
    assert statuses(posted)[-1] is StatusKind.COMPLETE


def _future():
    from concurrent.futures import Future

    future = Future()
    future.set_running_or_notify_cancel()
    return future
