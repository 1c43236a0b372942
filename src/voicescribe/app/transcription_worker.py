"""
Out-of-process transcription.

The worker process owns one engine and handles requests strictly one at a
time. It answers every request with status messages carrying the request's
correlation id: initiate/progress/ready while a model loads, then update
(partial pass), complete (final pass) or error. Audio crosses the process
boundary as PCM16 WAV.
"""

from __future__ import annotations

import multiprocessing
import queue
import threading
import uuid
from concurrent.futures import Future
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from voicescribe.app.inference_client import BusyPolicy, EngineFactory, ProgressCallback, clamp_progress
from voicescribe.input.format_bridge import decode_wav, encode_wav, resample
from voicescribe.models.audio_data import (
    TARGET_SAMPLE_RATE,
    NormalizedAudioBuffer,
    RecognitionUpdate,
    TranscribeOptions,
    UpdateKind,
)
from voicescribe.models.messages import CommandKind, StatusKind, WorkerRequest, WorkerResponse
from voicescribe.utils.exceptions import InferenceError, InitializationError, StaleLoadError
from voicescribe.utils.logger import get_logger

logger = get_logger("TranscriptionWorker")

Post = Callable[[Dict[str, Any]], None]

# Sentinel placed on the response queue to stop the listener thread
_LISTENER_STOP = "__stop__"


class TranscriptionWorker:
    """Request handler that runs inside the worker process."""

    def __init__(self, engine_factory: EngineFactory, post: Post, default_model_id: str = "openai/whisper-tiny.en"):
        self._engine_factory = engine_factory
        self._post = post
        self._default_model_id = default_model_id
        self._engine = None
        self._model_id: Optional[str] = None

    def _send(self, status: StatusKind, correlation_id: Optional[str], **payload) -> None:
        self._post(WorkerResponse(status_kind=status, correlation_id=correlation_id, payload=payload).to_wire())

    def _ensure_engine(self, model_id: str, correlation_id: str):
        if self._engine is not None and self._model_id == model_id:
            return self._engine

        if self._engine is not None:
            logger.info(f"Disposing {self._model_id} before loading {model_id}")
            try:
                self._engine.close()
            except Exception as e:
                logger.warning(f"Error disposing previous engine: {e}")
            self._engine = None
            self._model_id = None

        self._send(StatusKind.INITIATE, correlation_id, model=model_id)
        engine = self._engine_factory(model_id)
        engine.load(lambda pct: self._send(StatusKind.PROGRESS, correlation_id, progress=clamp_progress(pct)))
        self._engine = engine
        self._model_id = model_id
        self._send(StatusKind.READY, correlation_id, model=model_id)
        return engine

    def handle(self, request: WorkerRequest) -> bool:
        """Process one request. Returns False once the worker should exit."""
        correlation_id = request.correlation_id

        if request.command_kind is CommandKind.SHUTDOWN:
            if self._engine is not None:
                self._engine.close()
                self._engine = None
            return False

        model_id = request.model_id or self._model_id or self._default_model_id
        try:
            if request.command_kind is CommandKind.LOAD:
                if self._engine is not None and self._model_id == model_id:
                    self._send(StatusKind.READY, correlation_id, model=model_id)
                else:
                    self._ensure_engine(model_id, correlation_id)
                return True

            engine = self._ensure_engine(model_id, correlation_id)
            if not request.audio_payload:
                raise ValueError("No audio provided to worker")

            decoded = decode_wav(request.audio_payload)
            samples = resample(decoded.samples, decoded.sample_rate, TARGET_SAMPLE_RATE)
            options = TranscribeOptions(
                language=request.language,
                task=request.task,
                chunk_length_s=request.chunk_length_seconds,
                stride_length_s=request.stride_length_seconds,
                vocabulary_hint=request.vocabulary_hint,
            ).validate()
            result = engine.transcribe(samples, TARGET_SAMPLE_RATE, options)

            final = request.command_kind is CommandKind.FINALIZE
            update = RecognitionUpdate(
                kind=UpdateKind.TERMINAL if final else UpdateKind.PARTIAL,
                text=result.text.strip(),
                sequence=request.sequence,
                covers_from_start=request.covers_from_start,
                segments=result.segments,
                duration_s=len(samples) / float(TARGET_SAMPLE_RATE),
            )
            self._send(StatusKind.COMPLETE if final else StatusKind.UPDATE, correlation_id, **update.to_payload())
        except Exception as exc:
            logger.error(f"Worker request {correlation_id} failed: {exc}", exc_info=True)
            self._send(
                StatusKind.ERROR,
                correlation_id,
                message=str(exc),
                phase="load" if request.command_kind is CommandKind.LOAD else "transcribe",
            )
        return True


def worker_main(engine_factory: EngineFactory, requests, responses, default_model_id: str) -> None:
    """Entry point of the worker process."""
    worker = TranscriptionWorker(engine_factory, responses.put, default_model_id)
    while True:
        raw = requests.get()
        try:
            request = WorkerRequest.model_validate(raw)
        except Exception as exc:
            logger.error(f"Malformed worker request: {exc}")
            responses.put(
                WorkerResponse(
                    status_kind=StatusKind.ERROR,
                    correlation_id=raw.get("correlationId") if isinstance(raw, dict) else None,
                    payload={"message": f"Malformed request: {exc}", "phase": "transcribe"},
                ).to_wire()
            )
            continue
        if not worker.handle(request):
            break


@dataclass
class _PendingCall:
    future: Future
    generation: int = 0
    on_progress: Optional[ProgressCallback] = None
    is_load: bool = False
    extra: Dict[str, Any] = field(default_factory=dict)


class WorkerInferenceClient:
    """Inference Client whose engine lives in a separate process.

    Mirrors InferenceClient: open/load/transcribe/close, generation-checked
    loads and at most one transcription in flight.
    """

    def __init__(
        self,
        engine_factory: EngineFactory,
        *,
        default_model_id: str = "openai/whisper-tiny.en",
        start_method: str = "spawn",
    ):
        self._engine_factory = engine_factory
        self._default_model_id = default_model_id
        self._context = multiprocessing.get_context(start_method)
        self._lock = threading.Lock()
        self._calls: Dict[str, _PendingCall] = {}
        self._generation = 0
        self._pending_transcriptions = 0
        self._model_id: Optional[str] = None
        self._process = None
        self._requests = None
        self._responses = None
        self._listener: Optional[threading.Thread] = None

    # ------------------------------------------------------------------
    # Lifecycle

    def open(self) -> "WorkerInferenceClient":
        with self._lock:
            if self._process is not None:
                return self
            self._requests = self._context.Queue()
            self._responses = self._context.Queue()
            self._process = self._context.Process(
                target=worker_main,
                args=(self._engine_factory, self._requests, self._responses, self._default_model_id),
                name="transcription-worker",
                daemon=True,
            )
            self._process.start()
            self._listener = threading.Thread(target=self._listen, name="worker-listener", daemon=True)
            self._listener.start()
        logger.info(f"Transcription worker started (pid {self._process.pid})")
        return self

    def close(self, timeout: float = 5.0) -> None:
        with self._lock:
            process, self._process = self._process, None
            self._generation += 1
            self._model_id = None
        if process is None:
            return

        self._requests.put(WorkerRequest(command_kind=CommandKind.SHUTDOWN, correlation_id=uuid.uuid4().hex).to_wire())
        process.join(timeout)
        if process.is_alive():
            logger.warning("Transcription worker did not exit; terminating")
            process.terminate()
            process.join(timeout)

        self._responses.put(_LISTENER_STOP)
        if self._listener is not None:
            self._listener.join(timeout)
        self._fail_all(InferenceError("transcription worker closed"))
        logger.info("Transcription worker stopped")

    def __enter__(self) -> "WorkerInferenceClient":
        return self.open()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # ------------------------------------------------------------------
    # State

    @property
    def generation(self) -> int:
        with self._lock:
            return self._generation

    @property
    def model_id(self) -> Optional[str]:
        with self._lock:
            return self._model_id

    @property
    def is_ready(self) -> bool:
        with self._lock:
            return self._model_id is not None

    @property
    def busy(self) -> bool:
        with self._lock:
            return self._pending_transcriptions > 0

    # ------------------------------------------------------------------
    # Requests

    def _send(self, request: WorkerRequest, call: _PendingCall) -> None:
        with self._lock:
            if self._process is None:
                raise InferenceError("transcription worker is not running")
            self._calls[request.correlation_id] = call
        self._requests.put(request.to_wire())

    def load(self, model_id: Optional[str] = None, on_progress: Optional[ProgressCallback] = None) -> "Future[str]":
        model_id = model_id or self._default_model_id
        with self._lock:
            self._generation += 1
            generation = self._generation
        future: "Future[str]" = Future()
        future.set_running_or_notify_cancel()
        call = _PendingCall(future=future, generation=generation, on_progress=on_progress, is_load=True,
                            extra={"model_id": model_id})
        self._send(WorkerRequest(command_kind=CommandKind.LOAD, correlation_id=uuid.uuid4().hex, model_id=model_id), call)
        if on_progress is not None:
            on_progress(0)
        logger.info(f"Requested worker load of {model_id} (generation {generation})")
        return future

    def transcribe(
        self,
        buffer: NormalizedAudioBuffer,
        options: Optional[TranscribeOptions] = None,
        *,
        kind: UpdateKind = UpdateKind.TERMINAL,
        sequence: int = 0,
        covers_from_start: bool = True,
        if_busy: BusyPolicy = BusyPolicy.QUEUE,
    ) -> "Optional[Future[RecognitionUpdate]]":
        options = (options or TranscribeOptions()).validate()
        with self._lock:
            if self._process is None:
                raise InferenceError("transcription worker is not running")
            if self._pending_transcriptions and if_busy is BusyPolicy.DROP:
                logger.debug(f"Dropping transcription {sequence}: a call is already in flight")
                return None
            self._pending_transcriptions += 1

        future: "Future[RecognitionUpdate]" = Future()
        future.set_running_or_notify_cancel()
        request = WorkerRequest(
            command_kind=CommandKind.FINALIZE if kind is UpdateKind.TERMINAL else CommandKind.TRANSCRIBE,
            correlation_id=uuid.uuid4().hex,
            audio_payload=encode_wav(buffer.samples, buffer.sample_rate),
            sample_rate=buffer.sample_rate,
            # The worker transcribes with whatever engine its last load left
            model_id=None,
            language=options.language,
            task=options.task,
            chunk_length_seconds=options.chunk_length_s,
            stride_length_seconds=options.stride_length_s,
            vocabulary_hint=options.vocabulary_hint,
            sequence=sequence,
            covers_from_start=covers_from_start,
        )
        try:
            self._send(request, _PendingCall(future=future))
        except InferenceError:
            with self._lock:
                self._pending_transcriptions -= 1
            raise
        return future

    # ------------------------------------------------------------------
    # Responses

    def _listen(self) -> None:
        while True:
            try:
                raw = self._responses.get(timeout=1.0)
            except queue.Empty:
                with self._lock:
                    process = self._process
                if process is not None and not process.is_alive():
                    logger.error(f"Transcription worker exited with code {process.exitcode}")
                    self._fail_all(InferenceError("transcription worker exited unexpectedly"))
                    return
                continue
            if raw == _LISTENER_STOP:
                return
            try:
                self.dispatch(WorkerResponse.model_validate(raw))
            except Exception as exc:
                logger.error(f"Failed to handle worker response: {exc}", exc_info=True)

    def dispatch(self, response: WorkerResponse) -> None:
        """Route one worker response to the call with the same correlation id."""
        status = response.status_kind
        with self._lock:
            call = self._calls.get(response.correlation_id)
            current = self._generation
        if call is None:
            logger.debug(f"Ignoring {status.value} for unknown correlation id {response.correlation_id}")
            return

        if status in (StatusKind.INITIATE, StatusKind.PROGRESS):
            if call.is_load and call.on_progress is not None and call.generation == current:
                call.on_progress(clamp_progress(response.payload.get("progress", 0)))
            return

        if status is StatusKind.READY and not call.is_load:
            # Model loaded implicitly for a transcription request
            with self._lock:
                self._model_id = response.payload.get("model")
            return

        with self._lock:
            self._calls.pop(response.correlation_id, None)
            if not call.is_load:
                self._pending_transcriptions -= 1

        if status is StatusKind.ERROR:
            message = response.payload.get("message", "worker error")
            if call.is_load:
                if call.generation != current:
                    call.future.set_exception(StaleLoadError(call.generation, current))
                else:
                    call.future.set_exception(InitializationError(f"Failed to load model: {message}"))
            else:
                call.future.set_exception(InferenceError(f"Failed to transcribe audio: {message}"))
            return

        if call.is_load:
            if call.generation != current:
                logger.debug(f"Discarding stale worker load (generation {call.generation}, current {current})")
                call.future.set_exception(StaleLoadError(call.generation, current))
                return
            model_id = response.payload.get("model", call.extra.get("model_id"))
            with self._lock:
                self._model_id = model_id
            if call.on_progress is not None:
                call.on_progress(100)
            call.future.set_result(model_id)
            return

        call.future.set_result(RecognitionUpdate.from_payload(response.payload, response.correlation_id))

    def _fail_all(self, error: Exception) -> None:
        with self._lock:
            calls = list(self._calls.values())
            self._calls.clear()
            self._pending_transcriptions = 0
        for call in calls:
            if not call.future.done():
                call.future.set_exception(error)
