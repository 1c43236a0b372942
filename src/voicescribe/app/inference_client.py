"""
Inference Client: the only owner of an ASR engine instance.

Engine calls run on a single dedicated thread so at most one transcription
touches the model at a time. Model loads run on their own threads and are
tagged with a generation number; a load that has been superseded never
reaches the caller's progress callback and its future fails with
StaleLoadError.
"""

from __future__ import annotations

import threading
from concurrent.futures import Future, ThreadPoolExecutor
from enum import Enum
from typing import Callable, Optional, Protocol

import numpy as np

from voicescribe.models.audio_data import (
    NormalizedAudioBuffer,
    RecognitionUpdate,
    TranscribeOptions,
    TranscriptionResult,
    UpdateKind,
)
from voicescribe.utils.exceptions import InferenceError, InitializationError, StaleLoadError
from voicescribe.utils.logger import get_logger

logger = get_logger("InferenceClient")

ProgressCallback = Callable[[int], None]


class AsrEngine(Protocol):
    def load(self, on_progress: Optional[Callable[[float], None]] = None) -> None: ...

    def transcribe(self, samples: np.ndarray, sample_rate: int, options: TranscribeOptions) -> TranscriptionResult: ...

    def close(self) -> None: ...


EngineFactory = Callable[[str], AsrEngine]


class BusyPolicy(Enum):
    DROP = "drop"
    QUEUE = "queue"


class WhisperEngineFactory:
    """Picklable factory so the same settings work in a worker process."""

    def __init__(self, device: str = "auto", adapter_path: Optional[str] = None, cache_dir: Optional[str] = None):
        self.device = device
        self.adapter_path = adapter_path
        self.cache_dir = cache_dir

    def __call__(self, model_id: str) -> AsrEngine:
        # Deferred so torch/transformers load only where the engine lives
        from voicescribe.app.whisper_model import WhisperAsrModel

        return WhisperAsrModel(
            model_id,
            device=self.device,
            adapter_path=self.adapter_path,
            cache_dir=self.cache_dir,
        )

    @classmethod
    def from_settings(cls, model_settings) -> "WhisperEngineFactory":
        return cls(
            device=model_settings.device,
            adapter_path=model_settings.adapter_path,
            cache_dir=model_settings.cache_dir,
        )


def clamp_progress(value: float) -> int:
    return max(0, min(100, int(round(value))))


class InferenceClient:
    """In-process client; see module docstring."""

    def __init__(self, engine_factory: EngineFactory, *, default_model_id: str = "openai/whisper-tiny.en"):
        self._engine_factory = engine_factory
        self._default_model_id = default_model_id
        self._lock = threading.Lock()
        self._executor: Optional[ThreadPoolExecutor] = None
        self._engine: Optional[AsrEngine] = None
        self._model_id: Optional[str] = None
        self._generation = 0
        self._pending = 0

    # ------------------------------------------------------------------
    # Lifecycle

    def open(self) -> "InferenceClient":
        with self._lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="inference")
        return self

    def close(self) -> None:
        with self._lock:
            executor, self._executor = self._executor, None
            engine, self._engine = self._engine, None
            self._model_id = None
            # Invalidate any load still in progress
            self._generation += 1
        if executor is not None:
            executor.shutdown(wait=True, cancel_futures=True)
        if engine is not None:
            engine.close()
        logger.info("Inference client closed")

    def __enter__(self) -> "InferenceClient":
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
            return self._engine is not None

    @property
    def busy(self) -> bool:
        with self._lock:
            return self._pending > 0

    def _is_current(self, generation: int) -> bool:
        with self._lock:
            return generation == self._generation

    # ------------------------------------------------------------------
    # Loading

    def load(self, model_id: Optional[str] = None, on_progress: Optional[ProgressCallback] = None) -> "Future[str]":
        """Start loading a model; supersedes any load still in progress."""
        model_id = model_id or self._default_model_id
        with self._lock:
            if self._executor is None:
                raise InferenceError("inference client is not open")
            self._generation += 1
            generation = self._generation

        future: "Future[str]" = Future()
        future.set_running_or_notify_cancel()
        thread = threading.Thread(
            target=self._run_load,
            args=(generation, model_id, on_progress, future),
            name=f"model-load-{generation}",
            daemon=True,
        )
        thread.start()
        logger.info(f"Loading model {model_id} (generation {generation})")
        return future

    def _run_load(self, generation: int, model_id: str, on_progress: Optional[ProgressCallback], future: "Future[str]") -> None:
        def report(value: float) -> None:
            if on_progress is not None and self._is_current(generation):
                on_progress(clamp_progress(value))

        report(0)
        try:
            engine = self._engine_factory(model_id)
            engine.load(report)
        except Exception as exc:
            if not self._is_current(generation):
                logger.debug(f"Stale load of {model_id} failed after being superseded: {exc}")
                future.set_exception(StaleLoadError(generation, self.generation))
                return
            logger.error(f"Failed to load model {model_id}: {exc}", exc_info=True)
            future.set_exception(InitializationError(f"Failed to load model {model_id}: {exc}"))
            return

        previous = None
        with self._lock:
            current = self._generation
            stale = generation != current or self._executor is None
            if not stale:
                previous, self._engine = self._engine, engine
                self._model_id = model_id
                executor = self._executor

        if stale:
            logger.debug(f"Discarding stale load of {model_id} (generation {generation}, current {current})")
            engine.close()
            future.set_exception(StaleLoadError(generation, current))
            return

        if previous is not None:
            # Runs after any in-flight transcription on the old engine
            executor.submit(previous.close)

        report(100)
        logger.info(f"Model {model_id} ready (generation {generation})")
        future.set_result(model_id)

    # ------------------------------------------------------------------
    # Transcription

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
        """Submit one buffer. Returns None when dropped because a call is pending."""
        options = (options or TranscribeOptions()).validate()
        with self._lock:
            if self._executor is None:
                raise InferenceError("inference client is not open")
            if self._pending and if_busy is BusyPolicy.DROP:
                logger.debug(f"Dropping transcription {sequence}: a call is already in flight")
                return None
            self._pending += 1
            executor = self._executor

        future = executor.submit(self._run_transcribe, buffer, options, kind, sequence, covers_from_start)
        future.add_done_callback(self._release_cancelled)
        return future

    def _release_cancelled(self, future: Future) -> None:
        # Calls cancelled by close() never reach _run_transcribe
        if future.cancelled():
            with self._lock:
                self._pending -= 1

    def _run_transcribe(
        self,
        buffer: NormalizedAudioBuffer,
        options: TranscribeOptions,
        kind: UpdateKind,
        sequence: int,
        covers_from_start: bool,
    ) -> RecognitionUpdate:
        try:
            with self._lock:
                engine = self._engine
            if engine is None:
                raise InferenceError("no model loaded")

            try:
                result = engine.transcribe(buffer.samples, buffer.sample_rate, options)
            except Exception as exc:
                logger.error(f"Transcription failed: {exc}", exc_info=True)
                raise InferenceError(f"Failed to transcribe audio: {exc}") from exc

            return RecognitionUpdate(
                kind=kind,
                text=result.text.strip(),
                sequence=sequence,
                covers_from_start=covers_from_start,
                segments=result.segments,
                duration_s=buffer.duration_s,
            )
        finally:
            with self._lock:
                self._pending -= 1
