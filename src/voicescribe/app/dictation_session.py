"""
Dictation Session

Ties one microphone capture, one Transcript Assembler and a handle to an
Inference Client into a recording session:

  READY -> (start) -> RECORDING -> (stop) -> PROCESSING -> READY

While recording, a refresh thread periodically re-transcribes the captured
audio and merges the partial result. Stopping cancels the refresh, flushes
the capture and submits the authoritative final pass.
"""

import functools
import threading
import time
from concurrent.futures import Future
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from voicescribe.app.inference_client import BusyPolicy
from voicescribe.app.transcript_assembler import TranscriptAssembler
from voicescribe.config import Settings
from voicescribe.config import settings as default_settings
from voicescribe.data.vocabulary_profiles import ProfileNotFoundError, VocabularyProfileManager
from voicescribe.input.format_bridge import normalize_chunks
from voicescribe.input.voice_activity import AlwaysSpeech, SpeechDetector
from voicescribe.input.wav_loader import save_audio_buffer
from voicescribe.models.audio_data import AudioChunk, TranscribeOptions, UpdateKind
from voicescribe.state_manager import AppState, StateManager
from voicescribe.utils.exceptions import InferenceError, MicrophonePermissionError, StaleLoadError
from voicescribe.utils.logger import get_logger

logger = get_logger("DictationSession")

REFRESH_MODES = ("full", "incremental")

Listener = Callable[[Dict[str, Any]], None]
CaptureFactory = Callable[[Callable[[AudioChunk], None]], Any]


class DictationSession:
    """
    One user's dictation session.

    Args:
        client: InferenceClient or WorkerInferenceClient, already opened.
            The session never closes it.
        settings: Runtime settings; defaults to the module-level settings.
        capture_factory: Builds a capture object with start()/stop() that
            pushes AudioChunks to the given callback. Defaults to the
            sounddevice microphone capture.
        speech_detector: Object with contains_speech(buffer).
        state_manager: Shared StateManager; a new one is created if omitted.
        vocabulary: Vocabulary profiles used to resolve the model hint.
    """

    def __init__(
        self,
        client,
        settings: Optional[Settings] = None,
        *,
        capture_factory: Optional[CaptureFactory] = None,
        speech_detector=None,
        state_manager: Optional[StateManager] = None,
        vocabulary: Optional[VocabularyProfileManager] = None,
    ):
        self.client = client
        self.settings = settings or default_settings
        self.state_manager = state_manager or StateManager()
        self.assembler = TranscriptAssembler()
        self.vocabulary = vocabulary or VocabularyProfileManager()
        self.vocabulary_profile: Optional[str] = self.settings.transcription.vocabulary_profile

        refresh_mode = self.settings.transcription.refresh_mode
        if refresh_mode not in REFRESH_MODES:
            logger.warning(f"Unknown refresh mode {refresh_mode!r}; using 'full'")
            refresh_mode = "full"
        self.refresh_mode = refresh_mode
        self.refresh_interval_s = self.settings.transcription.refresh_interval_s

        self._capture_factory = capture_factory or self._default_capture_factory
        if speech_detector is not None:
            self._speech_detector = speech_detector
        elif self.settings.vad.enabled:
            vad = self.settings.vad
            self._speech_detector = SpeechDetector(vad.aggressiveness, vad.frame_ms, vad.min_speech_ms)
        else:
            self._speech_detector = AlwaysSpeech()

        self._lock = threading.RLock()
        self._capture = None
        self._chunks: List[AudioChunk] = []
        self._partial_cursor = 0
        self._sequence = 0
        self._epoch = 0
        self._refresh_stop: Optional[threading.Event] = None
        self._refresh_thread: Optional[threading.Thread] = None
        self._load_future: Optional[Future] = None
        self._final_future: Optional[Future] = None
        self._last_recording: Optional[Path] = None
        self._listeners: List[Listener] = []
        self._outstanding = 0
        self._settled = threading.Condition(self._lock)

        self.state_manager.register_callback(None, self._on_state_change)

    # ------------------------------------------------------------------
    # Listeners

    def add_listener(self, listener: Listener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def _emit(self, event: Dict[str, Any]) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Error in session listener: {e}")

    def _on_state_change(self, state_data, old_state) -> None:
        self._emit({
            'type': 'state_change',
            'old_state': old_state.value,
            'new_state': state_data.state.value,
            'timestamp': state_data.timestamp.isoformat(),
            'progress': state_data.progress,
            'transcript': state_data.transcript,
            'error': state_data.error,
        })

    def _emit_transcript(self, final: bool = False) -> None:
        snapshot = self.assembler.snapshot()
        self._emit({
            'type': 'transcript',
            'text': snapshot.text,
            'display_text': snapshot.display_text,
            'no_speech': snapshot.no_speech,
            'revision': snapshot.revision,
            'final': final,
            'error': snapshot.error,
        })

    # ------------------------------------------------------------------
    # Model

    def load_model(self, model_id: Optional[str] = None) -> Dict[str, Any]:
        """Start loading a model. A newer load supersedes one in progress."""
        state = self.state_manager.current_state
        if state in (AppState.RECORDING, AppState.PROCESSING):
            return {"success": False, "message": f"Cannot load a model while {state.value}"}

        model_id = model_id or self.settings.model.model_id
        self.state_manager.transition_to(AppState.LOADING, progress=0, metadata={'model': model_id})
        try:
            future = self.client.load(model_id, on_progress=self.state_manager.update_progress)
        except InferenceError as e:
            self.state_manager.handle_error(str(e))
            return {"success": False, "message": str(e)}

        with self._lock:
            self._load_future = future
        self._track(future, self._on_load_done)
        return {"success": True, "message": f"Loading {model_id}", "model": model_id}

    def _on_load_done(self, future: Future) -> None:
        with self._lock:
            if future is not self._load_future:
                return
        exc = future.exception()
        if isinstance(exc, StaleLoadError):
            logger.debug(f"Ignoring superseded load: {exc}")
            return
        if exc is not None:
            self.state_manager.handle_error(str(exc))
            return
        self.state_manager.transition_to(AppState.READY, progress=100, metadata={'model': future.result()})

    # ------------------------------------------------------------------
    # Recording

    def _default_capture_factory(self, on_chunk: Callable[[AudioChunk], None]):
        # Lazy import: sounddevice needs the PortAudio runtime
        try:
            from voicescribe.input.audio_capture import AudioConfig, MicrophoneCapture
        except (ImportError, OSError) as e:
            raise MicrophonePermissionError(f"Audio capture unavailable: {e}") from e
        return MicrophoneCapture(AudioConfig.from_settings(self.settings.capture), on_chunk=on_chunk)

    def _options(self) -> TranscribeOptions:
        cfg = self.settings.transcription
        try:
            hint = self.vocabulary.resolve_hint(self.vocabulary_profile)
        except ProfileNotFoundError as e:
            logger.warning(f"{e}; transcribing without a vocabulary hint")
            hint = None
        return TranscribeOptions(
            language=cfg.language,
            task=cfg.task,
            chunk_length_s=cfg.chunk_length_s,
            stride_length_s=cfg.stride_length_s,
            vocabulary_hint=hint,
        )

    def set_vocabulary_profile(self, name: Optional[str]) -> None:
        """Select the profile for later passes. Raises ProfileNotFoundError."""
        if name:
            self.vocabulary.get_hint(name)
        self.vocabulary_profile = name or None

    def _next_sequence(self) -> int:
        with self._lock:
            self._sequence += 1
            return self._sequence

    @property
    def is_recording(self) -> bool:
        return self.state_manager.current_state is AppState.RECORDING

    def start_recording(self) -> Dict[str, Any]:
        state = self.state_manager.current_state
        if state not in (AppState.READY, AppState.ERROR):
            return {"success": False, "message": f"Cannot start recording while {state.value}"}
        if not self.client.is_ready:
            return {"success": False, "message": "Model not loaded"}

        with self._lock:
            self._chunks = []
            self._partial_cursor = 0
            self._epoch += 1
            self._final_future = None

        try:
            capture = self._capture_factory(self._on_chunk)
            capture.start()
        except MicrophonePermissionError as e:
            logger.error(f"Microphone unavailable: {e}")
            self.state_manager.handle_error(str(e))
            return {"success": False, "message": str(e)}

        self.assembler.begin()
        stop = threading.Event()
        with self._lock:
            self._capture = capture
            self._refresh_stop = stop
            refresh_thread = threading.Thread(
                target=self._refresh_loop, args=(stop,), name="transcript-refresh", daemon=True
            )
            self._refresh_thread = refresh_thread
        self.state_manager.transition_to(AppState.RECORDING)
        refresh_thread.start()
        self._emit_transcript()
        return {"success": True, "message": "Recording started"}

    def _on_chunk(self, chunk: AudioChunk) -> None:
        with self._lock:
            self._chunks.append(chunk)
        logger.debug(f"Captured chunk {chunk.index} ({chunk.duration_s:.2f}s)")

    def _refresh_loop(self, stop: threading.Event) -> None:
        while not stop.wait(self.refresh_interval_s):
            try:
                self.refresh()
            except Exception as e:
                logger.error(f"Refresh failed: {e}", exc_info=True)

    def refresh(self) -> Optional[Future]:
        """Submit one partial pass over the audio captured so far."""
        if not self.is_recording:
            return None

        full = self.refresh_mode == "full"
        with self._lock:
            start = 0 if full else self._partial_cursor
            chunks = self._chunks[start:]
            end = len(self._chunks)
            epoch = self._epoch
        if not chunks:
            return None

        buffer = normalize_chunks(chunks)
        if not self._speech_detector.contains_speech(buffer):
            logger.debug(f"Skipping partial pass: no speech in {buffer.duration_s:.2f}s")
            if not full:
                with self._lock:
                    self._partial_cursor = end
            return None

        try:
            future = self.client.transcribe(
                buffer,
                self._options(),
                kind=UpdateKind.PARTIAL,
                sequence=self._next_sequence(),
                covers_from_start=full,
                if_busy=BusyPolicy.DROP,
            )
        except InferenceError as e:
            self.assembler.fail(str(e))
            self._emit_transcript()
            return None
        if future is None:
            return None

        with self._lock:
            self._partial_cursor = end
        self._track(future, functools.partial(self._on_partial_done, epoch))
        return future

    def _on_partial_done(self, epoch: int, future: Future) -> None:
        with self._lock:
            if epoch != self._epoch:
                return
        if future.cancelled():
            logger.debug("Partial pass cancelled")
            return
        exc = future.exception()
        if exc is not None:
            self.assembler.fail(str(exc))
            self._emit_transcript()
            return
        if self.assembler.apply(future.result()):
            self._emit_transcript()

    def stop_recording(self) -> Dict[str, Any]:
        if self.state_manager.current_state is not AppState.RECORDING:
            return {"success": False, "message": "Not recording"}
        with self._lock:
            if self._capture is None:
                return {"success": False, "message": "Not recording"}
            capture, self._capture = self._capture, None
            stop, self._refresh_stop = self._refresh_stop, None
            refresh_thread, self._refresh_thread = self._refresh_thread, None

        if stop is not None:
            stop.set()
        if refresh_thread is not None and refresh_thread is not threading.current_thread():
            refresh_thread.join()
        if capture is not None:
            try:
                capture.stop()
            except Exception as e:
                logger.error(f"Error stopping audio capture: {e}")

        self.assembler.finalize()
        with self._lock:
            chunks = list(self._chunks)

        if not chunks:
            self.assembler.complete_without_speech()
            self.state_manager.transition_to(AppState.READY, transcript=self.assembler.text)
            self._emit_transcript(final=True)
            return {"success": True, "message": "Nothing captured"}

        self.state_manager.transition_to(AppState.PROCESSING)
        buffer = normalize_chunks(chunks)
        self._archive(buffer)

        if not self._speech_detector.contains_speech(buffer):
            logger.info(f"No speech in {buffer.duration_s:.2f}s of audio")
            self.assembler.complete_without_speech()
            snapshot = self.assembler.snapshot()
            self.state_manager.transition_to(AppState.READY, transcript=snapshot.display_text)
            self._emit_transcript(final=True)
            return {"success": True, "message": "No speech detected"}

        try:
            future = self.client.transcribe(
                buffer,
                self._options(),
                kind=UpdateKind.TERMINAL,
                sequence=self._next_sequence(),
                covers_from_start=True,
                if_busy=BusyPolicy.QUEUE,
            )
        except InferenceError as e:
            self.assembler.fail(str(e), terminal=True)
            self.state_manager.handle_error(str(e))
            self._emit_transcript(final=True)
            return {"success": False, "message": str(e)}

        with self._lock:
            self._final_future = future
        self._track(future, self._on_final_done)
        return {"success": True, "message": f"Transcribing {buffer.duration_s:.1f}s of audio"}

    def _on_final_done(self, future: Future) -> None:
        if future.cancelled():
            exc = InferenceError("Final transcription pass was cancelled")
        else:
            exc = future.exception()
        if exc is not None:
            self.assembler.fail(str(exc), terminal=True)
            self.state_manager.handle_error(str(exc))
            self._emit_transcript(final=True)
            return
        self.assembler.apply(future.result())
        snapshot = self.assembler.snapshot()
        self.state_manager.transition_to(AppState.READY, transcript=snapshot.display_text)
        self._emit_transcript(final=True)

    def _archive(self, buffer) -> None:
        folder = self.settings.transcription.recordings_dir
        if not folder:
            return
        path = Path(folder) / f"recording-{int(time.time() * 1000)}.wav"
        try:
            self._last_recording = save_audio_buffer(buffer, path)
            logger.info(f"Saved recording to {path}")
        except OSError as e:
            logger.error(f"Failed to save recording to {path}: {e}")

    # ------------------------------------------------------------------
    # Transcript commands

    def copy_text(self) -> str:
        """Text for the clipboard; the no-speech marker is never copied."""
        return self.assembler.text

    def clear(self) -> None:
        self.assembler.clear()
        self._emit_transcript()

    def _track(self, future: Future, callback: Callable[[Future], None]) -> None:
        with self._lock:
            self._outstanding += 1

        def done(f: Future) -> None:
            try:
                callback(f)
            finally:
                with self._lock:
                    self._outstanding -= 1
                    self._settled.notify_all()

        future.add_done_callback(done)

    def drain(self, timeout: Optional[float] = None) -> bool:
        """Wait until every submitted load and pass has been applied."""
        with self._lock:
            return self._settled.wait_for(lambda: self._outstanding == 0, timeout)

    def status(self) -> Dict[str, Any]:
        info = self.state_manager.get_state_info()
        snapshot = self.assembler.snapshot()
        with self._lock:
            captured = sum(chunk.duration_s for chunk in self._chunks)
        info.update({
            'transcript': snapshot.text,
            'display_text': snapshot.display_text,
            'no_speech': snapshot.no_speech,
            'transcript_error': snapshot.error,
            'model': self.client.model_id,
            'busy': self.client.busy,
            'captured_seconds': round(captured, 3),
            'vocabulary_profile': self.vocabulary_profile,
            'last_recording': str(self._last_recording) if self._last_recording else None,
        })
        return info

    def close(self) -> None:
        """Stop any active capture. The inference client stays open."""
        with self._lock:
            capture, self._capture = self._capture, None
            stop, self._refresh_stop = self._refresh_stop, None
        if stop is not None:
            stop.set()
        if capture is not None:
            try:
                capture.stop()
            except Exception as e:
                logger.error(f"Error stopping audio capture: {e}")
