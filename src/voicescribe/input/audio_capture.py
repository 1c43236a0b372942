"""
Microphone capture for dictation.
Buffers input from sounddevice and pushes a fixed-interval AudioChunk to a
callback until stopped.
"""

import time
from threading import Lock
from typing import Any, Callable, Dict, List, Optional

import numpy as np
import sounddevice as sd

from voicescribe.models.audio_data import AudioChunk
from voicescribe.utils.exceptions import MicrophonePermissionError
from voicescribe.utils.logger import get_logger

logger = get_logger("AudioCapture")


class AudioConfig:
    """Configuration for microphone capture"""

    def __init__(
        self,
        sample_rate: int = 16000,
        channels: int = 1,
        flush_interval_ms: int = 1000,
        block_duration_ms: int = 30,
        device: Optional[int] = None
    ):
        self.sample_rate = sample_rate
        self.channels = channels
        self.flush_interval_ms = flush_interval_ms
        self.block_duration_ms = block_duration_ms
        self.device = device

        # Derived parameters
        self.block_size = int(sample_rate * block_duration_ms / 1000)
        self.flush_frames = int(sample_rate * flush_interval_ms / 1000)

    def validate(self) -> bool:
        if self.sample_rate <= 0 or self.channels < 1:
            logger.warning(f"Invalid capture format: {self.sample_rate}Hz, {self.channels} channel(s)")
            return False
        if self.flush_interval_ms < self.block_duration_ms:
            logger.warning(
                f"Flush interval {self.flush_interval_ms}ms is shorter than one block ({self.block_duration_ms}ms)"
            )
            return False
        return True

    @classmethod
    def from_settings(cls, capture_settings) -> "AudioConfig":
        return cls(
            sample_rate=capture_settings.sample_rate,
            channels=capture_settings.channels,
            flush_interval_ms=capture_settings.flush_interval_ms,
            device=capture_settings.device,
        )


class AudioState:
    IDLE = "idle"
    RECORDING = "recording"
    STOPPED = "stopped"


class MicrophoneCapture:
    def __init__(
        self,
        config: Optional[AudioConfig] = None,
        on_chunk: Optional[Callable[[AudioChunk], None]] = None
    ):
        self.config = config or AudioConfig()
        if not self.config.validate():
            raise ValueError("Invalid audio configuration")

        self.on_chunk = on_chunk
        self.state = AudioState.IDLE
        self.state_lock = Lock()
        self._pending: List[np.ndarray] = []
        self._pending_frames = 0
        self._buffer_lock = Lock()
        self._chunk_index = 0
        self.stream: Optional[sd.InputStream] = None

        self.stats = {
            'chunks_emitted': 0,
            'total_audio_seconds': 0.0,
            'stream_errors': 0,
            'callback_errors': 0
        }

        logger.info(f"AudioCapture initialized: {self.config.sample_rate}Hz, flush every {self.config.flush_interval_ms}ms")

    def _set_state(self, new_state: str):
        with self.state_lock:
            old_state = self.state
            self.state = new_state
            if old_state != new_state:
                logger.debug(f"State transition: {old_state} -> {new_state}")

    def _get_state(self) -> str:
        with self.state_lock:
            return self.state

    def _to_mono(self, indata: np.ndarray) -> np.ndarray:
        if indata.ndim == 1:
            return indata.astype(np.float32)
        if indata.shape[1] == 1:
            return indata[:, 0].astype(np.float32)
        return indata.mean(axis=1).astype(np.float32)

    def _audio_callback(self, indata, frames, time_info, status):
        if status:
            logger.warning(f"Audio stream status: {status}")
            self.stats['stream_errors'] += 1

        if self._get_state() != AudioState.RECORDING:
            return

        chunk = None
        with self._buffer_lock:
            self._pending.append(self._to_mono(indata).copy())
            self._pending_frames += frames
            if self._pending_frames >= self.config.flush_frames:
                chunk = self._take_chunk()

        if chunk is not None:
            self._emit(chunk)

    def _take_chunk(self) -> Optional[AudioChunk]:
        if not self._pending:
            return None
        samples = np.concatenate(self._pending)
        self._pending = []
        self._pending_frames = 0
        chunk = AudioChunk(
            samples=samples,
            sample_rate=self.config.sample_rate,
            captured_at=time.time(),
            index=self._chunk_index,
        )
        self._chunk_index += 1
        return chunk

    def _emit(self, chunk: AudioChunk):
        self.stats['chunks_emitted'] += 1
        self.stats['total_audio_seconds'] += chunk.duration_s
        logger.debug(f"Chunk {chunk.index} ready: {chunk.duration_s:.2f}s")
        if self.on_chunk:
            try:
                self.on_chunk(chunk)
            except Exception as e:
                self.stats['callback_errors'] += 1
                logger.error(f"Error in chunk callback: {e}", exc_info=True)

    def start(self):
        if self._get_state() == AudioState.RECORDING:
            logger.warning("Audio capture already running")
            return

        with self._buffer_lock:
            self._pending = []
            self._pending_frames = 0
            self._chunk_index = 0
        self._set_state(AudioState.RECORDING)

        try:
            self.stream = sd.InputStream(
                device=self.config.device,
                channels=self.config.channels,
                samplerate=self.config.sample_rate,
                blocksize=self.config.block_size,
                dtype='float32',
                callback=self._audio_callback
            )
            self.stream.start()
            logger.info("Audio capture started")

        except sd.PortAudioError as e:
            logger.error(f"Failed to open microphone: {e}")
            self._set_state(AudioState.IDLE)
            self.stream = None
            raise MicrophonePermissionError(f"Microphone access denied or not supported: {e}") from e

    def stop(self):
        """Stop the stream and flush whatever is left as a final chunk."""
        if self._get_state() != AudioState.RECORDING:
            return
        logger.info("Stopping audio capture...")
        self._set_state(AudioState.STOPPED)
        if self.stream is not None:
            self.stream.stop()
            self.stream.close()
            self.stream = None

        with self._buffer_lock:
            tail = self._take_chunk()
        if tail is not None:
            self._emit(tail)

        self._set_state(AudioState.IDLE)
        logger.info("Audio capture stopped")

    def get_stats(self) -> Dict[str, Any]:
        return self.stats.copy()

    @staticmethod
    def list_audio_devices() -> List[Dict[str, Any]]:
        input_devices = []
        for idx, device in enumerate(sd.query_devices()):
            if device['max_input_channels'] > 0:
                input_devices.append({
                    'index': idx,
                    'name': device['name'],
                    'channels': device['max_input_channels'],
                    'default_samplerate': device.get('default_samplerate'),
                })
        return input_devices
