"""WebRTC voice-activity check used to skip inference on silent audio."""

from typing import Optional

import numpy as np
import webrtcvad

from voicescribe.input.format_bridge import float_to_pcm16
from voicescribe.models.audio_data import NormalizedAudioBuffer
from voicescribe.utils.logger import get_logger

logger = get_logger("VoiceActivity")

VAD_FRAME_DURATIONS_MS = (10, 20, 30)


class SpeechDetector:
    """Counts voiced frames in a 16 kHz buffer."""

    def __init__(
        self,
        aggressiveness: int = 2,
        frame_ms: int = 30,
        min_speech_ms: int = 90,
        energy_threshold: Optional[float] = None,
    ):
        if frame_ms not in VAD_FRAME_DURATIONS_MS:
            raise ValueError(f"frame_ms must be one of {VAD_FRAME_DURATIONS_MS}, got {frame_ms}")
        if not 0 <= aggressiveness <= 3:
            raise ValueError(f"aggressiveness must be between 0 and 3, got {aggressiveness}")

        self.frame_ms = frame_ms
        self.min_speech_frames = max(1, int(np.ceil(min_speech_ms / frame_ms)))
        self.energy_threshold = energy_threshold
        self._vad = webrtcvad.Vad(aggressiveness)

    def voiced_frames(self, buffer: NormalizedAudioBuffer) -> int:
        frame_size = buffer.sample_rate * self.frame_ms // 1000
        pcm = float_to_pcm16(buffer.samples)
        voiced = 0
        for start in range(0, len(pcm) - frame_size + 1, frame_size):
            frame = pcm[start:start + frame_size]
            if self._is_speech(frame, buffer.sample_rate):
                voiced += 1
        return voiced

    def contains_speech(self, buffer: NormalizedAudioBuffer) -> bool:
        voiced = self.voiced_frames(buffer)
        logger.debug(f"{voiced} voiced frames in {buffer.duration_s:.2f}s of audio")
        return voiced >= self.min_speech_frames

    def _is_speech(self, frame: np.ndarray, sample_rate: int) -> bool:
        is_speech = self._vad.is_speech(frame.tobytes(), sample_rate)
        if self.energy_threshold is not None and not is_speech:
            energy = float(np.sqrt(np.mean(frame.astype(np.float32) ** 2)))
            return energy > self.energy_threshold
        return is_speech


class AlwaysSpeech:
    """Stand-in detector used when voice-activity detection is disabled."""

    def contains_speech(self, buffer: NormalizedAudioBuffer) -> bool:
        return len(buffer) > 0
