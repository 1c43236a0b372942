from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Tuple

import numpy as np

TARGET_SAMPLE_RATE = 16_000
VALID_TASKS = ("transcribe", "translate")


def _readonly(samples: np.ndarray) -> np.ndarray:
    array = np.array(samples, dtype=np.float32, copy=True).reshape(-1)
    array.setflags(write=False)
    return array


@dataclass(frozen=True)
class AudioChunk:
    """A span of captured mono samples at the capture device's rate."""

    samples: np.ndarray   # float32 audio samples
    sample_rate: int      # sample rate in Hz
    captured_at: float    # unix timestamp of the flush
    index: int = 0

    def __post_init__(self):
        object.__setattr__(self, "samples", _readonly(self.samples))

    @property
    def duration_s(self) -> float:
        return len(self.samples) / float(self.sample_rate) if self.sample_rate else 0.0


@dataclass(frozen=True)
class NormalizedAudioBuffer:
    """Mono 16 kHz float32 samples in [-1, 1]; what the ASR engine consumes."""

    samples: np.ndarray
    sample_rate: int = TARGET_SAMPLE_RATE

    def __post_init__(self):
        if self.sample_rate != TARGET_SAMPLE_RATE:
            raise ValueError(
                f"NormalizedAudioBuffer must be {TARGET_SAMPLE_RATE} Hz, got {self.sample_rate}"
            )
        object.__setattr__(self, "samples", _readonly(np.clip(self.samples, -1.0, 1.0)))

    @property
    def duration_s(self) -> float:
        return len(self.samples) / float(self.sample_rate)

    def __len__(self) -> int:
        return len(self.samples)


@dataclass
class TranscribeOptions:
    language: Optional[str] = None
    task: str = "transcribe"
    chunk_length_s: float = 30.0
    stride_length_s: float = 5.0
    vocabulary_hint: Optional[str] = None

    def validate(self) -> "TranscribeOptions":
        if self.task not in VALID_TASKS:
            raise ValueError(f"task must be one of {VALID_TASKS}, got {self.task!r}")
        if self.chunk_length_s <= 0:
            raise ValueError("chunk_length_s must be positive")
        if self.stride_length_s < 0 or self.stride_length_s * 2 >= self.chunk_length_s:
            raise ValueError("stride_length_s must be less than half of chunk_length_s")
        return self


class UpdateKind(Enum):
    PARTIAL = "partial"
    TERMINAL = "terminal"


@dataclass(frozen=True)
class Segment:
    text: str
    start: Optional[float] = None
    end: Optional[float] = None


@dataclass(frozen=True)
class TranscriptionResult:
    """Raw engine output before it is tagged as a recognition update."""

    text: str
    segments: Tuple[Segment, ...] = ()


@dataclass(frozen=True)
class RecognitionUpdate:
    kind: UpdateKind
    text: str
    sequence: int = 0
    covers_from_start: bool = True
    segments: Tuple[Segment, ...] = ()
    duration_s: Optional[float] = None
    correlation_id: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.kind is UpdateKind.TERMINAL

    def to_payload(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "text": self.text,
            "sequence": self.sequence,
            "coversFromStart": self.covers_from_start,
            "segments": [
                {"text": s.text, "start": s.start, "end": s.end} for s in self.segments
            ],
            "durationSeconds": self.duration_s,
        }

    @classmethod
    def from_payload(cls, payload: Dict[str, Any], correlation_id: Optional[str] = None) -> "RecognitionUpdate":
        return cls(
            kind=UpdateKind(payload.get("kind", UpdateKind.TERMINAL.value)),
            text=payload.get("text", ""),
            sequence=int(payload.get("sequence", 0)),
            covers_from_start=bool(payload.get("coversFromStart", True)),
            segments=tuple(
                Segment(text=s.get("text", ""), start=s.get("start"), end=s.get("end"))
                for s in payload.get("segments", [])
            ),
            duration_s=payload.get("durationSeconds"),
            correlation_id=correlation_id,
        )

