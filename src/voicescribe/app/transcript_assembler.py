"""
Transcript Assembler

Merges the recognition updates of one recording session into a single
transcript. Partial passes arrive while audio is still being captured; the
final pass after capture stops is authoritative.
"""

import threading
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from voicescribe.models.audio_data import RecognitionUpdate
from voicescribe.utils.logger import get_logger

logger = get_logger("TranscriptAssembler")

NO_SPEECH_MARKER = "(No speech detected)"


class AssemblerState(Enum):
    IDLE = "idle"
    ACCUMULATING = "accumulating"
    FINALIZING = "finalizing"


@dataclass(frozen=True)
class TranscriptSnapshot:
    text: str
    state: AssemblerState
    no_speech: bool
    revision: int
    error: Optional[str] = None

    @property
    def display_text(self) -> str:
        return NO_SPEECH_MARKER if self.no_speech and not self.text else self.text


def _join(head: str, tail: str) -> str:
    if not head:
        return tail
    if not tail:
        return head
    return f"{head} {tail}"


class TranscriptAssembler:
    """
    State machine: IDLE -> ACCUMULATING -> FINALIZING -> IDLE.

    While accumulating, a partial update replaces the transcript when it was
    decoded from the start of the session, extends it when its text starts
    with the current text, and is otherwise appended as trailing text. An
    update whose sequence is not newer than the last applied one is ignored.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._state = AssemblerState.IDLE
        self._text = ""
        self._no_speech = False
        self._last_sequence = -1
        self._revision = 0
        self._error: Optional[str] = None

    @property
    def state(self) -> AssemblerState:
        with self._lock:
            return self._state

    @property
    def text(self) -> str:
        with self._lock:
            return self._text

    def snapshot(self) -> TranscriptSnapshot:
        with self._lock:
            return TranscriptSnapshot(
                text=self._text,
                state=self._state,
                no_speech=self._no_speech,
                revision=self._revision,
                error=self._error,
            )

    def _touch(self) -> None:
        self._revision += 1

    def begin(self) -> None:
        """Start a new recording session with an empty transcript."""
        with self._lock:
            self._state = AssemblerState.ACCUMULATING
            self._text = ""
            self._no_speech = False
            self._last_sequence = -1
            self._error = None
            self._touch()

    def finalize(self) -> None:
        """Capture stopped; wait for the authoritative final pass."""
        with self._lock:
            if self._state is AssemblerState.ACCUMULATING:
                self._state = AssemblerState.FINALIZING
                logger.debug("Finalizing transcript")

    def apply(self, update: RecognitionUpdate) -> bool:
        """Merge one update. Returns True when the transcript changed state."""
        with self._lock:
            if self._state is AssemblerState.IDLE:
                logger.debug(f"Ignoring update {update.sequence}: no active session")
                return False
            if update.sequence <= self._last_sequence:
                logger.debug(f"Ignoring out-of-order update {update.sequence} (last {self._last_sequence})")
                return False
            self._last_sequence = update.sequence

            new_text = update.text.strip()

            if update.is_terminal:
                if new_text:
                    self._text = new_text
                # An empty final pass keeps any text the partial passes found
                self._no_speech = not self._text
                self._state = AssemblerState.IDLE
                self._error = None
                self._touch()
                logger.info(f"Transcript finalized ({len(self._text)} chars)")
                return True

            if not new_text:
                return False
            if update.covers_from_start or new_text.startswith(self._text):
                self._text = new_text
            else:
                self._text = _join(self._text, new_text)
            self._touch()
            return True

    def fail(self, error: str, terminal: bool = False) -> None:
        """
        Record an inference failure without touching the displayed text.

        Only the failure of the final pass ends the session; a failed
        partial leaves the assembler waiting for the final update.
        """
        with self._lock:
            self._error = error
            if terminal and self._state is not AssemblerState.IDLE:
                self._state = AssemblerState.IDLE
            self._touch()
            logger.warning(f"Transcription pass failed, keeping transcript: {error}")

    def complete_without_speech(self) -> None:
        """End the session when the captured audio held no speech."""
        with self._lock:
            self._no_speech = not self._text
            self._state = AssemblerState.IDLE
            self._touch()

    def clear(self) -> None:
        """Explicit user Clear."""
        with self._lock:
            self._text = ""
            self._no_speech = False
            self._error = None
            self._touch()
