"""
State Manager for VoiceScribe

Tracks the dictation status shown to the presentation layer and notifies
listeners on every transition.
"""

from enum import Enum
from typing import Optional, Callable
from dataclasses import dataclass
from datetime import datetime
import threading

from voicescribe.utils.logger import get_logger

logger = get_logger("StateManager")


class AppState(Enum):
    """Application states"""
    IDLE = "idle"  # Nothing loaded yet
    LOADING = "loading"  # Model load in progress
    READY = "ready"  # Model loaded, waiting for the user to record
    RECORDING = "recording"  # Microphone open, partial passes running
    PROCESSING = "processing"  # Capture stopped, final pass running
    ERROR = "error"  # Last operation failed; user may retry


@dataclass
class StateData:
    """Data associated with current state"""
    state: AppState
    timestamp: datetime
    progress: Optional[int] = None
    transcript: Optional[str] = None
    error: Optional[str] = None
    metadata: Optional[dict] = None


class StateManager:
    """
    Centralized state management for a dictation session.

    Handles state transitions and provides callbacks for state changes.
    """

    def __init__(self):
        self._current_state = AppState.IDLE
        self._state_data = StateData(
            state=AppState.IDLE,
            timestamp=datetime.now()
        )
        self._lock = threading.RLock()
        self._callbacks = {state: [] for state in AppState}
        self._global_callbacks = []

    @property
    def current_state(self) -> AppState:
        """Get current application state"""
        with self._lock:
            return self._current_state

    @property
    def state_data(self) -> StateData:
        """Get current state data"""
        with self._lock:
            return self._state_data

    def transition_to(
        self,
        new_state: AppState,
        **kwargs
    ) -> bool:
        """
        Transition to a new state with optional data.

        Args:
            new_state: Target state
            **kwargs: Additional data for the state (progress, transcript, error, metadata)

        Returns:
            bool: True if transition was valid and successful
        """
        with self._lock:
            if not self._is_valid_transition(self._current_state, new_state):
                logger.warning(
                    f"Invalid transition from {self._current_state.value} "
                    f"to {new_state.value}"
                )
                return False

            old_state = self._current_state
            self._current_state = new_state

            self._state_data = StateData(
                state=new_state,
                timestamp=datetime.now(),
                progress=kwargs.get('progress'),
                transcript=kwargs.get('transcript'),
                error=kwargs.get('error'),
                metadata=kwargs.get('metadata')
            )

            if old_state != new_state:
                logger.info(
                    f"State transition: {old_state.value} -> {new_state.value}"
                )

            self._execute_callbacks(new_state, old_state)

            return True

    def _is_valid_transition(
        self,
        from_state: AppState,
        to_state: AppState
    ) -> bool:
        """
        Validate state transitions based on defined rules.

        Valid transitions:
        - IDLE -> LOADING
        - LOADING -> LOADING (superseding load), READY or ERROR
        - READY -> LOADING, RECORDING or ERROR
        - RECORDING -> PROCESSING, READY (nothing captured) or ERROR
        - PROCESSING -> READY or ERROR
        - ERROR -> LOADING, READY or RECORDING
        """
        valid_transitions = {
            AppState.IDLE: [AppState.LOADING],
            AppState.LOADING: [AppState.LOADING, AppState.READY, AppState.ERROR],
            AppState.READY: [AppState.LOADING, AppState.RECORDING, AppState.ERROR],
            AppState.RECORDING: [AppState.PROCESSING, AppState.READY, AppState.ERROR],
            AppState.PROCESSING: [AppState.READY, AppState.ERROR],
            AppState.ERROR: [AppState.LOADING, AppState.READY, AppState.RECORDING],
        }

        return to_state in valid_transitions.get(from_state, [])

    def register_callback(
        self,
        state: Optional[AppState],
        callback: Callable[[StateData, AppState], None]
    ):
        """
        Register a callback for state changes.

        Args:
            state: Specific state to listen for, or None for all states
            callback: Function to call on state change (receives state_data, old_state)
        """
        with self._lock:
            if state is None:
                self._global_callbacks.append(callback)
            else:
                self._callbacks[state].append(callback)

    def _execute_callbacks(self, new_state: AppState, old_state: AppState):
        """Execute registered callbacks for state transition"""
        for callback in self._callbacks[new_state]:
            try:
                callback(self._state_data, old_state)
            except Exception as e:
                logger.error(f"Error in state callback: {e}")

        for callback in self._global_callbacks:
            try:
                callback(self._state_data, old_state)
            except Exception as e:
                logger.error(f"Error in global callback: {e}")

    def handle_error(self, error: str) -> bool:
        """Transition to error state with error message"""
        return self.transition_to(AppState.ERROR, error=error)

    def update_progress(self, progress: int) -> None:
        """Record load progress without a state change (LOADING only)."""
        with self._lock:
            if self._current_state is AppState.LOADING:
                self.transition_to(AppState.LOADING, progress=progress)

    def get_state_info(self) -> dict:
        """Get current state information as dictionary"""
        with self._lock:
            return {
                'state': self._current_state.value,
                'timestamp': self._state_data.timestamp.isoformat(),
                'progress': self._state_data.progress,
                'error': self._state_data.error,
                'metadata': self._state_data.metadata
            }
