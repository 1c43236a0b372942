"""Message schema exchanged with the out-of-process transcription worker."""

from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CommandKind(str, Enum):
    LOAD = "load"
    TRANSCRIBE = "transcribe"
    FINALIZE = "finalize"
    SHUTDOWN = "shutdown"


class StatusKind(str, Enum):
    INITIATE = "initiate"
    PROGRESS = "progress"
    READY = "ready"
    UPDATE = "update"
    COMPLETE = "complete"
    ERROR = "error"


class _WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="python")


class WorkerRequest(_WireModel):
    """Request sent to the worker; audio travels as PCM16 WAV bytes."""

    command_kind: CommandKind
    correlation_id: str
    audio_payload: Optional[bytes] = None
    sample_rate: int = 16000
    model_id: Optional[str] = None
    language: Optional[str] = None
    task: str = "transcribe"
    chunk_length_seconds: float = 30.0
    stride_length_seconds: float = 5.0
    vocabulary_hint: Optional[str] = None
    sequence: int = 0
    covers_from_start: bool = True


class WorkerResponse(_WireModel):
    """Status message posted back by the worker for a given correlation id."""

    status_kind: StatusKind
    correlation_id: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
