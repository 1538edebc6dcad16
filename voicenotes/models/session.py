"""Session-related data models."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, List, Optional


class SessionStatus(Enum):
    """Lifecycle state of the session controller."""
    IDLE = "idle"
    RECORDING = "recording"
    TRANSCRIBING = "transcribing"
    PROCESSING = "processing"


def new_session_id() -> str:
    """Create an opaque, unique session token."""
    return uuid.uuid4().hex


@dataclass
class CaptureSession:
    """One recording attempt, from start until submission or cancellation.

    Only the session controller mutates these fields. Adapters keep a reference
    to ``session_id`` and echo it back on every event they deliver.
    """
    session_id: str = field(default_factory=new_session_id)
    status: SessionStatus = SessionStatus.RECORDING
    audio_chunks: List[bytes] = field(default_factory=list)
    live_transcript: str = ""
    duration_seconds: Optional[int] = None
    error: Optional[str] = None
    started_at: datetime = field(default_factory=datetime.now)

    # Per-session resources
    capture: Any = None
    transcriber: Any = None
    audio_blob: Optional[bytes] = None
    capture_stopped: Any = None  # asyncio.Future resolved by the capture stop completion
    finish_task: Any = None
    tasks: list = field(default_factory=list)

    @property
    def bytes_captured(self) -> int:
        return sum(len(chunk) for chunk in self.audio_chunks)


@dataclass
class FinishedArtifact:
    """Everything the persistence boundary needs to store one note."""
    audio_blob: bytes
    duration_seconds: int
    transcript_text: str
    derived_title: str
    session_id: str
    content_type: str = "audio/wav"
    filename: str = "note.wav"


@dataclass
class SessionSnapshot:
    """Read-only view of the controller's observable fields."""
    status: SessionStatus
    live_transcript: str = ""
    duration_seconds: Optional[int] = None
    last_error: Optional[str] = None
    session_id: Optional[str] = None
    input_level: float = 0.0
    chunk_count: int = 0
