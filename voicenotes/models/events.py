"""Event payloads delivered by the capture and transcription adapters."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from ..errors import RecognizerErrorKind


@dataclass
class AudioEvent:
    """Audio chunk event with metadata."""
    chunk_id: str
    audio_data: bytes
    timestamp: float  # Unix timestamp when chunk was captured
    sequence_number: int
    sample_rate: int = 16000
    channels: int = 1
    chunk_duration_ms: Optional[int] = None
    final: bool = False  # True if this is the last chunk of the stream

    def __post_init__(self):
        """Calculate chunk duration if not provided."""
        if self.chunk_duration_ms is None and self.audio_data:
            # 16-bit audio (2 bytes per sample)
            bytes_per_second = self.sample_rate * self.channels * 2
            self.chunk_duration_ms = int(len(self.audio_data) / bytes_per_second * 1000)


@dataclass
class AudioFormat:
    """PCM layout of the captured audio."""
    sample_rate: int = 16000
    channels: int = 1
    sample_width: int = 2  # bytes per sample


@dataclass
class CaptureStopped:
    """Stop completion of the audio capture source."""
    duration_seconds: int
    audio_format: AudioFormat
    started_at: datetime
    stopped_at: datetime


@dataclass
class TranscriptSegment:
    """One recognized span of speech."""
    text: str
    is_final: bool = False
    confidence: Optional[float] = None


@dataclass
class TranscriptionEvent:
    """Running segment list for the whole recognized span so far."""
    session_id: str
    segments: List[TranscriptSegment] = field(default_factory=list)
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass
class RecognizerError:
    """Error or informational signal raised by the live recognizer."""
    session_id: str
    kind: RecognizerErrorKind
    detail: str = ""
    timestamp: datetime = field(default_factory=datetime.now)
