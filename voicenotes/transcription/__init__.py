"""Live transcription module for voicenotes."""

from .base import AbstractLiveTranscriptionSource
from .reconcile import assemble_transcript
from .google_streaming import GoogleStreamingSource

__all__ = [
    "AbstractLiveTranscriptionSource",
    "assemble_transcript",
    "GoogleStreamingSource",
]
