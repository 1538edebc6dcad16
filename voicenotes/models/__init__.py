"""Data models for the voicenotes application."""

from .session import CaptureSession, FinishedArtifact, SessionSnapshot, SessionStatus
from .events import (
    AudioEvent,
    AudioFormat,
    CaptureStopped,
    RecognizerError,
    TranscriptSegment,
    TranscriptionEvent,
)
from .notes import Note, NoteAudio, Summary

__all__ = [
    "CaptureSession",
    "FinishedArtifact",
    "SessionSnapshot",
    "SessionStatus",
    "AudioEvent",
    "AudioFormat",
    "CaptureStopped",
    "RecognizerError",
    "TranscriptSegment",
    "TranscriptionEvent",
    # Notes API models
    "Note",
    "NoteAudio",
    "Summary",
]
