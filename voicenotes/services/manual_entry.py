"""Asking the user to type a transcript when none was recognized."""

import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Optional

logger = logging.getLogger(__name__)


class ManualEntryReason(Enum):
    """Why the controller is asking for a typed transcript."""
    NO_TRANSCRIPT = "no_transcript"
    TRANSCRIPTION_UNSUPPORTED = "transcription_unsupported"


MANUAL_ENTRY_PROMPTS = {
    ManualEntryReason.NO_TRANSCRIPT: (
        "No transcript was detected for this recording. This could mean:\n"
        "  - You didn't speak clearly enough\n"
        "  - Microphone permissions were denied\n"
        "  - Speech recognition failed to start\n"
        "  - Speech recognition is still processing\n\n"
        "Please enter what you said, or leave it empty to discard and re-record"
    ),
    ManualEntryReason.TRANSCRIPTION_UNSUPPORTED: (
        "Live transcription is not available. Enter a transcript for this note"
    ),
}


class ManualEntryProvider(ABC):
    """Source of a typed transcript.

    ``request_transcript`` is awaited by the session controller and may be
    cancelled at any time if the session is torn down.
    """

    @abstractmethod
    async def request_transcript(self, reason: ManualEntryReason) -> Optional[str]:
        """Return the entered transcript, or None if the user declined."""


class StaticManualEntry(ManualEntryProvider):
    """Answers every request with a fixed transcript (None always declines)."""

    def __init__(self, transcript: Optional[str] = None):
        self.transcript = transcript

    async def request_transcript(self, reason: ManualEntryReason) -> Optional[str]:
        logger.info(f"Manual entry requested ({reason.value}), "
                    f"{'answering with preset transcript' if self.transcript else 'declining'}")
        return self.transcript
