"""Merging streamed recognizer segments into one committed transcript."""

from typing import Sequence

from ..models.events import TranscriptSegment


def assemble_transcript(segments: Sequence[TranscriptSegment]) -> str:
    """Build the best current transcript from a running segment list.

    Final segments win: once any segment is final, only final segments are
    used, each trimmed and joined by a single space. Before that, provisional
    segments are concatenated as the recognizer produced them.
    """
    finals = [segment.text.strip() for segment in segments if segment.is_final]
    if finals:
        return " ".join(text for text in finals if text)

    return "".join(segment.text for segment in segments if not segment.is_final).strip()
