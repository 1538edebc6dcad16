"""WAV assembly and level metering for captured PCM audio."""

import io
import wave
import logging
from typing import Iterable

import numpy as np

from ..models.events import AudioFormat

logger = logging.getLogger(__name__)


def encode_wav(chunks: Iterable[bytes], audio_format: AudioFormat) -> bytes:
    """Join raw PCM chunks into a single WAV file in memory."""
    buffer = io.BytesIO()
    with wave.open(buffer, 'wb') as wf:
        wf.setnchannels(audio_format.channels)
        wf.setsampwidth(audio_format.sample_width)
        wf.setframerate(audio_format.sample_rate)
        for chunk in chunks:
            wf.writeframes(chunk)

    blob = buffer.getvalue()
    logger.debug(f"Assembled WAV blob: {len(blob)} bytes")
    return blob


def peak_level(chunk: bytes) -> float:
    """Peak amplitude of a 16-bit PCM chunk, scaled to 0.0-1.0."""
    if len(chunk) < 2:
        return 0.0
    samples = np.frombuffer(chunk[:len(chunk) - len(chunk) % 2], dtype=np.int16)
    if samples.size == 0:
        return 0.0
    return float(np.abs(samples.astype(np.int32)).max()) / 32768.0
