"""Audio capture and processing module."""

from .base import AbstractAudioCaptureSource
from .capture import AudioCaptureSource, microphone_available
from .audio_pub import AudioPublisher
from .wav import encode_wav, peak_level

__all__ = [
    'AbstractAudioCaptureSource',
    'AudioCaptureSource',
    'AudioPublisher',
    'microphone_available',
    'encode_wav',
    'peak_level',
]
