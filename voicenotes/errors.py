"""Typed errors raised or reported by the capture, transcription and notes layers."""

from enum import Enum
from typing import Optional


class DeviceErrorKind(Enum):
    """Why the microphone could not be used."""
    PERMISSION_DENIED = "permission_denied"
    DEVICE_BUSY = "device_busy"
    DEVICE_ABSENT = "device_absent"
    STREAM_INACTIVE = "stream_inactive"


class RecognizerErrorKind(Enum):
    """Signals reported by the live recognizer."""
    PERMISSION_DENIED = "permission_denied"
    NO_SPEECH_DETECTED = "no_speech_detected"
    NETWORK_DEGRADED = "network_degraded"
    CAPTURE_HARDWARE_ERROR = "capture_hardware_error"
    UNKNOWN = "unknown"


DEVICE_ERROR_MESSAGES = {
    DeviceErrorKind.PERMISSION_DENIED: "Microphone access denied. Please allow microphone access and try again.",
    DeviceErrorKind.DEVICE_BUSY: "Microphone is in use by another application. Please close other apps using the microphone.",
    DeviceErrorKind.DEVICE_ABSENT: "No microphone found. Please check your device has a microphone.",
    DeviceErrorKind.STREAM_INACTIVE: "Microphone stream was closed unexpectedly. Please try again.",
}

RECOGNIZER_ERROR_MESSAGES = {
    RecognizerErrorKind.PERMISSION_DENIED: "Speech recognition was not allowed. You can still record and add transcripts manually.",
    RecognizerErrorKind.NETWORK_DEGRADED: "Network error with speech recognition. You can still record and add transcripts manually.",
    RecognizerErrorKind.CAPTURE_HARDWARE_ERROR: "Microphone error detected. Please check your microphone and try again.",
    RecognizerErrorKind.UNKNOWN: "Speech recognition error: {detail}. You can still record and add transcripts manually.",
}

# Recognizer kinds that end the whole session
FATAL_RECOGNIZER_ERRORS = {RecognizerErrorKind.CAPTURE_HARDWARE_ERROR}

# Recognizer kinds that are reported but never touch session state
BENIGN_RECOGNIZER_ERRORS = {RecognizerErrorKind.NO_SPEECH_DETECTED}

TRANSCRIPTION_START_FAILED_MESSAGE = (
    "Speech recognition failed to start. You can still record and add transcripts manually."
)
TRANSCRIPT_REQUIRED_MESSAGE = "Transcript is required. Please speak clearly or enter manually."
MICROPHONE_UNSUPPORTED_MESSAGE = "Microphone not supported on this system."
SESSION_ACTIVE_MESSAGE = "A recording session is already active."
CAPTURE_STOP_TIMEOUT_MESSAGE = "Recording did not stop cleanly. Please try again."


class VoiceNotesError(Exception):
    """Base class for voicenotes errors."""


class DeviceError(VoiceNotesError):
    """The audio capture source could not open or keep the microphone."""

    def __init__(self, kind: DeviceErrorKind, detail: str = ""):
        self.kind = kind
        self.detail = detail
        super().__init__(f"{kind.value}: {detail}" if detail else kind.value)

    @property
    def user_message(self) -> str:
        return DEVICE_ERROR_MESSAGES[self.kind]


class TranscriptionStartError(VoiceNotesError):
    """The live recognizer could not be started."""


class PersistenceError(VoiceNotesError):
    """The notes API rejected a request or could not be reached."""

    def __init__(self, message: str, status: Optional[int] = None):
        self.status = status
        super().__init__(message)


def recognizer_message(kind: RecognizerErrorKind, detail: str = "") -> Optional[str]:
    """Map a recognizer error kind to the message shown to the user."""
    template = RECOGNIZER_ERROR_MESSAGES.get(kind)
    if template is None:
        return None
    return template.format(detail=detail or kind.value)
