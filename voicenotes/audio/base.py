"""Abstract base class for audio capture sources."""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Callable, List

from ..errors import DeviceError
from ..models.events import CaptureStopped

logger = logging.getLogger(__name__)

ChunkHandler = Callable[[bytes], None]
StopHandler = Callable[[CaptureStopped], None]
ErrorHandler = Callable[[DeviceError], None]


class AbstractAudioCaptureSource(ABC):
    """A microphone that streams binary chunks until it is stopped.

    Handlers are always invoked on the event loop passed to ``open``.
    """

    def __init__(self):
        self._chunk_handlers: List[ChunkHandler] = []
        self._stop_handlers: List[StopHandler] = []
        self._error_handlers: List[ErrorHandler] = []

    def on_chunk(self, handler: ChunkHandler) -> None:
        self._chunk_handlers.append(handler)

    def on_stop(self, handler: StopHandler) -> None:
        """Register a handler for the stop completion (measured duration and audio format)."""
        self._stop_handlers.append(handler)

    def on_error(self, handler: ErrorHandler) -> None:
        self._error_handlers.append(handler)

    def clear_handlers(self) -> None:
        self._chunk_handlers.clear()
        self._stop_handlers.clear()
        self._error_handlers.clear()

    def _emit_chunk(self, chunk: bytes) -> None:
        for handler in list(self._chunk_handlers):
            handler(chunk)

    def _emit_stop(self, stopped: CaptureStopped) -> None:
        for handler in list(self._stop_handlers):
            handler(stopped)

    def _emit_error(self, error: DeviceError) -> None:
        for handler in list(self._error_handlers):
            handler(error)

    @abstractmethod
    def open(self, loop: asyncio.AbstractEventLoop) -> None:
        """Acquire the microphone.

        Raises:
            DeviceError: permission denied, device busy or no device
        """

    @abstractmethod
    def start(self) -> None:
        """Begin streaming chunks and liveness polling."""

    @abstractmethod
    def stop(self) -> None:
        """Request a stop. Idempotent; the stop handlers fire once the stream is closed."""

    @abstractmethod
    def force_release(self) -> None:
        """Stop every underlying device track immediately, without a stop completion."""

    @property
    @abstractmethod
    def active_tracks(self) -> int:
        """Number of device tracks currently held open."""

    @abstractmethod
    def is_active(self) -> bool:
        """Whether the stream is still delivering audio."""
