"""Abstract base class for live transcription sources."""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Callable, List

from ..models.events import RecognizerError, TranscriptionEvent

logger = logging.getLogger(__name__)

ResultHandler = Callable[[TranscriptionEvent], None]
RecognizerErrorHandler = Callable[[RecognizerError], None]


class AbstractLiveTranscriptionSource(ABC):
    """A best-effort streaming recognizer.

    Every event carries the session id the source was started with. Handlers
    are invoked on the event loop passed to ``start``.
    """

    def __init__(self, language: str = "en-US"):
        self.language = language
        self._result_handlers: List[ResultHandler] = []
        self._error_handlers: List[RecognizerErrorHandler] = []

    def on_result(self, handler: ResultHandler) -> None:
        self._result_handlers.append(handler)

    def on_error(self, handler: RecognizerErrorHandler) -> None:
        self._error_handlers.append(handler)

    def clear_handlers(self) -> None:
        self._result_handlers.clear()
        self._error_handlers.clear()

    def _emit_result(self, event: TranscriptionEvent) -> None:
        for handler in list(self._result_handlers):
            handler(event)

    def _emit_error(self, error: RecognizerError) -> None:
        for handler in list(self._error_handlers):
            handler(error)

    @abstractmethod
    def start(self, session_id: str, loop: asyncio.AbstractEventLoop) -> None:
        """Start recognizing for the given session.

        Raises:
            TranscriptionStartError: if the recognizer cannot be started
        """

    @abstractmethod
    def stop(self) -> None:
        """Request the recognizer to stop. Returns before shutdown completes."""
