"""Google Speech-to-Text streaming recognizer fed from the audio pub/sub topic."""

import asyncio
import logging
import queue
import threading
import time
from typing import Iterator, List, Optional

from pubsub import pub
from google.auth import exceptions as auth_exceptions
from google.api_core import exceptions as gax_exceptions
from google.cloud import speech
from google.oauth2 import service_account

from .base import AbstractLiveTranscriptionSource
from ..errors import RecognizerErrorKind, TranscriptionStartError
from ..models.events import AudioEvent, RecognizerError, TranscriptSegment, TranscriptionEvent

logger = logging.getLogger(__name__)


def classify_api_error(error: gax_exceptions.GoogleAPICallError) -> RecognizerErrorKind:
    """Map a Google API failure to a recognizer error kind."""
    if isinstance(error, (gax_exceptions.PermissionDenied, gax_exceptions.Unauthenticated)):
        return RecognizerErrorKind.PERMISSION_DENIED
    if isinstance(error, (gax_exceptions.ServiceUnavailable, gax_exceptions.DeadlineExceeded,
                          gax_exceptions.InternalServerError)):
        return RecognizerErrorKind.NETWORK_DEGRADED
    return RecognizerErrorKind.UNKNOWN


class GoogleStreamingSource(AbstractLiveTranscriptionSource):
    """Streaming recognition with interim results.

    Listens on the audio topic, pushes frames into a gRPC streaming request on a
    worker thread and re-emits the whole running segment list (finals so far
    plus the current interim hypothesis) after every response. Streams that hit
    the service's duration limit or a transient network failure are reopened;
    finalized segments are kept across reopenings.
    """

    def __init__(self,
                 credentials_path: str,
                 audio_topic: str = "audio.frame",
                 sample_rate: int = 16000,
                 language: str = "en-US",
                 enable_automatic_punctuation: bool = True,
                 model: str = "latest_long",
                 no_speech_timeout: float = 8.0,
                 audio_timeout: float = 5.0,
                 max_reconnects: int = 3):
        """Initialize Google streaming recognizer.

        Args:
            credentials_path: Path to Google Cloud service account JSON file
            audio_topic: Pub/sub topic carrying AudioEvent frames
            sample_rate: Sample rate of the published audio
            language: Language code (e.g., 'en-US', 'es-ES')
            enable_automatic_punctuation: Enable automatic punctuation
            model: Recognition model name
            no_speech_timeout: Seconds without any result before reporting no speech
            audio_timeout: Seconds without audio frames before reporting a capture failure
            max_reconnects: Consecutive network failures tolerated before giving up
        """
        super().__init__(language)
        if not credentials_path:
            raise ValueError("Google credentials path is required for live transcription")
        self.credentials_path = credentials_path
        self.audio_topic = audio_topic
        self.no_speech_timeout = no_speech_timeout
        self.audio_timeout = audio_timeout
        self.max_reconnects = max_reconnects
        self.client: Optional[speech.SpeechClient] = None
        self.streaming_config = speech.StreamingRecognitionConfig(
            config=speech.RecognitionConfig(
                encoding=speech.RecognitionConfig.AudioEncoding.LINEAR16,
                sample_rate_hertz=sample_rate,
                language_code=language,
                enable_automatic_punctuation=enable_automatic_punctuation,
                model=model,
            ),
            interim_results=True,
        )

        self.session_id: Optional[str] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._audio_queue: "queue.Queue[bytes]" = queue.Queue()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._finals: List[TranscriptSegment] = []
        self._heard_anything = False
        self._no_speech_reported = False
        self._started_at = 0.0

    def start(self, session_id: str, loop: asyncio.AbstractEventLoop) -> None:
        if self._thread is not None:
            raise TranscriptionStartError("Recognizer already started")

        logger.info(f"Loading Google credentials from: {self.credentials_path}")
        try:
            credentials = service_account.Credentials.from_service_account_file(self.credentials_path)
            self.client = speech.SpeechClient(credentials=credentials)
        except (OSError, ValueError, auth_exceptions.GoogleAuthError) as e:
            logger.error(f"Google Speech client could not be created: {e}")
            raise TranscriptionStartError(f"Google Speech client could not be created: {e}") from e

        self.session_id = session_id
        self._loop = loop
        self._stop_event.clear()
        self._started_at = time.monotonic()
        pub.subscribe(self._on_audio_event, self.audio_topic)

        self._thread = threading.Thread(target=self._recognize_loop, daemon=True)
        self._thread.name = f"GoogleStreaming-{session_id[:8]}"
        self._thread.start()
        logger.info(f"Google streaming recognition started for session: {session_id}")

    def stop(self) -> None:
        if self._stop_event.is_set():
            return
        logger.info(f"Stopping Google streaming recognition for session: {self.session_id}")
        self._stop_event.set()
        if pub.isSubscribed(self._on_audio_event, self.audio_topic):
            pub.unsubscribe(self._on_audio_event, self.audio_topic)

    def _on_audio_event(self, event: AudioEvent) -> None:
        if not self._stop_event.is_set() and event.audio_data:
            self._audio_queue.put(event.audio_data)

    def _requests(self) -> Iterator[speech.StreamingRecognizeRequest]:
        last_audio = time.monotonic()
        while not self._stop_event.is_set():
            try:
                chunk = self._audio_queue.get(timeout=0.1)
            except queue.Empty:
                now = time.monotonic()
                if now - last_audio > self.audio_timeout:
                    logger.error(f"No audio frames for {self.audio_timeout}s, ending recognition")
                    self._report(RecognizerErrorKind.CAPTURE_HARDWARE_ERROR, "audio feed stopped")
                    self._stop_event.set()
                    return
                self._check_no_speech(now)
                continue
            last_audio = time.monotonic()
            self._check_no_speech(last_audio)
            yield speech.StreamingRecognizeRequest(audio_content=chunk)

    def _check_no_speech(self, now: float) -> None:
        if self._heard_anything or self._no_speech_reported:
            return
        if now - self._started_at > self.no_speech_timeout:
            self._no_speech_reported = True
            self._report(RecognizerErrorKind.NO_SPEECH_DETECTED, "no speech detected")

    def _recognize_loop(self) -> None:
        failures = 0
        try:
            while not self._stop_event.is_set():
                try:
                    responses = self.client.streaming_recognize(
                        config=self.streaming_config, requests=self._requests())
                    for response in responses:
                        self._handle_response(response)
                        failures = 0
                except gax_exceptions.OutOfRange:
                    logger.info("Streaming limit reached, reopening recognition stream")
                except gax_exceptions.GoogleAPICallError as e:
                    kind = classify_api_error(e)
                    logger.warning(f"Google streaming error ({kind.value}): {e}")
                    self._report(kind, str(e))
                    failures += 1
                    if kind is not RecognizerErrorKind.NETWORK_DEGRADED or failures > self.max_reconnects:
                        break
                    self._stop_event.wait(min(2 ** failures, 8))
        finally:
            self._stop_event.set()
            if pub.isSubscribed(self._on_audio_event, self.audio_topic):
                pub.unsubscribe(self._on_audio_event, self.audio_topic)
            logger.info(f"Google streaming recognition ended for session: {self.session_id}")

    def _handle_response(self, response: speech.StreamingRecognizeResponse) -> None:
        interim: List[TranscriptSegment] = []
        for result in response.results:
            if not result.alternatives:
                continue
            alternative = result.alternatives[0]
            if result.is_final:
                self._finals.append(TranscriptSegment(
                    text=alternative.transcript, is_final=True, confidence=alternative.confidence))
            else:
                interim.append(TranscriptSegment(text=alternative.transcript, is_final=False))

        if not self._finals and not interim:
            return
        self._heard_anything = True
        event = TranscriptionEvent(session_id=self.session_id, segments=self._finals + interim)
        logger.debug(f"Transcript update: {len(self._finals)} final, {len(interim)} interim")
        self._call_on_loop(self._emit_result, event)

    def _report(self, kind: RecognizerErrorKind, detail: str) -> None:
        self._call_on_loop(self._emit_error, RecognizerError(
            session_id=self.session_id, kind=kind, detail=detail))

    def _call_on_loop(self, callback, *args) -> None:
        if self._loop is None or self._loop.is_closed():
            return
        try:
            self._loop.call_soon_threadsafe(callback, *args)
        except RuntimeError:
            logger.debug("Event loop closed, dropping recognizer event")
