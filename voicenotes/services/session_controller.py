"""Session controller: drives microphone capture and live transcription for one note at a time."""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from functools import partial
from typing import Any, Callable, Dict, Optional

from pubsub import pub

from ..audio.base import AbstractAudioCaptureSource
from ..audio.wav import encode_wav, peak_level
from ..config import RecorderSettings
from ..errors import (
    BENIGN_RECOGNIZER_ERRORS,
    CAPTURE_STOP_TIMEOUT_MESSAGE,
    FATAL_RECOGNIZER_ERRORS,
    MICROPHONE_UNSUPPORTED_MESSAGE,
    SESSION_ACTIVE_MESSAGE,
    TRANSCRIPT_REQUIRED_MESSAGE,
    TRANSCRIPTION_START_FAILED_MESSAGE,
    DeviceError,
    PersistenceError,
    RecognizerErrorKind,
    TranscriptionStartError,
    recognizer_message,
)
from ..models.events import CaptureStopped, RecognizerError, TranscriptionEvent
from ..models.session import CaptureSession, FinishedArtifact, SessionSnapshot, SessionStatus
from ..transcription.base import AbstractLiveTranscriptionSource
from ..transcription.reconcile import assemble_transcript
from .manual_entry import ManualEntryProvider, ManualEntryReason
from .notes_client import NoteStore

logger = logging.getLogger(__name__)

TITLE_LENGTH = 60


def derive_title(transcript: str, now: Optional[datetime] = None) -> str:
    """First 60 characters of the trimmed transcript, or a timestamp when it is empty."""
    text = transcript.strip()
    if text:
        return text[:TITLE_LENGTH]
    return (now or datetime.now()).strftime("%Y-%m-%d %H:%M:%S")


def _current_task() -> Optional[asyncio.Task]:
    try:
        return asyncio.current_task()
    except RuntimeError:
        # No running loop, e.g. teardown after the loop has finished
        return None


@dataclass
class Capabilities:
    """What this machine can do for a capture session."""
    microphone: bool = True
    transcription: bool = False


class SessionController:
    """Owns the single active capture session.

    All methods run on one asyncio event loop. The capture and transcription
    adapters deliver their events onto that loop; every inbound transcript or
    recognizer event is checked against the current session id so a lingering
    recognizer from an earlier session cannot touch the current one.

    Observers subscribe to two pypubsub topics:

    * ``<topic_root>.changed`` with ``snapshot`` on every observable change
    * ``<topic_root>.finished`` with ``note`` once per stored session
    """

    def __init__(self,
                 capture_factory: Callable[[], AbstractAudioCaptureSource],
                 note_store: NoteStore,
                 manual_entry: ManualEntryProvider,
                 settings: Optional[RecorderSettings] = None,
                 transcriber_factory: Optional[Callable[[], AbstractLiveTranscriptionSource]] = None,
                 capabilities: Optional[Capabilities] = None,
                 topic_root: str = "voicenotes.session"):
        """Initialize session controller.

        Args:
            capture_factory: Creates a fresh capture source for each session
            note_store: Persistence boundary receiving finished artifacts
            manual_entry: Asked for a transcript when none was recognized
            settings: Grace periods and audio constraints
            transcriber_factory: Creates a live recognizer, or None when unavailable
            capabilities: Detected microphone/transcription support
            topic_root: Prefix of the pub/sub topics this controller publishes on
        """
        self.settings = settings or RecorderSettings()
        self.capabilities = capabilities or Capabilities(
            microphone=True, transcription=transcriber_factory is not None)
        if transcriber_factory is None:
            self.capabilities.transcription = False

        self._capture_factory = capture_factory
        self._transcriber_factory = transcriber_factory
        self._note_store = note_store
        self._manual_entry = manual_entry

        self.changed_topic = f"{topic_root}.changed"
        self.finished_topic = f"{topic_root}.finished"

        self._session: Optional[CaptureSession] = None
        self._last_error: Optional[str] = None
        self._input_level = 0.0

        logger.info(f"SessionController ready (microphone={self.capabilities.microphone}, "
                    f"transcription={self.capabilities.transcription})")

    # Observable fields

    @property
    def session(self) -> Optional[CaptureSession]:
        return self._session

    @property
    def status(self) -> SessionStatus:
        return self._session.status if self._session else SessionStatus.IDLE

    @property
    def live_transcript(self) -> str:
        return self._session.live_transcript if self._session else ""

    @property
    def duration_seconds(self) -> Optional[int]:
        return self._session.duration_seconds if self._session else None

    @property
    def last_error(self) -> Optional[str]:
        return self._last_error

    def snapshot(self) -> SessionSnapshot:
        session = self._session
        return SessionSnapshot(
            status=self.status,
            live_transcript=self.live_transcript,
            duration_seconds=self.duration_seconds,
            last_error=self._last_error,
            session_id=session.session_id if session else None,
            input_level=self._input_level,
            chunk_count=len(session.audio_chunks) if session else 0,
        )

    def _publish_changed(self) -> None:
        pub.sendMessage(self.changed_topic, snapshot=self.snapshot())

    # Start

    async def start(self) -> Dict[str, Any]:
        """Start a new capture session.

        Returns:
            Result dictionary with success status and the new session id
        """
        if not self.capabilities.microphone:
            self._last_error = MICROPHONE_UNSUPPORTED_MESSAGE
            self._publish_changed()
            return {"success": False, "error": MICROPHONE_UNSUPPORTED_MESSAGE}

        if self._session is not None:
            logger.warning(f"Start rejected, session {self._session.session_id} is "
                           f"{self._session.status.value}")
            return {
                "success": False,
                "error": SESSION_ACTIVE_MESSAGE,
                "session_id": self._session.session_id,
            }

        loop = asyncio.get_running_loop()
        session = CaptureSession()
        self._session = session
        self._last_error = None
        self._input_level = 0.0
        logger.info(f"Starting new recording session: {session.session_id}")
        self._publish_changed()

        capture = self._capture_factory()
        session.capture = capture
        session.capture_stopped = loop.create_future()
        try:
            capture.open(loop)
            capture.on_chunk(partial(self._on_chunk, session.session_id))
            capture.on_stop(partial(self._on_capture_stopped, session.session_id))
            capture.on_error(partial(self._on_capture_error, session.session_id))
            capture.start()
        except DeviceError as e:
            logger.error(f"Error starting recording: {e}")
            self._abort(session, e.user_message)
            return {"success": False, "error": e.user_message, "kind": e.kind.value}

        session.started_at = datetime.now()
        if self.capabilities.transcription:
            session.tasks.append(loop.create_task(self._start_transcription(session)))
        else:
            logger.info("No live transcription available, recording audio only")

        return {
            "success": True,
            "session_id": session.session_id,
            "started_at": session.started_at.isoformat(),
        }

    async def _start_transcription(self, session: CaptureSession) -> None:
        # Let the device settle before a second consumer attaches to it
        await asyncio.sleep(self.settings.settle_delay)
        if not self._is_current(session) or session.status is not SessionStatus.RECORDING:
            return

        transcriber = None
        try:
            transcriber = self._transcriber_factory()
            transcriber.on_result(self._on_transcription)
            transcriber.on_error(self._on_recognizer_error)
            transcriber.start(session.session_id, asyncio.get_running_loop())
        except TranscriptionStartError as e:
            logger.error(f"Failed to start speech recognition: {e}")
            self._transcription_failed(session, transcriber)
            return
        except Exception as e:
            logger.error(f"Unexpected error starting speech recognition: {e}", exc_info=True)
            self._transcription_failed(session, transcriber)
            return

        session.transcriber = transcriber
        logger.info(f"Speech recognition started for session: {session.session_id}")
        self._set_status(session, SessionStatus.TRANSCRIBING)

    def _transcription_failed(self, session: CaptureSession, transcriber) -> None:
        # Audio keeps recording without a recognizer
        if transcriber is not None:
            transcriber.clear_handlers()
        session.error = TRANSCRIPTION_START_FAILED_MESSAGE
        self._last_error = TRANSCRIPTION_START_FAILED_MESSAGE
        self._publish_changed()

    # Inbound events

    def _on_chunk(self, session_id: str, chunk: bytes) -> None:
        session = self._session
        if session is None or session.session_id != session_id or not chunk:
            return
        if session.audio_blob is not None:
            return
        session.audio_chunks.append(chunk)
        self._input_level = peak_level(chunk)
        self._publish_changed()

    def _on_transcription(self, event: TranscriptionEvent) -> None:
        session = self._session
        if session is None or event.session_id != session.session_id:
            logger.debug(f"Ignoring transcript for old session: {event.session_id}")
            return

        text = assemble_transcript(event.segments)
        final = any(segment.is_final for segment in event.segments)
        logger.debug(f"Transcript update for session {session.session_id}: "
                     f"'{text}' (final: {final})")
        session.live_transcript = text
        self._publish_changed()

    def _on_recognizer_error(self, error: RecognizerError) -> None:
        session = self._session
        if session is None or error.session_id != session.session_id:
            logger.debug(f"Ignoring recognizer error for old session: {error.session_id}")
            return

        if error.kind in BENIGN_RECOGNIZER_ERRORS:
            logger.info(f"Recognizer: {error.kind.value} - this is normal during pauses")
            return

        message = recognizer_message(error.kind, error.detail)
        if error.kind in FATAL_RECOGNIZER_ERRORS:
            logger.error(f"Fatal recognizer error: {error.kind.value} {error.detail}")
            self._abort(session, message)
            return

        logger.warning(f"Recognizer error: {error.kind.value} {error.detail}")
        session.error = message
        self._last_error = message
        if error.kind is RecognizerErrorKind.PERMISSION_DENIED and session.status is SessionStatus.TRANSCRIBING:
            # Recognition is over for this session, audio keeps recording
            self._set_status(session, SessionStatus.RECORDING)
        else:
            self._publish_changed()

    def _on_capture_stopped(self, session_id: str, stopped: CaptureStopped) -> None:
        session = self._session
        if session is None or session.session_id != session_id:
            return
        session.duration_seconds = stopped.duration_seconds
        session.audio_blob = encode_wav(session.audio_chunks, stopped.audio_format)
        logger.info(f"Media recorder stopped, blob size: {len(session.audio_blob)}, "
                    f"duration: {stopped.duration_seconds}s")
        if not session.capture_stopped.done():
            session.capture_stopped.set_result(stopped)
        self._publish_changed()

    def _on_capture_error(self, session_id: str, error: DeviceError) -> None:
        session = self._session
        if session is None or session.session_id != session_id:
            return
        if session.status is SessionStatus.PROCESSING:
            logger.debug(f"Ignoring capture error while stopping: {error}")
            return
        logger.error(f"Capture failed mid-session: {error}")
        self._abort(session, error.user_message)

    # Stop and finalization

    async def stop(self) -> Dict[str, Any]:
        """Stop the active session, reconcile its transcript and store it.

        Calling stop again while the first call is still finishing waits for
        the same outcome.

        Returns:
            Result dictionary; on success it carries the stored ``note``
        """
        session = self._session
        if session is None:
            return {"success": False, "error": "Not recording"}

        if session.finish_task is None:
            session.finish_task = asyncio.get_running_loop().create_task(self._finish_session(session))
        task = session.finish_task

        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if task.cancelled():
                return {"success": False, "error": "Recording was cancelled",
                        "cancelled": True, "session_id": session.session_id}
            raise

    async def _finish_session(self, session: CaptureSession) -> Dict[str, Any]:
        logger.info(f"Stopping recording session: {session.session_id}")
        self._set_status(session, SessionStatus.PROCESSING)
        self._cancel_tasks(session)
        self._stop_transcriber(session)
        session.capture.stop()

        try:
            await asyncio.wait_for(asyncio.shield(session.capture_stopped),
                                   timeout=self.settings.capture_stop_timeout)
        except asyncio.TimeoutError:
            logger.error(f"Capture did not report a stop within {self.settings.capture_stop_timeout}s")
            self._abort(session, CAPTURE_STOP_TIMEOUT_MESSAGE)
            return {"success": False, "error": CAPTURE_STOP_TIMEOUT_MESSAGE,
                    "session_id": session.session_id}

        if self.capabilities.transcription:
            logger.info("Waiting for final transcript processing...")
            await asyncio.sleep(self.settings.stop_grace)

        transcript = session.live_transcript.strip()
        if not transcript and self.capabilities.transcription:
            logger.info("Speech recognition may still be active, waiting a bit more...")
            await asyncio.sleep(self.settings.retry_grace)
            transcript = session.live_transcript.strip()

        if not transcript:
            reason = (ManualEntryReason.NO_TRANSCRIPT if self.capabilities.transcription
                      else ManualEntryReason.TRANSCRIPTION_UNSUPPORTED)
            entered = await self._request_manual_entry(reason)
            transcript = (entered or "").strip()
            if not transcript:
                logger.info(f"No transcript for session {session.session_id}, discarding recording")
                self._abort(session, TRANSCRIPT_REQUIRED_MESSAGE)
                return {"success": False, "error": TRANSCRIPT_REQUIRED_MESSAGE,
                        "cancelled": True, "session_id": session.session_id}

        artifact = FinishedArtifact(
            audio_blob=session.audio_blob,
            duration_seconds=session.duration_seconds,
            transcript_text=transcript,
            derived_title=derive_title(transcript),
            session_id=session.session_id,
        )
        logger.info(f"Submitting session {session.session_id}: "
                    f"{len(artifact.audio_blob)} bytes, {artifact.duration_seconds}s")

        try:
            note = await self._note_store.create_note(artifact)
        except PersistenceError as e:
            message = f"Upload failed: {e}"
            logger.error(f"Upload error for session {session.session_id}: {e}")
            self._abort(session, message)
            return {"success": False, "error": message, "session_id": session.session_id}

        logger.info(f"Upload successful for session: {session.session_id}, state reset")
        self._release(session)
        self._session = None
        self._input_level = 0.0
        self._publish_changed()
        pub.sendMessage(self.finished_topic, note=note)

        return {
            "success": True,
            "session_id": artifact.session_id,
            "note": note,
            "duration_seconds": artifact.duration_seconds,
            "title": artifact.derived_title,
        }

    async def _request_manual_entry(self, reason: ManualEntryReason) -> Optional[str]:
        logger.info(f"Prompting user for manual transcript ({reason.value})")
        request = self._manual_entry.request_transcript(reason)
        if self.settings.manual_entry_timeout is None:
            return await request
        try:
            return await asyncio.wait_for(request, timeout=self.settings.manual_entry_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Manual entry timed out after {self.settings.manual_entry_timeout}s")
            return None

    # Teardown

    def teardown(self) -> None:
        """Release the microphone and recognizer and drop the session, whatever its state."""
        session = self._session
        if session is None:
            return
        logger.info(f"Tearing down session {session.session_id} ({session.status.value})")
        self._release(session)
        self._session = None
        self._input_level = 0.0
        self._publish_changed()

    async def __aenter__(self) -> "SessionController":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.teardown()

    # Helpers

    def _is_current(self, session: CaptureSession) -> bool:
        return self._session is session

    def _set_status(self, session: CaptureSession, status: SessionStatus) -> None:
        if not self._is_current(session) or session.status is status:
            return
        logger.info(f"Session {session.session_id}: {session.status.value} -> {status.value}")
        session.status = status
        self._publish_changed()

    def _abort(self, session: CaptureSession, message: str) -> None:
        if not self._is_current(session):
            return
        logger.warning(f"Session {session.session_id} ended: {message}")
        session.error = message
        self._last_error = message
        self._release(session)
        self._session = None
        self._input_level = 0.0
        self._publish_changed()

    def _cancel_tasks(self, session: CaptureSession) -> None:
        current = _current_task()
        for task in session.tasks:
            if task is not current and not task.done():
                task.cancel()
        session.tasks.clear()

    def _stop_transcriber(self, session: CaptureSession) -> None:
        transcriber = session.transcriber
        if transcriber is None:
            return
        try:
            transcriber.stop()
        except Exception as e:
            # Recognizer shutdown is best-effort
            logger.warning(f"Error stopping speech recognition: {e}")

    def _release(self, session: CaptureSession) -> None:
        self._cancel_tasks(session)
        finish_task = session.finish_task
        if finish_task is not None and finish_task is not _current_task() and not finish_task.done():
            finish_task.cancel()
        self._stop_transcriber(session)
        session.transcriber = None
        if session.capture is not None:
            session.capture.force_release()
        if session.capture_stopped is not None and not session.capture_stopped.done():
            session.capture_stopped.cancel()
        session.audio_chunks.clear()
        session.audio_blob = None
