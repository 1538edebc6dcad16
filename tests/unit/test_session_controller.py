"""Unit tests for SessionController."""

import asyncio
import io
import wave
from datetime import datetime

import pytest

from voicenotes.config import RecorderSettings
from voicenotes.errors import (
    CAPTURE_STOP_TIMEOUT_MESSAGE,
    DEVICE_ERROR_MESSAGES,
    MICROPHONE_UNSUPPORTED_MESSAGE,
    RECOGNIZER_ERROR_MESSAGES,
    SESSION_ACTIVE_MESSAGE,
    TRANSCRIPT_REQUIRED_MESSAGE,
    TRANSCRIPTION_START_FAILED_MESSAGE,
    DeviceError,
    DeviceErrorKind,
    PersistenceError,
    RecognizerErrorKind,
    TranscriptionStartError,
)
from voicenotes.models.session import SessionStatus
from voicenotes.services.manual_entry import ManualEntryReason
from voicenotes.services.session_controller import derive_title

from tests.fakes import FakeNoteStore, ScriptedManualEntry


async def settle(rounds: int = 5):
    """Let scheduled callbacks and tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0.01)


@pytest.mark.unit
class TestDeriveTitle:
    """Test cases for note title derivation."""

    def test_short_transcript_is_title(self):
        assert derive_title("  hello world  ") == "hello world"

    def test_long_transcript_truncated_to_60(self):
        transcript = "x" * 120
        assert derive_title(transcript) == "x" * 60

    def test_empty_transcript_uses_timestamp(self):
        now = datetime(2024, 3, 5, 14, 7, 9)
        assert derive_title("   ", now=now) == "2024-03-05 14:07:09"


@pytest.mark.unit
class TestStart:
    """Test cases for starting a capture session."""

    @pytest.mark.asyncio
    async def test_start_enters_recording_then_transcribing(self, make_harness):
        """Test that start opens the microphone and the recognizer attaches after the settle delay."""
        harness = make_harness()
        controller = harness.controller

        result = await controller.start()

        assert result["success"] is True
        assert controller.status is SessionStatus.RECORDING
        assert harness.capture.started is True
        assert harness.capture.active_tracks == 1
        assert result["session_id"] == controller.session.session_id

        await settle()
        assert controller.status is SessionStatus.TRANSCRIBING
        assert harness.transcriber.session_id == result["session_id"]
        controller.teardown()

    @pytest.mark.asyncio
    async def test_start_rejected_while_session_active(self, make_harness):
        """Test that a second start does not replace the running session."""
        harness = make_harness()
        first = await harness.controller.start()

        second = await harness.controller.start()

        assert second["success"] is False
        assert second["error"] == SESSION_ACTIVE_MESSAGE
        assert second["session_id"] == first["session_id"]
        assert len(harness.captures) == 1
        harness.controller.teardown()

    @pytest.mark.asyncio
    async def test_start_permission_denied(self, make_harness):
        """Test that a refused microphone leaves the controller idle and never starts recognition."""
        harness = make_harness(capture_kwargs={
            "open_error": DeviceError(DeviceErrorKind.PERMISSION_DENIED, "denied")})
        controller = harness.controller

        result = await controller.start()
        await settle()

        assert result["success"] is False
        assert result["kind"] == "permission_denied"
        assert controller.status is SessionStatus.IDLE
        assert controller.session is None
        assert controller.last_error == DEVICE_ERROR_MESSAGES[DeviceErrorKind.PERMISSION_DENIED]
        assert harness.transcribers == []
        assert harness.capture.active_tracks == 0

    @pytest.mark.asyncio
    async def test_start_device_busy(self, make_harness):
        harness = make_harness(capture_kwargs={
            "open_error": DeviceError(DeviceErrorKind.DEVICE_BUSY, "busy")})

        result = await harness.controller.start()

        assert result["success"] is False
        assert harness.controller.last_error == DEVICE_ERROR_MESSAGES[DeviceErrorKind.DEVICE_BUSY]

    @pytest.mark.asyncio
    async def test_start_without_microphone(self, make_harness):
        harness = make_harness(microphone=False)

        result = await harness.controller.start()

        assert result["success"] is False
        assert result["error"] == MICROPHONE_UNSUPPORTED_MESSAGE
        assert harness.captures == []

    @pytest.mark.asyncio
    async def test_start_clears_previous_error(self, make_harness):
        harness = make_harness(microphone=True, transcription=False)
        harness.controller._last_error = "old failure"

        await harness.controller.start()

        assert harness.controller.last_error is None
        harness.controller.teardown()

    @pytest.mark.asyncio
    async def test_transcription_start_failure_keeps_recording(self, make_harness):
        """Test that a recognizer that cannot start leaves an audio-only session."""
        harness = make_harness(transcriber_kwargs={"start_error": TranscriptionStartError("no client")})
        controller = harness.controller

        await controller.start()
        await settle()

        assert controller.status is SessionStatus.RECORDING
        assert controller.last_error == TRANSCRIPTION_START_FAILED_MESSAGE
        controller.teardown()

    @pytest.mark.asyncio
    async def test_unexpected_recognizer_error_keeps_recording(self, make_harness):
        """Test that any recognizer start failure is reported and the session stays audio-only."""
        harness = make_harness(transcriber_kwargs={"start_error": RuntimeError("grpc channel closed")},
                               manual_entry=ScriptedManualEntry("typed instead"))
        controller = harness.controller

        await controller.start()
        await settle()

        assert controller.status is SessionStatus.RECORDING
        assert controller.last_error == TRANSCRIPTION_START_FAILED_MESSAGE
        assert controller.session.transcriber is None
        assert harness.transcriber._result_handlers == []

        result = await controller.stop()
        assert result["success"] is True
        assert harness.store.artifacts[0].transcript_text == "typed instead"

    @pytest.mark.asyncio
    async def test_chunks_are_collected_with_level(self, make_harness, sample_audio_chunk):
        harness = make_harness(transcription=False)
        await harness.controller.start()

        harness.capture.feed(sample_audio_chunk)
        harness.capture.feed(b"")
        harness.capture.feed(sample_audio_chunk)

        snapshot = harness.controller.snapshot()
        assert snapshot.chunk_count == 2
        assert snapshot.input_level > 0.9
        assert harness.controller.session.bytes_captured == 2 * len(sample_audio_chunk)
        harness.controller.teardown()


@pytest.mark.unit
class TestLiveTranscript:
    """Test cases for transcript and recognizer events."""

    @pytest.mark.asyncio
    async def test_interim_then_final(self, make_harness):
        harness = make_harness()
        await harness.controller.start()
        await settle()

        harness.transcriber.say(("hel", False))
        assert harness.controller.live_transcript == "hel"

        harness.transcriber.say(("hello world", True))
        assert harness.controller.live_transcript == "hello world"
        harness.controller.teardown()

    @pytest.mark.asyncio
    async def test_events_from_old_session_are_discarded(self, make_harness):
        """Test that a lingering recognizer cannot touch the next session."""
        harness = make_harness()
        controller = harness.controller
        await controller.start()
        await settle()
        old_transcriber = harness.transcriber
        controller.teardown()

        await controller.start()
        await settle()
        old_transcriber.say(("late words", True))
        old_transcriber.report(RecognizerErrorKind.CAPTURE_HARDWARE_ERROR, "gone")

        assert controller.live_transcript == ""
        assert controller.status is SessionStatus.TRANSCRIBING
        assert controller.last_error is None
        controller.teardown()

    @pytest.mark.asyncio
    async def test_no_speech_is_ignored(self, make_harness):
        harness = make_harness()
        await harness.controller.start()
        await settle()

        harness.transcriber.report(RecognizerErrorKind.NO_SPEECH_DETECTED)

        assert harness.controller.last_error is None
        assert harness.controller.status is SessionStatus.TRANSCRIBING
        harness.controller.teardown()

    @pytest.mark.asyncio
    async def test_recognizer_permission_denied_demotes_to_recording(self, make_harness):
        harness = make_harness()
        await harness.controller.start()
        await settle()

        harness.transcriber.report(RecognizerErrorKind.PERMISSION_DENIED, "not allowed")

        assert harness.controller.status is SessionStatus.RECORDING
        assert harness.controller.last_error == RECOGNIZER_ERROR_MESSAGES[RecognizerErrorKind.PERMISSION_DENIED]
        assert harness.capture.active_tracks == 1
        harness.controller.teardown()

    @pytest.mark.asyncio
    async def test_network_error_keeps_transcribing(self, make_harness):
        harness = make_harness()
        await harness.controller.start()
        await settle()

        harness.transcriber.report(RecognizerErrorKind.NETWORK_DEGRADED, "unavailable")

        assert harness.controller.status is SessionStatus.TRANSCRIBING
        assert harness.controller.last_error == RECOGNIZER_ERROR_MESSAGES[RecognizerErrorKind.NETWORK_DEGRADED]
        harness.controller.teardown()

    @pytest.mark.asyncio
    async def test_unknown_error_includes_detail(self, make_harness):
        harness = make_harness()
        await harness.controller.start()
        await settle()

        harness.transcriber.report(RecognizerErrorKind.UNKNOWN, "bad-request")

        assert "bad-request" in harness.controller.last_error
        harness.controller.teardown()

    @pytest.mark.asyncio
    async def test_capture_hardware_error_ends_session(self, make_harness):
        harness = make_harness()
        await harness.controller.start()
        await settle()

        harness.transcriber.report(RecognizerErrorKind.CAPTURE_HARDWARE_ERROR, "audio-capture")

        assert harness.controller.status is SessionStatus.IDLE
        assert harness.controller.last_error == RECOGNIZER_ERROR_MESSAGES[RecognizerErrorKind.CAPTURE_HARDWARE_ERROR]
        assert harness.capture.active_tracks == 0
        assert harness.transcriber.stopped is True

    @pytest.mark.asyncio
    async def test_stream_inactive_ends_session(self, make_harness):
        harness = make_harness(transcription=False)
        await harness.controller.start()

        harness.capture.fail(DeviceErrorKind.STREAM_INACTIVE)

        assert harness.controller.status is SessionStatus.IDLE
        assert harness.controller.last_error == DEVICE_ERROR_MESSAGES[DeviceErrorKind.STREAM_INACTIVE]
        assert harness.capture.released is True


@pytest.mark.unit
class TestStop:
    """Test cases for stopping and finalizing a session."""

    @pytest.mark.asyncio
    async def test_stop_when_idle(self, make_harness):
        harness = make_harness()

        result = await harness.controller.stop()

        assert result == {"success": False, "error": "Not recording"}

    @pytest.mark.asyncio
    async def test_stop_submits_recognized_transcript(self, make_harness, sample_audio_chunk):
        """Test the full path from speech to a stored note."""
        harness = make_harness()
        controller = harness.controller
        await controller.start()
        await settle()
        harness.capture.feed(sample_audio_chunk)
        harness.capture.feed(sample_audio_chunk)
        harness.transcriber.say(("hel", False))
        harness.transcriber.say(("hello world", True))

        result = await controller.stop()

        assert result["success"] is True
        assert result["title"] == "hello world"
        assert result["duration_seconds"] == 3
        assert len(harness.store.artifacts) == 1
        artifact = harness.store.artifacts[0]
        assert artifact.transcript_text == "hello world"
        assert artifact.derived_title == "hello world"
        assert artifact.duration_seconds == 3
        with wave.open(io.BytesIO(artifact.audio_blob), 'rb') as wf:
            assert wf.getframerate() == 16000
            assert wf.getnframes() == 2 * len(sample_audio_chunk) // 2

        assert controller.status is SessionStatus.IDLE
        assert controller.session is None
        assert harness.finished == [result["note"]]
        assert harness.capture.active_tracks == 0
        assert harness.transcriber.stopped is True
        assert harness.manual_entry.reasons == []

    @pytest.mark.asyncio
    async def test_status_sequence(self, make_harness):
        harness = make_harness()
        await harness.controller.start()
        await settle()
        harness.transcriber.say(("note", True))

        await harness.controller.stop()

        statuses = harness.statuses
        order = [SessionStatus.RECORDING, SessionStatus.TRANSCRIBING, SessionStatus.PROCESSING]
        assert [statuses.index(status) for status in order] == sorted(statuses.index(status) for status in order)
        assert statuses[-1] is SessionStatus.IDLE

    @pytest.mark.asyncio
    async def test_double_stop_submits_once(self, make_harness):
        harness = make_harness()
        await harness.controller.start()
        await settle()
        harness.transcriber.say(("only once", True))

        first, second = await asyncio.gather(harness.controller.stop(), harness.controller.stop())

        assert first["success"] is True
        assert second["success"] is True
        assert first["note"] is second["note"]
        assert len(harness.store.artifacts) == 1
        assert harness.capture.stop_calls == 1

    @pytest.mark.asyncio
    async def test_long_transcript_title(self, make_harness):
        harness = make_harness()
        await harness.controller.start()
        await settle()
        transcript = "word " * 24
        harness.transcriber.say((transcript, True))

        result = await harness.controller.stop()

        assert len(transcript.strip()) > 60
        assert result["title"] == transcript.strip()[:60]
        assert harness.store.artifacts[0].transcript_text == transcript.strip()

    @pytest.mark.asyncio
    async def test_manual_entry_when_nothing_recognized(self, make_harness):
        harness = make_harness(manual_entry=ScriptedManualEntry("  test note  "))
        await harness.controller.start()
        await settle()

        result = await harness.controller.stop()

        assert result["success"] is True
        assert harness.manual_entry.reasons == [ManualEntryReason.NO_TRANSCRIPT]
        assert harness.store.artifacts[0].transcript_text == "test note"
        assert result["title"] == "test note"

    @pytest.mark.asyncio
    async def test_trailing_result_during_stop_grace_is_kept(self, make_harness):
        """Test that words recognized just after stop still reach the stored note."""
        settings = RecorderSettings(settle_delay=0, stop_grace=0.3, retry_grace=0.3)
        harness = make_harness(settings=settings)
        await harness.controller.start()
        await settle()
        harness.transcriber.say(("early", True))

        loop = asyncio.get_running_loop()
        loop.call_later(0.1, harness.transcriber.say, ("early", True), (" late words", True))
        result = await harness.controller.stop()

        assert result["success"] is True
        assert harness.store.artifacts[0].transcript_text == "early late words"
        assert harness.manual_entry.reasons == []

    @pytest.mark.asyncio
    async def test_result_during_retry_grace_skips_manual_entry(self, make_harness):
        """Test that a result arriving only in the second wait avoids the prompt."""
        settings = RecorderSettings(settle_delay=0, stop_grace=0.2, retry_grace=0.5)
        harness = make_harness(settings=settings, manual_entry=ScriptedManualEntry("unused"))
        await harness.controller.start()
        await settle()

        loop = asyncio.get_running_loop()
        loop.call_later(0.4, harness.transcriber.say, ("later", True))
        result = await harness.controller.stop()

        assert result["success"] is True
        assert harness.store.artifacts[0].transcript_text == "later"
        assert harness.manual_entry.reasons == []

    @pytest.mark.asyncio
    async def test_manual_entry_without_transcription_support(self, make_harness):
        harness = make_harness(transcription=False, manual_entry=ScriptedManualEntry("typed"))
        await harness.controller.start()

        result = await harness.controller.stop()

        assert result["success"] is True
        assert harness.transcribers == []
        assert harness.manual_entry.reasons == [ManualEntryReason.TRANSCRIPTION_UNSUPPORTED]

    @pytest.mark.asyncio
    async def test_declined_manual_entry_discards_recording(self, make_harness, sample_audio_chunk):
        harness = make_harness(manual_entry=ScriptedManualEntry(None))
        controller = harness.controller
        await controller.start()
        await settle()
        harness.capture.feed(sample_audio_chunk)
        session = controller.session

        result = await controller.stop()

        assert result["success"] is False
        assert result["cancelled"] is True
        assert result["error"] == TRANSCRIPT_REQUIRED_MESSAGE
        assert controller.last_error == TRANSCRIPT_REQUIRED_MESSAGE
        assert controller.status is SessionStatus.IDLE
        assert harness.store.artifacts == []
        assert session.audio_chunks == []
        assert session.audio_blob is None

    @pytest.mark.asyncio
    async def test_blank_manual_entry_discards_recording(self, make_harness):
        harness = make_harness(manual_entry=ScriptedManualEntry("   "))
        await harness.controller.start()
        await settle()

        result = await harness.controller.stop()

        assert result["success"] is False
        assert harness.store.artifacts == []

    @pytest.mark.asyncio
    async def test_manual_entry_timeout(self, make_harness):
        settings = RecorderSettings(settle_delay=0, stop_grace=0, retry_grace=0,
                                    manual_entry_timeout=0.05)
        harness = make_harness(settings=settings, manual_entry=ScriptedManualEntry(block=True))
        await harness.controller.start()
        await settle()

        result = await harness.controller.stop()

        assert result["success"] is False
        assert result["error"] == TRANSCRIPT_REQUIRED_MESSAGE
        assert harness.manual_entry.cancelled is True

    @pytest.mark.asyncio
    async def test_upload_failure(self, make_harness):
        harness = make_harness(store=FakeNoteStore(error=PersistenceError("Server error", status=500)))
        await harness.controller.start()
        await settle()
        harness.transcriber.say(("hello", True))

        result = await harness.controller.stop()

        assert result["success"] is False
        assert result["error"] == "Upload failed: Server error"
        assert harness.controller.last_error == "Upload failed: Server error"
        assert harness.controller.status is SessionStatus.IDLE
        assert harness.finished == []
        assert harness.capture.active_tracks == 0

    @pytest.mark.asyncio
    async def test_capture_stop_timeout(self, make_harness):
        settings = RecorderSettings(settle_delay=0, stop_grace=0, retry_grace=0,
                                    capture_stop_timeout=0.05)
        harness = make_harness(settings=settings, capture_kwargs={"complete_stop": False})
        await harness.controller.start()

        result = await harness.controller.stop()

        assert result["success"] is False
        assert result["error"] == CAPTURE_STOP_TIMEOUT_MESSAGE
        assert harness.controller.status is SessionStatus.IDLE
        assert harness.capture.released is True
        assert harness.store.artifacts == []

    @pytest.mark.asyncio
    async def test_capture_error_while_processing_is_ignored(self, make_harness):
        harness = make_harness(transcription=False, manual_entry=ScriptedManualEntry(block=True))
        await harness.controller.start()
        stop_task = asyncio.ensure_future(harness.controller.stop())
        await settle()

        harness.capture.fail(DeviceErrorKind.STREAM_INACTIVE)

        assert harness.controller.status is SessionStatus.PROCESSING
        harness.controller.teardown()
        await stop_task


@pytest.mark.unit
class TestTeardown:
    """Test cases for releasing resources."""

    @pytest.mark.asyncio
    async def test_teardown_while_recording(self, make_harness, sample_audio_chunk):
        """Test that teardown releases every track and drops buffered audio."""
        harness = make_harness()
        controller = harness.controller
        await controller.start()
        await settle()
        harness.capture.feed(sample_audio_chunk)
        session = controller.session

        controller.teardown()

        assert harness.capture.active_tracks == 0
        assert harness.transcriber.stopped is True
        assert session.audio_chunks == []
        assert controller.status is SessionStatus.IDLE
        assert controller.session is None

    @pytest.mark.asyncio
    async def test_teardown_before_recognizer_attaches(self, make_harness):
        settings = RecorderSettings(settle_delay=0.05, stop_grace=0, retry_grace=0)
        harness = make_harness(settings=settings)
        await harness.controller.start()

        harness.controller.teardown()
        await asyncio.sleep(0.1)

        assert harness.transcribers == []
        assert harness.capture.active_tracks == 0

    @pytest.mark.asyncio
    async def test_teardown_during_manual_entry(self, make_harness):
        """Test that a pending prompt is cancelled and the stop call reports the cancellation."""
        harness = make_harness(transcription=False, manual_entry=ScriptedManualEntry(block=True))
        controller = harness.controller
        await controller.start()
        stop_task = asyncio.ensure_future(controller.stop())
        await settle()
        assert harness.manual_entry.reasons == [ManualEntryReason.TRANSCRIPTION_UNSUPPORTED]

        controller.teardown()
        result = await stop_task

        assert result["success"] is False
        assert result["cancelled"] is True
        assert harness.manual_entry.cancelled is True
        assert harness.store.artifacts == []
        assert controller.status is SessionStatus.IDLE

    @pytest.mark.asyncio
    async def test_teardown_when_idle_is_noop(self, make_harness):
        harness = make_harness()

        harness.controller.teardown()

        assert harness.snapshots == []

    @pytest.mark.asyncio
    async def test_async_context_manager_tears_down(self, make_harness):
        harness = make_harness(transcription=False)

        async with harness.controller as controller:
            await controller.start()

        assert harness.capture.active_tracks == 0
        assert harness.controller.session is None
