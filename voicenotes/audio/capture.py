"""PyAudio microphone capture with chunk delivery onto the asyncio loop."""

import asyncio
import errno
import logging
import threading
import time
from datetime import datetime
from threading import Thread, Event
from typing import Optional

import pyaudio

from .audio_pub import AudioPublisher
from .base import AbstractAudioCaptureSource
from ..errors import DeviceError, DeviceErrorKind
from ..models.events import AudioEvent, AudioFormat, CaptureStopped

logger = logging.getLogger(__name__)

# PortAudio error codes surfaced through OSError.errno
PA_UNANTICIPATED_HOST_ERROR = -9999
PA_INVALID_CHANNEL_COUNT = -9998
PA_INVALID_DEVICE = -9996
PA_DEVICE_UNAVAILABLE = -9985


def classify_device_error(error: Exception) -> DeviceErrorKind:
    """Map a PortAudio/OS error raised while opening the microphone to a device error kind."""
    code = getattr(error, 'errno', None)
    if code is None and len(getattr(error, 'args', ())) > 1:
        code = error.args[1]
    message = str(error).lower()

    if code in (errno.EACCES, errno.EPERM) or "permission" in message or "not allowed" in message:
        return DeviceErrorKind.PERMISSION_DENIED
    if code in (PA_DEVICE_UNAVAILABLE, errno.EBUSY) or "unavailable" in message or "busy" in message:
        return DeviceErrorKind.DEVICE_BUSY
    if code in (PA_INVALID_DEVICE, PA_INVALID_CHANNEL_COUNT) or "invalid" in message or "no default" in message:
        return DeviceErrorKind.DEVICE_ABSENT
    if code == PA_UNANTICIPATED_HOST_ERROR:
        # Host APIs report a refused microphone grant this way on macOS and PipeWire
        return DeviceErrorKind.PERMISSION_DENIED
    return DeviceErrorKind.DEVICE_ABSENT


def microphone_available() -> bool:
    """Check whether at least one input device is present."""
    audio = pyaudio.PyAudio()
    try:
        for index in range(audio.get_device_count()):
            if audio.get_device_info_by_index(index).get('maxInputChannels', 0) > 0:
                return True
        return False
    except OSError as e:
        logger.debug(f"Microphone not available: {e}")
        return False
    finally:
        audio.terminate()


class AudioCaptureSource(AbstractAudioCaptureSource):
    """Continuous microphone capture for one recording session.

    A daemon thread reads the PyAudio stream. Each chunk is published on the
    audio topic for the live recognizer and handed to the chunk handlers on the
    event loop. Liveness is polled by a task owned by this object.
    """

    def __init__(
        self,
        audio_publisher: Optional[AudioPublisher] = None,
        sample_rate: int = 16000,
        chunk_size: int = 1024,
        channels: int = 1,
        format: int = pyaudio.paInt16,
        input_device_index: Optional[int] = None,
        health_check_interval: float = 2.0,
    ):
        """Initialize audio capture with specified parameters.

        Args:
            audio_publisher: Publisher that forwards raw frames to the recognizer
            sample_rate: Audio sample rate (16kHz for speech recognition)
            chunk_size: Size of each audio chunk in samples
            channels: Number of audio channels (1 for mono)
            format: Audio format (16-bit signed int)
            input_device_index: PyAudio device index, or None for the default input
            health_check_interval: Seconds between stream liveness checks
        """
        super().__init__()
        self.audio_publisher = audio_publisher
        self.sample_rate = sample_rate
        self.chunk_size = chunk_size
        self.channels = channels
        self.format = format
        self.input_device_index = input_device_index
        self.health_check_interval = health_check_interval

        self.recording_thread: Optional[Thread] = None
        self.stop_event = Event()
        self.is_recording = False

        self.start_time: Optional[datetime] = None
        self.stop_time: Optional[datetime] = None
        self.total_chunks = 0

        self.pyaudio_instance: Optional[pyaudio.PyAudio] = None
        self.stream = None
        self._stream_lock = threading.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._health_task: Optional[asyncio.Task] = None
        self._stream_failed = False
        self._stop_requested = False
        self._stop_completed = False
        self._released = False
        self._reader_done = False

    @property
    def audio_format(self) -> AudioFormat:
        return AudioFormat(
            sample_rate=self.sample_rate,
            channels=self.channels,
            sample_width=pyaudio.get_sample_size(self.format),
        )

    def open(self, loop: asyncio.AbstractEventLoop) -> None:
        """Open the input stream without starting it."""
        self._loop = loop
        self.pyaudio_instance = pyaudio.PyAudio()
        try:
            if self.pyaudio_instance.get_device_count() == 0:
                raise DeviceError(DeviceErrorKind.DEVICE_ABSENT, "no audio devices")
            if self.input_device_index is None:
                try:
                    self.pyaudio_instance.get_default_input_device_info()
                except OSError as e:
                    raise DeviceError(DeviceErrorKind.DEVICE_ABSENT, str(e)) from e

            try:
                self.stream = self.pyaudio_instance.open(
                    format=self.format,
                    channels=self.channels,
                    rate=self.sample_rate,
                    input=True,
                    input_device_index=self.input_device_index,
                    frames_per_buffer=self.chunk_size,
                    start=False,
                )
            except OSError as e:
                kind = classify_device_error(e)
                logger.error(f"Could not open microphone ({kind.value}): {e}")
                raise DeviceError(kind, str(e)) from e
        except DeviceError:
            self._terminate()
            raise

        logger.info(f"Audio stream opened: {self.sample_rate}Hz, "
                    f"{self.chunk_size} samples/chunk")

    def start(self) -> None:
        """Start continuous recording in background thread."""
        if self.is_recording:
            logger.warning("Recording already in progress")
            return
        if self.stream is None:
            raise RuntimeError("Audio stream is not open")

        logger.info("Starting audio recording")
        self.stop_event.clear()
        self.start_time = datetime.now()
        self.total_chunks = 0
        try:
            self.stream.start_stream()
        except OSError as e:
            kind = classify_device_error(e)
            logger.error(f"Could not start microphone stream ({kind.value}): {e}")
            raise DeviceError(kind, str(e)) from e

        self.recording_thread = Thread(target=self._record_continuously, daemon=True)
        self.recording_thread.name = "AudioCaptureThread"
        self.recording_thread.start()
        self.is_recording = True

        self._health_task = self._loop.create_task(self._poll_health())

    def stop(self) -> None:
        """Request the recording to stop. Safe to call more than once."""
        if self._stop_requested or self._released or not self.is_recording:
            logger.debug("Stop requested but no recording in progress")
            return

        logger.info("Stopping audio recording")
        # Whichever of stop() and the exiting reader runs second schedules the completion
        with self._stream_lock:
            self._stop_requested = True
            reader_done = self._reader_done
        self.stop_time = datetime.now()
        self._cancel_health_task()
        self.stop_event.set()

        # The reader already exited on a stream failure; complete right away
        if reader_done or self.recording_thread is None:
            self._loop.call_soon(self._complete_stop)

    def force_release(self) -> None:
        """Close the stream and PyAudio regardless of state. Does not block.

        A running reader thread closes the stream itself once its current read
        returns.
        """
        if self._released:
            return
        logger.info("Force releasing microphone")
        self._released = True
        self._cancel_health_task()
        self.clear_handlers()
        self.stop_event.set()
        self.is_recording = False

        with self._stream_lock:
            reader_running = self.recording_thread is not None and not self._reader_done
        if reader_running:
            return

        self._close_stream()
        self._terminate()

    @property
    def active_tracks(self) -> int:
        return 1 if self.stream is not None else 0

    def is_active(self) -> bool:
        if self._stream_failed or self.stream is None:
            return False
        if self.recording_thread is None or not self.recording_thread.is_alive():
            return False
        try:
            return bool(self.stream.is_active())
        except OSError:
            return False

    def _record_continuously(self) -> None:
        """Internal method: continuous recording loop in background thread."""
        try:
            while not self.stop_event.is_set():
                try:
                    audio_chunk = self.stream.read(self.chunk_size, exception_on_overflow=False)
                except OSError as e:
                    logger.error(f"Audio stream read failed: {e}")
                    self._stream_failed = True
                    break
                self.total_chunks += 1
                self._publish_audio_event(audio_chunk)
                self._call_on_loop(self._deliver_chunk, audio_chunk)
        finally:
            self._close_stream()
            self._terminate()
            with self._stream_lock:
                self._reader_done = True
                stop_requested = self._stop_requested
            if stop_requested and not self._released:
                self._call_on_loop(self._complete_stop)
            logger.info(f"Recording loop ended. Total chunks: {self.total_chunks}")

    def _publish_audio_event(self, audio_chunk: bytes) -> None:
        if self.audio_publisher is None:
            return
        self.audio_publisher.publish_audio_event(AudioEvent(
            chunk_id=f"chunk_{self.total_chunks}",
            audio_data=audio_chunk,
            timestamp=time.time(),
            sequence_number=self.total_chunks,
            sample_rate=self.sample_rate,
            channels=self.channels,
            final=self.stop_event.is_set(),
        ))

    def _call_on_loop(self, callback, *args) -> None:
        if self._loop is None or self._loop.is_closed():
            return
        try:
            self._loop.call_soon_threadsafe(callback, *args)
        except RuntimeError:
            logger.debug("Event loop closed, dropping capture event")

    def _deliver_chunk(self, chunk: bytes) -> None:
        if self._released or not chunk:
            return
        self._emit_chunk(chunk)

    def _complete_stop(self) -> None:
        if self._stop_completed or self._released:
            return
        self._stop_completed = True
        self.is_recording = False

        stopped_at = self.stop_time or datetime.now()
        started_at = self.start_time or stopped_at
        duration = round((stopped_at - started_at).total_seconds())
        logger.info(f"Recording stopped after {duration}s ({self.total_chunks} chunks)")
        self._emit_stop(CaptureStopped(
            duration_seconds=duration,
            audio_format=self.audio_format,
            started_at=started_at,
            stopped_at=stopped_at,
        ))

    async def _poll_health(self) -> None:
        while True:
            await asyncio.sleep(self.health_check_interval)
            if self._stop_requested or self._released:
                return
            active = self.is_active()
            logger.debug(f"Stream health check - active: {active}")
            if not active:
                logger.error("Stream became inactive unexpectedly")
                self._health_task = None
                self._emit_error(DeviceError(DeviceErrorKind.STREAM_INACTIVE, "no live audio tracks"))
                return

    def _cancel_health_task(self) -> None:
        if self._health_task is not None:
            self._health_task.cancel()
            self._health_task = None

    def _close_stream(self) -> None:
        with self._stream_lock:
            stream, self.stream = self.stream, None
        if stream is None:
            return
        try:
            stream.stop_stream()
            stream.close()
        except OSError as e:
            logger.warning(f"Error closing audio stream: {e}")

    def _terminate(self) -> None:
        with self._stream_lock:
            instance, self.pyaudio_instance = self.pyaudio_instance, None
        if instance is not None:
            instance.terminate()
