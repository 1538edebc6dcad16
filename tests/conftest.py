"""Pytest configuration and fixtures for voicenotes tests."""

import pytest
import tempfile
import logging
from pathlib import Path
from unittest.mock import Mock, patch
import numpy as np
from pubsub import pub

from voicenotes.config import RecorderSettings
from voicenotes.services.session_controller import Capabilities, SessionController

from .fakes import FakeCaptureSource, FakeNoteStore, FakeTranscriptionSource, ScriptedManualEntry


# Configure logging for tests
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def pytest_configure(config):
    config.addinivalue_line("markers", "unit: fast tests without hardware or network")
    config.addinivalue_line("markers", "integration: tests wiring several components together")
    config.addinivalue_line("markers", "hardware: tests that need a real microphone")


@pytest.fixture(autouse=True)
def reset_pubsub():
    """Drop every pub/sub listener a test left behind."""
    yield
    pub.unsubAll()


@pytest.fixture
def temp_data_dir():
    """Create temporary directory for test data."""
    with tempfile.TemporaryDirectory() as temp_dir:
        yield temp_dir


@pytest.fixture
def sample_audio_chunk():
    """Generate a sample audio chunk for testing."""
    # Generate 1024 samples of 16-bit audio (sine wave)
    sample_rate = 16000
    duration = 1024 / sample_rate  # ~0.064 seconds
    freq = 440  # A4 note

    t = np.linspace(0, duration, 1024, False)
    wave_data = np.sin(2 * np.pi * freq * t)

    # Convert to 16-bit integers
    audio_data = (wave_data * 32767).astype(np.int16)
    return audio_data.tobytes()


@pytest.fixture
def mock_pyaudio():
    """Mock PyAudio for testing without actual audio hardware."""
    with patch('pyaudio.PyAudio') as mock_pyaudio_class:
        mock_pyaudio_instance = Mock()
        mock_stream = Mock()

        # Configure mock stream
        mock_stream.read.return_value = b'\x00' * 2048  # Silent audio
        mock_stream.is_active.return_value = True
        mock_stream.start_stream.return_value = None
        mock_stream.stop_stream.return_value = None
        mock_stream.close.return_value = None

        # Configure mock PyAudio instance
        mock_pyaudio_instance.open.return_value = mock_stream
        mock_pyaudio_instance.terminate.return_value = None
        mock_pyaudio_instance.get_sample_size.return_value = 2
        mock_pyaudio_instance.get_device_count.return_value = 1
        mock_pyaudio_instance.get_device_info_by_index.return_value = {'maxInputChannels': 1}
        mock_pyaudio_instance.get_default_input_device_info.return_value = {'index': 0}

        # Configure mock PyAudio class
        mock_pyaudio_class.return_value = mock_pyaudio_instance

        yield {
            'class': mock_pyaudio_class,
            'instance': mock_pyaudio_instance,
            'stream': mock_stream
        }


@pytest.fixture
def fast_settings():
    """Recorder settings with every grace period collapsed."""
    return RecorderSettings(
        settle_delay=0,
        stop_grace=0,
        retry_grace=0,
        health_check_interval=60,
        capture_stop_timeout=1.0,
    )


class ControllerHarness:
    """A session controller wired to fakes, plus handles on everything it created."""

    def __init__(self, settings, transcription=True, microphone=True, capture_kwargs=None,
                 transcriber_kwargs=None, store=None, manual_entry=None, topic_root="test.session"):
        self.captures = []
        self.transcribers = []
        self.capture_kwargs = capture_kwargs or {}
        self.transcriber_kwargs = transcriber_kwargs or {}
        self.store = store or FakeNoteStore()
        self.manual_entry = manual_entry or ScriptedManualEntry()
        self.snapshots = []
        self.finished = []

        self.controller = SessionController(
            capture_factory=self._make_capture,
            note_store=self.store,
            manual_entry=self.manual_entry,
            settings=settings,
            transcriber_factory=self._make_transcriber if transcription else None,
            capabilities=Capabilities(microphone=microphone, transcription=transcription),
            topic_root=topic_root,
        )
        pub.subscribe(self._on_changed, self.controller.changed_topic)
        pub.subscribe(self._on_finished, self.controller.finished_topic)

    def _make_capture(self):
        capture = FakeCaptureSource(**self.capture_kwargs)
        self.captures.append(capture)
        return capture

    def _make_transcriber(self):
        transcriber = FakeTranscriptionSource(**self.transcriber_kwargs)
        self.transcribers.append(transcriber)
        return transcriber

    def _on_changed(self, snapshot):
        self.snapshots.append(snapshot)

    def _on_finished(self, note):
        self.finished.append(note)

    @property
    def capture(self):
        return self.captures[-1]

    @property
    def transcriber(self):
        return self.transcribers[-1]

    @property
    def statuses(self):
        return [snapshot.status for snapshot in self.snapshots]


@pytest.fixture
def make_harness(fast_settings):
    """Factory for controller harnesses; keyword arguments override the defaults."""
    def factory(**kwargs):
        kwargs.setdefault("settings", fast_settings)
        return ControllerHarness(**kwargs)
    return factory


@pytest.fixture
def config_file(temp_data_dir):
    """Write a YAML config file and return its path."""
    def write(text: str) -> str:
        path = Path(temp_data_dir) / "voicenotes.yaml"
        path.write_text(text, encoding='utf-8')
        return str(path)
    return write
