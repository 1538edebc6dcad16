"""Services layer for voicenotes application logic."""

from .session_controller import Capabilities, SessionController, derive_title
from .manual_entry import ManualEntryProvider, ManualEntryReason, StaticManualEntry
from .notes_client import NoteStore, NotesClient

__all__ = [
    "Capabilities",
    "SessionController",
    "derive_title",
    "ManualEntryProvider",
    "ManualEntryReason",
    "StaticManualEntry",
    "NoteStore",
    "NotesClient",
]
