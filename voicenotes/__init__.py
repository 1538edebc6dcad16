"""Voice notes: capture audio, transcribe it live, and store it as a note."""

__version__ = "0.1.0"
