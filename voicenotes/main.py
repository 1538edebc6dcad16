"""Main application entry point for voicenotes."""

import sys
import asyncio
import argparse
import logging
from functools import partial
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from . import __version__
from .audio import AudioCaptureSource, AudioPublisher, microphone_available
from .config import VoiceNotesConfig, reload_config
from .errors import PersistenceError
from .models.notes import Note
from .services import (
    Capabilities,
    ManualEntryProvider,
    NotesClient,
    NoteStore,
    SessionController,
    StaticManualEntry,
)
from .transcription import GoogleStreamingSource
from .ui import RecorderScreen

logger = logging.getLogger(__name__)


def setup_logging(config: VoiceNotesConfig, level: Optional[str] = None) -> None:
    """Set up logging configuration from YAML config."""
    level = level or config.get('logging.level', 'INFO')
    log_file_path = config.get('logging.file_path', 'data/logs/voicenotes.log')
    console_output = config.get('logging.console_output', True)

    Path(log_file_path).parent.mkdir(parents=True, exist_ok=True)

    handlers = []

    # File handler - always write to file
    file_handler = logging.FileHandler(log_file_path)
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(funcName)s:%(lineno)d - %(message)s'
    ))
    handlers.append(file_handler)

    # Console handler - warnings only, the screen owns the terminal
    if console_output:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(logging.WARNING)
        console_handler.setFormatter(logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s'))
        handlers.append(console_handler)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(getattr(logging, level.upper()))
    for handler in handlers:
        root_logger.addHandler(handler)

    logger.info("=" * 50)
    logger.info("voicenotes starting up")
    logger.info(f"Log file: {log_file_path}")
    logger.info(f"Log level set to: {level}")
    logger.info("=" * 50)


def detect_capabilities(config: VoiceNotesConfig) -> Capabilities:
    """Check for an input device and for configured Google credentials."""
    capabilities = Capabilities(
        microphone=microphone_available(),
        transcription=config.get_google_credentials_path() is not None,
    )
    logger.info(f"Support check - microphone: {capabilities.microphone}, "
                f"speech recognition: {capabilities.transcription}")
    return capabilities


def build_controller(config: VoiceNotesConfig,
                     note_store: NoteStore,
                     manual_entry: ManualEntryProvider,
                     profile: Optional[str] = None,
                     capabilities: Optional[Capabilities] = None) -> SessionController:
    """Wire the PyAudio capture source and Google recognizer into a session controller."""
    settings = config.get_recorder_settings(profile)
    capabilities = capabilities or detect_capabilities(config)
    audio_topic = config.get('audio.topic', 'audio.frame')
    publisher = AudioPublisher(audio_topic)

    capture_factory = partial(
        AudioCaptureSource,
        audio_publisher=publisher,
        sample_rate=settings.sample_rate,
        chunk_size=settings.chunk_size,
        channels=settings.channels,
        input_device_index=config.get('audio.input_device_index'),
        health_check_interval=settings.health_check_interval,
    )

    transcriber_factory = None
    credentials_path = config.get_google_credentials_path()
    if capabilities.transcription and credentials_path:
        transcriber_factory = partial(
            GoogleStreamingSource,
            credentials_path=credentials_path,
            audio_topic=audio_topic,
            sample_rate=settings.sample_rate,
            language=config.get('google_cloud.language', 'en-US'),
            enable_automatic_punctuation=config.get('google_cloud.enable_automatic_punctuation', True),
            model=config.get('google_cloud.model', 'latest_long'),
        )

    return SessionController(
        capture_factory=capture_factory,
        note_store=note_store,
        manual_entry=manual_entry,
        settings=settings,
        transcriber_factory=transcriber_factory,
        capabilities=capabilities,
    )


def _notes_client(config: VoiceNotesConfig) -> NotesClient:
    return NotesClient(
        base_url=config.get('api.base_url', 'http://localhost:5000'),
        timeout_seconds=config.get('api.timeout_seconds', 20),
    )


async def run_record(config: VoiceNotesConfig, args: argparse.Namespace, console: Console) -> int:
    """Record one or more notes from the microphone."""
    screen = RecorderScreen(console)
    manual_entry = StaticManualEntry(args.transcript) if args.transcript is not None else screen

    async with _notes_client(config) as client:
        controller = build_controller(config, client, manual_entry, profile=args.profile)
        screen.attach(controller)
        try:
            if args.duration:
                result = await screen.run_timed(args.duration)
                if not result["success"]:
                    console.print(f"Recording failed: {result['error']}", style="bold red")
                    return 1
                _print_note(console, result["note"])
            else:
                await screen.run()
        finally:
            screen.detach()
            controller.teardown()
    return 0


def _print_note(console: Console, note: Note) -> None:
    body = note.transcript
    if note.summary:
        outdated = " (outdated)" if note.is_summary_outdated else ""
        body += f"\n\n[bold]Summary{outdated}:[/bold]\n{note.summary}"
    subtitle = f"{note.id} | {note.audio.duration:.0f}s | {note.audio.url}"
    console.print(Panel(body, title=note.title, subtitle=subtitle, border_style="green"))


async def run_notes(config: VoiceNotesConfig, args: argparse.Namespace, console: Console) -> int:
    """List, show, edit, delete or summarize stored notes."""
    async with _notes_client(config) as client:
        try:
            if args.notes_command == "list":
                notes = await client.list_notes()
                table = Table(title="Voice notes", header_style="bold magenta")
                table.add_column("ID", style="cyan")
                table.add_column("Title")
                table.add_column("Duration", justify="right")
                table.add_column("Summary")
                table.add_column("Created")
                for note in notes:
                    summary_state = "outdated" if note.is_summary_outdated else "current"
                    created = note.created_at.strftime("%Y-%m-%d %H:%M") if note.created_at else ""
                    table.add_row(note.id, note.title, f"{note.audio.duration:.0f}s", summary_state, created)
                console.print(table)
            elif args.notes_command == "show":
                _print_note(console, await client.get_note(args.note_id))
            elif args.notes_command == "rename":
                _print_note(console, await client.update_note(args.note_id, title=args.title))
            elif args.notes_command == "edit":
                _print_note(console, await client.update_note(args.note_id, transcript=args.transcript))
            elif args.notes_command == "delete":
                await client.delete_note(args.note_id)
                console.print(f"Deleted note {args.note_id}", style="green")
            elif args.notes_command == "summarize":
                summary = await client.summarize_note(args.note_id)
                console.print(Panel(summary.summary, title="Summary", border_style="blue"))
        except PersistenceError as e:
            console.print(f"Notes API error: {e}", style="bold red")
            logger.error(f"Notes command '{args.notes_command}' failed: {e}")
            return 1
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="voicenotes - record voice notes with live transcription",
        epilog="Recorder keys: r=Start recording, s=Stop recording, q=Quit"
    )
    parser.add_argument(
        "--config",
        type=str,
        help="Path to configuration YAML file (default: ./voicenotes.yaml if present)"
    )
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Set logging level (default: from config, INFO)"
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"voicenotes v{__version__}"
    )

    commands = parser.add_subparsers(dest="command", required=True)

    record = commands.add_parser("record", help="Record notes from the microphone")
    record.add_argument(
        "--duration",
        type=float,
        help="Record automatically for this many seconds, then stop and save"
    )
    record.add_argument(
        "--transcript",
        type=str,
        help="Transcript to use when none is recognized (skips the prompt)"
    )
    record.add_argument(
        "--profile",
        choices=["desktop", "mobile"],
        help="Recorder timing profile (overrides config)"
    )

    notes = commands.add_parser("notes", help="Manage stored notes")
    notes_commands = notes.add_subparsers(dest="notes_command", required=True)
    notes_commands.add_parser("list", help="List notes, newest first")
    for name, help_text in (("show", "Show one note"), ("delete", "Delete a note"),
                            ("summarize", "Generate an AI summary")):
        sub = notes_commands.add_parser(name, help=help_text)
        sub.add_argument("note_id")
    rename = notes_commands.add_parser("rename", help="Change a note's title")
    rename.add_argument("note_id")
    rename.add_argument("title")
    edit = notes_commands.add_parser("edit", help="Replace a note's transcript")
    edit.add_argument("note_id")
    edit.add_argument("transcript")

    return parser


def main() -> None:
    """Main entry point for voicenotes."""
    args = build_parser().parse_args()
    console = Console()

    try:
        config = reload_config(args.config)
    except (FileNotFoundError, ValueError) as e:
        console.print(f"Configuration error: {e}", style="bold red")
        sys.exit(2)
    setup_logging(config, args.log_level)

    runner = run_record if args.command == "record" else run_notes
    try:
        exit_code = asyncio.run(runner(config, args, console))
    except KeyboardInterrupt:
        console.print("\nGoodbye!")
        exit_code = 0
    except Exception as e:
        console.print(f"Error: {e}", style="bold red")
        logger.error(f"Application error: {e}", exc_info=True)
        exit_code = 1
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
