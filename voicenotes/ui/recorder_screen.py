"""Terminal recorder screen: renders controller state and asks for manual transcripts."""

import asyncio
import logging
from datetime import datetime
from threading import Thread
from typing import Any, Dict, Optional

from pubsub import pub
from rich.align import Align
from rich.console import Console, Group
from rich.live import Live
from rich.panel import Panel
from rich.prompt import Confirm, Prompt
from rich.table import Table
from rich.text import Text

from ..models.notes import Note
from ..models.session import SessionSnapshot, SessionStatus
from ..services.manual_entry import MANUAL_ENTRY_PROMPTS, ManualEntryProvider, ManualEntryReason
from ..services.session_controller import SessionController
from .keyboard_input import KeyboardInputHandler

logger = logging.getLogger(__name__)


STATUS_STYLES = {
    SessionStatus.IDLE: ("IDLE", "bold yellow"),
    SessionStatus.RECORDING: ("RECORDING", "bold red"),
    SessionStatus.TRANSCRIBING: ("TRANSCRIBING", "bold green"),
    SessionStatus.PROCESSING: ("PROCESSING", "bold cyan"),
}

PLACEHOLDERS = {
    SessionStatus.TRANSCRIBING: "Start speaking... your transcript will appear here",
    SessionStatus.RECORDING: "Initializing speech recognition...",
    SessionStatus.PROCESSING: "Finishing up...",
}


def _set_future_result(future: asyncio.Future, value) -> None:
    if not future.done():
        future.set_result(value)


def _set_future_exception(future: asyncio.Future, error: Exception) -> None:
    if not future.done():
        future.set_exception(error)


class RecorderScreen(ManualEntryProvider):
    """Rich Live view of one session controller.

    Keys: ``r`` start, ``s`` stop, ``q`` quit.
    """

    def __init__(self, console: Optional[Console] = None):
        self.console = console or Console()
        self.controller: Optional[SessionController] = None
        self.snapshot = SessionSnapshot(status=SessionStatus.IDLE)
        self.last_note: Optional[Note] = None
        self._live: Optional[Live] = None
        self._input_handler: Optional[KeyboardInputHandler] = None
        self._keys: Optional[asyncio.Queue] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def attach(self, controller: SessionController) -> None:
        """Observe the controller's pub/sub topics."""
        self.controller = controller
        self.snapshot = controller.snapshot()
        pub.subscribe(self._on_changed, controller.changed_topic)
        pub.subscribe(self._on_finished, controller.finished_topic)

    def detach(self) -> None:
        if self.controller is None:
            return
        for listener, topic in ((self._on_changed, self.controller.changed_topic),
                                (self._on_finished, self.controller.finished_topic)):
            if pub.isSubscribed(listener, topic):
                pub.unsubscribe(listener, topic)

    def _on_changed(self, snapshot: SessionSnapshot) -> None:
        self.snapshot = snapshot

    def _on_finished(self, note: Note) -> None:
        self.last_note = note
        logger.info(f"Note saved: {note.id} '{note.title}'")

    # Rendering

    def _elapsed(self) -> Optional[float]:
        session = self.controller.session if self.controller else None
        if session is None or session.status is SessionStatus.PROCESSING:
            return None
        return (datetime.now() - session.started_at).total_seconds()

    def render(self) -> Panel:
        snapshot = self.snapshot
        label, style = STATUS_STYLES[snapshot.status]

        stats = Table.grid(padding=(0, 2))
        stats.add_column(style="cyan")
        stats.add_column()
        stats.add_row("Status", Text(label, style=style))
        elapsed = self._elapsed()
        if elapsed is not None:
            stats.add_row("Elapsed", f"{elapsed:.0f}s")
        if snapshot.duration_seconds is not None:
            stats.add_row("Recorded duration", f"{snapshot.duration_seconds}s")
        if snapshot.status is not SessionStatus.IDLE:
            level_bar = "#" * int(snapshot.input_level * 20)
            stats.add_row("Input level", f"{level_bar:<20} {snapshot.input_level:.2f}")
            stats.add_row("Chunks", str(snapshot.chunk_count))

        transcript = snapshot.live_transcript or PLACEHOLDERS.get(
            snapshot.status, "(live transcript will appear here while recording...)")
        transcript_style = "white" if snapshot.live_transcript else "dim italic"

        parts = [stats, Panel(Text(transcript, style=transcript_style), title="Live transcript",
                              border_style="blue")]
        if snapshot.last_error:
            parts.append(Text(f"! {snapshot.last_error}", style="bold red"))
        if self.last_note is not None and snapshot.status is SessionStatus.IDLE:
            parts.append(Text(f"Saved: {self.last_note.title}", style="green"))
        parts.append(Align.center(Text.assemble(
            ("r", "bold green"), " start  ", ("s", "bold yellow"), " stop  ", ("q", "bold red"), " quit")))

        return Panel(Group(*parts), title="voicenotes", border_style="bright_blue")

    # Manual entry

    async def request_transcript(self, reason: ManualEntryReason) -> Optional[str]:
        # Shutdown must not wait on an unanswered prompt
        loop = asyncio.get_running_loop()
        answer = loop.create_future()
        self._pause()
        prompt_thread = Thread(target=self._prompt_in_thread, args=(reason, loop, answer), daemon=True)
        prompt_thread.name = "ManualEntryPrompt"
        prompt_thread.start()
        try:
            return await answer
        finally:
            self._resume()

    def _prompt_in_thread(self, reason: ManualEntryReason, loop: asyncio.AbstractEventLoop,
                          answer: asyncio.Future) -> None:
        try:
            text = self._ask_transcript(reason)
        except Exception as e:
            logger.error(f"Manual transcript prompt failed: {e}")
            self._resolve_on_loop(loop, answer, _set_future_exception, e)
        else:
            self._resolve_on_loop(loop, answer, _set_future_result, text)

    @staticmethod
    def _resolve_on_loop(loop, answer, setter, value) -> None:
        try:
            loop.call_soon_threadsafe(setter, answer, value)
        except RuntimeError:
            logger.debug("Event loop closed before the manual transcript arrived")

    def _ask_transcript(self, reason: ManualEntryReason) -> Optional[str]:
        self.console.print(Panel(MANUAL_ENTRY_PROMPTS[reason], border_style="yellow"))
        try:
            if not Confirm.ask("Enter a transcript now?", console=self.console, default=True):
                return None
            text = Prompt.ask("Transcript", console=self.console, default="", show_default=False)
        except EOFError:
            return None
        return text.strip() or None

    def _pause(self) -> None:
        if self._input_handler is not None:
            self._input_handler.stop()
        if self._live is not None:
            self._live.stop()

    def _resume(self) -> None:
        if self._live is not None:
            self._live.start()
        if self._input_handler is not None:
            self._input_handler.start()

    # Main loops

    def _on_key(self, key: str) -> bool:
        self._loop.call_soon_threadsafe(self._keys.put_nowait, key)
        return key != "q"

    async def run(self) -> None:
        """Interactive loop until the user quits."""
        self._loop = asyncio.get_running_loop()
        self._keys = asyncio.Queue()
        self._input_handler = KeyboardInputHandler(self._on_key)
        pending_stop: Optional[asyncio.Task] = None

        self._live = Live(get_renderable=self.render, console=self.console, refresh_per_second=4)
        self._live.start()
        self._input_handler.start()
        try:
            while True:
                key = await self._keys.get()
                if key == "q":
                    break
                if key == "r":
                    await self.controller.start()
                elif key == "s" and (pending_stop is None or pending_stop.done()):
                    pending_stop = asyncio.create_task(self.controller.stop())
        finally:
            self.controller.teardown()
            if pending_stop is not None and not pending_stop.done():
                pending_stop.cancel()
            self._input_handler.stop()
            self._input_handler = None
            self._live.stop()
            self._live = None

    async def run_timed(self, duration_seconds: float) -> Dict[str, Any]:
        """Record for a fixed time, then stop (auto mode)."""
        self._live = Live(get_renderable=self.render, console=self.console, refresh_per_second=4)
        self._live.start()
        try:
            result = await self.controller.start()
            if not result["success"]:
                return result
            await asyncio.sleep(duration_seconds)
            return await self.controller.stop()
        finally:
            self.controller.teardown()
            self._live.stop()
            self._live = None
