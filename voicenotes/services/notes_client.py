"""HTTP client for the notes API (the persistence boundary of a capture session)."""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import aiohttp
from pydantic import ValidationError

from ..errors import PersistenceError
from ..models.notes import Note, Summary
from ..models.session import FinishedArtifact

logger = logging.getLogger(__name__)


class NoteStore(ABC):
    """Accepts a finished recording and returns the stored note."""

    @abstractmethod
    async def create_note(self, artifact: FinishedArtifact) -> Note:
        """Store the artifact.

        Raises:
            PersistenceError: if the note could not be stored
        """


class NotesClient(NoteStore):
    """aiohttp client for the ``/api/notes`` REST endpoints."""

    def __init__(self, base_url: str = "http://localhost:5000", timeout_seconds: float = 20.0,
                 session: Optional[aiohttp.ClientSession] = None):
        """Initialize notes client.

        Args:
            base_url: Server root, without the ``/api`` suffix
            timeout_seconds: Total timeout per request
            session: Optional externally managed aiohttp session
        """
        self.base_url = base_url.rstrip('/')
        self.timeout_seconds = timeout_seconds
        self._session = session
        self._owns_session = session is None
        logger.info(f"NotesClient using API at: {self.api_url}")

    @property
    def api_url(self) -> str:
        return f"{self.base_url}/api"

    async def __aenter__(self) -> "NotesClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout_seconds))
            self._owns_session = True
        return self._session

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        url = f"{self.api_url}{path}"
        logger.debug(f"Request: {method} {url}")
        try:
            async with self._get_session().request(method, url, **kwargs) as response:
                if response.content_type == "application/json":
                    payload = await response.json()
                else:
                    payload = await response.text()
                logger.debug(f"Response: {response.status} {url}")

                if response.status >= 400:
                    message = payload.get("error") if isinstance(payload, dict) else None
                    message = message or f"HTTP {response.status}"
                    logger.error(f"Notes API error: {response.status} {url} - {payload}")
                    raise PersistenceError(message, status=response.status)
                return payload
        except aiohttp.ClientError as e:
            logger.error(f"Could not reach notes API at {url}: {e}")
            raise PersistenceError(f"Could not reach notes API: {e}") from e
        except asyncio.TimeoutError as e:
            logger.error(f"Notes API request timed out: {method} {url}")
            raise PersistenceError("Notes API request timed out") from e

    @staticmethod
    def _parse_note(payload: Any) -> Note:
        try:
            return Note.model_validate(payload)
        except ValidationError as e:
            raise PersistenceError(f"Unexpected note payload: {e}") from e

    async def create_note(self, artifact: FinishedArtifact) -> Note:
        """Upload audio, transcript, duration and title as a new note."""
        form = aiohttp.FormData()
        form.add_field('audio', artifact.audio_blob,
                       filename=artifact.filename, content_type=artifact.content_type)
        form.add_field('transcript', artifact.transcript_text)
        form.add_field('duration', str(artifact.duration_seconds))
        form.add_field('title', artifact.derived_title)
        form.add_field('recordingId', artifact.session_id)

        logger.info(f"Uploading note for session {artifact.session_id}: "
                    f"{len(artifact.audio_blob)} bytes, {artifact.duration_seconds}s, "
                    f"title='{artifact.derived_title}'")
        payload = await self._request("POST", "/notes", data=form)
        note = self._parse_note(payload)
        logger.info(f"Note created: {note.id}")
        return note

    async def list_notes(self) -> List[Note]:
        payload = await self._request("GET", "/notes")
        if not isinstance(payload, list):
            raise PersistenceError("Unexpected notes list payload")
        return [self._parse_note(item) for item in payload]

    async def get_note(self, note_id: str) -> Note:
        return self._parse_note(await self._request("GET", f"/notes/{note_id}"))

    async def update_note(self, note_id: str, title: Optional[str] = None,
                          transcript: Optional[str] = None) -> Note:
        """Rename a note and/or replace its transcript.

        Changing the transcript clears the summary and marks it outdated.
        """
        body: Dict[str, str] = {}
        if title is not None:
            body["title"] = title
        if transcript is not None:
            body["transcript"] = transcript
        return self._parse_note(await self._request("PUT", f"/notes/{note_id}", json=body))

    async def delete_note(self, note_id: str) -> bool:
        payload = await self._request("DELETE", f"/notes/{note_id}")
        return bool(isinstance(payload, dict) and payload.get("ok"))

    async def summarize_note(self, note_id: str) -> Summary:
        payload = await self._request("POST", f"/notes/{note_id}/summarize")
        try:
            return Summary.model_validate(payload)
        except ValidationError as e:
            raise PersistenceError(f"Unexpected summary payload: {e}") from e

    async def health(self) -> bool:
        try:
            payload = await self._request("GET", "/health")
        except PersistenceError as e:
            logger.warning(f"Notes API health check failed: {e}")
            return False
        return bool(isinstance(payload, dict) and payload.get("ok"))
