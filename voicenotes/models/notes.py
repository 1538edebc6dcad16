"""Note models returned by the notes API."""

from datetime import datetime
from typing import Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class NoteAudio(BaseModel):
    """Where the stored recording lives and how long it is."""
    url: str
    duration: float = 0


class Note(BaseModel):
    """A stored voice note."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str = Field(validation_alias=AliasChoices("id", "_id"))
    title: str = "New Voice Note"
    transcript: str
    summary: Optional[str] = None
    is_summary_outdated: bool = Field(default=True, alias="isSummaryOutdated")
    audio: NoteAudio
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")
    updated_at: Optional[datetime] = Field(default=None, alias="updatedAt")


class Summary(BaseModel):
    """Result of summarizing a note."""
    model_config = ConfigDict(populate_by_name=True)

    summary: str
    is_summary_outdated: bool = Field(default=False, alias="isSummaryOutdated")
