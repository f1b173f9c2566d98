"""
Data types for echonotes.

Entities are plain dataclasses. Each converts to and from the record dict
that the record store persists (camelCase keys, bytes payloads kept as bytes).
All timestamps are integer milliseconds since the epoch.
"""

import secrets
import string
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Iterable, Optional


class NoteStatus(str, Enum):
    """Persisted processing state of a voice note.

    ``recording`` lives only in the capture UI and is never stored.
    """

    TRANSCRIBING = "transcribing"
    READY = "ready"
    ERROR = "error"


_ID_ALPHABET = string.digits + string.ascii_lowercase


def now_ms() -> int:
    """Current time in milliseconds since the epoch."""
    return int(time.time() * 1000)


def touch(previous: Optional[int] = None) -> int:
    """Timestamp for a mutation that never goes backwards past ``previous``."""
    current = now_ms()
    if previous is not None and previous > current:
        return previous
    return current


def _base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_ID_ALPHABET[rem])
    return "".join(reversed(digits))


def generate_id() -> str:
    """Opaque unique id: base-36 millisecond clock plus a random suffix."""
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(11))
    return _base36(now_ms()) + suffix


def normalize_tags(tags: Iterable[str]) -> list[str]:
    """Lowercase, trim and de-duplicate tags, keeping first-seen order."""
    seen: list[str] = []
    for tag in tags:
        cleaned = tag.strip().lower()
        if cleaned and cleaned not in seen:
            seen.append(cleaned)
    return seen


def format_default_title(timestamp_ms: int) -> str:
    """Capture-time title such as ``Mar 4, 09:15 AM`` (local time)."""
    dt = datetime.fromtimestamp(timestamp_ms / 1000)
    return f"{dt:%b} {dt.day}, {dt:%I:%M %p}"


def format_duration(seconds: float) -> str:
    """Format seconds as ``m:ss``."""
    total = int(seconds)
    return f"{total // 60}:{total % 60:02d}"


# ---------------------------------------------------------------------------
# Voice notes
# ---------------------------------------------------------------------------

@dataclass
class VoiceNote:
    """
    A captured audio recording and its AI enrichment.

    The audio payload is owned by this record; deleting the note is the only
    way it is released. ``folder_id`` and ``insight_ids`` are weak references.
    """
    id: str
    default_title: str
    audio: bytes
    audio_format: str
    duration: float
    status: NoteStatus
    created_at: int
    updated_at: int
    title: str = ""
    transcription: Optional[str] = None
    summary: Optional[str] = None
    tags: list[str] = field(default_factory=list)
    detected_language: Optional[str] = None
    folder_id: Optional[str] = None
    insight_ids: list[str] = field(default_factory=list)

    @property
    def display_title(self) -> str:
        return self.title or self.default_title

    def to_record(self) -> dict[str, Any]:
        record = {
            "id": self.id,
            "title": self.title,
            "defaultTitle": self.default_title,
            "audioBlob": self.audio,
            "audioFormat": self.audio_format,
            "duration": self.duration,
            "transcription": self.transcription,
            "summary": self.summary,
            "tags": list(self.tags),
            "folderId": self.folder_id,
            "insightIds": list(self.insight_ids),
            "status": NoteStatus(self.status).value,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }
        if self.detected_language:
            record["detectedLanguage"] = self.detected_language
        return record

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "VoiceNote":
        return cls(
            id=record["id"],
            title=record.get("title") or "",
            default_title=record.get("defaultTitle", ""),
            audio=record.get("audioBlob") or b"",
            audio_format=record.get("audioFormat", ""),
            duration=float(record.get("duration") or 0),
            transcription=record.get("transcription"),
            summary=record.get("summary"),
            tags=list(record.get("tags") or []),
            detected_language=record.get("detectedLanguage"),
            folder_id=record.get("folderId"),
            insight_ids=list(record.get("insightIds") or []),
            status=NoteStatus(record["status"]),
            created_at=int(record["createdAt"]),
            updated_at=int(record["updatedAt"]),
        )


# ---------------------------------------------------------------------------
# Folders
# ---------------------------------------------------------------------------

@dataclass
class Folder:
    """A named group of notes. Does not own its notes."""
    id: str
    name: str
    color: str
    created_at: int

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "color": self.color,
            "createdAt": self.created_at,
        }

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "Folder":
        return cls(
            id=record["id"],
            name=record["name"],
            color=record.get("color", ""),
            created_at=int(record["createdAt"]),
        )


# ---------------------------------------------------------------------------
# Insights
# ---------------------------------------------------------------------------

@dataclass
class TimelineEntry:
    date: int
    event: str
    note_id: str = ""

    def to_record(self) -> dict[str, Any]:
        return {"date": self.date, "noteId": self.note_id, "event": self.event}

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "TimelineEntry":
        return cls(
            date=int(record.get("date") or 0),
            event=record.get("event", ""),
            note_id=record.get("noteId", ""),
        )


@dataclass
class CustomSection:
    """A user question about an insight and the generated answer."""
    prompt: str
    content: str
    generated_at: int

    def to_record(self) -> dict[str, Any]:
        return {
            "prompt": self.prompt,
            "content": self.content,
            "generatedAt": self.generated_at,
        }

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "CustomSection":
        return cls(
            prompt=record.get("prompt", ""),
            content=record.get("content", ""),
            generated_at=int(record.get("generatedAt") or 0),
        )


@dataclass
class InsightContent:
    """Structured AI analysis attached to an insight. Replaced wholesale."""
    summary: str = ""
    key_points: list[str] = field(default_factory=list)
    action_items: list[str] = field(default_factory=list)
    timeline: list[TimelineEntry] = field(default_factory=list)
    custom_sections: list[CustomSection] = field(default_factory=list)

    def to_record(self) -> dict[str, Any]:
        return {
            "summary": self.summary,
            "keyPoints": list(self.key_points),
            "actionItems": list(self.action_items),
            "timeline": [t.to_record() for t in self.timeline],
            "customSections": [s.to_record() for s in self.custom_sections],
        }

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "InsightContent":
        return cls(
            summary=record.get("summary", ""),
            key_points=list(record.get("keyPoints") or []),
            action_items=list(record.get("actionItems") or []),
            timeline=[TimelineEntry.from_record(t) for t in record.get("timeline") or []],
            custom_sections=[
                CustomSection.from_record(s) for s in record.get("customSections") or []
            ],
        )


@dataclass
class Insight:
    """A named aggregation of notes and images with generated analysis."""
    id: str
    name: str
    created_at: int
    updated_at: int
    note_ids: list[str] = field(default_factory=list)
    image_ids: list[str] = field(default_factory=list)
    generated_content: Optional[InsightContent] = None
    last_generated_at: Optional[int] = None

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "noteIds": list(self.note_ids),
            "imageIds": list(self.image_ids),
            "generatedContent": (
                self.generated_content.to_record() if self.generated_content else None
            ),
            "lastGeneratedAt": self.last_generated_at,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "Insight":
        content = record.get("generatedContent")
        return cls(
            id=record["id"],
            name=record.get("name", ""),
            note_ids=list(record.get("noteIds") or []),
            image_ids=list(record.get("imageIds") or []),
            generated_content=InsightContent.from_record(content) if content else None,
            last_generated_at=record.get("lastGeneratedAt"),
            created_at=int(record["createdAt"]),
            updated_at=int(record["updatedAt"]),
        )


@dataclass
class InsightImage:
    """
    An asset attached to exactly one insight.

    Either an uploaded picture or a rendered diagram; diagrams carry their
    source text in ``diagram_source``.
    """
    id: str
    insight_id: str
    data: bytes
    name: str
    mime_type: str
    width: int
    height: int
    created_at: int
    diagram_source: Optional[str] = None

    @property
    def is_diagram(self) -> bool:
        return bool(self.diagram_source)

    def to_record(self) -> dict[str, Any]:
        record = {
            "id": self.id,
            "insightId": self.insight_id,
            "blob": self.data,
            "name": self.name,
            "mimeType": self.mime_type,
            "width": self.width,
            "height": self.height,
            "createdAt": self.created_at,
        }
        if self.diagram_source:
            record["mermaidCode"] = self.diagram_source
        return record

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "InsightImage":
        return cls(
            id=record["id"],
            insight_id=record["insightId"],
            data=record.get("blob") or b"",
            name=record.get("name", ""),
            mime_type=record.get("mimeType", ""),
            width=int(record.get("width") or 0),
            height=int(record.get("height") or 0),
            diagram_source=record.get("mermaidCode"),
            created_at=int(record["createdAt"]),
        )
