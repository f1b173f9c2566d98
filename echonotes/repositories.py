"""
Typed repositories over the record store.

One repository per entity. Each is a thin facade that converts between
dataclasses and stored records, plus the entity's query helpers. Folder and
insight deletion run the integrity cascades before removing the record.

Every mutation is a whole-record write with a refreshed ``updated_at``.
"""

import logging
from typing import Any, Iterable, Optional

from .errors import ValidationFailed
from .integrity import IntegrityManager
from .record_store import FOLDERS, IMAGES, INSIGHTS, NOTES, SETTINGS, RecordStore
from .types import (
    CustomSection,
    Folder,
    Insight,
    InsightContent,
    InsightImage,
    NoteStatus,
    VoiceNote,
    generate_id,
    normalize_tags,
    now_ms,
    touch,
)

logger = logging.getLogger(__name__)

DEFAULT_FOLDER_COLOR = "#e84d6e"


def _require_name(name: str, what: str) -> str:
    cleaned = (name or "").strip()
    if not cleaned:
        raise ValidationFailed(f"{what} name must not be empty")
    return cleaned


def _newest_first(notes: Iterable[VoiceNote]) -> list[VoiceNote]:
    return sorted(notes, key=lambda n: n.created_at, reverse=True)


# ---------------------------------------------------------------------------
# Notes
# ---------------------------------------------------------------------------

class NoteRepository:
    """
    Voice notes.

    Deleting a note does not touch folders or insights that reference it;
    readers of ``Insight.note_ids`` filter out ids that no longer resolve.

    put() accepts any valid status, but only NoteLifecycleController and
    LegacyImporter may write one. Other callers go through update() and
    move_to_folder(), which keep the stored status. Writing a status from
    anywhere else is unsupported.
    """

    def __init__(self, store: RecordStore):
        self._store = store

    async def get(self, note_id: str) -> Optional[VoiceNote]:
        record = await self._store.get_by_id(NOTES, note_id)
        return VoiceNote.from_record(record) if record else None

    async def get_all(self) -> list[VoiceNote]:
        return [VoiceNote.from_record(r) for r in await self._store.get_all(NOTES)]

    async def put(self, note: VoiceNote) -> None:
        """
        Store a note, replacing any previous version entirely.

        Status transitions belong to the lifecycle controller; user edits go
        through update() and move_to_folder(), which never change status.
        """
        try:
            NoteStatus(note.status)
        except ValueError as e:
            raise ValidationFailed(f"Invalid note status: {note.status!r}") from e
        await self._store.put(NOTES, note.to_record())

    async def delete(self, note_id: str) -> None:
        """Delete a note and its audio. Absent ids are ignored."""
        await self._store.delete(NOTES, note_id)

    async def get_by_folder(self, folder_id: str) -> list[VoiceNote]:
        records = await self._store.get_all_by_index(NOTES, "folderId", folder_id)
        return _newest_first(VoiceNote.from_record(r) for r in records)

    async def get_by_status(self, status: NoteStatus) -> list[VoiceNote]:
        records = await self._store.get_all_by_index(NOTES, "status", NoteStatus(status).value)
        return _newest_first(VoiceNote.from_record(r) for r in records)

    async def search(self, query: str) -> list[VoiceNote]:
        """
        Case-insensitive substring search over title, transcription and tags.

        Returns:
            Matching notes, newest created first
        """
        needle = query.lower()
        matches = []
        for note in await self.get_all():
            if (
                needle in note.title.lower()
                or (note.transcription is not None and needle in note.transcription.lower())
                or any(needle in tag.lower() for tag in note.tags)
            ):
                matches.append(note)
        return _newest_first(matches)

    async def get_recent(self, limit: int = 5) -> list[VoiceNote]:
        return _newest_first(await self.get_all())[:limit]

    async def update(
        self,
        note_id: str,
        *,
        title: Optional[str] = None,
        tags: Optional[Iterable[str]] = None,
    ) -> VoiceNote:
        """
        Apply a user edit to a note's title and/or tags.

        Allowed in any status. An edit made while enrichment is in flight is
        overwritten if the enrichment write lands later.

        Raises:
            ValidationFailed: If the note does not exist
        """
        note = await self.get(note_id)
        if note is None:
            raise ValidationFailed(f"Note not found: {note_id}")
        if title is not None:
            note.title = title.strip()
        if tags is not None:
            note.tags = normalize_tags(tags)
        note.updated_at = touch(note.updated_at)
        await self.put(note)
        return note

    async def move_to_folder(self, note_id: str, folder_id: Optional[str]) -> VoiceNote:
        """
        File a note under a folder, or unfile it with ``folder_id=None``.

        Raises:
            ValidationFailed: If the note or target folder does not exist
        """
        note = await self.get(note_id)
        if note is None:
            raise ValidationFailed(f"Note not found: {note_id}")
        if folder_id is not None and await self._store.get_by_id(FOLDERS, folder_id) is None:
            raise ValidationFailed(f"Folder not found: {folder_id}")
        note.folder_id = folder_id
        note.updated_at = touch(note.updated_at)
        await self.put(note)
        return note


# ---------------------------------------------------------------------------
# Folders
# ---------------------------------------------------------------------------

class FolderRepository:
    """Folders. Deleting one unfiles its notes first."""

    def __init__(self, store: RecordStore, integrity: IntegrityManager):
        self._store = store
        self._integrity = integrity

    async def get(self, folder_id: str) -> Optional[Folder]:
        record = await self._store.get_by_id(FOLDERS, folder_id)
        return Folder.from_record(record) if record else None

    async def get_all(self) -> list[Folder]:
        return [Folder.from_record(r) for r in await self._store.get_all(FOLDERS)]

    async def get_sorted_by_name(self) -> list[Folder]:
        return sorted(await self.get_all(), key=lambda f: f.name.casefold())

    async def put(self, folder: Folder) -> None:
        folder.name = _require_name(folder.name, "Folder")
        await self._store.put(FOLDERS, folder.to_record())

    async def create(self, name: str, color: str = DEFAULT_FOLDER_COLOR) -> Folder:
        folder = Folder(
            id=generate_id(),
            name=_require_name(name, "Folder"),
            color=color,
            created_at=now_ms(),
        )
        await self._store.put(FOLDERS, folder.to_record())
        logger.info("Created folder %s (%s)", folder.id, folder.name)
        return folder

    async def rename(self, folder_id: str, name: str) -> Folder:
        cleaned = _require_name(name, "Folder")
        folder = await self.get(folder_id)
        if folder is None:
            raise ValidationFailed(f"Folder not found: {folder_id}")
        folder.name = cleaned
        await self._store.put(FOLDERS, folder.to_record())
        return folder

    async def delete(self, folder_id: str) -> int:
        """
        Unfile every note in the folder, then delete the folder.

        Returns:
            Number of notes that were unfiled
        """
        detached = await self._integrity.detach_folder(folder_id)
        await self._store.delete(FOLDERS, folder_id)
        logger.info("Deleted folder %s", folder_id)
        return detached

    async def note_counts(self) -> dict[str, int]:
        """Live count of notes per folder id (folders with no notes map to 0)."""
        counts = {f.id: 0 for f in await self.get_all()}
        for record in await self._store.get_all(NOTES):
            folder_id = record.get("folderId")
            if folder_id in counts:
                counts[folder_id] += 1
        return counts


# ---------------------------------------------------------------------------
# Insights
# ---------------------------------------------------------------------------

class InsightRepository:
    """
    Insights and their note membership.

    Membership is stored on both sides (``Insight.note_ids`` and
    ``VoiceNote.insight_ids``); the helpers here update both.
    """

    def __init__(self, store: RecordStore, integrity: IntegrityManager):
        self._store = store
        self._integrity = integrity

    async def get(self, insight_id: str) -> Optional[Insight]:
        record = await self._store.get_by_id(INSIGHTS, insight_id)
        return Insight.from_record(record) if record else None

    async def get_all(self) -> list[Insight]:
        return [Insight.from_record(r) for r in await self._store.get_all(INSIGHTS)]

    async def get_sorted_by_name(self) -> list[Insight]:
        return sorted(await self.get_all(), key=lambda i: i.name.casefold())

    async def get_recently_updated(self) -> list[Insight]:
        return sorted(await self.get_all(), key=lambda i: i.updated_at, reverse=True)

    async def put(self, insight: Insight) -> None:
        insight.name = _require_name(insight.name, "Insight")
        await self._store.put(INSIGHTS, insight.to_record())

    async def _require(self, insight_id: str) -> Insight:
        insight = await self.get(insight_id)
        if insight is None:
            raise ValidationFailed(f"Insight not found: {insight_id}")
        return insight

    async def create(self, name: str) -> Insight:
        now = now_ms()
        insight = Insight(
            id=generate_id(),
            name=_require_name(name, "Insight"),
            created_at=now,
            updated_at=now,
        )
        await self._store.put(INSIGHTS, insight.to_record())
        logger.info("Created insight %s (%s)", insight.id, insight.name)
        return insight

    async def rename(self, insight_id: str, name: str) -> Insight:
        cleaned = _require_name(name, "Insight")
        insight = await self._require(insight_id)
        insight.name = cleaned
        insight.updated_at = touch(insight.updated_at)
        await self._store.put(INSIGHTS, insight.to_record())
        return insight

    async def delete(self, insight_id: str) -> int:
        """
        Drop the insight from its notes and delete its images, then delete it.

        Returns:
            Number of notes that were rewritten
        """
        detached = await self._integrity.detach_insight(insight_id)
        await self._integrity.drop_insight_images(insight_id)
        await self._store.delete(INSIGHTS, insight_id)
        logger.info("Deleted insight %s", insight_id)
        return detached

    # -------------------------------------------------------------------------
    # Membership
    # -------------------------------------------------------------------------

    async def _link_note(self, note_id: str, insight_id: str, linked: bool) -> bool:
        record = await self._store.get_by_id(NOTES, note_id)
        if record is None:
            return False
        ids = [iid for iid in record.get("insightIds") or [] if iid != insight_id]
        if linked:
            ids.append(insight_id)
        record["insightIds"] = ids
        record["updatedAt"] = touch(record.get("updatedAt"))
        await self._store.put(NOTES, record)
        return True

    async def add_note(self, insight_id: str, note_id: str) -> Insight:
        """
        Add a note to an insight. Adding an existing member is a no-op.

        Raises:
            ValidationFailed: If the insight or note does not exist
        """
        insight = await self._require(insight_id)
        if note_id in insight.note_ids:
            return insight
        if await self._store.get_by_id(NOTES, note_id) is None:
            raise ValidationFailed(f"Note not found: {note_id}")

        insight.note_ids.append(note_id)
        insight.updated_at = touch(insight.updated_at)
        await self._store.put(INSIGHTS, insight.to_record())
        await self._link_note(note_id, insight_id, linked=True)
        return insight

    async def remove_note(self, insight_id: str, note_id: str) -> Insight:
        """Remove a note from an insight. The note may already be gone."""
        insight = await self._require(insight_id)
        insight.note_ids = [nid for nid in insight.note_ids if nid != note_id]
        insight.updated_at = touch(insight.updated_at)
        await self._store.put(INSIGHTS, insight.to_record())
        await self._link_note(note_id, insight_id, linked=False)
        return insight

    async def set_notes(self, insight_id: str, note_ids: Iterable[str]) -> Insight:
        """Replace an insight's member list, updating added and removed notes."""
        insight = await self._require(insight_id)
        selected = list(dict.fromkeys(note_ids))
        added = [nid for nid in selected if nid not in insight.note_ids]
        removed = [nid for nid in insight.note_ids if nid not in selected]

        insight.note_ids = selected
        insight.updated_at = touch(insight.updated_at)
        await self._store.put(INSIGHTS, insight.to_record())

        for nid in added:
            await self._link_note(nid, insight_id, linked=True)
        for nid in removed:
            await self._link_note(nid, insight_id, linked=False)
        return insight

    async def get_notes(self, insight: Insight) -> list[VoiceNote]:
        """Member notes in membership order, skipping ids that no longer resolve."""
        notes = []
        for note_id in insight.note_ids:
            record = await self._store.get_by_id(NOTES, note_id)
            if record is not None:
                notes.append(VoiceNote.from_record(record))
        return notes

    # -------------------------------------------------------------------------
    # Generated content
    # -------------------------------------------------------------------------

    async def store_generated_content(
        self, insight_id: str, content: InsightContent
    ) -> Insight:
        """Replace the insight's generated analysis wholesale."""
        insight = await self._require(insight_id)
        now = touch(insight.updated_at)
        insight.generated_content = content
        insight.last_generated_at = now
        insight.updated_at = now
        await self._store.put(INSIGHTS, insight.to_record())
        logger.info("Stored generated content for insight %s", insight_id)
        return insight

    async def add_custom_section(
        self, insight_id: str, prompt: str, content: str
    ) -> Insight:
        """Append a question and its generated answer to the insight."""
        prompt = prompt.strip()
        if not prompt:
            raise ValidationFailed("Question must not be empty")
        insight = await self._require(insight_id)
        now = touch(insight.updated_at)
        section = CustomSection(prompt=prompt, content=content, generated_at=now)

        current = insight.generated_content or InsightContent()
        insight.generated_content = InsightContent(
            summary=current.summary,
            key_points=list(current.key_points),
            action_items=list(current.action_items),
            timeline=list(current.timeline),
            custom_sections=current.custom_sections + [section],
        )
        insight.updated_at = now
        await self._store.put(INSIGHTS, insight.to_record())
        return insight


# ---------------------------------------------------------------------------
# Insight images
# ---------------------------------------------------------------------------

class ImageRepository:
    """Images and rendered diagrams attached to insights."""

    def __init__(self, store: RecordStore):
        self._store = store

    async def get(self, image_id: str) -> Optional[InsightImage]:
        record = await self._store.get_by_id(IMAGES, image_id)
        return InsightImage.from_record(record) if record else None

    async def get_by_insight(self, insight_id: str) -> list[InsightImage]:
        """Images of an insight, oldest first."""
        records = await self._store.get_all_by_index(IMAGES, "insightId", insight_id)
        return sorted(
            (InsightImage.from_record(r) for r in records), key=lambda i: i.created_at
        )

    async def add(
        self,
        insight_id: str,
        data: bytes,
        *,
        name: str,
        mime_type: str,
        width: int = 0,
        height: int = 0,
        diagram_source: Optional[str] = None,
    ) -> InsightImage:
        """
        Attach an image (or rendered diagram) to an insight.

        Raises:
            ValidationFailed: If the insight does not exist
        """
        record = await self._store.get_by_id(INSIGHTS, insight_id)
        if record is None:
            raise ValidationFailed(f"Insight not found: {insight_id}")

        image = InsightImage(
            id=generate_id(),
            insight_id=insight_id,
            data=bytes(data),
            name=name,
            mime_type=mime_type,
            width=width,
            height=height,
            diagram_source=diagram_source or None,
            created_at=now_ms(),
        )
        await self._store.put(IMAGES, image.to_record())

        record["imageIds"] = list(record.get("imageIds") or []) + [image.id]
        record["updatedAt"] = touch(record.get("updatedAt"))
        await self._store.put(INSIGHTS, record)
        return image

    async def remove(self, image_id: str) -> None:
        """Detach an image from its insight and delete it."""
        image = await self.get(image_id)
        if image is None:
            return
        record = await self._store.get_by_id(INSIGHTS, image.insight_id)
        if record is not None:
            record["imageIds"] = [i for i in record.get("imageIds") or [] if i != image_id]
            record["updatedAt"] = touch(record.get("updatedAt"))
            await self._store.put(INSIGHTS, record)
        await self._store.delete(IMAGES, image_id)


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

class SettingsRepository:
    """Free-form key/value settings. No integrity rules apply."""

    def __init__(self, store: RecordStore):
        self._store = store

    async def get(self, key: str, default: Any = None) -> Any:
        record = await self._store.get_by_id(SETTINGS, key)
        return record["value"] if record else default

    async def set(self, key: str, value: Any) -> None:
        await self._store.put(SETTINGS, {"key": key, "value": value})

    async def delete(self, key: str) -> None:
        await self._store.delete(SETTINGS, key)

    async def all(self) -> dict[str, Any]:
        return {r["key"]: r["value"] for r in await self._store.get_all(SETTINGS)}
