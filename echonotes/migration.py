"""
Import of data saved by the first-generation app.

The old app kept everything in two JSON documents: a list of
"conversations" (each a list of voice notes with base64 data-URL audio) and
a settings object. Every conversation becomes a folder and every note a
voice note filed in it.

The import runs once. The legacy files are removed when it finishes, so a
second call finds nothing to do.
"""

import base64
import binascii
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Union

from .errors import EchoError
from .repositories import FolderRepository, NoteRepository, SettingsRepository
from .types import Folder, NoteStatus, VoiceNote, format_default_title, generate_id, now_ms

logger = logging.getLogger(__name__)

CONVERSATIONS_FILENAME = "conversations.json"
SETTINGS_FILENAME = "settings.json"

FOLDER_COLORS = (
    "#e84d6e", "#f07593", "#60a5fa", "#34d399", "#fbbf24",
    "#a78bfa", "#f87171", "#2dd4bf", "#fb923c", "#818cf8",
)
DEFAULT_AUDIO_TYPE = "audio/webm"
MIGRATED_TITLE = "Migrated note"


@dataclass
class ImportResult:
    notes_migrated: int = 0
    folders_created: int = 0


def decode_data_url(value: str) -> tuple[bytes, str]:
    """
    Decode ``data:<mime>;base64,<payload>`` (or bare base64) to bytes.

    Returns:
        (audio bytes, mime type)

    Raises:
        ValueError: If the payload is not valid base64
    """
    mime = DEFAULT_AUDIO_TYPE
    payload = value
    if value.startswith("data:"):
        header, sep, payload = value.partition(",")
        if not sep:
            raise ValueError("Data URL has no payload")
        declared = header[len("data:"):].split(";", 1)[0]
        if declared:
            mime = declared
    try:
        return base64.b64decode(payload, validate=True), mime
    except binascii.Error as e:
        raise ValueError(f"Invalid base64 audio: {e}") from e


def _folder_name(title: Any) -> str:
    if isinstance(title, str) and title.strip():
        return title
    if isinstance(title, (int, float)) and not isinstance(title, bool):
        return str(title)
    return "Untitled"


def _timestamp(value: Any) -> int:
    """Epoch milliseconds from a legacy field, or now when it is unusable."""
    if isinstance(value, bool):
        return now_ms()
    try:
        timestamp = int(value)
    except (TypeError, ValueError, OverflowError):
        return now_ms()
    return timestamp if timestamp > 0 else now_ms()


class LegacyImporter:
    """Moves first-generation JSON data into the record store."""

    def __init__(
        self,
        source_dir: Union[str, Path],
        notes: NoteRepository,
        folders: FolderRepository,
        settings: SettingsRepository,
    ):
        self._source = Path(source_dir)
        self._notes = notes
        self._folders = folders
        self._settings = settings

    @property
    def conversations_path(self) -> Path:
        return self._source / CONVERSATIONS_FILENAME

    @property
    def settings_path(self) -> Path:
        return self._source / SETTINGS_FILENAME

    def has_legacy_data(self) -> bool:
        return self.conversations_path.exists()

    async def import_legacy(self) -> ImportResult:
        """
        Import every legacy conversation and note, then delete the legacy files.

        A note that cannot be decoded or stored is logged and skipped. A
        conversation with an unusable title or creation time still becomes a
        folder ("Untitled", created now). If the
        conversations file itself cannot be parsed nothing is imported and
        nothing is deleted.
        """
        result = ImportResult()
        if not self.has_legacy_data():
            return result

        try:
            conversations = json.loads(self.conversations_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning("Cannot read legacy conversations %s: %s", self.conversations_path, e)
            return result
        if not isinstance(conversations, list):
            logger.warning("Legacy conversations are not a list, skipping import")
            return result

        for i, conversation in enumerate(conversations):
            if not isinstance(conversation, dict):
                logger.warning("Skipping malformed legacy conversation at position %d", i)
                continue
            folder = Folder(
                id=generate_id(),
                name=_folder_name(conversation.get("title")),
                color=FOLDER_COLORS[i % len(FOLDER_COLORS)],
                created_at=_timestamp(conversation.get("createdAt")),
            )
            try:
                await self._folders.put(folder)
            except EchoError as e:
                logger.warning("Failed to migrate legacy conversation at position %d: %s", i, e)
                continue
            result.folders_created += 1

            legacy_notes = conversation.get("notes")
            if not isinstance(legacy_notes, list):
                legacy_notes = []
            for legacy_note in legacy_notes:
                if await self._import_note(legacy_note, folder.id):
                    result.notes_migrated += 1

        await self._import_settings()

        for path in (self.conversations_path, self.settings_path):
            path.unlink(missing_ok=True)

        logger.info(
            "Imported %d notes into %d folders from %s",
            result.notes_migrated, result.folders_created, self._source,
        )
        return result

    async def _import_note(self, legacy: Any, folder_id: str) -> bool:
        try:
            audio, mime = decode_data_url(legacy["audioBlob"])
            timestamp = int(legacy["timestamp"])
            transcription = legacy.get("transcription")
            if not isinstance(transcription, str) or not transcription:
                transcription = None
            note = VoiceNote(
                id=generate_id(),
                title=MIGRATED_TITLE,
                default_title=format_default_title(timestamp),
                audio=audio,
                audio_format=mime,
                duration=float(legacy.get("duration") or 0),
                transcription=transcription,
                folder_id=folder_id,
                status=NoteStatus.READY if transcription else NoteStatus.ERROR,
                created_at=timestamp,
                updated_at=now_ms(),
            )
        except (KeyError, TypeError, ValueError, AttributeError, OverflowError, OSError) as e:
            note_id = legacy.get("id") if isinstance(legacy, dict) else None
            logger.warning("Failed to migrate legacy note %s: %s", note_id, e)
            return False
        try:
            await self._notes.put(note)
        except EchoError as e:
            logger.warning("Failed to store legacy note %s: %s", legacy.get("id"), e)
            return False
        return True

    async def _import_settings(self) -> None:
        if not self.settings_path.exists():
            return
        try:
            legacy = json.loads(self.settings_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning("Failed to migrate legacy settings: %s", e)
            return
        if isinstance(legacy, dict) and legacy.get("geminiApiKey"):
            await self._settings.set("apiKey", legacy["geminiApiKey"])
