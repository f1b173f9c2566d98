"""
Shared pytest fixtures for echonotes tests.

Provides mock enrichment providers so no test talks to a real
transcription service.
"""

import asyncio
from typing import Any, Optional

import pytest
import pytest_asyncio

from echonotes.api import EchoNotes
from echonotes.config import EchoConfig
from echonotes.errors import EnrichmentFailed
from echonotes.integrity import IntegrityManager
from echonotes.lifecycle import NoteLifecycleController
from echonotes.record_store import RecordStore
from echonotes.repositories import (
    FolderRepository,
    ImageRepository,
    InsightRepository,
    NoteRepository,
    SettingsRepository,
)
from echonotes.types import NoteStatus, VoiceNote, generate_id, now_ms

AUDIO = b"\x1aE\xdf\xa3fake-webm-audio"

CANNED_ENRICHMENT = {
    "title": "Weekly standup",
    "summary": "Discussed the release plan.",
    "transcription": "Okay so for the release we need to finish the migration.",
    "tags": ["work", "release"],
}


class MockEnrichment:
    """
    Enrichment provider returning a canned payload.

    Set ``gate`` to an asyncio.Event to hold every call until it is set.
    """

    def __init__(self, payload: Optional[dict[str, Any]] = None):
        self.payload = dict(payload or CANNED_ENRICHMENT)
        self.calls: list[tuple[bytes, str, str]] = []
        self.gate: Optional[asyncio.Event] = None

    async def enrich(self, audio: bytes, mime_type: str, locale: str) -> dict[str, Any]:
        self.calls.append((audio, mime_type, locale))
        if self.gate is not None:
            await self.gate.wait()
        return dict(self.payload)


class FailingEnrichment:
    """Enrichment provider that always fails."""

    def __init__(self, error: Exception = None):
        self.error = error or EnrichmentFailed("service unavailable")
        self.calls = 0

    async def enrich(self, audio: bytes, mime_type: str, locale: str) -> dict[str, Any]:
        self.calls += 1
        raise self.error


class MalformedEnrichment:
    """Enrichment provider returning a payload with the wrong shape."""

    async def enrich(self, audio: bytes, mime_type: str, locale: str) -> dict[str, Any]:
        return {"title": 42, "summary": None, "transcription": "x", "tags": "notalist"}


def make_note(**overrides) -> VoiceNote:
    """A ready note with sensible defaults."""
    now = now_ms()
    fields = dict(
        id=generate_id(),
        default_title="Mar 4, 09:15 AM",
        audio=AUDIO,
        audio_format="audio/webm",
        duration=12.0,
        status=NoteStatus.READY,
        created_at=now,
        updated_at=now,
    )
    fields.update(overrides)
    return VoiceNote(**fields)


@pytest.fixture
def store(tmp_path):
    """A RecordStore in a temp directory, opened lazily on first use."""
    rs = RecordStore(tmp_path / "store")
    yield rs
    rs.close()


@pytest.fixture
def integrity(store):
    return IntegrityManager(store)


@pytest.fixture
def notes(store):
    return NoteRepository(store)


@pytest.fixture
def folders(store, integrity):
    return FolderRepository(store, integrity)


@pytest.fixture
def insights(store, integrity):
    return InsightRepository(store, integrity)


@pytest.fixture
def images(store):
    return ImageRepository(store)


@pytest.fixture
def settings(store):
    return SettingsRepository(store)


@pytest.fixture
def enricher():
    return MockEnrichment()


@pytest.fixture
def controller(notes, enricher):
    return NoteLifecycleController(notes, enricher)


@pytest_asyncio.fixture
async def echo(tmp_path, enricher):
    """An open EchoNotes facade with the mock enricher."""
    config = EchoConfig(path=tmp_path / "echo", poll_interval=0.01)
    app = EchoNotes(config=config, enricher=enricher)
    await app.open()
    yield app
    await app.close()
