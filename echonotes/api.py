"""
Application facade.

EchoNotes wires one RecordStore to the repositories, the integrity cascades,
the lifecycle controller and the configured enrichment provider. It is the
single entry point for the CLI and for embedding applications:

    async with EchoNotes("~/notes") as echo:
        note = await echo.capture(audio, "audio/webm", 12.5)
        await echo.lifecycle.wait_idle()
"""

import logging
from pathlib import Path
from typing import Any, Callable, Optional, Union

from .config import EchoConfig, get_default_store_path, load_or_create_config
from .enrichment import EnrichmentProvider, create_enrichment_provider
from .integrity import IntegrityManager
from .lifecycle import NoteLifecycleController, NoteWatcher
from .logging_config import configure_ops_log, remove_ops_log
from .migration import ImportResult, LegacyImporter
from .record_store import RecordStore
from .repositories import (
    FolderRepository,
    ImageRepository,
    InsightRepository,
    NoteRepository,
    SettingsRepository,
)
from .types import VoiceNote

logger = logging.getLogger(__name__)


class EchoNotes:
    """A local voice-note store."""

    def __init__(
        self,
        store_path: Optional[Union[str, Path]] = None,
        *,
        config: Optional[EchoConfig] = None,
        store: Optional[RecordStore] = None,
        enricher: Optional[EnrichmentProvider] = None,
    ) -> None:
        """
        Open (or create) a store.

        Args:
            store_path: Store directory. Uses ECHO_STORE_PATH or ~/.echo-notes
                if not specified.
            config: Pre-loaded config (skips reading echo.toml)
            store: Injected record store (skips default creation)
            enricher: Injected enrichment provider (skips the configured one)
        """
        # --- Config resolution ---
        if config is not None:
            self._config = config
            self._store_path = config.path
        else:
            if store_path is not None:
                self._store_path = Path(store_path).expanduser().resolve()
            else:
                self._store_path = get_default_store_path()
            self._config = load_or_create_config(self._store_path)

        # --- Persistent operations log ---
        self._ops_log_handler: Optional[logging.Handler] = configure_ops_log(self._store_path)

        self._store = store if store is not None else RecordStore(self._store_path)

        # Only providers created here are closed here
        self._owns_enricher = enricher is None
        self._enricher = (
            enricher if enricher is not None
            else create_enrichment_provider(self._config.enrichment)
        )

        self.integrity = IntegrityManager(self._store)
        self.notes = NoteRepository(self._store)
        self.folders = FolderRepository(self._store, self.integrity)
        self.insights = InsightRepository(self._store, self.integrity)
        self.images = ImageRepository(self._store)
        self.settings = SettingsRepository(self._store)
        self.lifecycle = NoteLifecycleController(
            self.notes, self._enricher, locale=self._config.locale
        )

    @property
    def config(self) -> EchoConfig:
        return self._config

    @property
    def store_path(self) -> Path:
        return self._store_path

    @property
    def store(self) -> RecordStore:
        return self._store

    # -------------------------------------------------------------------------
    # Lifecycle shortcuts
    # -------------------------------------------------------------------------

    async def capture(
        self,
        audio: bytes,
        mime_type: str,
        duration: float,
        locale: Optional[str] = None,
    ) -> VoiceNote:
        """Store a recording and start enriching it. See NoteLifecycleController.capture."""
        return await self.lifecycle.capture(audio, mime_type, duration, locale)

    async def retry(self, note_id: str) -> VoiceNote:
        return await self.lifecycle.retry(note_id)

    def watch(
        self,
        note_id: str,
        on_settled: Optional[Callable[[Optional[VoiceNote]], Any]] = None,
    ) -> NoteWatcher:
        """Poller for one note at the configured interval; use with ``async with``."""
        return NoteWatcher(
            self.notes, note_id,
            interval=self._config.poll_interval,
            on_settled=on_settled,
        )

    async def import_legacy(self, source_dir: Union[str, Path]) -> ImportResult:
        """Import first-generation JSON data from ``source_dir``."""
        importer = LegacyImporter(source_dir, self.notes, self.folders, self.settings)
        return await importer.import_legacy()

    # -------------------------------------------------------------------------
    # Store management
    # -------------------------------------------------------------------------

    async def open(self) -> "EchoNotes":
        await self._store.open()
        return self

    async def stats(self) -> dict[str, int]:
        """Record count per collection, plus in-flight enrichments."""
        counts = {name: await self._store.count(name) for name in self._store.collections()}
        counts["pending"] = len(self.lifecycle.pending())
        return counts

    async def erase_all(self) -> None:
        """
        Irrecoverably delete every note, folder, insight, image and setting.

        The store stays usable and starts empty.
        """
        await self.lifecycle.shutdown()
        await self._store.destroy()
        logger.info("Erased all data in %s", self._store_path)

    async def close(self) -> None:
        """
        Close the store and release resources.

        Enrichment still in flight is abandoned; those notes stay in
        ``transcribing`` and can be retried after reopening.
        """
        await self.lifecycle.shutdown()
        self._store.close()

        if self._owns_enricher and hasattr(self._enricher, "aclose"):
            await self._enricher.aclose()

        # Remove ops log handler to avoid handler accumulation
        if self._ops_log_handler is not None:
            remove_ops_log(self._ops_log_handler)
            self._ops_log_handler = None

    async def __aenter__(self) -> "EchoNotes":
        return await self.open()

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> bool:
        await self.close()
        return False
