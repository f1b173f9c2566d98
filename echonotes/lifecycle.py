"""
Voice note lifecycle.

A captured note is persisted immediately in ``transcribing`` and enriched in
a background task. Exactly one of two writes ends that task:

- enrichment succeeded and validated: the note snapshot plus title, summary,
  transcription and tags, with status ``ready``
- anything failed: the snapshot with status ``error``

The write is of the snapshot taken when the task started, so user edits made
while enrichment is in flight are overwritten (last writer wins). A note
deleted during enrichment stays deleted.

There is no timeout. A task that never settles leaves its note in
``transcribing``; after a restart such notes show up in recover_stale() and
can be retried.
"""

import asyncio
import inspect
import logging
from dataclasses import replace
from typing import Any, Callable, Optional

from .config import DEFAULT_LOCALE, DEFAULT_POLL_INTERVAL
from .enrichment import EnrichmentProvider, validate_enrichment
from .errors import EchoError, ValidationFailed
from .repositories import NoteRepository
from .types import (
    NoteStatus,
    VoiceNote,
    format_default_title,
    generate_id,
    normalize_tags,
    now_ms,
    touch,
)

logger = logging.getLogger(__name__)


class NoteLifecycleController:
    """Owns the transcribing -> ready/error transitions of voice notes."""

    def __init__(
        self,
        notes: NoteRepository,
        enricher: EnrichmentProvider,
        *,
        locale: str = DEFAULT_LOCALE,
    ):
        self._notes = notes
        self._enricher = enricher
        self._locale = locale
        self._tasks: dict[str, asyncio.Task] = {}

    @property
    def enricher(self) -> EnrichmentProvider:
        return self._enricher

    async def capture(
        self,
        audio: bytes,
        mime_type: str,
        duration: float,
        locale: Optional[str] = None,
    ) -> VoiceNote:
        """
        Persist a finished recording and start enriching it.

        Returns as soon as the note is stored; enrichment runs in the
        background.

        Args:
            audio: Recorded audio bytes
            mime_type: MIME type reported by the recorder
            duration: Recording length in seconds
            locale: Transcription language hint (defaults to the configured locale)

        Returns:
            The stored note, status ``transcribing``

        Raises:
            ValidationFailed: If the recording is empty or the duration negative
        """
        if not audio:
            raise ValidationFailed("Recording is empty")
        if duration < 0:
            raise ValidationFailed(f"Duration must not be negative, got {duration}")

        created = now_ms()
        note = VoiceNote(
            id=generate_id(),
            default_title=format_default_title(created),
            audio=bytes(audio),
            audio_format=mime_type,
            duration=float(duration),
            status=NoteStatus.TRANSCRIBING,
            created_at=created,
            updated_at=created,
        )
        await self._notes.put(note)
        logger.info("Captured note %s (%.1fs, %s)", note.id, note.duration, mime_type)
        self._schedule(note, locale or self._locale)
        return note

    async def retry(self, note_id: str, locale: Optional[str] = None) -> VoiceNote:
        """
        Re-run enrichment for a note that failed or was left behind.

        Allowed from ``error``, and from ``transcribing`` when no enrichment
        for the note is running in this process.

        Raises:
            ValidationFailed: If the note is missing, ready, or still in flight
        """
        note = await self._notes.get(note_id)
        if note is None:
            raise ValidationFailed(f"Note not found: {note_id}")
        if note.status == NoteStatus.READY:
            raise ValidationFailed(f"Note {note_id} is already ready")
        if note_id in self._tasks:
            raise ValidationFailed(f"Note {note_id} is already being enriched")

        note.status = NoteStatus.TRANSCRIBING
        note.updated_at = touch(note.updated_at)
        await self._notes.put(note)
        logger.info("Retrying enrichment for note %s", note_id)
        self._schedule(note, locale or self._locale)
        return note

    def pending(self) -> list[str]:
        """Ids of notes with enrichment running in this process."""
        return list(self._tasks)

    async def wait_idle(self) -> None:
        """Wait until every in-flight enrichment has written its outcome."""
        while self._tasks:
            await asyncio.gather(*self._tasks.values(), return_exceptions=True)

    async def recover_stale(self) -> list[VoiceNote]:
        """Notes stuck in ``transcribing`` with nothing running for them."""
        stuck = await self._notes.get_by_status(NoteStatus.TRANSCRIBING)
        return [n for n in stuck if n.id not in self._tasks]

    async def shutdown(self) -> None:
        """
        Abandon in-flight enrichment before the store closes.

        Abandoned notes stay in ``transcribing`` and can be retried later.
        """
        tasks = list(self._tasks.values())
        if not tasks:
            return
        logger.info("Abandoning enrichment for %d notes", len(tasks))
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

    # -------------------------------------------------------------------------
    # Background enrichment
    # -------------------------------------------------------------------------

    def _schedule(self, snapshot: VoiceNote, locale: str) -> None:
        task = asyncio.create_task(
            self._enrich(snapshot, locale), name=f"enrich-{snapshot.id}"
        )
        self._tasks[snapshot.id] = task
        task.add_done_callback(lambda t: self._forget(snapshot.id, t))

    def _forget(self, note_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(note_id) is task:
            del self._tasks[note_id]

    async def _enrich(self, snapshot: VoiceNote, locale: str) -> None:
        try:
            payload = await self._enricher.enrich(snapshot.audio, snapshot.audio_format, locale)
            result = validate_enrichment(payload)
        except Exception as e:
            logger.warning("Enrichment failed for note %s: %s", snapshot.id, e)
            outcome = replace(
                snapshot,
                status=NoteStatus.ERROR,
                updated_at=touch(snapshot.updated_at),
            )
        else:
            outcome = replace(
                snapshot,
                title=result.title,
                summary=result.summary,
                transcription=result.transcription,
                tags=normalize_tags(result.tags),
                detected_language=result.detected_language,
                status=NoteStatus.READY,
                updated_at=touch(snapshot.updated_at),
            )

        try:
            if await self._notes.get(snapshot.id) is None:
                logger.info("Note %s was deleted during enrichment, dropping result", snapshot.id)
                return
            await self._notes.put(outcome)
        except EchoError as e:
            logger.error("Could not store enrichment outcome for note %s: %s", snapshot.id, e)
            return
        logger.info("Note %s is %s", snapshot.id, outcome.status.value)


# ---------------------------------------------------------------------------
# Polling
# ---------------------------------------------------------------------------

class NoteWatcher:
    """
    Re-read one note periodically while it is ``transcribing``.

    Stops on the first read that shows any other status (or shows the note
    gone), calling ``on_settled`` with the latest note or None. Leaving the
    ``async with`` block or calling stop() cancels the timer.

    Example:
        async with NoteWatcher(notes, note_id, on_settled=show) as watcher:
            await watcher.wait()
    """

    def __init__(
        self,
        notes: NoteRepository,
        note_id: str,
        *,
        interval: float = DEFAULT_POLL_INTERVAL,
        on_settled: Optional[Callable[[Optional[VoiceNote]], Any]] = None,
    ):
        if interval <= 0:
            raise ValidationFailed(f"Poll interval must be positive, got {interval}")
        self._notes = notes
        self._note_id = note_id
        self._interval = interval
        self._on_settled = on_settled
        self._task: Optional[asyncio.Task] = None
        self._stopped = False
        self.note: Optional[VoiceNote] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> "NoteWatcher":
        """Read the note once and start polling if it is still transcribing."""
        self.note = await self._notes.get(self._note_id)
        if self.note is not None and self.note.status == NoteStatus.TRANSCRIBING:
            self._task = asyncio.create_task(self._poll(), name=f"watch-{self._note_id}")
        return self

    async def _poll(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            self.note = await self._notes.get(self._note_id)
            if self.note is None or self.note.status != NoteStatus.TRANSCRIBING:
                break
        logger.debug("Note %s settled", self._note_id)
        if self._on_settled is not None:
            outcome = self._on_settled(self.note)
            if inspect.isawaitable(outcome):
                await outcome

    async def wait(self) -> Optional[VoiceNote]:
        """Block until polling stops; returns the last note read."""
        if self._task is not None:
            try:
                await self._task
            except asyncio.CancelledError:
                # stop() ends the wait; cancelling the waiter itself still propagates.
                current = asyncio.current_task()
                if not self._stopped or (current is not None and current.cancelling()):
                    raise
        return self.note

    def stop(self) -> None:
        if self._task is not None and not self._task.done():
            self._stopped = True
            self._task.cancel()

    async def __aenter__(self) -> "NoteWatcher":
        return await self.start()

    async def __aexit__(self, *exc) -> None:
        self.stop()
        if self._task is not None:
            try:
                await self._task
            except asyncio.CancelledError:
                pass
