"""Tests for the note lifecycle controller and note polling."""

import asyncio

import pytest

from echonotes.errors import EnrichmentFailed, ValidationFailed
from echonotes.lifecycle import NoteLifecycleController, NoteWatcher
from echonotes.types import NoteStatus

from tests.conftest import AUDIO, FailingEnrichment, MalformedEnrichment, MockEnrichment, make_note

TEAM_SYNC = {
    "title": "Team Sync",
    "summary": "Weekly sync about the launch.",
    "transcription": "Let's go around the room.",
    "tags": ["meeting", "standup"],
}


class FlakyEnrichment(MockEnrichment):
    """Fails the first call, then returns the canned payload."""

    def __init__(self, payload=None):
        super().__init__(payload)
        self.failures_left = 1

    async def enrich(self, audio, mime_type, locale):
        if self.failures_left:
            self.failures_left -= 1
            self.calls.append((audio, mime_type, locale))
            raise EnrichmentFailed("temporary outage")
        return await super().enrich(audio, mime_type, locale)


class TestCapture:
    @pytest.mark.asyncio
    async def test_note_persists_before_enrichment_finishes(self, notes):
        enricher = MockEnrichment(TEAM_SYNC)
        enricher.gate = asyncio.Event()
        controller = NoteLifecycleController(notes, enricher)

        note = await controller.capture(AUDIO, "audio/webm;codecs=opus", 12.0)

        stored = await notes.get(note.id)
        assert stored.status == NoteStatus.TRANSCRIBING
        assert stored.title == ""
        assert stored.duration == pytest.approx(12.0)
        assert stored.transcription is None
        assert stored.tags == []
        assert stored.default_title
        assert controller.pending() == [note.id]

        enricher.gate.set()
        await controller.wait_idle()

        ready = await notes.get(note.id)
        assert ready.status == NoteStatus.READY
        assert ready.title == "Team Sync"
        assert ready.summary == TEAM_SYNC["summary"]
        assert ready.transcription == TEAM_SYNC["transcription"]
        assert ready.tags == ["meeting", "standup"]
        assert ready.audio == AUDIO
        assert ready.default_title == stored.default_title
        assert ready.audio_format == "audio/webm;codecs=opus"
        assert controller.pending() == []

    @pytest.mark.asyncio
    async def test_enrichment_called_once_with_locale(self, notes):
        enricher = MockEnrichment()
        controller = NoteLifecycleController(notes, enricher, locale="pt")
        await controller.capture(AUDIO, "audio/webm", 3.0)
        await controller.capture(AUDIO, "audio/mp4", 3.0, locale="es")
        await controller.wait_idle()
        assert sorted(call[2] for call in enricher.calls) == ["es", "pt"]

    @pytest.mark.asyncio
    async def test_detected_language_is_kept(self, notes):
        enricher = MockEnrichment({**TEAM_SYNC, "detectedLanguage": "es"})
        controller = NoteLifecycleController(notes, enricher)
        note = await controller.capture(AUDIO, "audio/webm", 1.0)
        await controller.wait_idle()
        assert (await notes.get(note.id)).detected_language == "es"

    @pytest.mark.asyncio
    async def test_enriched_tags_are_normalized(self, notes):
        enricher = MockEnrichment({**TEAM_SYNC, "tags": ["Meeting", "meeting", " Standup ", "  "]})
        controller = NoteLifecycleController(notes, enricher)
        note = await controller.capture(AUDIO, "audio/webm", 1.0)
        await controller.wait_idle()
        assert (await notes.get(note.id)).tags == ["meeting", "standup"]

    @pytest.mark.asyncio
    async def test_rejects_empty_recording(self, controller, notes):
        with pytest.raises(ValidationFailed):
            await controller.capture(b"", "audio/webm", 1.0)
        assert await notes.get_all() == []

    @pytest.mark.asyncio
    async def test_rejects_negative_duration(self, controller):
        with pytest.raises(ValidationFailed):
            await controller.capture(AUDIO, "audio/webm", -1)


class TestFailure:
    @pytest.mark.asyncio
    async def test_failure_marks_error(self, notes):
        enricher = FailingEnrichment()
        controller = NoteLifecycleController(notes, enricher)
        note = await controller.capture(AUDIO, "audio/webm", 4.0)
        await controller.wait_idle()

        failed = await notes.get(note.id)
        assert failed.status == NoteStatus.ERROR
        assert failed.title == ""
        assert failed.summary is None
        assert failed.transcription is None
        assert failed.tags == []
        assert failed.audio == AUDIO

    @pytest.mark.asyncio
    async def test_unexpected_exception_marks_error(self, notes):
        controller = NoteLifecycleController(notes, FailingEnrichment(RuntimeError("boom")))
        note = await controller.capture(AUDIO, "audio/webm", 4.0)
        await controller.wait_idle()
        assert (await notes.get(note.id)).status == NoteStatus.ERROR

    @pytest.mark.asyncio
    async def test_malformed_payload_marks_error(self, notes):
        controller = NoteLifecycleController(notes, MalformedEnrichment())
        note = await controller.capture(AUDIO, "audio/webm", 4.0)
        await controller.wait_idle()

        failed = await notes.get(note.id)
        assert failed.status == NoteStatus.ERROR
        assert failed.transcription is None

    @pytest.mark.asyncio
    async def test_retry_after_failure_succeeds(self, notes):
        enricher = FlakyEnrichment(TEAM_SYNC)
        controller = NoteLifecycleController(notes, enricher)
        note = await controller.capture(AUDIO, "audio/webm", 4.0)
        await controller.wait_idle()
        assert (await notes.get(note.id)).status == NoteStatus.ERROR

        retried = await controller.retry(note.id)
        assert retried.status == NoteStatus.TRANSCRIBING
        assert (await notes.get(note.id)).status == NoteStatus.TRANSCRIBING
        await controller.wait_idle()

        ready = await notes.get(note.id)
        assert ready.id == note.id
        assert ready.status == NoteStatus.READY
        assert ready.title == "Team Sync"
        assert len(enricher.calls) == 2


class TestRetryRules:
    @pytest.mark.asyncio
    async def test_missing_note(self, controller):
        with pytest.raises(ValidationFailed):
            await controller.retry("missing")

    @pytest.mark.asyncio
    async def test_ready_note(self, controller, notes):
        note = make_note()
        await notes.put(note)
        with pytest.raises(ValidationFailed):
            await controller.retry(note.id)

    @pytest.mark.asyncio
    async def test_in_flight_note(self, notes):
        enricher = MockEnrichment()
        enricher.gate = asyncio.Event()
        controller = NoteLifecycleController(notes, enricher)
        note = await controller.capture(AUDIO, "audio/webm", 1.0)

        with pytest.raises(ValidationFailed):
            await controller.retry(note.id)

        enricher.gate.set()
        await controller.wait_idle()
        assert len(enricher.calls) == 1

    @pytest.mark.asyncio
    async def test_stale_transcribing_note_can_be_retried(self, notes, enricher):
        stale = make_note(status=NoteStatus.TRANSCRIBING)
        await notes.put(stale)
        controller = NoteLifecycleController(notes, enricher)

        assert [n.id for n in await controller.recover_stale()] == [stale.id]

        await controller.retry(stale.id)
        assert await controller.recover_stale() == []
        await controller.wait_idle()
        assert (await notes.get(stale.id)).status == NoteStatus.READY


class TestConcurrentChanges:
    @pytest.mark.asyncio
    async def test_deleted_note_is_not_resurrected(self, notes):
        enricher = MockEnrichment()
        enricher.gate = asyncio.Event()
        controller = NoteLifecycleController(notes, enricher)
        note = await controller.capture(AUDIO, "audio/webm", 1.0)

        await notes.delete(note.id)
        enricher.gate.set()
        await controller.wait_idle()

        assert await notes.get(note.id) is None

    @pytest.mark.asyncio
    async def test_enrichment_write_wins_over_concurrent_edit(self, notes):
        enricher = MockEnrichment(TEAM_SYNC)
        enricher.gate = asyncio.Event()
        controller = NoteLifecycleController(notes, enricher)
        note = await controller.capture(AUDIO, "audio/webm", 1.0)

        await notes.update(note.id, title="My own title")
        enricher.gate.set()
        await controller.wait_idle()

        assert (await notes.get(note.id)).title == "Team Sync"

    @pytest.mark.asyncio
    async def test_shutdown_leaves_notes_transcribing(self, notes):
        enricher = MockEnrichment()
        enricher.gate = asyncio.Event()
        controller = NoteLifecycleController(notes, enricher)
        note = await controller.capture(AUDIO, "audio/webm", 1.0)

        await controller.shutdown()

        assert controller.pending() == []
        assert (await notes.get(note.id)).status == NoteStatus.TRANSCRIBING
        assert [n.id for n in await controller.recover_stale()] == [note.id]


class TestNoteWatcher:
    @pytest.mark.asyncio
    async def test_stops_when_note_settles(self, notes):
        enricher = MockEnrichment()
        enricher.gate = asyncio.Event()
        controller = NoteLifecycleController(notes, enricher)
        note = await controller.capture(AUDIO, "audio/webm", 1.0)
        settled = []

        async with NoteWatcher(notes, note.id, interval=0.01, on_settled=settled.append) as watcher:
            assert watcher.running
            await asyncio.sleep(0.05)
            assert watcher.note.status == NoteStatus.TRANSCRIBING
            enricher.gate.set()
            final = await watcher.wait()

        assert final.status == NoteStatus.READY
        assert [n.status for n in settled] == [NoteStatus.READY]
        assert not watcher.running

    @pytest.mark.asyncio
    async def test_async_callback(self, notes):
        controller = NoteLifecycleController(notes, FailingEnrichment())
        note = await controller.capture(AUDIO, "audio/webm", 1.0)
        seen = []

        async def on_settled(n):
            seen.append(n.status)

        async with NoteWatcher(notes, note.id, interval=0.01, on_settled=on_settled) as watcher:
            await watcher.wait()

        assert seen == [NoteStatus.ERROR]

    @pytest.mark.asyncio
    async def test_does_not_poll_settled_note(self, notes):
        note = make_note()
        await notes.put(note)
        async with NoteWatcher(notes, note.id, interval=0.01) as watcher:
            assert not watcher.running
            assert watcher.note.status == NoteStatus.READY

    @pytest.mark.asyncio
    async def test_exit_cancels_polling(self, notes):
        note = make_note(status=NoteStatus.TRANSCRIBING)
        await notes.put(note)
        settled = []

        async with NoteWatcher(notes, note.id, interval=0.01, on_settled=settled.append) as watcher:
            await asyncio.sleep(0.03)
            assert watcher.running

        assert not watcher.running
        assert settled == []

    @pytest.mark.asyncio
    async def test_deleted_note_settles_with_none(self, notes):
        note = make_note(status=NoteStatus.TRANSCRIBING)
        await notes.put(note)
        settled = []

        watcher = await NoteWatcher(notes, note.id, interval=0.01, on_settled=settled.append).start()
        await notes.delete(note.id)
        assert await watcher.wait() is None
        assert settled == [None]

    @pytest.mark.asyncio
    async def test_stop_returns_last_note_to_waiter(self, notes):
        note = make_note(status=NoteStatus.TRANSCRIBING)
        await notes.put(note)
        settled = []

        watcher = await NoteWatcher(notes, note.id, interval=0.01, on_settled=settled.append).start()
        waiter = asyncio.create_task(watcher.wait())
        await asyncio.sleep(0.03)
        watcher.stop()

        last = await waiter
        assert last.id == note.id
        assert last.status == NoteStatus.TRANSCRIBING
        assert not watcher.running
        assert settled == []

    @pytest.mark.asyncio
    async def test_cancelled_waiter_still_raises(self, notes):
        note = make_note(status=NoteStatus.TRANSCRIBING)
        await notes.put(note)

        async with NoteWatcher(notes, note.id, interval=0.01) as watcher:
            waiter = asyncio.create_task(watcher.wait())
            await asyncio.sleep(0.02)
            waiter.cancel()
            with pytest.raises(asyncio.CancelledError):
                await waiter

    def test_rejects_non_positive_interval(self, notes):
        with pytest.raises(ValidationFailed):
            NoteWatcher(notes, "x", interval=0)
