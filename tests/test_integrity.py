"""Tests for the folder and insight deletion cascades."""

from unittest.mock import patch

import pytest

from echonotes.errors import TransactionFailed
from echonotes.record_store import IMAGES, INSIGHTS, NOTES

from tests.conftest import make_note


class TestDetachFolder:
    @pytest.mark.asyncio
    async def test_only_notes_in_folder_are_rewritten(self, integrity, notes):
        inside = make_note(folder_id="f1", updated_at=5)
        outside = make_note(folder_id="f2", updated_at=5)
        await notes.put(inside)
        await notes.put(outside)

        assert await integrity.detach_folder("f1") == 1

        assert (await notes.get(inside.id)).folder_id is None
        untouched = await notes.get(outside.id)
        assert untouched.folder_id == "f2"
        assert untouched.updated_at == 5

    @pytest.mark.asyncio
    async def test_unknown_folder(self, integrity):
        assert await integrity.detach_folder("nothing") == 0

    @pytest.mark.asyncio
    async def test_updated_at_never_goes_backwards(self, integrity, notes):
        future = 32503680000000  # year 3000
        note = make_note(folder_id="f1", updated_at=future)
        await notes.put(note)
        await integrity.detach_folder("f1")
        assert (await notes.get(note.id)).updated_at == future

    @pytest.mark.asyncio
    async def test_partial_failure_can_be_rerun(self, integrity, notes, store):
        for _ in range(3):
            await notes.put(make_note(folder_id="f1"))

        real_put = store.put
        calls = {"n": 0}

        async def flaky_put(collection, record):
            calls["n"] += 1
            if calls["n"] == 2:
                raise TransactionFailed("disk full")
            await real_put(collection, record)

        with patch.object(store, "put", flaky_put):
            with pytest.raises(TransactionFailed):
                await integrity.detach_folder("f1")

        # The first rewrite stuck; the rest are still filed
        assert len(await store.get_all_by_index(NOTES, "folderId", "f1")) == 2
        assert await integrity.detach_folder("f1") == 2
        assert await store.get_all_by_index(NOTES, "folderId", "f1") == []


class TestDetachInsight:
    @pytest.mark.asyncio
    async def test_removes_id_from_member_notes(self, integrity, notes, store):
        a = make_note(insight_ids=["i1", "i2"])
        b = make_note(insight_ids=["i1"])
        await notes.put(a)
        await notes.put(b)
        await store.put(INSIGHTS, {
            "id": "i1", "name": "I", "noteIds": [a.id, b.id, "deleted-note"],
            "imageIds": [], "createdAt": 1, "updatedAt": 1,
        })

        assert await integrity.detach_insight("i1") == 2

        assert (await notes.get(a.id)).insight_ids == ["i2"]
        assert (await notes.get(b.id)).insight_ids == []

    @pytest.mark.asyncio
    async def test_missing_insight(self, integrity):
        assert await integrity.detach_insight("gone") == 0


class TestDropInsightImages:
    @pytest.mark.asyncio
    async def test_deletes_only_that_insights_images(self, integrity, store):
        for image_id, insight_id in (("a", "i1"), ("b", "i1"), ("c", "i2")):
            await store.put(IMAGES, {
                "id": image_id, "insightId": insight_id, "blob": b"x",
                "name": f"{image_id}.png", "mimeType": "image/png",
                "width": 1, "height": 1, "createdAt": 1,
            })

        assert await integrity.drop_insight_images("i1") == 2

        remaining = await store.get_all(IMAGES)
        assert [r["id"] for r in remaining] == ["c"]
