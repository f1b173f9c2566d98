"""
Referential integrity cascades.

Invoked by the folder and insight repositories before they remove a record,
so no note is left pointing at a folder or insight that no longer exists and
no image outlives its insight.

Cascades are best-effort sequences of independent single-record writes, not
one transaction. If a step fails the error propagates and the steps already
applied stay applied; re-running the delete finishes the job because every
step is idempotent.
"""

import logging

from .record_store import IMAGES, INSIGHTS, NOTES, RecordStore
from .types import touch

logger = logging.getLogger(__name__)


class IntegrityManager:
    """Cascade rules over a shared RecordStore."""

    def __init__(self, store: RecordStore):
        self._store = store

    async def detach_folder(self, folder_id: str) -> int:
        """
        Clear ``folderId`` on every note filed under a folder.

        Notes are kept; only the reference is nulled and ``updatedAt`` touched.

        Returns:
            Number of notes rewritten
        """
        notes = await self._store.get_all_by_index(NOTES, "folderId", folder_id)
        for note in notes:
            note["folderId"] = None
            note["updatedAt"] = touch(note.get("updatedAt"))
            await self._store.put(NOTES, note)
        if notes:
            logger.info("Detached %d notes from folder %s", len(notes), folder_id)
        return len(notes)

    async def detach_insight(self, insight_id: str) -> int:
        """
        Remove an insight's id from the ``insightIds`` of its member notes.

        Member ids that no longer resolve to a note are skipped.

        Returns:
            Number of notes rewritten
        """
        insight = await self._store.get_by_id(INSIGHTS, insight_id)
        if insight is None:
            return 0

        rewritten = 0
        for note_id in insight.get("noteIds") or []:
            note = await self._store.get_by_id(NOTES, note_id)
            if note is None:
                continue
            note["insightIds"] = [
                iid for iid in note.get("insightIds") or [] if iid != insight_id
            ]
            note["updatedAt"] = touch(note.get("updatedAt"))
            await self._store.put(NOTES, note)
            rewritten += 1
        if rewritten:
            logger.info("Detached insight %s from %d notes", insight_id, rewritten)
        return rewritten

    async def drop_insight_images(self, insight_id: str) -> int:
        """
        Delete every image attached to an insight.

        Returns:
            Number of images deleted
        """
        images = await self._store.get_all_by_index(IMAGES, "insightId", insight_id)
        for image in images:
            await self._store.delete(IMAGES, image["id"])
        if images:
            logger.info("Deleted %d images of insight %s", len(images), insight_id)
        return len(images)
