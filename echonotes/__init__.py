"""
Echo Notes

A local-first voice-note store: recordings are kept on this machine,
transcribed and summarized by an enrichment service, and organized into
folders and insights.

Quick Start:
    from echonotes import EchoNotes

    async with EchoNotes() as echo:  # uses ~/.echo-notes/
        note = await echo.capture(audio, "audio/webm", 12.5)
        await echo.lifecycle.wait_idle()
        print((await echo.notes.get(note.id)).status)

CLI Usage:
    echo-notes record memo.webm
    echo-notes search "standup"
    echo-notes folders --json

Environment Variables:
    ECHO_STORE_PATH      - Override default store location
    ECHO_ENRICHMENT_URL  - Transcription service for new stores
    ECHO_API_KEY         - Bearer token for the transcription service
"""

from .api import EchoNotes
from .errors import EchoError, EnrichmentFailed, StoreUnavailable, TransactionFailed, ValidationFailed
from .types import Folder, Insight, InsightContent, InsightImage, NoteStatus, VoiceNote

__version__ = "0.1.0"
__all__ = [
    "EchoNotes",
    "EchoError",
    "EnrichmentFailed",
    "StoreUnavailable",
    "TransactionFailed",
    "ValidationFailed",
    "Folder",
    "Insight",
    "InsightContent",
    "InsightImage",
    "NoteStatus",
    "VoiceNote",
]
