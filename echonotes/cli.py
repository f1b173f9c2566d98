"""
CLI interface for echonotes.

Usage:
    echo-notes record memo.webm
    echo-notes list
    echo-notes search "standup"
    echo-notes show NOTE_ID
"""

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, TypeVar

import typer
from typing_extensions import Annotated

from .api import EchoNotes
from .errors import EchoError, ValidationFailed, log_exception
from .logging_config import configure_quiet_mode, enable_debug_mode
from .types import Folder, Insight, VoiceNote, format_duration

logger = logging.getLogger(__name__)

T = TypeVar("T")

# File extension -> MIME type for recordings passed to `record`
_AUDIO_EXTENSIONS = {
    ".webm": "audio/webm",
    ".m4a": "audio/x-m4a",
    ".mp4": "audio/mp4",
    ".mp3": "audio/mpeg",
    ".ogg": "audio/ogg",
    ".oga": "audio/ogg",
    ".wav": "audio/wav",
    ".aac": "audio/aac",
}


# Configure quiet mode by default (suppress verbose library output)
# Set ECHO_VERBOSE=1 to enable debug mode via environment
if os.environ.get("ECHO_VERBOSE") == "1":
    enable_debug_mode()
else:
    configure_quiet_mode(quiet=True)


def _verbose_callback(value: bool):
    if value:
        enable_debug_mode()


# Global state for CLI options
_json_output = False
_store_override: Optional[Path] = None


app = typer.Typer(
    name="echo-notes",
    help="Local-first voice notes.",
    no_args_is_help=True,
    rich_markup_mode=None,
)


@app.callback()
def main_callback(
    verbose: Annotated[bool, typer.Option(
        "--verbose", "-v",
        help="Enable debug-level logging to stderr",
        callback=_verbose_callback,
        is_eager=True,
    )] = False,
    output_json: Annotated[bool, typer.Option(
        "--json", "-j",
        help="Output as JSON",
    )] = False,
    store: Annotated[Optional[Path], typer.Option(
        "--store", "-s",
        envvar="ECHO_STORE_PATH",
        help="Path to the store directory (default: ~/.echo-notes/)",
    )] = None,
):
    """Local-first voice notes."""
    global _json_output, _store_override
    _json_output = output_json
    _store_override = store


# -----------------------------------------------------------------------------
# Common Options
# -----------------------------------------------------------------------------

LimitOption = Annotated[
    int,
    typer.Option(
        "--limit", "-n",
        help="Maximum results to return"
    )
]


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------

def _run(action: Callable[[EchoNotes], Awaitable[T]]) -> T:
    """Open the store, run one async action against it, and close it.

    Validation errors print a message; other store errors are also logged
    with a traceback. Both exit with status 1.
    """
    async def runner() -> T:
        async with EchoNotes(_store_override) as echo:
            return await action(echo)

    try:
        return asyncio.run(runner())
    except ValidationFailed as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    except EchoError as e:
        log_path = log_exception(e, context="echo-notes CLI", store_path=_store_override)
        typer.echo(f"Error: {e}", err=True)
        typer.echo(f"Details logged to {log_path}", err=True)
        raise typer.Exit(1)
    except ValueError as e:
        # Invalid configuration
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)


def _note_dict(note: VoiceNote) -> dict[str, Any]:
    record = note.to_record()
    record.pop("audioBlob")
    record["audioBytes"] = len(note.audio)
    return record


def _format_note_line(note: VoiceNote) -> str:
    tags = f"  [{', '.join(note.tags)}]" if note.tags else ""
    return (
        f"{note.id}  {note.status.value:<12} {format_duration(note.duration):>6}  "
        f"{note.display_title}{tags}"
    )


def _echo_notes(notes: list[VoiceNote]) -> None:
    if _json_output:
        typer.echo(json.dumps([_note_dict(n) for n in notes], indent=2))
        return
    if not notes:
        typer.echo("No notes.")
        return
    for note in notes:
        typer.echo(_format_note_line(note))


def _render_note(note: VoiceNote) -> str:
    if _json_output:
        return json.dumps(_note_dict(note), indent=2)
    lines = [
        f"id: {note.id}",
        f"title: {note.display_title}",
        f"status: {note.status.value}",
        f"duration: {format_duration(note.duration)}",
        f"format: {note.audio_format}",
    ]
    if note.folder_id:
        lines.append(f"folder: {note.folder_id}")
    if note.insight_ids:
        lines.append(f"insights: {', '.join(note.insight_ids)}")
    if note.tags:
        lines.append(f"tags: {', '.join(note.tags)}")
    if note.detected_language:
        lines.append(f"language: {note.detected_language}")
    if note.summary:
        lines += ["", note.summary]
    if note.transcription:
        lines += ["", note.transcription]
    return "\n".join(lines)


def _probe_duration(path: Path) -> float:
    """Audio duration in seconds from file metadata, 0 when unknown."""
    from tinytag import TinyTag

    try:
        return float(TinyTag.get(str(path)).duration or 0.0)
    except Exception as e:
        logger.debug("Cannot read duration of %s: %s", path, e)
        return 0.0


# -----------------------------------------------------------------------------
# Notes
# -----------------------------------------------------------------------------

@app.command()
def record(
    file: Annotated[Path, typer.Argument(
        help="Audio file to store as a voice note",
        exists=True, dir_okay=False, readable=True,
    )],
    mime: Annotated[Optional[str], typer.Option(
        "--mime",
        help="MIME type (default: from file extension)"
    )] = None,
    locale: Annotated[Optional[str], typer.Option(
        "--locale", "-l",
        help="Transcription language: en, es or pt"
    )] = None,
    no_wait: Annotated[bool, typer.Option(
        "--no-wait",
        help="Return right after storing; the note stays 'transcribing' until retried"
    )] = False,
):
    """
    Store an audio file as a voice note and transcribe it.

    \b
    Examples:
        echo-notes record memo.webm
        echo-notes record call.m4a --locale es
    """
    mime_type = mime or _AUDIO_EXTENSIONS.get(file.suffix.lower(), "audio/webm")
    audio = file.read_bytes()
    duration = _probe_duration(file)

    async def action(echo: EchoNotes) -> VoiceNote:
        note = await echo.capture(audio, mime_type, duration, locale)
        if no_wait:
            return note
        await echo.lifecycle.wait_idle()
        return await echo.notes.get(note.id) or note

    note = _run(action)
    typer.echo(_render_note(note))


@app.command("list")
def list_notes(
    limit: LimitOption = 10,
    folder: Annotated[Optional[str], typer.Option(
        "--folder", "-f",
        help="Only notes in this folder"
    )] = None,
    status: Annotated[Optional[str], typer.Option(
        "--status",
        help="Only notes with this status: transcribing, ready or error"
    )] = None,
):
    """List notes, newest first."""
    async def action(echo: EchoNotes) -> list[VoiceNote]:
        if folder:
            notes = await echo.notes.get_by_folder(folder)
        elif status:
            try:
                notes = await echo.notes.get_by_status(status)
            except ValueError:
                raise ValidationFailed(f"Unknown status: {status}") from None
        else:
            notes = await echo.notes.get_recent(limit)
        return notes[:limit]

    _echo_notes(_run(action))


@app.command()
def search(
    query: Annotated[str, typer.Argument(help="Text to look for in titles, transcripts and tags")],
    limit: LimitOption = 50,
):
    """Search notes by title, transcription and tags."""
    async def action(echo: EchoNotes) -> list[VoiceNote]:
        return (await echo.notes.search(query))[:limit]

    _echo_notes(_run(action))


@app.command()
def show(
    note_id: Annotated[str, typer.Argument(help="Note ID")],
):
    """Show one note with its summary and transcript."""
    async def action(echo: EchoNotes) -> Optional[VoiceNote]:
        return await echo.notes.get(note_id)

    note = _run(action)
    if note is None:
        typer.echo(f"Not found: {note_id}", err=True)
        raise typer.Exit(1)
    typer.echo(_render_note(note))


@app.command()
def edit(
    note_id: Annotated[str, typer.Argument(help="Note ID")],
    title: Annotated[Optional[str], typer.Option(
        "--title", "-t",
        help="New title (empty string restores the default title)"
    )] = None,
    tag: Annotated[Optional[list[str]], typer.Option(
        "--tag",
        help="Replace tags (repeatable)"
    )] = None,
):
    """Edit a note's title or tags."""
    async def action(echo: EchoNotes) -> VoiceNote:
        return await echo.notes.update(note_id, title=title, tags=tag)

    typer.echo(_render_note(_run(action)))


@app.command()
def retry(
    note_id: Annotated[str, typer.Argument(help="Note ID")],
):
    """Transcribe a failed or stuck note again."""
    async def action(echo: EchoNotes) -> VoiceNote:
        await echo.retry(note_id)
        await echo.lifecycle.wait_idle()
        return await echo.notes.get(note_id)

    typer.echo(_render_note(_run(action)))


@app.command()
def stuck():
    """List notes left in 'transcribing' by an interrupted run."""
    async def action(echo: EchoNotes) -> list[VoiceNote]:
        return await echo.lifecycle.recover_stale()

    _echo_notes(_run(action))


@app.command()
def delete(
    note_id: Annotated[str, typer.Argument(help="Note ID")],
):
    """Delete a note and its audio."""
    async def action(echo: EchoNotes) -> None:
        await echo.notes.delete(note_id)

    _run(action)
    typer.echo(f"Deleted {note_id}")


@app.command()
def move(
    note_id: Annotated[str, typer.Argument(help="Note ID")],
    folder_id: Annotated[Optional[str], typer.Argument(
        help="Target folder ID (omit to remove from its folder)"
    )] = None,
):
    """File a note in a folder, or unfile it."""
    async def action(echo: EchoNotes) -> VoiceNote:
        return await echo.notes.move_to_folder(note_id, folder_id)

    note = _run(action)
    typer.echo(f"Moved {note.id} to {note.folder_id or '(no folder)'}")


# -----------------------------------------------------------------------------
# Folders
# -----------------------------------------------------------------------------

def _folder_dict(folder: Folder, count: int) -> dict[str, Any]:
    return {**folder.to_record(), "noteCount": count}


@app.command("folder-create")
def folder_create(
    name: Annotated[str, typer.Argument(help="Folder name")],
    color: Annotated[str, typer.Option("--color", "-c", help="Hex colour")] = "#e84d6e",
):
    """Create a folder."""
    async def action(echo: EchoNotes) -> Folder:
        return await echo.folders.create(name, color)

    folder = _run(action)
    typer.echo(json.dumps(_folder_dict(folder, 0)) if _json_output else folder.id)


@app.command()
def folders():
    """List folders with their note counts."""
    async def action(echo: EchoNotes) -> list[tuple[Folder, int]]:
        counts = await echo.folders.note_counts()
        return [(f, counts.get(f.id, 0)) for f in await echo.folders.get_sorted_by_name()]

    rows = _run(action)
    if _json_output:
        typer.echo(json.dumps([_folder_dict(f, n) for f, n in rows], indent=2))
        return
    if not rows:
        typer.echo("No folders.")
    for folder, count in rows:
        typer.echo(f"{folder.id}  {count:>4}  {folder.name}")


@app.command("folder-delete")
def folder_delete(
    folder_id: Annotated[str, typer.Argument(help="Folder ID")],
):
    """Delete a folder. Its notes are kept and become unfiled."""
    async def action(echo: EchoNotes) -> int:
        return await echo.folders.delete(folder_id)

    detached = _run(action)
    typer.echo(f"Deleted folder {folder_id} ({detached} notes unfiled)")


# -----------------------------------------------------------------------------
# Insights
# -----------------------------------------------------------------------------

@app.command("insight-create")
def insight_create(
    name: Annotated[str, typer.Argument(help="Insight name")],
):
    """Create an insight."""
    async def action(echo: EchoNotes) -> Insight:
        return await echo.insights.create(name)

    insight = _run(action)
    typer.echo(json.dumps(insight.to_record()) if _json_output else insight.id)


@app.command()
def insights():
    """List insights, most recently updated first."""
    async def action(echo: EchoNotes) -> list[Insight]:
        return await echo.insights.get_recently_updated()

    rows = _run(action)
    if _json_output:
        typer.echo(json.dumps([i.to_record() for i in rows], indent=2))
        return
    if not rows:
        typer.echo("No insights.")
    for insight in rows:
        typer.echo(f"{insight.id}  {len(insight.note_ids):>4}  {insight.name}")


@app.command("insight-add")
def insight_add(
    insight_id: Annotated[str, typer.Argument(help="Insight ID")],
    note_id: Annotated[str, typer.Argument(help="Note ID")],
):
    """Add a note to an insight."""
    async def action(echo: EchoNotes) -> Insight:
        return await echo.insights.add_note(insight_id, note_id)

    insight = _run(action)
    typer.echo(f"{insight.name}: {len(insight.note_ids)} notes")


@app.command("insight-remove")
def insight_remove(
    insight_id: Annotated[str, typer.Argument(help="Insight ID")],
    note_id: Annotated[str, typer.Argument(help="Note ID")],
):
    """Remove a note from an insight."""
    async def action(echo: EchoNotes) -> Insight:
        return await echo.insights.remove_note(insight_id, note_id)

    insight = _run(action)
    typer.echo(f"{insight.name}: {len(insight.note_ids)} notes")


@app.command("insight-delete")
def insight_delete(
    insight_id: Annotated[str, typer.Argument(help="Insight ID")],
):
    """Delete an insight and its images. Member notes are kept."""
    async def action(echo: EchoNotes) -> int:
        return await echo.insights.delete(insight_id)

    detached = _run(action)
    typer.echo(f"Deleted insight {insight_id} ({detached} notes updated)")


# -----------------------------------------------------------------------------
# Store
# -----------------------------------------------------------------------------

@app.command()
def migrate(
    source: Annotated[Path, typer.Argument(
        help="Directory holding conversations.json (and optionally settings.json)",
        exists=True, file_okay=False,
    )],
):
    """Import notes saved by the first-generation app."""
    async def action(echo: EchoNotes):
        return await echo.import_legacy(source)

    result = _run(action)
    if _json_output:
        typer.echo(json.dumps({
            "notesMigrated": result.notes_migrated,
            "foldersCreated": result.folders_created,
        }))
    else:
        typer.echo(
            f"Migrated {result.notes_migrated} notes into {result.folders_created} folders"
        )


@app.command()
def setting(
    key: Annotated[str, typer.Argument(help="Setting name")],
    value: Annotated[Optional[str], typer.Argument(help="New value (omit to read)")] = None,
):
    """Read or write a setting."""
    async def action(echo: EchoNotes) -> Any:
        if value is not None:
            await echo.settings.set(key, value)
            return value
        return await echo.settings.get(key)

    current = _run(action)
    if current is None:
        typer.echo(f"{key} is not set", err=True)
        raise typer.Exit(1)
    typer.echo(json.dumps(current) if _json_output else str(current))


@app.command()
def stats():
    """Show record counts per collection."""
    async def action(echo: EchoNotes) -> dict[str, int]:
        return await echo.stats()

    counts = _run(action)
    if _json_output:
        typer.echo(json.dumps(counts, indent=2))
        return
    for name, count in counts.items():
        typer.echo(f"{name}: {count}")


@app.command()
def erase(
    yes: Annotated[bool, typer.Option(
        "--yes", "-y",
        help="Do not ask for confirmation"
    )] = False,
):
    """Irrecoverably delete all notes, folders, insights and settings."""
    if not yes:
        typer.confirm("Erase all data in this store?", abort=True)

    async def action(echo: EchoNotes) -> None:
        await echo.erase_all()

    _run(action)
    typer.echo("Erased.")


def main():
    try:
        app()
    except SystemExit:
        raise  # Let typer handle exit codes
    except KeyboardInterrupt:
        raise SystemExit(130)  # Standard exit code for Ctrl+C
    except Exception as e:
        # Log full traceback to file, show clean message to user
        log_path = log_exception(e, context="echo-notes CLI", store_path=_store_override)
        typer.echo(f"Error: {e}", err=True)
        typer.echo(f"Details logged to {log_path}", err=True)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
