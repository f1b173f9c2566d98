"""
Enrichment providers.

An enrichment provider turns a recording into a title, summary, transcript
and tags. The lifecycle controller treats it as a black box: it awaits
``enrich()`` and validates whatever comes back with validate_enrichment().

The HTTP provider posts the audio to a transcription service's
``/transcribe`` endpoint. The ``none`` provider always fails, so captured
notes land in ``error`` until a provider is configured and they are retried.
"""

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol, runtime_checkable
from urllib.parse import urlparse

import httpx

from .config import DEFAULT_LOCALE, ProviderConfig
from .errors import EnrichmentFailed

logger = logging.getLogger(__name__)

MAX_AUDIO_BYTES = 25 * 1024 * 1024
SUPPORTED_LOCALES = ("en", "es", "pt")
ALLOWED_AUDIO_TYPES = {
    "audio/webm": "webm",
    "audio/mp4": "m4a",
    "audio/mpeg": "mp3",
    "audio/ogg": "ogg",
    "audio/wav": "wav",
    "audio/x-m4a": "m4a",
    "audio/mp3": "mp3",
    "audio/aac": "aac",
}

DEFAULT_TIMEOUT = 120.0


def base_mime_type(mime_type: str) -> str:
    """Strip parameters: ``audio/webm;codecs=opus`` -> ``audio/webm``."""
    return mime_type.split(";", 1)[0].strip().lower()


# -----------------------------------------------------------------------------
# Result validation
# -----------------------------------------------------------------------------

@dataclass
class EnrichmentResult:
    """A validated enrichment payload."""
    title: str
    summary: str
    transcription: str
    tags: list[str] = field(default_factory=list)
    detected_language: Optional[str] = None


def validate_enrichment(payload: Any) -> EnrichmentResult:
    """
    Check the shape of a provider response.

    ``title``, ``summary`` and ``transcription`` must be strings and ``tags``
    a list of strings. ``detectedLanguage`` (or ``language``) is optional.

    Raises:
        EnrichmentFailed: If the payload is malformed
    """
    if not isinstance(payload, Mapping):
        raise EnrichmentFailed(f"Enrichment returned {type(payload).__name__}, expected an object")

    for key in ("title", "summary", "transcription"):
        if not isinstance(payload.get(key), str):
            raise EnrichmentFailed(f"Enrichment field '{key}' must be a string")

    tags = payload.get("tags")
    if not isinstance(tags, list) or not all(isinstance(t, str) for t in tags):
        raise EnrichmentFailed("Enrichment field 'tags' must be a list of strings")

    language = payload.get("detectedLanguage", payload.get("language"))
    if language is not None and not isinstance(language, str):
        raise EnrichmentFailed("Enrichment field 'detectedLanguage' must be a string")

    return EnrichmentResult(
        title=payload["title"],
        summary=payload["summary"],
        transcription=payload["transcription"],
        tags=list(tags),
        detected_language=language or None,
    )


# -----------------------------------------------------------------------------
# Providers
# -----------------------------------------------------------------------------

@runtime_checkable
class EnrichmentProvider(Protocol):
    """
    Produces enrichment for a recording.

    Example implementation:
        class CannedEnrichment:
            async def enrich(self, audio, mime_type, locale):
                return {"title": "Standup", "summary": "...",
                        "transcription": "...", "tags": ["work"]}
    """

    async def enrich(self, audio: bytes, mime_type: str, locale: str) -> Mapping[str, Any]:
        """
        Enrich one recording.

        Args:
            audio: Raw audio bytes
            mime_type: MIME type of the audio, parameters allowed
            locale: Language hint for transcription

        Returns:
            Unvalidated payload with title, summary, transcription and tags

        Raises:
            EnrichmentFailed: Or any other exception; the caller treats every
                failure the same way
        """
        ...


class NullEnrichment:
    """Provider used when nothing is configured. Every call fails."""

    async def enrich(self, audio: bytes, mime_type: str, locale: str) -> Mapping[str, Any]:
        raise EnrichmentFailed(
            "No enrichment provider configured. "
            "Set ECHO_ENRICHMENT_URL or the [enrichment] section of echo.toml."
        )


class HttpEnrichmentClient:
    """Posts recordings to a transcription service over HTTP."""

    def __init__(
        self,
        api_url: str,
        api_key: Optional[str] = None,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._api_url = api_url.rstrip("/")

        # Refuse plain HTTP for remote hosts (audio and key would travel in cleartext)
        if not self._api_url.startswith("https://"):
            host = urlparse(self._api_url).hostname or ""
            if host not in ("localhost", "127.0.0.1", "::1"):
                raise ValueError(
                    f"Enrichment URL must use HTTPS (got {self._api_url}). "
                    "Use HTTPS, or use localhost for local development."
                )

        api_key = api_key or os.environ.get("ECHO_API_KEY")
        headers: dict[str, str] = {}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"

        self._client = httpx.AsyncClient(
            base_url=self._api_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    @property
    def api_url(self) -> str:
        return self._api_url

    async def enrich(self, audio: bytes, mime_type: str, locale: str) -> Mapping[str, Any]:
        """POST /transcribe with the audio as multipart form data."""
        mime = base_mime_type(mime_type)
        if mime not in ALLOWED_AUDIO_TYPES:
            raise EnrichmentFailed(f"Unsupported audio format: {mime or 'unknown'}")
        if len(audio) > MAX_AUDIO_BYTES:
            raise EnrichmentFailed(
                f"Audio is {len(audio)} bytes, larger than the {MAX_AUDIO_BYTES} byte limit"
            )
        if locale not in SUPPORTED_LOCALES:
            locale = DEFAULT_LOCALE

        filename = f"recording.{ALLOWED_AUDIO_TYPES[mime]}"
        try:
            resp = await self._client.post(
                "/transcribe",
                files={"audio": (filename, audio, mime)},
                data={"locale": locale},
            )
            if resp.status_code == 429:
                raise EnrichmentFailed("Enrichment service is rate limiting requests")
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPStatusError as e:
            raise EnrichmentFailed(
                f"Enrichment rejected: {e.response.status_code} {e.response.text}"
            ) from e
        except httpx.HTTPError as e:
            raise EnrichmentFailed(f"Enrichment request failed: {e}") from e
        except ValueError as e:
            raise EnrichmentFailed(f"Enrichment returned invalid JSON: {e}") from e

        logger.debug("Enrichment response keys: %s", sorted(data) if isinstance(data, dict) else type(data))
        return data

    async def aclose(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()


_PROVIDERS: dict[str, type] = {
    "http": HttpEnrichmentClient,
    "none": NullEnrichment,
}


def create_enrichment_provider(config: ProviderConfig) -> EnrichmentProvider:
    """
    Build the provider named in the ``[enrichment]`` config section.

    Raises:
        ValueError: If the provider name is unknown or its params are invalid
    """
    if config.name not in _PROVIDERS:
        available = ", ".join(_PROVIDERS)
        raise ValueError(
            f"Unknown enrichment provider: '{config.name}'. Available providers: {available}."
        )
    try:
        return _PROVIDERS[config.name](**config.params)
    except TypeError as e:
        raise ValueError(f"Invalid params for enrichment provider '{config.name}': {e}") from e
