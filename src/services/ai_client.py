"""
External AI Client.

One blocking call per operation against the two providers the pipeline
depends on: a Whisper-style speech-to-text endpoint and an Anthropic
Messages-style text-generation endpoint. No retries happen here; a
failed call raises a typed error and the task layer decides what to do.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

import httpx

from src.config import Settings, get_settings
from src.errors import EmptyResultError, ProviderError
from src.logging_config import get_logger
from src.schemas.transcript import SpeechSegment

logger = get_logger(__name__)

STT_PROVIDER = "openai"
LLM_PROVIDER = "anthropic"


@dataclass
class TranscriptionResult:
    text: str
    segments: list[SpeechSegment] = field(default_factory=list)


class ExternalAIClient:
    """
    Thin wrapper over the speech-to-text and generation HTTP APIs.

    Pass ``http_client`` to share a connection pool (or a mock transport
    in tests). Without it, a short-lived client is opened per call with
    the timeout configured for that provider.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._http_client = http_client

    async def transcribe(
        self,
        audio_bytes: bytes,
        language_hint: Optional[str] = None,
        filename: str = "recording.mp3",
    ) -> TranscriptionResult:
        """Send audio for transcription and return text plus segment timestamps."""
        settings = self._settings
        language = language_hint or settings.transcription_language

        logger.info(
            "transcription_request",
            model=settings.transcription_model,
            language=language,
            audio_bytes=len(audio_bytes),
        )

        data = await self._post(
            provider=STT_PROVIDER,
            url=f"{settings.openai_base_url.rstrip('/')}/audio/transcriptions",
            timeout=settings.transcription_timeout_seconds,
            headers={"Authorization": f"Bearer {settings.openai_api_key}"},
            files={"file": (filename, audio_bytes)},
            data={
                "model": settings.transcription_model,
                "language": language,
                "response_format": "verbose_json",
                "timestamp_granularities[]": "segment",
            },
        )

        text = (data.get("text") or "").strip()
        if not text:
            raise EmptyResultError(STT_PROVIDER, "No transcript text returned from API")

        segments = _parse_segments(data.get("segments") or [])
        logger.info("transcription_response", characters=len(text), segments=len(segments))
        return TranscriptionResult(text=text, segments=segments)

    async def generate(self, prompt: str) -> str:
        """Send a single user-role prompt and return the generated text."""
        settings = self._settings

        data = await self._post(
            provider=LLM_PROVIDER,
            url=f"{settings.anthropic_base_url.rstrip('/')}/messages",
            timeout=settings.generation_timeout_seconds,
            headers={
                "x-api-key": settings.anthropic_api_key,
                "anthropic-version": settings.anthropic_version,
                "Content-Type": "application/json",
            },
            json={
                "model": settings.generation_model,
                "max_tokens": settings.generation_max_tokens,
                "messages": [{"role": "user", "content": prompt}],
            },
        )

        content = _first_text_block(data)
        if not content:
            raise EmptyResultError(LLM_PROVIDER)

        logger.info(
            "generation_response",
            model=settings.generation_model,
            prompt_length=len(prompt),
            response_length=len(content),
            stop_reason=data.get("stop_reason"),
        )
        return content

    async def _post(
        self,
        provider: str,
        url: str,
        timeout: float,
        **request_kwargs: Any,
    ) -> dict[str, Any]:
        try:
            if self._http_client is not None:
                response = await self._http_client.post(url, timeout=timeout, **request_kwargs)
            else:
                async with httpx.AsyncClient(timeout=timeout) as client:
                    response = await client.post(url, **request_kwargs)
        except httpx.HTTPError as e:
            logger.error("provider_transport_error", provider=provider, error=str(e))
            raise ProviderError(provider, message=f"{type(e).__name__}: {e}") from e

        if not response.is_success:
            logger.error(
                "provider_error_response",
                provider=provider,
                status_code=response.status_code,
            )
            raise ProviderError(provider, status_code=response.status_code, body=response.text)

        try:
            return response.json()
        except ValueError as e:
            raise ProviderError(
                provider,
                status_code=response.status_code,
                body=response.text,
                message="response body is not JSON",
            ) from e


def _first_text_block(data: dict[str, Any]) -> str:
    for block in data.get("content") or []:
        if isinstance(block, dict) and block.get("type", "text") == "text":
            text = block.get("text") or ""
            if text.strip():
                return text
    return ""


def _parse_segments(raw_segments: list[Any]) -> list[SpeechSegment]:
    segments: list[SpeechSegment] = []
    for item in raw_segments:
        try:
            segments.append(SpeechSegment(
                id=item.get("id"),
                start=float(item["start"]),
                end=float(item["end"]),
                text=(item.get("text") or "").strip(),
            ))
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            logger.warning("skipping_malformed_segment", item=item, error=str(e))
    return sorted(segments, key=lambda s: s.start)
