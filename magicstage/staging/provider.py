"""
AI staging provider.

The orchestrator treats the provider as opaque:
    stage(image, prompt, style, preferences) -> StagedImage

GeminiStagingProvider calls the Generative Language REST API
(models/{model}:generateContent) with the room image inlined as base64 and
extracts the first image part of the first candidate.

Security: the API key is sent as a header and never logged.
"""

import base64
import binascii
import logging
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from magicstage.config import AIProviderConfig
from magicstage.models.staging import StagingPreferences, StagingStyle
from magicstage.staging.prompts import build_staging_prompt

logger = logging.getLogger(__name__)


class ProviderError(Exception):
    """The provider failed to produce a staged image."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class ProviderTimeoutError(ProviderError):
    """The provider did not answer within the deadline."""

    pass


@dataclass
class StagedImage:
    """Generated image plus what it cost."""

    data: bytes
    mime_type: str
    cost_cents: int
    model: str
    prompt: str = ""


class AIProvider(Protocol):
    async def stage(
        self,
        image: bytes,
        prompt: str,
        style: StagingStyle,
        preferences: StagingPreferences | None = None,
    ) -> StagedImage: ...


def sniff_image_mime(data: bytes) -> str:
    """Detect JPEG/PNG/WebP from magic bytes (defaults to JPEG)."""
    if data.startswith(b"\x89PNG\r\n\x1a\n"):
        return "image/png"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    return "image/jpeg"


def extract_image(response_body: dict[str, Any]) -> tuple[bytes, str]:
    """
    Pull the generated image out of a generateContent response.

    Returns:
        tuple: (image_bytes, mime_type)

    Raises:
        ProviderError: If no decodable image part is present
    """
    candidates = response_body.get("candidates") or []
    if not candidates:
        feedback = response_body.get("promptFeedback") or {}
        reason = feedback.get("blockReason")
        raise ProviderError(
            f"No candidates in AI response (block reason: {reason})"
            if reason
            else "No candidates in AI response"
        )

    parts = ((candidates[0] or {}).get("content") or {}).get("parts") or []
    for part in parts:
        inline = part.get("inlineData") or part.get("inline_data") or {}
        mime_type = inline.get("mimeType") or inline.get("mime_type") or ""
        data = inline.get("data")
        if data and mime_type.startswith("image/"):
            try:
                decoded = base64.b64decode(data, validate=True)
            except (binascii.Error, ValueError) as e:
                raise ProviderError(f"AI response image is not valid base64: {e}") from e
            if not decoded:
                break
            return decoded, mime_type

    raise ProviderError("No image data found in AI response")


class GeminiStagingProvider:
    """
    Image staging through Gemini's generateContent endpoint.

    No retries here: a failed call fails the job and refunds its credit,
    and the user may submit a new job.
    """

    def __init__(self, config: AIProviderConfig, client: httpx.AsyncClient | None = None):
        """
        Initialize provider.

        Args:
            config: AI provider configuration
            client: Shared HTTP client (created if omitted; closed by aclose)
        """
        if not config.has_api_key:
            logger.warning("AI provider API key not configured - staging calls will fail")

        self.config = config
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=config.request_timeout_seconds)

    @property
    def endpoint(self) -> str:
        return f"{self.config.base_url.rstrip('/')}/models/{self.config.model}:generateContent"

    async def stage(
        self,
        image: bytes,
        prompt: str,
        style: StagingStyle,
        preferences: StagingPreferences | None = None,
    ) -> StagedImage:
        """
        Generate a staged version of a room image.

        Raises:
            ProviderTimeoutError: If the HTTP call times out
            ProviderError: On any other failure (auth, HTTP status, bad response)
        """
        if not self.config.has_api_key:
            raise ProviderError("AI provider API key not configured")
        if not image:
            raise ProviderError("Room image is empty")

        staging_prompt = build_staging_prompt(prompt, style, preferences)
        payload = {
            "contents": [
                {
                    "parts": [
                        {"text": staging_prompt},
                        {
                            "inline_data": {
                                "mime_type": sniff_image_mime(image),
                                "data": base64.b64encode(image).decode("ascii"),
                            }
                        },
                    ]
                }
            ],
            "generationConfig": {"responseModalities": ["TEXT", "IMAGE"]},
        }

        try:
            response = await self.client.post(
                self.endpoint,
                json=payload,
                headers={"x-goog-api-key": self.config.api_key},
                timeout=self.config.request_timeout_seconds,
            )
        except httpx.TimeoutException as e:
            raise ProviderTimeoutError(
                f"AI provider timed out after {self.config.request_timeout_seconds}s"
            ) from e
        except httpx.HTTPError as e:
            raise ProviderError(f"AI provider request failed: {e.__class__.__name__}") from e

        if response.status_code >= 400:
            logger.warning(
                "AI provider returned an error status",
                extra={"status_code": response.status_code, "model": self.config.model},
            )
            raise ProviderError(
                f"AI provider returned HTTP {response.status_code}",
                status_code=response.status_code,
            )

        try:
            body = response.json()
        except ValueError as e:
            raise ProviderError("AI provider returned a non-JSON response") from e

        data, mime_type = extract_image(body)

        logger.info(
            "AI provider returned staged image",
            extra={"model": self.config.model, "style": style.value, "size_bytes": len(data)},
        )

        return StagedImage(
            data=data,
            mime_type=mime_type,
            cost_cents=self.config.cost_cents_per_image,
            model=self.config.model,
            prompt=staging_prompt,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()
