"""
Generative Client Implementations

- GeminiClient: Gemini image models over the REST generateContent endpoint
- SimulatedGenerativeClient: offline stand-in for development without an API key
"""

import base64
import binascii
import asyncio
from typing import Optional, Dict, Any, Tuple
from datetime import datetime, timezone

import httpx
from PIL import Image

from threadgenie.core.config import settings
from threadgenie.core.logging import get_logger
from threadgenie.core.metrics import record_generation_call
from threadgenie.core.exceptions import (
    DecodeError,
    ExternalAPIError,
    NoCandidateError,
    NoImageInResponseError,
    get_circuit_breaker
)
from threadgenie.engines.generative.credentials import ApiKeyGate
from threadgenie.engines.generative.schemas import ModelTier
from threadgenie.engines.pixel.schemas import EncodedImage, PNG_MIME_TYPE
from threadgenie.engines.pixel.services import as_encoded_image, open_image, save_image

logger = get_logger(__name__)

SERVICE_NAME = "gemini"


def _elapsed_ms(start_time: datetime) -> int:
    return int((datetime.now(timezone.utc) - start_time).total_seconds() * 1000)


# =============================================================================
# Request / Response helpers
# =============================================================================

def build_generate_payload(
    image: EncodedImage,
    instruction: str,
    image_size: Optional[str] = None
) -> Dict[str, Any]:
    """Build a generateContent body: the image part first, then the instruction."""
    generation_config: Dict[str, Any] = {"responseModalities": ["TEXT", "IMAGE"]}
    if image_size:
        generation_config["imageConfig"] = {"imageSize": image_size}

    return {
        "contents": [
            {
                "parts": [
                    {"inlineData": {"mimeType": image.mime_type, "data": image.to_base64()}},
                    {"text": instruction},
                ]
            }
        ],
        "generationConfig": generation_config,
    }


def extract_image_from_response(response: Dict[str, Any]) -> Tuple[bytes, Optional[str]]:
    """
    Pull the first inline image out of a generateContent response.

    Returns:
        Tuple of (image_bytes, mime_type)

    Raises:
        NoCandidateError: No candidates in the response
        NoImageInResponseError: The first candidate carries no image data
    """
    candidates = response.get("candidates") or []
    if not candidates:
        raise NoCandidateError(
            details={"prompt_feedback": response.get("promptFeedback")}
        )

    candidate = candidates[0] or {}
    parts = (candidate.get("content") or {}).get("parts") or []
    for part in parts:
        inline = part.get("inlineData") or part.get("inline_data")
        if inline and inline.get("data"):
            mime_type = inline.get("mimeType") or inline.get("mime_type")
            try:
                return base64.b64decode(inline["data"]), mime_type
            except binascii.Error as e:
                raise NoImageInResponseError(f"Inline image data is not valid base64: {e}") from e

    text = " ".join(part["text"] for part in parts if part.get("text"))
    raise NoImageInResponseError(
        details={
            "finish_reason": candidate.get("finishReason"),
            "text": text[:500] or None,
        }
    )


# =============================================================================
# Gemini REST client
# =============================================================================

class GeminiClient:
    """
    Calls POST {base_url}/models/{model}:generateContent.

    The API key is read from the credential gate on every call. Failures are
    counted on the "gemini" circuit breaker; an open breaker fails fast.
    """

    def __init__(
        self,
        credentials: ApiKeyGate,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.credentials = credentials
        self.base_url = (base_url or settings.GEMINI_API_URL).rstrip("/")
        self.timeout = settings.GENERATION_TIMEOUT_SECONDS if timeout is None else timeout
        self._transport = transport

    def _endpoint(self, model: str) -> str:
        return f"{self.base_url}/models/{model}:generateContent"

    async def generate(
        self,
        image: EncodedImage,
        instruction: str,
        model_tier: ModelTier = ModelTier.STANDARD,
        image_size: Optional[str] = None,
    ) -> EncodedImage:
        model = model_tier.model_name
        circuit = get_circuit_breaker(SERVICE_NAME)

        if not circuit.can_execute():
            raise ExternalAPIError(
                "Gemini API is temporarily unavailable",
                service=SERVICE_NAME,
                http_status=503
            )

        start_time = datetime.now(timezone.utc)
        headers = {"Content-Type": "application/json"}
        if self.credentials.api_key:
            headers["x-goog-api-key"] = self.credentials.api_key

        payload = build_generate_payload(image, instruction, image_size)

        logger.info(
            "generation_starting",
            model=model,
            input_size=image.size_bytes,
            input_mime_type=image.mime_type,
            image_size=image_size
        )

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(self._endpoint(model), json=payload, headers=headers)
        except httpx.TimeoutException:
            circuit.record_failure()
            record_generation_call(model, status="timeout", http_status=504)
            raise ExternalAPIError("Gemini API timeout", service=SERVICE_NAME, http_status=504)
        except httpx.HTTPError as e:
            circuit.record_failure(e)
            record_generation_call(model, status="error", http_status=0)
            raise ExternalAPIError(
                f"Gemini API call failed: {e}",
                service=SERVICE_NAME
            ) from e

        record_generation_call(
            model,
            status="success" if response.status_code == 200 else "error",
            http_status=response.status_code
        )

        if response.status_code != 200:
            circuit.record_failure()
            raise ExternalAPIError(
                f"Gemini API error: {response.text[:500]}",
                service=SERVICE_NAME,
                http_status=response.status_code
            )

        try:
            body = response.json()
        except ValueError as e:
            circuit.record_failure(e)
            raise ExternalAPIError(
                "Gemini API returned a non-JSON body",
                service=SERVICE_NAME,
                http_status=response.status_code
            ) from e

        # The service answered; an answer without an image is not a service fault
        circuit.record_success()

        data, mime_type = extract_image_from_response(body)
        try:
            result = await asyncio.to_thread(as_encoded_image, data, mime_type)
        except DecodeError as e:
            raise NoImageInResponseError(f"Returned image data could not be decoded: {e.message}") from e

        logger.info(
            "generation_completed",
            model=model,
            duration_ms=_elapsed_ms(start_time),
            output_size=result.size_bytes,
            output_mime_type=result.mime_type
        )

        return result


# =============================================================================
# Simulated client for development
# =============================================================================

class SimulatedGenerativeClient:
    """Offline client: echoes the input as PNG, resized when an image size is requested."""

    def __init__(self, latency_seconds: Optional[float] = None, upscale_factor: Optional[int] = None):
        self.latency_seconds = settings.SIMULATED_LATENCY_SECONDS if latency_seconds is None else latency_seconds
        self.upscale_factor = settings.SIMULATED_UPSCALE_FACTOR if upscale_factor is None else upscale_factor

    async def generate(
        self,
        image: EncodedImage,
        instruction: str,
        model_tier: ModelTier = ModelTier.STANDARD,
        image_size: Optional[str] = None,
    ) -> EncodedImage:
        logger.info(
            "generation_simulated_starting",
            model=model_tier.model_name,
            input_size=image.size_bytes
        )

        if self.latency_seconds > 0:
            await asyncio.sleep(self.latency_seconds)

        result = await asyncio.to_thread(self._render, image, image_size)

        logger.info("generation_simulated_completed", output_size=result.size_bytes)
        return result

    def _render(self, image: EncodedImage, image_size: Optional[str]) -> EncodedImage:
        output_image = open_image(image.data)
        if image_size and self.upscale_factor > 1:
            new_size = (output_image.width * self.upscale_factor, output_image.height * self.upscale_factor)
            output_image = output_image.resize(new_size, Image.Resampling.LANCZOS)
        return save_image(output_image, PNG_MIME_TYPE)
