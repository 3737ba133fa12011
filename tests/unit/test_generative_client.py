import base64
import json

import httpx
import pytest

from threadgenie.core.config import settings
from threadgenie.core.exceptions import (
    ExternalAPIError,
    GenerationFailed,
    NoCandidateError,
    NoImageInResponseError,
    get_circuit_breaker,
)
from threadgenie.engines.generative.credentials import ApiKeyGate
from threadgenie.engines.generative.schemas import GenerativeClient, ModelTier
from threadgenie.engines.generative.services import (
    GeminiClient,
    SimulatedGenerativeClient,
    build_generate_payload,
    extract_image_from_response,
)
from threadgenie.engines.pixel import services as pixel
from threadgenie.engines.pixel.schemas import EncodedImage, JPEG_MIME_TYPE, PNG_MIME_TYPE
from tests.factories import make_image_bytes, make_patch_on_white

BASE_URL = "https://gemini.test/v1beta"


def image_response(data: bytes, mime_type: str = "image/png") -> dict:
    return {
        "candidates": [{
            "content": {"parts": [
                {"text": "Here is your patch."},
                {"inlineData": {"mimeType": mime_type, "data": base64.b64encode(data).decode()}},
            ]},
            "finishReason": "STOP",
        }]
    }


class RecordingHandler:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return response


def gemini_client(handler, api_key="test-key") -> GeminiClient:
    return GeminiClient(
        ApiKeyGate(api_key),
        base_url=BASE_URL,
        transport=httpx.MockTransport(handler),
    )


@pytest.fixture
def source() -> EncodedImage:
    return EncodedImage(data=make_image_bytes(fmt="JPEG"), mime_type=JPEG_MIME_TYPE)


# =============================================================================
# Payload / response helpers
# =============================================================================

def test_payload_sends_image_before_instruction(source):
    payload = build_generate_payload(source, "Stitch it")

    parts = payload["contents"][0]["parts"]
    assert parts[0]["inlineData"] == {"mimeType": JPEG_MIME_TYPE, "data": source.to_base64()}
    assert parts[1] == {"text": "Stitch it"}
    assert payload["generationConfig"] == {"responseModalities": ["TEXT", "IMAGE"]}


def test_payload_requests_image_size_when_given(source):
    payload = build_generate_payload(source, "Upscale", image_size="4K")

    assert payload["generationConfig"]["imageConfig"] == {"imageSize": "4K"}


def test_extract_image_without_candidates_raises_no_candidate():
    with pytest.raises(NoCandidateError):
        extract_image_from_response({"promptFeedback": {"blockReason": "SAFETY"}})


def test_extract_image_with_text_only_raises_no_image():
    response = {"candidates": [{"content": {"parts": [{"text": "I can't do that"}]}}]}

    with pytest.raises(NoImageInResponseError) as exc_info:
        extract_image_from_response(response)

    assert exc_info.value.details["text"] == "I can't do that"


def test_both_generation_errors_are_generation_failed():
    assert issubclass(NoCandidateError, GenerationFailed)
    assert issubclass(NoImageInResponseError, GenerationFailed)


# =============================================================================
# GeminiClient
# =============================================================================

@pytest.mark.asyncio
async def test_generate_posts_to_standard_model_and_returns_image(source):
    # Arrange
    output = make_patch_on_white()
    handler = RecordingHandler(httpx.Response(200, json=image_response(output.data)))
    client = gemini_client(handler)

    # Act
    result = await client.generate(source, "Make it embroidered")

    # Assert
    assert result == output
    request = handler.requests[0]
    assert request.method == "POST"
    assert str(request.url) == f"{BASE_URL}/models/{settings.GEMINI_STANDARD_MODEL}:generateContent"
    assert request.headers["x-goog-api-key"] == "test-key"
    body = json.loads(request.content)
    assert body["contents"][0]["parts"][1]["text"] == "Make it embroidered"


@pytest.mark.asyncio
async def test_generate_pro_tier_requests_image_size(source):
    handler = RecordingHandler(httpx.Response(200, json=image_response(make_patch_on_white().data)))
    client = gemini_client(handler)

    await client.generate(source, "Upscale", model_tier=ModelTier.PRO, image_size="4K")

    request = handler.requests[0]
    assert f"/models/{settings.GEMINI_PRO_MODEL}:generateContent" in str(request.url)
    assert json.loads(request.content)["generationConfig"]["imageConfig"]["imageSize"] == "4K"


@pytest.mark.asyncio
async def test_generate_reads_key_at_call_time(source):
    handler = RecordingHandler(httpx.Response(200, json=image_response(make_patch_on_white().data)))
    gate = ApiKeyGate()
    client = GeminiClient(gate, base_url=BASE_URL, transport=httpx.MockTransport(handler))

    await client.generate(source, "first")
    gate.provide("fresh-key")
    await client.generate(source, "second")

    assert "x-goog-api-key" not in handler.requests[0].headers
    assert handler.requests[1].headers["x-goog-api-key"] == "fresh-key"


@pytest.mark.asyncio
async def test_generate_labels_result_by_decoded_format(source):
    jpeg = make_image_bytes(fmt="JPEG")
    handler = RecordingHandler(httpx.Response(200, json=image_response(jpeg, mime_type="image/png")))

    result = await gemini_client(handler).generate(source, "edit")

    assert result.mime_type == JPEG_MIME_TYPE


@pytest.mark.asyncio
async def test_generate_text_only_response(source):
    body = {"candidates": [{"content": {"parts": [{"text": "Sorry"}]}, "finishReason": "STOP"}]}
    handler = RecordingHandler(httpx.Response(200, json=body))

    with pytest.raises(NoImageInResponseError):
        await gemini_client(handler).generate(source, "edit")


@pytest.mark.asyncio
async def test_generate_undecodable_inline_data(source):
    handler = RecordingHandler(httpx.Response(200, json=image_response(b"not really a png")))

    with pytest.raises(NoImageInResponseError):
        await gemini_client(handler).generate(source, "edit")


@pytest.mark.asyncio
async def test_generate_empty_candidates(source):
    handler = RecordingHandler(httpx.Response(200, json={"candidates": []}))

    with pytest.raises(NoCandidateError):
        await gemini_client(handler).generate(source, "edit")


@pytest.mark.asyncio
async def test_generate_http_error_status(source):
    handler = RecordingHandler(httpx.Response(403, json={"error": {"message": "API key not valid"}}))

    with pytest.raises(ExternalAPIError) as exc_info:
        await gemini_client(handler).generate(source, "edit")

    assert exc_info.value.details["http_status"] == 403
    assert "API key not valid" in exc_info.value.message


@pytest.mark.asyncio
async def test_generate_timeout(source):
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(ExternalAPIError) as exc_info:
        await gemini_client(handler).generate(source, "edit")

    assert exc_info.value.details["http_status"] == 504


@pytest.mark.asyncio
async def test_repeated_failures_open_the_circuit(source):
    # Arrange
    handler = RecordingHandler(httpx.Response(500, text="internal"))
    client = gemini_client(handler)
    breaker = get_circuit_breaker("gemini")

    # Act
    for _ in range(breaker.failure_threshold):
        with pytest.raises(ExternalAPIError):
            await client.generate(source, "edit")

    # Assert: the next call fails fast without reaching the service
    with pytest.raises(ExternalAPIError) as exc_info:
        await client.generate(source, "edit")
    assert exc_info.value.details["http_status"] == 503
    assert len(handler.requests) == breaker.failure_threshold


# =============================================================================
# SimulatedGenerativeClient
# =============================================================================

@pytest.mark.asyncio
async def test_simulated_client_echoes_input_as_png(source):
    client = SimulatedGenerativeClient(latency_seconds=0, upscale_factor=2)

    result = await client.generate(source, "anything")

    assert isinstance(client, GenerativeClient)
    assert result.mime_type == PNG_MIME_TYPE
    assert pixel.image_dimensions(result) == pixel.image_dimensions(source)


@pytest.mark.asyncio
async def test_simulated_client_upscales_when_size_requested(source):
    client = SimulatedGenerativeClient(latency_seconds=0, upscale_factor=3)

    result = await client.generate(source, "upscale", model_tier=ModelTier.PRO, image_size="4K")

    width, height = pixel.image_dimensions(source)
    assert pixel.image_dimensions(result) == (width * 3, height * 3)
