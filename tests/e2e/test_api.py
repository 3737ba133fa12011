import re

import pytest

from threadgenie.core.exceptions import NoCandidateError
from tests.factories import make_image_bytes, make_patch_on_white


async def create_session(client, data: bytes, content_type: str = "image/jpeg"):
    return await client.post(
        "/api/v1/sessions",
        files={"file": ("photo.jpg", data, content_type)},
    )


@pytest.fixture
async def session_id(client, upload_bytes) -> str:
    response = await create_session(client, upload_bytes)
    assert response.status_code == 201
    return response.json()["id"]


@pytest.mark.asyncio
async def test_health_check(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert "X-Process-Time" in response.headers


@pytest.mark.asyncio
async def test_root(client):
    response = await client.get("/")
    assert response.status_code == 200
    assert response.json()["api_v1"] == "/api/v1"


# =============================================================================
# Session lifecycle
# =============================================================================

@pytest.mark.asyncio
async def test_create_session_normalizes_upload(client, upload_bytes):
    response = await create_session(client, upload_bytes)

    assert response.status_code == 201
    data = response.json()
    assert data["status"] == "idle"
    assert data["history_length"] == 1
    assert data["current_image"]["width"] == 1024
    assert data["current_image"]["height"] == 512
    assert data["current_image"]["mime_type"] == "image/jpeg"


@pytest.mark.asyncio
async def test_create_session_rejects_non_image_upload(client):
    response = await create_session(client, b"hello", content_type="text/plain")

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_create_session_with_undecodable_image(client):
    response = await create_session(client, b"not an image", content_type="image/png")

    assert response.status_code == 422
    assert response.json()["error"] == "Failed to process image. Please try another file."

    health = await client.get("/health")
    assert health.json()["active_sessions"] == 0


@pytest.mark.asyncio
async def test_get_session_with_image(client, session_id):
    response = await client.get(f"/api/v1/sessions/{session_id}", params={"include_image": "true"})

    assert response.status_code == 200
    assert response.json()["current_image"]["data_url"].startswith("data:image/jpeg;base64,")


@pytest.mark.asyncio
async def test_unknown_session_is_404(client):
    response = await client.post("/api/v1/sessions/does-not-exist/embroidery")

    assert response.status_code == 404
    assert response.json()["code"] == 404


@pytest.mark.asyncio
async def test_delete_session(client, session_id):
    response = await client.delete(f"/api/v1/sessions/{session_id}")
    assert response.status_code == 204

    response = await client.get(f"/api/v1/sessions/{session_id}")
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_replace_image(client, session_id, fake_client):
    await client.post(f"/api/v1/sessions/{session_id}/edit", json={"prompt": "add a border"})
    before = (await client.get(f"/api/v1/sessions/{session_id}")).json()

    response = await client.post(
        f"/api/v1/sessions/{session_id}/image",
        files={"file": ("second.png", make_image_bytes(size=(200, 100)), "image/png")},
    )

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "idle"
    assert data["history_length"] == 1
    assert data["current_image"]["width"] == 200
    assert list(data["operations"]) == ["begin_session"]
    assert data["created_at"] > before["created_at"]


# =============================================================================
# Transformations
# =============================================================================

@pytest.mark.asyncio
async def test_embroidery_then_undo(client, session_id, fake_client):
    # Arrange
    fake_client.script(make_patch_on_white())

    # Act
    response = await client.post(f"/api/v1/sessions/{session_id}/embroidery")

    # Assert
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "complete"
    assert data["history_length"] == 2
    assert data["can_undo"] is True
    assert data["current_image"]["mime_type"] == "image/png"

    response = await client.post(f"/api/v1/sessions/{session_id}/undo")
    assert response.status_code == 200
    assert response.json()["history_length"] == 1
    assert response.json()["current_image"]["mime_type"] == "image/jpeg"


@pytest.mark.asyncio
async def test_failed_operation_reports_error_in_snapshot(client, session_id, fake_client):
    fake_client.script(NoCandidateError())

    response = await client.post(f"/api/v1/sessions/{session_id}/upscale")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "error"
    assert data["history_length"] == 1
    assert data["error"]["operation"] == "upscale"
    assert data["error"]["message"].startswith("Failed to upscale image.")

    response = await client.delete(f"/api/v1/sessions/{session_id}/error")
    assert response.json()["error"] is None
    assert response.json()["status"] == "error"


@pytest.mark.asyncio
async def test_undo_after_failed_operation_is_rejected(client, session_id, fake_client):
    fake_client.script(make_patch_on_white(), NoCandidateError())
    await client.post(f"/api/v1/sessions/{session_id}/embroidery")
    response = await client.post(f"/api/v1/sessions/{session_id}/upscale")
    assert response.json()["status"] == "error"
    assert response.json()["can_undo"] is False

    response = await client.post(f"/api/v1/sessions/{session_id}/undo")

    assert response.status_code == 409
    session = (await client.get(f"/api/v1/sessions/{session_id}")).json()
    assert session["history_length"] == 2


@pytest.mark.asyncio
async def test_edit_with_empty_prompt_is_rejected(client, session_id):
    response = await client.post(f"/api/v1/sessions/{session_id}/edit", json={"prompt": "   "})

    assert response.status_code == 409
    session = (await client.get(f"/api/v1/sessions/{session_id}")).json()
    assert session["status"] == "idle"


@pytest.mark.asyncio
async def test_edit_uses_pending_prompt(client, session_id, fake_client):
    response = await client.put(f"/api/v1/sessions/{session_id}/prompt", json={"prompt": "make it gold"})
    assert response.json()["pending_prompt"] == "make it gold"

    response = await client.post(f"/api/v1/sessions/{session_id}/edit")

    assert response.status_code == 200
    assert response.json()["status"] == "complete"
    assert response.json()["pending_prompt"] == ""
    assert "make it gold" in fake_client.calls[0]["instruction"]


@pytest.mark.asyncio
async def test_undo_at_first_entry_is_rejected(client, session_id):
    response = await client.post(f"/api/v1/sessions/{session_id}/undo")

    assert response.status_code == 409
    assert response.json()["details"]["operation"] == "undo"


@pytest.mark.asyncio
async def test_reset_after_chain(client, session_id, fake_client):
    fake_client.script(make_patch_on_white(), make_patch_on_white((64, 64)))
    await client.post(f"/api/v1/sessions/{session_id}/embroidery")
    await client.post(f"/api/v1/sessions/{session_id}/upscale")

    response = await client.post(f"/api/v1/sessions/{session_id}/reset")

    assert response.status_code == 200
    data = response.json()
    assert data["history_length"] == 1
    assert data["current_image"]["width"] == 1024
    assert data["can_reset"] is False


@pytest.mark.asyncio
async def test_download_current_image(client, session_id, fake_client):
    fake_client.script(make_patch_on_white())
    await client.post(f"/api/v1/sessions/{session_id}/embroidery")

    response = await client.get(f"/api/v1/sessions/{session_id}/download")

    assert response.status_code == 200
    assert response.headers["content-type"] == "image/png"
    assert re.search(r'filename="thread-genie-\d+\.png"', response.headers["content-disposition"])
    assert response.content.startswith(b"\x89PNG")


# =============================================================================
# Credentials and metrics
# =============================================================================

@pytest.mark.asyncio
async def test_credentials_lifecycle(client):
    response = await client.put("/api/v1/credentials", json={"api_key": "secret"})
    assert response.status_code == 200
    assert response.json() == {"has_credential": True}

    response = await client.get("/api/v1/credentials")
    assert response.json() == {"has_credential": True}
    assert "secret" not in response.text

    response = await client.delete("/api/v1/credentials")
    assert response.json() == {"has_credential": False}


@pytest.mark.asyncio
async def test_credentials_reject_blank_key(client):
    response = await client.put("/api/v1/credentials", json={"api_key": "   "})

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_metrics_endpoint(client, session_id):
    response = await client.get("/api/v1/metrics")

    assert response.status_code == 200
    assert "session_operations_total" in response.text
    assert "threadgenie_active_sessions" in response.text
