"""
Edit Session Endpoints

POST   /api/v1/sessions                  - Upload an image, start a session
GET    /api/v1/sessions/{id}             - Session snapshot
POST   /api/v1/sessions/{id}/image       - Replace the source image
PUT    /api/v1/sessions/{id}/prompt      - Set the pending edit prompt
POST   /api/v1/sessions/{id}/embroidery  - Embroidery style + background removal
POST   /api/v1/sessions/{id}/edit        - Free-text edit
POST   /api/v1/sessions/{id}/upscale     - 4K upscale
POST   /api/v1/sessions/{id}/undo        - Drop the last transformation
POST   /api/v1/sessions/{id}/reset       - Back to the original upload
DELETE /api/v1/sessions/{id}/error       - Dismiss the error message
GET    /api/v1/sessions/{id}/download    - Current image as an attachment
DELETE /api/v1/sessions/{id}             - Discard the session

Operations that fail inside the session still answer 200: the snapshot
carries status "error" and the message to show.
"""

import time
from typing import Optional, Dict, Any

from fastapi import APIRouter, Depends, File, Query, Response, UploadFile
from pydantic import BaseModel, Field

from threadgenie.core.config import settings
from threadgenie.core.exceptions import ImageUploadError, ValidationError
from threadgenie.core.logging import get_logger, LogContext
from threadgenie.api.dependencies import SessionFactory, get_session_factory, get_session_registry
from threadgenie.modules.session.registry import SessionRegistry

logger = get_logger(__name__)
router = APIRouter()

DOWNLOAD_FILENAME_PREFIX = "thread-genie"


# =============================================================================
# Request/Response Schemas
# =============================================================================

class ImageDescriptor(BaseModel):
    mime_type: str
    size_bytes: int
    width: int
    height: int
    data_url: Optional[str] = None


class SessionError(BaseModel):
    message: str
    operation: Optional[str] = None
    detail: Optional[str] = None


class SessionResponse(BaseModel):
    """Snapshot of an edit session."""
    id: str
    status: str
    status_message: Optional[str] = None
    history_length: int
    can_undo: bool
    can_reset: bool
    current_image: Optional[ImageDescriptor] = None
    pending_prompt: str = ""
    error: Optional[SessionError] = None
    operations: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    created_at: str
    updated_at: str


class PromptRequest(BaseModel):
    prompt: str = Field("", max_length=settings.MAX_PROMPT_LENGTH)


class EditRequest(BaseModel):
    """Edit instruction. Falls back to the session's pending prompt when omitted."""
    prompt: Optional[str] = Field(None, max_length=settings.MAX_PROMPT_LENGTH)


# =============================================================================
# Helpers
# =============================================================================

async def read_upload(file: UploadFile) -> bytes:
    """Read an uploaded image, enforcing content type and MAX_UPLOAD_BYTES."""
    content_type = file.content_type or ""
    if not content_type.startswith("image/"):
        raise ValidationError(
            "Uploaded file must be an image",
            details={"content_type": content_type or None, "filename": file.filename}
        )

    data = await file.read(settings.MAX_UPLOAD_BYTES + 1)
    if len(data) > settings.MAX_UPLOAD_BYTES:
        raise ValidationError(
            f"Image exceeds maximum upload size of {settings.MAX_UPLOAD_BYTES} bytes",
            details={"max_upload_bytes": settings.MAX_UPLOAD_BYTES}
        )
    if not data:
        raise ValidationError("Uploaded file is empty", details={"filename": file.filename})

    return data


def snapshot(session, include_image: bool = False) -> SessionResponse:
    return SessionResponse(**session.to_response_dict(include_image=include_image))


def download_filename(extension: str) -> str:
    return f"{DOWNLOAD_FILENAME_PREFIX}-{int(time.time() * 1000)}.{extension}"


# =============================================================================
# Session lifecycle
# =============================================================================

@router.post("", response_model=SessionResponse, status_code=201)
async def create_session(
    file: UploadFile = File(..., description="Source photo (any image format)"),
    registry: SessionRegistry = Depends(get_session_registry),
    new_session: SessionFactory = Depends(get_session_factory),
):
    """
    Start an edit session from an uploaded photo.

    The photo is normalized (longest side at most MAX_DIMENSION, JPEG). If that
    fails no session is created and 422 is returned.
    """
    data = await read_upload(file)
    session = new_session()

    with LogContext(session_id=session.id, stage="create"):
        logger.info(
            "session_upload_received",
            filename=file.filename,
            content_type=file.content_type,
            size_bytes=len(data)
        )

        if not await session.begin_session(data):
            raise ImageUploadError(
                session.error_message,
                session_id=session.id,
                stage="begin_session",
                details={"detail": session.error_detail}
            )

        registry.add(session)
        return snapshot(session)


@router.get("/{session_id}", response_model=SessionResponse)
async def get_session(
    session_id: str,
    include_image: bool = Query(False, description="Embed the current image as a data URL"),
    registry: SessionRegistry = Depends(get_session_registry),
):
    return snapshot(registry.get(session_id), include_image=include_image)


@router.delete("/{session_id}", status_code=204)
async def delete_session(
    session_id: str,
    registry: SessionRegistry = Depends(get_session_registry),
):
    registry.remove(session_id)
    return Response(status_code=204)


@router.post("/{session_id}/image", response_model=SessionResponse)
async def replace_image(
    session_id: str,
    file: UploadFile = File(...),
    registry: SessionRegistry = Depends(get_session_registry),
):
    """
    Replace the source image, starting a fresh chain on the same session id.

    A failed upload keeps the previous chain and its bookkeeping.
    """
    session = registry.get(session_id)
    data = await read_upload(file)

    with LogContext(session_id=session.id, stage="replace_image"):
        await session.begin_session(data)
        return snapshot(session)


# =============================================================================
# Generative operations
# =============================================================================

@router.put("/{session_id}/prompt", response_model=SessionResponse)
async def set_prompt(
    session_id: str,
    request: PromptRequest,
    registry: SessionRegistry = Depends(get_session_registry),
):
    session = registry.get(session_id)
    session.set_prompt(request.prompt)
    return snapshot(session)


@router.post("/{session_id}/embroidery", response_model=SessionResponse)
async def embroider(
    session_id: str,
    registry: SessionRegistry = Depends(get_session_registry),
):
    """Render the current image as an embroidered patch on a transparent background."""
    session = registry.get(session_id)
    await session.transform_style()
    return snapshot(session)


@router.post("/{session_id}/edit", response_model=SessionResponse)
async def edit(
    session_id: str,
    request: Optional[EditRequest] = None,
    registry: SessionRegistry = Depends(get_session_registry),
):
    session = registry.get(session_id)
    prompt = request.prompt if request else None
    await session.transform_with_prompt(prompt)
    return snapshot(session)


@router.post("/{session_id}/upscale", response_model=SessionResponse)
async def upscale(
    session_id: str,
    registry: SessionRegistry = Depends(get_session_registry),
):
    session = registry.get(session_id)
    await session.upscale()
    return snapshot(session)


# =============================================================================
# History and error state
# =============================================================================

@router.post("/{session_id}/undo", response_model=SessionResponse)
async def undo(
    session_id: str,
    registry: SessionRegistry = Depends(get_session_registry),
):
    session = registry.get(session_id)
    session.undo()
    return snapshot(session)


@router.post("/{session_id}/reset", response_model=SessionResponse)
async def reset(
    session_id: str,
    registry: SessionRegistry = Depends(get_session_registry),
):
    session = registry.get(session_id)
    session.reset()
    return snapshot(session)


@router.delete("/{session_id}/error", response_model=SessionResponse)
async def dismiss_error(
    session_id: str,
    registry: SessionRegistry = Depends(get_session_registry),
):
    session = registry.get(session_id)
    session.dismiss_error()
    return snapshot(session)


@router.get("/{session_id}/download")
async def download(
    session_id: str,
    registry: SessionRegistry = Depends(get_session_registry),
):
    """Current image bytes as a file attachment."""
    session = registry.get(session_id)
    image = session.current_image
    filename = download_filename(image.extension)

    logger.info("session_download", session_id=session.id, filename=filename, size_bytes=image.size_bytes)

    return Response(
        content=image.data,
        media_type=image.mime_type,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'}
    )
