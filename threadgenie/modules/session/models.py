"""
EditSession - Linear Edit History with Status-Gated Operations

Tracks one working image through a chain of generative transformations:
- Immutable original snapshot and a linear, append-only history
- A processing status that doubles as the single-operation gate
- Per-operation metadata and the last surfaced error
"""

import uuid
import asyncio
import traceback
from enum import Enum
from typing import Optional, Dict, Any, List, Tuple, Callable, Awaitable
from datetime import datetime, timezone

from threadgenie.core.config import settings
from threadgenie.core.exceptions import (
    CredentialUnavailable,
    OperationRejectedError,
    ThreadGenieBaseException,
)
from threadgenie.core.logging import get_logger, LogContext
from threadgenie.core.metrics import record_session_operation, track_operation_latency
from threadgenie.engines.generative.credentials import CredentialGate
from threadgenie.engines.generative.prompts import (
    EMBROIDERY_PROMPT,
    UPSCALE_PROMPT,
    build_edit_instruction,
)
from threadgenie.engines.generative.schemas import GenerativeClient, ModelTier
from threadgenie.engines.pixel import services as pixel
from threadgenie.engines.pixel.schemas import EncodedImage

logger = get_logger(__name__)


class ProcessingStatus(str, Enum):
    """Edit session status states."""
    IDLE = "idle"                                # Image loaded, nothing run yet
    UPLOADING = "uploading"                      # Normalizing a new source image
    PROCESSING = "processing"                    # Waiting on the generative model
    REMOVING_BACKGROUND = "removing_background"  # Chroma-keying a style result
    UPSCALING = "upscaling"                      # Waiting on the high resolution model
    COMPLETE = "complete"                        # Last operation succeeded
    ERROR = "error"                              # Last operation failed


class SessionOperation(str, Enum):
    """Operations a caller can trigger on a session."""
    BEGIN_SESSION = "begin_session"
    TRANSFORM_STYLE = "transform_style"
    TRANSFORM_WITH_PROMPT = "transform_with_prompt"
    UPSCALE = "upscale"
    UNDO = "undo"
    RESET = "reset"


# Statuses in which a new operation may start. ERROR counts as ready so a
# failed attempt can be retried from the last good history entry.
READY_STATUSES = frozenset({
    ProcessingStatus.IDLE,
    ProcessingStatus.COMPLETE,
    ProcessingStatus.ERROR,
})

IN_FLIGHT_STATUSES = frozenset(ProcessingStatus) - READY_STATUSES

# Undo and reset only walk a history whose last operation succeeded.
HISTORY_EDIT_STATUSES = frozenset({
    ProcessingStatus.IDLE,
    ProcessingStatus.COMPLETE,
})

STATUS_MESSAGES = {
    ProcessingStatus.UPLOADING: "Preparing image...",
    ProcessingStatus.PROCESSING: "Stitching your design with Gemini...",
    ProcessingStatus.REMOVING_BACKGROUND: "Removing background...",
    ProcessingStatus.UPSCALING: "Upscaling to 4K with Gemini Pro...",
}

ERROR_MESSAGES = {
    SessionOperation.BEGIN_SESSION: "Failed to process image. Please try another file.",
    SessionOperation.TRANSFORM_STYLE: "Something went wrong during the transformation. Please try again.",
    SessionOperation.TRANSFORM_WITH_PROMPT: "Failed to edit image. The prompt might be against safety policies.",
    SessionOperation.UPSCALE: "Failed to upscale image. Ensure you have a valid API key selected for the Pro model.",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EditSession:
    """
    One working image and its edit history.

    Invariants:
    - Once seeded, history is never empty and current_image is history[-1]
    - original_image is the post-normalization upload and never changes
      until a new source image replaces the whole chain
    - At most one operation runs at a time; the status is claimed before the
      first suspension point, so the gate needs no lock on a single event loop
    - A failed operation leaves history exactly as it was

    Gate violations raise OperationRejectedError without touching any state.
    Failures inside an operation are never raised: they set status to ERROR,
    record a human-readable message and make the operation return False.
    """

    def __init__(
        self,
        generative_client: GenerativeClient,
        credential_gate: Optional[CredentialGate] = None,
        session_id: Optional[str] = None,
        max_dimension: Optional[int] = None,
        chroma_key_color: Optional[Tuple[int, int, int]] = None,
        chroma_key_tolerance: Optional[float] = None,
        style_prompt: str = EMBROIDERY_PROMPT,
    ):
        self.id = session_id or str(uuid.uuid4())
        self.generative_client = generative_client
        self.credential_gate = credential_gate

        self.max_dimension = max_dimension or settings.MAX_DIMENSION
        self.chroma_key_color = tuple(chroma_key_color or settings.CHROMA_KEY_COLOR)
        self.chroma_key_tolerance = (
            settings.CHROMA_KEY_TOLERANCE if chroma_key_tolerance is None else chroma_key_tolerance
        )
        self.style_prompt = style_prompt

        self.status = ProcessingStatus.IDLE
        self.original_image: Optional[EncodedImage] = None
        self._history: List[EncodedImage] = []
        self.pending_prompt = ""

        # Error Tracking
        self.error_message: Optional[str] = None
        self.error_detail: Optional[str] = None
        self.error_operation: Optional[str] = None

        # Structure: {operation: {status, duration_ms, started_at, completed_at, error}}
        self.operations_metadata: Dict[str, Dict[str, Any]] = {}

        self.created_at = _utcnow()
        self.updated_at = self.created_at

    def __repr__(self) -> str:
        return f"EditSession(id={self.id!r}, status={self.status.value!r}, history={len(self._history)})"

    # =========================================================================
    # Read-only views
    # =========================================================================

    @property
    def history(self) -> Tuple[EncodedImage, ...]:
        return tuple(self._history)

    @property
    def current_image(self) -> Optional[EncodedImage]:
        return self._history[-1] if self._history else None

    @property
    def is_busy(self) -> bool:
        return self.status in IN_FLIGHT_STATUSES

    @property
    def is_ready(self) -> bool:
        return self.status in READY_STATUSES

    @property
    def can_undo(self) -> bool:
        return len(self._history) > 1 and self.status in HISTORY_EDIT_STATUSES

    @property
    def can_reset(self) -> bool:
        return len(self._history) > 1 and self.status in HISTORY_EDIT_STATUSES

    @property
    def status_message(self) -> Optional[str]:
        if self.status is ProcessingStatus.ERROR:
            return self.error_message
        return STATUS_MESSAGES.get(self.status)

    # =========================================================================
    # Gate
    # =========================================================================

    def _reject(self, operation: SessionOperation, reason: str):
        record_session_operation(operation.value, "rejected")
        logger.warning(
            "session_operation_rejected",
            session_id=self.id,
            operation=operation.value,
            status=self.status.value,
            reason=reason
        )
        raise OperationRejectedError(
            reason,
            operation=operation.value,
            status=self.status.value,
            session_id=self.id
        )

    def _check_ready(self, operation: SessionOperation, require_image: bool = True):
        if not self.is_ready:
            self._reject(operation, f"Cannot {operation.value} while session is {self.status.value}")
        if require_image and not self._history:
            self._reject(operation, f"Cannot {operation.value} before an image is uploaded")

    def _check_history_editable(self, operation: SessionOperation):
        if self.status not in HISTORY_EDIT_STATUSES:
            self._reject(operation, f"Cannot {operation.value} while session is {self.status.value}")
        if len(self._history) <= 1:
            self._reject(operation, f"Nothing to {operation.value}")

    # =========================================================================
    # State transitions
    # =========================================================================

    def _set_status(self, status: ProcessingStatus):
        self.status = status
        self.updated_at = _utcnow()

    def _update_operation(
        self,
        operation: SessionOperation,
        status: str,
        duration_ms: Optional[int] = None,
        error: Optional[str] = None
    ):
        """Update a specific operation's bookkeeping."""
        data = dict(self.operations_metadata.get(operation.value, {}))
        data["status"] = status

        if status == "in_progress":
            data["started_at"] = _utcnow().isoformat()
            data.pop("error", None)
        else:
            data["completed_at"] = _utcnow().isoformat()

        if duration_ms is not None:
            data["duration_ms"] = duration_ms
        if error:
            data["error"] = error

        self.operations_metadata[operation.value] = data

    def _claim(self, operation: SessionOperation, status: ProcessingStatus):
        """Enter an in-flight status. Must run before the operation's first await."""
        self._set_status(status)
        self.error_message = None
        self.error_detail = None
        self.error_operation = None
        self._update_operation(operation, "in_progress")
        logger.info("session_operation_started", session_id=self.id, operation=operation.value)

    def _succeed(self, operation: SessionOperation, status: ProcessingStatus, started: datetime):
        duration_ms = int((_utcnow() - started).total_seconds() * 1000)
        self._set_status(status)
        self._update_operation(operation, "completed", duration_ms=duration_ms)
        record_session_operation(operation.value, "success")
        logger.info(
            "session_operation_completed",
            session_id=self.id,
            operation=operation.value,
            duration_ms=duration_ms,
            history_length=len(self._history)
        )

    def _fail(self, operation: SessionOperation, error: BaseException, started: datetime):
        duration_ms = int((_utcnow() - started).total_seconds() * 1000)
        if isinstance(error, ThreadGenieBaseException):
            detail = error.message
        else:
            detail = str(error) or type(error).__name__

        self.error_message = ERROR_MESSAGES[operation]
        self.error_detail = detail
        self.error_operation = operation.value
        self._set_status(ProcessingStatus.ERROR)
        self._update_operation(operation, "failed", duration_ms=duration_ms, error=detail)
        record_session_operation(operation.value, "failed")

        log_fields = dict(
            session_id=self.id,
            operation=operation.value,
            duration_ms=duration_ms,
            error=detail,
            error_type=type(error).__name__
        )
        if not isinstance(error, ThreadGenieBaseException):
            log_fields["traceback"] = "".join(traceback.format_exception(error))
        logger.error("session_operation_failed", **log_fields)

    async def _run(
        self,
        operation: SessionOperation,
        status: ProcessingStatus,
        steps: Callable[[], Awaitable[None]],
        success_status: ProcessingStatus = ProcessingStatus.COMPLETE
    ) -> bool:
        """
        Claim the gate, run the steps, and convert any failure into ERROR.

        Cancellation also releases the gate into ERROR, then propagates.
        """
        self._claim(operation, status)
        started = _utcnow()

        with LogContext(session_id=self.id, stage=operation.value):
            try:
                with track_operation_latency(operation.value):
                    await steps()
            except asyncio.CancelledError as e:
                self._fail(operation, e, started)
                raise
            except Exception as e:
                self._fail(operation, e, started)
                return False

        self._succeed(operation, success_status, started)
        return True

    # =========================================================================
    # Top-level operations
    # =========================================================================

    async def begin_session(self, data: bytes) -> bool:
        """
        Normalize an uploaded file and seed a fresh history with it.

        Replaces any previous image chain and starts its bookkeeping afresh:
        created_at and the per-operation metadata describe the new image only.
        On failure the previous chain (if any) is kept and status becomes ERROR.
        """
        self._check_ready(SessionOperation.BEGIN_SESSION, require_image=False)

        async def steps():
            normalized = await asyncio.to_thread(pixel.normalize, data, self.max_dimension)
            self.original_image = normalized
            self._history = [normalized]
            self.pending_prompt = ""

            begin = SessionOperation.BEGIN_SESSION.value
            self.operations_metadata = {begin: self.operations_metadata[begin]}
            self.created_at = _utcnow()

        return await self._run(
            SessionOperation.BEGIN_SESSION,
            ProcessingStatus.UPLOADING,
            steps,
            success_status=ProcessingStatus.IDLE
        )

    async def transform_style(self) -> bool:
        """
        Restyle the current image, then chroma-key its background away.

        Both steps must succeed before anything is appended to history.
        """
        self._check_ready(SessionOperation.TRANSFORM_STYLE)
        source = self.current_image

        async def steps():
            generated = await self.generative_client.generate(
                source, self.style_prompt, model_tier=ModelTier.STANDARD
            )
            self._set_status(ProcessingStatus.REMOVING_BACKGROUND)
            transparent = await asyncio.to_thread(
                pixel.extract_transparency,
                generated,
                self.chroma_key_color,
                self.chroma_key_tolerance
            )
            self._history.append(transparent)

        return await self._run(SessionOperation.TRANSFORM_STYLE, ProcessingStatus.PROCESSING, steps)

    async def transform_with_prompt(self, text: Optional[str] = None) -> bool:
        """
        Edit the current image with a free-text instruction.

        Uses the pending prompt when no text is passed. The prompt is cleared
        on success and kept on failure so it can be retried.
        """
        prompt = self.pending_prompt if text is None else text
        if not prompt or not prompt.strip():
            self._reject(SessionOperation.TRANSFORM_WITH_PROMPT, "Edit prompt must not be empty")
        self._check_ready(SessionOperation.TRANSFORM_WITH_PROMPT)

        source = self.current_image
        self.pending_prompt = prompt

        async def steps():
            edited = await self.generative_client.generate(
                source, build_edit_instruction(prompt), model_tier=ModelTier.STANDARD
            )
            self._history.append(edited)
            self.pending_prompt = ""

        return await self._run(SessionOperation.TRANSFORM_WITH_PROMPT, ProcessingStatus.PROCESSING, steps)

    async def upscale(self) -> bool:
        """
        Re-render the current image at the highest resolution the pro model offers.

        The credential gate is consulted first; when it cannot supply a key the
        call goes ahead anyway and fails downstream if truly unauthorized.
        No background removal is re-run on the upscaled result.
        """
        self._check_ready(SessionOperation.UPSCALE)
        source = self.current_image

        async def steps():
            await self._ensure_credential()
            upscaled = await self.generative_client.generate(
                source,
                UPSCALE_PROMPT,
                model_tier=ModelTier.PRO,
                image_size=settings.UPSCALE_IMAGE_SIZE
            )
            self._history.append(upscaled)

        return await self._run(SessionOperation.UPSCALE, ProcessingStatus.UPSCALING, steps)

    async def _ensure_credential(self):
        if self.credential_gate is None or self.credential_gate.has_credential():
            return
        try:
            await self.credential_gate.request_credential()
        except CredentialUnavailable as e:
            logger.warning("credential_unavailable", session_id=self.id, error=e.message)

    # =========================================================================
    # Local history operations
    # =========================================================================

    def undo(self) -> EncodedImage:
        """Drop the newest history entry and return the new current image."""
        self._check_history_editable(SessionOperation.UNDO)

        self._history.pop()
        self.updated_at = _utcnow()
        record_session_operation(SessionOperation.UNDO.value, "success")
        logger.info("session_undo", session_id=self.id, history_length=len(self._history))
        return self._history[-1]

    def reset(self) -> EncodedImage:
        """Discard every transformation, back to the pristine normalized upload."""
        self._check_history_editable(SessionOperation.RESET)

        self._history = [self.original_image]
        self.updated_at = _utcnow()
        record_session_operation(SessionOperation.RESET.value, "success")
        logger.info("session_reset", session_id=self.id)
        return self.original_image

    def set_prompt(self, text: str):
        self.pending_prompt = text
        self.updated_at = _utcnow()

    def dismiss_error(self):
        """Clear the surfaced error message. The status is left as it is."""
        self.error_message = None
        self.error_detail = None
        self.updated_at = _utcnow()

    # =========================================================================
    # Serialization
    # =========================================================================

    def describe_current_image(self) -> Optional[Dict[str, Any]]:
        image = self.current_image
        if image is None:
            return None
        width, height = pixel.image_dimensions(image)
        return {
            "mime_type": image.mime_type,
            "size_bytes": image.size_bytes,
            "width": width,
            "height": height,
        }

    def to_response_dict(self, include_image: bool = False) -> Dict[str, Any]:
        """Convert to API response format."""
        current = self.describe_current_image()
        if current is not None and include_image:
            current["data_url"] = self.current_image.to_data_url()

        return {
            "id": self.id,
            "status": self.status.value,
            "status_message": self.status_message,
            "history_length": len(self._history),
            "can_undo": self.can_undo,
            "can_reset": self.can_reset,
            "current_image": current,
            "pending_prompt": self.pending_prompt,
            "error": {
                "message": self.error_message,
                "operation": self.error_operation,
                "detail": self.error_detail
            } if self.error_message else None,
            "operations": self.operations_metadata,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat()
        }
