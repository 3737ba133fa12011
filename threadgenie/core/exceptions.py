"""
Global Exception Handling

Provides the exception taxonomy shared by the pixel engine, the generative
client and the edit session, structured error responses for the API, and a
circuit breaker for the external generative service.
"""

import traceback
from typing import Optional, Dict, Any
from datetime import datetime, timezone
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from threadgenie.core.logging import get_logger, session_id_var

logger = get_logger(__name__)


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


# =============================================================================
# Custom Exceptions
# =============================================================================

class ThreadGenieBaseException(Exception):
    """Base exception for Thread Genie."""

    def __init__(
        self,
        message: str,
        code: int = 500,
        session_id: Optional[str] = None,
        stage: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.session_id = session_id or session_id_var.get()
        self.stage = stage
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(ThreadGenieBaseException):
    """Raised when request input validation fails."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code=400, **kwargs)


class SessionNotFoundError(ThreadGenieBaseException):
    """Raised when an edit session id is unknown or has expired."""

    def __init__(self, session_id: str, **kwargs):
        super().__init__(f"Session not found: {session_id}", code=404, session_id=session_id, **kwargs)


class OperationRejectedError(ThreadGenieBaseException):
    """Raised when an edit session refuses an operation in its current state.

    Rejection happens before anything is mutated.
    """

    def __init__(self, message: str, operation: str, status: Optional[str] = None, **kwargs):
        super().__init__(message, code=409, stage=operation, **kwargs)
        self.details["operation"] = operation
        self.details["status"] = status


class ImageUploadError(ThreadGenieBaseException):
    """Raised when a new session cannot be seeded from an uploaded file."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code=422, **kwargs)


# -----------------------------------------------------------------------------
# Pixel Engine
# -----------------------------------------------------------------------------

class PixelEngineError(ThreadGenieBaseException):
    """Base for local pixel-data faults."""


class DecodeError(PixelEngineError):
    """Raised when bytes cannot be decoded as an image."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code=422, **kwargs)


class RenderError(PixelEngineError):
    """Raised when resampling or encoding a decoded image fails."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code=500, **kwargs)


# -----------------------------------------------------------------------------
# Generative Client
# -----------------------------------------------------------------------------

class GenerationFailed(ThreadGenieBaseException):
    """Raised when the generative model does not return a usable image."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("code", 502)
        super().__init__(message, **kwargs)


class NoCandidateError(GenerationFailed):
    """The model returned no candidates at all."""

    def __init__(self, message: str = "No candidates returned from the generative model", **kwargs):
        super().__init__(message, **kwargs)


class NoImageInResponseError(GenerationFailed):
    """The model answered, but without image data (text only)."""

    def __init__(
        self,
        message: str = "No image data found in response. The model may have returned text only.",
        **kwargs
    ):
        super().__init__(message, **kwargs)


class ExternalAPIError(GenerationFailed):
    """Raised when the generative API call itself fails (HTTP error, timeout)."""

    def __init__(self, message: str, service: str, http_status: Optional[int] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.details["service"] = service
        self.details["http_status"] = http_status


class CredentialUnavailable(ThreadGenieBaseException):
    """Raised when no API credential could be obtained. Non-fatal."""

    def __init__(self, message: str = "No API credential available", **kwargs):
        super().__init__(message, code=401, **kwargs)


# =============================================================================
# Circuit Breaker Implementation
# =============================================================================

class CircuitBreaker:
    """
    Circuit Breaker pattern for graceful failure handling.

    States:
    - CLOSED: Normal operation, requests pass through
    - OPEN: Too many failures, requests fail fast
    - HALF_OPEN: Testing if service is recovered
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: int = 60,
        half_open_max_calls: int = 3
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.half_open_max_calls = half_open_max_calls

        self._failure_count = 0
        self._last_failure_time: Optional[datetime] = None
        self._state = "CLOSED"
        self._half_open_calls = 0

    @property
    def state(self) -> str:
        """Get current circuit breaker state."""
        if self._state == "OPEN" and self._last_failure_time:
            elapsed = (datetime.now(timezone.utc) - self._last_failure_time).total_seconds()
            if elapsed >= self.recovery_timeout:
                self._state = "HALF_OPEN"
                self._half_open_calls = 0
        return self._state

    def can_execute(self) -> bool:
        """Check if request can proceed."""
        state = self.state

        if state == "CLOSED":
            return True
        elif state == "HALF_OPEN":
            return self._half_open_calls < self.half_open_max_calls
        return False

    def record_success(self):
        """Record a successful call."""
        if self._state == "HALF_OPEN":
            self._half_open_calls += 1
            if self._half_open_calls >= self.half_open_max_calls:
                self._state = "CLOSED"
                self._failure_count = 0
                logger.info("circuit_breaker_closed", circuit=self.name)
        elif self._state == "CLOSED":
            self._failure_count = 0

    def record_failure(self, error: Optional[Exception] = None):
        """Record a failed call."""
        self._failure_count += 1
        self._last_failure_time = datetime.now(timezone.utc)

        if self._state == "HALF_OPEN":
            self._state = "OPEN"
            logger.warning(
                "circuit_breaker_reopened",
                circuit=self.name,
                error=str(error) if error else None
            )
        elif self._failure_count >= self.failure_threshold:
            self._state = "OPEN"
            logger.warning(
                "circuit_breaker_opened",
                circuit=self.name,
                failure_count=self._failure_count,
                error=str(error) if error else None
            )

    def reset(self):
        """Reset the circuit breaker."""
        self._state = "CLOSED"
        self._failure_count = 0
        self._last_failure_time = None
        self._half_open_calls = 0


# Global circuit breakers for external services
circuit_breakers: Dict[str, CircuitBreaker] = {
    "gemini": CircuitBreaker("gemini", failure_threshold=3, recovery_timeout=120),
}


def get_circuit_breaker(name: str) -> CircuitBreaker:
    """Get or create a circuit breaker for a service."""
    if name not in circuit_breakers:
        circuit_breakers[name] = CircuitBreaker(name)
    return circuit_breakers[name]


# =============================================================================
# Exception Handlers
# =============================================================================

def register_exception_handlers(app: FastAPI):
    """Register custom exception handlers with FastAPI app."""

    @app.exception_handler(ThreadGenieBaseException)
    async def threadgenie_exception_handler(request: Request, exc: ThreadGenieBaseException):
        log = logger.warning if exc.code < 500 else logger.error
        log(
            "threadgenie_exception",
            error=exc.message,
            code=exc.code,
            stage=exc.stage,
            details=exc.details
        )

        return JSONResponse(
            status_code=exc.code,
            content={
                "error": exc.message,
                "session_id": exc.session_id,
                "code": exc.code,
                "stage": exc.stage,
                "details": exc.details,
                "timestamp": _utc_timestamp()
            }
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        logger.error(
            "unhandled_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=str(request.url.path),
            traceback=traceback.format_exc()
        )

        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal server error",
                "session_id": session_id_var.get(),
                "code": 500,
                "timestamp": _utc_timestamp()
            }
        )
