"""
FastAPI Dependencies

The registry, credential gate and generative client are created once in the
application lifespan and kept on app.state; these accessors hand them to
route handlers and can be swapped with app.dependency_overrides in tests.
"""

from typing import Callable

from fastapi import Depends, Request

from threadgenie.core.config import settings
from threadgenie.engines.generative.credentials import ApiKeyGate
from threadgenie.engines.generative.schemas import GenerativeClient
from threadgenie.engines.generative.services import GeminiClient, SimulatedGenerativeClient
from threadgenie.modules.session.models import EditSession
from threadgenie.modules.session.registry import SessionRegistry

SessionFactory = Callable[[], EditSession]


# =============================================================================
# Construction (called from the lifespan)
# =============================================================================

def build_credential_gate() -> ApiKeyGate:
    return ApiKeyGate(
        api_key=settings.GEMINI_API_KEY,
        wait_timeout=settings.CREDENTIAL_REQUEST_TIMEOUT_SECONDS
    )


def build_generative_client(credentials: ApiKeyGate) -> GenerativeClient:
    """Simulated client when SIMULATE_GENERATION is set, Gemini otherwise."""
    if settings.SIMULATE_GENERATION:
        return SimulatedGenerativeClient()
    return GeminiClient(credentials)


# =============================================================================
# Request-scoped accessors
# =============================================================================

def get_session_registry(request: Request) -> SessionRegistry:
    return request.app.state.sessions


def get_credential_gate(request: Request) -> ApiKeyGate:
    return request.app.state.credentials


def get_generative_client(request: Request) -> GenerativeClient:
    return request.app.state.generative_client


def get_session_factory(
    client: GenerativeClient = Depends(get_generative_client),
    credentials: ApiKeyGate = Depends(get_credential_gate),
) -> SessionFactory:
    """Returns a callable building new sessions wired to the shared collaborators."""
    def factory() -> EditSession:
        return EditSession(client, credentials)
    return factory
