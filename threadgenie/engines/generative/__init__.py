"""
Generative Client

The external image model behind the edit session: style transfer, prompt
edits and upscaling. Failures surface as GenerationFailed subclasses.
"""

from threadgenie.engines.generative.schemas import GenerativeClient, ModelTier
from threadgenie.engines.generative.credentials import ApiKeyGate, CredentialGate
from threadgenie.engines.generative.services import GeminiClient, SimulatedGenerativeClient

__all__ = [
    "GenerativeClient",
    "ModelTier",
    "ApiKeyGate",
    "CredentialGate",
    "GeminiClient",
    "SimulatedGenerativeClient",
]
