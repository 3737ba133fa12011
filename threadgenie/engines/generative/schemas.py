from enum import Enum
from typing import Optional, Protocol, runtime_checkable

from threadgenie.core.config import settings
from threadgenie.engines.pixel.schemas import EncodedImage


class ModelTier(str, Enum):
    """Which generative model a call is routed to."""
    STANDARD = "standard"  # Fast image model for style transfer and edits
    PRO = "pro"            # High resolution model for upscaling

    @property
    def model_name(self) -> str:
        if self is ModelTier.PRO:
            return settings.GEMINI_PRO_MODEL
        return settings.GEMINI_STANDARD_MODEL


@runtime_checkable
class GenerativeClient(Protocol):
    """Accepts an image plus an instruction and returns a new image.

    Implementations raise GenerationFailed (or a subclass such as
    NoCandidateError / NoImageInResponseError) when no usable image comes back.
    """

    async def generate(
        self,
        image: EncodedImage,
        instruction: str,
        model_tier: ModelTier = ModelTier.STANDARD,
        image_size: Optional[str] = None,
    ) -> EncodedImage:
        ...
