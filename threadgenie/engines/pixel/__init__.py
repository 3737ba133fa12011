"""
Pixel Engine

Deterministic client-side pixel operations:
1. normalize - aspect-preserving downscale and JPEG re-encode
2. extract_transparency - chroma-key background removal to PNG
"""

from threadgenie.engines.pixel.schemas import (
    EncodedImage,
    ImageBuffer,
    JPEG_MIME_TYPE,
    PNG_MIME_TYPE,
    SUPPORTED_MIME_TYPES,
)
from threadgenie.engines.pixel.services import (
    MAX_RGB_DISTANCE,
    as_encoded_image,
    decode,
    encode,
    extract_transparency,
    fit_within,
    image_dimensions,
    normalize,
)

__all__ = [
    "EncodedImage",
    "ImageBuffer",
    "JPEG_MIME_TYPE",
    "PNG_MIME_TYPE",
    "SUPPORTED_MIME_TYPES",
    "MAX_RGB_DISTANCE",
    "as_encoded_image",
    "decode",
    "encode",
    "extract_transparency",
    "fit_within",
    "image_dimensions",
    "normalize",
]
