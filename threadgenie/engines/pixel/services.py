"""
Pixel Engine

Stateless, synchronous image operations used by the edit session:

1. normalize - decode an upload, fit it inside MAX_DIMENSION, re-encode as JPEG
2. extract_transparency - chroma-key a background colour to alpha 0, re-encode as PNG

Every call decodes into its own ImageBuffer, so calls never alias each other
and can safely run in worker threads.
"""

import io
import math
from typing import Optional, Sequence, Tuple

import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from threadgenie.core.config import settings
from threadgenie.core.exceptions import DecodeError, RenderError
from threadgenie.core.logging import get_logger, with_logging
from threadgenie.core.metrics import track_latency
from threadgenie.engines.pixel.schemas import (
    EncodedImage,
    ImageBuffer,
    RgbColor,
    JPEG_MIME_TYPE,
    PNG_MIME_TYPE,
    PIL_FORMATS,
    SUPPORTED_MIME_TYPES,
)

logger = get_logger(__name__)

# Distance between black and white in 8-bit RGB space
MAX_RGB_DISTANCE = math.sqrt(3 * 255 ** 2)

# Transparent areas become black when an image is flattened for JPEG
FLATTEN_BACKGROUND: RgbColor = (0, 0, 0)


# =============================================================================
# Decode / Encode
# =============================================================================

def open_image(data: bytes) -> Image.Image:
    """Decode raw bytes into a fully loaded PIL image."""
    if not data:
        raise DecodeError("Image data is empty")

    try:
        image = Image.open(io.BytesIO(data))
        image.load()
    except Image.DecompressionBombError as e:
        raise DecodeError(f"Image is too large to decode: {e}") from e
    except (UnidentifiedImageError, OSError, SyntaxError, ValueError) as e:
        raise DecodeError(f"Could not decode image: {e}") from e

    return image


def decode(image: EncodedImage) -> ImageBuffer:
    """Decode an EncodedImage into a fresh RGBA buffer."""
    return ImageBuffer.from_image(open_image(image.data))


def flatten(image: Image.Image, background: RgbColor = FLATTEN_BACKGROUND) -> Image.Image:
    """Drop the alpha channel by compositing onto a solid background."""
    if image.mode in ("RGBA", "LA") or (image.mode == "P" and "transparency" in image.info):
        rgba = image.convert("RGBA")
        canvas = Image.new("RGB", rgba.size, background)
        canvas.paste(rgba, mask=rgba.getchannel("A"))
        return canvas
    return image.convert("RGB")


def save_image(image: Image.Image, mime_type: str, quality: Optional[int] = None) -> EncodedImage:
    """Encode a PIL image. JPEG output is flattened first since it carries no alpha."""
    if mime_type not in SUPPORTED_MIME_TYPES:
        raise ValueError(f"Unsupported mime type: {mime_type}")

    options = {}
    output = io.BytesIO()
    try:
        if mime_type == JPEG_MIME_TYPE:
            image = flatten(image)
            options["quality"] = settings.JPEG_QUALITY if quality is None else quality
        image.save(output, format=PIL_FORMATS[mime_type], **options)
    except (OSError, ValueError, MemoryError) as e:
        raise RenderError(f"Could not encode image as {mime_type}: {e}") from e

    return EncodedImage(data=output.getvalue(), mime_type=mime_type)


def encode(buffer: ImageBuffer, mime_type: str = PNG_MIME_TYPE, quality: Optional[int] = None) -> EncodedImage:
    """Encode an ImageBuffer."""
    return save_image(buffer.to_image(), mime_type, quality)


def as_encoded_image(data: bytes, mime_type: Optional[str] = None) -> EncodedImage:
    """
    Wrap bytes returned by a collaborator as an EncodedImage.

    The bytes must decode. The mime type follows the decoded format rather
    than the declared one; formats other than JPEG and PNG are re-encoded as PNG.
    """
    image = open_image(data)
    detected = Image.MIME.get(image.format or "")

    if detected in SUPPORTED_MIME_TYPES:
        if mime_type and mime_type != detected:
            logger.warning("image_mime_type_mismatch", declared=mime_type, detected=detected)
        return EncodedImage(data=data, mime_type=detected)

    logger.info("image_transcoded", source_format=image.format, target_mime_type=PNG_MIME_TYPE)
    return save_image(image, PNG_MIME_TYPE)


def image_dimensions(image: EncodedImage) -> Tuple[int, int]:
    """Read (width, height) from the image header without decoding pixels."""
    try:
        with Image.open(io.BytesIO(image.data)) as opened:
            return opened.size
    except (UnidentifiedImageError, OSError) as e:
        raise DecodeError(f"Could not read image header: {e}") from e


# =============================================================================
# Operation 1: Normalize (aspect-preserving downscale + JPEG re-encode)
# =============================================================================

def fit_within(width: int, height: int, max_dimension: int) -> Tuple[int, int]:
    """
    Scale (width, height) so the longer side is at most max_dimension.

    The longer side lands exactly on max_dimension; the shorter side is
    truncated, never rounded up, so the bound always holds. Images already
    within the bound keep their size.
    """
    if max_dimension <= 0:
        raise ValueError(f"max_dimension must be positive, got {max_dimension}")

    if width > height:
        if width > max_dimension:
            return max_dimension, max(1, int(height * max_dimension / width))
    elif height > max_dimension:
        return max(1, int(width * max_dimension / height)), max_dimension

    return width, height


@with_logging("normalize")
@track_latency("normalize")
def normalize(
    data: bytes,
    max_dimension: Optional[int] = None,
    quality: Optional[int] = None
) -> EncodedImage:
    """
    Decode an uploaded file, downscale it to fit max_dimension and re-encode as JPEG.

    Args:
        data: Raw file bytes (any format Pillow can decode)
        max_dimension: Bound on the longer side (default settings.MAX_DIMENSION)
        quality: JPEG quality (default settings.JPEG_QUALITY)

    Returns:
        EncodedImage with mime type image/jpeg

    Raises:
        DecodeError: The bytes are not a decodable image
        RenderError: Resampling or encoding failed
    """
    max_dimension = settings.MAX_DIMENSION if max_dimension is None else max_dimension
    quality = settings.JPEG_QUALITY if quality is None else quality

    image = open_image(data)
    original_size = image.size

    try:
        image = ImageOps.exif_transpose(image)
    except (OSError, ValueError, SyntaxError) as e:
        logger.warning("exif_orientation_ignored", error=str(e))

    target_size = fit_within(image.width, image.height, max_dimension)

    try:
        rgb = flatten(image)
        if rgb.size != target_size:
            rgb = rgb.resize(target_size, Image.Resampling.LANCZOS)
    except (OSError, ValueError, MemoryError) as e:
        raise RenderError(f"Could not resample image: {e}") from e

    encoded = save_image(rgb, JPEG_MIME_TYPE, quality)

    logger.info(
        "image_normalized",
        original_dimensions=original_size,
        output_dimensions=target_size,
        input_size=len(data),
        output_size=encoded.size_bytes
    )

    return encoded


# =============================================================================
# Operation 2: Extract Transparency (chroma key)
# =============================================================================

def validate_color(color: Sequence[int]) -> RgbColor:
    """Check an RGB triple and return it as a tuple of ints."""
    values = tuple(int(c) for c in color)
    if len(values) != 3 or any(c < 0 or c > 255 for c in values):
        raise ValueError(f"Target color must be three values in 0..255, got {tuple(color)}")
    return values


def color_distance(pixels: np.ndarray, target_color: RgbColor) -> np.ndarray:
    """Euclidean distance in raw 8-bit RGB space (no gamma) for every pixel."""
    rgb = pixels[..., :3].astype(np.float64)
    target = np.asarray(target_color, dtype=np.float64)
    return np.sqrt(((rgb - target) ** 2).sum(axis=-1))


def apply_chroma_key(buffer: ImageBuffer, target_color: RgbColor, tolerance: float) -> int:
    """
    Set alpha to 0 for every pixel closer than tolerance to target_color.

    Mutates the buffer in place; RGB channels are never touched. Returns the
    number of pixels that matched.
    """
    mask = color_distance(buffer.pixels, target_color) < tolerance
    buffer.pixels[mask, 3] = 0
    return int(mask.sum())


@with_logging("extract_transparency")
@track_latency("extract_transparency")
def extract_transparency(
    image: EncodedImage,
    target_color: Optional[Sequence[int]] = None,
    tolerance: Optional[float] = None
) -> EncodedImage:
    """
    Make pixels near target_color fully transparent and re-encode as PNG.

    Args:
        image: Source image (JPEG or PNG)
        target_color: Background RGB (default settings.CHROMA_KEY_COLOR, white)
        tolerance: Absolute Euclidean distance threshold, 0 to MAX_RGB_DISTANCE
            (default settings.CHROMA_KEY_TOLERANCE)

    Returns:
        EncodedImage with mime type image/png and the same dimensions

    Raises:
        DecodeError: The image cannot be decoded
        RenderError: The PNG cannot be encoded
    """
    target = validate_color(settings.CHROMA_KEY_COLOR if target_color is None else target_color)
    tolerance = settings.CHROMA_KEY_TOLERANCE if tolerance is None else float(tolerance)
    if tolerance < 0:
        raise ValueError(f"tolerance must be non-negative, got {tolerance}")

    buffer = decode(image)
    cleared = apply_chroma_key(buffer, target, tolerance)
    encoded = encode(buffer, PNG_MIME_TYPE)

    logger.info(
        "transparency_extracted",
        dimensions=buffer.size,
        target_color=target,
        tolerance=tolerance,
        cleared_pixels=cleared,
        total_pixels=buffer.width * buffer.height
    )

    return encoded
