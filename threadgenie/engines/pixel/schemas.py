import base64
from dataclasses import dataclass
from typing import Tuple

import numpy as np
from PIL import Image

JPEG_MIME_TYPE = "image/jpeg"
PNG_MIME_TYPE = "image/png"
SUPPORTED_MIME_TYPES = (JPEG_MIME_TYPE, PNG_MIME_TYPE)

# Pillow format names and file extensions per mime type
PIL_FORMATS = {JPEG_MIME_TYPE: "JPEG", PNG_MIME_TYPE: "PNG"}
FILE_EXTENSIONS = {JPEG_MIME_TYPE: "jpg", PNG_MIME_TYPE: "png"}

RgbColor = Tuple[int, int, int]


@dataclass(frozen=True)
class EncodedImage:
    """An encoded image plus its mime type.

    This is the unit stored in an edit session's history and exchanged with
    the generative client. Instances are immutable and compare by value.
    """
    data: bytes
    mime_type: str = PNG_MIME_TYPE

    def __post_init__(self):
        if self.mime_type not in SUPPORTED_MIME_TYPES:
            raise ValueError(f"Unsupported mime type: {self.mime_type}")
        if not self.data:
            raise ValueError("Encoded image data is empty")

    def __repr__(self) -> str:
        return f"EncodedImage(mime_type={self.mime_type!r}, size_bytes={len(self.data)})"

    @property
    def size_bytes(self) -> int:
        return len(self.data)

    @property
    def extension(self) -> str:
        return FILE_EXTENSIONS[self.mime_type]

    def to_base64(self) -> str:
        return base64.b64encode(self.data).decode("utf-8")

    def to_data_url(self) -> str:
        return f"data:{self.mime_type};base64,{self.to_base64()}"


@dataclass
class ImageBuffer:
    """Decoded RGBA raster, shape (height, width, 4), dtype uint8.

    Owned by whichever pixel operation created it; operations mutate it in
    place and hand it on, never share it.
    """
    pixels: np.ndarray

    def __post_init__(self):
        if self.pixels.ndim != 3 or self.pixels.shape[2] != 4 or self.pixels.dtype != np.uint8:
            raise ValueError(
                f"ImageBuffer expects an (H, W, 4) uint8 array, got {self.pixels.shape} {self.pixels.dtype}"
            )

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    @property
    def size(self) -> Tuple[int, int]:
        return self.width, self.height

    @classmethod
    def from_image(cls, image: Image.Image) -> "ImageBuffer":
        if image.mode != "RGBA":
            image = image.convert("RGBA")
        return cls(pixels=np.array(image, dtype=np.uint8))

    def to_image(self) -> Image.Image:
        return Image.fromarray(self.pixels)
