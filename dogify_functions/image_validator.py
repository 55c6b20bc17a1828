import io
import logging
from enum import Enum
from typing import Optional, Tuple

from PIL import Image, UnidentifiedImageError

from .config import DEFAULT_MAX_IMAGE_BYTES
from .errors import EmptyPayload, InvalidImageHeader, TooLarge

logger = logging.getLogger(__name__)

JPEG_SIGNATURE = b'\xff\xd8'
PNG_SIGNATURE = b'\x89PNG'


class MimeType(str, Enum):
    JPEG = 'image/jpeg'
    PNG = 'image/png'

    @property
    def extension(self) -> str:
        return '.png' if self is MimeType.PNG else '.jpg'

    @property
    def format_name(self) -> str:
        return 'png' if self is MimeType.PNG else 'jpeg'


def sniff_mime_type(data: bytes) -> Optional[MimeType]:
    """Identify the image kind from its leading magic bytes"""
    if data.startswith(JPEG_SIGNATURE):
        return MimeType.JPEG
    if data.startswith(PNG_SIGNATURE):
        return MimeType.PNG
    return None


class ImageValidator:
    """Size ceiling and magic-byte checks applied before persisting or serving"""

    def __init__(self, max_bytes: int = DEFAULT_MAX_IMAGE_BYTES):
        self.max_bytes = max_bytes

    def check_size(self, size: Optional[int]) -> None:
        if size is not None and size > self.max_bytes:
            raise TooLarge(size, self.max_bytes)

    def validate(self, data: bytes, claimed_type: Optional[str] = None) -> MimeType:
        if not data:
            raise EmptyPayload("decoded image has no bytes")
        self.check_size(len(data))

        mime_type = sniff_mime_type(data)
        if mime_type is None:
            raise InvalidImageHeader(
                f"Only JPEG and PNG images are supported (leading bytes {data[:4].hex()})")
        if claimed_type and claimed_type != mime_type.value:
            logger.info("Claimed content type %s differs from detected %s",
                        claimed_type, mime_type.value)
        return mime_type


def image_dimensions(data: bytes) -> Tuple[Optional[int], Optional[int]]:
    """Width and height read from the image header, or (None, None)"""
    try:
        with Image.open(io.BytesIO(data)) as image:
            return image.size
    except (UnidentifiedImageError, OSError) as e:
        logger.warning("Could not read image dimensions: %s", e)
        return None, None
