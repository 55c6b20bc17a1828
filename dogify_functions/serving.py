import logging
import re
from concurrent.futures import Executor, Future
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import format_datetime
from typing import Optional, Union

from .errors import (CorruptImageData, DecodeError, ImageNotFound, InvalidImageId,
                     ValidationError)
from .image_decoder import ImageDecoder
from .image_validator import ImageValidator, sniff_mime_type
from .metadata_store import ImageRecord, MetadataStore, utc_now

logger = logging.getLogger(__name__)

UUID_PATTERN = re.compile(
    r'^[0-9a-f]{8}-[0-9a-f]{4}-4[0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$', re.IGNORECASE)
SERVE_CACHE_CONTROL = 'public, max-age=86400'


def clean_image_id(raw_id: Optional[str]) -> str:
    """Trim an id; share widgets sometimes submit ``<uuid>,<uuid>``"""
    if not raw_id:
        return ''
    return raw_id.split(',', 1)[0].strip()


def is_valid_image_id(image_id: str) -> bool:
    return bool(UUID_PATTERN.match(image_id))


def http_date(timestamp: Optional[str]) -> Optional[str]:
    if not timestamp:
        return None
    try:
        moment = datetime.fromisoformat(timestamp)
    except ValueError:
        return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return format_datetime(moment.astimezone(timezone.utc), usegmt=True)


@dataclass
class ServedImage:
    body: bytes
    mime_type: str
    etag: str
    last_modified: Optional[str] = None
    cache_control: str = SERVE_CACHE_CONTROL


@dataclass
class ImageRedirect:
    url: str
    etag: str
    last_modified: Optional[str] = None
    cache_control: str = SERVE_CACHE_CONTROL


ServeResult = Union[ServedImage, ImageRedirect]


class ImageServingService:
    """Resolves an image id to bytes or to its object-store URL.

    Share counting runs on ``executor`` and never affects the response. Without
    an executor the counter is updated inline, with failures still only logged.
    """

    def __init__(self, metadata_store: MetadataStore, decoder: ImageDecoder,
                 validator: ImageValidator, executor: Optional[Executor] = None):
        self.metadata_store = metadata_store
        self.decoder = decoder
        self.validator = validator
        self.executor = executor

    def lookup(self, raw_id: Optional[str]) -> ImageRecord:
        image_id = clean_image_id(raw_id)
        if not is_valid_image_id(image_id):
            raise InvalidImageId(f"rejected id {raw_id!r}")
        record = self.metadata_store.get(image_id)
        if record is None:
            raise ImageNotFound(image_id)
        return record

    def serve(self, raw_id: Optional[str]) -> ServeResult:
        record = self.lookup(raw_id)
        etag = f'"{record.id}"'
        last_modified = http_date(record.created_at)

        if record.image_url:
            self.record_share(record.id)
            return ImageRedirect(record.image_url, etag, last_modified)

        if not record.image_data:
            raise CorruptImageData(f"image {record.id} has no stored data", message="Image data is missing")
        try:
            decoded = self.decoder.decode_stored(record.image_data)
        except DecodeError as e:
            raise CorruptImageData(f"image {record.id}: {e.detail}") from e
        mime_type = sniff_mime_type(decoded.data)
        if mime_type is None:
            raise CorruptImageData(f"image {record.id} decoded from {decoded.kind.value} is not JPEG or PNG")
        try:
            self.validator.validate(decoded.data)
        except ValidationError as e:
            logger.warning("Serving stored image outside current limits id=%s: %s", record.id, e)

        logger.info("Serving image id=%s encoding=%s size_bytes=%d type=%s",
                    record.id, decoded.kind.value, len(decoded.data), mime_type.value)
        self.record_share(record.id)
        return ServedImage(decoded.data, mime_type.value, etag, last_modified)

    def record_share(self, image_id: str) -> None:
        shared_at = utc_now()
        if self.executor is None:
            self._update_share_count(image_id, shared_at)
            return
        try:
            future = self.executor.submit(self.metadata_store.record_share, image_id, shared_at)
        except RuntimeError as e:
            logger.warning("Share count update not scheduled id=%s: %s", image_id, e)
            return
        future.add_done_callback(lambda f: _log_share_failure(image_id, f))

    def _update_share_count(self, image_id: str, shared_at: str) -> None:
        try:
            self.metadata_store.record_share(image_id, shared_at)
        except Exception as e:
            logger.warning("Share count update failed id=%s: %s", image_id, e)


def _log_share_failure(image_id: str, future: Future) -> None:
    if future.cancelled():
        return
    error = future.exception()
    if error is not None:
        logger.warning("Share count update failed id=%s: %s", image_id, error)
