"""Image ingestion: decode, validate, store bytes, then commit metadata.

An image counts as saved only once both the object and its metadata row are
written. When anything fails after an upload, the object is removed
once on a best-effort basis; a failed removal leaves a harmless orphan keyed
by a fresh UUID.
"""
import base64
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Optional

from .errors import StoreError, TooLarge
from .image_decoder import CLIENT_KINDS, ImageDecoder, estimated_size
from .image_validator import ImageValidator, image_dimensions
from .metadata_store import ImageRecord, MetadataStore, Provenance, item_size
from .object_store import ObjectStore

logger = logging.getLogger(__name__)


@dataclass
class IngestResult:
    id: str
    url: str
    size: int
    mime_type: str
    width: Optional[int] = None
    height: Optional[int] = None


class ImageIngestionService:
    """Persists client images.

    With an ``object_store`` the bytes go to the store and the metadata row
    references the public URL. Without one the bytes are written inline into
    the row as a base64 string and ``inline_url`` builds the serving URL; the
    metadata store's item limit then also bounds the image size.
    """

    def __init__(self, decoder: ImageDecoder, validator: ImageValidator,
                 metadata_store: MetadataStore, object_store: Optional[ObjectStore] = None,
                 inline_url: Optional[Callable[[str], str]] = None,
                 id_factory: Callable[[], str] = lambda: str(uuid.uuid4())):
        self.decoder = decoder
        self.validator = validator
        self.metadata_store = metadata_store
        self.object_store = object_store
        self.inline_url = inline_url or (lambda image_id: f"/images/{image_id}")
        self.id_factory = id_factory

    def ingest(self, image_ref: Any, provenance: Optional[Provenance] = None) -> IngestResult:
        provenance = provenance or Provenance()

        self.validator.check_size(estimated_size(image_ref))
        decoded = self.decoder.decode(image_ref, CLIENT_KINDS)
        mime_type = self.validator.validate(decoded.data, decoded.mime_hint)
        data = decoded.data
        width, height = image_dimensions(data)

        image_id = self.id_factory()
        logger.info("Ingesting image id=%s source=%s size_bytes=%d mime_type=%s",
                    image_id, decoded.kind.value, len(data), mime_type.value)

        if self.object_store is None:
            record = ImageRecord.create(
                image_id, mime_type.format_name, len(data), provenance,
                image_data=base64.b64encode(data).decode('ascii'),
                width=width, height=height,
            )
            self._check_inline_fits(record)
            self.metadata_store.insert(record)
            url = self.inline_url(image_id)
        else:
            key = f"{image_id}{mime_type.extension}"
            url = self.object_store.upload(key, data, mime_type.value)
            try:
                record = ImageRecord.create(
                    image_id, mime_type.format_name, len(data), provenance,
                    image_url=url, storage_path=key,
                    storage_bucket=getattr(self.object_store, 'bucket_name', None),
                    width=width, height=height,
                )
                self.metadata_store.insert(record)
            except Exception:
                logger.error("Metadata insert failed id=%s, removing uploaded object", image_id)
                self._discard(key)
                raise

        logger.info("Image saved id=%s size=%dKB", image_id, round(len(data) / 1024))
        return IngestResult(image_id, url, len(data), mime_type.value, width, height)

    def _discard(self, key: str) -> None:
        try:
            self.object_store.remove(key)
        except StoreError as e:
            logger.error("Could not remove orphaned object key=%s: %s", key, e.detail)

    def _check_inline_fits(self, record: ImageRecord) -> None:
        """Inline rows carry the base64 payload, so the item limit caps the image"""
        limit = self.metadata_store.max_item_bytes
        if limit is None:
            return
        size = item_size(record.to_item())
        if size > limit:
            overhead = size - len(record.image_data)
            raise TooLarge(record.image_size, (limit - overhead) * 3 // 4)
