"""Exception taxonomy for the image pipeline.

Every error carries the HTTP status the handlers answer with, a message that
is safe to show to untrusted clients, and a ``detail`` string with the
underlying cause for the logs.
"""
from typing import Optional


class DogifyError(Exception):
    """Base class for pipeline errors"""

    status_code = 500
    message = "Internal server error"

    def __init__(self, detail: str = "", message: Optional[str] = None):
        self.detail = detail
        if message is not None:
            self.message = message
        super().__init__(f"{self.message}: {detail}" if detail else self.message)

    @property
    def kind(self) -> str:
        return type(self).__name__


class InvalidRequest(DogifyError):
    status_code = 400
    message = "Invalid request"


class ServiceNotConfigured(DogifyError):
    status_code = 503
    message = "Image saving service not configured"


# Decoding

class DecodeError(DogifyError):
    status_code = 400
    message = "Invalid image data"


class MalformedDataUrl(DecodeError):
    message = "Invalid data URL"


class FetchTimeout(DecodeError):
    message = "Timed out fetching image"


class FetchFailed(DecodeError):
    message = "Failed to fetch image"


class UnsupportedFormat(DecodeError):
    message = "imageData must be a data URL or HTTP URL"


# Validation

class ValidationError(DogifyError):
    status_code = 400
    message = "Invalid image"


class EmptyPayload(ValidationError):
    message = "Image is empty"


class TooLarge(ValidationError):
    status_code = 413
    message = "Image too large"

    def __init__(self, actual_size: int, max_size: int):
        self.actual_size = actual_size
        self.max_size = max_size
        super().__init__(
            f"Image size {round(actual_size / 1024)}KB exceeds "
            f"{_format_limit(max_size)} limit."
        )


class InvalidImageHeader(ValidationError):
    message = "Invalid image format"

    def __init__(self, detail: str = "Only JPEG and PNG images are supported"):
        super().__init__(detail)


# Object store

class StoreError(DogifyError):
    message = "Failed to upload image"


class UploadFailed(StoreError):
    pass


class RemoveFailed(StoreError):
    message = "Failed to remove image"


class ObjectNotFound(StoreError):
    message = "Image file not found"


# Metadata store

class MetadataError(DogifyError):
    message = "Failed to save image metadata"


class InsertFailed(MetadataError):
    pass


class RecordNotFound(MetadataError):
    status_code = 404
    message = "Image not found"


class MetadataTimeout(MetadataError):
    message = "Image metadata store timed out"


# Serving

class ServeError(DogifyError):
    message = "Failed to serve image"


class InvalidImageId(ServeError):
    status_code = 400
    message = "Invalid image ID format"


class ImageNotFound(ServeError):
    status_code = 404
    message = "Image not found"


class CorruptImageData(ServeError):
    status_code = 500
    message = "Image data conversion failed"


def _format_limit(max_size: int) -> str:
    megabytes = max_size / (1024 * 1024)
    if megabytes >= 1:
        return f"{megabytes:g}MB"
    return f"{round(max_size / 1024)}KB"
