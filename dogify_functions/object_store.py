import logging
from abc import ABC, abstractmethod
from typing import Optional

from botocore.exceptions import BotoCoreError, ClientError

from .errors import ObjectNotFound, RemoveFailed, StoreError, UploadFailed

logger = logging.getLogger(__name__)

OBJECT_CACHE_CONTROL = 'public, max-age=3600'
_MISSING_CODES = ('404', 'NoSuchKey', 'NotFound')
_EXISTS_CODES = ('PreconditionFailed', 'ConditionalRequestConflict')


def _error_code(error: ClientError) -> str:
    return error.response.get('Error', {}).get('Code', '')


class ObjectStore(ABC):
    """Key-addressed blob storage returning a stable public URL per key"""

    @abstractmethod
    def upload(self, key: str, data: bytes, content_type: str) -> str:
        """Store ``data`` under a new ``key`` and return its public URL"""

    @abstractmethod
    def download(self, key: str) -> bytes:
        pass

    @abstractmethod
    def remove(self, key: str) -> None:
        """Delete ``key``; deleting a missing key is not an error"""

    @abstractmethod
    def get_public_url(self, key: str) -> str:
        pass


class S3ObjectStore(ObjectStore):
    """S3 bucket backend"""

    def __init__(self, bucket_name: str, s3_client, region: str = 'us-east-1',
                 endpoint_url: Optional[str] = None, public_base_url: Optional[str] = None):
        self.bucket_name = bucket_name
        self.s3_client = s3_client
        self.region = region
        self.endpoint_url = endpoint_url
        self.public_base_url = public_base_url

    def upload(self, key: str, data: bytes, content_type: str) -> str:
        try:
            self.s3_client.put_object(
                Bucket=self.bucket_name,
                Key=key,
                Body=data,
                ContentType=content_type,
                CacheControl=OBJECT_CACHE_CONTROL,
                IfNoneMatch='*',
            )
        except ClientError as e:
            if _error_code(e) in _EXISTS_CODES:
                raise UploadFailed(f"object {key} already exists") from e
            raise UploadFailed(str(e)) from e
        except BotoCoreError as e:
            raise UploadFailed(str(e)) from e
        logger.info("Uploaded object key=%s size_bytes=%d content_type=%s",
                    key, len(data), content_type)
        return self.get_public_url(key)

    def download(self, key: str) -> bytes:
        try:
            response = self.s3_client.get_object(Bucket=self.bucket_name, Key=key)
            return response['Body'].read()
        except ClientError as e:
            if _error_code(e) in _MISSING_CODES:
                raise ObjectNotFound(key) from e
            raise StoreError(str(e)) from e
        except BotoCoreError as e:
            raise StoreError(str(e)) from e

    def remove(self, key: str) -> None:
        try:
            self.s3_client.delete_object(Bucket=self.bucket_name, Key=key)
        except ClientError as e:
            if _error_code(e) in _MISSING_CODES:
                return
            raise RemoveFailed(str(e)) from e
        except BotoCoreError as e:
            raise RemoveFailed(str(e)) from e
        logger.info("Removed object key=%s", key)

    def get_public_url(self, key: str) -> str:
        if self.public_base_url:
            return f"{self.public_base_url.rstrip('/')}/{key}"
        if self.endpoint_url:
            return f"{self.endpoint_url.rstrip('/')}/{self.bucket_name}/{key}"
        return f"https://{self.bucket_name}.s3.{self.region}.amazonaws.com/{key}"
