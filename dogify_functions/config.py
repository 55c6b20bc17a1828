import os
from dataclasses import dataclass
from typing import Mapping, Optional

DEFAULT_MAX_IMAGE_BYTES = int(1.5 * 1024 * 1024)  # 1.5MB
DEFAULT_SITE_URL = 'https://www.dothink.in'


def _optional(environ: Mapping[str, str], name: str) -> Optional[str]:
    value = environ.get(name, '').strip()
    return value or None


def _flag(environ: Mapping[str, str], name: str) -> bool:
    return environ.get(name, '').strip().lower() in ('1', 'true', 'yes', 'on')


@dataclass(frozen=True)
class Settings:
    """Process-wide configuration read from the Lambda environment"""
    table_name: Optional[str] = None
    bucket_name: Optional[str] = None
    aws_endpoint_url: Optional[str] = None
    aws_region: str = 'us-east-1'
    public_base_url: Optional[str] = None
    site_url: str = DEFAULT_SITE_URL
    max_image_bytes: int = DEFAULT_MAX_IMAGE_BYTES
    remote_fetch_timeout_ms: int = 10000
    store_timeout_ms: int = 15000
    log_level: str = 'INFO'
    auto_create_resources: bool = False

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> 'Settings':
        environ = os.environ if environ is None else environ
        return cls(
            table_name=_optional(environ, 'TABLE_NAME'),
            bucket_name=_optional(environ, 'BUCKET_NAME'),
            aws_endpoint_url=_optional(environ, 'AWS_ENDPOINT_URL'),
            aws_region=_optional(environ, 'AWS_REGION') or _optional(environ, 'AWS_DEFAULT_REGION') or 'us-east-1',
            public_base_url=_optional(environ, 'PUBLIC_BASE_URL'),
            site_url=(_optional(environ, 'SITE_URL') or DEFAULT_SITE_URL).rstrip('/'),
            max_image_bytes=int(environ.get('MAX_IMAGE_BYTES') or DEFAULT_MAX_IMAGE_BYTES),
            remote_fetch_timeout_ms=int(environ.get('REMOTE_FETCH_TIMEOUT_MS') or 10000),
            store_timeout_ms=int(environ.get('STORE_TIMEOUT_MS') or 15000),
            log_level=(_optional(environ, 'LOG_LEVEL') or 'INFO').upper(),
            auto_create_resources=_flag(environ, 'AUTO_CREATE_RESOURCES'),
        )

    @property
    def inline_mode(self) -> bool:
        return self.bucket_name is None

    @property
    def remote_fetch_timeout(self) -> float:
        return self.remote_fetch_timeout_ms / 1000.0

    @property
    def store_timeout(self) -> float:
        return self.store_timeout_ms / 1000.0

    def serving_url(self, image_id: str) -> str:
        return f"{self.site_url}/images/{image_id}"

    def share_url(self, image_id: str) -> str:
        return f"{self.site_url}/share/{image_id}"
