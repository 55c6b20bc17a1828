import base64
import functools
import json
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Dict, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError

from .config import Settings
from .errors import DogifyError, InvalidRequest, ServiceNotConfigured
from .image_decoder import ImageDecoder
from .image_validator import ImageValidator
from .ingestion import ImageIngestionService
from .metadata_store import DynamoDBMetadataStore, MetadataStore
from .object_store import S3ObjectStore
from .serving import ImageRedirect, ImageServingService

logger = logging.getLogger(__name__)

CORS_HEADERS = {
    'Access-Control-Allow-Origin': '*',
    'Access-Control-Allow-Headers': 'Content-Type',
}


def configure_logging(level: str = 'INFO') -> None:
    """Set the root level; the Lambda runtime installs the handler"""
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(format='%(asctime)s %(levelname)s %(name)s %(message)s')
    root.setLevel(level)
    logging.getLogger('botocore').setLevel(logging.WARNING)


def boto_config(settings: Settings) -> Config:
    return Config(
        region_name=settings.aws_region,
        connect_timeout=settings.store_timeout,
        read_timeout=settings.store_timeout,
        retries={'max_attempts': 0, 'mode': 'standard'},
    )


def create_clients(settings: Settings):
    """Create the S3 client and DynamoDB resource for ``settings``"""
    config = boto_config(settings)
    s3_client = boto3.client('s3', endpoint_url=settings.aws_endpoint_url, config=config)
    dynamodb = boto3.resource('dynamodb', endpoint_url=settings.aws_endpoint_url, config=config)
    return s3_client, dynamodb


def create_table_if_not_exists(dynamodb, table_name: str) -> None:
    """Create the metadata table if it doesn't exist"""
    try:
        table = dynamodb.Table(table_name)
        table.load()
    except ClientError as e:
        if e.response['Error']['Code'] == 'ResourceNotFoundException':
            table = dynamodb.create_table(
                TableName=table_name,
                KeySchema=[
                    {
                        'AttributeName': 'id',
                        'KeyType': 'HASH'
                    }
                ],
                AttributeDefinitions=[
                    {
                        'AttributeName': 'id',
                        'AttributeType': 'S'
                    }
                ],
                BillingMode='PAY_PER_REQUEST'
            )
            table.wait_until_exists()
            logger.info("Created metadata table %s", table_name)
        else:
            raise


def create_bucket_if_not_exists(s3_client, bucket_name: str) -> None:
    """Create S3 bucket if it doesn't exist"""
    try:
        s3_client.head_bucket(Bucket=bucket_name)
    except ClientError as e:
        if e.response['Error']['Code'] in ('404', 'NoSuchBucket'):
            s3_client.create_bucket(Bucket=bucket_name)
            logger.info("Created bucket %s", bucket_name)
        else:
            raise


@dataclass
class Services:
    """Service objects shared by every invocation in a process"""
    settings: Settings
    metadata_store: Optional[MetadataStore] = None
    ingestion: Optional[ImageIngestionService] = None
    serving: Optional[ImageServingService] = None

    def require_ingestion(self) -> ImageIngestionService:
        if self.ingestion is None:
            raise ServiceNotConfigured("TABLE_NAME is not set")
        return self.ingestion

    def require_serving(self) -> ImageServingService:
        if self.serving is None:
            raise ServiceNotConfigured("TABLE_NAME is not set")
        return self.serving

    def require_metadata_store(self) -> MetadataStore:
        if self.metadata_store is None:
            raise ServiceNotConfigured("TABLE_NAME is not set")
        return self.metadata_store


def build_services(settings: Settings, s3_client=None, dynamodb=None,
                   executor=None) -> Services:
    """Wire stores and services from ``settings`` and the given AWS clients"""
    if settings.table_name is None:
        logger.error("Missing TABLE_NAME, image storage is not configured")
        return Services(settings)

    if s3_client is None or dynamodb is None:
        default_s3, default_dynamodb = create_clients(settings)
        s3_client = s3_client or default_s3
        dynamodb = dynamodb or default_dynamodb

    if settings.auto_create_resources:
        create_table_if_not_exists(dynamodb, settings.table_name)
        if settings.bucket_name:
            create_bucket_if_not_exists(s3_client, settings.bucket_name)

    metadata_store = DynamoDBMetadataStore(settings.table_name, dynamodb)
    object_store = None
    if settings.bucket_name:
        object_store = S3ObjectStore(
            settings.bucket_name,
            s3_client,
            region=settings.aws_region,
            endpoint_url=settings.aws_endpoint_url,
            public_base_url=settings.public_base_url,
        )
    else:
        logger.info("No BUCKET_NAME configured, images are stored inline")

    decoder = ImageDecoder(timeout=settings.remote_fetch_timeout)
    validator = ImageValidator(settings.max_image_bytes)
    return Services(
        settings=settings,
        metadata_store=metadata_store,
        ingestion=ImageIngestionService(
            decoder, validator, metadata_store, object_store,
            inline_url=settings.serving_url,
        ),
        serving=ImageServingService(metadata_store, decoder, validator, executor=executor),
    )


@functools.lru_cache(maxsize=1)
def get_services() -> Services:
    """Build the process-wide services from the environment, once"""
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    return build_services(settings, executor=ThreadPoolExecutor(max_workers=2))


# =============================================================================
# Request parsing
# =============================================================================

def request_method(event: Dict[str, Any]) -> Optional[str]:
    method = event.get('httpMethod')
    if method is None:
        method = (event.get('requestContext') or {}).get('http', {}).get('method')
    return method.upper() if method else None


def request_header(event: Dict[str, Any], name: str) -> Optional[str]:
    name = name.lower()
    for key, value in (event.get('headers') or {}).items():
        if key.lower() == name:
            return value
    return None


def client_ip(event: Dict[str, Any]) -> Optional[str]:
    forwarded = request_header(event, 'x-forwarded-for')
    if forwarded:
        return forwarded.split(',')[0].strip()
    return request_header(event, 'x-nf-client-connection-ip')


def path_or_query_param(event: Dict[str, Any], name: str) -> Optional[str]:
    value = (event.get('pathParameters') or {}).get(name)
    if value is None:
        value = (event.get('queryStringParameters') or {}).get(name)
    return value


def parse_json_body(event: Dict[str, Any]) -> Dict[str, Any]:
    body = event.get('body')
    if body is None or body == '':
        return {}
    if isinstance(body, str):
        try:
            if event.get('isBase64Encoded'):
                body = base64.b64decode(body).decode('utf-8')
            body = json.loads(body)
        except (ValueError, UnicodeDecodeError) as e:
            raise InvalidRequest(str(e), message="Invalid JSON format") from e
    if not isinstance(body, dict):
        raise InvalidRequest("body is not a JSON object", message="Invalid request format")
    return body


# =============================================================================
# Responses
# =============================================================================

def _headers(methods: str, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    headers = dict(CORS_HEADERS)
    headers['Access-Control-Allow-Methods'] = methods
    if extra:
        headers.update(extra)
    return headers


def json_response(status_code: int, payload: Dict[str, Any],
                  methods: str = 'GET, OPTIONS') -> Dict[str, Any]:
    return {
        'statusCode': status_code,
        'headers': _headers(methods, {'Content-Type': 'application/json'}),
        'body': json.dumps(payload),
    }


def error_response(error: DogifyError, methods: str = 'GET, OPTIONS') -> Dict[str, Any]:
    """JSON error body; causes of server-side failures are only logged"""
    payload = {'ok': False, 'error': error.message}
    if error.status_code < 500:
        if error.detail:
            payload['details'] = error.detail
        logger.info("Request rejected kind=%s status=%d detail=%s",
                    error.kind, error.status_code, error.detail)
    else:
        logger.error("Request failed kind=%s status=%d detail=%s",
                     error.kind, error.status_code, error.detail)
    return json_response(error.status_code, payload, methods)


def options_response(methods: str) -> Dict[str, Any]:
    return {'statusCode': 200, 'headers': _headers(methods), 'body': ''}


def method_not_allowed(methods: str) -> Dict[str, Any]:
    return json_response(405, {'ok': False, 'error': 'Method not allowed'}, methods)


def image_response(result, methods: str = 'GET, OPTIONS') -> Dict[str, Any]:
    """API Gateway response for a ServedImage or ImageRedirect"""
    cache_headers = {
        'Cache-Control': result.cache_control,
        'ETag': result.etag,
    }
    if result.last_modified:
        cache_headers['Last-Modified'] = result.last_modified

    if isinstance(result, ImageRedirect):
        cache_headers['Location'] = result.url
        return {'statusCode': 302, 'headers': _headers(methods, cache_headers), 'body': ''}

    cache_headers['Content-Type'] = result.mime_type
    cache_headers['Content-Length'] = str(len(result.body))
    return {
        'statusCode': 200,
        'headers': _headers(methods, cache_headers),
        'body': base64.b64encode(result.body).decode('ascii'),
        'isBase64Encoded': True,
    }


def html_response(status_code: int, html: str, cache_control: Optional[str] = None) -> Dict[str, Any]:
    headers = {'Content-Type': 'text/html; charset=UTF-8'}
    if cache_control:
        headers['Cache-Control'] = cache_control
    return {'statusCode': status_code, 'headers': headers, 'body': html}
