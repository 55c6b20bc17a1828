import base64
import io
import os
import threading

import boto3
import pytest
from moto import mock_aws
from PIL import Image

# Set environment variables for testing
os.environ['AWS_ACCESS_KEY_ID'] = 'testing'
os.environ['AWS_SECRET_ACCESS_KEY'] = 'testing'
os.environ['AWS_SECURITY_TOKEN'] = 'testing'
os.environ['AWS_SESSION_TOKEN'] = 'testing'
os.environ['AWS_DEFAULT_REGION'] = 'us-east-1'
os.environ.pop('AWS_ENDPOINT_URL', None)

from dogify_functions.errors import InsertFailed, RemoveFailed, UploadFailed
from dogify_functions.metadata_store import MetadataStore
from dogify_functions.object_store import ObjectStore

BUCKET_NAME = 'test-bucket'
TABLE_NAME = 'test-table'


def create_test_image(image_format='PNG', size=(64, 64), color='red'):
    """Create a test image and return its encoded bytes"""
    img = Image.new('RGB', size, color=color)
    buffer = io.BytesIO()
    img.save(buffer, format=image_format)
    return buffer.getvalue()


def create_noise_image(size, image_format='PNG'):
    """Random pixels, so the encoded image is roughly width * height * 3 bytes"""
    img = Image.frombytes('RGB', size, os.urandom(size[0] * size[1] * 3))
    buffer = io.BytesIO()
    img.save(buffer, format=image_format)
    return buffer.getvalue()


def to_data_url(data, mime='image/png'):
    return f"data:{mime};base64,{base64.b64encode(data).decode('ascii')}"


@pytest.fixture
def png_bytes():
    return create_test_image('PNG')


@pytest.fixture
def jpeg_bytes():
    return create_test_image('JPEG', color='blue')


class RecordingObjectStore(ObjectStore):
    """In-memory object store that records every call"""

    def __init__(self, fail_upload=False, fail_remove=False):
        self.objects = {}
        self.calls = []
        self.fail_upload = fail_upload
        self.fail_remove = fail_remove
        self.bucket_name = 'memory-bucket'
        self._lock = threading.Lock()

    def upload(self, key, data, content_type):
        with self._lock:
            self.calls.append(('upload', key))
            if self.fail_upload:
                raise UploadFailed("simulated upload failure")
            if key in self.objects:
                raise UploadFailed(f"object {key} already exists")
            self.objects[key] = (bytes(data), content_type)
        return self.get_public_url(key)

    def download(self, key):
        self.calls.append(('download', key))
        return self.objects[key][0]

    def remove(self, key):
        self.calls.append(('remove', key))
        if self.fail_remove:
            raise RemoveFailed("simulated remove failure")
        self.objects.pop(key, None)

    def get_public_url(self, key):
        return f"https://cdn.example.test/{key}"

    def count(self, operation):
        return sum(1 for name, _ in self.calls if name == operation)


class InMemoryMetadataStore(MetadataStore):
    """Dict-backed metadata store that records every call"""

    def __init__(self, fail_insert=False, fail_share=False):
        self.records = {}
        self.calls = []
        self.fail_insert = fail_insert
        self.fail_share = fail_share
        self._lock = threading.Lock()

    def insert(self, record):
        with self._lock:
            self.calls.append(('insert', record.id))
            if self.fail_insert:
                raise InsertFailed("simulated insert failure")
            if record.id in self.records:
                raise InsertFailed(f"duplicate id {record.id}")
            self.records[record.id] = record

    def get(self, image_id):
        self.calls.append(('get', image_id))
        return self.records.get(image_id)

    def record_share(self, image_id, shared_at=None):
        self.calls.append(('record_share', image_id))
        if self.fail_share:
            raise RuntimeError("simulated share update failure")
        record = self.records[image_id]
        record.share_count += 1
        record.last_shared_at = shared_at

    def list_recent(self, limit=5):
        records = sorted(self.records.values(), key=lambda r: r.created_at, reverse=True)
        return records[:limit]


@pytest.fixture
def object_store():
    return RecordingObjectStore()


@pytest.fixture
def metadata_store():
    return InMemoryMetadataStore()


@pytest.fixture
def aws():
    """Mocked S3 bucket and DynamoDB table"""
    with mock_aws():
        s3_client = boto3.client('s3', region_name='us-east-1')
        s3_client.create_bucket(Bucket=BUCKET_NAME)

        dynamodb = boto3.resource('dynamodb', region_name='us-east-1')
        dynamodb.create_table(
            TableName=TABLE_NAME,
            KeySchema=[{'AttributeName': 'id', 'KeyType': 'HASH'}],
            AttributeDefinitions=[{'AttributeName': 'id', 'AttributeType': 'S'}],
            BillingMode='PAY_PER_REQUEST'
        )
        yield s3_client, dynamodb


class FakeResponse:
    def __init__(self, content=b'', status_code=200, reason='OK', headers=None):
        self.content = content
        self.status_code = status_code
        self.reason = reason
        self.headers = headers or {}

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        return False


class FakeSession:
    """Stands in for requests.Session in remote fetches"""

    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.requests = []

    def get(self, url, timeout=None):
        self.requests.append((url, timeout))
        if self.error is not None:
            raise self.error
        return self.response
