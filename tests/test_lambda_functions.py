import base64
import json
import uuid
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ReadTimeoutError

from conftest import BUCKET_NAME, TABLE_NAME, create_noise_image, create_test_image, to_data_url
from dogify_functions import common
from dogify_functions.common import build_services
from dogify_functions.config import Settings
from dogify_functions.list_recent_images import lambda_handler as recent_handler
from dogify_functions.save_image import lambda_handler as save_handler
from dogify_functions.serve_image import lambda_handler as serve_handler
from dogify_functions.share_image import lambda_handler as share_handler


@pytest.fixture
def services(aws):
    s3_client, dynamodb = aws
    settings = Settings(table_name=TABLE_NAME, bucket_name=BUCKET_NAME, site_url='https://www.example.test')
    return build_services(settings, s3_client, dynamodb)


@pytest.fixture
def inline_services(aws):
    s3_client, dynamodb = aws
    settings = Settings(table_name=TABLE_NAME, site_url='https://www.example.test')
    return build_services(settings, s3_client, dynamodb)


def save_event(image_data, **extra):
    body = {'imageData': image_data}
    body.update(extra)
    return {
        'httpMethod': 'POST',
        'headers': {'User-Agent': 'pytest', 'X-Forwarded-For': '203.0.113.7, 10.0.0.1'},
        'body': json.dumps(body),
    }


def serve_event(image_id):
    return {'httpMethod': 'GET', 'queryStringParameters': {'id': image_id}}


class TestSaveImage:
    """Test cases for the save function"""

    def test_save_image_success(self, services, aws):
        """Image goes to S3 and metadata to DynamoDB"""
        s3_client, dynamodb = aws
        data = create_test_image('PNG')

        response = save_handler(save_event(
            to_data_url(data),
            sceneAnalysis='A beach at sunset',
            generationPrompt='add a corgi',
            modelUsed='venice-sd35',
            generationTimeSeconds=12.5,
            userSession='session-1',
        ), {}, services=services)

        assert response['statusCode'] == 200
        body = json.loads(response['body'])
        assert body['ok'] is True
        assert body['size'] == len(data)
        assert body['url'] == f"https://{BUCKET_NAME}.s3.us-east-1.amazonaws.com/{body['id']}.png"

        stored = s3_client.get_object(Bucket=BUCKET_NAME, Key=f"{body['id']}.png")
        assert stored['Body'].read() == data

        item = dynamodb.Table(TABLE_NAME).get_item(Key={'id': body['id']})['Item']
        assert item['image_url'] == body['url']
        assert item['scene_analysis'] == 'A beach at sunset'
        assert item['user_agent'] == 'pytest'
        assert item['ip_address'] == '203.0.113.7'
        assert 'image_data' not in item

    def test_save_image_missing_image_data(self, services):
        response = save_handler({'httpMethod': 'POST', 'body': json.dumps({})}, {}, services=services)

        assert response['statusCode'] == 400
        body = json.loads(response['body'])
        assert body == {'ok': False, 'error': 'Missing imageData'}

    def test_save_image_invalid_json(self, services):
        response = save_handler({'httpMethod': 'POST', 'body': '{not json'}, {}, services=services)
        assert response['statusCode'] == 400
        assert json.loads(response['body'])['error'] == 'Invalid JSON format'

    def test_save_image_invalid_image_data(self, services):
        response = save_handler(save_event('definitely not an image'), {}, services=services)

        assert response['statusCode'] == 400
        body = json.loads(response['body'])
        assert body['ok'] is False
        assert body['error'] == 'imageData must be a data URL or HTTP URL'

    @pytest.mark.parametrize('encode', [
        lambda data: '\\x' + data.hex(),
        lambda data: json.dumps({'type': 'Buffer', 'data': list(data)}),
        lambda data: base64.b64encode(data).decode('ascii'),
    ], ids=['hex', 'json-buffer', 'base64'])
    def test_save_image_rejects_stored_encodings(self, services, aws, encode):
        """Only data URLs and HTTP URLs are accepted from clients"""
        s3_client, _ = aws

        response = save_handler(save_event(encode(create_test_image('PNG'))), {}, services=services)

        assert response['statusCode'] == 400
        assert json.loads(response['body'])['error'] == 'imageData must be a data URL or HTTP URL'
        assert s3_client.list_objects_v2(Bucket=BUCKET_NAME).get('KeyCount', 0) == 0

    def test_save_image_unsupported_format(self, services):
        response = save_handler(save_event(to_data_url(create_test_image('GIF'), 'image/gif')), {},
                                services=services)

        assert response['statusCode'] == 400
        body = json.loads(response['body'])
        assert body['error'] == 'Invalid image format'
        assert 'JPEG and PNG' in body['details']

    def test_save_image_too_large(self, services, aws):
        s3_client, _ = aws
        payload = b'\xff\xd8' + b'\x00' * (2 * 1024 * 1024)

        response = save_handler(save_event(to_data_url(payload, 'image/jpeg')), {}, services=services)

        assert response['statusCode'] == 413
        body = json.loads(response['body'])
        assert body['ok'] is False
        assert body['error'].startswith('Image too large')
        assert 'exceeds 1.5MB limit' in body['details']
        assert s3_client.list_objects_v2(Bucket=BUCKET_NAME).get('KeyCount', 0) == 0

    def test_save_image_invalid_generation_time(self, services):
        response = save_handler(save_event(to_data_url(create_test_image('PNG')),
                                           generationTimeSeconds='fast'), {}, services=services)
        assert response['statusCode'] == 400

    @pytest.mark.parametrize('seconds', [float('inf'), float('nan'), -1, 10 ** 400])
    def test_save_image_out_of_range_generation_time(self, services, aws, seconds):
        """Values DynamoDB cannot store are rejected before anything is uploaded"""
        s3_client, dynamodb = aws

        response = save_handler(save_event(to_data_url(create_test_image('PNG')),
                                           generationTimeSeconds=seconds), {}, services=services)

        assert response['statusCode'] == 400
        assert 'generationTimeSeconds' in json.loads(response['body'])['details']
        assert s3_client.list_objects_v2(Bucket=BUCKET_NAME).get('KeyCount', 0) == 0
        assert dynamodb.Table(TABLE_NAME).scan()['Count'] == 0

    def test_save_image_inline_over_item_limit(self, inline_services, aws):
        """Inline rows must fit in one DynamoDB item"""
        _, dynamodb = aws
        data = create_noise_image((450, 450))
        assert 500 * 1024 < len(data) < 1024 * 1024

        response = save_handler(save_event(to_data_url(data)), {}, services=inline_services)

        assert response['statusCode'] == 413
        body = json.loads(response['body'])
        assert body['error'] == 'Image too large'
        assert 'exceeds' in body['details']
        assert dynamodb.Table(TABLE_NAME).scan()['Count'] == 0

    def test_save_image_inline_under_item_limit(self, inline_services):
        data = create_noise_image((200, 200))
        assert len(data) > 100 * 1024

        saved = json.loads(save_handler(save_event(to_data_url(data)), {}, services=inline_services)['body'])
        response = serve_handler(serve_event(saved['id']), {}, services=inline_services)

        assert response['statusCode'] == 200
        assert base64.b64decode(response['body']) == data

    def test_save_image_upload_failure_hides_detail(self, aws):
        s3_client, dynamodb = aws
        services = build_services(Settings(table_name=TABLE_NAME, bucket_name='no-such-bucket'),
                                  s3_client, dynamodb)

        response = save_handler(save_event(to_data_url(create_test_image('PNG'))), {}, services=services)

        assert response['statusCode'] == 500
        assert json.loads(response['body']) == {'ok': False, 'error': 'Failed to upload image'}
        assert 'no-such-bucket' not in response['body']
        assert dynamodb.Table(TABLE_NAME).scan()['Count'] == 0

    def test_save_image_not_configured(self):
        response = save_handler(save_event('data:image/png;base64,AAAA'), {},
                                services=build_services(Settings()))

        assert response['statusCode'] == 503
        assert json.loads(response['body']) == {'ok': False, 'error': 'Image saving service not configured'}

    def test_save_image_metadata_failure_cleans_up(self, aws):
        """A failed metadata write leaves no object behind and hides internals"""
        s3_client, dynamodb = aws
        settings = Settings(table_name='missing-table', bucket_name=BUCKET_NAME)
        services = build_services(settings, s3_client, dynamodb)

        response = save_handler(save_event(to_data_url(create_test_image('PNG'))), {}, services=services)

        assert response['statusCode'] == 500
        assert json.loads(response['body']) == {'ok': False, 'error': 'Failed to save image metadata'}
        assert s3_client.list_objects_v2(Bucket=BUCKET_NAME).get('KeyCount', 0) == 0

    def test_options_and_wrong_method(self, services):
        assert save_handler({'httpMethod': 'OPTIONS'}, {}, services=services)['statusCode'] == 200
        assert save_handler({'httpMethod': 'GET'}, {}, services=services)['statusCode'] == 405


class TestServeImage:
    """Test cases for the serve function"""

    def test_serve_object_store_image_redirects(self, services):
        saved = json.loads(save_handler(save_event(to_data_url(create_test_image('PNG'))), {},
                                        services=services)['body'])

        response = serve_handler(serve_event(saved['id']), {}, services=services)

        assert response['statusCode'] == 302
        assert response['headers']['Location'] == saved['url']
        assert response['headers']['ETag'] == f"\"{saved['id']}\""

        record = services.metadata_store.get(saved['id'])
        assert record.share_count == 1

    def test_serve_inline_round_trip(self, inline_services):
        data = create_test_image('JPEG')
        saved = json.loads(save_handler(save_event(to_data_url(data, 'image/jpeg')), {},
                                        services=inline_services)['body'])
        assert saved['url'] == f"https://www.example.test/images/{saved['id']}"

        response = serve_handler({'httpMethod': 'GET', 'pathParameters': {'id': saved['id']}}, {},
                                 services=inline_services)

        assert response['statusCode'] == 200
        assert response['isBase64Encoded'] is True
        assert base64.b64decode(response['body']) == data
        headers = response['headers']
        assert headers['Content-Type'] == 'image/jpeg'
        assert headers['Content-Length'] == str(len(data))
        assert headers['Cache-Control'] == 'public, max-age=86400'
        assert headers['ETag'] == f"\"{saved['id']}\""
        assert headers['Last-Modified'].endswith('GMT')

    def test_serve_legacy_hex_row(self, services, aws):
        _, dynamodb = aws
        data = create_test_image('PNG')
        image_id = str(uuid.uuid4())
        dynamodb.Table(TABLE_NAME).put_item(Item={
            'id': image_id,
            'image_data': '\\x' + data.hex(),
            'image_format': 'jpeg',
            'image_size': len(data),
            'created_at': '2023-06-01T12:00:00',
        })

        response = serve_handler(serve_event(image_id), {}, services=services)

        assert response['statusCode'] == 200
        assert response['headers']['Content-Type'] == 'image/png'
        assert base64.b64decode(response['body']) == data

    def test_serve_corrupt_row(self, services, aws):
        _, dynamodb = aws
        image_id = str(uuid.uuid4())
        dynamodb.Table(TABLE_NAME).put_item(Item={
            'id': image_id,
            'image_data': '\\x7b broken',
            'image_format': 'jpeg',
            'image_size': 0,
            'created_at': '2023-06-01T12:00:00',
        })

        response = serve_handler(serve_event(image_id), {}, services=services)

        assert response['statusCode'] == 500
        assert json.loads(response['body']) == {'ok': False, 'error': 'Image data conversion failed'}

    def test_serve_missing_id(self, services):
        response = serve_handler({'httpMethod': 'GET'}, {}, services=services)
        assert response['statusCode'] == 400
        assert json.loads(response['body'])['error'] == 'Missing image ID'

    def test_serve_invalid_id(self, services):
        response = serve_handler(serve_event('not-a-uuid'), {}, services=services)
        assert response['statusCode'] == 400
        assert json.loads(response['body'])['error'] == 'Invalid image ID format'

    def test_serve_metadata_timeout(self, services):
        table = MagicMock()
        table.get_item.side_effect = ReadTimeoutError(endpoint_url='https://dynamodb.us-east-1.amazonaws.com')
        services.metadata_store.table = table

        response = serve_handler(serve_event(str(uuid.uuid4())), {}, services=services)

        assert response['statusCode'] == 500
        assert json.loads(response['body']) == {'ok': False, 'error': 'Image metadata store timed out'}

    def test_serve_unknown_id(self, services):
        response = serve_handler(serve_event(str(uuid.uuid4())), {}, services=services)
        assert response['statusCode'] == 404
        assert json.loads(response['body'])['error'] == 'Image not found'


class TestSharePage:
    """Test cases for the share page"""

    def test_share_page(self, services):
        saved = json.loads(save_handler(save_event(
            to_data_url(create_test_image('PNG')),
            sceneAnalysis='<script>alert(1)</script>',
            modelUsed='gemini',
        ), {}, services=services)['body'])

        response = share_handler({
            'path': f"/share/{saved['id']}",
            'headers': {'Host': 'attacker.example'},
        }, {}, services=services)

        assert response['statusCode'] == 200
        assert response['headers']['Cache-Control'] == 'public, max-age=3600'
        html = response['body']
        assert f'<meta property="og:image" content="https://www.example.test/images/{saved["id"]}">' in html
        assert 'attacker.example' not in html
        assert f'content="https://www.example.test/share/{saved["id"]}"' in html
        assert 'twitter:card' in html
        assert '<script>alert(1)</script>' not in html
        assert '&lt;script&gt;' in html
        assert 'gemini' in html

    def test_share_page_invalid_id(self, services):
        response = share_handler({'path': '/share/not-a-uuid'}, {}, services=services)
        assert response['statusCode'] == 400
        assert 'Invalid Image ID' in response['body']

    def test_share_page_unknown_id(self, services):
        response = share_handler({'pathParameters': {'id': str(uuid.uuid4())}}, {}, services=services)
        assert response['statusCode'] == 404
        assert 'Image Not Found' in response['body']


class TestRecentImages:
    """Test cases for listing recent images"""

    def test_recent_images(self, inline_services):
        for _ in range(3):
            save_handler(save_event(to_data_url(create_test_image('PNG'))), {}, services=inline_services)

        response = recent_handler({'queryStringParameters': {'limit': '2'}}, {}, services=inline_services)

        assert response['statusCode'] == 200
        body = json.loads(response['body'])
        assert body['count'] == 2
        assert all('image_data' not in entry for entry in body['entries'])
        assert all(entry['storage'] == 'inline' for entry in body['entries'])

    def test_recent_images_bad_limit(self, inline_services):
        response = recent_handler({'queryStringParameters': {'limit': 'many'}}, {}, services=inline_services)
        assert response['statusCode'] == 400


class TestServiceWiring:
    """Settings and process-wide services"""

    def test_settings_from_env(self):
        settings = Settings.from_env({
            'TABLE_NAME': 'images',
            'BUCKET_NAME': ' ',
            'MAX_IMAGE_BYTES': '2048',
            'REMOTE_FETCH_TIMEOUT_MS': '2500',
            'SITE_URL': 'https://dogify.example.test/',
            'LOG_LEVEL': 'debug',
        })

        assert settings.table_name == 'images'
        assert settings.inline_mode
        assert settings.max_image_bytes == 2048
        assert settings.remote_fetch_timeout == 2.5
        assert settings.log_level == 'DEBUG'
        assert settings.serving_url('abc') == 'https://dogify.example.test/images/abc'

    def test_get_services_reads_environment(self, monkeypatch, aws):
        monkeypatch.setenv('TABLE_NAME', TABLE_NAME)
        monkeypatch.setenv('BUCKET_NAME', BUCKET_NAME)
        common.get_services.cache_clear()
        try:
            services = common.get_services()
            assert services is common.get_services()
            assert services.ingestion.object_store.bucket_name == BUCKET_NAME

            response = save_handler(save_event(to_data_url(create_test_image('JPEG'), 'image/jpeg')), {})
            assert response['statusCode'] == 200
        finally:
            common.get_services.cache_clear()

    def test_auto_create_resources(self, aws):
        s3_client, dynamodb = aws
        settings = Settings(table_name='created-table', bucket_name='created-bucket',
                            auto_create_resources=True)

        build_services(settings, s3_client, dynamodb)

        assert 'created-table' in dynamodb.meta.client.list_tables()['TableNames']
        s3_client.head_bucket(Bucket='created-bucket')
