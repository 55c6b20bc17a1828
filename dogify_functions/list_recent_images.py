import logging

from .common import error_response, get_services, json_response
from .errors import DogifyError, InvalidRequest

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 5
MAX_LIMIT = 50


def lambda_handler(event, context, services=None):
    """
    List the most recent images, without their payloads
    """
    try:
        query_params = event.get('queryStringParameters') or {}
        try:
            limit = int(query_params.get('limit', DEFAULT_LIMIT))
        except ValueError as e:
            raise InvalidRequest("limit must be an integer") from e
        limit = max(1, min(limit, MAX_LIMIT))

        services = services or get_services()
        records = services.require_metadata_store().list_recent(limit)

        entries = []
        for record in records:
            entry = record.summary()
            entry['storage'] = 'object_store' if record.image_url else 'inline'
            entries.append(entry)

        return json_response(200, {
            'ok': True,
            'entries': entries,
            'count': len(entries),
        })

    except DogifyError as e:
        return error_response(e)
    except Exception:
        logger.exception("List recent images error")
        return json_response(500, {'ok': False, 'error': 'Internal server error'})
