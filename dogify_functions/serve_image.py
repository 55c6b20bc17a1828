import logging

from .common import (error_response, get_services, image_response, json_response,
                     method_not_allowed, options_response, path_or_query_param, request_method)
from .errors import DogifyError, InvalidRequest

logger = logging.getLogger(__name__)

METHODS = 'GET, OPTIONS'


def lambda_handler(event, context, services=None):
    """
    Serve image bytes for GET /images/{id} or GET /images?id={id}
    """
    method = request_method(event)
    if method == 'OPTIONS':
        return options_response(METHODS)
    if method not in (None, 'GET', 'HEAD'):
        return method_not_allowed(METHODS)

    try:
        image_id = path_or_query_param(event, 'id')
        if not image_id:
            raise InvalidRequest(message="Missing image ID")

        services = services or get_services()
        result = services.require_serving().serve(image_id)
        response = image_response(result, METHODS)
        if method == 'HEAD':
            response['body'] = ''
            response['isBase64Encoded'] = False
        return response

    except DogifyError as e:
        return error_response(e, METHODS)
    except Exception:
        logger.exception("Serve image error")
        return json_response(500, {'ok': False, 'error': 'Internal server error'}, METHODS)
