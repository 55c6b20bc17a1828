import logging
import math

from .common import (client_ip, error_response, get_services, json_response, method_not_allowed,
                     options_response, parse_json_body, request_header, request_method)
from .errors import DogifyError, InvalidRequest
from .metadata_store import Provenance

logger = logging.getLogger(__name__)

METHODS = 'POST, OPTIONS'
MAX_GENERATION_SECONDS = 1e9


def _optional_text(body, name):
    value = body.get(name)
    if value is None:
        return None
    if not isinstance(value, str):
        raise InvalidRequest(f"{name} must be a string")
    return value


def _optional_seconds(body):
    value = body.get('generationTimeSeconds')
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvalidRequest("generationTimeSeconds must be a number")
    if not 0 <= value <= MAX_GENERATION_SECONDS or not math.isfinite(value):
        raise InvalidRequest("generationTimeSeconds must be a finite, non-negative number")
    return round(float(value), 3)


def provenance_from_request(body, event) -> Provenance:
    return Provenance(
        scene_analysis=_optional_text(body, 'sceneAnalysis'),
        generation_prompt=_optional_text(body, 'generationPrompt'),
        model_used=_optional_text(body, 'modelUsed'),
        generation_time_seconds=_optional_seconds(body),
        user_session=_optional_text(body, 'userSession'),
        user_agent=request_header(event, 'user-agent'),
        ip_address=client_ip(event),
    )


def lambda_handler(event, context, services=None):
    """
    Save a generated image: body {imageData, sceneAnalysis?, generationPrompt?,
    modelUsed?, generationTimeSeconds?, userSession?}
    """
    method = request_method(event)
    if method == 'OPTIONS':
        return options_response(METHODS)
    if method not in (None, 'POST'):
        return method_not_allowed(METHODS)

    try:
        services = services or get_services()
        ingestion = services.require_ingestion()

        body = parse_json_body(event)
        image_data = body.get('imageData')
        if not image_data:
            raise InvalidRequest(message="Missing imageData")
        if not isinstance(image_data, str):
            raise InvalidRequest("imageData must be a string", message="Invalid imageData")

        result = ingestion.ingest(image_data, provenance_from_request(body, event))

        return json_response(200, {
            'ok': True,
            'id': result.id,
            'url': result.url,
            'size': result.size,
            'message': 'Image saved successfully',
        }, METHODS)

    except DogifyError as e:
        return error_response(e, METHODS)
    except Exception:
        logger.exception("Save function error")
        return json_response(500, {'ok': False, 'error': 'Internal server error'}, METHODS)
