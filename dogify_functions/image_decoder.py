"""Turns inbound or stored image references into raw bytes.

References are plain values whose format is recognized by inspection. The set
of formats is closed and tried in a fixed order so that ambiguous values
prefer the more structured reading:

    raw buffer -> data URL -> remote URL -> legacy hex buffer
    -> legacy JSON buffer -> legacy base64 string
"""
import base64
import binascii
import json
import logging
from enum import Enum
from typing import Any, Callable, Dict, Mapping, NamedTuple, Optional, Sequence

import requests

from .errors import FetchFailed, FetchTimeout, MalformedDataUrl, UnsupportedFormat

logger = logging.getLogger(__name__)

HEX_PREFIX = '\\x'
HEX_JSON_PREFIX = '\\x7b'  # hex of "{"


class RefKind(Enum):
    RAW_BUFFER = 'raw_buffer'
    DATA_URL = 'data_url'
    REMOTE_URL = 'remote_url'
    LEGACY_HEX_BUFFER = 'legacy_hex_buffer'
    LEGACY_JSON_BUFFER = 'legacy_json_buffer'
    LEGACY_BASE64_STRING = 'legacy_base64_string'


# Every kind, in recognition order. Client submissions are strings, so the
# raw buffer kind never matches them.
ALL_KINDS = (
    RefKind.RAW_BUFFER,
    RefKind.DATA_URL,
    RefKind.REMOTE_URL,
    RefKind.LEGACY_HEX_BUFFER,
    RefKind.LEGACY_JSON_BUFFER,
    RefKind.LEGACY_BASE64_STRING,
)

# Shapes found in the inline image_data column. Reading them never touches
# the network.
STORED_KINDS = tuple(kind for kind in ALL_KINDS if kind is not RefKind.REMOTE_URL)

# Shapes a client may submit as imageData.
CLIENT_KINDS = (RefKind.DATA_URL, RefKind.REMOTE_URL)


class DecodedImage(NamedTuple):
    data: bytes
    mime_hint: Optional[str]
    kind: RefKind


class _NotThisFormat(Exception):
    """A heuristic recognizer matched but the value did not decode"""


def _is_raw(ref: Any) -> bool:
    return isinstance(ref, (bytes, bytearray, memoryview))


def _is_data_url(ref: Any) -> bool:
    return isinstance(ref, str) and ref.startswith('data:')


def _is_remote_url(ref: Any) -> bool:
    return isinstance(ref, str) and ref.startswith('http')


def _is_hex_buffer(ref: Any) -> bool:
    return (isinstance(ref, str) and ref.startswith(HEX_PREFIX)
            and not ref.lower().startswith(HEX_JSON_PREFIX))


def _is_json_buffer(ref: Any) -> bool:
    if isinstance(ref, Mapping):
        return True
    return isinstance(ref, str) and (
        ref.lstrip().startswith('{') or ref.lower().startswith(HEX_JSON_PREFIX))


def _is_base64_string(ref: Any) -> bool:
    return isinstance(ref, str) and bool(ref.strip())


RECOGNIZERS: Dict[RefKind, Callable[[Any], bool]] = {
    RefKind.RAW_BUFFER: _is_raw,
    RefKind.DATA_URL: _is_data_url,
    RefKind.REMOTE_URL: _is_remote_url,
    RefKind.LEGACY_HEX_BUFFER: _is_hex_buffer,
    RefKind.LEGACY_JSON_BUFFER: _is_json_buffer,
    RefKind.LEGACY_BASE64_STRING: _is_base64_string,
}


def classify(ref: Any, kinds: Sequence[RefKind] = ALL_KINDS) -> Optional[RefKind]:
    """Return the first kind whose recognizer accepts ``ref``"""
    for kind in kinds:
        if RECOGNIZERS[kind](ref):
            return kind
    return None


def _b64decode(payload: str) -> bytes:
    return base64.b64decode(''.join(payload.split()), validate=True)


def estimated_size(ref: Any) -> Optional[int]:
    """Decoded size of a data URL or base64 string, computed without decoding.

    Returns None for references whose size is only known after decoding.
    """
    if not isinstance(ref, str):
        return None
    if _is_data_url(ref):
        payload = ref.partition(',')[2]
    elif _is_remote_url(ref) or ref.startswith(HEX_PREFIX) or ref.lstrip().startswith('{'):
        return None
    else:
        payload = ref
    payload = ''.join(payload.split())
    return len(payload) * 3 // 4 - payload[-2:].count('=')


class ImageDecoder:
    """Decodes image references into bytes.

    ``session`` is the ``requests`` session used for remote URLs and
    ``timeout`` bounds each fetch, in seconds.
    """

    def __init__(self, session: Optional[requests.Session] = None, timeout: float = 10.0):
        self.session = session or requests.Session()
        self.timeout = timeout
        self._decoders = {
            RefKind.RAW_BUFFER: self._decode_raw,
            RefKind.DATA_URL: self._decode_data_url,
            RefKind.REMOTE_URL: self._decode_remote_url,
            RefKind.LEGACY_HEX_BUFFER: self._decode_hex_buffer,
            RefKind.LEGACY_JSON_BUFFER: self._decode_json_buffer,
            RefKind.LEGACY_BASE64_STRING: self._decode_base64_string,
        }

    def decode(self, ref: Any, kinds: Sequence[RefKind] = ALL_KINDS) -> DecodedImage:
        for kind in kinds:
            if not RECOGNIZERS[kind](ref):
                continue
            try:
                data, mime_hint = self._decoders[kind](ref)
            except _NotThisFormat as e:
                logger.debug("Reference looked like %s but did not decode: %s", kind.value, e)
                continue
            logger.debug("Decoded %s reference size_bytes=%d", kind.value, len(data))
            return DecodedImage(data, mime_hint, kind)
        raise UnsupportedFormat(f"unrecognized image reference of type {type(ref).__name__}")

    def decode_stored(self, value: Any) -> DecodedImage:
        return self.decode(value, STORED_KINDS)

    def _decode_raw(self, ref):
        return bytes(ref), None

    def _decode_data_url(self, ref: str):
        header, comma, payload = ref.partition(',')
        if not comma:
            raise MalformedDataUrl("no comma separating header and data")
        if ';base64' not in header:
            raise MalformedDataUrl("only base64 data URLs are supported")
        if not payload.strip():
            raise MalformedDataUrl("no base64 data found")
        try:
            data = _b64decode(payload)
        except (binascii.Error, ValueError) as e:
            raise MalformedDataUrl(f"invalid base64 payload: {e}") from e
        mime_hint = header[len('data:'):].split(';', 1)[0] or None
        return data, mime_hint

    def _decode_remote_url(self, ref: str):
        logger.info("Fetching image from URL timeout_s=%s", self.timeout)
        try:
            with self.session.get(ref, timeout=self.timeout) as response:
                if not 200 <= response.status_code < 300:
                    raise FetchFailed(f"HTTP {response.status_code}: {response.reason}")
                data = response.content
                content_type = response.headers.get('Content-Type', '')
        except requests.Timeout as e:
            raise FetchTimeout(f"no response within {self.timeout}s") from e
        except requests.RequestException as e:
            raise FetchFailed(str(e)) from e
        return data, content_type.split(';', 1)[0].strip() or None

    def _decode_hex_buffer(self, ref: str):
        try:
            return bytes.fromhex(ref[len(HEX_PREFIX):]), None
        except ValueError as e:
            raise _NotThisFormat(str(e)) from e

    def _decode_json_buffer(self, ref):
        try:
            if isinstance(ref, Mapping):
                parsed = ref
            elif ref.startswith(HEX_PREFIX):
                parsed = json.loads(bytes.fromhex(ref.replace(HEX_PREFIX, '')).decode('utf-8'))
            else:
                parsed = json.loads(ref)
        except (ValueError, UnicodeDecodeError) as e:
            raise _NotThisFormat(str(e)) from e

        if not isinstance(parsed, Mapping) or parsed.get('type') != 'Buffer':
            raise _NotThisFormat("not a serialized Buffer")
        values = parsed.get('data')
        if not isinstance(values, list):
            raise _NotThisFormat("Buffer data is not a list")
        try:
            return bytes(int(value) for value in values), None
        except (TypeError, ValueError) as e:
            raise _NotThisFormat(f"Buffer data is not a byte list: {e}") from e

    def _decode_base64_string(self, ref: str):
        try:
            return _b64decode(ref), None
        except (binascii.Error, ValueError) as e:
            raise _NotThisFormat(str(e)) from e
