import logging
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, fields
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, NamedTuple, Optional, Union

from boto3.dynamodb.types import Binary
from botocore.exceptions import BotoCoreError, ClientError, ConnectTimeoutError, ReadTimeoutError

from .errors import InsertFailed, MetadataError, MetadataTimeout, RecordNotFound
from .image_decoder import STORED_KINDS, RefKind, classify

logger = logging.getLogger(__name__)

DYNAMODB_ITEM_LIMIT = 400 * 1024
_NUMBER_SIZE = 21  # upper bound for a DynamoDB number


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class Provenance:
    """Opaque generation details passed through with an image"""
    scene_analysis: Optional[str] = None
    generation_prompt: Optional[str] = None
    model_used: Optional[str] = None
    generation_time_seconds: Optional[float] = None
    user_session: Optional[str] = None
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None


class Inline(NamedTuple):
    encoding: Optional[RefKind]
    data: Any


class ObjectStoreRef(NamedTuple):
    bucket: Optional[str]
    key: Optional[str]
    public_url: str


StorageLocation = Union[Inline, ObjectStoreRef]


@dataclass
class ImageRecord:
    """One row of the image metadata table"""
    id: str
    image_format: str
    image_size: int
    created_at: str
    image_url: Optional[str] = None
    storage_path: Optional[str] = None
    storage_bucket: Optional[str] = None
    image_data: Any = None
    width: Optional[int] = None
    height: Optional[int] = None
    scene_analysis: Optional[str] = None
    generation_prompt: Optional[str] = None
    model_used: Optional[str] = None
    generation_time_seconds: Optional[float] = None
    user_session: Optional[str] = None
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    share_count: int = 0
    last_shared_at: Optional[str] = None

    @classmethod
    def create(cls, image_id: str, image_format: str, image_size: int,
               provenance: Provenance, **kwargs) -> 'ImageRecord':
        return cls(id=image_id, image_format=image_format, image_size=image_size,
                   created_at=utc_now(), **asdict(provenance), **kwargs)

    @property
    def storage_location(self) -> StorageLocation:
        if self.image_url:
            return ObjectStoreRef(self.storage_bucket, self.storage_path, self.image_url)
        return Inline(classify(self.image_data, STORED_KINDS), self.image_data)

    def to_item(self) -> Dict[str, Any]:
        item = {}
        for name, value in asdict(self).items():
            if value is None:
                continue
            if isinstance(value, float):
                value = Decimal(str(value))
            item[name] = value
        return item

    @classmethod
    def from_item(cls, item: Dict[str, Any]) -> 'ImageRecord':
        known = {f.name for f in fields(cls)}
        values = {}
        for name, value in item.items():
            if name not in known:
                continue
            if isinstance(value, Binary):
                value = value.value
            elif isinstance(value, Decimal):
                value = float(value) if name == 'generation_time_seconds' else int(value)
            values[name] = value
        return cls(**values)

    def summary(self) -> Dict[str, Any]:
        """Row contents without the image payload"""
        data = asdict(self)
        data.pop('image_data')
        return data


SUMMARY_FIELDS = tuple(f.name for f in fields(ImageRecord) if f.name != 'image_data')


def item_size(item: Dict[str, Any]) -> int:
    """Upper bound on the stored size of ``item``: attribute names plus values"""
    size = 0
    for name, value in item.items():
        size += len(name.encode('utf-8'))
        if isinstance(value, str):
            size += len(value.encode('utf-8'))
        elif isinstance(value, (bytes, bytearray)):
            size += len(value)
        else:
            size += _NUMBER_SIZE
    return size


class MetadataStore(ABC):
    """Table of image metadata keyed by image id"""

    #: Largest item the backend accepts, or None when unbounded
    max_item_bytes: Optional[int] = None

    @abstractmethod
    def insert(self, record: ImageRecord) -> None:
        pass

    @abstractmethod
    def get(self, image_id: str) -> Optional[ImageRecord]:
        pass

    @abstractmethod
    def record_share(self, image_id: str, shared_at: Optional[str] = None) -> None:
        """Increment share_count and stamp last_shared_at"""

    @abstractmethod
    def list_recent(self, limit: int = 5) -> List[ImageRecord]:
        pass


class DynamoDBMetadataStore(MetadataStore):
    """DynamoDB table keyed by ``id``"""

    max_item_bytes = DYNAMODB_ITEM_LIMIT

    def __init__(self, table_name: str, dynamodb_resource):
        self.table_name = table_name
        self.table = dynamodb_resource.Table(table_name)

    def insert(self, record: ImageRecord) -> None:
        try:
            self.table.put_item(
                Item=record.to_item(),
                ConditionExpression='attribute_not_exists(id)',
            )
        except (ConnectTimeoutError, ReadTimeoutError) as e:
            raise MetadataTimeout(str(e)) from e
        except (ClientError, BotoCoreError) as e:
            raise InsertFailed(str(e)) from e
        except (TypeError, ArithmeticError) as e:
            # boto3 refuses values DynamoDB cannot hold, such as NaN
            raise InsertFailed(f"unserializable attribute: {e}") from e
        logger.info("Saved metadata id=%s size_bytes=%d", record.id, record.image_size)

    def get(self, image_id: str) -> Optional[ImageRecord]:
        try:
            response = self.table.get_item(Key={'id': image_id})
        except (ConnectTimeoutError, ReadTimeoutError) as e:
            raise MetadataTimeout(str(e)) from e
        except (ClientError, BotoCoreError) as e:
            raise MetadataError(str(e), message="Failed to load image metadata") from e
        if 'Item' not in response:
            return None
        return ImageRecord.from_item(response['Item'])

    def record_share(self, image_id: str, shared_at: Optional[str] = None) -> None:
        try:
            self.table.update_item(
                Key={'id': image_id},
                UpdateExpression='ADD share_count :one SET last_shared_at = :shared_at',
                ConditionExpression='attribute_exists(id)',
                ExpressionAttributeValues={':one': 1, ':shared_at': shared_at or utc_now()},
            )
        except ClientError as e:
            if e.response['Error']['Code'] == 'ConditionalCheckFailedException':
                raise RecordNotFound(image_id) from e
            raise MetadataError(str(e), message="Failed to update share count") from e
        except BotoCoreError as e:
            raise MetadataError(str(e), message="Failed to update share count") from e

    def list_recent(self, limit: int = 5) -> List[ImageRecord]:
        """Newest rows first, loaded without their inline image_data"""
        names = {f"#f{i}": name for i, name in enumerate(SUMMARY_FIELDS)}
        scan_params = {
            'ProjectionExpression': ', '.join(names),
            'ExpressionAttributeNames': names,
        }
        items = []
        try:
            while True:
                response = self.table.scan(**scan_params)
                items.extend(response.get('Items', []))
                if 'LastEvaluatedKey' not in response:
                    break
                scan_params['ExclusiveStartKey'] = response['LastEvaluatedKey']
        except (ClientError, BotoCoreError) as e:
            raise MetadataError(str(e), message="Failed to list images") from e

        records = [ImageRecord.from_item(item) for item in items]
        records.sort(key=lambda record: record.created_at, reverse=True)
        return records[:limit]
