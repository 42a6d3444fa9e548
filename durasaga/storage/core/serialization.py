"""
JSON serialization for execution histories.

Activity inputs and results end up in event attributes; the encoder keeps
the common non-JSON types round-trippable.
"""

import base64
import json
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from .errors import SerializationError


class HistoryEncoder(json.JSONEncoder):
    """
    JSON encoder for event attributes.

    Handles:
    - datetime -> tagged ISO string
    - UUID -> tagged string
    - Decimal -> tagged string (preserves precision)
    - Enum -> its value
    - bytes -> tagged base64 string
    - set/frozenset -> list
    """

    def default(self, obj: Any) -> Any:
        if isinstance(obj, datetime):
            return {"__type__": "datetime", "value": obj.isoformat()}
        if isinstance(obj, UUID):
            return {"__type__": "uuid", "value": str(obj)}
        if isinstance(obj, Decimal):
            return {"__type__": "decimal", "value": str(obj)}
        if isinstance(obj, Enum):
            return obj.value
        if isinstance(obj, bytes):
            return {"__type__": "bytes", "value": base64.b64encode(obj).decode("ascii")}
        if isinstance(obj, set | frozenset):
            return sorted(obj, key=repr)
        if hasattr(obj, "to_dict"):
            return obj.to_dict()
        return super().default(obj)


def history_decoder(obj: dict[str, Any]) -> Any:
    """Reverse the tagged values written by HistoryEncoder."""
    type_name = obj.get("__type__")
    if type_name is None or "value" not in obj:
        return obj

    value = obj["value"]
    if type_name == "datetime":
        return datetime.fromisoformat(value)
    if type_name == "uuid":
        return UUID(value)
    if type_name == "decimal":
        return Decimal(value)
    if type_name == "bytes":
        return base64.b64decode(value)
    return obj


def serialize(data: Any) -> str:
    """
    Serialize data to a JSON string.

    Raises:
        SerializationError: If the data cannot be encoded
    """
    try:
        return json.dumps(data, cls=HistoryEncoder, ensure_ascii=False)
    except (TypeError, ValueError) as e:
        raise SerializationError(
            message=f"Failed to serialize data: {e}",
            operation="serialize",
            data_type=type(data).__name__,
        ) from e


def deserialize(data: str | bytes) -> Any:
    """
    Deserialize a JSON string produced by ``serialize``.

    Raises:
        SerializationError: If the payload is not valid JSON
    """
    if isinstance(data, bytes):
        data = data.decode("utf-8")

    try:
        return json.loads(data, object_hook=history_decoder)
    except (json.JSONDecodeError, ValueError) as e:
        raise SerializationError(
            message=f"Failed to deserialize data: {e}",
            operation="deserialize",
            data_type="str",
        ) from e
