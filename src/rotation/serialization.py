"""
JSON serialization utilities for orchestrator types.

Rotation state is stored as a JSON document; model ``to_dict`` methods
already produce plain values, and this encoder covers the remaining
non-JSON types that show up in alert details and status payloads.

Example:
    >>> from rotation.serialization import json_dumps, json_loads
    >>>
    >>> payload = json_dumps({"phase": RotationPhase.DATA_SYNCING, "at": utc_now()})
    >>> json_loads(payload)["phase"]
    'data_syncing'
"""

import json
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID


class RotationJSONEncoder(json.JSONEncoder):
    """
    JSON encoder for UUID, datetime, Enum and set values.

    - UUID objects: string representation
    - datetime objects: ISO 8601 string
    - Enum members: their value
    - set / frozenset: sorted list
    """

    def default(self, obj: Any) -> Any:
        if isinstance(obj, UUID):
            return str(obj)
        if isinstance(obj, datetime):
            return obj.isoformat()
        if isinstance(obj, Enum):
            return obj.value
        if isinstance(obj, (set, frozenset)):
            return sorted(obj)
        return super().default(obj)


def json_dumps(obj: Any) -> str:
    """Serialize ``obj`` with RotationJSONEncoder."""
    return json.dumps(obj, cls=RotationJSONEncoder)


def json_loads(s: str | bytes) -> Any:
    """
    Deserialize a JSON string.

    Note: datetimes and enums come back as strings; model ``from_dict``
    methods convert them.
    """
    return json.loads(s)


__all__ = [
    "RotationJSONEncoder",
    "json_dumps",
    "json_loads",
]
