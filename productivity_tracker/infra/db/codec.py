"""JSON encoding of documents. Datetimes travel as {"$date": "<ISO-8601 UTC>"}."""
from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any

from productivity_tracker.domain.common.time import ensure_aware, from_iso

DATE_KEY = "$date"


def encode_instant(value: datetime) -> str:
    """UTC ISO text; strings of this form sort in time order."""
    return ensure_aware(value).astimezone(timezone.utc).isoformat()


def _encode_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return {DATE_KEY: encode_instant(value)}
    if isinstance(value, dict):
        return {k: _encode_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_encode_value(v) for v in value]
    return value


def _decode_value(value: Any) -> Any:
    if isinstance(value, dict):
        if len(value) == 1 and DATE_KEY in value:
            return from_iso(value[DATE_KEY])
        return {k: _decode_value(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_decode_value(v) for v in value]
    return value


def dumps(doc: dict[str, Any]) -> str:
    return json.dumps(_encode_value(doc), ensure_ascii=False)


def loads(raw: str) -> dict[str, Any]:
    return _decode_value(json.loads(raw))
