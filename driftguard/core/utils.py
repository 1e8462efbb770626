import hashlib
import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes as UTC"""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (set, frozenset)):
        return sorted(value)
    return str(value)


def canonical_json(data: Any) -> str:
    """Serialize with sorted keys and no whitespace so equal data hashes equally"""
    return json.dumps(data, sort_keys=True, separators=(",", ":"), default=_json_default)


def calculate_hash(data: Any) -> str:
    """
    Calculate a stable SHA-256 hash for arbitrary JSON-like data

    Args:
        data: Dictionary, list or scalar to hash

    Returns:
        Hex digest of the canonical JSON form
    """
    return hashlib.sha256(canonical_json(data).encode()).hexdigest()
