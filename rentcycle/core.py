"""Core primitives for rentcycle.

This module provides the foundational utilities used throughout the engine:
- Canonical JSON serialization and SHA-256 digests
- YAML/JSON loading with consistent encoding
- UTC clock helpers producing sortable ISO-8601 timestamps

Design principles:
- Pure functions where possible
- Amounts travel as Decimal or string, never float
"""

from __future__ import annotations

import hashlib
import json
import pathlib
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable, Optional, Union

import yaml

PACKAGE_ROOT = pathlib.Path(__file__).resolve().parent
SCHEMAS_DIR = PACKAGE_ROOT / "schemas"

# Smallest increment used to keep status_updated_at strictly increasing.
TICK = timedelta(microseconds=1)

Clock = Callable[[], datetime]


def sha256_bytes(data: bytes) -> str:
    """Compute SHA-256 hash of bytes, returning lowercase hex string."""
    return hashlib.sha256(data).hexdigest()


def load_yaml(path: pathlib.Path) -> Any:
    """Load YAML file with UTF-8 encoding."""
    return yaml.safe_load(pathlib.Path(path).read_text(encoding="utf-8"))


def load_json(path: pathlib.Path) -> Any:
    """Load JSON file with UTF-8 encoding."""
    return json.loads(pathlib.Path(path).read_text(encoding="utf-8"))


def _json_default(o: Any) -> Any:
    if isinstance(o, Decimal):
        return str(o)
    if isinstance(o, (datetime, date)):
        return o.isoformat()
    raise TypeError(f"Object of type {type(o).__name__} is not JSON serializable")


def canonical_json_bytes(obj: Any) -> bytes:
    """Serialize object to canonical JSON bytes.

    Properties:
    - Keys sorted lexicographically
    - No whitespace
    - UTF-8 encoded
    - Floats rejected (use strings or Decimal for amounts)
    """
    def _reject_floats(o: Any, path: str = "") -> None:
        if isinstance(o, float):
            raise ValueError(f"Float not allowed in canonical JSON at {path}")
        if isinstance(o, dict):
            for k, v in o.items():
                _reject_floats(v, f"{path}.{k}")
        if isinstance(o, (list, tuple)):
            for i, v in enumerate(o):
                _reject_floats(v, f"{path}[{i}]")

    _reject_floats(obj)
    return json.dumps(
        obj,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=_json_default,
    ).encode("utf-8")


def digest_of(obj: Any) -> str:
    """SHA-256 of the canonical JSON form of obj."""
    return sha256_bytes(canonical_json_bytes(obj))


def to_json(obj: Any) -> str:
    """Serialize for display and transport (not for digests)."""
    return json.dumps(obj, default=_json_default, sort_keys=True)


# ════════════════════════════════════════════════════════════════════════════
# TIME
# ════════════════════════════════════════════════════════════════════════════


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes and normalise aware ones."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """
    Render a timestamp for storage.

    Fixed-width microsecond precision in UTC so that stored values
    order lexicographically the same way they order in time.
    """
    return ensure_utc(value).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse a stored or user supplied ISO-8601 timestamp."""
    if value is None:
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return ensure_utc(datetime.fromisoformat(text))


def parse_date(value: Union[str, date, None]) -> Optional[date]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return ensure_utc(value).date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(value.strip()[:10])


def start_of_day(value: date) -> datetime:
    return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)


def next_tick(now: datetime, previous: Optional[datetime]) -> datetime:
    """Return now, or one tick past previous when the clock has not moved on."""
    now = ensure_utc(now)
    if previous is not None and now <= previous:
        return previous + TICK
    return now


def to_decimal(value: Any, field_name: str = "amount") -> Decimal:
    """Coerce a user or stored amount to a finite, 2dp Decimal."""
    if isinstance(value, float):
        value = repr(value)
    try:
        amount = Decimal(str(value))
    except ArithmeticError as e:
        raise ValueError(f"{field_name} is not a valid decimal: {value!r}") from e
    if not amount.is_finite():
        raise ValueError(f"{field_name} must be finite: {value!r}")
    try:
        return amount.quantize(Decimal("0.01"))
    except ArithmeticError as e:
        raise ValueError(f"{field_name} is out of range: {value!r}") from e
