"""Shared utilities."""

from __future__ import annotations

import hashlib
import secrets
import time
from datetime import datetime, timezone
from typing import Any

import orjson

# Rough characters-per-token ratio used for prompt budgeting. This is not a
# tokenizer; callers truncating prompts must treat the result as approximate.
APPROX_CHARS_PER_TOKEN = 4


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def epoch_now() -> float:
    return time.time()


def json_dumps(obj: Any) -> str:
    return orjson.dumps(obj).decode()


def json_loads(data: str | bytes) -> Any:
    return orjson.loads(data)


def content_hash(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def new_id(prefix: str) -> str:
    return f"{prefix}_{int(time.time() * 1000)}_{secrets.token_hex(5)}"


def approx_token_count(text: str) -> float:
    """Approximate token count as ``len(text) / 4``."""
    return len(text or "") / APPROX_CHARS_PER_TOKEN


def iso_str(dt: datetime) -> str:
    return dt.isoformat()


def parse_iso(s: str) -> datetime:
    dt = datetime.fromisoformat(s)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt
