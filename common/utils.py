"""Common utility functions."""

from __future__ import annotations

import re
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path

import yaml


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def generate_id(prefix: str = "") -> str:
    """Generate a unique identifier."""
    timestamp = utcnow().strftime("%Y%m%d_%H%M%S")
    short_uuid = uuid.uuid4().hex[:8]
    if prefix:
        return f"{prefix}_{timestamp}_{short_uuid}"
    return f"{timestamp}_{short_uuid}"


def generate_use_case_id() -> str:
    """Generate a use case ID."""
    return generate_id("uc")


def generate_session_id() -> str:
    """Generate a test session ID."""
    return generate_id("session")


def run_stamp() -> str:
    """Millisecond stamp used to keep per-run artifact names unique."""
    return str(int(time.time() * 1000))


def elapsed_seconds(start: datetime | None, end: datetime | None = None) -> int:
    """Whole seconds between two timestamps, 0 when the start is unknown."""
    if start is None:
        return 0
    end = end or utcnow()
    if start.tzinfo is None and end.tzinfo is not None:
        start = start.replace(tzinfo=end.tzinfo)
    return max(0, int((end - start).total_seconds()))


def format_duration(seconds: int) -> str:
    """Format seconds to human-readable duration."""
    if seconds < 60:
        return f"{seconds}s"
    elif seconds < 3600:
        minutes = seconds // 60
        secs = seconds % 60
        return f"{minutes}m {secs}s"
    else:
        hours = seconds // 3600
        minutes = (seconds % 3600) // 60
        secs = seconds % 60
        return f"{hours}h {minutes}m {secs}s"


def base_name(path: str) -> str:
    """File name of a path written with either separator style."""
    return re.split(r"[\\/]", path.strip())[-1]


def load_yaml(path: str | Path) -> dict:
    """Load a YAML file."""
    with open(path, 'r') as f:
        return yaml.safe_load(f) or {}


def ensure_dir(path: str | Path) -> Path:
    """Ensure a directory exists, creating it if necessary."""
    path = Path(path)
    path.mkdir(parents=True, exist_ok=True)
    return path
