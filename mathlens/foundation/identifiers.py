"""ID generation for recognition sessions."""

from __future__ import annotations

from uuid import uuid4


def new_session_id() -> str:
    """Generate a new opaque session identifier (UUID v4 string)."""
    return str(uuid4())
