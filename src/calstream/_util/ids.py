"""Stream session ID generation utilities."""

from __future__ import annotations

import os


def generate_session_id() -> str:
    """Generate a random 64-bit hex ID used to tag one stream session in logs."""
    return os.urandom(8).hex()
