from __future__ import annotations
import uuid


def new_fetch_id() -> str:
    """Fresh correlation id for a fetch that has no explicit done opcode."""
    return str(uuid.uuid4())

