"""Time-ordered identifiers.

All entity ids are UUIDs whose bits come from a ULID, so they sort by
creation time. `fixed_id` builds small deterministic ids for tests and
seed data.
"""

from __future__ import annotations

import uuid

from ulid import ULID


def new_id() -> uuid.UUID:
    return ULID().to_uuid()


def fixed_id(n: int) -> uuid.UUID:
    """A synthetic id outside the ULID time range (the timestamp bits are zero)."""
    if n < 0:
        raise ValueError("fixed ids must be non-negative")
    return uuid.UUID(int=n)
