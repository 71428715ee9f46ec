"""Job encoding and the per-job random seed.

A job row stores its kind in a `name` column and its payload as JSON in a
`data` column. `encode_job` and `decode_job` convert between the two and
the typed job models.
"""

from __future__ import annotations

import random
import secrets
from typing import Any, TypeVar

from pydantic import TypeAdapter, ValidationError

from aiaday.errors import JobDecodeError
from aiaday.models import (
    JobKind,
    PersonWaitingJob,
    PingJob,
    ProcessMessageJob,
    SendMessageToSceneJob,
)

_JOB_NAMES = frozenset(
    m.model_fields["name"].default
    for m in (PingJob, ProcessMessageJob, SendMessageToSceneJob, PersonWaitingJob)
)

_job_adapter: TypeAdapter[JobKind] = TypeAdapter(JobKind)

T = TypeVar("T")


def encode_job(kind: JobKind) -> tuple[str, dict[str, Any] | None]:
    """Return (name, data). Ping carries no data."""
    if isinstance(kind, PingJob):
        return kind.name, None
    return kind.name, kind.model_dump(mode="json", exclude={"name"})


def decode_job(name: str, data: dict[str, Any] | None) -> JobKind:
    if name not in _JOB_NAMES:
        raise JobDecodeError("unknown_job_name", f"Unknown job name {name!r}")
    if name == "ping":
        return PingJob()
    if data is None:
        raise JobDecodeError("no_job_data", f"Job {name!r} has no data")
    try:
        return _job_adapter.validate_python({**data, "name": name})
    except ValidationError as e:
        raise JobDecodeError("failed_to_parse_job_data", f"{name}: {e}") from e


# ---------------------------------------------------------------------------
# RandomSeed
# ---------------------------------------------------------------------------

class RandomSeed:
    """A 64-bit seed. Handlers derive all their randomness from the seed they are given."""

    def __init__(self, value: int) -> None:
        self.value = value & 0xFFFF_FFFF_FFFF_FFFF

    @classmethod
    def new(cls) -> RandomSeed:
        return cls(secrets.randbits(64))

    def rng(self) -> random.Random:
        """A PRNG seeded with the value. Mersenne Twister: larger state, same determinism."""
        return random.Random(self.value)

    def split(self) -> tuple[RandomSeed, RandomSeed]:
        rng = self.rng()
        return RandomSeed(rng.getrandbits(64)), RandomSeed(rng.getrandbits(64))

    def shuffled(self, items: list[T]) -> list[T]:
        out = list(items)
        self.rng().shuffle(out)
        return out

    def __eq__(self, other: object) -> bool:
        return isinstance(other, RandomSeed) and other.value == self.value

    def __hash__(self) -> int:
        return hash(self.value)

    def __repr__(self) -> str:
        return f"RandomSeed({self.value})"
