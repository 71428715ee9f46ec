"""Exception taxonomy.

Every error a job handler can raise derives from AiadayError. The worker
catches AiadayError at the job boundary, records the message on the job
row and moves on.
"""

from __future__ import annotations

from typing import Literal
from uuid import UUID


class AiadayError(RuntimeError):
    """Base class for all errors raised by the package."""


class ConfigError(AiadayError):
    """A required setting is missing or malformed."""


# ---------------------------------------------------------------------------
# LLM transport and decoding
# ---------------------------------------------------------------------------

class LLMError(AiadayError):
    """Raised when the LLM backend cannot be reached or returns an error."""


DecodeKind = Literal[
    "missing_field",
    "not_array",
    "empty_array",
    "not_string",
    "not_object",
    "not_number",
    "unparseable_arguments",
    "invalid_json",
]


class DecodeError(LLMError):
    """The provider answered, but the body does not have the expected shape."""

    def __init__(self, kind: DecodeKind, detail: str) -> None:
        super().__init__(f"{kind}: {detail}")
        self.kind = kind
        self.detail = detail


# ---------------------------------------------------------------------------
# Missing preconditions
# ---------------------------------------------------------------------------

class PreconditionError(AiadayError):
    pass


class NoStateOfMindFound(PreconditionError):
    def __init__(self, person_id: UUID) -> None:
        super().__init__(f"No state of mind found for person {person_id}")
        self.person_id = person_id


class NoPersonIdentityFound(PreconditionError):
    def __init__(self, person_id: UUID) -> None:
        super().__init__(f"No person identity found for person {person_id}")
        self.person_id = person_id


class MessageNotFound(PreconditionError):
    def __init__(self, message_id: UUID) -> None:
        super().__init__(f"Message {message_id} not found")
        self.message_id = message_id


class PersonNotInAnyScene(PreconditionError):
    def __init__(self, person_id: UUID) -> None:
        super().__init__(f"Person {person_id} is not in any scene")
        self.person_id = person_id


class SceneMessageRecipientMissing(PreconditionError):
    """A scene broadcast was queued for processing without a bound reader."""

    def __init__(self, message_id: UUID) -> None:
        super().__init__(f"Scene message {message_id} has no recipient person")
        self.message_id = message_id


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class StoreError(AiadayError):
    """A store operation failed. Carries the operation name and the backend message."""

    def __init__(self, operation: str, detail: str) -> None:
        super().__init__(f"{operation}: {detail}")
        self.operation = operation
        self.detail = detail


class NotFound(StoreError):
    pass


class NotInScene(StoreError):
    pass


# ---------------------------------------------------------------------------
# Person actions
# ---------------------------------------------------------------------------

ActionErrorKind = Literal[
    "unrecognized_action",
    "unrecognized_parameter",
    "parameter_missing",
    "unexpected_type",
    "no_action_returned",
]


class PersonActionError(AiadayError):
    def __init__(self, kind: ActionErrorKind, detail: str) -> None:
        super().__init__(detail)
        self.kind = kind


class NoActionReturned(PersonActionError):
    def __init__(self) -> None:
        super().__init__("no_action_returned", "The completion contained no tool calls")


# ---------------------------------------------------------------------------
# Job encoding
# ---------------------------------------------------------------------------

JobDecodeKind = Literal["unknown_job_name", "no_job_data", "failed_to_parse_job_data"]


class JobDecodeError(AiadayError):
    def __init__(self, kind: JobDecodeKind, detail: str) -> None:
        super().__init__(f"{kind}: {detail}")
        self.kind = kind
