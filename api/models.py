"""
Ephemera — API Models

Request/response dataclasses for the HTTP surface.
No FastAPI dependency — used by server, CLI and tests.
"""

from __future__ import annotations

from dataclasses import dataclass, asdict
from typing import Any

from lifecycle.types import IntentSource, validate_environment_id

_SOURCES = {s.value for s in IntentSource}


@dataclass
class IntentSubmission:
    """POST /v1/environments/{id}/deploy|restart|cleanup body."""
    environment_id: str
    source: str = "manual"
    submitted_generation: int | None = None

    def validate(self) -> list[str]:
        """Return list of validation errors (empty = valid)."""
        errors = validate_environment_id(self.environment_id)
        if self.source not in _SOURCES:
            errors.append(f"source must be one of {sorted(_SOURCES)}")
        if self.submitted_generation is not None and (
            isinstance(self.submitted_generation, bool)
            or not isinstance(self.submitted_generation, int)
            or self.submitted_generation < 0
        ):
            errors.append("submitted_generation must be a non-negative integer")
        return errors

    @staticmethod
    def from_body(environment_id: str, body: dict[str, Any]) -> IntentSubmission:
        return IntentSubmission(
            environment_id=environment_id,
            source=body.get("source", "manual"),
            submitted_generation=body.get("submitted_generation"),
        )


@dataclass
class ActivityReport:
    """POST /v1/environments/{id}/activity body."""
    environment_id: str
    at: float | None = None

    def validate(self) -> list[str]:
        errors = validate_environment_id(self.environment_id)
        if self.at is not None and (isinstance(self.at, bool)
                                    or not isinstance(self.at, (int, float))):
            errors.append("at must be a unix timestamp")
        return errors


@dataclass
class ClosureReport:
    """POST /v1/environments/{id}/close body."""
    environment_id: str
    closed: bool = True

    def validate(self) -> list[str]:
        errors = validate_environment_id(self.environment_id)
        if not isinstance(self.closed, bool):
            errors.append("closed must be a boolean")
        return errors


@dataclass
class SubmitResponse:
    """202 response for anything enqueued."""
    environment_id: str
    id: str
    status: str
    message: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ConflictResponse:
    """409 response when the caller's view of the record is stale."""
    environment_id: str
    submitted_generation: int
    current_generation: int
    state: str
    message: str = "environment has moved on; re-read its state and resubmit"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
