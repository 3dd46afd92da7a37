"""Exceptions raised by the broker and trigger services."""

from __future__ import annotations

from dataclasses import dataclass, field


class PuddingError(Exception):
    """Base class of all service errors."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


@dataclass(frozen=True)
class FieldViolation:
    """One invalid field of a request."""

    field: str
    description: str


class BadRequestError(PuddingError):
    """The request is invalid; carries the offending fields."""

    def __init__(self, message: str, *violations: FieldViolation) -> None:
        super().__init__(message)
        self.violations = list(violations)


class InternalError(PuddingError):
    """The service failed to process a valid request."""

    def __init__(
        self,
        message: str,
        reason: str = "",
        domain: str = "",
        metadata: dict[str, str] | None = None,
    ) -> None:
        super().__init__(message)
        self.reason = reason
        self.domain = domain
        self.metadata = dict(metadata or {})


class DuplicateMessageError(PuddingError):
    """A message with the same key already exists in the delay storage."""

    def __init__(self, message: str = "duplicate message") -> None:
        super().__init__(message)


__all__ = [
    "PuddingError",
    "FieldViolation",
    "BadRequestError",
    "InternalError",
    "DuplicateMessageError",
    "field",
]