from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass


class RosterError(Exception):
    pass


class AuthResolutionError(RosterError):
    pass


class QueryError(RosterError):
    pass


class ValidationError(RosterError):
    def __init__(self, message: str, fields: Iterable[str] = ()) -> None:
        super().__init__(message)
        self.fields = tuple(fields)


class MutationError(RosterError):
    def __init__(self, message: str, failed_ids: Iterable[str] = ()) -> None:
        super().__init__(message)
        self.failed_ids = tuple(failed_ids)


class StoreError(Exception):
    """Raised by roster store collaborators when a remote call fails."""


class PartialFailureError(StoreError):
    def __init__(self, message: str, failed_ids: Iterable[str]) -> None:
        super().__init__(message)
        self.failed_ids = tuple(failed_ids)


@dataclass(frozen=True)
class Outcome:
    ok: bool
    message: str | None = None
    superseded: bool = False

    @classmethod
    def success(cls, message: str | None = None) -> Outcome:
        return cls(ok=True, message=message)

    @classmethod
    def failure(cls, message: str) -> Outcome:
        return cls(ok=False, message=message)

    @classmethod
    def stale(cls) -> Outcome:
        return cls(ok=True, message=None, superseded=True)
