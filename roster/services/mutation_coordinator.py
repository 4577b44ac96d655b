from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Iterable, Mapping
from typing import Any

import pydantic

from roster.domain.errors import MutationError, Outcome, PartialFailureError, ValidationError
from roster.domain.models import EmployeeCreate, EmployeeStatus, EmployeeUpdate
from roster.domain.state_machine import MutationState, can_transition
from roster.services.roster_query import RosterQueryEngine
from roster.services.store import RosterStore

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("name", "email", "position")

StateListener = Callable[[MutationState], None]


def _plural(count: int) -> str:
    return "employee" if count == 1 else "employees"


def validate_required(data: Mapping[str, Any], *, partial: bool = False) -> None:
    missing = []
    for name in REQUIRED_FIELDS:
        if partial and name not in data:
            continue
        value = data.get(name)
        if value is None or not str(value).strip():
            missing.append(name)
    if missing:
        raise ValidationError(f"Required fields must not be empty: {', '.join(missing)}", missing)


def build_create(data: Mapping[str, Any] | EmployeeCreate) -> EmployeeCreate:
    raw = data.model_dump() if isinstance(data, EmployeeCreate) else dict(data)
    validate_required(raw)
    for name in REQUIRED_FIELDS:
        raw[name] = str(raw[name]).strip()
    try:
        return EmployeeCreate.model_validate(raw)
    except pydantic.ValidationError as exc:
        raise ValidationError(f"Invalid employee data: {exc.errors()[0]['msg']}") from exc


def build_update(data: Mapping[str, Any] | EmployeeUpdate) -> EmployeeUpdate:
    raw = data.model_dump(exclude_unset=True) if isinstance(data, EmployeeUpdate) else dict(data)
    validate_required(raw, partial=True)
    for name in REQUIRED_FIELDS:
        if name in raw:
            raw[name] = str(raw[name]).strip()
    try:
        return EmployeeUpdate.model_validate(raw)
    except pydantic.ValidationError as exc:
        raise ValidationError(f"Invalid employee data: {exc.errors()[0]['msg']}") from exc


class MutationCoordinator:
    """Applies roster writes and keeps the query engine consistent afterwards.

    Consistency is read-after-write: a successful write re-fetches the
    current query instead of patching the cached page. Bulk operations clear
    the selection whatever their outcome. Failures are reported, never
    retried.
    """

    def __init__(self, store: RosterStore, engine: RosterQueryEngine) -> None:
        self._store = store
        self._engine = engine
        self._state = MutationState.IDLE
        self._last_error: str | None = None
        self._listeners: list[StateListener] = []

    @property
    def state(self) -> MutationState:
        return self._state

    @property
    def last_error(self) -> str | None:
        return self._last_error

    def on_change(self, listener: StateListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    async def create(self, data: Mapping[str, Any] | EmployeeCreate) -> Outcome:
        try:
            record = build_create(data)
        except ValidationError as exc:
            return Outcome.failure(str(exc))

        async def _insert() -> None:
            await self._store.insert(record)

        return await self._submit(
            _insert,
            success_message="Employee added successfully",
            failure_message="Operation failed",
        )

    async def update(self, employee_id: str, data: Mapping[str, Any] | EmployeeUpdate) -> Outcome:
        try:
            partial = build_update(data)
        except ValidationError as exc:
            return Outcome.failure(str(exc))

        async def _update() -> None:
            await self._store.update_by_id(employee_id, partial)

        return await self._submit(
            _update,
            success_message="Employee updated successfully",
            failure_message="Operation failed",
        )

    async def delete(self, employee_id: str) -> Outcome:
        async def _delete() -> None:
            await self._store.delete_by_id(employee_id)

        return await self._submit(
            _delete,
            success_message="Employee deleted successfully",
            failure_message="Failed to delete employee",
        )

    async def bulk_delete(self, ids: Iterable[str] | None = None) -> Outcome:
        targets = self._bulk_targets(ids)
        if not targets:
            return Outcome.failure("No employees selected")

        async def _delete_many() -> None:
            await self._store.delete_by_ids(targets)

        return await self._submit(
            _delete_many,
            success_message=f"{len(targets)} {_plural(len(targets))} deleted successfully",
            failure_message="Failed to delete employees",
            bulk=True,
        )

    async def bulk_set_status(self, ids: Iterable[str] | None, status: EmployeeStatus | str) -> Outcome:
        try:
            target_status = EmployeeStatus(status)
        except ValueError:
            return Outcome.failure(f"Unknown status: {status}")
        targets = self._bulk_targets(ids)
        if not targets:
            return Outcome.failure("No employees selected")

        async def _update_many() -> None:
            await self._store.update_by_ids(targets, EmployeeUpdate(status=target_status))

        return await self._submit(
            _update_many,
            success_message=f"{len(targets)} {_plural(len(targets))} status updated to {target_status.value}",
            failure_message="Failed to update employees",
            bulk=True,
        )

    def _bulk_targets(self, ids: Iterable[str] | None) -> list[str]:
        source = self._engine.selection if ids is None else ids
        return sorted({item for item in source if item})

    async def _submit(
        self,
        action: Callable[[], Awaitable[None]],
        *,
        success_message: str,
        failure_message: str,
        bulk: bool = False,
    ) -> Outcome:
        if self._state != MutationState.IDLE:
            return Outcome.failure("Another change is still being submitted")

        self._transition(MutationState.SUBMITTING)
        try:
            try:
                await action()
            except Exception as exc:
                outcome = self._record_failure(exc, failure_message)
                self._transition(MutationState.FAILED)
            else:
                self._last_error = None
                outcome = Outcome.success(success_message)
                self._transition(MutationState.SUCCESS)

            if bulk:
                self._engine.clear_selection()
            if outcome.ok or bulk:
                refreshed = await self._engine.refresh()
                if not refreshed.ok:
                    logger.warning("re-fetch after mutation failed", extra={"error": refreshed.message})
            return outcome
        finally:
            self._state = MutationState.IDLE
            self._notify()

    def _record_failure(self, exc: Exception, failure_message: str) -> Outcome:
        failed_ids = exc.failed_ids if isinstance(exc, PartialFailureError) else ()
        error = MutationError(f"{failure_message}: {exc}", failed_ids)
        self._last_error = str(error)
        logger.warning(
            "roster mutation failed",
            extra={"error": str(exc), "failed_ids": list(error.failed_ids)},
        )
        return Outcome.failure(str(error))

    def _transition(self, target: MutationState) -> None:
        if not can_transition(self._state, target):
            raise RuntimeError(f"invalid mutation transition {self._state} -> {target}")
        self._state = target
        self._notify()

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self._state)
            except Exception:
                logger.exception("mutation listener failed")
