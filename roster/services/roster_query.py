from __future__ import annotations

import asyncio
import logging
import math
import os
from collections.abc import Callable, Iterable
from dataclasses import dataclass, replace

from roster.domain.errors import Outcome, QueryError
from roster.domain.models import SORTABLE_COLUMNS, EmployeeRead, SortDirection
from roster.services.store import RosterFilter, RosterPage, RosterSort, RosterStore

logger = logging.getLogger(__name__)

ROSTER_PAGE_SIZE = int(os.getenv("ROSTER_PAGE_SIZE", "10"))

EngineListener = Callable[["RosterQueryEngine"], None]


@dataclass(frozen=True)
class RosterQuery:
    search_text: str = ""
    sort_column: str = "name"
    sort_direction: SortDirection = SortDirection.ASC
    page: int = 1
    page_size: int = ROSTER_PAGE_SIZE

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.page_size

    @property
    def limit(self) -> int:
        return self.page_size


def max_page(total_count: int, page_size: int) -> int:
    return max(1, math.ceil(total_count / page_size))


def clamp_page(page: int, total_count: int, page_size: int) -> int:
    return min(max(page, 1), max_page(total_count, page_size))


class RosterQueryEngine:
    """Filtered, sorted, paginated view over the roster plus the page selection.

    Every setter updates the query and issues one fetch. A fetch still in
    flight when a newer one starts is cancelled and its result discarded, so
    the visible page always belongs to the last query issued.

    State is only mutated from the event loop that drives the engine. Hosts
    with other threads must submit calls through
    ``asyncio.run_coroutine_threadsafe`` on that loop.
    """

    def __init__(
        self,
        store: RosterStore,
        *,
        page_size: int | None = None,
        department_ids: frozenset[str] | None = None,
    ) -> None:
        size = page_size or ROSTER_PAGE_SIZE
        if size < 1:
            raise ValueError("page_size must be positive")
        self._store = store
        self._query = RosterQuery(page_size=size)
        self._applied_query = self._query
        self._department_ids = department_ids
        self._rows: tuple[EmployeeRead, ...] = ()
        self._total_count = 0
        self._selection: set[str] = set()
        self._generation = 0
        self._inflight: asyncio.Task[RosterPage] | None = None
        self._last_error: str | None = None
        self._listeners: list[EngineListener] = []

    @property
    def query(self) -> RosterQuery:
        return self._query

    @property
    def rows(self) -> tuple[EmployeeRead, ...]:
        return self._rows

    @property
    def total_count(self) -> int:
        return self._total_count

    @property
    def page_count(self) -> int:
        return max_page(self._total_count, self._query.page_size)

    @property
    def page_ids(self) -> frozenset[str]:
        return frozenset(item.id for item in self._rows)

    @property
    def selection(self) -> frozenset[str]:
        return frozenset(self._selection)

    @property
    def all_selected(self) -> bool:
        return bool(self._rows) and self._selection == set(self.page_ids)

    @property
    def loading(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    @property
    def last_error(self) -> str | None:
        return self._last_error

    @property
    def department_ids(self) -> frozenset[str] | None:
        return self._department_ids

    def on_change(self, listener: EngineListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    async def fetch(self, query: RosterQuery) -> RosterPage:
        return await self._store.query(
            RosterFilter(search_text=query.search_text, department_ids=self._department_ids),
            RosterSort(column=query.sort_column, direction=query.sort_direction),
            query.offset,
            query.limit,
        )

    async def set_filter(self, text: str) -> Outcome:
        self._query = replace(self._query, search_text=text, page=1)
        return await self._reload()

    async def set_sort(self, column: str, direction: SortDirection = SortDirection.ASC) -> Outcome:
        if column not in SORTABLE_COLUMNS:
            return Outcome.failure(f"Cannot sort by {column}")
        self._query = replace(self._query, sort_column=column, sort_direction=SortDirection(direction), page=1)
        return await self._reload()

    async def toggle_sort(self, column: str) -> Outcome:
        """Flip the direction when re-sorting the same column, else sort ascending."""
        direction = SortDirection.ASC
        if column == self._query.sort_column and self._query.sort_direction == SortDirection.ASC:
            direction = SortDirection.DESC
        return await self.set_sort(column, direction)

    async def set_page(self, page: int) -> Outcome:
        self._query = replace(self._query, page=max(page, 1))
        return await self._reload()

    async def set_department_scope(self, department_ids: frozenset[str] | None) -> Outcome:
        self._department_ids = department_ids
        self._query = replace(self._query, page=1)
        return await self._reload()

    async def refresh(self) -> Outcome:
        return await self._reload()

    def reset(self) -> None:
        """Drop the cached page and any in-flight fetch, e.g. on sign-out."""
        self._generation += 1
        if self._inflight is not None and not self._inflight.done():
            self._inflight.cancel()
        self._inflight = None
        self._query = RosterQuery(page_size=self._query.page_size)
        self._applied_query = self._query
        self._rows = ()
        self._total_count = 0
        self._selection.clear()
        self._last_error = None
        self._notify()

    def select(self, employee_id: str, selected: bool = True) -> bool:
        if selected:
            if employee_id not in self.page_ids:
                return False
            self._selection.add(employee_id)
        else:
            self._selection.discard(employee_id)
        self._notify()
        return True

    def toggle(self, employee_id: str) -> bool:
        return self.select(employee_id, employee_id not in self._selection)

    def select_all(self, selected: bool) -> None:
        self._selection = set(self.page_ids) if selected else set()
        self._notify()

    def select_many(self, employee_ids: Iterable[str]) -> None:
        self._selection = set(employee_ids) & self.page_ids
        self._notify()

    def clear_selection(self) -> None:
        if self._selection:
            self._selection.clear()
            self._notify()

    async def _reload(self) -> Outcome:
        while True:
            self._generation += 1
            generation = self._generation
            previous = self._inflight
            if previous is not None and not previous.done():
                logger.debug("superseding in-flight roster fetch", extra={"generation": generation})
                previous.cancel()

            query = self._query
            task = asyncio.create_task(self.fetch(query))
            self._inflight = task
            try:
                page = await task
            except asyncio.CancelledError:
                if generation != self._generation:
                    return Outcome.stale()
                raise
            except Exception as exc:
                if generation != self._generation:
                    return Outcome.stale()
                return self._fail(exc)

            if generation != self._generation:
                return Outcome.stale()

            clamped = clamp_page(query.page, page.total_count, query.page_size)
            if clamped != query.page:
                logger.debug(
                    "re-clamping roster page",
                    extra={"page": query.page, "clamped": clamped, "total_count": page.total_count},
                )
                self._query = replace(query, page=clamped)
                continue

            self._apply(query, page)
            return Outcome.success()

    def _apply(self, query: RosterQuery, page: RosterPage) -> None:
        self._rows = page.rows
        self._total_count = page.total_count
        self._applied_query = query
        self._selection &= self.page_ids
        self._last_error = None
        self._inflight = None
        self._notify()

    def _fail(self, exc: Exception) -> Outcome:
        error = QueryError(f"Failed to fetch employees: {exc}")
        self._query = self._applied_query
        self._last_error = str(error)
        self._inflight = None
        logger.warning("roster fetch failed", extra={"error": str(exc)})
        self._notify()
        return Outcome.failure(str(error))

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception:
                logger.exception("roster listener failed")
