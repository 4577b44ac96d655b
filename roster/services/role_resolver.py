from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from roster.domain.errors import AuthResolutionError
from roster.domain.models import DEFAULT_ROLE_ASSIGNMENT, RoleAssignment
from roster.domain.permissions import normalize_assignments

logger = logging.getLogger(__name__)

RoleFetcher = Callable[[str], Awaitable[list[RoleAssignment]]]


class RoleResolver:
    """Resolves the role assignments governing an identity.

    Failures degrade to the least-privileged default assignment rather than
    leaving the caller unresolved. ``submit`` collapses overlapping requests:
    starting a new resolution cancels the one still in flight.
    """

    def __init__(self, fetch_roles: RoleFetcher) -> None:
        self._fetch_roles = fetch_roles
        self._inflight: asyncio.Task[frozenset[RoleAssignment]] | None = None

    async def resolve(self, identity_id: str) -> frozenset[RoleAssignment]:
        try:
            assignments = await self._fetch_roles(identity_id)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            error = AuthResolutionError(f"role resolution failed for {identity_id}: {exc}")
            logger.warning(
                "role resolution degraded to default",
                extra={"identity_id": identity_id, "error": str(error)},
            )
            return frozenset({DEFAULT_ROLE_ASSIGNMENT})
        return normalize_assignments(assignments)

    def submit(self, identity_id: str) -> asyncio.Task[frozenset[RoleAssignment]]:
        previous = self._inflight
        if previous is not None and not previous.done():
            logger.debug("superseding in-flight role resolution", extra={"identity_id": identity_id})
            previous.cancel()
        task = asyncio.create_task(self.resolve(identity_id))
        self._inflight = task
        return task

    def cancel(self) -> None:
        if self._inflight is not None and not self._inflight.done():
            self._inflight.cancel()
        self._inflight = None
