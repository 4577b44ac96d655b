from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from roster.domain.models import Identity, RoleAssignment
from roster.domain.permissions import ANONYMOUS, AuthorizationState, Resolved, Unresolved
from roster.domain.state_machine import AuthEvent
from roster.services.role_resolver import RoleResolver
from roster.services.store import IdentityProvider

logger = logging.getLogger(__name__)

StateListener = Callable[[AuthorizationState], None]


class SessionStore:
    """Holds the authorization state of one session.

    Each identity change from the provider starts exactly one role
    resolution. A newer identity change supersedes the resolution still in
    flight, so only the latest identity's roles are ever applied.
    """

    def __init__(self, provider: IdentityProvider, resolver: RoleResolver | None = None) -> None:
        self._provider = provider
        self._resolver = resolver or RoleResolver(provider.resolve_roles)
        self._state: AuthorizationState = ANONYMOUS
        self._listeners: list[StateListener] = []
        self._generation = 0
        self._pending: asyncio.Task[None] | None = None
        self._unsubscribe = provider.subscribe(self.handle_auth_event)

    def current(self) -> AuthorizationState:
        return self._state

    def on_change(self, handler: StateListener) -> Callable[[], None]:
        self._listeners.append(handler)

        def _unsubscribe() -> None:
            if handler in self._listeners:
                self._listeners.remove(handler)

        return _unsubscribe

    def restore(self) -> None:
        """Pick up a session the provider already holds, e.g. after a restart."""
        identity = self._provider.current_identity()
        if identity is None:
            self.handle_auth_event(AuthEvent.SIGNED_OUT, None)
            return
        self.handle_auth_event(AuthEvent.SIGNED_IN, identity)

    def handle_auth_event(self, event: AuthEvent, identity: Identity | None) -> None:
        if event != AuthEvent.SIGNED_OUT and identity is not None:
            try:
                asyncio.get_running_loop()
            except RuntimeError as exc:
                raise RuntimeError(
                    f"auth event {event.value} must be delivered from a running event loop"
                ) from exc
        self._generation += 1
        generation = self._generation

        if event == AuthEvent.SIGNED_OUT or identity is None:
            self._resolver.cancel()
            self._pending = None
            self._set_state(ANONYMOUS)
            return

        current = self._state
        keep_resolved = (
            event == AuthEvent.TOKEN_REFRESHED
            and isinstance(current, Resolved)
            and current.identity.id == identity.id
        )
        if not keep_resolved:
            self._set_state(Unresolved(identity))

        resolution = self._resolver.submit(identity.id)
        self._pending = asyncio.create_task(self._apply_resolution(generation, identity, resolution))

    async def _apply_resolution(
        self,
        generation: int,
        identity: Identity,
        resolution: asyncio.Task[frozenset[RoleAssignment]],
    ) -> None:
        try:
            roles = await resolution
        except asyncio.CancelledError:
            if generation != self._generation:
                return
            raise
        if generation != self._generation:
            logger.debug("discarding stale role resolution", extra={"identity_id": identity.id})
            return
        self._set_state(Resolved(identity=identity, roles=roles))

    async def settled(self) -> AuthorizationState:
        """Wait until no role resolution is pending and return the state."""
        while self._pending is not None and not self._pending.done():
            await self._pending
        return self._state

    def close(self) -> None:
        self._unsubscribe()
        self._resolver.cancel()
        if self._pending is not None and not self._pending.done():
            self._pending.cancel()
        self._pending = None

    def _set_state(self, state: AuthorizationState) -> None:
        if state == self._state:
            return
        self._state = state
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception:
                logger.exception("session state listener failed")
