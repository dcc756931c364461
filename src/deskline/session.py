"""
Session store and role resolver.

States: unauthenticated -> authenticating -> role_resolving -> ready(role),
and back to unauthenticated on sign-out. Only provider session events move
the state.

The identity is updated inside the provider's notification callback, so
observers see it immediately. The role lookup is not: it is posted to the
event loop with call_soon and runs as its own task once the callback has
returned. The provider's notification path and the role lookup share the same
backend client and must not nest.

A failed lookup, or a user with no role row, resolves to Role.USER.
Resolution completes exactly once per session; results from a superseded
session are dropped.
"""

import asyncio
import logging
from enum import Enum
from typing import Callable, Optional

from deskline.errors import RoleResolutionFailed, SessionUnavailable
from deskline.models.events import SessionEvent
from deskline.models.identity import Identity, Role
from deskline.ports import IdentityProvider, RoleStore

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATING = "authenticating"
    ROLE_RESOLVING = "role_resolving"
    READY = "ready"


class SessionSnapshot:
    __slots__ = ("state", "identity", "role")

    def __init__(self, state: SessionState, identity: Optional[Identity], role: Optional[Role]):
        self.state = state
        self.identity = identity
        self.role = role

    def __repr__(self) -> str:
        uid = self.identity.id if self.identity else None
        return f"SessionSnapshot(state={self.state.value!r}, identity={uid!r}, role={self.role})"


SessionObserver = Callable[[SessionSnapshot], None]


class SessionStore:
    def __init__(
        self,
        provider: IdentityProvider,
        role_store: RoleStore,
        *,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ):
        self._provider = provider
        self._role_store = role_store
        self._loop = loop
        self._identity: Optional[Identity] = None
        self._role: Optional[Role] = None
        self._state = SessionState.UNAUTHENTICATED
        self._generation = 0
        self._completed_generation = 0
        self._pending: Optional[asyncio.Task] = None
        self._observers: list[SessionObserver] = []
        self._waiters: list[asyncio.Future] = []
        self._remove_listener: Optional[Callable[[], None]] = None
        self.last_role_error: Optional[RoleResolutionFailed] = None
        self.resolutions = 0

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_admin(self) -> bool:
        return self._state == SessionState.READY and self._role == Role.ADMIN

    def current_identity(self) -> Optional[Identity]:
        return self._identity

    def current_role(self) -> Optional[Role]:
        """Resolved role, or None while unknown."""
        return self._role if self._state == SessionState.READY else None

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(self._state, self._identity, self.current_role())

    def require_identity(self) -> Identity:
        if self._identity is None:
            raise SessionUnavailable()
        return self._identity

    def subscribe(self, observer: SessionObserver) -> Callable[[], None]:
        self._observers.append(observer)

        def remove() -> None:
            try:
                self._observers.remove(observer)
            except ValueError:
                pass
        return remove

    async def start(self) -> None:
        """Listen for session changes first, then pick up an existing session."""
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        if self._remove_listener is None:
            self._remove_listener = self._provider.on_session_change(self._on_session_change)
        if self._identity is not None:
            return

        self._set_state(SessionState.AUTHENTICATING)
        try:
            identity = await self._provider.get_current_session()
        except Exception as e:
            logger.warning("Could not read existing session: %s", e)
            identity = None

        # A listener event may have overtaken the initial read
        if self._state == SessionState.AUTHENTICATING:
            if identity is None:
                self._set_state(SessionState.UNAUTHENTICATED)
                self._wake_waiters()
            else:
                self._on_session_change(SessionEvent.INITIAL_SESSION, identity)

    async def sign_out(self) -> None:
        await self._provider.sign_out()

    async def wait_ready(self, timeout: Optional[float] = None) -> Role:
        """Wait for the role. Raises SessionUnavailable when signed out."""
        if self._state == SessionState.READY:
            return self._role  # type: ignore[return-value]
        if self._state == SessionState.UNAUTHENTICATED:
            raise SessionUnavailable()
        fut = asyncio.get_running_loop().create_future()
        self._waiters.append(fut)
        try:
            return await asyncio.wait_for(fut, timeout=timeout)
        finally:
            if fut in self._waiters:
                self._waiters.remove(fut)

    def close(self) -> None:
        if self._remove_listener is not None:
            self._remove_listener()
            self._remove_listener = None
        self._generation += 1
        self._cancel_pending()

    def _on_session_change(self, event: str, identity: Optional[Identity]) -> None:
        previous = self._identity
        if (
            identity is not None
            and previous is not None
            and identity.id == previous.id
        ):
            # Token refresh or repeated sign-in for the same account
            self._identity = identity
            logger.debug("Session %s for %s keeps identity", event, identity.id)
            return
        if identity is None and previous is None and self._state == SessionState.UNAUTHENTICATED:
            logger.debug("Session %s while signed out, nothing to do", event)
            return

        self._generation += 1
        self._cancel_pending()
        self._identity = identity
        self._role = None

        if identity is None:
            logger.info("Signed out")
            self._set_state(SessionState.UNAUTHENTICATED)
            self._wake_waiters()
            return

        logger.info("Session %s for %s, resolving role", event, identity.id)
        self._set_state(SessionState.ROLE_RESOLVING)
        loop = self._loop or asyncio.get_running_loop()
        loop.call_soon(self._begin_resolution, self._generation, identity.id)

    def _begin_resolution(self, generation: int, user_id: str) -> None:
        if generation != self._generation:
            return
        loop = self._loop or asyncio.get_running_loop()
        self._pending = loop.create_task(self._resolve(generation, user_id))

    async def _resolve(self, generation: int, user_id: str) -> None:
        role = Role.USER
        try:
            found = await self._role_store.get_role(user_id)
            if found is None:
                logger.info("No role row for %s, using %s", user_id, role.value)
            else:
                role = Role(found)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.last_role_error = RoleResolutionFailed(user_id, f"Role lookup failed: {e}")
            logger.warning("Role lookup failed for %s, using %s: %s", user_id, role.value, e)
        self._complete(generation, role)

    def _complete(self, generation: int, role: Role) -> None:
        if generation != self._generation or self._completed_generation == generation:
            return
        self._completed_generation = generation
        self._pending = None
        self._role = role
        self.resolutions += 1
        logger.info("Role for %s resolved to %s", self._identity.id if self._identity else None, role.value)
        self._set_state(SessionState.READY)
        self._wake_waiters()

    def _cancel_pending(self) -> None:
        if self._pending is not None and not self._pending.done():
            self._pending.cancel()
        self._pending = None

    def _set_state(self, state: SessionState) -> None:
        self._state = state
        snap = self.snapshot()
        for observer in list(self._observers):
            try:
                observer(snap)
            except Exception:
                logger.exception("Session observer failed")

    def _wake_waiters(self) -> None:
        for fut in list(self._waiters):
            if fut.done():
                continue
            if self._state == SessionState.READY:
                fut.set_result(self._role)
            else:
                fut.set_exception(SessionUnavailable())
