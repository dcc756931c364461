"""
Identity provider over the auth REST endpoints.

Password sign-in, token refresh and sign-out. Every transition is announced
to `on_session_change` listeners synchronously, in registration order.
"""

import logging
from typing import Any, Callable, Optional

from deskline.errors import AuthError, DesklineError
from deskline.models.events import SessionEvent
from deskline.models.identity import Identity
from deskline.ports import SessionCallback
from deskline.transport.http import HttpClient

logger = logging.getLogger(__name__)


def _identity_from_user(user: dict[str, Any]) -> Identity:
    meta = user.get("user_metadata") or {}
    email = user.get("email") or ""
    name = meta.get("full_name") or (email.split("@")[0] if email else user["id"])
    return Identity(id=user["id"], email=email, display_name=name)


class AuthAPI:
    def __init__(self, http: HttpClient):
        self._http = http
        self._listeners: list[SessionCallback] = []
        self._identity: Optional[Identity] = None
        self._refresh_token: Optional[str] = None

    @property
    def access_token(self) -> Optional[str]:
        return self._http.token

    @property
    def refresh_token(self) -> Optional[str]:
        return self._refresh_token

    def on_session_change(self, callback: SessionCallback) -> Callable[[], None]:
        self._listeners.append(callback)

        def remove() -> None:
            try:
                self._listeners.remove(callback)
            except ValueError:
                pass
        return remove

    def _notify(self, event: str, identity: Optional[Identity]) -> None:
        logger.debug("Session event %s for %s", event, identity.id if identity else None)
        for listener in list(self._listeners):
            try:
                listener(event, identity)
            except Exception:
                logger.exception("Session listener failed on %s", event)

    def restore(self, access_token: str, refresh_token: Optional[str] = None) -> None:
        """Reuse saved credentials. The identity is read on get_current_session()."""
        self._http.set_token(access_token)
        self._refresh_token = refresh_token

    async def get_current_session(self) -> Optional[Identity]:
        if not self._http.token:
            return None
        if self._identity is not None:
            return self._identity
        try:
            user = await self._http.get("/auth/v1/user")
        except DesklineError as e:
            if e.details and e.details.get("status_code") == 401:
                self._http.set_token(None)
                return await self._try_refresh()
            raise AuthError(f"Failed to read current session: {e}")
        self._identity = _identity_from_user(user)
        return self._identity

    async def sign_in(self, email: str, password: str) -> Identity:
        try:
            result = await self._http.post(
                "/auth/v1/token?grant_type=password",
                {"email": email, "password": password},
                authenticated=False,
            )
        except Exception as e:
            raise AuthError(f"Failed to sign in: {e}")
        self._http.set_token(result["access_token"])
        self._refresh_token = result.get("refresh_token")
        self._identity = _identity_from_user(result["user"])
        self._notify(SessionEvent.SIGNED_IN, self._identity)
        return self._identity

    async def refresh(self) -> Identity:
        if not self._refresh_token:
            raise AuthError("No refresh token")
        try:
            result = await self._http.post(
                "/auth/v1/token?grant_type=refresh_token",
                {"refresh_token": self._refresh_token},
                authenticated=False,
            )
        except Exception as e:
            raise AuthError(f"Failed to refresh session: {e}")
        self._http.set_token(result["access_token"])
        self._refresh_token = result.get("refresh_token", self._refresh_token)
        self._identity = _identity_from_user(result["user"])
        self._notify(SessionEvent.TOKEN_REFRESHED, self._identity)
        return self._identity

    async def _try_refresh(self) -> Optional[Identity]:
        """Expired access token: trade the refresh token for a new one, if we have it."""
        if not self._refresh_token:
            return None
        try:
            return await self.refresh()
        except AuthError as e:
            logger.warning("Session expired and refresh failed: %s", e)
            self._refresh_token = None
            return None

    async def request_password_reset(self, email: str) -> None:
        try:
            await self._http.post("/auth/v1/recover", {"email": email}, authenticated=False)
        except Exception as e:
            raise AuthError(f"Failed to request password reset: {e}")

    async def sign_out(self) -> None:
        try:
            if self._http.token:
                await self._http.post("/auth/v1/logout")
        except DesklineError as e:
            # Local sign-out proceeds even if the server already dropped the token
            logger.warning("Remote sign-out failed: %s", e)
        finally:
            self._http.set_token(None)
            self._refresh_token = None
            self._identity = None
            self._notify(SessionEvent.SIGNED_OUT, None)
