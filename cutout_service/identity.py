"""
Identity context.

The current identity is held by an explicit `SessionContext` rather than
module state. Interested parties subscribe to sign-in/sign-out changes and
receive the new identity (or None).
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
from threading import Lock
from typing import Callable, List, Optional

import requests

from .errors import AuthenticationError
from .rest import RestClient

logger = logging.getLogger(__name__)

IdentityListener = Callable[[Optional["Identity"]], None]


@dataclass(frozen=True)
class Identity:
    user_id: str
    email: Optional[str] = None


class SessionContext:
    def __init__(self, identity: Optional[Identity] = None):
        self._identity = identity
        self._listeners: List[IdentityListener] = []
        self._lock = Lock()

    @property
    def identity(self) -> Optional[Identity]:
        return self._identity

    @property
    def authenticated(self) -> bool:
        return self._identity is not None

    def subscribe(self, listener: IdentityListener) -> Callable[[], None]:
        """Register `listener` and return a callable that unregisters it."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def sign_in(self, identity: Identity) -> None:
        self._set(identity)

    def sign_out(self) -> None:
        self._set(None)

    def _set(self, identity: Optional[Identity]) -> None:
        with self._lock:
            if identity == self._identity:
                return
            self._identity = identity
            listeners = list(self._listeners)
        logger.info("Identity changed: %s", identity.user_id if identity else "anonymous")
        for listener in listeners:
            listener(identity)


class RestIdentityResolver:
    """Resolve a bearer token into an identity via the platform's auth endpoint."""

    def __init__(self, client: RestClient):
        self.client = client

    def resolve(self, token: str) -> Identity:
        try:
            payload = self.client.get_user(token)
        except requests.HTTPError as exc:
            raise AuthenticationError("Invalid or expired access token") from exc
        except (requests.RequestException, ValueError) as exc:
            raise AuthenticationError(f"Could not verify access token: {exc}") from exc
        user_id = payload.get("id")
        if not user_id:
            raise AuthenticationError("Auth response did not include a user id")
        return Identity(user_id=str(user_id), email=payload.get("email"))
