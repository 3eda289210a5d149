"""
Identity registry and acting-identity context.

Authentication is simulated: identities are looked up by username and no
credential is verified. The acting identity is request scoped through a
ContextVar, so concurrent asyncio tasks each see their own user.
"""

import logging
import threading
from contextlib import contextmanager
from contextvars import ContextVar
from copy import deepcopy
from datetime import datetime, timezone
from typing import Dict, List, Optional
from uuid import uuid4

from .errors import NoAuthenticatedUser, NotFound
from .governance_models import Identity

logger = logging.getLogger(__name__)

_acting_identity: ContextVar[Optional[Identity]] = ContextVar("acting_identity", default=None)


def current_identity() -> Optional[Identity]:
    """The identity governance acts under in the current context, if any."""
    return _acting_identity.get()


def require_identity() -> Identity:
    identity = _acting_identity.get()
    if identity is None:
        raise NoAuthenticatedUser("No authenticated user")
    return identity


@contextmanager
def acting_as(identity: Optional[Identity]):
    """Run a block under the given acting identity (None clears it)."""
    token = _acting_identity.set(identity)
    try:
        yield identity
    finally:
        _acting_identity.reset(token)


class IdentityRegistry:
    """In-memory identity store."""

    def __init__(self, with_default_user: bool = True):
        self._identities: Dict[str, Identity] = {}
        self._lock = threading.RLock()
        self.default_user: Optional[Identity] = None
        if with_default_user:
            self.default_user = Identity(
                id="user_default",
                username="demo-user",
                email="demo@example.com",
                roles=["operator", "viewer"],
                permissions=[
                    "span:create",
                    "span:read",
                    "span:simulate",
                    "browser:navigate",
                    "browser:read",
                ],
            )
            self._identities[self.default_user.id] = self.default_user

    def create_user(
        self,
        username: str,
        email: str = "",
        roles: Optional[List[str]] = None,
        permissions: Optional[List[str]] = None,
        status: str = "active",
    ) -> str:
        if not username:
            raise ValueError("username is required")
        user_id = f"user_{uuid4().hex[:12]}"
        identity = Identity(
            id=user_id,
            username=username,
            email=email,
            roles=list(roles or []),
            permissions=list(permissions or []),
            status=status,
        )
        with self._lock:
            self._identities[user_id] = identity
        logger.info("Identity created (user_id: %s, username: %s)", user_id, username)
        return user_id

    def get_user(self, user_id: str) -> Identity:
        with self._lock:
            identity = self._identities.get(user_id)
            if identity is None:
                raise NotFound("Identity", user_id)
            return deepcopy(identity)

    def get_users(self) -> List[Identity]:
        with self._lock:
            return [deepcopy(i) for i in self._identities.values()]

    def current_user(self) -> Optional[Identity]:
        return current_identity()

    def authenticate(self, username: str) -> Identity:
        """
        Simulated login: find the identity by username and make it the acting
        identity for the current context.
        """
        with self._lock:
            identity = next(
                (i for i in self._identities.values() if i.username == username), None
            )
            if identity is None:
                raise NotFound("Identity", username)
            if identity.status != "active":
                raise NoAuthenticatedUser(f"Identity {username} is {identity.status}")
            identity.last_active = datetime.now(timezone.utc)
            snapshot = deepcopy(identity)
        _acting_identity.set(snapshot)
        logger.info("Identity authenticated (user_id: %s)", snapshot.id)
        return snapshot
