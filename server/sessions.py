"""Session registry: who is connected and who holds DJ authority.

Two kinds of sessions live here. Authority sessions are created by the
password-gated login and keyed by a server-issued random token. Guest
sessions are created implicitly for every socket connection and keyed by
the connection id; they exist for presence only and never carry authority,
even when the guest later registers a platform credential.

All methods are synchronous: the server runs on one event loop, so each
call completes without interleaving with other handlers.
"""

from __future__ import annotations
from datetime import timedelta
import logging
import secrets
from typing import Dict, List, Optional

from shared.models import now
from .errors import InvalidCredentials, MissingField, NotAuthorized, NotFound
from .models import Session

logger = logging.getLogger(__name__)


class SessionRegistry:
    def __init__(self, room_password: str, ttl_seconds: Optional[int] = None):
        self._room_password = room_password
        self._ttl = timedelta(seconds=ttl_seconds) if ttl_seconds else None
        self._sessions: Dict[str, Session] = {}
        self._guests: Dict[str, Session] = {}

    def grant_authority(self, username: str, password: str) -> Session:
        if not username or not password:
            raise MissingField("Missing username or password")
        if not secrets.compare_digest(password.encode(), self._room_password.encode()):
            logger.info("Rejected DJ login for %s: bad password", username)
            raise InvalidCredentials("Invalid password")
        session = Session(token=secrets.token_hex(16), username=username, authority=True)
        self._sessions[session.token] = session
        logger.info("Created DJ session for %s (active=%d)", username, len(self._sessions))
        return session

    def lookup(self, token: Optional[str]) -> Session:
        session = self._sessions.get(token) if token else None
        if session is None:
            raise NotFound("Invalid token")
        if self._ttl is not None and now() - session.created_at > self._ttl:
            self._sessions.pop(session.token, None)
            logger.info("DJ session for %s expired", session.username)
            raise NotFound("Token expired")
        return session

    def require_authority(self, token: Optional[str]) -> Session:
        """Resolve `token` to a DJ session or raise `NotAuthorized`."""
        try:
            session = self.lookup(token)
        except NotFound:
            raise NotAuthorized("Not authorized as DJ") from None
        if not session.authority:
            raise NotAuthorized("Not authorized as DJ")
        return session

    def revoke(self, token: str) -> bool:
        session = self._sessions.pop(token, None)
        if session is None:
            return False
        logger.info("DJ session for %s revoked", session.username)
        return True

    def attach_connection(self, connection_id: str, display_name: str) -> Session:
        """Register (or rename) the guest session behind a socket."""
        guest = self._guests.get(connection_id)
        if guest is None:
            guest = Session(token=connection_id, username=display_name, connection_id=connection_id)
            self._guests[connection_id] = guest
            logger.info("Connection %s joined as %s", connection_id, display_name)
        elif guest.username != display_name:
            logger.info("Connection %s renamed %s -> %s", connection_id, guest.username, display_name)
            guest.username = display_name
        return guest

    def detach_connection(self, connection_id: str) -> bool:
        """Forget the guest behind `connection_id`. Safe to call repeatedly."""
        guest = self._guests.pop(connection_id, None)
        for session in self._sessions.values():
            if session.connection_id == connection_id:
                session.connection_id = None
        if guest is None:
            return False
        logger.info("Connection %s (%s) left", connection_id, guest.username)
        return True

    def bind_connection(self, connection_id: str, token: Optional[str] = None, access_token: Optional[str] = None, device_id: Optional[str] = None) -> Session:
        """Record the platform credential and device a socket registered.

        With a DJ token the credential is attached to that authority session
        (it is what the platform poller uses); without one it stays on the
        guest session and grants nothing.
        """
        if token:
            session = self.require_authority(token)
            session.connection_id = connection_id
        else:
            session = self._guests.get(connection_id)
            if session is None:
                raise NotFound("Unknown connection")
        if access_token:
            session.access_token = access_token
            session.credentials_at = now()
        if device_id:
            session.device_id = device_id
        return session

    def credentialed_authority(self) -> Optional[Session]:
        """The DJ session that most recently registered a platform credential."""
        candidates = [s for s in self._sessions.values() if s.access_token and s.credentials_at]
        if not candidates:
            return None
        return max(candidates, key=lambda s: s.credentials_at)

    def connected_users(self) -> List[str]:
        return [g.username for g in self._guests.values()]

    def connection_count(self) -> int:
        return len(self._guests)
