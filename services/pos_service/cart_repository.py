"""
Terminal Session Repository

Redis-based persistence for POS terminal sessions. One key per terminal holds
the whole TerminalSession (cart, checkout state, pending transaction) as JSON.

Data Format (Redis):
    Key:   "pos:session:till-01"
    Value: '{"terminal_id": "till-01", "branch_id": 1, "state": "building",
             "cart": {"lines": {"service_1": {...}}, "subtotal": "3500", ...}}'

    Key:   "pos:lock:till-01"
    Value: lock token held while one caller mutates the session

TTL Management:
    - Each session is stored with a 12-hour expiration (one trading day)
    - TTL resets on every save
    - An expired session simply has to be reopened by the terminal

Concurrency:
    HTTP requests from the till and payment events arriving on the Kafka
    consumer thread both mutate the same session. edit() serializes them with
    a Redis lock per terminal; the lock is not reentrant, so never nest edit()
    calls for the same terminal.

Example Usage:
    ```python
    sessions = SessionRepository(redis_client)
    sessions.open("till-01", branch_id=1)

    with sessions.edit("till-01") as session:
        engine.add_item(session, ItemKind.SERVICE, 3)
    ```
"""

import logging
from contextlib import contextmanager
from typing import Iterator, Optional

import redis

from services.pos_service.cart import Cart, TerminalSession
from services.pos_service.errors import SessionNotFound

logger = logging.getLogger(__name__)


class SessionRepository:
    """Repository for POS terminal sessions in Redis."""

    SESSION_KEY_PREFIX = "pos:session:"
    LOCK_KEY_PREFIX = "pos:lock:"
    SESSION_TTL = 43200  # 12 hours
    LOCK_TIMEOUT = 30
    LOCK_WAIT = 10

    def __init__(self, redis_client: redis.Redis):
        """Initialize session repository."""
        self.redis = redis_client

    def _key(self, terminal_id: str) -> str:
        return f"{self.SESSION_KEY_PREFIX}{terminal_id}"

    def get(self, terminal_id: str) -> Optional[TerminalSession]:
        """Load a session, None when it never existed or has expired."""
        raw = self.redis.get(self._key(terminal_id))
        if raw is None:
            return None
        return TerminalSession.model_validate_json(raw)

    def save(self, session: TerminalSession) -> None:
        self.redis.set(self._key(session.terminal_id), session.model_dump_json(), ex=self.SESSION_TTL)
        logger.debug(f"Saved session for terminal {session.terminal_id}", extra={"terminal_id": session.terminal_id})

    def delete(self, terminal_id: str) -> None:
        self.redis.delete(self._key(terminal_id))
        logger.info(f"Closed session for terminal {terminal_id}", extra={"terminal_id": terminal_id})

    def open(self, terminal_id: str, branch_id: int) -> TerminalSession:
        """
        Return the terminal's session, creating an empty one if needed.

        An existing session bound to another branch is replaced, since a till
        cannot carry a cart across branches.
        """
        with self._lock(terminal_id):
            session = self.get(terminal_id)
            if session is not None and session.branch_id == branch_id:
                return session

            cart = Cart()
            session = TerminalSession(terminal_id=terminal_id, branch_id=branch_id, cart=cart)
            self.save(session)
            logger.info(
                f"Opened session for terminal {terminal_id} at branch {branch_id}",
                extra={"terminal_id": terminal_id},
            )
            return session

    @contextmanager
    def edit(self, terminal_id: str, missing_ok: bool = False) -> Iterator[Optional[TerminalSession]]:
        """
        Lock, load and yield the session, then save it.

        The session is saved even when the block raises, so state changes made
        before a domain error (e.g. a failed checkout) are kept. A missing
        session raises SessionNotFound, or yields None with missing_ok.
        """
        with self._lock(terminal_id):
            session = self.get(terminal_id)
            if session is None:
                if not missing_ok:
                    raise SessionNotFound(f"No open session for terminal {terminal_id}")
                yield None
                return
            try:
                yield session
            finally:
                self.save(session)

    def _lock(self, terminal_id: str):
        return self.redis.lock(
            f"{self.LOCK_KEY_PREFIX}{terminal_id}",
            timeout=self.LOCK_TIMEOUT,
            blocking_timeout=self.LOCK_WAIT,
        )
