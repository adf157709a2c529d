"""Per-process registry of live terminal sessions.

Maps a session name to at most one live ``TerminalSession``. Several
subscribers asking for the same name share the same session; it is
dropped from the registry when its client exits.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

from ..engine.errors import NotFoundError
from .session import SessionOptions, TerminalSession, create_session

logger = logging.getLogger(__name__)

SessionFactory = Callable[[str, str, SessionOptions], Awaitable[TerminalSession]]


class SessionRegistry:

    def __init__(self, factory: SessionFactory | None = None) -> None:
        self._factory = factory or create_session
        self._sessions: dict[str, TerminalSession] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def get(self, name: str) -> TerminalSession | None:
        session = self._sessions.get(name)
        if session is not None and session.exited:
            self._sessions.pop(name, None)
            return None
        return session

    def require(self, name: str) -> TerminalSession:
        session = self.get(name)
        if session is None:
            raise NotFoundError("Session", name)
        return session

    def names(self) -> list[str]:
        return [name for name in list(self._sessions) if self.get(name) is not None]

    async def open(
        self, cwd: str, name: str, options: SessionOptions | None = None,
    ) -> TerminalSession:
        """Return the live session *name*, creating it if needed."""
        lock = self._locks.setdefault(name, asyncio.Lock())
        async with lock:
            session = self.get(name)
            if session is not None:
                logger.debug("Reusing live session %s", name)
                return session
            session = await self._factory(cwd, name, options or SessionOptions())
            self._sessions[name] = session
            session.on_exit(lambda _code, n=name, s=session: self._forget(n, s))
            return session

    def _forget(self, name: str, session: TerminalSession) -> None:
        if self._sessions.get(name) is session:
            del self._sessions[name]
            self._locks.pop(name, None)
            logger.debug("Session %s removed from registry", name)

    async def kill(self, name: str) -> None:
        session = self.require(name)
        await session.kill()
        self._forget(name, session)

    def detach_all(self) -> None:
        for name in self.names():
            session = self._sessions.get(name)
            if session is not None:
                session.detach()
