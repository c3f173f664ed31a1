"""
Lazy construction of the reader session.

The session is built on first real need. After a failed start, non-forced
callers are turned away for `retry_after` seconds so a polling caller does
not hammer a missing PC/SC service.
"""

import asyncio
import logging
import time

from . import config
from .error_classifier import ErrorInfo, classify_error
from .exceptions import NotConnectedError

log = logging.getLogger(__name__)


class SessionFactory:
    def __init__(self, build, retry_after=config.INIT_RETRY_AFTER, clock=time.monotonic):
        """
        build: coroutine function returning a started ReaderSession, raising
               on failure.
        """
        self._build = build
        self._retry_after = retry_after
        self._clock = clock
        self._session = None
        self._build_lock = asyncio.Lock()
        self.last_failure_at: float | None = None
        self.last_error: ErrorInfo | None = None

    def try_get_session(self):
        """Existing session or None. Never attempts construction."""
        return self._session

    def _in_backoff(self) -> bool:
        if self.last_failure_at is None:
            return False
        return (self._clock() - self.last_failure_at) < self._retry_after

    async def get_session(self, force_retry=False):
        if self._session is not None:
            return self._session
        if not force_retry and self._in_backoff():
            raise NotConnectedError()

        async with self._build_lock:
            # Another build may have finished (or failed) while we waited.
            if self._session is not None:
                return self._session
            if not force_retry and self._in_backoff():
                raise NotConnectedError()
            try:
                session = await self._build()
            except Exception as e:
                self.last_failure_at = self._clock()
                self.last_error = classify_error(e)
                log.error("NFC reader session failed to start: %s", e)
                raise NotConnectedError(f"NFC_NOT_CONNECTED: {e}") from e

            self._session = session
            self.last_failure_at = None
            self.last_error = None
            log.info("NFC reader session started")
            return session

    def close(self):
        """Drop and close the session, if any. Blocking."""
        session, self._session = self._session, None
        if session is not None:
            session.close()
