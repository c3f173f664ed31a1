"""
Auto-detect loop: a fixed-period tick that watches the UID on the reader and
pushes presence/content/removal changes to the consumer.

Ticks never raise. Every failure inside a tick becomes a notification.
"""

import asyncio
import logging

from . import config
from .error_classifier import error_message
from .exceptions import NotConnectedError

log = logging.getLogger(__name__)


class AutoDetectLoop:
    def __init__(self, factory, gate, notify, interval=config.AUTO_DETECT_INTERVAL):
        """
        factory: SessionFactory shared with the request coordinator
        gate:    OperationGate shared with the request coordinator
        notify:  callable taking the {present, tagData, error} payload
        """
        self._factory = factory
        self._gate = gate
        self._notify_cb = notify
        self._interval = interval

        self.enabled = False
        self.last_seen_uid: str | None = None

        self._loop: asyncio.AbstractEventLoop | None = None
        self._timer: asyncio.TimerHandle | None = None
        self._tasks: set[asyncio.Task] = set()
        # Bumped on every disable so results of ticks already in flight are dropped
        self._generation = 0

    @property
    def running(self) -> bool:
        return self._timer is not None

    def _notify(self, present, tag_data=None, error=None):
        self._notify_cb({"present": present, "tagData": tag_data, "error": error})

    # -----------------------------------------------------------------------
    # Enable / disable
    # -----------------------------------------------------------------------

    async def enable(self):
        """
        Turn auto-detect on. An explicit request overrides the session
        start backoff once; raises NotConnectedError if the reader session
        cannot be started.
        """
        self.enabled = True
        generation = self._generation
        try:
            session = await self._factory.get_session(force_retry=True)
        except NotConnectedError:
            if generation == self._generation:
                self.enabled = False
            raise

        if generation != self._generation:
            # Disabled while the session was starting
            return

        self._start_timer()
        log.info("Auto-detect enabled")

        uid = session.get_current_uid()
        if uid and not self._gate.busy:
            await self._read_and_notify(session, uid, generation)

    def disable(self):
        """Turn auto-detect off. No tick starts after this returns."""
        self._stop_timer()
        self._generation += 1
        self.last_seen_uid = None
        self.enabled = False
        log.info("Auto-detect disabled")
        self._notify(False)

    async def close(self):
        """Stop the timer and wait for ticks still in flight."""
        self._stop_timer()
        self._generation += 1
        self.last_seen_uid = None
        self.enabled = False
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    # -----------------------------------------------------------------------
    # Timer
    # -----------------------------------------------------------------------

    def _start_timer(self):
        if self._timer is not None:
            return
        self._loop = asyncio.get_running_loop()
        self._timer = self._loop.call_later(self._interval, self._on_timer)

    def _stop_timer(self):
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_timer(self):
        self._timer = self._loop.call_later(self._interval, self._on_timer)
        task = self._loop.create_task(self.tick())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # -----------------------------------------------------------------------
    # Tick
    # -----------------------------------------------------------------------

    async def tick(self):
        if not self.enabled or self._gate.busy:
            return
        generation = self._generation
        try:
            session = self._factory.try_get_session()
            if session is None:
                return

            uid = session.get_current_uid()
            if uid and uid != self.last_seen_uid:
                await self._read_and_notify(session, uid, generation)
            elif not uid and self.last_seen_uid:
                self.last_seen_uid = None
                log.info("Auto-detect: tag removed")
                self._notify(False)
        except Exception as e:
            if generation != self._generation:
                return
            log.warning("Auto-detect tick failed: %s", e)
            self.last_seen_uid = None
            self._notify(False, error=error_message(e))

    async def _read_and_notify(self, session, uid, generation):
        error = None
        record = None
        with self._gate.hold():
            try:
                record = await session.read_tag()
            except Exception as e:
                error = e

        if generation != self._generation:
            return
        if error is not None:
            # last_seen_uid stays put so the next tick retries this tag
            log.warning("Auto-detect read of %s failed: %s", uid, error)
            self._notify(True, error=error_message(error))
            return

        self.last_seen_uid = uid
        log.info("Auto-detect: tag %s read", uid)
        self._notify(True, tag_data=record.to_dict())
