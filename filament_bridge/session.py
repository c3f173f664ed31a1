"""
Reader session: connection state for the single PC/SC reader plus the
authenticated block operations on the tag currently sitting on it.

All state changes happen on the event loop thread. Driver callbacks arrive
on pyscard threads and are handed over with `post_event`, which keeps the
order the driver emitted them in.
"""

import asyncio
import logging
from concurrent.futures import Executor
from contextlib import asynccontextmanager

from . import config
from .error_classifier import ErrorInfo, classify_error
from .events import (
    CardInserted,
    CardRemoved,
    DriverError,
    ReaderAppeared,
    ReaderEnd,
    ReaderError,
    ReaderEvent,
)
from .exceptions import AuthFailedError, BusyError, NotConnectedError
from .tag import TagRecord, decode_block, encode_block

log = logging.getLogger(__name__)

AUTH_KEYS = [bytes.fromhex(k) for k in config.MIFARE_KEYS]


class ReaderSession:
    def __init__(self, driver, loop: asyncio.AbstractEventLoop, executor: Executor):
        self._driver = driver
        self._loop = loop
        self._executor = executor

        self.connected = False
        self._reader = None
        self._reader_name: str | None = None
        self._uid: str | None = None
        self._card = None
        self.last_error: ErrorInfo | None = None
        self._busy = False

    # -----------------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------------

    def start(self):
        """Start the driver. Blocking: call it from the executor."""
        self._driver.start(self.post_event)

    def close(self):
        """Stop the driver and drop every handle. Blocking."""
        try:
            self._driver.stop()
        finally:
            self.connected = False
            self._reader = None
            self._reader_name = None
            self._uid = None
            self._card = None

    # -----------------------------------------------------------------------
    # Driver events
    # -----------------------------------------------------------------------

    def post_event(self, event):
        """Thread-safe hand-off of a driver event to the event loop."""
        self._loop.call_soon_threadsafe(self.apply_event, event)

    def apply_event(self, event: ReaderEvent):
        if isinstance(event, ReaderAppeared):
            self._reader = event.handle
            self._reader_name = event.name
            self.connected = True
            self.last_error = classify_error(None)
            log.info("NFC reader connected: %s", event.name)

        elif isinstance(event, CardInserted):
            self._uid = event.uid or None
            self._card = event.card
            log.info("Tag detected: UID %s", self._uid)

        elif isinstance(event, CardRemoved):
            self._uid = None
            self._card = None
            log.info("Tag removed")

        elif isinstance(event, ReaderError):
            self._record_error("Reader error", event.error)

        elif isinstance(event, DriverError):
            self._drop_reader()
            self._record_error("PC/SC error", event.error)

        elif isinstance(event, ReaderEnd):
            self._drop_reader()
            log.warning("NFC reader removed")

        else:
            log.debug("Ignoring unknown driver event %r", event)

    def _record_error(self, what, error):
        self.last_error = classify_error(error)
        if self.last_error is not None:
            log.error("%s [%s]: %s", what, self.last_error.code.value, self.last_error.message)

    def _drop_reader(self):
        self.connected = False
        self._reader = None
        self._reader_name = None
        self._uid = None
        self._card = None

    # -----------------------------------------------------------------------
    # State
    # -----------------------------------------------------------------------

    @property
    def busy(self) -> bool:
        return self._busy

    def get_current_uid(self) -> str | None:
        return self._uid

    def get_status(self) -> dict:
        err = self.last_error
        return {
            "connected": self.connected,
            "readerName": self._reader_name if self._reader is not None else None,
            "cardPresent": self._card is not None,
            "uid": self._uid,
            "errorCode": err.code.value if err else None,
            "errorMessage": err.message if err else None,
            "errorAt": err.at if err else None,
        }

    # -----------------------------------------------------------------------
    # Block operations
    # -----------------------------------------------------------------------

    @asynccontextmanager
    async def _exclusive(self):
        # Fail fast instead of queueing; callers retry on a later tick/request.
        if self._busy:
            raise BusyError()
        self._busy = True
        try:
            yield
        finally:
            self._busy = False

    async def _call(self, fn, *args):
        return await self._loop.run_in_executor(self._executor, fn, *args)

    async def authenticate_block(self, block=config.TAG_BLOCK):
        """
        Authenticate `block` with key A, trying the vendor key first and the
        factory default second. Stops at the first key that works.
        """
        if self._reader is None:
            raise NotConnectedError()
        card = self._card
        last_err = None
        for key in AUTH_KEYS:
            try:
                await self._call(self._driver.authenticate, card, block, config.KEY_TYPE_A, key)
                log.debug("Block %d authenticated with key %s", block, key.hex().upper())
                return
            except Exception as e:
                log.debug("Key %s rejected for block %d: %s", key.hex().upper(), block, e)
                last_err = e
        raise AuthFailedError(block, last_err)

    async def read_tag(self) -> TagRecord:
        if self._reader is None:
            raise NotConnectedError()
        async with self._exclusive():
            await self.authenticate_block(config.TAG_BLOCK)
            data = await self._call(
                self._driver.read, self._card, config.TAG_BLOCK, config.BLOCK_SIZE, config.BLOCK_SIZE
            )
            record = decode_block(data)
        log.info("Read tag: material=%d color=%d manufacturer=%d",
                 record.material, record.color, record.manufacturer)
        return record

    async def write_tag(self, material, color, manufacturer=config.DEFAULT_MANUFACTURER):
        if self._reader is None:
            raise NotConnectedError()
        buf = encode_block(material, color, manufacturer)
        async with self._exclusive():
            await self.authenticate_block(config.TAG_BLOCK)
            await self._call(self._driver.write, self._card, config.TAG_BLOCK, buf, config.BLOCK_SIZE)
        log.info("Wrote tag: %s", buf[:3].hex(" ").upper())
        return True
