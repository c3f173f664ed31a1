"""
Composition root: owns the executor, the session factory, the shared busy
gate, the auto-detect loop and the request coordinator, and tears them
down together.
"""

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor

from . import config
from .autodetect import AutoDetectLoop
from .coordinator import OperationGate, RequestCoordinator
from .factory import SessionFactory
from .pcsc import PCSCDriver
from .session import ReaderSession

log = logging.getLogger(__name__)


class Bridge:
    def __init__(self, notify, driver_factory=PCSCDriver,
                 retry_after=config.INIT_RETRY_AFTER,
                 interval=config.AUTO_DETECT_INTERVAL):
        self._driver_factory = driver_factory
        # One worker: reader I/O is strictly sequential.
        self.executor = ThreadPoolExecutor(max_workers=1)
        self.factory = SessionFactory(self._open_session, retry_after=retry_after)
        self.gate = OperationGate()
        self.auto_detect = AutoDetectLoop(self.factory, self.gate, notify, interval=interval)
        self.coordinator = RequestCoordinator(self.factory, self.gate, self.auto_detect)

    async def _open_session(self) -> ReaderSession:
        loop = asyncio.get_running_loop()
        session = ReaderSession(self._driver_factory(), loop, self.executor)
        try:
            await loop.run_in_executor(self.executor, session.start)
        except Exception:
            await loop.run_in_executor(self.executor, session.close)
            raise
        return session

    async def close(self):
        await self.auto_detect.close()
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(self.executor, self.factory.close)
        self.executor.shutdown(wait=True)
        log.info("Bridge closed")
