"""
Request coordinator: the upward-facing read/write/status/auto operations.

Manual requests and the auto-detect loop share one OperationGate. A request
that finds the gate taken is answered with "busy" without touching the
reader. Nothing raises past this layer; every failure becomes a result dict
with a message key and the raw detail.
"""

import logging
from contextlib import contextmanager

from . import config
from .error_classifier import error_message
from .exceptions import BusyError, NotConnectedError, message_key_for

log = logging.getLogger(__name__)


class OperationGate:
    """Process-wide busy flag shared by manual requests and auto-detect."""

    def __init__(self):
        self.busy = False

    @contextmanager
    def hold(self):
        if self.busy:
            raise BusyError()
        self.busy = True
        try:
            yield
        finally:
            self.busy = False


def _failure(err) -> dict:
    return {
        "success": False,
        "messageKey": message_key_for(err),
        "details": error_message(err),
    }


def disconnected_status(last_error=None) -> dict:
    return {
        "connected": False,
        "readerName": None,
        "cardPresent": False,
        "uid": None,
        "errorCode": last_error.code.value if last_error else None,
        "errorMessage": last_error.message if last_error else None,
        "errorAt": last_error.at if last_error else None,
    }


class RequestCoordinator:
    def __init__(self, factory, gate, auto_detect):
        self._factory = factory
        self._gate = gate
        self._auto = auto_detect

    async def read(self) -> dict:
        if self._gate.busy:
            return {"success": False, "messageKey": BusyError.message_key}
        with self._gate.hold():
            try:
                session = await self._factory.get_session(force_retry=True)
                record = await session.read_tag()
            except Exception as e:
                log.warning("Read request failed: %s", e)
                return _failure(e)
        return {"success": True, "data": record.to_dict()}

    async def write(self, material, color, manufacturer=config.DEFAULT_MANUFACTURER) -> dict:
        if self._gate.busy:
            return {"success": False, "messageKey": BusyError.message_key}
        if manufacturer is None or manufacturer == "":
            manufacturer = config.DEFAULT_MANUFACTURER
        with self._gate.hold():
            try:
                session = await self._factory.get_session(force_retry=True)
                await session.write_tag(material, color, manufacturer)
            except Exception as e:
                log.warning("Write request failed: %s", e)
                return _failure(e)
        return {"success": True}

    def status(self) -> dict:
        """Snapshot of the reader state. Never starts a session."""
        session = self._factory.try_get_session()
        if session is None:
            return disconnected_status(self._factory.last_error)
        return session.get_status()

    async def set_auto_detect(self, enable) -> dict:
        if not enable:
            self._auto.disable()
            return {"enabled": False}
        try:
            await self._auto.enable()
        except NotConnectedError as e:
            log.warning("Auto-detect not enabled: %s", e)
            return {
                "enabled": False,
                "messageKey": e.message_key,
                "details": error_message(e),
            }
        return {"enabled": self._auto.enabled}
