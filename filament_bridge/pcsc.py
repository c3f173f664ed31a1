"""
PC/SC driver adapter for ACR122U-class readers (pyscard).

Turns reader plug/unplug and card insert/remove into session events, and
exposes the MIFARE Classic block primitives the session needs:
authenticate, read and write. All primitives are blocking; the session
runs them on its executor.
"""

import logging
import threading

from smartcard.CardMonitoring import CardMonitor, CardObserver
from smartcard.Exceptions import CardConnectionException, NoCardException
from smartcard.System import readers
from smartcard.util import toHexString

from . import config
from .events import (
    CardInserted,
    CardRemoved,
    DriverError,
    ReaderAppeared,
    ReaderEnd,
    ReaderError,
)

log = logging.getLogger(__name__)


class TransmitError(Exception):
    """An APDU came back with a status word other than 90 00."""

    def __init__(self, what, sw1, sw2):
        self.sw1 = sw1
        self.sw2 = sw2
        super().__init__(f"{what} failed: SW={sw1:02X}{sw2:02X}")


class NoTagError(Exception):
    def __init__(self, message="No tag on the reader"):
        super().__init__(message)


# ---------------------------------------------------------------------------
# APDUs
# ---------------------------------------------------------------------------

def _transmit(connection, apdu, what):
    try:
        data, sw1, sw2 = connection.transmit(apdu)
    except (CardConnectionException, NoCardException) as e:
        log.error("%s transmit error: %s", what, e)
        raise
    if sw1 != 0x90 or sw2 != 0x00:
        raise TransmitError(what, sw1, sw2)
    return data


def get_uid(connection) -> str | None:
    """
    Read the tag UID with the PC/SC pseudo-APDU.
    APDU: FF CA 00 00 00
    """
    try:
        data = _transmit(connection, [0xFF, 0xCA, 0x00, 0x00, 0x00], "Get UID")
    except TransmitError as e:
        log.warning("%s", e)
        return None
    return toHexString(list(data)).replace(" ", "") or None


def load_key(connection, key, key_slot=config.KEY_SLOT):
    """
    Load an authentication key into the ACR122U key store.
    APDU: FF 82 00 <key_slot> 06 <6-byte key>
    """
    if len(key) != 6:
        raise ValueError(f"MIFARE key must be 6 bytes, got {len(key)}")
    _transmit(connection, [0xFF, 0x82, 0x00, key_slot, 0x06] + list(key), "Load key")


def auth_block(connection, block, key_type=config.KEY_TYPE_A, key_slot=config.KEY_SLOT):
    """
    Authenticate a MIFARE Classic block using a loaded key.
    APDU: FF 86 00 00 05 01 00 <block> <key_type> <key_slot>
    key_type: 0x60 = Key A, 0x61 = Key B
    """
    apdu = [0xFF, 0x86, 0x00, 0x00, 0x05,
            0x01, 0x00, block, key_type, key_slot]
    _transmit(connection, apdu, f"Auth block {block}")


def read_block(connection, block, length=config.BLOCK_SIZE) -> bytes:
    """
    Read bytes from a MIFARE Classic block (must be authenticated first).
    APDU: FF B0 00 <block> <length>
    """
    data = _transmit(connection, [0xFF, 0xB0, 0x00, block, length], f"Read block {block}")
    return bytes(data)


def write_block(connection, block, data_bytes):
    """
    Write one MIFARE Classic block (must be authenticated first).
    APDU: FF D6 00 <block> <length> <data>
    """
    data = list(data_bytes)
    _transmit(connection, [0xFF, 0xD6, 0x00, block, len(data)] + data, f"Write block {block}")


# ---------------------------------------------------------------------------
# Driver
# ---------------------------------------------------------------------------

class _TagObserver(CardObserver):
    """pyscard CardObserver forwarding insert/remove to the driver."""

    def __init__(self, driver):
        super().__init__()
        self._driver = driver

    def update(self, observable, actions):
        (added, removed) = actions
        for card in removed or []:
            self._driver._card_removed(card)
        for card in added or []:
            self._driver._card_added(card)


class PCSCDriver:
    """
    Watches the first PC/SC reader and the tag on it.

    Events are passed to `sink` from pyscard / watcher threads; the sink
    must be thread-safe (ReaderSession.post_event is).
    """

    def __init__(self, poll_interval=config.READER_POLL_INTERVAL):
        self._poll_interval = poll_interval
        self._sink = None
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._watcher: threading.Thread | None = None
        self._monitor = None
        self._observer = None
        self._reader_name: str | None = None
        self._connection = None
        self._failing: str | None = None

    # -- lifecycle ----------------------------------------------------------

    def start(self, sink):
        """
        Start watching. Raises the pyscard error when the PC/SC service is
        unavailable, so session construction fails.
        """
        self._sink = sink
        self._stop.clear()
        self._refresh_reader(readers())

        self._watcher = threading.Thread(target=self._watch, name="pcsc-watch", daemon=True)
        self._watcher.start()

        self._monitor = CardMonitor()
        self._observer = _TagObserver(self)
        self._monitor.addObserver(self._observer)

    def stop(self):
        self._stop.set()
        if self._monitor is not None and self._observer is not None:
            try:
                self._monitor.deleteObserver(self._observer)
            except Exception as e:
                log.debug("Removing card observer: %s", e)
        self._monitor = None
        self._observer = None
        if self._watcher is not None:
            self._watcher.join(timeout=2.0)
            self._watcher = None
        with self._lock:
            self._drop_connection()
            self._reader_name = None

    # -- reader watch -------------------------------------------------------

    def _watch(self):
        while not self._stop.wait(self._poll_interval):
            try:
                found = readers()
            except Exception as e:
                self._listing_failed(e)
                continue
            self._failing = None
            self._refresh_reader(found)

    def _listing_failed(self, err):
        # Report each distinct failure once; the session drops the reader.
        text = str(err)
        if text == self._failing:
            return
        self._failing = text
        with self._lock:
            self._drop_connection()
            self._reader_name = None
        log.error("Listing PC/SC readers failed: %s", err)
        self._emit(DriverError(err))

    def _refresh_reader(self, found):
        first = found[0] if found else None
        name = str(first) if first is not None else None
        with self._lock:
            if name == self._reader_name:
                return
            previous = self._reader_name
            self._reader_name = name
            self._drop_connection()
        if previous is not None:
            log.warning("NFC reader gone: %s", previous)
            self._emit(ReaderEnd())
        if first is not None:
            log.info("NFC reader found: %s", name)
            self._emit(ReaderAppeared(handle=first, name=name))

    # -- card watch ---------------------------------------------------------

    def _card_added(self, card):
        with self._lock:
            if self._reader_name is None or str(card.reader) != self._reader_name:
                return
            try:
                connection = card.createConnection()
                connection.connect()
                uid = get_uid(connection)
            except Exception as e:
                log.error("Connecting to tag failed: %s", e)
                event = ReaderError(e)
            else:
                self._drop_connection()
                self._connection = connection
                log.debug("Tag ATR: %s", toHexString(list(card.atr)))
                event = CardInserted(uid=uid, card=connection)
        self._emit(event)

    def _card_removed(self, card):
        with self._lock:
            if self._reader_name is None or str(card.reader) != self._reader_name:
                return
            self._drop_connection()
        self._emit(CardRemoved())

    def _drop_connection(self):
        if self._connection is None:
            return
        try:
            self._connection.disconnect()
        except Exception as e:
            log.debug("Disconnecting tag: %s", e)
        self._connection = None

    def _emit(self, event):
        if self._sink is not None:
            self._sink(event)

    # -- block primitives ---------------------------------------------------

    @staticmethod
    def _require(card):
        if card is None:
            raise NoTagError()
        return card

    def authenticate(self, card, block, key_type, key):
        connection = self._require(card)
        load_key(connection, key)
        auth_block(connection, block, key_type)

    def read(self, card, block, length, block_size=config.BLOCK_SIZE):
        """Read `length` bytes starting at `block`, one block per APDU."""
        connection = self._require(card)
        out = bytearray()
        for i, offset in enumerate(range(0, length, block_size)):
            out += read_block(connection, block + i, min(block_size, length - offset))
        return bytes(out)

    def write(self, card, block, data, block_size=config.BLOCK_SIZE):
        connection = self._require(card)
        if len(data) % block_size != 0:
            raise ValueError(f"Write data must be a multiple of {block_size} bytes, got {len(data)}")
        for i, offset in enumerate(range(0, len(data), block_size)):
            write_block(connection, block + i, data[offset:offset + block_size])
