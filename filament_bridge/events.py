"""Driver events applied to the reader session, in the order the driver emits them."""

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class ReaderAppeared:
    handle: Any
    name: str | None = None


@dataclass(frozen=True)
class CardInserted:
    uid: str | None
    card: Any


@dataclass(frozen=True)
class CardRemoved:
    pass


@dataclass(frozen=True)
class ReaderError:
    """Error scoped to the current reader; connection state is kept."""
    error: Any


@dataclass(frozen=True)
class DriverError:
    """Error from the driver itself (service gone etc.); drops the reader."""
    error: Any


@dataclass(frozen=True)
class ReaderEnd:
    pass


ReaderEvent = ReaderAppeared | CardInserted | CardRemoved | ReaderError | DriverError | ReaderEnd
