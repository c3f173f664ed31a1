"""
Operation-level errors surfaced to callers of the bridge.

Each error carries a stable message key that the presentation layer
localizes; the exception text is the raw detail for diagnostics.
"""


class BridgeError(Exception):
    """Base class for every failure the bridge reports to clients."""

    message_key = "unknownError"


class BusyError(BridgeError):
    """Another authenticate/read/write sequence is already in flight."""

    message_key = "busy"

    def __init__(self, message="Busy"):
        super().__init__(message)


class NotConnectedError(BridgeError):
    """No reader (or no reader session) is available."""

    message_key = "nfcNotConnected"

    def __init__(self, message="NFC_NOT_CONNECTED"):
        super().__init__(message)


class AuthFailedError(BridgeError):
    """Every candidate key was rejected for the block."""

    message_key = "nfcAuthFailed"

    def __init__(self, block, last_error=None):
        self.block = block
        self.last_error = last_error
        detail = f": {last_error}" if last_error is not None else ""
        super().__init__(f"NFC_AUTH_FAILED (block {block}){detail}")


def message_key_for(err) -> str:
    """Map any exception to the client-facing message key."""
    if isinstance(err, BridgeError):
        return err.message_key
    return BridgeError.message_key
