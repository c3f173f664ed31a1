# Filament Bridge Configuration

# WebSocket server settings
WS_HOST = "localhost"
WS_PORT = 8765

# Auto-detect tick period in seconds
AUTO_DETECT_INTERVAL = 0.2

# Seconds to wait after a failed reader session start before trying again
# on its own. Explicit user requests (read/write/enable auto) ignore this.
INIT_RETRY_AFTER = 5.0

# How often the driver re-lists PC/SC readers to notice plug/unplug
READER_POLL_INTERVAL = 0.5

# MIFARE Classic block holding the filament payload, and its size
TAG_BLOCK = 4
BLOCK_SIZE = 16

# Key type A (0x61 would be key B)
KEY_TYPE_A = 0x60

# Keys tried in order for block authentication (6 bytes each, hex).
# The vendor key comes first, the factory default second.
MIFARE_KEYS = [
    "D3F7D3F7D3F7",
    "FFFFFFFFFFFF",
]

# ACR122U volatile key slot used for load-key / authenticate
KEY_SLOT = 0x00

# Manufacturer code written when none is given
DEFAULT_MANUFACTURER = 1

LOG_LEVEL = "INFO"
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"
