# Configuration constants for serial ports, database, and HTTP query server
import os

# serial framing, fixed by the devices we talk to
BAUDRATE       = 115200
BYTESIZE       = 8
PARITY         = "N"
STOPBITS       = 1
RETRY_INTERVAL = 0.1           # seconds between reconnect attempts

DB_PATH        = os.environ.get("LOGSERIAL_DB", "logserial.db")
PAGE_SIZE      = int(os.environ.get("LOGSERIAL_PAGE_SIZE", 500))   # rows per query fetch

HTTP_HOST      = os.environ.get("LOGSERIAL_HOST", "127.0.0.1")
HTTP_PORT      = int(os.environ.get("LOGSERIAL_PORT", 5000))

LOG_LEVEL      = os.environ.get("LOGSERIAL_LOG_LEVEL", "INFO").upper()
LOG_FORMAT     = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
