import enum
import logging
import threading
import time

import serial

from config import BAUDRATE, BYTESIZE, PARITY, RETRY_INTERVAL, STOPBITS
from models import LogRecord
from store import StoreError

logger = logging.getLogger(__name__)

JOIN_TIMEOUT = 2.0


class ConnectionState(enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTED = "connected"


def open_serial_port(device):
    # timeout=None: readline blocks until a full line arrives, an idle device is fine
    return serial.Serial(
        device,
        baudrate=BAUDRATE,
        bytesize=BYTESIZE,
        parity=PARITY,
        stopbits=STOPBITS,
        timeout=None,
    )


def now_ms():
    return time.time_ns() // 1_000_000


class SerialSupervisor:
    """Keeps one device connected and feeds every line it sends into the store.

    Runs until ``shutdown`` is set. Open failures are retried every
    ``retry_interval`` seconds; a lost connection (read error or end of
    stream) drops back to DISCONNECTED and the port is reopened.
    """

    def __init__(self, device, store, shutdown=None, opener=open_serial_port,
                 retry_interval=RETRY_INTERVAL, clock=now_ms, sleep=None):
        self.device = device
        self.store = store
        self.retry_interval = retry_interval
        self._shutdown = shutdown if shutdown is not None else threading.Event()
        self._opener = opener
        self._clock = clock
        # waiting on the shutdown event lets a stop interrupt the backoff
        self._sleep = sleep if sleep is not None else self._shutdown.wait
        self._port = None
        self._first_attempt = True
        self.thread = None

        self.state = ConnectionState.DISCONNECTED
        self.open_failures = 0
        self.lines_read = 0
        self.append_failures = 0

    def start(self):
        self.thread = threading.Thread(target=self.run, name=f"serial:{self.device}", daemon=True)
        self.thread.start()
        return self.thread

    def run(self):
        logger.info("supervising %s", self.device)
        try:
            while not self._shutdown.is_set():
                try:
                    if self.state is ConnectionState.DISCONNECTED:
                        self._connect()
                    else:
                        self._read_lines()
                except Exception:
                    # anything unexpected: drop the session, back off and reopen
                    logger.exception("supervisor for %s failed", self.device)
                    self._close_port()
                    self.state = ConnectionState.DISCONNECTED
        finally:
            self._close_port()
            logger.info("stopped supervising %s", self.device)

    def _connect(self):
        if not self._first_attempt:
            self._sleep(self.retry_interval)
            if self._shutdown.is_set():
                return
        self._first_attempt = False

        try:
            self._port = self._opener(self.device)
        except (serial.SerialException, OSError, ValueError) as e:
            # device unplugged or not there yet, expected
            self.open_failures += 1
            logger.debug("unable to open %s: %s", self.device, e)
            return

        self.state = ConnectionState.CONNECTED
        logger.info("connected to %s", self.device)

    def _read_lines(self):
        try:
            while not self._shutdown.is_set():
                raw = self._port.readline()
                if not raw:
                    logger.error("lost connection to %s: end of stream", self.device)
                    break
                self._ingest(raw)
        except (serial.SerialException, OSError) as e:
            logger.error("lost connection to %s: %s", self.device, e)
        finally:
            self._close_port()
            self.state = ConnectionState.DISCONNECTED

    def _ingest(self, raw):
        record = LogRecord(
            timestamp=self._clock(),
            device=self.device,
            message=raw.decode("utf-8", errors="replace").rstrip("\r\n"),
        )
        self.lines_read += 1
        try:
            self.store.append(record)
        except StoreError as e:
            self.append_failures += 1
            logger.error("unable to store line from %s: %s", self.device, e)
            return
        logger.debug("%s: %s", self.device, record.message)

    def _close_port(self):
        port, self._port = self._port, None
        if port is None:
            return
        try:
            port.close()
        except Exception as e:
            logger.debug("error closing %s: %s", self.device, e)


def start_workers(store, devices, shutdown):
    """One supervisor thread per distinct device."""
    supervisors = []
    seen = set()
    for device in devices:
        if device in seen:
            logger.warning("device %s listed twice, ignoring duplicate", device)
            continue
        seen.add(device)
        supervisor = SerialSupervisor(device, store, shutdown=shutdown)
        supervisor.start()
        supervisors.append(supervisor)
    logger.info("started %d serial worker(s)", len(supervisors))
    return supervisors


def stop_workers(supervisors, shutdown, timeout=JOIN_TIMEOUT):
    shutdown.set()
    for supervisor in supervisors:
        if supervisor.thread is None:
            continue
        supervisor.thread.join(timeout=timeout)
        if supervisor.thread.is_alive():
            # still blocked in readline, the daemon thread dies with the process
            logger.warning("worker for %s still running after %.0f s timeout", supervisor.device, timeout)
    logger.info("serial workers stopped")
