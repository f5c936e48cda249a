"""
ClamAV scanner.

Talks to a clamd daemon over its UNIX socket. The extracted tree is scanned
with a single CONTSCAN command inside an IDSESSION; every FOUND reply becomes
a finding.
"""

import logging
import socket
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from image_inspector.exceptions import ScannerInvocationFailed
from image_inspector.models import ScanResult
from image_inspector.scanners.base import CANCEL_POLL_INTERVAL_SEC, ScanOutput, Scanner

logger = logging.getLogger(__name__)

SCANNER_NAME = "clamav"
# clamd does not report its engine version over a scan session
SCANNER_VERSION = "0.99.2"

RECV_SIZE = 4096


@dataclass
class ClamFileResult:
    """One clamd reply for a scanned file."""
    filename: str
    result: str


@dataclass
class ClamScannerConfig:
    """Configuration of the ClamAV scanner."""
    socket: str
    ignore_negatives: bool = True
    connect_timeout: float = 10.0


class ClamdSession:
    """
    A single clamd IDSESSION.

    Commands are sent null terminated ("z" prefix) and replies come back
    null terminated as "<request id>: <payload>".
    """

    def __init__(self, socket_path: str, ignore_negatives: bool = True, connect_timeout: float = 10.0):
        self.socket_path = socket_path
        self.ignore_negatives = ignore_negatives
        self.connect_timeout = connect_timeout
        self._sock: Optional[socket.socket] = None
        self.files: List[ClamFileResult] = []

    def open(self):
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        sock.settimeout(self.connect_timeout)
        try:
            sock.connect(self.socket_path)
            sock.sendall(b"zIDSESSION\0")
        except OSError as e:
            sock.close()
            raise ScannerInvocationFailed(f"Unable to connect to clamd at {self.socket_path}: {e}") from e
        self._sock = sock

    def scan_path(self, path: str, cancel_event: Optional[threading.Event] = None) -> List[ClamFileResult]:
        """
        Recursively scan path and wait for the session to complete.

        Returns:
            Infected (and, unless negatives are ignored, clean) files
        """
        if self._sock is None:
            self.open()

        try:
            self._sock.sendall(f"zCONTSCAN {path}\0".encode("utf-8", errors="surrogateescape"))
            self._sock.sendall(b"zEND\0")
        except OSError as e:
            raise ScannerInvocationFailed(f"Unable to send scan request to clamd: {e}") from e

        for reply in self._replies(cancel_event):
            self._handle_reply(reply)
        return self.files

    def _replies(self, cancel_event: Optional[threading.Event]):
        self._sock.settimeout(CANCEL_POLL_INTERVAL_SEC)
        buffer = b""
        while True:
            if cancel_event is not None and cancel_event.is_set():
                raise ScannerInvocationFailed("clamav scan was canceled")
            try:
                chunk = self._sock.recv(RECV_SIZE)
            except socket.timeout:
                continue
            except OSError as e:
                raise ScannerInvocationFailed(f"Unable to read clamd reply: {e}") from e

            if not chunk:
                # clamd closes the session after END once everything is answered
                if buffer.strip(b"\0"):
                    yield buffer.decode("utf-8", errors="surrogateescape")
                return

            buffer += chunk
            while b"\0" in buffer:
                reply, buffer = buffer.split(b"\0", 1)
                if reply:
                    yield reply.decode("utf-8", errors="surrogateescape")

    def _handle_reply(self, reply: str):
        # Drop the "<id>: " request prefix
        _, sep, payload = reply.partition(": ")
        if not sep:
            payload = reply

        if payload.endswith(" FOUND"):
            filename, _, signature = payload[: -len(" FOUND")].rpartition(": ")
            self.files.append(ClamFileResult(filename=filename, result=signature))
        elif payload.endswith(" ERROR"):
            logger.warning(f"clamd error: {payload}")
        elif payload.endswith(": OK"):
            if not self.ignore_negatives:
                self.files.append(ClamFileResult(filename=payload[: -len(": OK")], result="OK"))
        else:
            logger.debug(f"Unexpected clamd reply: {reply}")

    def close(self):
        if self._sock is not None:
            self._sock.close()
            self._sock = None

    def __enter__(self) -> "ClamdSession":
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


class ClamScanner(Scanner):
    """Scans the extracted filesystem with clamd."""

    def __init__(self, config: ClamScannerConfig):
        self.config = config

    def name(self) -> str:
        return SCANNER_NAME

    def _session(self) -> ClamdSession:
        return ClamdSession(
            self.config.socket,
            ignore_negatives=self.config.ignore_negatives,
            connect_timeout=self.config.connect_timeout,
        )

    def scan_cancelable(
        self,
        cancel_event: Optional[threading.Event],
        path: str,
        image: Optional[Dict[str, Any]],
    ) -> ScanOutput:
        scan_started = datetime.now()
        root = path.rstrip("/")
        started = time.monotonic()
        results: List[ScanResult] = []
        try:
            with self._session() as session:
                for file_result in session.scan_path(path, cancel_event):
                    results.append(ScanResult(
                        name=SCANNER_NAME,
                        scanner_version=SCANNER_VERSION,
                        timestamp=scan_started,
                        reference=f"file://{_trim_prefix(file_result.filename, root)}",
                        description=file_result.result,
                    ))
        finally:
            logger.info(
                f"clamav scan took {int(time.monotonic() - started)}s ({len(results)} problems found)"
            )
        return results, None


def _trim_prefix(filename: str, prefix: str) -> str:
    if filename.startswith(prefix):
        return filename[len(prefix):]
    return filename
