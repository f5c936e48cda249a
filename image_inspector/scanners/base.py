"""
Scanner abstraction.

Every scan backend (socket based, feed based or external process) implements
the same contract: take the root of an extracted filesystem plus the image
descriptor, return normalized findings and an optional backend specific
detail object.
"""

import logging
import subprocess
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from image_inspector.exceptions import ScannerInvocationFailed
from image_inspector.models import ScanResult

logger = logging.getLogger(__name__)

# How often blocking waits check for cancellation
CANCEL_POLL_INTERVAL_SEC = 0.5

ScanOutput = Tuple[List[ScanResult], Any]


class Scanner(ABC):
    """Abstract base class for scan backends."""

    @abstractmethod
    def name(self) -> str:
        """Unique scanner name, used as the scan-type and metadata key."""

    @abstractmethod
    def scan_cancelable(
        self,
        cancel_event: Optional[threading.Event],
        path: str,
        image: Optional[Dict[str, Any]],
    ) -> ScanOutput:
        """
        Scan the filesystem rooted at path.

        Args:
            cancel_event: Aborts the scan once set (None for never)
            path: Root of the extracted filesystem
            image: Image descriptor as returned by the daemon

        Returns:
            (results, detail) where detail is backend specific and may be None

        Raises:
            ScannerInvocationFailed: If the scan could not run or was canceled
        """

    def scan(self, path: str, image: Optional[Dict[str, Any]] = None) -> ScanOutput:
        """Scan without cancellation."""
        return self.scan_cancelable(None, path, image)


def run_command(
    args: Sequence[str],
    env: Optional[Mapping[str, str]] = None,
    cancel_event: Optional[threading.Event] = None,
    capture_output: bool = False,
) -> Tuple[int, bytes]:
    """
    Run an external command, killing it if cancel_event gets set.

    Args:
        args: Command and arguments
        env: Complete environment of the child (inherited if None)
        cancel_event: Cancellation signal polled while waiting
        capture_output: Capture stdout (stderr is always inherited)

    Returns:
        (exit code, captured stdout or b"")

    Raises:
        ScannerInvocationFailed: If the command cannot start or was canceled
    """
    try:
        proc = subprocess.Popen(
            list(args),
            env=dict(env) if env is not None else None,
            stdout=subprocess.PIPE if capture_output else None,
        )
    except OSError as e:
        raise ScannerInvocationFailed(f"Unable to run {args[0]}: {e}") from e

    while True:
        try:
            stdout, _ = proc.communicate(timeout=CANCEL_POLL_INTERVAL_SEC)
            return proc.returncode, stdout or b""
        except subprocess.TimeoutExpired:
            if cancel_event is not None and cancel_event.is_set():
                logger.info(f"Canceling {args[0]} (pid {proc.pid})")
                proc.kill()
                proc.communicate()
                raise ScannerInvocationFailed(f"{args[0]} was canceled")
