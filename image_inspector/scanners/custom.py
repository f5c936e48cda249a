"""
Custom scan types.

A custom scan type is an external command configured per scan mode. The
command runs with an environment describing the scan target and inherits
stdout/stderr; a non-zero exit status is a failure.
"""

import logging
import shutil
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from image_inspector.exceptions import ScannerInvocationFailed
from image_inspector.scanners.base import ScanOutput, Scanner, run_command

logger = logging.getLogger(__name__)


class ScanMode(str, Enum):
    """What is being scanned."""
    IMAGE = "imagescan"
    CONTAINER = "containerscan"
    VOLUME = "volumescan"


@dataclass
class CustomScanEntry:
    """A custom scan type as configured in the custom scan YAML file."""
    name: str
    imagescan: List[str] = field(default_factory=list)
    containerscan: List[str] = field(default_factory=list)
    volumescan: List[str] = field(default_factory=list)

    def command_for(self, mode: ScanMode) -> List[str]:
        return {
            ScanMode.IMAGE: self.imagescan,
            ScanMode.CONTAINER: self.containerscan,
            ScanMode.VOLUME: self.volumescan,
        }[mode]


@dataclass
class ScanTarget:
    """The inspected object as seen by custom scanners."""
    image: str = ""
    container: str = ""
    volume: str = ""


class CustomScanner(Scanner):
    """Runs the command configured for a custom scan type."""

    def __init__(self, entry: CustomScanEntry, mode: Any, target: ScanTarget):
        self.entry = entry
        self.mode = mode
        self.target = target

    def name(self) -> str:
        return self.entry.name

    def build_env(self, path: str) -> Dict[str, str]:
        """Environment of the scan command, nothing is inherited."""
        mode = ScanMode(self.mode)
        if mode is ScanMode.IMAGE:
            return {"IMAGE_NAME": self.target.image, "IMAGE_PATH": path}
        if mode is ScanMode.CONTAINER:
            return {"CONTAINER_NAME": self.target.container}
        return {"VOLUME_PATH": self.target.volume}

    def scan_cancelable(
        self,
        cancel_event: Optional[threading.Event],
        path: str,
        image: Optional[Dict[str, Any]],
    ) -> ScanOutput:
        try:
            mode = ScanMode(self.mode)
        except ValueError:
            raise ScannerInvocationFailed(f'Unsupported scanner "{self.mode}" in "{self.entry.name}"')

        command = self.entry.command_for(mode)
        if not command:
            raise ScannerInvocationFailed(
                f'Command not specified for scanner "{mode.value}" in "{self.entry.name}"'
            )

        # The child gets no PATH, resolve the executable with ours
        executable = shutil.which(command[0]) or command[0]
        logger.info(f"Running custom scan {self.entry.name}: {' '.join(command)}")

        exit_code, _ = run_command(
            [executable, *command[1:]],
            env=self.build_env(path),
            cancel_event=cancel_event,
        )
        if exit_code != 0:
            raise ScannerInvocationFailed(f"{self.entry.name} exited with status {exit_code}")

        return [], None
