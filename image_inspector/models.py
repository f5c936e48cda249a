"""
Core data models for image-inspector.

Defines the aggregate metadata of one inspection run, the per-scanner status
lifecycle and the normalized scan finding shared by every scan backend.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional


class ScanStatus(str, Enum):
    """Lifecycle state of one scanner's run for one inspection."""
    NOT_REQUESTED = "NotRequested"
    SUCCESS = "Success"
    ERROR = "Error"


@dataclass(frozen=True)
class ScanResult:
    """
    A single finding reported by a scanner.

    Attributes:
        name: Name of the scanner that produced the finding
        scanner_version: Version of the scan backend
        timestamp: When the scan producing this finding started
        reference: URI-like location relative to the scanned root
        description: Human-readable description of the finding
    """
    name: str
    scanner_version: str
    timestamp: datetime
    reference: str
    description: str

    def to_dict(self) -> Dict[str, Any]:
        """Convert result to dictionary representation."""
        return {
            "name": self.name,
            "scannerVersion": self.scanner_version,
            "timestamp": self.timestamp.isoformat(),
            "reference": self.reference,
            "description": self.description,
        }


@dataclass
class ScannerStatus:
    """Status and findings of one scanner within an inspection."""
    status: ScanStatus = ScanStatus.NOT_REQUESTED
    error_message: str = ""
    results: List[ScanResult] = field(default_factory=list)

    def set_success(self, results: Optional[Iterable[ScanResult]] = None):
        self._transition(ScanStatus.SUCCESS)
        self.results = list(results or [])

    def set_error(self, error: Any):
        self._transition(ScanStatus.ERROR)
        self.error_message = str(error)

    def _transition(self, new_status: ScanStatus):
        # NotRequested -> Success | Error, never reversed
        if self.status is not ScanStatus.NOT_REQUESTED:
            raise ValueError(
                f"Scanner status already {self.status.value}, cannot move to {new_status.value}"
            )
        self.status = new_status

    def to_dict(self) -> Dict[str, Any]:
        return {
            "Status": self.status.value,
            "ErrorMessage": self.error_message,
            "Results": [r.to_dict() for r in self.results],
        }


@dataclass
class InspectorMetadata:
    """
    Aggregate metadata of one inspection run.

    Attributes:
        image: Image descriptor as returned by the daemon (passed through)
        dst_path: Root of the extracted filesystem
        scanners: Scanner name to status mapping
    """
    image: Dict[str, Any] = field(default_factory=dict)
    dst_path: str = ""
    scanners: Dict[str, ScannerStatus] = field(default_factory=dict)

    @classmethod
    def for_scanners(
        cls,
        image: Optional[Dict[str, Any]] = None,
        dst_path: str = "",
        scanner_names: Iterable[str] = (),
    ) -> "InspectorMetadata":
        """Create metadata with every known scanner in NotRequested state."""
        return cls(
            image=image or {},
            dst_path=dst_path,
            scanners={name: ScannerStatus() for name in scanner_names},
        )

    def status(self, name: str) -> ScannerStatus:
        """Get the status of a scanner, registering it as NotRequested if unknown."""
        return self.scanners.setdefault(name, ScannerStatus())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "Image": self.image,
            "DstPath": self.dst_path,
            "Scanners": {name: s.to_dict() for name, s in self.scanners.items()},
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2, default=str)
