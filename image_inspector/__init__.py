"""
image-inspector: extract container image filesystems and scan them.

Pulls an image through the container daemon, reconstructs its root filesystem
on local disk, runs the selected scanners against the extracted tree and
serves the results (and optionally the content) over HTTP/WebDAV.
"""

__version__ = "0.1.0"
__author__ = "image-inspector Contributors"

from image_inspector.models import (
    InspectorMetadata,
    ScanResult,
    ScanStatus,
    ScannerStatus,
)

__all__ = [
    "InspectorMetadata",
    "ScanResult",
    "ScanStatus",
    "ScannerStatus",
]
