"""Scan backends and the registry of selectable scan types."""

from image_inspector.scanners.base import Scanner
from image_inspector.scanners.clamav import ClamScanner, ClamScannerConfig
from image_inspector.scanners.custom import CustomScanEntry, CustomScanner, ScanMode, ScanTarget
from image_inspector.scanners.openscap import OpenSCAPConfig, OpenSCAPScanner
from image_inspector.scanners.registry import ScannerRegistry, load_custom_scans

__all__ = [
    "Scanner",
    "ClamScanner",
    "ClamScannerConfig",
    "CustomScanEntry",
    "CustomScanner",
    "ScanMode",
    "ScanTarget",
    "OpenSCAPConfig",
    "OpenSCAPScanner",
    "ScannerRegistry",
    "load_custom_scans",
]
