"""
Scan orchestration.

Runs the requested scan types one after the other against the inspected
filesystem, recording each scanner's status and findings in the inspector
metadata. A failing scanner never prevents the remaining ones from running.
"""

import logging
import threading
from typing import Dict, Iterable, List, Optional

from image_inspector.acquisition.receiver import create_output_dir
from image_inspector.config import InspectorOptions
from image_inspector.exceptions import (
    ScannerInvocationFailed,
    ScannerNotFound,
    ScannerResultUnreadable,
)
from image_inspector.models import InspectorMetadata, ScanResult
from image_inspector.scanners.base import Scanner
from image_inspector.scanners.clamav import SCANNER_NAME as CLAMAV, ClamScanner, ClamScannerConfig
from image_inspector.scanners.custom import CustomScanner, ScanMode, ScanTarget
from image_inspector.scanners.openscap import (
    DEFAULT_CVE_DIR,
    SCANNER_NAME as OPENSCAP,
    OpenSCAPConfig,
    OpenSCAPScanner,
)
from image_inspector.scanners.registry import ScannerRegistry

logger = logging.getLogger(__name__)

SCAN_RESULTS_DIR_PREFIX = "image-inspector-scan-results-"

OPENSCAP_REPORT = "openscap"
OPENSCAP_HTML_REPORT = "openscap-html"


class ReportStore:
    """Raw report artifacts kept in memory for the API service."""

    def __init__(self):
        self._reports: Dict[str, bytes] = {}

    def put(self, name: str, data: bytes):
        self._reports[name] = data

    def get(self, name: str) -> bytes:
        return self._reports.get(name, b"")

    def __contains__(self, name: str) -> bool:
        return name in self._reports


class ScanOrchestrator:
    """
    Runs scan types by name and records their outcome.

    Usage:
        orchestrator = ScanOrchestrator(options, registry, metadata)
        orchestrator.run(options.scan_type, ScanMode.IMAGE)
    """

    def __init__(
        self,
        options: InspectorOptions,
        registry: ScannerRegistry,
        metadata: InspectorMetadata,
        reports: Optional[ReportStore] = None,
        cancel_event: Optional[threading.Event] = None,
    ):
        """
        Initialize scan orchestrator.

        Args:
            options: Inspector options (results dir, CVE URL, clamd socket...)
            registry: Available scan types
            metadata: Metadata receiving statuses, its dst_path is scanned
            reports: Store receiving raw report artifacts
            cancel_event: Aborts the running scanner once set
        """
        self.options = options
        self.registry = registry
        self.metadata = metadata
        self.reports = reports if reports is not None else ReportStore()
        self.cancel_event = cancel_event

    def run(self, scan_types: Iterable[str], mode: ScanMode = ScanMode.IMAGE) -> InspectorMetadata:
        """
        Run every requested scan type once, in order.

        Args:
            scan_types: Scan type names (duplicates are run once)
            mode: What is being scanned

        Returns:
            The updated metadata
        """
        seen = set()
        for name in scan_types:
            if name in seen:
                continue
            seen.add(name)

            status = self.metadata.status(name)
            try:
                results = self.run_scanner(name, ScanMode(mode))
            except Exception as e:
                logger.error(f"Unable to scan with {name}: {e}")
                status.set_error(e)
            else:
                logger.info(f"{name} scan succeeded ({len(results)} results)")
                status.set_success(results)

        return self.metadata

    def run_scanner(self, name: str, mode: ScanMode) -> List[ScanResult]:
        """
        Run one scan type and read back its artifacts.

        Raises:
            ScannerNotFound: Unknown scan type
            ScannerInvocationFailed: The scan failed
            ScannerResultUnreadable: The scan artifacts cannot be read
        """
        scanner = self.create_scanner(name, mode)
        try:
            results, _ = scanner.scan_cancelable(self.cancel_event, self.metadata.dst_path, self.metadata.image)
        except ScannerInvocationFailed as e:
            raise ScannerInvocationFailed(f"Unable to run {name}: {e}") from e

        if isinstance(scanner, OpenSCAPScanner):
            self._collect_openscap_reports(scanner)
        return results

    def create_scanner(self, name: str, mode: ScanMode) -> Scanner:
        if not self.registry.has(name):
            raise ScannerNotFound(f'Scanner "{name}" not found')

        if not self.registry.is_builtin(name):
            target = ScanTarget(
                image=self.options.image,
                container=self.options.container,
                volume=self.options.volume,
            )
            return CustomScanner(self.registry.custom_entry(name), mode, target)

        if mode is ScanMode.CONTAINER:
            raise ScannerInvocationFailed(f"{name} cannot scan a running container")

        if name == OPENSCAP:
            self.options.scan_results_dir = create_output_dir(
                self.options.scan_results_dir, SCAN_RESULTS_DIR_PREFIX
            )
            return OpenSCAPScanner(OpenSCAPConfig(
                results_dir=self.options.scan_results_dir,
                cve_dir=DEFAULT_CVE_DIR,
                cve_url=self.options.cve_url,
                html=self.options.openscap_html,
            ))

        if name == CLAMAV:
            return ClamScanner(ClamScannerConfig(socket=self.options.clam_socket))

        raise ScannerNotFound(f'Scanner "{name}" not found')

    def _collect_openscap_reports(self, scanner: OpenSCAPScanner):
        try:
            with open(scanner.results_file_name(), "rb") as f:
                self.reports.put(OPENSCAP_REPORT, f.read())
        except OSError as e:
            raise ScannerResultUnreadable(f"Unable to read {OPENSCAP} result file: {e}") from e

        if self.options.openscap_html:
            try:
                with open(scanner.html_results_file_name(), "rb") as f:
                    self.reports.put(OPENSCAP_HTML_REPORT, f.read())
            except OSError as e:
                raise ScannerResultUnreadable(f"Unable to read {OPENSCAP} HTML result file: {e}") from e
