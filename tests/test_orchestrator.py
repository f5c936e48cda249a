"""
Tests for scan orchestration.
"""

import os
from datetime import datetime

import pytest

from image_inspector.exceptions import ScannerInvocationFailed
from image_inspector.models import InspectorMetadata, ScanResult, ScanStatus
from image_inspector.orchestrator import (
    OPENSCAP_HTML_REPORT,
    OPENSCAP_REPORT,
    ReportStore,
    ScanOrchestrator,
)
from image_inspector.scanners.custom import CustomScanEntry, ScanMode
from image_inspector.scanners.openscap import OpenSCAPScanner
from image_inspector.scanners.registry import ScannerRegistry


@pytest.fixture
def registry():
    return ScannerRegistry([
        CustomScanEntry(name="ok", imagescan=["true"], volumescan=["true"]),
        CustomScanEntry(name="bad", imagescan=["false"]),
    ])


@pytest.fixture
def metadata(tmp_path, registry):
    return InspectorMetadata.for_scanners({"Id": "sha256:1", "Os": "linux"}, str(tmp_path), registry.names())


@pytest.fixture
def fake_openscap_scan(monkeypatch):
    """Make the OpenSCAP scanner produce its artifacts without oscap."""
    def scan_cancelable(self, cancel_event, path, image):
        with open(self.results_file_name(), "wb") as f:
            f.write(b"<arf/>")
        if self.config.html:
            with open(self.html_results_file_name(), "wb") as f:
                f.write(b"<html/>")
        result = ScanResult("openscap", "1.2", datetime.now(), "https://access.redhat.com/errata/RHSA-1", "RHSA-1")
        return [result], None

    monkeypatch.setattr(OpenSCAPScanner, "scan_cancelable", scan_cancelable)


class TestScanOrchestrator:
    """Test running scan types by name."""

    def test_failures_are_isolated(self, options, registry, metadata):
        orchestrator = ScanOrchestrator(options, registry, metadata)

        orchestrator.run(["bad", "ok", "missing"], ScanMode.IMAGE)

        assert metadata.scanners["bad"].status is ScanStatus.ERROR
        assert "Unable to run bad" in metadata.scanners["bad"].error_message
        assert metadata.scanners["ok"].status is ScanStatus.SUCCESS
        assert metadata.scanners["missing"].status is ScanStatus.ERROR
        assert metadata.scanners["openscap"].status is ScanStatus.NOT_REQUESTED

    def test_duplicates_run_once(self, options, registry, metadata):
        ScanOrchestrator(options, registry, metadata).run(["ok", "ok"])
        assert metadata.scanners["ok"].status is ScanStatus.SUCCESS

    def test_openscap_reports(self, options, registry, metadata, fake_openscap_scan):
        options.openscap_html = True
        reports = ReportStore()

        ScanOrchestrator(options, registry, metadata, reports=reports).run(["openscap"])

        status = metadata.scanners["openscap"]
        assert status.status is ScanStatus.SUCCESS
        assert status.results[0].description == "RHSA-1"
        assert reports.get(OPENSCAP_REPORT) == b"<arf/>"
        assert reports.get(OPENSCAP_HTML_REPORT) == b"<html/>"
        assert os.path.isdir(options.scan_results_dir)

    def test_openscap_missing_html_report(self, options, registry, metadata, monkeypatch):
        """Test a scan whose artifacts cannot be read back is an error."""
        def scan_cancelable(self, cancel_event, path, image):
            with open(self.results_file_name(), "wb") as f:
                f.write(b"<arf/>")
            return [], None

        monkeypatch.setattr(OpenSCAPScanner, "scan_cancelable", scan_cancelable)
        options.openscap_html = True

        ScanOrchestrator(options, registry, metadata).run(["openscap"])

        status = metadata.scanners["openscap"]
        assert status.status is ScanStatus.ERROR
        assert "Unable to read openscap HTML result file" in status.error_message

    def test_openscap_invocation_error(self, options, registry, metadata, monkeypatch):
        def scan_cancelable(self, cancel_event, path, image):
            raise ScannerInvocationFailed("could not find RHEL dist")

        monkeypatch.setattr(OpenSCAPScanner, "scan_cancelable", scan_cancelable)

        ScanOrchestrator(options, registry, metadata).run(["openscap", "ok"])

        assert metadata.scanners["openscap"].status is ScanStatus.ERROR
        assert metadata.scanners["openscap"].error_message == "Unable to run openscap: could not find RHEL dist"
        assert metadata.scanners["ok"].status is ScanStatus.SUCCESS

    def test_container_mode(self, options, registry, metadata):
        """Test built-in scanners cannot scan a running container."""
        options.container = "web-1"
        registry = ScannerRegistry([CustomScanEntry(name="inside", containerscan=["true"])])

        ScanOrchestrator(options, registry, metadata).run(["openscap", "inside"], ScanMode.CONTAINER)

        assert metadata.scanners["openscap"].status is ScanStatus.ERROR
        assert metadata.scanners["inside"].status is ScanStatus.SUCCESS
