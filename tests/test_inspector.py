"""
End-to-end tests of an inspection run against a mock daemon.
"""

import json
import os
from datetime import datetime
from unittest.mock import patch

import pytest

from image_inspector.inspector import ImageInspector
from image_inspector.models import ScanResult, ScanStatus
from image_inspector.orchestrator import ReportStore
from image_inspector.scanners.custom import CustomScanEntry
from image_inspector.scanners.openscap import OpenSCAPScanner
from image_inspector.scanners.registry import ScannerRegistry
from image_inspector.server import create_app


@pytest.fixture
def fake_openscap_scan(monkeypatch):
    seen = {}

    def scan_cancelable(self, cancel_event, path, image):
        seen["path"] = path
        with open(os.path.join(path, "etc", "passwd"), "rb") as f:
            seen["passwd"] = f.read()
        with open(self.results_file_name(), "wb") as f:
            f.write(b"<arf/>")
        return [ScanResult("openscap", "1.2", datetime.now(), "https://access.redhat.com/errata/RHSA-1", "RHSA-1")], None

    monkeypatch.setattr(OpenSCAPScanner, "scan_cancelable", scan_cancelable)
    return seen


class TestImageInspector:
    """Test complete inspection runs."""

    def test_image_scan_end_to_end(self, options, docker_client, fake_openscap_scan):
        """Test extraction, openscap scan and metadata served over HTTP."""
        options.scan_type = ["openscap"]
        inspector = ImageInspector(options, ScannerRegistry(), client_factory=lambda base_url: docker_client)

        metadata = inspector.run()

        root = options.dst_path
        assert fake_openscap_scan["passwd"] == b"root:x:0:0:root:/root:/bin/sh\n"
        assert os.path.isdir(os.path.join(root, "var"))
        assert os.readlink(os.path.join(root, "bin", "sh")) == "/bin/busybox"

        assert fake_openscap_scan["path"] == root
        assert metadata.scanners["openscap"].status is ScanStatus.SUCCESS
        assert inspector.reports.get("openscap") == b"<arf/>"

        client = create_app(metadata, inspector.reports, options).test_client()
        response = client.get("/api/v1/metadata")
        assert response.status_code == 200
        assert json.loads(response.data)["Scanners"]["openscap"]["Status"] == "Success"
        assert client.get("/api/v1/openscap").data == b"<arf/>"

    def test_scanner_failure_keeps_serving(self, options, docker_client):
        options.scan_type = ["bad", "good"]
        registry = ScannerRegistry([
            CustomScanEntry(name="bad", imagescan=["false"]),
            CustomScanEntry(name="good", imagescan=["true"]),
        ])

        metadata = ImageInspector(options, registry, client_factory=lambda base_url: docker_client).run()

        assert metadata.scanners["bad"].status is ScanStatus.ERROR
        assert metadata.scanners["good"].status is ScanStatus.SUCCESS
        assert metadata.scanners["openscap"].status is ScanStatus.NOT_REQUESTED

        client = create_app(metadata, ReportStore(), options).test_client()
        assert client.get("/api/v1/metadata").status_code == 200

    def test_volume_scan(self, options, tmp_path):
        volume = tmp_path / "volume"
        volume.mkdir()
        out = tmp_path / "seen"
        options.image = ""
        options.volume = str(volume)
        options.scan_type = ["vol"]
        registry = ScannerRegistry([CustomScanEntry(name="vol", volumescan=["sh", "-c", f'echo "$VOLUME_PATH" > {out}'])])

        metadata = ImageInspector(options, registry).run()

        assert metadata.dst_path == str(volume)
        assert metadata.scanners["vol"].status is ScanStatus.SUCCESS
        assert out.read_text() == f"{volume}\n"

    def test_serve_after_scan(self, options, docker_client):
        options.serve = "127.0.0.1:8080"

        with patch("image_inspector.server.serve") as serve:
            inspector = ImageInspector(options, ScannerRegistry(), client_factory=lambda base_url: docker_client)
            metadata = inspector.run()

        serve.assert_called_once_with(options, metadata, inspector.reports)

    def test_nothing_to_do(self, options):
        options.image = ""
        assert ImageInspector(options, ScannerRegistry()).run() is None
