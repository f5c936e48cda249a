"""
OpenSCAP scanner.

Evaluates the Red Hat CVE OVAL feed matching the image's RHEL release
against the extracted filesystem with ``oscap-chroot``. Produces an ARF
result file and optionally an HTML report in the scan results directory.
"""

import bz2
import logging
import os
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional
from urllib.parse import urljoin
from xml.etree import ElementTree

import requests

from image_inspector.exceptions import ScannerInvocationFailed, ScannerResultUnreadable
from image_inspector.models import ScanResult
from image_inspector.scanners.base import ScanOutput, Scanner, run_command

logger = logging.getLogger(__name__)

SCANNER_NAME = "openscap"
OPENSCAP_VERSION = "1.2"

DEFAULT_CVE_URL = "https://www.redhat.com/security/data/metrics/ds/"
DEFAULT_CVE_DIR = "/tmp"

OSCAP_CHROOT = "oscap-chroot"
CPE = "oval:org.open-scap.cpe.rhel:def:"
CPE_DICT = "/usr/share/openscap/cpe/openscap-cpe-oval.xml"
DIST_CVE_NAME_FMT = "com.redhat.rhsa-RHEL{dist}.ds.xml"
RHEL_DIST_NUMBERS = (5, 6, 7, 8, 9)

ARF_RESULT_FILE = "results-arf.xml"
HTML_RESULT_FILE = "results.html"

IMAGE_SHORT_ID_LEN = 11
UNKNOWN = "Unknown"

DOWNLOAD_TIMEOUT_SEC = 60
DOWNLOAD_CHUNK_SIZE = 64 * 1024


@dataclass
class OpenSCAPConfig:
    """
    Configuration of the OpenSCAP scanner.

    Attributes:
        results_dir: Directory receiving the ARF (and HTML) results
        cve_dir: Working directory for the downloaded CVE feed
        cve_url: Base URL of the CVE feeds
        html: Also generate an HTML report
    """
    results_dir: str
    cve_dir: str = DEFAULT_CVE_DIR
    cve_url: str = DEFAULT_CVE_URL
    html: bool = False


class OpenSCAPScanner(Scanner):
    """Runs an OVAL CVE evaluation of a RHEL based filesystem."""

    def __init__(self, config: OpenSCAPConfig, session: Optional[requests.Session] = None):
        self.config = config
        self.session = session or requests.Session()

    def name(self) -> str:
        return SCANNER_NAME

    def results_file_name(self) -> str:
        return os.path.join(self.config.results_dir, ARF_RESULT_FILE)

    def html_results_file_name(self) -> str:
        return os.path.join(self.config.results_dir, HTML_RESULT_FILE)

    def scan_cancelable(
        self,
        cancel_event: Optional[threading.Event],
        path: str,
        image: Optional[Dict[str, Any]],
    ) -> ScanOutput:
        """
        Evaluate the CVE feed against the filesystem at path.

        Returns:
            Findings for every definition that evaluated to true, parsed from
            the ARF result file

        Raises:
            ScannerInvocationFailed: Unsupported image or oscap failure
            ScannerResultUnreadable: The ARF result file cannot be parsed
        """
        image = image or {}
        scan_started = datetime.now()

        os_name = image.get("Os", "linux")
        if os_name.lower() != "linux":
            raise ScannerInvocationFailed(f"Unsupported OS {os_name}")

        env = self._oscap_env(image)
        dist = self.get_rhel_dist(path, env, cancel_event)
        cve_file = self.get_input_cve(dist, cancel_event)

        args = [OSCAP_CHROOT, path, "oval", "eval", "--results-arf", self.results_file_name()]
        if self.config.html:
            args += ["--report", self.html_results_file_name()]
        args.append(cve_file)

        logger.info(f"{SCANNER_NAME} scanning {path}. Placing results in {self.config.results_dir}")
        exit_code, _ = run_command(args, env=env, cancel_event=cancel_event)
        if exit_code != 0:
            raise ScannerInvocationFailed(f"{OSCAP_CHROOT} exited with status {exit_code}")

        try:
            with open(self.results_file_name(), "rb") as f:
                arf = f.read()
        except OSError as e:
            raise ScannerResultUnreadable(f"Unable to read {SCANNER_NAME} result file: {e}") from e

        return parse_arf_results(arf, scan_started), None

    def _oscap_env(self, image: Dict[str, Any]) -> Dict[str, str]:
        image_id = image.get("Id", "").split(":")[-1]
        env = dict(os.environ)
        env.update({
            "OSCAP_PROBE_ARCHITECTURE": image.get("Architecture") or UNKNOWN,
            "OSCAP_PROBE_OS_NAME": image.get("Os") or "Linux",
            "OSCAP_PROBE_OS_VERSION": UNKNOWN,
            "OSCAP_PROBE_PRIMARY_HOST_NAME": f"docker-image-{image_id[:IMAGE_SHORT_ID_LEN] or UNKNOWN}",
        })
        return env

    def get_rhel_dist(
        self,
        path: str,
        env: Dict[str, str],
        cancel_event: Optional[threading.Event] = None,
    ) -> int:
        """
        Detect the RHEL major release of the filesystem at path.

        Raises:
            ScannerInvocationFailed: If the filesystem is not RHEL based
        """
        for dist in RHEL_DIST_NUMBERS:
            cpe_id = f"{CPE}{dist}"
            exit_code, output = run_command(
                [OSCAP_CHROOT, path, "oval", "eval", "--id", cpe_id, CPE_DICT],
                env=env,
                cancel_event=cancel_event,
                capture_output=True,
            )
            if exit_code != 0:
                raise ScannerInvocationFailed(f"Unable to detect RHEL release: {OSCAP_CHROOT} exited with status {exit_code}")
            if f"{cpe_id}: true" in output.decode("utf-8", errors="replace"):
                logger.debug(f"Detected RHEL {dist} in {path}")
                return dist

        raise ScannerInvocationFailed("could not find RHEL dist")

    def get_input_cve(self, dist: int, cancel_event: Optional[threading.Event] = None) -> str:
        """
        Download and decompress the CVE feed of a RHEL release.

        Returns:
            Path of the decompressed feed in the CVE directory
        """
        cve_name = DIST_CVE_NAME_FMT.format(dist=dist)
        cve_file = os.path.join(self.config.cve_dir, cve_name)
        base_url = self.config.cve_url if self.config.cve_url.endswith("/") else self.config.cve_url + "/"
        cve_url = urljoin(base_url, cve_name + ".bz2")

        logger.info(f"Downloading CVE feed {cve_url}")
        decompressor = bz2.BZ2Decompressor()
        try:
            with self.session.get(cve_url, stream=True, timeout=DOWNLOAD_TIMEOUT_SEC) as response:
                response.raise_for_status()
                with open(cve_file, "wb") as out:
                    for chunk in response.iter_content(chunk_size=DOWNLOAD_CHUNK_SIZE):
                        if cancel_event is not None and cancel_event.is_set():
                            raise ScannerInvocationFailed("CVE feed download was canceled")
                        out.write(decompressor.decompress(chunk))
        except requests.RequestException as e:
            raise ScannerInvocationFailed(f"Unable to download CVE feed {cve_url}: {e}") from e
        except (OSError, EOFError) as e:
            raise ScannerInvocationFailed(f"Unable to store CVE feed {cve_file}: {e}") from e

        if not decompressor.eof:
            raise ScannerInvocationFailed(f"Truncated CVE feed {cve_url}")
        return cve_file


def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def parse_arf_results(arf: bytes, timestamp: datetime) -> List[ScanResult]:
    """
    Extract findings from an ARF result document.

    Every OVAL definition whose result is "true" becomes a finding described
    by the definition title and referencing its advisory URL.

    Raises:
        ScannerResultUnreadable: If the document is not valid XML
    """
    try:
        root = ElementTree.fromstring(arf)
    except ElementTree.ParseError as e:
        raise ScannerResultUnreadable(f"Unable to parse {SCANNER_NAME} result file: {e}") from e

    definitions = {}
    evaluated = []
    for elem in root.iter():
        if _local_name(elem.tag) != "definition":
            continue
        if elem.get("id"):
            definitions[elem.get("id")] = elem
        elif elem.get("definition_id") and elem.get("result") == "true":
            evaluated.append(elem.get("definition_id"))

    results = []
    for definition_id in evaluated:
        title, reference = definition_id, definition_id
        definition = definitions.get(definition_id)
        if definition is not None:
            for child in definition.iter():
                name = _local_name(child.tag)
                if name == "title" and child.text:
                    title = child.text.strip()
                elif name == "reference" and child.get("ref_url") and reference == definition_id:
                    reference = child.get("ref_url")

        results.append(ScanResult(
            name=SCANNER_NAME,
            scanner_version=OPENSCAP_VERSION,
            timestamp=timestamp,
            reference=reference,
            description=title,
        ))

    return results
