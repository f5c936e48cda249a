"""
Configuration management for image-inspector.

Inspector options with environment variable defaults and validation.
"""

import os
from pathlib import Path
from typing import Iterable, List, Optional
from dataclasses import dataclass, field

from dotenv import load_dotenv

from image_inspector.exceptions import OptionsError
from image_inspector.scanners.openscap import DEFAULT_CVE_URL, SCANNER_NAME as OPENSCAP

load_dotenv()


DEFAULT_DOCKER_URI = "unix:///var/run/docker.sock"


@dataclass
class InspectorOptions:
    """Options of one inspection run."""

    # Daemon socket to connect to
    uri: str = field(
        default_factory=lambda: os.getenv("DOCKER_HOST", DEFAULT_DOCKER_URI)
    )

    # What to inspect
    image: str = ""
    container: str = ""
    volume: str = ""

    # YAML file describing custom scan types
    custom_scan_conf: str = ""

    # Destination path for the image files (temporary directory if empty)
    dst_path: str = ""

    # host:port of the API service
    serve: str = ""
    webdav: bool = False
    chroot: bool = False

    # Registry authentication
    dockercfg: List[str] = field(default_factory=list)
    username: str = ""
    password_file: str = ""

    # Scanning
    scan_type: List[str] = field(default_factory=list)
    scan_results_dir: str = field(
        default_factory=lambda: os.getenv("SCAN_RESULTS_DIR", "")
    )
    openscap_html: bool = False
    cve_url: str = field(
        default_factory=lambda: os.getenv("CVE_URL", DEFAULT_CVE_URL)
    )
    clam_socket: str = field(
        default_factory=lambda: os.getenv("CLAMD_SOCKET", "")
    )

    # Logging
    log_level: str = field(
        default_factory=lambda: os.getenv("LOG_LEVEL", "INFO")
    )
    log_format: str = field(
        default_factory=lambda: os.getenv("LOG_FORMAT", "text")  # text, json
    )

    def validate(self, scan_options: Optional[Iterable[str]] = None):
        """
        Validate the option combination.

        Args:
            scan_options: Names of every registered scan type

        Raises:
            OptionsError: If the options are inconsistent
        """
        if not self.uri:
            raise OptionsError("Docker socket connection must be specified")
        if not (self.image or self.container or self.volume or self.serve):
            raise OptionsError(
                "Nothing to do! At least one of --serve, --image, --container, --volume must be specified."
            )
        if self.dockercfg and self.username:
            raise OptionsError("Only specify dockercfg file or username/password pair for authentication")
        if self.username and not self.password_file:
            raise OptionsError("Please specify password for the username")
        if self.webdav and not self.serve:
            raise OptionsError("Webdav can only be enabled when the API service is enabled")
        if self.chroot and not self.webdav:
            raise OptionsError("Change root can be used only when serving the image through webdav")
        if self.scan_results_dir and not self.scan_type:
            raise OptionsError("scan-results-dir can be used only when specifying scan-type")
        if self.scan_results_dir:
            results_dir = Path(self.scan_results_dir)
            if results_dir.exists() and not results_dir.is_dir():
                raise OptionsError(f"{self.scan_results_dir} is not a directory")
        if self.openscap_html and OPENSCAP not in self.scan_type:
            raise OptionsError(
                f'OpenScapHtml can be used only when specifying scan-type as "{OPENSCAP}"'
            )

        for path in [*self.dockercfg, self.password_file, self.custom_scan_conf]:
            if path and not Path(path).exists():
                raise OptionsError(f"{path} does not exist")

        if scan_options is not None:
            available = list(scan_options)
            for scan_type in self.scan_type:
                if scan_type not in available:
                    raise OptionsError(
                        f"{scan_type} is not one of the available scan-types which are {available}"
                    )
