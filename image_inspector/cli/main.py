#!/usr/bin/env python3
"""
image-inspector CLI

Main command-line interface entry point.
"""

import sys

import click

from image_inspector import __version__
from image_inspector.config import InspectorOptions
from image_inspector.exceptions import InspectorError
from image_inspector.inspector import ImageInspector
from image_inspector.observability import get_logger, setup_logging
from image_inspector.scanners.registry import ScannerRegistry

logger = get_logger(__name__)


@click.command(name="image-inspector")
@click.version_option(version=__version__)
@click.option("--docker", "uri", help="Daemon socket to connect to")
@click.option("--image", default="", help="Docker image to inspect")
@click.option("--container", default="", help="Container to inspect")
@click.option("--volume", default="", help="Volume to inspect")
@click.option("--custom", "custom_scan_conf", default="", help="YAML config file for custom scan types")
@click.option("--path", "dst_path", default="", help="Destination path for the image files")
@click.option("--serve", default="", help="Host and port to listen on for Image Inspector API service")
@click.option("--webdav", is_flag=True, help="Serve webdav via Image Inspector API service")
@click.option("--chroot", is_flag=True, help="Change root when serving the image with webdav")
@click.option(
    "--dockercfg",
    multiple=True,
    help="Location of the docker configuration files. May be specified more than once",
)
@click.option("--username", default="", help="username for authenticating with the docker registry")
@click.option(
    "--password-file",
    default="",
    help="Location of a file that contains the password for authentication with the docker registry",
)
@click.option(
    "--scan-type",
    multiple=True,
    help="The type of the scan to be done on the inspected image. May be specified more than once",
)
@click.option("--scan-results-dir", default=None, help="The directory that will contain the results of the scan")
@click.option(
    "--openscap-html-report",
    "openscap_html",
    is_flag=True,
    help="Generate an OpenScap HTML report in addition to the ARF formatted report",
)
@click.option("--cve-url", default=None, help="An alternative URL source for CVE files")
@click.option("--clam-socket", default=None, help="Location of the clamd socket, enables the clamav scan type")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
@click.option(
    "--log-format",
    type=click.Choice(["text", "json"], case_sensitive=False),
    default=None,
    help="Log format (default: $LOG_FORMAT or text)",
)
@click.option("--log-file", type=click.Path(dir_okay=False), default=None, help="Also write logs to this file")
def main(
    uri,
    image,
    container,
    volume,
    custom_scan_conf,
    dst_path,
    serve,
    webdav,
    chroot,
    dockercfg,
    username,
    password_file,
    scan_type,
    scan_results_dir,
    openscap_html,
    cve_url,
    clam_socket,
    verbose,
    log_format,
    log_file,
):
    """
    Extract a container image's filesystem, scan it and serve the results.

    Example:
        image-inspector --image=registry.access.redhat.com/ubi8 --scan-type=openscap --serve=0.0.0.0:8080
    """
    setup_logging(log_level="DEBUG" if verbose else None, log_format=log_format, log_file=log_file)

    options = InspectorOptions(
        image=image,
        container=container,
        volume=volume,
        custom_scan_conf=custom_scan_conf,
        dst_path=dst_path,
        serve=serve,
        webdav=webdav,
        chroot=chroot,
        dockercfg=list(dockercfg),
        username=username,
        password_file=password_file,
        scan_type=list(scan_type),
        openscap_html=openscap_html,
    )
    # Flags given on the command line win over the environment
    for name, value in (
        ("uri", uri),
        ("scan_results_dir", scan_results_dir),
        ("cve_url", cve_url),
        ("clam_socket", clam_socket),
    ):
        if value is not None:
            setattr(options, name, value)

    try:
        options.validate()
        registry = ScannerRegistry.from_config(options.custom_scan_conf, options.clam_socket)
        options.validate(registry.names())
    except InspectorError as e:
        logger.error(str(e))
        sys.exit(1)

    try:
        ImageInspector(options, registry).run()
    except InspectorError as e:
        logger.error(f"Unable to extract image: {e}")
        sys.exit(1)
    except (OSError, ValueError) as e:
        logger.error(f"Image Inspector service failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
