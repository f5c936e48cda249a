"""
Image inspector API service.

Flask application exposing health, metadata and OpenSCAP report endpoints,
and optionally the extracted filesystem as a read-only WebDAV share.
"""

import json
import logging
import os
from typing import Optional, Tuple

from flask import Flask, Response
from werkzeug.middleware.dispatcher import DispatcherMiddleware
from werkzeug.serving import run_simple
from wsgidav.fs_dav_provider import FilesystemProvider
from wsgidav.wsgidav_app import WsgiDAVApp

from image_inspector.config import InspectorOptions
from image_inspector.models import InspectorMetadata, ScanStatus
from image_inspector.orchestrator import OPENSCAP_HTML_REPORT, OPENSCAP_REPORT, ReportStore
from image_inspector.scanners.openscap import SCANNER_NAME as OPENSCAP

logger = logging.getLogger(__name__)

VERSION_TAG = "v1"
HEALTHZ_URL_PATH = "/healthz"
API_URL_PREFIX = "/api"
CONTENT_URL_PREFIX = f"{API_URL_PREFIX}/{VERSION_TAG}/content"
METADATA_URL_PATH = f"{API_URL_PREFIX}/{VERSION_TAG}/metadata"
OPENSCAP_URL_PATH = f"{API_URL_PREFIX}/{VERSION_TAG}/openscap"
OPENSCAP_REPORT_URL_PATH = f"{API_URL_PREFIX}/{VERSION_TAG}/openscap-report"
CHROOT_SERVE_PATH = "/"

DEFAULT_HOST = "0.0.0.0"


def _text(body: str, status: int = 200) -> Response:
    return Response(body, status=status, mimetype="text/plain")


def _json(payload) -> Response:
    return Response(json.dumps(payload, indent=2, default=str), mimetype="application/json")


def create_webdav_app(root: str) -> WsgiDAVApp:
    """Read-only, anonymous WebDAV application serving root."""
    config = {
        "mount_path": CONTENT_URL_PREFIX,
        "provider_mapping": {"/": FilesystemProvider(root, readonly=True)},
        "simple_dc": {"user_mapping": {"*": True}},
        "lock_storage": False,
        "property_manager": None,
        "dir_browser": {"enable": True},
        "logging": {"enable": False},
        "verbose": 1,
    }
    return WsgiDAVApp(config)


def create_app(
    metadata: InspectorMetadata,
    reports: ReportStore,
    options: InspectorOptions,
    serve_path: Optional[str] = None,
) -> Flask:
    """
    Create the API service application.

    Args:
        metadata: Inspection metadata, read only from here on
        reports: Raw report artifacts
        options: Inspector options (webdav and HTML report flags)
        serve_path: Root of the WebDAV share (defaults to the destination path)

    Returns:
        Configured Flask application
    """
    app = Flask(__name__)

    def openscap_report(report_name: str) -> Response:
        status = metadata.scanners.get(OPENSCAP)
        if status is None or status.status is ScanStatus.NOT_REQUESTED:
            return Response(b"", status=200)
        if status.status is ScanStatus.ERROR:
            return _text(f"OpenSCAP Error: {status.error_message}\n", 500)
        mimetype = "application/xml" if report_name == OPENSCAP_REPORT else "text/html"
        return Response(reports.get(report_name), status=200, mimetype=mimetype)

    @app.route(HEALTHZ_URL_PATH)
    def healthz():
        return _text("ok\n")

    @app.route(API_URL_PREFIX)
    def api_versions():
        return _json({"versions": [VERSION_TAG]})

    @app.route(METADATA_URL_PATH)
    def get_metadata():
        return _json(metadata.to_dict())

    @app.route(OPENSCAP_URL_PATH)
    def get_openscap():
        return openscap_report(OPENSCAP_REPORT)

    @app.route(OPENSCAP_REPORT_URL_PATH)
    def get_openscap_report():
        if not options.openscap_html:
            return _text("-openscap-html-report option was not chosen\n", 404)
        return openscap_report(OPENSCAP_HTML_REPORT)

    if options.webdav:
        root = serve_path or metadata.dst_path
        logger.info(f"Serving image content {metadata.dst_path} on webdav://{options.serve}{CONTENT_URL_PREFIX}/")
        app.wsgi_app = DispatcherMiddleware(app.wsgi_app, {CONTENT_URL_PREFIX: create_webdav_app(root)})

    return app


def parse_listen_address(serve: str) -> Tuple[str, int]:
    """
    Split a host:port listen address.

    An empty host listens on every interface.

    Raises:
        ValueError: If the port is missing or not a number
    """
    host, sep, port = serve.rpartition(":")
    if not sep or not port.isdigit():
        raise ValueError(f"Invalid listen address {serve!r}, expected host:port")
    return host.strip("[]") or DEFAULT_HOST, int(port)


def serve(options: InspectorOptions, metadata: InspectorMetadata, reports: ReportStore):
    """
    Serve the API until interrupted.

    With --chroot the process changes its root to the extracted filesystem
    before serving it, otherwise absolute symlinks in the image resolve on
    the host.

    Raises:
        OSError: If the chroot fails
        ValueError: If the listen address is invalid
    """
    host, port = parse_listen_address(options.serve)

    # Routes are only registered here, nothing is served before the chroot
    # below. Everything the service needs is loaded before the root changes
    serve_path = CHROOT_SERVE_PATH if options.chroot else metadata.dst_path
    app = create_app(metadata, reports, options, serve_path=serve_path)

    if options.chroot:
        try:
            os.chroot(metadata.dst_path)
            os.chdir(CHROOT_SERVE_PATH)
        except OSError as e:
            raise OSError(f"Unable to chroot into {metadata.dst_path}: {e}") from e
    else:
        logger.warning("!!!WARNING!!! It is insecure to serve the image content without changing")
        logger.warning("root (--chroot). Absolute-path symlinks in the image can lead to disclose")
        logger.warning("information of the hosting system.")

    logger.info(f"Starting API service on {host}:{port}")
    run_simple(host, port, app, threaded=True)
