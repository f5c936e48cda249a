"""
Inspection run.

Ties acquisition, scanning and the API service together for one invocation.
"""

import logging
import threading
from typing import Any, Callable, Optional

from image_inspector.acquisition.receiver import ImageReceiver
from image_inspector.config import InspectorOptions
from image_inspector.models import InspectorMetadata
from image_inspector.orchestrator import ReportStore, ScanOrchestrator
from image_inspector.scanners.custom import ScanMode
from image_inspector.scanners.registry import ScannerRegistry
from image_inspector import server

logger = logging.getLogger(__name__)


class ImageInspector:
    """
    Runs one inspection as described by the options.

    Depending on the options an image is pulled and extracted, or a volume or
    running container is scanned in place. The API service is started last,
    if requested, and serves until interrupted.
    """

    def __init__(
        self,
        options: InspectorOptions,
        registry: ScannerRegistry,
        client_factory: Optional[Callable[..., Any]] = None,
        cancel_event: Optional[threading.Event] = None,
    ):
        self.options = options
        self.registry = registry
        self.client_factory = client_factory
        self.cancel_event = cancel_event
        self.reports = ReportStore()
        self.metadata: Optional[InspectorMetadata] = None

    def run(self) -> Optional[InspectorMetadata]:
        """
        Run the inspection.

        Returns:
            Metadata of the run, or None if there was nothing to do

        Raises:
            InspectorError: If the image cannot be acquired
        """
        opts = self.options

        if opts.image:
            receiver = ImageReceiver(opts, self.client_factory, scanner_names=self.registry.names())
            self.metadata = receiver.extract_image()
            self.scan(ScanMode.IMAGE)
        elif opts.volume:
            logger.info("Scanning volume")
            self.metadata = self._local_metadata(opts.volume)
            self.scan(ScanMode.VOLUME)
        elif opts.container:
            logger.info(f"Scanning container {opts.container}")
            self.metadata = self._local_metadata(opts.dst_path)
            self.scan(ScanMode.CONTAINER)
        elif opts.serve:
            self.metadata = self._local_metadata(opts.dst_path)
        else:
            logger.info("Nothing to do!")
            return None

        if opts.serve:
            server.serve(opts, self.metadata, self.reports)

        return self.metadata

    def scan(self, mode: ScanMode):
        if not self.options.scan_type:
            return
        orchestrator = ScanOrchestrator(
            self.options,
            self.registry,
            self.metadata,
            reports=self.reports,
            cancel_event=self.cancel_event,
        )
        orchestrator.run(self.options.scan_type, mode)

    def _local_metadata(self, dst_path: str) -> InspectorMetadata:
        return InspectorMetadata.for_scanners(dst_path=dst_path, scanner_names=self.registry.names())
