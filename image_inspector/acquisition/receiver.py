"""
Image acquisition.

Pulls the inspected image through the container daemon, creates an
ephemeral container from it without any command, exports the container's
root filesystem and reconstructs it on local disk.
"""

import json
import logging
import os
import queue
import secrets
import tempfile
import threading
from typing import Any, Callable, Dict, Iterable, Optional, Tuple

import docker
from docker.errors import DockerException
from docker.utils import parse_repository_tag

from image_inspector.acquisition.credentials import resolve_credentials
from image_inspector.acquisition.pipe import CHUNK_SIZE, drain, open_pipe
from image_inspector.acquisition.progress import PullProgressTracker
from image_inspector.acquisition.tar_extract import extract_tar_stream
from image_inspector.config import InspectorOptions
from image_inspector.exceptions import (
    ContainerCreateFailed,
    DaemonUnreachable,
    DestinationAllocationFailed,
    ExtractionFailed,
    InspectFailed,
    PullFailed,
)
from image_inspector.models import InspectorMetadata

logger = logging.getLogger(__name__)

# /var/tmp is usually not an in-memory tmpfs
TEMP_ROOT = "/var/tmp"


def generate_random_name() -> str:
    """Generate a random name for the ephemeral container."""
    return f"image-inspector-{secrets.randbelow(2 ** 63 - 1):016x}"


def create_output_dir(dir_name: str, temp_prefix: str) -> str:
    """
    Create the given directory, or a fresh temporary one if no name is given.

    Args:
        dir_name: Requested directory (an existing directory is accepted)
        temp_prefix: Prefix of the temporary directory name

    Returns:
        Path of the directory

    Raises:
        DestinationAllocationFailed: If the directory cannot be created
    """
    if dir_name:
        try:
            os.mkdir(dir_name, 0o755)
        except FileExistsError:
            pass
        except OSError as e:
            raise DestinationAllocationFailed(f"Unable to create destination path: {e}") from e
        return dir_name

    try:
        return tempfile.mkdtemp(prefix=temp_prefix, dir=TEMP_ROOT)
    except OSError as e:
        raise DestinationAllocationFailed(f"Unable to create temporary path: {e}") from e


def split_image_reference(image: str) -> Tuple[str, str]:
    """Split an image reference into repository and tag (defaults to latest)."""
    repository, tag = parse_repository_tag(image)
    return repository, tag or "latest"


class ImageReceiver:
    """
    Pulls and extracts an image's filesystem.

    The destination path chosen during extraction is written back to
    ``options.dst_path``.
    """

    def __init__(
        self,
        options: InspectorOptions,
        client_factory: Optional[Callable[..., Any]] = None,
        scanner_names: Iterable[str] = (),
    ):
        """
        Initialize image receiver.

        Args:
            options: Inspector options (image, daemon URI, credentials, path)
            client_factory: Callable building a docker client from base_url
            scanner_names: Scanners to list as NotRequested in the metadata
        """
        self.options = options
        self.client_factory = client_factory or docker.DockerClient
        self.scanner_names = list(scanner_names)

    def extract_image(self) -> InspectorMetadata:
        """
        Pull the image and extract its filesystem to the destination path.

        Returns:
            Metadata wrapping the inspected image descriptor

        Raises:
            InspectorError: Any acquisition error, the run cannot continue
        """
        client = self._connect()
        try:
            self.pull_image(client)
            image_metadata = self.create_and_extract_image(client, generate_random_name())
        finally:
            client.close()

        return InspectorMetadata.for_scanners(
            image=image_metadata,
            dst_path=self.options.dst_path,
            scanner_names=self.scanner_names,
        )

    def _connect(self):
        try:
            client = self.client_factory(base_url=self.options.uri)
            client.ping()
        except DockerException as e:
            raise DaemonUnreachable(f"Unable to connect to docker daemon: {e}") from e
        return client

    def pull_image(self, client):
        """
        Pull the inspected image, trying every authentication candidate.

        Fails only if all of them failed.

        Raises:
            PullFailed: With the last underlying error
        """
        logger.info(f"Pulling image {self.options.image}")

        credentials = resolve_credentials(
            self.options.dockercfg,
            self.options.username,
            self.options.password_file,
        )
        repository, tag = split_image_reference(self.options.image)

        last_error: Optional[Exception] = None
        with PullProgressTracker() as tracker:
            for name, auth in credentials:
                try:
                    self._pull(client, repository, tag, auth, tracker)
                    return
                except DockerException as e:
                    last_error = e
                    logger.info(f"Authentication with {name} failed: {e}")

        raise PullFailed(f"Unable to pull docker image: {last_error}")

    def _pull(self, client, repository: str, tag: str, auth: Dict[str, str], tracker: PullProgressTracker):
        stream = client.api.pull(
            repository,
            tag=tag,
            stream=True,
            decode=True,
            auth_config=auth,
        )
        for message in stream:
            if message.get("error"):
                raise DockerException(message["error"])
            tracker.write(json.dumps(message).encode("utf-8") + b"\n")

    def create_and_extract_image(self, client, container_name: str) -> Dict[str, Any]:
        """
        Create a container from the image and extract its filesystem.

        The container is removed afterwards, whether extraction succeeded or
        not. When no destination path is set a temporary directory under
        /var/tmp is allocated and recorded in the options.

        Returns:
            Image descriptor as reported by the daemon
        """
        try:
            # For security purpose we don't define any entrypoint and command
            container = client.containers.create(
                self.options.image,
                name=container_name,
                entrypoint=[""],
                command=[""],
            )
        except DockerException as e:
            raise ContainerCreateFailed(f"Unable to create docker container: {e}") from e

        try:
            try:
                container.reload()
                image_id = container.attrs["Image"]
            except (DockerException, KeyError) as e:
                raise InspectFailed(f"Unable to get docker container information: {e}") from e

            try:
                image_metadata = client.images.get(image_id).attrs
            except DockerException as e:
                raise InspectFailed(f"Unable to get docker image information: {e}") from e

            self.options.dst_path = create_output_dir(self.options.dst_path, "image-inspector-")

            logger.info(f"Extracting image {self.options.image} to {self.options.dst_path}")
            self.export_and_extract(container, self.options.dst_path)
        finally:
            self._remove_container(container)

        return image_metadata

    def export_and_extract(self, container, destination: str):
        """
        Stream the container filesystem export into the tar reconstructor.

        The export runs on its own thread writing into a bounded pipe while
        this thread reconstructs the archive. Both the end of the archive and
        the export outcome are awaited before returning.

        Raises:
            ExtractionFailed: If either side failed
        """
        reader, writer = open_pipe()
        export_outcome: queue.Queue = queue.Queue(maxsize=1)

        def export():
            error = None
            try:
                for chunk in container.export(chunk_size=CHUNK_SIZE):
                    writer.write(chunk)
            except Exception as e:
                error = e
            finally:
                writer.close()
                export_outcome.put(error)

        exporter = threading.Thread(target=export, name="container-export", daemon=True)
        exporter.start()

        extract_error: Optional[ExtractionFailed] = None
        try:
            extract_tar_stream(reader, destination)
            # Padding after the end-of-archive marker
            drain(reader)
        except ExtractionFailed as e:
            extract_error = e
        finally:
            # Unblocks the exporter if extraction stopped early
            reader.close()

        export_error = export_outcome.get()
        exporter.join()

        if extract_error is not None:
            raise extract_error
        if export_error is not None:
            raise ExtractionFailed(f"Unable to extract container: {export_error}") from export_error

    def _remove_container(self, container):
        try:
            container.remove()
        except DockerException as e:
            logger.warning(f"Unable to remove container {container.id}: {e}")
