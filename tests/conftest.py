"""
Pytest configuration and shared fixtures for image-inspector tests.
"""

import io
import tarfile
from typing import Iterable, List, Optional, Tuple
from unittest.mock import MagicMock, Mock

import pytest

from image_inspector.config import InspectorOptions

# (name, type, payload or link target, mode)
TarEntry = Tuple[str, bytes, object, int]

MTIME = 1500000000


def build_tar(entries: Iterable[TarEntry], mtime: int = MTIME) -> bytes:
    """Build an in-memory tar archive."""
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w", format=tarfile.PAX_FORMAT) as tar:
        for name, entry_type, payload, mode in entries:
            info = tarfile.TarInfo(name)
            info.type = entry_type
            info.mode = mode
            info.mtime = mtime
            data = None
            if entry_type == tarfile.REGTYPE:
                data = io.BytesIO(payload)
                info.size = len(payload)
            elif entry_type in (tarfile.SYMTYPE, tarfile.LNKTYPE):
                info.linkname = payload
            tar.addfile(info, data)
    return buf.getvalue()


BUSYBOX_ENTRIES: List[TarEntry] = [
    ("rootfs/etc", tarfile.DIRTYPE, None, 0o755),
    ("rootfs/etc/passwd", tarfile.REGTYPE, b"root:x:0:0:root:/root:/bin/sh\n", 0o644),
    ("rootfs/var", tarfile.DIRTYPE, None, 0o755),
    ("rootfs/bin", tarfile.DIRTYPE, None, 0o755),
    ("rootfs/bin/busybox", tarfile.REGTYPE, b"\x7fELF busybox", 0o755),
    ("rootfs/bin/sh", tarfile.SYMTYPE, "/bin/busybox", 0o777),
]


@pytest.fixture
def busybox_tar() -> bytes:
    """Export stream of a minimal busybox filesystem."""
    return build_tar(BUSYBOX_ENTRIES)


@pytest.fixture
def options(tmp_path) -> InspectorOptions:
    """Inspector options independent from the environment."""
    return InspectorOptions(
        uri="unix:///var/run/docker.sock",
        image="docker.io/library/busybox:latest",
        dst_path=str(tmp_path / "rootfs"),
        scan_results_dir=str(tmp_path / "results"),
        cve_url="http://cve.example.com/feeds/",
        clam_socket="",
        log_level="INFO",
        log_format="text",
    )


class FakeContainer:
    """Stand-in for docker.models.containers.Container."""

    def __init__(self, export_data: bytes, image_id: str = "sha256:0123456789abcdef", fail_after: Optional[int] = None):
        self.id = "c0ffee"
        self.attrs = {"Id": self.id, "Image": image_id}
        self.export_data = export_data
        self.fail_after = fail_after
        self.removed = False

    def reload(self):
        pass

    def export(self, chunk_size=None):
        from docker.errors import DockerException

        size = chunk_size or 512
        sent = 0
        for offset in range(0, len(self.export_data), size):
            if self.fail_after is not None and sent >= self.fail_after:
                raise DockerException("export interrupted")
            chunk = self.export_data[offset:offset + size]
            sent += len(chunk)
            yield chunk

    def remove(self):
        self.removed = True


def make_docker_client(container: FakeContainer, pull=None, image_attrs=None) -> MagicMock:
    """Mock docker client serving the given container."""
    client = MagicMock()
    client.api.pull.side_effect = pull or (lambda *args, **kwargs: iter([
        {"status": "Pulling fs layer", "id": "layer1"},
        {"status": "Downloading", "id": "layer1", "progressDetail": {"current": 2048, "total": 4096}},
        {"status": "Downloading", "id": "layer1", "progressDetail": {"current": 4096, "total": 4096}},
        {"status": "Pull complete", "id": "layer1"},
    ]))
    client.containers.create.return_value = container
    client.images.get.return_value = Mock(attrs=image_attrs or {
        "Id": container.attrs["Image"],
        "Os": "linux",
        "Architecture": "amd64",
        "RepoTags": ["busybox:latest"],
    })
    return client


@pytest.fixture
def fake_container(busybox_tar) -> FakeContainer:
    return FakeContainer(busybox_tar)


@pytest.fixture
def docker_client(fake_container) -> MagicMock:
    return make_docker_client(fake_container)


@pytest.fixture
def tar_builder():
    """Factory for in-memory tar archives."""
    return build_tar


@pytest.fixture
def container_builder():
    """Factory for fake containers."""
    return FakeContainer


@pytest.fixture
def client_builder():
    """Factory for mock docker clients."""
    return make_docker_client
