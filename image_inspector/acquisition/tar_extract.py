"""
Tar stream reconstruction.

Replays a tar formatted byte stream onto a destination directory entry by
entry. Directories and regular files always get owner read/write so the
extracted tree stays writable, special files are skipped and timestamps are
restored on a best-effort basis.
"""

import logging
import os
import shutil
import tarfile
from typing import BinaryIO, Optional

from image_inspector.exceptions import ExtractionFailed

logger = logging.getLogger(__name__)

DOCKER_TAR_PREFIX = "rootfs/"
OWNER_PERM_RW = 0o600


def _strip_prefix(name: str) -> str:
    if name.startswith(DOCKER_TAR_PREFIX):
        return name[len(DOCKER_TAR_PREFIX):]
    return name


def _is_within(root: str, path: str) -> bool:
    return os.path.commonpath([root, path]) == root


def resolve_entry_path(destination: str, name: str) -> Optional[str]:
    """
    Map an archive entry name to its path under destination.

    Returns:
        Absolute path under destination, or None if the entry would escape it
        (through '..' components or through a symlinked parent directory)
    """
    root = os.path.abspath(destination)
    target = os.path.normpath(os.path.join(root, _strip_prefix(name).lstrip("/")))
    if not _is_within(root, target):
        return None

    # The final component is created by the entry itself, parents must not
    # lead outside through symlinks extracted earlier
    real_root = os.path.realpath(root)
    real_parent = os.path.realpath(os.path.dirname(target))
    if target != root and not _is_within(real_root, real_parent):
        return None

    return target


def _remove_non_directory(path: str):
    """Let a later entry replace an earlier file, symlink or hard link."""
    if os.path.lexists(path) and not (os.path.isdir(path) and not os.path.islink(path)):
        os.unlink(path)


def _restore_times(path: str, member: tarfile.TarInfo):
    mtime = member.mtime
    try:
        atime = float(member.pax_headers.get("atime", mtime))
    except (TypeError, ValueError):
        atime = mtime
    try:
        os.utime(path, (atime, mtime), follow_symlinks=False)
    except (OSError, NotImplementedError) as e:
        logger.debug(f"Unable to restore times of {path}: {e}")


def _extract_directory(path: str, mode: int):
    try:
        os.mkdir(path, mode)
    except FileExistsError:
        try:
            os.chmod(path, mode)
        except OSError as e:
            raise ExtractionFailed(f"Unable to update directory mode: {e}") from e
    except OSError as e:
        raise ExtractionFailed(f"Unable to create directory: {e}") from e


def _extract_file(tar: tarfile.TarFile, member: tarfile.TarInfo, path: str, mode: int):
    try:
        if os.path.islink(path):
            os.unlink(path)
        fd = os.open(path, os.O_CREAT | os.O_TRUNC | os.O_WRONLY, mode)
    except OSError as e:
        raise ExtractionFailed(f"Unable to create file: {e}") from e

    try:
        # The creation mode is ignored for files that already existed
        os.fchmod(fd, mode)
    except OSError as e:
        os.close(fd)
        raise ExtractionFailed(f"Unable to create file: {e}") from e

    with os.fdopen(fd, "wb") as dst:
        src = tar.extractfile(member)
        try:
            if src is not None:
                shutil.copyfileobj(src, dst)
        except (OSError, tarfile.TarError) as e:
            raise ExtractionFailed(f"Unable to write into file: {e}") from e


def _extract_symlink(member: tarfile.TarInfo, path: str):
    try:
        _remove_non_directory(path)
        os.symlink(member.linkname, path)
    except OSError as e:
        raise ExtractionFailed(f"Unable to create symlink: {e}") from e


def _extract_hardlink(destination: str, member: tarfile.TarInfo, path: str) -> bool:
    target = resolve_entry_path(destination, member.linkname)
    if target is None:
        logger.warning(f"Skipping hard link {member.name}: target {member.linkname} is outside of {destination}")
        return False
    try:
        _remove_non_directory(path)
        os.link(target, path, follow_symlinks=False)
    except OSError as e:
        raise ExtractionFailed(f"Unable to create link: {e}") from e
    return True


class StrictTarInfo(tarfile.TarInfo):
    """
    TarInfo rejecting unreadable headers anywhere in the stream.

    tarfile ends iteration silently on a corrupted header past the first
    entry. Only an all-zero block ends the archive here.
    """

    @classmethod
    def fromtarfile(cls, tar):
        try:
            return super().fromtarfile(tar)
        except (tarfile.InvalidHeaderError, tarfile.TruncatedHeaderError) as e:
            raise ExtractionFailed(f"Unable to extract container: invalid tar header: {e}") from e


def process_tar_stream(tar: tarfile.TarFile, destination: str):
    """
    Materialize every entry of an open tar stream under destination.

    Args:
        tar: Tar file opened in streaming mode
        destination: Root directory of the reconstructed tree

    Raises:
        ExtractionFailed: On any read or filesystem error. Entries already
            written are left in place.
    """
    while True:
        try:
            member = tar.next()
        except tarfile.TarError as e:
            raise ExtractionFailed(f"Unable to extract container: {e}") from e
        if member is None:
            return

        path = resolve_entry_path(destination, member.name)
        if path is None:
            logger.warning(f"Skipping archive entry {member.name}: resolves outside of {destination}")
            continue

        # Overriding permissions to allow writing content
        mode = member.mode | OWNER_PERM_RW

        if member.isdir():
            _extract_directory(path, mode)
        elif member.isreg():
            _extract_file(tar, member, path, mode)
        elif member.issym():
            _extract_symlink(member, path)
        elif member.islnk():
            if not _extract_hardlink(destination, member, path):
                continue
        else:
            # Device nodes, FIFOs and the like are not needed for inspection
            continue

        _restore_times(path, member)


def extract_tar_stream(fileobj: BinaryIO, destination: str):
    """
    Reconstruct a tar byte stream under destination.

    The stream is read sequentially, no seeking is required.

    Raises:
        ExtractionFailed: If the stream is not a valid tar archive or an
            entry cannot be materialized
    """
    try:
        tar = tarfile.open(fileobj=fileobj, mode="r|", tarinfo=StrictTarInfo)
    except tarfile.TarError as e:
        raise ExtractionFailed(f"Unable to create image tar reader: {e}") from e

    with tar:
        process_tar_stream(tar, destination)
