"""
Tests for tar stream reconstruction.
"""

import io
import os
import stat
import tarfile

import pytest

from image_inspector.acquisition.tar_extract import extract_tar_stream, resolve_entry_path
from image_inspector.exceptions import ExtractionFailed

from conftest import MTIME


def _extract(data: bytes, destination):
    extract_tar_stream(io.BytesIO(data), str(destination))


class TestResolveEntryPath:
    """Test archive entry path mapping."""

    def test_strips_rootfs_prefix(self, tmp_path):
        assert resolve_entry_path(str(tmp_path), "rootfs/etc/passwd") == str(tmp_path / "etc" / "passwd")

    def test_absolute_names_stay_inside(self, tmp_path):
        assert resolve_entry_path(str(tmp_path), "/etc/passwd") == str(tmp_path / "etc" / "passwd")

    def test_rejects_parent_traversal(self, tmp_path):
        assert resolve_entry_path(str(tmp_path), "rootfs/../../etc/passwd") is None
        assert resolve_entry_path(str(tmp_path), "../evil") is None

    def test_rejects_symlinked_parent(self, tmp_path):
        root = tmp_path / "root"
        outside = tmp_path / "outside"
        root.mkdir()
        outside.mkdir()
        os.symlink(str(outside), str(root / "link"))

        assert resolve_entry_path(str(root), "rootfs/link/pwned") is None


class TestExtractTarStream:
    """Test reconstruction of exported filesystems."""

    def test_busybox_tree(self, busybox_tar, tmp_path):
        """Test the reconstructed tree matches the archive."""
        _extract(busybox_tar, tmp_path)

        assert (tmp_path / "etc" / "passwd").read_bytes() == b"root:x:0:0:root:/root:/bin/sh\n"
        assert (tmp_path / "var").is_dir()
        assert os.readlink(str(tmp_path / "bin" / "sh")) == "/bin/busybox"
        assert (tmp_path / "bin" / "busybox").read_bytes() == b"\x7fELF busybox"

    def test_modes_and_times(self, tar_builder, tmp_path):
        """Test modes are kept with owner read/write forced on."""
        data = tar_builder([
            ("rootfs/ro", tarfile.DIRTYPE, None, 0o500),
            ("rootfs/ro/secret", tarfile.REGTYPE, b"x", 0o400),
            ("rootfs/tool", tarfile.REGTYPE, b"#!/bin/sh\n", 0o755),
        ])
        _extract(data, tmp_path)

        secret = os.stat(str(tmp_path / "ro" / "secret"))
        assert stat.S_IMODE(secret.st_mode) == 0o600
        assert int(secret.st_mtime) == MTIME

        assert stat.S_IMODE(os.stat(str(tmp_path / "tool")).st_mode) == 0o755
        assert stat.S_IMODE(os.stat(str(tmp_path / "ro")).st_mode) & 0o700 == 0o700

    def test_hard_link(self, tar_builder, tmp_path):
        data = tar_builder([
            ("rootfs/bin", tarfile.DIRTYPE, None, 0o755),
            ("rootfs/bin/busybox", tarfile.REGTYPE, b"busybox", 0o755),
            ("rootfs/bin/ls", tarfile.LNKTYPE, "rootfs/bin/busybox", 0o755),
        ])
        _extract(data, tmp_path)

        assert os.stat(str(tmp_path / "bin" / "ls")).st_ino == os.stat(str(tmp_path / "bin" / "busybox")).st_ino

    def test_special_files_are_skipped(self, tar_builder, tmp_path):
        data = tar_builder([
            ("rootfs/dev", tarfile.DIRTYPE, None, 0o755),
            ("rootfs/dev/fifo", tarfile.FIFOTYPE, None, 0o644),
            ("rootfs/etc", tarfile.DIRTYPE, None, 0o755),
        ])
        _extract(data, tmp_path)

        assert not os.path.lexists(str(tmp_path / "dev" / "fifo"))
        assert (tmp_path / "etc").is_dir()

    def test_reextraction_is_idempotent(self, busybox_tar, tar_builder, tmp_path):
        """Test extracting the same stream twice yields the same tree."""
        linked = tar_builder([
            ("rootfs/bin", tarfile.DIRTYPE, None, 0o755),
            ("rootfs/bin/busybox", tarfile.REGTYPE, b"\x7fELF busybox", 0o755),
            ("rootfs/bin/ls", tarfile.LNKTYPE, "rootfs/bin/busybox", 0o755),
        ])

        for _ in range(2):
            _extract(busybox_tar, tmp_path)
            _extract(linked, tmp_path)

        assert (tmp_path / "etc" / "passwd").read_bytes() == b"root:x:0:0:root:/root:/bin/sh\n"
        assert os.readlink(str(tmp_path / "bin" / "sh")) == "/bin/busybox"
        assert (tmp_path / "bin" / "ls").read_bytes() == b"\x7fELF busybox"

    def test_file_replaces_symlink(self, tar_builder, tmp_path):
        """Test a regular file entry never writes through an existing symlink."""
        target = tmp_path / "target"
        target.write_bytes(b"untouched")
        root = tmp_path / "root"
        root.mkdir()
        os.symlink(str(target), str(root / "file"))

        _extract(tar_builder([("rootfs/file", tarfile.REGTYPE, b"new", 0o644)]), root)

        assert not os.path.islink(str(root / "file"))
        assert (root / "file").read_bytes() == b"new"
        assert target.read_bytes() == b"untouched"

    def test_traversal_never_escapes(self, tar_builder, tmp_path):
        """Test entries resolving outside of the destination are skipped."""
        root = tmp_path / "root"
        outside = tmp_path / "outside"
        root.mkdir()
        outside.mkdir()

        data = tar_builder([
            ("../evil", tarfile.REGTYPE, b"evil", 0o644),
            ("rootfs/../../evil2", tarfile.REGTYPE, b"evil", 0o644),
            ("rootfs/link", tarfile.SYMTYPE, str(outside), 0o777),
            ("rootfs/link/pwned", tarfile.REGTYPE, b"evil", 0o644),
            ("rootfs/hl", tarfile.LNKTYPE, "../../outside/victim", 0o644),
            ("rootfs/ok", tarfile.REGTYPE, b"fine", 0o644),
        ])
        _extract(data, root)

        assert os.listdir(str(outside)) == []
        assert not (tmp_path / "evil").exists()
        assert not (tmp_path / "evil2").exists()
        assert not os.path.lexists(str(root / "hl"))
        assert (root / "ok").read_bytes() == b"fine"

    def test_invalid_stream(self, tmp_path):
        with pytest.raises(ExtractionFailed):
            _extract(b"", tmp_path)

    def test_truncated_stream(self, busybox_tar, tmp_path):
        """Test a stream cut in the middle of a file payload fails."""
        # Header of rootfs/etc/passwd is followed by its payload block
        truncated = busybox_tar[: busybox_tar.index(b"root:x:0:0") + 4]

        with pytest.raises(ExtractionFailed):
            _extract(truncated, tmp_path)

    def test_corrupted_header_mid_stream(self, tar_builder, tmp_path):
        """Test a damaged header after the first entry aborts extraction."""
        data = bytearray(tar_builder([
            ("rootfs/a", tarfile.REGTYPE, b"first", 0o644),
            ("rootfs/b", tarfile.REGTYPE, b"second", 0o644),
            ("rootfs/c", tarfile.REGTYPE, b"third", 0o644),
        ]))
        header = data.index(b"rootfs/b\0")
        assert header % tarfile.BLOCKSIZE == 0
        # chksum field of the ustar header
        data[header + 148:header + 156] = b"0000000\0"

        with pytest.raises(ExtractionFailed, match="invalid tar header"):
            _extract(bytes(data), tmp_path)

        assert (tmp_path / "a").read_bytes() == b"first"
        assert not (tmp_path / "c").exists()
