import io
import os
import tarfile
import zipfile
from pathlib import Path

import pytest

from gatehouse.runtime.archive import archive_kind, extract_archive, make_executable
from gatehouse.runtime.base import ArchiveError


def _add_file(tar: tarfile.TarFile, name: str, data: bytes, mode: int = 0o644) -> None:
    info = tarfile.TarInfo(name)
    info.size = len(data)
    info.mode = mode
    tar.addfile(info, io.BytesIO(data))


def _write_tar(path: Path) -> None:
    with tarfile.open(path, "w:gz") as tar:
        _add_file(tar, "node-v1-linux-x64/bin/node", b"#!/bin/sh\n", mode=0o644)
        _add_file(tar, "node-v1-linux-x64/lib/npx-cli.js", b"console.log('npx')\n")
        link = tarfile.TarInfo("node-v1-linux-x64/bin/npx")
        link.type = tarfile.SYMTYPE
        link.linkname = "../lib/npx-cli.js"
        tar.addfile(link)


def test_archive_kind_by_extension() -> None:
    assert archive_kind("node.tar.gz") == "tar"
    assert archive_kind("NODE.TGZ") == "tar"
    assert archive_kind("node.zip") == "zip"
    with pytest.raises(ArchiveError, match="Unsupported archive type"):
        archive_kind("node.7z")


def test_extract_tar_keeps_relative_symlinks(tmp_path: Path) -> None:
    archive = tmp_path / "download.tmp"
    _write_tar(archive)

    extract_archive(archive, tmp_path / "out", archive_name="node-v1-linux-x64.tar.gz")

    root = tmp_path / "out" / "node-v1-linux-x64"
    assert (root / "bin" / "node").read_bytes() == b"#!/bin/sh\n"
    assert (root / "bin" / "npx").is_symlink()
    assert (root / "bin" / "npx").read_text(encoding="utf-8") == "console.log('npx')\n"


def test_extract_tar_rejects_path_traversal(tmp_path: Path) -> None:
    archive = tmp_path / "evil.tar.gz"
    with tarfile.open(archive, "w:gz") as tar:
        _add_file(tar, "../escaped.txt", b"nope")

    with pytest.raises(ArchiveError):
        extract_archive(archive, tmp_path / "out")

    assert not (tmp_path / "escaped.txt").exists()


@pytest.mark.skipif(os.name == "nt", reason="POSIX permissions")
def test_extract_zip_restores_mode_bits(tmp_path: Path) -> None:
    archive = tmp_path / "node.zip"
    with zipfile.ZipFile(archive, "w") as bundle:
        info = zipfile.ZipInfo("node-v1-win-x64/node.exe")
        info.external_attr = (0o755 & 0xFFFF) << 16
        bundle.writestr(info, b"MZ")
        bundle.writestr("node-v1-win-x64/npx.cmd", b"@echo off\r\n")

    extract_archive(archive, tmp_path / "out")

    node = tmp_path / "out" / "node-v1-win-x64" / "node.exe"
    assert node.read_bytes() == b"MZ"
    assert node.stat().st_mode & 0o777 == 0o755
    assert (tmp_path / "out" / "node-v1-win-x64" / "npx.cmd").exists()


def test_corrupt_archive_raises(tmp_path: Path) -> None:
    archive = tmp_path / "download.tmp"
    archive.write_bytes(b"this is not a gzip stream")

    with pytest.raises(ArchiveError) as exc_info:
        extract_archive(archive, tmp_path / "out", archive_name="node.tar.gz")

    assert exc_info.value.path == archive
    assert exc_info.value.code == "archive_error"


def test_corrupt_zip_raises(tmp_path: Path) -> None:
    archive = tmp_path / "node.zip"
    archive.write_bytes(b"PK\x03\x04 truncated")

    with pytest.raises(ArchiveError, match="Corrupt archive"):
        extract_archive(archive, tmp_path / "out")


@pytest.mark.skipif(os.name == "nt", reason="POSIX permissions")
def test_make_executable_marks_regular_files(tmp_path: Path) -> None:
    archive = tmp_path / "download.tmp"
    _write_tar(archive)
    extract_archive(archive, tmp_path, archive_name="node.tar.gz")
    bin_dir = tmp_path / "node-v1-linux-x64" / "bin"

    count = make_executable(bin_dir)

    assert count == 2
    assert (bin_dir / "node").stat().st_mode & 0o777 == 0o755
    assert os.access(bin_dir / "npx", os.X_OK)


def test_make_executable_requires_directory(tmp_path: Path) -> None:
    with pytest.raises(ArchiveError, match="Binary directory missing"):
        make_executable(tmp_path / "missing")
