from __future__ import annotations

import io
import tarfile
import zipfile
from pathlib import Path

import pytest

from devpod_core.errors import DownloadError
from devpod_core.extract import extract_tar, is_tar_archive, is_zip_archive, unzip_file


def _tar_bytes(entries: dict[str, bytes]) -> bytes:
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as archive:
        for name, data in entries.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            archive.addfile(info, io.BytesIO(data))
    return buffer.getvalue()


def test_archive_detection() -> None:
    assert is_tar_archive("tool.tar.gz")
    assert is_tar_archive("tool.tgz")
    assert is_zip_archive("tool.zip")
    assert not is_tar_archive("tool")


def test_extract_tar_writes_nested_entries(tmp_path: Path) -> None:
    extract_tar(io.BytesIO(_tar_bytes({"bin/tool": b"data"})), tmp_path / "out")
    assert (tmp_path / "out" / "bin" / "tool").read_bytes() == b"data"


def test_extract_tar_rejects_path_traversal(tmp_path: Path) -> None:
    with pytest.raises(DownloadError, match="escapes the target folder"):
        extract_tar(io.BytesIO(_tar_bytes({"../evil": b"x"})), tmp_path / "out")
    assert not (tmp_path / "evil").exists()


def test_extract_tar_reports_corrupt_stream(tmp_path: Path) -> None:
    with pytest.raises(DownloadError, match="decompress"):
        extract_tar(io.BytesIO(b"not an archive at all"), tmp_path / "out")


def test_unzip_file_preserves_mode(tmp_path: Path) -> None:
    archive_path = tmp_path / "tool.zip"
    with zipfile.ZipFile(archive_path, "w") as archive:
        info = zipfile.ZipInfo("dist/tool")
        info.external_attr = 0o755 << 16
        archive.writestr(info, b"data")

    unzip_file(archive_path, tmp_path / "out")

    target = tmp_path / "out" / "dist" / "tool"
    assert target.read_bytes() == b"data"
    assert target.stat().st_mode & 0o777 == 0o755
