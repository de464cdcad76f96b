from __future__ import annotations

import os
import tarfile
import zipfile
from pathlib import Path
from typing import IO

from devpod_core.errors import DownloadError

TAR_SUFFIXES = (".tar", ".tar.gz", ".tgz", ".gz")
ZIP_SUFFIX = ".zip"


def is_tar_archive(path: str) -> bool:
    return path.endswith(TAR_SUFFIXES)


def is_zip_archive(path: str) -> bool:
    return path.endswith(ZIP_SUFFIX)


def _safe_target(dest: Path, name: str) -> Path:
    root = dest.resolve()
    target = (root / name.lstrip("/")).resolve()
    if target != root and root not in target.parents:
        raise DownloadError(f"archive entry '{name}' escapes the target folder")
    return target


def extract_tar(stream: IO[bytes], dest: Path) -> None:
    """Extract a (optionally gzip compressed) tar stream into ``dest``."""
    dest.mkdir(parents=True, exist_ok=True)
    kwargs = {"filter": "data"} if hasattr(tarfile, "data_filter") else {}
    try:
        with tarfile.open(fileobj=stream, mode="r|*") as archive:
            for member in archive:
                _safe_target(dest, member.name)
                if member.issym():
                    link = os.path.join(os.path.dirname(member.name), member.linkname)
                    _safe_target(dest, link)
                elif member.islnk():
                    _safe_target(dest, member.linkname)
                archive.extract(member, path=dest, **kwargs)
    except (tarfile.TarError, EOFError) as exc:
        raise DownloadError(f"decompress: {exc}") from exc


def unzip_file(archive_path: Path, dest: Path) -> None:
    dest.mkdir(parents=True, exist_ok=True)
    try:
        with zipfile.ZipFile(archive_path) as archive:
            for info in archive.infolist():
                target = _safe_target(dest, info.filename)
                if info.is_dir():
                    target.mkdir(parents=True, exist_ok=True)
                    continue
                target.parent.mkdir(parents=True, exist_ok=True)
                with archive.open(info) as source, target.open("wb") as out:
                    while True:
                        chunk = source.read(64 * 1024)
                        if not chunk:
                            break
                        out.write(chunk)
                mode = (info.external_attr >> 16) & 0o777
                if mode:
                    os.chmod(target, mode)
    except zipfile.BadZipFile as exc:
        raise DownloadError(f"unzip {archive_path}: {exc}") from exc
