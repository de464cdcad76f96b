from __future__ import annotations

import hashlib
import logging
import os
import posixpath
import tempfile
from pathlib import Path
from urllib.parse import urlparse

import requests
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from devpod_core import paths
from devpod_core.errors import ChecksumError, DownloadError, HTTPStatusError
from devpod_core.extract import extract_tar, is_tar_archive, is_zip_archive, unzip_file
from devpod_core.io_utils import copy_file
from devpod_core.provider import ProviderBinary, ProviderConfig, platform_arch, platform_os

logger = logging.getLogger(__name__)

DIR_PERMS = 0o750
FILE_PERMS = 0o755
DOWNLOAD_ATTEMPTS = 5
_CHUNK = 256 * 1024
_CONNECT_TIMEOUT_SECONDS = 30.0
_READ_TIMEOUT_SECONDS = 300.0
_ERROR_BODY_BYTES = 1024


def file_sha256(path: Path) -> str:
    digest = hashlib.sha256()
    with Path(path).open("rb") as handle:
        for chunk in iter(lambda: handle.read(_CHUNK), b""):
            digest.update(chunk)
    return digest.hexdigest()


def string_sha256(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def is_remote_path(path: str) -> bool:
    return path.startswith(("http://", "https://"))


def _is_retriable(exc: BaseException) -> bool:
    if isinstance(exc, DownloadError):
        return not exc.permanent
    return isinstance(exc, (requests.RequestException, OSError))


def default_retrying(log: logging.Logger | None = None) -> Retrying:
    return Retrying(
        stop=stop_after_attempt(DOWNLOAD_ATTEMPTS),
        wait=wait_exponential(multiplier=0.5, max=10),
        retry=retry_if_exception(_is_retriable),
        before_sleep=before_sleep_log(log or logger, logging.WARNING),
        reraise=True,
    )


def _remote_file_name(binary: ProviderBinary, os_name: str) -> str:
    name = binary.name
    if not name:
        name = posixpath.basename(urlparse(binary.path).path)
        if os_name == "windows" and not name.endswith(".exe"):
            name += ".exe"
    return name


def local_target_path(binary: ProviderBinary, target_folder: Path) -> Path:
    return target_folder / (binary.name or os.path.basename(binary.path))


def binary_path(binary: ProviderBinary, target_folder: Path, os_name: str | None = None) -> Path:
    """Where ``binary`` lives once it has been made available in ``target_folder``."""
    if os.path.isabs(binary.path):
        return Path(binary.path)
    if not is_remote_path(binary.path):
        return local_target_path(binary, target_folder)
    if binary.archive_path:
        return target_folder / binary.archive_path
    return target_folder / _remote_file_name(binary, os_name or platform_os())


def cached_binary_path(url: str, cache_dir: Path | None = None) -> Path:
    return (cache_dir or paths.binary_cache_dir()) / string_sha256(url)[:32]


def _checksum_matches(path: Path, checksum: str) -> bool:
    try:
        return file_sha256(path).lower() == checksum.lower()
    except OSError:
        return False


def verify_or_remove(path: Path, checksum: str, *, removable: bool = True) -> bool:
    """True if ``path`` exists and matches ``checksum`` (when one is declared)."""
    if not path.exists():
        return False
    if checksum and not _checksum_matches(path, checksum):
        if removable:
            path.unlink(missing_ok=True)
        return False
    return True


class BinaryResolver:
    """Finds, downloads, verifies and caches provider binaries for the running platform."""

    def __init__(
        self,
        session: requests.Session | None = None,
        retrying: Retrying | None = None,
        cache_dir: Path | None = None,
        log: logging.Logger | None = None,
        os_name: str | None = None,
        arch: str | None = None,
    ):
        self._log = log or logger
        self._session = session or requests.Session()
        self._retrying = retrying or default_retrying(self._log)
        self._cache_dir = cache_dir
        self._os = os_name or platform_os()
        self._arch = arch or platform_arch()

    def download_binaries(
        self, binaries: dict[str, list[ProviderBinary]], target_folder: Path
    ) -> dict[str, str]:
        return {
            name: str(self.download_binary_for_platform(name, locations, Path(target_folder)))
            for name, locations in binaries.items()
        }

    def download_binary_for_platform(
        self, name: str, locations: list[ProviderBinary], target_folder: Path
    ) -> Path:
        for binary in locations:
            if binary.os != self._os or binary.arch != self._arch:
                continue
            folder = target_folder / name.lower()
            target = binary_path(binary, folder, self._os)
            removable = not os.path.isabs(binary.path)
            if verify_or_remove(target, binary.checksum, removable=removable):
                return target
            if self._from_cache(binary, folder):
                return target
            return self._download_with_retry(name, binary, folder)
        raise DownloadError(
            f"cannot download provider binary {name}, because no binary location matched "
            f"OS {self._os} and ARCH {self._arch}",
            permanent=True,
        )

    def _download_with_retry(self, name: str, binary: ProviderBinary, folder: Path) -> Path:
        def attempt() -> Path:
            path = self._download_binary(name, binary, folder)
            if binary.checksum:
                self._verify_downloaded(path, binary, name)
            return path

        try:
            path = self._retrying.copy()(attempt)
        except ChecksumError as exc:
            raise ChecksumError(f"failed to download binary {name}: {exc}") from exc
        except (DownloadError, requests.RequestException, OSError) as exc:
            raise DownloadError(f"failed to download binary {name}: {exc}") from exc
        self._to_cache(binary, path)
        return path

    def _verify_downloaded(self, path: Path, binary: ProviderBinary, name: str) -> None:
        removable = not os.path.isabs(binary.path)
        try:
            actual = file_sha256(path)
        except OSError as exc:
            if removable:
                path.unlink(missing_ok=True)
            self._log.error("error hashing %s: %s", path, exc)
            raise ChecksumError(f"error hashing {path}: {exc}") from exc
        if actual.lower() != binary.checksum.lower():
            if removable:
                path.unlink(missing_ok=True)
            message = (
                f"unexpected file checksum {actual.lower()} != {binary.checksum.lower()} "
                f"for binary {name}"
            )
            self._log.error(message)
            raise ChecksumError(message)

    def _download_binary(self, name: str, binary: ProviderBinary, folder: Path) -> Path:
        source = Path(binary.path)
        if not is_remote_path(binary.path) and source.exists():
            return self._handle_local(binary, source, folder)
        if not is_remote_path(binary.path):
            target = local_target_path(binary, folder)
            if target.exists():
                return target
            raise DownloadError(
                f"cannot download {binary.path} as scheme is missing", permanent=True
            )

        folder.mkdir(mode=DIR_PERMS, parents=True, exist_ok=True)
        if binary.archive_path:
            target = folder / binary.archive_path
        else:
            target = folder / _remote_file_name(binary, self._os)
        if target.exists():
            return target
        try:
            if binary.archive_path:
                self._download_archive(name, binary, folder, target)
            else:
                self._download_file(name, binary, target)
            os.chmod(target, FILE_PERMS)
        except Exception:
            target.unlink(missing_ok=True)
            raise
        return target

    def _handle_local(self, binary: ProviderBinary, source: Path, folder: Path) -> Path:
        if source.is_absolute():
            return source
        folder.mkdir(mode=DIR_PERMS, parents=True, exist_ok=True)
        target = local_target_path(binary, folder)
        try:
            if target.exists():
                target_stat = target.stat()
                source_stat = source.stat()
                if (
                    target_stat.st_size == source_stat.st_size
                    and source_stat.st_mtime <= target_stat.st_mtime
                ):
                    return target
            copy_file(source, target, FILE_PERMS)
        except OSError:
            target.unlink(missing_ok=True)
            raise
        return target

    def _fetch(self, url: str) -> requests.Response:
        try:
            response = self._session.get(
                url, stream=True, timeout=(_CONNECT_TIMEOUT_SECONDS, _READ_TIMEOUT_SECONDS)
            )
        except requests.RequestException as exc:
            raise DownloadError(f"download file: {exc}") from exc
        if response.status_code >= 400:
            try:
                body = next(response.iter_content(_ERROR_BODY_BYTES), b"")
            except requests.RequestException:
                body = b""
            finally:
                response.close()
            if isinstance(body, bytes):
                body = body.decode("utf-8", errors="replace")
            raise HTTPStatusError(response.status_code, url, body.strip())
        return response

    def _download_file(self, name: str, binary: ProviderBinary, target: Path) -> None:
        self._log.info("downloading binary %s from %s", name, binary.path)
        response = self._fetch(binary.path)
        try:
            with target.open("wb") as handle:
                for chunk in response.iter_content(_CHUNK):
                    handle.write(chunk)
        except requests.RequestException as exc:
            raise DownloadError(f"download file: {exc}") from exc
        finally:
            response.close()
        self._log.debug("downloaded binary %s", name)

    def _download_archive(
        self, name: str, binary: ProviderBinary, folder: Path, target: Path
    ) -> None:
        if not is_tar_archive(binary.path) and not is_zip_archive(binary.path):
            raise DownloadError(f"unrecognized archive format {binary.path}", permanent=True)
        self._log.info("downloading binary %s from %s", name, binary.path)
        response = self._fetch(binary.path)
        try:
            if is_tar_archive(binary.path):
                response.raw.decode_content = True
                extract_tar(response.raw, folder)
            else:
                self._unzip_response(response, folder)
        except requests.RequestException as exc:
            raise DownloadError(f"download archive: {exc}") from exc
        finally:
            response.close()
        if not target.exists():
            raise DownloadError(
                f"archive {binary.path} does not contain {binary.archive_path}", permanent=True
            )
        self._log.debug("extracted and downloaded archive %s", name)

    @staticmethod
    def _unzip_response(response: requests.Response, folder: Path) -> None:
        fd, tmp_name = tempfile.mkstemp(suffix=".zip")
        try:
            with os.fdopen(fd, "wb") as handle:
                for chunk in response.iter_content(_CHUNK):
                    handle.write(chunk)
            unzip_file(Path(tmp_name), folder)
        finally:
            Path(tmp_name).unlink(missing_ok=True)

    def _to_cache(self, binary: ProviderBinary, path: Path) -> str | None:
        if not is_remote_path(binary.path):
            return None
        cached = cached_binary_path(binary.path, self._cache_dir)
        try:
            cached.parent.mkdir(mode=DIR_PERMS, parents=True, exist_ok=True)
            copy_file(path, cached, FILE_PERMS)
        except OSError as exc:
            message = f"error copying binary to cache: {exc}"
            self._log.warning(message)
            return message
        return None

    def _from_cache(self, binary: ProviderBinary, folder: Path) -> bool:
        if not is_remote_path(binary.path):
            return False
        cached = cached_binary_path(binary.path, self._cache_dir)
        if not verify_or_remove(cached, binary.checksum):
            return False
        target = binary_path(binary, folder, self._os)
        try:
            copy_file(cached, target, FILE_PERMS)
        except OSError as exc:
            self._log.warning(
                "error copying cached binary from %s to %s: %s", cached, target, exc
            )
            return False
        return True


def download_binaries(
    binaries: dict[str, list[ProviderBinary]],
    target_folder: Path,
    log: logging.Logger | None = None,
) -> dict[str, str]:
    return BinaryResolver(log=log).download_binaries(binaries, target_folder)


def get_binaries_from(
    config: ProviderConfig,
    binaries_dir: Path,
    os_name: str | None = None,
    arch: str | None = None,
) -> dict[str, str]:
    """Map already downloaded binaries to ``NAME=path`` bindings."""
    os_name = os_name or platform_os()
    arch = arch or platform_arch()
    found: dict[str, str] = {}
    for name, locations in config.binaries.items():
        for binary in locations:
            if binary.os != os_name or binary.arch != arch:
                continue
            path = binary_path(binary, Path(binaries_dir) / name.lower(), os_name)
            if not path.exists():
                raise DownloadError(
                    f"error trying to find binary {name}: {path} does not exist", permanent=True
                )
            found[name] = str(path)
            break
        else:
            raise DownloadError(
                f"cannot find provider binary {name}, because no binary location matched "
                f"OS {os_name} and ARCH {arch}",
                permanent=True,
            )
    return found


def get_binaries(context: str, config: ProviderConfig) -> dict[str, str]:
    return get_binaries_from(config, paths.provider_binaries_dir(context, config.name))


def install_provider_binaries(
    context: str, config: ProviderConfig, resolver: BinaryResolver | None = None
) -> dict[str, str]:
    """Download every binary ``config`` declares into the provider's binaries folder."""
    resolver = resolver or BinaryResolver()
    return resolver.download_binaries(
        config.binaries, paths.provider_binaries_dir(context, config.name)
    )
