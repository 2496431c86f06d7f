"""Build context fetch module.

This module handles:
- Downloading a build context archive over HTTP(S)
- Copying a context archive from a local path or file:// URL
- Detecting the archive format from its content
- Safe extraction into a per-build directory
"""

from __future__ import annotations

import asyncio
import logging
import shutil
import tarfile
import zipfile
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, TypeVar
from urllib.parse import unquote, urlparse

import httpx

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Upper bound for fetching and extracting a build context (seconds)
CONTEXT_FETCH_TIMEOUT = 5 * 60

# Chunk size for downloads (bytes)
DOWNLOAD_CHUNK_SIZE = 64 * 1024  # 64 KB

ARCHIVE_FILENAME = "archive"
CONTENTS_DIRNAME = "context"

_GZIP_MAGIC = b"\x1f\x8b"
_XZ_MAGIC = b"\xfd7zXZ\x00"
_BZIP2_MAGIC = b"BZh"
_ZIP_MAGIC = b"PK\x03\x04"


class ContextFetchError(Exception):
    """Raised when a build context cannot be retrieved."""

    def __init__(self, message: str, code: str = "context_fetch_error") -> None:
        """Initialize ContextFetchError.

        Args:
            message: Error description.
            code: Error code for structured error handling.
        """
        super().__init__(message)
        self.code = code


class ExtractionError(Exception):
    """Raised when a context archive cannot be extracted."""

    def __init__(self, message: str, code: str = "extraction_error") -> None:
        """Initialize ExtractionError.

        Args:
            message: Error description.
            code: Error code for structured error handling.
        """
        super().__init__(message)
        self.code = code


@dataclass
class ExtractResult:
    """Result of fetching and extracting a build context."""

    archive_path: Path
    contents_dir: Path


def detect_archive_format(archive_path: Path) -> str:
    """Detect the archive format from the file's leading bytes.

    Args:
        archive_path: Path to the archive file.

    Returns:
        ``"tar"`` for (optionally gzip/xz/bzip2 compressed) tarballs,
        ``"zip"`` for zip files.

    Raises:
        ExtractionError: If the format is not supported.
    """
    with archive_path.open("rb") as f:
        head = f.read(8)

    if head.startswith(_ZIP_MAGIC):
        return "zip"
    if head.startswith((_GZIP_MAGIC, _XZ_MAGIC, _BZIP2_MAGIC)):
        return "tar"
    if tarfile.is_tarfile(archive_path):
        return "tar"

    raise ExtractionError(
        f"Unsupported archive format: {archive_path.name}",
        code="unsupported_format",
    )


def _check_member_path(name: str) -> None:
    member_path = Path(name)
    if member_path.is_absolute() or ".." in member_path.parts:
        raise ExtractionError(
            f"Refusing to extract {name}: path traversal detected",
            code="path_traversal",
        )


def extract_archive(archive_path: Path, dest_dir: Path) -> Path:
    """Extract a context archive into a destination directory.

    Args:
        archive_path: Path to the archive file.
        dest_dir: Destination directory; created if missing.

    Returns:
        Path to the extracted contents.

    Raises:
        ExtractionError: If extraction fails or the archive is unsafe.
    """
    logger.info("Extracting %s to %s", archive_path.name, dest_dir)

    archive_format = detect_archive_format(archive_path)
    dest_dir.mkdir(parents=True, exist_ok=True)

    try:
        if archive_format == "zip":
            with zipfile.ZipFile(archive_path) as zf:
                names = zf.namelist()
                if not names:
                    raise ExtractionError(
                        f"Archive {archive_path} is empty", code="empty_archive"
                    )
                for name in names:
                    _check_member_path(name)
                zf.extractall(dest_dir)
        else:
            with tarfile.open(archive_path, "r:*") as tar:
                members = tar.getmembers()
                if not members:
                    raise ExtractionError(
                        f"Archive {archive_path} is empty", code="empty_archive"
                    )
                for member in members:
                    _check_member_path(member.name)
                tar.extractall(dest_dir, filter="data")

    except (tarfile.TarError, zipfile.BadZipFile, EOFError) as e:
        raise ExtractionError(
            f"Failed to extract {archive_path}: {e}",
            code="archive_error",
        ) from e
    except OSError as e:
        raise ExtractionError(
            f"OS error extracting {archive_path}: {e}",
            code="os_error",
        ) from e

    logger.info("Extracted build context to %s", dest_dir)
    return dest_dir


async def download_file(
    client: httpx.AsyncClient,
    url: str,
    dest_path: Path,
    chunk_size: int = DOWNLOAD_CHUNK_SIZE,
) -> int:
    """Stream a remote file to disk.

    Args:
        client: HTTPX async client instance.
        url: URL to download from.
        dest_path: Destination path for the downloaded file.
        chunk_size: Size of chunks to download.

    Returns:
        Number of bytes written.

    Raises:
        ContextFetchError: If the download fails.
    """
    logger.info("Downloading build context %s", url)

    try:
        async with client.stream("GET", url) as response:
            response.raise_for_status()

            total_bytes = 0
            with dest_path.open("wb") as f:
                async for chunk in response.aiter_bytes(chunk_size):
                    f.write(chunk)
                    total_bytes += len(chunk)

    except httpx.HTTPStatusError as e:
        raise ContextFetchError(
            f"HTTP error downloading {url}: "
            f"{e.response.status_code} {e.response.reason_phrase}",
            code="http_error",
        ) from e
    except httpx.TimeoutException as e:
        raise ContextFetchError(
            f"Timeout downloading {url}",
            code="timeout",
        ) from e
    except httpx.RequestError as e:
        raise ContextFetchError(
            f"Network error downloading {url}: {e}",
            code="network_error",
        ) from e

    logger.debug("Downloaded %s (%d bytes)", url, total_bytes)
    return total_bytes


def local_source_path(source: str) -> Path | None:
    """Return the filesystem path of a local context source.

    Args:
        source: Context locator.

    Returns:
        Path for ``file://`` URLs and plain paths, None for remote URLs.

    Raises:
        ContextFetchError: If the URL scheme is not supported.
    """
    parsed = urlparse(source)
    if parsed.scheme in ("http", "https"):
        return None
    if parsed.scheme == "file":
        return Path(unquote(parsed.path))
    # Single-letter schemes are Windows drive letters
    if parsed.scheme == "" or len(parsed.scheme) == 1:
        return Path(source)
    raise ContextFetchError(
        f"Unsupported context source scheme {parsed.scheme!r}: {source}",
        code="unsupported_source",
    )


async def _run_in_thread(func: Callable[..., T], *args: Any) -> T:
    """Run a blocking call in a worker thread.

    If the caller is cancelled, the thread is still awaited before the
    cancellation propagates, so no file is written into a directory the
    caller is about to remove.
    """
    task = asyncio.create_task(asyncio.to_thread(func, *args))
    try:
        return await asyncio.shield(task)
    except asyncio.CancelledError:
        await asyncio.wait([task])
        if not task.cancelled() and (error := task.exception()) is not None:
            logger.debug("Worker failed after cancellation: %s", error)
        raise


class ContextFetcher:
    """Retrieves and extracts build context archives.

    Args:
        client: Optional shared HTTPX async client. When omitted a client is
            created for each fetch.
    """

    def __init__(self, client: httpx.AsyncClient | None = None) -> None:
        self._client = client

    async def fetch_and_extract(
        self,
        source: str,
        dest_dir: Path,
        timeout: float = CONTEXT_FETCH_TIMEOUT,
    ) -> ExtractResult:
        """Fetch a context archive into ``dest_dir`` and extract it.

        Args:
            source: ``http(s)://`` URL, ``file://`` URL or local path.
            dest_dir: Directory receiving the archive and its contents.
            timeout: Bound on the whole operation in seconds.

        Returns:
            ExtractResult with the archive path and contents directory.

        Raises:
            ContextFetchError: If retrieval fails or times out.
            ExtractionError: If the archive cannot be extracted.
        """
        try:
            async with asyncio.timeout(timeout):
                return await self._fetch_and_extract(source, dest_dir)
        except TimeoutError as e:
            raise ContextFetchError(
                f"Timed out fetching build context {source} after {timeout}s",
                code="timeout",
            ) from e

    async def _fetch_and_extract(self, source: str, dest_dir: Path) -> ExtractResult:
        archive_path = dest_dir / ARCHIVE_FILENAME
        dest_dir.mkdir(parents=True, exist_ok=True)

        local_path = local_source_path(source)
        if local_path is not None:
            if not local_path.is_file():
                raise ContextFetchError(
                    f"Build context not found: {local_path}", code="not_found"
                )
            logger.info("Copying build context %s", local_path)
            await _run_in_thread(shutil.copyfile, local_path, archive_path)
        elif self._client is not None:
            await download_file(self._client, source, archive_path)
        else:
            async with httpx.AsyncClient(follow_redirects=True) as client:
                await download_file(client, source, archive_path)

        contents_dir = await _run_in_thread(
            extract_archive, archive_path, dest_dir / CONTENTS_DIRNAME
        )
        return ExtractResult(archive_path=archive_path, contents_dir=contents_dir)


__all__ = [
    "CONTEXT_FETCH_TIMEOUT",
    "ContextFetchError",
    "ContextFetcher",
    "ExtractResult",
    "ExtractionError",
    "detect_archive_format",
    "download_file",
    "extract_archive",
    "local_source_path",
]
