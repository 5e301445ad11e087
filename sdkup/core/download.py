"""
Package archive downloader

Fetches package archives into a local cache with progress reporting,
retries on transient network errors and checksum verification.
Any URL scheme urllib understands works, including file://.
"""

import hashlib
import logging
import socket
import time
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from .. import __version__

logger = logging.getLogger(__name__)

USER_AGENT = f"sdkup/{__version__}"
CHUNK_SIZE = 65536  # 64KB chunks
SUPPORTED_CHECKSUMS = ('sha1', 'sha256')


def force_http_url(url: str) -> str:
    """Rewrite an https:// URL to plain http://."""
    if url.startswith('https://'):
        return 'http://' + url[len('https://'):]
    return url


def parse_checksum(checksum: str):
    """Split "sha1:abcd..." into ("sha1", "abcd...").

    Raises:
        ValueError: For a malformed or unsupported checksum
    """
    algo, sep, digest = checksum.partition(':')
    algo = algo.strip().lower()
    if not sep or algo not in SUPPORTED_CHECKSUMS or not digest.strip():
        raise ValueError(f"Unsupported checksum {checksum!r}")
    return algo, digest.strip().lower()


def file_checksum(path: Path, algo: str) -> str:
    """Hex digest of a file."""
    h = hashlib.new(algo)
    with open(path, 'rb') as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b''):
            h.update(chunk)
    return h.hexdigest()


@dataclass
class DownloadItem:
    """An archive to download."""
    name: str      # Package path, used for logging and errors
    url: str
    checksum: Optional[str] = None
    size: int = 0

    @property
    def filename(self) -> str:
        """Archive file name taken from the URL."""
        basename = Path(urllib.parse.urlparse(self.url).path).name
        return basename or self.name.replace(';', '-')


@dataclass
class DownloadResult:
    """Result of a download operation."""
    item: DownloadItem
    success: bool
    path: Optional[Path] = None
    error: Optional[str] = None
    cached: bool = False


class _HttpFailure(Exception):
    """Server answered with an error status; retrying will not help."""


class Downloader:
    """Fetches archives into cache_dir, one at a time.

    Transient network failures are retried max_retries times, waiting
    retry_delay * attempt seconds in between. HTTP error statuses fail at once.
    """

    def __init__(self, cache_dir: Path, timeout: int = 30, max_retries: int = 3,
                 retry_delay: float = 1.0):
        self.cache_dir = Path(cache_dir)
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_delay = retry_delay

    def get_cache_path(self, item: DownloadItem) -> Path:
        return self.cache_dir / item.filename

    def verify(self, item: DownloadItem, path: Path) -> bool:
        if not item.checksum:
            return True
        algo, expected = parse_checksum(item.checksum)
        actual = file_checksum(path, algo)
        if actual == expected:
            return True
        logger.warning(f"{item.name}: {algo} is {actual}, expected {expected}")
        return False

    def is_cached(self, item: DownloadItem) -> bool:
        """True when the cache holds a copy matching the item's checksum."""
        path = self.get_cache_path(item)
        if not item.checksum or not path.is_file() or path.stat().st_size == 0:
            return False
        return self.verify(item, path)

    def _fetch_once(self, url: str, target: Path,
                    progress_callback: Optional[Callable[[int, int], None]]) -> int:
        request = urllib.request.Request(url, headers={'User-Agent': USER_AGENT})
        try:
            response = urllib.request.urlopen(request, timeout=self.timeout)
        except urllib.error.HTTPError as e:
            raise _HttpFailure(f"HTTP {e.code}: {e.reason}") from e

        received = 0
        with response, open(target, 'wb') as out:
            total = int(response.headers.get('Content-Length') or 0)
            for chunk in iter(lambda: response.read(CHUNK_SIZE), b''):
                out.write(chunk)
                received += len(chunk)
                if progress_callback:
                    progress_callback(received, total)
        return received

    def download(self, item: DownloadItem,
                 progress_callback: Callable[[int, int], None] = None) -> DownloadResult:
        """Fetch one archive, or reuse a verified cached copy.

        Args:
            item: Archive to fetch
            progress_callback: Called with (bytes received, total or 0)

        Returns:
            DownloadResult; failures are reported in it, never raised
        """
        if item.checksum:
            try:
                parse_checksum(item.checksum)
            except ValueError as e:
                return DownloadResult(item=item, success=False, error=str(e))

        cache_path = self.get_cache_path(item)
        if self.is_cached(item):
            logger.debug(f"{item.name}: reusing {cache_path}")
            return DownloadResult(item=item, success=True, path=cache_path, cached=True)

        self.cache_dir.mkdir(parents=True, exist_ok=True)
        part = cache_path.with_name(cache_path.name + '.part')

        reason = None
        for attempt in range(1, self.max_retries + 1):
            try:
                size = self._fetch_once(item.url, part, progress_callback)
            except _HttpFailure as e:
                part.unlink(missing_ok=True)
                return DownloadResult(item=item, success=False, error=str(e))
            except (urllib.error.URLError, socket.timeout, OSError) as e:
                part.unlink(missing_ok=True)
                reason = str(getattr(e, 'reason', e))
                logger.debug(f"{item.url}: attempt {attempt} failed: {reason}")
                if attempt < self.max_retries:
                    time.sleep(self.retry_delay * attempt)
                continue

            if not self.verify(item, part):
                part.unlink(missing_ok=True)
                return DownloadResult(item=item, success=False, error="checksum mismatch")

            part.replace(cache_path)
            logger.debug(f"{item.name}: fetched {size} bytes from {item.url}")
            return DownloadResult(item=item, success=True, path=cache_path)

        return DownloadResult(item=item, success=False,
                              error=f"After {self.max_retries} attempts: {reason}")
