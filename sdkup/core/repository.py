"""
Repository clients

A repository client loads the package catalog (installed + remote),
downloads package archives and knows which remote packages are obsolete.

IndexRepositoryClient reads a JSON index published next to the archives:

    {
      "packages": [
        {
          "path": "build-tools;33.0.2",
          "display_name": "Android SDK Build-Tools 33.0.2",
          "version": "33.0.2",
          "type": "archive",
          "channel": 0,
          "obsolete": false,
          "archive": {"url": "build-tools_r33.0.2.zip",
                      "checksum": "sha1:...", "size": 55000000},
          "dependencies": [{"path": "tools", "min_version": "26.0"}]
        }
      ]
    }

The index may be compressed (zstd, gzip, xz, bzip2). Archive URLs are
relative to the repository URL unless absolute.
"""

import json
import logging
import socket
import sqlite3
import urllib.error
import urllib.parse
import urllib.request
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Mapping, Set

from .catalog import (
    Archive, Dependency, LocalPackage, PackageCatalog, RemotePackage,
    check_package_path, parse_version,
)
from .compression import decompress_text
from .config import (
    ClientSettings, DEFAULT_CACHE_DIR, DEFAULT_INDEX_NAME,
    get_registry_path, get_staging_dir,
)
from .database import PackageDatabase
from .download import USER_AGENT, DownloadItem, Downloader, force_http_url
from .errors import CatalogLoadError, DownloadError
from .installer import InstallContext
from .progress import LoggingProgressSink, ProgressSink

logger = logging.getLogger(__name__)


class RepositoryClient(ABC):
    """Source of catalogs and archives for the pipelines."""

    @abstractmethod
    def load_catalog(self, settings: ClientSettings,
                     progress: ProgressSink = None) -> PackageCatalog:
        """Load installed and remote packages.

        Raises:
            CatalogLoadError: If either side cannot be loaded
        """

    @abstractmethod
    def download(self, package: RemotePackage, progress: ProgressSink = None,
                 settings: ClientSettings = None) -> Path:
        """Fetch the archive of a package with the settings of the calling job.

        Raises:
            DownloadError: If the archive cannot be fetched or verified
        """

    def list_obsolete(self, remote: Mapping[str, RemotePackage]) -> Set[str]:
        """Paths of remote packages marked obsolete."""
        return {path for path, pkg in remote.items() if pkg.obsolete}

    @abstractmethod
    def install_context(self) -> InstallContext:
        """Where installers put packages for this client."""


def parse_index(text: str, base_url: str = "") -> List[RemotePackage]:
    """Parse a repository index document.

    Args:
        text: JSON document
        base_url: URL relative archive URLs are resolved against

    Raises:
        ValueError: If the document is malformed
    """
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid index JSON: {e}") from e

    entries = data.get('packages') if isinstance(data, dict) else None
    if not isinstance(entries, list):
        raise ValueError("Index has no 'packages' list")

    packages = []
    for position, entry in enumerate(entries):
        try:
            packages.append(_parse_entry(entry, base_url))
        except (KeyError, TypeError, ValueError) as e:
            ident = entry.get('path', f"#{position}") if isinstance(entry, dict) else f"#{position}"
            raise ValueError(f"Invalid index entry {ident}: {e}") from e
    return packages


def _parse_entry(entry: dict, base_url: str) -> RemotePackage:
    path = check_package_path(entry['path'])

    version = str(entry['version'])
    parse_version(version)

    archive = None
    archive_data = entry.get('archive')
    if archive_data:
        url = archive_data['url']
        if base_url:
            url = urllib.parse.urljoin(base_url, url)
        archive = Archive(
            url=url,
            checksum=archive_data.get('checksum'),
            size=int(archive_data.get('size', 0)),
        )

    dep_entries = entry.get('dependencies', [])
    if not isinstance(dep_entries, list):
        raise ValueError("'dependencies' is not a list")

    dependencies = []
    for dep in dep_entries:
        if isinstance(dep, str):
            dep = {'path': dep}
        elif not isinstance(dep, dict):
            raise ValueError(f"invalid dependency {dep!r}")
        min_version = dep.get('min_version')
        if min_version is not None:
            min_version = str(min_version)
            parse_version(min_version)
        dependencies.append(Dependency(path=check_package_path(dep['path']),
                                       min_version=min_version))

    return RemotePackage(
        path=path,
        display_name=entry.get('display_name') or path,
        version=version,
        type=entry.get('type', 'archive'),
        channel=int(entry.get('channel', 0)),
        obsolete=bool(entry.get('obsolete', False)),
        archive=archive,
        dependencies=tuple(dependencies),
    )


class IndexRepositoryClient(RepositoryClient):
    """Repository client for a JSON index and a sqlite registry."""

    def __init__(self, repository_url: str, sdk_root: Path,
                 cache_dir: Path = None, index_name: str = DEFAULT_INDEX_NAME,
                 timeout: int = 30):
        """Initialize client.

        Args:
            repository_url: Base URL of the repository (http, https or file)
            sdk_root: Directory packages are installed into
            cache_dir: Download cache (default: ~/.cache/sdkup)
            index_name: Index file name under repository_url
            timeout: Network timeout in seconds
        """
        if not repository_url:
            raise ValueError("repository_url is required")
        self.repository_url = repository_url if repository_url.endswith('/') \
            else repository_url + '/'
        self.sdk_root = Path(sdk_root)
        self.cache_dir = Path(cache_dir) if cache_dir else DEFAULT_CACHE_DIR
        self.index_name = index_name
        self.timeout = timeout

    @property
    def index_url(self) -> str:
        return urllib.parse.urljoin(self.repository_url, self.index_name)

    def install_context(self) -> InstallContext:
        return InstallContext(
            sdk_root=self.sdk_root,
            staging_dir=get_staging_dir(self.sdk_root),
            registry_path=get_registry_path(self.sdk_root),
        )

    # =========================================================================
    # Catalog
    # =========================================================================

    def load_catalog(self, settings: ClientSettings,
                     progress: ProgressSink = None) -> PackageCatalog:
        progress = progress or LoggingProgressSink(logger)

        progress.report("Loading installed packages")
        local = self.load_installed()

        progress.report(f"Fetching {self.index_url}")
        remote = self.load_remote(settings)

        try:
            catalog = PackageCatalog.from_packages(local, remote)
        except ValueError as e:
            raise CatalogLoadError(f"Inconsistent catalog: {e}") from e

        logger.info(f"Catalog loaded: {len(catalog.installed)} installed, "
                    f"{len(catalog.remote)} remote, {len(catalog.updates)} updates")
        return catalog

    def load_installed(self) -> List[LocalPackage]:
        """Read installed packages from the registry."""
        try:
            with PackageDatabase(get_registry_path(self.sdk_root)) as db:
                rows = db.list_installed()
        except (sqlite3.Error, OSError, RuntimeError) as e:
            raise CatalogLoadError(f"Cannot read installed packages: {e}") from e

        packages = []
        for row in rows:
            try:
                parse_version(row['version'])
            except ValueError:
                logger.warning(f"Ignoring {row['path']}: invalid version {row['version']!r}")
                continue
            packages.append(LocalPackage(
                path=row['path'],
                display_name=row['display_name'],
                version=row['version'],
                type=row['type'],
                location=row['location'] or '',
            ))
        return packages

    def load_remote(self, settings: ClientSettings) -> List[RemotePackage]:
        """Fetch and parse the remote index, filtered by channel."""
        url = self._url(self.index_url, settings.force_http)
        data = self._fetch(url)

        try:
            text = decompress_text(data)
            packages = parse_index(text, base_url=self.repository_url)
        except ValueError as e:
            raise CatalogLoadError(f"Corrupt repository index {url}: {e}") from e

        allowed = settings.channel.value
        visible = [pkg for pkg in packages if pkg.channel <= allowed]
        hidden = len(packages) - len(visible)
        if hidden:
            logger.debug(f"{hidden} packages above channel "
                         f"{settings.channel.name.lower()} ignored")
        return visible

    def _fetch(self, url: str) -> bytes:
        req = urllib.request.Request(url)
        req.add_header('User-Agent', USER_AGENT)
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as response:
                return response.read()
        except urllib.error.HTTPError as e:
            raise CatalogLoadError(f"{url}: HTTP {e.code}: {e.reason}") from e
        except urllib.error.URLError as e:
            raise CatalogLoadError(f"{url}: {e.reason}") from e
        except (socket.timeout, OSError) as e:
            raise CatalogLoadError(f"{url}: {e}") from e

    @staticmethod
    def _url(url: str, force_http: bool) -> str:
        return force_http_url(url) if force_http else url

    # =========================================================================
    # Downloads
    # =========================================================================

    def download(self, package: RemotePackage, progress: ProgressSink = None,
                 settings: ClientSettings = None) -> Path:
        if package.archive is None:
            raise DownloadError(package.path, "package has no archive")

        item = DownloadItem(
            name=package.path,
            url=self._url(package.archive.url, bool(settings and settings.force_http)),
            checksum=package.archive.checksum,
            size=package.archive.size,
        )
        if progress:
            progress.report(f"Downloading {item.filename}")

        downloader = Downloader(cache_dir=self.cache_dir, timeout=self.timeout)
        result = downloader.download(item)
        if not result.success:
            raise DownloadError(package.path, result.error or "unknown error")
        if result.cached:
            logger.info(f"{item.filename} already in cache")
        return result.path

    def list_obsolete(self, remote: Mapping[str, RemotePackage]) -> Set[str]:
        obsolete = super().list_obsolete(remote)
        if obsolete:
            logger.debug(f"Obsolete packages: {', '.join(sorted(obsolete))}")
        return obsolete
