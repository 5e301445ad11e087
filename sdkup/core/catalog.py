"""
Package catalog snapshot

A PackageCatalog holds the installed and remote package metadata seen by
one query or install job. It is built once and never modified: every job
loads a new snapshot.
"""

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Iterable, Mapping, Optional, Tuple

from packaging.version import InvalidVersion, Version


def parse_version(text: str) -> Version:
    """Parse a package revision ("33.0.2", "1.0.0rc1").

    Raises:
        ValueError: If the revision is not a valid version string
    """
    try:
        return Version(text)
    except (InvalidVersion, TypeError) as e:
        raise ValueError(f"Invalid version {text!r}") from e


def is_newer(candidate: str, current: str) -> bool:
    """Return True if candidate is a strictly higher revision than current."""
    return parse_version(candidate) > parse_version(current)


def check_package_path(path: str) -> str:
    """Validate a repository path ("build-tools;33.0.2").

    Each ';' separated segment becomes one directory under the SDK root, so
    segments must be plain names.

    Raises:
        ValueError: For an empty path, an empty segment, a '.' or '..'
            segment or a segment holding a path separator
    """
    if not isinstance(path, str) or not path:
        raise ValueError("empty path")
    for segment in path.split(';'):
        if segment in ('', '.', '..') or '/' in segment or '\\' in segment:
            raise ValueError(f"unsafe package path {path!r}")
    return path


@dataclass(frozen=True)
class Dependency:
    """A requirement of a remote package on another package path."""
    path: str
    min_version: Optional[str] = None

    def satisfied_by(self, version: Optional[str]) -> bool:
        if version is None:
            return False
        if not self.min_version:
            return True
        return parse_version(version) >= parse_version(self.min_version)

    def __str__(self):
        if self.min_version:
            return f"{self.path} (>= {self.min_version})"
        return self.path


@dataclass(frozen=True)
class Archive:
    """Downloadable payload of a remote package."""
    url: str
    checksum: Optional[str] = None  # "<algo>:<hexdigest>"
    size: int = 0


@dataclass(frozen=True)
class LocalPackage:
    """An installed package as recorded in the registry."""
    path: str
    display_name: str
    version: str
    type: str = "archive"
    location: str = ""


@dataclass(frozen=True)
class RemotePackage:
    """A package descriptor from the remote repository index."""
    path: str
    display_name: str
    version: str
    type: str = "archive"
    channel: int = 0
    obsolete: bool = False
    archive: Optional[Archive] = None
    dependencies: Tuple[Dependency, ...] = ()

    @property
    def install_dir(self) -> str:
        """Relative install directory: "build-tools;33.0.2" -> "build-tools/33.0.2"."""
        return "/".join(part for part in self.path.split(';') if part)


@dataclass(frozen=True)
class UpdatablePackage:
    """An installed package with a newer remote revision."""
    local: LocalPackage
    remote: RemotePackage

    @property
    def path(self) -> str:
        return self.local.path


@dataclass(frozen=True)
class PackageCatalog:
    """Immutable snapshot of installed and remote packages."""
    installed: Mapping[str, LocalPackage]
    remote: Mapping[str, RemotePackage]
    updates: Mapping[str, UpdatablePackage] = field(init=False)

    def __post_init__(self):
        installed = MappingProxyType(dict(self.installed))
        remote = MappingProxyType(dict(self.remote))

        updates = {}
        for path, local in installed.items():
            candidate = remote.get(path)
            if candidate is not None and is_newer(candidate.version, local.version):
                updates[path] = UpdatablePackage(local=local, remote=candidate)

        object.__setattr__(self, 'installed', installed)
        object.__setattr__(self, 'remote', remote)
        object.__setattr__(self, 'updates', MappingProxyType(updates))

    @classmethod
    def from_packages(cls, local: Iterable[LocalPackage],
                      remote: Iterable[RemotePackage]) -> 'PackageCatalog':
        """Build a catalog from package lists (later duplicates win)."""
        return cls(
            installed={pkg.path: pkg for pkg in local},
            remote={pkg.path: pkg for pkg in remote},
        )
