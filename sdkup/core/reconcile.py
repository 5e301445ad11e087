"""
Update reconciliation

Diffs the installed packages against the available updates and produces
the UpdateReport shown to the user: one row per installed package, with
the new revision filled in when an update is pending.

Packages that exist only remotely are not reported: the report covers
updates to installed packages, not new installs.
"""

import logging
from dataclasses import dataclass
from typing import List, Mapping, Optional, Tuple

from .catalog import PackageCatalog
from .names import normalize_display_name

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PackageRecord:
    """One row of the update report."""
    path: str
    display_name: str
    installed_version: Optional[str]
    remote_version: Optional[str] = None

    @property
    def has_update(self) -> bool:
        return (self.remote_version is not None
                and self.remote_version != self.installed_version)


@dataclass(frozen=True)
class UpdateReport:
    """Result of one reconciliation."""
    rows: Tuple[PackageRecord, ...] = ()
    update_count: int = 0

    def __post_init__(self):
        rows = tuple(self.rows)
        object.__setattr__(self, 'rows', rows)
        actual = sum(1 for row in rows if row.has_update)
        if actual != self.update_count:
            raise ValueError(
                f"update_count={self.update_count} but {actual} rows have updates"
            )

    def __len__(self):
        return len(self.rows)

    def __iter__(self):
        return iter(self.rows)

    def get(self, path: str) -> Optional[PackageRecord]:
        for row in self.rows:
            if row.path == path:
                return row
        return None

    def pending(self) -> List[PackageRecord]:
        """Rows with a pending update."""
        return [row for row in self.rows if row.has_update]

    def summary(self) -> str:
        """Status line for the number of updates found."""
        if self.update_count == 0:
            return "No updates available"
        if self.update_count == 1:
            return "1 update found!"
        return f"{self.update_count} updates found!"


def build_report(installed: Mapping[str, Tuple[str, str]],
                 updates: Mapping[str, Tuple[str, str]]) -> UpdateReport:
    """Build an update report.

    Args:
        installed: path -> (display_name, installed_version)
        updates: path -> (installed_version, remote_version), restricted
                 to packages with a newer remote revision

    Returns:
        UpdateReport with one row per installed path, in iteration order
    """
    rows = []
    update_count = 0

    for path, (display_name, version) in installed.items():
        name = normalize_display_name(display_name, version)
        remote_version = None

        if path in updates:
            _, candidate = updates[path]
            if candidate is not None and candidate != version:
                remote_version = candidate
                update_count += 1
            else:
                logger.debug(f"Ignoring non-update for {path}: {version} -> {candidate}")

        rows.append(PackageRecord(
            path=path,
            display_name=name,
            installed_version=version,
            remote_version=remote_version,
        ))

    return UpdateReport(rows=tuple(rows), update_count=update_count)


def reconcile(catalog: PackageCatalog) -> UpdateReport:
    """Reconcile a catalog snapshot into an update report."""
    installed = {
        path: (pkg.display_name, pkg.version)
        for path, pkg in catalog.installed.items()
    }
    updates = {
        path: (upd.local.version, upd.remote.version)
        for path, upd in catalog.updates.items()
    }

    report = build_report(installed, updates)
    logger.info(f"{len(report)} installed packages, {report.summary()}")
    return report
