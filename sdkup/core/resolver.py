"""
Dependency resolution for SDK updates

Expands the requested update paths into the ordered list of remote
packages that must be installed: the requested packages plus every
dependency that is not already satisfied by an installed revision.
Dependencies always come before the packages that need them.
"""

import logging
from dataclasses import dataclass
from typing import Dict, FrozenSet, Iterable, Iterator, List, Optional, Set, Tuple

from .catalog import Dependency, PackageCatalog, RemotePackage
from .errors import DependencyResolutionError, PackageNotFoundError
from .progress import LoggingProgressSink, ProgressSink

logger = logging.getLogger(__name__)

INCOMPLETE_DEPENDENCIES = "Unable to compute a complete list of dependencies."


@dataclass(frozen=True)
class InstallPlan:
    """Result of dependency resolution."""
    requested: FrozenSet[str]
    resolved: Tuple[RemotePackage, ...]

    @property
    def paths(self) -> List[str]:
        return [pkg.path for pkg in self.resolved]

    def __len__(self):
        return len(self.resolved)


def select_candidates(catalog: PackageCatalog, obsolete: Iterable[str] = (),
                      selection: Optional[Iterable[str]] = None) -> List[str]:
    """Paths to request for an install run.

    Args:
        catalog: Freshly loaded catalog
        obsolete: Remote paths marked obsolete; never installed automatically
        selection: Explicit paths, or None for every pending update

    Returns:
        Requested paths in catalog (or selection) order
    """
    obsolete = set(obsolete)
    paths = list(catalog.updates) if selection is None else list(selection)

    candidates = []
    for path in paths:
        if path in obsolete:
            logger.info(f"Skipping obsolete package {path}")
            continue
        if path not in candidates:
            candidates.append(path)
    return candidates


class DependencyResolver:
    """Computes the transitive install set for requested packages."""

    def __init__(self, progress: ProgressSink = None):
        self.progress = progress or LoggingProgressSink(logger)

    def resolve(self, catalog: PackageCatalog, candidates: Iterable[str]) -> InstallPlan:
        """Resolve candidates against the remote catalog.

        Args:
            catalog: Catalog snapshot loaded for this install run
            candidates: Requested package paths

        Returns:
            InstallPlan whose resolved sequence is dependency ordered

        Raises:
            PackageNotFoundError: If a candidate is missing remotely
            DependencyResolutionError: If the closure is incomplete or cyclic
        """
        requested = list(dict.fromkeys(candidates))

        roots = []
        for path in requested:
            package = catalog.remote.get(path)
            if package is None:
                self.progress.warn(f"Failed to find package {path}")
                raise PackageNotFoundError(path)
            roots.append(package)

        try:
            ordered = self._closure(catalog, roots, set(requested))
        except DependencyResolutionError as e:
            logger.debug(f"Resolution failed: {e}")
            self.progress.warn(INCOMPLETE_DEPENDENCIES)
            raise

        missing = set(requested) - {pkg.path for pkg in ordered}
        if missing:
            self.progress.warn(INCOMPLETE_DEPENDENCIES)
            raise DependencyResolutionError(
                f"Requested packages missing from plan: {', '.join(sorted(missing))}"
            )

        extra = len(ordered) - len(requested)
        if extra:
            logger.info(f"Resolved {len(requested)} requested packages "
                        f"plus {extra} dependencies")
        return InstallPlan(requested=frozenset(requested), resolved=tuple(ordered))

    def _closure(self, catalog: PackageCatalog, roots: List[RemotePackage],
                 requested: Set[str]) -> List[RemotePackage]:
        """Depth-first walk emitting packages after their dependencies.

        The walk keeps its own stack, so chain depth is not bounded by the
        interpreter recursion limit.
        """
        ordered: List[RemotePackage] = []
        done: Set[str] = set()

        for root in roots:
            if root.path in done:
                continue

            # path -> (package, remaining dependencies), insertion ordered
            active: Dict[str, Tuple[RemotePackage, Iterator[Dependency]]] = {
                root.path: (root, iter(root.dependencies)),
            }
            while active:
                package, pending = active[next(reversed(active))]
                dep = next(pending, None)
                if dep is None:
                    del active[package.path]
                    done.add(package.path)
                    ordered.append(package)
                    continue

                target = self._dependency_target(catalog, package, dep, requested)
                if target is None or target.path in done:
                    continue
                if target.path in active:
                    chain = list(active) + [target.path]
                    start = chain.index(target.path)
                    raise DependencyResolutionError(
                        f"Dependency cycle: {' -> '.join(chain[start:])}"
                    )
                active[target.path] = (target, iter(target.dependencies))
        return ordered

    def _dependency_target(self, catalog: PackageCatalog, package: RemotePackage,
                           dep, requested: Set[str]) -> Optional[RemotePackage]:
        """Remote package needed for dep, or None if already satisfied."""
        local = catalog.installed.get(dep.path)
        if dep.path not in requested and local is not None \
                and dep.satisfied_by(local.version):
            logger.debug(f"{package.path}: {dep} satisfied by installed {local.version}")
            return None

        remote = catalog.remote.get(dep.path)
        if remote is None:
            raise DependencyResolutionError(
                f"{package.path} requires {dep}, which is not available"
            )
        if not dep.satisfied_by(remote.version):
            raise DependencyResolutionError(
                f"{package.path} requires {dep}, only {remote.version} is available"
            )
        return remote
