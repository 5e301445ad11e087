"""
Package installation

Installs a resolved plan one package at a time. Each package goes through
an installer strategy chosen by package type:

    prepare(descriptor, archive)   stage the payload (extract)
    commit(descriptor)             move it into the SDK root, update registry

The first failing step stops the run. Packages committed before the
failure stay installed; nothing is rolled back.
"""

import logging
import shutil
import tarfile
import zipfile
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Dict, List, Optional, Type

from .cancel import CancellationToken
from .catalog import RemotePackage
from .database import PackageDatabase
from .errors import InstallStepFailedError
from .progress import LoggingProgressSink, ProgressSink
from .resolver import InstallPlan

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InstallContext:
    """Where installers stage, install and record packages."""
    sdk_root: Path
    staging_dir: Path
    registry_path: Path


@dataclass
class InstallResult:
    """Result of an install run."""
    installed: List[str] = field(default_factory=list)


class InstallerStrategy(ABC):
    """Two-phase installer for one package."""

    def __init__(self, context: InstallContext):
        self.context = context

    @abstractmethod
    def prepare(self, package: RemotePackage, artifact: Optional[Path]) -> bool:
        """Stage the package. Returns False on failure."""

    @abstractmethod
    def commit(self, package: RemotePackage) -> bool:
        """Finalize the staged package. Returns False on failure."""

    def cleanup(self):
        """Release staging data (called after every step, success or not)."""

    @staticmethod
    def _inside(root: Path, target: Path) -> bool:
        """True when target resolves to a path strictly below root."""
        root = root.resolve()
        target = target.resolve()
        return target != root and target.is_relative_to(root)

    def _record(self, package: RemotePackage, location: Optional[Path]):
        with PackageDatabase(self.context.registry_path) as db:
            db.record_install(
                package.path,
                package.display_name,
                package.version,
                pkg_type=package.type,
                location=str(location) if location else None,
            )


class ArchiveInstaller(InstallerStrategy):
    """Installs zip or tar archives under the SDK root."""

    def __init__(self, context: InstallContext):
        super().__init__(context)
        self._staged: Optional[Path] = None
        self._staging_root: Optional[Path] = None

    def prepare(self, package: RemotePackage, artifact: Optional[Path]) -> bool:
        if artifact is None or not Path(artifact).is_file():
            logger.error(f"{package.path}: no archive to install")
            return False

        staging_root = self.context.staging_dir / package.path.replace(';', '_')
        if not self._inside(self.context.staging_dir, staging_root):
            logger.error(f"{package.path}: {staging_root} is outside "
                         f"{self.context.staging_dir}")
            return False
        if staging_root.exists():
            shutil.rmtree(staging_root)
        staging_root.mkdir(parents=True)
        self._staging_root = staging_root

        try:
            if zipfile.is_zipfile(artifact):
                self._extract_zip(Path(artifact), staging_root)
            elif tarfile.is_tarfile(artifact):
                self._extract_tar(Path(artifact), staging_root)
            else:
                logger.error(f"{package.path}: {artifact} is not a zip or tar archive")
                return False
        except (OSError, ValueError, zipfile.BadZipFile, tarfile.TarError) as e:
            logger.error(f"{package.path}: extraction failed: {e}")
            return False

        self._staged = self._content_root(staging_root)
        logger.debug(f"{package.path}: staged in {self._staged}")
        return True

    def commit(self, package: RemotePackage) -> bool:
        if self._staged is None:
            logger.error(f"{package.path}: commit without prepare")
            return False

        dest = self.context.sdk_root / package.install_dir
        if not self._inside(self.context.sdk_root, dest):
            logger.error(f"{package.path}: {dest} is outside {self.context.sdk_root}")
            return False
        backup = dest.with_name(dest.name + '.old')

        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            if backup.exists():
                shutil.rmtree(backup)
            if dest.exists():
                dest.rename(backup)
            shutil.move(str(self._staged), str(dest))
        except OSError as e:
            logger.error(f"{package.path}: could not move files into {dest}: {e}")
            if backup.exists() and not dest.exists():
                backup.rename(dest)
            return False

        self._staged = None
        if backup.exists():
            shutil.rmtree(backup, ignore_errors=True)

        self._record(package, dest)
        logger.info(f"Installed {package.path} {package.version} in {dest}")
        return True

    def cleanup(self):
        if self._staging_root is not None and self._staging_root.exists():
            shutil.rmtree(self._staging_root, ignore_errors=True)
        self._staging_root = None
        self._staged = None

    @staticmethod
    def _check_member(name: str):
        member = PurePosixPath(name)
        if member.is_absolute() or '..' in member.parts:
            raise ValueError(f"unsafe archive member {name!r}")

    def _extract_zip(self, archive: Path, target: Path):
        with zipfile.ZipFile(archive) as zf:
            for name in zf.namelist():
                self._check_member(name)
            zf.extractall(target)

    def _extract_tar(self, archive: Path, target: Path):
        with tarfile.open(archive) as tf:
            for member in tf.getmembers():
                self._check_member(member.name)
                if member.issym() or member.islnk():
                    self._check_member(member.linkname)
            tf.extractall(target, filter='data')

    @staticmethod
    def _content_root(staging_root: Path) -> Path:
        """Strip a single top-level directory ("build-tools_r33/...")."""
        entries = list(staging_root.iterdir())
        if len(entries) == 1 and entries[0].is_dir():
            return entries[0]
        return staging_root


class MetaInstaller(InstallerStrategy):
    """Packages without payload: only the registry entry is written."""

    def prepare(self, package: RemotePackage, artifact: Optional[Path]) -> bool:
        return True

    def commit(self, package: RemotePackage) -> bool:
        self._record(package, None)
        logger.info(f"Registered {package.path} {package.version}")
        return True


class InstallerFactory:
    """Picks the installer strategy for a package type."""

    DEFAULT_TYPES: Dict[str, Type[InstallerStrategy]] = {
        'archive': ArchiveInstaller,
        'meta': MetaInstaller,
    }

    def __init__(self, context: InstallContext,
                 default: Type[InstallerStrategy] = ArchiveInstaller):
        self.context = context
        self.default = default
        self._types = dict(self.DEFAULT_TYPES)

    def register(self, pkg_type: str, strategy: Type[InstallerStrategy]):
        self._types[pkg_type] = strategy

    def for_package(self, package: RemotePackage) -> InstallerStrategy:
        strategy = self._types.get(package.type, self.default)
        return strategy(self.context)


class InstallerOrchestrator:
    """Runs an install plan in order, stopping at the first failure."""

    def __init__(self, client, installers: InstallerFactory, settings=None):
        """Initialize orchestrator.

        Args:
            client: Repository client used to download archives
            installers: Factory for per-package installer strategies
            settings: ClientSettings of the job, passed to every download
        """
        self.client = client
        self.installers = installers
        self.settings = settings

    def run(self, plan: InstallPlan, progress: ProgressSink = None,
            token: CancellationToken = None) -> InstallResult:
        """Install every package of the plan.

        Raises:
            OperationCancelled: If cancelled before a step started
            InstallStepFailedError: On the first failed step
        """
        progress = progress or LoggingProgressSink(logger)
        token = token or CancellationToken()
        result = InstallResult()
        total = len(plan.resolved)

        for index, package in enumerate(plan.resolved, 1):
            token.raise_if_cancelled()
            progress.report(f"Installing {package.display_name} ({index}/{total})",
                            fraction=(index - 1) / total)
            self._install_one(package, progress)
            result.installed.append(package.path)

        progress.report(f"Installed {total} package{'s' if total != 1 else ''}",
                        fraction=1.0)
        return result

    def _install_one(self, package: RemotePackage, progress: ProgressSink):
        installer = self.installers.for_package(package)
        try:
            artifact = None
            if package.archive is not None:
                artifact = self.client.download(package, progress, settings=self.settings)

            if not installer.prepare(package, artifact):
                reason = "prepare failed"
            elif not installer.commit(package):
                reason = "commit failed"
            else:
                return
        except Exception as e:
            progress.warn(f"Failed to install {package.path}: {e}")
            raise InstallStepFailedError(package.path, str(e)) from e
        finally:
            installer.cleanup()

        progress.warn(f"Failed to install {package.path}: {reason}")
        raise InstallStepFailedError(package.path, reason)
