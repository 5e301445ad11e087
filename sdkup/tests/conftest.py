"""Shared fixtures for sdkup tests"""

import hashlib
import io
import json
import threading
import time
import zipfile
from pathlib import Path

import pytest

from sdkup.core.catalog import Dependency, LocalPackage, PackageCatalog, RemotePackage
from sdkup.core.config import get_registry_path, get_staging_dir
from sdkup.core.errors import DownloadError
from sdkup.core.installer import InstallContext
from sdkup.core.progress import ProgressSink
from sdkup.core.repository import RepositoryClient


def make_remote(path, version, deps=(), pkg_type='meta', archive=None,
                obsolete=False, channel=0, display_name=None):
    """Remote descriptor; deps are paths or (path, min_version) tuples."""
    dependencies = tuple(
        Dependency(d) if isinstance(d, str) else Dependency(*d) for d in deps
    )
    return RemotePackage(
        path=path,
        display_name=display_name or f"{path} {version}",
        version=version,
        type=pkg_type,
        channel=channel,
        obsolete=obsolete,
        archive=archive,
        dependencies=dependencies,
    )


def make_local(path, version, display_name=None):
    return LocalPackage(path=path, display_name=display_name or f"{path} {version}",
                        version=version)


def build_zip(files: dict, top_dir: str = None) -> bytes:
    """Zip archive with the given {name: text} members."""
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, 'w') as zf:
        for name, content in files.items():
            if top_dir:
                name = f"{top_dir}/{name}"
            zf.writestr(name, content)
    return buf.getvalue()


def sha1(data: bytes) -> str:
    return "sha1:" + hashlib.sha1(data).hexdigest()


def wait_for(predicate, timeout=5.0):
    """Poll until predicate() is true."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class RecordingSink(ProgressSink):
    """Progress sink remembering every message."""

    def __init__(self):
        self.messages = []
        self.warnings = []

    def report(self, message, fraction=None):
        self.messages.append((message, fraction))

    def warn(self, message):
        self.warnings.append(message)


class FakeClient(RepositoryClient):
    """In-memory repository client.

    gates maps a load_catalog call number (1-based) to an Event the call
    waits on before returning.
    """

    def __init__(self, catalog, context, archives=None):
        self.catalog = catalog
        self.context = context
        self.archives = archives or {}
        self.load_error = None
        self.fail_downloads = set()
        self.gates = {}
        self.entered = threading.Event()
        self.load_calls = 0
        self.settings = []
        self.downloads = []
        self.download_settings = []
        self._lock = threading.Lock()

    def load_catalog(self, settings, progress=None):
        with self._lock:
            self.load_calls += 1
            call = self.load_calls
        self.settings.append(settings)
        self.entered.set()

        gate = self.gates.get(call)
        if gate is not None:
            gate.wait(5)
        if self.load_error is not None:
            raise self.load_error
        return self.catalog

    def download(self, package, progress=None, settings=None):
        self.downloads.append(package.path)
        self.download_settings.append(settings)
        if package.path in self.fail_downloads:
            raise DownloadError(package.path, "connection reset")
        return self.archives.get(package.path)

    def install_context(self):
        return self.context


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def context(tmp_path):
    sdk_root = tmp_path / "sdk"
    return InstallContext(
        sdk_root=sdk_root,
        staging_dir=get_staging_dir(sdk_root),
        registry_path=get_registry_path(sdk_root),
    )


@pytest.fixture
def sample_catalog():
    """Two installed packages with updates, one up to date, one remote only."""
    local = [
        make_local("build-tools;33.0.1", "33.0.1", "Android SDK Build-Tools 33.0.1"),
        make_local("platform-tools", "34.0.1", "Android SDK Platform-Tools"),
        make_local("emulator", "32.1.0", "Android Emulator"),
    ]
    remote = [
        make_remote("build-tools;33.0.1", "33.0.2", deps=[("platform-tools", "34.0")]),
        make_remote("platform-tools", "34.0.5"),
        make_remote("emulator", "32.1.0"),
        make_remote("ndk;25.1", "25.1.0"),
    ]
    return PackageCatalog.from_packages(local, remote)


@pytest.fixture
def fake_client(context, sample_catalog):
    return FakeClient(sample_catalog, context)


@pytest.fixture
def repo(tmp_path):
    """File based repository: write_index(packages) and add_archive(name, data)."""
    root = tmp_path / "repo"
    root.mkdir()

    class Repo:
        path = root
        url = root.as_uri()

        @staticmethod
        def write_index(packages, name="repository.json", raw: bytes = None):
            data = raw if raw is not None else json.dumps({'packages': packages}).encode()
            (root / name).write_bytes(data)

        @staticmethod
        def add_archive(name, data: bytes) -> Path:
            target = root / name
            target.write_bytes(data)
            return target

    return Repo
