"""Tests for installer strategies and the install orchestrator"""

import io
import tarfile

import pytest

from sdkup.core.cancel import CancellationToken
from sdkup.core.catalog import Archive
from sdkup.core.config import ClientSettings
from sdkup.core.database import PackageDatabase
from sdkup.core.errors import InstallStepFailedError, OperationCancelled
from sdkup.core.installer import (
    ArchiveInstaller, InstallerFactory, InstallerOrchestrator, InstallerStrategy,
    MetaInstaller,
)
from sdkup.core.resolver import InstallPlan
from conftest import FakeClient, build_zip, make_remote


def archive_package(path, version="1.0"):
    return make_remote(path, version, pkg_type='archive',
                       archive=Archive(url=f"https://example.org/{path}.zip"))


def write(tmp_path, name, data):
    target = tmp_path / name
    target.write_bytes(data)
    return target


def plan_of(*packages):
    return InstallPlan(requested=frozenset(p.path for p in packages),
                       resolved=tuple(packages))


class TestArchiveInstaller:
    """Tests for zip and tar installation."""

    def test_zip_with_top_level_dir(self, context, tmp_path):
        pkg = archive_package("build-tools;33.0.2", "33.0.2")
        artifact = write(tmp_path, "bt.zip", build_zip(
            {"aapt": "binary", "lib/libc++.so": "lib"}, top_dir="android-13"))

        installer = ArchiveInstaller(context)
        assert installer.prepare(pkg, artifact)
        assert installer.commit(pkg)
        installer.cleanup()

        dest = context.sdk_root / "build-tools" / "33.0.2"
        assert (dest / "aapt").read_text() == "binary"
        assert (dest / "lib" / "libc++.so").exists()
        assert not context.staging_dir.joinpath("build-tools_33.0.2").exists()

        with PackageDatabase(context.registry_path) as db:
            entry = db.get_installed("build-tools;33.0.2")
        assert entry['version'] == "33.0.2"
        assert entry['location'] == str(dest)

    def test_tar_archive(self, context, tmp_path):
        buf = io.BytesIO()
        with tarfile.open(fileobj=buf, mode='w:gz') as tf:
            data = b"#!/bin/sh\n"
            info = tarfile.TarInfo("adb")
            info.size = len(data)
            tf.addfile(info, io.BytesIO(data))
        artifact = write(tmp_path, "pt.tar.gz", buf.getvalue())
        pkg = archive_package("platform-tools")

        installer = ArchiveInstaller(context)
        assert installer.prepare(pkg, artifact)
        assert installer.commit(pkg)
        assert (context.sdk_root / "platform-tools" / "adb").read_bytes() == b"#!/bin/sh\n"

    def test_replaces_previous_tree(self, context, tmp_path):
        pkg = archive_package("platform-tools", "34.0.5")
        old = context.sdk_root / "platform-tools"
        old.mkdir(parents=True)
        (old / "stale").write_text("old")

        artifact = write(tmp_path, "pt.zip", build_zip({"adb": "new"}))
        installer = ArchiveInstaller(context)
        assert installer.prepare(pkg, artifact)
        assert installer.commit(pkg)

        assert (old / "adb").read_text() == "new"
        assert not (old / "stale").exists()
        assert not old.with_name("platform-tools.old").exists()

    def test_rejects_path_traversal(self, context, tmp_path):
        artifact = write(tmp_path, "evil.zip", build_zip({"../escape.txt": "x"}))
        installer = ArchiveInstaller(context)
        assert not installer.prepare(archive_package("evil"), artifact)
        installer.cleanup()
        assert not (context.staging_dir / "escape.txt").exists()

    def test_rejects_non_archive(self, context, tmp_path):
        artifact = write(tmp_path, "junk.zip", b"not an archive")
        assert not ArchiveInstaller(context).prepare(archive_package("junk"), artifact)

    def test_missing_artifact(self, context):
        assert not ArchiveInstaller(context).prepare(archive_package("none"), None)

    def test_commit_without_prepare(self, context):
        assert not ArchiveInstaller(context).commit(archive_package("none"))

    def test_prepare_refuses_staging_outside(self, context, tmp_path):
        victim = tmp_path / "victim"
        victim.mkdir()
        (victim / "precious.txt").write_text("keep")
        artifact = write(tmp_path, "pkg.zip", build_zip({"new": "x"}))

        installer = ArchiveInstaller(context)
        assert not installer.prepare(archive_package(str(victim)), artifact)
        installer.cleanup()
        assert (victim / "precious.txt").read_text() == "keep"

    @pytest.mark.parametrize("path", ["{victim}", "..;victim"])
    def test_commit_refuses_destination_outside(self, context, tmp_path, path):
        victim = tmp_path / "victim"
        victim.mkdir()
        (victim / "precious.txt").write_text("keep")
        artifact = write(tmp_path, "pkg.zip", build_zip({"new": "x"}))
        bad = archive_package(path.format(victim=victim))

        installer = ArchiveInstaller(context)
        assert installer.prepare(archive_package("platform-tools"), artifact)
        assert not installer.commit(bad)
        installer.cleanup()

        assert sorted(p.name for p in victim.iterdir()) == ["precious.txt"]
        assert not tmp_path.joinpath("victim.old").exists()
        with PackageDatabase(context.registry_path) as db:
            assert db.list_installed() == []


class TestMetaInstaller:

    def test_records_registry_entry(self, context):
        pkg = make_remote("extras;google", "2.0")
        installer = MetaInstaller(context)
        assert installer.prepare(pkg, None)
        assert installer.commit(pkg)
        with PackageDatabase(context.registry_path) as db:
            entry = db.get_installed("extras;google")
        assert entry['type'] == 'meta'
        assert entry['location'] is None


class TestInstallerFactory:

    def test_picks_by_type(self, context):
        factory = InstallerFactory(context)
        assert isinstance(factory.for_package(make_remote("a", "1.0")), MetaInstaller)
        assert isinstance(factory.for_package(archive_package("b")), ArchiveInstaller)

    def test_unknown_type_uses_default(self, context):
        factory = InstallerFactory(context)
        pkg = make_remote("c", "1.0", pkg_type='exotic')
        assert isinstance(factory.for_package(pkg), ArchiveInstaller)

    def test_register(self, context):
        class NullInstaller(MetaInstaller):
            pass

        factory = InstallerFactory(context)
        factory.register('exotic', NullInstaller)
        assert isinstance(factory.for_package(make_remote("c", "1.0", pkg_type='exotic')),
                          NullInstaller)


class RecordingInstaller(InstallerStrategy):
    """Installer logging each call, failing for chosen paths."""

    calls = []
    fail_prepare = set()
    fail_commit = set()
    # path -> token cancelled once that package is committed
    cancel_after = {}

    def prepare(self, package, artifact):
        self.calls.append(("prepare", package.path))
        return package.path not in self.fail_prepare

    def commit(self, package):
        self.calls.append(("commit", package.path))
        if package.path in self.fail_commit:
            raise OSError("disk full")
        if package.path in self.cancel_after:
            self.cancel_after[package.path].cancel()
        return True

    def cleanup(self):
        self.calls.append(("cleanup", None))


@pytest.fixture
def recording(context):
    RecordingInstaller.calls = []
    RecordingInstaller.fail_prepare = set()
    RecordingInstaller.fail_commit = set()
    RecordingInstaller.cancel_after = {}
    return InstallerFactory(context, default=RecordingInstaller)


class TestInstallerOrchestrator:
    """Tests for sequential plan execution."""

    def orchestrator(self, context, sample_catalog, factory):
        return InstallerOrchestrator(FakeClient(sample_catalog, context), factory)

    def test_runs_in_order(self, context, sample_catalog, recording, sink):
        a = make_remote("a", "1.0", pkg_type='x')
        b = make_remote("b", "1.0", pkg_type='x')
        result = self.orchestrator(context, sample_catalog, recording).run(
            plan_of(a, b), sink)

        assert result.installed == ["a", "b"]
        assert RecordingInstaller.calls == [
            ("prepare", "a"), ("commit", "a"), ("cleanup", None),
            ("prepare", "b"), ("commit", "b"), ("cleanup", None),
        ]
        assert sink.messages[0] == ("Installing a 1.0 (1/2)", 0.0)
        assert sink.messages[1] == ("Installing b 1.0 (2/2)", 0.5)
        assert sink.messages[-1] == ("Installed 2 packages", 1.0)

    def test_stops_at_first_failure(self, context, sample_catalog, recording, sink):
        RecordingInstaller.fail_prepare = {"b"}
        packages = [make_remote(p, "1.0", pkg_type='x') for p in ("a", "b", "c")]

        with pytest.raises(InstallStepFailedError) as exc:
            self.orchestrator(context, sample_catalog, recording).run(
                plan_of(*packages), sink)

        assert exc.value.path == "b"
        assert ("prepare", "c") not in RecordingInstaller.calls
        assert ("commit", "a") in RecordingInstaller.calls
        assert RecordingInstaller.calls[-1] == ("cleanup", None)
        assert sink.warnings == ["Failed to install b: prepare failed"]

    def test_commit_exception(self, context, sample_catalog, recording, sink):
        RecordingInstaller.fail_commit = {"a"}
        with pytest.raises(InstallStepFailedError, match="disk full"):
            self.orchestrator(context, sample_catalog, recording).run(
                plan_of(make_remote("a", "1.0", pkg_type='x')), sink)
        assert RecordingInstaller.calls[-1] == ("cleanup", None)

    def test_download_failure(self, context, sample_catalog, sink):
        client = FakeClient(sample_catalog, context)
        client.fail_downloads = {"pkg"}
        orchestrator = InstallerOrchestrator(client, InstallerFactory(context))

        with pytest.raises(InstallStepFailedError) as exc:
            orchestrator.run(plan_of(archive_package("pkg")), sink)
        assert "connection reset" in str(exc.value)
        assert client.downloads == ["pkg"]

    def test_downloads_archives_only(self, context, sample_catalog, tmp_path, sink):
        artifact = write(tmp_path, "pkg.zip", build_zip({"file": "x"}))
        client = FakeClient(sample_catalog, context, archives={"pkg": artifact})
        orchestrator = InstallerOrchestrator(client, InstallerFactory(context))

        result = orchestrator.run(plan_of(make_remote("meta", "1.0"),
                                          archive_package("pkg")), sink)

        assert result.installed == ["meta", "pkg"]
        assert client.downloads == ["pkg"]
        assert (context.sdk_root / "pkg" / "file").exists()

    def test_cancelled_before_step(self, context, sample_catalog, recording, sink):
        token = CancellationToken()
        token.cancel()
        with pytest.raises(OperationCancelled):
            self.orchestrator(context, sample_catalog, recording).run(
                plan_of(make_remote("a", "1.0", pkg_type='x')), sink, token)
        assert RecordingInstaller.calls == []

    def test_cancelled_between_steps(self, context, sample_catalog, recording, sink):
        token = CancellationToken()
        RecordingInstaller.cancel_after = {"a": token}
        packages = [make_remote(p, "1.0", pkg_type='x') for p in ("a", "b", "c")]

        with pytest.raises(OperationCancelled):
            self.orchestrator(context, sample_catalog, recording).run(
                plan_of(*packages), sink, token)

        assert RecordingInstaller.calls == [
            ("prepare", "a"), ("commit", "a"), ("cleanup", None),
        ]
        assert [m for m, _ in sink.messages] == ["Installing a 1.0 (1/3)"]

    def test_passes_settings_to_downloads(self, context, sample_catalog, tmp_path, sink):
        artifact = write(tmp_path, "pkg.zip", build_zip({"file": "x"}))
        client = FakeClient(sample_catalog, context, archives={"pkg": artifact})
        settings = ClientSettings(force_http=True)

        InstallerOrchestrator(client, InstallerFactory(context), settings).run(
            plan_of(archive_package("pkg")), sink)
        assert client.download_settings == [settings]

    def test_empty_plan(self, context, sample_catalog, recording, sink):
        result = self.orchestrator(context, sample_catalog, recording).run(plan_of(), sink)
        assert result.installed == []
        assert sink.messages == [("Installed 0 packages", 1.0)]
