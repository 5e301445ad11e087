"""Tests for CLI"""

import json

import pytest

from sdkup.cli import colors, display
from sdkup.cli.main import create_parser, main
from sdkup.core.config import Channel, get_registry_path
from sdkup.core.database import PackageDatabase
from sdkup.core.reconcile import PackageRecord, UpdateReport
from conftest import build_zip, sha1


class TestParser:
    """Tests for argument parser."""

    def test_version_flag(self):
        parser = create_parser()
        with pytest.raises(SystemExit):
            parser.parse_args(['--version'])

    def test_list_command(self):
        args = create_parser().parse_args(['list', '--updates'])
        assert args.command == 'list'
        assert args.updates is True

    def test_list_alias(self):
        args = create_parser().parse_args(['l', '--json'])
        assert args.command == 'l'
        assert args.json is True

    def test_update_command(self):
        args = create_parser().parse_args(['update', '-y', 'platform-tools', 'tools'])
        assert args.command == 'update'
        assert args.yes is True
        assert args.packages == ['platform-tools', 'tools']

    def test_update_alias(self):
        args = create_parser().parse_args(['u'])
        assert args.command == 'u'
        assert args.packages == []
        assert args.yes is False

    def test_global_options(self):
        args = create_parser().parse_args([
            '--sdk-root', '/opt/sdk', '--repo-url', 'https://dl.example.org/',
            '--force-http', '--channel', 'dev', '-v', 'list'])
        assert str(args.sdk_root) == '/opt/sdk'
        assert args.repo_url == 'https://dl.example.org/'
        assert args.force_http is True
        assert args.channel is Channel.DEV
        assert args.verbose is True

    def test_bad_channel(self):
        with pytest.raises(SystemExit):
            create_parser().parse_args(['--channel', 'nightly', 'list'])


class TestDisplay:
    """Tests for report formatting."""

    @pytest.fixture(autouse=True)
    def no_colors(self):
        colors.init(nocolor=True)

    @pytest.fixture
    def report(self):
        return UpdateReport(rows=(
            PackageRecord("platform-tools", "Android SDK Platform-Tools", "34.0.1", "34.0.5"),
            PackageRecord("emulator", "Android Emulator", "32.1.0"),
        ), update_count=1)

    def test_table(self, report):
        lines = display.format_report(report, terminal_width=120)
        assert lines[0].split() == ["Package", "Path", "Installed", "Update"]
        assert "34.0.5" in lines[1]
        assert len(lines) == 3

    def test_table_pending_only(self, report):
        lines = display.format_report(report, pending_only=True, terminal_width=120)
        assert len(lines) == 2

    def test_flat(self, report):
        lines = display.format_report(report, display.DisplayMode.FLAT)
        assert lines == ["platform-tools\t34.0.1\t34.0.5", "emulator\t32.1.0\t"]

    def test_json(self, report):
        [line] = display.format_report(report, display.DisplayMode.JSON)
        data = json.loads(line)
        assert data['updates'] == 1
        assert data['packages'][0]['update'] == "34.0.5"

    def test_narrow_terminal_truncates_names(self, report):
        lines = display.format_report(report, terminal_width=50)
        assert "..." in lines[1]


@pytest.fixture
def sdk(tmp_path, repo, monkeypatch):
    """SDK root with platform-tools 34.0.1 installed and 34.0.5 published."""
    monkeypatch.delenv('SDKUP_CONFIG', raising=False)
    sdk_root = tmp_path / "sdk"
    with PackageDatabase(get_registry_path(sdk_root)) as db:
        db.record_install("platform-tools", "Android SDK Platform-Tools", "34.0.1")

    archive = build_zip({"adb": "new"}, top_dir="platform-tools")
    repo.add_archive("pt.zip", archive)
    repo.write_index([{
        "path": "platform-tools", "display_name": "Android SDK Platform-Tools",
        "version": "34.0.5", "archive": {"url": "pt.zip", "checksum": sha1(archive)},
    }])

    config = tmp_path / "sdkup.conf"
    config.write_text(f"cache_dir={tmp_path / 'cache'}\n")

    return [
        '--config', str(config),
        '--sdk-root', str(sdk_root),
        '--repo-url', repo.url,
        '--nocolor',
    ]


class TestCommands:
    """Tests for list and update against a file:// repository."""

    def test_list(self, sdk, capsys):
        assert main(sdk + ['list']) == 0
        out = capsys.readouterr().out
        assert "Android SDK Platform-Tools" in out
        assert "1 update found!" in out

    def test_list_json(self, sdk, capsys):
        assert main(sdk + ['list', '--json']) == 0
        data = json.loads(capsys.readouterr().out)
        assert data['packages'][0]['path'] == "platform-tools"

    def test_update(self, sdk, tmp_path, capsys):
        assert main(sdk + ['update', '-y']) == 0
        out = capsys.readouterr().out
        assert "Refreshing packages..." in out
        assert "No updates available" in out
        assert (tmp_path / "sdk" / "platform-tools" / "adb").read_text() == "new"

    def test_update_declined(self, sdk, monkeypatch, capsys):
        monkeypatch.setattr('builtins.input', lambda prompt: "n")
        assert main(sdk + ['update']) == 1
        assert "Aborted" in capsys.readouterr().out

    def test_update_unknown_package(self, sdk, capsys):
        assert main(sdk + ['update', '-y', 'ghost']) == 1
        err = capsys.readouterr().err
        assert "Failed to find package ghost" in err

    def test_missing_index(self, sdk, repo, capsys):
        (repo.path / "repository.json").unlink()
        assert main(sdk + ['list']) == 1
        assert "Error" in capsys.readouterr().err

    def test_no_repository(self, tmp_path, monkeypatch, capsys):
        monkeypatch.delenv('SDKUP_CONFIG', raising=False)
        assert main(['--config', str(tmp_path / "none.conf"), 'list']) == 1
        assert "No repository configured" in capsys.readouterr().err

    def test_no_command(self, capsys):
        assert main([]) == 1
