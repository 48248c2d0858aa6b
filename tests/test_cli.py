"""Tests for borrg.cli module."""
from __future__ import annotations

import orjson
import pytest
import yaml

from borrg import cli
from borrg.backend import Borg
from borrg.commands import BackendSettings, info_command, init_command
from borrg.config import load_config
from borrg.executor import ExecutorError
from borrg.models import Encryption
from borrg.repo import RepoAddress
from tests.conftest import INFO_DOC, MockExecutor, log_line

# verbosity 0 maps to borg's --warning
SETTINGS = BackendSettings(log_level="warning")

CONFIG = """
    [template.default]
    path = ["/home/user", "/etc"]

    [[backup]]
    repository = "ssh://backup@nas/srv/borg"
    passphrase = "hunter2"

    [[backup]]
    repository = "/mnt/usb/borg"
    compression = "zstd,3"
"""


def run_cli(*argv) -> int:
    with pytest.raises(SystemExit) as exc:
        cli.main(list(argv))
    return exc.value.code


@pytest.fixture
def executor(monkeypatch):
    mock = MockExecutor()
    monkeypatch.setattr(cli, "Borg", lambda settings: Borg(settings, mock))
    return mock


def test_list(write_config, capsys):
    path = write_config(CONFIG)
    assert run_cli("-c", path, "list") == 0
    out = capsys.readouterr().out
    assert "ssh://backup@nas/srv/borg" in out
    assert "/home/user, /etc" in out
    assert out.splitlines()[3].split()[:2] == ["1", "/mnt/usb/borg"]


def test_config_error_exits_1(write_config, capsys):
    path = write_config("""
        [[backup]]
        repository = "/srv/borg"
        path = 5
    """)
    assert run_cli("-c", path, "list") == 1
    assert "Invalid type: expected string or array, found integer at backup.0.path" in capsys.readouterr().err


def test_missing_config_exits_1(tmp_path, capsys):
    assert run_cli("-c", str(tmp_path / "absent.toml"), "run") == 1
    assert "Failed to read" in capsys.readouterr().err


def test_debug_redacts_secrets(write_config, capsys):
    path = write_config(CONFIG)
    assert run_cli("-c", path, "--upload-ratelimit", "500", "debug") == 0
    out = capsys.readouterr().out
    assert "hunter2" not in out
    data = yaml.safe_load(out)
    assert data["backups"][0]["passphrase"] == "Passphrase"
    assert data["backups"][1]["compression"] == "zstd,3"
    assert data["backend"]["upload_ratelimit"] == 500
    assert data["backend"]["log_level"] == "warning"
    assert data["templates"] == ["default"]


def test_run_without_backups(write_config, capsys):
    path = write_config("")
    assert run_cli("-c", path, "run") == 0
    assert "No backups configured." in capsys.readouterr().out


class TestInit:
    def test_init_and_save(self, tmp_path, executor, capsys):
        config = tmp_path / "borrg.toml"
        repo = RepoAddress.parse("/srv/new")
        key = init_command(SETTINGS, repo, Encryption.REPOKEY).args
        executor.streams[key] = ([log_line("Remember your passphrase.", "warning")], 0)

        assert run_cli("-c", str(config), "init", "/srv/new", "-e", "repokey", "--save") == 0

        out = capsys.readouterr().out
        assert "Remember your passphrase." in out
        assert f"Added /srv/new to {config}" in out
        assert [str(j.repo) for j in load_config(config).jobs()] == ["/srv/new"]

    def test_init_reuses_configured_passphrase(self, write_config, executor):
        path = write_config(CONFIG)
        repo = RepoAddress.parse("ssh://backup@nas/srv/borg")
        key = init_command(SETTINGS, repo, Encryption.KEYFILE, append_only=True).args
        executor.streams[key] = ([], 0)

        assert run_cli("-c", path, "init", "ssh://backup@nas/srv/borg",
                       "-e", "keyfile", "--append-only", "--save") == 0
        assert executor.envs == [{"BORG_PASSPHRASE": "hunter2"}]
        # already listed, so the file is unchanged
        assert len(load_config(path).backups) == 2

    def test_init_storage_quota(self, tmp_path, executor):
        repo = RepoAddress.parse("/srv/new")
        key = init_command(SETTINGS, repo, Encryption.NONE, storage_quota=5 * 1024 ** 3).args
        executor.streams[key] = ([], 0)

        code = run_cli("-c", str(tmp_path / "absent.toml"), "init", "/srv/new",
                       "-e", "none", "--storage-quota", "5G")
        assert code == 0
        assert "--storage-quota" in executor.calls[0]

    def test_init_failure(self, tmp_path, executor, capsys):
        repo = RepoAddress.parse("/srv/new")
        key = init_command(SETTINGS, repo, Encryption.REPOKEY).args
        executor.streams[key] = ([log_line("Repository /srv/new already exists.", "error")], 2)

        assert run_cli("-c", str(tmp_path / "c.toml"), "init", "/srv/new", "-e", "repokey") == 1
        assert "Failed to initialize repository" in capsys.readouterr().err
        assert not (tmp_path / "c.toml").exists()

    def test_bad_quota_rejected_by_parser(self, tmp_path):
        assert run_cli("-c", str(tmp_path / "c.toml"), "init", "/x",
                       "-e", "none", "--storage-quota", "5X") == 2


class TestInfo:
    def test_info_by_index(self, write_config, executor, capsys):
        path = write_config(CONFIG)
        key = info_command(SETTINGS, RepoAddress.parse("/mnt/usb/borg")).args
        executor.responses[key] = orjson.dumps(INFO_DOC).decode()

        assert run_cli("-c", path, "info", "1") == 0
        out = capsys.readouterr().out
        assert "Repository ID: dd06d1d72e59" in out
        assert "Encryption:    repokey" in out

    def test_info_by_location(self, write_config, executor):
        path = write_config(CONFIG)
        repo = RepoAddress.parse("ssh://backup@nas/srv/borg")
        executor.responses[info_command(SETTINGS, repo).args] = orjson.dumps(INFO_DOC).decode()

        assert run_cli("-c", path, "info", "ssh://backup@nas/srv/borg") == 0
        assert executor.envs == [{"BORG_PASSPHRASE": "hunter2"}]

    def test_info_borg_failure(self, write_config, executor, capsys):
        path = write_config(CONFIG)
        key = info_command(SETTINGS, RepoAddress.parse("/mnt/usb/borg")).args
        executor.responses[key] = ExecutorError(list(key), 2, "Repository /mnt/usb/borg does not exist.\n")

        assert run_cli("-c", path, "info", "1") == 1
        assert capsys.readouterr().err == "Repository /mnt/usb/borg does not exist.\n"

    def test_info_unknown_backup(self, write_config, capsys):
        path = write_config(CONFIG)
        assert run_cli("-c", path, "info", "7") == 1
        assert "No configured backup matches" in capsys.readouterr().err
