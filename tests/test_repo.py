"""Tests for borrg.repo module."""
from __future__ import annotations

import logging

import pytest

from borrg.models import Passphrase, PassCommand
from borrg.repo import RepoAddress, Remote


@pytest.mark.parametrize("text, expected", [
    ("path/to/repo", "path/to/repo"),
    ("/path/to/repo", "/path/to/repo"),
    ("~/path/to/repo", "~/path/to/repo"),
    ("file:///path/to/repo", "/path/to/repo"),
    ("file://~/path/to/repo", "~/path/to/repo"),
    ("ssh://user@host:22/path/to/repo", "ssh://user@host:22/path/to/repo"),
    ("ssh://user@host:22/./path/to/repo", "ssh://user@host:22/./path/to/repo"),
    ("ssh://user@host:22/~/path/to/repo", "ssh://user@host:22/~/path/to/repo"),
    ("ssh://host/path/to/repo", "ssh://host/path/to/repo"),
    ("user@host:/path/to/repo", "ssh://user@host/path/to/repo"),
    ("host:repo", "ssh://host/./repo"),
    ("host:~/repo", "ssh://host/~/repo"),
])
def test_format(text, expected):
    assert str(RepoAddress.parse(text)) == expected


@pytest.mark.parametrize("text", [
    "path/to/repo",
    "/path/to/repo",
    "~/repo",
    "file:///srv/borg",
    "ssh://user@host:2222/srv/borg",
    "ssh://host/./relative",
    "ssh://host/~/home",
    "user@host:/legacy",
    "host:legacy-relative",
])
def test_format_reparses_equal(text):
    parsed = RepoAddress.parse(text)
    assert RepoAddress.parse(str(parsed)) == parsed


def test_local_address_round_trip():
    for path in (
        "/srv/borg", "relative/repo", "~/repo", "./here",
        "backups:2024", "ssh://not-a-remote", "file://nested", "~/backups:old",
    ):
        addr = RepoAddress(path=path)
        assert RepoAddress.parse(str(addr)) == addr


def test_ssh_absolute_path_is_rooted():
    addr = RepoAddress.parse("ssh://backup.example.com/srv/borg")
    assert addr.path == "/srv/borg"
    assert addr.remote == Remote(host="backup.example.com")
    assert not addr.is_relative


def test_ssh_relative_path_kept_as_given():
    addr = RepoAddress.parse("ssh://host/./repo")
    assert addr.path == "./repo"
    assert addr.is_relative


def test_file_scheme_has_no_remote():
    addr = RepoAddress.parse("file:///srv/borg")
    assert addr.remote is None
    assert addr.path == "/srv/borg"


def test_legacy_syntax_warns(caplog):
    with caplog.at_level(logging.WARNING, logger="borrg.repo"):
        addr = RepoAddress.parse("user@host:/srv/borg")
    assert "deprecated" in caplog.text
    assert addr.remote == Remote(host="host", user="user")


def test_ssh_syntax_does_not_warn(caplog):
    with caplog.at_level(logging.WARNING, logger="borrg.repo"):
        RepoAddress.parse("ssh://host/srv/borg")
    assert caplog.text == ""


def test_absolute_local_path_with_colon_is_local():
    addr = RepoAddress.parse("/mnt/backup:2024")
    assert addr.remote is None
    assert addr.path == "/mnt/backup:2024"


def test_ssh_without_path_separator():
    with pytest.raises(ValueError, match="no '/'"):
        RepoAddress.parse("ssh://host")


def test_unknown_scheme():
    with pytest.raises(ValueError, match="Unsupported repository scheme"):
        RepoAddress.parse("sftp://host/srv/borg")


def test_equality_ignores_passphrase():
    a = RepoAddress.parse("ssh://host/srv/borg").with_passphrase(Passphrase("one"))
    b = RepoAddress.parse("ssh://host/srv/borg").with_passphrase(PassCommand("pass show borg"))
    assert a == b
    assert a.passphrase != b.passphrase


def test_passphrase_not_in_repr():
    addr = RepoAddress(path="/srv/borg").with_passphrase(Passphrase("hunter2"))
    assert "hunter2" not in repr(addr)


class TestRemote:
    def test_full(self):
        assert Remote.parse("user@host:2222") == Remote(host="host", user="user", port=2222)

    def test_host_only(self):
        assert Remote.parse("host") == Remote(host="host")

    def test_user_split_at_last_at_sign(self):
        remote = Remote.parse("me@example.com@host")
        assert remote.user == "me@example.com"
        assert remote.host == "host"

    def test_non_numeric_port(self):
        with pytest.raises(ValueError, match="port"):
            Remote.parse("host:ssh")

    def test_port_out_of_range(self):
        with pytest.raises(ValueError, match="port"):
            Remote.parse("host:70000")

    def test_missing_host(self):
        with pytest.raises(ValueError, match="missing host"):
            Remote.parse("user@")

    def test_str(self):
        assert str(Remote(host="h", user="u", port=22)) == "u@h:22"
        assert str(Remote(host="h")) == "h"


def test_local_path_with_colon_formats_as_file_url():
    assert str(RepoAddress(path="backups:2024")) == "file://backups:2024"
    assert str(RepoAddress(path="/mnt/backup:2024")) == "/mnt/backup:2024"


@pytest.mark.parametrize("text", ["~/backups:old", "./backups:old"])
def test_home_and_dot_paths_with_colon_are_local(text, caplog):
    with caplog.at_level(logging.WARNING, logger="borrg.repo"):
        addr = RepoAddress.parse(text)
    assert addr == RepoAddress(path=text)
    assert caplog.text == ""
