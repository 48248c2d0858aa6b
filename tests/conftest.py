"""MockExecutor and shared fixtures for testing."""
from __future__ import annotations

import io
import subprocess
import textwrap
from unittest.mock import MagicMock

import orjson
import pytest


class MockExecutor:
    """
    Executor that returns pre-scripted responses for commands.

    responses: tuple(cmd) -> stdout string (or an Exception to raise) for run()
    streams:   tuple(cmd) -> (stderr lines, returncode) for popen()
    If the command isn't found, raises KeyError (to catch unexpected calls in tests).
    """

    def __init__(self, responses: dict | None = None, streams: dict | None = None):
        self.responses: dict = responses or {}
        self.streams: dict = streams or {}
        self.calls: list[list[str]] = []  # record of all commands run
        self.envs: list[dict] = []
        self.pass_fds: list[tuple] = []

    def _record(self, cmd, env, pass_fds) -> tuple:
        self.calls.append(cmd)
        self.envs.append(dict(env or {}))
        self.pass_fds.append(tuple(pass_fds))
        return tuple(cmd)

    def run(self, cmd: list[str], env=None, pass_fds=()) -> str:
        key = self._record(cmd, env, pass_fds)
        if key not in self.responses:
            raise KeyError(f"MockExecutor: unexpected command: {cmd}")
        result = self.responses[key]
        if isinstance(result, Exception):
            raise result
        return result

    def popen(self, cmd: list[str], env=None, pass_fds=(), **_kwargs) -> subprocess.Popen:
        """Return a mock Popen whose stderr replays the scripted lines."""
        key = self._record(cmd, env, pass_fds)
        if key not in self.streams:
            raise KeyError(f"MockExecutor: unexpected command: {cmd}")
        result = self.streams[key]
        if isinstance(result, Exception):
            raise result
        lines, returncode = result

        mock_proc = MagicMock(spec=subprocess.Popen)
        mock_proc.stderr = io.BytesIO("".join(line + "\n" for line in lines).encode())
        mock_proc.stdout = None
        mock_proc.returncode = returncode
        mock_proc.wait.return_value = returncode
        return mock_proc


def json_line(**fields) -> str:
    return orjson.dumps(fields).decode()


def progress_line(nfiles: int, path: str, size: int = 4096) -> str:
    return json_line(
        type="archive_progress",
        nfiles=nfiles,
        original_size=size,
        compressed_size=size // 2,
        deduplicated_size=size // 4,
        path=path,
        time=1700000000.5,
    )


def log_line(message: str, level: str = "info") -> str:
    return json_line(type="log_message", message=message, level=level, name="borg.archiver")


INFO_DOC = {
    "cache": {
        "path": "/home/user/.cache/borg/dd06d1d72e59",
        "stats": {
            "total_chunks": 236619767,
            "total_csize": 26289835627221,
            "total_size": 38449962381221,
            "total_unique_chunks": 1621026,
            "unique_csize": 300958014008,
            "unique_size": 477242905022,
        },
    },
    "encryption": {"mode": "repokey"},
    "repository": {
        "id": "dd06d1d72e5925b63f9c929b088b1cfa2e6bd548f5037c05352a61d71e4d2819",
        "last_modified": "2022-04-07T15:44:37.000000",
        "location": "ssh://borg.backup/~/sagittarius",
    },
    "security_dir": "/home/user/.config/borg/security/dd06d1d72e59",
}


@pytest.fixture
def write_config(tmp_path):
    """Write a config file (TOML by default) and return its path as a string."""
    def _write(text: str, name: str = "borrg.toml") -> str:
        p = tmp_path / name
        p.write_text(textwrap.dedent(text))
        return str(p)
    return _write
