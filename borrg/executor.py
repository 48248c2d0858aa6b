"""Executor protocol and the local implementation used to run borg."""
from __future__ import annotations

import logging
import os
import shlex
import subprocess
from typing import Mapping, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


class ExecutorError(Exception):
    """Raised when a command exits with a non-zero status."""
    def __init__(self, cmd: list[str], returncode: int, stderr: str):
        self.cmd = cmd
        self.returncode = returncode
        self.stderr = stderr
        detail = stderr.strip()
        message = f"Command {shlex.join(cmd)!r} exited {returncode}"
        super().__init__(f"{message}: {detail}" if detail else message)


@runtime_checkable
class Executor(Protocol):
    def run(
        self,
        cmd: list[str],
        env: Mapping[str, str] | None = None,
        pass_fds: tuple[int, ...] = (),
    ) -> str:
        """Run a command, return stdout. Raise ExecutorError on failure."""
        raise NotImplementedError

    def popen(
        self,
        cmd: list[str],
        env: Mapping[str, str] | None = None,
        pass_fds: tuple[int, ...] = (),
        **kwargs,
    ) -> subprocess.Popen:
        """Launch a command as a Popen object for streaming."""
        raise NotImplementedError


def _child_env(env: Mapping[str, str] | None) -> dict[str, str] | None:
    if not env:
        return None
    return {**os.environ, **env}


class LocalExecutor:
    """Run commands on the local machine."""

    def run(
        self,
        cmd: list[str],
        env: Mapping[str, str] | None = None,
        pass_fds: tuple[int, ...] = (),
    ) -> str:
        logger.debug("Executing command: %s", shlex.join(cmd))
        result = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            errors="replace",
            env=_child_env(env),
            pass_fds=pass_fds,
            check=False,
        )
        if result.returncode != 0:
            raise ExecutorError(cmd, result.returncode, result.stderr)
        return result.stdout

    def popen(
        self,
        cmd: list[str],
        env: Mapping[str, str] | None = None,
        pass_fds: tuple[int, ...] = (),
        **kwargs,
    ) -> subprocess.Popen:
        logger.debug("Executing command: %s", shlex.join(cmd))
        return subprocess.Popen(
            cmd, text=False, env=_child_env(env), pass_fds=pass_fds, **kwargs
        )
