"""Drive the borg program: init, create and info."""
from __future__ import annotations

import subprocess
from typing import TYPE_CHECKING, Callable, Iterator

import orjson

from borrg import commands
from borrg.events import Event, iter_events
from borrg.executor import ExecutorError, LocalExecutor
from borrg.models import RepoInfo

if TYPE_CHECKING:
    from borrg.commands import BackendSettings, Invocation
    from borrg.executor import Executor
    from borrg.models import Archive, Encryption
    from borrg.repo import RepoAddress

EventCallback = Callable[[Event], None]


class BackendError(Exception):
    """borg could not be run, or its output could not be used."""


class Borg:
    """Runs borg invocations through an Executor.

    ``settings`` is immutable and may be shared by several threads, each
    calling into the same Borg instance.
    """

    def __init__(self, settings: "BackendSettings", executor: "Executor | None" = None):
        self.settings = settings
        self.executor = executor or LocalExecutor()

    def events(self, invocation: "Invocation") -> Iterator[Event]:
        """Spawn ``invocation`` and yield events decoded from its stderr.

        After stderr closes the process is awaited; a non-zero exit raises
        ExecutorError once the stream is exhausted.
        """
        cmd = list(invocation.args)
        try:
            proc = self.executor.popen(
                cmd,
                env=invocation.env,
                pass_fds=invocation.pass_fds,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
            )
        except OSError as e:
            raise BackendError(f"Failed to run {cmd[0]}: {e}") from e

        if proc.stderr is None:
            proc.kill()
            proc.wait()
            raise BackendError("No stderr")

        try:
            yield from iter_events(proc.stderr)
        finally:
            proc.stderr.close()
            returncode = proc.wait()
        if returncode != 0:
            raise ExecutorError(cmd, returncode, "")

    def _stream(self, invocation: "Invocation", on_event: EventCallback) -> None:
        for event in self.events(invocation):
            on_event(event)

    def init_repository(
        self,
        repo: "RepoAddress",
        encryption: "Encryption",
        *,
        append_only: bool = False,
        make_parent_dirs: bool = False,
        storage_quota: int | None = None,
        on_event: EventCallback = lambda _event: None,
    ) -> "RepoAddress":
        """Initialize an empty repository and return its address."""
        invocation = commands.init_command(
            self.settings,
            repo,
            encryption,
            append_only=append_only,
            make_parent_dirs=make_parent_dirs,
            storage_quota=storage_quota,
        )
        self._stream(invocation, on_event)
        return repo

    def create_archive(
        self,
        repo: "RepoAddress",
        archive: "Archive",
        on_event: EventCallback = lambda _event: None,
    ) -> None:
        """Create ``archive`` in ``repo``, pushing each event to ``on_event``."""
        invocation = commands.create_command(self.settings, repo, archive)
        self._stream(invocation, on_event)

    def repo_info(self, repo: "RepoAddress") -> RepoInfo:
        """Query ``borg info --json``.

        A non-zero exit raises ExecutorError carrying borg's stderr verbatim.
        """
        invocation = commands.info_command(self.settings, repo)
        try:
            output = self.executor.run(
                list(invocation.args), env=invocation.env, pass_fds=invocation.pass_fds
            )
        except OSError as e:
            raise BackendError(f"Failed to run {invocation.args[0]}: {e}") from e
        try:
            doc = orjson.loads(output)
        except orjson.JSONDecodeError as e:
            raise BackendError(f"borg info returned invalid JSON: {e}") from e
        return RepoInfo.from_json(doc)
