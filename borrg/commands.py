"""Build borg invocations from domain objects.

Each builder is a pure function returning an Invocation: the argument
vector, the extra environment and the file descriptors the child must
inherit. Secrets only ever travel through the environment.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping

from borrg.models import Archive, Encryption, RateLimit
from borrg.repo import RepoAddress
from borrg.util import resolve_path

LOG_LEVEL_FLAGS = {
    "debug": "--debug",
    "info": "--info",
    "warning": "--warning",
    "error": "--error",
}


class CommandError(ValueError):
    """An invocation could not be built; nothing was spawned."""


@dataclass(frozen=True)
class BackendSettings:
    """Settings shared read-only by every borg invocation."""
    binary: str = "borg"
    dry_run: bool = False
    rate_limit: RateLimit = field(default_factory=RateLimit)
    log_level: str | None = None

    def __post_init__(self) -> None:
        if self.log_level is not None and self.log_level not in LOG_LEVEL_FLAGS:
            raise ValueError(f"Unknown borg log level {self.log_level!r}")


@dataclass(frozen=True)
class Invocation:
    args: tuple[str, ...]
    env: Mapping[str, str] = field(default_factory=dict)
    pass_fds: tuple[int, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "env", MappingProxyType(dict(self.env)))


def _common_flags(settings: BackendSettings) -> list[str]:
    flags = []
    if settings.log_level is not None:
        flags.append(LOG_LEVEL_FLAGS[settings.log_level])
    if settings.rate_limit.up is not None:
        flags += ["--upload-ratelimit", str(settings.rate_limit.up)]
    if settings.rate_limit.down is not None:
        flags += ["--download-ratelimit", str(settings.rate_limit.down)]
    return flags


def _invocation(settings: BackendSettings, args: list[str], repo: RepoAddress) -> Invocation:
    if repo.passphrase is None:
        return Invocation(args=(settings.binary, *args))
    return Invocation(
        args=(settings.binary, *args),
        env=repo.passphrase.env(),
        pass_fds=repo.passphrase.pass_fds,
    )


def init_command(
    settings: BackendSettings,
    repo: RepoAddress,
    encryption: Encryption,
    append_only: bool = False,
    make_parent_dirs: bool = False,
    storage_quota: int | None = None,
) -> Invocation:
    args = ["init", "--log-json", *_common_flags(settings)]
    if append_only:
        args.append("--append-only")
    if make_parent_dirs:
        args.append("--make-parent-dirs")
    if storage_quota is not None:
        args += ["--storage-quota", str(storage_quota)]
    args += ["--encryption", Encryption(encryption).value, str(repo)]
    return _invocation(settings, args, repo)


def _checked_file(archive: Archive, file: str, kind: str) -> str:
    try:
        path = archive.resolve_file(file)
    except ValueError as e:
        raise CommandError(str(e)) from e
    if not path.exists():
        raise CommandError(f"{kind} file does not exist: {path}")
    return str(path)


def create_command(
    settings: BackendSettings,
    repo: RepoAddress,
    archive: Archive,
) -> Invocation:
    if not archive.paths:
        raise CommandError("No paths specified")

    args = ["create", "--progress", "--stats", "--log-json", *_common_flags(settings)]
    if settings.dry_run:
        args.append("--dry-run")
    if archive.comment is not None:
        args += ["--comment", archive.comment]
    if archive.compression is not None:
        args += ["--compression", str(archive.compression)]
    if archive.pattern_file is not None:
        args += ["--patterns-from", _checked_file(archive, archive.pattern_file, "Pattern")]
    if archive.exclude_file is not None:
        args += ["--exclude-from", _checked_file(archive, archive.exclude_file, "Exclude")]

    args.append(f"{repo}::{archive.name}")
    args += [resolve_path(p) for p in archive.paths]
    return _invocation(settings, args, repo)


def info_command(settings: BackendSettings, repo: RepoAddress) -> Invocation:
    args = ["info", "--json", *_common_flags(settings), str(repo)]
    return _invocation(settings, args, repo)
