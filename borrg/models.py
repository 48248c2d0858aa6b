"""Data models for borrg."""
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import date
from pathlib import Path
from typing import Any, Union

from borrg.repo import RepoAddress
from borrg.util import resolve_path


# ---------------------------------------------------------------------------
# Secrets
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Passphrase:
    """A literal passphrase, handed to borg via BORG_PASSPHRASE."""
    value: str = field(repr=False)

    def env(self) -> dict[str, str]:
        return {"BORG_PASSPHRASE": self.value}

    @property
    def pass_fds(self) -> tuple[int, ...]:
        return ()


@dataclass(frozen=True)
class PassCommand:
    """A shell command borg runs to obtain the passphrase (BORG_PASSCOMMAND)."""
    command: str = field(repr=False)

    def env(self) -> dict[str, str]:
        return {"BORG_PASSCOMMAND": self.command}

    @property
    def pass_fds(self) -> tuple[int, ...]:
        return ()


@dataclass(frozen=True)
class PassphraseFd:
    """An already-open file descriptor borg reads the passphrase from.

    The descriptor has to be inherited by the borg process, so it is also
    reported through ``pass_fds``.
    """
    fd: int

    def env(self) -> dict[str, str]:
        return {"BORG_PASSPHRASE_FD": str(self.fd)}

    @property
    def pass_fds(self) -> tuple[int, ...]:
        return (self.fd,)


Secret = Union[Passphrase, PassCommand, PassphraseFd]


# ---------------------------------------------------------------------------
# Compression / encryption
# ---------------------------------------------------------------------------

class Algorithm(str, enum.Enum):
    NONE = "none"
    LZ4 = "lz4"
    ZSTD = "zstd"
    ZLIB = "zlib"
    LZMA = "lzma"


_LEVEL_RANGES = {
    Algorithm.ZSTD: (1, 22),
    Algorithm.ZLIB: (0, 9),
    Algorithm.LZMA: (0, 9),
}


@dataclass(frozen=True)
class Compression:
    """A borg compression spec: ``[obfuscate,<n>,][auto,]<algo>[,<level>]``.

    ``auto`` makes borg skip compression for chunks that would not shrink.
    ``obfuscation`` pads compressed chunk sizes to hide information leaked
    by size alone.
    """
    algorithm: Algorithm
    level: int | None = None
    auto: bool = False
    obfuscation: int | None = None

    def __post_init__(self) -> None:
        if self.level is not None:
            if self.algorithm not in _LEVEL_RANGES:
                raise ValueError(
                    f"Compression {self.algorithm.value!r} does not take a level"
                )
            low, high = _LEVEL_RANGES[self.algorithm]
            if not low <= self.level <= high:
                raise ValueError(
                    f"{self.algorithm.value} level must be {low}-{high}, got {self.level}"
                )
        if self.auto and self.algorithm is Algorithm.NONE:
            raise ValueError("'auto' cannot be combined with compression 'none'")
        if self.obfuscation is not None and not 1 <= self.obfuscation <= 255:
            raise ValueError(
                f"Obfuscation level must be 1-255, got {self.obfuscation}"
            )

    @classmethod
    def parse(cls, text: str) -> "Compression":
        """Parse the string form, e.g. ``"obfuscate,3,auto,zstd,19"`` or ``"LZ4"``."""
        parts = [p.strip() for p in text.lower().split(",")]
        obfuscation = None
        auto = False
        if parts[0] == "obfuscate":
            if len(parts) < 3 or not parts[1].isdigit():
                raise ValueError(f"Invalid compression spec {text!r}")
            obfuscation = int(parts[1])
            parts = parts[2:]
        if parts[0] == "auto":
            auto = True
            parts = parts[1:]
        if not parts or len(parts) > 2:
            raise ValueError(f"Invalid compression spec {text!r}")
        try:
            algorithm = Algorithm(parts[0])
        except ValueError:
            raise ValueError(f"Unknown compression algorithm {parts[0]!r}") from None
        level = None
        if len(parts) == 2:
            if not parts[1].isdigit():
                raise ValueError(f"Invalid compression level {parts[1]!r}")
            level = int(parts[1])
        return cls(algorithm=algorithm, level=level, auto=auto, obfuscation=obfuscation)

    def __str__(self) -> str:
        out = ""
        if self.obfuscation is not None:
            out += f"obfuscate,{self.obfuscation},"
        if self.auto:
            out += "auto,"
        out += self.algorithm.value
        if self.level is not None:
            out += f",{self.level}"
        return out


class Encryption(str, enum.Enum):
    NONE = "none"
    REPOKEY = "repokey"
    REPOKEY_BLAKE2 = "repokey-blake2"
    KEYFILE = "keyfile"
    KEYFILE_BLAKE2 = "keyfile-blake2"
    AUTHENTICATED = "authenticated"
    AUTHENTICATED_BLAKE2 = "authenticated-blake2"

    def __str__(self) -> str:
        return self.value


# ---------------------------------------------------------------------------
# Archives and jobs
# ---------------------------------------------------------------------------

def archive_name_for(day: date | None = None) -> str:
    return (day or date.today()).strftime("%Y-%m-%d")


@dataclass
class Archive:
    """One archive to create: a name and the ordered source paths it covers."""
    name: str
    paths: list[str] = field(default_factory=list)
    compression: Compression | None = None
    pattern_file: str | None = None
    exclude_file: str | None = None
    comment: str | None = None

    def resolve_file(self, file: str) -> Path:
        """Resolve a pattern/exclude file against the archive's source path.

        Absolute files are returned unchanged. A relative file is anchored
        to the single source path; with no path, or with several, the anchor
        is undefined and ValueError is raised.
        """
        candidate = Path(resolve_path(file))
        if candidate.is_absolute():
            return candidate
        if not self.paths:
            raise ValueError(f"Relative file {file!r} has no source path to anchor to")
        if len(self.paths) > 1:
            raise ValueError(
                f"Relative file {file!r} is ambiguous for multiple source paths"
            )
        return (Path(resolve_path(self.paths[0])) / candidate).absolute()

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True)
class Job:
    """A fully resolved backup job: where to write, and what to archive."""
    repo: RepoAddress
    archive: Archive

    @property
    def label(self) -> str:
        return f"{self.repo}::{self.archive.name}"


@dataclass(frozen=True)
class RateLimit:
    """Upload/download caps in kiB/s. Either, both or neither may be set."""
    up: int | None = None
    down: int | None = None


# ---------------------------------------------------------------------------
# borg info
# ---------------------------------------------------------------------------

class InfoError(ValueError):
    """The ``borg info --json`` document could not be interpreted."""


class MissingInfoKey(InfoError):
    def __init__(self, key: str):
        self.key = key
        super().__init__(f'missing key: "{key}"')


class UnsupportedEncryption(InfoError):
    def __init__(self, mode: object):
        self.mode = mode
        super().__init__(f"unsupported encryption mode: {mode!r}")


def _lookup(doc: Any, dotted: str, kind: type) -> Any:
    cur = doc
    for key in dotted.split("."):
        if not isinstance(cur, dict) or key not in cur:
            raise MissingInfoKey(dotted)
        cur = cur[key]
    if kind is int and isinstance(cur, bool):
        raise MissingInfoKey(dotted)
    if not isinstance(cur, kind):
        raise MissingInfoKey(dotted)
    return cur


@dataclass(frozen=True)
class RepoInfo:
    """Snapshot of cache, encryption and repository metadata reported by borg."""
    cache_path: Path
    total_chunks: int
    total_csize: int
    total_size: int
    total_unique_chunks: int
    unique_csize: int
    unique_size: int
    encryption: Encryption
    id: str
    location: str
    security_dir: Path
    last_modified: str | None = None

    @classmethod
    def from_json(cls, doc: Any) -> "RepoInfo":
        """Validate a parsed ``borg info --json`` document.

        Raises MissingInfoKey naming the first absent key, or
        UnsupportedEncryption for a mode outside the known set.
        """
        _lookup(doc, "cache", dict)
        cache_path = _lookup(doc, "cache.path", str)
        _lookup(doc, "cache.stats", dict)
        stats = {
            name: _lookup(doc, f"cache.stats.{name}", int)
            for name in (
                "total_chunks", "total_csize", "total_size",
                "total_unique_chunks", "unique_csize", "unique_size",
            )
        }
        _lookup(doc, "encryption", dict)
        mode = _lookup(doc, "encryption.mode", str)
        try:
            encryption = Encryption(mode)
        except ValueError:
            raise UnsupportedEncryption(mode) from None
        repo_id = _lookup(doc, "repository.id", str)
        location = _lookup(doc, "repository.location", str)
        last_modified = doc.get("repository", {}).get("last_modified")
        security_dir = _lookup(doc, "security_dir", str)

        return cls(
            cache_path=Path(cache_path),
            encryption=encryption,
            id=repo_id,
            location=location,
            security_dir=Path(security_dir),
            last_modified=last_modified if isinstance(last_modified, str) else None,
            **stats,
        )
