"""Load the borrg config file and resolve jobs against their templates.

A config file holds an optional ``template`` table of named bodies and a
``backup`` array of job bodies. Each job names a template (``"default"``
when unset). Templates may name further templates. Resolution walks that
chain to the end, merging field by field with "job wins, else template"
precedence, and finally materializes every job into a ``Job``.
"""
from __future__ import annotations

import re
import tomllib
from dataclasses import dataclass, field, replace
from datetime import date
from pathlib import Path
from typing import Any, Union

import orjson
import yaml

from borrg.models import (
    Archive,
    Compression,
    Job,
    PassCommand,
    Passphrase,
    PassphraseFd,
    Secret,
    archive_name_for,
)
from borrg.repo import RepoAddress, Remote
from borrg.util import resolve_path

DEFAULT_CONFIG_PATH = "~/.config/borg/borrg.toml"
DEFAULT_TEMPLATE = "default"
SENTINEL = "..."
DEFAULT_COMMENT = "created using borrg"

_BACKUP_TABLE = re.compile(r"^\s*\[\[\s*backup\s*\]\]", re.MULTILINE)


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class ConfigError(Exception):
    """A config problem, located by the dotted path of keys leading to it."""

    def __init__(self, message: str):
        self.message = message
        self.keys: list[str] = []
        super().__init__(message)

    def at(self, key: str | int) -> "ConfigError":
        """Record that this error happened under ``key``. Outer keys come first."""
        self.keys.insert(0, str(key))
        return self

    @property
    def location(self) -> str:
        return ".".join(self.keys)

    def __str__(self) -> str:
        if self.keys:
            return f"{self.message} at {self.location}"
        return self.message


class TypeMismatch(ConfigError):
    def __init__(self, expected: str, found: str):
        self.expected = expected
        self.found = found
        super().__init__(f"Invalid type: expected {expected}, found {found}")


class InvalidValue(ConfigError):
    pass


class MissingKey(ConfigError):
    def __init__(self, key: str):
        self.key = key
        super().__init__(f'Missing key "{key}"')


class ExclusiveKeys(ConfigError):
    def __init__(self, key: str, other: str):
        self.pair = (key, other)
        super().__init__(f"{key} and {other} are exclusive")


class MissingTemplate(ConfigError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f'Template "{name}" not found')


class TemplateCycle(ConfigError):
    def __init__(self, chain: list[str]):
        self.chain = chain
        super().__init__(f"Template cycle: {' -> '.join(chain)}")


class ConfigReadError(ConfigError):
    pass


class ConfigSyntaxError(ConfigError):
    pass


def _type_name(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, int):
        return "integer"
    if isinstance(value, float):
        return "float"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return "array"
    if isinstance(value, dict):
        return "table"
    return type(value).__name__


def _expect_str(value: Any, key: str) -> str:
    if not isinstance(value, str):
        raise TypeMismatch("string", _type_name(value)).at(key)
    return value


def _string(value: Any) -> str:
    if not isinstance(value, str):
        raise TypeMismatch("string", _type_name(value))
    return value


def _expect_int(value: Any, key: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeMismatch("integer", _type_name(value)).at(key)
    return value


# ---------------------------------------------------------------------------
# Pre-resolution bodies
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CombinedRepo:
    """``repository = "ssh://host/path"``"""
    location: str


@dataclass(frozen=True)
class SplitRepo:
    """``repository = { user = ..., host = ..., path = ... }``"""
    user: str | None = None
    host: str | None = None
    path: str | None = None
    port: int | None = None

    def merged(self, other: "SplitRepo") -> "SplitRepo":
        return SplitRepo(
            user=self.user if self.user is not None else other.user,
            host=self.host if self.host is not None else other.host,
            path=self.path if self.path is not None else other.path,
            port=self.port if self.port is not None else other.port,
        )


RepoConfig = Union[CombinedRepo, SplitRepo]


@dataclass(frozen=True)
class BackupConfig:
    """One job or template body before inheritance. Every field is optional."""
    template: str | None = None
    repo: RepoConfig | None = None
    passphrase: Secret | None = None
    paths: tuple[str, ...] | None = None
    compression: Compression | None = None
    pattern_file: str | None = None
    exclude_file: str | None = None
    comment: str | None = None
    name: str | None = None

    def resolve_with(self, template: "BackupConfig") -> "BackupConfig":
        """Merge ``template`` underneath this body. The template link is cleared."""
        def pick(mine, theirs):
            return mine if mine is not None else theirs

        if isinstance(self.repo, SplitRepo) and isinstance(template.repo, SplitRepo):
            repo = self.repo.merged(template.repo)
        else:
            repo = pick(self.repo, template.repo)

        if self.paths is None:
            paths = template.paths
        elif template.paths is None:
            paths = self.paths
        else:
            paths = []
            for p in self.paths:
                if p == SENTINEL:
                    paths.extend(template.paths)
                else:
                    paths.append(p)
            paths = tuple(paths)

        return BackupConfig(
            template=None,
            repo=repo,
            passphrase=pick(self.passphrase, template.passphrase),
            paths=paths,
            compression=pick(self.compression, template.compression),
            pattern_file=pick(self.pattern_file, template.pattern_file),
            exclude_file=pick(self.exclude_file, template.exclude_file),
            comment=pick(self.comment, template.comment),
            name=pick(self.name, template.name),
        )


BUILTIN_DEFAULT = BackupConfig(paths=("~",), exclude_file=".borgignore")


# ---------------------------------------------------------------------------
# Parsing raw values
# ---------------------------------------------------------------------------

def parse_compression(value: Any) -> Compression:
    if isinstance(value, str):
        try:
            return Compression.parse(value)
        except ValueError as e:
            raise InvalidValue(str(e)) from e
    if not isinstance(value, dict):
        raise TypeMismatch("string or table", _type_name(value))

    if "algorithm" not in value:
        raise MissingKey("algorithm")
    algorithm = _expect_str(value["algorithm"], "algorithm")
    auto = value.get("auto", False)
    if not isinstance(auto, bool):
        raise TypeMismatch("boolean", _type_name(auto)).at("auto")
    level = value.get("level")
    if level is not None:
        level = _expect_int(level, "level")
    obfuscation = value.get("obfuscation")
    if obfuscation is not None:
        obfuscation = _expect_int(obfuscation, "obfuscation")
        if obfuscation == 0:
            raise InvalidValue("Obfuscation level must be nonzero").at("obfuscation")

    try:
        base = Compression.parse(algorithm)
    except ValueError as e:
        raise InvalidValue(str(e)).at("algorithm") from e
    try:
        return replace(base, level=level, auto=auto, obfuscation=obfuscation)
    except ValueError as e:
        raise InvalidValue(str(e)) from e


def parse_repo(value: Any) -> RepoConfig:
    if isinstance(value, str):
        return CombinedRepo(value)
    if not isinstance(value, dict):
        raise TypeMismatch("string or table", _type_name(value))
    fields = {}
    for key in ("user", "host", "path"):
        if key in value:
            fields[key] = _expect_str(value[key], key)
    if "port" in value:
        fields["port"] = _expect_int(value["port"], "port")
    return SplitRepo(**fields)


def parse_passphrase(table: dict) -> Secret | None:
    present = [k for k in ("passphrase", "passcommand", "passphrase_fd") if k in table]
    if len(present) > 1:
        raise ExclusiveKeys(present[0], present[1])
    if not present:
        return None
    key = present[0]
    value = table[key]
    if key == "passcommand":
        return PassCommand(_expect_str(value, key))
    if key == "passphrase_fd":
        return PassphraseFd(_expect_int(value, key))
    if isinstance(value, str):
        return Passphrase(value)
    if isinstance(value, int) and not isinstance(value, bool):
        return PassphraseFd(value)
    raise TypeMismatch("string or integer", _type_name(value)).at(key)


def parse_paths(value: Any) -> tuple[str, ...]:
    if isinstance(value, str):
        return (value,)
    if not isinstance(value, list):
        raise TypeMismatch("string or array", _type_name(value))
    return tuple(_expect_str(p, str(i)) for i, p in enumerate(value))


def _parse_optional(table: dict, key: str, parser) -> Any:
    if key not in table:
        return None
    try:
        return parser(table[key])
    except ConfigError as e:
        raise e.at(key)


def parse_body(value: Any) -> BackupConfig:
    """Parse one template or job body."""
    if not isinstance(value, dict):
        raise TypeMismatch("table", _type_name(value))
    return BackupConfig(
        template=_parse_optional(value, "template", _string),
        repo=_parse_optional(value, "repository", parse_repo),
        passphrase=parse_passphrase(value),
        paths=_parse_optional(value, "path", parse_paths),
        compression=_parse_optional(value, "compression", parse_compression),
        pattern_file=_parse_optional(value, "pattern_file", _string),
        exclude_file=_parse_optional(value, "exclude_file", _string),
        comment=_parse_optional(value, "comment", _string),
        name=_parse_optional(value, "name", _string),
    )


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------

def _repo_address(repo: RepoConfig) -> RepoAddress:
    if isinstance(repo, CombinedRepo):
        try:
            return RepoAddress.parse(repo.location)
        except ValueError as e:
            raise InvalidValue(str(e)) from e
    if repo.path is None:
        raise MissingKey("path")
    if repo.host is None:
        if repo.user is not None or repo.port is not None:
            raise MissingKey("host")
        return RepoAddress(path=repo.path)
    path = repo.path
    if not path.startswith(("/", ".", "~")):
        path = "/" + path
    return RepoAddress(path=path, remote=Remote(host=repo.host, user=repo.user, port=repo.port))


@dataclass
class Config:
    """A parsed config file: named templates and unresolved job bodies."""
    templates: dict[str, BackupConfig] = field(default_factory=dict)
    backups: list[BackupConfig] = field(default_factory=list)

    def template_registry(self) -> dict[str, BackupConfig]:
        """Templates with ``default`` in place and resolved against nothing."""
        registry = dict(self.templates)
        if DEFAULT_TEMPLATE in registry:
            registry[DEFAULT_TEMPLATE] = replace(registry[DEFAULT_TEMPLATE], template=None)
        else:
            registry[DEFAULT_TEMPLATE] = BUILTIN_DEFAULT
        return registry

    def resolve(self, body: BackupConfig) -> BackupConfig:
        """Walk ``body``'s template chain to the end and merge every hop."""
        registry = self.template_registry()
        current = replace(body, template=body.template or DEFAULT_TEMPLATE)
        seen: list[str] = []
        while current.template is not None:
            name = current.template
            if name in seen:
                raise TemplateCycle(seen + [name])
            seen.append(name)
            if name not in registry:
                raise MissingTemplate(name)
            template = registry[name]
            if template.template is not None:
                next_name = template.template
            elif name != DEFAULT_TEMPLATE:
                next_name = DEFAULT_TEMPLATE
            else:
                next_name = None
            current = replace(current.resolve_with(template), template=next_name)

        if current.paths is not None:
            current = replace(current, paths=tuple(p for p in current.paths if p != SENTINEL))
        return current

    def materialize(self, body: BackupConfig, today: date | None = None) -> Job:
        """Resolve ``body`` and turn it into a runnable Job."""
        resolved = self.resolve(body)
        if resolved.repo is None:
            raise MissingKey("repository")
        try:
            repo = _repo_address(resolved.repo)
        except ConfigError as e:
            raise e.at("repository")
        if not resolved.paths:
            raise MissingKey("path")
        archive = Archive(
            name=resolved.name or archive_name_for(today),
            paths=list(resolved.paths),
            compression=resolved.compression,
            pattern_file=resolved.pattern_file,
            exclude_file=resolved.exclude_file,
            comment=resolved.comment if resolved.comment is not None else DEFAULT_COMMENT,
        )
        return Job(repo=repo.with_passphrase(resolved.passphrase), archive=archive)

    def jobs(self, today: date | None = None) -> list[Job]:
        """Every job fully resolved, in file order."""
        jobs = []
        for i, body in enumerate(self.backups):
            try:
                jobs.append(self.materialize(body, today))
            except ConfigError as e:
                raise e.at(i).at("backup")
        return jobs


def parse_config(raw: Any) -> Config:
    """Build a Config from the raw mapping produced by TOML or YAML."""
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise TypeMismatch("table", _type_name(raw))

    templates: dict[str, BackupConfig] = {}
    raw_templates = raw.get("template", {})
    if not isinstance(raw_templates, dict):
        raise TypeMismatch("table", _type_name(raw_templates)).at("template")
    for name, body in raw_templates.items():
        try:
            templates[name] = parse_body(body)
        except ConfigError as e:
            raise e.at(name).at("template")

    raw_backups = raw.get("backup", [])
    if not isinstance(raw_backups, list):
        raise TypeMismatch("array", _type_name(raw_backups)).at("backup")
    backups = []
    for i, body in enumerate(raw_backups):
        try:
            backups.append(parse_body(body))
        except ConfigError as e:
            raise e.at(i).at("backup")

    return Config(templates=templates, backups=backups)


# ---------------------------------------------------------------------------
# Files
# ---------------------------------------------------------------------------

def _is_yaml(path: Path) -> bool:
    return path.suffix.lower() in (".yaml", ".yml")


def read_raw(path: str | Path) -> dict:
    """Read a TOML or YAML config file into a plain mapping."""
    path = Path(resolve_path(str(path)))
    try:
        with open(path, "rb") as f:
            if _is_yaml(path):
                raw = yaml.safe_load(f)
            else:
                raw = tomllib.load(f)
    except OSError as e:
        raise ConfigReadError(f"Failed to read {path}: {e.strerror or e}") from e
    except tomllib.TOMLDecodeError as e:
        raise ConfigSyntaxError(f"Failed to parse {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigSyntaxError(f"Failed to parse {path}: {e}") from e
    return raw if raw is not None else {}


def load_config(path: str | Path) -> Config:
    return parse_config(read_raw(path))


def append_backup(path: str | Path, repo: RepoAddress) -> bool:
    """Add ``repo`` to the job list in ``path`` unless it is already there.

    Returns True if the file was changed. A missing file is created.
    """
    path = Path(resolve_path(str(path)))
    raw: dict = {}
    if path.exists():
        raw = read_raw(path)
        config = parse_config(raw)
        for body in config.backups:
            if isinstance(body.repo, CombinedRepo):
                try:
                    if RepoAddress.parse(body.repo.location) == repo:
                        return False
                except ValueError:
                    continue
            elif isinstance(body.repo, SplitRepo):
                try:
                    if _repo_address(body.repo) == repo:
                        return False
                except ConfigError:
                    continue
    else:
        path.parent.mkdir(parents=True, exist_ok=True)

    if _is_yaml(path):
        raw.setdefault("backup", []).append({"repository": str(repo)})
        with open(path, "w") as f:
            yaml.safe_dump(raw, f, sort_keys=False)
        return True

    text = path.read_text() if path.exists() else ""
    if "backup" in raw and not _BACKUP_TABLE.search(text):
        raise InvalidValue(
            "Cannot append to an inline backup array, use [[backup]] tables"
        ).at("backup")
    if text and not text.endswith("\n"):
        text += "\n"
    if text:
        text += "\n"
    # JSON string escapes are valid TOML basic-string escapes
    text += f"[[backup]]\nrepository = {orjson.dumps(str(repo)).decode()}\n"
    path.write_text(text)
    return True
