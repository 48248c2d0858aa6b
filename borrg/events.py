"""Decode borg's ``--log-json`` stderr stream into typed events.

Every line is decoded on its own and decoding never stops the stream: a
line that is not JSON, has an unknown ``type`` or lacks a field its type
needs comes back as ``Other(line)``.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import IO, Any, Iterable, Iterator, Union

import orjson

from borrg.util import format_bytes

logger = logging.getLogger(__name__)


class DecodeError(ValueError):
    """A JSON line that cannot become a typed event."""


@dataclass(frozen=True)
class ArchiveProgress:
    nfiles: int = 0
    compressed_size: int = 0
    deduplicated_size: int = 0
    original_size: int = 0
    path: str = ""
    time: datetime | None = None
    finished: bool = False

    @property
    def stats(self) -> str:
        return (
            f"O {format_bytes(self.original_size)} "
            f"C {format_bytes(self.compressed_size)} "
            f"D {format_bytes(self.deduplicated_size)} "
            f"N {self.nfiles}"
        )

    def __str__(self) -> str:
        return f"{self.stats} {self.path}"


@dataclass(frozen=True)
class ProgressMessage:
    message: str | None = None
    finished: bool | None = None
    msgid: str | None = None
    operation: int | None = None
    time: datetime | None = None

    def __str__(self) -> str:
        return self.message or ""


@dataclass(frozen=True)
class ProgressPercent:
    current: int
    total: int
    finished: bool = False
    message: str = ""
    msgid: str = ""
    operation: int = 0
    time: datetime | None = None

    def __str__(self) -> str:
        return self.message


@dataclass(frozen=True)
class LogMessage:
    message: str
    name: str | None = None
    level: int | None = None  # a logging module level
    msgid: str | None = None
    time: datetime | None = None

    def __str__(self) -> str:
        return self.message


@dataclass(frozen=True)
class FileStatus:
    status: str
    path: str = ""

    def __str__(self) -> str:
        return f"{self.status} {self.path}"


@dataclass(frozen=True)
class Prompt:
    prompt: str
    msgid: str

    def __str__(self) -> str:
        return self.prompt


@dataclass(frozen=True)
class Other:
    """A line that could not be decoded, kept verbatim."""
    line: str

    def __str__(self) -> str:
        return self.line


@dataclass(frozen=True)
class Error:
    """A failure belonging to one job: read error, spawn error, bad exit."""
    cause: BaseException | str

    def __str__(self) -> str:
        return str(self.cause)


Event = Union[
    ArchiveProgress, ProgressMessage, ProgressPercent, LogMessage,
    FileStatus, Prompt, Other, Error,
]


# ---------------------------------------------------------------------------
# Field accessors: each returns None when the field is absent or mistyped.
# ---------------------------------------------------------------------------

def _int(obj: dict, key: str) -> int | None:
    value = obj.get(key)
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        return None
    return value


def _str(obj: dict, key: str) -> str | None:
    value = obj.get(key)
    return value if isinstance(value, str) else None


def _bool(obj: dict, key: str) -> bool | None:
    value = obj.get(key)
    return value if isinstance(value, bool) else None


def _time(obj: dict) -> datetime | None:
    value = obj.get("time")
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    try:
        return datetime.fromtimestamp(value, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


_LEVELS_LOWER = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}
_LEVELS_UPPER = {name.upper(): level for name, level in _LEVELS_LOWER.items()}


def _level(obj: dict) -> int | None:
    for key, table in (("level", _LEVELS_LOWER), ("levelname", _LEVELS_UPPER)):
        value = _str(obj, key)
        if value is None:
            continue
        if value in table:
            return table[value]
        logger.warning("unknown log level: %s", value)
    return None


def _required(value: Any, type_: str, key: str) -> Any:
    if value is None:
        raise DecodeError(f"{type_}: missing or invalid {key!r}")
    return value


def event_from_json(obj: Any) -> Event:
    """Build a typed event from one decoded JSON value.

    Raises DecodeError for a non-object, an unknown ``type`` or a missing
    required field. Optional fields fall back to defaults.
    """
    if not isinstance(obj, dict):
        raise DecodeError("not a JSON object")
    type_ = obj.get("type")
    if not isinstance(type_, str):
        raise DecodeError("no type")

    if type_ == "archive_progress":
        return ArchiveProgress(
            nfiles=_int(obj, "nfiles") or 0,
            compressed_size=_int(obj, "compressed_size") or 0,
            deduplicated_size=_int(obj, "deduplicated_size") or 0,
            original_size=_int(obj, "original_size") or 0,
            path=_str(obj, "path") or "",
            time=_time(obj),
            finished=_bool(obj, "finished") or False,
        )
    if type_ == "progress_message":
        return ProgressMessage(
            message=_str(obj, "message"),
            finished=_bool(obj, "finished"),
            msgid=_str(obj, "msgid"),
            operation=_int(obj, "operation"),
            time=_time(obj),
        )
    if type_ == "progress_percent":
        return ProgressPercent(
            current=_required(_int(obj, "current"), type_, "current"),
            total=_required(_int(obj, "total"), type_, "total"),
            finished=_bool(obj, "finished") or False,
            message=_str(obj, "message") or "",
            msgid=_str(obj, "msgid") or "",
            operation=_int(obj, "operation") or 0,
            time=_time(obj),
        )
    if type_ == "log_message":
        return LogMessage(
            message=_required(_str(obj, "message"), type_, "message"),
            name=_str(obj, "name"),
            level=_level(obj),
            msgid=_str(obj, "msgid"),
            time=_time(obj),
        )
    if type_ == "file_status":
        return FileStatus(
            status=_required(_str(obj, "status"), type_, "status"),
            path=_str(obj, "path") or "",
        )
    if type_ == "question_prompt":
        return Prompt(
            prompt=_required(_str(obj, "message"), type_, "message"),
            msgid=_required(_str(obj, "msgid"), type_, "msgid"),
        )
    raise DecodeError(f"Unknown event type: {type_}")


def decode_line(line: str) -> Event:
    """Decode one line of borg output. Never raises."""
    try:
        obj = orjson.loads(line)
    except orjson.JSONDecodeError as e:
        logger.debug("Failed to parse JSON: %s", e)
        return Other(line)
    try:
        return event_from_json(obj)
    except DecodeError as e:
        logger.debug("Failed to parse event: %s", e)
        return Other(line)


def iter_events(stream: IO[bytes] | IO[str] | Iterable[bytes | str]) -> Iterator[Event]:
    """Lazily decode a line stream until it closes.

    The stream is consumed, so a second iteration only sees what is left.
    A read failure is reported once as an ``Error`` event and ends the
    iteration.
    """
    lines = iter(stream)
    while True:
        try:
            raw = next(lines)
        except StopIteration:
            return
        except OSError as e:
            yield Error(e)
            return
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", errors="replace")
        line = raw.rstrip("\r\n")
        if not line.strip():
            continue
        yield decode_line(line)
