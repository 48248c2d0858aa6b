"""Repository specifiers: parse and format borg repository locations.

Accepted forms::

    /path/to/repo            path/to/repo           ~/path/to/repo
    file:///path/to/repo     file://~/path/to/repo
    ssh://user@host:port/path/to/repo
    ssh://user@host:port/./path/to/repo
    ssh://user@host:port/~/path/to/repo
    ssh://host/path/to/repo

Deprecated, converted to ``ssh://``::

    user@host:/path/to/repo
    host:path/to/repo
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from borrg.models import Secret

logger = logging.getLogger(__name__)

_SCHEME = re.compile(r"^[A-Za-z][A-Za-z0-9+.-]*://")
_LOCAL_PREFIXES = ("/", ".", "~")


@dataclass(frozen=True)
class Remote:
    """The ``[user@]host[:port]`` part of a remote location."""
    host: str
    user: str | None = None
    port: int | None = None

    @classmethod
    def parse(cls, text: str) -> "Remote":
        user = None
        port = None
        rest = text
        if "@" in rest:
            user, _, rest = rest.rpartition("@")
        if ":" in rest:
            rest, _, port_text = rest.partition(":")
            if not port_text.isdigit() or int(port_text) > 65535:
                raise ValueError(
                    f"Invalid remote {text!r}: failed to parse port {port_text!r}"
                )
            port = int(port_text)
        if not rest:
            raise ValueError(f"Invalid remote {text!r}: missing host")
        return cls(host=rest, user=user, port=port)

    def __str__(self) -> str:
        out = f"{self.user}@{self.host}" if self.user is not None else self.host
        if self.port is not None:
            out += f":{self.port}"
        return out


@dataclass(frozen=True)
class RepoAddress:
    """A borg repository location, optionally with the secret that unlocks it.

    Two addresses naming the same place compare equal regardless of how
    their passphrase is supplied.
    """
    path: str
    remote: Remote | None = None
    passphrase: Secret | None = field(default=None, compare=False, repr=False)

    @property
    def is_remote(self) -> bool:
        return self.remote is not None

    @property
    def is_relative(self) -> bool:
        return not self.path.startswith("/")

    @classmethod
    def parse(cls, text: str) -> "RepoAddress":
        if text.startswith("file://"):
            return cls(path=text[len("file://"):])

        if text.startswith("ssh://"):
            rest = text[len("ssh://"):]
            remote_text, sep, path = rest.partition("/")
            if not sep:
                raise ValueError(
                    f"Invalid repository specifier {text!r} (no '/' after 'ssh://')"
                )
            remote = Remote.parse(remote_text)
            if not path.startswith((".", "~")):
                path = "/" + path
            return cls(path=path, remote=remote)

        if _SCHEME.match(text):
            scheme = text.split("://", 1)[0]
            raise ValueError(f"Unsupported repository scheme {scheme!r} in {text!r}")

        if ":" in text and not text.startswith(_LOCAL_PREFIXES):
            remote_text, _, path = text.partition(":")
            logger.warning(
                "Repository specifier without protocol ('ssh://') is deprecated "
                "and will be removed in borg 2. Please use 'ssh://%s/%s' instead. "
                "borrg still accepts the old format by converting it.",
                remote_text, path.lstrip("/"),
            )
            remote = Remote.parse(remote_text)
            # host:repo is relative to the remote home directory
            if not path.startswith(("/", ".", "~")):
                path = "./" + path
            return cls(path=path, remote=remote)

        return cls(path=text)

    def with_passphrase(self, passphrase: "Secret | None") -> "RepoAddress":
        return replace(self, passphrase=passphrase)

    def __str__(self) -> str:
        if self.remote is None:
            if _SCHEME.match(self.path) or (
                ":" in self.path and not self.path.startswith(_LOCAL_PREFIXES)
            ):
                return f"file://{self.path}"
            return self.path
        sep = "/" if self.is_relative else ""
        return f"ssh://{self.remote}{sep}{self.path}"
