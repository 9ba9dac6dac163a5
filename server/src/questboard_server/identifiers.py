from __future__ import annotations

"""Identifier value objects validated at construction time."""

import re
from dataclasses import dataclass
from typing import ClassVar
from urllib.parse import urlparse

from .errors import ValidationError


COMMIT_SHA_PATTERN = re.compile(r"^[0-9a-fA-F]{7,40}$")
SLUG_INVALID_CHARS = re.compile(r"[^a-z0-9._-]+")


def slugify(value: str) -> str:
    """Lowercase and replace characters outside `[a-z0-9._-]` with `-`."""

    return SLUG_INVALID_CHARS.sub("-", value.strip().lower()).strip("-")


@dataclass(frozen=True)
class Identifier:
    value: str

    label: ClassVar[str] = "Identifier"

    def __post_init__(self) -> None:
        if not isinstance(self.value, str) or not self.value.strip():
            raise ValidationError(f"{self.label} cannot be empty")
        object.__setattr__(self, "value", self.value.strip())

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class TeamId(Identifier):
    label: ClassVar[str] = "TeamId"


@dataclass(frozen=True)
class RepoId(Identifier):
    label: ClassVar[str] = "RepoId"


@dataclass(frozen=True)
class UserId(Identifier):
    label: ClassVar[str] = "UserId"


@dataclass(frozen=True)
class ScanRunId(Identifier):
    label: ClassVar[str] = "ScanRunId"


@dataclass(frozen=True)
class CommitSha(Identifier):
    label: ClassVar[str] = "CommitSha"

    def __post_init__(self) -> None:
        super().__post_init__()
        if not COMMIT_SHA_PATTERN.match(self.value):
            raise ValidationError("CommitSha must be 7-40 hexadecimal characters")


@dataclass(frozen=True)
class RepoFullName(Identifier):
    label: ClassVar[str] = "RepoFullName"

    def __post_init__(self) -> None:
        super().__post_init__()
        parts = self.value.split("/")
        if len(parts) != 2 or not parts[0] or not parts[1]:
            raise ValidationError('RepoFullName must be in format "owner/name"')

    @property
    def owner(self) -> str:
        return self.value.split("/")[0]

    @property
    def name(self) -> str:
        return self.value.split("/")[1]


@dataclass(frozen=True)
class RepoUrl(Identifier):
    label: ClassVar[str] = "RepoUrl"

    def __post_init__(self) -> None:
        super().__post_init__()
        parsed = urlparse(self.value)
        if parsed.scheme not in {"http", "https"}:
            raise ValidationError("RepoUrl must use http or https protocol")
        if not parsed.netloc:
            raise ValidationError("RepoUrl must be a valid URL")
