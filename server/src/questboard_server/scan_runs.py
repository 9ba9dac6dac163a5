from __future__ import annotations

"""Scan run entity, raw per-quest results and the summary consumed by the engine."""

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Any

from .errors import ValidationError
from .identifiers import CommitSha, RepoId, ScanRunId, TeamId


PASS_FLAGS = ("passed", "present", "available", "meets_threshold")


@dataclass(frozen=True, eq=False)
class ScanResult:
    """Opaque, read-only bag of values reported for one quest."""

    data: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not isinstance(self.data, Mapping):
            raise ValidationError("ScanResult data must be a mapping")
        object.__setattr__(self, "data", MappingProxyType(dict(self.data)))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ScanResult):
            return NotImplemented
        return dict(self.data) == dict(other.data)

    def flag(self, key: str) -> bool:
        """True only for an explicit boolean `True`."""

        return self.data.get(key) is True

    def number(self, key: str) -> float | None:
        value = self.data.get(key)
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return None
        return value

    def indicates_pass(self) -> bool:
        if any(self.flag(name) for name in PASS_FLAGS):
            return True
        count = self.number("count")
        return count is not None and count > 0

    def to_dict(self) -> dict[str, Any]:
        return dict(self.data)


@dataclass(frozen=True)
class ScanRunSummary:
    """The engine's only view of what happened in one scan."""

    id: ScanRunId
    repo_id: RepoId
    team_id: TeamId
    scanned_at: datetime
    quest_results: Mapping[str, ScanResult]

    def __post_init__(self) -> None:
        object.__setattr__(self, "quest_results", MappingProxyType(dict(self.quest_results)))


def _require_text(value: Any, label: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{label} cannot be empty")
    return value.strip()


@dataclass(frozen=True)
class ScanRun:
    id: ScanRunId
    team_id: TeamId
    repo_id: RepoId
    commit_sha: CommitSha
    ref_name: str
    provider_run_id: str
    run_url: str
    workflow_version: str
    scanned_at: datetime
    quest_results: Mapping[str, ScanResult]

    def __post_init__(self) -> None:
        object.__setattr__(self, "ref_name", _require_text(self.ref_name, "Ref name"))
        object.__setattr__(self, "provider_run_id", _require_text(self.provider_run_id, "Provider run ID"))
        object.__setattr__(self, "run_url", _require_text(self.run_url, "Run URL"))
        object.__setattr__(self, "workflow_version", _require_text(self.workflow_version, "Workflow version"))
        if self.scanned_at.tzinfo is None:
            raise ValidationError("scanned_at must be timezone-aware")
        object.__setattr__(self, "quest_results", MappingProxyType(dict(self.quest_results)))

    @staticmethod
    def make_id(provider_run_id: str, scanned_at: datetime) -> ScanRunId:
        """Derive a stable id so that re-ingesting a report targets the same run."""

        millis = int(scanned_at.timestamp() * 1000)
        return ScanRunId(f"scanrun_{provider_run_id.strip()}_{millis}")

    def summary(self) -> ScanRunSummary:
        return ScanRunSummary(
            id=self.id,
            repo_id=self.repo_id,
            team_id=self.team_id,
            scanned_at=self.scanned_at,
            quest_results=self.quest_results,
        )

    def get_total_quests(self) -> int:
        return len(self.quest_results)

    def get_passed_quests(self) -> list[str]:
        return sorted(key for key, result in self.quest_results.items() if result.indicates_pass())

    def get_failed_quests(self) -> list[str]:
        return sorted(key for key, result in self.quest_results.items() if not result.indicates_pass())
