from __future__ import annotations

"""Repository readiness aggregate: computation from scans, merging and manual approval."""

from collections.abc import Mapping
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from enum import Enum
from types import MappingProxyType

from .conditions import condition_holds, legacy_pass
from .errors import BusinessRuleViolationError, ValidationError
from .identifiers import RepoId, ScanRunId, TeamId, UserId
from .quests import QuestDefinition
from .scan_runs import ScanResult, ScanRunSummary


DEFAULT_MANUAL_APPROVAL_LEVEL = 3
MANUAL_APPROVAL_SCAN_RUN_ID = "manual_approval"
PERCENTAGE_FACTOR = 100


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


class ReadinessStatus(str, Enum):
    COMPLETE = "complete"
    INCOMPLETE = "incomplete"
    UNKNOWN = "unknown"


class CompletionSource(str, Enum):
    AUTOMATIC = "automatic"
    MANUAL = "manual"


@dataclass(frozen=True)
class ManualApproval:
    approved_by: UserId
    approved_at: datetime
    revoked_at: datetime | None = None

    @property
    def is_revoked(self) -> bool:
        return self.revoked_at is not None


@dataclass(frozen=True)
class QuestReadinessEntry:
    status: ReadinessStatus
    level: int
    last_seen_at: datetime
    completion_source: CompletionSource
    manual_approval: ManualApproval | None = None

    def __post_init__(self) -> None:
        if isinstance(self.level, bool) or not isinstance(self.level, int) or self.level < 1:
            raise ValidationError("Quest level must be at least 1")
        if self.completion_source is CompletionSource.MANUAL:
            if self.manual_approval is None:
                raise ValidationError("Manual approval metadata is required for manual completion source")
            if not self.manual_approval.is_revoked and self.status is not ReadinessStatus.COMPLETE:
                raise ValidationError("An active manual approval must be complete")
        elif self.manual_approval is not None:
            raise ValidationError("Automatic completion source cannot have manual approval metadata")

    @property
    def is_active_manual(self) -> bool:
        return (
            self.completion_source is CompletionSource.MANUAL
            and self.manual_approval is not None
            and not self.manual_approval.is_revoked
        )


def highest_satisfied_level(definition: QuestDefinition, result: ScanResult) -> int:
    """Return the highest satisfied level, or 0 when nothing holds."""

    if definition.is_legacy:
        return 1 if legacy_pass(result) else 0
    achieved = 0
    for quest_level in sorted(definition.levels, key=lambda item: item.level):
        if condition_holds(quest_level.condition, result):
            achieved = max(achieved, quest_level.level)
    return achieved


def compute_entry(definition: QuestDefinition, result: ScanResult, scanned_at: datetime) -> QuestReadinessEntry:
    achieved = highest_satisfied_level(definition, result)
    if achieved > 0:
        return QuestReadinessEntry(ReadinessStatus.COMPLETE, achieved, scanned_at, CompletionSource.AUTOMATIC)
    return QuestReadinessEntry(ReadinessStatus.INCOMPLETE, 1, scanned_at, CompletionSource.AUTOMATIC)


class RepoReadiness:
    """Latest-known readiness snapshot for one repository.

    The aggregate is not internally synchronized; callers serialize
    read-modify-write cycles per repository.
    """

    def __init__(
        self,
        *,
        repo_id: RepoId,
        team_id: TeamId,
        computed_from_scan_run_id: ScanRunId,
        updated_at: datetime,
        quests: Mapping[str, QuestReadinessEntry] | None = None,
    ) -> None:
        self._repo_id = repo_id
        self._team_id = team_id
        self._computed_from_scan_run_id = computed_from_scan_run_id
        self._updated_at = updated_at
        self._quests: dict[str, QuestReadinessEntry] = dict(quests or {})

    @classmethod
    def compute_from_scan_run(
        cls,
        summary: ScanRunSummary,
        catalog: Mapping[str, QuestDefinition],
        *,
        now: datetime | None = None,
    ) -> "RepoReadiness":
        """Fold one scan's raw results through the catalog into a fresh, automatic-only snapshot."""

        quests: dict[str, QuestReadinessEntry] = {}
        for quest_key, result in summary.quest_results.items():
            definition = catalog.get(quest_key)
            if definition is None:
                continue
            quests[quest_key] = compute_entry(definition, result, summary.scanned_at)
        return cls(
            repo_id=summary.repo_id,
            team_id=summary.team_id,
            computed_from_scan_run_id=summary.id,
            updated_at=now or _utc_now(),
            quests=quests,
        )

    @classmethod
    def create_empty(cls, repo_id: RepoId, team_id: TeamId, *, now: datetime | None = None) -> "RepoReadiness":
        return cls(
            repo_id=repo_id,
            team_id=team_id,
            computed_from_scan_run_id=ScanRunId(MANUAL_APPROVAL_SCAN_RUN_ID),
            updated_at=now or _utc_now(),
        )

    @classmethod
    def merge(cls, previous: "RepoReadiness | None", fresh: "RepoReadiness") -> "RepoReadiness":
        """Combine a fresh computation with the persisted snapshot.

        Active manual approvals always survive. Everything else follows the
        fresh scan; revoked approvals the scan no longer reports fall back to
        `unknown`.
        """

        if previous is None:
            return fresh

        merged: dict[str, QuestReadinessEntry] = {}
        for quest_key in [*previous.quests, *(key for key in fresh.quests if key not in previous.quests)]:
            old = previous.quests.get(quest_key)
            new = fresh.quests.get(quest_key)
            if old is not None and old.is_active_manual:
                merged[quest_key] = old
            elif new is not None:
                merged[quest_key] = new
            elif old is not None and old.completion_source is CompletionSource.MANUAL:
                merged[quest_key] = QuestReadinessEntry(
                    ReadinessStatus.UNKNOWN, old.level, old.last_seen_at, CompletionSource.AUTOMATIC
                )

        return cls(
            repo_id=fresh.repo_id,
            team_id=fresh.team_id,
            computed_from_scan_run_id=fresh.computed_from_scan_run_id,
            updated_at=fresh.updated_at,
            quests=merged,
        )

    @property
    def repo_id(self) -> RepoId:
        return self._repo_id

    @property
    def team_id(self) -> TeamId:
        return self._team_id

    @property
    def computed_from_scan_run_id(self) -> ScanRunId:
        return self._computed_from_scan_run_id

    @property
    def updated_at(self) -> datetime:
        return self._updated_at

    @property
    def quests(self) -> Mapping[str, QuestReadinessEntry]:
        return MappingProxyType(self._quests)

    def get_quest_status(self, quest_key: str) -> QuestReadinessEntry | None:
        return self._quests.get(quest_key)

    def get_completed_quests(self) -> list[str]:
        return [key for key, entry in self._quests.items() if entry.status is ReadinessStatus.COMPLETE]

    def get_incomplete_quests(self) -> list[str]:
        return [key for key, entry in self._quests.items() if entry.status is ReadinessStatus.INCOMPLETE]

    def get_total_quests(self) -> int:
        return len(self._quests)

    def get_completion_percentage(self) -> int:
        """Whole-number percentage, halves rounded up (1 of 8 is 13)."""

        total = self.get_total_quests()
        if total == 0:
            return 0
        completed = len(self.get_completed_quests())
        return (2 * completed * PERCENTAGE_FACTOR + total) // (2 * total)

    def approve_quest_manually(
        self,
        quest_key: str,
        approved_by: UserId,
        level: int = DEFAULT_MANUAL_APPROVAL_LEVEL,
        *,
        now: datetime | None = None,
    ) -> QuestReadinessEntry:
        """Mark a quest complete on a human's say-so, replacing whatever was there."""

        if not isinstance(quest_key, str) or not quest_key.strip():
            raise ValidationError("Quest key cannot be empty")
        moment = now or _utc_now()
        entry = QuestReadinessEntry(
            ReadinessStatus.COMPLETE,
            level,
            moment,
            CompletionSource.MANUAL,
            ManualApproval(approved_by=approved_by, approved_at=moment),
        )
        self._quests[quest_key.strip()] = entry
        self._updated_at = moment
        return entry

    def revoke_manual_approval(self, quest_key: str, *, now: datetime | None = None) -> QuestReadinessEntry:
        """Stamp `revoked_at` on an active approval; status and level stay until the next merge."""

        if not isinstance(quest_key, str) or not quest_key.strip():
            raise ValidationError("Quest key cannot be empty")
        quest_key = quest_key.strip()
        entry = self._quests.get(quest_key)
        if entry is None or entry.completion_source is not CompletionSource.MANUAL or entry.manual_approval is None:
            raise BusinessRuleViolationError("Cannot revoke non-manually approved quest", quest_key=quest_key)
        if entry.manual_approval.is_revoked:
            raise BusinessRuleViolationError("Manual approval already revoked", quest_key=quest_key)
        moment = now or _utc_now()
        revoked = replace(entry, manual_approval=replace(entry.manual_approval, revoked_at=moment))
        self._quests[quest_key] = revoked
        self._updated_at = moment
        return revoked
