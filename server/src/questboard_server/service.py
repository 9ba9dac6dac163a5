from __future__ import annotations

"""Readiness service: scan ingestion, snapshot queries and manual approvals."""

import hashlib
import threading
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from jsonschema import Draft202012Validator

from .errors import BusinessRuleViolationError, EntityNotFoundError
from .identifiers import CommitSha, RepoId, TeamId, UserId
from .paths import ensure_home_dirs, server_home
from .quests import QuestDefinition, QuestRepository
from .readiness import DEFAULT_MANUAL_APPROVAL_LEVEL, RepoReadiness
from .reports import extract_quest_results, extract_repo_metadata, load_report_validator, validate_report
from .scan_runs import ScanRun
from .store import (
    JsonReadinessStore,
    JsonScanRunStore,
    JsonTeamStore,
    entry_to_record,
    readiness_to_record,
    scan_run_to_record,
    team_to_record,
)
from .teams import TeamRepoResolver, generate_team_id
from .telemetry import TelemetryLogger, sanitize_actor_id


def readiness_view(readiness: RepoReadiness) -> dict[str, Any]:
    """API/CLI shape of a snapshot: the stored record plus a completion summary."""

    record = readiness_to_record(readiness)
    record.pop("state_schema_version", None)
    record["summary"] = {
        "total_quests": readiness.get_total_quests(),
        "completed_quests": len(readiness.get_completed_quests()),
        "completion_percentage": readiness.get_completion_percentage(),
    }
    return record


@dataclass
class ReadinessService:
    """Stateful local service; every snapshot write goes through a per-repo lock."""

    repo_root: Path
    home: Path
    dirs: dict[str, Path]
    quests: QuestRepository
    telemetry: TelemetryLogger
    readiness_store: JsonReadinessStore
    team_store: JsonTeamStore
    scan_run_store: JsonScanRunStore
    report_validator: Draft202012Validator
    _locks: dict[str, threading.Lock] = field(default_factory=dict, repr=False)
    _locks_guard: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @classmethod
    def create(cls, repo_root: Path) -> "ReadinessService":
        """Instantiate a service over `$QUESTBOARD_HOME` and log startup."""

        home = server_home()
        dirs = ensure_home_dirs(home)
        service = cls(
            repo_root=repo_root,
            home=home,
            dirs=dirs,
            quests=QuestRepository.from_repo_root(repo_root),
            telemetry=TelemetryLogger(events_path=dirs["telemetry"] / "events.jsonl", repo_root=repo_root),
            readiness_store=JsonReadinessStore(dirs["readiness"]),
            team_store=JsonTeamStore(dirs["state"] / "teams.json"),
            scan_run_store=JsonScanRunStore(dirs["scan_runs"]),
            report_validator=load_report_validator(repo_root),
        )
        service.telemetry.log_event(
            "server.started",
            actor="system",
            actor_id="system:questboard",
            source="cli",
            data={"home_path_hash": hashlib.sha256(str(home).encode("utf-8")).hexdigest()},
        )
        return service

    def _lock(self, key: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    def _repo_lock(self, repo_id: RepoId) -> threading.Lock:
        return self._lock(f"repo:{repo_id.value}")

    def _emit_event(
        self,
        event_type: str,
        *,
        actor: str,
        actor_id: str | None,
        source: str,
        data: dict[str, Any],
        trace_id: str | None = None,
    ) -> None:
        self.telemetry.log_event(
            event_type,
            actor=actor,
            actor_id=sanitize_actor_id(actor_id),
            source=source,
            data=data,
            trace_id=trace_id,
        )

    def validate_catalog(self) -> list[dict[str, str]]:
        return self.quests.lint()

    def list_quests(self) -> list[dict[str, Any]]:
        return [quest.to_dict() for quest in self.quests.find_active()]

    def get_quest(self, quest_key: str) -> dict[str, Any]:
        quest = self.quests.find_by_key(quest_key)
        if quest is None:
            raise EntityNotFoundError("Quest", quest_key)
        return quest.to_dict()

    def quest_catalog(self) -> dict[str, QuestDefinition]:
        """Engine catalog: active quests that can be detected from scans."""

        return {
            quest.key: quest.definition()
            for quest in self.quests.find_active()
            if quest.detection_type.can_auto_detect()
        }

    def ingest_scan(
        self,
        report: Mapping[str, Any],
        *,
        source: str = "cli",
        actor: str = "ci",
        actor_id: str | None = None,
        trace_id: str | None = None,
    ) -> dict[str, Any]:
        """Validate a report, store its scan run and fold it into the repo's snapshot."""

        validate_report(report, self.report_validator)
        metadata = extract_repo_metadata(report)
        quest_results = extract_quest_results(report)

        catalog = self.quest_catalog()
        team_id = generate_team_id(metadata.owner)
        with self._lock(f"team:{team_id.value}"):
            team, repo, team_changed = TeamRepoResolver(self.team_store).resolve_from_metadata(metadata)
            scan_run = ScanRun(
                id=ScanRun.make_id(metadata.provider_run_id, metadata.scanned_at),
                team_id=team.id,
                repo_id=repo.id,
                commit_sha=CommitSha(metadata.commit_sha),
                ref_name=metadata.ref_name,
                provider_run_id=metadata.provider_run_id,
                run_url=metadata.run_url,
                workflow_version=metadata.workflow_version,
                scanned_at=metadata.scanned_at,
                quest_results=quest_results,
            )
            if team_changed:
                self.team_store.save(team)

        with self._repo_lock(repo.id):
            self.scan_run_store.save(scan_run)
            fresh = RepoReadiness.compute_from_scan_run(scan_run.summary(), catalog)
            previous = self.readiness_store.find_by_repo_id(repo.id)
            merged = self.readiness_store.save(RepoReadiness.merge(previous, fresh))

        summary = {
            "total_quests": scan_run.get_total_quests(),
            "passed_quests": len(scan_run.get_passed_quests()),
            "failed_quests": len(scan_run.get_failed_quests()),
        }
        self._emit_event(
            "scan.ingested",
            actor=actor,
            actor_id=actor_id or f"{source}:unknown",
            source=source,
            trace_id=trace_id,
            data={
                "scan_run_id": scan_run.id.value,
                "repo_id": repo.id.value,
                "team_id": team.id.value,
                "commit_sha": scan_run.commit_sha.value,
                **summary,
            },
        )
        self._emit_event(
            "readiness.computed",
            actor="system",
            actor_id="system:questboard",
            source=source,
            trace_id=trace_id,
            data={
                "repo_id": repo.id.value,
                "scan_run_id": scan_run.id.value,
                "total_quests": merged.get_total_quests(),
                "completion_percentage": merged.get_completion_percentage(),
                "ignored_quest_keys": sorted(key for key in quest_results if key not in catalog),
            },
        )
        return {
            "scan_run_id": scan_run.id.value,
            "team_id": team.id.value,
            "repo_id": repo.id.value,
            "summary": summary,
            "readiness": readiness_view(merged),
        }

    def get_readiness(self, repo_id: str) -> dict[str, Any]:
        readiness = self.readiness_store.find_by_repo_id(RepoId(repo_id))
        if readiness is None:
            raise EntityNotFoundError("RepoReadiness", repo_id)
        return readiness_view(readiness)

    def approve_quest(
        self,
        repo_id: str,
        team_id: str,
        quest_key: str,
        approved_by: str,
        level: int | None = None,
        *,
        source: str = "cli",
        trace_id: str | None = None,
    ) -> dict[str, Any]:
        """Mark a quest complete on a human's authority, creating the snapshot if needed."""

        repo = RepoId(repo_id)
        team = self.team_store.find_by_id(TeamId(team_id))
        if team is None:
            raise EntityNotFoundError("Team", team_id)
        if not team.has_repo(repo):
            raise EntityNotFoundError("Repo", repo_id)
        quest = self.quests.find_by_key(quest_key)
        if quest is None:
            raise EntityNotFoundError("Quest", quest_key)
        if not quest.can_be_manually_approved():
            raise BusinessRuleViolationError(
                f"Quest {quest.key} cannot be manually approved (detection type: {quest.detection_type.value})",
                quest_key=quest.key,
            )
        user = UserId(approved_by)
        approved_level = DEFAULT_MANUAL_APPROVAL_LEVEL if level is None else level

        with self._repo_lock(repo):
            readiness = self.readiness_store.find_by_repo_id(repo) or RepoReadiness.create_empty(repo, team.id)
            entry = readiness.approve_quest_manually(quest.key, user, approved_level)
            self.readiness_store.save(readiness)

        self._emit_event(
            "quest.approved",
            actor="human",
            actor_id=user.value,
            source=source,
            trace_id=trace_id,
            data={"repo_id": repo.value, "team_id": team.id.value, "quest_key": quest.key, "level": entry.level},
        )
        return {"repo_id": repo.value, "quest_key": quest.key, "entry": entry_to_record(entry)}

    def revoke_quest_approval(
        self,
        repo_id: str,
        quest_key: str,
        *,
        actor_id: str | None = None,
        source: str = "cli",
        trace_id: str | None = None,
    ) -> dict[str, Any]:
        repo = RepoId(repo_id)
        with self._repo_lock(repo):
            readiness = self.readiness_store.find_by_repo_id(repo)
            if readiness is None:
                raise EntityNotFoundError("RepoReadiness", repo_id)
            entry = readiness.revoke_manual_approval(quest_key)
            self.readiness_store.save(readiness)
        quest_key = quest_key.strip()

        self._emit_event(
            "quest.approval_revoked",
            actor="human",
            actor_id=actor_id or f"{source}:unknown",
            source=source,
            trace_id=trace_id,
            data={"repo_id": repo.value, "quest_key": quest_key},
        )
        return {"repo_id": repo.value, "quest_key": quest_key, "entry": entry_to_record(entry)}

    def list_scan_runs(self, repo_id: str) -> list[dict[str, Any]]:
        """Stored scan runs for a repo, newest first."""

        runs = self.scan_run_store.list_for_repo(RepoId(repo_id))
        runs.sort(key=lambda run: run.scanned_at, reverse=True)
        return [scan_run_to_record(run) for run in runs]

    def get_team(self, team_id: str) -> dict[str, Any]:
        team = self.team_store.find_by_id(TeamId(team_id))
        if team is None:
            raise EntityNotFoundError("Team", team_id)
        return team_to_record(team)

    def telemetry_status(self) -> dict[str, Any]:
        return self.telemetry.status()
