from __future__ import annotations

"""JSON-file persistence for teams, scan runs and readiness snapshots.

Domain objects work with mappings and value objects; the record helpers here
are the only place that knows the on-disk shape.
"""

import json
import re
import threading
import time
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from .errors import ValidationError
from .identifiers import CommitSha, RepoFullName, RepoId, RepoUrl, ScanRunId, TeamId, UserId
from .readiness import CompletionSource, ManualApproval, QuestReadinessEntry, ReadinessStatus, RepoReadiness
from .scan_runs import ScanResult, ScanRun
from .teams import Repo, Team


STATE_SCHEMA_VERSION = "0.1"
STORAGE_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,199}$")


def _load_json(path: Path, default: Any) -> Any:
    if not path.exists():
        return default
    return json.loads(path.read_text(encoding="utf-8"))


def _save_json(path: Path, value: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = path.parent / f".{path.name}.tmp"
    payload = json.dumps(value, indent=2)
    for attempt in range(5):
        temp_path.write_text(payload, encoding="utf-8")
        try:
            temp_path.replace(path)
            return
        except PermissionError:
            if attempt == 4:
                raise
            # On Windows, AV/indexers can briefly lock newly-written temp files.
            time.sleep(0.02 * (attempt + 1))


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse_dt(value: Any) -> datetime:
    if not isinstance(value, str):
        raise ValidationError("Stored timestamp must be an ISO 8601 string")
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        raise ValidationError(f"Stored timestamp is not ISO 8601: {value!r}") from None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed


def _storage_name(identifier: str) -> str:
    if not STORAGE_ID_PATTERN.match(identifier):
        raise ValidationError(f"Identifier is not usable as a storage key: {identifier!r}")
    return identifier


def entry_to_record(entry: QuestReadinessEntry) -> dict[str, Any]:
    record: dict[str, Any] = {
        "status": entry.status.value,
        "level": entry.level,
        "last_seen_at": _iso(entry.last_seen_at),
        "completion_source": entry.completion_source.value,
    }
    if entry.manual_approval is not None:
        record["manual_approval"] = {
            "approved_by": entry.manual_approval.approved_by.value,
            "approved_at": _iso(entry.manual_approval.approved_at),
            "revoked_at": _iso(entry.manual_approval.revoked_at),
        }
    return record


def entry_from_record(record: dict[str, Any]) -> QuestReadinessEntry:
    approval_record = record.get("manual_approval")
    approval = None
    if isinstance(approval_record, dict):
        revoked_at = approval_record.get("revoked_at")
        approval = ManualApproval(
            approved_by=UserId(approval_record.get("approved_by", "")),
            approved_at=_parse_dt(approval_record.get("approved_at")),
            revoked_at=_parse_dt(revoked_at) if revoked_at else None,
        )
    try:
        status = ReadinessStatus(record.get("status"))
        # Records written before manual approval existed carry no source.
        source = CompletionSource(record.get("completion_source", CompletionSource.AUTOMATIC.value))
    except ValueError as exc:
        raise ValidationError(f"Invalid stored readiness entry: {exc}") from None
    return QuestReadinessEntry(
        status=status,
        level=record.get("level"),
        last_seen_at=_parse_dt(record.get("last_seen_at")),
        completion_source=source,
        manual_approval=approval,
    )


def readiness_to_record(readiness: RepoReadiness) -> dict[str, Any]:
    return {
        "state_schema_version": STATE_SCHEMA_VERSION,
        "repo_id": readiness.repo_id.value,
        "team_id": readiness.team_id.value,
        "computed_from_scan_run_id": readiness.computed_from_scan_run_id.value,
        "updated_at": _iso(readiness.updated_at),
        "quests": {key: entry_to_record(entry) for key, entry in readiness.quests.items()},
    }


def readiness_from_record(record: dict[str, Any]) -> RepoReadiness:
    quests = record.get("quests") or {}
    return RepoReadiness(
        repo_id=RepoId(record.get("repo_id", "")),
        team_id=TeamId(record.get("team_id", "")),
        computed_from_scan_run_id=ScanRunId(record.get("computed_from_scan_run_id", "")),
        updated_at=_parse_dt(record.get("updated_at")),
        quests={key: entry_from_record(value) for key, value in quests.items()},
    )


def repo_to_record(repo: Repo) -> dict[str, Any]:
    return {
        "id": repo.id.value,
        "team_id": repo.team_id.value,
        "full_name": repo.full_name.value,
        "url": repo.url.value,
        "default_branch": repo.default_branch,
        "provider": repo.provider,
        "archived": repo.archived,
        "primary_language": repo.primary_language,
        "created_at": _iso(repo.created_at),
    }


def repo_from_record(record: dict[str, Any]) -> Repo:
    return Repo(
        id=RepoId(record.get("id", "")),
        team_id=TeamId(record.get("team_id", "")),
        full_name=RepoFullName(record.get("full_name", "")),
        url=RepoUrl(record.get("url", "")),
        default_branch=record.get("default_branch", ""),
        provider=record.get("provider", "github"),
        archived=bool(record.get("archived", False)),
        primary_language=record.get("primary_language"),
        created_at=_parse_dt(record.get("created_at")),
    )


def team_to_record(team: Team) -> dict[str, Any]:
    return {
        "id": team.id.value,
        "name": team.name,
        "slug": team.slug,
        "repos": [repo_to_record(repo) for repo in team.repos],
        "created_at": _iso(team.created_at),
        "updated_at": _iso(team.updated_at),
    }


def team_from_record(record: dict[str, Any]) -> Team:
    return Team(
        id=TeamId(record.get("id", "")),
        name=record.get("name", ""),
        slug=record.get("slug", ""),
        repos=[repo_from_record(item) for item in record.get("repos", [])],
        created_at=_parse_dt(record.get("created_at")),
        updated_at=_parse_dt(record.get("updated_at")),
    )


def scan_run_to_record(scan_run: ScanRun) -> dict[str, Any]:
    return {
        "id": scan_run.id.value,
        "team_id": scan_run.team_id.value,
        "repo_id": scan_run.repo_id.value,
        "commit_sha": scan_run.commit_sha.value,
        "ref_name": scan_run.ref_name,
        "provider_run_id": scan_run.provider_run_id,
        "run_url": scan_run.run_url,
        "workflow_version": scan_run.workflow_version,
        "scanned_at": _iso(scan_run.scanned_at),
        "quest_results": {key: result.to_dict() for key, result in scan_run.quest_results.items()},
    }


def scan_run_from_record(record: dict[str, Any]) -> ScanRun:
    return ScanRun(
        id=ScanRunId(record.get("id", "")),
        team_id=TeamId(record.get("team_id", "")),
        repo_id=RepoId(record.get("repo_id", "")),
        commit_sha=CommitSha(record.get("commit_sha", "")),
        ref_name=record.get("ref_name", ""),
        provider_run_id=record.get("provider_run_id", ""),
        run_url=record.get("run_url", ""),
        workflow_version=record.get("workflow_version", ""),
        scanned_at=_parse_dt(record.get("scanned_at")),
        quest_results={key: ScanResult(value) for key, value in (record.get("quest_results") or {}).items()},
    )


class JsonReadinessStore:
    """One `<repo_id>.json` document per repository holding its latest snapshot."""

    def __init__(self, root: Path) -> None:
        self.root = root

    def _path(self, repo_id: RepoId) -> Path:
        return self.root / f"{_storage_name(repo_id.value)}.json"

    def find_by_repo_id(self, repo_id: RepoId) -> RepoReadiness | None:
        record = _load_json(self._path(repo_id), None)
        if not isinstance(record, dict):
            return None
        return readiness_from_record(record)

    def save(self, readiness: RepoReadiness) -> RepoReadiness:
        _save_json(self._path(readiness.repo_id), readiness_to_record(readiness))
        return readiness


class JsonTeamStore:
    """All teams, with their nested repos, in a single `teams.json` document."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._write_lock = threading.Lock()

    def _load(self) -> dict[str, Any]:
        data = _load_json(self.path, {"state_schema_version": STATE_SCHEMA_VERSION, "teams": {}})
        if not isinstance(data, dict) or not isinstance(data.get("teams"), dict):
            return {"state_schema_version": STATE_SCHEMA_VERSION, "teams": {}}
        return data

    def find_by_id(self, team_id: TeamId) -> Team | None:
        record = self._load()["teams"].get(team_id.value)
        if not isinstance(record, dict):
            return None
        return team_from_record(record)

    def list_teams(self) -> list[Team]:
        return [team_from_record(record) for _, record in sorted(self._load()["teams"].items())]

    def save(self, team: Team) -> Team:
        # Every team shares one document; load, replace and write as a unit.
        with self._write_lock:
            data = self._load()
            data["teams"][team.id.value] = team_to_record(team)
            _save_json(self.path, data)
        return team


class JsonScanRunStore:
    """Scan runs grouped per repository, replacing a run with the same id."""

    def __init__(self, root: Path) -> None:
        self.root = root

    def _path(self, repo_id: RepoId) -> Path:
        return self.root / f"{_storage_name(repo_id.value)}.json"

    def _load_items(self, repo_id: RepoId) -> list[dict[str, Any]]:
        data = _load_json(self._path(repo_id), {"items": []})
        items = data.get("items") if isinstance(data, dict) else None
        return items if isinstance(items, list) else []

    def save(self, scan_run: ScanRun) -> ScanRun:
        items = [item for item in self._load_items(scan_run.repo_id) if item.get("id") != scan_run.id.value]
        items.append(scan_run_to_record(scan_run))
        items.sort(key=lambda item: (str(item.get("scanned_at")), str(item.get("id"))))
        _save_json(self._path(scan_run.repo_id), {"state_schema_version": STATE_SCHEMA_VERSION, "items": items})
        return scan_run

    def list_for_repo(self, repo_id: RepoId) -> list[ScanRun]:
        return [scan_run_from_record(item) for item in self._load_items(repo_id)]
