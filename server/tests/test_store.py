from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path

import pytest

from questboard_server.errors import ValidationError
from questboard_server.identifiers import CommitSha, RepoFullName, RepoId, RepoUrl, ScanRunId, TeamId, UserId
from questboard_server.readiness import CompletionSource, ReadinessStatus, RepoReadiness
from questboard_server.scan_runs import ScanResult, ScanRun
from questboard_server.store import JsonReadinessStore, JsonScanRunStore, JsonTeamStore, readiness_to_record
from questboard_server.teams import Repo, Team


NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def test_readiness_round_trips_all_fields(tmp_path: Path) -> None:
    store = JsonReadinessStore(tmp_path / "readiness")
    readiness = RepoReadiness.create_empty(RepoId("repo_acme_widgets"), TeamId("team_acme"), now=NOW)
    readiness.approve_quest_manually("docs.agents_md_present", UserId("alice"), level=2, now=NOW)
    readiness.approve_quest_manually("process.code_review_policy", UserId("bob"), now=NOW)
    readiness.revoke_manual_approval("process.code_review_policy", now=NOW)

    store.save(readiness)
    loaded = store.find_by_repo_id(RepoId("repo_acme_widgets"))
    assert loaded is not None
    assert readiness_to_record(loaded) == readiness_to_record(readiness)
    revoked = loaded.get_quest_status("process.code_review_policy")
    assert revoked.manual_approval is not None
    assert revoked.manual_approval.revoked_at == NOW
    assert store.find_by_repo_id(RepoId("repo_missing")) is None


def test_records_without_completion_source_default_to_automatic(tmp_path: Path) -> None:
    root = tmp_path / "readiness"
    root.mkdir()
    (root / "repo_acme_widgets.json").write_text(
        json.dumps(
            {
                "repo_id": "repo_acme_widgets",
                "team_id": "team_acme",
                "computed_from_scan_run_id": "scanrun_1_1",
                "updated_at": "2026-03-01T12:00:00+00:00",
                "quests": {
                    "docs.agents_md_present": {
                        "status": "complete",
                        "level": 1,
                        "last_seen_at": "2026-03-01T12:00:00Z",
                    }
                },
            }
        ),
        encoding="utf-8",
    )
    loaded = JsonReadinessStore(root).find_by_repo_id(RepoId("repo_acme_widgets"))
    entry = loaded.get_quest_status("docs.agents_md_present")
    assert entry.completion_source is CompletionSource.AUTOMATIC
    assert entry.status is ReadinessStatus.COMPLETE


def test_malformed_stored_timestamp_raises_validation_error(tmp_path: Path) -> None:
    root = tmp_path / "readiness"
    root.mkdir()
    (root / "repo_acme_widgets.json").write_text(
        json.dumps(
            {
                "repo_id": "repo_acme_widgets",
                "team_id": "team_acme",
                "computed_from_scan_run_id": "scanrun_1_1",
                "updated_at": "not-a-date",
                "quests": {},
            }
        ),
        encoding="utf-8",
    )
    with pytest.raises(ValidationError):
        JsonReadinessStore(root).find_by_repo_id(RepoId("repo_acme_widgets"))


def test_unsafe_repo_ids_are_rejected(tmp_path: Path) -> None:
    store = JsonReadinessStore(tmp_path / "readiness")
    with pytest.raises(ValidationError):
        store.find_by_repo_id(RepoId("../escape"))


def test_team_store_round_trip(tmp_path: Path) -> None:
    store = JsonTeamStore(tmp_path / "teams.json")
    team = Team(id=TeamId("team_acme"), name="acme", slug="acme", created_at=NOW, updated_at=NOW)
    team.add_repo(
        Repo(
            id=RepoId("repo_acme_widgets"),
            team_id=TeamId("team_acme"),
            full_name=RepoFullName("acme/widgets"),
            url=RepoUrl("https://github.com/acme/widgets"),
            default_branch="main",
            primary_language="python",
            created_at=NOW,
        )
    )
    store.save(team)
    loaded = store.find_by_id(TeamId("team_acme"))
    assert loaded is not None
    assert loaded.repos == team.repos
    assert [item.id for item in store.list_teams()] == [TeamId("team_acme")]
    assert store.find_by_id(TeamId("team_missing")) is None


def test_scan_run_store_replaces_same_id(tmp_path: Path) -> None:
    store = JsonScanRunStore(tmp_path / "scan_runs")

    def _run(count: int) -> ScanRun:
        return ScanRun(
            id=ScanRunId("scanrun_4242_1"),
            team_id=TeamId("team_acme"),
            repo_id=RepoId("repo_acme_widgets"),
            commit_sha=CommitSha("abc1234"),
            ref_name="main",
            provider_run_id="4242",
            run_url="https://ci.example/runs/4242",
            workflow_version="1.0.0",
            scanned_at=NOW,
            quest_results={"docs.skill_md_count": ScanResult({"count": count})},
        )

    store.save(_run(1))
    store.save(_run(3))
    runs = store.list_for_repo(RepoId("repo_acme_widgets"))
    assert len(runs) == 1
    assert runs[0].quest_results["docs.skill_md_count"] == ScanResult({"count": 3})
