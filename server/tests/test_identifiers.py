from __future__ import annotations

from datetime import UTC, datetime

import pytest

from questboard_server.errors import BusinessRuleViolationError, ValidationError
from questboard_server.identifiers import CommitSha, RepoFullName, RepoId, RepoUrl, TeamId, slugify
from questboard_server.teams import (
    Repo,
    Team,
    default_branch_from_ref,
    generate_repo_id,
    generate_team_id,
)


def test_identifiers_trim_and_reject_empty() -> None:
    assert TeamId("  team_acme ").value == "team_acme"
    assert str(RepoId("repo_acme_widgets")) == "repo_acme_widgets"
    with pytest.raises(ValidationError):
        TeamId("   ")


def test_commit_sha_and_url_validation() -> None:
    assert CommitSha("abc1234").value == "abc1234"
    for bad in ("abc12", "z" * 40, "a" * 41):
        with pytest.raises(ValidationError):
            CommitSha(bad)
    assert RepoUrl("https://github.com/acme/widgets").value.startswith("https://")
    with pytest.raises(ValidationError):
        RepoUrl("ftp://github.com/acme/widgets")
    with pytest.raises(ValidationError):
        RepoUrl("https://")


def test_repo_full_name_parts() -> None:
    full_name = RepoFullName("acme/widgets")
    assert (full_name.owner, full_name.name) == ("acme", "widgets")
    for bad in ("acme", "acme/", "a/b/c"):
        with pytest.raises(ValidationError):
            RepoFullName(bad)


def test_generated_ids_are_slugified() -> None:
    assert slugify("Acme Corp!") == "acme-corp"
    assert generate_team_id("Acme Corp") == TeamId("team_acme-corp")
    assert generate_repo_id("Acme", "Widgets.JS") == RepoId("repo_acme_widgets.js")
    assert default_branch_from_ref("refs/heads/main") == "main"
    assert default_branch_from_ref("release/1.0") == "release/1.0"


def test_team_rejects_duplicate_or_foreign_repo() -> None:
    team = Team(id=TeamId("team_acme"), name="acme", slug="acme")
    repo = Repo(
        id=RepoId("repo_acme_widgets"),
        team_id=TeamId("team_acme"),
        full_name=RepoFullName("acme/widgets"),
        url=RepoUrl("https://github.com/acme/widgets"),
        default_branch="main",
        created_at=datetime(2026, 1, 1, tzinfo=UTC),
    )
    team.add_repo(repo)
    assert team.has_repo(RepoId("repo_acme_widgets"))
    with pytest.raises(BusinessRuleViolationError):
        team.add_repo(repo)

    foreign = Repo(
        id=RepoId("repo_other_widgets"),
        team_id=TeamId("team_other"),
        full_name=RepoFullName("other/widgets"),
        url=RepoUrl("https://github.com/other/widgets"),
        default_branch="main",
    )
    with pytest.raises(BusinessRuleViolationError):
        team.add_repo(foreign)
