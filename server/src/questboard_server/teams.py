from __future__ import annotations

"""Teams with nested repositories, and their resolution from scan metadata."""

from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Protocol

from .errors import BusinessRuleViolationError, ValidationError
from .identifiers import RepoFullName, RepoId, RepoUrl, TeamId, slugify

if TYPE_CHECKING:
    from .reports import RepoMetadata


BRANCH_REF_PREFIX = "refs/heads/"


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


@dataclass(frozen=True)
class Repo:
    id: RepoId
    team_id: TeamId
    full_name: RepoFullName
    url: RepoUrl
    default_branch: str
    provider: str = "github"
    archived: bool = False
    primary_language: str | None = None
    created_at: datetime = field(default_factory=_utc_now)

    def __post_init__(self) -> None:
        if not isinstance(self.default_branch, str) or not self.default_branch.strip():
            raise ValidationError("Default branch cannot be empty")


@dataclass
class Team:
    id: TeamId
    name: str
    slug: str
    repos: list[Repo] = field(default_factory=list)
    created_at: datetime = field(default_factory=_utc_now)
    updated_at: datetime = field(default_factory=_utc_now)

    def __post_init__(self) -> None:
        if not isinstance(self.name, str) or not self.name.strip():
            raise ValidationError("Team name cannot be empty")
        self.name = self.name.strip()
        if not self.slug:
            raise ValidationError("Team slug cannot be empty")

    def has_repo(self, repo_id: RepoId) -> bool:
        return any(repo.id == repo_id for repo in self.repos)

    def get_repo(self, repo_id: RepoId) -> Repo | None:
        return next((repo for repo in self.repos if repo.id == repo_id), None)

    def get_repo_by_full_name(self, full_name: RepoFullName) -> Repo | None:
        return next((repo for repo in self.repos if repo.full_name == full_name), None)

    def add_repo(self, repo: Repo) -> Repo:
        if repo.team_id != self.id:
            raise BusinessRuleViolationError(f"Repo {repo.id} belongs to team {repo.team_id}, not {self.id}")
        if self.has_repo(repo.id):
            raise BusinessRuleViolationError(f"Repo {repo.id} is already part of team {self.id}")
        self.repos.append(repo)
        self.updated_at = _utc_now()
        return repo

    def update_repo_language(self, repo_id: RepoId, language: str | None) -> None:
        for index, repo in enumerate(self.repos):
            if repo.id == repo_id and language and repo.primary_language != language:
                self.repos[index] = replace(repo, primary_language=language)
                self.updated_at = _utc_now()


class TeamStore(Protocol):
    def find_by_id(self, team_id: TeamId) -> Team | None: ...

    def save(self, team: Team) -> Team: ...


def generate_team_id(owner: str) -> TeamId:
    return TeamId(f"team_{slugify(owner)}")


def generate_repo_id(owner: str, name: str) -> RepoId:
    return RepoId(f"repo_{slugify(owner)}_{slugify(name)}")


def default_branch_from_ref(ref_name: str) -> str:
    ref = ref_name.strip()
    if ref.startswith(BRANCH_REF_PREFIX):
        return ref[len(BRANCH_REF_PREFIX):]
    return ref


@dataclass
class TeamRepoResolver:
    """Find or auto-create, in memory, the team and repo a scan report belongs to.

    Nothing is persisted here; the returned flag tells the caller whether the
    team must be saved once the rest of the ingestion has validated.
    """

    teams: TeamStore

    def resolve_from_metadata(self, metadata: "RepoMetadata") -> tuple[Team, Repo, bool]:
        team_id = generate_team_id(metadata.owner)
        repo_id = generate_repo_id(metadata.owner, metadata.name)
        dirty = False

        team = self.teams.find_by_id(team_id)
        if team is None:
            team = Team(id=team_id, name=metadata.owner, slug=slugify(metadata.owner))
            dirty = True

        full_name = RepoFullName(metadata.full_name)
        repo = team.get_repo_by_full_name(full_name) or team.get_repo(repo_id)
        if repo is None:
            repo = team.add_repo(
                Repo(
                    id=repo_id,
                    team_id=team_id,
                    full_name=full_name,
                    url=RepoUrl(metadata.url),
                    default_branch=default_branch_from_ref(metadata.ref_name),
                    primary_language=metadata.primary_language,
                )
            )
            dirty = True
        elif metadata.primary_language and repo.primary_language != metadata.primary_language:
            team.update_repo_language(repo.id, metadata.primary_language)
            repo = team.get_repo(repo.id) or repo
            dirty = True

        return team, repo, dirty
