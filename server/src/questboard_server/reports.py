from __future__ import annotations

"""Normalization of external AI-readiness reports into scan metadata and flat quest results."""

import json
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from jsonschema import Draft202012Validator

from .errors import ValidationError
from .identifiers import RepoFullName
from .scan_runs import ScanResult


# (path under `checks`, quest key, {result field: field inside the node}, field that must be reported)
# A rule without a required field fires whenever its node exists.
EXTRACTION_RULES: list[tuple[tuple[str, ...], str, dict[str, str], str | None]] = [
    (("documentation", "agents_md"), "docs.agents_md_present", {"present": "present"}, None),
    (("documentation", "skill_md"), "docs.skill_md_count", {"count": "count"}, None),
    (("formatters", "javascript", "prettier"), "formatters.javascript.prettier_present", {"present": "present"}, None),
    (("linting", "javascript", "eslint"), "linting.javascript.eslint_present", {"present": "present"}, None),
    (("sast", "codeql"), "sast.codeql_present", {"present": "present"}, None),
    (("sast", "semgrep"), "sast.semgrep_present", {"present": "present"}, None),
    (
        ("test_coverage",),
        "quality.coverage_available",
        {"available": "available", "passed": "available"},
        "available",
    ),
    (
        ("test_coverage",),
        "quality.coverage_threshold_met",
        {"meets_threshold": "meets_threshold", "passed": "meets_threshold"},
        "meets_threshold",
    ),
]


@dataclass(frozen=True)
class RepoMetadata:
    owner: str
    name: str
    full_name: str
    url: str
    commit_sha: str
    ref_name: str
    provider_run_id: str
    run_url: str
    workflow_version: str
    scanned_at: datetime
    primary_language: str | None = None


def report_schema_path(repo_root: Path) -> Path:
    return repo_root / "quests" / "schema" / "report.schema.json"


def load_report_validator(repo_root: Path) -> Draft202012Validator:
    path = report_schema_path(repo_root)
    if not path.exists():
        raise ValueError(f"Report schema file not found: {path}")
    return Draft202012Validator(json.loads(path.read_text(encoding="utf-8")))


def validate_report(report: Any, validator: Draft202012Validator) -> None:
    """Check the report envelope; `checks` contents stay loosely typed."""

    errors = sorted(validator.iter_errors(report), key=lambda err: list(err.path))
    if errors:
        first = errors[0]
        where = ".".join(str(part) for part in first.path) or "<root>"
        raise ValidationError(f"Invalid scan report at {where}: {first.message}")


def _parse_timestamp(value: Any) -> datetime:
    if not isinstance(value, str):
        raise ValidationError("Invalid timestamp format")
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        raise ValidationError("Invalid timestamp format") from None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def extract_repo_metadata(report: Mapping[str, Any]) -> RepoMetadata:
    metadata = report.get("metadata")
    if not isinstance(metadata, Mapping) or not isinstance(metadata.get("repository"), Mapping):
        raise ValidationError("Report metadata.repository is required")
    repository = metadata["repository"]
    full_name = RepoFullName(str(repository.get("name", "")))
    languages = metadata.get("languages")
    primary = languages.get("primary") if isinstance(languages, Mapping) else None

    return RepoMetadata(
        owner=full_name.owner,
        name=full_name.name,
        full_name=full_name.value,
        url=str(repository.get("url", "")),
        commit_sha=str(repository.get("commit_sha", "")),
        ref_name=str(repository.get("branch", "")),
        provider_run_id=str(repository.get("run_id", "")),
        run_url=str(repository.get("run_url", "")),
        workflow_version=str(metadata.get("workflow_version", "")),
        scanned_at=_parse_timestamp(metadata.get("timestamp")),
        primary_language=primary.strip().lower() if isinstance(primary, str) and primary.strip() else None,
    )


def _node_at(checks: Mapping[str, Any], path: tuple[str, ...]) -> Mapping[str, Any] | None:
    node: Any = checks
    for part in path:
        if not isinstance(node, Mapping):
            return None
        node = node.get(part)
    return node if isinstance(node, Mapping) else None


def _coverage_score(node: Mapping[str, Any]) -> Any:
    coverage = node.get("coverage")
    lines = coverage.get("lines") if isinstance(coverage, Mapping) else None
    return lines.get("percentage") if isinstance(lines, Mapping) else None


def extract_quest_results(report: Mapping[str, Any]) -> dict[str, ScanResult]:
    """Flatten the nested `checks` tree into `quest key -> raw result`.

    Absent or non-mapping nodes are skipped. An existing node with no
    reported fields still yields an empty result, which `exists` quests
    count as complete.
    """

    checks = report.get("checks")
    if not isinstance(checks, Mapping):
        return {}

    results: dict[str, ScanResult] = {}
    for path, quest_key, fields, required_field in EXTRACTION_RULES:
        node = _node_at(checks, path)
        if node is None:
            continue
        if required_field is not None and required_field not in node:
            continue
        data = {
            result_field: node[source_field]
            for result_field, source_field in fields.items()
            if source_field in node
        }
        if quest_key == "quality.coverage_threshold_met":
            score = _coverage_score(node)
            if score is not None:
                data["score"] = score
        results[quest_key] = ScanResult(data)
    return results
