from __future__ import annotations

import copy
from datetime import UTC, datetime
from pathlib import Path

import pytest

from questboard_server.errors import ValidationError
from questboard_server.reports import (
    extract_quest_results,
    extract_repo_metadata,
    load_report_validator,
    validate_report,
)
from questboard_server.scan_runs import ScanResult, ScanRun


def _repo_root() -> Path:
    return Path(__file__).resolve().parents[2]


def _report() -> dict:
    return {
        "metadata": {
            "repository": {
                "name": "Acme/Widgets",
                "url": "https://github.com/Acme/Widgets",
                "commit_sha": "0123456789abcdef0123456789abcdef01234567",
                "branch": "refs/heads/main",
                "run_id": "4242",
                "run_url": "https://github.com/Acme/Widgets/actions/runs/4242",
            },
            "timestamp": "2026-03-01T12:00:00Z",
            "workflow_version": "1.4.0",
            "languages": {"primary": "TypeScript"},
        },
        "checks": {
            "documentation": {"agents_md": {"present": True}, "skill_md": {"count": 4}},
            "formatters": {"javascript": {"prettier": {"present": False}}},
            "linting": {"javascript": {"eslint": "not-a-mapping"}},
            "sast": {"codeql": {"present": True}},
            "test_coverage": {
                "available": True,
                "meets_threshold": True,
                "coverage": {"lines": {"percentage": 91.5}},
            },
        },
    }


def test_extract_repo_metadata() -> None:
    metadata = extract_repo_metadata(_report())
    assert (metadata.owner, metadata.name, metadata.full_name) == ("Acme", "Widgets", "Acme/Widgets")
    assert metadata.ref_name == "refs/heads/main"
    assert metadata.provider_run_id == "4242"
    assert metadata.scanned_at == datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
    assert metadata.primary_language == "typescript"


def test_extract_quest_results_follows_table() -> None:
    results = extract_quest_results(_report())
    assert set(results) == {
        "docs.agents_md_present",
        "docs.skill_md_count",
        "formatters.javascript.prettier_present",
        "sast.codeql_present",
        "quality.coverage_available",
        "quality.coverage_threshold_met",
    }
    assert results["docs.skill_md_count"] == ScanResult({"count": 4})
    assert results["quality.coverage_available"] == ScanResult({"available": True, "passed": True})
    assert results["quality.coverage_threshold_met"] == ScanResult(
        {"meets_threshold": True, "passed": True, "score": 91.5}
    )


def test_extract_skips_nodes_without_primary_field() -> None:
    report = _report()
    report["checks"]["test_coverage"] = {"coverage": {"lines": {"percentage": 50}}}
    results = extract_quest_results(report)
    assert "quality.coverage_available" not in results
    assert "quality.coverage_threshold_met" not in results


def test_extract_emits_empty_results_for_bare_check_nodes() -> None:
    report = _report()
    report["checks"]["sast"] = {"semgrep": {"enabled": True}}
    report["checks"]["documentation"]["agents_md"] = {}
    results = extract_quest_results(report)
    assert results["sast.semgrep_present"] == ScanResult({})
    assert results["docs.agents_md_present"] == ScanResult({})
    assert not results["sast.semgrep_present"].indicates_pass()


def test_report_schema_rejects_bad_envelope() -> None:
    validator = load_report_validator(_repo_root())
    validate_report(_report(), validator)

    broken = copy.deepcopy(_report())
    broken["metadata"]["repository"]["commit_sha"] = "nope"
    with pytest.raises(ValidationError):
        validate_report(broken, validator)

    missing = copy.deepcopy(_report())
    del missing["checks"]
    with pytest.raises(ValidationError):
        validate_report(missing, validator)


def test_invalid_timestamp_is_a_validation_error() -> None:
    report = _report()
    report["metadata"]["timestamp"] = "yesterday"
    with pytest.raises(ValidationError):
        extract_repo_metadata(report)


def test_scan_run_id_is_deterministic() -> None:
    scanned_at = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
    assert ScanRun.make_id("4242", scanned_at).value == "scanrun_4242_1772366400000"
    assert ScanRun.make_id("4242", scanned_at) == ScanRun.make_id("4242", scanned_at)
