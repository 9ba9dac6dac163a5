from __future__ import annotations

import json
import os
from pathlib import Path

import pytest
import yaml
from jsonschema import Draft202012Validator

from questboard_server.conditions import CountCondition
from questboard_server.errors import ValidationError
from questboard_server.quests import DetectionType, Quest, QuestLevel, QuestRepository


def _repo_root() -> Path:
    return Path(__file__).resolve().parents[2]


def _write(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text.strip() + "\n", encoding="utf-8")


def _catalog_repo(tmp_path: Path) -> QuestRepository:
    root = tmp_path / "repo"
    schema_dir = root / "quests" / "schema"
    schema_dir.mkdir(parents=True)
    source = _repo_root() / "quests" / "schema" / "quest.schema.json"
    (schema_dir / "quest.schema.json").write_text(source.read_text(encoding="utf-8"), encoding="utf-8")
    (root / "quests" / "catalog").mkdir(parents=True)
    return QuestRepository(repo_root=root, catalog_roots=[(root / "quests" / "catalog").resolve()])


def test_shipped_catalog_matches_schema() -> None:
    root = _repo_root()
    schema = json.loads((root / "quests" / "schema" / "quest.schema.json").read_text(encoding="utf-8"))
    validator = Draft202012Validator(schema)
    files = sorted((root / "quests" / "catalog").rglob("*.quest.yaml"))
    assert files
    for quest_file in files:
        data = yaml.safe_load(quest_file.read_text(encoding="utf-8"))
        errors = list(validator.iter_errors(data))
        assert not errors, f"{quest_file}: {errors[0].message if errors else ''}"


def test_shipped_catalog_lints_clean() -> None:
    os.environ.pop("QUESTBOARD_CATALOG_SOURCES", None)
    repository = QuestRepository.from_repo_root(_repo_root())
    assert repository.lint() == []
    quests = repository.load_all()
    assert "docs.agents_md_present" in quests
    assert quests["sast.codeql_present"].detection_type is DetectionType.AUTO_ONLY
    assert quests["process.code_review_policy"].definition().is_legacy


def test_find_active_is_sorted_and_skips_inactive(tmp_path: Path) -> None:
    repository = _catalog_repo(tmp_path)
    for key, category, active in (
        ("sast.semgrep_present", "sast", "true"),
        ("docs.agents_md_present", "documentation", "true"),
        ("docs.retired_check", "documentation", "false"),
    ):
        _write(
            repository.catalog_root / category / f"{key}.quest.yaml",
            f"""
schema_version: "0.1"
quest:
  key: {key}
  title: {key}
  category: {category}
  description: test quest
  active: {active}
  levels: []
""",
        )
    assert [quest.key for quest in repository.find_active()] == ["docs.agents_md_present", "sast.semgrep_present"]
    assert repository.find_by_key("docs.retired_check") is not None
    assert repository.find_by_key("missing.quest") is None


def test_save_writes_yaml_into_primary_root(tmp_path: Path) -> None:
    repository = _catalog_repo(tmp_path)
    quest = Quest(
        key="docs.skill_md_count",
        title="Skills documented",
        category="documentation",
        description="Counts skill files",
        levels=(QuestLevel(2, CountCondition(min=5)), QuestLevel(1, CountCondition(min=1))),
    )
    path = repository.save(quest)
    assert path == repository.catalog_root / "documentation" / "docs.skill_md_count.quest.yaml"
    loaded = repository.find_by_key("docs.skill_md_count")
    assert loaded == quest
    assert [item.level for item in loaded.levels] == [1, 2]
    assert repository.lint() == []

    updated = Quest(
        key="docs.skill_md_count",
        title="Skills documented (v2)",
        category="documentation",
        description="Counts skill files",
    )
    assert repository.save(updated) == path
    assert repository.find_by_key("docs.skill_md_count").title == "Skills documented (v2)"


def test_lint_reports_schema_duplicate_and_level_findings(tmp_path: Path) -> None:
    repository = _catalog_repo(tmp_path)
    _write(repository.catalog_root / "a" / "broken.quest.yaml", "schema_version: '0.1'\nquest: [unclosed")
    _write(
        repository.catalog_root / "b" / "missing-title.quest.yaml",
        """
schema_version: "0.1"
quest:
  key: docs.no_title
  category: documentation
  description: test quest
  levels: []
""",
    )
    duplicate = """
schema_version: "0.1"
quest:
  key: docs.duplicate
  title: Duplicate
  category: documentation
  description: test quest
  levels:
    - level: 1
      condition: {type: pass}
    - level: 1
      condition: {type: exists}
"""
    _write(repository.catalog_root / "c" / "first.quest.yaml", duplicate)
    _write(repository.catalog_root / "d" / "second.quest.yaml", duplicate)

    findings = repository.lint()
    rule_ids = {item["rule_id"] for item in findings}
    assert {"CATALOG-001", "CATALOG-002", "CATALOG-003", "CATALOG-004"} <= rule_ids
    warn = [item for item in findings if item["rule_id"] == "CATALOG-003"]
    assert warn[0]["severity"] == "WARN"
    assert warn[0]["file"].endswith("second.quest.yaml")


def test_quest_field_limits() -> None:
    with pytest.raises(ValidationError):
        Quest(key="docs.x", title="t" * 101, category="documentation", description="d")
    with pytest.raises(ValidationError):
        Quest(key="docs.x", title="t", category="documentation", description="d" * 501)
    with pytest.raises(ValidationError):
        Quest.from_dict(
            {"key": "docs.x", "title": "t", "category": "c", "description": "d", "detection_type": "sometimes"}
        )


def test_extra_catalog_sources_are_appended(tmp_path: Path) -> None:
    extra = tmp_path / "extra-catalog"
    _write(
        extra / "custom.local_check.quest.yaml",
        """
schema_version: "0.1"
quest:
  key: custom.local_check
  title: Local check
  category: custom
  description: extra source quest
  levels: []
""",
    )
    os.environ["QUESTBOARD_CATALOG_SOURCES"] = str(extra)
    try:
        repository = QuestRepository.from_repo_root(_repo_root())
        assert "custom.local_check" in repository.load_all()
        assert len(repository.catalog_roots) == 2
    finally:
        os.environ.pop("QUESTBOARD_CATALOG_SOURCES", None)
