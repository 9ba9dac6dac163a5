from __future__ import annotations

import json
import os
from collections.abc import Mapping
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

import yaml
from jsonschema import Draft202012Validator

from .conditions import QuestCondition, condition_to_dict, parse_condition
from .errors import ValidationError


QUEST_SCHEMA_VERSION = "0.1"
MAX_TITLE_LENGTH = 100
MAX_DESCRIPTION_LENGTH = 500


class DetectionType(str, Enum):
    AUTO_ONLY = "auto-only"
    MANUAL_ONLY = "manual-only"
    BOTH = "both"

    @classmethod
    def parse(cls, value: Any) -> "DetectionType":
        try:
            return cls(value)
        except ValueError:
            raise ValidationError("detection_type must be one of: auto-only, manual-only, both") from None

    def can_auto_detect(self) -> bool:
        return self in (DetectionType.AUTO_ONLY, DetectionType.BOTH)

    def can_manually_approve(self) -> bool:
        return self in (DetectionType.MANUAL_ONLY, DetectionType.BOTH)


@dataclass(frozen=True)
class QuestLevel:
    level: int
    condition: QuestCondition
    description: str = ""

    def __post_init__(self) -> None:
        if isinstance(self.level, bool) or not isinstance(self.level, int) or self.level < 1:
            raise ValidationError("Quest level must be a positive integer")


@dataclass(frozen=True)
class QuestDefinition:
    """The slice of a quest the readiness engine needs."""

    key: str
    levels: tuple[QuestLevel, ...] = ()

    def __post_init__(self) -> None:
        if not isinstance(self.key, str) or not self.key.strip():
            raise ValidationError("Quest key cannot be empty")
        object.__setattr__(self, "key", self.key.strip())
        object.__setattr__(self, "levels", tuple(sorted(self.levels, key=lambda item: item.level)))
        numbers = [item.level for item in self.levels]
        if len(numbers) != len(set(numbers)):
            raise ValidationError(f"Quest {self.key} defines duplicate level numbers")

    @property
    def is_legacy(self) -> bool:
        return not self.levels


def _trimmed(value: Any, label: str, max_length: int | None = None) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"Quest {label} cannot be empty")
    text = value.strip()
    if max_length is not None and len(text) > max_length:
        raise ValidationError(f"Quest {label} must not exceed {max_length} characters")
    return text


@dataclass(frozen=True)
class Quest:
    """Catalog entry: presentation fields plus the leveled definition."""

    key: str
    title: str
    category: str
    description: str
    active: bool = True
    detection_type: DetectionType = DetectionType.BOTH
    levels: tuple[QuestLevel, ...] = ()
    languages: tuple[str, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        object.__setattr__(self, "key", _trimmed(self.key, "key"))
        object.__setattr__(self, "title", _trimmed(self.title, "title", MAX_TITLE_LENGTH))
        object.__setattr__(self, "category", _trimmed(self.category, "category"))
        object.__setattr__(self, "description", _trimmed(self.description, "description", MAX_DESCRIPTION_LENGTH))
        object.__setattr__(self, "levels", self.definition().levels)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Quest":
        raw_levels = data.get("levels") or []
        if not isinstance(raw_levels, list):
            raise ValidationError("Quest levels must be a list")
        levels = []
        for raw in raw_levels:
            if not isinstance(raw, Mapping):
                raise ValidationError("Quest level entries must be mappings")
            levels.append(
                QuestLevel(
                    level=raw.get("level"),
                    condition=parse_condition(raw.get("condition")),
                    description=str(raw.get("description") or ""),
                )
            )
        languages = data.get("languages") or []
        return cls(
            key=data.get("key"),
            title=data.get("title"),
            category=data.get("category"),
            description=data.get("description"),
            active=bool(data.get("active", True)),
            detection_type=DetectionType.parse(data.get("detection_type", DetectionType.BOTH.value)),
            levels=tuple(levels),
            languages=tuple(str(item) for item in languages),
        )

    def definition(self) -> QuestDefinition:
        return QuestDefinition(key=self.key, levels=self.levels)

    def can_be_manually_approved(self) -> bool:
        return self.detection_type.can_manually_approve()

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "key": self.key,
            "title": self.title,
            "category": self.category,
            "description": self.description,
            "active": self.active,
            "detection_type": self.detection_type.value,
            "levels": [
                {"level": item.level, "description": item.description, "condition": condition_to_dict(item.condition)}
                for item in self.levels
            ],
        }
        if self.languages:
            payload["languages"] = list(self.languages)
        return payload


@dataclass
class Finding:
    rule_id: str
    severity: str
    file: str
    path: str
    message: str
    suggested_fix: str

    def to_dict(self) -> dict[str, str]:
        return asdict(self)


@dataclass
class QuestRepository:
    """Quest catalog backed by versioned `*.quest.yaml` files."""

    repo_root: Path
    catalog_roots: list[Path]

    @classmethod
    def from_repo_root(cls, repo_root: Path) -> "QuestRepository":
        default_root = (repo_root / "quests" / "catalog").resolve()
        roots: list[Path] = [default_root]
        seen = {default_root}

        raw_sources = os.environ.get("QUESTBOARD_CATALOG_SOURCES", "").strip()
        if raw_sources:
            for raw in raw_sources.split(os.pathsep):
                candidate = Path(raw).expanduser().resolve()
                if not candidate.exists() or not candidate.is_dir():
                    continue
                if candidate in seen:
                    continue
                roots.append(candidate)
                seen.add(candidate)

        return cls(repo_root=repo_root, catalog_roots=roots)

    @property
    def catalog_root(self) -> Path:
        return self.catalog_roots[0]

    @property
    def schema_path(self) -> Path:
        return self.repo_root / "quests" / "schema" / "quest.schema.json"

    def _validator(self) -> Draft202012Validator:
        if not self.schema_path.exists():
            raise ValueError(f"Quest schema file not found: {self.schema_path}")
        return Draft202012Validator(json.loads(self.schema_path.read_text(encoding="utf-8")))

    def load_all(self) -> dict[str, Quest]:
        """Parse every catalog file; the first definition of a key wins."""

        quests: dict[str, Quest] = {}
        for file_path in self._quest_files():
            data = yaml.safe_load(file_path.read_text(encoding="utf-8"))
            if not isinstance(data, dict) or not isinstance(data.get("quest"), dict):
                raise ValidationError(f"Quest file must contain a quest mapping: {file_path}")
            quest = Quest.from_dict(data["quest"])
            if quest.key in quests:
                continue
            quests[quest.key] = quest
        return quests

    def find_by_key(self, key: str) -> Quest | None:
        return self.load_all().get(key)

    def find_active(self) -> list[Quest]:
        quests = [quest for quest in self.load_all().values() if quest.active]
        quests.sort(key=lambda quest: (quest.category, quest.key))
        return quests

    def save(self, quest: Quest) -> Path:
        """Write one quest into the primary catalog root, replacing a file with the same key."""

        target = self._file_for_key(quest.key) or self.catalog_root / quest.category / f"{quest.key}.quest.yaml"
        target.parent.mkdir(parents=True, exist_ok=True)
        document = {"schema_version": QUEST_SCHEMA_VERSION, "quest": quest.to_dict()}
        target.write_text(yaml.safe_dump(document, sort_keys=False), encoding="utf-8")
        return target

    def lint(self) -> list[dict[str, str]]:
        validator = self._validator()
        findings: list[Finding] = []
        key_owner: dict[str, Path] = {}
        for file_path in self._quest_files():
            file_label = str(file_path).replace("\\", "/")
            try:
                data = yaml.safe_load(file_path.read_text(encoding="utf-8"))
            except yaml.YAMLError as exc:
                findings.append(
                    Finding("CATALOG-001", "ERROR", file_label, "$", f"YAML parse failure: {exc}", "Fix YAML syntax.")
                )
                continue

            errors = sorted(validator.iter_errors(data), key=lambda err: list(err.path))
            for error in errors:
                where = "$" + "".join(f"[{part}]" if isinstance(part, int) else f".{part}" for part in error.path)
                findings.append(
                    Finding("CATALOG-002", "ERROR", file_label, where, error.message, "Match quest.schema.json.")
                )
            if errors:
                continue

            quest_data = data["quest"]
            key = quest_data["key"]
            if key in key_owner:
                findings.append(
                    Finding(
                        "CATALOG-003",
                        "WARN",
                        file_label,
                        "$.quest.key",
                        f"Duplicate quest key {key}; first definition in {key_owner[key]} wins.",
                        "Rename or remove one of the definitions.",
                    )
                )
            else:
                key_owner[key] = file_path

            try:
                Quest.from_dict(quest_data)
            except ValidationError as exc:
                findings.append(
                    Finding("CATALOG-004", "ERROR", file_label, "$.quest", exc.message, "Fix the quest definition.")
                )

        result = [finding.to_dict() for finding in findings]
        result.sort(key=lambda item: (item["severity"], item["file"], item["rule_id"], item["path"]))
        return result

    def _file_for_key(self, key: str) -> Path | None:
        for file_path in self._quest_files():
            if not file_path.is_relative_to(self.catalog_root):
                continue
            data = yaml.safe_load(file_path.read_text(encoding="utf-8"))
            if isinstance(data, dict) and isinstance(data.get("quest"), dict) and data["quest"].get("key") == key:
                return file_path
        return None

    def _quest_files(self) -> list[Path]:
        files: list[Path] = []
        seen: set[Path] = set()
        for root in self.catalog_roots:
            if not root.exists():
                continue
            for quest_file in sorted(root.rglob("*.quest.yaml")):
                resolved = quest_file.resolve()
                if resolved in seen:
                    continue
                seen.add(resolved)
                files.append(resolved)
        return files
