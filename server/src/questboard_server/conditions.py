from __future__ import annotations

"""Quest level conditions and their evaluation against raw scan results."""

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Union, assert_never

from .errors import ValidationError
from .scan_runs import ScanResult


@dataclass(frozen=True)
class PassCondition:
    type = "pass"


@dataclass(frozen=True)
class ExistsCondition:
    type = "exists"


@dataclass(frozen=True)
class CountCondition:
    min: float
    type = "count"


@dataclass(frozen=True)
class ScoreCondition:
    min: float
    type = "score"


QuestCondition = Union[PassCondition, ExistsCondition, CountCondition, ScoreCondition]

CONDITION_TYPES = ("pass", "exists", "count", "score")


def _parse_min(raw: Mapping[str, Any], kind: str) -> float:
    value = raw.get("min")
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(f"Condition '{kind}' requires a numeric min")
    return value


def parse_condition(raw: Any) -> QuestCondition:
    if not isinstance(raw, Mapping):
        raise ValidationError("Condition must be a mapping with a type")
    kind = raw.get("type")
    if kind == "pass":
        return PassCondition()
    if kind == "exists":
        return ExistsCondition()
    if kind == "count":
        return CountCondition(min=_parse_min(raw, kind))
    if kind == "score":
        return ScoreCondition(min=_parse_min(raw, kind))
    raise ValidationError(f"Condition type must be one of: {', '.join(CONDITION_TYPES)}")


def condition_to_dict(condition: QuestCondition) -> dict[str, Any]:
    if isinstance(condition, (CountCondition, ScoreCondition)):
        return {"type": condition.type, "min": condition.min}
    return {"type": condition.type}


def legacy_pass(result: ScanResult) -> bool:
    """Single-tier fallback used by quests that define no levels."""

    return result.flag("present") or result.flag("passed")


def condition_holds(condition: QuestCondition, result: ScanResult | None) -> bool:
    """Evaluate one condition; malformed or missing data never satisfies and never raises."""

    if isinstance(condition, ExistsCondition):
        return result is not None
    if result is None:
        return False
    if isinstance(condition, PassCondition):
        return legacy_pass(result)
    if isinstance(condition, CountCondition):
        count = result.number("count")
        return count is not None and count >= condition.min
    if isinstance(condition, ScoreCondition):
        score = result.number("score")
        return score is not None and score >= condition.min
    assert_never(condition)
