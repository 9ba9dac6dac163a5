from __future__ import annotations

"""Append-only JSONL event log with sanitization of free-form values."""

import json
import platform
import re
import subprocess
import sys
import unicodedata
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from importlib.metadata import PackageNotFoundError, version as package_version
from pathlib import Path
from typing import Any


SCHEMA_VERSION = "0.1"
VALID_EVENT_TYPES = {
    "server.started",
    "scan.ingested",
    "readiness.computed",
    "quest.approved",
    "quest.approval_revoked",
    "risk.flagged",
}
VALID_ACTOR_KINDS = {"human", "ci", "system"}
VALID_SOURCES = {"cli", "api"}
MAX_STRING_LENGTH = 200

SECRET_VALUE_PATTERNS = [
    re.compile(r"\bgh[pousr]_[A-Za-z0-9]{20,}\b"),
    re.compile(r"\bgithub_pat_[A-Za-z0-9_]{20,}\b"),
    re.compile(r"\bsk-[A-Za-z0-9]{16,}\b"),
    re.compile(r"\bAKIA[0-9A-Z]{16}\b"),
    re.compile(r"\b(?:Bearer|Token)\s+[A-Za-z0-9\-_\.]{16,}\b", re.IGNORECASE),
    re.compile(r"-----BEGIN (?:RSA|EC|OPENSSH|PRIVATE) KEY-----"),
]


def _utc_now_rfc3339() -> str:
    return datetime.now(tz=UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def _safe_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=True)


def _strip_control_chars(value: str) -> str:
    return "".join(ch for ch in value if not unicodedata.category(ch).startswith("C"))


def is_secret_like_text(text: str) -> bool:
    return any(pattern.search(text) for pattern in SECRET_VALUE_PATTERNS)


@dataclass(frozen=True)
class BuildInfo:
    """Static build/runtime metadata attached to every event."""

    server_version: str
    git_sha: str | None
    python_version: str
    platform: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "server_version": self.server_version,
            "git_sha": self.git_sha,
            "python_version": self.python_version,
            "platform": self.platform,
        }


def _sanitize_text(value: str, *, empty_fallback: str | None = None) -> tuple[str, bool]:
    cleaned = _strip_control_chars(value).strip()
    if not cleaned and empty_fallback is not None:
        cleaned = empty_fallback
    if is_secret_like_text(cleaned):
        return "[redacted]", True
    if len(cleaned) > MAX_STRING_LENGTH:
        return f"{cleaned[:MAX_STRING_LENGTH]}...[truncated]", True
    return cleaned, False


def sanitize_actor_id(value: Any) -> str:
    """Normalize actor identity to a safe string and redact risky payloads."""

    text = "unknown" if value is None else str(value)
    sanitized, _ = _sanitize_text(text, empty_fallback="unknown")
    return sanitized or "unknown"


def sanitize_event_data(data: Any) -> tuple[Any, int]:
    """Recursively sanitize event payloads; returns the number of altered values."""

    if isinstance(data, dict):
        sanitized: dict[str, Any] = {}
        altered = 0
        for key, value in data.items():
            key_text, key_altered = _sanitize_text(str(key), empty_fallback="")
            value_sanitized, value_altered = sanitize_event_data(value)
            sanitized[key_text] = value_sanitized
            altered += int(key_altered) + value_altered
        return sanitized, altered
    if isinstance(data, (list, tuple)):
        items: list[Any] = []
        altered = 0
        for item in data:
            item_sanitized, item_altered = sanitize_event_data(item)
            items.append(item_sanitized)
            altered += item_altered
        return items, altered
    if data is None or isinstance(data, (int, float, bool)):
        return data, 0
    text, changed = _sanitize_text(str(data), empty_fallback="")
    return text, int(changed)


def detect_git_sha(repo_root: Path) -> str | None:
    """Best-effort short commit hash for build provenance metadata."""

    try:
        output = subprocess.run(  # noqa: S603
            ["git", "rev-parse", "--short", "HEAD"],
            cwd=repo_root,
            check=False,
            capture_output=True,
            text=True,
            timeout=2,
        )
    except (OSError, subprocess.SubprocessError):
        return None
    value = output.stdout.strip()
    if output.returncode != 0 or not value:
        return None
    return value


def detect_server_version() -> str:
    try:
        return package_version("questboard")
    except PackageNotFoundError:
        return "0.1.0"


class TelemetryLogger:
    """Append-only event logger."""

    def __init__(self, events_path: Path, repo_root: Path) -> None:
        self.events_path = events_path
        self.events_path.parent.mkdir(parents=True, exist_ok=True)
        self.build = BuildInfo(
            server_version=detect_server_version(),
            git_sha=detect_git_sha(repo_root),
            python_version=sys.version.split()[0],
            platform=platform.platform(),
        )

    def _append_jsonl(self, payload: dict[str, Any]) -> None:
        with self.events_path.open("a", encoding="utf-8", newline="\n") as handle:
            handle.write(_safe_json(payload))
            handle.write("\n")

    def _base_event(
        self,
        *,
        event_type: str,
        actor: str,
        actor_id: str | None,
        source: str,
        trace_id: str | None,
        data: dict[str, Any],
    ) -> dict[str, Any]:
        if event_type not in VALID_EVENT_TYPES:
            data = {"reason": "invalid_event_type", "invalid_event_type": sanitize_actor_id(event_type)}
            event_type = "risk.flagged"
        kind = actor if actor in VALID_ACTOR_KINDS else "system"
        return {
            "schema_version": SCHEMA_VERSION,
            "event_id": str(uuid.uuid4()),
            "ts": _utc_now_rfc3339(),
            "event_type": event_type,
            "actor": {"kind": kind, "id": sanitize_actor_id(actor_id)},
            "source": source if source in VALID_SOURCES else "cli",
            "trace_id": sanitize_actor_id(trace_id) if trace_id else None,
            "build": self.build.to_dict(),
            "data": data,
        }

    def log_event(
        self,
        event_type: str,
        *,
        actor: str,
        source: str,
        data: dict[str, Any],
        actor_id: str | None = None,
        trace_id: str | None = None,
    ) -> None:
        """Write one sanitized event; failures are reported on stderr and never raised."""

        try:
            sanitized, altered = sanitize_event_data(data)
            if altered:
                sanitized["_sanitized_fields"] = altered
            self._append_jsonl(
                self._base_event(
                    event_type=event_type,
                    actor=actor,
                    actor_id=actor_id,
                    source=source,
                    trace_id=trace_id,
                    data=sanitized,
                )
            )
        except Exception as exc:  # noqa: BLE001
            print(f"[telemetry] failed to append event: {exc}", file=sys.stderr)

    def iter_events(self) -> list[dict[str, Any]]:
        if not self.events_path.exists():
            return []
        events: list[dict[str, Any]] = []
        with self.events_path.open("r", encoding="utf-8") as handle:
            for line in handle:
                line = line.strip()
                if not line:
                    continue
                try:
                    payload = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if isinstance(payload, dict):
                    events.append(payload)
        return events

    def status(self) -> dict[str, Any]:
        events = self.iter_events()
        counts: dict[str, int] = {}
        for event in events:
            event_type = str(event.get("event_type", "unknown"))
            counts[event_type] = counts.get(event_type, 0) + 1
        return {
            "events_path": str(self.events_path),
            "event_count": len(events),
            "events_by_type": dict(sorted(counts.items())),
        }
