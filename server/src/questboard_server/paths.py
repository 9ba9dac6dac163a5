from __future__ import annotations

import os
from pathlib import Path


def discover_repo_root(start: Path | None = None) -> Path:
    start_path = (start or Path.cwd()).resolve()
    for candidate in [start_path, *start_path.parents]:
        if (candidate / "quests" / "catalog").is_dir() and (candidate / "quests" / "schema").is_dir():
            return candidate
    raise FileNotFoundError("Could not find repository root with /quests/catalog and /quests/schema.")


def server_home() -> Path:
    configured = os.environ.get("QUESTBOARD_HOME")
    if configured:
        return Path(configured).expanduser().resolve()
    return Path.home() / ".questboard"


def ensure_home_dirs(base: Path) -> dict[str, Path]:
    state = base / "state"
    readiness = state / "readiness"
    scan_runs = state / "scan_runs"
    telemetry = base / "telemetry"
    for path in (base, state, readiness, scan_runs, telemetry):
        path.mkdir(parents=True, exist_ok=True)
    return {"base": base, "state": state, "readiness": readiness, "scan_runs": scan_runs, "telemetry": telemetry}
