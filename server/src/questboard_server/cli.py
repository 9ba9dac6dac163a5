from __future__ import annotations

import argparse
import json
import os
import sys
from pathlib import Path
from uuid import uuid4

import uvicorn
import yaml

from .api import create_app
from .errors import DomainError
from .paths import discover_repo_root
from .service import ReadinessService


def _service() -> ReadinessService:
    repo_root = discover_repo_root()
    return ReadinessService.create(repo_root)


def _findings_to_text(findings: list[dict[str, str]]) -> str:
    if not findings:
        return "No findings."
    lines: list[str] = []
    for finding in findings:
        lines.append(f"[{finding['severity']}] {finding['rule_id']} {finding['file']} {finding['path']} :: {finding['message']}")
        lines.append(f"  fix: {finding['suggested_fix']}")
    return "\n".join(lines)


def _load_report(path: Path) -> dict:
    text = path.read_text(encoding="utf-8")
    if path.suffix in {".yaml", ".yml"}:
        return yaml.safe_load(text)
    return json.loads(text)


def main() -> int:
    parser = argparse.ArgumentParser(description="Questboard readiness CLI")
    sub = parser.add_subparsers(dest="command", required=True)
    default_actor_id = os.environ.get("QUESTBOARD_ACTOR_ID", "unknown")

    api_cmd = sub.add_parser("api", help="Run local API server")
    api_cmd.add_argument("--host", default="127.0.0.1")
    api_cmd.add_argument("--port", type=int, default=8000)

    ingest_cmd = sub.add_parser("ingest", help="Ingest one AI-readiness scan report")
    ingest_cmd.add_argument("--report", required=True, help="Path to a JSON or YAML report")
    ingest_cmd.add_argument("--actor-id", default=default_actor_id, help="Telemetry actor identifier")

    readiness_cmd = sub.add_parser("readiness", help="Print the readiness snapshot of a repo")
    readiness_cmd.add_argument("--repo-id", required=True)

    approve_cmd = sub.add_parser("approve", help="Manually approve a quest for a repo")
    approve_cmd.add_argument("--repo-id", required=True)
    approve_cmd.add_argument("--team-id", required=True)
    approve_cmd.add_argument("--quest", required=True, help="Quest key")
    approve_cmd.add_argument("--approved-by", default=default_actor_id, help="Approving user id")
    approve_cmd.add_argument("--level", type=int, default=None, help="Achieved level (default 3)")

    revoke_cmd = sub.add_parser("revoke", help="Revoke a manual quest approval")
    revoke_cmd.add_argument("--repo-id", required=True)
    revoke_cmd.add_argument("--quest", required=True, help="Quest key")
    revoke_cmd.add_argument("--actor-id", default=default_actor_id, help="Telemetry actor identifier")

    sub.add_parser("quests", help="List active quests")

    scan_runs_cmd = sub.add_parser("scan-runs", help="List stored scan runs of a repo")
    scan_runs_cmd.add_argument("--repo-id", required=True)

    team_cmd = sub.add_parser("team", help="Show a team and its repos")
    team_cmd.add_argument("--team-id", required=True)

    lint_cmd = sub.add_parser("catalog-lint", help="Validate quest catalog files")
    lint_cmd.add_argument("--format", choices=["text", "json"], default="text", help="Output format.")

    telemetry_cmd = sub.add_parser("telemetry", help="Telemetry operations")
    telemetry_sub = telemetry_cmd.add_subparsers(dest="telemetry_command", required=True)
    telemetry_sub.add_parser("status", help="Show telemetry status")

    args = parser.parse_args()
    service = _service()
    trace_id = f"cli:{uuid4()}"

    if args.command == "api":
        app = create_app(service)
        uvicorn.run(app, host=args.host, port=args.port, log_level="info")
        return 0

    if args.command == "catalog-lint":
        findings = service.validate_catalog()
        if args.format == "json":
            print(json.dumps(findings, indent=2))
        else:
            print(_findings_to_text(findings))
        return 1 if any(item["severity"] == "ERROR" for item in findings) else 0

    if args.command == "telemetry":
        if args.telemetry_command == "status":
            print(json.dumps(service.telemetry_status(), indent=2))
            return 0
        return 1

    try:
        if args.command == "ingest":
            result = service.ingest_scan(
                _load_report(Path(args.report)),
                source="cli",
                actor="ci",
                actor_id=args.actor_id,
                trace_id=trace_id,
            )
        elif args.command == "readiness":
            result = service.get_readiness(args.repo_id)
        elif args.command == "approve":
            result = service.approve_quest(
                args.repo_id,
                args.team_id,
                args.quest,
                args.approved_by,
                args.level,
                source="cli",
                trace_id=trace_id,
            )
        elif args.command == "revoke":
            result = service.revoke_quest_approval(
                args.repo_id,
                args.quest,
                actor_id=args.actor_id,
                source="cli",
                trace_id=trace_id,
            )
        elif args.command == "quests":
            result = service.list_quests()
        elif args.command == "scan-runs":
            result = service.list_scan_runs(args.repo_id)
        elif args.command == "team":
            result = service.get_team(args.team_id)
        else:
            return 1
    except DomainError as exc:
        print(json.dumps(exc.to_dict(), indent=2), file=sys.stderr)
        return 1

    print(json.dumps(result, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
