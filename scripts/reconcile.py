"""Operator CLI for identity reconciliation and local password administration.

This module serves as a CLI wrapper around identity_hub.core.service.
"""
from __future__ import annotations
import argparse
import getpass
import json
import sys
from pathlib import Path

SCRIPT_DIR = Path(__file__).parent
PROJECT_ROOT = SCRIPT_DIR.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from identity_hub.config import load_settings
from identity_hub.core.errors import IdentityError, PolicyRejected
from identity_hub.core.service import IdentityService
from scripts import audit


def build_service() -> IdentityService:
    """Wire the service from environment settings (patched in tests)."""
    return IdentityService.from_config(load_settings())


def _read_password(args: argparse.Namespace, prompt: str) -> str:
    if getattr(args, "password_stdin", False):
        return sys.stdin.readline().rstrip("\n")
    return getpass.getpass(prompt)


def _cmd_run(service: IdentityService, args: argparse.Namespace) -> int:
    result = service.run_reconciliation(only_active=args.only_active, force_full=args.force_full)
    if args.json:
        print(json.dumps(result.to_dict(), indent=2, ensure_ascii=False))
    else:
        print(
            f"[reconcile] created={result.created} updated={result.updated} unchanged={result.unchanged} "
            f"deactivated={result.deactivated} skipped={result.skipped} errors={len(result.errors)}"
        )
        for warning in result.warnings:
            print(f"[reconcile] warning: {warning}")
        for error in result.errors:
            print(f"[reconcile] error: ERP {error.external_id}: {error.kind}: {error.message}", file=sys.stderr)
    return 0 if result.ok else 1


def _cmd_status(service: IdentityService, args: argparse.Namespace) -> int:
    status = service.sync_status(check_directory=not args.skip_directory)
    if args.json:
        print(json.dumps(status, indent=2, ensure_ascii=False))
        return 0
    size = status["erp_roster_size"] if status["erp_available"] else "unavailable"
    print(f"[status] erp_roster={size} active={status['accounts']['active']} "
          f"inactive={status['accounts']['inactive']}")
    if "directory" in status:
        directory = status["directory"]
        reach = f"reachable via {directory['strategy']}" if directory["reachable"] else "UNREACHABLE"
        print(f"[status] directory {reach}")
    return 0 if status["erp_available"] else 1


def _cmd_check_password(service: IdentityService, args: argparse.Namespace) -> int:
    password = _read_password(args, "Password to check: ")
    hints = {"username": args.username} if args.username else {}
    result, suggestions = service.validate_password_policy(password, hints)
    print(f"[password] strength={result.strength_label} score={result.strength_score}")
    for message in result.messages:
        print(f"[password] violation: {message}")
    for tip in suggestions:
        print(f"[password] tip: {tip}")
    return 0 if result.is_valid else 1


def _cmd_set_password(service: IdentityService, args: argparse.Namespace) -> int:
    password = _read_password(args, f"New password for {args.username}: ")
    try:
        service.set_local_password(args.username, password, operator=args.operator)
    except PolicyRejected as exc:
        for violation in exc.violations:
            print(f"[password] violation: {violation}", file=sys.stderr)
        return 1
    print(f"[password] Local password set for {args.username}")
    return 0


def _cmd_duplicates(service: IdentityService, args: argparse.Namespace) -> int:
    pairs = service.find_duplicates()
    if not pairs:
        print("[duplicates] No likely duplicate accounts found")
        return 0
    for pair in pairs:
        keeper = service.matcher.suggest_keeper([pair.first, pair.second])
        print(
            f"[duplicates] {pair.first.username} <-> {pair.second.username} "
            f"score={pair.score} keep={keeper.username if keeper else '-'}"
        )
    return 0


def _cmd_audit(args: argparse.Namespace) -> int:
    if args.verify:
        total, valid = audit.verify_audit_log()
        print(f"[audit] {valid}/{total} events with valid signatures")
        return 0 if total == valid else 1
    for event in audit.read_events(username=args.username, event_type=args.event_type, limit=args.limit):
        outcome = "ok" if event.get("success") else "FAILED"
        print(f"[audit] {event.get('timestamp')} {event.get('event_type')} {event.get('username')} "
              f"by={event.get('operator')} {outcome}")
    return 0


COMMANDS = {
    "run": _cmd_run,
    "status": _cmd_status,
    "check-password": _cmd_check_password,
    "set-password": _cmd_set_password,
    "duplicates": _cmd_duplicates,
}


def main() -> None:
    """Command-line entry point."""
    parser = argparse.ArgumentParser(description="Identity reconciliation helper")
    parser.add_argument("--operator", default="cli",
                        help="Operator identifier for audit logs (default: cli)")

    sub = parser.add_subparsers(dest="cmd")

    sr = sub.add_parser("run", help="Reconcile the ERP roster with local accounts and the directory")
    sr.add_argument("--only-active", action="store_true", help="Ignore inactive ERP records")
    sr.add_argument("--force-full", action="store_true", help="Bypass the cached directory roster")
    sr.add_argument("--json", action="store_true", help="Print the full result as JSON")

    st = sub.add_parser("status", help="Show ERP roster size, account counts and directory reachability")
    st.add_argument("--skip-directory", action="store_true", help="Do not bind to the directory")
    st.add_argument("--json", action="store_true")

    sc = sub.add_parser("check-password", help="Score a password against the policy")
    sc.add_argument("--username", default="")
    sc.add_argument("--password-stdin", action="store_true")

    ss = sub.add_parser("set-password", help="Set the password of a local account")
    ss.add_argument("--username", required=True)
    ss.add_argument("--password-stdin", action="store_true")

    sub.add_parser("duplicates", help="List accounts that are probably the same person")

    sa = sub.add_parser("audit", help="Show or verify the identity audit trail")
    sa.add_argument("--username")
    sa.add_argument("--event-type")
    sa.add_argument("--limit", type=int, default=50)
    sa.add_argument("--verify", action="store_true", help="Check event signatures instead of listing")

    args = parser.parse_args()

    if not args.cmd:
        parser.print_help()
        return

    # Reading the audit trail needs no directory or store
    if args.cmd == "audit":
        exit_code = _cmd_audit(args)
        if exit_code:
            sys.exit(exit_code)
        return

    try:
        service = build_service()
    except (RuntimeError, OSError, ValueError) as exc:
        print(f"[reconcile] Configuration error: {exc}", file=sys.stderr)
        sys.exit(1)

    try:
        exit_code = COMMANDS[args.cmd](service, args)
    except IdentityError as exc:
        print(f"[reconcile] {args.cmd} failed: {exc.public_message}", file=sys.stderr)
        audit.safe_log_identity_event(
            "reconcile_run" if args.cmd == "run" else "password_set",
            getattr(args, "username", "") or "*",
            operator=args.operator,
            details={"command": args.cmd, "reason": exc.kind.value},
            success=False,
        )
        sys.exit(1)

    if exit_code:
        sys.exit(exit_code)


if __name__ == "__main__":
    main()
