"""Operator CLI for local roles, remote group sync and the login audit trail.

Examples:
    python scripts/roles.py seed --role HR --role MANAGER_L1
    python scripts/roles.py replace --user-id 7 --roles ADMIN USER
    python scripts/roles.py apply --user-id 7 --add HR --remove USER
    python scripts/roles.py resync --user-id 7
    python scripts/roles.py audit --user-id 7 --limit 20
"""
from __future__ import annotations
import argparse
import os
import sys
from pathlib import Path

SCRIPT_DIR = Path(__file__).parent
PROJECT_ROOT = SCRIPT_DIR.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from authservice.config import load_settings
from authservice.core.exceptions import AuthServiceError
from authservice.core.reconciler import ReconcileResult, RoleReconciler
from authservice.directory import build_directory
from authservice.store import IdentityStore, build_engine, build_session_factory, init_db


def _print_result(label: str, result: ReconcileResult) -> None:
    print(f"[{label}] user={result.user_id} roles={','.join(result.roles) or '-'}")
    if result.local_added or result.local_removed:
        print(f"[{label}] local: +{result.local_added} -{result.local_removed}")
    if result.remote_added or result.remote_removed:
        print(f"[{label}] remote: +{result.remote_added} -{result.remote_removed}")
    for error in result.remote_failures:
        print(f"[{label}] remote failure: {error}", file=sys.stderr)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Staff auth role helper")
    parser.add_argument("--database-url", default=os.environ.get("DATABASE_URL"))
    parser.add_argument("--operator", default="automation",
                        help="Operator identifier recorded on role assignments (default: automation)")
    parser.add_argument("--no-sync", action="store_true", help="Skip remote group directory calls")

    sub = parser.add_subparsers(dest="cmd")

    seed = sub.add_parser("seed")
    seed.add_argument("--role", action="append", default=[], help="Extra role to create (repeatable)")

    sr = sub.add_parser("replace")
    sr.add_argument("--user-id", type=int, required=True)
    sr.add_argument("--roles", nargs="+", required=True)

    sa = sub.add_parser("apply")
    sa.add_argument("--user-id", type=int, required=True)
    sa.add_argument("--add", nargs="*", default=[])
    sa.add_argument("--remove", nargs="*", default=[])

    ss = sub.add_parser("resync")
    ss.add_argument("--user-id", type=int, required=True)

    sl = sub.add_parser("audit")
    sl.add_argument("--user-id", type=int)
    sl.add_argument("--limit", type=int, default=50)

    return parser


def main(argv=None, directory=None) -> int:
    """Command-line entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.cmd:
        parser.print_help()
        return 0

    cfg = load_settings()
    engine = build_engine(args.database_url or cfg.database_url)
    init_db(engine)
    store = IdentityStore(build_session_factory(engine)())

    if directory is None and cfg.authz.sync_groups and not args.no_sync and args.cmd in {"replace", "apply", "resync"}:
        directory = build_directory(cfg)
    authz = cfg.authz
    reconciler = RoleReconciler(store, None if args.no_sync else directory, authz)

    try:
        if args.cmd == "seed":
            with store.transaction():
                store.seed_default_roles()
                store.ensure_role(authz.default_role, "Default role for new users")
                for name in args.role:
                    store.ensure_role(name.strip())
            print(f"[seed] roles: {', '.join(role.name for role in store.list_roles())}")
        elif args.cmd == "replace":
            _print_result("replace", reconciler.replace_all(args.user_id, args.roles, args.operator))
        elif args.cmd == "apply":
            _print_result("apply", reconciler.apply_incremental(args.user_id, args.add, args.remove, args.operator))
        elif args.cmd == "resync":
            _print_result("resync", reconciler.resync(args.user_id))
        elif args.cmd == "audit":
            for event in store.list_audit_events(user_id=args.user_id, limit=args.limit):
                status = "ok" if event.success else f"failed ({event.failure_reason})"
                print(f"{event.event_time.isoformat()} {event.event_type:<20} {event.email or '-'} {status}")
    except AuthServiceError as e:
        print(f"[{args.cmd}] Error: {e}", file=sys.stderr)
        return 1
    finally:
        store.close()
        engine.dispose()

    return 0


if __name__ == "__main__":
    sys.exit(main())
