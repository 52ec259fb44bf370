"""
vaultkube CLI — entry point for all operations.

Usage:
    vaultkube sync [--dry-run] [--item ID]   # One reconciliation, then exit
    vaultkube daemon                         # Scheduler + webhook server
    vaultkube migrate [--dry-run] [--status] # Apply State Store migrations
    vaultkube status [--namespace NS]        # Tracked secrets and recent runs
    vaultkube purge NAMESPACE [NAME]         # Hard-delete state rows
    vaultkube version                        # Show version
"""

from __future__ import annotations

import argparse
import dataclasses
import json
import sys


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="vaultkube",
        description="vaultkube — reconcile vault items into Kubernetes Secrets.",
    )
    parser.add_argument("--version", action="store_true", help="Show version and exit")

    subparsers = parser.add_subparsers(dest="command")

    # sync
    sync_parser = subparsers.add_parser("sync", help="Run one reconciliation and exit")
    sync_parser.add_argument("--dry-run", action="store_true", help="Compute actions only")
    sync_parser.add_argument("--item", type=str, help="Selective sync for one vault item id")
    sync_parser.add_argument(
        "--namespace", action="append", default=[], help="Extra namespace in selective scope"
    )
    sync_parser.add_argument("--json", action="store_true", help="Print the summary as JSON")

    # daemon
    subparsers.add_parser("daemon", help="Run the scheduler and webhook server")

    # migrate
    migrate_parser = subparsers.add_parser("migrate", help="Apply database migrations")
    migrate_parser.add_argument("--dry-run", action="store_true", help="List without applying")
    migrate_parser.add_argument("--status", action="store_true", help="Show applied vs pending")

    # status
    status_parser = subparsers.add_parser("status", help="Show tracked secrets and recent runs")
    status_parser.add_argument("--namespace", type=str, help="Only this namespace")
    status_parser.add_argument("--runs", type=int, default=5, help="Recent runs to show")

    # purge
    purge_parser = subparsers.add_parser("purge", help="Hard-delete State Store rows")
    purge_parser.add_argument("namespace", help="Namespace to purge")
    purge_parser.add_argument("name", nargs="?", help="Single secret name")

    # version
    subparsers.add_parser("version", help="Show version")

    args = parser.parse_args(argv)

    if args.version or args.command == "version":
        from vaultkube import __version__

        print(f"vaultkube {__version__}")
        return 0

    if args.command == "sync":
        return _cmd_sync(args)
    elif args.command == "daemon":
        return _cmd_daemon()
    elif args.command == "migrate":
        return _cmd_migrate(args)
    elif args.command == "status":
        return _cmd_status(args)
    elif args.command == "purge":
        return _cmd_purge(args)
    else:
        parser.print_help()
        return 0


def _cmd_sync(args: argparse.Namespace) -> int:
    from vaultkube.config import get_config
    from vaultkube.sync.daemon import build_coordinator, configure_logging
    from vaultkube.sync.models import RunStatus, TriggerKind

    config = get_config()
    if args.dry_run:
        config = dataclasses.replace(config, sync=dataclasses.replace(config.sync, dry_run=True))
    configure_logging(config.log_level)

    coordinator = build_coordinator(config)
    if args.item:
        summary = coordinator.run_selective(args.item, args.namespace, trigger=TriggerKind.MANUAL)
    else:
        summary = coordinator.run_full(TriggerKind.MANUAL)

    if summary is None:
        print("Sync already in progress.")
        return 2

    if args.json:
        print(json.dumps(summary.to_dict(), indent=2, default=str))
    else:
        print(f"Status: {summary.status}{' (dry run)' if summary.dry_run else ''}")
        for ns, s in sorted(summary.namespaces.items()):
            print(
                f"  {ns:<30} created={s.created} updated={s.updated} "
                f"skipped={s.skipped} failed={s.failed} deleted={s.deleted}"
            )
        for error in summary.all_errors():
            print(f"  ERROR {error}")
    return 1 if summary.status == RunStatus.FAILED else 0


def _cmd_daemon() -> int:
    import asyncio

    from vaultkube.sync.daemon import main as daemon_main

    asyncio.run(daemon_main())
    return 0


def _cmd_migrate(args: argparse.Namespace) -> int:
    from vaultkube.db import migrate

    try:
        if args.status:
            return migrate.main(["status"])
        return migrate.main(["apply", "--dry-run"] if args.dry_run else ["apply"])
    except ConnectionError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def _cmd_status(args: argparse.Namespace) -> int:
    from vaultkube.sync.store import StateStore

    store = StateStore()
    try:
        states = store.list_states(args.namespace)
        runs = store.list_runs(args.runs)
    except ConnectionError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print(f"Tracked secrets: {len(states)}")
    for s in states:
        line = f"  {s.namespace}/{s.secret_name:<40} {s.status:<8} keys={s.data_keys_count}"
        if s.last_error:
            line += f"  error: {s.last_error}"
        print(line)

    print()
    print("Recent runs:")
    for r in runs:
        print(
            f"  {str(r['started_at'])[:19]}  {r['trigger_kind']:<10} {r['status']:<11}"
            f" items={r['items_fetched']}{'  dry-run' if r.get('dry_run') else ''}"
        )
    return 0


def _cmd_purge(args: argparse.Namespace) -> int:
    from vaultkube.sync.store import StateStore

    try:
        count = StateStore().purge(args.namespace, args.name)
    except ConnectionError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    target = f"{args.namespace}/{args.name}" if args.name else args.namespace
    print(f"Purged {count} state row(s) for {target}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
