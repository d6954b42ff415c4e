#!/usr/bin/env python3
"""
ClassSync command line interface.

    classsync sync       --user U --week 2024-09-02 --token-file token.json
    classsync preview    --user U --week 2024-09-02 --token-file token.json
    classsync force-sync --user U [--week 2024-09-02] --token-file token.json
    classsync recover    --user U --week 2024-09-02 --token-file token.json
    classsync cleanup    --user U --week 2024-09-02 --token-file token.json
    classsync sync-all   --user U --token-file token.json

The token file holds {"access_token", "refresh_token", "expires_at"} and is
rewritten whenever the access token gets refreshed.
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

from classsync import config
from classsync.core.db_manager import DatabaseManager
from classsync.core.errors import ClassSyncError
from classsync.core.models import AccessCredential, parse_week_start
from classsync.sync.engine import ScheduleSyncEngine, SyncReport

COMMANDS = ['sync', 'preview', 'force-sync', 'recover', 'cleanup', 'sync-all']
WEEK_REQUIRED = {'sync', 'preview', 'recover', 'cleanup'}


def load_credential(path: Path) -> AccessCredential:
    with open(path, 'r') as f:
        return AccessCredential.from_dict(json.load(f))


def save_credential(path: Path, credential: AccessCredential):
    with open(path, 'w') as f:
        json.dump(credential.to_dict(), f, indent=2)


def run_command(engine: ScheduleSyncEngine, command: str, user_id: str,
                week_start, credential: AccessCredential) -> SyncReport:
    if command == 'sync':
        return engine.run_sync(user_id, week_start, credential)
    if command == 'preview':
        return engine.preview(user_id, week_start, credential)
    if command == 'force-sync':
        return engine.force_resync(user_id, credential, week_start=week_start)
    if command == 'recover':
        return engine.recover(user_id, week_start, credential)
    if command == 'cleanup':
        return engine.cleanup_orphans(user_id, week_start, credential)
    if command == 'sync-all':
        return engine.sync_all(user_id, credential)
    raise ValueError(f"Unknown command: {command}")


def print_report(report: SyncReport):
    print(f"\n📋 {report.operation.upper()} ({', '.join(w.isoformat() for w in report.week_starts) or '-'})")
    print("=" * 60)

    for week, plan in report.plans.items():
        if report.operation == 'preview':
            print(json.dumps({week.isoformat(): plan.to_dict()}, indent=2, ensure_ascii=False))

    counts = report.summary.counts()
    for name, value in counts.items():
        if value:
            print(f"   {name}: {value}")

    if report.reauth_required:
        print("\n❌ Google account needs to be re-authorized")
    elif report.auth_error:
        print("\n⚠️  Could not obtain an access token, try again later")
    elif report.error:
        print(f"\n❌ {report.message}")
    else:
        print(f"\n✅ {report.message}")


def main(argv: Optional[List[str]] = None, engine: ScheduleSyncEngine = None) -> int:
    """Main function."""
    parser = argparse.ArgumentParser(description='Sync a weekly class schedule to Google Calendar')
    parser.add_argument('command', choices=COMMANDS, help='Operation to run')
    parser.add_argument('--user', required=True, help='User id the schedule belongs to')
    parser.add_argument('--week', help='Any date in the target week (YYYY-MM-DD)')
    parser.add_argument('--token-file', required=True, type=Path,
                        help='JSON file with access_token, refresh_token, expires_at')
    parser.add_argument('--database-url', default=config.DATABASE_URL,
                        help='SQLAlchemy database URL')
    parser.add_argument('--log-level', default=config.LOG_LEVEL,
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
                        help='Set logging level')
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper()),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    if args.command in WEEK_REQUIRED and not args.week:
        parser.error(f"--week is required for {args.command}")

    try:
        week_start = parse_week_start(args.week) if args.week else None
        credential = load_credential(args.token_file)
    except (ClassSyncError, OSError, ValueError) as e:
        print(f"❌ {e}")
        return 2

    if engine is None:
        store = DatabaseManager(args.database_url)
        store.init_schema()
        engine = ScheduleSyncEngine(store)

    report = run_command(engine, args.command, args.user, week_start, credential)

    if report.credential and report.credential != credential:
        save_credential(args.token_file, report.credential)
        logging.getLogger('classsync-cli').info(f"🔄 Saved refreshed token to {args.token_file}")

    print_report(report)

    if report.reauth_required:
        return 3
    if not report.ok or report.summary.failed:
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())
