"""
Command line entry point for the mail engine.
"""
import argparse
import logging
import sys
from typing import List, Optional

from mail_engine import config
from mail_engine.auth import accounts
from mail_engine.core.conversations import ThreadReconstructor
from mail_engine.core.scheduler import SyncScheduler
from mail_engine.core.sync_manager import SyncEngine
from mail_engine.storage.db import init_db
from mail_engine.utils.errors import MailEngineError, human_friendly_message
from mail_engine.utils.logging_cfg import get_logger, set_log_level, setup_logging


logger = get_logger(__name__)

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="mail-engine", description="Mail synchronization engine")
    parser.add_argument("--debug", action="store_true", help="verbose logging")
    parser.add_argument("--log-level", choices=LOG_LEVELS, default=None,
                        help="override the log level of every handler")
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("init-db", help="create the database schema")
    commands.add_parser("list-accounts", help="show configured accounts")

    sync = commands.add_parser("sync", help="synchronize one account")
    sync.add_argument("account_id", type=int)
    sync.add_argument("--progress", action="store_true", help="print progress records")

    reindex = commands.add_parser("reindex", help="rebuild conversation threads")
    reindex.add_argument("account_id", type=int)

    scheduler = commands.add_parser("run-scheduler", help="sync every account periodically")
    scheduler.add_argument("--interval", type=float, default=None,
                           help="seconds between rounds (default: SYNC_INTERVAL_SECONDS)")
    return parser


def _cmd_list_accounts() -> int:
    for account in accounts.list_accounts():
        status = f"error: {account.sync_error}" if account.sync_error else "ok"
        last = account.last_sync_at.isoformat() if account.last_sync_at else "never"
        print(f"{account.id}\t{account.email_address}\tuser={account.user_id}\t"
              f"last sync {last}\t{status}")
    return 0


def _cmd_sync(account_id: int, progress: bool) -> int:
    engine = SyncEngine()
    try:
        if progress:
            final = None
            for record in engine.stream(account_id):
                print(f"[{record.phase}] {record.folders_done}/{record.folders_total} {record.message}")
                final = record
            return 1 if final is None or final.phase != "complete" else 0
        result = engine.sync(account_id)
    finally:
        engine.shutdown()
    for folder in result.folders:
        line = f"{folder.remote_name}: {folder.new_messages} new, {folder.moved_messages} moved"
        if folder.full_fetch:
            line += " (full fetch)"
        if folder.error:
            line += f" FAILED: {folder.error}"
        print(line)
    return 1 if result.partial else 0


def _cmd_reindex(account_id: int) -> int:
    accounts.require_account(account_id)
    changed = ThreadReconstructor().reindex(account_id)
    print(f"{changed} messages regrouped")
    return 0


def _cmd_run_scheduler(interval: Optional[float]) -> int:
    engine = SyncEngine()
    scheduler = SyncScheduler(engine, interval)
    try:
        scheduler.run_forever()
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
    finally:
        scheduler.stop()
        engine.shutdown()
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main function"""
    args = _build_parser().parse_args(argv)

    # Load environment variables and ensure directories exist
    config.load_env()

    # Initialize database schema
    init_db()

    setup_logging(debug=args.debug)
    if args.log_level:
        set_log_level(getattr(logging, args.log_level))

    try:
        if args.command == "init-db":
            print(f"Database ready at {config.SQLITE_DB_PATH}")
            return 0
        if args.command == "list-accounts":
            return _cmd_list_accounts()
        if args.command == "sync":
            return _cmd_sync(args.account_id, args.progress)
        if args.command == "reindex":
            return _cmd_reindex(args.account_id)
        if args.command == "run-scheduler":
            return _cmd_run_scheduler(args.interval)
    except MailEngineError as e:
        logger.error("%s failed: %s", args.command, e)
        print(human_friendly_message(e), file=sys.stderr)
        return 1
    return 2


if __name__ == "__main__":
    sys.exit(main())
