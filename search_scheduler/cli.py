"""
Command-line interface for the search scheduler.

Provides CLI commands for:
- Starting/stopping the scheduler service
- Adding/enabling/disabling/removing searches
- Triggering a reconciliation pass in the running service
- Viewing search status, run history and stored results
- Setting the data directory and showing configuration
"""

import argparse
import json
import logging
import os
import signal
import sys
import time
import uuid
from datetime import datetime, timedelta
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from config import ENV_DATA_DIR, MissingConfigurationError, get_config, set_data_directory
from models import Search, to_local_naive
from search_scheduler.config import SchedulerConfig
from search_scheduler.jobs import HistoryStore
from search_scheduler.service import SchedulerService, get_scheduler_info, is_scheduler_running
from search_scheduler.store import SearchStore

load_dotenv()

logger = logging.getLogger(__name__)


def setup_logging(log_file: Optional[str] = None, verbose: bool = False,
                  level_name: str = "INFO", max_bytes: int = 10 * 1024 * 1024,
                  backup_count: int = 5):
    """Setup logging configuration."""
    level = logging.DEBUG if verbose else getattr(logging, level_name.upper(), logging.INFO)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(logging.Formatter(
        '%(asctime)s [%(levelname)s] %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    ))

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.addHandler(console_handler)

    # APScheduler logs every timer run at INFO
    logging.getLogger('apscheduler').setLevel(logging.WARNING)

    if log_file:
        log_path = Path(log_file).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = RotatingFileHandler(log_path, maxBytes=max_bytes, backupCount=backup_count)
        file_handler.setLevel(level)
        file_handler.setFormatter(logging.Formatter(
            '%(asctime)s [%(levelname)s] %(name)s: %(message)s'
        ))
        root_logger.addHandler(file_handler)


def _parse_when(value: str) -> datetime:
    """Parse 'now', '+<hours>h' or an ISO timestamp."""
    value = value.strip()
    if value == 'now':
        return datetime.now()
    if value.startswith('+') and value.endswith('h'):
        return datetime.now() + timedelta(hours=float(value[1:-1]))
    return to_local_naive(datetime.fromisoformat(value))


def _get_store() -> SearchStore:
    config = get_config()
    return SearchStore(config.searches_file, config.results_dir)


def _signal_running(sig) -> bool:
    running, pid = is_scheduler_running()
    if not running:
        return False
    os.kill(pid, sig)
    return True


def _notify_running() -> bool:
    """Send SIGHUP so a running scheduler picks up store changes."""
    if not hasattr(signal, 'SIGHUP'):
        return False
    return _signal_running(signal.SIGHUP)


def cmd_start(args):
    """Start the scheduler in the foreground."""
    config = SchedulerConfig(args.config)
    setup_logging(
        log_file=args.log_file or config.logging.file,
        verbose=args.verbose,
        level_name=config.logging.level,
        max_bytes=config.logging.max_bytes,
        backup_count=config.logging.backup_count
    )

    try:
        service = SchedulerService(config_path=args.config)
        service.start()
    except MissingConfigurationError as e:
        logger.error(str(e))
        sys.exit(1)
    except Exception as e:
        logger.error(f"Failed to start scheduler: {e}", exc_info=True)
        sys.exit(1)

    logger.info("Running in foreground mode. Press Ctrl+C to stop.")
    try:
        while service.is_running():
            time.sleep(1)
    except (KeyboardInterrupt, SystemExit):
        logger.info("Shutting down...")
        service.stop()


def cmd_stop(args):
    """Stop the running scheduler."""
    setup_logging(verbose=args.verbose)

    running, pid = is_scheduler_running()
    if not running:
        logger.warning("Scheduler does not appear to be running")
        return

    logger.info(f"Stopping scheduler (PID: {pid})...")
    os.kill(pid, signal.SIGTERM)

    for _ in range(10):
        time.sleep(1)
        if not is_scheduler_running()[0]:
            logger.info("Scheduler stopped successfully")
            return

    logger.warning("Scheduler did not stop gracefully, sending SIGKILL")
    os.kill(pid, signal.SIGKILL)


def cmd_refresh(args):
    """Ask the running scheduler to reconcile with the search store."""
    setup_logging(verbose=args.verbose)

    if not hasattr(signal, 'SIGHUP'):
        logger.error("Refresh requires SIGHUP, which this platform does not support")
        sys.exit(1)
    if _signal_running(signal.SIGHUP):
        logger.info("Refresh requested")
    else:
        logger.warning("Scheduler is not running; changes apply on next start")


def cmd_status(args):
    """Show scheduler status."""
    info = get_scheduler_info()
    if not info:
        print("\n  Status:     \033[91m○ Not Running\033[0m")
        print("\n  Start the scheduler with: search-scheduler start")
        return

    print(f"\n  Status:     \033[92m● Running\033[0m")
    print(f"  PID:        {info.get('pid')}")
    print(f"  Started:    {info.get('started_at', 'N/A')}")
    print(f"  Data Dir:   {info.get('data_dir', 'N/A')}")
    print(f"  Log File:   {info.get('log_file', 'N/A')}")
    print(f"  Tick:       {info.get('tick_interval_ms', 'N/A')}ms\n")


def cmd_list(args):
    """List persisted searches."""
    searches = _get_store().list_searches()
    if not searches:
        print("No searches configured")
        return

    print(f"\n=== Searches ({len(searches)}) ===\n")
    for search in searches:
        status = "✓" if search.enabled else "✗"
        print(f"{status} {search.id}  {search.name}")
        print(f"    Window:   {search.start_date} -> {search.end_date}")
        print(f"    Every:    {search.frequency}h")
        if search.keywords:
            print(f"    Keywords: {', '.join(search.keywords)}")
        print(f"    Next Run: {search.next_run or '-'}")
        if search.last_run:
            print(f"    Last Run: {search.last_run} ({search.last_duration_ms}ms)")
        print()


def cmd_add(args):
    """Add a new search."""
    setup_logging(verbose=args.verbose)

    try:
        search = Search(
            id=args.id or uuid.uuid4().hex[:12],
            name=args.name,
            start_date=_parse_when(args.start),
            end_date=_parse_when(args.end),
            frequency=args.frequency,
            keywords=args.keywords or [],
            negative_keywords=args.exclude or [],
            max_results=args.max_results
        )
        if search.frequency <= 0:
            raise ValueError("--frequency must be positive")
        if search.end_date <= search.start_date:
            raise ValueError("--end must be after --start")

        _get_store().add_search(search)
        logger.info(f"Added search '{search.name}' ({search.id})")
        if _notify_running():
            logger.info("Running scheduler notified")

    except ValueError as e:
        logger.error(f"Failed to add search: {e}")
        sys.exit(1)


def _update_and_notify(search_id: str, action: str, **fields):
    try:
        _get_store().update_search(search_id, **fields)
    except KeyError:
        logger.error(f"Search '{search_id}' not found")
        sys.exit(1)
    logger.info(f"{action} search '{search_id}'")
    _notify_running()


def cmd_enable(args):
    """Enable a search."""
    setup_logging(verbose=args.verbose)
    _update_and_notify(args.id, "Enabled", enabled=True)


def cmd_disable(args):
    """Disable a search."""
    setup_logging(verbose=args.verbose)
    _update_and_notify(args.id, "Disabled", enabled=False, next_run=None)


def cmd_remove(args):
    """Delete a search."""
    setup_logging(verbose=args.verbose)

    if not _get_store().remove_search(args.id):
        logger.error(f"Search '{args.id}' not found")
        sys.exit(1)
    logger.info(f"Removed search '{args.id}'")
    _notify_running()


def cmd_history(args):
    """Show search run history."""
    history_store = HistoryStore(get_config().history_file)
    history = history_store.get_history(
        job_id=args.id,
        status=args.status,
        limit=None if args.show_all else args.limit
    )

    if args.json:
        print(json.dumps(history, indent=2, default=str))
        return

    if not history:
        print("\nNo run history found.")
        return

    print(f"\n{'SEARCH':<16} {'RUN':<10} {'STARTED':<20} {'SECONDS':>8}  STATUS")
    for record in history:
        started = (record.get('start_time') or '')[:19].replace('T', ' ')
        elapsed = record.get('elapsed_seconds')
        print(
            f"{record.get('job_id', '')[:16]:<16} {record.get('run_id', ''):<10} "
            f"{started:<20} {elapsed if elapsed is not None else '-':>8}  {record.get('status')}"
        )
        if args.verbose and record.get('error'):
            print(f"    error: {record['error']}")
    print()


def cmd_set_data_dir(args):
    """Point the scheduler at a new data directory and remember it."""
    if os.getenv(ENV_DATA_DIR):
        print(f"Note: {ENV_DATA_DIR} is set and takes precedence over the saved directory")
    config = set_data_directory(args.path)
    print(f"✓ Data directory set to {config.data_dir}")


def cmd_results(args):
    """Show stored poll results for a search."""
    results = _get_store().get_search_results(args.id, limit=args.limit)

    if args.json:
        print(json.dumps(results, indent=2, default=str))
        return

    if not results:
        print(f"\nNo results stored for search '{args.id}'.")
        return

    print(f"\n{'FETCHED':<20} {'RESULTS':>8} {'MS':>8}")
    for record in results:
        fetched = (record.get('fetched_at') or '')[:19].replace('T', ' ')
        print(f"{fetched:<20} {record.get('result_count', 0):>8} {record.get('duration_ms', '-'):>8}")
    print()


def cmd_init(args):
    """Write a default scheduler configuration."""
    config = SchedulerConfig(args.config)
    if config.config_path.exists():
        print(f"Configuration already exists at {config.config_path}")
        return
    config.save()
    print(f"✓ Wrote default configuration to {config.config_path}")


def cmd_show_config(args):
    """Show the effective configuration."""
    config = SchedulerConfig(args.config)
    data_config = get_config()

    print("Current configuration:")
    print(f"  Config file:     {config.config_path}")
    print(f"  Data directory:  {data_config.data_dir}")
    print(f"  Searches:        {data_config.searches_file}")
    print(f"  History:         {data_config.history_file}")
    print(f"  Log file:        {config.logging.file}")
    print(f"  Tick interval:   {config.timing.tick_interval_ms}ms")
    print(f"  Reconcile every: {config.timing.reconcile_interval_seconds}s")
    print(f"  Workers:         {config.timing.max_workers}")
    print(f"  Search API:      {config.search_api.base_url}")
    print(f"  Required env:    {', '.join(config.required_env) or '-'}")

    errors = config.validate()
    if errors:
        print("\nValidation errors:")
        for error in errors:
            print(f"  - {error}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='search-scheduler',
        description='Recurring search scheduler'
    )
    parser.add_argument('--config', type=str, help='Path to scheduler configuration file')
    parser.add_argument('--verbose', '-v', action='store_true', help='Verbose output')

    subparsers = parser.add_subparsers(dest='command', help='Commands')

    start_parser = subparsers.add_parser('start', help='Start the scheduler in the foreground')
    start_parser.add_argument('--log-file', type=str, help='Log file path')
    start_parser.set_defaults(func=cmd_start)

    stop_parser = subparsers.add_parser('stop', help='Stop the running scheduler')
    stop_parser.set_defaults(func=cmd_stop)

    refresh_parser = subparsers.add_parser('refresh', help='Reconcile the running scheduler with the store')
    refresh_parser.set_defaults(func=cmd_refresh)

    status_parser = subparsers.add_parser('status', help='Show scheduler status')
    status_parser.set_defaults(func=cmd_status)

    list_parser = subparsers.add_parser('list', help='List searches')
    list_parser.set_defaults(func=cmd_list)

    add_parser = subparsers.add_parser('add', help='Add a new search')
    add_parser.add_argument('name', help='Search name')
    add_parser.add_argument('--id', type=str, help='Search id (generated if omitted)')
    add_parser.add_argument('--keywords', '-k', nargs='+', help='Keywords to search for')
    add_parser.add_argument('--exclude', nargs='+', help='Negative keywords')
    add_parser.add_argument('--start', type=str, default='now',
                            help="Window start: 'now', '+<hours>h' or ISO time (default: now)")
    add_parser.add_argument('--end', type=str, required=True,
                            help="Window end: '+<hours>h' or ISO time")
    add_parser.add_argument('--frequency', '-f', type=float, required=True,
                            help='Hours between runs (fractional allowed)')
    add_parser.add_argument('--max-results', type=int, default=100,
                            help='Maximum results per run (default: 100)')
    add_parser.set_defaults(func=cmd_add)

    for name, func, help_text in (
        ('enable', cmd_enable, 'Enable a search'),
        ('disable', cmd_disable, 'Disable a search'),
        ('remove', cmd_remove, 'Delete a search'),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument('id', help='Search id')
        sub.set_defaults(func=func)

    history_parser = subparsers.add_parser('history', help='View run history')
    history_parser.add_argument('--id', type=str, help='Filter by search id')
    history_parser.add_argument('--status', '-s', type=str,
                                choices=['success', 'failed', 'running'],
                                help='Filter by status')
    history_parser.add_argument('--limit', '-n', type=int, default=20,
                                help='Maximum number of entries to show (default: 20)')
    history_parser.add_argument('--all', '-a', dest='show_all', action='store_true',
                                help='Show all history entries')
    history_parser.add_argument('--json', action='store_true', help='Output in JSON format')
    history_parser.set_defaults(func=cmd_history)

    results_parser = subparsers.add_parser('results', help='View stored poll results of a search')
    results_parser.add_argument('id', help='Search id')
    results_parser.add_argument('--limit', '-n', type=int, default=10,
                                help='Maximum number of results to show (default: 10)')
    results_parser.add_argument('--json', action='store_true', help='Output in JSON format')
    results_parser.set_defaults(func=cmd_results)

    set_dir_parser = subparsers.add_parser('set-data-dir', help='Set and save the data directory')
    set_dir_parser.add_argument('path', help='New data directory')
    set_dir_parser.set_defaults(func=cmd_set_data_dir)

    init_parser = subparsers.add_parser('init', help='Write a default configuration file')
    init_parser.set_defaults(func=cmd_init)

    show_config_parser = subparsers.add_parser('show-config', help='Show configuration')
    show_config_parser.set_defaults(func=cmd_show_config)

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    args.func(args)


if __name__ == '__main__':
    main()
