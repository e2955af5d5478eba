#!/usr/bin/env python3
"""
Command line interface of the time-series ingestion system.
Creates, lists, shows and restarts import sessions.
"""
import argparse
import sys

from tqdm import tqdm

from .config import PROFILES, IngestConfig
from .errors import ConfigurationError, IngestionConflictError
from .logger import LogLevel, StructuredLogger, get_logger, set_logger
from .model import ImportStatus
from .service import SessionManager

# Exit codes
EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFLICT = 2
EXIT_INTERRUPTED = 130


def follow_session(manager: SessionManager, session_id: int) -> int:
    """Show a progress bar until the session run ends, then print its stats."""
    session = manager.session(session_id)
    poll = manager.config.poll_interval

    with tqdm(desc=f"Session {session_id}", unit="item") as bar:
        while not manager.wait(session_id, timeout=poll):
            to_import, imported, in_error = session.counts()
            run = session.stats.current_run
            bar.total = max(session.stats.items_initial, 1)
            done = imported + in_error
            if run is not None:
                bar.total = max(run.items_to_import, 1)
                done = run.items_imported + run.items_in_error
            bar.n = done
            bar.set_postfix(status=session.status.value, left=to_import)
            bar.refresh()

    print(session.stats.format_summary())

    if session.status == ImportStatus.COMPLETED:
        _, imported, in_error = session.counts()
        get_logger().success("Session completed", session=session_id, imported=imported, in_error=in_error)
        return EXIT_OK

    get_logger().error("Session ended", session=session_id, status=session.status.value)
    for message in session.errors[-5:]:
        get_logger().error(message)
    return EXIT_FAILURE


def create_command(manager: SessionManager, args) -> int:
    """Create (or reuse) a session and follow its ingestion."""
    logger = get_logger()
    logger.section("IMPORT SESSION")

    session_id = manager.create(
        dataset=args.dataset,
        description=args.description,
        root_path=args.root,
        path_pattern=args.pattern,
        func_id_pattern=args.funcid,
        serializer=args.serializer,
        importer=args.importer,
    )
    logger.info("Session", id=session_id)
    return follow_session(manager, session_id)


def list_command(manager: SessionManager, args) -> int:
    """One line per known session."""
    sessions = manager.list()
    if not sessions:
        print("No session")
        return EXIT_OK

    print(f"{'ID':>4}  {'DATASET':<24} {'STATUS':<10} {'TO IMPORT':>9} {'IMPORTED':>9} {'IN ERROR':>9}")
    for snap in sessions:
        print(
            f"{snap['id']:>4}  {snap['dataset']:<24} {snap['status']:<10} "
            f"{len(snap['toImport']):>9} {len(snap['imported']):>9} {len(snap['inError']):>9}"
        )
    return EXIT_OK


def show_command(manager: SessionManager, args) -> int:
    """Stats and error log of one session."""
    session = manager.session(args.id)
    if session is None:
        get_logger().error("Unknown session", id=args.id)
        return EXIT_FAILURE

    print(f"Session {session.id} - {session.dataset} ({session.status.value})")
    print(f"  root: {session.root_path}")
    print(f"  pattern: {session.path_pattern}")
    print(f"  funcId: {session.func_id_pattern}")
    print(session.stats.format_summary())

    if session.errors:
        print("Errors:")
        for message in session.errors:
            print(f"  {message}")

    failed = session.items_in_error
    if failed:
        print(f"Items in error ({len(failed)}):")
        for item in failed:
            last = item.errors[-1] if item.errors else ""
            print(f"  [{item.status.value}] {item.func_id}: {last}")
    return EXIT_OK


def restart_command(manager: SessionManager, args) -> int:
    """Re-queue the items in error and follow the new run."""
    get_logger().section("RESTART SESSION")
    try:
        requeued = manager.restart(args.id, force=args.force)
    except KeyError:
        get_logger().error("Unknown session", id=args.id)
        return EXIT_FAILURE
    get_logger().info("Items re-queued", count=requeued)
    return follow_session(manager, args.id)


COMMANDS = {
    "create": create_command,
    "list": list_command,
    "show": show_command,
    "restart": restart_command,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Bulk time-series ingestion",
        formatter_class=argparse.RawDescriptionHelpFormatter
    )

    # Global options
    parser.add_argument(
        '--production',
        action='store_true',
        help='Use production environment'
    )
    parser.add_argument(
        '--verbose',
        action='store_true',
        help='Enable verbose logging'
    )
    parser.add_argument(
        '--profile',
        choices=list(PROFILES) + ['custom'],
        default='balanced',
        help='Performance profile (workers, chunk size)'
    )

    subparsers = parser.add_subparsers(dest='command', help='Commands')

    create_parser = subparsers.add_parser('create', help='Create an import session and ingest it')
    create_parser.add_argument('--dataset', required=True, help='Dataset name')
    create_parser.add_argument('--description', default='', help='Dataset description')
    create_parser.add_argument('--root', required=True, help='Dataset root directory')
    create_parser.add_argument(
        '--pattern',
        required=True,
        help="Regex on the '/'-prefixed relative path, with a named group 'metric'"
    )
    create_parser.add_argument('--funcid', required=True, help='Functional id template, e.g. ${metric}_${eq}')
    create_parser.add_argument('--serializer', help='Pin a serializer instead of detecting it')
    create_parser.add_argument('--importer', help='Importer (opentsdb, nothing)')

    subparsers.add_parser('list', help='List known sessions')

    show_parser = subparsers.add_parser('show', help='Show one session')
    show_parser.add_argument('id', type=int, help='Session id')

    restart_parser = subparsers.add_parser('restart', help='Restart the items in error of a session')
    restart_parser.add_argument('id', type=int, help='Session id')
    restart_parser.add_argument(
        '--force',
        action='store_true',
        help='Also re-queue cancelled items'
    )
    return parser


def main(argv=None):
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command not in COMMANDS:
        parser.print_help()
        return EXIT_FAILURE

    try:
        config = IngestConfig.from_env(use_production=args.production, profile=args.profile)
    except ValueError as e:
        get_logger().error("Configuration error", error=str(e))
        return EXIT_FAILURE

    log_level = LogLevel.DEBUG if args.verbose else LogLevel.parse(config.log_level)
    set_logger(StructuredLogger(min_level=log_level))
    logger = get_logger()
    logger.info(
        "Environment loaded",
        environment=config.environment,
        workers=config.worker_count,
        chunk_size=config.chunk_size
    )

    try:
        manager = SessionManager(config)
    except Exception as e:
        logger.error("Could not initialize session manager", error=str(e))
        return EXIT_FAILURE

    try:
        manager.start()
        return COMMANDS[args.command](manager, args)
    except IngestionConflictError as e:
        logger.error("Session rejected", error=str(e), holder=e.holder)
        return EXIT_CONFLICT
    except ConfigurationError as e:
        logger.error("Invalid session parameters", error=str(e))
        return EXIT_FAILURE
    except KeyboardInterrupt:
        logger.warning("Operation cancelled by user")
        manager.shutdown(wait=False)
        return EXIT_INTERRUPTED
    except Exception as e:
        logger.error("Command failed", error=str(e))
        return EXIT_FAILURE
    finally:
        manager.shutdown()


if __name__ == '__main__':
    sys.exit(main())
