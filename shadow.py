#!/usr/bin/env python3
"""
Session Shadow - Crash-safe recorder for terminal command sessions

Usage:
    shadow start "Set up staging database"
    shadow note "Using the managed Postgres instance"
    shadow milestone "Schema migrated"
    shadow status
    shadow stop

    # As a module:
    from sessionshadow import SessionManager
    with SessionManager() as manager:
        manager.recover()
        manager.annotate("checkpoint")

Shell hooks append lines to <home>/logs/<session_id>.log in the form
    <timestamp>|<working_directory>|<exit_code_or_empty>|<command>
"""

import argparse
import logging
import sys

from sessionshadow import (
    AnnotationType,
    CorruptionError,
    RecoveryExhaustedError,
    SessionManager,
    ShadowConfig,
    ShadowError,
)
from sessionshadow.config import DEFAULT_CONFIG_YAML


def _load_config(args) -> ShadowConfig:
    return ShadowConfig.load(args.home)


def _manager(args) -> SessionManager:
    return SessionManager(_load_config(args))


def _attach(manager: SessionManager) -> None:
    """Pick up the session left by a previous invocation."""
    session_id = manager.recover()
    if session_id:
        logging.getLogger(__name__).debug("Attached to session %s", session_id)


def _format_duration(seconds) -> str:
    if seconds is None:
        return "unknown"
    hours, remainder = divmod(int(seconds), 3600)
    minutes, seconds = divmod(remainder, 60)
    if hours > 0:
        return f"{hours}h {minutes}m"
    elif minutes > 0:
        return f"{minutes}m {seconds}s"
    return f"{seconds}s"


def _print_summary(session) -> None:
    print(f"Session:     {session.id}")
    print(f"Description: {session.description}")
    print(f"Status:      {session.status.value}")
    print(f"Commands:    {session.stats.command_count}"
          f" ({session.stats.successful_commands} ok, {session.stats.failed_commands} failed)")
    print(f"Annotations: {session.stats.annotation_count}")
    print(f"Duration:    {_format_duration(session.duration_seconds())}")
    if session.output_path:
        print(f"Output:      {session.output_path}")
    if session.error:
        print(f"Error:       {session.error}")


def run_init(args):
    """CLI: Write a default configuration file."""
    config = _load_config(args)
    config_path = config.config_path

    if config_path.exists() and not args.force:
        print(f"Config already exists: {config_path}")
        print("Use --force to overwrite")
        sys.exit(1)

    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(DEFAULT_CONFIG_YAML)
    print(f"Created: {config_path}")


def run_start(args):
    """CLI: Start a new session."""
    manager = _manager(args)
    _attach(manager)
    session_id = manager.start(args.description, output=args.output)

    print(f"Started session: {session_id}")
    print(f"Capture log:     {manager.config.log_path(session_id)}")

    if args.watch:
        _watch(manager)


def _watch(manager: SessionManager):
    print("Watching for commands (Ctrl+C to stop watching)...")
    try:
        manager.run_until_stopped()
    except KeyboardInterrupt:
        print()
    finally:
        manager.close()
    session = manager.status()
    if session is not None:
        print(f"Captured {session.stats.command_count} commands so far")


def run_watch(args):
    """CLI: Capture continuously in the foreground."""
    manager = _manager(args)
    if manager.recover() is None:
        print("No active session. Start one with 'shadow start \"description\"'")
        sys.exit(1)
    _watch(manager)


def run_stop(args):
    """CLI: Stop the active session."""
    manager = _manager(args)
    _attach(manager)
    session = manager.stop()
    print("Session stopped.")
    _print_summary(session)
    print(f"Saved to: {manager.store.canonical_path(session.id)}")


def run_pause(args):
    """CLI: Pause capturing."""
    manager = _manager(args)
    _attach(manager)
    manager.pause()
    print("Session paused. Commands run now will not be recorded.")


def run_resume(args):
    """CLI: Resume capturing."""
    manager = _manager(args)
    _attach(manager)
    manager.resume()
    print("Session resumed. Command capture is active.")


def run_annotate(args):
    """CLI: Add an annotation."""
    annotation_type = args.annotation_type
    if isinstance(annotation_type, str):
        annotation_type = AnnotationType.parse(annotation_type)

    manager = _manager(args)
    _attach(manager)
    annotation_id = manager.annotate(args.text, annotation_type)
    manager.close()
    print(f"Added {annotation_type.value}: {args.text}")
    if args.verbose:
        print(f"Annotation id: {annotation_id}")


def run_status(args):
    """CLI: Show the current session."""
    manager = _manager(args)
    try:
        _attach(manager)
    except RecoveryExhaustedError as e:
        print(f"Session {e.session_id} could not be recovered ({e.candidates_tried} candidates tried)")
        for failure in e.failures:
            print(f"  - {failure}")
        sys.exit(1)

    session = manager.status()
    manager.close()
    if session is None:
        print("No active session.")
        recent = manager.list_sessions()
        if recent:
            print(f"\nStored sessions ({len(recent)}):")
            for session_id in recent[-5:]:
                print(f"  - {session_id}")
        return

    _print_summary(session)
    if args.verbose or args.show_commands:
        print("\nRecent commands:")
        for entry in session.commands[-10:]:
            code = "?" if entry.exit_code is None else entry.exit_code
            print(f"  [{code}] {entry.command}")


def run_recover(args):
    """CLI: Recover an interrupted session."""
    manager = _manager(args)
    session_id = manager.recover()
    if session_id is None:
        print("Nothing to recover.")
        return
    print(f"Recovered session: {session_id}")


def run_clear_error(args):
    """CLI: Discard the error state left by a failed recovery."""
    manager = _manager(args)
    try:
        manager.recover()
    except (RecoveryExhaustedError, CorruptionError) as e:
        # Leaves the manager in the error state, which is what gets cleared
        print(f"Recovery failed: {e}")
    session_id = manager.clear_error()
    print(f"Cleared error state{f' for session {session_id}' if session_id else ''}.")


def run_export(args):
    """CLI: Export a session file."""
    manager = _manager(args)
    path = manager.export(args.session_id, args.path)
    print(f"Exported {args.session_id} to {path}")


def run_import(args):
    """CLI: Import a session file."""
    manager = _manager(args)
    session_id = manager.import_session(args.path)
    print(f"Imported session: {session_id}")


def run_cleanup(args):
    """CLI: Remove old stopped sessions."""
    manager = _manager(args)
    removed = manager.cleanup(args.max_age_days)
    print(f"Removed {removed} file(s).")


def run_stats(args):
    """CLI: Show storage statistics."""
    manager = _manager(args)
    stats = manager.storage_stats()
    print(f"Data directory: {manager.config.base_dir}")
    print(f"Sessions: {stats.session_count} ({stats.session_bytes} bytes)")
    print(f"Backups:  {stats.backup_count} ({stats.backup_bytes} bytes)")
    print(f"Logs:     {stats.log_count} ({stats.log_bytes} bytes)")
    print(f"Total:    {stats.total_bytes} bytes")


def run_list(args):
    """CLI: List stored sessions."""
    manager = _manager(args)
    for session_id in manager.list_sessions():
        print(session_id)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="shadow",
        description="Session Shadow - Crash-safe recorder for terminal command sessions",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  shadow start "Deploy staging"     Start a session
  shadow milestone "DB migrated"    Mark progress
  shadow status -v                  Show the session and recent commands
  shadow stop                       Finish and save the session
        """,
    )

    parser.add_argument("--home", help="Data directory (default: $SHADOW_HOME or ~/.sessionshadow)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    init_parser = subparsers.add_parser("init", help="Write a default configuration file")
    init_parser.add_argument("--force", "-f", action="store_true", help="Overwrite existing config")
    init_parser.set_defaults(func=run_init)

    start_parser = subparsers.add_parser("start", help="Start a new session")
    start_parser.add_argument("description", help="What this session documents")
    start_parser.add_argument("--output", "-o", help="Where rendered documentation should go")
    start_parser.add_argument("--watch", "-w", action="store_true", help="Keep capturing in the foreground")
    start_parser.set_defaults(func=run_start)

    subparsers.add_parser("watch", help="Capture in the foreground").set_defaults(func=run_watch)
    subparsers.add_parser("stop", help="Stop the active session").set_defaults(func=run_stop)
    subparsers.add_parser("pause", help="Pause capturing").set_defaults(func=run_pause)
    subparsers.add_parser("resume", help="Resume capturing").set_defaults(func=run_resume)

    annotate_parser = subparsers.add_parser("annotate", help="Add an annotation")
    annotate_parser.add_argument("text", help="Annotation text")
    annotate_parser.add_argument(
        "--type", "-t", dest="annotation_type", default="note",
        choices=[t.value for t in AnnotationType], help="Annotation type",
    )
    annotate_parser.set_defaults(func=run_annotate)

    for name, annotation_type, help_text in (
        ("note", AnnotationType.NOTE, "Add a note"),
        ("explain", AnnotationType.EXPLANATION, "Add an explanation"),
        ("warn", AnnotationType.WARNING, "Add a warning"),
        ("milestone", AnnotationType.MILESTONE, "Mark a milestone"),
    ):
        quick_parser = subparsers.add_parser(name, help=help_text)
        quick_parser.add_argument("text", help="Annotation text")
        quick_parser.set_defaults(func=run_annotate, annotation_type=annotation_type)

    status_parser = subparsers.add_parser("status", help="Show the current session")
    status_parser.add_argument(
        "--verbose", "-v", dest="show_commands", action="store_true", help="Also list recent commands"
    )
    status_parser.set_defaults(func=run_status)
    subparsers.add_parser("recover", help="Recover an interrupted session").set_defaults(func=run_recover)
    subparsers.add_parser("clear-error", help="Discard a failed recovery").set_defaults(func=run_clear_error)

    export_parser = subparsers.add_parser("export", help="Export a session file")
    export_parser.add_argument("session_id", help="Session id")
    export_parser.add_argument("path", help="Destination file")
    export_parser.set_defaults(func=run_export)

    import_parser = subparsers.add_parser("import", help="Import a session file")
    import_parser.add_argument("path", help="Session file to import")
    import_parser.set_defaults(func=run_import)

    cleanup_parser = subparsers.add_parser("cleanup", help="Remove old stopped sessions")
    cleanup_parser.add_argument(
        "--max-age-days", type=float, default=None,
        help="Remove sessions stopped longer ago than this (default from config)",
    )
    cleanup_parser.set_defaults(func=run_cleanup)

    subparsers.add_parser("stats", help="Show storage statistics").set_defaults(func=run_stats)
    subparsers.add_parser("list", help="List stored sessions").set_defaults(func=run_list)

    return parser


def main(argv=None):
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    level = logging.DEBUG if args.verbose else getattr(logging, _load_config(args).log_level, logging.WARNING)
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")

    try:
        args.func(args)
    except ShadowError as e:
        print(f"Error: {e}", file=sys.stderr)
        if e.hint:
            print(f"  {e.hint}", file=sys.stderr)
        sys.exit(1)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
