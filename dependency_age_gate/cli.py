"""
Command-line interface for the dependency age gate.
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

from .audit import AuditLogger
from .config import DEFAULT_CONFIG_PATH, load_config, read_raw_config, write_raw_config
from .engine import AgeVerificationEngine
from .exception_registry import ExceptionRegistry
from .interfaces import AuditSink
from .lockfile import DEFAULT_LOCKFILE, LockfileNotFoundError, read_lockfile
from .models import CleanupDecision
from .reporting import (
    export_violations,
    format_banner,
    format_cleanup_decision,
    format_report,
    save_report_json,
)
from .resolvers import ReleaseDateResolver
from .sources import SourcePolicy
from .time_utils import utc_now


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dependency-age-gate",
        description="Reject lockfiles that contain packages younger than a minimum age"
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable debug logging"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "days",
        nargs="?",
        default=None,
        help="Minimum age in days for every source (overrides the config file)"
    )
    common.add_argument(
        "--lockfile",
        default=DEFAULT_LOCKFILE,
        help=f"Lockfile to check. Default: {DEFAULT_LOCKFILE}"
    )
    common.add_argument(
        "--config",
        default=DEFAULT_CONFIG_PATH,
        help=f"Configuration file. Default: {DEFAULT_CONFIG_PATH}"
    )

    check = subparsers.add_parser("check", parents=[common], help="Check package ages")
    check.add_argument(
        "--workers",
        type=int,
        default=None,
        help="Number of parallel lookups (capped by max_workers)"
    )
    check.add_argument(
        "--json-output",
        default=None,
        help="Also write the report as JSON to this path"
    )
    check.add_argument(
        "--export",
        default=None,
        help="Export violations to a .csv or .xlsx file"
    )
    check.add_argument(
        "--quiet",
        action="store_true",
        help="Hide the progress bar"
    )

    subparsers.add_parser(
        "clean-exceptions",
        parents=[common],
        help="Remove exceptions for packages that now meet the age policy"
    )
    return parser


def parse_days(value: Optional[str]) -> Optional[int]:
    """Validate the optional DAYS argument; raise ValueError if it is not a positive integer."""
    if value is None:
        return None
    if not value.isdigit() or int(value) <= 0:
        raise ValueError(f"'{value}' is not a valid number of days")
    return int(value)


def run_check(
    args: argparse.Namespace,
    override_days: Optional[int],
    audit_sink: Optional[AuditSink] = None,
) -> int:
    try:
        lockfile = read_lockfile(args.lockfile)
    except LockfileNotFoundError:
        print(f"Error: {args.lockfile} not found", file=sys.stderr)
        return 1

    config = load_config(args.config)
    for line in format_banner(config.sources, override_days, utc_now()):
        print(line)
    print("")
    print(f"Checking {len(lockfile.packages)} gems...")

    engine = AgeVerificationEngine(config, show_progress=not args.quiet)
    report = engine.run(
        lockfile.packages,
        source_map=lockfile.source_map,
        override_days=override_days,
        requested_workers=args.workers,
    )

    print("")
    if audit_sink is None:
        audit_sink = AuditLogger(config.audit_log_path)
    audit_sink.log_check(report)
    for line in format_report(report):
        print(line)

    if args.json_output:
        results_file = save_report_json(report, Path(args.json_output))
        print(f"\nReport saved to: {results_file}")
    if args.export:
        export_file = export_violations(report, Path(args.export))
        print(f"Violations exported to: {export_file}")

    return report.exit_code


def drop_removed_exceptions(
    raw_exceptions: List, removable: List[CleanupDecision]
) -> List:
    """Remove the file entries behind ``removable``; entries that never parsed stay."""
    pending = [decision.exception.to_dict() for decision in removable]
    remaining = []
    for raw in raw_exceptions:
        if raw in pending:
            pending.remove(raw)
            continue
        remaining.append(raw)
    return remaining


def run_clean_exceptions(args: argparse.Namespace, override_days: Optional[int]) -> int:
    config_path = Path(args.config)
    if not config_path.exists():
        print(f"No {config_path} found")
        return 0

    try:
        lockfile = read_lockfile(args.lockfile)
    except LockfileNotFoundError:
        print(f"Error: {args.lockfile} not found", file=sys.stderr)
        return 1

    config = load_config(config_path)
    if not config.exceptions:
        print(f"No exceptions found in {config_path}")
        return 0

    print(f"Checking {len(config.exceptions)} exception(s) for cleanup...")
    print("")

    registry = ExceptionRegistry(config.exceptions)
    removable, kept = registry.find_removable(
        lockfile.packages,
        SourcePolicy.from_config(config),
        ReleaseDateResolver(),
        source_map=lockfile.source_map,
        override_days=override_days,
    )
    for entry in config.exceptions:
        decision = next(d for d in removable + kept if d.exception is entry)
        print(format_cleanup_decision(decision))
    print("")

    if not removable:
        print("No exceptions can be removed at this time")
        return 0

    raw = read_raw_config(config_path)
    remaining = drop_removed_exceptions(raw.get("exceptions") or [], removable)
    raw["exceptions"] = remaining
    write_raw_config(config_path, raw)

    print(f"Removed {len(removable)} exception(s) from {config_path}")
    print(f"{len(remaining)} exception(s) remaining")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    try:
        override_days = parse_days(args.days)
    except ValueError as e:
        print(f"Error: Invalid argument: {e}", file=sys.stderr)
        print(f"Usage: {parser.prog} {args.command} [DAYS]", file=sys.stderr)
        return 1

    if args.command == "clean-exceptions":
        return run_clean_exceptions(args, override_days)
    return run_check(args, override_days)


if __name__ == "__main__":
    sys.exit(main())
