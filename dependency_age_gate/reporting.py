"""
Reporting and export utilities.
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict
from datetime import datetime
from pathlib import Path
from typing import Iterable, List, Optional

import pandas as pd

from .models import CleanupDecision, CleanupOutcome, SourceDescriptor, VerificationReport, Violation
from .time_utils import cutoff_for


logger = logging.getLogger(__name__)

VIOLATION_COLUMNS = [
    "name",
    "version",
    "release_date",
    "age_days",
    "source",
    "required_age",
    "excepted",
    "exception_reason",
]


def format_banner(
    sources: Iterable[SourceDescriptor],
    override_days: Optional[int],
    now: datetime,
) -> List[str]:
    if override_days is not None:
        return [
            f"Checking gem ages (CLI override: {override_days} days for all sources)...",
            f"Cutoff date: {cutoff_for(now, override_days).isoformat()}",
        ]
    lines = ["Checking gem ages (per-source configuration)..."]
    for source in sources:
        lines.append(f"  {source.name}: {source.minimum_age_days} days")
    return lines


def _violation_lines(violation: Violation, marker: str) -> List[str]:
    lines = [
        f"  {marker} {violation.name} ({violation.version}) [{violation.source}]",
        f"     Released: {violation.release_date.strftime('%Y-%m-%d')} "
        f"({violation.age_days} days ago, requires {violation.required_age} days)",
    ]
    if violation.excepted:
        lines.append(f"     Exception: {violation.exception_reason}")
    lines.append("")
    return lines


def format_report(report: VerificationReport) -> List[str]:
    lines: List[str] = []
    if report.excepted_violations:
        lines.append(f"{len(report.excepted_violations)} gem(s) have approved exceptions:")
        lines.append("")
        for violation in report.excepted_violations:
            lines.extend(_violation_lines(violation, "!"))

    if report.passed:
        lines.append("All gems meet their source-specific age requirements")
        lines.append("Safe to proceed!")
        return lines

    lines.append(f"Found {len(report.violations)} gem(s) that don't meet age requirements:")
    lines.append("")
    for violation in report.violations:
        lines.extend(_violation_lines(violation, "x"))
    lines.append("Age gate check FAILED")
    lines.append("To add an exception, list it under 'exceptions' in .bundler-age-gate.yml")
    return lines


_CLEANUP_MESSAGES = {
    CleanupOutcome.REMOVABLE: "Removing",
    CleanupOutcome.TOO_YOUNG: "Keeping",
    CleanupOutcome.UNRESOLVABLE: "Could not determine release date (keeping exception)",
    CleanupOutcome.NOT_IN_LOCKFILE: "Not in Gemfile.lock (keeping exception)",
}


def format_cleanup_decision(decision: CleanupDecision) -> str:
    entry = decision.exception
    message = _CLEANUP_MESSAGES[decision.outcome]
    if decision.outcome is CleanupOutcome.NOT_IN_LOCKFILE:
        return f"{entry.label()} - {message}"
    label = f"{entry.gem} ({decision.version})"
    if decision.age_days is None:
        return f"{label} - {message}"
    return (
        f"{label} - Released {decision.age_days} days ago "
        f"({decision.required_age} days required) - {message}"
    )


def report_to_dict(report: VerificationReport) -> dict:
    return {
        "result": report.result,
        "total_packages": report.total_packages,
        "checked_count": report.checked_count,
        "violations": [asdict(v) for v in report.violations],
        "excepted_violations": [asdict(v) for v in report.excepted_violations],
    }


def save_report_json(report: VerificationReport, output_file: Path) -> Path:
    output_file = Path(output_file)
    output_file.parent.mkdir(parents=True, exist_ok=True)
    with open(output_file, 'w') as f:
        json.dump(report_to_dict(report), f, indent=2, default=str)
    return output_file


def violations_frame(report: VerificationReport) -> pd.DataFrame:
    df = pd.DataFrame(
        [asdict(v) for v in report.all_violations], columns=VIOLATION_COLUMNS
    )
    if len(df) > 0:
        # Excel cannot store timezone-aware datetimes.
        df["release_date"] = pd.to_datetime(df["release_date"], utc=True).dt.tz_localize(None)
    return df


def export_violations(report: VerificationReport, output_file: Path) -> Path:
    """Write all violations to CSV, or to a worksheet for ``.xlsx`` paths."""
    output_file = Path(output_file)
    output_file.parent.mkdir(parents=True, exist_ok=True)
    df = violations_frame(report)
    if output_file.suffix.lower() == ".xlsx":
        with pd.ExcelWriter(output_file, engine='openpyxl') as writer:
            df.to_excel(writer, sheet_name="violations", index=False)
    else:
        df.to_csv(output_file, index=False)
    logger.info("Exported %d violation(s) to %s", len(df), output_file)
    return output_file
