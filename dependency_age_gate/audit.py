"""
Append-only JSON audit log of verification runs.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict

from .models import VerificationReport, Violation
from .time_utils import utc_now


logger = logging.getLogger(__name__)


class AuditLogger:
    """Write one JSON line per run; failures never interrupt the check."""

    def __init__(self, log_path: Path | str, clock: Callable[[], datetime] = utc_now) -> None:
        self.log_path = Path(log_path)
        self.clock = clock

    def log_check(self, report: VerificationReport) -> None:
        self.append(self.build_entry(report))

    def build_entry(self, report: VerificationReport) -> Dict:
        violations = report.all_violations
        return {
            "timestamp": self.clock().isoformat(),
            "result": report.result,
            "violations_count": len(violations),
            "checked_gems_count": report.checked_count,
            "exceptions_used": len(report.excepted_violations),
            "violations": [_violation_entry(v) for v in violations],
        }

    def append(self, entry: Dict) -> None:
        try:
            with open(self.log_path, "a", encoding="utf-8") as f:
                f.write(json.dumps(entry) + "\n")
        except OSError as e:
            logger.warning("Failed to write audit log %s: %s", self.log_path, e)


def _violation_entry(violation: Violation) -> Dict:
    return {
        "gem": violation.name,
        "version": violation.version,
        "release_date": violation.release_date.isoformat(),
        "age_days": violation.age_days,
        "excepted": violation.excepted,
        "exception_reason": violation.exception_reason,
    }
