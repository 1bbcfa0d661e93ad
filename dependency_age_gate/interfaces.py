"""
Interfaces for release date lookups and audit sinks.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional, Protocol

from .models import SourceDescriptor, VerificationReport


class ReleaseDateFetcher(Protocol):
    """Look up when a package version was published."""

    def fetch(
        self, name: str, version: str, source: SourceDescriptor
    ) -> Optional[datetime]:
        ...


class AuditSink(Protocol):
    """Receive one structured record per verification run."""

    def log_check(self, report: VerificationReport) -> None:
        ...
