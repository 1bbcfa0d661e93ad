"""
Approved exceptions to the age policy and their cleanup.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from .interfaces import ReleaseDateFetcher
from .models import CleanupDecision, CleanupOutcome, ExceptionEntry, PackageRef
from .sources import SourcePolicy
from .time_utils import age_in_days, cutoff_for, utc_now


logger = logging.getLogger(__name__)


class ExceptionRegistry:
    """Answer whether a package version is exempt from the age policy."""

    def __init__(
        self,
        entries: Iterable[ExceptionEntry],
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.entries: Tuple[ExceptionEntry, ...] = tuple(entries)
        self.clock = clock

    def __len__(self) -> int:
        return len(self.entries)

    def find(self, name: str, version: str) -> Optional[ExceptionEntry]:
        """Return the first active entry matching the package, in config order."""
        now = self.clock()
        for entry in self.entries:
            if entry.matches(name, version) and not entry.is_expired(now):
                return entry
        return None

    def is_excepted(self, name: str, version: str) -> bool:
        return self.find(name, version) is not None

    def reason_for(self, name: str, version: str) -> str:
        entry = self.find(name, version)
        return entry.reason if entry else ""

    def find_removable(
        self,
        lockfile_entries: Iterable[PackageRef],
        source_policy: SourcePolicy,
        fetcher: ReleaseDateFetcher,
        source_map: Optional[Dict[str, str]] = None,
        override_days: Optional[int] = None,
    ) -> Tuple[List[CleanupDecision], List[CleanupDecision]]:
        """Re-check every exception against current release dates.

        An exception is removable once the package it covers would pass the
        age policy on its own. Exceptions for packages missing from the
        lockfile, or whose release date cannot be determined, are kept.
        """
        packages = list(lockfile_entries)
        source_map = source_map or {}
        removable: List[CleanupDecision] = []
        kept: List[CleanupDecision] = []

        for entry in self.entries:
            decision = self._decide(entry, packages, source_policy, fetcher, source_map, override_days)
            logger.debug("Exception %s: %s", entry.label(), decision.outcome.value)
            (removable if decision.removable else kept).append(decision)

        return removable, kept

    def _decide(
        self,
        entry: ExceptionEntry,
        packages: List[PackageRef],
        source_policy: SourcePolicy,
        fetcher: ReleaseDateFetcher,
        source_map: Dict[str, str],
        override_days: Optional[int],
    ) -> CleanupDecision:
        package = next((ref for ref in packages if entry.matches(ref.name, ref.version)), None)
        if package is None:
            return CleanupDecision(exception=entry, outcome=CleanupOutcome.NOT_IN_LOCKFILE)

        source = source_policy.resolve_for_package(package.name, source_map)
        required_age = override_days if override_days is not None else source.minimum_age_days
        release_date = fetcher.fetch(package.name, package.version, source)
        if release_date is None:
            return CleanupDecision(
                exception=entry,
                outcome=CleanupOutcome.UNRESOLVABLE,
                version=package.version,
                required_age=required_age,
            )

        now = self.clock()
        outcome = (
            CleanupOutcome.REMOVABLE
            if release_date <= cutoff_for(now, required_age)
            else CleanupOutcome.TOO_YOUNG
        )
        return CleanupDecision(
            exception=entry,
            outcome=outcome,
            version=package.version,
            release_date=release_date,
            age_days=age_in_days(now, release_date),
            required_age=required_age,
        )
