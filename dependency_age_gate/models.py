"""
Core data models for the dependency age gate.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional, Tuple


class CacheSentinel(enum.Enum):
    """Cached placeholder for a package whose release date is not known."""

    UNKNOWN = "unknown"
    ERROR = "error"


@dataclass(frozen=True)
class PackageRef:
    """A locked package version."""

    name: str
    version: str

    @property
    def key(self) -> str:
        return f"{self.name}@{self.version}"


@dataclass(frozen=True)
class SourceDescriptor:
    """A package registry with its own age policy and credentials."""

    name: str
    url: str
    api_endpoint: str
    minimum_age_days: int
    auth_token: Optional[str] = None

    @property
    def normalized_url(self) -> str:
        return normalize_url(self.url)

    def api_url(self, package_name: str) -> str:
        """Render the endpoint template for a package."""
        if "%s" in self.api_endpoint:
            return self.api_endpoint % package_name
        return self.api_endpoint.format(package_name, name=package_name)


def normalize_url(url: str) -> str:
    return url.strip().lower().rstrip("/")


@dataclass(frozen=True)
class ExceptionEntry:
    """An approved, optionally time-limited waiver for a package."""

    gem: str
    reason: str
    version: Optional[str] = None
    approved_by: Optional[str] = None
    expires: Optional[datetime] = None
    raw: Dict = field(default_factory=dict, compare=False, repr=False)

    def matches(self, name: str, version: str) -> bool:
        return self.gem == name and (self.version is None or self.version == version)

    def is_expired(self, now: datetime) -> bool:
        if self.expires is None:
            return False
        return now > self.expires

    def label(self) -> str:
        if self.version:
            return f"{self.gem} ({self.version})"
        return self.gem

    def to_dict(self) -> Dict:
        """Return the entry as it appeared in the configuration file."""
        if self.raw:
            return dict(self.raw)
        data: Dict = {"gem": self.gem, "reason": self.reason}
        if self.version is not None:
            data["version"] = self.version
        if self.approved_by is not None:
            data["approved_by"] = self.approved_by
        if self.expires is not None:
            data["expires"] = self.expires.date().isoformat()
        return data


@dataclass(frozen=True)
class Violation:
    """A package released more recently than its source allows."""

    name: str
    version: str
    release_date: datetime
    age_days: int
    source: str
    required_age: int
    excepted: bool = False
    exception_reason: Optional[str] = None


@dataclass(frozen=True)
class VerificationReport:
    """Outcome of one verification run."""

    violations: Tuple[Violation, ...]
    excepted_violations: Tuple[Violation, ...]
    checked_count: int
    total_packages: int

    @property
    def passed(self) -> bool:
        return not self.violations

    @property
    def result(self) -> str:
        return "pass" if self.passed else "fail"

    @property
    def exit_code(self) -> int:
        return 0 if self.passed else 1

    @property
    def all_violations(self) -> Tuple[Violation, ...]:
        return self.violations + self.excepted_violations


class CleanupOutcome(enum.Enum):
    """Why an exception was removed or kept by the cleanup pass."""

    REMOVABLE = "removable"
    TOO_YOUNG = "too_young"
    UNRESOLVABLE = "unresolvable"
    NOT_IN_LOCKFILE = "not_in_lockfile"


@dataclass(frozen=True)
class CleanupDecision:
    """Cleanup verdict for a single exception entry."""

    exception: ExceptionEntry
    outcome: CleanupOutcome
    version: Optional[str] = None
    release_date: Optional[datetime] = None
    age_days: Optional[int] = None
    required_age: Optional[int] = None

    @property
    def removable(self) -> bool:
        return self.outcome is CleanupOutcome.REMOVABLE
