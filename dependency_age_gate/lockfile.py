"""
Minimal Gemfile.lock reader.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List

from .models import PackageRef

DEFAULT_LOCKFILE = "Gemfile.lock"

_REMOTE_LINE = re.compile(r"^\s*remote: (.+)$")
_SOURCE_MAP_LINE = re.compile(r"^\s{4}(\S+)")
_SPEC_LINE = re.compile(r"^ {4}(\S+) \(([^)]+)\)\s*$")


class LockfileNotFoundError(FileNotFoundError):
    """Raised when the lockfile to check does not exist."""


@dataclass(frozen=True)
class Lockfile:
    packages: List[PackageRef]
    source_map: Dict[str, str] = field(default_factory=dict)


def read_lockfile(path: Path | str = DEFAULT_LOCKFILE) -> Lockfile:
    path = Path(path)
    if not path.is_file():
        raise LockfileNotFoundError(f"{path} not found")
    text = path.read_text(encoding="utf-8")
    return Lockfile(packages=parse_specs(text), source_map=build_source_map(text))


def parse_specs(text: str) -> List[PackageRef]:
    """Return the locked ``name (version)`` entries of every ``specs:`` block."""
    packages: List[PackageRef] = []
    in_specs = False
    for line in text.splitlines():
        if not line.strip():
            in_specs = False
            continue
        if line.strip() == "specs:":
            in_specs = True
            continue
        if not line.startswith(" "):
            in_specs = False
            continue
        if not in_specs:
            continue
        match = _SPEC_LINE.match(line)
        if match:
            packages.append(PackageRef(name=match.group(1), version=_strip_platform(match.group(2))))
    return packages


def build_source_map(text: str) -> Dict[str, str]:
    """Map package names to the ``remote:`` they were listed under."""
    source_map: Dict[str, str] = {}
    current_source = None
    for line in text.splitlines():
        remote = _REMOTE_LINE.match(line)
        if remote:
            current_source = remote.group(1).strip()
            continue
        match = _SOURCE_MAP_LINE.match(line)
        if match and current_source:
            source_map[match.group(1)] = current_source
    return source_map


def _strip_platform(version: str) -> str:
    # "1.16.0-x86_64-linux" is version 1.16.0 built for a platform.
    return version.split("-", 1)[0]
