"""
Per-source age policy lookup.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, Optional, Tuple

from .config import DEFAULT_SOURCE_URL, AgeGateConfig
from .models import SourceDescriptor, normalize_url


logger = logging.getLogger(__name__)


class SourcePolicy:
    """Map lockfile remotes to configured sources.

    The first configured source is the default and is returned for any URL
    that does not match a configured source.
    """

    def __init__(self, sources: Iterable[SourceDescriptor]) -> None:
        self.sources: Tuple[SourceDescriptor, ...] = tuple(sources)
        if not self.sources:
            raise ValueError("SourcePolicy needs at least one source")
        self._by_url: Dict[str, SourceDescriptor] = {}
        for source in self.sources:
            # First registration wins for duplicate URLs.
            self._by_url.setdefault(source.normalized_url, source)

    @classmethod
    def from_config(cls, config: AgeGateConfig) -> "SourcePolicy":
        return cls(config.sources)

    @property
    def default(self) -> SourceDescriptor:
        return self.sources[0]

    def resolve(self, source_url: Optional[str]) -> SourceDescriptor:
        if not source_url:
            return self.default
        source = self._by_url.get(normalize_url(source_url))
        if source is None:
            logger.debug("No source configured for %s, using %s", source_url, self.default.name)
            return self.default
        return source

    def resolve_for_package(
        self, package_name: str, source_map: Dict[str, str]
    ) -> SourceDescriptor:
        return self.resolve(source_map.get(package_name, DEFAULT_SOURCE_URL))
