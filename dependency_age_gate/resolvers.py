"""
Registry lookups for package release dates.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Callable, Dict, Optional

import requests

from .interfaces import ReleaseDateFetcher
from .models import SourceDescriptor
from .time_utils import parse_timestamp


logger = logging.getLogger(__name__)

REQUEST_TIMEOUT_SECONDS = 10


class ReleaseDateResolver(ReleaseDateFetcher):
    """Fetch a version's publication time from a RubyGems-compatible API.

    This is the only component that talks to the network. Lookups never
    raise: every failure is reported as ``None`` (release date unknown).
    """

    version_field = "number"
    timestamp_field = "created_at"

    def __init__(
        self,
        timeout: float = REQUEST_TIMEOUT_SECONDS,
        session_factory: Callable[[], requests.Session] = requests.Session,
    ) -> None:
        self.timeout = timeout
        self.session_factory = session_factory
        self._local = threading.local()

    @property
    def session(self) -> requests.Session:
        """A session per thread, since workers share this resolver."""
        session = getattr(self._local, "session", None)
        if session is None:
            session = self.session_factory()
            self._local.session = session
        return session

    def fetch(
        self, name: str, version: str, source: SourceDescriptor
    ) -> Optional[datetime]:
        try:
            url = source.api_url(name)
            logger.debug("Fetching release dates for %s from %s", name, url)
            with self.session.get(
                url, headers=self._headers(source), timeout=self.timeout
            ) as response:
                if not 200 <= response.status_code < 300:
                    logger.debug("%s returned HTTP %s", url, response.status_code)
                    return None
                versions_data = response.json()
            return self._find_release_date(versions_data, version)
        except Exception as e:
            logger.debug("Release date lookup failed for %s@%s: %s", name, version, e)
            return None

    def _headers(self, source: SourceDescriptor) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if source.auth_token:
            headers["Authorization"] = f"Bearer {source.auth_token}"
        return headers

    def _find_release_date(self, versions_data, version: str) -> Optional[datetime]:
        if not isinstance(versions_data, list):
            return None
        for entry in versions_data:
            if isinstance(entry, dict) and entry.get(self.version_field) == version:
                return parse_timestamp(entry.get(self.timestamp_field))
        return None
