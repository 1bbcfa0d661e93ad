"""
Concurrent age verification of locked packages.
"""

from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence, Union

from tqdm import tqdm

from .config import AgeGateConfig
from .exception_registry import ExceptionRegistry
from .interfaces import ReleaseDateFetcher
from .models import CacheSentinel, PackageRef, VerificationReport, Violation
from .resolvers import ReleaseDateResolver
from .sources import SourcePolicy
from .time_utils import age_in_days, cutoff_for, utc_now


logger = logging.getLogger(__name__)

CacheValue = Union[datetime, CacheSentinel]


class ParallelExecutionError(RuntimeError):
    """Raised when the worker pool itself fails, as opposed to a single package."""


@dataclass
class RunState:
    """Mutable state of one run, each resource guarded by its own lock."""

    cache: Dict[str, CacheValue] = field(default_factory=dict)
    violations: List[Violation] = field(default_factory=list)
    excepted_violations: List[Violation] = field(default_factory=list)
    checked_count: int = 0
    progress: Optional[tqdm] = None
    cache_lock: threading.Lock = field(default_factory=threading.Lock)
    violations_lock: threading.Lock = field(default_factory=threading.Lock)
    counter_lock: threading.Lock = field(default_factory=threading.Lock)
    progress_lock: threading.Lock = field(default_factory=threading.Lock)

    def cached(self, key: str) -> Optional[CacheValue]:
        with self.cache_lock:
            return self.cache.get(key)

    def store(self, key: str, value: CacheValue) -> None:
        with self.cache_lock:
            self.cache[key] = value

    def mark_checked(self) -> None:
        with self.counter_lock:
            self.checked_count += 1

    def record(self, violation: Violation) -> None:
        with self.violations_lock:
            if violation.excepted:
                self.excepted_violations.append(violation)
            else:
                self.violations.append(violation)

    def tick(self) -> None:
        if self.progress is None:
            return
        with self.progress_lock:
            self.progress.update(1)


class AgeVerificationEngine:
    """Check a batch of locked packages against the minimum age policy."""

    def __init__(
        self,
        config: AgeGateConfig,
        source_policy: Optional[SourcePolicy] = None,
        exceptions: Optional[ExceptionRegistry] = None,
        fetcher: Optional[ReleaseDateFetcher] = None,
        clock: Callable[[], datetime] = utc_now,
        show_progress: bool = False,
    ) -> None:
        self.config = config
        self.source_policy = source_policy or SourcePolicy.from_config(config)
        self.exceptions = exceptions or ExceptionRegistry(config.exceptions, clock=clock)
        self.fetcher = fetcher or ReleaseDateResolver()
        self.clock = clock
        self.show_progress = show_progress
        self.last_cache: Dict[str, CacheValue] = {}

    def effective_worker_count(
        self, package_count: int, requested_workers: Optional[int] = None
    ) -> int:
        if requested_workers is None:
            requested_workers = self.config.max_workers
        count = min(requested_workers, package_count)
        return max(1, min(count, self.config.max_workers))

    def run(
        self,
        packages: Sequence[PackageRef],
        source_map: Optional[Dict[str, str]] = None,
        override_days: Optional[int] = None,
        requested_workers: Optional[int] = None,
    ) -> VerificationReport:
        """Verify ``packages`` and return the aggregated report."""
        packages = list(packages)
        source_map = source_map or {}
        worker_count = self.effective_worker_count(len(packages), requested_workers)
        logger.info("Checking %d packages with %d worker(s)", len(packages), worker_count)

        if worker_count > 1:
            state = self._new_state(packages)
            try:
                self._run_parallel(packages, source_map, override_days, worker_count, state)
            except Exception as e:
                self._close_progress(state)
                logger.warning("Parallel processing failed: %s", e)
                logger.warning("Falling back to sequential processing...")
                state = self._new_state(packages)
                self._run_sequential(packages, source_map, override_days, state)
        else:
            state = self._new_state(packages)
            self._run_sequential(packages, source_map, override_days, state)

        self._close_progress(state)
        self.last_cache = dict(state.cache)
        return VerificationReport(
            violations=tuple(sorted(state.violations, key=lambda v: v.age_days)),
            excepted_violations=tuple(
                sorted(state.excepted_violations, key=lambda v: v.age_days)
            ),
            checked_count=state.checked_count,
            total_packages=len(packages),
        )

    def _new_state(self, packages: Sequence[PackageRef]) -> RunState:
        state = RunState()
        if self.show_progress:
            state.progress = tqdm(total=len(packages), desc="Progress", unit="pkg")
        return state

    def _close_progress(self, state: RunState) -> None:
        if state.progress is not None:
            state.progress.close()

    def _run_sequential(
        self,
        packages: Sequence[PackageRef],
        source_map: Dict[str, str],
        override_days: Optional[int],
        state: RunState,
    ) -> None:
        for package in packages:
            self.check_package(package, source_map, override_days, state)

    def _run_parallel(
        self,
        packages: Sequence[PackageRef],
        source_map: Dict[str, str],
        override_days: Optional[int],
        worker_count: int,
        state: RunState,
    ) -> None:
        work_queue: "queue.Queue[PackageRef]" = queue.Queue()
        for package in packages:
            work_queue.put(package)

        failures: List[BaseException] = []
        failures_lock = threading.Lock()

        def worker() -> None:
            try:
                while True:
                    try:
                        package = work_queue.get_nowait()
                    except queue.Empty:
                        return
                    self.check_package(package, source_map, override_days, state)
            except BaseException as e:
                with failures_lock:
                    failures.append(e)

        threads: List[threading.Thread] = []
        try:
            for index in range(worker_count):
                threads.append(self._spawn_worker(worker, index))
        finally:
            for thread in threads:
                thread.join()

        if failures:
            raise ParallelExecutionError(
                f"{len(failures)} worker(s) failed: {failures[0]!r}"
            ) from failures[0]

    def _spawn_worker(self, target: Callable[[], None], index: int) -> threading.Thread:
        thread = threading.Thread(target=target, name=f"age-gate-worker-{index}", daemon=True)
        thread.start()
        return thread

    def check_package(
        self,
        package: PackageRef,
        source_map: Dict[str, str],
        override_days: Optional[int],
        state: RunState,
    ) -> None:
        """Check one package; used unchanged by both execution strategies."""
        key = package.key
        if state.cached(key) is not None:
            logger.debug("Cache hit: %s", key)
            state.tick()
            return

        state.mark_checked()
        try:
            source = self.source_policy.resolve_for_package(package.name, source_map)
            min_age_days = override_days if override_days is not None else source.minimum_age_days
            now = self.clock()
            cutoff = cutoff_for(now, min_age_days)

            release_date = self.fetcher.fetch(package.name, package.version, source)
            if release_date is None:
                logger.debug("Release date unknown for %s, skipping", key)
                state.store(key, CacheSentinel.UNKNOWN)
                return

            state.store(key, release_date)
            if release_date > cutoff:
                exception = self.exceptions.find(package.name, package.version)
                state.record(
                    Violation(
                        name=package.name,
                        version=package.version,
                        release_date=release_date,
                        age_days=age_in_days(now, release_date),
                        source=source.name,
                        required_age=min_age_days,
                        excepted=exception is not None,
                        exception_reason=exception.reason if exception else None,
                    )
                )
        except Exception as e:
            logger.debug("Error checking %s: %s", key, e)
            state.store(key, CacheSentinel.ERROR)
        finally:
            state.tick()
