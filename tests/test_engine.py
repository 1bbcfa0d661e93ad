import threading
import time
from datetime import datetime, timedelta, timezone

import pytest

from dependency_age_gate.config import AgeGateConfig
from dependency_age_gate.engine import AgeVerificationEngine
from dependency_age_gate.models import CacheSentinel, ExceptionEntry, PackageRef, SourceDescriptor

NOW = datetime(2026, 1, 22, tzinfo=timezone.utc)
INTERNAL_URL = "https://rubygems.pkg.github.com/acme"

RUBYGEMS = SourceDescriptor("rubygems", "https://rubygems.org", "https://rubygems.org/api/v1/versions/%s.json", 7)
INTERNAL = SourceDescriptor("github-internal", INTERNAL_URL, INTERNAL_URL + "/api/v1/versions/%s.json", 3)


class FakeFetcher:
    def __init__(self, dates, delay=0.0):
        self.dates = dates
        self.delay = delay
        self.calls = []
        self._lock = threading.Lock()

    def fetch(self, name, version, source):
        with self._lock:
            self.calls.append((name, version, source.name))
        if self.delay:
            time.sleep(self.delay)
        value = self.dates.get((name, version))
        if isinstance(value, BaseException):
            raise value
        return value


def _engine(dates, exceptions=(), max_workers=8, delay=0.0):
    config = AgeGateConfig(
        minimum_age_days=7,
        sources=(RUBYGEMS, INTERNAL),
        max_workers=max_workers,
        exceptions=tuple(exceptions),
    )
    fetcher = FakeFetcher(dates, delay=delay)
    return AgeVerificationEngine(config, fetcher=fetcher, clock=lambda: NOW), fetcher


def _keys(violations):
    return sorted((v.name, v.version, v.excepted) for v in violations)


def test_young_package_violates_and_old_package_passes():
    engine, _ = _engine({
        ("rails", "7.1.3"): datetime(2026, 1, 20, tzinfo=timezone.utc),
        ("foo", "1.0.0"): datetime(2025, 1, 1, tzinfo=timezone.utc),
    })

    report = engine.run([PackageRef("rails", "7.1.3"), PackageRef("foo", "1.0.0")], requested_workers=1)

    assert not report.passed
    assert report.exit_code == 1
    (violation,) = report.violations
    assert violation.name == "rails"
    assert violation.age_days == 2
    assert violation.required_age == 7
    assert violation.source == "rubygems"
    assert report.checked_count == 2
    assert report.total_packages == 2


def test_release_exactly_at_cutoff_does_not_violate():
    cutoff = NOW - timedelta(days=7)
    engine, _ = _engine({
        ("edge", "1.0"): cutoff,
        ("newer", "1.0"): cutoff + timedelta(seconds=1),
    })

    report = engine.run([PackageRef("edge", "1.0"), PackageRef("newer", "1.0")], requested_workers=1)

    assert [v.name for v in report.violations] == ["newer"]


def test_matching_exception_moves_violation_to_excepted():
    engine, _ = _engine(
        {
            ("rails", "7.1.3.1"): NOW - timedelta(days=1),
            ("rails", "7.1.3"): NOW - timedelta(days=1),
        },
        exceptions=[ExceptionEntry(
            gem="rails",
            version="7.1.3.1",
            reason="Security patch",
            expires=datetime(2026, 2, 15, tzinfo=timezone.utc),
        )],
    )

    report = engine.run([PackageRef("rails", "7.1.3.1"), PackageRef("rails", "7.1.3")], requested_workers=1)

    assert [(v.version, v.exception_reason) for v in report.excepted_violations] == [("7.1.3.1", "Security patch")]
    assert report.excepted_violations[0].excepted is True
    assert [v.version for v in report.violations] == ["7.1.3"]


def test_expired_exception_does_not_suppress_violation():
    engine, _ = _engine(
        {("rails", "7.1.3"): NOW - timedelta(days=1)},
        exceptions=[ExceptionEntry(gem="rails", reason="old", expires=NOW - timedelta(days=1))],
    )

    report = engine.run([PackageRef("rails", "7.1.3")], requested_workers=1)

    assert len(report.violations) == 1
    assert report.excepted_violations == ()


def test_all_excepted_violations_still_pass():
    engine, _ = _engine(
        {("rails", "7.1.3"): NOW - timedelta(days=1)},
        exceptions=[ExceptionEntry(gem="rails", reason="approved")],
    )

    report = engine.run([PackageRef("rails", "7.1.3")], requested_workers=1)

    assert report.passed
    assert report.exit_code == 0


def test_source_specific_minimum_age():
    dates = {("internal-gem", "1.0"): NOW - timedelta(days=4)}
    engine, fetcher = _engine(dates)

    internal = engine.run([PackageRef("internal-gem", "1.0")], {"internal-gem": INTERNAL_URL + "/"}, requested_workers=1)
    public = engine.run([PackageRef("internal-gem", "1.0")], {}, requested_workers=1)

    assert internal.passed
    assert fetcher.calls[0][2] == "github-internal"
    assert [v.required_age for v in public.violations] == [7]


def test_unknown_source_uses_default_policy():
    engine, fetcher = _engine({("gem", "1.0"): NOW - timedelta(days=4)})

    report = engine.run([PackageRef("gem", "1.0")], {"gem": "https://gems.example.com"}, requested_workers=1)

    assert report.violations[0].source == "rubygems"
    assert fetcher.calls == [("gem", "1.0", "rubygems")]


def test_override_days_replaces_source_minimum():
    engine, _ = _engine({("internal-gem", "1.0"): NOW - timedelta(days=4)})

    report = engine.run(
        [PackageRef("internal-gem", "1.0")],
        {"internal-gem": INTERNAL_URL},
        override_days=30,
        requested_workers=1,
    )

    assert report.violations[0].required_age == 30


def test_unknown_and_failing_lookups_are_skipped():
    engine, _ = _engine({
        ("missing", "1.0"): None,
        ("broken", "1.0"): RuntimeError("boom"),
        ("young", "1.0"): NOW - timedelta(days=1),
    })

    report = engine.run(
        [PackageRef("missing", "1.0"), PackageRef("broken", "1.0"), PackageRef("young", "1.0")],
        requested_workers=1,
    )

    assert [v.name for v in report.violations] == ["young"]
    assert engine.last_cache["missing@1.0"] is CacheSentinel.UNKNOWN
    assert engine.last_cache["broken@1.0"] is CacheSentinel.ERROR
    assert report.checked_count == 3


def test_repeated_package_is_fetched_once_sequentially():
    engine, fetcher = _engine({("nokogiri", "1.16.0"): NOW - timedelta(days=1)})
    packages = [PackageRef("nokogiri", "1.16.0")] * 3

    report = engine.run(packages, requested_workers=1)

    assert len(fetcher.calls) == 1
    assert report.checked_count == 1
    assert len(report.violations) == 1


def test_violations_sorted_by_age_with_stable_ties():
    engine, _ = _engine({
        ("c", "1"): NOW - timedelta(days=5),
        ("a", "1"): NOW - timedelta(days=1),
        ("b", "1"): NOW - timedelta(days=5),
    })

    report = engine.run([PackageRef("c", "1"), PackageRef("a", "1"), PackageRef("b", "1")], requested_workers=1)

    assert [v.name for v in report.violations] == ["a", "c", "b"]


@pytest.mark.parametrize(
    "max_workers, requested, count, expected",
    [(8, None, 3, 3), (8, None, 20, 8), (4, 10, 20, 4), (8, 2, 20, 2), (8, 0, 5, 1), (8, None, 0, 1), (1, 16, 50, 1)],
)
def test_effective_worker_count(max_workers, requested, count, expected):
    engine, _ = _engine({}, max_workers=max_workers)

    assert engine.effective_worker_count(count, requested) == expected


def _bulk_dates():
    dates = {}
    for i in range(40):
        dates[(f"gem{i}", "1.0")] = NOW - timedelta(days=i % 12)
    dates[("gem5", "1.0")] = None
    dates[("gem6", "1.0")] = ValueError("bad payload")
    return dates


def _bulk_packages():
    packages = [PackageRef(f"gem{i}", "1.0") for i in range(40)]
    return packages + packages[:10]


def test_parallel_matches_sequential():
    dates = _bulk_dates()
    exceptions = [ExceptionEntry(gem="gem3", reason="approved")]
    sequential_engine, _ = _engine(dates, exceptions=exceptions)
    parallel_engine, _ = _engine(dates, exceptions=exceptions, delay=0.005)

    sequential = sequential_engine.run(_bulk_packages(), requested_workers=1)
    parallel = parallel_engine.run(_bulk_packages(), requested_workers=8)

    assert _keys(parallel.violations) == _keys(sequential.violations)
    assert _keys(parallel.excepted_violations) == _keys(sequential.excepted_violations)
    assert [v.age_days for v in parallel.violations] == sorted(v.age_days for v in parallel.violations)
    assert set(parallel_engine.last_cache) == {p.key for p in _bulk_packages()}
    assert len(parallel_engine.last_cache) == 40


def test_parallel_counter_matches_fetches():
    engine, fetcher = _engine(_bulk_dates(), delay=0.002)

    report = engine.run(_bulk_packages(), requested_workers=8)

    assert report.checked_count == len(fetcher.calls)
    assert 40 <= report.checked_count <= 50


def test_fallback_when_workers_cannot_start(monkeypatch, caplog):
    dates = _bulk_dates()
    engine, _ = _engine(dates)
    reference, _ = _engine(dates)

    def refuse(self, target, index):
        raise RuntimeError("can't start new thread")

    monkeypatch.setattr(AgeVerificationEngine, "_spawn_worker", refuse)

    report = engine.run(_bulk_packages(), requested_workers=8)
    expected = reference.run(_bulk_packages(), requested_workers=1)

    assert _keys(report.violations) == _keys(expected.violations)
    assert report.checked_count == expected.checked_count
    assert "Falling back to sequential processing" in caplog.text


class WorkerCrash(BaseException):
    pass


def test_fallback_when_a_worker_dies(caplog):
    dates = _bulk_dates()

    class ThreadHostileFetcher(FakeFetcher):
        def fetch(self, name, version, source):
            if threading.current_thread() is not threading.main_thread() and name == "gem1":
                raise WorkerCrash()
            return super().fetch(name, version, source)

    engine, _ = _engine(dates)
    engine.fetcher = ThreadHostileFetcher(dates)
    reference, _ = _engine(dates)

    report = engine.run(_bulk_packages(), requested_workers=4)
    expected = reference.run(_bulk_packages(), requested_workers=1)

    assert _keys(report.violations) == _keys(expected.violations)
    assert report.checked_count == expected.checked_count
    assert "Parallel processing failed" in caplog.text
