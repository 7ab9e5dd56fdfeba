# CFSv2 Forecast Rotator - Window Manager
# SPDX-License-Identifier: Apache-2.0

"""
Maintains the three day-offset slots of each variable.

Every offset is an independent cycle:

    Pending -> Enumerating -> Fetching -> Aggregating -> Committed | Failed

Offsets are not shifted locally; each run re-fetches 0, 1 and 2 from the
archive and replaces the matching file. A commit is a same-filesystem
rename (Path.replace) of a fully written staged file onto the canonical path, so
readers see either the previous or the new file. A failed cycle leaves the
previous file untouched.
"""

import hashlib
import logging
import os
import shutil
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from rotator.aggregate import Aggregator
from rotator.config import RotatorSettings
from rotator.errors import CoupledDesync, CycleCancelled, RotatorError, StaleForecast
from rotator.fetcher import Fetcher
from rotator.freshness import (
    clear_stale_warning,
    forecast_start,
    is_current,
    past_cutoff,
    write_stale_warning,
)
from rotator.reporting import Reporter
from rotator.sources import DAY_OFFSETS, enumerate_sources
from rotator.variables import FormatKind, classify, validate_variable_id

logger = logging.getLogger(__name__)

STAGING_DIRNAME = ".staging"


class CycleState(str, Enum):
    PENDING = "pending"
    ENUMERATING = "enumerating"
    FETCHING = "fetching"
    AGGREGATING = "aggregating"
    COMMITTED = "committed"
    FAILED = "failed"


class VariableStatus(str, Enum):
    OK = "ok"              # All offsets committed
    DEGRADED = "degraded"  # At least one offset committed
    FAILED = "failed"      # No offset committed


@dataclass
class CycleResult:
    """Outcome of one (variable, day-offset) acquisition"""

    variable: str
    day_offset: int
    kind: FormatKind
    state: CycleState = CycleState.PENDING
    output: Optional[Path] = None
    members_used: int = 0
    members_missing: list[str] = field(default_factory=list)
    changed: Optional[bool] = None
    forecast_start: Optional[date] = None
    stale: bool = False
    error: Optional[Exception] = None

    # Set between acquisition and commit
    staged: Optional[Path] = None
    staging_dir: Optional[Path] = None

    @property
    def committed(self) -> bool:
        return self.state == CycleState.COMMITTED

    @property
    def reason(self) -> Optional[str]:
        if self.error is None:
            return None
        return f"{type(self.error).__name__}: {self.error}"


@dataclass
class VariableReport:
    """All cycles of one variable"""

    variable: str
    kind: FormatKind
    cycles: list[CycleResult] = field(default_factory=list)

    @property
    def committed_offsets(self) -> list[int]:
        return [c.day_offset for c in self.cycles if c.committed]

    @property
    def failed_offsets(self) -> list[int]:
        return [c.day_offset for c in self.cycles if not c.committed]

    @property
    def status(self) -> VariableStatus:
        committed = len(self.committed_offsets)
        if self.cycles and committed == len(self.cycles):
            return VariableStatus.OK
        if committed > 0:
            return VariableStatus.DEGRADED
        return VariableStatus.FAILED


def _sha256(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for block in iter(lambda: f.read(1024 * 1024), b""):
            digest.update(block)
    return digest.hexdigest()


def _fsync(path: Path):
    with open(path, "rb") as f:
        os.fsync(f.fileno())


class WindowManager:
    """Runs acquisition cycles and commits their outputs"""

    def __init__(
        self,
        settings: Optional[RotatorSettings] = None,
        fetcher: Optional[Fetcher] = None,
        aggregator: Optional[Aggregator] = None,
        clock: Optional[Callable[[], datetime]] = None,
        cancel_event: Optional[threading.Event] = None,
    ):
        """
        Initialize the window manager.

        Args:
            settings: Run settings (default: loaded from environment)
            fetcher: Download backend (default: built from settings)
            aggregator: Averaging backend (default: built from settings)
            clock: Returns the current UTC time, used for freshness checks
            cancel_event: Set by the caller to cancel in-flight cycles
        """
        self.settings = settings or RotatorSettings()
        self.policy = self.settings.format_policy()
        self.fetcher = fetcher or Fetcher.from_settings(self.settings)
        self.aggregator = aggregator or Aggregator(time_dim=self.settings.time_dim)
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.cancel_event = cancel_event or threading.Event()

    def cancel(self):
        self.cancel_event.set()

    # ------------------------------------------------------------------
    # Public entry points
    # ------------------------------------------------------------------

    def update(self, variable: str) -> VariableReport:
        """Refresh all day-offsets of one variable"""
        validate_variable_id(variable)
        kind = classify(variable, self.policy)
        reporter = Reporter(variable)
        reporter.classified(kind)

        workers = min(self.settings.max_concurrent_cycles, len(DAY_OFFSETS))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f"cycle-{variable}") as executor:
            futures = [
                executor.submit(self.run_cycle, variable, offset, kind, reporter)
                for offset in DAY_OFFSETS
            ]
            try:
                cycles = [f.result() for f in futures]
            except KeyboardInterrupt:
                self.cancel()
                raise

        report = VariableReport(variable, kind, cycles)
        reporter.final(report.status, report.committed_offsets, report.failed_offsets)
        return report

    def update_all(self, variables: list[str]) -> list[VariableReport]:
        """
        Refresh several variables.

        Variables listed in settings.coupled_variables are committed together
        per offset when more than one of them is requested. A failing variable
        never stops the others.
        """
        for variable in variables:
            validate_variable_id(variable)

        coupled = [v for v in variables if v in self.settings.coupled_variables]
        if len(coupled) < 2:
            coupled = []

        reports = {}
        if coupled:
            logger.info(f"Processing coupled variables together: {' '.join(coupled)}")
            for report in self.update_coupled(coupled):
                reports[report.variable] = report

        for variable in variables:
            if variable not in reports:
                reports[variable] = self.update(variable)

        return [reports[v] for v in variables]

    def update_coupled(self, variables: list[str]) -> list[VariableReport]:
        """Refresh a group of variables whose offsets must stay aligned"""
        kinds = {v: classify(v, self.policy) for v in variables}
        reporters = {v: Reporter(v) for v in variables}
        for variable in variables:
            reporters[variable].classified(kinds[variable])

        cycles = {v: [] for v in variables}
        for offset in DAY_OFFSETS:
            results = {}
            try:
                for variable in variables:
                    results[variable] = self.acquire(variable, offset, kinds[variable], reporters[variable])

                if all(r.staged is not None for r in results.values()):
                    for variable, result in results.items():
                        self.commit(result, reporters[variable])
                else:
                    failed = [v for v, r in results.items() if r.staged is None]
                    for variable, result in results.items():
                        if result.staged is None:
                            continue
                        result.staged = None
                        result.state = CycleState.FAILED
                        result.error = CoupledDesync(
                            f"coupled variable(s) {', '.join(failed)} failed; discarding new data"
                        )
                        reporters[variable].offset_failed(offset, result.error)
            finally:
                for result in results.values():
                    self._cleanup(result)

            for variable, result in results.items():
                cycles[variable].append(result)

        reports = []
        for variable in variables:
            report = VariableReport(variable, kinds[variable], cycles[variable])
            reporters[variable].final(report.status, report.committed_offsets, report.failed_offsets)
            reports.append(report)
        return reports

    # ------------------------------------------------------------------
    # Cycle steps
    # ------------------------------------------------------------------

    def run_cycle(self, variable: str, day_offset: int, kind: FormatKind, reporter: Reporter) -> CycleResult:
        """Acquire and, on success, commit one (variable, day-offset)"""
        result = self.acquire(variable, day_offset, kind, reporter)
        try:
            if result.staged is not None:
                self.commit(result, reporter)
        finally:
            self._cleanup(result)
        return result

    def acquire(self, variable: str, day_offset: int, kind: FormatKind, reporter: Reporter) -> CycleResult:
        """
        Run Enumerating -> Fetching -> Aggregating for one offset.

        On success result.staged points at a complete file inside the staging
        directory. Cycle errors end in the Failed state with staging removed;
        CycleCancelled is re-raised after cleanup.
        """
        result = CycleResult(variable=variable, day_offset=day_offset, kind=kind)
        variable_dir = self.settings.variable_dir(variable)
        result.staging_dir = variable_dir / STAGING_DIRNAME / f"day{day_offset}-{uuid.uuid4().hex[:8]}"
        canonical = self.settings.output_path(variable, day_offset)

        try:
            result.state = CycleState.ENUMERATING
            descriptors = enumerate_sources(
                variable,
                day_offset,
                kind,
                base_url=self.settings.base_url,
                ensemble_template=self.settings.ensemble_template,
                aggregated_template=self.settings.aggregated_template,
                hours=self.settings.issuance_hours,
                members=self.settings.members,
            )
            reporter.offset_started(day_offset, len(descriptors))
            self._check_cancelled()

            result.state = CycleState.FETCHING
            ensemble = self.fetcher.fetch(descriptors, result.staging_dir / "sources", self.cancel_event)
            self._check_cancelled()

            for failure in ensemble.failures:
                result.members_missing.append(failure.descriptor.label)
                reporter.source_missing(day_offset, failure.descriptor.label, failure.reason)
            reporter.fetch_summary(day_offset, len(ensemble.successes), len(ensemble))

            result.state = CycleState.AGGREGATING
            staged = self.aggregator.aggregate(
                kind,
                ensemble,
                target=result.staging_dir / canonical.name,
                reference=canonical if canonical.exists() else None,
            )
            result.members_used = len(ensemble.successes)
            if kind == FormatKind.ENSEMBLE:
                reporter.aggregated(day_offset, result.members_used)

            if day_offset == 0 and self.settings.check_freshness:
                self._check_freshness(result, staged, reporter)
            self._check_cancelled()

            result.staged = staged

        except CycleCancelled:
            result.state = CycleState.FAILED
            self._cleanup(result)
            raise
        except RotatorError as e:
            result.state = CycleState.FAILED
            result.error = e
            reporter.offset_failed(day_offset, e)
            self._cleanup(result)
        except BaseException:
            self._cleanup(result)
            raise

        return result

    def commit(self, result: CycleResult, reporter: Reporter):
        """Atomically replace the canonical output with the staged file"""
        canonical = self.settings.output_path(result.variable, result.day_offset)
        canonical.parent.mkdir(parents=True, exist_ok=True)

        try:
            previous = _sha256(canonical) if canonical.exists() else None
            _fsync(result.staged)
            result.staged.replace(canonical)
        except OSError as e:
            result.state = CycleState.FAILED
            result.error = e
            reporter.offset_failed(result.day_offset, e)
            return

        result.staged = None
        result.output = canonical
        result.changed = previous != _sha256(canonical)
        result.state = CycleState.COMMITTED

        if result.day_offset == 0 and result.forecast_start is not None:
            variable_dir = self.settings.variable_dir(result.variable)
            if result.stale:
                warning = write_stale_warning(variable_dir, result.variable, result.forecast_start, self.clock())
                reporter.stale(result.day_offset, f"created stale data warning file: {warning.name}")
            elif clear_stale_warning(variable_dir):
                reporter.stale_cleared()

        reporter.committed(result.day_offset, canonical, result.changed)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _check_freshness(self, result: CycleResult, staged: Path, reporter: Reporter):
        start = forecast_start(staged, self.settings.time_dim)
        if start is None:
            reporter.stale(result.day_offset, "could not determine forecast start date, skipping freshness check")
            return

        now = self.clock()
        today = now.date()
        result.forecast_start = start
        if is_current(start, today):
            return

        expected = f"{today} or {today + timedelta(days=1)}"
        cutoff = self.settings.stale_cutoff_hour
        if not past_cutoff(now, cutoff):
            raise StaleForecast(
                f"forecast starts {start} but expected {expected}; "
                f"before {cutoff:02d}:00 UTC cutoff, will retry for fresh data",
                forecast_date=start,
            )

        result.stale = True
        reporter.stale(
            result.day_offset,
            f"using stale forecast data (starts {start}, expected {expected}); "
            f"past {cutoff:02d}:00 UTC cutoff",
        )

    def _check_cancelled(self):
        if self.cancel_event.is_set():
            raise CycleCancelled("cycle cancelled by caller")

    @staticmethod
    def _cleanup(result: CycleResult):
        """Discard everything staged for this cycle"""
        if result.staging_dir is None:
            return
        shutil.rmtree(result.staging_dir, ignore_errors=True)
        try:
            result.staging_dir.parent.rmdir()
        except OSError:
            pass  # Other cycles still staging
        result.staged = None
