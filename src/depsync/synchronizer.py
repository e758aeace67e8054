"""
Dependency synchronizer.

Reconciles a table of pinned dependencies with the checkout on disk: every
entry ends up either at its pinned revision or reported as failed, with its
previous content untouched.
"""

import asyncio
import threading
import time
import uuid
from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional

from .backends import BackendRegistry, FetchBackend, default_backend_registry
from .cli_config import DepsyncConfig, get_config
from .entry import DependencyEntry
from .error_handling import (
    CancelledError,
    FetchError,
    MaterializeError,
    log_cancellation,
    log_fetch_error,
)
from .markers import write_marker
from .materialize import StagingArea
from .planner import Action, EntryPlan, SyncPlan, build_sync_plan
from .structured_logging import (
    get_fetch_logger,
    get_sync_logger,
    log_entry_outcome,
    log_sync_complete,
    log_sync_start,
)


class EntryStatus(Enum):
    """Outcome of one entry in a run."""

    ALREADY_CURRENT = "already-current"
    UPDATED = "updated"
    FETCHED_NEW = "fetched-new"
    FAILED = "failed"
    WOULD_UPDATE = "would-update"
    WOULD_FETCH = "would-fetch"


CANCELLED_REASON = "cancelled"


@dataclass(frozen=True)
class EntryOutcome:
    """Result for a single entry."""

    entry_id: str
    status: EntryStatus
    revision: str
    destination: str
    backend: str
    previous_revision: Optional[str] = None
    reason: Optional[str] = None
    duration_ms: int = 0

    @property
    def failed(self) -> bool:
        return self.status is EntryStatus.FAILED


@dataclass(frozen=True)
class SyncReport:
    """Complete results of a synchronization run."""

    outcomes: Dict[str, EntryOutcome]
    duration_ms: int
    dry_run: bool = False
    cancelled: bool = False
    run_id: str = ""

    @property
    def failed_outcomes(self) -> List[EntryOutcome]:
        return [o for o in self.outcomes.values() if o.failed]

    @property
    def succeeded(self) -> bool:
        """True when no entry failed."""
        return not self.failed_outcomes

    def by_status(self, status: EntryStatus) -> List[EntryOutcome]:
        return [o for o in self.outcomes.values() if o.status is status]

    def statuses(self) -> Dict[str, str]:
        """Map of entry id to status value, handy for assertions and JSON."""
        return {entry_id: o.status.value for entry_id, o in sorted(self.outcomes.items())}

    def counts(self) -> Dict[str, int]:
        counts = {status.value.replace("-", "_"): 0 for status in EntryStatus}
        for outcome in self.outcomes.values():
            counts[outcome.status.value.replace("-", "_")] += 1
        return counts


class ReportAccumulator:
    """Append-only, lock-protected collection of outcomes."""

    def __init__(self):
        self._lock = threading.Lock()
        self._outcomes: Dict[str, EntryOutcome] = {}

    def append(self, outcome: EntryOutcome) -> None:
        with self._lock:
            if outcome.entry_id in self._outcomes:
                raise ValueError(f"Outcome for {outcome.entry_id!r} already recorded")
            self._outcomes[outcome.entry_id] = outcome
        log_entry_outcome(
            outcome.entry_id,
            outcome.status.value,
            outcome.revision,
            reason=outcome.reason,
            duration_ms=outcome.duration_ms,
        )

    def __contains__(self, entry_id: str) -> bool:
        with self._lock:
            return entry_id in self._outcomes

    def snapshot(self) -> Dict[str, EntryOutcome]:
        with self._lock:
            return dict(self._outcomes)


@dataclass(frozen=True)
class SyncOptions:
    """
    Options for one run.

    ``filter`` restricts the run to ids for which it returns True;
    ``cancel_event`` may be set by the caller at any time to stop starting
    new entries.
    """

    parallelism: int = 8
    dry_run: bool = False
    filter: Optional[Callable[[str], bool]] = None
    root: Path = field(default_factory=lambda: Path("."))
    retry_attempts: int = 0
    state_dir_name: str = ".depsync"
    cancel_event: Optional[asyncio.Event] = None

    @classmethod
    def from_config(cls, config: DepsyncConfig, **overrides) -> "SyncOptions":
        values = {
            "parallelism": config.sync.parallelism,
            "root": Path(config.sync.root),
            "retry_attempts": config.sync.retry_attempts,
            "state_dir_name": config.sync.state_dir_name,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


class DependencySynchronizer:
    """
    Materializes pinned dependency entries under a checkout root.

    One asyncio task per entry; a semaphore bounds concurrent fetches and
    per-entry completion events order nested destinations outer-to-inner.
    """

    def __init__(
        self,
        config: Optional[DepsyncConfig] = None,
        registry: Optional[BackendRegistry] = None,
    ):
        self.config = config or get_config()
        self.registry = registry or default_backend_registry()

    def plan(self, entries: Iterable[DependencyEntry], options: SyncOptions) -> SyncPlan:
        """Validate and inspect without touching the filesystem."""
        return build_sync_plan(
            entries,
            Path(options.root),
            self.registry,
            state_dir_name=options.state_dir_name,
            selected=options.filter,
        )

    async def sync(
        self, entries: Iterable[DependencyEntry], options: Optional[SyncOptions] = None
    ) -> SyncReport:
        """
        Bring every selected entry's destination to its pinned revision.

        Args:
            entries: The loaded table, passed explicitly
            options: Run options

        Returns:
            SyncReport with one outcome per selected entry

        Raises:
            ConfigurationError: Before any mutation, if the table is invalid
        """
        options = options or SyncOptions()
        if options.parallelism <= 0:
            raise ValueError("parallelism must be positive")

        start = time.monotonic()
        run_id = uuid.uuid4().hex[:12]
        entries = tuple(entries)
        plan = self.plan(entries, options)

        log_sync_start(run_id, str(options.root), len(plan.entries), options.dry_run)

        if options.dry_run:
            report = self._dry_run_report(plan, start, run_id)
        else:
            report = await self._execute(plan, options, start, run_id)

        log_sync_complete(report.duration_ms, report.succeeded, report.counts())
        return report

    def _dry_run_report(self, plan: SyncPlan, start: float, run_id: str) -> SyncReport:
        statuses = {
            Action.NONE: EntryStatus.ALREADY_CURRENT,
            Action.FETCH: EntryStatus.WOULD_FETCH,
            Action.UPDATE: EntryStatus.WOULD_UPDATE,
        }
        accumulator = ReportAccumulator()
        for entry_plan in plan.entries:
            accumulator.append(self._outcome(entry_plan, statuses[entry_plan.action]))
        return SyncReport(
            outcomes=accumulator.snapshot(),
            duration_ms=_elapsed_ms(start),
            dry_run=True,
            run_id=run_id,
        )

    async def _execute(
        self, plan: SyncPlan, options: SyncOptions, start: float, run_id: str
    ) -> SyncReport:
        cancel_event = options.cancel_event or asyncio.Event()
        accumulator = ReportAccumulator()
        semaphore = asyncio.Semaphore(options.parallelism)
        done = {p.entry.id: asyncio.Event() for p in plan.entries}
        staging = StagingArea(Path(options.root), options.state_dir_name)

        for entry_plan in plan.entries:
            if entry_plan.action is Action.NONE:
                accumulator.append(self._outcome(entry_plan, EntryStatus.ALREADY_CURRENT))
                done[entry_plan.entry.id].set()

        pending = plan.pending()
        if pending:
            staging.purge_leftovers()

            async with AsyncExitStack() as stack:
                backends: Dict[str, FetchBackend] = {}
                for name in sorted({p.backend for p in pending}):
                    backends[name] = await stack.enter_async_context(
                        self.registry.create(name, self.config)
                    )

                tasks = [
                    self._run_entry(
                        p,
                        backends[p.backend],
                        staging,
                        options,
                        semaphore,
                        done,
                        cancel_event,
                        accumulator,
                    )
                    for p in pending
                ]
                results = await asyncio.gather(*tasks, return_exceptions=True)

            for entry_plan, result in zip(pending, results):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                if isinstance(result, BaseException) and entry_plan.entry.id not in accumulator:
                    get_sync_logger().error(
                        "entry_crashed",
                        entry_id=entry_plan.entry.id,
                        error=repr(result),
                    )
                    accumulator.append(
                        self._outcome(
                            entry_plan,
                            EntryStatus.FAILED,
                            reason=f"unexpected error: {result}",
                        )
                    )

        return SyncReport(
            outcomes=accumulator.snapshot(),
            duration_ms=_elapsed_ms(start),
            dry_run=False,
            cancelled=cancel_event.is_set(),
            run_id=run_id,
        )

    async def _run_entry(
        self,
        entry_plan: EntryPlan,
        backend: FetchBackend,
        staging: StagingArea,
        options: SyncOptions,
        semaphore: asyncio.Semaphore,
        done: Dict[str, asyncio.Event],
        cancel_event: asyncio.Event,
        accumulator: ReportAccumulator,
    ) -> None:
        entry = entry_plan.entry
        entry_start = time.monotonic()
        try:
            for ancestor in entry_plan.ancestors:
                await done[ancestor].wait()

            async with semaphore:
                if cancel_event.is_set():
                    raise CancelledError(CANCELLED_REASON)
                status = await self._materialize(
                    entry_plan, backend, staging, options, cancel_event
                )

            accumulator.append(
                self._outcome(entry_plan, status, duration_ms=_elapsed_ms(entry_start))
            )
        except CancelledError:
            log_cancellation(entry.id, "synchronizer", "_run_entry")
            accumulator.append(
                self._outcome(entry_plan, EntryStatus.FAILED, reason=CANCELLED_REASON)
            )
        except FetchError as e:
            accumulator.append(
                self._outcome(
                    entry_plan,
                    EntryStatus.FAILED,
                    reason=str(e),
                    duration_ms=_elapsed_ms(entry_start),
                )
            )
        except OSError as e:
            accumulator.append(
                self._outcome(
                    entry_plan,
                    EntryStatus.FAILED,
                    reason=f"filesystem error: {e}",
                    duration_ms=_elapsed_ms(entry_start),
                )
            )
        except asyncio.CancelledError:
            accumulator.append(
                self._outcome(entry_plan, EntryStatus.FAILED, reason=CANCELLED_REASON)
            )
            raise
        finally:
            done[entry.id].set()

    async def _materialize(
        self,
        entry_plan: EntryPlan,
        backend: FetchBackend,
        staging: StagingArea,
        options: SyncOptions,
        cancel_event: asyncio.Event,
    ) -> EntryStatus:
        entry = entry_plan.entry
        attempts = options.retry_attempts + 1
        last_error: Optional[FetchError] = None

        for attempt in range(1, attempts + 1):
            staged = staging.new_staging_dir(entry.id)
            try:
                previous = (
                    entry_plan.destination
                    if entry_plan.action is Action.UPDATE and entry_plan.destination.is_dir()
                    else None
                )
                await backend.fetch(entry, staged, previous)
                write_marker(staged, entry, backend.name)
                staging.swap_into_place(staged, entry_plan.destination, entry_plan.nested)
                if entry_plan.action is Action.UPDATE:
                    return EntryStatus.UPDATED
                return EntryStatus.FETCHED_NEW
            except MaterializeError:
                raise
            except FetchError as e:
                last_error = e
                get_fetch_logger().warning(
                    "fetch_attempt_failed",
                    entry_id=entry.id,
                    attempt=attempt,
                    attempts=attempts,
                    error=str(e),
                )
                log_fetch_error(
                    str(e),
                    "synchronizer",
                    "_materialize",
                    entry_id=entry.id,
                    locator=entry.locator,
                    attempt=attempt,
                )
                if cancel_event.is_set():
                    break
            finally:
                staging.discard(staged)

        raise last_error or FetchError(f"No fetch attempt made for {entry.id}")

    @staticmethod
    def _outcome(
        entry_plan: EntryPlan,
        status: EntryStatus,
        reason: Optional[str] = None,
        duration_ms: int = 0,
    ) -> EntryOutcome:
        return EntryOutcome(
            entry_id=entry_plan.entry.id,
            status=status,
            revision=entry_plan.entry.revision,
            destination=entry_plan.relative_path,
            backend=entry_plan.backend,
            previous_revision=entry_plan.marker.revision if entry_plan.marker else None,
            reason=reason,
            duration_ms=duration_ms,
        )


def get_synchronizer(
    config: Optional[DepsyncConfig] = None,
    registry: Optional[BackendRegistry] = None,
) -> DependencySynchronizer:
    """Factory function to create a synchronizer with config defaults."""
    return DependencySynchronizer(config or get_config(), registry)


async def sync(
    entries: Iterable[DependencyEntry],
    options: Optional[SyncOptions] = None,
    *,
    config: Optional[DepsyncConfig] = None,
    registry: Optional[BackendRegistry] = None,
) -> SyncReport:
    """Run one synchronization with a fresh synchronizer."""
    return await get_synchronizer(config, registry).sync(entries, options)
