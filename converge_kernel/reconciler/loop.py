"""
Reconciler Loop — converges live state toward desired state, forever.

Each cycle refreshes observed state (when the provider can read), builds
the dependency graph, plans a change-set and applies it. Failed cycles do
not stop the loop: the next tick tries again, which is what heals drift
and transient failures.

States:
  IDLE → REFRESHING → PLANNING → APPLYING → (CONVERGED | DEGRADED) → IDLE

Triggers:
  timer tick (fixed interval or cron schedule), external signal
  (`notify`, e.g. a new desired-state commit), manual `run_once`.
"""

import asyncio
import logging
from datetime import datetime
from typing import Callable, List, Optional
from uuid import uuid4

from croniter import croniter

from converge_kernel.errors import ConfigurationError
from converge_kernel.execution.executor import Executor
from converge_kernel.execution.provider import Provider
from converge_kernel.graph.builder import build_graph
from converge_kernel.history.store import RunHistoryStore
from converge_kernel.models.plan import ChangeSet
from converge_kernel.models.reconciler import LoopState, ReconcilerConfig, ReconcilerStatus
from converge_kernel.models.run import (
    OperationOutcome,
    OperationStatus,
    ReconciliationRun,
    RunStatus,
)
from converge_kernel.models.state import ObservedState
from converge_kernel.planner.diff import plan
from converge_kernel.reconciler.source import DesiredStateSource
from converge_kernel.state.store import ObservedStateStore

log = logging.getLogger(__name__)


def run_status_for(outcomes: List[OperationOutcome]) -> RunStatus:
    """Overall status of an applying phase."""
    statuses = {o.status for o in outcomes}
    if OperationStatus.CANCELLED in statuses:
        return RunStatus.CANCELLED
    if statuses - {OperationStatus.SUCCEEDED}:
        return RunStatus.PARTIAL_FAILURE
    return RunStatus.CONVERGED


class ReconcilerLoop:
    """
    The reconciliation engine's heartbeat.

    Cycles never overlap: a new planning phase starts only after the prior
    applying phase has fully settled, so the planner always sees a
    consistent observed snapshot.
    """

    def __init__(
        self,
        source: DesiredStateSource,
        provider: Provider,
        store: Optional[ObservedStateStore] = None,
        history: Optional[RunHistoryStore] = None,
        config: Optional[ReconcilerConfig] = None,
    ):
        self.source = source
        self.provider = provider
        self.store = store or ObservedStateStore()
        self.history = history or RunHistoryStore()
        self._config = config or ReconcilerConfig()
        self.executor = Executor(provider, self.store, self._config)

        self._state = LoopState.IDLE
        self._health: Optional[LoopState] = None
        self._last_run: Optional[ReconciliationRun] = None
        self._consecutive_failures = 0

        self._lock = asyncio.Lock()
        self._cancel_event: Optional[asyncio.Event] = None
        self._stop: Optional[asyncio.Event] = None
        self._wake: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Future] = None

        subscribe = getattr(source, "subscribe", None)
        if subscribe is not None:
            subscribe(self.notify)

    # --- Configuration & status ---

    @property
    def config(self) -> ReconcilerConfig:
        return self._config

    @config.setter
    def config(self, config: ReconcilerConfig) -> None:
        """Swap configuration; takes effect from the next operation/cycle."""
        self._config = config
        self.executor.config = config

    @property
    def state(self) -> LoopState:
        """Current phase of the loop."""
        return self._state

    @property
    def running(self) -> bool:
        """True while the background loop started by `start` is alive."""
        return self._task is not None and not self._task.done()

    @property
    def last_run(self) -> Optional[ReconciliationRun]:
        return self._last_run

    def status(self) -> ReconcilerStatus:
        """Read-only status snapshot for monitoring."""
        return ReconcilerStatus(
            state=self._state,
            health=self._health,
            running=self.running,
            observed_version=self.store.version,
            tracked_resources=len(self.store),
            consecutive_failures=self._consecutive_failures,
            last_run=self._last_run.model_copy(deep=True) if self._last_run else None,
        )

    def observed_snapshot(self) -> ObservedState:
        """Detached copy of the current observed state."""
        return self.store.snapshot()

    # --- Planning ---

    def plan(self) -> ChangeSet:
        """
        Plan against the current desired state and observed snapshot
        without applying anything. Raises ConfigurationError.
        """
        graph = build_graph(self.source.load())
        return plan(graph, self.store.snapshot(), prune=self._config.prune)

    # --- Triggers ---

    async def run_once(self, trigger: str = "manual") -> ReconciliationRun:
        """
        Run a single reconciliation cycle and return its record.
        An error that stops the cycle (ConfigurationError, an unreachable
        source, ...) is recorded as a failed run and re-raised.
        """
        async with self._lock:
            self._cancel_event = asyncio.Event()
            run = ReconciliationRun(
                id=f"run_{uuid4().hex[:12]}",
                trigger=trigger,
                started_at=datetime.utcnow(),
            )
            try:
                return await self._cycle(run)
            finally:
                self._cancel_event = None
                self._state = LoopState.IDLE

    async def _cycle(self, run: ReconciliationRun) -> ReconciliationRun:
        log.info("Starting reconciliation run %s (trigger=%s)", run.id, run.trigger)
        try:
            if self._config.refresh_before_plan and self.provider.supports_read:
                self._state = LoopState.REFRESHING
                report = await self.executor.refresh()
                run.drifted = sorted(report.drifted + report.vanished)
                run.refresh_errors = report.errors

            self._state = LoopState.PLANNING
            change_set = self.plan()

            run.unchanged = len(change_set.unchanged)
            if change_set.is_empty:
                run.status = RunStatus.CONVERGED
            else:
                self._state = LoopState.APPLYING
                log.info("Applying change-set for run %s: %s", run.id, change_set.summary())
                run.outcomes = await self.executor.execute(change_set, self._cancel_event)
                run.status = run_status_for(run.outcomes)
        except ConfigurationError as e:
            log.error("Run %s aborted before applying: %s", run.id, e)
            self._fail(run, str(e))
            raise
        except Exception as e:
            log.error("Run %s failed: %s: %s", run.id, type(e).__name__, e)
            self._fail(run, f"{type(e).__name__}: {e}")
            raise

        self._finish(run)
        return run

    def _fail(self, run: ReconciliationRun, error: str) -> None:
        run.status = RunStatus.FAILED
        run.error = error
        self._finish(run)

    def _finish(self, run: ReconciliationRun) -> None:
        """Settle a run: record it and move to CONVERGED or DEGRADED."""
        run.finished_at = datetime.utcnow()
        run.observed_version = self.store.version

        if run.status == RunStatus.CONVERGED:
            self._state = LoopState.CONVERGED
            self._consecutive_failures = 0
        else:
            self._state = LoopState.DEGRADED
            self._consecutive_failures += 1
        self._health = self._state

        self.history.append(run)
        self._last_run = run
        log.info(
            "Run %s finished: %s (%d operations, %d unchanged)",
            run.id, run.status.value, len(run.outcomes), run.unchanged,
        )

    def notify(self) -> None:
        """External signal: run a cycle as soon as possible."""
        if self._wake is not None:
            self._wake.set()

    def cancel_run(self) -> None:
        """Cancel the run in progress between operations. Applied work stays."""
        if self._cancel_event is not None:
            self._cancel_event.set()

    async def start(self, interval: Optional[float] = None) -> Callable[[], None]:
        """
        Run a first cycle now, then keep reconciling in the background.

        The first cycle runs in the caller's context, so a ConfigurationError
        surfaces here. Returns a `cancel` callable that stops the loop and
        cancels any run in progress.
        """
        if self.running:
            raise RuntimeError("Reconciler loop is already running")

        self._stop = asyncio.Event()
        self._wake = asyncio.Event()
        await self.run_once(trigger="start")

        self._task = asyncio.ensure_future(self._run_forever(interval))
        return self.cancel

    def cancel(self) -> None:
        """Stop the background loop and cancel the run in progress."""
        if self._stop is not None:
            self._stop.set()
        if self._wake is not None:
            self._wake.set()
        self.cancel_run()

    async def stop(self) -> None:
        """Cancel and wait for the background loop to exit."""
        self.cancel()
        if self._task is not None:
            await self._task
            self._task = None

    async def _run_forever(self, interval: Optional[float]) -> None:
        while not self._stop.is_set():
            trigger = await self._wait_for_trigger(self._next_delay(interval))
            if trigger is None:
                break
            try:
                await self.run_once(trigger=trigger)
            except ConfigurationError:
                # Already recorded as a failed run; keep healing on the next tick.
                continue
            except Exception:
                log.exception("Reconciliation cycle failed; retrying on the next trigger")
                continue
        log.info("Reconciler loop stopped")

    async def _wait_for_trigger(self, delay: float) -> Optional[str]:
        """Block until the timer fires or a signal arrives. None means stop."""
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return None if self._stop.is_set() else "timer"
        self._wake.clear()
        return None if self._stop.is_set() else "signal"

    def _next_delay(self, interval: Optional[float]) -> float:
        """Seconds until the next timer tick."""
        if interval is not None:
            return interval
        if self._config.schedule:
            now = datetime.now()
            next_fire = croniter(self._config.schedule, now).get_next(datetime)
            return max(0.0, (next_fire - now).total_seconds())
        return self._config.interval_seconds
