"""
Executor — applies a change-set through a Provider.

Behavioral Contract:
- Operations connected by a dependency edge run in graph order;
  independent operations run concurrently, bounded by `max_in_flight`
- Observed state is updated for exactly one resource after each successful apply
- Retryable provider errors are retried with exponential backoff;
  fatal errors fail the operation immediately
- A failed operation never aborts independent siblings under the default
  policy; its transitive dependents are skipped
- Cancellation takes effect between operations, never mid-operation;
  nothing already applied is rolled back
"""

import asyncio
import logging
from datetime import datetime
from typing import Dict, List, Mapping, Optional

from converge_kernel.errors import OperationTimeoutError, ProviderError
from converge_kernel.execution.provider import ErrorClass, Provider
from converge_kernel.models.plan import ChangeSet, Operation, OperationType
from converge_kernel.models.reconciler import FailurePolicy, ReconcilerConfig
from converge_kernel.models.run import OperationOutcome, OperationStatus
from converge_kernel.state.store import ObservedStateStore

log = logging.getLogger(__name__)


class RefreshReport:
    """What a refresh pass found out about live state."""

    def __init__(self):
        self.drifted: List[str] = []
        self.vanished: List[str] = []
        self.errors: List[str] = []


class _Execution:
    """Bookkeeping for one `execute` call."""

    def __init__(self, change_set: ChangeSet, max_in_flight: int):
        self.operations: Dict[tuple, Operation] = {
            op.ref.key: op for op in change_set.operations
        }
        self.finished: Dict[tuple, asyncio.Event] = {
            key: asyncio.Event() for key in self.operations
        }
        self.outcomes: Dict[tuple, OperationOutcome] = {}
        self.slots = asyncio.Semaphore(max_in_flight)
        self.aborted = False

    def prerequisites(self, op: Operation) -> List[Operation]:
        return [
            self.operations[ref.key]
            for ref in op.depends_on
            if ref.key in self.operations and ref.key != op.ref.key
        ]


class Executor:
    """The single writer of observed state."""

    def __init__(
        self,
        provider: Provider,
        store: ObservedStateStore,
        config: Optional[ReconcilerConfig] = None,
    ):
        self.provider = provider
        self.store = store
        self.config = config or ReconcilerConfig()

    async def execute(
        self,
        change_set: ChangeSet,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> List[OperationOutcome]:
        """
        Apply every operation in the change-set.
        Returns one outcome per operation, in change-set order.
        """
        if cancel_event is None:
            cancel_event = asyncio.Event()

        run = _Execution(change_set, self.config.max_in_flight)
        tasks = [
            asyncio.ensure_future(self._run_operation(op, run, cancel_event))
            for op in change_set.operations
        ]
        if tasks:
            await asyncio.gather(*tasks)

        return [run.outcomes[op.ref.key] for op in change_set.operations]

    async def _run_operation(
        self,
        op: Operation,
        run: _Execution,
        cancel_event: asyncio.Event,
    ) -> None:
        key = op.ref.key
        try:
            prerequisites = run.prerequisites(op)
            for prereq in prerequisites:
                await run.finished[prereq.ref.key].wait()

            blocked = [
                p for p in prerequisites
                if run.outcomes[p.ref.key].status != OperationStatus.SUCCEEDED
            ]
            if blocked:
                run.outcomes[key] = self._not_attempted(op, blocked, cancel_event)
                return

            async with run.slots:
                # Re-checked after waiting for a slot: cancel and abort
                # land between operations.
                if cancel_event.is_set():
                    run.outcomes[key] = OperationOutcome(
                        operation=op,
                        status=OperationStatus.CANCELLED,
                        error="run cancelled before operation started",
                    )
                    return
                if run.aborted:
                    run.outcomes[key] = OperationOutcome(
                        operation=op,
                        status=OperationStatus.SKIPPED,
                        error="run aborted after an earlier failure",
                    )
                    return

                outcome = await self._apply(op)

            run.outcomes[key] = outcome
            if (
                outcome.status == OperationStatus.FAILED
                and self.config.failure_policy == FailurePolicy.ABORT_RUN
            ):
                run.aborted = True
        finally:
            run.finished[key].set()

    def _not_attempted(
        self,
        op: Operation,
        blocked: List[Operation],
        cancel_event: asyncio.Event,
    ) -> OperationOutcome:
        """Outcome for an operation whose prerequisites did not succeed."""
        names = ", ".join(p.describe() for p in blocked)
        if cancel_event.is_set():
            return OperationOutcome(
                operation=op,
                status=OperationStatus.CANCELLED,
                error=f"run cancelled; prerequisites not applied: {names}",
            )
        log.info("Skipping %s: prerequisites not applied: %s", op.describe(), names)
        return OperationOutcome(
            operation=op,
            status=OperationStatus.SKIPPED,
            error=f"prerequisites not applied: {names}",
        )

    async def _apply(self, op: Operation) -> OperationOutcome:
        """Apply one operation with deadline and retry handling."""
        started = datetime.utcnow()
        timeout = self.config.operation_timeout_seconds
        attempts = 0

        while True:
            attempts += 1
            try:
                outputs = await asyncio.wait_for(self.provider.apply(op), timeout=timeout)
            except asyncio.TimeoutError:
                error = OperationTimeoutError(
                    f"{op.describe()} exceeded its {timeout}s deadline"
                )
            except Exception as e:
                error = e
            else:
                try:
                    self._record_success(op, outputs)
                except Exception as e:
                    # The provider call took effect; only recording it failed.
                    log.error("Applied %s but could not record the result: %s", op.describe(), e)
                    return OperationOutcome(
                        operation=op,
                        status=OperationStatus.FAILED,
                        attempts=attempts,
                        error=f"{type(e).__name__}: {e}",
                        started_at=started,
                        finished_at=datetime.utcnow(),
                    )
                log.info("Applied %s after %d attempt(s)", op.describe(), attempts)
                return OperationOutcome(
                    operation=op,
                    status=OperationStatus.SUCCEEDED,
                    attempts=attempts,
                    started_at=started,
                    finished_at=datetime.utcnow(),
                )

            error_class = self.provider.classify(error, op)
            if error_class == ErrorClass.RETRYABLE and attempts < self.config.max_attempts:
                delay = self.config.backoff_for(attempts)
                log.warning(
                    "Retrying %s in %.2fs (attempt %d/%d): %s",
                    op.describe(), delay, attempts, self.config.max_attempts, error,
                )
                await asyncio.sleep(delay)
                continue

            log.error(
                "Failed %s after %d attempt(s) [%s]: %s",
                op.describe(), attempts, error_class.value, error,
            )
            return OperationOutcome(
                operation=op,
                status=OperationStatus.FAILED,
                attempts=attempts,
                error=f"{type(error).__name__}: {error}",
                started_at=started,
                finished_at=datetime.utcnow(),
            )

    def _record_success(self, op: Operation, outputs) -> None:
        """Write the result of one successful operation to observed state."""
        if outputs is not None and not isinstance(outputs, Mapping):
            raise ProviderError(
                f"{op.describe()} returned {type(outputs).__name__}, expected a mapping of outputs"
            )
        if op.type == OperationType.DELETE:
            self.store.record_deleted(op.ref)
        else:
            self.store.record_applied(op.resource, op.depends_on, outputs or {})

    async def refresh(self) -> RefreshReport:
        """
        Read live state for every tracked resource and fold it into
        observed state. No-op for providers that cannot read.
        """
        report = RefreshReport()
        if not self.provider.supports_read:
            return report

        slots = asyncio.Semaphore(self.config.max_in_flight)
        timeout = self.config.operation_timeout_seconds

        async def _read(ref):
            async with slots:
                try:
                    live = await asyncio.wait_for(self.provider.read(ref), timeout=timeout)
                except asyncio.TimeoutError:
                    report.errors.append(f"{ref}: read exceeded its {timeout}s deadline")
                    return
                except Exception as e:
                    report.errors.append(f"{ref}: {type(e).__name__}: {e}")
                    return

            if live is None:
                self.store.record_deleted(ref)
                report.vanished.append(str(ref))
                return
            try:
                drifted = self.store.record_refreshed(ref, live)
            except ValueError as e:
                report.errors.append(f"{ref}: unreadable live state: {e}")
                return
            if drifted:
                report.drifted.append(str(ref))

        await asyncio.gather(*(_read(ref) for ref in self.store.refs()))
        report.drifted.sort()
        report.vanished.sort()
        report.errors.sort()

        for text in report.drifted:
            log.info("Drift detected on %s", text)
        for text in report.vanished:
            log.warning("Resource %s no longer exists; it will be recreated", text)
        for text in report.errors:
            log.warning("Refresh failed for %s", text)
        return report
