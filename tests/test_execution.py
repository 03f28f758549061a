"""Tests for the Executor."""

import asyncio

from converge_kernel.errors import ProviderError
from converge_kernel.execution.executor import Executor
from converge_kernel.execution.provider import ErrorClass, Provider, ProviderRegistry
from converge_kernel.graph.builder import build_graph
from converge_kernel.models.plan import Operation, OperationType
from converge_kernel.models.reconciler import FailurePolicy, ReconcilerConfig
from converge_kernel.models.resource import Resource
from converge_kernel.models.run import OperationStatus, RunStatus
from converge_kernel.models.values import ResourceRef
from converge_kernel.planner.diff import plan
from converge_kernel.providers.memory import InMemoryProvider
from converge_kernel.reconciler.loop import run_status_for
from converge_kernel.state.store import ObservedStateStore


def _make_resource(kind, name, depends_on=(), **attributes) -> Resource:
    return Resource(kind=kind, name=name, attributes=attributes, depends_on=list(depends_on))


def _make_config(**overrides) -> ReconcilerConfig:
    values = {"backoff_base_seconds": 0, "operation_timeout_seconds": 1.0}
    values.update(overrides)
    return ReconcilerConfig(**values)


def _statuses(outcomes):
    return {str(o.operation.ref): o.status for o in outcomes}


DB = _make_resource("database", "main", engine="postgres")
APP = _make_resource("app", "api", ["database.main"], replicas=3)
CACHE = _make_resource("cache", "redis", memory="1Gi")


class TestExecutorHappyPath:
    def setup_method(self):
        self.store = ObservedStateStore()
        self.provider = InMemoryProvider()
        self.executor = Executor(self.provider, self.store, _make_config())

    def _apply(self, resources):
        change_set = plan(build_graph(resources), self.store.snapshot())
        return asyncio.run(self.executor.execute(change_set))

    def test_applies_in_dependency_order(self):
        outcomes = self._apply([APP, DB])

        assert [o.status for o in outcomes] == [OperationStatus.SUCCEEDED] * 2
        assert self.provider.calls == ["create(database.main)", "create(app.api)"]
        assert self.store.get(APP.ref).attributes == {"replicas": 3}
        assert self.store.get(APP.ref).depends_on == [DB.ref]
        assert self.store.get(DB.ref).outputs["id"] == "database-main"

    def test_converges(self):
        """After a fully successful apply, re-planning yields an empty change-set."""
        self._apply([APP, DB, CACHE])
        change_set = plan(build_graph([APP, DB, CACHE]), self.store.snapshot())
        assert change_set.is_empty

    def test_update_bumps_revision(self):
        self._apply([DB])
        assert self.store.get(DB.ref).revision == 1
        self._apply([_make_resource("database", "main", engine="mysql")])
        assert self.store.get(DB.ref).revision == 2
        assert self.provider.live["database.main"] == {"engine": "mysql"}

    def test_delete_removes_observed_entry(self):
        self._apply([DB, CACHE])
        outcomes = self._apply([CACHE])
        assert _statuses(outcomes) == {"database.main": OperationStatus.SUCCEEDED}
        assert self.store.get(DB.ref) is None
        assert "database.main" not in self.provider.live

    def test_empty_change_set(self):
        outcomes = self._apply([])
        assert outcomes == []
        assert self.provider.calls == []


class TestExecutorFailures:
    def setup_method(self):
        self.store = ObservedStateStore()
        self.provider = InMemoryProvider()

    def _execute(self, resources, **config):
        executor = Executor(self.provider, self.store, _make_config(**config))
        change_set = plan(build_graph(resources), self.store.snapshot())
        return asyncio.run(executor.execute(change_set))

    def test_fatal_failure_skips_dependents_only(self):
        """Create(DB) fails fatally: DB=failed, App=skipped, independent Cache applies."""
        self.provider.fail("database.main", ProviderError("quota exceeded"))
        outcomes = self._execute([DB, APP, CACHE])

        statuses = _statuses(outcomes)
        assert statuses == {
            "database.main": OperationStatus.FAILED,
            "app.api": OperationStatus.SKIPPED,
            "cache.redis": OperationStatus.SUCCEEDED,
        }
        assert run_status_for(outcomes) == RunStatus.PARTIAL_FAILURE

        failed = outcomes[[str(o.operation.ref) for o in outcomes].index("database.main")]
        assert failed.attempts == 1
        assert "quota exceeded" in failed.error
        assert self.store.get(DB.ref) is None
        assert self.store.get(CACHE.ref) is not None
        assert "create(app.api)" not in self.provider.calls

    def test_skips_propagate_transitively(self):
        web = _make_resource("service", "web", ["app.api"])
        self.provider.fail("database.main", ProviderError("boom"))
        statuses = _statuses(self._execute([DB, APP, web]))
        assert statuses["service.web"] == OperationStatus.SKIPPED

    def test_retryable_error_is_retried(self):
        self.provider.fail("database.main", ProviderError("throttled", retryable=True), times=2)
        outcomes = self._execute([DB], max_attempts=3)
        assert outcomes[0].status == OperationStatus.SUCCEEDED
        assert outcomes[0].attempts == 3
        assert self.provider.calls == ["create(database.main)"] * 3

    def test_retry_budget_exhausted(self):
        self.provider.fail("database.main", ProviderError("throttled", retryable=True), times=5)
        outcomes = self._execute([DB], max_attempts=3)
        assert outcomes[0].status == OperationStatus.FAILED
        assert outcomes[0].attempts == 3

    def test_unexpected_exception_is_fatal(self):
        self.provider.fail("database.main", RuntimeError("driver crashed"), times=3)
        outcomes = self._execute([DB], max_attempts=3)
        assert outcomes[0].status == OperationStatus.FAILED
        assert outcomes[0].attempts == 1
        assert outcomes[0].error.startswith("RuntimeError")

    def test_timeout_is_retried_then_fails(self):
        self.provider.delay("database.main", 0.5)
        outcomes = self._execute([DB], max_attempts=2, operation_timeout_seconds=0.05)
        assert outcomes[0].status == OperationStatus.FAILED
        assert outcomes[0].attempts == 2
        assert "OperationTimeoutError" in outcomes[0].error
        assert self.store.get(DB.ref) is None

    def test_unrecordable_result_fails_operation(self):
        class BadOutputs(InMemoryProvider):
            async def apply(self, operation):
                await super().apply(operation)
                return 5

        self.provider = BadOutputs()
        outcomes = self._execute([DB, APP], max_attempts=3)

        assert _statuses(outcomes) == {
            "database.main": OperationStatus.FAILED,
            "app.api": OperationStatus.SKIPPED,
        }
        assert outcomes[0].attempts == 1
        assert outcomes[0].error.startswith("ProviderError")
        assert "expected a mapping" in outcomes[0].error
        assert self.store.get(DB.ref) is None

    def test_abort_run_policy(self):
        first = _make_resource("alpha", "one")
        second = _make_resource("beta", "two")
        self.provider.fail("alpha.one", ProviderError("boom"))
        outcomes = self._execute(
            [first, second],
            failure_policy=FailurePolicy.ABORT_RUN,
            max_in_flight=1,
        )
        assert _statuses(outcomes) == {
            "alpha.one": OperationStatus.FAILED,
            "beta.two": OperationStatus.SKIPPED,
        }
        assert outcomes[1].error == "run aborted after an earlier failure"


class TestExecutorConcurrency:
    def setup_method(self):
        self.store = ObservedStateStore()

    def test_independent_operations_run_concurrently(self):
        provider = InMemoryProvider(latency=0.05)
        executor = Executor(provider, self.store, _make_config())
        x = _make_resource("node", "x")
        y = _make_resource("node", "y")
        change_set = plan(build_graph([x, y]), self.store.snapshot())

        asyncio.run(executor.execute(change_set))

        assert provider.max_in_flight_seen == 2
        assert set(self.store.snapshot().resources) == {"node.x", "node.y"}

    def test_in_flight_bound(self):
        provider = InMemoryProvider(latency=0.02)
        executor = Executor(provider, self.store, _make_config(max_in_flight=2))
        resources = [_make_resource("node", f"n{i}") for i in range(6)]
        change_set = plan(build_graph(resources), self.store.snapshot())

        outcomes = asyncio.run(executor.execute(change_set))

        assert provider.max_in_flight_seen == 2
        assert all(o.status == OperationStatus.SUCCEEDED for o in outcomes)

    def test_dependent_waits_for_slow_dependency(self):
        provider = InMemoryProvider()
        provider.delay("database.main", 0.05)
        executor = Executor(provider, self.store, _make_config())
        change_set = plan(build_graph([APP, DB, CACHE]), self.store.snapshot())

        asyncio.run(executor.execute(change_set))

        assert provider.calls.index("create(app.api)") > provider.calls.index(
            "create(database.main)"
        )
        assert provider.calls.index("create(cache.redis)") < provider.calls.index(
            "create(app.api)"
        )


class _CancellingProvider(InMemoryProvider):
    """Sets the cancel event while applying its first operation."""

    def __init__(self, cancel_event):
        super().__init__()
        self.cancel_event = cancel_event

    async def apply(self, operation):
        result = await super().apply(operation)
        self.cancel_event.set()
        return result


class TestExecutorCancellation:
    def test_cancel_between_operations(self):
        async def scenario():
            cancel_event = asyncio.Event()
            provider = _CancellingProvider(cancel_event)
            store = ObservedStateStore()
            executor = Executor(provider, store, _make_config(max_in_flight=1))
            resources = [_make_resource("node", f"n{i}") for i in range(3)]
            change_set = plan(build_graph(resources), store.snapshot())
            outcomes = await executor.execute(change_set, cancel_event)
            return outcomes, store

        outcomes, store = asyncio.run(scenario())

        assert [o.status for o in outcomes] == [
            OperationStatus.SUCCEEDED,
            OperationStatus.CANCELLED,
            OperationStatus.CANCELLED,
        ]
        assert run_status_for(outcomes) == RunStatus.CANCELLED
        # Applied work is not rolled back.
        assert store.get(ResourceRef.parse("node.n0")) is not None

    def test_dependents_of_cancelled_are_cancelled(self):
        async def scenario():
            cancel_event = asyncio.Event()
            cancel_event.set()
            store = ObservedStateStore()
            executor = Executor(InMemoryProvider(), store, _make_config())
            change_set = plan(build_graph([DB, APP]), store.snapshot())
            return await executor.execute(change_set, cancel_event)

        outcomes = asyncio.run(scenario())
        assert [o.status for o in outcomes] == [OperationStatus.CANCELLED] * 2


class TestRefresh:
    def setup_method(self):
        self.store = ObservedStateStore()
        self.provider = InMemoryProvider()
        self.executor = Executor(self.provider, self.store, _make_config())
        change_set = plan(build_graph([DB, CACHE]), self.store.snapshot())
        asyncio.run(self.executor.execute(change_set))

    def test_detects_drift(self):
        self.provider.drift("database.main", engine="mysql")
        report = asyncio.run(self.executor.refresh())
        assert report.drifted == ["database.main"]
        assert self.store.get(DB.ref).attributes == {"engine": "mysql"}

    def test_detects_vanished(self):
        self.provider.remove("cache.redis")
        report = asyncio.run(self.executor.refresh())
        assert report.vanished == ["cache.redis"]
        assert self.store.get(CACHE.ref) is None

    def test_no_drift(self):
        version = self.store.version
        report = asyncio.run(self.executor.refresh())
        assert (report.drifted, report.vanished, report.errors) == ([], [], [])
        assert self.store.version == version

    def test_unreadable_live_state_is_reported(self):
        self.provider.live["database.main"] = {"engine": float("nan")}
        report = asyncio.run(self.executor.refresh())
        assert report.drifted == []
        assert len(report.errors) == 1
        assert report.errors[0].startswith("database.main: unreadable live state")
        assert self.store.get(DB.ref).attributes == {"engine": "postgres"}

    def test_skipped_for_write_only_providers(self):
        class WriteOnly(Provider):
            async def apply(self, operation):
                return {}

        executor = Executor(WriteOnly(), self.store, _make_config())
        report = asyncio.run(executor.refresh())
        assert report.drifted == []


class TestProviderRegistry:
    def test_dispatches_by_kind(self):
        databases = InMemoryProvider()
        caches = InMemoryProvider()
        registry = ProviderRegistry()
        registry.register("database", databases)
        registry.register("cache", caches)

        store = ObservedStateStore()
        executor = Executor(registry, store, _make_config())
        change_set = plan(build_graph([DB, CACHE]), store.snapshot())
        asyncio.run(executor.execute(change_set))

        assert list(databases.live) == ["database.main"]
        assert list(caches.live) == ["cache.redis"]
        assert registry.supports_read

    def test_unknown_kind_fails(self):
        registry = ProviderRegistry()
        store = ObservedStateStore()
        executor = Executor(registry, store, _make_config())
        change_set = plan(build_graph([DB]), store.snapshot())
        outcomes = asyncio.run(executor.execute(change_set))
        assert outcomes[0].status == OperationStatus.FAILED
        assert "No provider registered" in outcomes[0].error

    def test_classify_uses_kind_provider(self):
        class AlwaysRetry(InMemoryProvider):
            def classify(self, error, operation=None):
                return ErrorClass.RETRYABLE

        registry = ProviderRegistry()
        registry.register("database", AlwaysRetry())
        op = Operation(type=OperationType.CREATE, resource=DB, reason="test")
        assert registry.classify(RuntimeError("x"), op) == ErrorClass.RETRYABLE
        assert registry.classify(RuntimeError("x")) == ErrorClass.FATAL
