"""
Converge Kernel API — FastAPI endpoints.

Exposes the reconciler for external monitoring and CLI consumption:
- Loop status and last run outcome
- Observed state inspection
- Desired state replacement (simulating a new commit)
- Dry-run planning
- Manual reconciliation trigger
- Run history
- Reconciler configuration
"""

from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError

from converge_kernel.common.logging import configure_logging
from converge_kernel.errors import ConfigurationError
from converge_kernel.graph.builder import build_graph
from converge_kernel.history.store import RunHistoryStore
from converge_kernel.models.reconciler import ReconcilerConfig
from converge_kernel.models.resource import Resource
from converge_kernel.models.values import ResourceRef
from converge_kernel.providers.memory import InMemoryProvider
from converge_kernel.reconciler.loop import ReconcilerLoop
from converge_kernel.reconciler.source import StaticDesiredState
from converge_kernel.settings import Settings, get_settings


# --- Request/Response Models ---

class ResourceSpec(BaseModel):
    kind: str
    name: str
    attributes: dict = {}
    depends_on: List[str] = []              # "kind.name"


class DesiredStateRequest(BaseModel):
    resources: List[ResourceSpec]


# --- Application Factory ---

def create_app(
    reconciler: Optional[ReconcilerLoop] = None,
    settings: Optional[Settings] = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""

    settings = settings or get_settings()

    if reconciler is None:
        reconciler = ReconcilerLoop(
            source=StaticDesiredState(),
            provider=InMemoryProvider(),
            history=RunHistoryStore(db_path=settings.history_db_path),
            config=settings.reconciler_config(),
        )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(level=settings.log_level)
        if settings.autostart:
            await reconciler.start()
        try:
            yield
        finally:
            if reconciler.running:
                await reconciler.stop()

    app = FastAPI(
        title="Converge Kernel API",
        description="Declarative reconciliation engine",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.reconciler = reconciler

    @app.exception_handler(ConfigurationError)
    async def configuration_error_handler(request: Request, exc: ConfigurationError):
        return JSONResponse(
            status_code=409,
            content={"detail": str(exc), "error": type(exc).__name__},
        )

    # === STATUS ===

    @app.get("/status")
    async def get_status():
        """Loop state, health and last run outcome."""
        return reconciler.status().model_dump(mode="json")

    # === OBSERVED STATE ===

    @app.get("/state")
    async def get_observed_state():
        """Current observed state snapshot."""
        return reconciler.observed_snapshot().model_dump(mode="json")

    @app.get("/state/{kind}/{name}")
    async def get_observed_resource(kind: str, name: str):
        """A single observed resource."""
        entry = reconciler.store.get(ResourceRef(kind=kind, name=name))
        if entry is None:
            raise HTTPException(404, "Resource not observed")
        return entry.model_dump(mode="json")

    # === DESIRED STATE ===

    @app.get("/desired")
    async def get_desired_state():
        """Currently declared resources."""
        return [r.model_dump(mode="json") for r in reconciler.source.load()]

    @app.put("/desired")
    async def replace_desired_state(req: DesiredStateRequest):
        """Replace the declared resources and signal the loop."""
        replace = getattr(reconciler.source, "replace", None)
        if replace is None:
            raise HTTPException(405, "Desired-state source is read-only")

        try:
            resources = [Resource(**spec.model_dump()) for spec in req.resources]
        except ValidationError as e:
            raise HTTPException(422, str(e))

        graph = build_graph(resources)
        replace(resources)
        return {
            "status": "accepted",
            "resources": len(resources),
            "order": [str(r.ref) for r in graph.order],
        }

    # === RECONCILER ===

    @app.post("/plan")
    async def plan_changes():
        """Dry run: the change-set the next cycle would apply."""
        return reconciler.plan().model_dump(mode="json")

    @app.post("/reconcile/trigger")
    async def trigger_reconciliation():
        """Run one reconciliation cycle now."""
        run = await reconciler.run_once(trigger="manual")
        return run.model_dump(mode="json")

    @app.get("/reconciler/config")
    async def get_reconciler_config():
        """Current reconciler configuration."""
        return reconciler.config.model_dump(mode="json")

    @app.put("/reconciler/config")
    async def update_reconciler_config(config: ReconcilerConfig):
        """Update reconciler configuration."""
        reconciler.config = config
        return config.model_dump(mode="json")

    # === RUN HISTORY ===

    @app.get("/runs")
    async def list_runs(limit: Optional[int] = None):
        """Recent reconciliation runs, oldest first."""
        runs = reconciler.history.query_recent(limit=limit or reconciler.config.history_limit)
        return [r.model_dump(mode="json") for r in runs]

    @app.get("/runs/{run_id}")
    async def get_run(run_id: str):
        """A single reconciliation run."""
        run = reconciler.history.get_by_id(run_id)
        if run is None:
            raise HTTPException(404, "Run not found")
        return run.model_dump(mode="json")

    return app


# Default application instance
app = create_app()
