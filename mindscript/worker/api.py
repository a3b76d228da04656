"""Read-only HTTP surface for health probes and monitoring."""

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from mindscript.worker.events import WorkerStatistics
from mindscript.worker.orchestrator import JobOrchestrator


def create_app(orchestrator: JobOrchestrator) -> FastAPI:
    app = FastAPI(title="MindScript Worker", version="0.1.0")
    app.state.orchestrator = orchestrator

    @app.get("/health")
    async def health() -> JSONResponse:
        report = await orchestrator.health()
        status_code = 200 if report.status == "healthy" else 503
        return JSONResponse(status_code=status_code, content=report.model_dump(mode="json"))

    @app.get("/stats", response_model=WorkerStatistics)
    async def stats() -> WorkerStatistics:
        return orchestrator.statistics()

    return app
