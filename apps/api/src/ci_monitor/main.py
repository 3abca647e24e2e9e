from functools import lru_cache
from typing import Annotated, Any

from fastapi import Depends, FastAPI, HTTPException, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from ci_monitor.config import get_settings
from ci_monitor.log import configure_logging
from ci_monitor.runtime import MonitorRuntime, build_runtime
from ci_monitor.services.github.client import RunProvider
from ci_monitor.services.live.engine import RunMonitor
from ci_monitor.services.live.subscriber import PROVIDER_UNAVAILABLE, serve_subscriber

DEFAULT_TRIGGER_MESSAGE = "Trigger CI/CD pipeline from playground"

app = FastAPI(title="CI Pipeline Monitor API", version="0.1.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=list(get_settings().cors_allow_origins),
    allow_methods=["*"],
    allow_headers=["*"],
)


class TriggerRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    message: str | None = Field(default=None, max_length=1000)


@lru_cache
def get_runtime() -> MonitorRuntime:
    return build_runtime(get_settings())


@app.on_event("startup")
async def startup() -> None:
    settings = get_settings()
    configure_logging(settings.log_level, json_output=settings.log_json)
    await get_runtime().start()


@app.on_event("shutdown")
async def shutdown() -> None:
    await get_runtime().aclose()


def get_monitor(runtime: Annotated[MonitorRuntime, Depends(get_runtime)]) -> RunMonitor:
    if runtime.monitor is None:
        raise HTTPException(status_code=503, detail=PROVIDER_UNAVAILABLE)
    return runtime.monitor


def get_provider(runtime: Annotated[MonitorRuntime, Depends(get_runtime)]) -> RunProvider:
    if runtime.provider is None:
        raise HTTPException(status_code=503, detail=PROVIDER_UNAVAILABLE)
    return runtime.provider


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/api/status")
def status(runtime: Annotated[MonitorRuntime, Depends(get_runtime)]) -> dict[str, Any]:
    return {
        "message": "CI/CD Pipeline Monitor API",
        "version": app.version,
        "environment": runtime.settings.environment,
        "provider_available": runtime.available,
        "connections": len(runtime.registry),
        "watching_run_id": runtime.monitor.watching_run_id if runtime.monitor else None,
    }


@app.post("/api/trigger-pipeline")
async def trigger_pipeline(
    monitor: Annotated[RunMonitor, Depends(get_monitor)],
    request: TriggerRequest | None = None,
) -> JSONResponse:
    message = request.message if request is not None and request.message else None
    if message is None or not message.strip():
        message = DEFAULT_TRIGGER_MESSAGE

    result = await monitor.trigger(message.strip())
    if not result.success or result.value is None:
        return JSONResponse(status_code=502, content={"success": False, "error": result.error})

    return JSONResponse(
        status_code=200,
        content={
            "success": True,
            "commit": result.value.to_dict(),
            "message": "Pipeline triggered successfully",
        },
    )


@app.get("/api/workflow-runs")
async def list_workflow_runs(
    provider: Annotated[RunProvider, Depends(get_provider)],
    limit: int = 10,
) -> list[dict[str, Any]]:
    result = await provider.list_runs(max(1, min(limit, 100)))
    if not result.success:
        raise HTTPException(status_code=502, detail=f"GitHub request failed: {result.error}")
    return [run.to_dict() for run in result.value or []]


@app.get("/api/workflow-runs/{run_id}/jobs")
async def list_workflow_jobs(
    run_id: int,
    provider: Annotated[RunProvider, Depends(get_provider)],
) -> list[dict[str, Any]]:
    result = await provider.list_jobs(run_id)
    if not result.success:
        raise HTTPException(status_code=502, detail=f"GitHub request failed: {result.error}")
    return [job.to_dict() for job in result.value or []]


@app.websocket("/ws")
async def subscribe(
    websocket: WebSocket,
    runtime: Annotated[MonitorRuntime, Depends(get_runtime)],
) -> None:
    await serve_subscriber(websocket, registry=runtime.registry, monitor=runtime.monitor)


def run() -> None:
    import uvicorn

    uvicorn.run("ci_monitor.main:app", host="0.0.0.0", port=get_settings().port, reload=False)


if __name__ == "__main__":
    run()
