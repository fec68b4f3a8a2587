"""
FastAPI gateway for the indicator sandbox.

Endpoints:
  GET    /health                         - liveness check
  POST   /indicators/{id}/run            - run a script for an indicator instance
  POST   /indicators/{id}/rerun          - re-run the instance's last script
  GET    /indicators/{id}/artifacts      - artifacts currently drawn for the instance
  GET    /indicators/{id}/logs           - console feed for the instance
  DELETE /indicators/{id}                - terminate and clear the instance
  GET    /attachments                    - attachment names
  GET    /attachments/{name}             - manifest of one attachment
  POST   /attachments/{name}             - upload CSV text
  GET    /builtin/{kind}                 - built-in indicator over provider bars
  GET    /docs                           - Swagger UI (auto-generated)
"""
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
import uvicorn

from api.schemas import HealthResponse, RemoveResponse, RunRequest, RunResponse
from libs import config, indicators
from libs.log import get_logger, setup_logging
from providers.base import BarProvider
from providers.memory import ConsoleLog, InMemoryAttachmentStore, InMemoryPlotSink
from sandbox.errors import AttachmentMissing
from sandbox.host import CapabilityHost, invoke
from sandbox.namespace import namespace_prefix
from sandbox.supervisor import ExecutionSupervisor

VERSION = "0.1.0"

log = get_logger("api")


def _default_bar_provider() -> BarProvider:
    from providers.yfinance_bars import YFinanceBarProvider
    return YFinanceBarProvider()


def create_app(
    bar_provider: Optional[BarProvider] = None,
    attachments: Optional[InMemoryAttachmentStore] = None,
    sink: Optional[InMemoryPlotSink] = None,
    console: Optional[ConsoleLog] = None,
    **supervisor_options,
) -> FastAPI:
    bars = bar_provider or _default_bar_provider()
    attachments = attachments or InMemoryAttachmentStore()
    sink = sink or InMemoryPlotSink()
    console = console or ConsoleLog()
    supervisor = ExecutionSupervisor(
        CapabilityHost(bars, attachments), sink, console, **supervisor_options
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(config.LOG_LEVEL)
        yield
        await supervisor.shutdown()

    app = FastAPI(
        title="Indicator Sandbox",
        description=(
            "Runs user-authored indicator scripts against market bars in isolated "
            "processes and collects their plotted artifacts."
        ),
        version=VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.supervisor = supervisor
    app.state.sink = sink
    app.state.console = console
    app.state.attachments = attachments

    def _require_instance(instance_id: str) -> None:
        if instance_id not in supervisor.registry:
            raise HTTPException(status_code=404, detail=f"Unknown indicator instance: {instance_id}")

    def _response(outcome) -> RunResponse:
        return RunResponse(
            **outcome.model_dump(),
            done=outcome.to_done_message(),
            logs=console.lines(outcome.instance_id),
        )

    # ── Routes ───────────────────────────────────────────────────

    @app.get("/health", response_model=HealthResponse, tags=["System"])
    async def health():
        """Liveness check - returns service status."""
        return HealthResponse(
            status="ok",
            version=VERSION,
            services={
                "bars": type(bars).__name__,
                "instances": len(supervisor.registry),
                "default_timeout_ms": supervisor.timeout_ms,
            },
        )

    @app.post("/indicators/{instance_id}/run", response_model=RunResponse, tags=["Indicators"])
    async def run_indicator(instance_id: str, request: RunRequest):
        """
        Run a script for an indicator instance and wait for it to settle.

        A run already in flight for the same instance is terminated first.
        Artifacts are replaced only when the run completes successfully.
        """
        if not request.source_code.strip():
            raise HTTPException(status_code=422, detail="source_code cannot be empty")
        timeout_ms = request.timeout_ms or (config.EDITOR_TIMEOUT_MS if request.editor else None)
        spec = supervisor.make_spec(
            request.source_code,
            symbol=request.symbol or config.DEFAULT_SYMBOL,
            timeframe=request.timeframe or config.DEFAULT_TIMEFRAME,
            timeout_ms=timeout_ms,
        )
        log.info("run requested for %s on %s %s (timeout=%sms)",
                 instance_id, spec.symbol, spec.timeframe, spec.timeout_ms)
        console.clear(instance_id)
        outcome = await supervisor.run(instance_id, spec)
        return _response(outcome)

    @app.post("/indicators/{instance_id}/rerun", response_model=RunResponse, tags=["Indicators"])
    async def rerun_indicator(instance_id: str):
        _require_instance(instance_id)
        outcome = await supervisor.rerun(instance_id)
        return _response(outcome)

    @app.get("/indicators/{instance_id}/artifacts", tags=["Indicators"])
    async def indicator_artifacts(instance_id: str):
        _require_instance(instance_id)
        return sink.snapshot(namespace_prefix(instance_id))

    @app.get("/indicators/{instance_id}/logs", tags=["Indicators"])
    async def indicator_logs(instance_id: str):
        return console.lines(instance_id)

    @app.delete("/indicators/{instance_id}", response_model=RemoveResponse, tags=["Indicators"])
    async def remove_indicator(instance_id: str):
        _require_instance(instance_id)
        removed = await supervisor.remove(instance_id)
        console.clear(instance_id)
        return RemoveResponse(instance_id=instance_id, removed=removed)

    @app.get("/attachments", tags=["Attachments"])
    async def list_attachments():
        return attachments.list()

    @app.get("/attachments/{name}", tags=["Attachments"])
    async def attachment_manifest(name: str):
        try:
            return attachments.manifest(name)
        except AttachmentMissing as e:
            raise HTTPException(status_code=404, detail=str(e))

    @app.post("/attachments/{name}", tags=["Attachments"])
    async def upload_attachment(name: str, request: Request):
        body = await request.body()
        try:
            text = body.decode("utf-8")
        except UnicodeDecodeError:
            raise HTTPException(status_code=422, detail="attachment must be UTF-8 CSV text")
        try:
            manifest = attachments.add_csv(name, text)
        except ValueError as e:
            # pandas ParserError is a ValueError
            raise HTTPException(status_code=422, detail=f"unreadable CSV: {e}")
        log.info("attachment %s stored (%d rows)", name, manifest.row_count)
        return manifest

    @app.get("/builtin/{kind}", tags=["Indicators"])
    async def builtin_indicator(
        kind: str,
        symbol: str = config.DEFAULT_SYMBOL,
        timeframe: str = config.DEFAULT_TIMEFRAME,
        period: Optional[int] = None,
        mult: Optional[float] = None,
        fast: Optional[int] = None,
        slow: Optional[int] = None,
        signal: Optional[int] = None,
    ):
        """Host-side built-in indicator, computed with the same math scripts get in env.utils."""
        if kind not in indicators.BUILTINS:
            raise HTTPException(status_code=404, detail=f"Unknown indicator: {kind}")
        _, defaults = indicators.BUILTINS[kind]
        supplied = {"period": period, "mult": mult, "fast": fast, "slow": slow, "signal": signal}
        params = {k: v for k, v in supplied.items() if k in defaults}
        history = await invoke(bars.get_bars, symbol, timeframe)
        return indicators.compute_builtin(kind, history, **params)

    return app


app = create_app()


if __name__ == "__main__":
    uvicorn.run("api.main:app", host="0.0.0.0", port=8000, reload=False)
