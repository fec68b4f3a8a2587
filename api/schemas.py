from pydantic import BaseModel, Field
from typing import Optional

from libs.domain_models import RunStatus


class RunRequest(BaseModel):
    """Incoming request to /indicators/{instance_id}/run."""
    source_code: str = Field(
        ...,
        description="Indicator script exporting `default(env)` or `exports = fn`.",
        examples=["async def default(env):\n    bars = await env.get_bars()\n"],
    )
    symbol: Optional[str] = Field(None, description="Defaults to DEFAULT_SYMBOL.")
    timeframe: Optional[str] = Field(None, description="Defaults to DEFAULT_TIMEFRAME.")
    timeout_ms: Optional[int] = Field(None, gt=0, le=60_000, description="Wall-clock budget.")
    editor: bool = Field(False, description="Editor run: uses the short EDITOR_TIMEOUT_MS budget.")


class RunResponse(BaseModel):
    instance_id: str
    status: RunStatus
    error: Optional[str] = None
    timed_out: bool = False
    artifacts: list[str] = Field(default_factory=list)
    duration_ms: Optional[float] = None
    done: dict = Field(default_factory=dict)          # wire-form completion message
    logs: list[dict] = Field(default_factory=list)


class RemoveResponse(BaseModel):
    instance_id: str
    removed: bool


class HealthResponse(BaseModel):
    status: str = "ok"
    version: str = "0.1.0"
    services: dict = Field(default_factory=dict)
