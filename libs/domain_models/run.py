from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class RunSpec(BaseModel):
    """Input to one execution. Immutable for the run's lifetime."""
    model_config = ConfigDict(frozen=True)

    symbol: str
    timeframe: str
    source_code: str
    timeout_ms: int = Field(gt=0, default=2000)


class RunStatus(str, Enum):
    CREATED = "created"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    TERMINATED = "terminated"

    @property
    def is_terminal(self) -> bool:
        return self not in (RunStatus.CREATED, RunStatus.RUNNING)


class RunOutcome(BaseModel):
    """How a run settled, as reported by the supervisor."""
    instance_id: str
    status: RunStatus
    error: Optional[str] = None
    timed_out: bool = False
    artifacts: list[str] = Field(default_factory=list)   # committed, namespaced ids
    duration_ms: Optional[float] = None                   # measured from `started`

    def to_done_message(self) -> dict:
        """Completion message in wire form: {type: "done", error?, timedOut?}."""
        msg: dict = {"type": "done"}
        if self.error is not None:
            msg["error"] = self.error
        if self.timed_out:
            msg["timedOut"] = True
        return msg
