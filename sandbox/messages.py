"""
Wire messages between the host and an execution context.

Context → host:   {type: "started"} | {type: "log", level, text}
                  | {type: "done", error?, timedOut?}
                  | {rpc: true, id, method, params}
Host → context:   {type: "run", sourceCode, envSpec, timeoutMs}
                  | {rpc: true, id, result?, error?, errorKind?}

Capability calls are a closed set of tagged variants keyed on `method`;
decode_call() validates the params and returns the matching model.
"""
from typing import Annotated, Any, ClassVar, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from libs.domain_models import ArtifactKind, BandPoint, Box, Label, LinePoint, RunSpec
from sandbox.errors import CapabilityError


class WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


# ── Lifecycle messages ──────────────────────────────────────────

class EnvSpec(WireModel):
    symbol: str
    timeframe: str


class RunInstruction(WireModel):
    type: Literal["run"] = "run"
    source_code: str = Field(alias="sourceCode")
    env_spec: EnvSpec = Field(alias="envSpec")
    timeout_ms: int = Field(alias="timeoutMs")

    @classmethod
    def from_run_spec(cls, spec: RunSpec) -> "RunInstruction":
        return cls(
            source_code=spec.source_code,
            env_spec=EnvSpec(symbol=spec.symbol, timeframe=spec.timeframe),
            timeout_ms=spec.timeout_ms,
        )


class StartedMessage(WireModel):
    type: Literal["started"] = "started"


class LogMessage(WireModel):
    type: Literal["log"] = "log"
    level: Literal["info", "warn", "error"] = "info"
    text: str


class DoneMessage(WireModel):
    type: Literal["done"] = "done"
    error: Optional[str] = None
    timed_out: Optional[bool] = Field(default=None, alias="timedOut")


# ── RPC envelopes ───────────────────────────────────────────────

class RpcRequest(WireModel):
    rpc: Literal[True] = True
    id: str
    method: str
    params: dict[str, Any] = Field(default_factory=dict)


class RpcReply(WireModel):
    rpc: Literal[True] = True
    id: str
    result: Any = None
    error: Optional[str] = None
    error_kind: Optional[str] = Field(default=None, alias="errorKind")


ContextMessage = Union[StartedMessage, LogMessage, DoneMessage, RpcRequest]

_LIFECYCLE_ADAPTER = TypeAdapter(
    Annotated[Union[StartedMessage, LogMessage, DoneMessage], Field(discriminator="type")]
)


def decode_context_message(raw: Any) -> Optional[ContextMessage]:
    """Parse a message posted by the context; anything unrecognised gives None."""
    if not isinstance(raw, dict):
        return None
    try:
        if raw.get("rpc") is True:
            return RpcRequest.model_validate(raw)
        return _LIFECYCLE_ADAPTER.validate_python(raw)
    except ValidationError:
        return None


# ── Capability calls ────────────────────────────────────────────

class GetBarsCall(BaseModel):
    method: Literal["getBars"]
    symbol: str
    timeframe: str


class PlotCall(BaseModel):
    kind: ClassVar[ArtifactKind]

    id: str = Field(min_length=1)
    opts: dict[str, Any] = Field(default_factory=dict)

    def payload(self) -> list[dict]:
        raise NotImplementedError


class PlotLineCall(PlotCall):
    kind: ClassVar[ArtifactKind] = ArtifactKind.LINE
    method: Literal["plot:line"]
    points: list[LinePoint]

    def payload(self) -> list[dict]:
        return [p.model_dump() for p in self.points]


class PlotBandsCall(PlotCall):
    kind: ClassVar[ArtifactKind] = ArtifactKind.BANDS
    method: Literal["plot:bands"]
    points: list[BandPoint]

    def payload(self) -> list[dict]:
        return [p.model_dump() for p in self.points]


class PlotHistogramCall(PlotCall):
    kind: ClassVar[ArtifactKind] = ArtifactKind.HISTOGRAM
    method: Literal["plot:histogram"]
    points: list[LinePoint]

    def payload(self) -> list[dict]:
        return [p.model_dump() for p in self.points]


class PlotBoxesCall(PlotCall):
    kind: ClassVar[ArtifactKind] = ArtifactKind.BOXES
    method: Literal["plot:boxes"]
    boxes: list[Box]

    def payload(self) -> list[dict]:
        return [b.model_dump(by_alias=True) for b in self.boxes]


class PlotLabelsCall(PlotCall):
    kind: ClassVar[ArtifactKind] = ArtifactKind.LABELS
    method: Literal["plot:labels"]
    labels: list[Label]

    def payload(self) -> list[dict]:
        return [lbl.model_dump(exclude_none=True) for lbl in self.labels]


class AttachmentsListCall(BaseModel):
    method: Literal["attachments:list"]


class AttachmentsCsvCall(BaseModel):
    method: Literal["attachments:csv"]
    name: str


CapabilityCall = Annotated[
    Union[
        GetBarsCall,
        PlotLineCall,
        PlotBandsCall,
        PlotHistogramCall,
        PlotBoxesCall,
        PlotLabelsCall,
        AttachmentsListCall,
        AttachmentsCsvCall,
    ],
    Field(discriminator="method"),
]

_CALL_ADAPTER = TypeAdapter(CapabilityCall)

METHODS = frozenset({
    "getBars",
    "plot:line", "plot:bands", "plot:histogram", "plot:boxes", "plot:labels",
    "attachments:list", "attachments:csv",
})


def decode_call(method: str, params: dict[str, Any]) -> CapabilityCall:
    """Validate an RPC request into its tagged variant or raise CapabilityError."""
    if method not in METHODS:
        raise CapabilityError(f"Unknown method: {method}")
    try:
        return _CALL_ADAPTER.validate_python({**(params or {}), "method": method})
    except ValidationError as e:
        first = e.errors()[0]
        where = ".".join(str(p) for p in first.get("loc", ()))
        raise CapabilityError(f"Malformed params for {method}: {where}: {first.get('msg')}") from None
