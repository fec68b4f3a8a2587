"""
Capability environment - the only object a script receives.

Data, plot and attachment access go through `call(method, params)`, which
returns an awaitable reply. `utils` is the indicator math library over plain
numeric lists and runs synchronously inside the context.
"""
from typing import Any, Awaitable, Callable, Iterable, Optional

from libs import indicators
from sandbox.messages import EnvSpec

Call = Callable[[str, dict], Awaitable[Any]]
LogSink = Callable[[str, str], None]


class PlotEmitters:
    """env.plot - one method per artifact kind. Later writes to the same id replace earlier ones."""
    __slots__ = ("_call",)

    def __init__(self, call: Call):
        self._call = call

    def _emit(self, method: str, id: str, key: str, items: Iterable, opts: Optional[dict]):
        return self._call(method, {"id": id, key: list(items or []), "opts": dict(opts or {})})

    def line(self, id: str, points: Iterable[dict], opts: Optional[dict] = None):
        return self._emit("plot:line", id, "points", points, opts)

    def bands(self, id: str, points: Iterable[dict], opts: Optional[dict] = None):
        return self._emit("plot:bands", id, "points", points, opts)

    def histogram(self, id: str, points: Iterable[dict], opts: Optional[dict] = None):
        return self._emit("plot:histogram", id, "points", points, opts)

    def boxes(self, id: str, boxes: Iterable[dict], opts: Optional[dict] = None):
        return self._emit("plot:boxes", id, "boxes", boxes, opts)

    def labels(self, id: str, labels: Iterable[dict], opts: Optional[dict] = None):
        return self._emit("plot:labels", id, "labels", labels, opts)


class AttachmentAccess:
    __slots__ = ("_call",)

    def __init__(self, call: Call):
        self._call = call

    def list(self):
        return self._call("attachments:list", {})

    def csv(self, name: str):
        return self._call("attachments:csv", {"name": name})


class IndicatorUtils:
    """env.utils - synchronous math over plain lists of numbers."""
    __slots__ = ()

    @staticmethod
    def sma(values: list[float], period: int) -> list[float]:
        return indicators.sma_values(values, period)

    @staticmethod
    def ema(values: list[float], period: int) -> list[float]:
        return indicators.ema_values(values, period)

    @staticmethod
    def rsi(values: list[float], period: int = 14) -> list[float]:
        return indicators.rsi_values(values, period)

    @staticmethod
    def stdev(values: list[float], period: int) -> list[float]:
        return indicators.stdev_values(values, period)


class CapabilityEnvironment:
    __slots__ = ("_spec", "_call", "_log", "_plot", "_attachments", "_utils")

    def __init__(self, spec: EnvSpec, call: Call, log: Optional[LogSink] = None):
        self._spec = spec
        self._call = call
        self._log = log
        self._plot = PlotEmitters(call)
        self._attachments = AttachmentAccess(call)
        self._utils = IndicatorUtils()

    @property
    def symbol(self) -> str:
        return self._spec.symbol

    @property
    def timeframe(self) -> str:
        return self._spec.timeframe

    @property
    def plot(self) -> PlotEmitters:
        return self._plot

    @property
    def attachments(self) -> AttachmentAccess:
        return self._attachments

    @property
    def utils(self) -> IndicatorUtils:
        return self._utils

    def get_bars(self, symbol: Optional[str] = None, timeframe: Optional[str] = None):
        """Bars for a symbol/timeframe, defaulting to the run's own."""
        return self._call("getBars", {
            "symbol": symbol or self._spec.symbol,
            "timeframe": timeframe or self._spec.timeframe,
        })

    def log(self, *parts: Any, level: str = "info") -> None:
        if self._log is not None:
            self._log(level, " ".join(str(p) for p in parts))


def build_environment(spec: EnvSpec, call: Call, log: Optional[LogSink] = None) -> CapabilityEnvironment:
    return CapabilityEnvironment(spec, call, log)
