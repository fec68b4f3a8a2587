"""
Collaborator interfaces the engine consumes. Methods may be plain or async;
the host awaits coroutine functions and runs plain ones in a worker thread.
"""
from typing import Any, Protocol, Sequence, runtime_checkable

from libs.domain_models import ArtifactKind, Bar, CsvTable


@runtime_checkable
class BarProvider(Protocol):
    def get_bars(self, symbol: str, timeframe: str) -> Sequence[Bar]: ...


@runtime_checkable
class PlotSink(Protocol):
    """One write per artifact kind, idempotent per id, plus bulk clear by id prefix."""

    def line(self, id: str, data: list[dict], opts: dict[str, Any] | None = None) -> None: ...
    def bands(self, id: str, data: list[dict], opts: dict[str, Any] | None = None) -> None: ...
    def histogram(self, id: str, data: list[dict], opts: dict[str, Any] | None = None) -> None: ...
    def boxes(self, id: str, data: list[dict], opts: dict[str, Any] | None = None) -> None: ...
    def labels(self, id: str, data: list[dict], opts: dict[str, Any] | None = None) -> None: ...
    def clear_prefix(self, kind: ArtifactKind, prefix: str) -> int: ...


@runtime_checkable
class AttachmentStore(Protocol):
    def list(self) -> list[str]: ...
    def csv(self, name: str) -> CsvTable: ...


@runtime_checkable
class ConsoleFeed(Protocol):
    def append(self, instance_id: str, level: str, text: str) -> None: ...
