"""
Host-side capability dispatch.

Each decoded capability call is executed against the collaborators: the bar
provider, the attachment store, or the run's artifact stage. Collaborator
methods that are coroutine functions are awaited; plain ones run in a worker
thread so slow fetches never block the host loop.
"""
import asyncio
import inspect
from typing import Any, Callable, Optional

from libs.domain_models import Bar, CsvTable
from providers.base import AttachmentStore, BarProvider
from sandbox.errors import AttachmentMissing, CapabilityError
from sandbox.messages import (
    AttachmentsCsvCall,
    AttachmentsListCall,
    CapabilityCall,
    GetBarsCall,
    PlotCall,
)
from sandbox.namespace import ArtifactStage


async def invoke(fn: Callable[..., Any], *args: Any) -> Any:
    if inspect.iscoroutinefunction(fn):
        return await fn(*args)
    result = await asyncio.to_thread(fn, *args)
    if inspect.isawaitable(result):
        result = await result
    return result


class CapabilityHost:
    def __init__(self, bars: BarProvider, attachments: Optional[AttachmentStore] = None):
        self.bars = bars
        self.attachments = attachments

    async def dispatch(self, call: CapabilityCall, stage: ArtifactStage) -> Any:
        """Execute one call; the return value is the RPC result."""
        match call:
            case GetBarsCall(symbol=symbol, timeframe=timeframe):
                bars = await invoke(self.bars.get_bars, symbol, timeframe)
                return [
                    (b if isinstance(b, Bar) else Bar.model_validate(b)).model_dump()
                    for b in bars or []
                ]
            case PlotCall():
                stage.put(call.kind, call.id, call.payload(), call.opts)
                return True
            case AttachmentsListCall():
                if self.attachments is None:
                    return []
                return list(await invoke(self.attachments.list))
            case AttachmentsCsvCall(name=name):
                return await self._csv(name)
            case _:
                raise CapabilityError(f"Unknown method: {getattr(call, 'method', call)!r}")

    async def _csv(self, name: str) -> dict:
        if self.attachments is None:
            raise AttachmentMissing(f"CSV not found: {name}")
        try:
            table = await invoke(self.attachments.csv, name)
        except (KeyError, FileNotFoundError):
            raise AttachmentMissing(f"CSV not found: {name}") from None
        if table is None:
            raise AttachmentMissing(f"CSV not found: {name}")
        return (table if isinstance(table, CsvTable) else CsvTable.model_validate(table)).model_dump()
