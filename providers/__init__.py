from .base import AttachmentStore, BarProvider, ConsoleFeed, PlotSink
from .memory import ConsoleLog, InMemoryAttachmentStore, InMemoryBarProvider, InMemoryPlotSink

__all__ = [
    "AttachmentStore",
    "BarProvider",
    "ConsoleFeed",
    "PlotSink",
    "ConsoleLog",
    "InMemoryAttachmentStore",
    "InMemoryBarProvider",
    "InMemoryPlotSink",
]
