from .bar import Bar, to_epoch_seconds
from .plots import ArtifactKind, LinePoint, BandPoint, MacdResult, Box, Label
from .run import RunSpec, RunStatus, RunOutcome
from .attachments import CsvTable, CsvManifest

__all__ = [
    "Bar",
    "to_epoch_seconds",
    "ArtifactKind",
    "LinePoint",
    "BandPoint",
    "MacdResult",
    "Box",
    "Label",
    "RunSpec",
    "RunStatus",
    "RunOutcome",
    "CsvTable",
    "CsvManifest",
]
