from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class ArtifactKind(str, Enum):
    LINE = "line"
    BANDS = "bands"
    HISTOGRAM = "histogram"
    BOXES = "boxes"
    LABELS = "labels"


class LinePoint(BaseModel):
    """Line/histogram sample. `value=None` means no data yet (warm-up)."""
    time: int
    value: Optional[float] = None


class BandPoint(BaseModel):
    time: int
    upper: float
    basis: float
    lower: float


class MacdResult(BaseModel):
    macd: list[LinePoint] = Field(default_factory=list)
    signal: list[LinePoint] = Field(default_factory=list)
    histogram: list[LinePoint] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.macd


class Box(BaseModel):
    """Rectangular price/time region."""
    model_config = ConfigDict(populate_by_name=True)

    from_: int = Field(alias="from")
    to: int
    top: float
    bottom: float


class Label(BaseModel):
    """Point annotation on the chart."""
    time: int
    price: float
    text: str = ""
    color: Optional[str] = None
    background: Optional[str] = None
    shape: Optional[Literal["up", "down", "circle"]] = None
    size: Optional[float] = None
