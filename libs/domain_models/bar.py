from pydantic import BaseModel, ConfigDict, field_validator

# Anything above this is treated as epoch milliseconds (year 5138 in seconds).
MS_THRESHOLD = 10**11


def to_epoch_seconds(value: int | float) -> int:
    """Normalise a timestamp to epoch seconds; millisecond inputs are divided down."""
    v = int(value)
    return v // 1000 if abs(v) >= MS_THRESHOLD else v


class Bar(BaseModel):
    """Single OHLCV bar. `time` is epoch seconds (UTC)."""
    model_config = ConfigDict(frozen=True)

    time: int
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0   # absent volume counts as 0

    @field_validator("volume", mode="before")
    @classmethod
    def _volume_none_is_zero(cls, v):
        return 0.0 if v is None else v

    @property
    def typical_price(self) -> float:
        return (self.high + self.low + self.close) / 3.0
