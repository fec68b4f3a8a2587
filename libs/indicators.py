"""
Indicator math library - SMA, EMA, RSI, Bollinger, MACD, VWAP.

Two layers share one implementation:
  - *_values(values, period)  work on plain numeric sequences; the sandbox
                               exposes these to scripts as env.utils
  - sma(bars, period) ...      work on Bar sequences and return time-stamped
                               points; the host's built-in indicators use these

Every function is pure. Empty or too-short input gives an empty series,
never an error. EMA is seeded with the first value and emitted once
`period` samples have accumulated.
"""
from typing import Any, Callable, Sequence

import numpy as np
import pandas as pd

from libs.domain_models import Bar, BandPoint, LinePoint, MacdResult

SECONDS_PER_DAY = 86_400


# ── Numeric kernels ─────────────────────────────────────────────

def _series(values: Sequence[float]) -> pd.Series:
    return pd.Series(list(values), dtype="float64")


def sma_values(values: Sequence[float], period: int) -> list[float]:
    """Sliding-window mean; first output once the window holds `period` samples."""
    if period < 1 or len(values) < period:
        return []
    # pandas' rolling mean keeps a running sum (add newest, subtract oldest)
    rolled = _series(values).rolling(period).mean()
    return rolled.iloc[period - 1:].tolist()


def ema_values(values: Sequence[float], period: int) -> list[float]:
    """k = 2/(period+1), seeded with the first value, emitted from index period-1."""
    if period < 1 or len(values) < period:
        return []
    # adjust=False is exactly ema[i] = x[i]*k + ema[i-1]*(1-k) with ema[0] = x[0]
    smoothed = _series(values).ewm(span=period, adjust=False).mean()
    return smoothed.iloc[period - 1:].tolist()


def stdev_values(values: Sequence[float], period: int) -> list[float]:
    """Population standard deviation over each `period`-wide window."""
    if period < 1 or len(values) < period:
        return []
    windows = np.lib.stride_tricks.sliding_window_view(np.asarray(values, dtype="float64"), period)
    return windows.std(axis=1).tolist()


def _rsi_from_averages(avg_gain: float, avg_loss: float) -> float:
    if avg_loss == 0:
        return 100.0
    rs = avg_gain / avg_loss
    return 100.0 - 100.0 / (1.0 + rs)


def rsi_values(values: Sequence[float], period: int = 14) -> list[float]:
    """
    Wilder RSI. The first value uses plain averages of the first `period`
    deltas; later values smooth with avg = (avg*(period-1) + sample) / period.
    Output length is len(values) - period.
    """
    if period < 1 or len(values) < period + 1:
        return []
    deltas = np.diff(np.asarray(values, dtype="float64"))
    gains = np.clip(deltas, 0.0, None)
    losses = np.clip(-deltas, 0.0, None)

    avg_gain = float(gains[:period].mean())
    avg_loss = float(losses[:period].mean())
    out = [_rsi_from_averages(avg_gain, avg_loss)]
    for gain, loss in zip(gains[period:], losses[period:]):
        avg_gain = (avg_gain * (period - 1) + float(gain)) / period
        avg_loss = (avg_loss * (period - 1) + float(loss)) / period
        out.append(_rsi_from_averages(avg_gain, avg_loss))
    return out


# ── Bar-based indicators ────────────────────────────────────────

def _as_bars(bars: Sequence[Bar | dict]) -> list[Bar]:
    return [b if isinstance(b, Bar) else Bar.model_validate(b) for b in bars]


def _line(bars: Sequence[Bar], values: Sequence[float | None]) -> list[LinePoint]:
    """Pair values with the timestamps of the last len(values) bars."""
    tail = bars[len(bars) - len(values):] if values else []
    return [LinePoint(time=b.time, value=v) for b, v in zip(tail, values)]


def sma(bars: Sequence[Bar | dict], period: int) -> list[LinePoint]:
    bars = _as_bars(bars)
    return _line(bars, sma_values([b.close for b in bars], period))


def ema(bars: Sequence[Bar | dict], period: int) -> list[LinePoint]:
    bars = _as_bars(bars)
    return _line(bars, ema_values([b.close for b in bars], period))


def rsi(bars: Sequence[Bar | dict], period: int = 14) -> list[LinePoint]:
    bars = _as_bars(bars)
    return _line(bars, rsi_values([b.close for b in bars], period))


def bollinger(bars: Sequence[Bar | dict], period: int = 20, mult: float = 2.0) -> list[BandPoint]:
    bars = _as_bars(bars)
    closes = [b.close for b in bars]
    basis = sma_values(closes, period)
    sd = stdev_values(closes, period)
    tail = bars[period - 1:] if basis else []
    return [
        BandPoint(time=b.time, upper=m + mult * s, basis=m, lower=m - mult * s)
        for b, m, s in zip(tail, basis, sd)
    ]


def macd(
    bars: Sequence[Bar | dict],
    fast: int = 12,
    slow: int = 26,
    signal: int = 9,
) -> MacdResult:
    """
    MACD line = EMA(fast) - EMA(slow), joined on timestamp.
    Signal = EMA(signal) of the MACD line; histogram = MACD - signal.
    Empty when there are fewer than slow + signal bars.
    """
    bars = _as_bars(bars)
    if min(fast, slow, signal) < 1 or len(bars) < slow + signal:
        return MacdResult()

    slow_by_time = {p.time: p.value for p in ema(bars, slow)}
    macd_line = [
        LinePoint(time=p.time, value=p.value - slow_by_time[p.time])
        for p in ema(bars, fast)
        if p.time in slow_by_time
    ]
    signal_vals = ema_values([p.value for p in macd_line], signal)
    aligned = macd_line[len(macd_line) - len(signal_vals):]
    signal_line = [LinePoint(time=p.time, value=s) for p, s in zip(aligned, signal_vals)]
    histogram = [
        LinePoint(time=p.time, value=p.value - s)
        for p, s in zip(aligned, signal_vals)
    ]
    return MacdResult(macd=macd_line, signal=signal_line, histogram=histogram)


def vwap(bars: Sequence[Bar | dict]) -> list[LinePoint]:
    """
    Session VWAP: cumulative typical-price * volume over cumulative volume,
    reset whenever the UTC calendar day changes from the previous bar.
    A session with no volume so far yields value=None.
    """
    bars = _as_bars(bars)
    if not bars:
        return []
    df = pd.DataFrame(
        {"time": [b.time for b in bars],
         "typical": [b.typical_price for b in bars],
         "volume": [b.volume for b in bars]}
    )
    day = df["time"] // SECONDS_PER_DAY
    session = (day != day.shift()).cumsum()

    typical = df["typical"]
    volume = df["volume"].fillna(0.0)
    cum_pv = (typical * volume).groupby(session).cumsum()
    cum_vol = volume.groupby(session).cumsum()

    values = [
        float(pv / vol) if vol > 0 else None
        for pv, vol in zip(cum_pv, cum_vol)
    ]
    return _line(bars, values)


# name → (function, default params) for the host's built-in indicators
BUILTINS: dict[str, tuple[Callable[..., Any], dict[str, Any]]] = {
    "sma": (sma, {"period": 20}),
    "ema": (ema, {"period": 20}),
    "rsi": (rsi, {"period": 14}),
    "bollinger": (bollinger, {"period": 20, "mult": 2.0}),
    "macd": (macd, {"fast": 12, "slow": 26, "signal": 9}),
    "vwap": (vwap, {}),
}


def compute_builtin(kind: str, bars: Sequence[Bar | dict], **params: Any):
    """Run a built-in indicator by name with defaults overridden by `params`."""
    try:
        fn, defaults = BUILTINS[kind]
    except KeyError:
        raise ValueError(f"unknown indicator: {kind}") from None
    return fn(bars, **{**defaults, **{k: v for k, v in params.items() if v is not None}})
