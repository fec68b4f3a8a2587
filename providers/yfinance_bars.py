"""
yfinance-backed bar provider. Timestamps leave here as epoch seconds (UTC).
"""
import warnings
warnings.filterwarnings("ignore")

import yfinance as yf

from libs import config
from libs.domain_models import Bar
from libs.log import get_logger

log = get_logger("providers.yfinance")

SYMBOL_ALIASES = {
    "NIFTY": "^NSEI",
    "BANKNIFTY": "^NSEBANK",
    "SPX": "^GSPC",
    "NDX": "^NDX",
    "DJI": "^DJI",
}

INTERVAL_MAP = {
    "1m": "1m", "5m": "5m", "15m": "15m", "30m": "30m",
    "1h": "60m", "1d": "1d", "1w": "1wk",
}


def _to_yf_symbol(symbol: str) -> str:
    u = symbol.upper().strip()
    return SYMBOL_ALIASES.get(u, u)


def _period(timeframe: str, days: int) -> str:
    # yfinance: intraday history is capped at 60 days
    if timeframe in ("1d", "1w"):
        return f"{days}d"
    return f"{min(days, 59)}d"


class YFinanceBarProvider:
    def __init__(self, days: int = config.BAR_HISTORY_DAYS):
        self.days = days

    def get_bars(self, symbol: str, timeframe: str) -> list[Bar]:
        """Returns bars sorted oldest→newest; unknown timeframes fall back to 1d."""
        interval = INTERVAL_MAP.get(timeframe, "1d")
        hist = yf.Ticker(_to_yf_symbol(symbol)).history(
            period=_period(timeframe, self.days), interval=interval, auto_adjust=True
        )
        if hist.empty:
            log.info("no bars for %s %s", symbol, timeframe)
            return []
        hist = hist[~hist.index.duplicated(keep="last")].sort_index()
        return [
            Bar(
                time=int(ts.timestamp()),
                open=float(row["Open"]),
                high=float(row["High"]),
                low=float(row["Low"]),
                close=float(row["Close"]),
                volume=float(row.get("Volume", 0.0) or 0.0),
            )
            for ts, row in hist.iterrows()
        ]
