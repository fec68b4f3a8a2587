"""
Runtime configuration - environment variables (optionally from a .env file).
"""
import os

from dotenv import load_dotenv

load_dotenv()

# ── Sandbox ──────────────────────────────────────────────────────
# Chart runs get 2s, "run on active chart" from the editor gets 250ms.
DEFAULT_TIMEOUT_MS: int = int(os.getenv("SANDBOX_TIMEOUT_MS", "2000"))
EDITOR_TIMEOUT_MS: int = int(os.getenv("EDITOR_TIMEOUT_MS", "250"))

# Host-side watchdog fires this long after the in-context timer should have.
WATCHDOG_GRACE_MS: int = int(os.getenv("SANDBOX_WATCHDOG_GRACE_MS", "100"))

# A context that has not reported `started` by then is failed and killed.
START_TIMEOUT_S: float = float(os.getenv("SANDBOX_START_TIMEOUT_S", "10"))

# forkserver keeps per-run startup in the low milliseconds on POSIX.
START_METHOD: str = os.getenv("SANDBOX_START_METHOD", "forkserver")

# ── Console feed ─────────────────────────────────────────────────
CONSOLE_MAX_LINES: int = int(os.getenv("CONSOLE_MAX_LINES", "500"))

# ── Market data ──────────────────────────────────────────────────
DEFAULT_SYMBOL: str = os.getenv("DEFAULT_SYMBOL", "SPY")
DEFAULT_TIMEFRAME: str = os.getenv("DEFAULT_TIMEFRAME", "1d")
BAR_HISTORY_DAYS: int = int(os.getenv("BAR_HISTORY_DAYS", "60"))

# ── Logs ─────────────────────────────────────────────────────────
LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
