"""
pytest configuration for the indicator sandbox test suite.

Marks:
  @pytest.mark.unit    - fast, pure in-process tests
  @pytest.mark.slow    - spawns execution-context processes

Run subsets:
  pytest tests/ -m unit              # math, models, wire codec (~2s)
  pytest tests/ -m "unit or slow"    # everything including process runs
"""
import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

DAY = 86_400
T0 = 1_700_000_000   # 2023-11-14 22:13:20 UTC


def make_bars(closes, start=T0, step=DAY, volume=1000.0):
    """Bars with the given closes; high/low straddle the close by 1."""
    return [
        {"time": start + i * step, "open": c, "high": c + 1, "low": c - 1, "close": c, "volume": volume}
        for i, c in enumerate(closes)
    ]


def pytest_addoption(parser):
    parser.addoption(
        "--skip-slow", action="store_true", default=False,
        help="Skip tests that spawn execution-context processes"
    )


def pytest_configure(config):
    config.addinivalue_line("markers", "unit: fast unit tests, no subprocesses")
    config.addinivalue_line("markers", "slow: spawns sandbox processes")


def pytest_collection_modifyitems(config, items):
    if config.getoption("--skip-slow"):
        skip_slow = pytest.mark.skip(reason="--skip-slow passed")
        for item in items:
            if "slow" in item.keywords:
                item.add_marker(skip_slow)


@pytest.fixture
def bars_30():
    return make_bars([100.0 + i for i in range(30)])


@pytest.fixture
def bar_provider(bars_30):
    from providers.memory import InMemoryBarProvider
    return InMemoryBarProvider({("SPY", "1d"): bars_30})
