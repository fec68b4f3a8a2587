"""
Execution flows through real sandbox processes.

Strategy:
  - Build an ExecutionSupervisor over in-memory collaborators
  - Drive each scenario with asyncio.run inside a plain test
  - Assert on the outcome and on what the plot sink spy actually received

Flows covered:
  1. Happy path          - bars in, artifacts committed under the instance prefix
  2. Compile failures    - no export, forbidden import, zero writes
  3. Runtime failures    - previous artifacts survive a failed rerun
  4. Timeouts            - reported within a bounded margin, context stays terminable
  5. Termination         - nothing from a killed context reaches the sink
  6. Supersession        - a new run replaces one in flight
  7. Isolation           - concurrent instances keep separate namespaces
  8. Attachments         - CSV access and the AttachmentMissing reply
  9. Console feed        - print and env.log lines reach the feed
"""
import asyncio

import pytest

from conftest import make_bars

pytestmark = pytest.mark.slow

SMA_SCRIPT = """
async def default(env):
    bars = await env.get_bars()
    closes = [b["close"] for b in bars]
    values = env.utils.sma(closes, 5)
    points = [{"time": b["time"], "value": v} for b, v in zip(bars[4:], values)]
    await env.plot.line("sma", points, {"color": "orange"})
"""

FIRE_AND_FORGET_SCRIPT = """
def default(env):
    env.plot.line("a", [{"time": 1, "value": 1.0}])
    env.plot.histogram("b", [{"time": 1, "value": -1.0}])
"""

SLEEPY_SCRIPT = """
async def default(env):
    await sleep(10)
    await env.plot.line("never", [])
"""

SPIN_SCRIPT = """
def default(env):
    while True:
        pass
"""


def _supervisor(bars=None, attachments=None, **options):
    from providers.memory import ConsoleLog, InMemoryAttachmentStore, InMemoryBarProvider, InMemoryPlotSink
    from sandbox import CapabilityHost, ExecutionSupervisor

    if bars is None:
        bars = InMemoryBarProvider({("SPY", "1d"): make_bars([100.0 + i for i in range(30)])})
    sink = InMemoryPlotSink()
    console = ConsoleLog()
    supervisor = ExecutionSupervisor(
        CapabilityHost(bars, attachments or InMemoryAttachmentStore()), sink, console, **options
    )
    return supervisor, sink, console


async def _run(supervisor, instance_id, source, timeout_ms=None, symbol="SPY", timeframe="1d"):
    spec = supervisor.make_spec(source, symbol=symbol, timeframe=timeframe, timeout_ms=timeout_ms)
    return await supervisor.run(instance_id, spec)


# ══════════════════════════════════════════════════════════════════════════
# 1. Happy path
# ══════════════════════════════════════════════════════════════════════════

class TestHappyPath:

    def test_sma_script_commits_line(self):
        from libs.domain_models import RunStatus

        async def scenario():
            supervisor, sink, _ = _supervisor()
            try:
                outcome = await _run(supervisor, "chart-1", SMA_SCRIPT)
                line = sink.snapshot()["line"]["chart-1::sma"]
            finally:
                await supervisor.shutdown()
            return outcome, line

        outcome, line = asyncio.run(scenario())
        assert outcome.status is RunStatus.COMPLETED, outcome.error
        assert outcome.to_done_message() == {"type": "done"}
        assert outcome.artifacts == ["chart-1::sma"]
        assert outcome.duration_ms is not None
        assert len(line["data"]) == 30 - 5 + 1
        assert line["data"][0]["value"] == pytest.approx(102.0)
        assert line["opts"] == {"color": "orange"}

    def test_unawaited_plot_calls_still_commit(self):
        async def scenario():
            supervisor, sink, _ = _supervisor()
            try:
                outcome = await _run(supervisor, "i", FIRE_AND_FORGET_SCRIPT)
                ids = sink.ids()
            finally:
                await supervisor.shutdown()
            return outcome, ids

        outcome, ids = asyncio.run(scenario())
        assert outcome.error is None
        assert ids == {"i::a", "i::b"}

    def test_rerun_is_idempotent(self):
        async def scenario():
            supervisor, sink, _ = _supervisor()
            try:
                await _run(supervisor, "i", SMA_SCRIPT)
                first = sink.snapshot("i::")
                await supervisor.rerun("i")
                second = sink.snapshot("i::")
            finally:
                await supervisor.shutdown()
            return first, second

        first, second = asyncio.run(scenario())
        assert set(first["line"]) == set(second["line"]) == {"i::sma"}
        assert first["line"]["i::sma"]["data"] == second["line"]["i::sma"]["data"]

    def test_rerun_unknown_instance(self):
        async def scenario():
            supervisor, _, _ = _supervisor()
            await supervisor.rerun("missing")

        with pytest.raises(KeyError):
            asyncio.run(scenario())


# ══════════════════════════════════════════════════════════════════════════
# 2–3. Failures
# ══════════════════════════════════════════════════════════════════════════

class TestFailures:

    def test_no_export_reports_compile_error(self):
        from libs.domain_models import RunStatus

        async def scenario():
            supervisor, sink, console = _supervisor()
            try:
                outcome = await _run(supervisor, "i", "x = 1\n")
            finally:
                await supervisor.shutdown()
            return outcome, sink, console

        outcome, sink, console = asyncio.run(scenario())
        assert outcome.status is RunStatus.FAILED
        assert outcome.to_done_message() == {"type": "done", "error": "no callable export"}
        assert sink.writes == []

    def test_import_is_rejected(self):
        async def scenario():
            supervisor, sink, _ = _supervisor()
            try:
                outcome = await _run(supervisor, "i", "import os\ndef default(env):\n    pass\n")
            finally:
                await supervisor.shutdown()
            return outcome, sink

        outcome, sink = asyncio.run(scenario())
        assert "import is not allowed" in outcome.error
        assert sink.writes == []

    def test_failed_rerun_keeps_previous_artifacts(self):
        from libs.domain_models import RunStatus
        broken = (
            "async def default(env):\n"
            "    await env.plot.line('other', [])\n"
            "    raise ValueError('boom')\n"
        )

        async def scenario():
            supervisor, sink, console = _supervisor()
            try:
                await _run(supervisor, "i", SMA_SCRIPT)
                outcome = await _run(supervisor, "i", broken)
                ids = sink.ids()
            finally:
                await supervisor.shutdown()
            return outcome, ids, console

        outcome, ids, console = asyncio.run(scenario())
        assert outcome.status is RunStatus.FAILED
        assert outcome.error == "boom"
        assert "i::sma" in ids
        assert "i::other" not in ids
        assert {"level": "error", "text": "boom"}.items() <= console.lines("i")[-1].items()


# ══════════════════════════════════════════════════════════════════════════
# 4. Timeouts
# ══════════════════════════════════════════════════════════════════════════

class TestTimeouts:

    @pytest.mark.parametrize("source", [SLEEPY_SCRIPT, SPIN_SCRIPT], ids=["await", "spin"])
    def test_timeout_reported_and_context_terminable(self, source):
        from libs.domain_models import RunStatus

        async def scenario():
            supervisor, sink, console = _supervisor()
            try:
                context = await supervisor.start("i", supervisor.make_spec(source, "SPY", "1d", timeout_ms=50))
                outcome = await context.wait()
                alive_after_timeout = context.is_alive
                terminated = supervisor.terminate("i")
                await context.join()
                alive_after_kill = context.is_alive
            finally:
                await supervisor.shutdown()
            return outcome, alive_after_timeout, terminated, alive_after_kill, sink, console

        outcome, alive_after_timeout, terminated, alive_after_kill, sink, console = asyncio.run(scenario())
        assert outcome.status is RunStatus.TIMED_OUT
        assert outcome.to_done_message() == {"type": "done", "timedOut": True}
        assert outcome.duration_ms <= 200
        assert alive_after_timeout
        assert terminated
        assert not alive_after_kill
        assert sink.writes == []
        assert console.lines("i")[-1]["text"] == "Runtime timed out"


# ══════════════════════════════════════════════════════════════════════════
# 5–6. Termination & supersession
# ══════════════════════════════════════════════════════════════════════════

class GatedBars:
    """Async bar provider that blocks until released."""

    def __init__(self):
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def get_bars(self, symbol, timeframe):
        self.entered.set()
        await self.release.wait()
        return make_bars([1.0, 2.0, 3.0])


class TestTermination:

    def test_terminated_context_never_writes(self):
        from libs.domain_models import RunStatus
        source = (
            "async def default(env):\n"
            "    env.plot.line('early', [{'time': 1, 'value': 1.0}])\n"
            "    bars = await env.get_bars()\n"
            "    await env.plot.line('late', [{'time': 1, 'value': 2.0}])\n"
        )

        async def scenario():
            bars = GatedBars()
            supervisor, sink, _ = _supervisor(bars=bars)
            try:
                context = await supervisor.start("i", supervisor.make_spec(source, "SPY", "1d", timeout_ms=5000))
                await asyncio.wait_for(bars.entered.wait(), timeout=10)
                supervisor.terminate("i", "user stopped")
                bars.release.set()
                outcome = await context.wait()
                await asyncio.sleep(0.2)
            finally:
                await supervisor.shutdown()
            return outcome, sink

        outcome, sink = asyncio.run(scenario())
        assert outcome.status is RunStatus.TERMINATED
        assert outcome.error == "user stopped"
        assert sink.writes == []

    def test_new_run_supersedes_in_flight_run(self):
        from libs.domain_models import RunStatus

        async def scenario():
            supervisor, sink, _ = _supervisor()
            try:
                first = await supervisor.start("i", supervisor.make_spec(SLEEPY_SCRIPT, "SPY", "1d", timeout_ms=5000))
                second = await _run(supervisor, "i", SMA_SCRIPT)
                first_outcome = await first.wait()
                await first.join()
                first_alive = first.is_alive
                ids = sink.ids()
            finally:
                await supervisor.shutdown()
            return first_outcome, second, first_alive, ids

        first_outcome, second, first_alive, ids = asyncio.run(scenario())
        assert first_outcome.status is RunStatus.TERMINATED
        assert first_outcome.error == "superseded"
        assert not first_alive
        assert second.status is RunStatus.COMPLETED
        assert ids == {"i::sma"}

    def test_remove_clears_namespace(self):
        async def scenario():
            supervisor, sink, _ = _supervisor()
            try:
                await _run(supervisor, "i", SMA_SCRIPT)
                removed = await supervisor.remove("i")
                again = await supervisor.remove("i")
            finally:
                await supervisor.shutdown()
            return removed, again, sink, supervisor

        removed, again, sink, supervisor = asyncio.run(scenario())
        assert removed and not again
        assert sink.ids() == set()
        assert "i" not in supervisor.registry

    def test_shutdown_clears_every_namespace(self):
        async def scenario():
            supervisor, sink, _ = _supervisor()
            await _run(supervisor, "i", SMA_SCRIPT)
            live = await supervisor.start("j", supervisor.make_spec(SLEEPY_SCRIPT, "SPY", "1d", timeout_ms=5000))
            before = sink.ids()
            await supervisor.shutdown()
            return before, sink, supervisor, live

        before, sink, supervisor, live = asyncio.run(scenario())
        assert before == {"i::sma"}
        assert sink.ids() == set()
        assert len(supervisor.registry) == 0
        assert not live.is_alive


# ══════════════════════════════════════════════════════════════════════════
# 7. Isolation
# ══════════════════════════════════════════════════════════════════════════

class TestIsolation:

    def test_concurrent_instances_use_separate_namespaces(self):
        async def scenario():
            supervisor, sink, _ = _supervisor()
            try:
                a, b = await asyncio.gather(
                    _run(supervisor, "a", SMA_SCRIPT),
                    _run(supervisor, "b", SMA_SCRIPT),
                )
                await supervisor.rerun("a")
                ids = sink.ids()
            finally:
                await supervisor.shutdown()
            return a, b, ids

        a, b, ids = asyncio.run(scenario())
        assert a.artifacts == ["a::sma"]
        assert b.artifacts == ["b::sma"]
        assert ids == {"a::sma", "b::sma"}

    def test_script_cannot_reach_host_builtins(self):
        async def scenario():
            supervisor, _, _ = _supervisor()
            try:
                return await _run(supervisor, "i", "def default(env):\n    open('/etc/passwd')\n")
            finally:
                await supervisor.shutdown()

        outcome = asyncio.run(scenario())
        assert "open" in outcome.error

    def test_frame_walk_cannot_import(self):
        source = (
            "def default(env):\n"
            "    def g():\n"
            "        yield 1\n"
            "    gen = g()\n"
            "    frame = gen.gi_frame\n"
            "    while frame is not None and 'asyncio' not in frame.f_globals:\n"
            "        frame = frame.f_back\n"
            "    os = frame.f_globals['__builtins__']['__import__']('os')\n"
            "    print('ESCAPED', os.getpid())\n"
        )

        async def scenario():
            supervisor, _, console = _supervisor()
            try:
                outcome = await _run(supervisor, "i", source)
            finally:
                await supervisor.shutdown()
            return outcome, console

        outcome, console = asyncio.run(scenario())
        assert "is not allowed" in outcome.error
        assert not any(line["text"].startswith("ESCAPED") for line in console.lines("i"))


# ══════════════════════════════════════════════════════════════════════════
# 8. Attachments
# ══════════════════════════════════════════════════════════════════════════

class TestAttachments:

    def test_csv_rows_reach_script(self):
        from providers.memory import InMemoryAttachmentStore
        store = InMemoryAttachmentStore()
        store.add_csv("levels.csv", "time,price,text\n1700000000,101.5,R1\n1700086400,99,S1\n")
        source = (
            "async def default(env):\n"
            "    names = await env.attachments.list()\n"
            "    table = await env.attachments.csv(names[0])\n"
            "    labels = [{'time': int(r['time']), 'price': float(r['price']), 'text': r['text']}\n"
            "              for r in table['rows']]\n"
            "    await env.plot.labels('levels', labels)\n"
        )

        async def scenario():
            supervisor, sink, _ = _supervisor(attachments=store)
            try:
                outcome = await _run(supervisor, "i", source)
                labels = sink.snapshot()["labels"]["i::levels"]["data"]
            finally:
                await supervisor.shutdown()
            return outcome, labels

        outcome, labels = asyncio.run(scenario())
        assert outcome.error is None
        assert [lbl["text"] for lbl in labels] == ["R1", "S1"]

    def test_missing_csv_is_catchable(self):
        source = (
            "async def default(env):\n"
            "    try:\n"
            "        await env.attachments.csv('nope.csv')\n"
            "    except Exception as e:\n"
            "        env.log(str(e), level='warn')\n"
        )

        async def scenario():
            supervisor, _, console = _supervisor()
            try:
                outcome = await _run(supervisor, "i", source)
            finally:
                await supervisor.shutdown()
            return outcome, console

        outcome, console = asyncio.run(scenario())
        assert outcome.error is None
        assert {"level": "warn", "text": "CSV not found: nope.csv"}.items() <= console.lines("i")[-1].items()

    def test_missing_csv_unhandled_fails_run(self):
        async def scenario():
            supervisor, _, _ = _supervisor()
            try:
                return await _run(supervisor, "i", "async def default(env):\n    await env.attachments.csv('x')\n")
            finally:
                await supervisor.shutdown()

        outcome = asyncio.run(scenario())
        assert outcome.error == "CSV not found: x"


# ══════════════════════════════════════════════════════════════════════════
# 9. Console feed
# ══════════════════════════════════════════════════════════════════════════

class TestConsole:

    def test_print_and_log_reach_console(self):
        source = (
            "def default(env):\n"
            "    print('bars for', env.symbol)\n"
            "    env.log('careful', level='warn')\n"
        )

        async def scenario():
            supervisor, _, console = _supervisor()
            try:
                await _run(supervisor, "i", source)
            finally:
                await supervisor.shutdown()
            return console.lines("i")

        lines = [(line["level"], line["text"]) for line in asyncio.run(scenario())]
        assert ("info", "Running on SPY 1d") in lines
        assert ("info", "bars for SPY") in lines
        assert ("warn", "careful") in lines
