"""
Isolated execution context - the body of one sandbox process.

The process receives a single {type: "run"} instruction, compiles the
script, runs its entry with the capability environment and posts exactly
one {type: "done"} message. All host interaction is message passing over
the connection; nothing in this process holds a reference to host objects.

A timer thread posts {done, timedOut: true} once the budget elapses. It
does not stop the script: the host decides when to kill the process.
"""
import asyncio
import inspect
import threading
from multiprocessing.connection import Connection

from pydantic import ValidationError

from sandbox.bridge import RpcBridge
from sandbox.compiler import compile_script
from sandbox.environment import build_environment
from sandbox.messages import DoneMessage, LogMessage, RunInstruction, StartedMessage

_LOG_LEVELS = ("info", "warn", "error")


class _Outbox:
    """Serialises sends from the loop, reader and timer threads; `done` goes out once."""

    def __init__(self, conn: Connection):
        self._conn = conn
        self._lock = threading.Lock()
        self._finished = False

    def send(self, msg: dict) -> None:
        with self._lock:
            self._conn.send(msg)

    def finish(self, msg: dict) -> bool:
        with self._lock:
            if self._finished:
                return False
            self._finished = True
            self._conn.send(msg)
            return True

    def log(self, level: str, text: str) -> None:
        level = level if level in _LOG_LEVELS else "info"
        self.send(LogMessage(level=level, text=text).to_wire())


def _describe(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__


def _read_replies(conn: Connection, loop: asyncio.AbstractEventLoop, bridge: RpcBridge) -> None:
    while True:
        try:
            raw = conn.recv()
        except (EOFError, OSError):
            return
        try:
            loop.call_soon_threadsafe(bridge.deliver, raw)
        except RuntimeError:
            # event loop already closed: the run is over
            return


def _report_timeout(outbox: _Outbox) -> None:
    try:
        outbox.finish(DoneMessage(timed_out=True).to_wire())
    except (OSError, EOFError):
        # host side already closed the connection; nobody left to tell
        return


async def _execute(conn: Connection, outbox: _Outbox, instruction: RunInstruction) -> None:
    loop = asyncio.get_running_loop()
    bridge = RpcBridge(outbox.send, loop)
    threading.Thread(target=_read_replies, args=(conn, loop, bridge),
                     name="rpc-reader", daemon=True).start()

    def _print(*args, sep=" ", end="\n", **_ignored):
        outbox.log("info", sep.join(str(a) for a in args))

    timer = threading.Timer(instruction.timeout_ms / 1000.0, _report_timeout, args=(outbox,))
    timer.daemon = True

    outbox.send(StartedMessage().to_wire())
    timer.start()
    error = None
    try:
        entry = compile_script(instruction.source_code).instantiate({"print": _print})
        env = build_environment(instruction.env_spec, bridge.call, outbox.log)
        outbox.log("info", f"Running on {instruction.env_spec.symbol} {instruction.env_spec.timeframe}")
        result = entry(env)
        if inspect.isawaitable(result):
            await result
        # fire-and-forget calls still in flight count as part of the run
        outstanding = bridge.outstanding()
        if outstanding:
            await asyncio.gather(*outstanding)
    except Exception as e:
        error = _describe(e)
    finally:
        timer.cancel()
        bridge.close()

    outbox.finish(DoneMessage(error=error).to_wire())


def run_worker(conn: Connection) -> None:
    """Process target: serve one run instruction, then exit."""
    outbox = _Outbox(conn)
    try:
        raw = conn.recv()
    except (EOFError, OSError):
        return
    try:
        instruction = RunInstruction.model_validate(raw)
    except ValidationError as e:
        outbox.finish(DoneMessage(error=f"invalid run instruction ({e.error_count()} errors)").to_wire())
        return
    try:
        asyncio.run(_execute(conn, outbox, instruction))
    finally:
        conn.close()
