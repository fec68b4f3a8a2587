"""
Host-side handle for one execution context (one sandbox process).

State machine:
    CREATED → RUNNING → COMPLETED | FAILED | TIMED_OUT
    RUNNING / TIMED_OUT → TERMINATED   (hard kill)

A daemon reader thread forwards every message from the process onto the
host event loop. Nothing from a terminated context is processed: its
pending host work is cancelled, replies are dropped and staged artifact
writes are discarded.
"""
import asyncio
import threading
import time
import uuid
from multiprocessing.connection import Connection
from typing import Any, Optional

from libs import config
from libs.domain_models import RunOutcome, RunSpec, RunStatus
from libs.log import get_logger
from providers.base import ConsoleFeed
from sandbox.errors import SandboxError, ScriptRuntimeError
from sandbox.host import CapabilityHost
from sandbox.messages import (
    DoneMessage,
    LogMessage,
    RpcReply,
    RpcRequest,
    RunInstruction,
    StartedMessage,
    decode_call,
    decode_context_message,
)
from sandbox.namespace import ArtifactNamespaceManager
from sandbox.worker import run_worker

log = get_logger("sandbox.context")

TIMEOUT_TEXT = "Runtime timed out"


class ExecutionContext:
    def __init__(
        self,
        instance_id: str,
        spec: RunSpec,
        host: CapabilityHost,
        namespaces: ArtifactNamespaceManager,
        mp_context: Any,
        console: Optional[ConsoleFeed] = None,
        grace_ms: int = config.WATCHDOG_GRACE_MS,
        start_timeout_s: float = config.START_TIMEOUT_S,
    ):
        self.instance_id = instance_id
        self.spec = spec
        self.run_id = uuid.uuid4().hex[:12]
        self.status = RunStatus.CREATED

        self._host = host
        self._namespaces = namespaces
        self._mp = mp_context
        self._console = console
        self._grace_ms = grace_ms
        self._start_timeout_s = start_timeout_s

        self.stage = namespaces.open_stage(instance_id)
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._outcome: Optional[asyncio.Future] = None
        self._process = None
        self._conn: Optional[Connection] = None
        self._timers: list[asyncio.TimerHandle] = []
        self._tasks: set[asyncio.Task] = set()
        self._started_at: Optional[float] = None
        self._reaper: Optional[asyncio.Task] = None

    # ── Lifecycle ────────────────────────────────────────────────

    async def start(self) -> None:
        """Spawn the process, post the run instruction and arm the start watchdog."""
        self._loop = asyncio.get_running_loop()
        self._outcome = self._loop.create_future()

        parent_conn, child_conn = self._mp.Pipe(duplex=True)
        self._process = self._mp.Process(
            target=run_worker,
            args=(child_conn,),
            name=f"indicator-{self.instance_id}-{self.run_id}",
            daemon=True,
        )
        await asyncio.to_thread(self._process.start)
        child_conn.close()
        self._conn = parent_conn

        if self.status is RunStatus.TERMINATED:
            # superseded while the process was starting
            self._kill()
            parent_conn.close()
            self._settle(RunStatus.TERMINATED, error="superseded")
            return

        threading.Thread(target=self._read_loop, name=f"ctx-reader-{self.run_id}", daemon=True).start()
        self._conn.send(RunInstruction.from_run_spec(self.spec).to_wire())
        self._timers.append(self._loop.call_later(self._start_timeout_s, self._on_start_timeout))
        log.info("run %s started for %s (pid=%s, timeout=%sms)",
                 self.run_id, self.instance_id, self._process.pid, self.spec.timeout_ms)

    async def wait(self) -> RunOutcome:
        if self._outcome is None:
            raise SandboxError("execution context was never started")
        return await asyncio.shield(self._outcome)

    def terminate(self, reason: str = "terminated") -> None:
        """Hard-kill the process. Pending requests are abandoned and staged writes dropped."""
        if self.status is RunStatus.TERMINATED:
            return
        if self.status.is_terminal and not self.is_alive:
            # settled and exited on its own
            return
        self.status = RunStatus.TERMINATED
        self.stage.discard()
        for task in list(self._tasks):
            task.cancel()
        self._settle(RunStatus.TERMINATED, error=reason)
        self._kill()
        log.info("run %s for %s terminated (%s)", self.run_id, self.instance_id, reason)

    async def join(self, timeout: float = 2.0) -> None:
        if self._process is not None and self._process.pid is not None:
            await asyncio.to_thread(self._process.join, timeout)

    @property
    def is_alive(self) -> bool:
        return self._process is not None and self._process.is_alive()

    @property
    def outcome(self) -> Optional[RunOutcome]:
        if self._outcome is not None and self._outcome.done():
            return self._outcome.result()
        return None

    def _kill(self) -> None:
        if self._process is not None and self._process.is_alive():
            self._process.kill()
            self._reap()

    def _reap(self) -> None:
        if self._loop is not None and not self._loop.is_closed():
            self._reaper = self._loop.create_task(self.join())

    # ── Messages from the process ────────────────────────────────

    def _read_loop(self) -> None:
        conn = self._conn
        while True:
            try:
                raw = conn.recv()
            except (EOFError, OSError):
                break
            if not self._post(self._on_message, raw):
                break
        conn.close()
        self._post(self._on_closed)

    def _post(self, fn, *args) -> bool:
        try:
            self._loop.call_soon_threadsafe(fn, *args)
            return True
        except RuntimeError:
            # host loop closed; nothing left to deliver to
            return False

    def _on_message(self, raw: Any) -> None:
        if self.status is RunStatus.TERMINATED:
            return
        msg = decode_context_message(raw)
        match msg:
            case StartedMessage():
                self._on_started()
            case LogMessage(level=level, text=text):
                self._console_line(level, text)
            case DoneMessage():
                self._on_done(msg)
            case RpcRequest():
                task = self._loop.create_task(self._serve(msg))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)
            case _:
                log.debug("run %s: ignoring unrecognised message %r", self.run_id, raw)

    def _on_started(self) -> None:
        if self.status is not RunStatus.CREATED:
            return
        self.status = RunStatus.RUNNING
        self._started_at = time.monotonic()
        self._cancel_timers()
        budget_s = (self.spec.timeout_ms + self._grace_ms) / 1000.0
        self._timers.append(self._loop.call_later(budget_s, self._on_watchdog))

    def _on_done(self, msg: DoneMessage) -> None:
        if self._outcome.done():
            return
        if msg.timed_out:
            self.stage.discard()
            self._settle(RunStatus.TIMED_OUT, timed_out=True)
        elif msg.error is not None:
            self.stage.discard()
            self._settle(RunStatus.FAILED, error=msg.error)
        else:
            committed = self._namespaces.commit(self.stage, owner=self)
            self._settle(RunStatus.COMPLETED, artifacts=committed)

    def _on_closed(self) -> None:
        if self.status is RunStatus.TERMINATED:
            return
        if self._outcome is not None and not self._outcome.done():
            code = self._process.exitcode if self._process is not None else None
            self.stage.discard()
            self._settle(RunStatus.FAILED,
                         error=f"execution context exited unexpectedly (exit code {code})")
        if self._process is not None:
            self._reap()

    def _on_start_timeout(self) -> None:
        if self.status is RunStatus.CREATED:
            self._settle(RunStatus.FAILED, error="execution context failed to start")
            self.terminate("start timeout")

    def _on_watchdog(self) -> None:
        # the in-context timer should already have reported; the process may be wedged
        if self._outcome is not None and not self._outcome.done():
            log.warning("run %s: watchdog fired before the context reported its timeout", self.run_id)
            self.stage.discard()
            self._settle(RunStatus.TIMED_OUT, timed_out=True)

    # ── Capability calls ─────────────────────────────────────────

    async def _serve(self, request: RpcRequest) -> None:
        try:
            call = decode_call(request.method, request.params)
            result = await self._host.dispatch(call, self.stage)
            reply = RpcReply(id=request.id, result=result)
        except SandboxError as e:
            log.warning("run %s: %s rejected: %s", self.run_id, request.method, e)
            reply = RpcReply(id=request.id, error=str(e), error_kind=e.kind)
        except Exception as e:
            log.warning("run %s: %s handler failed: %r", self.run_id, request.method, e)
            reply = RpcReply(id=request.id, error=str(e) or type(e).__name__,
                             error_kind=ScriptRuntimeError.kind)
        self._reply(reply)

    def _reply(self, reply: RpcReply) -> None:
        if self.status is RunStatus.TERMINATED or self._conn is None:
            return
        try:
            self._conn.send(reply.to_wire())
        except (OSError, EOFError) as e:
            # the process is gone; _on_closed settles the run
            log.debug("run %s: reply %s dropped: %s", self.run_id, reply.id, e)

    # ── Settlement ───────────────────────────────────────────────

    def _settle(
        self,
        status: RunStatus,
        *,
        error: Optional[str] = None,
        timed_out: bool = False,
        artifacts: Optional[list[str]] = None,
    ) -> None:
        if self._outcome is None or self._outcome.done():
            return
        self._cancel_timers()
        if self.status is not RunStatus.TERMINATED:
            self.status = status
        duration = None
        if self._started_at is not None:
            duration = (time.monotonic() - self._started_at) * 1000.0

        outcome = RunOutcome(
            instance_id=self.instance_id,
            status=status,
            error=error,
            timed_out=timed_out,
            artifacts=artifacts or [],
            duration_ms=duration,
        )
        self._outcome.set_result(outcome)

        if timed_out:
            self._console_line("error", TIMEOUT_TEXT)
        elif status is RunStatus.FAILED:
            self._console_line("error", error or "run failed")
        log.info("run %s for %s settled: %s%s", self.run_id, self.instance_id, status.value,
                 f" ({error})" if error else "")

    def _cancel_timers(self) -> None:
        for handle in self._timers:
            handle.cancel()
        self._timers.clear()

    def _console_line(self, level: str, text: str) -> None:
        if self._console is not None:
            self._console.append(self.instance_id, level, text)
