"""
Execution supervisor: owns the instance → execution-context mapping.

  start      spawn a context for a run; an in-flight run of the same
             instance is terminated first (supersession)
  run        start and wait for the outcome
  terminate  hard-kill the instance's current context
  remove     terminate and delete the instance's artifact namespace
  shutdown   remove every instance
"""
import asyncio
import multiprocessing as mp
from typing import Optional

from libs import config
from libs.domain_models import RunOutcome, RunSpec, RunStatus
from libs.log import get_logger
from providers.base import ConsoleFeed, PlotSink
from sandbox.context import ExecutionContext
from sandbox.host import CapabilityHost
from sandbox.namespace import ArtifactNamespaceManager, InstanceRegistry

log = get_logger("sandbox.supervisor")

_WORKER_MODULE = "sandbox.worker"


def _mp_context(start_method: str):
    if start_method not in mp.get_all_start_methods():
        log.warning("start method %r unavailable here, using spawn", start_method)
        start_method = "spawn"
    ctx = mp.get_context(start_method)
    if start_method == "forkserver":
        # the fork server imports the worker (and pandas) once; each run forks from it
        ctx.set_forkserver_preload([_WORKER_MODULE])
    return ctx


class ExecutionSupervisor:
    def __init__(
        self,
        host: CapabilityHost,
        sink: PlotSink,
        console: Optional[ConsoleFeed] = None,
        registry: Optional[InstanceRegistry] = None,
        *,
        timeout_ms: int = config.DEFAULT_TIMEOUT_MS,
        start_method: str = config.START_METHOD,
        grace_ms: int = config.WATCHDOG_GRACE_MS,
        start_timeout_s: float = config.START_TIMEOUT_S,
    ):
        self.registry = registry if registry is not None else InstanceRegistry()
        self.namespaces = ArtifactNamespaceManager(self.registry, sink)
        self.host = host
        self.console = console
        self.timeout_ms = timeout_ms
        self._grace_ms = grace_ms
        self._start_timeout_s = start_timeout_s
        self._mp = _mp_context(start_method)

    def make_spec(
        self,
        source_code: str,
        symbol: str,
        timeframe: str,
        timeout_ms: Optional[int] = None,
    ) -> RunSpec:
        return RunSpec(
            symbol=symbol,
            timeframe=timeframe,
            source_code=source_code,
            timeout_ms=timeout_ms or self.timeout_ms,
        )

    async def start(self, instance_id: str, spec: RunSpec) -> ExecutionContext:
        """Start a run for `instance_id`, superseding any context it already has."""
        record = self.registry.ensure(instance_id)
        previous: Optional[ExecutionContext] = record.context
        if previous is not None and previous.status is not RunStatus.TERMINATED:
            log.info("superseding run %s of %s", previous.run_id, instance_id)
            previous.terminate("superseded")

        context = ExecutionContext(
            instance_id,
            spec,
            self.host,
            self.namespaces,
            self._mp,
            console=self.console,
            grace_ms=self._grace_ms,
            start_timeout_s=self._start_timeout_s,
        )
        record.context = context
        record.spec = spec
        await context.start()
        return context

    async def run(self, instance_id: str, spec: RunSpec) -> RunOutcome:
        context = await self.start(instance_id, spec)
        return await context.wait()

    async def rerun(self, instance_id: str, timeout_ms: Optional[int] = None) -> RunOutcome:
        """Run the instance's last spec again (data or selection changed)."""
        record = self.registry.get(instance_id)
        if record is None or record.spec is None:
            raise KeyError(instance_id)
        spec = record.spec
        if timeout_ms is not None:
            spec = spec.model_copy(update={"timeout_ms": timeout_ms})
        return await self.run(instance_id, spec)

    def context(self, instance_id: str) -> Optional[ExecutionContext]:
        return self.registry.context_of(instance_id)

    def terminate(self, instance_id: str, reason: str = "terminated") -> bool:
        context = self.registry.context_of(instance_id)
        if context is None or context.status is RunStatus.TERMINATED:
            return False
        if context.status.is_terminal and not context.is_alive:
            return False
        context.terminate(reason)
        return True

    async def remove(self, instance_id: str) -> bool:
        """Terminate the instance's context and delete its artifact namespace."""
        if instance_id not in self.registry:
            return False
        self.terminate(instance_id, "removed")
        removed = self.namespaces.forget(instance_id)
        self.registry.remove(instance_id)
        log.info("removed %s (%d artifacts cleared)", instance_id, removed)
        return True

    async def shutdown(self) -> None:
        """Terminate every context and clear every instance's artifact namespace."""
        contexts = [c for c in (self.registry.context_of(i) for i in self.registry.ids()) if c]
        for instance_id in self.registry.ids():
            await self.remove(instance_id)
        await asyncio.gather(*(c.join() for c in contexts))
        log.info("supervisor shut down (%d contexts)", len(contexts))
