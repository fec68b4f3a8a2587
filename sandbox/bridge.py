"""
Context-side RPC bridge.

Every capability call gets a fresh correlation id and a PendingRequest, then
{rpc, id, method, params} is posted to the host. Replies are matched by id;
unknown ids are ignored (stale replies after a restart, duplicates).
"""
import asyncio
import uuid
from dataclasses import dataclass
from typing import Any, Callable

from sandbox.errors import ContextTerminated, error_from_kind
from sandbox.messages import RpcRequest


@dataclass
class PendingRequest:
    id: str
    method: str
    future: asyncio.Future

    def resolve(self, result: Any) -> None:
        if not self.future.done():
            self.future.set_result(result)

    def reject(self, exc: BaseException) -> None:
        if not self.future.done():
            self.future.set_exception(exc)


class RpcBridge:
    """
    Correlates outbound capability calls with inbound replies.
    Must be used from the event loop thread; deliver() is scheduled onto
    the loop by the connection reader.
    """

    def __init__(self, post: Callable[[dict], None], loop: asyncio.AbstractEventLoop | None = None):
        self._post = post
        self._loop = loop or asyncio.get_running_loop()
        self._pending: dict[str, PendingRequest] = {}
        self._closed = False

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def call(self, method: str, params: dict | None = None) -> asyncio.Future:
        """Post a request and return a future for its reply."""
        future = self._loop.create_future()
        if self._closed:
            future.set_exception(ContextTerminated("execution context is closed"))
            return future

        request_id = uuid.uuid4().hex
        pending = PendingRequest(id=request_id, method=method, future=future)
        self._pending[request_id] = pending
        try:
            self._post(RpcRequest(id=request_id, method=method, params=params or {}).to_wire())
        except (OSError, EOFError) as e:
            self._pending.pop(request_id, None)
            pending.reject(ContextTerminated(f"host connection lost: {e}"))
        return future

    def deliver(self, raw: Any) -> bool:
        """Resolve or reject the matching PendingRequest. False if nothing matched."""
        if not isinstance(raw, dict) or raw.get("rpc") is not True:
            return False
        pending = self._pending.pop(str(raw.get("id")), None)
        if pending is None:
            return False
        if raw.get("error") is not None:
            pending.reject(error_from_kind(raw.get("errorKind"), str(raw["error"])))
        else:
            pending.resolve(raw.get("result"))
        return True

    def outstanding(self) -> list[asyncio.Future]:
        return [p.future for p in self._pending.values()]

    def close(self, reason: str = "execution context terminated") -> None:
        """Reject and discard every pending request; later calls fail immediately."""
        self._closed = True
        pending, self._pending = self._pending, {}
        for p in pending.values():
            p.reject(ContextTerminated(reason))
