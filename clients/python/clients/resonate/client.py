"""Thin wrapper over a remote resonate-sdk instance.

Everything the worker does with Resonate outside of a workflow body goes
through ``ResonateClient``: registering workflows, injecting dependencies,
starting the poller, starting durable invocations and cancelling their
promises. Inside workflows the SDK ``Context`` (``ctx.sleep``, ``ctx.lfc``,
``ctx.get_dependency``) is used directly.

SDK failures are re-raised as ``ResonateClientError`` subclasses so callers
depend on this module's exceptions only.
"""

import logging
from typing import Any, Callable, Optional

from resonate import Resonate
from clients.resonate.exceptions import (
    ResonateConnectionError,
    ResonatePromiseError,
    ResonateRPCError,
)

logger = logging.getLogger(__name__)


class ResonateClient:
    def __init__(self, host: str, group: str) -> None:
        self.host = host
        self.group = group
        try:
            self._instance: Resonate = Resonate.remote(host=host, group=group)
        except Exception as e:
            raise ResonateConnectionError(f"Cannot create Resonate instance for {host}: {e}") from e
        logger.info(f"Resonate instance created (host={host}, group={group})")

    def register(self, fn: Callable) -> Callable:
        """Register *fn* as a workflow under its function name. Usable as a decorator."""
        return self._instance.register(fn)

    def set_dependency(self, key: str, value: Any) -> None:
        """Expose *value* to workflows as ``ctx.get_dependency(key)``."""
        self._instance.set_dependency(key, value)

    def start(self) -> None:
        self._instance.start()

    def begin_rpc(
        self,
        promise_id: str,
        fn_name: str,
        *args: Any,
        target: Optional[str] = None,
    ) -> Any:
        """Start workflow *fn_name* durably and return its handle without waiting.

        *promise_id* is the idempotency key: beginning an id that already
        exists attaches to that invocation instead of starting a second one.
        """
        instance = self._instance.options(target=target) if target else self._instance
        try:
            return instance.begin_rpc(promise_id, fn_name, *args)
        except Exception as e:
            raise ResonateRPCError(f"Could not start '{fn_name}' as {promise_id}: {e}") from e

    def cancel_promise(self, promise_id: str) -> None:
        try:
            self._instance.promises.cancel(id=promise_id)
        except Exception as e:
            raise ResonatePromiseError(f"Could not cancel promise '{promise_id}': {e}", promise_id) from e
        logger.debug(f"Cancelled promise {promise_id}")
