# chainopt/executor.py
"""
Executor interface and implementations.

Executors perform the actual work for an item. The engine only knows
the Executor interface: ``await executor.invoke(item_name, payload)``
returns the item's output or raises an ExecutionError.

- HandlerExecutor dispatches to handler callables registered by item name.
- SimulatedExecutor sleeps and fails according to each item's declared
  estimates, driven by a seedable random generator.
"""

import asyncio
import inspect
import logging
import random
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from .errors import PermanentExecutionError, TransientExecutionError
from .registry import ItemRegistry

logger = logging.getLogger(__name__)

Handler = Callable[[Dict[str, Any]], Any]


class Executor(ABC):
    """
    Base class for item executors.

    Subclasses implement invoke() to perform the actual operation.
    """

    @abstractmethod
    async def invoke(self, item_name: str, payload: Dict[str, Any]) -> Any:
        """
        Execute one item.

        Args:
            item_name: Registered item name
            payload: Input payload for this step

        Returns:
            The item output

        Raises:
            TransientExecutionError: retryable failure
            PermanentExecutionError: non-retryable failure
        """
        pass


class HandlerExecutor(Executor):
    """
    Dispatches each item to a registered handler.

    Handlers take the payload and return the output. Coroutine
    functions are awaited; plain callables run in a worker thread so
    they do not block sibling steps.

    Usage:
        executor = HandlerExecutor()

        @executor.register("fetch")
        async def fetch(payload):
            ...
    """

    def __init__(self):
        self._handlers: Dict[str, Handler] = {}

    def register(self, item_name: str) -> Callable[[Handler], Handler]:
        """Decorator registering a handler for an item name."""
        def decorator(handler: Handler) -> Handler:
            self.add_handler(item_name, handler)
            return handler
        return decorator

    def add_handler(self, item_name: str, handler: Handler) -> None:
        if item_name in self._handlers:
            logger.warning(f"Overwriting handler for {item_name}")
        self._handlers[item_name] = handler

    def get_handler(self, item_name: str) -> Optional[Handler]:
        return self._handlers.get(item_name)

    def list_handlers(self) -> List[str]:
        return list(self._handlers.keys())

    def clear_handlers(self):
        """Clear all registered handlers (for testing)."""
        self._handlers.clear()

    async def invoke(self, item_name: str, payload: Dict[str, Any]) -> Any:
        handler = self._handlers.get(item_name)
        if handler is None:
            raise PermanentExecutionError(f"No handler registered for item: {item_name}")

        try:
            if inspect.iscoroutinefunction(handler):
                return await handler(payload)
            return await asyncio.to_thread(handler, payload)
        except (asyncio.TimeoutError, TimeoutError) as e:
            raise TransientExecutionError(f"{item_name} timed out: {e}", kind="timeout") from e
        except ConnectionError as e:
            raise TransientExecutionError(f"{item_name} network failure: {e}", kind="network_error") from e


class SimulatedExecutor(Executor):
    """
    Stand-in executor driven by each item's declared estimates.

    Each invocation sleeps for the estimated duration (scaled, plus
    random jitter) and fails with probability ``1 - reliability``.
    Pass a seed for reproducible runs; ``time_scale=0`` removes delays.
    """

    def __init__(
        self,
        registry: ItemRegistry,
        seed: Optional[int] = None,
        time_scale: float = 1.0,
        jitter_ms: float = 200.0,
        failure_kind: str = "unavailable",
    ):
        if time_scale < 0:
            raise ValueError("time_scale must be >= 0")
        self.registry = registry
        self.time_scale = time_scale
        self.jitter_ms = jitter_ms
        self.failure_kind = failure_kind
        self.invocations = 0
        self._random = random.Random(seed)

    async def invoke(self, item_name: str, payload: Dict[str, Any]) -> Any:
        definition = self.registry.get(item_name)
        if definition is None:
            raise PermanentExecutionError(f"Item {item_name} not found in registry")

        self.invocations += 1
        delay_ms = (definition.estimated_duration_ms + self._random.random() * self.jitter_ms) * self.time_scale
        if delay_ms > 0:
            await asyncio.sleep(delay_ms / 1000)

        if self._random.random() >= definition.reliability:
            raise TransientExecutionError(
                f"Item {item_name} execution failed (simulated failure)",
                kind=self.failure_kind,
            )

        return {
            "item_name": item_name,
            "input": payload,
            "output": f"Simulated output from {item_name}",
            "simulated_duration_ms": delay_ms,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
