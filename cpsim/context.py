import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from .config import Settings
from .store import Store


class NotConnectedError(RuntimeError):
    pass


@dataclass
class RuntimeContext:
    """Shared handles for every component of one charge point process.

    ``charger`` is the live protocol connection, replaced on each boot and
    cleared on stop. Durable fields are never cached here: the store is read
    on each use.
    """

    settings: Settings
    store: Store
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
    charger: Optional[Any] = None
    tasks: set = field(default_factory=set)

    def require_charger(self):
        if self.charger is None:
            raise NotConnectedError("Charge Point not connected")
        return self.charger

    def spawn(self, coro) -> asyncio.Task:
        """Run ``coro`` in the background, keeping a reference until it ends."""
        task = asyncio.create_task(coro)
        self.tasks.add(task)
        task.add_done_callback(self.tasks.discard)
        return task
