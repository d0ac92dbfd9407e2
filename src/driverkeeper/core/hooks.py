"""Process-wide shutdown hooks."""

from __future__ import annotations

import atexit
import itertools
import threading
from dataclasses import dataclass, field
from typing import Callable

from loguru import logger

DEFAULT_PRIORITY = 100


@dataclass
class ShutdownHook:
    """A registered callback; higher priority runs first."""

    priority: int
    seq: int
    callback: Callable[[], None] = field(compare=False, repr=False)


class ShutdownHookRegistry:
    """Callbacks to run when the host process shuts down.

    Hooks run at interpreter exit, or earlier when ``run_all`` is called (for
    instance from a signal handler). Each hook runs at most once.
    """

    def __init__(self, install_atexit: bool = True):
        self._lock = threading.Lock()
        self._hooks: dict[int, ShutdownHook] = {}
        self._counter = itertools.count()
        self._shutting_down = False
        if install_atexit:
            atexit.register(self.run_all)

    @property
    def is_shutting_down(self) -> bool:
        with self._lock:
            return self._shutting_down

    def register(self, callback: Callable[[], None], priority: int = DEFAULT_PRIORITY) -> ShutdownHook:
        """Register ``callback``; the returned hook is the handle for ``remove``."""
        with self._lock:
            if self._shutting_down:
                raise RuntimeError("Shutdown in progress, cannot register new hooks")
            hook = ShutdownHook(priority=priority, seq=next(self._counter), callback=callback)
            self._hooks[hook.seq] = hook
            return hook

    def remove(self, hook: ShutdownHook) -> bool:
        """Deregister a hook. Returns False if it was not registered."""
        with self._lock:
            return self._hooks.pop(hook.seq, None) is not None

    def run_all(self) -> None:
        """Run every registered hook, highest priority first."""
        with self._lock:
            self._shutting_down = True
            hooks = sorted(self._hooks.values(), key=lambda h: (-h.priority, h.seq))
            self._hooks.clear()

        for hook in hooks:
            try:
                hook.callback()
            except Exception as e:
                logger.error(f"Shutdown hook failed: {e}")

    def __len__(self) -> int:
        with self._lock:
            return len(self._hooks)


_registry: ShutdownHookRegistry | None = None
_registry_lock = threading.Lock()


def get_shutdown_registry() -> ShutdownHookRegistry:
    """Get the process-wide registry instance."""
    global _registry
    with _registry_lock:
        if _registry is None:
            _registry = ShutdownHookRegistry()
        return _registry
