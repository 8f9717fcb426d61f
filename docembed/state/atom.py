"""
atom.py — Minimal observable value container.

An Atom holds one value and notifies listeners when it changes. Mount hooks
run when the first listener arrives; the cleanup they return runs when the
last listener leaves, so side effects (event subscriptions, timers) only live
while someone is observing.
"""

from typing import Callable, Generic, Optional, TypeVar

from loguru import logger

T = TypeVar("T")

Listener = Callable[[T], None]
Unsubscribe = Callable[[], None]
MountHook = Callable[[], Optional[Callable[[], None]]]


class Atom(Generic[T]):
    def __init__(self, initial: T):
        self._value = initial
        self._listeners: list[Listener] = []
        self._mount_hooks: list[MountHook] = []
        self._cleanups: list[Callable[[], None]] = []
        self._mounted = False
        self._version = 0

    def get(self) -> T:
        return self._value

    @property
    def mounted(self) -> bool:
        return self._mounted

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def set(self, value: T) -> None:
        if value == self._value:
            return
        self._value = value
        self._version += 1
        for listener in list(self._listeners):
            listener(value)

    def listen(self, listener: Listener) -> Unsubscribe:
        """Call listener on every change. Returns an idempotent unsubscribe."""
        self._listeners.append(listener)
        if not self._mounted:
            self._mount()

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)
                if not self._listeners:
                    self._unmount()

        return unsubscribe

    def subscribe(self, listener: Listener) -> Unsubscribe:
        """Like listen(), but also calls listener with the current value."""
        version = self._version
        unsubscribe = self.listen(listener)
        # a mount hook that changed the value has already notified listener
        if self._version == version:
            listener(self._value)
        return unsubscribe

    def on_mount(self, hook: MountHook) -> None:
        self._mount_hooks.append(hook)
        if self._mounted:
            self._run_hook(hook)

    def _mount(self) -> None:
        self._mounted = True
        for hook in list(self._mount_hooks):
            self._run_hook(hook)

    def _run_hook(self, hook: MountHook) -> None:
        cleanup = hook()
        if cleanup is not None:
            self._cleanups.append(cleanup)

    def _unmount(self) -> None:
        self._mounted = False
        cleanups, self._cleanups = self._cleanups, []
        for cleanup in cleanups:
            try:
                cleanup()
            except Exception:
                logger.exception("Atom cleanup raised")
