"""Request-scoped values and cancellation."""

import threading
from typing import Any, List, Optional


class _CancelScope:
    def __init__(self, parent: Optional["_CancelScope"]) -> None:
        self.event = threading.Event()
        self._children: List["_CancelScope"] = []
        self._lock = threading.Lock()
        if parent is not None:
            parent._attach(self)

    def _attach(self, child: "_CancelScope") -> None:
        with self._lock:
            already = self.event.is_set()
            if not already:
                self._children.append(child)
        if already:
            child.cancel()

    def cancel(self) -> None:
        with self._lock:
            if self.event.is_set():
                return
            self.event.set()
            children, self._children = self._children, []
        for child in children:
            child.cancel()


_NO_KEY = object()


class Context:
    """An immutable chain of key/value pairs with optional cancellation."""

    __slots__ = ("_parent", "_key", "_value", "_scope", "_owns_scope")

    def __init__(
        self,
        parent: Optional["Context"] = None,
        key: Any = _NO_KEY,
        value: Any = None,
        scope: Optional[_CancelScope] = None,
        owns_scope: bool = False,
    ) -> None:
        self._parent = parent
        self._key = key
        self._value = value
        self._scope = scope if scope is not None else (parent._scope if parent else None)
        self._owns_scope = owns_scope

    def with_value(self, key: Any, value: Any) -> "Context":
        """Return a child context that maps ``key`` to ``value``."""
        return Context(self, key, value)

    def value(self, key: Any) -> Any:
        """Return the value bound to ``key``, or None."""
        node: Optional[Context] = self
        while node is not None:
            if node._key is not _NO_KEY and node._key == key:
                return node._value
            node = node._parent
        return None

    def with_cancel(self) -> "Context":
        """Return a child context that can be cancelled on its own."""
        return Context(self, scope=_CancelScope(self._scope), owns_scope=True)

    def cancel(self) -> None:
        """Cancel this context and every context derived from it."""
        if not self._owns_scope:
            raise RuntimeError("context has no cancel function")
        self._scope.cancel()

    def cancelled(self) -> bool:
        return self._scope is not None and self._scope.event.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until cancelled or until ``timeout`` seconds pass; return whether cancelled."""
        if self._scope is None:
            threading.Event().wait(timeout)
            return False
        return self._scope.event.wait(timeout)


_BACKGROUND = Context()


def background() -> Context:
    """Return the empty, never-cancelled root context."""
    return _BACKGROUND