"""Provider registry and the value tree handed to step handlers."""

from __future__ import annotations

import copy
import threading
from collections.abc import Callable, Mapping
from typing import Any

Handler = Callable[..., Any]

_MISSING = object()


class Providers:
    """Thread-safe lookup of step handlers by provider and handler name."""

    def __init__(self, force: bool = False) -> None:
        self._lock = threading.Lock()
        self._providers: dict[str, dict[str, Handler]] = {}
        self._force = force

    def get_handler(self, provider_name: str, handle_name: str) -> Handler | None:
        """Return the named handler, or None when it is not registered."""
        with self._lock:
            return self._providers.get(provider_name, {}).get(handle_name)

    def register(self, provider: str, handlers: Mapping[str, Handler]) -> None:
        """Install a provider; an existing one is kept unless forcing."""
        with self._lock:
            if self._force or provider not in self._providers:
                self._providers[provider] = dict(handlers)


class ValueNotFound(LookupError):
    """Raised when a path does not exist in a step value."""

    def __init__(self, path: str) -> None:
        self.path = path
        super().__init__(f"failed to lookup value: var(path={path}) not exist")


def _merge(old: Any, new: Any) -> Any:
    if isinstance(old, dict) and isinstance(new, Mapping):
        for key, item in new.items():
            old[key] = _merge(old[key], item) if key in old else item
        return old
    return new


class StepValue:
    """A mutable tree of step data; views from :meth:`lookup` share it."""

    def __init__(self, data: Any = None) -> None:
        self._holder: list[Any] = [{} if data is None else data]
        self._path: tuple[str, ...] = ()

    def _node(self, path: tuple[str, ...]) -> Any:
        node = self._holder[0]
        for key in self._path + path:
            if not (isinstance(node, Mapping) and key in node):
                return _MISSING
            node = node[key]
        return node

    def _require(self, path: tuple[str, ...]) -> Any:
        node = self._node(path)
        if node is _MISSING:
            raise ValueNotFound(".".join(path or self._path))
        return node

    def _typed(self, path: tuple[str, ...], ok: Callable[[Any], bool], name: str) -> Any:
        node = self._require(path)
        if not ok(node):
            label = ".".join(self._path + path)
            raise TypeError(f"{label}: cannot use value {node!r} as {name}")
        return node

    def lookup(self, *path: str) -> StepValue:
        """Return a view of the value at ``path``."""
        self._require(path)
        view = StepValue.__new__(StepValue)
        view._holder = self._holder
        view._path = self._path + path
        return view

    def exists(self, *path: str) -> bool:
        """Tell whether ``path`` is present."""
        return self._node(path) is not _MISSING

    def get_string(self, *path: str) -> str:
        """Return the string at ``path``."""
        return self._typed(path, lambda n: isinstance(n, str), "string")

    def get_int(self, *path: str) -> int:
        """Return the integer at ``path``."""
        return self._typed(
            path, lambda n: isinstance(n, int) and not isinstance(n, bool), "int"
        )

    def fill(self, obj: Any, *path: str) -> None:
        """Merge ``obj`` into the tree at ``path``, creating objects on the way."""
        full = self._path + path
        obj = copy.deepcopy(obj)
        if not full:
            self._holder[0] = _merge(self._holder[0], obj)
            return
        parent = self._holder[0]
        if not isinstance(parent, dict):
            raise TypeError("cannot fill a field of a non-object value")
        for key in full[:-1]:
            child = parent.get(key)
            if child is None:
                child = parent[key] = {}
            elif not isinstance(child, dict):
                raise TypeError(f"cannot fill below non-object value at {key}")
            parent = child
        last = full[-1]
        parent[last] = _merge(parent[last], obj) if last in parent else obj

    def to_python(self) -> Any:
        """Return a deep copy of the data this value holds."""
        return copy.deepcopy(self._require(()))