from __future__ import annotations

import copy
import threading
from collections.abc import Mapping, Sequence
from typing import Any, Dict, Iterator, Tuple

_MISSING = object()


def lookup(scope: Mapping[str, Any], name: str, default: Any = _MISSING) -> Any:
    """Resolve ``name`` against ``scope``.

    An exact key wins, so ``summary.output`` written by a node is found
    directly. Otherwise the longest dotted prefix present in ``scope`` is
    taken and the rest of the path is walked through nested mappings and
    list indices. Raises ``KeyError`` when nothing matches and no default
    is given.
    """
    if name in scope:
        return scope[name]
    parts = name.split(".")
    for split in range(len(parts) - 1, 0, -1):
        head = ".".join(parts[:split])
        if head in scope:
            current = scope[head]
            remainder = parts[split:]
            break
    else:
        if default is _MISSING:
            raise KeyError(name)
        return default
    for part in remainder:
        if isinstance(current, Mapping) and part in current:
            current = current[part]
        elif (
            isinstance(current, Sequence)
            and not isinstance(current, (str, bytes))
            and part.isdigit()
            and int(part) < len(current)
        ):
            current = current[int(part)]
        else:
            if default is _MISSING:
                raise KeyError(name)
            return default
    return current


def has_variable(scope: Mapping[str, Any], name: str) -> bool:
    try:
        lookup(scope, name)
    except KeyError:
        return False
    return True


class VariableStore:
    """Execution-scoped variable map.

    Nodes read from immutable snapshots; only the engine writes, through
    :meth:`commit`, which applies a node's whole output under the lock.
    """

    def __init__(self, initial: Mapping[str, Any] | None = None) -> None:
        self._values: Dict[str, Any] = copy.deepcopy(dict(initial or {}))
        self._lock = threading.Lock()
        self._version = 0

    def __contains__(self, name: object) -> bool:
        if not isinstance(name, str):
            return False
        with self._lock:
            return has_variable(self._values, name)

    def __len__(self) -> int:
        return len(self._values)

    def __iter__(self) -> Iterator[str]:
        return iter(self.snapshot())

    @property
    def version(self) -> int:
        return self._version

    def get(self, name: str, default: Any = None) -> Any:
        with self._lock:
            return copy.deepcopy(lookup(self._values, name, default))

    def snapshot(self) -> Dict[str, Any]:
        """Deep copy of every committed variable."""
        with self._lock:
            return copy.deepcopy(self._values)

    def commit(self, outputs: Mapping[str, Any]) -> Tuple[int, Dict[str, Any]]:
        """Apply all of ``outputs`` atomically and return the new version."""
        staged = copy.deepcopy(dict(outputs))
        with self._lock:
            self._values.update(staged)
            self._version += 1
            return self._version, staged
