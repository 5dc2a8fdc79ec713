from __future__ import annotations

from typing import Any, MutableMapping, Optional


class MemoryAdapter:
    """
    Visitor namespace kept in a plain mapping, e.g. a web framework session.

    The mapping is used as-is, so passing the session object makes entries
    live exactly as long as the session does.
    """

    def __init__(self, data: Optional[MutableMapping[str, Any]] = None) -> None:
        self._data: MutableMapping[str, Any] = data if data is not None else {}

    def get(self, key: str) -> Any:
        return self._data.get(key)

    def set(self, key: str, value: Any) -> None:
        self._data[key] = value

    def multi_get(self, *keys: str) -> list[Any]:
        return [self._data.get(k) for k in keys]

    def delete(self, *keys: str) -> None:
        for key in keys:
            self._data.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._data.keys())
