from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from abtrial.metastore import Batch


@runtime_checkable
class IdentityAdapter(Protocol):
    """
    Key-value namespace of a single visitor.

    ``keys()`` lists entries in insertion order.
    """

    def get(self, key: str) -> Any: ...

    def set(self, key: str, value: Any) -> None: ...

    def multi_get(self, *keys: str) -> list[Any]: ...

    def delete(self, *keys: str) -> None: ...

    def keys(self) -> list[str]: ...


@runtime_checkable
class BatchableAdapter(IdentityAdapter, Protocol):
    """An adapter whose writes can join a metastore transaction."""

    def stage_set(self, batch: Batch, key: str, value: Any) -> None: ...
