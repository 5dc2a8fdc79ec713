# src/abtrial/metastore/store.py
from __future__ import annotations

import pickle
from dataclasses import dataclass
from logging import getLogger
from numbers import Number
from random import random
from time import sleep
from typing import Any, Callable, Optional, Sequence

from kazoo.client import KazooClient
from kazoo.exceptions import (
    BadVersionError,
    NoNodeError,
    NodeExistsError,
    NotEmptyError,
    RolledBackError,
    RuntimeInconsistency,
)

from abtrial.exceptions import StoreUnavailable
from .helpers import ZkConnectionManager, decode_segment, encode_segment, translate_errors

logger = getLogger(__name__)

_CONFLICT_ERRORS = (BadVersionError, NoNodeError, NodeExistsError, NotEmptyError)
_ROLLED_BACK = (RolledBackError, RuntimeInconsistency)


class MetastoreError(StoreUnavailable):
    """The store rejected an operation for a reason other than a version conflict."""


class MetastoreStoppedError(StoreUnavailable):
    """The connection manager was stopped; the store can no longer be used."""


class MetastoreConflictError(StoreUnavailable):
    """Optimistic retries were exhausted because other writers kept winning."""


@dataclass(frozen=True, slots=True)
class VersionToken:
    """Znode `stat.version` observed when a key was read."""
    value: int


@dataclass(slots=True)
class _StagedWrite:
    value: Any
    version: Optional[int]  # None -> node must be created
    placeholder: bool = False  # missing parent, created empty


class Batch:
    """
    Operations collected for a single ZooKeeper multi-op transaction.

    Reads happen while staging; the versions observed are checked at commit so a
    concurrent writer makes the whole batch fail instead of being overwritten.
    That includes deletes of keys read through `get`. Missing parents of new
    keys are created inside the same transaction. Several increments of one key
    inside a batch are folded into one write.
    """

    def __init__(self, metastore: Metastore) -> None:
        self._metastore = metastore
        self._writes: dict[str, _StagedWrite] = {}
        self._deletes: list[str] = []
        self._observed: dict[str, int] = {}

    def __len__(self) -> int:
        return sum(not staged.placeholder for staged in self._writes.values()) + len(self._deletes)

    def _read(self, path: str, full_path: str) -> tuple[Any, Optional[int]]:
        value, ver = self._metastore.get_key_with_version(path)
        if ver is None:
            return value, None
        return value, self._observed.setdefault(full_path, ver.value)

    def _stage_parents(self, full_path: str) -> None:
        missing: list[str] = []
        parent = full_path.rsplit("/", 1)[0]
        while parent and parent not in self._writes and not self._metastore._node_exists(parent):
            missing.append(parent)
            parent = parent.rsplit("/", 1)[0]
        for node in reversed(missing):
            self._writes[node] = _StagedWrite(value=None, version=None, placeholder=True)

    def _stage_write(self, path: str) -> _StagedWrite:
        full_path = self._metastore._full_path(path)
        staged = self._writes.get(full_path)
        if staged is None:
            value, version = self._read(path, full_path)
            if version is None:
                self._stage_parents(full_path)
            staged = self._writes[full_path] = _StagedWrite(value=value, version=version)
        staged.placeholder = False
        return staged

    def get(self, path: str) -> Any:
        """Read `path` as part of the batch; the commit fails if it changes before then."""
        full_path = self._metastore._full_path(path)
        staged = self._writes.get(full_path)
        if staged is not None:
            return staged.value
        return self._read(path, full_path)[0]

    def update(self, path: str, value: Any) -> None:
        self._stage_write(path).value = value

    def modify(self, path: str, updater: Callable[[Any], Any]) -> Any:
        """Stage `updater(current)` as the new value; `current` includes earlier staged writes."""
        staged = self._stage_write(path)
        staged.value = updater(staged.value)
        return staged.value

    def increment(self, path: str, amount: Number = 1) -> Any:
        return self.modify(path, lambda current: (current or 0) + amount)

    def delete(self, path: str) -> bool:
        """Stage a recursive delete of `path`. Returns False if there is nothing to delete."""
        full_path = self._metastore._full_path(path)
        nodes = self._metastore._subtree(full_path)
        for node in nodes:
            self._writes.pop(node, None)
            if node not in self._deletes:
                self._deletes.append(node)
        return bool(nodes)

    def commit(self) -> bool:
        """Returns True if committed, False on a version conflict (nothing was applied)."""
        if not len(self):
            return True

        packb = self._metastore._packb
        client = self._metastore.client
        with translate_errors("transaction"):
            tx = client.transaction()
            for full_path, staged in self._writes.items():
                data = b"" if staged.placeholder else packb(staged.value)
                if staged.version is None:
                    tx.create(full_path, data)
                else:
                    tx.set_data(full_path, data, version=staged.version)
            for full_path in self._deletes:
                tx.delete(full_path, version=self._observed.get(full_path, -1))
            results = tx.commit()

        failures = [r for r in results if isinstance(r, Exception) and not isinstance(r, _ROLLED_BACK)]
        if not failures:
            return True
        if all(isinstance(f, _CONFLICT_ERRORS) for f in failures):
            logger.debug("Transaction conflict, %d operations rolled back: %r", len(results), failures)
            return False
        raise MetastoreError(f"Transaction failed: {failures!r}")


def _pause(attempt: int, base_s: float, cap_s: float) -> None:
    """Exponential back-off with jitter between optimistic retries."""
    sleep(min(cap_s, base_s * 2 ** attempt) * (0.5 + random()))


class Metastore:
    """
    Pickled values stored as znodes below ``/<group>``.

    The KazooClient comes from a shared ZkConnectionManager. A set is a znode
    whose children are its URL-quoted members. Every kazoo failure other than
    the node-level conflicts callers handle surfaces as StoreUnavailable.
    """

    def __init__(
            self,
            connection: ZkConnectionManager,
            group: Optional[str] = None,
            packb: Callable[[Any], bytes] = pickle.dumps,
            unpackb: Callable[[bytes], Any] = pickle.loads,
            base_structure: Optional[list[str]] = None,
    ) -> None:
        self._connection = connection
        self.group = group
        self._packb, self._unpackb = packb, unpackb
        if base_structure:
            self.ensure_structure(base_structure)

    @property
    def stopped(self) -> bool:
        return self._connection.stopped

    @property
    def client(self) -> KazooClient:
        self._ensure_running()
        return self._connection.client

    def _ensure_running(self) -> None:
        if self._connection.stopped:
            raise MetastoreStoppedError("the ZooKeeper connection has been stopped")

    def _full_path(self, path: str) -> str:
        """Absolute znode path (relative to the client chroot) for ``path``."""
        parts = [p for p in (self.group, (path or "").strip("/")) if p]
        return "/" + "/".join(parts)

    def _node_exists(self, full_path: str) -> bool:
        with translate_errors(f"exists {full_path}"):
            return self.client.exists(full_path) is not None

    def _subtree(self, full_path: str) -> list[str]:
        """All nodes below and including `full_path`, children first."""
        with translate_errors("get_children"):
            try:
                children = self.client.get_children(full_path)
            except NoNodeError:
                return []
        nodes: list[str] = []
        for child in children:
            nodes.extend(self._subtree(f"{full_path.rstrip('/')}/{child}"))
        nodes.append(full_path)
        return nodes

    def ensure_structure(self, paths: list[str]) -> None:
        """Create the given paths (and their parents) if they are missing."""
        self._ensure_running()
        with translate_errors("ensure_structure"):
            for path in paths:
                self.client.ensure_path(self._full_path(path))

    # ----------------------------------------------------------------------
    # Single keys
    # ----------------------------------------------------------------------

    def get_key_with_version(self, path: str) -> tuple[Any, Optional[VersionToken]]:
        """``(value, token)`` for a key, or ``(None, None)`` when the znode is absent."""
        self._ensure_running()
        full_path = self._full_path(path)
        with translate_errors(f"get {full_path}"):
            try:
                data, stat = self.client.get(full_path)
            except NoNodeError:
                return None, None
        return (self._unpackb(data) if data else None), VersionToken(int(stat.version))

    def get_key(self, path: str) -> Any:
        return self.get_key_with_version(path)[0]

    __getitem__ = get_key

    def multi_get(self, paths: Sequence[str]) -> list[Any]:
        """
        Read several keys in one pipelined round trip. The result is aligned with
        `paths`; missing keys come back as None.
        """
        self._ensure_running()
        values: list[Any] = []
        with translate_errors("multi_get"):
            pending = [self.client.get_async(self._full_path(p)) for p in paths]
            for result in pending:
                try:
                    data, _stat = result.get()
                except NoNodeError:
                    values.append(None)
                else:
                    values.append(self._unpackb(data) if data else None)
        return values

    def update_key(self, path: str, value: Any) -> None:
        """Unconditionally write ``value``, creating the znode and its parents when needed."""
        self._ensure_running()
        full_path = self._full_path(path)
        data = self._packb(value)
        with translate_errors(f"set {full_path}"):
            try:
                self.client.set(full_path, data)
            except NoNodeError:
                self.client.create(full_path, data, makepath=True)

    def compare_and_set_key(self, path: str, value: Any, *, expected: VersionToken) -> bool:
        """Write only if the znode still has version `expected`; False otherwise."""
        self._ensure_running()
        full_path = self._full_path(path)
        with translate_errors(f"cas {full_path}"):
            try:
                self.client.set(full_path, self._packb(value), version=expected.value)
            except (BadVersionError, NoNodeError):
                return False
        return True

    def _create_if_absent(self, path: str, value: Any) -> bool:
        full_path = self._full_path(path)
        with translate_errors(f"create {full_path}"):
            try:
                self.client.create(full_path, self._packb(value), makepath=True)
            except NodeExistsError:
                return False
        return True

    def atomic_update_key(
            self,
            path: str,
            updater: Callable[[Any], Any],
            *,
            max_retries: int = 20,
            backoff_base_s: float = 0.005,
            backoff_max_s: float = 0.200,
            create_if_missing: bool = False,
    ) -> Any:
        """
        Read-modify-write a key with optimistic concurrency.

        ``updater`` receives the current value (None for a missing key when
        ``create_if_missing`` is set) and may run several times if other writers
        interfere. Returns the value that was stored.
        """
        self._ensure_running()

        for attempt in range(max_retries):
            current, token = self.get_key_with_version(path)
            if token is None:
                if not create_if_missing:
                    raise NoNodeError(self._full_path(path))
                new_value = updater(None)
                if self._create_if_absent(path, new_value):
                    return new_value
            else:
                new_value = updater(current)
                if self.compare_and_set_key(path, new_value, expected=token):
                    return new_value
            _pause(attempt, backoff_base_s, backoff_max_s)

        raise MetastoreConflictError(f"{self._full_path(path)}: still contended after {max_retries} attempts")

    def increment(self, path: str, amount: Number = 1) -> Any:
        """Add `amount` to the numeric value at `path` (missing counts as 0); returns the new value."""
        return self.atomic_update_key(path, lambda current: (current or 0) + amount, create_if_missing=True)

    def drop_key(self, path: str) -> bool:
        """Recursively remove a key. False if it did not exist."""
        self._ensure_running()
        full_path = self._full_path(path)
        with translate_errors(f"delete {full_path}"):
            if not self.client.exists(full_path):
                return False
            self.client.delete(full_path, recursive=True)
        return True

    def delete_keys(self, *paths: str) -> int:
        """
        Recursively delete all `paths` in one transaction. Missing keys are ignored.
        Returns the number of top-level paths that existed.
        """
        found = 0

        def build(batch: Batch) -> None:
            nonlocal found
            found = sum(1 for path in paths if batch.delete(path))

        self.atomic_batch(build)
        return found

    def delete_if(self, path: str, predicate: Callable[[Any], bool]) -> bool:
        """
        Recursively delete `path` if its current value satisfies `predicate`.

        The delete is checked against the version the predicate saw, so a key
        rewritten in between is re-evaluated rather than lost.
        """
        deleted = False

        def build(batch: Batch) -> None:
            nonlocal deleted
            value = batch.get(path)
            deleted = value is not None and bool(predicate(value)) and batch.delete(path)

        self.atomic_batch(build)
        return deleted

    def exists(self, path: str) -> bool:
        self._ensure_running()
        with translate_errors("exists"):
            return self.client.exists(self._full_path(path)) is not None

    __contains__ = exists

    def list_members(self, path: str) -> list[str]:
        """Raw child names of `path` (empty if the node is missing)."""
        self._ensure_running()
        with translate_errors("get_children"):
            try:
                return list(self.client.get_children(self._full_path(path)))
            except NoNodeError:
                return []

    # ----------------------------------------------------------------------
    # Sets
    # ----------------------------------------------------------------------

    @staticmethod
    def _member_path(path: str, member: str) -> str:
        return f"{path.rstrip('/')}/{encode_segment(member)}"

    def set_members(self, path: str) -> set[str]:
        return {decode_segment(m) for m in self.list_members(path)}

    def set_add(self, path: str, member: str) -> None:
        self._ensure_running()
        with translate_errors("set_add"):
            self.client.ensure_path(self._full_path(self._member_path(path, member)))

    def set_remove(self, path: str, member: str) -> bool:
        return self.drop_key(self._member_path(path, member))

    def set_contains(self, path: str, member: str) -> bool:
        return self.exists(self._member_path(path, member))

    # ----------------------------------------------------------------------
    # Transactions
    # ----------------------------------------------------------------------

    def atomic_batch(
            self,
            build: Callable[[Batch], None],
            *,
            max_retries: int = 20,
            backoff_base_s: float = 0.005,
            backoff_max_s: float = 0.200,
    ) -> Batch:
        """
        Apply several writes as one unit.

        `build` stages operations on a fresh Batch. The batch commits as a single
        ZooKeeper multi-op: either every operation is applied or none is. On a
        version conflict `build` runs again against the current state.
        """
        self._ensure_running()

        for attempt in range(max_retries):
            batch = Batch(self)
            build(batch)
            if batch.commit():
                return batch
            _pause(attempt, backoff_base_s, backoff_max_s)

        raise MetastoreConflictError(f"transaction still contended after {max_retries} attempts")
