"""
In-memory stand-ins for kazoo so the store, trials and facade can be tested
without a ZooKeeper ensemble.

FakeKazooClient keeps a real node tree (parents must exist, versions bump on
every set, non-empty nodes refuse a plain delete) and supports multi-op
transactions that are applied all-or-nothing, which is what the Metastore's
atomic batches rely on. Setting `down = True` makes every call raise
ConnectionLoss, simulating an outage.
"""
from __future__ import annotations

import copy
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

import numpy as np
import pytest
from kazoo.exceptions import (
    BadVersionError,
    ConnectionLoss,
    NoNodeError,
    NodeExistsError,
    NotEmptyError,
    RolledBackError,
    RuntimeInconsistency,
)

from abtrial.callbacks import Callbacks
from abtrial.config import AppSettings, clear_settings_cache
from abtrial.experiments import ExperimentStore
from abtrial.helper import ABTester
from abtrial.metastore import Metastore

# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class FakeStat:
    """Minimal ZnodeStat stand-in; only `version` is used."""

    version: int


class FakeAsyncResult:
    def __init__(self, value: Any = None, exc: Optional[BaseException] = None) -> None:
        self._value = value
        self._exc = exc

    def get(self, block: bool = True, timeout: Optional[float] = None) -> Any:
        if self._exc is not None:
            raise self._exc
        return self._value


def _parent(path: str) -> str:
    parent = path.rsplit("/", 1)[0]
    return parent or "/"


class FakeTransaction:
    def __init__(self, client: "FakeKazooClient") -> None:
        self._client = client
        self._ops: List[Callable[[], Any]] = []

    def create(self, path: str, value: bytes = b"", acl: Any = None, ephemeral: bool = False,
               sequence: bool = False) -> None:
        self._ops.append(lambda: self._client._create(path, value, makepath=False))

    def set_data(self, path: str, value: bytes, version: int = -1) -> None:
        self._ops.append(lambda: self._client._set(path, value, version))

    def delete(self, path: str, version: int = -1) -> None:
        self._ops.append(lambda: self._client._delete(path, version))

    def commit(self) -> List[Any]:
        self._client._check_up()
        self._client.transactions += 1
        snapshot = copy.deepcopy(self._client.nodes)
        results: List[Any] = []
        for index, op in enumerate(self._ops):
            try:
                results.append(op())
            except (NoNodeError, NodeExistsError, BadVersionError, NotEmptyError) as exc:
                self._client.nodes = snapshot
                failed = [RolledBackError() for _ in range(index)]
                failed.append(exc)
                failed.extend(RuntimeInconsistency() for _ in range(len(self._ops) - index - 1))
                return failed
        return results


class FakeKazooClient:
    """
    In-memory fake ZooKeeper client.

    `nodes` maps a full path to ``[data, version]``; "/" always exists.
    """

    def __init__(self) -> None:
        self.nodes: Dict[str, List[Any]] = {"/": [b"", 0]}
        self.down = False
        self.transactions = 0
        self.after_get: Optional[Callable[[str], None]] = None

    def _check_up(self) -> None:
        if self.down:
            raise ConnectionLoss()

    # Primitive tree operations ---------------------------------------------

    def _children(self, path: str) -> List[str]:
        prefix = path.rstrip("/") + "/"
        return [p[len(prefix):] for p in self.nodes if p.startswith(prefix) and "/" not in p[len(prefix):]]

    def _create(self, path: str, value: bytes, makepath: bool) -> str:
        if path in self.nodes:
            raise NodeExistsError()
        parent = _parent(path)
        if parent not in self.nodes:
            if not makepath:
                raise NoNodeError()
            self._ensure(parent)
        self.nodes[path] = [value, 0]
        return path

    def _ensure(self, path: str) -> None:
        if path in self.nodes:
            return
        self._ensure(_parent(path))
        self.nodes[path] = [b"", 0]

    def _set(self, path: str, value: bytes, version: int) -> FakeStat:
        if path not in self.nodes:
            raise NoNodeError()
        node = self.nodes[path]
        if version != -1 and version != node[1]:
            raise BadVersionError()
        node[0] = value
        node[1] += 1
        return FakeStat(node[1])

    def _delete(self, path: str, version: int = -1) -> bool:
        if path not in self.nodes:
            raise NoNodeError()
        if version != -1 and version != self.nodes[path][1]:
            raise BadVersionError()
        if self._children(path):
            raise NotEmptyError()
        del self.nodes[path]
        return True

    # Kazoo API --------------------------------------------------------------

    def ensure_path(self, path: str) -> bool:
        self._check_up()
        self._ensure(path)
        return True

    def exists(self, path: str) -> Optional[FakeStat]:
        self._check_up()
        node = self.nodes.get(path)
        return FakeStat(node[1]) if node is not None else None

    def get(self, path: str) -> Tuple[bytes, FakeStat]:
        self._check_up()
        node = self.nodes.get(path)
        if node is None:
            raise NoNodeError()
        data, stat = node[0], FakeStat(node[1])
        if self.after_get is not None:
            self.after_get(path)
        return data, stat

    def get_async(self, path: str) -> FakeAsyncResult:
        self._check_up()
        try:
            return FakeAsyncResult(self.get(path))
        except NoNodeError as exc:
            return FakeAsyncResult(exc=exc)

    def set(self, path: str, value: bytes, version: int = -1) -> FakeStat:
        self._check_up()
        return self._set(path, value, version)

    def create(self, path: str, value: bytes = b"", makepath: bool = False, ephemeral: bool = False) -> str:
        self._check_up()
        return self._create(path, value, makepath)

    def delete(self, path: str, version: int = -1, recursive: bool = False) -> bool:
        self._check_up()
        if recursive:
            for child in self._children(path):
                self.delete(f"{path.rstrip('/')}/{child}", recursive=True)
        return self._delete(path, version)

    def get_children(self, path: str) -> List[str]:
        self._check_up()
        if path not in self.nodes:
            raise NoNodeError()
        return self._children(path)

    def transaction(self) -> FakeTransaction:
        self._check_up()
        return FakeTransaction(self)


class FakeConnectionManager:
    """ZkConnectionManager stand-in exposing only what Metastore uses."""

    def __init__(self, client: FakeKazooClient) -> None:
        self._client = client
        self._stopped = False

    @property
    def client(self) -> FakeKazooClient:
        return self._client

    @property
    def stopped(self) -> bool:
        return self._stopped

    def stop(self) -> None:
        self._stopped = True


class FixedClock:
    def __init__(self, now: float = 1_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _fresh_settings_cache():
    clear_settings_cache()
    yield
    clear_settings_cache()


@pytest.fixture
def fake_client() -> FakeKazooClient:
    return FakeKazooClient()


@pytest.fixture
def connection(fake_client: FakeKazooClient) -> FakeConnectionManager:
    return FakeConnectionManager(fake_client)


@pytest.fixture
def metastore(connection: FakeConnectionManager) -> Metastore:
    # noinspection PyTypeChecker
    return Metastore(connection=connection, group="abtrial")


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def store(metastore: Metastore, clock: FixedClock) -> ExperimentStore:
    return ExperimentStore(metastore, clock=clock)


@pytest.fixture
def rng() -> np.random.Generator:
    return np.random.default_rng(1234)


@pytest.fixture
def make_tester(metastore: Metastore, clock: FixedClock, rng: np.random.Generator):
    def _make(callbacks: Optional[Callbacks] = None, **settings: Any) -> ABTester:
        return ABTester(metastore, AppSettings(**settings), callbacks, rng=rng, clock=clock)

    return _make


@pytest.fixture
def tester(make_tester) -> ABTester:
    return make_tester()
