# src/abtrial/metastore/helpers.py
import threading
from contextlib import contextmanager
from logging import getLogger
from typing import Iterator, Optional
from urllib.parse import quote, unquote

from kazoo.client import KazooClient, KazooState, KazooRetry
from kazoo.exceptions import (
    BadVersionError,
    KazooException,
    NoNodeError,
    NodeExistsError,
    NotEmptyError,
)
from kazoo.handlers.threading import KazooTimeoutError

from abtrial.config import ZookeeperSettings
from abtrial.exceptions import StoreUnavailable

logger = getLogger(__name__)

# Node-level outcomes the store handles itself (missing key, lost CAS race).
_NODE_ERRORS = (NoNodeError, NodeExistsError, BadVersionError, NotEmptyError)


@contextmanager
def translate_errors(operation: str) -> Iterator[None]:
    """
    Re-raise kazoo failures as StoreUnavailable.

    Connection loss, session expiry, timeouts, auth and marshalling errors all
    become StoreUnavailable. NoNodeError, NodeExistsError, BadVersionError and
    NotEmptyError pass through untouched.
    """
    try:
        yield
    except _NODE_ERRORS:
        raise
    except (KazooException, KazooTimeoutError) as exc:
        logger.warning("Store operation %s failed: %r", operation, exc)
        raise StoreUnavailable(f"{operation} failed: {exc!r}") from exc


def encode_segment(name: str) -> str:
    """Quote a user supplied name so it is a single ZooKeeper path segment."""
    return quote(str(name), safe="")


def decode_segment(segment: str) -> str:
    return unquote(segment)


def connect_string(settings: ZookeeperSettings) -> str:
    """Ensemble hosts with the chroot appended, e.g. ``zk1:2181,zk2:2181/abtrial``."""
    return settings.hosts + (settings.chroot or "")


def create_zk_client(settings: ZookeeperSettings) -> KazooClient:
    """Build an unstarted KazooClient; auth is registered before the first connect."""
    client = KazooClient(
        hosts=connect_string(settings),
        timeout=settings.session_timeout_s,
        connection_retry=KazooRetry(max_tries=settings.max_retries, delay=settings.retry_delay_s),
        command_retry=KazooRetry(max_tries=settings.max_retries, delay=settings.retry_delay_s),
        use_ssl=settings.use_tls,
    )
    if settings.auth_scheme and settings.auth_credentials:
        client.add_auth(settings.auth_scheme, settings.auth_credentials)
    return client

class ZkConnectionManager:
    """
    Holds the KazooClient shared by every Metastore in the process.

    ``start()`` connects once (later calls are no-ops); ``stop()`` closes the
    session and marks the manager stopped so stores refuse further work::

        connection = ZkConnectionManager(settings.zookeeper)
        connection.start()
        metastore = Metastore(connection=connection, group=settings.zookeeper.default_group)
    """

    def __init__(self, settings: ZookeeperSettings) -> None:
        self.settings = settings
        self._client: Optional[KazooClient] = None
        self._guard = threading.RLock()
        self._connected = False
        self._stopped = False

    @property
    def client(self) -> KazooClient:
        if self._client is None:
            raise RuntimeError("call start() before using the ZooKeeper client")
        return self._client

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def stopped(self) -> bool:
        return self._stopped

    def start(self) -> None:
        if self._client is not None:
            return

        client = create_zk_client(self.settings)
        client.add_listener(self._on_state_change)
        with translate_errors("connect"):
            client.start(timeout=self.settings.connection_timeout_s)

        with self._guard:
            self._client, self._connected, self._stopped = client, True, False

    def stop(self) -> None:
        with self._guard:
            self._stopped = True
            client = self._client
        if client is None:
            return
        client.stop()
        client.close()

    def _on_state_change(self, state: KazooState) -> None:
        with self._guard:
            self._connected = state == KazooState.CONNECTED

        if state == KazooState.LOST:
            logger.warning("ZooKeeper session lost, store calls fail until a new session is established")
        elif state == KazooState.SUSPENDED:
            logger.info("ZooKeeper connection suspended")
        else:
            logger.debug("ZooKeeper connected")
