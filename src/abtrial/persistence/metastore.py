from __future__ import annotations

import time
from logging import getLogger
from typing import Any, Callable, Optional

from abtrial.metastore import Batch, Metastore, decode_segment, encode_segment

logger = getLogger(__name__)

USERS_ROOT = "/users"


def user_path(visitor_id: str) -> str:
    return f"{USERS_ROOT}/{encode_segment(visitor_id)}"


def _empty_record(now: float) -> dict[str, Any]:
    return {"entries": {}, "touched_at": now}


class MetastoreAdapter:
    """
    Visitor namespace stored as a SINGLE key in the metastore.

    The record holds an insertion-ordered ``entries`` dict plus a ``touched_at``
    timestamp used by maintenance to purge idle visitors. Writes are CAS
    updates of the whole record, so concurrent requests of one visitor never
    lose each other's entries.
    """

    def __init__(
            self,
            metastore: Metastore,
            visitor_id: str,
            *,
            clock: Callable[[], float] = time.time,
    ) -> None:
        if not visitor_id:
            raise ValueError("A visitor id is required.")
        self.metastore = metastore
        self.visitor_id = str(visitor_id)
        self.clock = clock
        self._path = user_path(self.visitor_id)

    def _record(self) -> dict[str, Any]:
        record = self.metastore.get_key(self._path)
        return record if isinstance(record, dict) else _empty_record(self.clock())

    def _update(self, mutate: Callable[[dict[str, Any]], None]) -> None:
        now = self.clock()

        def _updater(current: Any) -> dict[str, Any]:
            record = dict(current) if isinstance(current, dict) else _empty_record(now)
            record["entries"] = dict(record.get("entries", {}))
            mutate(record["entries"])
            record["touched_at"] = now
            return record

        self.metastore.atomic_update_key(self._path, _updater, create_if_missing=True)

    def get(self, key: str) -> Any:
        return self._record()["entries"].get(key)

    def set(self, key: str, value: Any) -> None:
        def _set(entries: dict[str, Any]) -> None:
            entries[key] = value

        self._update(_set)

    def multi_get(self, *keys: str) -> list[Any]:
        entries = self._record()["entries"]
        return [entries.get(k) for k in keys]

    def delete(self, *keys: str) -> None:
        def _delete(entries: dict[str, Any]) -> None:
            for k in keys:
                entries.pop(k, None)

        self._update(_delete)

    def keys(self) -> list[str]:
        return list(self._record()["entries"].keys())

    def stage_set(self, batch: Batch, key: str, value: Any) -> None:
        now = self.clock()

        def _updater(current: Any) -> dict[str, Any]:
            record = dict(current) if isinstance(current, dict) else _empty_record(now)
            record["entries"] = dict(record.get("entries", {}))
            record["entries"][key] = value
            record["touched_at"] = now
            return record

        batch.modify(self._path, _updater)


def purge_stale_visitors(metastore: Metastore, expire_seconds: float, now: Optional[float] = None) -> int:
    """Delete visitor records untouched for more than `expire_seconds`."""
    now = time.time() if now is None else now

    def _idle(record: Any) -> bool:
        touched_at = record.get("touched_at", 0) if isinstance(record, dict) else 0
        return now - float(touched_at) > expire_seconds

    purged = 0
    for segment in metastore.list_members(USERS_ROOT):
        if metastore.delete_if(f"{USERS_ROOT}/{segment}", _idle):
            purged += 1
            logger.debug("Visitor %s purged", decode_segment(segment))
    if purged:
        logger.info("Purged %d idle visitors", purged)
    return purged
