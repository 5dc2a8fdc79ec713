from __future__ import annotations

from logging import getLogger
from typing import Any, Optional

from abtrial.experiments import Experiment
from abtrial.metastore import Batch
from abtrial.persistence import BatchableAdapter, IdentityAdapter

logger = getLogger(__name__)


def parse_entry_key(key: str) -> tuple[str, str]:
    """
    Split an identity entry key into ``(experiment name, experiment key)``.

    ``"signup:2:finished"`` -> ``("signup", "signup:2")``
    """
    parts = key.split(":")
    name = parts[0]
    if len(parts) > 1 and parts[1].isdigit():
        return name, f"{name}:{parts[1]}"
    return name, name


def is_flag_key(key: str) -> bool:
    parts = key.split(":")
    rest = parts[2:] if len(parts) > 1 and parts[1].isdigit() else parts[1:]
    return bool(rest) and rest[0] in ("finished", "scored")


class User:
    """
    The identity record of one visitor: the assignments and flags kept in its
    adapter, plus the exclusion and cleanup rules that read them.
    """

    def __init__(self, adapter: IdentityAdapter, max_experiments: Optional[int] = 1) -> None:
        self.adapter = adapter
        self.max_experiments = max_experiments

    def __getitem__(self, key: str) -> Any:
        return self.adapter.get(key)

    def __setitem__(self, key: str, value: Any) -> None:
        self.adapter.set(key, value)

    def get(self, key: str) -> Any:
        return self.adapter.get(key)

    def multi_get(self, *keys: str) -> list[Any]:
        return self.adapter.multi_get(*keys)

    def delete(self, *keys: str) -> None:
        if keys:
            self.adapter.delete(*keys)

    def keys(self) -> list[str]:
        return self.adapter.keys()

    def stage(self, batch: Batch, key: str, value: Any) -> bool:
        """Join `batch` if the adapter lives in the metastore; False means write it yourself."""
        if isinstance(self.adapter, BatchableAdapter):
            self.adapter.stage_set(batch, key, value)
            return True
        return False

    def experiment_keys(self) -> list[str]:
        """Assignment keys in exposure order (finished/scored flags left out)."""
        return [k for k in self.keys() if not is_flag_key(k)]

    def max_experiments_reached(self, experiment_key: str) -> bool:
        if self.max_experiments is None:
            return False
        name, _key = parse_entry_key(experiment_key)
        others = {parse_entry_key(k)[0] for k in self.experiment_keys()} - {name}
        return len(others) >= self.max_experiments

    def cleanup_old_versions(self, experiment: Experiment) -> list[str]:
        """Drop entries of `experiment` that belong to another version."""
        stale = []
        for key in self.keys():
            name, experiment_key = parse_entry_key(key)
            if name == experiment.name and experiment_key != experiment.key:
                stale.append(key)
        if stale:
            logger.debug("Dropping stale entries %s for %s", stale, experiment.key)
            self.delete(*stale)
        return stale

    def keys_of(self, experiment_key: str) -> list[str]:
        return [k for k in self.keys() if parse_entry_key(k)[1] == experiment_key]
