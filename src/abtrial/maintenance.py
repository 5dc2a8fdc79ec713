"""
Cleanup that used to piggyback on assignment requests, as explicit operations.

Run them from a scheduler or via ``python -m abtrial cleanup``.
"""
from __future__ import annotations

from dataclasses import dataclass
from logging import getLogger
from typing import Optional

from abtrial.experiments import ExperimentCatalog, ExperimentStore
from abtrial.metastore import Metastore
from abtrial.persistence import purge_stale_visitors
from abtrial.user import User, parse_entry_key

logger = getLogger(__name__)


@dataclass(frozen=True, slots=True)
class CleanupReport:
    delayed_scores: int = 0
    visitors: int = 0


def cleanup_old_experiments(user: User, catalog: ExperimentCatalog) -> list[str]:
    """
    Drop identity entries of experiments that are gone, decided (have a
    winner) or not running (no start time).
    """
    stale: list[str] = []
    verdicts: dict[str, bool] = {}
    for key in user.keys():
        name, _experiment_key = parse_entry_key(key)
        if name not in verdicts:
            experiment = catalog.find(name)
            verdicts[name] = experiment is None or experiment.has_winner or experiment.start_time is None
        if verdicts[name]:
            stale.append(key)
    if stale:
        user.delete(*stale)
        logger.debug("Removed %d stale identity entries", len(stale))
    return stale


def run_cleanup(
        metastore: Metastore,
        store: ExperimentStore,
        *,
        expire_seconds: float,
        now: Optional[float] = None,
) -> CleanupReport:
    """Purge expired delayed scores and idle visitor records."""
    delayed = store.purge_expired_delayed_scores(now)
    visitors = purge_stale_visitors(metastore, expire_seconds, now)
    logger.info("Cleanup removed %d delayed score records and %d visitors", delayed, visitors)
    return CleanupReport(delayed_scores=delayed, visitors=visitors)
