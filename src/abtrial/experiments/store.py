from __future__ import annotations

import time
from logging import getLogger
from numbers import Number
from typing import Any, Callable, Iterable, Optional

from abtrial.metastore import Batch, Metastore, encode_segment
from .experiment import Experiment, AlternativeStats

logger = getLogger(__name__)

EXPERIMENTS_ROOT = "/experiments"
COUNTERS_ROOT = "/counters"
METRICS_ROOT = "/metrics"
SCORES_ROOT = "/scores"
DELAYED_SCORES_ROOT = "/delayed_scores"

PARTICIPANTS = "participants"
COMPLETED = "completed"


def experiment_path(name: str) -> str:
    return f"{EXPERIMENTS_ROOT}/{encode_segment(name)}"


def counters_path(experiment_key: str, alternative: Optional[str] = None) -> str:
    base = f"{COUNTERS_ROOT}/{encode_segment(experiment_key)}"
    if alternative is None:
        return base
    return f"{base}/{encode_segment(alternative)}"


def counter_path(experiment_key: str, alternative: str, counter: str) -> str:
    return f"{counters_path(experiment_key, alternative)}/{encode_segment(counter)}"


def completed_counter(goal: Optional[str] = None) -> str:
    return COMPLETED if goal is None else f"{COMPLETED}:{goal}"


def score_counter(score_name: str) -> str:
    return f"score:{score_name}"


def score_count_counter(score_name: str) -> str:
    return f"score_count:{score_name}"


def delayed_score_path(score_name: str, label: Optional[str] = None) -> str:
    base = f"{DELAYED_SCORES_ROOT}/{encode_segment(score_name)}"
    if label is None:
        return base
    return f"{base}/{encode_segment(label)}"


class ExperimentStore:
    """
    Persistence helper around Metastore.

    - One key per experiment definition; the children of EXPERIMENTS_ROOT are the
      set of known experiment names.
    - One counter key per (experiment key, alternative, counter). The experiment
      key carries the version, so a version bump starts from fresh counters.
    - Counter updates go through CAS increments or atomic batches only.
    """

    def __init__(
            self,
            metastore: Metastore,
            *,
            start_manually: bool = False,
            clock: Callable[[], float] = time.time,
    ) -> None:
        self.metastore = metastore
        self.start_manually = start_manually
        self.clock = clock
        metastore.ensure_structure([EXPERIMENTS_ROOT, COUNTERS_ROOT, METRICS_ROOT, SCORES_ROOT, DELAYED_SCORES_ROOT])

    # -----------------------------
    # Definitions
    # -----------------------------

    def names(self) -> set[str]:
        return self.metastore.set_members(EXPERIMENTS_ROOT)

    def contains(self, name: str) -> bool:
        return self.metastore.set_contains(EXPERIMENTS_ROOT, name)

    def load(self, name: str) -> Optional[Experiment]:
        raw = self.metastore.get_key(experiment_path(name))
        if raw is None:
            return None
        if not isinstance(raw, dict):
            raise TypeError(f"Unexpected experiment payload type: {type(raw)}")
        return Experiment.from_dict(raw)

    def _write(self, experiment: Experiment) -> None:
        self.metastore.update_key(experiment_path(experiment.name), experiment.to_dict())
        experiment.saved = True

    def save(self, experiment: Experiment) -> Experiment:
        """
        Persist `experiment` and return the stored state.

        A new experiment is registered (and started unless starting manually).
        When the stored alternatives or goals differ, the stored experiment is
        reset: its counters are dropped and its version bumped.
        """
        stored = self.load(experiment.name)

        if stored is None:
            if experiment.start_time is None and not self.start_manually:
                experiment.start_time = self.clock()
            self._write(experiment)
            self._register_sets(experiment)
            logger.info("Created experiment %s with alternatives %s", experiment.name, experiment.alternative_names)
            return experiment

        if not stored.same_structure(experiment):
            logger.info(
                "Experiment %s redefined (%s -> %s); resetting version %d",
                experiment.name, stored.alternative_names, experiment.alternative_names, stored.version,
            )
            self._drop_counters(stored)
            experiment.version = stored.version + 1
            experiment.winner = None
            experiment.start_time = stored.start_time
            self._write(experiment)
            self._register_sets(experiment)
            return experiment

        changed = (
            stored.metadata != experiment.metadata
            or stored.resettable != experiment.resettable
            or stored.scores != experiment.scores
            or stored.metric != experiment.metric
        )
        stored.metadata = experiment.metadata
        stored.resettable = experiment.resettable
        stored.scores = list(experiment.scores)
        stored.metric = experiment.metric
        if changed:
            self._write(stored)
            self._register_sets(stored)
        return stored

    def _register_sets(self, experiment: Experiment) -> None:
        self.metastore.set_add(EXPERIMENTS_ROOT, experiment.name)
        if experiment.metric:
            self.metastore.set_add(f"{METRICS_ROOT}/{encode_segment(experiment.metric)}", experiment.name)
        for score_name in experiment.scores:
            self.metastore.set_add(f"{SCORES_ROOT}/{encode_segment(score_name)}", experiment.name)

    def _drop_counters(self, experiment: Experiment) -> None:
        self.metastore.delete_keys(counters_path(experiment.key))

    def set_winner(self, experiment: Experiment, alternative_name: str) -> Experiment:
        if experiment.alternative(alternative_name) is None:
            raise KeyError(f"Alternative {alternative_name!r} not found in experiment {experiment.name!r}")
        experiment.winner = alternative_name
        self._write(experiment)
        return experiment

    def reset_winner(self, experiment: Experiment) -> Experiment:
        experiment.winner = None
        self._write(experiment)
        return experiment

    def start(self, experiment: Experiment) -> Experiment:
        experiment.start_time = self.clock()
        self._write(experiment)
        return experiment

    def reset(self, experiment: Experiment) -> Experiment:
        """Drop all counters, clear the winner and move to the next version."""
        self._drop_counters(experiment)
        experiment.winner = None
        experiment.version += 1
        self._write(experiment)
        logger.info("Reset experiment %s to version %d", experiment.name, experiment.version)
        return experiment

    def delete(self, experiment: Experiment) -> None:
        paths = [experiment_path(experiment.name), counters_path(experiment.key)]
        if experiment.metric:
            paths.append(f"{METRICS_ROOT}/{encode_segment(experiment.metric)}/{encode_segment(experiment.name)}")
        for score_name in experiment.scores:
            paths.append(f"{SCORES_ROOT}/{encode_segment(score_name)}/{encode_segment(experiment.name)}")
        self.metastore.delete_keys(*paths)
        experiment.saved = False
        logger.info("Deleted experiment %s", experiment.name)

    def metric_members(self, metric_name: str) -> set[str]:
        return self.metastore.set_members(f"{METRICS_ROOT}/{encode_segment(metric_name)}")

    def score_members(self, score_name: str) -> set[str]:
        return self.metastore.set_members(f"{SCORES_ROOT}/{encode_segment(score_name)}")

    # -----------------------------
    # Counters
    # -----------------------------

    def increment_participation(self, experiment: Experiment, alternative_name: str) -> int:
        return self.metastore.increment(counter_path(experiment.key, alternative_name, PARTICIPANTS))

    def increment_completion(self, experiment: Experiment, alternative_name: str, goal: Optional[str] = None) -> int:
        return self.metastore.increment(counter_path(experiment.key, alternative_name, completed_counter(goal)))

    def increment_score(
            self,
            experiment: Experiment,
            alternative_name: str,
            score_name: str,
            value: Number = 1,
    ) -> None:
        """Add `value` to the score sum and 1 to the score count, in one transaction."""
        self.metastore.atomic_batch(
            lambda batch: self.stage_score(batch, experiment.key, alternative_name, score_name, value)
        )

    @staticmethod
    def stage_score(batch: Batch, experiment_key: str, alternative_name: str, score_name: str, value: Number) -> None:
        batch.increment(counter_path(experiment_key, alternative_name, score_counter(score_name)), value)
        batch.increment(counter_path(experiment_key, alternative_name, score_count_counter(score_name)), 1)

    def alternative_stats(self, experiment: Experiment) -> list[AlternativeStats]:
        """Read every counter of every alternative in one pipelined multi_get."""
        stats = [AlternativeStats(name=alt.name) for alt in experiment.alternatives]

        # (stats, counter key name, kind, goal/score name)
        plan: list[tuple[AlternativeStats, str, str, Optional[str]]] = []
        for s in stats:
            plan.append((s, PARTICIPANTS, PARTICIPANTS, None))
            plan.append((s, completed_counter(), COMPLETED, None))
            plan.extend((s, completed_counter(goal), "goal", goal) for goal in experiment.goals)
            for score_name in experiment.scores:
                plan.append((s, score_counter(score_name), "score", score_name))
                plan.append((s, score_count_counter(score_name), "score_count", score_name))

        values = self.metastore.multi_get(
            [counter_path(experiment.key, s.name, counter) for s, counter, _kind, _name in plan]
        )
        for (s, _counter, kind, name), value in zip(plan, values):
            value = value or 0
            if kind == PARTICIPANTS:
                s.participants = int(value)
            elif kind == COMPLETED:
                s.completed = int(value)
            elif kind == "goal":
                s.goals[str(name)] = int(value)
            elif kind == "score":
                s.score_sums[str(name)] = value
            else:
                s.score_counts[str(name)] = int(value)
        return stats

    # -----------------------------
    # Delayed scores
    # -----------------------------

    def stage_delayed_score(
            self,
            batch: Batch,
            score_name: str,
            label: str,
            targets: Iterable[tuple[str, str]],
            value: Number = 1,
            ttl: float = 60 * 60 * 24,
    ) -> None:
        """
        Stage (experiment key, alternative) pairs under `label` for a later
        apply_delayed_score. Entries for the same label accumulate; the record
        expires `ttl` seconds after the most recent addition.
        """
        entries = [(experiment_key, alternative_name, value) for experiment_key, alternative_name in targets]
        expires_at = self.clock() + ttl

        def _append(current: Any) -> dict[str, Any]:
            record = dict(current or {"entries": [], "expires_at": expires_at})
            record["entries"] = list(record.get("entries", [])) + entries
            record["expires_at"] = max(float(record.get("expires_at", expires_at)), expires_at)
            return record

        batch.modify(delayed_score_path(score_name, label), _append)

    def apply_delayed_score(self, score_name: str, label: str) -> int:
        """
        Apply every staged entry of `label` to the score counters and delete the
        record, all in one transaction. Returns the number of entries applied.
        Expired records are deleted without being applied.
        """
        applied = 0
        path = delayed_score_path(score_name, label)

        def build(batch: Batch) -> None:
            nonlocal applied
            applied = 0
            record = batch.get(path)
            if record is None:
                return
            batch.delete(path)
            if float(record.get("expires_at", 0)) < self.clock():
                logger.info("Delayed score %s/%s expired before it was applied", score_name, label)
                return
            for experiment_key, alternative_name, value in record.get("entries", []):
                self.stage_score(batch, experiment_key, alternative_name, score_name, value)
                applied += 1

        self.metastore.atomic_batch(build)
        return applied

    def purge_expired_delayed_scores(self, now: Optional[float] = None) -> int:
        now = self.clock() if now is None else now

        def _expired(record: Any) -> bool:
            return float(record.get("expires_at", 0)) < now

        purged = 0
        for score_segment in self.metastore.list_members(DELAYED_SCORES_ROOT):
            base = f"{DELAYED_SCORES_ROOT}/{score_segment}"
            for label_segment in self.metastore.list_members(base):
                purged += self.metastore.delete_if(f"{base}/{label_segment}", _expired)
        if purged:
            logger.info("Purged %d expired delayed score records", purged)
        return purged
