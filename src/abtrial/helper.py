from __future__ import annotations

import re
import time
from contextlib import contextmanager
from logging import getLogger
from numbers import Number
from typing import Any, Callable, Iterator, Optional

import numpy as np

from abtrial.callbacks import Callbacks, VisitorContext
from abtrial.config import AppSettings, get_settings
from abtrial.exceptions import ExperimentNotFound, StoreUnavailable
from abtrial.experiments import (
    Alternative,
    Experiment,
    ExperimentCatalog,
    ExperimentStore,
    normalize_metric,
)
from abtrial.experiments.catalog import MetricDescriptor
from abtrial.metastore import Batch, Metastore
from abtrial.trial import Trial
from abtrial.user import User, parse_entry_key

logger = getLogger(__name__)

OVERRIDE_PARAM_NAME = "ab_test"
DISABLE_PARAM_NAME = "SPLIT_DISABLE"


class ABTester:
    """
    Entry points for the request layer: ab_test, ab_finished, ab_score and friends.

    Wires the visitor's identity record, the catalog and trials together and
    applies the failover policy: with `trials.db_failover` enabled, a
    StoreUnavailable is handed to `callbacks.on_db_error` and the visitor gets
    the control alternative instead of an error.
    """

    def __init__(
            self,
            metastore: Metastore,
            settings: Optional[AppSettings] = None,
            callbacks: Optional[Callbacks] = None,
            *,
            rng: Optional[np.random.Generator] = None,
            clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings or get_settings()
        self.trials = self.settings.trials
        self.callbacks = callbacks or Callbacks()
        self.metastore = metastore
        self.rng = rng or np.random.default_rng()
        self.store = ExperimentStore(metastore, start_manually=self.trials.start_manually, clock=clock)
        self.catalog = ExperimentCatalog(self.store, self.settings.experiments)

        self._robot_re = re.compile(self.trials.robot_regex)
        self._ignored_ips: list[str | re.Pattern[str]] = [
            re.compile(ip[1:-1]) if len(ip) > 2 and ip.startswith("/") and ip.endswith("/") else ip
            for ip in self.trials.ignore_ip_addresses
        ]

    # -----------------------------
    # Plumbing
    # -----------------------------

    def user_for(self, context: VisitorContext) -> User:
        return User(context.adapter, max_experiments=self.trials.max_experiments_per_user)

    def _trial(self, experiment: Experiment, **kwargs: Any) -> Trial:
        return Trial(
            experiment,
            store=self.store,
            settings=self.trials,
            callbacks=self.callbacks,
            rng=self.rng,
            **kwargs,
        )

    @contextmanager
    def _failover(self) -> Iterator[None]:
        try:
            yield
        except StoreUnavailable as exc:
            if not self.trials.db_failover:
                raise
            self.callbacks.on_db_error(exc)

    @staticmethod
    def override_alternative(context: VisitorContext, experiment_name: str) -> Optional[str]:
        overrides = context.params.get(OVERRIDE_PARAM_NAME)
        if isinstance(overrides, dict):
            value = overrides.get(experiment_name)
            return str(value) if value is not None else None
        return None

    @staticmethod
    def generically_disabled(context: VisitorContext) -> bool:
        return bool(context.params.get(DISABLE_PARAM_NAME))

    def is_robot(self, context: VisitorContext) -> bool:
        return context.user_agent is not None and bool(self._robot_re.search(context.user_agent))

    def is_ignored_ip_address(self, context: VisitorContext) -> bool:
        if not self._ignored_ips or context.ip is None:
            return False
        for ip in self._ignored_ips:
            if isinstance(ip, re.Pattern):
                if ip.search(context.ip):
                    return True
            elif ip == context.ip:
                return True
        return False

    def exclude_visitor(self, context: VisitorContext) -> bool:
        ignore_filter = self.callbacks.ignore_filter
        return bool(
            (ignore_filter is not None and ignore_filter(context))
            or self.is_ignored_ip_address(context)
            or self.is_robot(context)
        )

    def _fallback_control(self, descriptor: MetricDescriptor, control: Any) -> str:
        if isinstance(control, (list, tuple)):
            control = control[0] if control else None
        if control is not None:
            return Alternative.coerce(control).name
        name = normalize_metric(descriptor)[0].split(":")[0]
        definition = self.catalog.definitions.get(name)
        if definition is not None:
            return definition.alternatives[0].name
        raise ExperimentNotFound(f"Experiment {name} not correctly defined in configuration.")

    # -----------------------------
    # Assignment
    # -----------------------------

    def ab_test(self, context: VisitorContext, descriptor: MetricDescriptor, control: Any = None,
                *alternatives: Any) -> str:
        """Return the alternative name the visitor should see."""
        name, _metadata = self.ab_test_with_metadata(context, descriptor, control, *alternatives)
        return name

    def ab_test_with_metadata(
            self,
            context: VisitorContext,
            descriptor: MetricDescriptor,
            control: Any = None,
            *alternatives: Any,
    ) -> tuple[str, Any]:
        experiment: Optional[Experiment] = None
        trial: Optional[Trial] = None
        chosen: Optional[str] = None

        try:
            experiment = self.catalog.find_or_initialize(descriptor, control, *alternatives)
            if not experiment.valid:
                raise ExperimentNotFound(f"Experiment {experiment.name} not correctly defined in configuration.")

            if self.trials.enabled:
                experiment = self.store.save(experiment)
                trial = self._trial(
                    experiment,
                    user=self.user_for(context),
                    override=self.override_alternative(context, experiment.name),
                    exclude=self.exclude_visitor(context),
                    disabled=self.generically_disabled(context),
                )
                chosen = trial.choose(context).name
            else:
                chosen = experiment.control.name
        except StoreUnavailable as exc:
            if not self.trials.db_failover:
                raise
            self.callbacks.on_db_error(exc)
            trial = None

            if self.trials.db_failover_allow_parameter_override:
                name = experiment.name if experiment is not None else normalize_metric(descriptor)[0]
                override = self.override_alternative(context, name)
                if override is not None:
                    chosen = override
                if self.generically_disabled(context):
                    chosen = None

        if chosen is None:
            chosen = experiment.control.name if experiment is not None else self._fallback_control(descriptor, control)

        metadata = trial.metadata if trial is not None else None
        return chosen, metadata

    def ab_test_result(self, context: VisitorContext, experiment_name: str) -> Optional[str]:
        with self._failover():
            experiment = self.catalog.find(experiment_name)
            if experiment is None:
                return None
            return self.user_for(context)[experiment.key]
        return None

    def active_experiments(self, context: VisitorContext) -> dict[str, str]:
        user = self.user_for(context)
        pairs: dict[str, str] = {}
        for key in user.experiment_keys():
            name, _experiment_key = parse_entry_key(key)
            experiment = self.catalog.find(name)
            if experiment is not None and not experiment.has_winner:
                pairs[name] = user[key]
        return pairs

    # -----------------------------
    # Completion
    # -----------------------------

    def ab_finished(self, context: VisitorContext, descriptor: MetricDescriptor, reset: bool = True) -> None:
        with self._failover():
            if self.exclude_visitor(context) or not self.trials.enabled:
                return
            metric_name, goals = normalize_metric(descriptor)
            user = self.user_for(context)
            for experiment in self.catalog.possible_experiments(metric_name):
                self.finish_experiment(user, experiment, reset=reset, goals=goals, context=context)

    def finish_experiment(
            self,
            user: User,
            experiment: Experiment,
            reset: bool = True,
            goals: Optional[list[str]] = None,
            context: Optional[VisitorContext] = None,
    ) -> bool:
        if experiment.has_winner:
            return True

        finished, chosen = user.multi_get(experiment.finished_key, experiment.key)
        should_reset = experiment.resettable and reset
        if finished and not should_reset:
            return True

        trial = self._trial(experiment, user=user, alternative=chosen)
        trial.complete(goals, context)

        if should_reset:
            self.reset(user, experiment)
        else:
            user[experiment.finished_key] = True
        return True

    def reset(self, user: User, experiment: Experiment) -> None:
        """Forget the visitor's assignment and flags for `experiment` in one delete."""
        keys = [experiment.key, experiment.finished_key]
        keys.extend(experiment.scored_key(score_name) for score_name in experiment.scores)
        user.delete(*keys)

    # -----------------------------
    # Scoring
    # -----------------------------

    def unscored_user_experiments(self, user: User, score_name: str) -> list[tuple[Experiment, Optional[str]]]:
        """Running experiments with `score_name` that the visitor was not scored in yet, with its alternative."""
        result: list[tuple[Experiment, Optional[str]]] = []
        for experiment in self.catalog.experiments_with_score(score_name):
            if experiment.has_winner:
                continue
            already_scored, chosen = user.multi_get(experiment.scored_key(score_name), experiment.key)
            if not already_scored:
                result.append((experiment, chosen))
        return result

    def ab_score(self, context: VisitorContext, score_name: str, value: Number = 1) -> None:
        with self._failover():
            if self.exclude_visitor(context) or not self.trials.enabled:
                return
            score_name = str(score_name)
            user = self.user_for(context)
            trials = [
                self._trial(experiment, user=user, alternative=chosen)
                for experiment, chosen in self.unscored_user_experiments(user, score_name)
            ]

            def build(batch: Batch) -> None:
                for trial in trials:
                    trial.stage_score(batch, score_name, value)

            self.metastore.atomic_batch(build)

    def ab_add_delayed_score(
            self,
            context: VisitorContext,
            score_name: str,
            label: str,
            value: Number = 1,
            ttl: float = 60 * 60 * 24,
    ) -> None:
        with self._failover():
            if self.exclude_visitor(context) or not self.trials.enabled:
                return
            score_name = str(score_name)
            user = self.user_for(context)
            scored = [
                (experiment, chosen)
                for experiment, chosen in self.unscored_user_experiments(user, score_name)
                if experiment.alternative(chosen) is not None
            ]
            if not scored:
                return

            targets = [(experiment.key, str(chosen)) for experiment, chosen in scored]
            deferred: list[str] = []

            def build(batch: Batch) -> None:
                deferred.clear()
                self.store.stage_delayed_score(batch, score_name, label, targets, value, ttl)
                for experiment, _chosen in scored:
                    key = experiment.scored_key(score_name)
                    if not user.stage(batch, key, True):
                        deferred.append(key)

            self.metastore.atomic_batch(build)
            for key in deferred:
                user[key] = True

    def ab_apply_delayed_score(self, score_name: str, label: str) -> int:
        if not self.trials.enabled:
            return 0
        with self._failover():
            return self.store.apply_delayed_score(str(score_name), str(label))
        return 0

    def ab_score_alternative(
            self,
            experiment_name: str,
            alternative_name: str,
            score_name: str,
            value: Number = 1,
    ) -> None:
        if not self.trials.enabled:
            return
        with self._failover():
            score_name = str(score_name)
            experiment = self.catalog.find(experiment_name)
            if experiment is None or score_name not in experiment.scores:
                return
            self._trial(experiment, alternative=str(alternative_name)).score(score_name, value)
