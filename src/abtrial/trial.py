from __future__ import annotations

from logging import getLogger
from numbers import Number
from typing import Any, Iterable, Optional

import numpy as np

from abtrial.callbacks import Callbacks, VisitorContext
from abtrial.config import TrialSettings
from abtrial.experiments import Alternative, Experiment, ExperimentStore
from abtrial.metastore import Batch
from abtrial.user import User

logger = getLogger(__name__)

_default_rng = np.random.default_rng()


class Trial:
    """
    One decision binding a visitor to an alternative of an experiment.

    `choose()` runs the decision once: override, disabled, winner, exclusion,
    then recall of a stored assignment or a fresh weighted draw. Participation
    is counted only when no assignment was stored yet, and the assignment is
    written after the counter, so a replay never counts twice. Two concurrent
    first requests of the same visitor can both count; nothing here prevents it.
    """

    def __init__(
            self,
            experiment: Experiment,
            *,
            store: ExperimentStore,
            user: Optional[User] = None,
            alternative: Alternative | str | None = None,
            metadata: Any = None,
            override: Optional[str] = None,
            exclude: bool = False,
            disabled: bool = False,
            settings: Optional[TrialSettings] = None,
            callbacks: Optional[Callbacks] = None,
            rng: Optional[np.random.Generator] = None,
    ) -> None:
        self.experiment = experiment
        self.store = store
        self.user = user
        self.override = override
        self.exclude = exclude
        self.disabled = disabled
        self.settings = settings or TrialSettings()
        self.callbacks = callbacks or Callbacks()
        self.rng = rng or _default_rng

        self._alternative: Optional[Alternative] = None
        self._metadata = metadata
        self._chosen = False
        self._excluded: Optional[bool] = None
        self.alternative = alternative

    # -----------------------------
    # State
    # -----------------------------

    @property
    def alternative(self) -> Optional[Alternative]:
        if self._alternative is None and self.experiment.has_winner:
            return self.experiment.winner_alternative
        return self._alternative

    @alternative.setter
    def alternative(self, value: Alternative | str | None) -> None:
        if isinstance(value, Alternative):
            self._alternative = value
        else:
            self._alternative = self.experiment.alternative(value)

    @property
    def metadata(self) -> Any:
        if self._metadata is None and self.experiment.metadata and self.alternative is not None:
            self._metadata = self.experiment.metadata.get(self.alternative.name)
        return self._metadata

    @property
    def chosen(self) -> bool:
        return self._chosen

    # -----------------------------
    # Decision
    # -----------------------------

    def choose(self, context: Optional[VisitorContext] = None) -> Alternative:
        """Resolve the alternative for this visitor; later calls return it unchanged."""
        if self._chosen and self._alternative is not None:
            return self._alternative

        experiment = self.experiment
        stored_name = self.user[experiment.key] if self.user is not None else None

        if self._override_is_alternative():
            self.alternative = self.override
            if self._should_store_alternative() and stored_name is None:
                self.store.increment_participation(experiment, self.override)  # type: ignore[arg-type]
        elif self._is_disabled():
            self.alternative = experiment.control
        elif experiment.has_winner:
            self.alternative = experiment.winner_alternative
        else:
            if experiment.version > 0 and self.user is not None:
                self.user.cleanup_old_versions(experiment)

            recalled = experiment.alternative(stored_name)
            if self._exclude_user():
                self.alternative = experiment.control
            elif recalled is not None:
                self.alternative = recalled
            else:
                self.alternative = experiment.next_alternative(self.rng)
                self.store.increment_participation(experiment, self._alternative.name)  # type: ignore[union-attr]
                logger.debug("Assigned %s to new participant of %s", self._alternative, experiment.key)
                Callbacks.run(self.callbacks.on_trial_choose, context, self)

        chosen = self._alternative
        assert chosen is not None

        if self.user is not None and self._should_store_alternative():
            if self._override_is_alternative():
                if stored_name is None:
                    self.user[experiment.key] = chosen.name
            elif stored_name != chosen.name:
                self.user[experiment.key] = chosen.name

        self._chosen = True
        if not self._is_disabled():
            Callbacks.run(self.callbacks.on_trial, context, self)
        return chosen

    # -----------------------------
    # Recording
    # -----------------------------

    def complete(self, goals: Optional[Iterable[str]] = None, context: Optional[VisitorContext] = None) -> None:
        alternative = self.alternative
        if alternative is None:
            return

        goal_list = list(goals or [])
        if not goal_list:
            self.store.increment_completion(self.experiment, alternative.name)
        else:
            for goal in goal_list:
                self.store.increment_completion(self.experiment, alternative.name, goal)

        Callbacks.run(self.callbacks.on_trial_complete, context, self)

    def score(self, score_name: str, value: Number = 1) -> None:
        alternative = self.alternative
        if alternative is None:
            return
        self.store.increment_score(self.experiment, alternative.name, score_name, value)

    def stage_score(self, batch: Batch, score_name: str, value: Number = 1) -> None:
        """Like score(), but as part of an enclosing atomic batch."""
        alternative = self.alternative
        if alternative is None:
            return
        ExperimentStore.stage_score(batch, self.experiment.key, alternative.name, score_name, value)

    # -----------------------------
    # Rules
    # -----------------------------

    def _override_is_alternative(self) -> bool:
        return self.override is not None and self.override in self.experiment.alternative_names

    def _is_disabled(self) -> bool:
        return self.disabled or not self.settings.enabled

    def _should_store_alternative(self) -> bool:
        if self._override_is_alternative():
            return self.settings.store_override
        if self._is_disabled():
            return False
        return not self._exclude_user()

    def _exclude_user(self) -> bool:
        if self._excluded is None:
            self._excluded = bool(
                self.exclude
                or self.experiment.start_time is None
                or (self.user is not None and self.user.max_experiments_reached(self.experiment.key))
            )
        return self._excluded

    def __repr__(self) -> str:
        return f"Trial(experiment={self.experiment.key!r}, alternative={self.alternative!r})"
