from __future__ import annotations

import pickle
from logging import getLogger
from typing import Any, Mapping, Optional

from abtrial.config import ExperimentDefinition
from abtrial.exceptions import InvalidExperimentDefinition
from .experiment import Experiment
from .store import ExperimentStore

logger = getLogger(__name__)

MetricDescriptor = str | Mapping[str, Any]


def normalize_metric(descriptor: MetricDescriptor) -> tuple[str, list[str]]:
    """
    Turn ``"name"`` or ``{"name": goal | [goals]}`` into ``(name, goals)``.
    """
    if isinstance(descriptor, Mapping):
        if len(descriptor) != 1:
            raise InvalidExperimentDefinition(
                f"A metric descriptor mapping needs exactly one entry, got {dict(descriptor)!r}"
            )
        (name, goals), = descriptor.items()
        if goals is None:
            return str(name), []
        if isinstance(goals, str):
            return str(name), [goals]
        return str(name), [str(g) for g in goals]
    return str(descriptor), []


class ExperimentCatalog:
    """
    Lookup and creation of experiments.

    Resolution order for a name: the configured definition (carrying over the
    stored version, winner and start time), then the stored definition, then
    whatever the caller passes inline.
    """

    def __init__(
            self,
            store: ExperimentStore,
            definitions: Optional[Mapping[str, ExperimentDefinition]] = None,
    ) -> None:
        self.store = store
        self.definitions: dict[str, ExperimentDefinition] = dict(definitions or {})

    def find(self, name: str) -> Optional[Experiment]:
        if not self.store.contains(name):
            return None
        return self.store.load(name)

    def all(self) -> list[Experiment]:
        experiments: list[Experiment] = []
        for name in self.store.names():
            try:
                experiment = self.store.load(name)
            except (KeyError, TypeError, ValueError, EOFError, pickle.UnpicklingError) as exc:
                logger.warning("Skipping experiment %r that failed to load: %r", name, exc)
                continue
            if experiment is not None:
                experiments.append(experiment)
        return experiments

    def all_active_first(self) -> list[Experiment]:
        experiments = self.all()
        active = sorted((e for e in experiments if not e.has_winner), key=lambda e: e.name)
        decided = sorted((e for e in experiments if e.has_winner), key=lambda e: e.name)
        return active + decided

    def find_or_initialize(
            self,
            descriptor: MetricDescriptor,
            control: Any = None,
            *alternatives: Any,
    ) -> Experiment:
        # ab_test("name", ["a", "b", "c"]) is shorthand for control "a" + ["b", "c"]
        if isinstance(control, (list, tuple)) and not alternatives:
            alternatives = tuple(control[1:])
            control = control[0] if control else None

        name_with_version, goals = normalize_metric(descriptor)
        name = name_with_version.split(":")[0]

        stored = self.store.load(name)
        definition = self.definitions.get(name)
        if definition is not None:
            experiment = Experiment.from_definition(name, definition)
            if goals and not experiment.goals:
                experiment.goals = goals
            if stored is not None:
                experiment.adopt(stored)
            return experiment

        if stored is not None:
            return stored

        inline = ([control] if control is not None else []) + list(alternatives)
        return Experiment.inline(name, inline, goals)

    def find_or_create(
            self,
            descriptor: MetricDescriptor,
            control: Any = None,
            *alternatives: Any,
    ) -> Experiment:
        experiment = self.find_or_initialize(descriptor, control, *alternatives)
        if not experiment.valid:
            raise InvalidExperimentDefinition(f"Experiment {experiment.name!r} has no alternatives")
        return self.store.save(experiment)

    def possible_experiments(self, metric_name: str) -> list[Experiment]:
        """Experiments registered under the metric, or the experiment of that name."""
        experiments = [e for e in (self.find(n) for n in sorted(self.store.metric_members(metric_name))) if e]
        if experiments:
            return experiments
        experiment = self.find(metric_name)
        return [experiment] if experiment is not None else []

    def experiments_with_score(self, score_name: str) -> list[Experiment]:
        return [e for e in (self.find(n) for n in sorted(self.store.score_members(score_name))) if e]

