from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import numpy as np

from abtrial.config import ExperimentDefinition
from abtrial.exceptions import InvalidExperimentDefinition


@dataclass(frozen=True, slots=True)
class Alternative:
    name: str
    weight: float = 1.0

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "weight": self.weight}

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "Alternative":
        return Alternative(name=str(d["name"]), weight=float(d.get("weight", 1.0)))

    @staticmethod
    def coerce(value: Any) -> "Alternative":
        """Accept an Alternative, a bare name, or a ``{name: weight}`` / ``{"name":..}`` mapping."""
        if isinstance(value, Alternative):
            return value
        if isinstance(value, dict):
            if "name" in value:
                return Alternative.from_dict(value)
            if len(value) == 1:
                (name, weight), = value.items()
                return Alternative(name=str(name), weight=float(weight))
            raise InvalidExperimentDefinition(f"Cannot interpret alternative {value!r}")
        return Alternative(name=str(value))


@dataclass(slots=True)
class AlternativeStats:
    """Counter snapshot of one alternative as read from the store."""
    name: str
    participants: int = 0
    completed: int = 0
    goals: Dict[str, int] = field(default_factory=dict)
    score_sums: Dict[str, float] = field(default_factory=dict)
    score_counts: Dict[str, int] = field(default_factory=dict)

    def completed_count(self, goal: Optional[str] = None) -> int:
        if goal is None:
            return self.completed
        return self.goals.get(goal, 0)

    def conversion_rate(self, goal: Optional[str] = None) -> float:
        if self.participants == 0:
            return 0.0
        return self.completed_count(goal) / self.participants


@dataclass(slots=True)
class Experiment:
    name: str
    alternatives: List[Alternative] = field(default_factory=list)
    goals: List[str] = field(default_factory=list)
    metadata: Optional[Dict[str, Any]] = None
    version: int = 0
    winner: Optional[str] = None
    start_time: Optional[float] = None
    resettable: bool = True
    scores: List[str] = field(default_factory=list)
    metric: Optional[str] = None
    saved: bool = False

    def __post_init__(self) -> None:
        if not self.name or ":" in self.name or "/" in self.name:
            raise InvalidExperimentDefinition(f"Invalid experiment name {self.name!r}")
        self.alternatives = [Alternative.coerce(a) for a in self.alternatives]
        names = [a.name for a in self.alternatives]
        if len(names) != len(set(names)):
            raise InvalidExperimentDefinition(f"Experiment {self.name!r} has duplicate alternatives: {names}")
        for alt in self.alternatives:
            if not alt.weight > 0:
                raise InvalidExperimentDefinition(
                    f"Alternative {alt.name!r} of {self.name!r} needs a positive weight, got {alt.weight}"
                )
        if self.winner is not None and self.winner not in names:
            self.winner = None

    # -----------------------------
    # Keys
    # -----------------------------

    @property
    def key(self) -> str:
        if self.version > 0:
            return f"{self.name}:{self.version}"
        return self.name

    @property
    def finished_key(self) -> str:
        return f"{self.key}:finished"

    def scored_key(self, score_name: str) -> str:
        return f"{self.key}:scored:{score_name}"

    # -----------------------------
    # Alternatives
    # -----------------------------

    @property
    def valid(self) -> bool:
        return bool(self.alternatives)

    @property
    def control(self) -> Alternative:
        if not self.alternatives:
            raise InvalidExperimentDefinition(f"Experiment {self.name!r} has no alternatives")
        return self.alternatives[0]

    @property
    def alternative_names(self) -> List[str]:
        return [a.name for a in self.alternatives]

    def alternative(self, name: Optional[str]) -> Optional[Alternative]:
        if name is None:
            return None
        for alt in self.alternatives:
            if alt.name == name:
                return alt
        return None

    @property
    def has_winner(self) -> bool:
        return self.winner is not None

    @property
    def winner_alternative(self) -> Optional[Alternative]:
        return self.alternative(self.winner)

    def next_alternative(self, rng: np.random.Generator) -> Alternative:
        """
        Weighted random pick: a uniform draw over the cumulative weight range.
        A single alternative is returned without consuming randomness.
        """
        if len(self.alternatives) == 1:
            return self.alternatives[0]
        cumulative = np.cumsum([a.weight for a in self.alternatives], dtype=float)
        draw = rng.random() * cumulative[-1]
        index = int(np.searchsorted(cumulative, draw, side="right"))
        return self.alternatives[min(index, len(self.alternatives) - 1)]

    def same_structure(self, other: "Experiment") -> bool:
        """True when alternatives (names and order) and goals match."""
        return self.alternative_names == other.alternative_names and list(self.goals) == list(other.goals)

    def adopt(self, stored: "Experiment") -> None:
        """
        Take over the persisted state of `stored`. Winner and start time only
        carry over while the structure is unchanged; a changed structure is
        picked up (and versioned) by the next save.
        """
        self.version = stored.version
        self.start_time = stored.start_time
        if self.same_structure(stored):
            self.winner = stored.winner if stored.winner in self.alternative_names else None
            self.saved = True

    # -----------------------------
    # Serialization
    # -----------------------------

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "alternatives": [a.to_dict() for a in self.alternatives],
            "goals": list(self.goals),
            "metadata": self.metadata,
            "version": self.version,
            "winner": self.winner,
            "start_time": self.start_time,
            "resettable": self.resettable,
            "scores": list(self.scores),
            "metric": self.metric,
        }

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "Experiment":
        return Experiment(
            name=str(d["name"]),
            alternatives=[Alternative.from_dict(a) for a in d.get("alternatives", [])],
            goals=list(d.get("goals") or []),
            metadata=d.get("metadata"),
            version=int(d.get("version", 0)),
            winner=d.get("winner"),
            start_time=d.get("start_time"),
            resettable=bool(d.get("resettable", True)),
            scores=list(d.get("scores") or []),
            metric=d.get("metric"),
            saved=True,
        )

    @staticmethod
    def from_definition(name: str, definition: ExperimentDefinition) -> "Experiment":
        return Experiment(
            name=name,
            alternatives=[Alternative(a.name, a.weight) for a in definition.alternatives],
            goals=list(definition.goals),
            metadata=definition.metadata,
            resettable=definition.resettable,
            scores=list(definition.scores),
            metric=definition.metric,
        )

    @staticmethod
    def inline(name: str, alternatives: Sequence[Any], goals: Sequence[str] = ()) -> "Experiment":
        return Experiment(name=name, alternatives=list(alternatives), goals=list(goals))
