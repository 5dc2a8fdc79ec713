"""
Experiment API.

- Dataclasses representing experiment definitions and counter snapshots
- Metastore-backed persistence of definitions, counters and delayed scores (ExperimentStore)
- Lookup / creation by name (ExperimentCatalog)
"""

from __future__ import annotations

from .experiment import (
    Alternative,
    AlternativeStats,
    Experiment,
)
from .store import (
    ExperimentStore,
    experiment_path,
    counter_path,
    EXPERIMENTS_ROOT,
    COUNTERS_ROOT,
)
from .catalog import ExperimentCatalog, normalize_metric

__all__ = [
    "Alternative",
    "AlternativeStats",
    "Experiment",
    "ExperimentStore",
    "ExperimentCatalog",
    "normalize_metric",
    "experiment_path",
    "counter_path",
    "EXPERIMENTS_ROOT",
    "COUNTERS_ROOT",
]
