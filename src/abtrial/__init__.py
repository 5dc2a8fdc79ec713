try:
    from ._version import version as __version__  # populated by setuptools-scm
except ModuleNotFoundError:
    __version__ = "0.0.0"

from .callbacks import Callbacks, VisitorContext
from .exceptions import AbTrialError, ExperimentNotFound, InvalidExperimentDefinition, StoreUnavailable
from .helper import ABTester
from .trial import Trial

__all__ = [
    "__version__",
    "ABTester",
    "Trial",
    "Callbacks",
    "VisitorContext",
    "AbTrialError",
    "StoreUnavailable",
    "ExperimentNotFound",
    "InvalidExperimentDefinition",
]
