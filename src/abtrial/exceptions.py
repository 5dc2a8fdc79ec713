from __future__ import annotations


class AbTrialError(Exception):
    pass


class StoreUnavailable(AbTrialError):
    """
    Any connectivity or protocol failure of the backing store.

    Callers treat every instance the same way: escalate, or hand it to the
    configured failover callback.
    """
    pass


class ExperimentNotFound(AbTrialError):
    pass


class InvalidExperimentDefinition(AbTrialError, ValueError):
    pass
