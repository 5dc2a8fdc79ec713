from __future__ import annotations

from dataclasses import dataclass, field
from logging import getLogger
from typing import TYPE_CHECKING, Any, Callable, Mapping, Optional

if TYPE_CHECKING:
    from abtrial.persistence import IdentityAdapter
    from abtrial.trial import Trial

logger = getLogger(__name__)


@dataclass(slots=True)
class VisitorContext:
    """
    What the request layer knows about the current visitor.

    `params` carries the query parameters: ``ab_test`` maps experiment name to a
    forced alternative, ``SPLIT_DISABLE`` turns experiments off for the request.
    """
    adapter: "IdentityAdapter"
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    params: Mapping[str, Any] = field(default_factory=dict)
    extra: dict[str, Any] = field(default_factory=dict)


TrialHook = Callable[[Optional[VisitorContext], "Trial"], None]


def _log_db_error(exc: BaseException) -> None:
    logger.error("Store unavailable, failing over: %r", exc)


@dataclass(slots=True)
class Callbacks:
    """
    Hooks invoked by trials and the facade. Every hook is optional.

    - on_trial_choose: a fresh alternative was drawn for a visitor
    - on_trial: a trial resolved (not called for disabled trials)
    - on_trial_complete: a trial was completed
    - on_db_error: the store failed while failover is enabled
    - ignore_filter: return True to exclude the visitor
    """
    on_trial_choose: Optional[TrialHook] = None
    on_trial: Optional[TrialHook] = None
    on_trial_complete: Optional[TrialHook] = None
    on_db_error: Callable[[BaseException], None] = _log_db_error
    ignore_filter: Optional[Callable[[VisitorContext], bool]] = None

    @staticmethod
    def run(hook: Optional[TrialHook], context: Optional[VisitorContext], trial: "Trial") -> None:
        if hook is not None:
            hook(context, trial)
