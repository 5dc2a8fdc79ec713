from __future__ import annotations

import copy
from typing import Any, List, Tuple

import numpy as np
import pytest

from abtrial.callbacks import Callbacks
from abtrial.config import TrialSettings
from abtrial.experiments import Experiment, ExperimentStore
from abtrial.persistence import MemoryAdapter
from abtrial.trial import Trial
from abtrial.user import User


def _participants(store: ExperimentStore, experiment: Experiment) -> dict[str, int]:
    return {s.name: s.participants for s in store.alternative_stats(experiment)}


@pytest.fixture
def experiment(store: ExperimentStore) -> Experiment:
    return store.save(Experiment("signup", [{"control": 1}, {"b": 1}, {"c": 2}], metadata={"b": {"text": "Join"}}))


@pytest.fixture
def make_trial(store: ExperimentStore, rng: np.random.Generator):
    def _make(experiment: Experiment, user: User | None = None, **kwargs: Any) -> Trial:
        return Trial(experiment, store=store, user=user, rng=rng, **kwargs)

    return _make


# ---------------------------------------------------------------------------
# Decision precedence
# ---------------------------------------------------------------------------


def test_winner_is_always_chosen_and_never_counted(store, experiment, make_trial) -> None:
    store.set_winner(experiment, "c")

    for _ in range(5):
        assert make_trial(experiment, User(MemoryAdapter())).choose().name == "c"

    assert _participants(store, experiment) == {"control": 0, "b": 0, "c": 0}


def test_first_choose_counts_once_and_replays_the_same_alternative(store, experiment, make_trial) -> None:
    user = User(MemoryAdapter())

    first = make_trial(experiment, user).choose()
    replays = {make_trial(experiment, user).choose().name for _ in range(5)}

    assert replays == {first.name}
    assert user["signup"] == first.name
    assert sum(_participants(store, experiment).values()) == 1
    assert _participants(store, experiment)[first.name] == 1


def test_choose_twice_on_one_trial_has_no_side_effects(store, experiment, make_trial) -> None:
    calls: List[str] = []
    trial = make_trial(experiment, User(MemoryAdapter()),
                       callbacks=Callbacks(on_trial=lambda ctx, t: calls.append(t.alternative.name)))

    first = trial.choose()
    second = trial.choose()

    assert first == second
    assert calls == [first.name]
    assert sum(_participants(store, experiment).values()) == 1


@pytest.mark.parametrize(
    "kwargs",
    [
        dict(),
        dict(exclude=True),
        dict(disabled=True),
        dict(settings=TrialSettings(enabled=False)),
    ],
)
def test_override_beats_everything_else(store, experiment, make_trial, kwargs) -> None:
    store.set_winner(experiment, "c")
    user = User(MemoryAdapter({"signup": "control"}))

    assert make_trial(experiment, user, override="b", **kwargs).choose().name == "b"
    # Not stored: override storage is off by default.
    assert user["signup"] == "control"


def test_unknown_override_is_ignored(store, experiment, make_trial) -> None:
    user = User(MemoryAdapter({"signup": "c"}))

    assert make_trial(experiment, user, override="nope").choose().name == "c"


def test_stored_override_counts_only_without_prior_assignment(store, experiment, make_trial) -> None:
    settings = TrialSettings(store_override=True)
    fresh = User(MemoryAdapter())
    known = User(MemoryAdapter({"signup": "control"}))

    make_trial(experiment, fresh, override="b", settings=settings).choose()
    make_trial(experiment, known, override="b", settings=settings).choose()

    assert fresh["signup"] == "b"
    assert known["signup"] == "control"
    assert _participants(store, experiment) == {"control": 0, "b": 1, "c": 0}


def test_disabled_gives_control_without_counting_storing_or_hooks(store, experiment, make_trial) -> None:
    calls: List[str] = []
    callbacks = Callbacks(on_trial=lambda ctx, t: calls.append("trial"),
                          on_trial_choose=lambda ctx, t: calls.append("choose"))
    user = User(MemoryAdapter())

    assert make_trial(experiment, user, disabled=True, callbacks=callbacks).choose().name == "control"
    assert make_trial(experiment, user, settings=TrialSettings(enabled=False)).choose().name == "control"

    assert user.keys() == []
    assert calls == []
    assert sum(_participants(store, experiment).values()) == 0


def test_disabled_beats_winner(store, experiment, make_trial) -> None:
    store.set_winner(experiment, "c")

    assert make_trial(experiment, User(MemoryAdapter()), disabled=True).choose().name == "control"


@pytest.mark.parametrize("reason", ["flag", "not_started", "limit"])
def test_excluded_visitor_gets_control(store, experiment, make_trial, reason) -> None:
    adapter = MemoryAdapter()
    kwargs: dict[str, Any] = {}
    if reason == "flag":
        kwargs["exclude"] = True
    elif reason == "not_started":
        experiment.start_time = None
    else:
        adapter.set("other_experiment", "x")

    user = User(adapter, max_experiments=1)
    assert make_trial(experiment, user, **kwargs).choose().name == "control"
    assert user["signup"] is None
    assert sum(_participants(store, experiment).values()) == 0


def test_exclusion_beats_recall(store, experiment, make_trial) -> None:
    user = User(MemoryAdapter({"signup": "c"}))

    assert make_trial(experiment, user, exclude=True).choose().name == "control"
    assert user["signup"] == "c"


def test_on_trial_choose_only_for_fresh_draws(experiment, make_trial) -> None:
    chosen: List[Tuple[Any, str]] = []
    callbacks = Callbacks(on_trial_choose=lambda ctx, t: chosen.append((ctx, t.alternative.name)))
    user = User(MemoryAdapter())

    first = make_trial(experiment, user, callbacks=callbacks).choose("ctx")
    make_trial(experiment, user, callbacks=callbacks).choose("ctx")

    assert chosen == [("ctx", first.name)]


def test_weighted_selection_over_many_visitors(store, experiment, make_trial) -> None:
    for _ in range(2000):
        make_trial(experiment, User(MemoryAdapter())).choose()

    counts = _participants(store, experiment)
    assert sum(counts.values()) == 2000
    assert counts["c"] / 2000 == pytest.approx(0.5, abs=0.05)
    assert counts["b"] / 2000 == pytest.approx(0.25, abs=0.05)
    assert counts["control"] / 2000 == pytest.approx(0.25, abs=0.05)


def test_version_bump_discards_stale_assignment(store, make_trial) -> None:
    experiment = store.save(Experiment("e", ["a", "b"], version=1))
    user = User(MemoryAdapter({"e:1": "a", "e:1:finished": True}))

    experiment = store.reset(experiment)
    assert experiment.key == "e:2"

    chosen = make_trial(experiment, user).choose()

    assert user.keys() == ["e:2"]
    assert user["e:2"] == chosen.name
    assert _participants(store, experiment)[chosen.name] == 1


def test_metadata_follows_alternative(experiment, make_trial) -> None:
    trial = make_trial(experiment, alternative="b")
    assert trial.metadata == {"text": "Join"}
    assert make_trial(experiment, alternative="c").metadata is None


# ---------------------------------------------------------------------------
# Recording
# ---------------------------------------------------------------------------


def test_complete_without_resolution_writes_nothing(experiment, make_trial, fake_client) -> None:
    before = copy.deepcopy(fake_client.nodes)
    transactions = fake_client.transactions

    make_trial(experiment).complete(goals=[])
    make_trial(experiment).score("revenue", 5)

    assert fake_client.nodes == before
    assert fake_client.transactions == transactions


def test_complete_counts_unnamed_or_per_goal(store, experiment, make_trial) -> None:
    completed: List[str] = []
    callbacks = Callbacks(on_trial_complete=lambda ctx, t: completed.append(t.alternative.name))
    experiment.goals = ["buy", "share"]

    make_trial(experiment, alternative="b", callbacks=callbacks).complete()
    make_trial(experiment, alternative="b", callbacks=callbacks).complete(["buy", "share"])

    stats = {s.name: s for s in store.alternative_stats(experiment)}
    assert stats["b"].completed == 1
    assert stats["b"].goals == {"buy": 1, "share": 1}
    assert completed == ["b", "b"]


def test_scores_accumulate(store, experiment, make_trial) -> None:
    experiment.scores = ["signup"]
    trial = make_trial(experiment, alternative="b")

    trial.score("signup", 1)
    trial.score("signup", 2)

    stats = {s.name: s for s in store.alternative_stats(experiment)}
    assert stats["b"].score_sums["signup"] == 3
    assert stats["b"].score_counts["signup"] == 2


def test_unresolved_trial_uses_winner_for_recording(store, experiment, make_trial) -> None:
    store.set_winner(experiment, "c")

    make_trial(experiment).complete()

    assert {s.name: s.completed for s in store.alternative_stats(experiment)}["c"] == 1
