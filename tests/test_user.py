from __future__ import annotations

import pytest

from abtrial.experiments import Experiment
from abtrial.persistence import BatchableAdapter, IdentityAdapter, MemoryAdapter, MetastoreAdapter, purge_stale_visitors
from abtrial.user import User, is_flag_key, parse_entry_key


@pytest.mark.parametrize(
    "key, expected",
    [
        ("signup", ("signup", "signup")),
        ("signup:2", ("signup", "signup:2")),
        ("signup:finished", ("signup", "signup")),
        ("signup:2:finished", ("signup", "signup:2")),
        ("signup:3:scored:revenue", ("signup", "signup:3")),
    ],
)
def test_parse_entry_key(key, expected) -> None:
    assert parse_entry_key(key) == expected


def test_is_flag_key() -> None:
    assert is_flag_key("e:finished")
    assert is_flag_key("e:2:scored:revenue")
    assert not is_flag_key("e")
    assert not is_flag_key("e:2")


def test_adapters_satisfy_protocols(metastore) -> None:
    assert isinstance(MemoryAdapter(), IdentityAdapter)
    assert not isinstance(MemoryAdapter(), BatchableAdapter)
    assert isinstance(MetastoreAdapter(metastore, "v1"), BatchableAdapter)


def test_memory_adapter_wraps_given_mapping() -> None:
    session: dict = {}
    adapter = MemoryAdapter(session)

    adapter.set("a", 1)
    adapter.set("b", 2)
    adapter.delete("a", "missing")

    assert session == {"b": 2}
    assert adapter.multi_get("a", "b") == [None, 2]


def test_metastore_adapter_keeps_insertion_order_in_one_record(metastore, clock) -> None:
    adapter = MetastoreAdapter(metastore, "visitor/1", clock=clock)

    adapter.set("first", "a")
    adapter.set("second", "b")
    adapter.set("first", "c")
    adapter.delete("second")

    assert adapter.keys() == ["first"]
    assert adapter.get("first") == "c"
    assert metastore.get_key("/users/visitor%2F1") == {"entries": {"first": "c"}, "touched_at": clock.now}


def test_metastore_adapter_requires_visitor_id(metastore) -> None:
    with pytest.raises(ValueError):
        MetastoreAdapter(metastore, "")


def test_purge_stale_visitors(metastore, clock) -> None:
    MetastoreAdapter(metastore, "old", clock=clock).set("e", "a")
    clock.advance(100)
    MetastoreAdapter(metastore, "new", clock=clock).set("e", "a")

    assert purge_stale_visitors(metastore, expire_seconds=50, now=clock.now) == 1
    assert MetastoreAdapter(metastore, "old").keys() == []
    assert MetastoreAdapter(metastore, "new").keys() == ["e"]


def test_purge_keeps_visitor_touched_after_it_was_read(metastore, fake_client, clock) -> None:
    MetastoreAdapter(metastore, "old", clock=clock).set("e", "a")
    clock.advance(100)
    touched = []

    def touch_concurrently(path: str) -> None:
        if path.endswith("/users/old") and not touched:
            touched.append(path)
            MetastoreAdapter(metastore, "old", clock=clock).set("f", "b")

    fake_client.after_get = touch_concurrently

    assert purge_stale_visitors(metastore, expire_seconds=50, now=clock.now) == 0

    fake_client.after_get = None
    assert touched
    assert MetastoreAdapter(metastore, "old").keys() == ["e", "f"]


def test_max_experiments_counts_other_experiment_names() -> None:
    user = User(MemoryAdapter({"a": "x", "a:finished": True, "b:2": "y"}), max_experiments=2)

    assert user.experiment_keys() == ["a", "b:2"]
    assert user.max_experiments_reached("c") is True
    assert user.max_experiments_reached("a") is False
    assert user.max_experiments_reached("b:3") is False
    assert User(MemoryAdapter({"a": "x"}), max_experiments=None).max_experiments_reached("c") is False


def test_cleanup_old_versions_keeps_current_entries() -> None:
    adapter = MemoryAdapter({"e": "a", "e:finished": True, "e:1": "b", "e:2": "a", "other": "x"})
    user = User(adapter)

    removed = user.cleanup_old_versions(Experiment("e", ["a", "b"], version=2))

    assert sorted(removed) == ["e", "e:1", "e:finished"]
    assert user.keys() == ["e:2", "other"]
    assert user.keys_of("e:2") == ["e:2"]


def test_stage_joins_batch_only_for_metastore_adapter(metastore) -> None:
    batched = User(MetastoreAdapter(metastore, "v"))
    plain = User(MemoryAdapter())

    def build(batch) -> None:
        assert batched.stage(batch, "k", True) is True
        assert plain.stage(batch, "k", True) is False

    metastore.atomic_batch(build)

    assert batched["k"] is True
    assert plain["k"] is None
