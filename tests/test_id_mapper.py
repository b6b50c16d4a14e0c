import json

import numpy as np
import pytest

from eventrec.exceptions import UnknownIdentifierError
from eventrec.models.id_mapper import UNKNOWN_KEY, IdMapper


def test_assign_is_idempotent_and_starts_at_one():
    mapper = IdMapper("user")
    a = mapper.assign("alice")
    b = mapper.assign("bob")

    assert a == 1
    assert b == 2
    assert mapper.assign("alice") == a
    assert mapper.all_keys() == [1, 2]
    assert len(mapper) == 2


def test_from_ids_assigns_over_sorted_ids():
    mapper = IdMapper.from_ids(["carol", "alice", "bob", "alice"], kind="user")

    assert mapper.raw_ids() == ["alice", "bob", "carol"]
    assert mapper.key_of("carol") == 3
    assert mapper.frozen


def test_frozen_mapper_rejects_new_ids():
    mapper = IdMapper.from_ids([10, 20], kind="event")

    assert mapper.lookup(30) == UNKNOWN_KEY
    with pytest.raises(UnknownIdentifierError) as exc_info:
        mapper.assign(30)
    assert exc_info.value.kind == "event"
    assert exc_info.value.raw_id == 30
    with pytest.raises(KeyError):
        mapper.key_of(30)


def test_numpy_ids_match_builtin_ids():
    mapper = IdMapper.from_ids(np.array([3, 1, 2], dtype=np.int64), kind="event")

    assert mapper.key_of(1) == 1
    assert np.int64(2) in mapper
    assert json.dumps(mapper.to_records()) == "[[1, 1], [2, 2], [3, 3]]"


def test_records_restore_the_same_mapping():
    mapper = IdMapper.from_ids(["x", "y", "z"], kind="user")
    restored = IdMapper.from_records(json.loads(json.dumps(mapper.to_records())), kind="user")

    assert restored == mapper
    assert restored.frozen


def test_non_contiguous_records_are_rejected():
    with pytest.raises(ValueError):
        IdMapper.from_records([["a", 1], ["b", 3]], kind="user")


def test_raw_id_rejects_sentinel():
    mapper = IdMapper.from_ids(["a"])
    assert mapper.raw_id(1) == "a"
    with pytest.raises(UnknownIdentifierError):
        mapper.raw_id(UNKNOWN_KEY)
