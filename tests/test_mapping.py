from __future__ import annotations

import pytest
from conftest import make_item

from codebook_trainer.core.config import PairingRule
from codebook_trainer.core.constants import NO_MATCH
from codebook_trainer.core.errors import ConfigurationError
from codebook_trainer.core.mapping import IndexMapper
from codebook_trainer.core.types import AdaptationSet


def _set(names: list[str], folder: str = "source") -> AdaptationSet:
    return AdaptationSet([make_item(name, folder=folder) for name in names])


def test_index_map_has_one_entry_per_source_item():
    source = _set(["a", "b", "c", "d"])
    target = _set(["d", "b", "a"], folder="target")

    index_map = IndexMapper().build(source, target)

    assert len(index_map) == len(source)
    for index, item in enumerate(source):
        target_index = index_map[index]
        if target_index == NO_MATCH:
            assert item.name not in target.names
        else:
            assert target[target_index].name == item.name


def test_unmatched_source_item_gets_sentinel():
    source = _set(["a", "b", "c"])
    target = _set(["a", "c"], folder="target")

    index_map = IndexMapper().build(source, target)

    assert index_map[1] == NO_MATCH
    assert index_map.unmatched == ("b",)
    assert index_map.matched_count == 2
    assert index_map.matched_pairs() == [(0, 0), (2, 1)]


def test_duplicate_target_names_keep_first_and_are_flagged():
    source = _set(["a"])
    target = AdaptationSet([make_item("a", folder="target_1"), make_item("a", folder="target_2")])

    index_map = IndexMapper().build(source, target)

    assert index_map[0] == 0
    assert target[0].path.parent.name == "target_1"
    assert index_map.duplicates == ("target:a",)


def test_duplicate_source_names_are_flagged():
    source = AdaptationSet([make_item("a", folder="s1"), make_item("a", folder="s2")])
    target = _set(["a"], folder="target")

    index_map = IndexMapper().build(source, target)

    assert index_map[0] == 0
    assert index_map[1] == NO_MATCH
    assert index_map.duplicates == ("source:a",)


def test_casefold_rule_matches_names_ignoring_case():
    source = _set(["Utt01"])
    target = _set(["utt01"], folder="target")

    assert IndexMapper(PairingRule.CASEFOLD).build(source, target)[0] == 0
    with pytest.raises(ConfigurationError):
        IndexMapper(PairingRule.EXACT).build(source, target)


def test_empty_sets_are_fatal():
    with pytest.raises(ConfigurationError):
        IndexMapper().build(AdaptationSet([]), _set(["a"]))
    with pytest.raises(ConfigurationError):
        IndexMapper().build(_set(["a"]), AdaptationSet([]))


def test_no_common_names_is_fatal():
    with pytest.raises(ConfigurationError, match="no source recording"):
        IndexMapper().build(_set(["a", "b"]), _set(["x", "y"], folder="target"))


def test_index_map_is_read_only():
    index_map = IndexMapper().build(_set(["a"]), _set(["a"], folder="target"))
    with pytest.raises(ValueError):
        index_map.indices[0] = 5
