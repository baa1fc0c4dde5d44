from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np

from .config import PairingRule
from .constants import NO_MATCH
from .errors import ConfigurationError, ItemError
from .types import AdaptationSet

logger = logging.getLogger(__name__)


def pairing_key(name: str, rule: PairingRule) -> str:
    if rule is PairingRule.CASEFOLD:
        return name.casefold()
    return name


@dataclass(frozen=True)
class IndexMap:
    indices: np.ndarray
    unmatched: tuple[str, ...] = ()
    duplicates: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        indices = np.array(self.indices, dtype=np.int64, copy=True)
        indices.flags.writeable = False
        object.__setattr__(self, "indices", indices)

    def __len__(self) -> int:
        return int(self.indices.shape[0])

    def __getitem__(self, index: int) -> int:
        return int(self.indices[index])

    @property
    def matched_count(self) -> int:
        return int(np.count_nonzero(self.indices != NO_MATCH))

    def matched_pairs(self) -> list[tuple[int, int]]:
        return [(index, int(target)) for index, target in enumerate(self.indices) if target != NO_MATCH]


class IndexMapper:
    def __init__(self, rule: PairingRule = PairingRule.EXACT):
        self.rule = PairingRule(rule)

    def build(self, source_set: AdaptationSet, target_set: AdaptationSet) -> IndexMap:
        if len(source_set) == 0:
            raise ConfigurationError("source training set is empty")
        if len(target_set) == 0:
            raise ConfigurationError("target training set is empty")

        duplicates: list[str] = []
        target_lookup: dict[str, int] = {}
        for index, item in enumerate(target_set):
            key = pairing_key(item.name, self.rule)
            if key in target_lookup:
                logger.warning("duplicate target name %r at %s ignored", item.name, item.path)
                duplicates.append(f"target:{item.name}")
                continue
            target_lookup[key] = index

        indices = np.full(len(source_set), NO_MATCH, dtype=np.int64)
        unmatched: list[str] = []
        seen: set[str] = set()
        for index, item in enumerate(source_set):
            key = pairing_key(item.name, self.rule)
            if key in seen:
                logger.warning("duplicate source name %r at %s ignored", item.name, item.path)
                duplicates.append(f"source:{item.name}")
                continue
            seen.add(key)
            match = target_lookup.get(key)
            if match is None:
                logger.warning("%s", ItemError(item.path, "no target recording with a matching name"))
                unmatched.append(item.name)
                continue
            indices[index] = match

        index_map = IndexMap(indices=indices, unmatched=tuple(unmatched), duplicates=tuple(duplicates))
        if index_map.matched_count == 0:
            raise ConfigurationError("no source recording has a matching target recording")
        logger.info(
            "index map: %d/%d source items matched, %d duplicates flagged",
            index_map.matched_count,
            len(source_set),
            len(duplicates),
        )
        return index_map
