"""Stable raw-id ↔ dense-key mapping for the factorization stage.

Keys start at 1; 0 is reserved for "unknown". The mapping is persisted next
to the factor matrices and reused verbatim at serving time, so a key always
addresses the embedding row it was trained with.
"""
import logging
from typing import Dict, Iterable, List, Tuple

from eventrec.exceptions import UnknownIdentifierError

logger = logging.getLogger(__name__)

UNKNOWN_KEY = 0


def _plain(raw_id):
    """Turn numpy scalars into builtin ints/strs so dict lookups and JSON agree."""
    if hasattr(raw_id, "item"):
        return raw_id.item()
    return raw_id


class IdMapper:
    """Bijection between raw ids and 1-based integer keys.

    Args:
        kind: Label used in errors and logs ("user", "event").
    """

    def __init__(self, kind: str = "id") -> None:
        self.kind = kind
        self._key_by_id: Dict = {}
        self._id_by_key: List = [None]  # index 0 is the sentinel slot
        self.frozen = False

    @classmethod
    def from_ids(cls, ids: Iterable, kind: str = "id") -> "IdMapper":
        """Assign keys over the sorted unique ``ids`` and freeze the mapper."""
        mapper = cls(kind)
        for raw_id in sorted({_plain(i) for i in ids}):
            mapper.assign(raw_id)
        mapper.frozen = True
        return mapper

    def assign(self, raw_id) -> int:
        raw_id = _plain(raw_id)
        key = self._key_by_id.get(raw_id)
        if key is not None:
            return key
        if self.frozen:
            raise UnknownIdentifierError(self.kind, raw_id)
        key = len(self._id_by_key)
        self._key_by_id[raw_id] = key
        self._id_by_key.append(raw_id)
        return key

    def lookup(self, raw_id) -> int:
        """Key for ``raw_id`` or ``UNKNOWN_KEY`` (0)."""
        return self._key_by_id.get(_plain(raw_id), UNKNOWN_KEY)

    def key_of(self, raw_id) -> int:
        key = self.lookup(raw_id)
        if key == UNKNOWN_KEY:
            raise UnknownIdentifierError(self.kind, raw_id)
        return key

    def raw_id(self, key: int):
        if key <= UNKNOWN_KEY or key >= len(self._id_by_key):
            raise UnknownIdentifierError(f"{self.kind} key", key)
        return self._id_by_key[key]

    def all_keys(self) -> List[int]:
        return list(range(1, len(self._id_by_key)))

    def raw_ids(self) -> List:
        return self._id_by_key[1:]

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def to_records(self) -> List[List]:
        """``[[raw_id, key], ...]``; int ids stay ints through JSON."""
        return [[raw_id, key] for key, raw_id in enumerate(self._id_by_key) if key]

    @classmethod
    def from_records(cls, records: Iterable, kind: str = "id", frozen: bool = True) -> "IdMapper":
        mapper = cls(kind)
        for raw_id, key in sorted(records, key=lambda r: r[1]):
            if key != len(mapper._id_by_key):
                raise ValueError(f"Non-contiguous {kind} key {key} in persisted mapping")
            mapper.assign(raw_id)
        mapper.frozen = frozen
        return mapper

    def __len__(self) -> int:
        return len(self._id_by_key) - 1

    def __contains__(self, raw_id) -> bool:
        return _plain(raw_id) in self._key_by_id

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, IdMapper):
            return NotImplemented
        return self.kind == other.kind and self._id_by_key == other._id_by_key

    def __repr__(self) -> str:
        state = "frozen" if self.frozen else "open"
        return f"IdMapper({self.kind}, {len(self):,} keys, {state})"


def build_mappers(user_ids: Iterable, event_ids: Iterable) -> Tuple[IdMapper, IdMapper]:
    users = IdMapper.from_ids(user_ids, kind="user")
    events = IdMapper.from_ids(event_ids, kind="event")
    logger.info(f"Id mapping: {len(users):,} users, {len(events):,} events")
    return users, events

