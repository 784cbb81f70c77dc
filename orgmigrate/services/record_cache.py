"""Run-scoped cache of parsed flat-file rows."""

import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

from ..constants import SYNTHETIC_ID_DIGITS, SYNTHETIC_ID_PREFIX

logger = logging.getLogger(__name__)

Row = Dict[str, Any]


@dataclass
class CacheEntry:
    """Rows of one file keyed by row identifier, in file order."""
    path: str
    rows: "OrderedDict[str, Row]" = field(default_factory=OrderedDict)
    columns: List[str] = field(default_factory=list)
    dirty: bool = False
    missing_id_column: bool = False


class RecordCache:
    """
    Addressable store of parsed rows keyed by file path.

    One instance lives for one run and is passed explicitly to the conformance
    engine. The identifier generator is shared by every entry, so synthetic ids
    never repeat within a run.
    """

    def __init__(self, start: int = 0):
        self._entries: Dict[str, CacheEntry] = {}
        self._counter = start
        self._issued: Set[str] = set()

    def next_id(self) -> str:
        """Return a new synthetic identifier, e.g. ``ID0000000000000001``."""
        while True:
            self._counter += 1
            value = f"{SYNTHETIC_ID_PREFIX}{str(self._counter).zfill(SYNTHETIC_ID_DIGITS)}"
            if value not in self._issued:
                self._issued.add(value)
                return value

    def reserve(self, value: str) -> None:
        """Mark an existing identifier as taken so it is never generated."""
        self._issued.add(value)

    def has(self, path: str) -> bool:
        return path in self._entries

    def get(self, path: str) -> Optional[CacheEntry]:
        return self._entries.get(path)

    def put(self, path: str, rows: List[Row], columns: List[str], id_column: Optional[str] = None) -> CacheEntry:
        """
        Store rows for a file.

        Rows are keyed by the value of ``id_column``; rows without a usable or
        unique value get a synthetic key.
        """
        entry = CacheEntry(path=path, columns=list(columns))
        for row in rows:
            key = row.get(id_column) if id_column else None
            if key in (None, "") or key in entry.rows:
                key = self.next_id()
            else:
                key = str(key)
                self.reserve(key)
            entry.rows[key] = row
        self._entries[path] = entry
        return entry

    def rows(self, path: str) -> List[Row]:
        entry = self._entries.get(path)
        return list(entry.rows.values()) if entry else []

    def mark_dirty(self, path: str) -> None:
        entry = self._entries.get(path)
        if entry is not None and not entry.dirty:
            logger.debug(f"Marked dirty: {path}")
            entry.dirty = True

    def is_dirty(self, path: str) -> bool:
        entry = self._entries.get(path)
        return bool(entry and entry.dirty)

    @property
    def dirty_paths(self) -> List[str]:
        return [p for p, e in self._entries.items() if e.dirty]

    @property
    def paths(self) -> List[str]:
        return list(self._entries)

    def clear(self) -> None:
        """Drop all entries; the id generator keeps advancing."""
        self._entries.clear()
