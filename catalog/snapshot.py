from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Iterator, Optional, Tuple

from common.types import TargetRecord


@dataclass(frozen=True, slots=True)
class TargetCatalog:
    """
    Immutable snapshot of the targets a session matches against.

    A session loads one snapshot at connect time and keeps it until close;
    catalog edits made afterwards are only seen by new sessions.
    """
    records: Tuple[TargetRecord, ...] = ()
    name: str = "catalog"

    @classmethod
    def of(cls, records: Iterable[TargetRecord], name: str = "catalog") -> "TargetCatalog":
        return cls(records=tuple(records), name=name)

    def __len__(self) -> int:
        return len(self.records)

    def __iter__(self) -> Iterator[TargetRecord]:
        return iter(self.records)

    def __bool__(self) -> bool:
        return len(self.records) > 0

    @property
    def ids(self) -> Tuple[str, ...]:
        return tuple(r.id for r in self.records)

    def get(self, target_id: str) -> Optional[TargetRecord]:
        for r in self.records:
            if r.id == target_id:
                return r
        return None
