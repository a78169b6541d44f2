"""Read-only per-run context shared by every worker."""

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, MutableMapping, Optional, Sequence, Tuple

from reposync.models import UnitType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UnitInfo:
    """The parts of a unit row that item conversion needs."""

    id: str
    type: Optional[UnitType]
    name: str = ""
    attrs: Mapping[str, object] = field(default_factory=dict)


@dataclass(frozen=True)
class UnitTrace:
    """Units an item belongs to, grouped by facet."""

    campuses: List[str]
    departments: List[str]
    journals: List[str]
    series: List[str]

    def facets(self) -> Dict[str, List[str]]:
        """Non-empty facet lists keyed by search field name."""
        out = {}
        for name in ("campuses", "departments", "journals", "series"):
            values = getattr(self, name)
            if values:
                out[name] = values
        return out


@dataclass(frozen=True)
class RunContext:
    """Unit table and ancestor map, built once per run and passed down.

    ``ancestors`` maps each unit id to every ancestor in the closure table,
    direct or not.
    """

    units: Mapping[str, UnitInfo]
    ancestors: Mapping[str, Tuple[str, ...]]

    @classmethod
    def from_database(cls, database) -> "RunContext":
        """Snapshot the unit tables of a RepoDatabase."""
        units = {
            row.id: UnitInfo(
                id=row.id, type=UnitType.classify(row.type), name=row.name or "", attrs=row.attrs or {}
            )
            for row in database.all_units()
        }
        ancestors: Dict[str, List[str]] = {}
        for ancestor_id, unit_id in database.all_hierarchy_pairs():
            ancestors.setdefault(unit_id, []).append(ancestor_id)
        return cls(units=units, ancestors={k: tuple(v) for k, v in ancestors.items()})

    def is_known(self, unit_id: str) -> bool:
        return unit_id in self.units

    def unit_type(self, unit_id: str) -> Optional[UnitType]:
        unit = self.units.get(unit_id)
        return unit.type if unit else None

    def ancestors_of(self, unit_id: str) -> Tuple[str, ...]:
        return self.ancestors.get(unit_id, ())

    def trace_units(self, unit_ids: Sequence[str], log: Optional[logging.Logger] = None) -> UnitTrace:
        """Walk from an item's units up through every ancestor, classifying each.

        Args:
            unit_ids: Units the item is directly linked to
            log: Logger (or adapter) to report unknown units on

        Returns:
            UnitTrace with ids in discovery order
        """
        log = log or logger
        buckets: Dict[UnitType, List[str]] = {t: [] for t in UnitType}
        seen = set()
        pending = deque(unit_ids)
        while pending:
            unit_id = pending.popleft()
            if unit_id in seen:
                continue
            seen.add(unit_id)
            unit = self.units.get(unit_id)
            if unit is None:
                log.warning(f"skipping unknown unit {unit_id!r}")
                continue
            if unit.type is not None:
                buckets[unit.type].append(unit_id)
            pending.extend(self.ancestors_of(unit_id))
        return UnitTrace(
            campuses=buckets[UnitType.CAMPUS],
            departments=buckets[UnitType.ORU],
            journals=buckets[UnitType.JOURNAL],
            series=buckets[UnitType.SERIES],
        )


class ItemLogger(logging.LoggerAdapter):
    """Logger adapter that tags every message with the item being processed."""

    def __init__(self, logger: logging.Logger, item_id: str) -> None:
        super().__init__(logger, {"item_id": item_id})

    def process(self, msg: str, kwargs: MutableMapping) -> Tuple[str, MutableMapping]:
        return f"[{self.extra['item_id']}] {msg}", kwargs
