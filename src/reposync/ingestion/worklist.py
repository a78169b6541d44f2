"""Selection of the items a conversion run should look at."""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, Iterator, List, Optional, Set

from sqlalchemy import create_engine, text

from reposync.errors import MalformedMetadataError
from reposync.source import short_ark

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WorkItem:
    item_id: str
    timestamp: datetime


@dataclass(frozen=True)
class Candidate:
    """A queue row: archival id and its source-side modification time."""

    ark: str
    timestamp: datetime


class QueueDatabase:
    """Read-only access to the legacy index-state queue."""

    def __init__(self, database_url: str):
        self.engine = create_engine(database_url)

    def fetch_candidates(self, skip_to: Optional[str] = None) -> List[Candidate]:
        """All rows of the ``erep`` index, ordered by item id.

        Args:
            skip_to: Short id; rows ordering before it are left out
        """
        query = "SELECT itemId, time FROM indexStates WHERE indexName = 'erep'"
        params: Dict[str, str] = {}
        if skip_to:
            query += " AND itemId >= :skip_to"
            params["skip_to"] = f"ark:13030/{skip_to}"
        query += " ORDER BY itemId"
        with self.engine.connect() as conn:
            rows = conn.execute(text(query), params).fetchall()
        return [Candidate(ark=row[0], timestamp=_to_datetime(row[1])) for row in rows]

    def count(self) -> int:
        with self.engine.connect() as conn:
            return conn.execute(
                text("SELECT count(*) FROM indexStates WHERE indexName = 'erep'")
            ).scalar_one()


def _to_datetime(value) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.fromtimestamp(int(value))


@dataclass
class WorkListStats:
    candidates: int = 0
    queued: int = 0
    up_to_date: int = 0
    unparsable: int = 0


def select_work(
    candidates: Iterable[Candidate],
    last_indexed: Dict[str, Optional[datetime]],
    selected: Optional[Set[str]] = None,
    rescan: bool = False,
    stats: Optional[WorkListStats] = None,
) -> Iterator[WorkItem]:
    """Yield the candidates that need processing, in queue order.

    An item is due when it was never indexed, when the source changed after it
    was last indexed, or when ``rescan`` is set.

    Args:
        candidates: Queue rows in id order
        last_indexed: Stored last-indexed time per short id
        selected: Restrict to these short ids; None means all
        rescan: Ignore timestamps
        stats: Optional counters to update
    """
    stats = stats if stats is not None else WorkListStats()
    for candidate in candidates:
        stats.candidates += 1
        try:
            item_id = short_ark(candidate.ark)
        except MalformedMetadataError as e:
            logger.warning(str(e))
            stats.unparsable += 1
            continue
        if selected is not None and item_id not in selected:
            continue
        indexed = last_indexed.get(item_id)
        if indexed is None or indexed < candidate.timestamp or rescan:
            stats.queued += 1
            yield WorkItem(item_id=item_id, timestamp=candidate.timestamp)
        else:
            stats.up_to_date += 1
