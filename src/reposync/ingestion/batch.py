"""Size- and count-bounded batches of search documents."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List, Optional

from reposync.errors import OversizedRecordError


class AddResult(str, Enum):
    FITS = "fits"
    WOULD_OVERFLOW = "would_overflow"


@dataclass
class Batch:
    """Serialized documents plus the records to commit once they are shipped."""

    payloads: List[bytes] = field(default_factory=list)
    records: List[Any] = field(default_factory=list)
    size_bytes: int = 0
    sequence: int = 0

    @property
    def count(self) -> int:
        return len(self.payloads)

    def to_json(self) -> bytes:
        return b"[" + b",\n".join(self.payloads) + b"]"


class BatchBuilder:
    """Accumulates documents while keeping a batch under both caps.

    ``try_add`` never lets a batch exceed ``max_bytes`` of document payload or
    ``max_items`` documents. When it answers WOULD_OVERFLOW the caller ships
    ``build()`` and adds the document to the fresh batch.
    """

    def __init__(self, max_bytes: int, max_items: int):
        if max_bytes <= 0 or max_items <= 0:
            raise ValueError("batch caps must be positive")
        self.max_bytes = max_bytes
        self.max_items = max_items
        self._shipped = 0
        self._batch = Batch(sequence=1)

    @property
    def size_bytes(self) -> int:
        return self._batch.size_bytes

    @property
    def count(self) -> int:
        return self._batch.count

    def is_empty(self) -> bool:
        return self._batch.count == 0

    def try_add(self, payload: bytes, record: Any = None) -> AddResult:
        """Add one serialized document if it fits.

        Raises:
            OversizedRecordError: If the document alone exceeds ``max_bytes``
        """
        if len(payload) > self.max_bytes:
            raise OversizedRecordError(_record_id(record), len(payload), self.max_bytes)
        if self._batch.count >= self.max_items or self._batch.size_bytes + len(payload) > self.max_bytes:
            return AddResult.WOULD_OVERFLOW
        self._batch.payloads.append(payload)
        self._batch.records.append(record)
        self._batch.size_bytes += len(payload)
        return AddResult.FITS

    def build(self) -> Batch:
        """Return the current batch and start a new, empty one."""
        batch = self._batch
        self._shipped += 1
        self._batch = Batch(sequence=self._shipped + 1)
        return batch


def _record_id(record: Optional[Any]) -> str:
    return str(getattr(record, "item_id", None) or "?")
