"""Search documents for items and their size limits."""

import json
import logging
import re
from typing import Any, Dict, Optional

from reposync.context import UnitTrace
from reposync.errors import OversizedRecordError
from reposync.models import NormalizedItem

logger = logging.getLogger(__name__)

MAX_INDEXED_AUTHORS = 1000


def item_doc_id(item_id: str) -> str:
    return f"item:{item_id}"


def serialize_document(document: Dict[str, Any]) -> bytes:
    """Compact JSON encoding used both for digests and for upload."""
    return json.dumps(document, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def build_item_document(
    normalized: NormalizedItem, trace: UnitTrace, text: str = ""
) -> Dict[str, Any]:
    """Search document for an item: an add with its fields, or a delete if suppressed."""
    item = normalized.item
    if normalized.suppress_content:
        return {"type": "delete", "id": item_doc_id(item.id)}

    authors = normalized.authors[:MAX_INDEXED_AUTHORS]
    first_author = normalized.authors[0].name if normalized.authors else ""
    fields: Dict[str, Any] = {
        "title": item.title or "",
        "authors": [author.name for author in authors],
        "abstract": item.attrs.get("abstract") or "",
        "type_of_work": item.genre,
        "disciplines": item.attrs.get("disciplines") or [""],
        "peer_reviewed": 1 if item.attrs.get("is_peer_reviewed") else 0,
        "pub_date": f"{item.pub_date.isoformat()}T00:00:00Z",
        "pub_year": item.pub_date.year,
        "rights": item.rights or "",
        "sort_author": re.sub(r"[^\w ]", "", first_author).lower(),
        "is_info": 0,
    }
    fields.update(trace.facets())
    if normalized.supp_summary_types:
        fields["supp_file_types"] = list(normalized.supp_summary_types)
    fields["text"] = text
    return {"type": "add", "id": item_doc_id(item.id), "fields": fields}


def fit_document_text(
    document: Dict[str, Any], max_bytes: int, log: Optional[logging.Logger] = None
) -> Dict[str, Any]:
    """Shorten only the ``text`` field until the serialized document fits.

    Uses a binary search on the number of characters kept, since the JSON
    escaping of the text makes its encoded size hard to predict.

    Args:
        document: Add document, possibly with a ``text`` field
        max_bytes: Largest allowed serialized size
        log: Logger for the truncation note

    Returns:
        The same document, with its text truncated if needed

    Raises:
        OversizedRecordError: If the document is too large even with no text
    """
    log = log or logger
    size = len(serialize_document(document))
    if size <= max_bytes:
        return document
    fields = document.get("fields") or {}
    text = fields.get("text") or ""

    def fits(keep: int) -> bool:
        fields["text"] = text[:keep]
        return len(serialize_document(document)) <= max_bytes

    if not fits(0):
        raise OversizedRecordError(document.get("id", "?"), len(serialize_document(document)), max_bytes)

    low, high = 0, len(text)
    while low < high:
        mid = (low + high + 1) // 2
        if fits(mid):
            low = mid
        else:
            high = mid - 1
    fields["text"] = text[:low]
    log.info(f"Keeping only {low} of {len(text)} text chars.")
    return document
