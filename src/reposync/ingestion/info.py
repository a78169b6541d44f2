"""Search index of informational documents: units and their CMS pages."""

import logging
import re
from typing import Any, Dict, List, Optional, Tuple

from lxml import etree

from reposync.context import RunContext
from reposync.ingestion.batch import AddResult, Batch, BatchBuilder
from reposync.ingestion.digest import fingerprint
from reposync.ingestion.documents import serialize_document
from reposync.normalization.text import traverse_text

logger = logging.getLogger(__name__)

_SLUG_UNSAFE = re.compile(r"[^-a-zA-Z0-9_/#:.;&=?@$+!*'(),%]")


def unit_doc_id(unit_id: str) -> str:
    return f"unit:{unit_id}"


def page_doc_id(unit_id: str, slug: str) -> str:
    return f"page:{unit_id}:{_SLUG_UNSAFE.sub('_', slug)}"


def html_text(html: str) -> str:
    """Indexable text of an HTML fragment."""
    root = etree.fromstring(html, etree.HTMLParser())
    if root is None:
        return ""
    buffer: List[str] = []
    traverse_text(root, buffer)
    return "\n".join(buffer)


class InfoIndexer:
    """Keeps unit and page documents in the search index in step with the database.

    New or changed documents are added, documents whose unit or page is gone
    are deleted. Digests of what was shipped are kept in ``info_index``.
    """

    def __init__(self, database, search_index, context: RunContext, max_batch_bytes: int, max_batch_items: int):
        self.database = database
        self.search_index = search_index
        self.context = context
        self.builder = BatchBuilder(max_batch_bytes, max_batch_items)
        self.stats = {"added": 0, "deleted": 0, "unchanged": 0}

    def unit_document(self, unit_id: str, name: str) -> Dict[str, Any]:
        fields: Dict[str, Any] = {"text": name, "is_info": 1}
        fields.update(self.context.trace_units([unit_id]).facets())
        return {"type": "add", "id": unit_doc_id(unit_id), "fields": fields}

    def page_document(self, page) -> Dict[str, Any]:
        unit = self.context.units.get(page.unit_id)
        text = f"{unit.name if unit else ''}\n{page.name}\n{page.title or ''}\n"
        html = (page.attrs or {}).get("html")
        if html:
            text += html_text(html)
        fields: Dict[str, Any] = {"text": text, "is_info": 1}
        fields.update(self.context.trace_units([page.unit_id]).facets())
        return {"type": "add", "id": page_doc_id(page.unit_id, page.slug), "fields": fields}

    def run(self) -> Dict[str, int]:
        """Index all new or changed units and pages, and delete vanished ones."""
        logger.info("Checking and indexing info pages.")
        stored = self.database.info_digests()
        seen = set()

        for unit in self.database.all_units():
            key = (unit.id, "")
            seen.add(key)
            self._add(key, self.unit_document(unit.id, unit.name), stored.get(key), f"unit {unit.id}")

        for page in self.database.all_pages():
            key = (page.unit_id, page.slug)
            seen.add(key)
            self._add(key, self.page_document(page), stored.get(key), f"page {page.unit_id}:{page.slug}")

        for key in sorted(set(stored) - seen):
            unit_id, slug = key
            doc_id = page_doc_id(unit_id, slug) if slug else unit_doc_id(unit_id)
            logger.info(f"Deleted: {'page' if slug else 'unit'} {unit_id}{':' + slug if slug else ''}")
            self._queue(serialize_document({"type": "delete", "id": doc_id}), ("delete", key, None))
            self.stats["deleted"] += 1

        if not self.builder.is_empty():
            self._flush(self.builder.build())
        return dict(self.stats)

    def _add(self, key: Tuple[str, str], document: Dict[str, Any], old_digest: Optional[str], label: str) -> None:
        payload = serialize_document(document)
        digest = fingerprint(payload)
        if old_digest == digest:
            self.stats["unchanged"] += 1
            return
        logger.info(f"{'Changed' if old_digest else 'New'}: {label}")
        self._queue(payload, ("upsert", key, digest))
        self.stats["added"] += 1

    def _queue(self, payload: bytes, record: Tuple) -> None:
        if self.builder.try_add(payload, record) is AddResult.WOULD_OVERFLOW:
            self._flush(self.builder.build())
            self.builder.try_add(payload, record)

    def _flush(self, batch: Batch) -> None:
        logger.info(f"Submitting batch with {batch.count} info records.")
        self.search_index.upload(batch.to_json())
        upserts = [(key[0], key[1], digest) for kind, key, digest in batch.records if kind == "upsert"]
        deletes = [key for kind, key, _ in batch.records if kind == "delete"]
        self.database.apply_info_updates(upserts, deletes)
