"""Indexing pipeline: normalize items, decide what changed, batch and ship."""

import logging
import queue
import threading
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional

from reposync.context import ItemLogger, RunContext
from reposync.errors import MalformedMetadataError
from reposync.ingestion.batch import AddResult, Batch, BatchBuilder
from reposync.ingestion.digest import DigestCache, fingerprint
from reposync.ingestion.documents import build_item_document, fit_document_text, serialize_document
from reposync.ingestion.submitter import BatchSubmitter
from reposync.ingestion.sweeper import ConsistencySweeper
from reposync.ingestion.worklist import WorkItem
from reposync.models import ChangeAction, ChangeState, CommitRecord, NormalizedItem
from reposync.normalization.loader import MetadataNormalizer
from reposync.normalization.text import grab_text
from reposync.source import SourceLayout

_POLL_SECONDS = 0.1


@dataclass
class PreparedItem:
    """Everything computed for an item before the change decision."""

    normalized: NormalizedItem
    document: Dict[str, Any]
    payload: bytes
    index_digest: str
    data_digest: str


class IndexingPipeline:
    """Two-worker producer/consumer pipeline over a stream of item ids.

    The index worker drains the id queue, normalizes each item and fills
    batches; the batch worker drains a one-deep batch queue, uploading and
    committing each batch. Both queues end with a ``None`` sentinel. The first
    error raised in either worker stops the run and is re-raised by ``run``
    once both workers have finished; a batch that is already being submitted
    always finishes its commit first.
    """

    def __init__(
        self,
        normalizer: MetadataNormalizer,
        database,
        submitter: BatchSubmitter,
        digests: DigestCache,
        context: RunContext,
        layout: SourceLayout,
        max_batch_bytes: int,
        max_batch_items: int,
        max_record_bytes: int,
        queue_depth: int = 100,
        force: bool = False,
        sweeper: Optional[ConsistencySweeper] = None,
    ):
        self.normalizer = normalizer
        self.database = database
        self.submitter = submitter
        self.digests = digests
        self.context = context
        self.layout = layout
        self.max_batch_bytes = max_batch_bytes
        self.max_batch_items = max_batch_items
        self.max_record_bytes = max_record_bytes
        self.queue_depth = queue_depth
        self.force = force
        self.sweeper = sweeper
        self.logger = logging.getLogger(__name__)

        self.stats: Dict[str, int] = {
            "new": 0,
            "changed": 0,
            "data_only": 0,
            "unchanged": 0,
            "suppressed": 0,
            "skipped": 0,
            "failed": 0,
            "shipped": 0,
            "unshipped": 0,
        }
        self._stats_lock = threading.Lock()
        self._stop = threading.Event()
        self._error: Optional[BaseException] = None
        self._error_lock = threading.Lock()

    # Per-item work

    def prepare(self, item_id: str, log: logging.Logger) -> PreparedItem:
        """Normalize an item and build its search document and digests."""
        normalized = self.normalizer.normalize(item_id, log)
        trace = self.context.trace_units(normalized.units, log)
        text = ""
        if not normalized.suppress_content:
            text = grab_text(self.layout, item_id, normalized.item.content_type, log)
        document = build_item_document(normalized, trace, text)
        if document["type"] == "add":
            document = fit_document_text(document, self.max_record_bytes, log)
        payload = serialize_document(document)
        return PreparedItem(
            normalized=normalized,
            document=document,
            payload=payload,
            index_digest=fingerprint(payload),
            data_digest=fingerprint(normalized.relational_view()),
        )

    def preview(self, item_id: str) -> Dict[str, Any]:
        """Normalize one item without writing anything.

        Returns:
            Dict with the relational record, the search document (text
            omitted), both digests and the decision a real run would take
        """
        log = ItemLogger(self.logger, item_id)
        prepared = self.prepare(item_id, log)
        decision = self.digests.decide(
            item_id,
            prepared.index_digest,
            prepared.data_digest,
            prepared.normalized.suppress_content,
            force=self.force,
        )
        document = dict(prepared.document)
        if "fields" in document:
            document["fields"] = {k: v for k, v in document["fields"].items() if k != "text"}
        return {
            "record": prepared.normalized.relational_view(),
            "document": document,
            "index_digest": prepared.index_digest,
            "data_digest": prepared.data_digest,
            "decision": decision.state.value,
        }

    def index_item(self, work: WorkItem, builder: BatchBuilder) -> None:
        """Decide what to do with one item and do it (or queue it in the batch)."""
        item_id = work.item_id
        log = ItemLogger(self.logger, item_id)
        if not self.layout.has_usable_metadata(item_id):
            log.warning("skipping due to missing or truncated metadata")
            self._bump("skipped")
            return
        try:
            prepared = self.prepare(item_id, log)
        except MalformedMetadataError as e:
            log.error(f"Error indexing item: {e.reason}")
            self._bump("failed")
            return

        suppressed = prepared.normalized.suppress_content
        decision = self.digests.decide(
            item_id, prepared.index_digest, prepared.data_digest, suppressed, force=self.force
        )
        record = CommitRecord(
            normalized=prepared.normalized,
            index_digest=prepared.index_digest,
            data_digest=prepared.data_digest,
            last_indexed=work.timestamp,
        )

        if decision.action is ChangeAction.SKIP:
            log.info("Unchanged item.")
            self.database.touch_item(item_id, work.timestamp)
            self._bump("unchanged")
            return
        if decision.action is ChangeAction.COMMIT_ONLY:
            log.info("Changed item. (database change only, search data unchanged)")
            self.submitter.commit([record], counts_as_batch=False)
            self._bump("data_only")
            return

        existed = item_id in self.digests
        log.info(f"{'Changed' if existed else 'New'} item.{' (suppressed content)' if suppressed else ''}")
        if decision.state is ChangeState.SUPPRESSED:
            self._bump("suppressed")
        else:
            self._bump("changed" if existed else "new")

        if builder.try_add(prepared.payload, record) is AddResult.WOULD_OVERFLOW:
            self._ship(builder.build())
            builder.try_add(prepared.payload, record)

    # Workers

    def _bump(self, key: str, amount: int = 1) -> None:
        with self._stats_lock:
            self.stats[key] += amount

    def _fail(self, error: BaseException) -> None:
        with self._error_lock:
            if self._error is None:
                self._error = error
        self._stop.set()

    def _put(self, target: queue.Queue, value: Any, consumer: threading.Thread, sentinel: bool = False) -> bool:
        """Block until ``value`` is queued; give up if the run stops or the consumer is gone."""
        while True:
            try:
                target.put(value, timeout=_POLL_SECONDS)
                return True
            except queue.Full:
                if not consumer.is_alive() or (self._stop.is_set() and not sentinel):
                    return False

    def _ship(self, batch: Batch) -> None:
        if not self._put(self._batch_queue, batch, self._batch_thread):
            self._bump("unshipped", batch.count)
            self._stop.set()

    def _index_worker(self) -> None:
        builder = BatchBuilder(self.max_batch_bytes, self.max_batch_items)
        try:
            while True:
                work = self._id_queue.get()
                if work is None:
                    break
                if self._stop.is_set():
                    continue
                self.index_item(work, builder)
            if not builder.is_empty():
                if self._stop.is_set():
                    self._bump("unshipped", builder.count)
                else:
                    self._ship(builder.build())
        except Exception as e:
            self.logger.error(f"Exception in index thread: {e}", exc_info=True)
            self._bump("unshipped", builder.count)
            self._fail(e)
        finally:
            self._put(self._batch_queue, None, self._batch_thread, sentinel=True)

    def _batch_worker(self) -> None:
        while True:
            batch = self._batch_queue.get()
            if batch is None:
                break
            if self._stop.is_set():
                self._bump("unshipped", batch.count)
                continue
            try:
                self.submitter.process(batch)
                self._bump("shipped", batch.count)
            except Exception as e:
                self.logger.error(f"Exception in batch thread: {e}", exc_info=True)
                self._bump("unshipped", batch.count)
                self._fail(e)
            self.logger.info(self.progress())

    def progress(self) -> str:
        s = self.stats
        return (
            f"{s['shipped'] + s['data_only']} processed + {s['unchanged']} unchanged + "
            f"{s['skipped']} skipped + {s['failed']} failed"
        )

    def run(self, work_items: Iterable[WorkItem]) -> Dict[str, int]:
        """Process a work list to completion.

        Args:
            work_items: Items to look at, in queue order

        Returns:
            Counters for the run

        Raises:
            Exception: The first error raised in either worker
        """
        self._stop.clear()
        self._error = None
        self._id_queue: queue.Queue = queue.Queue(maxsize=self.queue_depth)
        self._batch_queue: queue.Queue = queue.Queue(maxsize=1)
        self._index_thread = threading.Thread(target=self._index_worker, name="index thread", daemon=True)
        self._batch_thread = threading.Thread(target=self._batch_worker, name="batch thread", daemon=True)
        self._batch_thread.start()
        self._index_thread.start()

        for work in work_items:
            if not self._put(self._id_queue, work, self._index_thread):
                break
        self._put(self._id_queue, None, self._index_thread, sentinel=True)

        self._index_thread.join()
        self._batch_thread.join()

        if self._error is not None:
            self.logger.error(
                f"Run stopped; {self.stats['unshipped']} items were not shipped and will be retried next run"
            )
            raise self._error

        if self.sweeper is not None:
            self.sweeper.sweep()
        self.logger.info(f"Done: {self.progress()}")
        return dict(self.stats)
