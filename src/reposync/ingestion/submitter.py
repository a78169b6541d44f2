"""Ships closed batches to the search index, then commits them."""

import logging
from typing import List, Optional

from reposync.ingestion.batch import Batch
from reposync.ingestion.digest import DigestCache
from reposync.ingestion.sweeper import ConsistencySweeper
from reposync.models import CommitRecord

logger = logging.getLogger(__name__)


class BatchSubmitter:
    """Search submission followed by the batch's relational commit.

    The database commit for a batch only happens after its upload returned
    successfully. With ``no_search`` the upload is skipped and each record
    keeps the index digest stored before this run, so a later run with search
    enabled still reindexes it.
    """

    def __init__(
        self,
        database,
        search_index,
        ancestors_of,
        sweeper: Optional[ConsistencySweeper] = None,
        digests: Optional[DigestCache] = None,
        no_search: bool = False,
    ):
        self.database = database
        self.search_index = search_index
        self.ancestors_of = ancestors_of
        self.sweeper = sweeper
        self.digests = digests
        self.no_search = no_search
        self.batches = 0
        self.committed = 0

    def process(self, batch: Batch) -> None:
        """Submit and commit one batch.

        Raises:
            TransientBackendError: If the retry budget ran out
            Exception: Any non-transient backend or database error
        """
        logger.info(f"Processing batch {batch.sequence}: nItems={batch.count}, size={batch.size_bytes}.")
        records: List[CommitRecord] = list(batch.records)
        if self.no_search:
            records = [self._keep_prior_index_digest(record) for record in records]
        elif batch.count:
            self.search_index.upload(batch.to_json())

        self.commit(records)

    def commit(self, records: List[CommitRecord], counts_as_batch: bool = True) -> None:
        """Apply records in one transaction and update the run's digest cache.

        Args:
            records: Records to write
            counts_as_batch: False for single database-only updates, which
                do not advance the sweep interval
        """
        if not records:
            return
        self.database.commit_items(records, self.ancestors_of)
        if self.digests is not None:
            for record in records:
                self.digests.record(record.item_id, record.index_digest, record.data_digest, record.last_indexed)
        self.committed += len(records)
        if not counts_as_batch:
            return
        self.batches += 1
        if self.sweeper is not None:
            self.sweeper.batch_committed()

    def _keep_prior_index_digest(self, record: CommitRecord) -> CommitRecord:
        prior = self.digests.get(record.item_id) if self.digests is not None else None
        return record.model_copy(update={"index_digest": prior.index_digest if prior else None})
