"""Periodic removal of orphaned sections and issues."""

import logging
import threading
from typing import Tuple

logger = logging.getLogger(__name__)


class ConsistencySweeper:
    """Runs ``RepoDatabase.sweep_orphans`` every ``every`` committed batches.

    The sweep is its own transaction, outside any batch commit, and deleting
    orphans twice is harmless.
    """

    def __init__(self, database, every: int = 5):
        self.database = database
        self.every = every
        self._since_sweep = 0
        self._lock = threading.Lock()
        self.sweeps = 0

    def batch_committed(self) -> bool:
        """Count a committed batch; sweep when the interval is reached.

        Returns:
            True if a sweep ran
        """
        with self._lock:
            self._since_sweep += 1
            due = self._since_sweep >= self.every
            if due:
                self._since_sweep = 0
        if due:
            self.sweep()
        return due

    def sweep(self) -> Tuple[int, int]:
        """Delete orphans now.

        Returns:
            Tuple of (sections_deleted, issues_deleted)
        """
        sections, issues = self.database.sweep_orphans()
        self.sweeps += 1
        if sections or issues:
            logger.info(f"Swept {sections} orphaned sections and {issues} orphaned issues")
        else:
            logger.debug("Sweep found no orphans")
        return sections, issues
