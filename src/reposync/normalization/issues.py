"""Issue-level rights resolution for journal items."""

import logging
import threading
from typing import Dict, Optional, Tuple

from reposync.context import RunContext

logger = logging.getLogger(__name__)


class IssueRightsResolver:
    """Decides which rights an issue carries, preferring values set on the issue.

    Resolution order for (unit, volume, issue):

    1. rights recorded on the existing issue
    2. the unit's ``default_issue.rights`` attribute
    3. rights recorded on the unit's most recent issue
    4. the rights computed for the item itself

    Results are cached per run; entries are never changed once written.
    """

    def __init__(self, database, context: RunContext):
        self.database = database
        self.context = context
        self._cache: Dict[Tuple[str, str, Optional[str]], Optional[str]] = {}
        self._lock = threading.Lock()

    def resolve(
        self, unit_id: str, volume: str, issue: Optional[str], item_rights: Optional[str]
    ) -> Optional[str]:
        key = (unit_id, volume, issue)
        with self._lock:
            if key in self._cache:
                return self._cache[key]
        rights = self._lookup(unit_id, volume, issue, item_rights)
        with self._lock:
            return self._cache.setdefault(key, rights)

    def _lookup(
        self, unit_id: str, volume: str, issue: Optional[str], item_rights: Optional[str]
    ) -> Optional[str]:
        existing = self.database.find_issue(unit_id, volume, issue)
        if existing is not None:
            return (existing.attrs or {}).get("rights")

        unit = self.context.units.get(unit_id)
        default_issue = (unit.attrs.get("default_issue") if unit else None) or {}
        if default_issue.get("rights"):
            return default_issue["rights"]

        latest = self.database.latest_issue(unit_id)
        if latest is not None:
            return (latest.attrs or {}).get("rights")

        return item_rights
