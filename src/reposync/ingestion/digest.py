"""Content fingerprints and the per-item change decision."""

import hashlib
import json
import threading
from typing import Any, Dict, Optional

from reposync.models import ChangeAction, ChangeDecision, ChangeState, PriorState


def canonical_json(value: Any) -> bytes:
    """Deterministic JSON encoding: sorted keys, no whitespace."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str).encode(
        "utf-8"
    )


def fingerprint(value: Any) -> str:
    """SHA-256 hex digest of a value's canonical JSON form."""
    if isinstance(value, bytes):
        return hashlib.sha256(value).hexdigest()
    return hashlib.sha256(canonical_json(value)).hexdigest()


class DigestCache:
    """Previously stored digests for the items of a run, plus the change decision.

    Decision table:

    ==========================  ==================  =====================
    condition                   state               action
    ==========================  ==================  =====================
    no prior record             NEW / SUPPRESSED    index (or delete)
    force, or index differs     CHANGED/SUPPRESSED  index (or delete)
    only data digest differs    DATA_ONLY_CHANGED   commit only
    both match                  UNCHANGED           touch timestamp
    ==========================  ==================  =====================

    A prior record with no data digest counts as a data change.
    """

    def __init__(self, prior: Optional[Dict[str, PriorState]] = None):
        self._prior: Dict[str, PriorState] = dict(prior or {})
        self._lock = threading.Lock()

    def get(self, item_id: str) -> Optional[PriorState]:
        with self._lock:
            return self._prior.get(item_id)

    def __contains__(self, item_id: str) -> bool:
        return self.get(item_id) is not None

    def decide(
        self, item_id: str, index_digest: str, data_digest: str, suppressed: bool, force: bool = False
    ) -> ChangeDecision:
        prior = self.get(item_id)
        search_action = ChangeAction.DELETE_AND_COMMIT if suppressed else ChangeAction.INDEX_AND_COMMIT
        if prior is None:
            state = ChangeState.SUPPRESSED if suppressed else ChangeState.NEW
            return ChangeDecision(state=state, action=search_action)
        if force or prior.index_digest != index_digest:
            state = ChangeState.SUPPRESSED if suppressed else ChangeState.CHANGED
            return ChangeDecision(state=state, action=search_action)
        if prior.data_digest != data_digest:
            return ChangeDecision(state=ChangeState.DATA_ONLY_CHANGED, action=ChangeAction.COMMIT_ONLY)
        return ChangeDecision(state=ChangeState.UNCHANGED, action=ChangeAction.SKIP)

    def record(self, item_id: str, index_digest: Optional[str], data_digest: str, last_indexed) -> None:
        """Remember digests that were committed, so later decisions in this run see them."""
        with self._lock:
            self._prior[item_id] = PriorState(
                index_digest=index_digest, data_digest=data_digest, last_indexed=last_indexed
            )
