"""In-memory proposal records with per-proposal locking."""

from __future__ import annotations

import copy
import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ProposalStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED_BY_FROM = "accepted_by_from"
    ACCEPTED_BY_TO = "accepted_by_to"
    ACCEPTED_BY_BOTH = "accepted_by_both"

    @property
    def rank(self) -> int:
        """Position in the acceptance order; single-sided states share a rank."""

        if self is ProposalStatus.PENDING:
            return 0
        if self is ProposalStatus.ACCEPTED_BY_BOTH:
            return 2
        return 1

    @property
    def is_terminal(self) -> bool:
        return self is ProposalStatus.ACCEPTED_BY_BOTH


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Proposal:
    """One party's local copy of a proposal.

    ``id``, the two company ids and ``terms`` never change after creation;
    only ``status`` (and ``updated_at``) move, and only through
    :meth:`ProposalStore.update`.
    """

    id: str
    from_company_id: str
    to_company_id: str
    terms: Dict[str, Any] = field(default_factory=dict)
    status: ProposalStatus = ProposalStatus.PENDING
    origin: str = "local"
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    def is_party(self, company_id: Optional[str]) -> bool:
        return bool(company_id) and company_id in (self.from_company_id, self.to_company_id)

    def counterparty_of(self, company_id: str) -> Optional[str]:
        if company_id == self.from_company_id:
            return self.to_company_id
        if company_id == self.to_company_id:
            return self.from_company_id
        return None

    def copy(self) -> "Proposal":
        return replace(self, terms=copy.deepcopy(self.terms))

    def to_view(self) -> Dict[str, Any]:
        return {
            "proposal_id": self.id,
            "status": self.status.value,
            "from": self.from_company_id,
            "to": self.to_company_id,
            "terms": copy.deepcopy(self.terms),
        }


class ProposalStore:
    """Keyed map of :class:`Proposal` records shared by concurrent handlers.

    The map itself is guarded by a short store-level lock; each record has its
    own lock so read-modify-write transitions on one id serialize while
    different ids proceed in parallel.
    """

    def __init__(self) -> None:
        self._records: Dict[str, Proposal] = {}
        self._record_locks: Dict[str, threading.Lock] = {}
        self._lock = threading.Lock()

    def __contains__(self, proposal_id: object) -> bool:
        with self._lock:
            return proposal_id in self._records

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def add(self, proposal: Proposal) -> Tuple[Proposal, bool]:
        """Insert ``proposal`` unless its id is already stored.

        Returns a snapshot of the stored record and whether it was created.
        """

        stored = proposal.copy()
        with self._lock:
            existing = self._records.get(stored.id)
            if existing is not None:
                record_lock = self._record_locks[stored.id]
            else:
                self._records[stored.id] = stored
                self._record_locks[stored.id] = threading.Lock()
                logger.debug("Stored proposal %s (%s)", stored.id, stored.origin)
                return stored.copy(), True
        with record_lock:
            return existing.copy(), False

    def get(self, proposal_id: str) -> Optional[Proposal]:
        """Return a snapshot of the record, or ``None`` when unknown."""

        with self._lock:
            record = self._records.get(proposal_id)
            record_lock = self._record_locks.get(proposal_id)
        if record is None or record_lock is None:
            return None
        with record_lock:
            return record.copy()

    def update(self, proposal_id: str, mutator: Callable[[Proposal], T]) -> T:
        """Run ``mutator`` on the live record while holding its lock.

        Raises :class:`KeyError` when ``proposal_id`` is unknown. The mutator
        must stay free of I/O; it is the critical section.
        """

        with self._lock:
            record = self._records.get(proposal_id)
            record_lock = self._record_locks.get(proposal_id)
        if record is None or record_lock is None:
            raise KeyError(proposal_id)
        with record_lock:
            previous = record.status
            result = mutator(record)
            if record.status is not previous and record.status.rank <= previous.rank:
                attempted = record.status
                record.status = previous
                raise ValueError(
                    f"Proposal {proposal_id} cannot move from {previous.value} to {attempted.value}"
                )
            if record.status is not previous:
                record.updated_at = _utcnow()
            return result
