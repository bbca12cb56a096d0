"""One-time hand-off of a confirmed deal to the confirmation collaborator."""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Set

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DealRecord:
    proposal_id: str
    from_company_id: str
    to_company_id: str
    terms: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PartyIdentity:
    company_id: str
    company_name: str
    email: str = ""


class ConfirmationSender(Protocol):
    def send_deal_confirmation(
        self,
        recipient: PartyIdentity,
        counterparty: PartyIdentity,
        terms: Dict[str, Any],
        summary: str,
        *,
        proposal_id: Optional[str] = None,
    ) -> Any:
        ...


def build_summary(first: PartyIdentity, second: PartyIdentity, terms: Dict[str, Any]) -> str:
    return (
        f"Deal between {first.company_name} and {second.company_name}. "
        f"Terms: {json.dumps(terms, sort_keys=True, default=str)}"
    )


class DealFinalizer:
    """Notify the parties of a deal exactly once per proposal id.

    Party names and addresses come from the company contexts when available,
    then from the agent registry display names, then from the raw id.  With
    ``notify_scope="self"`` only ``own_company_id`` is notified, which lets
    each peer process confirm to its own company.
    """

    def __init__(
        self,
        sender: ConfirmationSender,
        *,
        contexts: Optional[Any] = None,
        registry: Optional[Any] = None,
        notify_scope: str = "both",
        own_company_id: Optional[str] = None,
    ) -> None:
        if notify_scope not in ("both", "self"):
            raise ValueError("notify_scope must be 'both' or 'self'")
        if notify_scope == "self" and not own_company_id:
            raise ValueError("notify_scope='self' requires own_company_id")
        self.sender = sender
        self.contexts = contexts
        self.registry = registry
        self.notify_scope = notify_scope
        self.own_company_id = own_company_id
        self._finalized: Set[str] = set()
        self._lock = threading.Lock()

    def is_finalized(self, proposal_id: str) -> bool:
        with self._lock:
            return proposal_id in self._finalized

    def _claim(self, proposal_id: str) -> bool:
        with self._lock:
            if proposal_id in self._finalized:
                return False
            self._finalized.add(proposal_id)
            return True

    def identify(self, company_id: str) -> PartyIdentity:
        context = self.contexts.load(company_id) if self.contexts is not None else None
        if context is not None:
            return PartyIdentity(
                company_id=company_id,
                company_name=context.company_name or company_id,
                email=context.email,
            )
        endpoint = self.registry.get(company_id) if self.registry is not None else None
        if endpoint is not None:
            return PartyIdentity(company_id=company_id, company_name=endpoint.display_name)
        return PartyIdentity(company_id=company_id, company_name=company_id)

    def finalize(self, deal: DealRecord) -> bool:
        """Send the confirmations for ``deal``.

        Returns ``False`` without side effects when the proposal was already
        finalized.  A failure for one recipient is logged and does not stop
        the other recipient from being notified.
        """

        if not self._claim(deal.proposal_id):
            logger.info("Deal %s already finalized; skipping", deal.proposal_id)
            return False

        proposer = self.identify(deal.from_company_id)
        counterparty = self.identify(deal.to_company_id)
        summary = build_summary(proposer, counterparty, deal.terms)
        logger.info(
            "Finalizing deal %s between %s and %s",
            deal.proposal_id,
            deal.from_company_id,
            deal.to_company_id,
            extra={"proposal_id": deal.proposal_id},
        )

        pairs = [(proposer, counterparty), (counterparty, proposer)]
        if self.notify_scope == "self":
            pairs = [pair for pair in pairs if pair[0].company_id == self.own_company_id]

        failures: List[str] = []
        for recipient, other in pairs:
            try:
                self.sender.send_deal_confirmation(
                    recipient,
                    other,
                    dict(deal.terms),
                    summary,
                    proposal_id=deal.proposal_id,
                )
            except Exception:
                logger.exception(
                    "Deal confirmation for %s on proposal %s failed",
                    recipient.company_id,
                    deal.proposal_id,
                )
                failures.append(recipient.company_id)
        if failures:
            logger.warning(
                "Deal %s finalized with undelivered confirmations: %s",
                deal.proposal_id,
                ", ".join(failures),
            )
        return True
