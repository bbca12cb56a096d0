"""Proposal negotiation protocol: propose, accept and the mirrored peer events.

Every agent process owns one :class:`NegotiationEngine` over its own
:class:`~services.proposal_store.ProposalStore`.  Local calls (``propose``,
``accept``) may push events to the counterpart; events received from the
counterpart (``receive_proposal``, ``receive_acceptance``) only mutate local
state and never push again, so notifications cannot loop.

Transitions are computed by :func:`plan_acceptance`, a pure function that
returns the next status together with the side effects the transition calls
for.  The engine applies the status change inside the record lock and runs
the effects after the lock is released.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from services.deal_errors import (
    AgentNotFoundError,
    NotAPartyError,
    NotFoundError,
    ValidationError,
)
from services.deal_finalizer import DealRecord
from services.proposal_store import Proposal, ProposalStatus, ProposalStore

logger = logging.getLogger(__name__)

PUSH_ACCEPTANCE = "push_acceptance"
FINALIZE = "finalize"

MESSAGE_RECORDED = "Acceptance recorded."
MESSAGE_DEAL_MADE = "Deal made. Both parties will receive an email."
MESSAGE_ALREADY_CONFIRMED = "Deal already confirmed."


@dataclass(frozen=True)
class Effect:
    kind: str
    target: Optional[str] = None


@dataclass(frozen=True)
class TransitionResult:
    previous: ProposalStatus
    status: ProposalStatus
    effects: Tuple[Effect, ...] = ()

    @property
    def changed(self) -> bool:
        return self.status is not self.previous

    @property
    def message(self) -> str:
        if self.previous.is_terminal:
            return MESSAGE_ALREADY_CONFIRMED
        if self.status.is_terminal:
            return MESSAGE_DEAL_MADE
        return MESSAGE_RECORDED


def next_status(current: ProposalStatus, *, is_from: bool, is_to: bool) -> ProposalStatus:
    """Apply one acceptance to ``current``.

    A single-sided acceptance only advances when the *other* party accepts;
    repeated acceptance by the same party and anything after
    ``accepted_by_both`` leave the status unchanged.
    """

    if current is ProposalStatus.PENDING:
        if is_from:
            return ProposalStatus.ACCEPTED_BY_FROM
        if is_to:
            return ProposalStatus.ACCEPTED_BY_TO
    elif current is ProposalStatus.ACCEPTED_BY_FROM and is_to:
        return ProposalStatus.ACCEPTED_BY_BOTH
    elif current is ProposalStatus.ACCEPTED_BY_TO and is_from:
        return ProposalStatus.ACCEPTED_BY_BOTH
    return current


def plan_acceptance(proposal: Proposal, acting_company_id: str, *, push: bool) -> TransitionResult:
    """Compute the transition and its effects without touching ``proposal``."""

    is_from = acting_company_id == proposal.from_company_id
    is_to = acting_company_id == proposal.to_company_id
    previous = proposal.status
    status = next_status(previous, is_from=is_from, is_to=is_to)

    effects: List[Effect] = []
    if status is not previous:
        counterparty = proposal.counterparty_of(acting_company_id)
        if push and counterparty:
            effects.append(Effect(PUSH_ACCEPTANCE, target=counterparty))
        if status.is_terminal:
            effects.append(Effect(FINALIZE))
    return TransitionResult(previous=previous, status=status, effects=tuple(effects))


def _clean(value: Any) -> str:
    return str(value).strip() if value is not None else ""


class NegotiationEngine:
    """State-transition logic for one process's view of its proposals.

    Hub mode (``company_id`` is ``None``) is a single authoritative store with
    no identity checks and no pushes.  Peer mode binds the engine to the
    agent's own company id and resolves counterparts through ``registry``.
    """

    def __init__(
        self,
        store: ProposalStore,
        *,
        company_id: Optional[str] = None,
        registry: Optional[Any] = None,
        notifier: Optional[Any] = None,
        finalizer: Optional[Any] = None,
        contexts: Optional[Any] = None,
        id_factory: Optional[Callable[[], str]] = None,
    ) -> None:
        self.store = store
        self.company_id = _clean(company_id) or None
        self.registry = registry
        self.notifier = notifier
        self.finalizer = finalizer
        self.contexts = contexts
        self._new_id = id_factory or (lambda: str(uuid.uuid4()))

    @property
    def peer_mode(self) -> bool:
        return self.company_id is not None

    # ------------------------------------------------------------------
    # Local operations
    # ------------------------------------------------------------------
    def propose(
        self,
        from_company_id: Optional[str],
        to_company_id: Optional[str],
        terms: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, Any]:
        from_id = _clean(from_company_id)
        to_id = _clean(to_company_id)
        if not to_id:
            raise ValidationError("to_company_id required")
        if terms is None:
            terms = {}
        if not isinstance(terms, Mapping):
            raise ValidationError("terms must be an object")

        endpoint = None
        if self.peer_mode:
            from_id = from_id or self.company_id
            if from_id != self.company_id:
                raise ValidationError(
                    f"This agent can only propose as {self.company_id}, not {from_id}"
                )
            if to_id == self.company_id:
                raise ValidationError("Cannot propose a deal to yourself")
            try:
                endpoint = self._registry().resolve(to_id)
            except AgentNotFoundError as exc:
                raise ValidationError(f"Unknown company: {to_id}") from exc
        else:
            if not from_id:
                raise ValidationError("from_company_id required")
            if from_id == to_id:
                raise ValidationError("from_company_id and to_company_id must differ")

        proposal = Proposal(
            id=self._new_id(),
            from_company_id=from_id,
            to_company_id=to_id,
            terms=dict(terms),
            origin="local",
        )
        stored, _ = self.store.add(proposal)
        logger.info(
            "Proposal %s created: %s -> %s",
            stored.id,
            from_id,
            to_id,
            extra={"proposal_id": stored.id},
        )

        if endpoint is not None and self.notifier is not None:
            try:
                self.notifier.push_proposal(endpoint, stored)
            except Exception:
                logger.exception("Could not schedule proposal push for %s", stored.id)

        return {"proposal_id": stored.id, "status": stored.status.value}

    def accept(self, proposal_id: Optional[str], as_company_id: Optional[str]) -> Dict[str, Any]:
        pid = _clean(proposal_id)
        acting = _clean(as_company_id)
        if not pid or not acting:
            raise ValidationError("proposal_id and as_company_id required")
        if self.peer_mode and acting != self.company_id:
            raise NotAPartyError(
                f"This agent can only accept as {self.company_id}, not {acting}",
                proposal_id=pid,
            )
        result, snapshot = self._transition(pid, acting, push=self.peer_mode)
        self._run_effects(result, snapshot, acting)
        return {
            "proposal_id": pid,
            "status": result.status.value,
            "message": result.message,
        }

    def status(self, proposal_id: Optional[str]) -> Dict[str, Any]:
        pid = _clean(proposal_id)
        proposal = self.store.get(pid) if pid else None
        if proposal is None:
            raise NotFoundError("Proposal not found", proposal_id=pid or None)
        return proposal.to_view()

    def list_bots(self) -> Dict[str, List[Dict[str, str]]]:
        if self.peer_mode:
            return {"bots": self._registry().describe(exclude=self.company_id)}
        if self.contexts is None:
            return {"bots": []}
        return {
            "bots": [
                {"id": context.id, "company_name": context.company_name}
                for context in self.contexts.list_contexts()
            ]
        }

    # ------------------------------------------------------------------
    # Events pushed by the counterpart
    # ------------------------------------------------------------------
    def receive_proposal(
        self,
        proposal_id: Optional[str],
        from_company_id: Optional[str],
        to_company_id: Optional[str],
        terms: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, Any]:
        self._require_peer_mode()
        pid = _clean(proposal_id)
        from_id = _clean(from_company_id)
        to_id = _clean(to_company_id)
        if not pid or not from_id or not to_id:
            raise ValidationError("proposal_id, from_company_id and to_company_id required")
        if terms is not None and not isinstance(terms, Mapping):
            raise ValidationError("terms must be an object")
        if self.company_id not in (from_id, to_id):
            raise NotAPartyError(
                f"{self.company_id} is not a party to proposal {pid}", proposal_id=pid
            )

        stored, created = self.store.add(
            Proposal(
                id=pid,
                from_company_id=from_id,
                to_company_id=to_id,
                terms=dict(terms or {}),
                origin="remote",
            )
        )
        if created:
            logger.info(
                "Mirrored proposal %s from %s", pid, from_id, extra={"proposal_id": pid}
            )
        elif (stored.from_company_id, stored.to_company_id) != (from_id, to_id):
            logger.warning(
                "Duplicate proposal %s with different parties ignored", pid,
                extra={"proposal_id": pid},
            )
        else:
            logger.debug("Duplicate delivery of proposal %s ignored", pid)
        return stored.to_view()

    def receive_acceptance(
        self, proposal_id: Optional[str], accepted_by: Optional[str]
    ) -> Dict[str, Any]:
        self._require_peer_mode()
        pid = _clean(proposal_id)
        acting = _clean(accepted_by)
        if not pid or not acting:
            raise ValidationError("proposal_id and accepted_by required")
        result, snapshot = self._transition(pid, acting, push=False)
        self._run_effects(result, snapshot, acting)
        return {
            "proposal_id": pid,
            "status": result.status.value,
            "message": result.message,
        }

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _registry(self):
        if self.registry is None:
            raise ValidationError("No agent registry configured")
        return self.registry

    def _require_peer_mode(self) -> None:
        if not self.peer_mode:
            raise ValidationError("Peer notifications are not accepted in hub mode")

    def _transition(
        self, proposal_id: str, acting: str, *, push: bool
    ) -> Tuple[TransitionResult, Proposal]:
        def _mutate(record: Proposal) -> Tuple[TransitionResult, Proposal]:
            if not record.is_party(acting):
                raise NotAPartyError(
                    "You are not a party to this proposal", proposal_id=proposal_id
                )
            result = plan_acceptance(record, acting, push=push)
            record.status = result.status
            return result, record.copy()

        try:
            result, snapshot = self.store.update(proposal_id, _mutate)
        except KeyError:
            raise NotFoundError("Proposal not found", proposal_id=proposal_id) from None

        if result.changed:
            logger.info(
                "Proposal %s: %s -> %s (by %s)",
                proposal_id,
                result.previous.value,
                result.status.value,
                acting,
                extra={"proposal_id": proposal_id},
            )
        return result, snapshot

    def _run_effects(self, result: TransitionResult, snapshot: Proposal, acting: str) -> None:
        for effect in result.effects:
            if effect.kind == PUSH_ACCEPTANCE:
                self._push_acceptance(snapshot.id, effect.target, acting)
            elif effect.kind == FINALIZE:
                self._finalize(snapshot)

    def _push_acceptance(self, proposal_id: str, target: Optional[str], acting: str) -> None:
        if self.notifier is None or not target:
            return
        try:
            endpoint = self._registry().resolve(target)
        except (AgentNotFoundError, ValidationError):
            logger.warning(
                "No endpoint for %s; acceptance of %s not pushed", target, proposal_id
            )
            return
        try:
            self.notifier.push_acceptance(endpoint, proposal_id, acting)
        except Exception:
            logger.exception("Could not schedule acceptance push for %s", proposal_id)

    def _finalize(self, snapshot: Proposal) -> None:
        if self.finalizer is None:
            logger.info("Deal %s reached %s; no finalizer configured", snapshot.id, snapshot.status.value)
            return
        deal = DealRecord(
            proposal_id=snapshot.id,
            from_company_id=snapshot.from_company_id,
            to_company_id=snapshot.to_company_id,
            terms=dict(snapshot.terms),
        )
        try:
            self.finalizer.finalize(deal)
        except Exception:
            logger.exception("Finalization of deal %s failed", snapshot.id)
