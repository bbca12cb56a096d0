"""Inbound notifications pushed by the counterpart agent."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse

from api.models.deals import PeerAcceptanceNotification, PeerProposalNotification
from api.routers.deals import deal_error_response, get_engine
from services.deal_errors import DealError
from services.negotiation_engine import NegotiationEngine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/peer", tags=["Peer"])


def _hub_mode_response() -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_404_NOT_FOUND,
        content={"error": "Peer notifications are disabled in hub mode", "code": "not_found"},
    )


@router.post("/proposals")
def receive_proposal(
    payload: PeerProposalNotification,
    request: Request,
    engine: NegotiationEngine = Depends(get_engine),
):
    if not engine.peer_mode:
        return _hub_mode_response()
    sender = getattr(request.state, "company_id", None)
    logger.info(
        "Proposal %s pushed by %s", payload.proposal_id, sender or payload.from_company_id
    )
    try:
        return engine.receive_proposal(
            payload.proposal_id,
            payload.from_company_id,
            payload.to_company_id,
            payload.terms,
        )
    except DealError as exc:
        return deal_error_response(exc)


@router.post("/acceptances")
def receive_acceptance(
    payload: PeerAcceptanceNotification,
    engine: NegotiationEngine = Depends(get_engine),
):
    if not engine.peer_mode:
        return _hub_mode_response()
    logger.info("Acceptance of %s pushed for %s", payload.proposal_id, payload.accepted_by)
    try:
        return engine.receive_acceptance(payload.proposal_id, payload.accepted_by)
    except DealError as exc:
        return deal_error_response(exc)
