"""Deal RPC routes shared by the hub relay and the peer agents."""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Tuple, Type

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from pydantic import ValidationError as PayloadValidationError

from api.models.deals import (
    AcceptDealParams,
    DealMadeRequest,
    DealRequest,
    ListBotsParams,
    ProposalStatusParams,
    ProposeParams,
)
from services.deal_errors import DealError, NotAPartyError, NotFoundError, ValidationError
from services.deal_finalizer import DealRecord, DealFinalizer
from services.negotiation_engine import NegotiationEngine

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Deals"])

_STATUS_BY_CODE = {
    ValidationError.code: status.HTTP_400_BAD_REQUEST,
    NotAPartyError.code: status.HTTP_403_FORBIDDEN,
    NotFoundError.code: status.HTTP_404_NOT_FOUND,
}


def deal_error_response(exc: DealError) -> JSONResponse:
    return JSONResponse(
        status_code=_STATUS_BY_CODE.get(exc.code, status.HTTP_400_BAD_REQUEST),
        content=exc.to_payload(),
    )


def get_engine(request: Request) -> NegotiationEngine:
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Negotiation engine is not available.",
        )
    return engine


def get_finalizer(request: Request) -> DealFinalizer:
    finalizer = getattr(request.app.state, "finalizer", None)
    if finalizer is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Deal finalizer is not available.",
        )
    return finalizer


def _list_bots(engine: NegotiationEngine, _params: ListBotsParams) -> Dict[str, Any]:
    return engine.list_bots()


def _propose(engine: NegotiationEngine, params: ProposeParams) -> Dict[str, Any]:
    return engine.propose(params.from_company_id, params.to_company_id, params.terms)


def _accept_deal(engine: NegotiationEngine, params: AcceptDealParams) -> Dict[str, Any]:
    as_company_id = params.as_company_id or engine.company_id
    return engine.accept(params.proposal_id, as_company_id)


def _get_proposal_status(engine: NegotiationEngine, params: ProposalStatusParams) -> Dict[str, Any]:
    return engine.status(params.proposal_id)


_METHODS: Dict[str, Tuple[Type[BaseModel], Callable[..., Dict[str, Any]]]] = {
    "list_bots": (ListBotsParams, _list_bots),
    "propose": (ProposeParams, _propose),
    "accept_deal": (AcceptDealParams, _accept_deal),
    "get_proposal_status": (ProposalStatusParams, _get_proposal_status),
}


@router.get("/health")
def health(request: Request) -> Dict[str, Any]:
    engine = getattr(request.app.state, "engine", None)
    return {
        "ok": engine is not None,
        "company_id": getattr(engine, "company_id", None),
        "mode": "peer" if getattr(engine, "peer_mode", False) else "hub",
    }


@router.post("/deal")
def deal_rpc(payload: DealRequest, engine: NegotiationEngine = Depends(get_engine)):
    """Dispatch ``list_bots``, ``propose``, ``accept_deal`` and ``get_proposal_status``."""

    method = payload.method.strip()
    entry = _METHODS.get(method)
    if entry is None:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error": f"Unknown method: {method}", "code": "unknown_method"},
        )
    params_model, handler = entry
    try:
        params = params_model.model_validate(payload.params)
    except PayloadValidationError as exc:
        first = exc.errors()[0] if exc.errors() else {}
        field = ".".join(str(part) for part in first.get("loc", ())) or "params"
        return deal_error_response(
            ValidationError(f"Invalid {field}: {first.get('msg', 'malformed value')}")
        )

    logger.info("Deal RPC %s", method, extra={"method": method})
    try:
        return handler(engine, params)
    except DealError as exc:
        logger.info("Deal RPC %s rejected: %s", method, exc.message)
        return deal_error_response(exc)


@router.get("/proposals/{proposal_id}")
def get_proposal(proposal_id: str, engine: NegotiationEngine = Depends(get_engine)):
    try:
        return engine.status(proposal_id)
    except DealError as exc:
        return deal_error_response(exc)


@router.post("/deal_made")
def deal_made(payload: DealMadeRequest, finalizer: DealFinalizer = Depends(get_finalizer)):
    """Webhook for agents reporting a deal that reached ``accepted_by_both``."""

    deal = DealRecord(
        proposal_id=payload.proposal_id,
        from_company_id=payload.from_company_id,
        to_company_id=payload.to_company_id,
        terms=dict(payload.terms),
    )
    if finalizer.finalize(deal):
        return {"ok": True, "message": "Deal recorded and emails sent."}
    return {"ok": True, "message": "Deal already recorded."}
