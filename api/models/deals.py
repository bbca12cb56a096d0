"""Pydantic models for the deal RPC and peer notification endpoints."""

from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _strip_required(value: Any, name: str) -> str:
    if value is None:
        raise ValueError(f"{name} is required")
    if not isinstance(value, str):
        value = str(value)
    text = value.strip()
    if not text:
        raise ValueError(f"{name} must not be empty")
    return text


class DealRequest(BaseModel):
    """``POST /deal`` envelope: ``{"method": ..., "params": {...}}``."""

    method: str = Field(default="", description="RPC method name.")
    params: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("params", mode="before")
    @classmethod
    def _default_params(cls, value: Any) -> Any:
        return {} if value is None else value


class ProposeParams(BaseModel):
    model_config = ConfigDict(extra="ignore")

    from_company_id: Optional[str] = None
    to_company_id: Optional[str] = None
    terms: Optional[Dict[str, Any]] = None


class AcceptDealParams(BaseModel):
    model_config = ConfigDict(extra="ignore")

    proposal_id: Optional[str] = None
    as_company_id: Optional[str] = None


class ProposalStatusParams(BaseModel):
    model_config = ConfigDict(extra="ignore")

    proposal_id: Optional[str] = None


class PeerProposalNotification(BaseModel):
    """Mirrors a proposal created by the counterpart agent."""

    model_config = ConfigDict(extra="ignore")

    proposal_id: str
    from_company_id: str
    to_company_id: str
    terms: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("proposal_id", "from_company_id", "to_company_id", mode="before")
    @classmethod
    def _strip(cls, value: Any, info) -> str:
        return _strip_required(value, info.field_name)

    @field_validator("terms", mode="before")
    @classmethod
    def _default_terms(cls, value: Any) -> Any:
        return {} if value is None else value


class PeerAcceptanceNotification(BaseModel):
    """Acceptance recorded by the counterpart agent."""

    model_config = ConfigDict(extra="ignore")

    proposal_id: str
    accepted_by: str

    @field_validator("proposal_id", "accepted_by", mode="before")
    @classmethod
    def _strip(cls, value: Any, info) -> str:
        return _strip_required(value, info.field_name)


class DealMadeRequest(PeerProposalNotification):
    """Deal reported to the hub webhook by an agent that reached agreement."""


class ListBotsParams(BaseModel):
    model_config = ConfigDict(extra="ignore")
