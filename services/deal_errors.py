"""Error taxonomy shared by the negotiation services and the HTTP layer."""

from __future__ import annotations

from typing import Any, Dict, Optional


class DealError(RuntimeError):
    """Base class for errors reported synchronously to a deal caller."""

    code = "deal_error"

    def __init__(self, message: str, *, proposal_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.proposal_id = proposal_id

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.message, "code": self.code}
        if self.proposal_id:
            payload["proposal_id"] = self.proposal_id
        return payload


class ValidationError(DealError):
    """Raised for malformed or missing fields and unknown targets."""

    code = "validation_error"


class NotFoundError(DealError):
    """Raised when no local proposal exists for the requested id."""

    code = "not_found"


class NotAPartyError(DealError):
    """Raised when the acting company is neither side of a proposal."""

    code = "not_a_party"


class AgentNotFoundError(LookupError):
    """Raised by the agent registry for an unknown company id."""

    def __init__(self, company_id: str) -> None:
        super().__init__(f"No agent registered for company '{company_id}'")
        self.company_id = company_id


class EmailDeliveryError(RuntimeError):
    """Raised when a deal confirmation email could not be delivered."""
