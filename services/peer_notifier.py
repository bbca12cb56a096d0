"""Best-effort push of proposal events to the counterpart's deal agent."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Dict, List, Mapping, Optional, Union

import requests

from agents.registry import AgentEndpoint
from services.proposal_store import Proposal

logger = logging.getLogger(__name__)

PROPOSALS_PATH = "/peer/proposals"
ACCEPTANCES_PATH = "/peer/acceptances"


class PeerNotifier:
    """Issue one-way notifications to another agent process.

    Each push is a single ``POST`` run on a background thread so the calling
    transition never waits on the network.  Every counterpart gets its own
    single-worker lane: pushes to one company are sent in submission order, so
    an acceptance never overtakes the proposal it refers to.  There is no retry
    and no acknowledgement: a failed push is logged and dropped, and the two
    copies of the proposal stay diverged until some later push succeeds.
    """

    def __init__(
        self,
        *,
        sender_id: Optional[str] = None,
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.sender_id = sender_id
        self.timeout = timeout
        self._session = session or requests.Session()
        self._lanes: Dict[str, ThreadPoolExecutor] = {}
        self._lanes_lock = threading.Lock()
        self._closed = False

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.sender_id:
            headers["X-Company-ID"] = self.sender_id
        return headers

    def push_proposal(
        self, endpoint: AgentEndpoint, proposal: Union[Proposal, Mapping[str, Any]]
    ) -> "Future[bool]":
        if isinstance(proposal, Proposal):
            payload = {
                "proposal_id": proposal.id,
                "from_company_id": proposal.from_company_id,
                "to_company_id": proposal.to_company_id,
                "terms": proposal.terms,
            }
        else:
            payload = {
                "proposal_id": proposal.get("proposal_id") or proposal.get("id"),
                "from_company_id": proposal.get("from_company_id") or proposal.get("from"),
                "to_company_id": proposal.get("to_company_id") or proposal.get("to"),
                "terms": proposal.get("terms") or {},
            }
        return self._submit(endpoint, PROPOSALS_PATH, payload, event="proposal")

    def push_acceptance(
        self, endpoint: AgentEndpoint, proposal_id: str, accepted_by: str
    ) -> "Future[bool]":
        payload = {"proposal_id": proposal_id, "accepted_by": accepted_by}
        return self._submit(endpoint, ACCEPTANCES_PATH, payload, event="acceptance")

    def _submit(
        self, endpoint: AgentEndpoint, path: str, payload: Dict[str, Any], *, event: str
    ) -> "Future[bool]":
        url = endpoint.url_for(path)
        logger.debug(
            "Queueing %s push to %s",
            event,
            endpoint.company_id,
            extra={"proposal_id": payload.get("proposal_id"), "url": url},
        )
        return self._lane(endpoint.company_id).submit(
            self._post, url, payload, event, endpoint.company_id
        )

    def _lane(self, company_id: str) -> ThreadPoolExecutor:
        with self._lanes_lock:
            if self._closed:
                raise RuntimeError("PeerNotifier has been shut down")
            lane = self._lanes.get(company_id)
            if lane is None:
                lane = ThreadPoolExecutor(
                    max_workers=1, thread_name_prefix=f"peer-push-{company_id}"
                )
                self._lanes[company_id] = lane
            return lane

    def _post(self, url: str, payload: Dict[str, Any], event: str, target: str) -> bool:
        proposal_id = payload.get("proposal_id")
        try:
            response = self._session.post(
                url, json=payload, headers=self._headers(), timeout=self.timeout
            )
            response.raise_for_status()
        except requests.HTTPError as exc:
            status_code = exc.response.status_code if exc.response is not None else None
            logger.warning(
                "Peer %s push for proposal %s to %s rejected with HTTP %s",
                event,
                proposal_id,
                target,
                status_code,
            )
            return False
        except requests.RequestException as exc:
            logger.warning(
                "Peer %s push for proposal %s to %s failed: %s",
                event,
                proposal_id,
                target,
                exc,
            )
            return False
        logger.info("Delivered %s for proposal %s to %s", event, proposal_id, target)
        return True

    def shutdown(self, wait: bool = True) -> None:
        with self._lanes_lock:
            self._closed = True
            lanes: List[ThreadPoolExecutor] = list(self._lanes.values())
            self._lanes.clear()
        for lane in lanes:
            lane.shutdown(wait=wait)
        self._session.close()
