import json
import os
import sys

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from agents.registry import AgentRegistry
from api.routers import deals, peer
from config.settings import Settings
from services.deal_finalizer import DealFinalizer
from services.negotiation_engine import NegotiationEngine
from services.proposal_store import ProposalStore


class DummySender:
    def __init__(self):
        self.calls = []

    def send_deal_confirmation(self, recipient, counterparty, terms, summary, *, proposal_id=None):
        self.calls.append((recipient.company_id, counterparty.company_id, proposal_id))


class DummyNotifier:
    def __init__(self):
        self.events = []

    def push_proposal(self, endpoint, proposal):
        self.events.append(("proposal", endpoint.company_id, proposal.id))

    def push_acceptance(self, endpoint, proposal_id, accepted_by):
        self.events.append(("acceptance", endpoint.company_id, proposal_id, accepted_by))


def _app(engine=None, finalizer=None):
    app = FastAPI()
    app.include_router(deals.router)
    app.include_router(peer.router)
    app.state.engine = engine
    app.state.finalizer = finalizer
    return app


@pytest.fixture
def hub():
    sender = DummySender()
    finalizer = DealFinalizer(sender)
    engine = NegotiationEngine(ProposalStore(), finalizer=finalizer)
    return TestClient(_app(engine, finalizer)), sender


@pytest.fixture
def alpha_peer():
    registry = AgentRegistry.from_mapping({"beta": {"url": "http://beta.local", "company_name": "Beta"}})
    notifier = DummyNotifier()
    sender = DummySender()
    finalizer = DealFinalizer(sender, registry=registry)
    engine = NegotiationEngine(
        ProposalStore(), company_id="alpha", registry=registry, notifier=notifier, finalizer=finalizer
    )
    return TestClient(_app(engine, finalizer)), notifier, sender


def _rpc(client, method, params=None):
    return client.post("/deal", json={"method": method, "params": params or {}})


def test_hub_deal_flow(hub):
    client, sender = hub

    created = _rpc(client, "propose", {"from_company_id": "A", "to_company_id": "B", "terms": {"amount": 100}})
    assert created.status_code == 200
    pid = created.json()["proposal_id"]

    assert _rpc(client, "accept_deal", {"proposal_id": pid, "as_company_id": "B"}).json()["status"] == "accepted_by_to"
    done = _rpc(client, "accept_deal", {"proposal_id": pid, "as_company_id": "A"}).json()
    assert done == {
        "proposal_id": pid,
        "status": "accepted_by_both",
        "message": "Deal made. Both parties will receive an email.",
    }
    again = _rpc(client, "accept_deal", {"proposal_id": pid, "as_company_id": "A"}).json()
    assert again["message"] == "Deal already confirmed."
    assert len(sender.calls) == 2

    status_view = _rpc(client, "get_proposal_status", {"proposal_id": pid}).json()
    assert status_view["from"] == "A"
    assert status_view["terms"] == {"amount": 100}
    assert client.get(f"/proposals/{pid}").json() == status_view


@pytest.mark.parametrize(
    "method, params, status_code, code",
    [
        ("propose", {"from_company_id": "A"}, 400, "validation_error"),
        ("propose", {"from_company_id": "A", "to_company_id": "B", "terms": "cheap"}, 400, "validation_error"),
        ("accept_deal", {"proposal_id": "missing", "as_company_id": "A"}, 404, "not_found"),
        ("get_proposal_status", {"proposal_id": "missing"}, 404, "not_found"),
        ("accept_deal", {"as_company_id": "A"}, 400, "validation_error"),
        ("teleport", {}, 400, "unknown_method"),
    ],
)
def test_rpc_error_mapping(hub, method, params, status_code, code):
    client, _ = hub

    response = _rpc(client, method, params)

    assert response.status_code == status_code
    body = response.json()
    assert body["code"] == code
    assert body["error"]


def test_not_a_party_maps_to_forbidden(hub):
    client, _ = hub
    pid = _rpc(client, "propose", {"from_company_id": "A", "to_company_id": "B"}).json()["proposal_id"]

    response = _rpc(client, "accept_deal", {"proposal_id": pid, "as_company_id": "C"})

    assert response.status_code == 403
    assert response.json()["code"] == "not_a_party"
    assert _rpc(client, "get_proposal_status", {"proposal_id": pid}).json()["status"] == "pending"


def test_peer_endpoints_are_disabled_in_hub_mode(hub):
    client, _ = hub

    response = client.post(
        "/peer/proposals", json={"proposal_id": "p", "from_company_id": "A", "to_company_id": "B"}
    )
    acceptance = client.post("/peer/acceptances", json={"proposal_id": "p", "accepted_by": "A"})

    assert response.status_code == 404
    assert acceptance.status_code == 404


def test_deal_made_webhook_is_idempotent(hub):
    client, sender = hub
    payload = {"proposal_id": "p-9", "from_company_id": "A", "to_company_id": "B", "terms": {"amount": 5}}

    first = client.post("/deal_made", json=payload)
    second = client.post("/deal_made", json=payload)

    assert first.json() == {"ok": True, "message": "Deal recorded and emails sent."}
    assert second.json() == {"ok": True, "message": "Deal already recorded."}
    assert len(sender.calls) == 2


def test_deal_made_requires_parties(hub):
    client, _ = hub

    response = client.post("/deal_made", json={"proposal_id": "p-9", "from_company_id": " "})

    assert response.status_code == 422


def test_peer_propose_defaults_from_and_pushes(alpha_peer):
    client, notifier, _ = alpha_peer

    response = _rpc(client, "propose", {"to_company_id": "beta", "terms": {"amount": 100}})

    assert response.status_code == 200
    pid = response.json()["proposal_id"]
    assert notifier.events == [("proposal", "beta", pid)]
    assert client.get(f"/proposals/{pid}").json()["from"] == "alpha"


def test_peer_accept_defaults_to_own_company(alpha_peer):
    client, notifier, _ = alpha_peer
    pid = _rpc(client, "propose", {"to_company_id": "beta"}).json()["proposal_id"]

    response = _rpc(client, "accept_deal", {"proposal_id": pid})

    assert response.json()["status"] == "accepted_by_from"
    assert notifier.events[-1] == ("acceptance", "beta", pid, "alpha")


def test_peer_accept_as_counterparty_is_forbidden(alpha_peer):
    client, notifier, _ = alpha_peer
    pid = _rpc(client, "propose", {"to_company_id": "beta"}).json()["proposal_id"]
    notifier.events.clear()

    response = _rpc(client, "accept_deal", {"proposal_id": pid, "as_company_id": "beta"})

    assert response.status_code == 403
    assert response.json()["code"] == "not_a_party"
    assert client.get(f"/proposals/{pid}").json()["status"] == "pending"
    assert notifier.events == []


def test_peer_rejects_unknown_target(alpha_peer):
    client, notifier, _ = alpha_peer

    response = _rpc(client, "propose", {"to_company_id": "gamma"})

    assert response.status_code == 400
    assert notifier.events == []


def test_peer_notifications_mirror_counterpart_state(alpha_peer):
    client, notifier, sender = alpha_peer
    proposal = {"proposal_id": "p-remote", "from_company_id": "beta", "to_company_id": "alpha", "terms": {"amount": 7}}

    assert client.post("/peer/proposals", json=proposal).json()["status"] == "pending"
    assert client.post("/peer/proposals", json=proposal).json()["status"] == "pending"
    accepted = client.post("/peer/acceptances", json={"proposal_id": "p-remote", "accepted_by": "beta"})
    assert accepted.json()["status"] == "accepted_by_from"
    assert notifier.events == []

    final = _rpc(client, "accept_deal", {"proposal_id": "p-remote"}).json()
    assert final["status"] == "accepted_by_both"
    assert notifier.events == [("acceptance", "beta", "p-remote", "alpha")]
    assert len(sender.calls) == 2


def test_peer_notification_errors(alpha_peer):
    client, _, _ = alpha_peer

    stranger = client.post(
        "/peer/proposals", json={"proposal_id": "p", "from_company_id": "x", "to_company_id": "y"}
    )
    unknown = client.post("/peer/acceptances", json={"proposal_id": "nope", "accepted_by": "beta"})

    assert stranger.status_code == 403
    assert unknown.status_code == 404


def test_missing_engine_returns_service_unavailable():
    client = TestClient(_app())

    assert client.post("/deal", json={"method": "list_bots"}).status_code == 503
    assert client.get("/health").json()["ok"] is False


def test_create_app_wires_peer_services(tmp_path):
    from api.main import create_app

    settings = Settings(
        _env_file=None,
        deal_mode="peer",
        company_id="alpha",
        company_name="Alpha Consulting",
        agent_registry=json.dumps({"beta": {"url": "http://beta.local", "company_name": "Beta Labs"}}),
        contexts_dir=str(tmp_path / "contexts"),
        log_dir=str(tmp_path / "logs"),
    )
    app = create_app(settings, sender=DummySender())
    assert app.title == "Deal Agent (Alpha Consulting)"

    with TestClient(app) as client:
        health = client.get("/health", headers={"X-Request-ID": "req-1"})
        assert health.json() == {"ok": True, "company_id": "alpha", "mode": "peer"}
        assert health.headers["X-Request-ID"] == "req-1"
        assert client.get("/health").headers.get("X-Request-ID")
        bots = _rpc(client, "list_bots").json()
        assert bots == {"bots": [{"id": "beta", "company_name": "Beta Labs"}]}
