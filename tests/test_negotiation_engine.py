import itertools
import os
import sys
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from agents.registry import AgentRegistry
from services.deal_errors import NotAPartyError, NotFoundError, ValidationError
from services.deal_finalizer import DealFinalizer
from services.negotiation_engine import (
    FINALIZE,
    MESSAGE_ALREADY_CONFIRMED,
    MESSAGE_DEAL_MADE,
    MESSAGE_RECORDED,
    PUSH_ACCEPTANCE,
    NegotiationEngine,
    next_status,
    plan_acceptance,
)
from services.proposal_store import Proposal, ProposalStatus, ProposalStore


class RecordingSender:
    def __init__(self):
        self.calls = []
        self._lock = threading.Lock()

    def send_deal_confirmation(self, recipient, counterparty, terms, summary, *, proposal_id=None):
        with self._lock:
            self.calls.append(
                {
                    "recipient": recipient.company_id,
                    "counterparty": counterparty.company_id,
                    "terms": terms,
                    "summary": summary,
                    "proposal_id": proposal_id,
                }
            )


class RecordingNotifier:
    def __init__(self):
        self.proposals = []
        self.acceptances = []

    def push_proposal(self, endpoint, proposal):
        self.proposals.append((endpoint.company_id, proposal.id, dict(proposal.terms)))

    def push_acceptance(self, endpoint, proposal_id, accepted_by):
        self.acceptances.append((endpoint.company_id, proposal_id, accepted_by))


def _hub_engine(sender=None):
    sender = sender or RecordingSender()
    return NegotiationEngine(ProposalStore(), finalizer=DealFinalizer(sender)), sender


def _peer_engine(company_id="A", counterpart="B"):
    registry = AgentRegistry.from_mapping(
        {counterpart: {"url": f"http://{counterpart.lower()}.local", "company_name": counterpart}}
    )
    notifier = RecordingNotifier()
    sender = RecordingSender()
    engine = NegotiationEngine(
        ProposalStore(),
        company_id=company_id,
        registry=registry,
        notifier=notifier,
        finalizer=DealFinalizer(sender),
    )
    return engine, notifier, sender


@pytest.mark.parametrize(
    "current, is_from, is_to, expected",
    [
        (ProposalStatus.PENDING, True, False, ProposalStatus.ACCEPTED_BY_FROM),
        (ProposalStatus.PENDING, False, True, ProposalStatus.ACCEPTED_BY_TO),
        (ProposalStatus.ACCEPTED_BY_FROM, False, True, ProposalStatus.ACCEPTED_BY_BOTH),
        (ProposalStatus.ACCEPTED_BY_FROM, True, False, ProposalStatus.ACCEPTED_BY_FROM),
        (ProposalStatus.ACCEPTED_BY_TO, True, False, ProposalStatus.ACCEPTED_BY_BOTH),
        (ProposalStatus.ACCEPTED_BY_TO, False, True, ProposalStatus.ACCEPTED_BY_TO),
        (ProposalStatus.ACCEPTED_BY_BOTH, True, False, ProposalStatus.ACCEPTED_BY_BOTH),
        (ProposalStatus.ACCEPTED_BY_BOTH, False, True, ProposalStatus.ACCEPTED_BY_BOTH),
    ],
)
def test_transition_table(current, is_from, is_to, expected):
    assert next_status(current, is_from=is_from, is_to=is_to) is expected


def test_plan_acceptance_effects_are_pure():
    proposal = Proposal(id="p", from_company_id="A", to_company_id="B", status=ProposalStatus.ACCEPTED_BY_TO)

    result = plan_acceptance(proposal, "A", push=True)

    assert proposal.status is ProposalStatus.ACCEPTED_BY_TO
    assert result.status is ProposalStatus.ACCEPTED_BY_BOTH
    assert [effect.kind for effect in result.effects] == [PUSH_ACCEPTANCE, FINALIZE]
    assert result.effects[0].target == "B"

    no_push = plan_acceptance(proposal, "A", push=False)
    assert [effect.kind for effect in no_push.effects] == [FINALIZE]

    repeat = plan_acceptance(proposal, "B", push=True)
    assert repeat.effects == ()
    assert not repeat.changed


def test_deal_scenario_finalizes_exactly_once():
    engine, sender = _hub_engine()

    proposed = engine.propose("A", "B", {"amount": 100})
    pid = proposed["proposal_id"]
    assert proposed["status"] == "pending"

    first = engine.accept(pid, "B")
    assert first["status"] == "accepted_by_to"
    assert first["message"] == MESSAGE_RECORDED

    second = engine.accept(pid, "A")
    assert second["status"] == "accepted_by_both"
    assert second["message"] == MESSAGE_DEAL_MADE
    assert [call["recipient"] for call in sender.calls] == ["A", "B"]
    assert all(call["terms"] == {"amount": 100} for call in sender.calls)
    assert all(call["proposal_id"] == pid for call in sender.calls)

    repeat = engine.accept(pid, "A")
    assert repeat["status"] == "accepted_by_both"
    assert repeat["message"] == MESSAGE_ALREADY_CONFIRMED
    assert len(sender.calls) == 2


def test_same_party_repeat_acceptance_is_idempotent():
    engine, sender = _hub_engine()
    pid = engine.propose("A", "B", {})["proposal_id"]

    first = engine.accept(pid, "A")
    second = engine.accept(pid, "A")

    assert first["status"] == second["status"] == "accepted_by_from"
    assert engine.status(pid)["status"] == "accepted_by_from"
    assert sender.calls == []


def test_status_never_decreases_and_needs_both_parties():
    order = {"pending": 0, "accepted_by_from": 1, "accepted_by_to": 1, "accepted_by_both": 2}
    for sequence in itertools.product(["A", "B", "C"], repeat=4):
        engine, sender = _hub_engine()
        pid = engine.propose("A", "B", {"amount": 1})["proposal_id"]
        seen = set()
        last = 0
        for actor in sequence:
            try:
                engine.accept(pid, actor)
                seen.add(actor)
            except NotAPartyError:
                pass
            current = engine.status(pid)["status"]
            assert order[current] >= last
            last = order[current]
            if current == "accepted_by_both":
                assert seen == {"A", "B"}
        assert len(sender.calls) in (0, 2)


def test_unknown_id_raises_not_found():
    engine, _ = _hub_engine()

    with pytest.raises(NotFoundError):
        engine.accept("missing", "A")
    with pytest.raises(NotFoundError):
        engine.status("missing")


def test_non_party_acceptance_leaves_status_unchanged():
    engine, _ = _hub_engine()
    pid = engine.propose("A", "B", {})["proposal_id"]
    engine.accept(pid, "B")

    with pytest.raises(NotAPartyError):
        engine.accept(pid, "unrelated-id")

    assert engine.status(pid)["status"] == "accepted_by_to"


@pytest.mark.parametrize(
    "from_id, to_id, terms",
    [
        ("A", "", {}),
        ("A", None, {}),
        ("", "B", {}),
        ("A", "A", {}),
        ("A", "B", ["not", "a", "mapping"]),
    ],
)
def test_hub_propose_validation(from_id, to_id, terms):
    engine, _ = _hub_engine()

    with pytest.raises(ValidationError):
        engine.propose(from_id, to_id, terms)


def test_accept_requires_ids():
    engine, _ = _hub_engine()

    with pytest.raises(ValidationError):
        engine.accept("", "A")
    with pytest.raises(ValidationError):
        engine.accept("p", None)


def test_terms_are_copied_at_creation():
    engine, _ = _hub_engine()
    terms = {"amount": 100}
    pid = engine.propose("A", "B", terms)["proposal_id"]

    terms["amount"] = 1
    view = engine.status(pid)
    view["terms"]["amount"] = 2

    assert engine.status(pid)["terms"] == {"amount": 100}


def test_peer_propose_pushes_to_counterpart():
    engine, notifier, _ = _peer_engine()

    result = engine.propose(None, "B", {"amount": 100})

    assert notifier.proposals == [("B", result["proposal_id"], {"amount": 100})]
    assert engine.status(result["proposal_id"])["from"] == "A"


@pytest.mark.parametrize("from_id, to_id", [("C", "B"), ("A", "unknown"), ("A", "A"), ("A", "")])
def test_peer_propose_validation(from_id, to_id):
    engine, notifier, _ = _peer_engine()

    with pytest.raises(ValidationError):
        engine.propose(from_id, to_id, {})
    assert notifier.proposals == []


def test_peer_propose_survives_push_scheduling_failure():
    engine, notifier, _ = _peer_engine()

    def _broken(*_args, **_kwargs):
        raise RuntimeError("executor closed")

    notifier.push_proposal = _broken

    result = engine.propose("A", "B", {})
    assert engine.status(result["proposal_id"])["status"] == "pending"


def test_peer_accept_pushes_only_on_status_change():
    engine, notifier, _ = _peer_engine()
    pid = engine.propose("A", "B", {})["proposal_id"]

    engine.accept(pid, "A")
    engine.accept(pid, "A")

    assert notifier.acceptances == [("B", pid, "A")]


def test_concurrent_same_party_accepts_apply_once():
    engine, notifier, sender = _peer_engine()
    pid = engine.propose("A", "B", {"amount": 100})["proposal_id"]
    barrier = threading.Barrier(50)

    def _accept():
        barrier.wait()
        return engine.accept(pid, "A")

    with ThreadPoolExecutor(max_workers=50) as pool:
        results = list(pool.map(lambda _: _accept(), range(50)))

    assert {result["status"] for result in results} == {"accepted_by_from"}
    assert len(notifier.acceptances) == 1
    assert engine.status(pid)["status"] == "accepted_by_from"
    assert sender.calls == []


def test_concurrent_counterparty_accepts_finalize_once():
    engine, sender = _hub_engine()
    pid = engine.propose("A", "B", {"amount": 100})["proposal_id"]
    engine.accept(pid, "A")
    barrier = threading.Barrier(20)

    def _accept():
        barrier.wait()
        return engine.accept(pid, "B")

    with ThreadPoolExecutor(max_workers=20) as pool:
        results = list(pool.map(lambda _: _accept(), range(20)))

    assert {result["status"] for result in results} == {"accepted_by_both"}
    assert [result["message"] for result in results].count(MESSAGE_DEAL_MADE) == 1
    assert len(sender.calls) == 2


def test_finalizer_failure_does_not_break_accept():
    class ExplodingFinalizer:
        def finalize(self, deal):
            raise RuntimeError("boom")

    engine = NegotiationEngine(ProposalStore(), finalizer=ExplodingFinalizer())
    pid = engine.propose("A", "B", {})["proposal_id"]
    engine.accept(pid, "A")

    assert engine.accept(pid, "B")["status"] == "accepted_by_both"


def test_list_bots_in_peer_mode_excludes_self():
    registry = AgentRegistry.from_mapping(
        {
            "A": {"url": "http://a.local", "company_name": "Alpha"},
            "B": {"url": "http://b.local", "company_name": "Beta"},
        }
    )
    engine = NegotiationEngine(ProposalStore(), company_id="A", registry=registry)

    assert engine.list_bots() == {"bots": [{"id": "B", "company_name": "Beta"}]}


def test_hub_mode_rejects_peer_events():
    engine, _ = _hub_engine()

    with pytest.raises(ValidationError):
        engine.receive_proposal("p", "A", "B", {})
    with pytest.raises(ValidationError):
        engine.receive_acceptance("p", "A")


def test_peer_accept_only_as_own_company():
    engine, notifier, _ = _peer_engine()
    pid = engine.propose("A", "B", {})["proposal_id"]

    with pytest.raises(NotAPartyError):
        engine.accept(pid, "B")

    assert engine.status(pid)["status"] == "pending"
    assert notifier.acceptances == []
