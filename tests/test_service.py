"""Tests for handshake/service.py -- deal lifecycle end to end on an in-memory store."""

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))
sys.path.insert(0, os.path.dirname(__file__))

import threading

import pytest

from handshake.errors import (
    AlreadyExists, DeadlineExceeded, FailedPrecondition, InvalidArgument, NotFound, PermissionDenied,
    Unauthenticated,
)
from handshake.payments import StubBackend
from handshake.protocol import DealStatus, PaymentStatus
from handshake.service import DealService
from conftest import (
    ADMIN, CREATOR, DAY, PARTICIPANT, STRANGER, active_money_goods_deal, fund_money_goods,
    joined_money_goods_deal, money_goods_deal, money_money_deal,
)


def _status(service, deal_id):
    return service.store.get_deal(deal_id).status


def _events(service, deal_id):
    return [e.event_type for e in service.store.list_audit(deal_id)]


# --- Creation ---

def test_create_money_goods_deal(service, clock):
    created = money_goods_deal(service, clock)
    assert created["status"] == "invited"
    assert created["fee_breakdown"] == {"principal": 10_000, "setup_fee": 500, "total_charge": 12_000}
    assert created["fairness_hold_a"] == 0
    assert created["fairness_hold_b"] == 1_000
    assert created["invite_token"]
    assert created["invite_expires_at"] == clock() + 7 * DAY
    assert _events(service, created["deal_id"]) == ["DEAL_CREATED"]


def test_create_normalizes_legacy_type(service, clock):
    created = service.create_deal(
        CREATOR, {"kind": "MONEY", "principal": 1_000}, {"kind": "MONEY", "principal": 2_000},
        "CASH_CASH", clock() + DAY, "bob@example.com",
    )
    assert service.store.get_deal(created["deal_id"]).deal_type.value == "MONEY_MONEY"
    assert created["fairness_hold_a"] == created["fairness_hold_b"] == 0


def test_create_requires_principal(service, clock):
    with pytest.raises(Unauthenticated):
        service.create_deal(None, {"kind": "MONEY", "principal": 1_000},
                            {"kind": "GOODS", "description": "x", "declared_value": 1_000},
                            "MONEY_GOODS", clock() + DAY, "bob@example.com")


@pytest.mark.parametrize("leg_a, leg_b, deal_type", [
    ({"kind": "MONEY", "principal": 499}, {"kind": "GOODS", "description": "x", "declared_value": 1_000}, "MONEY_GOODS"),
    ({"kind": "MONEY", "principal": 1_000}, {"kind": "GOODS", "description": "", "declared_value": 1_000}, "MONEY_GOODS"),
    ({"kind": "MONEY", "principal": 1_000}, {"kind": "GOODS", "description": "x", "declared_value": 100}, "MONEY_GOODS"),
    ({"kind": "MONEY", "principal": 1_000}, {"kind": "SERVICE", "description": "x", "declared_value": 1_000}, "MONEY_GOODS"),
    ({"kind": "MONEY", "principal": 1_000}, {"kind": "GOODS", "description": "x", "declared_value": 1_000}, "MONEY_CASH"),
    ({"kind": "MONEY", "principal": 10.5}, {"kind": "GOODS", "description": "x", "declared_value": 1_000}, "MONEY_GOODS"),
])
def test_create_rejects_invalid_legs(service, clock, leg_a, leg_b, deal_type):
    with pytest.raises(InvalidArgument):
        service.create_deal(CREATOR, leg_a, leg_b, deal_type, clock() + DAY, "bob@example.com")
    assert service.store.list_deals(CREATOR.id) == []


def test_create_rejects_past_date_and_bad_email(service, clock):
    legs = ({"kind": "MONEY", "principal": 1_000}, {"kind": "MONEY", "principal": 1_000})
    with pytest.raises(InvalidArgument):
        service.create_deal(CREATOR, *legs, "MONEY_MONEY", clock() - 1, "bob@example.com")
    with pytest.raises(InvalidArgument):
        service.create_deal(CREATOR, *legs, "MONEY_MONEY", clock() + DAY, "not-an-email")
    with pytest.raises(InvalidArgument):
        service.create_deal(CREATOR, *legs, "MONEY_MONEY", clock() + DAY, "Alice@Example.com")


# --- Joining ---

def test_accept_invite(service, clock):
    created = money_goods_deal(service, clock)
    result = service.accept_invite(PARTICIPANT, created["invite_token"])
    assert result == {"deal_id": created["deal_id"], "status": "awaiting_funding"}
    deal = service.store.get_deal(created["deal_id"])
    assert deal.participant_id == PARTICIPANT.id


def test_creator_cannot_join_own_deal(service, clock):
    created = money_goods_deal(service, clock)
    with pytest.raises(InvalidArgument):
        service.accept_invite(CREATOR, created["invite_token"])
    assert _status(service, created["deal_id"]) is DealStatus.INVITED


def test_expired_invite(service, clock):
    created = money_goods_deal(service, clock)
    clock.advance(8 * DAY)
    with pytest.raises(DeadlineExceeded):
        service.accept_invite(PARTICIPANT, created["invite_token"])


def test_unknown_token(service):
    with pytest.raises(NotFound):
        service.accept_invite(PARTICIPANT, "no-such-token")


def test_token_is_single_use(service, clock):
    created = money_goods_deal(service, clock)
    service.accept_invite(PARTICIPANT, created["invite_token"])
    with pytest.raises(AlreadyExists):
        service.accept_invite(STRANGER, created["invite_token"])


def test_concurrent_accepts_one_wins(service, clock):
    created = money_goods_deal(service, clock)
    outcomes = []
    barrier = threading.Barrier(2)

    def accept(principal):
        barrier.wait()
        try:
            service.accept_invite(principal, created["invite_token"])
            outcomes.append("ok")
        except AlreadyExists:
            outcomes.append("taken")

    threads = [threading.Thread(target=accept, args=(p,)) for p in (PARTICIPANT, STRANGER)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert sorted(outcomes) == ["ok", "taken"]


def test_reissue_invite(service, clock):
    created = money_goods_deal(service, clock)
    with pytest.raises(PermissionDenied):
        service.reissue_invite(created["deal_id"], PARTICIPANT)
    clock.advance(8 * DAY)
    fresh = service.reissue_invite(created["deal_id"], CREATOR)
    assert fresh["invite_token"] != created["invite_token"]
    with pytest.raises(NotFound):
        service.accept_invite(PARTICIPANT, created["invite_token"])
    service.accept_invite(PARTICIPANT, fresh["invite_token"])
    with pytest.raises(FailedPrecondition):
        service.reissue_invite(created["deal_id"], CREATOR)


# --- Funding ---

def test_partial_funding_does_not_activate(service, clock):
    deal_id = joined_money_goods_deal(service, clock)
    service.record_payment_succeeded(deal_id, "A", "SETUP_FEE", 500, payment_ref="r1")
    service.record_payment_succeeded(deal_id, "B", "SETUP_FEE", 500, payment_ref="r2")
    result = service.record_payment_succeeded(deal_id, "A", "CONTRIBUTION", 10_000, payment_ref="r3")
    assert result["activated"] is False
    assert _status(service, deal_id) is DealStatus.AWAITING_FUNDING
    outstanding = service.get_deal(deal_id, CREATOR)["outstanding"]
    assert outstanding == [{"party": "B", "purpose": "FAIRNESS_HOLD", "amount": 1_000}]


def test_full_funding_activates(service, clock):
    deal_id = joined_money_goods_deal(service, clock)
    result = fund_money_goods(service, deal_id)
    assert result["activated"] is True
    assert result["deal_status"] == "active"
    deal = service.store.get_deal(deal_id)
    assert deal.activated_at == clock()
    assert _events(service, deal_id)[-1] == "DEAL_ACTIVATED"


def test_money_money_needs_both_contributions(service, clock):
    created = money_money_deal(service, clock)
    service.accept_invite(PARTICIPANT, created["invite_token"])
    deal_id = created["deal_id"]
    service.record_payment_succeeded(deal_id, "A", "SETUP_FEE", 500)
    service.record_payment_succeeded(deal_id, "B", "SETUP_FEE", 500)
    service.record_payment_succeeded(deal_id, "A", "CONTRIBUTION", 10_000)
    service.record_payment_succeeded(deal_id, "B", "CONTRIBUTION", 15_000)
    assert _status(service, deal_id) is DealStatus.AWAITING_FUNDING
    # Instalments add up
    result = service.record_payment_succeeded(deal_id, "B", "CONTRIBUTION", 5_000)
    assert result["activated"] is True


def test_payment_webhook_is_idempotent(service, clock):
    deal_id = joined_money_goods_deal(service, clock)
    first = service.record_payment_succeeded(deal_id, "A", "SETUP_FEE", 500, payment_ref="pi_dup")
    second = service.record_payment_succeeded(deal_id, "A", "SETUP_FEE", 500, payment_ref="pi_dup")
    assert second["duplicate"] is True
    assert second["payment_id"] == first["payment_id"]
    assert len(service.store.list_payments(deal_id)) == 1
    assert _events(service, deal_id).count("PAYMENT_COMPLETED") == 1


def test_payment_reference_reused_on_another_deal(service, clock):
    first = joined_money_goods_deal(service, clock)
    second = joined_money_goods_deal(service, clock)
    service.record_payment_succeeded(first, "A", "SETUP_FEE", 500, payment_ref="pi_shared")
    with pytest.raises(InvalidArgument):
        service.record_payment_succeeded(second, "A", "SETUP_FEE", 500, payment_ref="pi_shared")
    with pytest.raises(InvalidArgument):
        service.record_payment_failed(second, "A", "SETUP_FEE", 500, payment_ref="pi_shared")
    assert service.store.list_payments(second) == []


def test_participant_payment_before_join(service, clock):
    created = money_goods_deal(service, clock)
    with pytest.raises(FailedPrecondition):
        service.record_payment_succeeded(created["deal_id"], "B", "SETUP_FEE", 500)
    # The creator may pay early; activation waits for the participant
    service.record_payment_succeeded(created["deal_id"], "A", "SETUP_FEE", 500)
    assert _status(service, created["deal_id"]) is DealStatus.INVITED


def test_payment_validation(service, clock):
    deal_id = joined_money_goods_deal(service, clock)
    with pytest.raises(InvalidArgument):
        service.record_payment_succeeded(deal_id, "A", "CONTRIBUTION", 1_000, principal_portion=1_001)
    with pytest.raises(InvalidArgument):
        service.record_payment_succeeded(deal_id, "C", "SETUP_FEE", 500)
    with pytest.raises(InvalidArgument):
        service.record_payment_succeeded(deal_id, "A", "TIP", 500)
    with pytest.raises(InvalidArgument):
        service.record_payment_succeeded(deal_id, "A", "SETUP_FEE", 0)
    with pytest.raises(NotFound):
        service.record_payment_succeeded("missing", "A", "SETUP_FEE", 500)


def test_failed_payment_is_recorded(service, clock):
    deal_id = joined_money_goods_deal(service, clock)
    service.record_payment_failed(deal_id, "A", "CONTRIBUTION", 10_000, payment_ref="pi_x", reason="card declined")
    payments = service.store.list_payments(deal_id)
    assert payments[0].status is PaymentStatus.FAILED
    assert _status(service, deal_id) is DealStatus.AWAITING_FUNDING
    assert "PAYMENT_FAILED" in _events(service, deal_id)


def test_disputed_payment_freezes_deal(service, clock):
    deal_id = active_money_goods_deal(service, clock)
    result = service.record_payment_disputed(f"pi_{deal_id}_a_contrib", "chargeback")
    assert result["frozen"] is True
    assert _status(service, deal_id) is DealStatus.FROZEN
    dispute = service.store.get_open_dispute(deal_id)
    assert dispute.initiated_by == "system"
    assert service.store.get_payment_by_ref(f"pi_{deal_id}_a_contrib").status is PaymentStatus.DISPUTED


# --- Outcomes ---

def test_release_to_creator_scenario(service, clock, backend):
    deal_id = active_money_goods_deal(service, clock)
    proposed = service.propose_outcome(deal_id, CREATOR, "RELEASE_TO_CREATOR")
    assert proposed["status"] == "outcome_proposed"

    result = service.confirm_outcome(deal_id, PARTICIPANT)
    assert result["status"] == "completed"
    assert result["settlement"]["status"] == "settled"
    assert result["settlement"]["holds"] == {"refund_a": 0, "refund_b": 1_000, "forfeit_a": 0, "forfeit_b": 0}
    assert backend.refunds == [{"payment_ref": f"pi_{deal_id}_b_hold", "amount": 1_000}]
    assert backend.transfers == [{"deal_id": deal_id, "recipient": "alice", "amount": 10_000}]

    deal = service.store.get_deal(deal_id)
    assert deal.final_outcome.value == "RELEASE_TO_CREATOR"
    assert deal.hold_outcome.value == "BOTH_COMPLETED"
    assert deal.completed_at == clock()
    assert _events(service, deal_id)[-2:] == ["OUTCOME_CONFIRMED", "DEAL_COMPLETED"]


def test_cannot_confirm_own_proposal(service, clock):
    deal_id = active_money_goods_deal(service, clock)
    service.propose_outcome(deal_id, CREATOR, "REFUND_BOTH")
    with pytest.raises(InvalidArgument):
        service.confirm_outcome(deal_id, CREATOR)
    assert _status(service, deal_id) is DealStatus.OUTCOME_PROPOSED


def test_confirm_without_proposal(service, clock):
    deal_id = active_money_goods_deal(service, clock)
    with pytest.raises(FailedPrecondition):
        service.confirm_outcome(deal_id, PARTICIPANT)


def test_second_confirm_is_rejected(service, clock, backend):
    deal_id = active_money_goods_deal(service, clock)
    service.propose_outcome(deal_id, CREATOR, "RELEASE_TO_PARTICIPANT")
    service.confirm_outcome(deal_id, PARTICIPANT)
    with pytest.raises(FailedPrecondition):
        service.confirm_outcome(deal_id, PARTICIPANT)
    assert len(backend.transfers) == 1


def test_last_proposal_wins(service, clock, backend):
    deal_id = active_money_goods_deal(service, clock)
    service.propose_outcome(deal_id, PARTICIPANT, "RELEASE_TO_PARTICIPANT")
    service.propose_outcome(deal_id, CREATOR, "REFUND_BOTH")
    service.confirm_outcome(deal_id, PARTICIPANT)
    deal = service.store.get_deal(deal_id)
    assert deal.final_outcome.value == "REFUND_BOTH"
    assert backend.transfers == []
    assert sorted(r["amount"] for r in backend.refunds) == [1_000, 10_000]


def test_stranger_cannot_propose(service, clock):
    deal_id = active_money_goods_deal(service, clock)
    with pytest.raises(PermissionDenied):
        service.propose_outcome(deal_id, STRANGER, "RELEASE_TO_CREATOR")


def test_unknown_outcome(service, clock):
    deal_id = active_money_goods_deal(service, clock)
    with pytest.raises(InvalidArgument):
        service.propose_outcome(deal_id, CREATOR, "SPLIT_IT")


def test_reject_outcome_resumes(service, clock):
    deal_id = active_money_goods_deal(service, clock)
    service.propose_outcome(deal_id, CREATOR, "RELEASE_TO_CREATOR")
    with pytest.raises(InvalidArgument):
        service.reject_outcome(deal_id, CREATOR)
    assert service.reject_outcome(deal_id, PARTICIPANT)["status"] == "active"
    deal = service.store.get_deal(deal_id)
    assert deal.proposed_outcome is None
    assert deal.proposed_by is None


def test_reject_after_deal_date_goes_past_due(service, clock):
    deal_id = active_money_goods_deal(service, clock)
    service.propose_outcome(deal_id, CREATOR, "RELEASE_TO_CREATOR")
    clock.advance(31 * DAY)
    assert service.reject_outcome(deal_id, PARTICIPANT)["status"] == "past_due"


# --- Cancellation ---

def test_cancel_refunds_principal_keeps_setup_fee(service, clock, backend):
    deal_id = joined_money_goods_deal(service, clock)
    service.record_payment_succeeded(deal_id, "A", "SETUP_FEE", 500, payment_ref="pi_setup")
    service.record_payment_succeeded(deal_id, "A", "CONTRIBUTION", 10_000, payment_ref="pi_contrib")

    result = service.cancel_deal(deal_id, CREATOR, "changed my mind")
    assert result["status"] == "cancelled"
    assert result["settlement"]["status"] == "settled"
    assert backend.refunds == [{"payment_ref": "pi_contrib", "amount": 10_000}]
    deal = service.store.get_deal(deal_id)
    assert deal.cancelled_by == CREATOR.id
    assert deal.cancel_reason == "changed my mind"


def test_cancel_with_failing_refund_is_partial(service, clock, backend):
    deal_id = joined_money_goods_deal(service, clock)
    service.record_payment_succeeded(deal_id, "A", "CONTRIBUTION", 10_000, payment_ref="pi_bad")
    service.record_payment_succeeded(deal_id, "B", "FAIRNESS_HOLD", 1_000, payment_ref="pi_good")
    backend.fail_refs.add("pi_bad")

    result = service.cancel_deal(deal_id, PARTICIPANT)
    assert result["status"] == "cancelled"
    assert result["settlement"]["status"] == "partial_failure"
    assert backend.refunds == [{"payment_ref": "pi_good", "amount": 1_000}]


def test_payment_after_cancel_is_refunded(service, clock, backend):
    deal_id = joined_money_goods_deal(service, clock)
    service.cancel_deal(deal_id, CREATOR)

    result = service.record_payment_succeeded(deal_id, "A", "CONTRIBUTION", 10_000, payment_ref="pi_late")
    assert result["deal_status"] == "cancelled"
    assert result["activated"] is False
    assert result["refund"]["status"] == "settled"
    assert backend.refunds == [{"payment_ref": "pi_late", "amount": 10_000}]
    [entry] = service.store.list_ledger(deal_id)
    assert entry.status == "succeeded"
    assert service.store.get_payment_by_ref("pi_late").refunded_amount == 10_000

    # Fees are kept, as on any cancellation
    fee = service.record_payment_succeeded(deal_id, "A", "SETUP_FEE", 500, payment_ref="pi_late_fee")
    assert "refund" not in fee
    assert len(backend.refunds) == 1


def test_payment_after_completion_is_refunded(service, clock, backend):
    deal_id = active_money_goods_deal(service, clock)
    service.propose_outcome(deal_id, CREATOR, "RELEASE_TO_PARTICIPANT")
    service.confirm_outcome(deal_id, PARTICIPANT)

    result = service.record_payment_succeeded(deal_id, "A", "CONTRIBUTION", 2_000, payment_ref="pi_extra")
    assert result["deal_status"] == "completed"
    assert result["refund"]["status"] == "settled"
    assert backend.refunds[-1] == {"payment_ref": "pi_extra", "amount": 2_000}
    assert backend.transfers == [{"deal_id": deal_id, "recipient": "bob", "amount": 10_000}]


def test_cancel_invited_deal_kills_token(service, clock):
    created = money_goods_deal(service, clock)
    service.cancel_deal(created["deal_id"], CREATOR)
    with pytest.raises(NotFound):
        service.accept_invite(PARTICIPANT, created["invite_token"])


def test_cannot_cancel_active_deal(service, clock):
    deal_id = active_money_goods_deal(service, clock)
    with pytest.raises(FailedPrecondition):
        service.cancel_deal(deal_id, CREATOR)
    assert _status(service, deal_id) is DealStatus.ACTIVE


def test_cancel_permissions_and_repeat(service, clock):
    deal_id = joined_money_goods_deal(service, clock)
    with pytest.raises(PermissionDenied):
        service.cancel_deal(deal_id, STRANGER)
    service.cancel_deal(deal_id, ADMIN)
    with pytest.raises(FailedPrecondition):
        service.cancel_deal(deal_id, CREATOR)


# --- Disputes ---

def test_freeze_and_unfreeze(service, clock):
    deal_id = active_money_goods_deal(service, clock)
    frozen = service.freeze_deal(deal_id, PARTICIPANT, "item never arrived")
    assert frozen["status"] == "frozen"
    with pytest.raises(AlreadyExists):
        service.freeze_deal(deal_id, CREATOR, "me too")
    with pytest.raises(FailedPrecondition):
        service.propose_outcome(deal_id, CREATOR, "RELEASE_TO_CREATOR")

    assert service.unfreeze_deal(deal_id, CREATOR)["status"] == "active"
    assert service.store.get_open_dispute(deal_id) is None


def test_unfreeze_after_date_is_past_due(service, clock):
    deal_id = active_money_goods_deal(service, clock)
    service.freeze_deal(deal_id, CREATOR, "late")
    clock.advance(31 * DAY)
    assert service.unfreeze_deal(deal_id, ADMIN)["status"] == "past_due"


def test_freeze_requires_reason_and_legal_state(service, clock):
    deal_id = joined_money_goods_deal(service, clock)
    with pytest.raises(InvalidArgument):
        service.freeze_deal(deal_id, CREATOR, "  ")
    with pytest.raises(FailedPrecondition):
        service.freeze_deal(deal_id, CREATOR, "not funded yet")
    with pytest.raises(FailedPrecondition):
        service.unfreeze_deal(deal_id, CREATOR)


def test_concurrent_freezes_one_dispute(service, clock):
    deal_id = active_money_goods_deal(service, clock)
    outcomes = []
    barrier = threading.Barrier(2)

    def freeze(principal):
        barrier.wait()
        try:
            service.freeze_deal(deal_id, principal, "dispute")
            outcomes.append("ok")
        except AlreadyExists:
            outcomes.append("exists")

    threads = [threading.Thread(target=freeze, args=(p,)) for p in (CREATOR, PARTICIPANT)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert sorted(outcomes) == ["exists", "ok"]
    assert len(service.store.list_disputes(deal_id)) == 1


# --- Admin ---

def test_force_complete_with_forfeit(service, clock, backend):
    deal_id = active_money_goods_deal(service, clock)
    service.freeze_deal(deal_id, CREATOR, "goods never delivered")
    with pytest.raises(PermissionDenied):
        service.force_complete(deal_id, CREATOR, "RELEASE_TO_CREATOR", "B_FAILED")

    result = service.force_complete(deal_id, ADMIN, "RELEASE_TO_CREATOR", "B_FAILED")
    assert result["status"] == "completed"
    assert result["settlement"]["holds"]["forfeit_b"] == 1_000
    assert backend.refunds == []
    assert backend.transfers == [{"deal_id": deal_id, "recipient": "alice", "amount": 10_000}]
    assert service.store.get_open_dispute(deal_id) is None


def test_force_complete_from_unfunded_is_rejected(service, clock):
    deal_id = joined_money_goods_deal(service, clock)
    with pytest.raises(FailedPrecondition):
        service.force_complete(deal_id, ADMIN, "REFUND_BOTH")


def test_retry_settlement(service, clock, backend):
    deal_id = active_money_goods_deal(service, clock)
    backend.fail_recipients.add("bob")
    service.propose_outcome(deal_id, CREATOR, "RELEASE_TO_PARTICIPANT")
    first = service.confirm_outcome(deal_id, PARTICIPANT)
    assert first["settlement"]["status"] == "partial_failure"

    with pytest.raises(PermissionDenied):
        service.retry_settlement(deal_id, PARTICIPANT)
    backend.fail_recipients.clear()
    retried = service.retry_settlement(deal_id, ADMIN)
    assert retried["settlement"]["status"] == "settled"
    assert backend.transfers == [{"deal_id": deal_id, "recipient": "bob", "amount": 10_000}]
    assert "SETTLEMENT_RETRIED" in _events(service, deal_id)


class _SlowBackend(StubBackend):
    """Holds each refund until released, once ``slow`` is set."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.slow = False
        self.entered = threading.Event()
        self.release = threading.Event()

    def refund(self, payment_ref, amount):
        if self.slow:
            self.entered.set()
            self.release.wait(5)
        return super().refund(payment_ref, amount)


def test_concurrent_retries_refund_once(store, clock):
    backend = _SlowBackend(fail_refs={"pi_contrib"})
    service = DealService(store, backend, clock=clock)
    deal_id = joined_money_goods_deal(service, clock)
    service.record_payment_succeeded(deal_id, "A", "CONTRIBUTION", 10_000, payment_ref="pi_contrib")
    assert service.cancel_deal(deal_id, CREATOR)["settlement"]["status"] == "partial_failure"

    backend.fail_refs.clear()
    backend.slow = True
    results = []
    worker = threading.Thread(target=lambda: results.append(service.retry_settlement(deal_id, ADMIN)))
    worker.start()
    assert backend.entered.wait(5)

    second = service.retry_settlement(deal_id, ADMIN)
    backend.release.set()
    worker.join(5)

    assert second["settlement"]["status"] == "nothing_to_settle"
    assert results[0]["settlement"]["status"] == "settled"
    assert backend.refunds == [{"payment_ref": "pi_contrib", "amount": 10_000}]
    assert service.store.get_payment_by_ref("pi_contrib").refunded_amount == 10_000


# --- Past due and extensions ---

def test_sweep_marks_active_deals(service, clock):
    active = active_money_goods_deal(service, clock)
    unfunded = joined_money_goods_deal(service, clock)
    fresh = active_money_goods_deal(service, clock, days=60)
    clock.advance(31 * DAY)

    report = service.sweep_past_due()
    assert report.processed == 1
    assert report.overdue_unfunded == [unfunded]
    assert report.failed == []
    assert _status(service, active) is DealStatus.PAST_DUE
    assert _status(service, unfunded) is DealStatus.AWAITING_FUNDING
    assert _status(service, fresh) is DealStatus.ACTIVE
    assert service.store.list_audit(active)[-1].actor_id == "system"

    # Idempotent
    assert service.sweep_past_due().processed == 0


def test_sweep_reaches_active_deals_behind_unfunded_backlog(service, clock):
    service.sweep_page_size = 2
    unfunded = [joined_money_goods_deal(service, clock, days=10) for _ in range(3)]
    active = [active_money_goods_deal(service, clock, days=20) for _ in range(3)]
    clock.advance(31 * DAY)

    report = service.sweep_past_due()
    assert report.processed == 3
    assert sorted(report.overdue_unfunded) == sorted(unfunded)
    assert all(_status(service, deal_id) is DealStatus.PAST_DUE for deal_id in active)


def test_sweep_failure_is_isolated(service, clock, monkeypatch):
    first = active_money_goods_deal(service, clock, days=10)
    second = active_money_goods_deal(service, clock, days=20)
    clock.advance(31 * DAY)
    original = service._mark_past_due

    def flaky(deal_id, now):
        if deal_id == first:
            raise FailedPrecondition("simulated")
        return original(deal_id, now)

    monkeypatch.setattr(service, "_mark_past_due", flaky)
    report = service.sweep_past_due()
    assert report.failed == [first]
    assert report.processed == 1
    assert _status(service, second) is DealStatus.PAST_DUE


def test_extension_flow(service, clock):
    deal_id = active_money_goods_deal(service, clock)
    with pytest.raises(FailedPrecondition):
        service.request_extension(deal_id, CREATOR, "standard")
    clock.advance(31 * DAY)
    service.sweep_past_due()

    requested = service.request_extension(deal_id, CREATOR, "standard")
    assert requested["extension_fee"] == 300
    assert requested["days"] == 7
    with pytest.raises(AlreadyExists):
        service.request_extension(deal_id, PARTICIPANT, "extended")
    with pytest.raises(InvalidArgument):
        service.approve_extension(deal_id, CREATOR)

    old_date = service.store.get_deal(deal_id).deal_date
    approved = service.approve_extension(deal_id, PARTICIPANT)
    assert approved["status"] == "active"
    assert approved["deal_date"] == old_date + 7 * DAY
    assert approved["extension_fees_total"] == 300
    deal = service.store.get_deal(deal_id)
    assert deal.extension_requested is False
    assert deal.extension_type is None


def test_approve_without_request(service, clock):
    deal_id = active_money_goods_deal(service, clock)
    clock.advance(31 * DAY)
    service.sweep_past_due()
    with pytest.raises(FailedPrecondition):
        service.approve_extension(deal_id, PARTICIPANT)


# --- Reads and audit ---

def test_get_deal_visibility(service, clock):
    deal_id = joined_money_goods_deal(service, clock)
    assert service.get_deal(deal_id, CREATOR)["invite_token"]
    assert "invite_token" not in service.get_deal(deal_id, PARTICIPANT)
    assert service.get_deal(deal_id, ADMIN)["id"] == deal_id
    with pytest.raises(PermissionDenied):
        service.get_deal(deal_id, STRANGER)
    with pytest.raises(NotFound):
        service.get_deal("missing", CREATOR)


def test_list_deals(service, clock):
    deal_id = joined_money_goods_deal(service, clock)
    assert [d["id"] for d in service.list_deals(PARTICIPANT)] == [deal_id]
    assert service.list_deals(PARTICIPANT, status="active") == []
    assert service.list_deals(STRANGER) == []
    with pytest.raises(InvalidArgument):
        service.list_deals(CREATOR, status="sleeping")


def test_every_step_is_audited(service, clock):
    deal_id = active_money_goods_deal(service, clock)
    service.propose_outcome(deal_id, CREATOR, "RELEASE_TO_CREATOR")
    service.confirm_outcome(deal_id, PARTICIPANT)
    assert _events(service, deal_id) == [
        "DEAL_CREATED", "INVITE_ACCEPTED",
        "PAYMENT_COMPLETED", "PAYMENT_COMPLETED", "PAYMENT_COMPLETED", "PAYMENT_COMPLETED",
        "DEAL_ACTIVATED", "OUTCOME_PROPOSED", "OUTCOME_CONFIRMED", "DEAL_COMPLETED",
    ]
    log = service.get_audit_log(deal_id, PARTICIPANT)
    assert log[-1]["details"]["to"] == "completed"


def test_audit_failure_does_not_block_transition(service, clock):
    deal_id = active_money_goods_deal(service, clock)
    service.store.db.execute("DROP TABLE actions")
    result = service.propose_outcome(deal_id, CREATOR, "RELEASE_TO_CREATOR")
    assert result["status"] == "outcome_proposed"


# --- Payout accounts ---

def test_payout_account(service):
    assert service.get_payout_account(PARTICIPANT) == {"principal_id": "bob", "account_id": None}
    assert service.set_payout_account(PARTICIPANT, "  acct_bob ")["account_id"] == "acct_bob"
    assert service.get_payout_account(PARTICIPANT)["account_id"] == "acct_bob"
    assert service.get_payout_account(CREATOR)["account_id"] is None


def test_payout_account_validation(service):
    with pytest.raises(Unauthenticated):
        service.set_payout_account(None, "acct_1")
    with pytest.raises(InvalidArgument):
        service.set_payout_account(CREATOR, "   ")
    with pytest.raises(InvalidArgument):
        service.set_payout_account(CREATOR, "a" * 256)
